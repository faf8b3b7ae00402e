"""Cartridge Loader

Reads cartridge definitions from YAML files and publishes them to a
CartridgeRegistry.

YAML Format (one cartridge per file):
---
id: chemistry
name: Chemistry
priority: 80
activators:
  keywords: [catalyst, titration]
  units_regex: '\\b(?:mol/L|mmol)\\b'
  doc_shapes: [imrad]
safety:
  forbid_procedures: true
  max_risk_level: low
style:
  tone: technical
deliverables:
  default: analysis
  options: [analysis, answer]
---

Files missing id, name or activators, files that are not valid YAML, and
files whose units_regex does not compile are logged and skipped. On reload,
a file that fails to parse keeps the cartridge it last published, so a
half-written edit never removes a cartridge from the catalog. When no
domains directory is configured (or it does not exist) the catalog bundled
in cartridge_engine/domains/ is loaded instead.

Usage:
    loader = CartridgeLoader(Path("domains/"), registry)
    loader.load_all()

    # Later, after files change
    result = loader.reload()
"""

import logging
import re
import threading
import time
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from cartridge_engine.composer import is_safety_cartridge
from cartridge_engine.models import Cartridge
from cartridge_engine.registry import CartridgeRegistry

logger = logging.getLogger(__name__)

BUILTIN_DOMAINS_PATH = Path(__file__).parent / "domains"

CARTRIDGE_SUFFIXES = (".yml", ".yaml")


class CartridgeFormatError(ValueError):
    """Raised when a YAML document is not a valid cartridge definition."""
    pass


def is_cartridge_file(path: Path) -> bool:
    return path.suffix.lower() in CARTRIDGE_SUFFIXES


def parse_cartridge(data: Any, source: str = "<dict>") -> Cartridge:
    """
    Build a Cartridge from a parsed YAML document.

    Raises:
        CartridgeFormatError: If required fields are missing or a field is malformed
    """
    if not isinstance(data, dict):
        raise CartridgeFormatError(f"{source}: cartridge must be a mapping")

    missing = [name for name in ("id", "name") if not data.get(name)]
    if not isinstance(data.get("activators"), dict):
        missing.append("activators")
    if missing:
        raise CartridgeFormatError(f"{source}: missing required fields: {', '.join(missing)}")

    try:
        cartridge = Cartridge.from_dict(data)
    except (TypeError, ValueError, AttributeError) as e:
        raise CartridgeFormatError(f"{source}: {e}") from e

    if cartridge.activators.units_regex:
        try:
            re.compile(cartridge.activators.units_regex)
        except re.error as e:
            raise CartridgeFormatError(
                f"{source}: invalid units_regex {cartridge.activators.units_regex!r}: {e}"
            ) from e

    return cartridge


class CartridgeLoader:
    """
    Loads cartridge YAML files into a registry.

    Thread Safety:
    - load_all() registers one cartridge at a time (use at startup)
    - reload() builds a complete catalog first, then swaps it in with
      registry.replace_all(); concurrent reloads are serialized
    """

    def __init__(self, domains_path: Optional[Path], registry: CartridgeRegistry):
        self.domains_path = Path(domains_path) if domains_path else None
        self.registry = registry
        self._reload_lock = threading.Lock()
        self._last_reload_time: Optional[float] = None
        self._skipped: List[str] = []
        self._file_ids: Dict[str, str] = {}

    @property
    def skipped_files(self) -> List[str]:
        """Files rejected by the most recent load."""
        return list(self._skipped)

    def _source_dir(self) -> Path:
        if self.domains_path is not None and self.domains_path.is_dir():
            return self.domains_path
        if self.domains_path is not None:
            logger.warning(f"Cartridges directory not found: {self.domains_path} (using built-in catalog)")
        return BUILTIN_DOMAINS_PATH

    def load_cartridge(self, path: Path) -> Optional[Cartridge]:
        """
        Parse a single cartridge file.

        Returns:
            Cartridge, or None if the file is unreadable or invalid
        """
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = yaml.safe_load(f)
            return parse_cartridge(data, source=path.name)
        except yaml.YAMLError as e:
            logger.error(f"Invalid YAML in cartridge file {path}: {e}")
        except CartridgeFormatError as e:
            logger.error(f"Invalid cartridge format: {e}")
        except OSError as e:
            logger.error(f"Cannot read cartridge file {path}: {e}")
        return None

    def _parse_directory(self, directory: Path) -> Dict[str, Cartridge]:
        cartridges: Dict[str, Cartridge] = {}
        file_ids: Dict[str, str] = {}
        self._skipped = []

        for file_path in sorted(directory.iterdir()):
            if not file_path.is_file() or not is_cartridge_file(file_path):
                continue
            cartridge = self.load_cartridge(file_path)
            if cartridge is None:
                self._skipped.append(file_path.name)
                continue
            if cartridge.id in cartridges:
                logger.warning(f"Duplicate cartridge id '{cartridge.id}' in {file_path.name}, replacing")
            cartridges[cartridge.id] = cartridge
            file_ids[file_path.name] = cartridge.id
            logger.debug(f"Loaded cartridge: {cartridge.id} ({cartridge.name}) from {file_path.name}")

        self._file_ids = file_ids
        return cartridges

    def build_snapshot(self) -> Dict[str, Cartridge]:
        """Parse the catalog without touching the registry."""
        return self._parse_directory(self._source_dir())

    def load_builtin(self) -> int:
        """Register the bundled catalog. Returns the number of cartridges loaded."""
        cartridges = self._parse_directory(BUILTIN_DOMAINS_PATH)
        for cartridge in cartridges.values():
            self.registry.register(cartridge)
        logger.info(f"Loaded {len(cartridges)} built-in cartridges")
        return len(cartridges)

    def load_all(self) -> int:
        """
        Load every cartridge file and register it.

        Returns:
            Number of cartridges registered
        """
        source = self._source_dir()
        if source == BUILTIN_DOMAINS_PATH:
            return self.load_builtin()

        cartridges = self._parse_directory(source)
        for cartridge in cartridges.values():
            self.registry.register(cartridge)

        if self._skipped:
            logger.warning(f"Skipped {len(self._skipped)} invalid cartridge files: {self._skipped}")
        logger.info(f"Loaded {len(cartridges)} domain cartridges from {source}")
        return len(cartridges)

    def reload(self) -> Dict[str, Any]:
        """
        Rebuild the catalog from disk and publish it atomically.

        Readers holding an earlier snapshot keep seeing it; new readers see
        the fresh catalog. On failure the previous catalog stays live.
        """
        with self._reload_lock:
            try:
                start_time = time.time()
                logger.info("=== Starting cartridge reload ===")

                previous_ids = dict(self._file_ids)
                cartridges = self.build_snapshot()
                retained = self._retain_previous(cartridges, previous_ids)
                old_count = len(self.registry)
                self.registry.replace_all(cartridges.values())
                self._last_reload_time = time.time()

                elapsed_ms = (time.time() - start_time) * 1000
                logger.info(
                    f"=== Reload complete: {old_count} → {len(cartridges)} cartridges "
                    f"({elapsed_ms:.1f}ms) ==="
                )

                return {
                    "success": True,
                    "old_count": old_count,
                    "new_count": len(cartridges),
                    "skipped": list(self._skipped),
                    "retained": retained,
                    "elapsed_ms": elapsed_ms,
                    "timestamp": datetime.now().isoformat(),
                }

            except Exception as e:
                logger.error(f"Cartridge reload failed: {e}", exc_info=True)
                return {
                    "success": False,
                    "error": str(e),
                    "timestamp": datetime.now().isoformat(),
                }

    def _retain_previous(
        self, cartridges: Dict[str, Cartridge], previous_ids: Dict[str, str]
    ) -> List[str]:
        """Keep the published definition of every cartridge whose file no longer parses."""
        published = self.registry.snapshot()
        retained = []
        for file_name in self._skipped:
            cartridge_id = previous_ids.get(file_name)
            if cartridge_id is None or cartridge_id in cartridges or cartridge_id not in published:
                continue
            cartridges[cartridge_id] = published[cartridge_id]
            self._file_ids[file_name] = cartridge_id
            retained.append(cartridge_id)
            logger.warning(
                f"Keeping previous definition of '{cartridge_id}': {file_name} failed to parse"
            )
        return retained

    def get_stats(self) -> Dict[str, Any]:
        """Summary of the currently published catalog."""
        cartridges = self.registry.list()
        return {
            "total": len(cartridges),
            "overlay_compatible": sorted(c.id for c in cartridges if c.overlay_compatible),
            "safety": sorted(c.id for c in cartridges if is_safety_cartridge(c.id)),
            "source": str(self._source_dir()),
            "skipped": list(self._skipped),
            "last_reload": (
                datetime.fromtimestamp(self._last_reload_time).isoformat()
                if self._last_reload_time else None
            ),
        }
