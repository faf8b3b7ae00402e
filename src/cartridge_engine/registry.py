"""Cartridge Registry

In-memory catalog of Cartridge records plus the static table that maps
sensitive primary domains to their mandatory safety overlays.

Thread Safety:
    Writes are copy-on-write: every mutation builds a new dict and swaps the
    reference under a writer lock. Readers never lock; they take one
    snapshot() per operation and see either the old or the new catalog,
    never a partially written one.

Usage:
    registry = CartridgeRegistry()
    registry.register(cartridge)

    snapshot = registry.snapshot()      # consistent view for one request
    overlays = registry.get_mandatory_safety_overlays("chemistry")
"""

import logging
import threading
from types import MappingProxyType
from typing import Dict, Iterable, List, Mapping, Optional

from cartridge_engine.models import Cartridge

logger = logging.getLogger(__name__)

# Mandatory safety overlays for sensitive domains
DEFAULT_SAFETY_OVERLAYS: Dict[str, List[str]] = {
    "chemistry": ["safety_core", "no_procedures"],
    "biology": ["safety_core", "no_procedures", "ethics_review"],
    "medicine": ["safety_core", "no_procedures", "medical_disclaimer"],
    "explosives": ["safety_core", "no_procedures", "dual_use_block"],
}


class CartridgeRegistry:
    """Catalog of cartridges keyed by id. Never raises on lookup."""

    def __init__(
        self,
        cartridges: Optional[Iterable[Cartridge]] = None,
        safety_overlays: Optional[Mapping[str, List[str]]] = None,
    ):
        """
        Args:
            cartridges: Initial catalog contents
            safety_overlays: Override for the mandatory safety overlay table
        """
        table = DEFAULT_SAFETY_OVERLAYS if safety_overlays is None else safety_overlays
        self._safety_overlays: Dict[str, tuple] = {
            domain: tuple(ids) for domain, ids in table.items()
        }
        self._write_lock = threading.Lock()
        self._cartridges: Mapping[str, Cartridge] = MappingProxyType({})
        if cartridges:
            self.replace_all(cartridges)

    def register(self, cartridge: Cartridge) -> None:
        """Insert or replace a cartridge by id."""
        with self._write_lock:
            updated = dict(self._cartridges)
            if cartridge.id in updated:
                logger.debug(f"Replacing cartridge: {cartridge.id}")
            updated[cartridge.id] = cartridge
            self._cartridges = MappingProxyType(updated)

    def unregister(self, cartridge_id: str) -> bool:
        """Remove a cartridge. Returns False if it was not registered."""
        with self._write_lock:
            if cartridge_id not in self._cartridges:
                return False
            updated = dict(self._cartridges)
            del updated[cartridge_id]
            self._cartridges = MappingProxyType(updated)
            return True

    def replace_all(self, cartridges: Iterable[Cartridge]) -> None:
        """Publish a whole new catalog in a single reference swap."""
        fresh: Dict[str, Cartridge] = {}
        for cartridge in cartridges:
            fresh[cartridge.id] = cartridge
        with self._write_lock:
            self._cartridges = MappingProxyType(fresh)
        logger.info(f"Published cartridge catalog ({len(fresh)} cartridges)")

    def snapshot(self) -> Mapping[str, Cartridge]:
        """Read-only view of the catalog as of now."""
        return self._cartridges

    def get(self, cartridge_id: str) -> Optional[Cartridge]:
        return self._cartridges.get(cartridge_id)

    def list(self) -> List[Cartridge]:
        return list(self._cartridges.values())

    def find_by_keywords(self, keywords: Iterable[str]) -> List[Cartridge]:
        """
        Find cartridges whose activator keywords overlap the given keywords.

        Matching is case-insensitive substring containment in either direction.
        """
        wanted = [k.lower() for k in keywords if k]
        if not wanted:
            return []

        found = []
        for cartridge in self._cartridges.values():
            for activator in cartridge.activators.keywords:
                activator_lower = activator.lower()
                if any(k in activator_lower or activator_lower in k for k in wanted):
                    found.append(cartridge)
                    break
        return found

    def get_mandatory_safety_overlays(self, primary_domain: str) -> List[str]:
        """Safety overlay ids required for a primary domain ([] if none)."""
        return list(self._safety_overlays.get(primary_domain, ()))

    @property
    def safety_overlay_table(self) -> Dict[str, List[str]]:
        return {domain: list(ids) for domain, ids in self._safety_overlays.items()}

    def __len__(self) -> int:
        return len(self._cartridges)

    def __contains__(self, cartridge_id: object) -> bool:
        return cartridge_id in self._cartridges
