"""Cartridge Engine

Wires the registry, router, composer, loader and optional hot-reload
watcher into one object.

Usage:
    engine = CartridgeEngine.from_config(load_config())
    result = engine.process("Plan catalyst stability analysis using spectroscopy")
    print(engine.explain(result))
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import cartridge_engine.router  # noqa: F401 - imported for side effect (engine registration)
from cartridge_engine.composer import CartridgeComposer, explain_composition
from cartridge_engine.config import (
    get_domains_path,
    get_routing_config,
    get_safety_overlay_table,
    load_config,
)
from cartridge_engine.health_check import check_catalog_health
from cartridge_engine.loader import CartridgeLoader
from cartridge_engine.models import ComposedCartridge, RoutingResult, UserProfile
from cartridge_engine.registry import CartridgeRegistry
from cartridge_engine.routing_engine import RoutingEngine, create_router
from cartridge_engine.watcher import DEFAULT_DEBOUNCE_SECONDS, CartridgeWatcher

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class EngineResult:
    """Routing decision plus the composition built from it."""

    routing: RoutingResult
    composed: ComposedCartridge

    def to_dict(self) -> dict:
        return {
            "routing": self.routing.to_dict(),
            "composed": self.composed.to_dict(),
        }


class CartridgeEngine:
    """Route then compose, over one shared registry."""

    def __init__(
        self,
        registry: CartridgeRegistry,
        router: RoutingEngine,
        composer: CartridgeComposer,
        loader: Optional[CartridgeLoader] = None,
        hot_reload: bool = False,
        debounce_seconds: float = DEFAULT_DEBOUNCE_SECONDS,
    ):
        self.registry = registry
        self.router = router
        self.composer = composer
        self.loader = loader
        self.hot_reload = hot_reload
        self.debounce_seconds = debounce_seconds
        self._watcher: Optional[CartridgeWatcher] = None

    @classmethod
    def from_config(cls, config: Optional[Dict[str, Any]] = None) -> "CartridgeEngine":
        """
        Build an engine from a configuration dict (see config.load_config).

        Raises:
            ConfigurationError: If the safety table, engine or feature flags are invalid
        """
        if config is None:
            config = load_config()

        registry = CartridgeRegistry(safety_overlays=get_safety_overlay_table(config))
        loader = CartridgeLoader(get_domains_path(config), registry)
        loader.load_all()

        router = create_router(registry, get_routing_config(config))
        cartridges_config = config.get("cartridges", {})

        engine = cls(
            registry,
            router,
            CartridgeComposer(registry),
            loader=loader,
            hot_reload=bool(cartridges_config.get("hot_reload")),
            debounce_seconds=float(
                cartridges_config.get("debounce_seconds") or DEFAULT_DEBOUNCE_SECONDS
            ),
        )
        logger.info(
            f"Cartridge engine ready ({len(registry)} cartridges, engine: {router.version})"
        )
        if engine.hot_reload:
            engine.start_hot_reload()
        return engine

    def route(
        self,
        text: str,
        files: Optional[List[Dict[str, Any]]] = None,
        user_profile: Optional[UserProfile] = None,
        context: Optional[Dict[str, Any]] = None,
    ) -> RoutingResult:
        return self.router.route(text, files=files, user_profile=user_profile, context=context)

    def process(
        self,
        text: str,
        files: Optional[List[Dict[str, Any]]] = None,
        user_profile: Optional[UserProfile] = None,
        context: Optional[Dict[str, Any]] = None,
    ) -> EngineResult:
        """
        Route a request and compose the selected cartridges.

        Raises:
            CartridgeNotFoundError: If the routed primary is not registered
            CartridgeConflictError: If the selected cartridges are incompatible
        """
        routing = self.route(text, files=files, user_profile=user_profile, context=context)
        composed = self.composer.compose(routing)
        return EngineResult(routing=routing, composed=composed)

    def explain(self, result: EngineResult) -> str:
        lines = [
            f"Primary: {result.routing.primary} (confidence {result.routing.confidence:.2f})",
            f"Deliverable: {result.routing.deliverable_guess}",
            "",
            explain_composition(result.composed),
        ]
        return "\n".join(lines)

    def health(self) -> Dict[str, Any]:
        return check_catalog_health(self.registry)

    def reload(self) -> Dict[str, Any]:
        """
        Rebuild the catalog from disk. Returns the loader's reload report.

        A published catalog is health-checked; its status is added to the
        report and a degraded or unhealthy catalog is logged.
        """
        if self.loader is None:
            return {"success": False, "error": "No cartridge loader configured"}
        result = self.loader.reload()
        if result.get("success"):
            result["health"] = self.health()["status"]
        return result

    def start_hot_reload(self) -> bool:
        """Start watching the domains directory. Returns True if a watcher is running."""
        if self._watcher is not None and self._watcher.is_running:
            return True
        if self.loader is None or self.loader.domains_path is None:
            logger.warning("Hot reload requested but no cartridge domains directory is configured")
            return False

        self._watcher = CartridgeWatcher(
            self.loader.domains_path,
            self.reload,
            debounce_seconds=self.debounce_seconds,
        )
        self._watcher.start()
        return self._watcher.is_running

    def stop_hot_reload(self) -> None:
        if self._watcher is not None:
            self._watcher.stop()
            self._watcher = None
