"""Routing engines and the factory that builds them.

    text ─► RoutingEngine.route() ─► RoutingResult ─► CartridgeComposer

Engines register under a version string with @register_engine; the module
that defines the production engine also calls set_default_engine(). Config
names an engine by version (routing.engine) and may pass feature flags,
weights and thresholds, which create_router() checks before construction.

Registered versions:
    weighted-1.0  keyword/unit/shape/file/profile scoring (router.py)
"""

from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass
from typing import Any, Dict, List, Optional, Type

from cartridge_engine.config import ConfigurationError
from cartridge_engine.models import RoutingResult, UserProfile
from cartridge_engine.registry import CartridgeRegistry

ENGINE_OPTION_KEYS = ("features", "weights", "thresholds")


@dataclass(frozen=True)
class FeatureSpec:
    """One on/off switch an engine exposes to config."""

    name: str
    description: str
    default: bool = True
    category: str = "general"  # "scoring" | "routing" | "general"

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class RoutingEngine(ABC):
    """
    Base class for cartridge routers.

    route() must not raise: input that matches nothing routes to the
    fallback cartridge with confidence 0.
    """

    def __init__(self, registry: CartridgeRegistry):
        self.registry = registry

    @abstractmethod
    def route(
        self,
        text: str,
        files: Optional[List[Dict[str, Any]]] = None,
        user_profile: Optional[UserProfile] = None,
        context: Optional[Dict[str, Any]] = None,
    ) -> RoutingResult:
        """
        Args:
            text: Free-form request text
            files: File descriptors ({"name", "content", "metadata"})
            user_profile: Learned preferences, read only
            context: Prior-session context, passed through to the features
        """

    @property
    @abstractmethod
    def version(self) -> str:
        """Version string the engine is registered under."""

    @property
    @abstractmethod
    def description(self) -> str:
        ...

    @classmethod
    def get_available_features(cls) -> List[FeatureSpec]:
        return []

    @classmethod
    def get_default_features(cls) -> Dict[str, bool]:
        return {spec.name: spec.default for spec in cls.get_available_features()}


# version -> engine class
_ENGINE_REGISTRY: Dict[str, Type[RoutingEngine]] = {}

DEFAULT_ENGINE_VERSION: Optional[str] = None


def register_engine(version: str):
    """Class decorator: make an engine constructible by create_router(version)."""
    def decorator(cls):
        _ENGINE_REGISTRY[version] = cls
        return cls
    return decorator


def set_default_engine(version: str):
    global DEFAULT_ENGINE_VERSION
    DEFAULT_ENGINE_VERSION = version


def get_default_engine() -> str:
    """The configured default if registered, else the first engine registered."""
    if DEFAULT_ENGINE_VERSION in _ENGINE_REGISTRY:
        return DEFAULT_ENGINE_VERSION
    for version in _ENGINE_REGISTRY:
        return version
    raise ConfigurationError("No routing engines registered")


def get_available_engines() -> List[str]:
    return list(_ENGINE_REGISTRY)


def _engine_class(version: str) -> Type[RoutingEngine]:
    try:
        return _ENGINE_REGISTRY[version]
    except KeyError:
        raise ConfigurationError(
            f"Unknown routing engine: '{version}'. Available engines: {get_available_engines()}"
        ) from None


def get_engine_features(version: str) -> List[FeatureSpec]:
    """
    Raises:
        ConfigurationError: If no engine is registered under version
    """
    return _engine_class(version).get_available_features()


def validate_features(version: str, features: Dict[str, bool]) -> None:
    """
    Raises:
        ConfigurationError: If a flag is not one the engine declares
    """
    known = {spec.name for spec in get_engine_features(version)}
    for name in features:
        if name not in known:
            raise ConfigurationError(
                f"Feature '{name}' is not available for engine '{version}'. "
                f"Available features: {sorted(known) if known else '(none)'}"
            )


def create_router(
    registry: CartridgeRegistry,
    config: Optional[Dict[str, Any]] = None
) -> RoutingEngine:
    """
    Build the routing engine named by config["routing"]["engine"].

    A missing or null engine name selects the default engine. Non-empty
    routing.features, routing.weights and routing.thresholds are passed to
    the engine's constructor as keyword arguments.

    Raises:
        ConfigurationError: Unknown engine or feature flag, or options given
            to an engine that takes none

    Example:
        router = create_router(registry, {"routing": {
            "engine": "weighted-1.0",
            "features": {"synonym_matching": False},
            "thresholds": {"primary": 0.25},
        }})
    """
    routing_config = (config or {}).get("routing") or {}
    version = routing_config.get("engine") or get_default_engine()
    options = {key: routing_config[key] for key in ENGINE_OPTION_KEYS if routing_config.get(key)}

    engine_class = _engine_class(version)
    if "features" in options:
        validate_features(version, options["features"])

    if not options:
        return engine_class(registry)
    try:
        return engine_class(registry, **options)
    except TypeError:
        raise ConfigurationError(
            f"Engine '{version}' does not accept options: {sorted(options)}"
        ) from None
