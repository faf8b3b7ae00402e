"""Cartridge Engine - Domain routing and cartridge composition

Routes free-form requests to a primary domain cartridge plus overlays, then
merges the selected cartridges into one composed policy for a downstream
prompt-rendering layer.

Architecture:
- YAML cartridge files are the source of truth (cartridge_engine/domains/)
- CartridgeRegistry holds an immutable snapshot, swapped on reload
- DomainRouter scores cartridges and attaches mandatory safety overlays
- CartridgeComposer merges safety, style, templates and deliverables

Usage:
    from cartridge_engine import CartridgeEngine, load_config

    engine = CartridgeEngine.from_config(load_config())
    result = engine.process("Design REST API with microservices architecture")

    result.routing.primary          # "software_engineering"
    result.composed.safety          # merged SafetyPolicy
"""

from .composer import (
    CartridgeComposer,
    CartridgeConflictError,
    CartridgeNotFoundError,
    SafetyOverlayNotFoundError,
)
from .config import ConfigurationError, configure_logging, load_config
from .engine import CartridgeEngine, EngineResult
from .features import FeatureExtractor
from .health_check import check_catalog_health
from .loader import CartridgeLoader
from .models import Cartridge, ComposedCartridge, DomainFeatures, RoutingResult, UserProfile
from .registry import CartridgeRegistry
from .router import DomainRouter
from .routing_engine import create_router
from .user_learning import UserLearningSystem

__all__ = [
    "Cartridge",
    "CartridgeComposer",
    "CartridgeConflictError",
    "CartridgeEngine",
    "CartridgeLoader",
    "CartridgeNotFoundError",
    "CartridgeRegistry",
    "ComposedCartridge",
    "ConfigurationError",
    "DomainFeatures",
    "DomainRouter",
    "EngineResult",
    "FeatureExtractor",
    "RoutingResult",
    "SafetyOverlayNotFoundError",
    "UserLearningSystem",
    "UserProfile",
    "check_catalog_health",
    "configure_logging",
    "create_router",
    "load_config",
]

__version__ = "0.1.0"
