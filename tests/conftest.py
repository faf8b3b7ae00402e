"""Shared pytest fixtures for cartridge-engine tests.

Unit tests build small in-memory catalogs with make_cartridge(); the
builtin_* fixtures load the catalog bundled in cartridge_engine/domains/.
"""

from pathlib import Path

import pytest

from cartridge_engine.composer import CartridgeComposer
from cartridge_engine.features import FeatureExtractor
from cartridge_engine.loader import BUILTIN_DOMAINS_PATH, CartridgeLoader
from cartridge_engine.registry import CartridgeRegistry
from cartridge_engine.router import DomainRouter
from tests.helpers.factories import make_cartridge

# =============================================================================
# Path Fixtures
# =============================================================================


@pytest.fixture
def project_root() -> Path:
    """Return the project root directory."""
    return Path(__file__).parent.parent


@pytest.fixture
def builtin_domains_path() -> Path:
    """Return the bundled cartridge catalog directory."""
    return BUILTIN_DOMAINS_PATH


@pytest.fixture
def domains_dir(tmp_path: Path) -> Path:
    """Create an empty cartridge domains directory for tests that write YAML."""
    domains = tmp_path / "domains"
    domains.mkdir()
    return domains


# =============================================================================
# Catalog Fixtures
# =============================================================================


@pytest.fixture
def extractor() -> FeatureExtractor:
    return FeatureExtractor()


@pytest.fixture
def builtin_registry() -> CartridgeRegistry:
    """Registry populated with the bundled catalog."""
    registry = CartridgeRegistry()
    CartridgeLoader(None, registry).load_all()
    return registry


@pytest.fixture
def builtin_router(builtin_registry: CartridgeRegistry) -> DomainRouter:
    return DomainRouter(builtin_registry)


@pytest.fixture
def builtin_composer(builtin_registry: CartridgeRegistry) -> CartridgeComposer:
    return CartridgeComposer(builtin_registry)


@pytest.fixture
def small_registry() -> CartridgeRegistry:
    """Three-cartridge catalog with no safety table entries."""
    return CartridgeRegistry(
        [
            make_cartridge("general", priority=10),
            make_cartridge(
                "chemistry",
                keywords=["catalyst", "titration", "reagent"],
                priority=80,
                safety={"forbid_procedures": True, "max_risk_level": "medium"},
                style={"tone": "technical"},
            ),
            make_cartridge(
                "software",
                keywords=["api", "latency", "deployment"],
                file_extensions=["py"],
                priority=80,
            ),
        ],
        safety_overlays={},
    )
