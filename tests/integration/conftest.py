"""Integration test fixtures.

Integration tests run the full engine (loader, router, composer) over the
bundled catalog or a temporary domains directory.
"""

import pytest

from cartridge_engine import CartridgeEngine, load_config


@pytest.fixture(scope="module")
def engine(tmp_path_factory) -> CartridgeEngine:
    """Engine over the bundled catalog with default configuration."""
    base_dir = tmp_path_factory.mktemp("engine")
    return CartridgeEngine.from_config(load_config(base_dir=base_dir))
