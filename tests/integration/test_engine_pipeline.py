"""End-to-end tests: YAML on disk -> loader -> router -> composer.

Covers the documented routing examples over the bundled catalog, conflict
rejection for catalogs loaded from a directory, and hot reload through a real
watchdog observer.
"""

import shutil
import time

import pytest

from cartridge_engine import CartridgeConflictError, CartridgeEngine, UserProfile, load_config
from cartridge_engine.health_check import check_catalog_health
from cartridge_engine.loader import BUILTIN_DOMAINS_PATH
from tests.helpers import (
    assert_routed_to,
    assert_safety_overlays_present,
    assert_valid_confidence,
    write_cartridge_yaml,
)

pytestmark = [pytest.mark.integration]

RELOAD_TIMEOUT_SECONDS = 10.0


def wait_for(predicate, timeout: float = RELOAD_TIMEOUT_SECONDS, interval: float = 0.05) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()


@pytest.fixture
def directory_config(domains_dir):
    config = load_config(base_dir=domains_dir.parent)
    config["cartridges"]["path"] = str(domains_dir)
    return config


class TestBundledCatalog:
    """Documented examples over the bundled catalog."""

    def test_sensitive_request(self, engine):
        result = engine.process("Plan catalyst stability analysis using spectroscopy")

        assert_routed_to(result.routing, "chemistry")
        assert_valid_confidence(result.routing)
        assert_safety_overlays_present(result.routing)
        assert {"safety_core", "no_procedures"} <= set(result.routing.overlays)
        assert result.composed.safety.forbid_procedures is True
        assert result.composed.safety.max_risk_level.value == "low"

    def test_non_sensitive_request(self, engine):
        result = engine.process("Design REST API with microservices architecture")

        assert_routed_to(result.routing, "software_engineering")
        assert result.routing.safety_overlays == ()
        assert result.composed.safety.forbid_procedures is False

    def test_empty_request(self, engine):
        result = engine.process("")

        assert result.routing.primary == "general"
        assert result.routing.confidence == 0
        assert result.routing.overlays == ()
        assert result.composed.source_cartridges == ("general",)

    def test_bundled_catalog_healthy(self, engine):
        assert check_catalog_health(engine.registry)["status"] == "healthy"


class TestDirectoryCatalog:
    """Catalogs loaded from a domains directory."""

    def test_declared_conflict_rejected(self, domains_dir, directory_config):
        write_cartridge_yaml(domains_dir, "general.yaml", "general", keywords=())
        write_cartridge_yaml(
            domains_dir, "a.yaml", "A", keywords=("alpha",), extra="priority: 100\nconflicts_with: [B]\n"
        )
        write_cartridge_yaml(domains_dir, "b.yaml", "B", keywords=("bravo",))
        engine = CartridgeEngine.from_config(directory_config)
        # A confident A match pulls in the profile's common overlay B
        profile = UserProfile(user_id="u1", domain_preferences={"A": 0.5}, common_overlays=["B"])

        with pytest.raises(CartridgeConflictError) as exc_info:
            engine.process("alpha", user_profile=profile)

        assert str(exc_info.value) == "Cartridge conflict: B and A cannot be used together"

    def test_hot_reload_publishes_new_cartridge(self, domains_dir, directory_config):
        write_cartridge_yaml(domains_dir, "general.yaml", "general", keywords=())
        directory_config["cartridges"].update({"hot_reload": True, "debounce_seconds": 0.1})
        engine = CartridgeEngine.from_config(directory_config)
        try:
            assert engine.route("statute").primary == "general"

            write_cartridge_yaml(domains_dir, "law.yaml", "law", keywords=("statute",))

            assert wait_for(lambda: engine.route("statute").primary == "law")
        finally:
            engine.stop_hot_reload()

    def test_invalid_file_does_not_break_reload(self, domains_dir, directory_config):
        write_cartridge_yaml(domains_dir, "general.yaml", "general", keywords=())
        write_cartridge_yaml(domains_dir, "law.yaml", "law", keywords=("statute",))
        engine = CartridgeEngine.from_config(directory_config)

        (domains_dir / "broken.yaml").write_text("id: [unclosed\n")
        result = engine.reload()

        assert result["success"] is True
        assert result["skipped"] == ["broken.yaml"]
        assert engine.route("statute").primary == "law"

    def test_half_written_safety_file_during_hot_reload(self, tmp_path):
        domains_dir = tmp_path / "catalog"
        shutil.copytree(BUILTIN_DOMAINS_PATH, domains_dir)
        config = load_config(base_dir=tmp_path)
        config["cartridges"].update({"path": str(domains_dir), "hot_reload": True, "debounce_seconds": 0.1})
        engine = CartridgeEngine.from_config(config)
        reloads = []
        original_reload = engine.loader.reload

        def recording_reload():
            result = original_reload()
            reloads.append(result)
            return result

        engine.loader.reload = recording_reload
        try:
            (domains_dir / "safety_core.yaml").write_text("id: safety_core\nname: [unclosed\n")

            assert wait_for(lambda: any(r.get("retained") for r in reloads))
            result = engine.process("Plan catalyst stability analysis using spectroscopy")

            assert "safety_core" in result.composed.source_cartridges
            assert result.composed.safety.redact_pii is True
        finally:
            engine.stop_hot_reload()
