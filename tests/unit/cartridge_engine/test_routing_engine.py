"""Unit tests for routing_engine module.

Tests the abstract RoutingEngine interface, registry, and factory function.
"""

from unittest.mock import MagicMock, patch

import pytest

from cartridge_engine import routing_engine
from cartridge_engine.models import RoutingResult
from cartridge_engine.router import ENGINE_VERSION, DomainRouter
from cartridge_engine.routing_engine import (
    _ENGINE_REGISTRY,
    ConfigurationError,
    FeatureSpec,
    RoutingEngine,
    create_router,
    get_available_engines,
    get_default_engine,
    get_engine_features,
    register_engine,
    set_default_engine,
    validate_features,
)


@pytest.fixture
def isolated_engine_registry():
    """Restore the engine registry and default after the test."""
    original_registry = _ENGINE_REGISTRY.copy()
    original_default = routing_engine.DEFAULT_ENGINE_VERSION
    try:
        yield _ENGINE_REGISTRY
    finally:
        _ENGINE_REGISTRY.clear()
        _ENGINE_REGISTRY.update(original_registry)
        routing_engine.DEFAULT_ENGINE_VERSION = original_default


def _stub_engine(version: str, features=None):
    class StubEngine(RoutingEngine):
        def route(self, text, files=None, user_profile=None, context=None):
            return RoutingResult(primary="general")

        @property
        def version(self) -> str:
            return version

        @property
        def description(self) -> str:
            return "Stub"

        @classmethod
        def get_available_features(cls):
            return list(features or [])

    return StubEngine


class TestFeatureSpec:
    """Tests for FeatureSpec class."""

    def test_feature_spec_defaults(self):
        """Create FeatureSpec with defaults."""
        spec = FeatureSpec("minimal", "Minimal spec")

        assert spec.default is True
        assert spec.category == "general"

    def test_feature_spec_to_dict(self):
        """Convert FeatureSpec to dictionary."""
        spec = FeatureSpec("test", "Test", default=False, category="routing")

        assert spec.to_dict() == {
            "name": "test",
            "description": "Test",
            "default": False,
            "category": "routing",
        }


class TestRoutingEngineInterface:
    """Tests for RoutingEngine abstract class."""

    def test_routing_engine_is_abstract(self):
        """RoutingEngine should not be instantiable directly."""
        with pytest.raises(TypeError):
            RoutingEngine(MagicMock())

    def test_subclass_must_implement_route(self):
        """Subclass must implement route method."""

        class IncompleteEngine(RoutingEngine):
            @property
            def version(self) -> str:
                return "test-1.0"

            @property
            def description(self) -> str:
                return "Test engine"

        with pytest.raises(TypeError):
            IncompleteEngine(MagicMock())

    def test_get_default_features(self):
        """get_default_features returns dict from specs."""
        engine_class = _stub_engine("test-1.0", [
            FeatureSpec("feature_a", "Feature A", default=True),
            FeatureSpec("feature_b", "Feature B", default=False),
        ])

        assert engine_class.get_default_features() == {"feature_a": True, "feature_b": False}


class TestEngineRegistry:
    """Tests for engine registration and lookup."""

    def test_weighted_engine_registered_on_import(self):
        assert ENGINE_VERSION in get_available_engines()
        assert _ENGINE_REGISTRY[ENGINE_VERSION] is DomainRouter

    def test_register_engine_decorator(self, isolated_engine_registry):
        """register_engine decorator adds to registry."""
        engine_class = register_engine("test-engine-001")(_stub_engine("test-engine-001"))

        assert isolated_engine_registry["test-engine-001"] is engine_class

    def test_set_and_get_default_engine(self, isolated_engine_registry):
        register_engine("test-default-engine")(_stub_engine("test-default-engine"))

        set_default_engine("test-default-engine")

        assert get_default_engine() == "test-default-engine"

    def test_get_default_falls_back_to_first(self, isolated_engine_registry):
        """get_default_engine falls back to first registered."""
        isolated_engine_registry.clear()
        register_engine("first-engine")(_stub_engine("first-engine"))

        with patch("cartridge_engine.routing_engine.DEFAULT_ENGINE_VERSION", None):
            assert get_default_engine() == "first-engine"

    def test_no_engines_raises(self, isolated_engine_registry):
        isolated_engine_registry.clear()

        with pytest.raises(ConfigurationError, match="No routing engines"):
            get_default_engine()


class TestCreateRouter:
    """Tests for create_router factory function."""

    def test_default_engine(self, small_registry):
        router = create_router(small_registry)

        assert isinstance(router, DomainRouter)
        assert router.version == ENGINE_VERSION

    def test_none_engine_uses_default(self, small_registry):
        router = create_router(small_registry, {"routing": {"engine": None}})
        assert router.version == ENGINE_VERSION

    def test_passes_feature_flags(self, small_registry):
        router = create_router(small_registry, {"routing": {"features": {"synonym_matching": False}}})

        assert router.features["synonym_matching"] is False
        assert router.features["overlay_detection"] is True

    def test_passes_weights_and_thresholds(self, small_registry):
        router = create_router(small_registry, {"routing": {
            "weights": {"keyword": 0.5},
            "thresholds": {"primary": 0.3},
        }})

        assert router.weights["keyword"] == 0.5
        assert router.weights["unit"] == 0.2
        assert router.thresholds["primary"] == 0.3

    def test_unknown_engine_raises(self, small_registry):
        """create_router raises for unknown engine version."""
        with pytest.raises(ConfigurationError, match="Unknown routing engine"):
            create_router(small_registry, {"routing": {"engine": "nonexistent-engine"}})

    def test_unknown_feature_raises(self, small_registry):
        with pytest.raises(ConfigurationError, match="not available"):
            create_router(small_registry, {"routing": {"features": {"telepathy": True}}})

    def test_unknown_weight_raises(self, small_registry):
        with pytest.raises(ConfigurationError, match="Unknown routing weight"):
            create_router(small_registry, {"routing": {"weights": {"vibes": 0.1}}})

    def test_engine_without_options_rejects_them(self, isolated_engine_registry, small_registry):
        register_engine("plain-engine")(_stub_engine("plain-engine"))

        with pytest.raises(ConfigurationError, match="does not accept options"):
            create_router(small_registry, {"routing": {"engine": "plain-engine", "weights": {"keyword": 1}}})


class TestValidateFeatures:
    """Tests for validate_features function."""

    def test_validate_unknown_feature_raises(self, isolated_engine_registry):
        """validate_features raises for unknown feature."""
        register_engine("feature-test-engine")(
            _stub_engine("feature-test-engine", [FeatureSpec("known_feature", "Known")])
        )

        with pytest.raises(ConfigurationError, match="not available"):
            validate_features("feature-test-engine", {"unknown_feature": True})

    def test_validate_known_feature_passes(self, isolated_engine_registry):
        """validate_features passes for known features."""
        register_engine("known-feature-engine")(
            _stub_engine("known-feature-engine", [FeatureSpec("known_feature", "Known")])
        )

        validate_features("known-feature-engine", {"known_feature": True})

    def test_get_engine_features_unknown_raises(self):
        """get_engine_features raises for unknown engine."""
        with pytest.raises(ConfigurationError, match="Unknown routing engine"):
            get_engine_features("nonexistent-engine")
