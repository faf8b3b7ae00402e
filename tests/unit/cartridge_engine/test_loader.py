"""Unit tests for CartridgeLoader and YAML parsing."""

import logging
from pathlib import Path
from unittest.mock import patch

import pytest

from cartridge_engine.loader import (
    BUILTIN_DOMAINS_PATH,
    CartridgeFormatError,
    CartridgeLoader,
    is_cartridge_file,
    parse_cartridge,
)
from cartridge_engine.registry import CartridgeRegistry
from tests.helpers import write_cartridge_yaml

BUILTIN_IDS = {
    "general", "chemistry", "biology", "medicine", "software_engineering",
    "phd_research", "executive", "patent_examiner",
    "safety_core", "no_procedures", "ethics_review", "medical_disclaimer", "dual_use_block",
}


class TestParseCartridge:
    """Tests for parse_cartridge validation."""

    def test_minimal_document(self):
        cartridge = parse_cartridge({"id": "law", "name": "Law", "activators": {"keywords": ["statute"]}})

        assert cartridge.id == "law"
        assert cartridge.priority == 50
        assert cartridge.style.tone == "conversational"
        assert cartridge.deliverables.default == "answer"

    @pytest.mark.parametrize(
        "data,missing",
        [
            ({"name": "Law", "activators": {}}, "id"),
            ({"id": "law", "activators": {}}, "name"),
            ({"id": "law", "name": "Law"}, "activators"),
            ({"id": "law", "name": "Law", "activators": ["statute"]}, "activators"),
        ],
    )
    def test_missing_required_fields(self, data, missing):
        with pytest.raises(CartridgeFormatError, match=f"missing required fields: .*{missing}"):
            parse_cartridge(data, source="law.yaml")

    def test_non_mapping_rejected(self):
        with pytest.raises(CartridgeFormatError, match="must be a mapping"):
            parse_cartridge(["not", "a", "cartridge"])

    def test_invalid_units_regex_rejected(self):
        data = {"id": "law", "name": "Law", "activators": {"units_regex": "(["}}

        with pytest.raises(CartridgeFormatError, match="invalid units_regex"):
            parse_cartridge(data)

    def test_bad_priority_rejected(self):
        data = {"id": "law", "name": "Law", "activators": {}, "priority": "urgent"}

        with pytest.raises(CartridgeFormatError):
            parse_cartridge(data)

    def test_format_error_is_value_error(self):
        assert issubclass(CartridgeFormatError, ValueError)


class TestIsCartridgeFile:
    """Tests for file filtering."""

    @pytest.mark.parametrize("name", ["chemistry.yaml", "chemistry.yml", "CHEM.YAML"])
    def test_yaml_files(self, name):
        assert is_cartridge_file(Path(name))

    @pytest.mark.parametrize("name", ["README.md", "chemistry.json", "chemistry.yaml.swp"])
    def test_other_files(self, name):
        assert not is_cartridge_file(Path(name))


class TestLoadAll:
    """Tests for loading a domains directory."""

    def test_loads_every_valid_file(self, domains_dir):
        write_cartridge_yaml(domains_dir, "law.yaml", "law")
        write_cartridge_yaml(domains_dir, "finance.yml", "finance")
        (domains_dir / "notes.txt").write_text("not a cartridge")
        registry = CartridgeRegistry()

        count = CartridgeLoader(domains_dir, registry).load_all()

        assert count == 2
        assert {c.id for c in registry.list()} == {"law", "finance"}

    def test_invalid_files_skipped(self, domains_dir, caplog):
        write_cartridge_yaml(domains_dir, "law.yaml", "law")
        (domains_dir / "broken.yaml").write_text("id: [unclosed\n")
        (domains_dir / "incomplete.yaml").write_text("id: nameless\n")
        write_cartridge_yaml(domains_dir, "regex.yaml", "regex", extra="  units_regex: '(['\n")
        registry = CartridgeRegistry()
        loader = CartridgeLoader(domains_dir, registry)

        with caplog.at_level(logging.WARNING):
            count = loader.load_all()

        assert count == 1
        assert loader.skipped_files == ["broken.yaml", "incomplete.yaml", "regex.yaml"]
        assert "Skipped 3 invalid cartridge files" in caplog.text

    def test_duplicate_id_later_file_wins(self, domains_dir):
        write_cartridge_yaml(domains_dir, "a_law.yaml", "law", keywords=("statute",))
        write_cartridge_yaml(domains_dir, "b_law.yaml", "law", keywords=("contract",))
        registry = CartridgeRegistry()

        CartridgeLoader(domains_dir, registry).load_all()

        assert registry.get("law").activators.keywords == ("contract",)

    def test_missing_directory_falls_back_to_builtin(self, tmp_path, caplog):
        registry = CartridgeRegistry()
        loader = CartridgeLoader(tmp_path / "nowhere", registry)

        with caplog.at_level(logging.WARNING):
            loader.load_all()

        assert {c.id for c in registry.list()} == BUILTIN_IDS
        assert "Cartridges directory not found" in caplog.text

    def test_no_directory_loads_builtin(self):
        registry = CartridgeRegistry()

        count = CartridgeLoader(None, registry).load_all()

        assert count == len(BUILTIN_IDS)
        assert registry.get("chemistry").priority == 80

    def test_load_cartridge_unreadable(self, tmp_path):
        loader = CartridgeLoader(None, CartridgeRegistry())

        assert loader.load_cartridge(tmp_path / "missing.yaml") is None


class TestBuiltinCatalog:
    """The bundled catalog must parse cleanly."""

    def test_every_builtin_file_parses(self):
        loader = CartridgeLoader(None, CartridgeRegistry())

        snapshot = loader.build_snapshot()

        assert set(snapshot) == BUILTIN_IDS
        assert loader.skipped_files == []

    def test_builtin_path_inside_package(self):
        assert BUILTIN_DOMAINS_PATH.name == "domains"
        assert (BUILTIN_DOMAINS_PATH / "general.yaml").exists()


class TestReload:
    """Tests for atomic catalog reload."""

    def test_reload_swaps_catalog(self, domains_dir):
        write_cartridge_yaml(domains_dir, "law.yaml", "law")
        registry = CartridgeRegistry()
        loader = CartridgeLoader(domains_dir, registry)
        loader.load_all()
        before = registry.snapshot()

        (domains_dir / "law.yaml").unlink()
        write_cartridge_yaml(domains_dir, "finance.yaml", "finance")
        write_cartridge_yaml(domains_dir, "tax.yaml", "tax")
        result = loader.reload()

        assert result["success"] is True
        assert result["old_count"] == 1
        assert result["new_count"] == 2
        assert result["skipped"] == []
        assert set(before) == {"law"}
        assert {c.id for c in registry.list()} == {"finance", "tax"}

    def test_reload_failure_keeps_previous_catalog(self, domains_dir):
        write_cartridge_yaml(domains_dir, "law.yaml", "law")
        registry = CartridgeRegistry()
        loader = CartridgeLoader(domains_dir, registry)
        loader.load_all()

        with patch.object(loader, "build_snapshot", side_effect=RuntimeError("disk gone")):
            result = loader.reload()

        assert result["success"] is False
        assert result["error"] == "disk gone"
        assert "law" in registry

    def test_half_written_file_keeps_published_cartridge(self, domains_dir, caplog):
        write_cartridge_yaml(domains_dir, "law.yaml", "law", keywords=("statute",))
        write_cartridge_yaml(domains_dir, "tax.yaml", "tax")
        registry = CartridgeRegistry()
        loader = CartridgeLoader(domains_dir, registry)
        loader.load_all()
        published = registry.get("law")

        (domains_dir / "law.yaml").write_text("id: law\nname: [unclosed\n")
        with caplog.at_level(logging.WARNING):
            result = loader.reload()

        assert result["success"] is True
        assert result["skipped"] == ["law.yaml"]
        assert result["retained"] == ["law"]
        assert registry.get("law") is published
        assert "Keeping previous definition of 'law'" in caplog.text

    def test_retained_cartridge_survives_repeated_reloads(self, domains_dir):
        write_cartridge_yaml(domains_dir, "law.yaml", "law")
        registry = CartridgeRegistry()
        loader = CartridgeLoader(domains_dir, registry)
        loader.load_all()

        (domains_dir / "law.yaml").write_text("id: [unclosed\n")
        loader.reload()
        result = loader.reload()

        assert result["retained"] == ["law"]
        assert "law" in registry

    def test_new_invalid_file_retains_nothing(self, domains_dir):
        write_cartridge_yaml(domains_dir, "law.yaml", "law")
        registry = CartridgeRegistry()
        loader = CartridgeLoader(domains_dir, registry)
        loader.load_all()

        (domains_dir / "broken.yaml").write_text("id: [unclosed\n")
        result = loader.reload()

        assert result["skipped"] == ["broken.yaml"]
        assert result["retained"] == []
        assert {c.id for c in registry.list()} == {"law"}

    def test_fixed_file_replaces_retained_cartridge(self, domains_dir):
        write_cartridge_yaml(domains_dir, "law.yaml", "law", keywords=("statute",))
        registry = CartridgeRegistry()
        loader = CartridgeLoader(domains_dir, registry)
        loader.load_all()

        (domains_dir / "law.yaml").write_text("id: [unclosed\n")
        loader.reload()
        write_cartridge_yaml(domains_dir, "law.yaml", "law", keywords=("contract",))
        result = loader.reload()

        assert result["retained"] == []
        assert registry.get("law").activators.keywords == ("contract",)

    def test_get_stats(self, domains_dir):
        write_cartridge_yaml(domains_dir, "law.yaml", "law")
        write_cartridge_yaml(domains_dir, "safety_core.yaml", "safety_core", extra="overlay_compatible: false\n")
        registry = CartridgeRegistry()
        loader = CartridgeLoader(domains_dir, registry)
        loader.load_all()

        stats = loader.get_stats()

        assert stats["total"] == 2
        assert stats["overlay_compatible"] == ["law"]
        assert stats["safety"] == ["safety_core"]
        assert stats["source"] == str(domains_dir)
        assert stats["last_reload"] is None

        loader.reload()
        assert loader.get_stats()["last_reload"] is not None
