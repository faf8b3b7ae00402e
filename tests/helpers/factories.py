"""Factories for building test cartridges and routing results."""

from __future__ import annotations

from pathlib import Path
from typing import Any

from cartridge_engine.models import Cartridge, RoutingResult


def make_cartridge(
    cartridge_id: str,
    keywords: list[str] | None = None,
    priority: int = 50,
    **fields: Any,
) -> Cartridge:
    """Build a Cartridge through the same path YAML files take.

    Activator fields (units_regex, doc_shapes, file_extensions) may be passed
    directly as keyword arguments; everything else is a top-level cartridge field.
    """
    activators = {"keywords": keywords or []}
    for name in ("units_regex", "doc_shapes", "file_extensions", "confidence_threshold"):
        if name in fields:
            activators[name] = fields.pop(name)

    data = {
        "id": cartridge_id,
        "name": fields.pop("name", cartridge_id.replace("_", " ").title()),
        "priority": priority,
        "activators": activators,
    }
    data.update(fields)
    return Cartridge.from_dict(data)


def make_routing(
    primary: str,
    overlays: list[str] | None = None,
    safety_overlays: list[str] | None = None,
    deliverable: str = "answer",
    confidence: float = 0.5,
) -> RoutingResult:
    """Build a RoutingResult; safety overlays are included in overlays."""
    safety = list(safety_overlays or [])
    all_overlays = list(overlays or [])
    for overlay in safety:
        if overlay not in all_overlays:
            all_overlays.append(overlay)
    return RoutingResult(
        primary=primary,
        overlays=tuple(all_overlays),
        safety_overlays=tuple(safety),
        deliverable_guess=deliverable,
        confidence=confidence,
    )


def write_cartridge_yaml(
    directory: Path,
    filename: str,
    cartridge_id: str,
    keywords: tuple[str, ...] = ("alpha",),
    extra: str = "",
) -> Path:
    """Write a minimal cartridge YAML file; extra is appended verbatim."""
    path = directory / filename
    keyword_lines = "\n".join(f"    - {k}" for k in keywords)
    path.write_text(
        f"id: {cartridge_id}\n"
        f"name: {cartridge_id.replace('_', ' ').title()}\n"
        f"activators:\n"
        f"  keywords:\n{keyword_lines}\n"
        f"{extra}"
    )
    return path
