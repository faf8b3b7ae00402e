"""
Health check module for the cartridge catalog.

Reports catalog problems that routing and composition would otherwise only
surface at request time: mandatory safety overlays that are not registered,
conflicts_with entries naming unknown cartridges, a missing fallback
cartridge, and units_regex patterns that do not compile.

Checks report; they never raise.
"""

import logging
import re
from datetime import datetime, timezone
from typing import Any

from cartridge_engine.registry import CartridgeRegistry
from cartridge_engine.router import FALLBACK_CARTRIDGE

logger = logging.getLogger(__name__)


def check_safety_overlays(registry: CartridgeRegistry) -> dict[str, Any]:
    """
    Check that every mandatory safety overlay is registered.

    Returns:
        Dictionary with:
        - status: "healthy" | "unhealthy"
        - missing: {primary domain: [unregistered overlay ids]}
    """
    missing: dict[str, list[str]] = {}
    for domain, overlays in registry.safety_overlay_table.items():
        absent = [o for o in overlays if o not in registry]
        if absent:
            missing[domain] = absent

    return {
        "status": "unhealthy" if missing else "healthy",
        "missing": missing,
    }


def check_conflict_references(registry: CartridgeRegistry) -> dict[str, Any]:
    """
    Check that conflicts_with only names registered cartridges.

    Returns:
        Dictionary with:
        - status: "healthy" | "degraded"
        - dangling: {cartridge id: [unknown ids]}
    """
    dangling: dict[str, list[str]] = {}
    for cartridge in registry.list():
        unknown = [c for c in cartridge.conflicts_with if c not in registry]
        if unknown:
            dangling[cartridge.id] = unknown

    return {
        "status": "degraded" if dangling else "healthy",
        "dangling": dangling,
    }


def check_fallback(registry: CartridgeRegistry, fallback_id: str = FALLBACK_CARTRIDGE) -> dict[str, Any]:
    """Unmatched input routes to the fallback, so composing it must succeed."""
    present = fallback_id in registry
    return {
        "status": "healthy" if present else "unhealthy",
        "fallback": fallback_id,
        "reason": "Fallback cartridge registered" if present else "Fallback cartridge not registered",
    }


def check_activator_patterns(registry: CartridgeRegistry) -> dict[str, Any]:
    invalid: dict[str, str] = {}
    for cartridge in registry.list():
        pattern = cartridge.activators.units_regex
        if not pattern:
            continue
        try:
            re.compile(pattern)
        except re.error as e:
            invalid[cartridge.id] = str(e)

    return {
        "status": "degraded" if invalid else "healthy",
        "invalid": invalid,
    }


def check_catalog_health(registry: CartridgeRegistry) -> dict[str, Any]:
    """
    Get comprehensive health status of a cartridge catalog.

    Returns:
        Dictionary with:
        - status: "healthy" | "degraded" | "unhealthy"
        - cartridge_count: Number of registered cartridges
        - safety_overlays: Safety overlay check
        - conflicts: conflicts_with reference check
        - fallback: Fallback cartridge check
        - activators: units_regex check
        - timestamp: Check timestamp (ISO format)
    """
    checks = {
        "safety_overlays": check_safety_overlays(registry),
        "conflicts": check_conflict_references(registry),
        "fallback": check_fallback(registry),
        "activators": check_activator_patterns(registry),
    }

    statuses = [check["status"] for check in checks.values()]
    if all(s == "healthy" for s in statuses):
        status = "healthy"
    elif any(s == "unhealthy" for s in statuses):
        status = "unhealthy"
    else:
        status = "degraded"

    if status != "healthy":
        failing = [name for name, check in checks.items() if check["status"] != "healthy"]
        logger.warning(f"Cartridge catalog {status}: {', '.join(failing)}")

    return {
        "status": status,
        "cartridge_count": len(registry),
        **checks,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
