"""Test helpers for cartridge-engine.

This package provides utilities for testing routing and composition:
- Factories: Build cartridges and routing results in memory
- Assertions: Common assertion helpers
"""

from .assertions import (
    assert_conflict_recorded,
    assert_routed_to,
    assert_safety_overlays_present,
    assert_valid_confidence,
)
from .factories import make_cartridge, make_routing, write_cartridge_yaml

__all__ = [
    # Factories
    "make_cartridge",
    "make_routing",
    "write_cartridge_yaml",
    # Assertions
    "assert_routed_to",
    "assert_safety_overlays_present",
    "assert_valid_confidence",
    "assert_conflict_recorded",
]
