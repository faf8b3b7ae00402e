"""
Cartridge Composer

Merges the primary cartridge with its overlays and mandatory safety overlays
into one ComposedCartridge, recording every resolved conflict.

Application order:  [*safety_overlays, *overlays, primary]
Merge walk:         reverse of application order (primary first, safety last)

Precedence: safety > validators > rubrics > style > templates

Composition is strict: a missing primary, a missing safety overlay or an
incompatible pair raises before anything is merged, so a caller never
renders a prompt under a known-invalid policy.
"""

import dataclasses
import logging
import uuid
from datetime import datetime, timezone
from typing import Dict, List

from cartridge_engine.config import ConfigurationError
from cartridge_engine.models import (
    STYLE_FIELDS,
    TEMPLATE_FIELDS,
    Cartridge,
    ComposedCartridge,
    Deliverables,
    ResolvedConflict,
    RoutingResult,
    SafetyPolicy,
    Style,
    Templates,
)
from cartridge_engine.registry import CartridgeRegistry

logger = logging.getLogger(__name__)

SAFETY_CARTRIDGE_IDS = {'no_procedures', 'ethics_review', 'medical_disclaimer', 'dual_use_block'}
SAFETY_ID_MARKERS = ('safety', 'security')

SAFETY_FLAGS = ('forbid_procedures', 'forbid_harmful', 'redact_pii')

DEFAULT_TONE = "conversational"
DEFAULT_DELIVERABLE = "answer"

REASON_SAFETY = "Safety override"
REASON_MOST_RESTRICTIVE = "Most restrictive"
REASON_RISK = "Lower risk limit enforced"
REASON_FIRST_VALIDATOR = "First validator"
REASON_STYLE = "Style override"
REASON_TEMPLATE = "Template override"


class CartridgeNotFoundError(ConfigurationError):
    """Raised when the routed primary cartridge is not registered."""

    def __init__(self, cartridge_id: str):
        self.cartridge_id = cartridge_id
        super().__init__(f"Primary cartridge '{cartridge_id}' not found")


class SafetyOverlayNotFoundError(ConfigurationError):
    """Raised when a mandatory safety overlay is not registered."""

    def __init__(self, cartridge_id: str):
        self.cartridge_id = cartridge_id
        super().__init__(f"Mandatory safety overlay '{cartridge_id}' not registered")


class CartridgeConflictError(ConfigurationError):
    """Raised when two cartridges in one composition are declared incompatible."""

    def __init__(self, first: str, second: str):
        self.first = first
        self.second = second
        super().__init__(f"Cartridge conflict: {first} and {second} cannot be used together")


def is_safety_cartridge(cartridge_id: str) -> bool:
    return (
        any(marker in cartridge_id for marker in SAFETY_ID_MARKERS)
        or cartridge_id in SAFETY_CARTRIDGE_IDS
    )


def _union(base, incoming) -> tuple:
    result = list(base)
    for item in incoming:
        if item not in result:
            result.append(item)
    return tuple(result)


class CartridgeComposer:
    """Composes a RoutingResult into a single merged configuration."""

    def __init__(self, registry: CartridgeRegistry):
        self.registry = registry

    def compose(self, routing: RoutingResult) -> ComposedCartridge:
        """
        Compose the cartridges named by a routing result.

        Raises:
            CartridgeNotFoundError: If routing.primary is not registered
            SafetyOverlayNotFoundError: If a mandatory safety overlay is not registered
            CartridgeConflictError: If any two selected cartridges are incompatible
        """
        cartridges = self.resolve_cartridges(routing)
        self.validate_no_conflicts(cartridges)
        composed = self.merge_cartridges(cartridges)

        logger.info(
            f"Composed {composed.id} from {' + '.join(composed.source_cartridges)} "
            f"({len(composed.conflicts_resolved)} conflicts resolved)"
        )
        return composed

    def resolve_cartridges(self, routing: RoutingResult) -> List[Cartridge]:
        """Application order: safety overlays, other overlays, primary."""
        catalog = self.registry.snapshot()

        primary = catalog.get(routing.primary)
        if primary is None:
            raise CartridgeNotFoundError(routing.primary)

        ordered_ids: List[str] = []
        for cartridge_id in [*routing.safety_overlays, *routing.overlays]:
            if cartridge_id != primary.id and cartridge_id not in ordered_ids:
                ordered_ids.append(cartridge_id)

        cartridges = []
        for cartridge_id in ordered_ids:
            cartridge = catalog.get(cartridge_id)
            if cartridge is None and cartridge_id in routing.safety_overlays:
                raise SafetyOverlayNotFoundError(cartridge_id)
            if cartridge is None:
                logger.warning(f"Overlay cartridge '{cartridge_id}' not registered, skipping")
                continue
            cartridges.append(cartridge)

        cartridges.append(primary)
        return cartridges

    def validate_no_conflicts(self, cartridges: List[Cartridge]) -> None:
        for i, first in enumerate(cartridges):
            for second in cartridges[i + 1:]:
                if first.conflicts_with_cartridge(second):
                    raise CartridgeConflictError(first.id, second.id)

    def merge_cartridges(self, cartridges: List[Cartridge]) -> ComposedCartridge:
        conflicts: List[ResolvedConflict] = []

        safety = SafetyPolicy()
        style = Style()
        templates = Templates()
        deliverables = Deliverables()
        rubrics: List[str] = []
        validators: List[str] = []

        walk = list(reversed(cartridges))
        for position, cartridge in enumerate(walk):
            is_safety = is_safety_cartridge(cartridge.id)
            may_overwrite = is_safety or position == len(walk) - 1

            safety = self.merge_safety(safety, cartridge, is_safety, conflicts)
            validators = self.merge_validators(validators, cartridge, is_safety, conflicts)
            rubrics = self.merge_rubrics(rubrics, cartridge, is_safety)
            style = self.merge_style(style, cartridge, may_overwrite, conflicts)
            templates = self.merge_templates(templates, cartridge, may_overwrite, conflicts)
            deliverables = self.merge_deliverables(deliverables, cartridge)

        if style.tone is None:
            style = dataclasses.replace(style, tone=DEFAULT_TONE)
        if not deliverables.default or not deliverables.options:
            deliverables = Deliverables(
                default=deliverables.default or DEFAULT_DELIVERABLE,
                options=deliverables.options or (DEFAULT_DELIVERABLE,),
                schemas=deliverables.schemas,
            )

        return ComposedCartridge(
            id=f"composed_{uuid.uuid4().hex[:12]}",
            source_cartridges=tuple(c.id for c in cartridges),
            precedence_order=tuple(c.id for c in walk),
            safety=safety,
            style=style,
            templates=templates,
            deliverables=deliverables,
            rubrics=_union((), rubrics),
            validators=_union((), validators),
            conflicts_resolved=tuple(conflicts),
            created_at=datetime.now(timezone.utc).isoformat(),
        )

    def merge_safety(
        self,
        base: SafetyPolicy,
        cartridge: Cartridge,
        is_safety: bool,
        conflicts: List[ResolvedConflict],
    ) -> SafetyPolicy:
        """Most restrictive wins; lists are unioned."""
        incoming = cartridge.safety
        updates: Dict[str, object] = {}

        for flag in SAFETY_FLAGS:
            current = getattr(base, flag)
            wanted = getattr(incoming, flag)
            if not wanted:
                continue
            if is_safety:
                conflicts.append(ResolvedConflict(flag, cartridge.id, REASON_SAFETY))
            elif not current:
                conflicts.append(ResolvedConflict(flag, cartridge.id, REASON_MOST_RESTRICTIVE))
            updates[flag] = True

        updates["topic_blocks"] = _union(base.topic_blocks, incoming.topic_blocks)
        updates["required_disclaimers"] = _union(
            base.required_disclaimers, incoming.required_disclaimers
        )

        if incoming.max_risk_level is not None:
            if base.max_risk_level is None:
                updates["max_risk_level"] = incoming.max_risk_level
            elif incoming.max_risk_level.is_stricter_than(base.max_risk_level):
                updates["max_risk_level"] = incoming.max_risk_level
                conflicts.append(ResolvedConflict("max_risk_level", cartridge.id, REASON_RISK))

        return dataclasses.replace(base, **updates)

    def merge_validators(
        self,
        validators: List[str],
        cartridge: Cartridge,
        is_safety: bool,
        conflicts: List[ResolvedConflict],
    ) -> List[str]:
        """Safety cartridges prepend; otherwise only the first validator set is taken."""
        if not is_safety and validators:
            return validators

        new_validators = list(_union((), (v for v in cartridge.validators if v not in validators)))
        if not new_validators:
            return validators

        conflicts.append(ResolvedConflict(
            "validators",
            cartridge.id,
            REASON_SAFETY if is_safety else REASON_FIRST_VALIDATOR,
        ))
        if is_safety:
            return new_validators + validators
        return validators + new_validators

    def merge_rubrics(self, rubrics: List[str], cartridge: Cartridge, is_safety: bool) -> List[str]:
        new_rubrics = list(_union((), (r for r in cartridge.rubrics if r not in rubrics)))
        if is_safety:
            return new_rubrics + rubrics
        return rubrics + new_rubrics

    def merge_style(
        self,
        base: Style,
        cartridge: Cartridge,
        may_overwrite: bool,
        conflicts: List[ResolvedConflict],
    ) -> Style:
        updates = {}
        for name in STYLE_FIELDS:
            incoming = getattr(cartridge.style, name)
            current = getattr(base, name)
            if not incoming:
                continue
            if not current:
                updates[name] = incoming
            elif may_overwrite and incoming != current:
                updates[name] = incoming
                conflicts.append(ResolvedConflict(name, cartridge.id, REASON_STYLE))
        return dataclasses.replace(base, **updates)

    def merge_templates(
        self,
        base: Templates,
        cartridge: Cartridge,
        may_overwrite: bool,
        conflicts: List[ResolvedConflict],
    ) -> Templates:
        updates = {}
        for name in TEMPLATE_FIELDS:
            incoming = getattr(cartridge.templates, name)
            current = getattr(base, name)
            if not incoming:
                continue
            if not current:
                updates[name] = incoming
            elif may_overwrite and incoming != current:
                updates[name] = incoming
                conflicts.append(ResolvedConflict(f"template_{name}", cartridge.id, REASON_TEMPLATE))
        return dataclasses.replace(base, **updates)

    def merge_deliverables(self, base: Deliverables, cartridge: Cartridge) -> Deliverables:
        """Keep the first default seen; union options; later schemas win."""
        incoming = cartridge.deliverables
        schemas = {**base.schema_map, **incoming.schema_map}
        return Deliverables(
            default=base.default or incoming.default,
            options=_union(base.options, incoming.options),
            schemas=tuple(schemas.items()),
        )

    def explain_composition(self, composed: ComposedCartridge) -> str:
        return explain_composition(composed)


def explain_composition(composed: ComposedCartridge) -> str:
    """Human-readable summary of a composition. Pure and deterministic."""
    lines = [f"Composed from: {' + '.join(composed.source_cartridges)}"]

    if composed.conflicts_resolved:
        lines.append("")
        lines.append("Resolved conflicts:")
        for conflict in composed.conflicts_resolved:
            lines.append(f"  • {conflict.property}: {conflict.winner} ({conflict.reason})")

    lines.append("")
    lines.append("Active features:")
    lines.append(f"  • Style: {composed.style.tone}")
    lines.append(f"  • Templates: {', '.join(composed.templates.names())}")
    lines.append(f"  • Validators: {len(composed.validators)}")
    lines.append(f"  • Rubrics: {len(composed.rubrics)}")

    if composed.safety.forbid_procedures or composed.safety.forbid_harmful:
        lines.append("  • Safety: Enhanced restrictions active")

    return "\n".join(lines)
