"""
Cartridge Engine Models - Data classes for cartridges, features and routing output.

A Cartridge is a declarative bundle of domain policy (safety, style, templates,
deliverables, rubrics, validators) with activation rules and a priority.
Cartridges and everything the engine returns are frozen; DomainFeatures and
UserProfile are the only mutable records.
"""

from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Dict, Optional


class DocShape(str, Enum):
    """Coarse document structure detected in input text."""

    IMRAD = "imrad"  # Scientific paper
    RFC = "rfc"  # Technical specification
    MEMO = "memo"  # Business memorandum
    OUTLINE = "outline"  # Numbered/lettered list
    NARRATIVE = "narrative"  # Anything else
    UNKNOWN = "unknown"


class RiskLevel(str, Enum):
    """Maximum risk a cartridge tolerates. Lower is more restrictive."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"

    @property
    def rank(self) -> int:
        return _RISK_RANK[self]

    def is_stricter_than(self, other: "RiskLevel") -> bool:
        return self.rank < other.rank


_RISK_RANK = {RiskLevel.LOW: 0, RiskLevel.MEDIUM: 1, RiskLevel.HIGH: 2}


class RiskTolerance(str, Enum):
    """User-level risk setting carried on a profile."""

    CONSERVATIVE = "conservative"
    BALANCED = "balanced"
    PERMISSIVE = "permissive"


def _strings(value: Any) -> tuple:
    """Normalize a YAML scalar/list/None into a tuple of strings."""
    if value is None:
        return ()
    if isinstance(value, str):
        return (value,)
    return tuple(str(v) for v in value)


# =============================================================================
# CARTRIDGE
# =============================================================================


@dataclass(frozen=True)
class Activators:
    """Signals that make a cartridge eligible for an input."""

    keywords: tuple[str, ...] = ()
    units_regex: str | None = None
    doc_shapes: tuple[str, ...] = ()
    file_extensions: tuple[str, ...] = ()
    api_patterns: tuple[str, ...] = ()  # Carried for tool adapters, not scored
    confidence_threshold: float = 0.5

    @classmethod
    def from_dict(cls, data: dict | None) -> "Activators":
        data = data or {}
        return cls(
            keywords=_strings(data.get("keywords")),
            units_regex=data.get("units_regex") or None,
            doc_shapes=tuple(s.lower() for s in _strings(data.get("doc_shapes"))),
            file_extensions=tuple(
                e.lower().lstrip(".") for e in _strings(data.get("file_extensions"))
            ),
            api_patterns=_strings(data.get("api_patterns")),
            confidence_threshold=float(data.get("confidence_threshold") or 0.5),
        )


@dataclass(frozen=True)
class SafetyPolicy:
    """Safety constraints a cartridge imposes on generation."""

    forbid_procedures: bool = False
    forbid_harmful: bool = False
    redact_pii: bool = False
    topic_blocks: tuple[str, ...] = ()
    required_disclaimers: tuple[str, ...] = ()
    max_risk_level: RiskLevel | None = None

    @classmethod
    def from_dict(cls, data: dict | None) -> "SafetyPolicy":
        data = data or {}
        return cls(
            forbid_procedures=bool(data.get("forbid_procedures", False)),
            forbid_harmful=bool(data.get("forbid_harmful", False)),
            redact_pii=bool(data.get("redact_pii", False)),
            topic_blocks=_strings(data.get("topic_blocks")),
            required_disclaimers=_strings(data.get("required_disclaimers")),
            max_risk_level=RiskLevel(data.get("max_risk_level") or RiskLevel.MEDIUM.value),
        )

    def to_dict(self) -> dict:
        return {
            "forbid_procedures": self.forbid_procedures,
            "forbid_harmful": self.forbid_harmful,
            "redact_pii": self.redact_pii,
            "topic_blocks": list(self.topic_blocks),
            "required_disclaimers": list(self.required_disclaimers),
            "max_risk_level": self.max_risk_level.value if self.max_risk_level else None,
        }


STYLE_FIELDS = ("tone", "units", "citation_style", "length_preference", "structure")


@dataclass(frozen=True)
class Style:
    """Presentation preferences (tone, units, citations, length, structure)."""

    tone: str | None = None
    units: str | None = None
    citation_style: str | None = None
    length_preference: str | None = None
    structure: str | None = None

    @classmethod
    def from_dict(cls, data: dict | None) -> "Style":
        data = data or {}
        return cls(**{name: data.get(name) for name in STYLE_FIELDS})

    def to_dict(self) -> dict:
        return asdict(self)


TEMPLATE_FIELDS = ("system", "user", "critic", "outline", "json_spec", "summary")


@dataclass(frozen=True)
class Templates:
    """Named template references resolved by the rendering layer."""

    system: str | None = None
    user: str | None = None
    critic: str | None = None
    outline: str | None = None
    json_spec: str | None = None
    summary: str | None = None

    @classmethod
    def from_dict(cls, data: dict | None) -> "Templates":
        data = data or {}
        return cls(**{name: data.get(name) or None for name in TEMPLATE_FIELDS})

    def names(self) -> list[str]:
        """Template slots that hold a reference."""
        return [name for name in TEMPLATE_FIELDS if getattr(self, name)]

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass(frozen=True)
class Deliverables:
    """Default deliverable, allowed options and schema references."""

    default: str | None = None
    options: tuple[str, ...] = ()
    schemas: tuple[tuple[str, str], ...] = ()  # (deliverable, schema ref) pairs

    @classmethod
    def from_dict(cls, data: dict | None) -> "Deliverables":
        data = data or {}
        schemas = data.get("schemas") or {}
        return cls(
            default=data.get("default") or "answer",
            options=_strings(data.get("options")) or ("answer",),
            schemas=tuple((str(k), str(v)) for k, v in schemas.items()),
        )

    @property
    def schema_map(self) -> Dict[str, str]:
        return dict(self.schemas)

    def to_dict(self) -> dict:
        return {
            "default": self.default,
            "options": list(self.options),
            "schemas": self.schema_map,
        }


@dataclass(frozen=True)
class Cartridge:
    """Domain expertise bundle. Immutable after load."""

    id: str
    name: str
    description: str = ""
    version: str = "1.0.0"
    priority: int = 50  # Higher = preferred when multiple match
    activators: Activators = field(default_factory=Activators)
    safety: SafetyPolicy = field(default_factory=SafetyPolicy)
    style: Style = field(default_factory=Style)
    templates: Templates = field(default_factory=Templates)
    deliverables: Deliverables = field(default_factory=Deliverables)
    rubrics: tuple[str, ...] = ()
    validators: tuple[str, ...] = ()
    tool_adapters: tuple[str, ...] = ()
    dependencies: tuple[str, ...] = ()
    overlay_compatible: bool = True
    conflicts_with: tuple[str, ...] = ()

    @classmethod
    def from_dict(cls, data: dict) -> "Cartridge":
        """Create Cartridge from YAML dict format (defaults match the YAML schema)."""
        style_data = dict(data.get("style") or {})
        style_data.setdefault("tone", "conversational")
        return cls(
            id=str(data["id"]),
            name=str(data["name"]),
            description=data.get("description") or "",
            version=str(data.get("version") or "1.0.0"),
            priority=int(data.get("priority") or 50),
            activators=Activators.from_dict(data.get("activators")),
            safety=SafetyPolicy.from_dict(data.get("safety")),
            style=Style.from_dict(style_data),
            templates=Templates.from_dict(data.get("templates")),
            deliverables=Deliverables.from_dict(data.get("deliverables")),
            rubrics=_strings(data.get("rubrics")),
            validators=_strings(data.get("validators")),
            tool_adapters=_strings(data.get("tool_adapters")),
            dependencies=_strings(data.get("dependencies")),
            overlay_compatible=data.get("overlay_compatible") is not False,
            conflicts_with=_strings(data.get("conflicts_with")),
        )

    def conflicts_with_cartridge(self, other: "Cartridge") -> bool:
        """True if either cartridge declares the other incompatible."""
        return other.id in self.conflicts_with or self.id in other.conflicts_with

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "version": self.version,
            "priority": self.priority,
            "activators": {
                "keywords": list(self.activators.keywords),
                "units_regex": self.activators.units_regex,
                "doc_shapes": list(self.activators.doc_shapes),
                "file_extensions": list(self.activators.file_extensions),
                "api_patterns": list(self.activators.api_patterns),
                "confidence_threshold": self.activators.confidence_threshold,
            },
            "safety": self.safety.to_dict(),
            "style": self.style.to_dict(),
            "templates": self.templates.to_dict(),
            "deliverables": self.deliverables.to_dict(),
            "rubrics": list(self.rubrics),
            "validators": list(self.validators),
            "tool_adapters": list(self.tool_adapters),
            "dependencies": list(self.dependencies),
            "overlay_compatible": self.overlay_compatible,
            "conflicts_with": list(self.conflicts_with),
        }


# =============================================================================
# FEATURES
# =============================================================================


@dataclass(frozen=True)
class NamedEntity:
    """Regex-detected entity span with its category label."""

    text: str
    label: str  # CHEMICAL | SOFTWARE | ACADEMIC
    confidence: float = 0.8


@dataclass
class DomainFeatures:
    """Signals extracted from one request. Ephemeral, one per routing call."""

    keywords: tuple[str, ...] = ()
    words: tuple[str, ...] = ()  # Punctuation-stripped tokens of any length
    named_entities: tuple[NamedEntity, ...] = ()
    units_detected: tuple[str, ...] = ()
    doc_shape: DocShape = DocShape.UNKNOWN
    section_headers: tuple[str, ...] = ()
    citation_patterns: tuple[str, ...] = ()
    file_extensions: tuple[str, ...] = ()
    file_metadata: Dict[str, Any] = field(default_factory=dict)
    session_context: Optional[Dict[str, Any]] = None

    def entity_labels(self) -> set[str]:
        return {e.label for e in self.named_entities}

    def is_empty(self) -> bool:
        """True when no signal at all was extracted."""
        return not (
            self.keywords
            or self.named_entities
            or self.units_detected
            or self.file_extensions
        )


# =============================================================================
# ROUTING OUTPUT
# =============================================================================


@dataclass(frozen=True)
class MatchSignals:
    """Which activators fired for a cartridge."""

    keyword_matches: tuple[str, ...] = ()
    unit_matches: tuple[str, ...] = ()
    structure_matches: tuple[str, ...] = ()
    file_matches: tuple[str, ...] = ()

    def to_dict(self) -> dict:
        return {k: list(v) for k, v in asdict(self).items()}


@dataclass(frozen=True)
class CartridgeMatch:
    """Per-cartridge scoring output."""

    cartridge_id: str
    confidence: float  # Always within [0, 1]
    signals: MatchSignals = field(default_factory=MatchSignals)
    rationale: str = ""

    def to_dict(self) -> dict:
        return {
            "cartridge_id": self.cartridge_id,
            "confidence": self.confidence,
            "signals": self.signals.to_dict(),
            "rationale": self.rationale,
        }


@dataclass(frozen=True)
class RoutingResult:
    """Routing decision for one request. Never mutated after return."""

    primary: str
    overlays: tuple[str, ...] = ()
    safety_overlays: tuple[str, ...] = ()  # Subset of overlays
    deliverable_guess: str = "answer"
    confidence: float = 0.0
    matches: tuple[CartridgeMatch, ...] = ()

    def to_dict(self) -> dict:
        return {
            "primary": self.primary,
            "overlays": list(self.overlays),
            "safety_overlays": list(self.safety_overlays),
            "deliverable_guess": self.deliverable_guess,
            "confidence": self.confidence,
            "matches": [m.to_dict() for m in self.matches],
        }


@dataclass(frozen=True)
class ResolvedConflict:
    """Audit entry: which cartridge won a merged property, and why."""

    property: str
    winner: str
    reason: str


@dataclass(frozen=True)
class ComposedCartridge:
    """Merged policy handed to the rendering layer. Read-only."""

    id: str
    source_cartridges: tuple[str, ...]  # Application order, safety first
    precedence_order: tuple[str, ...]  # Merge walk order, primary first
    safety: SafetyPolicy
    style: Style
    templates: Templates
    deliverables: Deliverables
    rubrics: tuple[str, ...] = ()
    validators: tuple[str, ...] = ()
    conflicts_resolved: tuple[ResolvedConflict, ...] = ()
    created_at: str | None = None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "source_cartridges": list(self.source_cartridges),
            "precedence_order": list(self.precedence_order),
            "safety": self.safety.to_dict(),
            "style": self.style.to_dict(),
            "templates": self.templates.to_dict(),
            "deliverables": self.deliverables.to_dict(),
            "rubrics": list(self.rubrics),
            "validators": list(self.validators),
            "conflicts_resolved": [asdict(c) for c in self.conflicts_resolved],
            "created_at": self.created_at,
        }


# =============================================================================
# USER PROFILE
# =============================================================================


@dataclass
class OverrideRecord:
    """A user's correction of an automatic routing decision."""

    timestamp: str
    session_id: str
    original_routing: Dict[str, Any]  # RoutingResult.to_dict()
    user_choice: Dict[str, Any]  # primary, overlays, deliverable
    text_context: str = ""
    satisfaction_feedback: int | None = None  # 1-5 rating

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class UserProfile:
    """Learned per-user preferences. The router only reads these."""

    user_id: str
    domain_preferences: Dict[str, float] = field(default_factory=dict)
    deliverable_preferences: Dict[str, float] = field(default_factory=dict)
    style_preferences: Dict[str, float] = field(default_factory=dict)
    overrides: list[OverrideRecord] = field(default_factory=list)
    typical_domains: list[str] = field(default_factory=list)
    common_overlays: list[str] = field(default_factory=list)
    risk_tolerance: RiskTolerance = RiskTolerance.BALANCED

    def to_dict(self) -> dict:
        return {
            "user_id": self.user_id,
            "domain_preferences": dict(self.domain_preferences),
            "deliverable_preferences": dict(self.deliverable_preferences),
            "style_preferences": dict(self.style_preferences),
            "overrides": [o.to_dict() for o in self.overrides],
            "typical_domains": list(self.typical_domains),
            "common_overlays": list(self.common_overlays),
            "risk_tolerance": self.risk_tolerance.value
            if isinstance(self.risk_tolerance, RiskTolerance)
            else self.risk_tolerance,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "UserProfile":
        return cls(
            user_id=data["user_id"],
            domain_preferences=dict(data.get("domain_preferences") or {}),
            deliverable_preferences=dict(data.get("deliverable_preferences") or {}),
            style_preferences=dict(data.get("style_preferences") or {}),
            overrides=[OverrideRecord(**o) for o in data.get("overrides") or []],
            typical_domains=list(data.get("typical_domains") or []),
            common_overlays=list(data.get("common_overlays") or []),
            risk_tolerance=RiskTolerance(data.get("risk_tolerance") or "balanced"),
        )
