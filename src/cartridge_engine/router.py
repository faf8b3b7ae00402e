"""
Domain Router (weighted-1.0)

Weighted multi-signal routing of free-form text to a primary cartridge.

Routing Algorithm:
1. Extract features (keywords, entities, units, doc shape, citations, files)
2. Score every registered cartridge:
   - Keywords:        40% (base 0.3 on any match, +0.2 per match up to +0.6,
                           +0.3 * match ratio for cartridges with <= 5 keywords)
   - Unit regex:      20% (binary)
   - Document shape:  20% (binary)
   - File extensions: 10% (fraction of request extensions the cartridge declares)
   - User preference: 10% (profile domain preference)
   The sum is scaled by priority / 100 and clamped to [0, 1].
3. Keep matches above MATCH_FLOOR, sorted by confidence
4. Primary = first match above PRIMARY_THRESHOLD, else best match, else "general"
5. Detect overlays from academic/executive/patent/software signals
6. Union in the mandatory safety overlays for the primary
7. Guess the deliverable from doc shape or the primary's default

The weights and thresholds were chosen empirically; they are module constants
and can be overridden per router through config.
"""

import logging
import re
from typing import Any, Dict, List, Optional, Tuple

from cartridge_engine.config import ConfigurationError
from cartridge_engine.features import FeatureExtractor
from cartridge_engine.models import (
    Cartridge,
    CartridgeMatch,
    DocShape,
    DomainFeatures,
    MatchSignals,
    RoutingResult,
    UserProfile,
)
from cartridge_engine.registry import CartridgeRegistry
from cartridge_engine.routing_engine import (
    FeatureSpec,
    RoutingEngine,
    register_engine,
    set_default_engine,
)

logger = logging.getLogger(__name__)

ENGINE_VERSION = "weighted-1.0"

# Signal weights
KEYWORD_WEIGHT = 0.40
UNIT_WEIGHT = 0.20
STRUCTURE_WEIGHT = 0.20
FILE_WEIGHT = 0.10
PREFERENCE_WEIGHT = 0.10

# Keyword sub-score
KEYWORD_BASE_SCORE = 0.3
KEYWORD_PER_MATCH = 0.2
KEYWORD_MATCH_CAP = 0.6
SMALL_CATALOG_SIZE = 5
SMALL_CATALOG_BONUS = 0.3

# Thresholds
PRIMARY_THRESHOLD = 0.2
MATCH_FLOOR = 0.05
PROFILE_OVERLAY_THRESHOLD = 0.7

FALLBACK_CARTRIDGE = "general"
FALLBACK_DELIVERABLE = "answer"

DEFAULT_WEIGHTS = {
    "keyword": KEYWORD_WEIGHT,
    "unit": UNIT_WEIGHT,
    "structure": STRUCTURE_WEIGHT,
    "file": FILE_WEIGHT,
    "preference": PREFERENCE_WEIGHT,
}

DEFAULT_THRESHOLDS = {
    "primary": PRIMARY_THRESHOLD,
    "match_floor": MATCH_FLOOR,
    "profile_overlay": PROFILE_OVERLAY_THRESHOLD,
}

DEFAULT_FEATURES = {
    'synonym_matching': True,
    'small_catalog_bonus': True,
    'overlay_detection': True,
    'profile_boost': True,
}

# Words treated as equivalent during keyword matching
KEYWORD_SYNONYMS = [
    {'catalyst', 'catalytic'},
    {'stability', 'stable'},
    {'analysis', 'analyze', 'assess'},
    {'variable', 'parameter'},
    {'control', 'controls'},
]

# Overlay detection signals
PHD_RESEARCH_OVERLAY = "phd_research"
EXECUTIVE_OVERLAY = "executive"
PATENT_OVERLAY = "patent_examiner"
SOFTWARE_OVERLAY = "software_engineering"

EXECUTIVE_KEYWORDS = {'budget', 'roi', 'strategy', 'summary'}
PATENT_KEYWORDS = {'patent', 'invention', 'novel', 'claim'}
CODE_FILE_EXTENSIONS = {'py', 'js', 'ts', 'java', 'cpp'}


def _clamp(value: float, low: float = 0.0, high: float = 1.0) -> float:
    return max(low, min(high, value))


def _dedupe(items) -> tuple:
    seen = set()
    result = []
    for item in items:
        if item not in seen:
            seen.add(item)
            result.append(item)
    return tuple(result)


@register_engine(ENGINE_VERSION)
class DomainRouter(RoutingEngine):
    """
    Weighted multi-signal cartridge router.

    Never raises from route(); unmatched or failing input degrades to the
    "general" fallback with confidence 0.
    """

    def __init__(
        self,
        registry: CartridgeRegistry,
        features: Optional[Dict[str, bool]] = None,
        weights: Optional[Dict[str, float]] = None,
        thresholds: Optional[Dict[str, float]] = None,
        extractor: Optional[FeatureExtractor] = None,
    ):
        """
        Args:
            registry: Catalog to score against
            features: Feature flag overrides (see get_available_features)
            weights: Signal weight overrides (keyword, unit, structure, file, preference)
            thresholds: Threshold overrides (primary, match_floor, profile_overlay)
            extractor: Feature extractor (default FeatureExtractor())

        Raises:
            ConfigurationError: If a weight or threshold name is unknown
        """
        super().__init__(registry)
        self.extractor = extractor or FeatureExtractor()
        self.features = {**DEFAULT_FEATURES, **(features or {})}
        self.weights = self._merge_numeric("weight", DEFAULT_WEIGHTS, weights)
        self.thresholds = self._merge_numeric("threshold", DEFAULT_THRESHOLDS, thresholds)

        feature_str = ", ".join(f"{k}={v}" for k, v in self.features.items())
        logger.info(f"DomainRouter initialized (version: {self.version}, features: {feature_str})")

    @staticmethod
    def _merge_numeric(kind: str, defaults: Dict[str, float], overrides: Optional[Dict]) -> Dict[str, float]:
        merged = dict(defaults)
        for name, value in (overrides or {}).items():
            if name not in defaults:
                raise ConfigurationError(
                    f"Unknown routing {kind} '{name}'. Available: {sorted(defaults)}"
                )
            try:
                merged[name] = float(value)
            except (TypeError, ValueError):
                raise ConfigurationError(f"Routing {kind} '{name}' must be a number, got {value!r}")
        return merged

    @property
    def version(self) -> str:
        return ENGINE_VERSION

    @property
    def description(self) -> str:
        return "Weighted keyword/unit/structure/file scoring with mandatory safety overlays"

    @classmethod
    def get_available_features(cls) -> List[FeatureSpec]:
        return [
            FeatureSpec(
                name="synonym_matching",
                description="Treat small synonym groups (catalyst/catalytic, ...) as keyword matches",
                default=True,
                category="scoring"
            ),
            FeatureSpec(
                name="small_catalog_bonus",
                description="Bonus for high match ratio on cartridges with few activator keywords",
                default=True,
                category="scoring"
            ),
            FeatureSpec(
                name="overlay_detection",
                description="Detect academic/executive/patent/software overlays from request signals",
                default=True,
                category="routing"
            ),
            FeatureSpec(
                name="profile_boost",
                description="Let user profile preferences nudge scores and append common overlays",
                default=True,
                category="routing"
            ),
        ]

    def route(
        self,
        text: str,
        files: Optional[List[Dict[str, Any]]] = None,
        user_profile: Optional[UserProfile] = None,
        context: Optional[Dict[str, Any]] = None,
    ) -> RoutingResult:
        """
        Route a request to a primary cartridge plus overlays.

        Returns:
            RoutingResult; the "general" fallback with confidence 0 when nothing matches
        """
        try:
            features = self.extractor.extract(text, files, context)
            return self.route_features(features, user_profile)
        except Exception as e:
            logger.error(f"Routing failed, using fallback: {e}", exc_info=True)
            return RoutingResult(
                primary=FALLBACK_CARTRIDGE,
                deliverable_guess=FALLBACK_DELIVERABLE,
                confidence=0.0,
            )

    def route_features(
        self,
        features: DomainFeatures,
        user_profile: Optional[UserProfile] = None,
    ) -> RoutingResult:
        """Route from already-extracted features."""
        catalog = self.registry.snapshot()
        profile = user_profile if self.features.get('profile_boost', True) else None

        matches = self.score_cartridges(list(catalog.values()), features, profile)

        primary_match = next(
            (m for m in matches if m.confidence > self.thresholds["primary"]),
            matches[0] if matches else None,
        )
        if primary_match is None:
            logger.info("No cartridge matched, falling back to general")
            primary = FALLBACK_CARTRIDGE
            confidence = 0.0
        else:
            primary = primary_match.cartridge_id
            confidence = primary_match.confidence

        overlays: List[str] = []
        if self.features.get('overlay_detection', True):
            overlays = [o for o in self.detect_overlays(features) if o != primary]

        safety_overlays = tuple(self.registry.get_mandatory_safety_overlays(primary))
        all_overlays = list(_dedupe([*overlays, *safety_overlays]))

        if profile is not None and primary_match is not None:
            # Scoring weighted the preference at 0.1; the overall confidence also takes the
            # primary's full preference, so matches[0].confidence keeps the scored value.
            confidence = _clamp(confidence + profile.domain_preferences.get(primary, 0.0))
            if confidence > self.thresholds["profile_overlay"]:
                for overlay in profile.common_overlays:
                    if overlay != primary and overlay not in all_overlays:
                        all_overlays.append(overlay)

        deliverable = self.guess_deliverable(features, catalog.get(primary))

        result = RoutingResult(
            primary=primary,
            overlays=tuple(all_overlays),
            safety_overlays=safety_overlays,
            deliverable_guess=deliverable,
            confidence=confidence,
            matches=tuple(matches) if primary_match is not None else (),
        )
        logger.info(
            f"Routed to {primary} (confidence {confidence:.3f}, "
            f"overlays: {list(result.overlays)}, deliverable: {deliverable})"
        )
        return result

    def score_cartridges(
        self,
        cartridges: List[Cartridge],
        features: DomainFeatures,
        user_profile: Optional[UserProfile] = None,
    ) -> List[CartridgeMatch]:
        """Score all cartridges, drop those under the floor, sort best first."""
        logger.debug(
            f"Scoring {len(cartridges)} cartridges for features: "
            f"keywords={list(features.keywords[:5])}, units={list(features.units_detected)}, "
            f"doc_shape={features.doc_shape.value}"
        )

        scored: List[Tuple[CartridgeMatch, Cartridge]] = []
        for cartridge in cartridges:
            match = self.score_cartridge(cartridge, features, user_profile)
            logger.debug(f"{cartridge.id}: {match.confidence:.3f} - {match.rationale}")
            if match.confidence > self.thresholds["match_floor"]:
                scored.append((match, cartridge))

        # Ties: higher priority first, then id for determinism
        scored.sort(key=lambda pair: (-pair[0].confidence, -pair[1].priority, pair[1].id))
        return [match for match, _ in scored]

    def score_cartridge(
        self,
        cartridge: Cartridge,
        features: DomainFeatures,
        user_profile: Optional[UserProfile] = None,
    ) -> CartridgeMatch:
        activators = cartridge.activators
        score = 0.0

        keyword_score, keyword_matches = self._score_keywords(activators.keywords, features.keywords)
        score += keyword_score * self.weights["keyword"]

        unit_matches: Tuple[str, ...] = ()
        if activators.units_regex:
            unit_score, unit_matches = self._score_units(
                cartridge.id, activators.units_regex, features.units_detected
            )
            score += unit_score * self.weights["unit"]

        structure_matches: Tuple[str, ...] = ()
        if features.doc_shape.value in activators.doc_shapes:
            score += self.weights["structure"]
            structure_matches = (features.doc_shape.value,)

        file_matches: Tuple[str, ...] = ()
        if activators.file_extensions:
            file_score, file_matches = self._score_file_extensions(
                activators.file_extensions, features.file_extensions
            )
            score += file_score * self.weights["file"]

        if user_profile is not None:
            score += user_profile.domain_preferences.get(cartridge.id, 0.0) * self.weights["preference"]

        score *= cartridge.priority / 100
        confidence = _clamp(score)

        signals = MatchSignals(
            keyword_matches=keyword_matches,
            unit_matches=unit_matches,
            structure_matches=structure_matches,
            file_matches=file_matches,
        )
        return CartridgeMatch(
            cartridge_id=cartridge.id,
            confidence=confidence,
            signals=signals,
            rationale=self._generate_rationale(signals, confidence),
        )

    def _score_keywords(self, cartridge_keywords, text_keywords) -> Tuple[float, Tuple[str, ...]]:
        matches = []
        for ckw in cartridge_keywords:
            ckw_lower = ckw.lower()
            for tkw in text_keywords:
                if self._keywords_match(ckw_lower, tkw.lower()):
                    matches.append(ckw)
                    break

        score = 0.0
        if matches:
            score = KEYWORD_BASE_SCORE
            score += min(len(matches) * KEYWORD_PER_MATCH, KEYWORD_MATCH_CAP)
            if self.features.get('small_catalog_bonus', True) and len(cartridge_keywords) <= SMALL_CATALOG_SIZE:
                score += (len(matches) / len(cartridge_keywords)) * SMALL_CATALOG_BONUS

        return min(score, 1.0), tuple(matches)

    def _keywords_match(self, cartridge_keyword: str, text_keyword: str) -> bool:
        if not cartridge_keyword or not text_keyword:
            return False
        if cartridge_keyword in text_keyword or text_keyword in cartridge_keyword:
            return True
        if self.features.get('synonym_matching', True):
            return any(
                cartridge_keyword in group and text_keyword in group
                for group in KEYWORD_SYNONYMS
            )
        return False

    def _score_units(self, cartridge_id: str, units_regex: str, detected_units) -> Tuple[float, Tuple[str, ...]]:
        try:
            pattern = re.compile(units_regex, re.IGNORECASE)
        except re.error as e:
            logger.warning(f"Ignoring invalid units_regex on {cartridge_id}: {e}")
            return 0.0, ()
        matches = tuple(unit for unit in detected_units if pattern.search(unit))
        return (1.0 if matches else 0.0), matches

    def _score_file_extensions(self, cartridge_exts, file_exts) -> Tuple[float, Tuple[str, ...]]:
        matches = tuple(ext for ext in file_exts if ext in cartridge_exts)
        return len(matches) / max(len(file_exts), 1), matches

    def detect_overlays(self, features: DomainFeatures) -> List[str]:
        """Overlay ids suggested by request signals, independent of scoring."""
        overlays = []
        labels = features.entity_labels()
        words = set(features.words) | set(features.keywords)

        if (features.doc_shape == DocShape.IMRAD
                or 'academic' in features.citation_patterns
                or 'ACADEMIC' in labels):
            overlays.append(PHD_RESEARCH_OVERLAY)

        if words & EXECUTIVE_KEYWORDS:
            overlays.append(EXECUTIVE_OVERLAY)

        if words & PATENT_KEYWORDS:
            overlays.append(PATENT_OVERLAY)

        if 'SOFTWARE' in labels or set(features.file_extensions) & CODE_FILE_EXTENSIONS:
            overlays.append(SOFTWARE_OVERLAY)

        return overlays

    def guess_deliverable(self, features: DomainFeatures, primary: Optional[Cartridge]) -> str:
        if features.doc_shape == DocShape.OUTLINE:
            return "outline"
        if features.doc_shape == DocShape.MEMO:
            return "memo"
        if primary is not None and primary.deliverables.default:
            return primary.deliverables.default
        return FALLBACK_DELIVERABLE

    @staticmethod
    def _generate_rationale(signals: MatchSignals, confidence: float) -> str:
        reasons = []

        if signals.keyword_matches:
            reasons.append(f"Keywords: {', '.join(signals.keyword_matches[:3])}")
        if signals.unit_matches:
            reasons.append(f"Units: {', '.join(signals.unit_matches[:2])}")
        if signals.structure_matches:
            reasons.append(f"Structure: {', '.join(signals.structure_matches)}")
        if signals.file_matches:
            reasons.append(f"Files: {', '.join(signals.file_matches)}")

        if confidence > 0.8:
            confidence_text = "High confidence"
        elif confidence > 0.5:
            confidence_text = "Medium confidence"
        else:
            confidence_text = "Low confidence"

        if reasons:
            return f"{confidence_text}: {'; '.join(reasons)}"
        return f"{confidence_text}: general language patterns"


set_default_engine(ENGINE_VERSION)
