"""User Learning System

Learns per-user routing preferences from overrides and satisfaction ratings,
and applies them to later routing results.

Profiles are kept in memory. Persistence is the caller's concern: profiles
round-trip through UserProfile.to_dict()/from_dict() and can be seeded with
load_profile().

Usage:
    learning = UserLearningSystem()
    learning.record_override(
        "user-1", "session-1", routing,
        {"primary": "biology", "overlays": ["phd_research"], "deliverable": "analysis"},
        text_context="...",
    )
    routing = learning.apply_user_preferences("user-1", router.route(text))
"""

import dataclasses
import logging
import threading
from collections import Counter, defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from cartridge_engine.models import OverrideRecord, RoutingResult, UserProfile

logger = logging.getLogger(__name__)

MAX_OVERRIDES = 100
MAX_SIGNALS = 1000

# Preference adjustments per override
REJECTED_DOMAIN_DELTA = -0.1
CHOSEN_DOMAIN_DELTA = 0.2
CHOSEN_DELIVERABLE_DELTA = 0.15

DOMAIN_PREFERENCE_RANGE = (-0.5, 0.5)
DELIVERABLE_PREFERENCE_RANGE = (0.0, 1.0)

# Override feedback (negative = original routing was wrong)
DOMAIN_CHANGE_PENALTY = 0.3
REMOVED_OVERLAY_PENALTY = 0.1
ADDED_OVERLAY_PENALTY = 0.05
DELIVERABLE_CHANGE_PENALTY = 0.1

PROFILE_OVERLAY_THRESHOLD = 0.7
DELIVERABLE_SWAP_THRESHOLD = 0.3
SUGGESTED_DOMAIN_THRESHOLD = 0.1
SUGGESTED_DELIVERABLE_THRESHOLD = 0.2

RECENT_ACTIVITY_WINDOW = timedelta(hours=24)


def _clamp(value: float, bounds: tuple) -> float:
    low, high = bounds
    return max(low, min(high, value))


@dataclass
class LearningSignal:
    """One feedback observation used for aggregate analysis."""

    user_id: str
    signal_type: str  # override | satisfaction
    routing: Dict[str, Any]
    feedback_value: float
    context: Dict[str, Any] = field(default_factory=dict)
    timestamp: str = field(default_factory=lambda: datetime.now().isoformat())


def calculate_override_feedback(original: RoutingResult, chosen: Dict[str, Any]) -> float:
    """Score how wrong the original routing was. 0 means the user changed nothing."""
    feedback = 0.0

    if chosen.get("primary") != original.primary:
        feedback -= DOMAIN_CHANGE_PENALTY

    original_overlays = set(original.overlays)
    chosen_overlays = set(chosen.get("overlays") or [])
    feedback -= REMOVED_OVERLAY_PENALTY * len(original_overlays - chosen_overlays)
    feedback -= ADDED_OVERLAY_PENALTY * len(chosen_overlays - original_overlays)

    if chosen.get("deliverable") != original.deliverable_guess:
        feedback -= DELIVERABLE_CHANGE_PENALTY

    return round(feedback, 6)


class UserLearningSystem:
    """
    In-memory store of user profiles and learning signals.

    Thread Safety:
    - All profile mutations happen under one lock
    - apply_user_preferences() returns a new RoutingResult and never
      mutates its input
    """

    def __init__(self):
        self._profiles: Dict[str, UserProfile] = {}
        self._signals: List[LearningSignal] = []
        self._lock = threading.RLock()

    @property
    def signals(self) -> List[LearningSignal]:
        return list(self._signals)

    def get_profile(self, user_id: str) -> UserProfile:
        """Return the user's profile, creating an empty one on first use."""
        with self._lock:
            profile = self._profiles.get(user_id)
            if profile is None:
                profile = UserProfile(user_id=user_id)
                self._profiles[user_id] = profile
                logger.debug(f"Created profile for user {user_id}")
            return profile

    def load_profile(self, profile: UserProfile) -> None:
        """Seed or replace a stored profile."""
        with self._lock:
            self._profiles[profile.user_id] = profile

    def record_override(
        self,
        user_id: str,
        session_id: str,
        original_routing: RoutingResult,
        user_choice: Dict[str, Any],
        text_context: str = "",
        satisfaction: Optional[int] = None,
    ) -> OverrideRecord:
        """
        Record that a user replaced an automatic routing decision.

        Args:
            user_id: User identifier
            session_id: Session the override happened in
            original_routing: Routing the engine produced
            user_choice: {"primary": str, "overlays": [str], "deliverable": str}
            text_context: The request text
            satisfaction: Optional 1-5 rating

        Returns:
            The stored OverrideRecord
        """
        choice = {
            "primary": user_choice.get("primary", original_routing.primary),
            "overlays": list(user_choice.get("overlays") or []),
            "deliverable": user_choice.get("deliverable", original_routing.deliverable_guess),
        }
        record = OverrideRecord(
            timestamp=datetime.now().isoformat(),
            session_id=session_id,
            original_routing=original_routing.to_dict(),
            user_choice=choice,
            text_context=text_context,
            satisfaction_feedback=satisfaction,
        )

        with self._lock:
            profile = self.get_profile(user_id)
            profile.overrides.append(record)
            self._update_preferences(profile, original_routing, choice)
            if len(profile.overrides) > MAX_OVERRIDES:
                profile.overrides = profile.overrides[-MAX_OVERRIDES:]

            self._record_signal(LearningSignal(
                user_id=user_id,
                signal_type="override",
                routing=original_routing.to_dict(),
                feedback_value=calculate_override_feedback(original_routing, choice),
                context={"chosen": choice, "text": text_context},
            ))

        logger.info(f"Recorded override for user {user_id}: {original_routing.primary} → {choice['primary']}")
        return record

    def _update_preferences(self, profile: UserProfile, original: RoutingResult, choice: Dict[str, Any]) -> None:
        domains = profile.domain_preferences
        if choice["primary"] != original.primary:
            domains[original.primary] = domains.get(original.primary, 0.0) + REJECTED_DOMAIN_DELTA
            domains[choice["primary"]] = domains.get(choice["primary"], 0.0) + CHOSEN_DOMAIN_DELTA

        if choice["deliverable"] != original.deliverable_guess:
            deliverables = profile.deliverable_preferences
            deliverables[choice["deliverable"]] = (
                deliverables.get(choice["deliverable"], 0.0) + CHOSEN_DELIVERABLE_DELTA
            )

        if choice["primary"] not in profile.typical_domains:
            profile.typical_domains.append(choice["primary"])
        for overlay in choice["overlays"]:
            if overlay not in profile.common_overlays:
                profile.common_overlays.append(overlay)

        for domain, score in domains.items():
            domains[domain] = round(_clamp(score, DOMAIN_PREFERENCE_RANGE), 6)
        for deliverable, score in profile.deliverable_preferences.items():
            profile.deliverable_preferences[deliverable] = round(
                _clamp(score, DELIVERABLE_PREFERENCE_RANGE), 6
            )

    def record_satisfaction(
        self,
        user_id: str,
        routing: RoutingResult,
        score: int,
        context: Optional[Dict[str, Any]] = None,
    ) -> None:
        """
        Record a 1-5 satisfaction rating for a routing result.

        The most recent override whose original primary matches is updated.

        Raises:
            ValueError: If score is outside 1-5
        """
        if not 1 <= score <= 5:
            raise ValueError(f"Satisfaction score must be between 1 and 5, got {score}")

        with self._lock:
            profile = self.get_profile(user_id)
            for override in reversed(profile.overrides):
                if override.original_routing.get("primary") == routing.primary:
                    override.satisfaction_feedback = score
                    break

            self._record_signal(LearningSignal(
                user_id=user_id,
                signal_type="satisfaction",
                routing=routing.to_dict(),
                feedback_value=(score - 3) / 2,
                context=dict(context or {}),
            ))

        logger.info(f"User {user_id} satisfaction: {score}/5 for {routing.primary}")

    def _record_signal(self, signal: LearningSignal) -> None:
        self._signals.append(signal)
        if len(self._signals) > MAX_SIGNALS:
            self._signals = self._signals[-MAX_SIGNALS:]

    def apply_user_preferences(self, user_id: str, routing: RoutingResult) -> RoutingResult:
        """Return a copy of routing nudged by the user's learned preferences."""
        profile = self.get_profile(user_id)

        confidence = _clamp(
            routing.confidence + profile.domain_preferences.get(routing.primary, 0.0),
            (0.0, 1.0),
        )

        overlays = list(routing.overlays)
        if confidence > PROFILE_OVERLAY_THRESHOLD:
            for overlay in profile.common_overlays:
                if overlay not in overlays and overlay not in routing.safety_overlays:
                    overlays.append(overlay)

        deliverable = routing.deliverable_guess
        if profile.deliverable_preferences:
            preferred, pref_score = max(
                profile.deliverable_preferences.items(), key=lambda item: item[1]
            )
            if pref_score > DELIVERABLE_SWAP_THRESHOLD:
                deliverable = preferred

        return dataclasses.replace(
            routing,
            confidence=confidence,
            overlays=tuple(overlays),
            deliverable_guess=deliverable,
        )

    def get_personalized_suggestions(self, user_id: str) -> Dict[str, List[str]]:
        profile = self.get_profile(user_id)

        domains = sorted(
            (item for item in profile.domain_preferences.items() if item[1] > SUGGESTED_DOMAIN_THRESHOLD),
            key=lambda item: item[1],
            reverse=True,
        )
        deliverables = sorted(
            (item for item in profile.deliverable_preferences.items() if item[1] > SUGGESTED_DELIVERABLE_THRESHOLD),
            key=lambda item: item[1],
            reverse=True,
        )
        return {
            "preferred_domains": [name for name, _ in domains[:3]],
            "preferred_deliverables": [name for name, _ in deliverables[:3]],
            "common_overlays": profile.common_overlays[:5],
        }

    def analyze_learning_patterns(self) -> Dict[str, Any]:
        """
        Aggregate overrides across all users.

        Returns:
            popular_domains: [{domain, override_rate}] lowest override rate first
            common_override_patterns: [{from, to, frequency}] top 10
            satisfaction_by_domain: {domain: mean rating of overrides into it}
        """
        with self._lock:
            profiles = list(self._profiles.values())

        domain_totals: Counter = Counter()
        domain_overrides: Counter = Counter()
        patterns: Counter = Counter()
        ratings: Dict[str, List[int]] = defaultdict(list)

        for profile in profiles:
            domain_totals.update(profile.typical_domains)
            for override in profile.overrides:
                original = override.original_routing.get("primary")
                chosen = override.user_choice.get("primary")
                if original in domain_totals:
                    domain_overrides[original] += 1
                patterns[(original, chosen)] += 1
                if override.satisfaction_feedback:
                    ratings[chosen].append(override.satisfaction_feedback)

        popular = sorted(
            (
                {"domain": domain, "override_rate": domain_overrides[domain] / total}
                for domain, total in domain_totals.items()
            ),
            key=lambda entry: entry["override_rate"],
        )

        return {
            "popular_domains": popular,
            "common_override_patterns": [
                {"from": source, "to": target, "frequency": count}
                for (source, target), count in patterns.most_common(10)
            ],
            "satisfaction_by_domain": {
                domain: sum(values) / len(values) for domain, values in ratings.items()
            },
        }

    def get_stats(self) -> Dict[str, int]:
        with self._lock:
            profiles = list(self._profiles.values())
            signals = list(self._signals)

        cutoff = datetime.now() - RECENT_ACTIVITY_WINDOW
        return {
            "total_users": len(profiles),
            "total_overrides": sum(len(p.overrides) for p in profiles),
            "total_signals": len(signals),
            "recent_activity": sum(
                1 for s in signals if datetime.fromisoformat(s.timestamp) > cutoff
            ),
        }
