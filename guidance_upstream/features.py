"""Feature extraction for upstream learning.

Derives the hint dependency index (HDI) and episode outcome signals
from a learner's interaction history. Everything here is a pure
function of the events passed in.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Iterable, Sequence

from guidance_kernel.events import EventType, InteractionEvent

HDI_VERSION = "hdi-calculator-v1"

_HDI_WEIGHTS = {
    "hpa": 0.3,
    "aed": 0.133,
    "er": 0.3,
    "reae": 0.133,
    "iwh": 0.134,
}

_HINT_REQUEST_TYPES = (EventType.HINT_REQUEST,)
_HINT_USE_TYPES = (EventType.HINT_REQUEST, EventType.HINT_VIEW)


@dataclass(frozen=True)
class HDIComponents:
    """Hint dependency sub-metrics, each in [0, 1].

    hpa:  hint requests per execution attempt
    aed:  average hint level, level 1 -> 0 and level 3 -> 1
    er:   explanation views per execution attempt
    reae: share of errors made after an explanation was seen
    iwh:  share of solved problems solved without any hint
    """

    hpa: float = 0.0
    aed: float = 0.0
    er: float = 0.0
    reae: float = 0.0
    iwh: float = 0.0

    def to_dict(self) -> dict[str, float]:
        return {"hpa": self.hpa, "aed": self.aed, "er": self.er, "reae": self.reae, "iwh": self.iwh}


def _count(events: Sequence[InteractionEvent], types: tuple[EventType, ...]) -> int:
    return sum(1 for e in events if e.event_type in types)


def _per_attempt(events: Sequence[InteractionEvent], types: tuple[EventType, ...]) -> float:
    attempts = _count(events, (EventType.EXECUTION,))
    if attempts == 0:
        return 0.0
    return min(_count(events, types) / attempts, 1.0)


def hints_per_attempt(events: Sequence[InteractionEvent]) -> float:
    return _per_attempt(events, _HINT_REQUEST_TYPES)


def average_escalation_depth(events: Sequence[InteractionEvent]) -> float:
    levels = [e.hint_level for e in events if e.event_type in _HINT_USE_TYPES and e.hint_level is not None]
    if not levels:
        return 0.0
    average = sum(levels) / len(levels)
    return min(max((average - 1) / 2, 0.0), 1.0)


def explanation_rate(events: Sequence[InteractionEvent]) -> float:
    return _per_attempt(events, (EventType.EXPLANATION_VIEW,))


def repeated_error_after_explanation(events: Sequence[InteractionEvent]) -> float:
    explanation_seen = False
    total_errors = 0
    after = 0
    for event in sorted(events, key=lambda e: e.timestamp):
        if event.event_type == EventType.EXPLANATION_VIEW:
            explanation_seen = True
        elif event.event_type == EventType.ERROR:
            total_errors += 1
            if explanation_seen:
                after += 1
    if total_errors == 0:
        return 0.0
    return after / total_errors


def improvement_without_hint(events: Sequence[InteractionEvent]) -> float:
    hinted: set[str] = set()
    solved: set[str] = set()
    solved_with_hint: set[str] = set()
    for event in sorted(events, key=lambda e: e.timestamp):
        if event.event_type in _HINT_USE_TYPES:
            hinted.add(event.problem_id)
        if event.event_type == EventType.EXECUTION and event.successful:
            solved.add(event.problem_id)
            if event.problem_id in hinted:
                solved_with_hint.add(event.problem_id)
    if not solved:
        return 0.0
    return (len(solved) - len(solved_with_hint)) / len(solved)


def hdi_components(events: Iterable[InteractionEvent]) -> HDIComponents:
    events = list(events)
    if not events:
        return HDIComponents()
    return HDIComponents(
        hpa=hints_per_attempt(events),
        aed=average_escalation_depth(events),
        er=explanation_rate(events),
        reae=repeated_error_after_explanation(events),
        iwh=improvement_without_hint(events),
    )


def calculate_hdi(events: Iterable[InteractionEvent]) -> tuple[float, HDIComponents]:
    """Hint dependency index in [0, 1]; higher means more reliance on hints.

    IWH enters inverted, so solving without hints lowers the index.
    """
    c = hdi_components(events)
    hdi = (
        c.hpa * _HDI_WEIGHTS["hpa"]
        + c.aed * _HDI_WEIGHTS["aed"]
        + c.er * _HDI_WEIGHTS["er"]
        + c.reae * _HDI_WEIGHTS["reae"]
        + (1 - c.iwh) * _HDI_WEIGHTS["iwh"]
    )
    return min(max(hdi, 0.0), 1.0), c


def hdi_level(hdi: float) -> str:
    if hdi < 0.3:
        return "low"
    if hdi <= 0.6:
        return "medium"
    return "high"


def episode_features(events: Sequence[InteractionEvent]) -> dict[str, Any]:
    """Raw per-episode signals used to build a LearningOutcome."""
    ordered = sorted(events, key=lambda e: e.timestamp)
    return {
        "solved": any(e.event_type == EventType.EXECUTION and e.successful for e in ordered),
        "used_explanation": any(e.event_type == EventType.EXPLANATION_VIEW for e in ordered),
        "error_count": _count(ordered, (EventType.ERROR,)),
        "time_spent_ms": ordered[-1].timestamp - ordered[0].timestamp if ordered else 0,
    }
