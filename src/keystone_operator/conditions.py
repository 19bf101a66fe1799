"""
Condition aggregation for Keystone resources.

A ``ConditionSet`` is built once per reconciliation from the conditions
already stored on the resource status. Stages record their outcome through
``set_true``/``set_false``/``set_unknown`` and the reconciler calls
``recompute_ready`` exactly once, on the way out, to fold the tracked
sub-conditions into the aggregate ``Ready`` condition.

Conditions are plain dicts so they can be written to ``patch.status``
without conversion::

    {
        "type": "DBReady",
        "status": "False",
        "reason": "Requested",
        "severity": "Info",
        "message": "DB waiting for dependency",
        "lastTransitionTime": "2024-01-01T00:00:00+00:00",
        "observedGeneration": 3,
    }
"""

from collections.abc import Callable, Iterable
from datetime import UTC, datetime
from typing import Any

from keystone_operator.constants import (
    CONDITION_FALSE,
    CONDITION_READY,
    CONDITION_TRUE,
    CONDITION_UNKNOWN,
    MESSAGE_INIT,
    MESSAGE_READY,
    REASON_INIT,
    REASON_READY,
    SEVERITY_ORDER,
)


def _utcnow() -> str:
    return datetime.now(UTC).isoformat()


class ConditionSet:
    """Tracked sub-conditions plus the aggregate Ready condition."""

    def __init__(
        self,
        tracked: Iterable[str],
        existing: Iterable[dict[str, Any]] | None = None,
        generation: int = 0,
        clock: Callable[[], str] = _utcnow,
    ):
        """
        Args:
            tracked: Sub-condition types folded into Ready, in precedence order
            existing: Conditions currently stored on the resource status
            generation: metadata.generation of the resource being reconciled
            clock: Returns the timestamp used for new transitions
        """
        self.tracked = tuple(tracked)
        self.generation = generation
        self._clock = clock
        self._conditions: dict[str, dict[str, Any]] = {}
        for condition in existing or ():
            if condition.get("type"):
                self._conditions[condition["type"]] = dict(condition)
        # As loaded, so a pass that ends where it started keeps transition times
        self._stored = {t: dict(c) for t, c in self._conditions.items()}

    @property
    def is_empty(self) -> bool:
        """True when no tracked sub-condition has ever been recorded."""
        return not any(t in self._conditions for t in self.tracked)

    def init(self) -> None:
        """Seed every tracked sub-condition and Ready as Unknown."""
        for condition_type in (CONDITION_READY, *self.tracked):
            self._set(
                condition_type, CONDITION_UNKNOWN, REASON_INIT, "", MESSAGE_INIT
            )

    def reset(self) -> None:
        """
        Start a pass with every tracked sub-condition Unknown.

        Stages not reached in this pass stay Unknown instead of keeping an
        outcome computed for an older generation.
        """
        for condition_type in self.tracked:
            self._set(
                condition_type, CONDITION_UNKNOWN, REASON_INIT, "", MESSAGE_INIT
            )

    def get(self, condition_type: str) -> dict[str, Any] | None:
        condition = self._conditions.get(condition_type)
        return dict(condition) if condition else None

    def status_of(self, condition_type: str) -> str:
        condition = self._conditions.get(condition_type)
        return condition["status"] if condition else CONDITION_UNKNOWN

    def is_true(self, condition_type: str) -> bool:
        return self.status_of(condition_type) == CONDITION_TRUE

    def set_true(self, condition_type: str, message: str) -> None:
        self._set(condition_type, CONDITION_TRUE, REASON_READY, "", message)

    def set_false(
        self, condition_type: str, reason: str, severity: str, message: str
    ) -> None:
        self._set(condition_type, CONDITION_FALSE, reason, severity, message)

    def set_unknown(self, condition_type: str, reason: str, message: str) -> None:
        self._set(condition_type, CONDITION_UNKNOWN, reason, "", message)

    def remove(self, condition_type: str) -> None:
        self._conditions.pop(condition_type, None)

    def all_sub_conditions_true(self) -> bool:
        return all(self.is_true(t) for t in self.tracked)

    def recompute_ready(self) -> dict[str, Any]:
        """
        Fold the tracked sub-conditions into Ready.

        Ready is True only when every tracked sub-condition is True. When any
        is False, Ready mirrors the most severe False one (ties resolved by
        tracked order). Otherwise at least one is Unknown and Ready is Unknown.

        Returns:
            The resulting Ready condition
        """
        if self.all_sub_conditions_true():
            self._set(CONDITION_READY, CONDITION_TRUE, REASON_READY, "", MESSAGE_READY)
            return self._conditions[CONDITION_READY]

        failing = self._most_severe_false()
        if failing is not None:
            self._set(
                CONDITION_READY,
                CONDITION_FALSE,
                failing["reason"],
                failing.get("severity", ""),
                failing["message"],
            )
        else:
            self._set(
                CONDITION_READY, CONDITION_UNKNOWN, REASON_INIT, "", MESSAGE_INIT
            )
        return self._conditions[CONDITION_READY]

    def _most_severe_false(self) -> dict[str, Any] | None:
        best: dict[str, Any] | None = None
        best_rank = len(SEVERITY_ORDER)
        for condition_type in self.tracked:
            condition = self._conditions.get(condition_type)
            if not condition or condition["status"] != CONDITION_FALSE:
                continue
            severity = condition.get("severity", "")
            rank = (
                SEVERITY_ORDER.index(severity)
                if severity in SEVERITY_ORDER
                else len(SEVERITY_ORDER) - 1
            )
            if best is None or rank < best_rank:
                best, best_rank = condition, rank
        return best

    def _set(
        self,
        condition_type: str,
        status: str,
        reason: str,
        severity: str,
        message: str,
    ) -> None:
        transition_time = None
        for previous in (
            self._stored.get(condition_type),
            self._conditions.get(condition_type),
        ):
            if previous and previous.get("status") == status:
                transition_time = previous.get("lastTransitionTime")
                break
        if not transition_time:
            transition_time = self._clock()

        self._conditions[condition_type] = {
            "type": condition_type,
            "status": status,
            "reason": reason,
            "severity": severity,
            "message": message,
            "lastTransitionTime": transition_time,
            "observedGeneration": self.generation,
        }

    def to_list(self) -> list[dict[str, Any]]:
        """Serialize with Ready first, then tracked types, then anything else."""
        ordered = [CONDITION_READY, *self.tracked]
        result = [dict(self._conditions[t]) for t in ordered if t in self._conditions]
        result.extend(
            dict(c) for t, c in self._conditions.items() if t not in ordered
        )
        return result
