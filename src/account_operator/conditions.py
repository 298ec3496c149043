"""Status condition bookkeeping.

A resource keeps at most one condition per type. Re-observing the same
type, status and reason only refreshes ``last_probe_time``. Any change
rewrites the entry and moves ``last_transition_time``.
"""

from __future__ import annotations

from datetime import UTC, datetime

from .models import Condition, ConditionStatus


def find_condition(conditions: list[Condition], condition_type: str) -> Condition | None:
    for condition in conditions:
        if condition.type == condition_type:
            return condition
    return None


def set_condition(
    conditions: list[Condition],
    condition_type: str,
    status: ConditionStatus | bool,
    reason: str,
    message: str,
    now: datetime | None = None,
) -> list[Condition]:
    """Record an observation in a condition list.

    Args:
        conditions: Existing conditions (not mutated).
        condition_type: Condition type to update or add.
        status: Observed status.
        reason: Machine-readable reason.
        message: Human-readable message.
        now: Observation time, defaults to the current UTC time.

    Returns:
        A new list holding exactly one entry for ``condition_type``.
    """
    if isinstance(status, bool):
        status = ConditionStatus.TRUE if status else ConditionStatus.FALSE
    now = now or datetime.now(UTC)

    updated: list[Condition] = []
    found = False
    for condition in conditions:
        if condition.type != condition_type:
            updated.append(condition)
            continue
        if found:
            # Collapse duplicates left by older writers
            continue
        found = True
        if condition.status == status and condition.reason == reason:
            updated.append(condition.model_copy(update={"last_probe_time": now}))
        else:
            updated.append(
                Condition(
                    type=condition_type,
                    status=status,
                    reason=reason,
                    message=message,
                    last_probe_time=now,
                    last_transition_time=now,
                )
            )

    if not found:
        updated.append(
            Condition(
                type=condition_type,
                status=status,
                reason=reason,
                message=message,
                last_probe_time=now,
                last_transition_time=now,
            )
        )
    return updated
