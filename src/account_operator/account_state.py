"""Pure predicates over an Account snapshot.

Every function here is side-effect free and performs no I/O. Compound
predicates are defined only in terms of the simple ones so each can be
checked against its boolean definition.
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

from .conditions import find_condition
from .models import FINALIZER, Account, AccountConditionType, AccountState


def has_state(account: Account) -> bool:
    return account.status.state is not None


def is_pending_verification(account: Account) -> bool:
    return account.status.state == AccountState.PENDING_VERIFICATION


def is_ready(account: Account) -> bool:
    return account.status.state == AccountState.READY


def is_failed(account: Account) -> bool:
    return account.status.state == AccountState.FAILED


def is_creating(account: Account) -> bool:
    return account.status.state == AccountState.CREATING


def is_claimed(account: Account) -> bool:
    return account.status.claimed


def has_claim_link(account: Account) -> bool:
    return account.spec.claim_link != ""


def is_pending_deletion(account: Account) -> bool:
    return account.metadata.deletion_timestamp is not None


def is_byoc(account: Account) -> bool:
    return account.spec.byoc


def has_finalizer(account: Account, finalizer: str = FINALIZER) -> bool:
    return finalizer in account.metadata.finalizers


def has_account_id(account: Account) -> bool:
    return account.spec.aws_account_id != ""


def has_support_case_id(account: Account) -> bool:
    return account.status.support_case_id != ""


def is_owned_by_account_pool(account: Account) -> bool:
    return account.spec.account_pool != ""


# Compound predicates


def is_ready_unclaimed_and_has_claim_link(account: Account) -> bool:
    return is_ready(account) and not is_claimed(account) and has_claim_link(account)


def is_byoc_pending_deletion_with_finalizer(account: Account) -> bool:
    return is_byoc(account) and is_pending_deletion(account) and has_finalizer(account)


def is_byoc_and_not_ready(account: Account) -> bool:
    return is_byoc(account) and not is_ready(account)


def ready_for_initialization(account: Account) -> bool:
    return (is_byoc(account) and not has_state(account)) or (
        not is_claimed(account) and is_creating(account)
    )


def is_unclaimed_and_has_no_state(account: Account) -> bool:
    return not is_claimed(account) and not has_state(account)


def is_unclaimed_and_is_creating(account: Account) -> bool:
    return not is_claimed(account) and is_creating(account)


def creation_stuck(
    account: Account, threshold: timedelta, now: datetime | None = None
) -> bool:
    """True iff a Creating condition was last probed more than ``threshold`` ago.

    The comparison is strict: an age exactly equal to the threshold is not stuck.
    A Creating condition without a probe time cannot be aged and is not stuck.
    """
    condition = find_condition(account.status.conditions, AccountConditionType.CREATING.value)
    if condition is None or condition.last_probe_time is None:
        return False
    probed = condition.last_probe_time
    if probed.tzinfo is None:
        probed = probed.replace(tzinfo=UTC)
    now = now or datetime.now(UTC)
    return now - probed > threshold
