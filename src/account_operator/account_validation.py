"""Validation of pool accounts: organizational placement and ownership tag.

Checks run in a fixed order and the first failure ends the pass:

1. Origin eligibility (not BYOC, owned by an account pool, Ready)
2. A cloud account id is assigned
3. Membership in the pool OU, moving the account when enabled
4. The owner tag matches the shard name, retagging when enabled

Moves and retags are gated by feature flags from the operator ConfigMap.
With a flag off the intended mutation is logged and nothing changes.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from enum import Enum
from typing import Any

from botocore.exceptions import ClientError

from . import account_state
from .account_provisioning import OWNER_TAG_KEY, tag_account
from .aws import log_aws_error, log_security_audit_event
from .config import CONTROLLER_ACCOUNT_VALIDATION, OperatorSettings
from .models import Account
from .reconciler import ReconcileResult, Reconciler

logger = logging.getLogger(__name__)

# AWS Organizations allows five levels of OUs below the root
MAX_OU_DEPTH = 5
MOVE_WAIT_SECONDS = 300


class ValidationErrorType(str, Enum):
    INVALID_ACCOUNT = "InvalidAccount"
    MISSING_AWS_ACCOUNT = "MissingAWSAccount"
    ACCOUNT_MOVE_FAILED = "AccountMoveFailed"
    MISSING_TAG = "MissingTag"
    INCORRECT_OWNER_TAG = "IncorrectOwnerTag"
    ACCOUNT_TAG_FAILED = "AccountTagFailed"


class AccountValidationError(Exception):
    """A classified validation failure."""

    def __init__(self, error_type: ValidationErrorType, message: str) -> None:
        super().__init__(message)
        self.error_type = error_type


class OrganizationTreeError(Exception):
    """Raised when the parent chain does not form a simple path."""

    pass


def parents_till_predicate(
    organizations: Any,
    child_id: str,
    predicate: Callable[[str], bool],
    max_depth: int = MAX_OU_DEPTH + 1,
) -> tuple[list[str], bool]:
    """Walk up the parent chain until a parent satisfies the predicate.

    Args:
        organizations: Organizations client.
        child_id: Account or OU id to start from.
        predicate: Test applied to every parent id.
        max_depth: Maximum number of hops before giving up.

    Returns:
        The parent ids visited, in order, and whether the predicate matched.
        Zero parents at some level ends the walk without a match.

    Raises:
        OrganizationTreeError: More than one parent at any level, or the
            walk exceeded ``max_depth``.
        ClientError: If listing parents fails.
    """
    parents: list[str] = []
    current = child_id
    for _ in range(max_depth):
        response = organizations.list_parents(ChildId=current)
        found = response.get("Parents", [])
        if not found:
            logger.info(
                "Exhausted search looking for target OU",
                extra={"child_id": child_id, "path": parents},
            )
            return parents, False
        if len(found) > 1:
            raise OrganizationTreeError(f"More than 1 parent found for id {current}")

        parent_id = found[0]["Id"]
        parents.append(parent_id)
        if predicate(parent_id):
            return parents, True
        current = parent_id

    raise OrganizationTreeError(
        f"Parent chain of {child_id} exceeds {max_depth} levels: {parents}"
    )


def is_account_in_ou(
    organizations: Any, account_id: str, predicate: Callable[[str], bool]
) -> bool:
    """True if some ancestor of the account satisfies the predicate."""
    if not account_id:
        return False
    _, matched = parents_till_predicate(organizations, account_id, predicate)
    return matched


def move_account(
    organizations: Any,
    account_id: str,
    target_ou: str,
    move_enabled: bool,
    audit_enabled: bool = True,
) -> None:
    """Move an account from its current parent to ``target_ou``.

    With ``move_enabled`` false only the intent is logged.

    Raises:
        ClientError: If listing parents or moving fails.
    """
    response = organizations.list_parents(ChildId=account_id)
    parents = response.get("Parents", [])
    if len(parents) != 1:
        raise OrganizationTreeError(
            f"Expected exactly one parent for account {account_id}, found {len(parents)}"
        )
    old_ou = parents[0]["Id"]

    context = {"aws_account_id": account_id, "old_ou": old_ou, "new_ou": target_ou}
    if not move_enabled:
        logger.info("Not moving account to pool OU (dry run)", extra=context)
        if audit_enabled:
            log_security_audit_event(
                "account_move", CONTROLLER_ACCOUNT_VALIDATION, account_id, "MoveAccount", "dry_run"
            )
        return

    logger.info("Moving account to pool OU", extra=context)
    organizations.move_account(
        AccountId=account_id,
        SourceParentId=old_ou,
        DestinationParentId=target_ou,
    )
    if audit_enabled:
        log_security_audit_event(
            "account_move", CONTROLLER_ACCOUNT_VALIDATION, account_id, "MoveAccount", "success"
        )


def validate_account_tags(
    organizations: Any,
    account_id: str,
    expected_owner: str,
    tag_enabled: bool,
    audit_enabled: bool = True,
) -> None:
    """Check the owner tag and repair it when tagging is enabled.

    Raises:
        AccountValidationError: MISSING_TAG or INCORRECT_OWNER_TAG when tagging
            is disabled, ACCOUNT_TAG_FAILED when a repair call fails.
        ClientError: If listing tags fails.
    """
    response = organizations.list_tags_for_resource(ResourceId=account_id)
    owner = None
    for tag in response.get("Tags", []):
        if tag["Key"] == OWNER_TAG_KEY:
            owner = tag["Value"]
            break

    if owner == expected_owner:
        return

    if not tag_enabled:
        if owner is None:
            raise AccountValidationError(
                ValidationErrorType.MISSING_TAG, "Account is not tagged with an owner"
            )
        raise AccountValidationError(
            ValidationErrorType.INCORRECT_OWNER_TAG,
            f"Account is not tagged with the correct owner, has {owner}; want {expected_owner}",
        )

    try:
        if owner is not None:
            organizations.untag_resource(ResourceId=account_id, TagKeys=[OWNER_TAG_KEY])
        tag_account(organizations, account_id, expected_owner)
    except ClientError as e:
        log_aws_error(logger, "Unable to tag account owner", e, aws_account_id=account_id)
        raise AccountValidationError(
            ValidationErrorType.ACCOUNT_TAG_FAILED, f"Unable to tag account: {e}"
        ) from e

    if audit_enabled:
        log_security_audit_event(
            "account_tag", CONTROLLER_ACCOUNT_VALIDATION, account_id, "TagResource", "success"
        )


def validate_account_origin(account: Account) -> None:
    """Only Ready pool accounts that are not BYOC are validated."""
    if account_state.is_byoc(account):
        raise AccountValidationError(
            ValidationErrorType.INVALID_ACCOUNT, "Account is a CCS account"
        )
    if not account_state.is_owned_by_account_pool(account):
        raise AccountValidationError(
            ValidationErrorType.INVALID_ACCOUNT, "Account is not in an account pool"
        )
    if not account_state.is_ready(account):
        raise AccountValidationError(
            ValidationErrorType.INVALID_ACCOUNT, "Account is not in a ready state"
        )


def validate_aws_account_id(account: Account) -> None:
    if not account_state.has_account_id(account):
        raise AccountValidationError(
            ValidationErrorType.MISSING_AWS_ACCOUNT, "Account has no associated AWS account"
        )


class AccountValidationReconciler(Reconciler):
    """Validates OU placement and owner tags of pool accounts."""

    controller_name = CONTROLLER_ACCOUNT_VALIDATION
    kind = "Account"

    def validate_account_ou(
        self, organizations: Any, account: Account, pool_ou: str, move_enabled: bool
    ) -> None:
        account_id = account.spec.aws_account_id
        try:
            in_pool = is_account_in_ou(organizations, account_id, lambda ou: ou == pool_ou)
        except (ClientError, OrganizationTreeError) as e:
            logger.warning(
                "Could not determine OU membership",
                extra={**self.log_context(account), "error": str(e)},
            )
            in_pool = False

        if in_pool:
            logger.info("Account is already in the pool OU", extra=self.log_context(account))
            return

        logger.info(
            "Account is not in the pool OU - it will be moved", extra=self.log_context(account)
        )
        try:
            move_account(organizations, account_id, pool_ou, move_enabled, self._audit_enabled)
        except (ClientError, OrganizationTreeError) as e:
            log_aws_error(logger, "Could not move account", e, **self.log_context(account))
            raise AccountValidationError(
                ValidationErrorType.ACCOUNT_MOVE_FAILED, f"Could not move account: {e}"
            ) from e

    def reconcile(  # type: ignore[override]
        self, resource: Account, settings: OperatorSettings
    ) -> ReconcileResult:
        account = resource
        try:
            validate_account_origin(account)
            validate_aws_account_id(account)
        except AccountValidationError as e:
            logger.info(
                "Skipping account validation",
                extra={**self.log_context(account), "reason": str(e)},
            )
            return ReconcileResult.done(account)

        move_enabled = settings.move_account_enabled and not self._dry_run
        tag_enabled = settings.tag_account_enabled and not self._dry_run
        logger.info(
            "Validating account",
            extra={
                **self.log_context(account),
                "move_enabled": move_enabled,
                "tag_enabled": tag_enabled,
            },
        )

        organizations = self.client_builder(settings).operator_clients().organizations

        try:
            self.validate_account_ou(organizations, account, settings.root_ou_id, move_enabled)
        except AccountValidationError as e:
            if e.error_type == ValidationErrorType.ACCOUNT_MOVE_FAILED:
                return ReconcileResult.after(account, MOVE_WAIT_SECONDS)
            raise

        if not settings.shard_name:
            logger.info(
                "No shard-name configured - skipping owner tag validation",
                extra=self.log_context(account),
            )
            return ReconcileResult.done(account)

        try:
            validate_account_tags(
                organizations,
                account.spec.aws_account_id,
                settings.shard_name,
                tag_enabled,
                self._audit_enabled,
            )
        except AccountValidationError as e:
            logger.error(
                str(e),
                extra={**self.log_context(account), "validation_error": e.error_type.value},
            )
            raise

        return ReconcileResult.done(account)
