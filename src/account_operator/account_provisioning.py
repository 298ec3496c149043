"""Account creation and ownership tagging through AWS Organizations.

Each pass issues at most one create call followed by exactly one status
check. Convergence across passes is driven by the reconciler re-reading the
persisted create request id, never by polling inside a single pass.
"""

from __future__ import annotations

import logging
from typing import Any

from botocore.exceptions import ClientError

from .aws import (
    ERROR_CONSTRAINT_VIOLATION,
    ERROR_SERVICE,
    ERROR_TOO_MANY_REQUESTS,
    error_code,
    log_aws_error,
)

logger = logging.getLogger(__name__)

OWNER_TAG_KEY = "owner"

CREATE_STATUS_IN_PROGRESS = "IN_PROGRESS"
CREATE_STATUS_SUCCEEDED = "SUCCEEDED"
CREATE_STATUS_FAILED = "FAILED"
FAILURE_REASON_ACCOUNT_LIMIT_EXCEEDED = "ACCOUNT_LIMIT_EXCEEDED"


class AccountCreationError(Exception):
    """Base class for classified account creation failures.

    Attributes:
        retryable: False for capacity errors that need a long backoff.
        cause: The underlying provider error, if any.
    """

    retryable: bool = True
    reason: str = "CreationError"

    def __init__(self, message: str, cause: BaseException | None = None) -> None:
        super().__init__(message)
        self.cause = cause


class AccountLimitExceededError(AccountCreationError):
    """The organization has reached its account limit."""

    retryable = False
    reason = "AccountLimitExceeded"


class InternalFailureError(AccountCreationError):
    """The provider reported an internal service failure."""

    reason = "InternalFailure"


class TooManyRequestsError(AccountCreationError):
    """The provider throttled the create request."""

    reason = "TooManyRequests"


class FailedCreateAccountError(AccountCreationError):
    """Account creation failed for any other reason."""

    reason = "FailedCreateAccount"


def _classify_create_error(err: ClientError) -> AccountCreationError:
    code = error_code(err)
    if code == ERROR_CONSTRAINT_VIOLATION:
        return AccountLimitExceededError("AWS account limit exceeded", err)
    if code == ERROR_SERVICE:
        return InternalFailureError("AWS internal server failure", err)
    if code == ERROR_TOO_MANY_REQUESTS:
        return TooManyRequestsError("too many requests to AWS", err)
    return FailedCreateAccountError(f"failed to create AWS account: {code}", err)


def classify_create_status(status: dict[str, Any]) -> None:
    """Raise the classified error for a FAILED create status, else return.

    Raises:
        AccountLimitExceededError: FAILED with reason ACCOUNT_LIMIT_EXCEEDED.
        FailedCreateAccountError: FAILED for any other reason.
    """
    if status.get("State") != CREATE_STATUS_FAILED:
        return
    reason = status.get("FailureReason", "")
    if reason == FAILURE_REASON_ACCOUNT_LIMIT_EXCEEDED:
        raise AccountLimitExceededError("AWS account limit exceeded")
    raise FailedCreateAccountError(f"account creation failed: {reason or 'unknown reason'}")


def check_create_account_status(organizations: Any, request_id: str) -> dict[str, Any]:
    """Describe a create request once and classify its outcome.

    Returns:
        The describe output, unchanged, when the request is SUCCEEDED or IN_PROGRESS.

    Raises:
        AccountCreationError: When the status reports FAILED.
        ClientError: When the describe call itself fails.
    """
    output = organizations.describe_create_account_status(CreateAccountRequestId=request_id)
    classify_create_status(output.get("CreateAccountStatus", {}))
    return output


def create_account(organizations: Any, name: str, email: str) -> dict[str, Any]:
    """Request a new account and perform one follow-up status check.

    Args:
        organizations: Organizations client of the payer account.
        name: Account name.
        email: Root email for the new account.

    Returns:
        The describe-create-account-status output, unchanged.

    Raises:
        AccountCreationError: Classified create or status failure.
        ClientError: When the status check call itself fails.
    """
    try:
        created = organizations.create_account(AccountName=name, Email=email)
    except ClientError as e:
        classified = _classify_create_error(e)
        log_aws_error(
            logger,
            "Failed to create AWS account",
            e,
            account_name=name,
            classification=classified.reason,
        )
        raise classified from e

    request_id = created["CreateAccountStatus"]["Id"]
    logger.info(
        "Account creation requested",
        extra={"account_name": name, "create_account_request_id": request_id},
    )

    try:
        return check_create_account_status(organizations, request_id)
    except ClientError as e:
        log_aws_error(
            logger,
            "Failed to describe account creation status",
            e,
            account_name=name,
            create_account_request_id=request_id,
        )
        raise


def tag_account(organizations: Any, account_id: str, owner: str) -> None:
    """Upsert the owner tag on an account."""
    organizations.tag_resource(
        ResourceId=account_id,
        Tags=[{"Key": OWNER_TAG_KEY, "Value": owner}],
    )
    logger.info("Tagged account owner", extra={"aws_account_id": account_id, "owner": owner})
