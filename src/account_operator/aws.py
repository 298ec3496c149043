"""AWS client construction, error helpers and security auditing.

Credentials come from three places only:
- The operator's own default credential chain (organizations and IAM in the payer)
- A per-request credential secret for the target account
- Temporary STS credentials from assuming an administrative role

SECURITY INVARIANTS:
1. Secret values and session tokens are never logged
2. Every assume-role attempt emits an audit record when auditing is enabled
3. Clients are built per pass; nothing is cached across passes
"""

from __future__ import annotations

import logging
import secrets
import string
from dataclasses import dataclass
from typing import Any

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import ClientError

from .models import Secret

logger = logging.getLogger(__name__)

# Error codes the reconcilers classify
ERROR_ENTITY_ALREADY_EXISTS = "EntityAlreadyExists"
ERROR_NO_SUCH_ENTITY = "NoSuchEntity"
ERROR_MALFORMED_POLICY_DOCUMENT = "MalformedPolicyDocument"
ERROR_DELETE_CONFLICT = "DeleteConflict"
ERROR_CONSTRAINT_VIOLATION = "ConstraintViolationException"
ERROR_SERVICE = "ServiceException"
ERROR_TOO_MANY_REQUESTS = "TooManyRequestsException"
ERROR_DUPLICATE_ACCOUNT = "DuplicateAccountException"

SHORT_UID_LENGTH = 6
_SHORT_UID_ALPHABET = string.ascii_lowercase + string.digits

# Adaptive retries inside botocore; reconcile-level backoff stays with the dispatcher
_BOTO_CONFIG = BotoConfig(retries={"max_attempts": 3, "mode": "standard"})

ASSUME_ROLE_DURATION_SECONDS = 3600


class CredentialError(Exception):
    """Raised when a credential secret cannot be turned into clients."""

    pass


@dataclass
class AwsClients:
    """The three service clients a reconciler needs for one account."""

    organizations: Any
    iam: Any
    sts: Any


def error_code(error: BaseException) -> str | None:
    """Provider error code of a ClientError, or None for anything else."""
    if isinstance(error, ClientError):
        return error.response.get("Error", {}).get("Code")
    return None


def is_error_code(error: BaseException, *codes: str) -> bool:
    return error_code(error) in codes


def log_aws_error(log: logging.Logger, message: str, error: BaseException, **context: Any) -> None:
    """Log a provider error with its code and request id."""
    extra: dict[str, Any] = dict(context)
    if isinstance(error, ClientError):
        extra["aws_error_code"] = error_code(error)
        extra["aws_error_message"] = error.response.get("Error", {}).get("Message")
        extra["aws_request_id"] = error.response.get("ResponseMetadata", {}).get("RequestId")
    else:
        extra["error_type"] = type(error).__name__
    log.error(f"{message}: {error}", extra=extra)


def log_security_audit_event(
    event_type: str,
    operator_name: str,
    target_resource: str | None = None,
    action: str | None = None,
    result: str | None = None,
) -> None:
    """Log a security-relevant audit event.

    All security events are logged with structured data for SIEM ingestion.

    Args:
        event_type: Type of security event (assume_role, account_move, account_tag).
        operator_name: Name of the controller generating the event.
        target_resource: Account id or ARN being acted on.
        action: Action being performed.
        result: Result of the action (success, failure, dry_run).
    """
    logger.info(
        f"Security audit: {event_type}",
        extra={
            "security_audit": True,
            "event_type": event_type,
            "operator": operator_name,
            "target_resource": target_resource,
            "action": action,
            "result": result,
        },
    )


def generate_short_uid() -> str:
    """Random token used to namespace provider objects for one request."""
    return "".join(secrets.choice(_SHORT_UID_ALPHABET) for _ in range(SHORT_UID_LENGTH))


class AwsClientBuilder:
    """Builds boto3 clients for the operator and for target accounts.

    Reconcilers receive a builder instead of constructing clients themselves,
    which lets tests substitute an in-memory implementation.
    """

    def __init__(self, region: str, audit_enabled: bool = True) -> None:
        self.region = region
        self.audit_enabled = audit_enabled

    def _clients(self, session: boto3.session.Session) -> AwsClients:
        return AwsClients(
            organizations=session.client("organizations", config=_BOTO_CONFIG),
            iam=session.client("iam", config=_BOTO_CONFIG),
            sts=session.client("sts", config=_BOTO_CONFIG),
        )

    def operator_clients(self) -> AwsClients:
        """Clients using the operator's default credential chain."""
        return self._clients(boto3.session.Session(region_name=self.region))

    def clients_from_secret(self, secret: Secret) -> AwsClients:
        """Clients using the access keys held in a credential secret.

        Raises:
            CredentialError: If either key is missing from the secret.
        """
        if not secret.access_key_id or not secret.secret_access_key:
            raise CredentialError(
                f"Secret {secret.namespace}/{secret.name} is missing "
                "aws_access_key_id or aws_secret_access_key"
            )
        session = boto3.session.Session(
            aws_access_key_id=secret.access_key_id,
            aws_secret_access_key=secret.secret_access_key,
            region_name=self.region,
        )
        return self._clients(session)

    def clients_from_assumed_role(self, credentials: dict[str, Any]) -> AwsClients:
        """Clients using temporary credentials returned by STS."""
        session = boto3.session.Session(
            aws_access_key_id=credentials["AccessKeyId"],
            aws_secret_access_key=credentials["SecretAccessKey"],
            aws_session_token=credentials["SessionToken"],
            region_name=self.region,
        )
        return self._clients(session)

    def assume_role(
        self,
        sts: Any,
        role_arn: str,
        session_name: str,
        operator_name: str = "account-operator",
    ) -> dict[str, Any]:
        """Assume a role and return its temporary credentials.

        Raises:
            ClientError: If STS refuses the assumption.
        """
        try:
            response = sts.assume_role(
                RoleArn=role_arn,
                RoleSessionName=session_name,
                DurationSeconds=ASSUME_ROLE_DURATION_SECONDS,
            )
        except ClientError:
            if self.audit_enabled:
                log_security_audit_event(
                    "assume_role", operator_name, role_arn, "sts:AssumeRole", "failure"
                )
            raise

        if self.audit_enabled:
            log_security_audit_event(
                "assume_role", operator_name, role_arn, "sts:AssumeRole", "success"
            )
        return response["Credentials"]
