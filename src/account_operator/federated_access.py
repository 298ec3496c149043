"""Provisioning and teardown of AWSFederatedAccountAccess requests.

A request materializes a validated role template in a target account:

1. A short uid is generated once and stored as a label. Every provider
   object created for the request carries it as a name suffix.
2. The target account id is discovered with the request's credential
   secret and stored as a label.
3. The custom policy ``<policy>-<uid>`` is created, replacing any existing one.
4. The role ``<template>-<uid>`` is created with a trust policy for exactly
   one external principal, replacing any existing one.
5. Managed and custom policies are attached, then a console link is stored.

Ready and Failed are terminal. Any step failure records Failed with a
condition and stops. A failure while attaching runs the cleanup routine
so no half-attached role is left behind.

Teardown assumes an administrative role in the target account and runs a
single idempotent cleanup keyed by the uid naming convention.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Any, cast

from botocore.exceptions import ClientError

from .aws import (
    ERROR_ENTITY_ALREADY_EXISTS,
    ERROR_NO_SUCH_ENTITY,
    AwsClientBuilder,
    CredentialError,
    generate_short_uid,
    is_error_code,
    log_aws_error,
)
from .conditions import set_condition
from .config import (
    AWS_RESOURCE_TYPE_POLICY,
    AWS_RESOURCE_TYPE_ROLE,
    CONTROLLER_FEDERATED_ACCOUNT_ACCESS,
    OperatorSettings,
)
from .finalizers import ensure_finalizer, run_finalization
from .models import (
    ACCOUNT_ID_LABEL,
    UID_LABEL,
    AWSFederatedAccountAccess,
    AWSFederatedRole,
    FederatedAccessConditionType,
    FederatedAccessState,
    FederatedRoleState,
    Resource,
    Secret,
)
from .policy import build_custom_policy_document, build_trust_policy
from .reconciler import ReconcileResult, Reconciler
from .store import ResourceNotFoundError

logger = logging.getLogger(__name__)

ORGANIZATION_ADMIN_ROLE = "OrganizationAccountAccessRole"
BYOC_ADMIN_ROLE_PREFIX = "BYOCAdminAccess"
CLEANUP_SESSION_NAME = "FederatedRoleCleanup"

# Wait for the role validator before provisioning against a template
ROLE_VALIDATION_WAIT_SECONDS = 30


class FederatedAccessError(Exception):
    """Raised when a request cannot be processed with its current inputs."""

    pass


class TeardownError(Exception):
    """Raised when provider objects of a request cannot be cleaned up."""

    pass


class ProvisioningError(Exception):
    """A provisioning step failed. The message is recorded in status."""

    def __init__(self, message: str, cause: BaseException | None = None) -> None:
        super().__init__(message)
        self.cause = cause


def policy_name_with_uid(policy_name: str, uid: str) -> str:
    """Suffix a policy name with the request uid, once."""
    suffix = f"-{uid}"
    if policy_name.endswith(suffix):
        return policy_name
    return policy_name + suffix


def role_name_for(access: AWSFederatedAccountAccess) -> str:
    if not access.uid:
        raise FederatedAccessError(f"Access request {access.name} has no uid label")
    return f"{access.spec.federated_role.name}-{access.uid}"


def console_url(settings: OperatorSettings, account_id: str, role_name: str) -> str:
    return (
        f"https://{settings.console_signin_host}/switchrole"
        f"?account={account_id}&roleName={role_name}"
    )


def _list_all(iam: Any, operation: str, result_key: str, **kwargs: Any) -> list[dict[str, Any]]:
    items: list[dict[str, Any]] = []
    for page in iam.get_paginator(operation).paginate(**kwargs):
        items.extend(page.get(result_key, []))
    return items


def _delete_policy(iam: Any, policy_arn: str) -> None:
    try:
        iam.delete_policy(PolicyArn=policy_arn)
    except ClientError as e:
        if not is_error_code(e, ERROR_NO_SUCH_ENTITY):
            raise


def detach_all_role_policies(iam: Any, role_name: str) -> bool:
    """Detach every policy from a role.

    Returns:
        False if the role does not exist.
    """
    try:
        attached = _list_all(
            iam, "list_attached_role_policies", "AttachedPolicies", RoleName=role_name
        )
    except ClientError as e:
        if is_error_code(e, ERROR_NO_SUCH_ENTITY):
            return False
        raise
    for policy in attached:
        try:
            iam.detach_role_policy(RoleName=role_name, PolicyArn=policy["PolicyArn"])
        except ClientError as e:
            if not is_error_code(e, ERROR_NO_SUCH_ENTITY):
                raise
    return True


def cleanup_provisioned_objects(
    iam: Any, role_name: str, policy_matches: Callable[[str], bool]
) -> None:
    """Remove the role and custom policies provisioned for one request.

    The routine is safe to run any number of times and in any partial state:

    1. Detach everything attached to the role. Attached policies whose name
       matches are deleted. A missing role is not an error.
    2. Sweep all account-local policies and delete every match. This finds
       policies created before a role ever existed.
    3. Delete the role if it was found.

    Raises:
        ClientError: Any provider error other than NoSuchEntity.
    """
    role_found = True
    try:
        attached = _list_all(
            iam, "list_attached_role_policies", "AttachedPolicies", RoleName=role_name
        )
    except ClientError as e:
        if not is_error_code(e, ERROR_NO_SUCH_ENTITY):
            raise
        logger.info("Role not found during cleanup", extra={"role_name": role_name})
        role_found = False
        attached = []

    for policy in attached:
        try:
            iam.detach_role_policy(RoleName=role_name, PolicyArn=policy["PolicyArn"])
        except ClientError as e:
            if not is_error_code(e, ERROR_NO_SUCH_ENTITY):
                raise
        if policy_matches(policy["PolicyName"]):
            logger.info("Deleting custom policy", extra={"policy_arn": policy["PolicyArn"]})
            _delete_policy(iam, policy["PolicyArn"])

    for policy in _list_all(iam, "list_policies", "Policies", Scope="Local"):
        if policy_matches(policy["PolicyName"]):
            logger.info("Deleting unattached custom policy", extra={"policy_arn": policy["Arn"]})
            _delete_policy(iam, policy["Arn"])

    if role_found:
        logger.info("Deleting role", extra={"role_name": role_name})
        try:
            iam.delete_role(RoleName=role_name)
        except ClientError as e:
            if not is_error_code(e, ERROR_NO_SUCH_ENTITY):
                raise


def create_or_replace_policy(
    iam: Any,
    policy_name: str,
    description: str,
    document: str,
    policy_arn: str,
    role_name: str,
) -> str:
    """Create a customer-managed policy, replacing one with the same name.

    An existing policy is detached from ``role_name`` first, since IAM refuses
    to delete an attached policy. Last writer wins.

    Returns:
        The policy ARN.
    """
    try:
        return iam.create_policy(
            PolicyName=policy_name, Description=description, PolicyDocument=document
        )["Policy"]["Arn"]
    except ClientError as e:
        if not is_error_code(e, ERROR_ENTITY_ALREADY_EXISTS):
            raise

    logger.info("Replacing existing policy", extra={"policy_name": policy_name})
    try:
        iam.detach_role_policy(RoleName=role_name, PolicyArn=policy_arn)
    except ClientError as e:
        if not is_error_code(e, ERROR_NO_SUCH_ENTITY):
            raise
    _delete_policy(iam, policy_arn)
    return iam.create_policy(
        PolicyName=policy_name, Description=description, PolicyDocument=document
    )["Policy"]["Arn"]


def create_or_replace_role(
    iam: Any, role_name: str, description: str, trust_policy: str
) -> dict[str, Any]:
    """Create a role, replacing one with the same name.

    Returns:
        The created role description.
    """
    try:
        return iam.create_role(
            RoleName=role_name,
            Description=description,
            AssumeRolePolicyDocument=trust_policy,
        )["Role"]
    except ClientError as e:
        if not is_error_code(e, ERROR_ENTITY_ALREADY_EXISTS):
            raise

    logger.info("Replacing existing role", extra={"role_name": role_name})
    detach_all_role_policies(iam, role_name)
    try:
        iam.delete_role(RoleName=role_name)
    except ClientError as e:
        if not is_error_code(e, ERROR_NO_SUCH_ENTITY):
            raise
    return iam.create_role(
        RoleName=role_name,
        Description=description,
        AssumeRolePolicyDocument=trust_policy,
    )["Role"]


def attach_policies(iam: Any, role_name: str, policy_arns: list[str]) -> None:
    for policy_arn in policy_arns:
        iam.attach_role_policy(RoleName=role_name, PolicyArn=policy_arn)


class FederatedAccessReconciler(Reconciler):
    """Provisions concrete cross-account roles from validated templates."""

    controller_name = CONTROLLER_FEDERATED_ACCOUNT_ACCESS
    kind = "AWSFederatedAccountAccess"

    def reconcile(  # type: ignore[override]
        self, resource: AWSFederatedAccountAccess, settings: OperatorSettings
    ) -> ReconcileResult:
        access = resource
        context = self.log_context(access)

        if ensure_finalizer(self._store, access):
            return ReconcileResult.done(access)

        if access.metadata.deletion_timestamp is not None:
            logger.info("Cleaning up federated access role", extra=context)
            run_finalization(self._store, access, lambda a: self.teardown(a, settings))
            return ReconcileResult.done(access)

        if access.status.state in (FederatedAccessState.READY, FederatedAccessState.FAILED):
            return ReconcileResult.done(access)

        ref = access.spec.federated_role
        try:
            template = cast(
                AWSFederatedRole,
                self._store.get(AWSFederatedRole.KIND, ref.namespace, ref.name),
            )
        except ResourceNotFoundError:
            logger.error(
                "Requested role not found", extra={**context, "role": f"{ref.namespace}/{ref.name}"}
            )
            self._fail(access, "Requested role does not exist")
            return ReconcileResult.done(access)

        if template.status.state == FederatedRoleState.INVALID:
            self._fail(access, "Requested role is invalid")
            return ReconcileResult.done(access)
        if template.status.state != FederatedRoleState.VALID:
            logger.info("Requested role is not validated yet", extra=context)
            return ReconcileResult.after(access, ROLE_VALIDATION_WAIT_SECONDS)

        if not access.uid:
            uid = generate_short_uid()
            logger.info("Adding uid label", extra={**context, "uid": uid})
            access = self._store.patch_labels(access, {UID_LABEL: uid})  # type: ignore[assignment]

        builder = self.client_builder(settings)
        clients = self._clients_from_secret(builder, access)

        try:
            account_id = clients.sts.get_caller_identity()["Account"]
        except ClientError as e:
            log_aws_error(logger, "Failed to get account ID information", e, **context)
            self._fail(access, "Failed to get account ID information")
            return ReconcileResult.done(access)

        if access.target_account_id != account_id:
            logger.info(
                "Adding awsAccountID label", extra={**context, "aws_account_id": account_id}
            )
            access = self._store.patch_labels(  # type: ignore[assignment]
                access, {ACCOUNT_ID_LABEL: account_id}
            )

        try:
            url = self.provision(access, template, clients.iam, account_id, settings)
        except ProvisioningError as e:
            if e.cause is not None:
                log_aws_error(logger, str(e), e.cause, **context)
            self._fail(access, str(e))
            return ReconcileResult.done(access)

        access.status.console_url = url
        access.status.state = FederatedAccessState.READY
        access.status.conditions = set_condition(
            access.status.conditions,
            FederatedAccessConditionType.READY.value,
            True,
            FederatedAccessState.READY.value,
            "Account Access Ready",
        )
        self._store.update_status(access)
        logger.info("Federated access ready", extra={**context, "console_url": url})
        return ReconcileResult.done(access)

    def provision(
        self,
        access: AWSFederatedAccountAccess,
        template: AWSFederatedRole,
        iam: Any,
        account_id: str,
        settings: OperatorSettings,
    ) -> str:
        """Create or replace the policy and role, then attach policies.

        Every step is create-or-replace, so running this again after a partial
        failure converges to one policy and one role for the uid.

        Returns:
            Console deep link for the role.

        Raises:
            ProvisioningError: A step failed. On attach failure the provisioned
                objects have been cleaned up on a best-effort basis.
        """
        uid = access.uid
        if not uid:
            raise FederatedAccessError(f"Access request {access.name} has no uid label")
        role_name = role_name_for(access)
        spec = template.spec

        policy_arns = [settings.managed_policy_arn(name) for name in spec.managed_policies]
        custom_policy_name: str | None = None

        if spec.custom_policy is not None and spec.has_custom_policy:
            custom_policy_name = policy_name_with_uid(spec.custom_policy.name, uid)
            custom_arn = settings.iam_arn(account_id, AWS_RESOURCE_TYPE_POLICY, custom_policy_name)
            try:
                create_or_replace_policy(
                    iam,
                    custom_policy_name,
                    spec.custom_policy.description,
                    build_custom_policy_document(template).to_json(),
                    custom_arn,
                    role_name,
                )
            except ClientError as e:
                raise ProvisioningError("Failed to create custom policy", e) from e
            policy_arns.append(custom_arn)

        try:
            role = create_or_replace_role(
                iam,
                role_name,
                spec.role_description,
                build_trust_policy(access.spec.external_customer_arn).to_json(),
            )
        except ClientError as e:
            raise ProvisioningError("Failed to create role", e) from e

        try:
            attach_policies(iam, role_name, policy_arns)
        except ClientError as e:
            self._compensate(iam, role_name, custom_policy_name)
            raise ProvisioningError("Failed to attach policies to role", e) from e

        return console_url(settings, account_id, role["RoleName"])

    def _compensate(self, iam: Any, role_name: str, custom_policy_name: str | None) -> None:
        try:
            cleanup_provisioned_objects(iam, role_name, lambda name: name == custom_policy_name)
        except ClientError as e:
            log_aws_error(
                logger, "Cleanup after failed attach did not complete", e, role_name=role_name
            )

    def _clients_from_secret(
        self, builder: AwsClientBuilder, access: AWSFederatedAccountAccess
    ) -> Any:
        ref = access.spec.credential_secret
        try:
            secret = cast(Secret, self._store.get(Secret.KIND, ref.namespace, ref.name))
        except ResourceNotFoundError as e:
            raise FederatedAccessError(
                f"Credential secret {ref.namespace}/{ref.name} not found"
            ) from e
        try:
            return builder.clients_from_secret(secret)
        except CredentialError as e:
            raise FederatedAccessError(str(e)) from e

    def _fail(self, access: AWSFederatedAccountAccess, message: str) -> None:
        access.status.state = FederatedAccessState.FAILED
        access.status.conditions = set_condition(
            access.status.conditions,
            FederatedAccessConditionType.FAILED.value,
            True,
            FederatedAccessState.FAILED.value,
            message,
        )
        self._store.update_status(access)
        logger.error(message, extra=self.log_context(access))

    def _policy_matcher(self, access: AWSFederatedAccountAccess, uid: str) -> Callable[[str], bool]:
        ref = access.spec.federated_role
        try:
            template: Resource | None = self._store.get(
                AWSFederatedRole.KIND, ref.namespace, ref.name
            )
        except ResourceNotFoundError:
            template = None

        if (
            isinstance(template, AWSFederatedRole)
            and template.spec.custom_policy is not None
            and template.spec.has_custom_policy
        ):
            expected = policy_name_with_uid(template.spec.custom_policy.name, uid)
            return lambda name: name == expected

        # Template gone: every object created for this request ends with its uid
        suffix = f"-{uid}"
        return lambda name: name.endswith(suffix)

    def teardown(self, access: AWSFederatedAccountAccess, settings: OperatorSettings) -> None:
        """Remove the provider objects of a request.

        Raises:
            TeardownError: Labels are missing on a Ready request, or no
                administrative role could be assumed.
            ClientError: A cleanup call failed.
        """
        uid = access.uid
        account_id = access.target_account_id
        if not uid or not account_id:
            if access.status.state != FederatedAccessState.READY:
                logger.info(
                    "Labels missing on a request that never became Ready - nothing to clean up",
                    extra=self.log_context(access),
                )
                return
            missing = UID_LABEL if not uid else ACCOUNT_ID_LABEL
            raise TeardownError(f"Unable to get {missing} label of Ready request {access.name}")

        builder = self.client_builder(settings)
        operator = builder.operator_clients()
        credentials = self._assume_admin_role(builder, operator.sts, account_id, uid, settings)
        iam = builder.clients_from_assumed_role(credentials).iam

        cleanup_provisioned_objects(iam, role_name_for(access), self._policy_matcher(access, uid))
        logger.info("Federated access cleaned up", extra=self.log_context(access))

    def _assume_admin_role(
        self,
        builder: AwsClientBuilder,
        sts: Any,
        account_id: str,
        uid: str,
        settings: OperatorSettings,
    ) -> dict[str, Any]:
        primary = settings.iam_arn(account_id, AWS_RESOURCE_TYPE_ROLE, ORGANIZATION_ADMIN_ROLE)
        try:
            return builder.assume_role(sts, primary, CLEANUP_SESSION_NAME, self.controller_name)
        except ClientError:
            logger.info(
                f"Unable to assume role {ORGANIZATION_ADMIN_ROLE}, trying {BYOC_ADMIN_ROLE_PREFIX}",
                extra={"aws_account_id": account_id},
            )

        fallback = settings.iam_arn(
            account_id, AWS_RESOURCE_TYPE_ROLE, f"{BYOC_ADMIN_ROLE_PREFIX}-{uid}"
        )
        try:
            return builder.assume_role(sts, fallback, CLEANUP_SESSION_NAME, self.controller_name)
        except ClientError as e:
            log_aws_error(
                logger, "Unable to assume any administrative role", e, aws_account_id=account_id
            )
            raise TeardownError(f"Unable to assume an administrative role in {account_id}") from e
