"""Validation of AWSFederatedRole templates.

A template is validated once:

1. An empty template (no custom policy, no managed policies) is Invalid.
2. The custom policy is created under a throwaway name to let IAM check
   its shape, then deleted. A malformed document makes the template Invalid.
3. Every managed policy name must exist in the provider's catalog.

Valid and Invalid are terminal. A changed template needs a new resource.
Deleting a template deletes every access request that references it.
"""

from __future__ import annotations

import logging
from typing import Any, cast

from botocore.exceptions import ClientError

from .aws import ERROR_MALFORMED_POLICY_DOCUMENT, generate_short_uid, is_error_code, log_aws_error
from .conditions import set_condition
from .config import CONTROLLER_FEDERATED_ROLE, OperatorSettings
from .finalizers import ensure_finalizer, remove_finalizer
from .models import (
    AWSFederatedAccountAccess,
    AWSFederatedRole,
    FederatedRoleConditionType,
    FederatedRoleState,
)
from .policy import build_custom_policy_document
from .reconciler import ReconcileResult, Reconciler
from .store import ResourceNotFoundError

logger = logging.getLogger(__name__)

REASON_EMPTY = "NoAWSCustomPolicyOrAWSManagedPolicies"
REASON_INVALID_CUSTOM = "InvalidCustomerPolicy"
REASON_INVALID_MANAGED = "InvalidManagedPolicy"
REASON_ALL_VALID = "AllPoliciesValid"

ACCESS_TEARDOWN_WAIT_SECONDS = 10


def list_managed_policy_names(iam: Any) -> set[str]:
    """Names of every provider-managed policy, following the pagination marker."""
    names: set[str] = set()
    paginator = iam.get_paginator("list_policies")
    for page in paginator.paginate(Scope="AWS"):
        for policy in page.get("Policies", []):
            names.add(policy["PolicyName"])
    return names


class FederatedRoleReconciler(Reconciler):
    """Validates role templates by trial creation."""

    controller_name = CONTROLLER_FEDERATED_ROLE
    kind = "AWSFederatedRole"

    def reconcile(  # type: ignore[override]
        self, resource: AWSFederatedRole, settings: OperatorSettings
    ) -> ReconcileResult:
        role = resource
        context = self.log_context(role)

        if settings.fedramp:
            logger.info("Running in fedramp mode, skipping AWSFederatedRole", extra=context)
            return ReconcileResult.done(role)

        if ensure_finalizer(self._store, role):
            return ReconcileResult.done(role)

        if role.metadata.deletion_timestamp is not None:
            logger.info("Cleaning up access requests for role", extra=context)
            remaining = self.finalize(role)
            if remaining:
                logger.info(
                    "Waiting for access requests to finish teardown",
                    extra={**context, "remaining": remaining},
                )
                return ReconcileResult.after(role, ACCESS_TEARDOWN_WAIT_SECONDS)
            remove_finalizer(self._store, role)
            return ReconcileResult.done(role)

        if role.status.state in (FederatedRoleState.VALID, FederatedRoleState.INVALID):
            return ReconcileResult.done(role)

        spec = role.spec
        if not spec.has_custom_policy and not spec.managed_policies:
            logger.error(
                "AWSCustomPolicy and AWSManagedPolicies are both empty",
                extra=context,
            )
            self._set_outcome(
                role,
                FederatedRoleState.INVALID,
                REASON_EMPTY,
                "AWSCustomPolicy and/or AWSManagedPolicies do not exist",
            )
            return ReconcileResult.done(role)

        iam = self.client_builder(settings).operator_clients().iam

        if spec.has_custom_policy:
            logger.info("Validating custom policy", extra=context)
            if not self._trial_create_custom_policy(iam, role):
                return ReconcileResult.done(role)

        if spec.managed_policies:
            logger.info("Validating managed policies", extra=context)
            try:
                available = list_managed_policy_names(iam)
            except ClientError as e:
                log_aws_error(logger, "Error listing managed AWS policies", e, **context)
                raise

            missing = [name for name in spec.managed_policies if name not in available]
            if missing:
                logger.error(
                    "Managed policies do not exist",
                    extra={**context, "missing_policies": missing},
                )
                self._set_outcome(
                    role,
                    FederatedRoleState.INVALID,
                    REASON_INVALID_MANAGED,
                    f"Managed policy does not exist: {', '.join(missing)}",
                )
                return ReconcileResult.done(role)

        self._set_outcome(
            role,
            FederatedRoleState.VALID,
            REASON_ALL_VALID,
            "All managed and custom policies are validated",
        )
        return ReconcileResult.done(role)

    def _trial_create_custom_policy(self, iam: Any, role: AWSFederatedRole) -> bool:
        """Create and delete the custom policy. Returns False if it is malformed."""
        custom = role.spec.custom_policy
        if custom is None:
            raise ValueError(f"{role.name} declares no custom policy")
        trial_name = f"{custom.name}-{generate_short_uid()}"
        document = build_custom_policy_document(role)

        try:
            created = iam.create_policy(
                PolicyName=trial_name,
                Description=custom.description,
                PolicyDocument=document.to_json(),
            )
        except ClientError as e:
            if is_error_code(e, ERROR_MALFORMED_POLICY_DOCUMENT):
                logger.error("Malformed policy document", extra=self.log_context(role))
                self._set_outcome(
                    role,
                    FederatedRoleState.INVALID,
                    REASON_INVALID_CUSTOM,
                    "Custom Policy is malformed",
                )
                return False
            log_aws_error(logger, "Error creating trial policy", e, **self.log_context(role))
            raise

        try:
            iam.delete_policy(PolicyArn=created["Policy"]["Arn"])
        except ClientError as e:
            log_aws_error(logger, "Error deleting trial policy", e, policy_name=trial_name)
            raise
        return True

    def _set_outcome(
        self,
        role: AWSFederatedRole,
        state: FederatedRoleState,
        reason: str,
        message: str,
    ) -> None:
        condition_type = (
            FederatedRoleConditionType.VALID
            if state == FederatedRoleState.VALID
            else FederatedRoleConditionType.INVALID
        )
        role.status.state = state
        role.status.conditions = set_condition(
            role.status.conditions, condition_type.value, True, reason, message
        )
        self._store.update_status(role)
        logger.info(
            "Role template validated",
            extra={**self.log_context(role), "state": state.value, "reason": reason},
        )

    def finalize(self, role: AWSFederatedRole) -> int:
        """Delete every access request that references this role.

        Returns:
            Number of referencing requests still present, including those
            whose own teardown is pending.
        """
        remaining = 0
        for listed in self._store.list(AWSFederatedAccountAccess.KIND):
            access = cast(AWSFederatedAccountAccess, listed)
            ref = access.spec.federated_role
            if ref.name != role.name or ref.namespace != role.namespace:
                continue
            remaining += 1
            if access.metadata.deletion_timestamp is not None:
                continue
            logger.info(
                "Deleting access request referencing role",
                extra={**self.log_context(role), "access": f"{access.namespace}/{access.name}"},
            )
            try:
                self._store.delete(access.kind, access.namespace, access.name)
            except ResourceNotFoundError:
                remaining -= 1
                continue
            if not self._store_has(access):
                remaining -= 1
        return remaining

    def _store_has(self, access: AWSFederatedAccountAccess) -> bool:
        try:
            self._store.get(access.kind, access.namespace, access.name)
        except ResourceNotFoundError:
            return False
        return True
