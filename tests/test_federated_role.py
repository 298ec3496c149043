"""Tests for AWSFederatedRole template validation and deletion."""

import pytest
from botocore.exceptions import ClientError

from account_operator.config import OperatorSettings
from account_operator.federated_role import (
    ACCESS_TEARDOWN_WAIT_SECONDS,
    REASON_ALL_VALID,
    REASON_EMPTY,
    REASON_INVALID_CUSTOM,
    REASON_INVALID_MANAGED,
    FederatedRoleReconciler,
    list_managed_policy_names,
)
from account_operator.models import (
    FINALIZER,
    AWSFederatedAccountAccess,
    AWSFederatedRole,
    ConditionStatus,
    FederatedRoleState,
)
from account_operator.store import InMemoryStore, ResourceNotFoundError
from aws_mock import MockAwsState, MockIamClient, builder_factory
from factories import NAMESPACE, custom_policy, make_access, make_role


def stored_role(store: InMemoryStore, role: AWSFederatedRole) -> AWSFederatedRole:
    """Create the role in the store with the finalizer already in place."""
    role.metadata.finalizers = [FINALIZER]
    return store.create(role)  # type: ignore[return-value]


def fetch(store: InMemoryStore, role: AWSFederatedRole) -> AWSFederatedRole:
    return store.get(role.kind, role.namespace, role.name)  # type: ignore[return-value]


@pytest.fixture
def reconciler(store: InMemoryStore, aws_state: MockAwsState) -> FederatedRoleReconciler:
    return FederatedRoleReconciler(store, builder_factory(aws_state))


class TestListManagedPolicyNames:
    def test_follows_pagination(self, aws_state: MockAwsState) -> None:
        iam = MockIamClient(aws_state, aws_state.operator_account_id)

        names = list_managed_policy_names(iam)

        assert names == {"ReadOnlyAccess", "AdministratorAccess", "SupportUser", "ViewOnlyAccess"}
        assert aws_state.call_count("list_policies") == 2


class TestValidation:
    """Tests for the one-shot validation outcome."""

    def test_first_pass_only_adds_finalizer(
        self,
        reconciler: FederatedRoleReconciler,
        store: InMemoryStore,
        aws_state: MockAwsState,
        settings: OperatorSettings,
    ) -> None:
        role = store.create(make_role(managed_policies=["ReadOnlyAccess"]))

        result = reconciler.reconcile(role, settings)

        assert result.requeue is False
        stored = fetch(store, role)
        assert stored.metadata.finalizers == [FINALIZER]
        assert stored.status.state == FederatedRoleState.UNVALIDATED
        assert aws_state.calls == []

    def test_empty_template_is_invalid(
        self,
        reconciler: FederatedRoleReconciler,
        store: InMemoryStore,
        aws_state: MockAwsState,
        settings: OperatorSettings,
    ) -> None:
        role = stored_role(store, make_role())

        reconciler.reconcile(role, settings)

        stored = fetch(store, role)
        assert stored.status.state == FederatedRoleState.INVALID
        assert stored.status.conditions[0].reason == REASON_EMPTY
        assert aws_state.calls == []

    def test_malformed_custom_policy_is_invalid(
        self,
        reconciler: FederatedRoleReconciler,
        store: InMemoryStore,
        aws_state: MockAwsState,
        settings: OperatorSettings,
    ) -> None:
        policy = custom_policy()
        policy["awsStatements"][0]["action"] = []
        role = stored_role(store, make_role(custom=policy, managed_policies=["ReadOnlyAccess"]))

        reconciler.reconcile(role, settings)

        stored = fetch(store, role)
        assert stored.status.state == FederatedRoleState.INVALID
        condition = stored.status.conditions[0]
        assert condition.type == "Invalid"
        assert condition.status == ConditionStatus.TRUE
        assert condition.reason == REASON_INVALID_CUSTOM
        # Managed policies are not checked after a malformed custom policy
        assert aws_state.call_count("list_policies") == 0

    def test_missing_managed_policy_is_invalid(
        self,
        reconciler: FederatedRoleReconciler,
        store: InMemoryStore,
        settings: OperatorSettings,
    ) -> None:
        role = stored_role(store, make_role(managed_policies=["ReadOnlyAccess", "NotAPolicy"]))

        reconciler.reconcile(role, settings)

        stored = fetch(store, role)
        assert stored.status.state == FederatedRoleState.INVALID
        assert stored.status.conditions[0].reason == REASON_INVALID_MANAGED
        assert "NotAPolicy" in stored.status.conditions[0].message

    def test_valid_template_leaves_no_trial_policy(
        self,
        reconciler: FederatedRoleReconciler,
        store: InMemoryStore,
        aws_state: MockAwsState,
        settings: OperatorSettings,
    ) -> None:
        role = stored_role(
            store, make_role(custom=custom_policy(), managed_policies=["ViewOnlyAccess"])
        )

        result = reconciler.reconcile(role, settings)

        assert result.success
        stored = fetch(store, role)
        assert stored.status.state == FederatedRoleState.VALID
        assert stored.status.conditions[0].reason == REASON_ALL_VALID
        assert aws_state.call_count("create_policy") == 1
        assert aws_state.call_count("delete_policy") == 1
        iam = MockIamClient(aws_state, aws_state.operator_account_id)
        assert iam.policy_names() == []

    def test_managed_only_skips_trial_create(
        self,
        reconciler: FederatedRoleReconciler,
        store: InMemoryStore,
        aws_state: MockAwsState,
        settings: OperatorSettings,
    ) -> None:
        role = stored_role(store, make_role(managed_policies=["ReadOnlyAccess"]))

        reconciler.reconcile(role, settings)

        assert fetch(store, role).status.state == FederatedRoleState.VALID
        assert aws_state.call_count("create_policy") == 0

    @pytest.mark.parametrize("state", [FederatedRoleState.VALID, FederatedRoleState.INVALID])
    def test_terminal_states_are_not_revalidated(
        self,
        reconciler: FederatedRoleReconciler,
        store: InMemoryStore,
        aws_state: MockAwsState,
        settings: OperatorSettings,
        state: FederatedRoleState,
    ) -> None:
        role = make_role(managed_policies=["NotAPolicy"])
        role.status.state = state
        role = stored_role(store, role)

        reconciler.reconcile(role, settings)

        assert fetch(store, role).status.state == state
        assert aws_state.calls == []

    def test_provider_error_propagates(
        self,
        reconciler: FederatedRoleReconciler,
        store: InMemoryStore,
        aws_state: MockAwsState,
        settings: OperatorSettings,
    ) -> None:
        aws_state.inject_error("list_policies", "ServiceFailure")
        role = stored_role(store, make_role(managed_policies=["ReadOnlyAccess"]))

        with pytest.raises(ClientError):
            reconciler.reconcile(role, settings)

        assert fetch(store, role).status.state == FederatedRoleState.UNVALIDATED

    def test_fedramp_skips_everything(
        self,
        reconciler: FederatedRoleReconciler,
        store: InMemoryStore,
        aws_state: MockAwsState,
    ) -> None:
        role = store.create(make_role())

        reconciler.reconcile(role, OperatorSettings(fedramp=True))

        stored = fetch(store, role)
        assert stored.metadata.finalizers == []
        assert stored.status.state == FederatedRoleState.UNVALIDATED
        assert aws_state.calls == []


class TestRoleDeletion:
    """Deleting a template deletes the access requests that reference it."""

    def test_deletion_waits_for_referencing_requests(
        self,
        reconciler: FederatedRoleReconciler,
        store: InMemoryStore,
        settings: OperatorSettings,
    ) -> None:
        role = stored_role(store, make_role(managed_policies=["ReadOnlyAccess"]))
        access = make_access("customer-a")
        access.metadata.finalizers = [FINALIZER]
        store.create(access)
        store.create(make_access("customer-b"))
        store.create(make_access("other-role", role_name="admin"))
        store.delete(role.kind, role.namespace, role.name)

        result = reconciler.reconcile(fetch(store, role), settings)

        assert result.requeue is True
        assert result.requeue_after_seconds == ACCESS_TEARDOWN_WAIT_SECONDS
        # customer-b had no finalizer and is gone; customer-a waits on its own teardown
        remaining = store.list(AWSFederatedAccountAccess.KIND, NAMESPACE)
        assert [a.name for a in remaining] == ["customer-a", "other-role"]
        assert remaining[0].metadata.deletion_timestamp is not None
        assert remaining[1].metadata.deletion_timestamp is None
        assert fetch(store, role).metadata.finalizers == [FINALIZER]

    def test_deletion_completes_without_references(
        self,
        reconciler: FederatedRoleReconciler,
        store: InMemoryStore,
        settings: OperatorSettings,
    ) -> None:
        role = stored_role(store, make_role(managed_policies=["ReadOnlyAccess"]))
        store.create(make_access("customer-a"))
        store.delete(role.kind, role.namespace, role.name)

        result = reconciler.reconcile(fetch(store, role), settings)

        assert result.requeue is False
        with pytest.raises(ResourceNotFoundError):
            fetch(store, role)
        assert store.list(AWSFederatedAccountAccess.KIND) == []
