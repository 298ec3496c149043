"""Tests for the reconciliation dispatcher."""

from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

from account_operator.config import Config, ConfigurationError
from account_operator.federated_access import FederatedAccessError
from account_operator.manager import MIN_WAKEUP_SECONDS, OperatorManager, backoff_seconds
from account_operator.models import FINALIZER, AccountState, FederatedRoleState
from account_operator.reconciler import ReconcileResult
from account_operator.store import InMemoryStore
from aws_mock import MockAwsState, builder_factory
from factories import NAMESPACE, make_access, make_account, make_role


@pytest.fixture
def config(tmp_path: Path) -> Config:
    return Config(manifests_dir=tmp_path)


@pytest.fixture
def manager(config: Config, store: InMemoryStore, aws_state: MockAwsState) -> OperatorManager:
    return OperatorManager(config, store, builder_factory(aws_state))


class TestBackoff:
    @pytest.mark.parametrize(
        "failures,expected",
        [(0, 0.0), (1, 5.0), (2, 10.0), (3, 20.0), (8, 640.0), (9, 900.0), (50, 900.0)],
    )
    def test_backoff_seconds(self, failures: int, expected: float) -> None:
        assert backoff_seconds(failures) == expected


class TestControllers:
    def test_controllers_per_kind(self, manager: OperatorManager) -> None:
        names = {
            kind: [c.controller_name for c in controllers]
            for kind, controllers in manager.controllers.items()
        }

        assert names == {
            "Account": ["account", "accountvalidation"],
            "AWSFederatedRole": ["awsfederatedrole"],
            "AWSFederatedAccountAccess": ["awsfederatedaccountaccess"],
        }


class TestRunOnce:
    """Tests for a single reconciliation pass."""

    @pytest.mark.asyncio
    async def test_account_reaches_ready_over_passes(
        self, manager: OperatorManager, store: InMemoryStore
    ) -> None:
        store.create(make_account())

        first = await manager.run_once()
        second = await manager.run_once()

        assert all(result.success for result in first + second)
        account = store.get("Account", NAMESPACE, "osd-creds-mgmt-abc")
        assert account.status.state == AccountState.READY

    @pytest.mark.asyncio
    async def test_failure_is_backed_off(
        self, manager: OperatorManager, store: InMemoryStore
    ) -> None:
        role = make_role(managed_policies=["ReadOnlyAccess"])
        role.metadata.finalizers = [FINALIZER]
        role.status.state = FederatedRoleState.VALID
        store.create(role)
        access = make_access()
        access.metadata.finalizers = [FINALIZER]
        store.create(access)

        results = await manager.run_once()

        failed = [r for r in results if not r.success]
        assert len(failed) == 1
        assert failed[0].name == "customer-access"
        assert isinstance(failed[0].error, FederatedAccessError)
        assert failed[0].requeue is True
        assert 0 < manager.next_wakeup_seconds() <= backoff_seconds(1)

        # Not due yet: the failing identity is skipped on an immediate pass
        results = await manager.run_once()
        assert [r.name for r in results if r.kind == "AWSFederatedAccountAccess"] == []

    @pytest.mark.asyncio
    async def test_deleted_identity_stops_waking(
        self, manager: OperatorManager, store: InMemoryStore, config: Config
    ) -> None:
        store.create(make_account())
        await manager.run_once()
        store.delete("Account", NAMESPACE, "osd-creds-mgmt-abc")

        await manager.run_once()

        later = datetime.now(UTC) + timedelta(hours=1)
        assert manager.next_wakeup_seconds(later) == config.reconcile_interval_seconds

    @pytest.mark.asyncio
    async def test_backoff_forgotten_for_missing_identity(
        self, manager: OperatorManager, config: Config
    ) -> None:
        role = make_role()
        manager._record(
            ("awsfederatedrole", role.identity),
            ReconcileResult(*role.identity, requeue=True, error=RuntimeError("boom")),
        )

        await manager.run_once()

        later = datetime.now(UTC) + timedelta(hours=1)
        assert manager.next_wakeup_seconds(later) == config.reconcile_interval_seconds

    @pytest.mark.asyncio
    async def test_empty_store(self, manager: OperatorManager) -> None:
        assert await manager.run_once() == []

    @pytest.mark.asyncio
    async def test_settings_error_propagates(
        self, tmp_path: Path, store: InMemoryStore, aws_state: MockAwsState
    ) -> None:
        settings_file = tmp_path / "operator-config.yaml"
        settings_file.write_text("account-creation-timeout: soon\n")
        manager = OperatorManager(
            Config(manifests_dir=tmp_path, operator_config_file=settings_file),
            store,
            builder_factory(aws_state),
        )

        with pytest.raises(ConfigurationError):
            await manager.run_once()


class TestWakeup:
    def test_interval_without_requeues(self, manager: OperatorManager, config: Config) -> None:
        assert manager.next_wakeup_seconds() == config.reconcile_interval_seconds

    def test_earliest_requeue(self, manager: OperatorManager) -> None:
        now = datetime.now(UTC)
        account = make_account()
        manager._record(("account", account.identity), ReconcileResult.after(account, 42))

        assert 41 < manager.next_wakeup_seconds(now) < 43

    def test_due_requeue_waits_minimum(self, manager: OperatorManager) -> None:
        account = make_account()
        manager._record(("account", account.identity), ReconcileResult.again(account))

        wakeup = manager.next_wakeup_seconds(datetime.now(UTC) + timedelta(seconds=5))

        assert wakeup == MIN_WAKEUP_SECONDS


class TestRunLoop:
    @pytest.mark.asyncio
    async def test_run_stops_on_shutdown(
        self, manager: OperatorManager, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        passes: list[int] = []

        async def fake_run_once() -> list[ReconcileResult]:
            passes.append(1)
            if len(passes) == 1:
                raise ConfigurationError("bad settings")
            manager.shutdown()
            return []

        monkeypatch.setattr(manager, "run_once", fake_run_once)
        monkeypatch.setattr(manager, "next_wakeup_seconds", lambda: 0.01)

        await manager.run()

        assert len(passes) == 2
