"""Tests for the operator process entry point."""

import json
import logging
import os
import sys
from collections.abc import Iterator
from pathlib import Path
from unittest.mock import patch

import pytest

from account_operator import main as operator_main
from account_operator.config import OperatorSettings
from account_operator.federated_role import FederatedRoleReconciler
from account_operator.main import JsonFormatter
from account_operator.store import InMemoryStore
from aws_mock import MockAwsState, builder_factory
from factories import make_role


class TestJsonFormatter:
    def test_extra_fields_are_included(self) -> None:
        record = logging.LogRecord(
            "account_operator.test", logging.INFO, __file__, 1, "Account %s", ("ready",), None
        )
        record.aws_account_id = "123456789012"
        record.path = Path("/manifests")

        data = json.loads(JsonFormatter().format(record))

        assert data["message"] == "Account ready"
        assert data["level"] == "INFO"
        assert data["logger"] == "account_operator.test"
        assert data["aws_account_id"] == "123456789012"
        assert data["path"] == "/manifests"
        assert data["timestamp"].endswith("Z")
        assert "args" not in data

    def test_exception(self) -> None:
        try:
            raise ValueError("boom")
        except ValueError:
            record = logging.LogRecord(
                "test", logging.ERROR, __file__, 1, "failed", (), sys.exc_info()
            )

        data = json.loads(JsonFormatter().format(record))

        assert "ValueError: boom" in data["exception"]


class TestMain:
    """Startup failures exit non-zero before the loop starts."""

    @pytest.fixture(autouse=True)
    def no_logging_setup(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setattr(operator_main, "setup_logging", lambda: None)

    @pytest.mark.asyncio
    async def test_configuration_error(self, tmp_path: Path) -> None:
        with patch.dict(os.environ, {"MANIFESTS_DIR": str(tmp_path / "missing")}):
            assert await operator_main.main() == 1

    @pytest.mark.asyncio
    async def test_invalid_operator_settings(self, tmp_path: Path) -> None:
        settings_file = tmp_path / "config.yaml"
        settings_file.write_text("fedramp: maybe\n")
        env = {"MANIFESTS_DIR": str(tmp_path), "OPERATOR_CONFIG_FILE": str(settings_file)}

        with patch.dict(os.environ, env):
            assert await operator_main.main() == 1


class TestStructuredLogging:
    """Reconciliation with production logging enabled."""

    @pytest.fixture
    def production_logging(self, capsys: pytest.CaptureFixture[str]) -> Iterator[None]:
        root = logging.getLogger()
        handlers, level = list(root.handlers), root.level
        yield
        for handler in root.handlers:
            if handler not in handlers:
                root.removeHandler(handler)
        root.setLevel(level)

    def test_reconcile_logs_resource_fields(
        self,
        capsys: pytest.CaptureFixture[str],
        production_logging: None,
        store: InMemoryStore,
        aws_state: MockAwsState,
    ) -> None:
        # Bind the stdout handler in the call phase, where capsys is capturing.
        operator_main.setup_logging(logging.INFO)
        role = store.create(make_role(managed_policies=["ReadOnlyAccess"]))
        reconciler = FederatedRoleReconciler(store, builder_factory(aws_state))

        result = reconciler.reconcile(role, OperatorSettings())

        assert result.success
        records = [json.loads(line) for line in capsys.readouterr().out.splitlines()]
        finalizer_logs = [r for r in records if r["message"] == "Adding finalizer"]
        assert finalizer_logs[0]["resource_name"] == "read-only"
        assert finalizer_logs[0]["kind"] == "AWSFederatedRole"
