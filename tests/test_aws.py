"""Tests for AWS client helpers and security auditing."""

import logging

import pytest
from botocore.exceptions import ClientError

from account_operator.aws import (
    SHORT_UID_LENGTH,
    CredentialError,
    error_code,
    generate_short_uid,
    is_error_code,
    log_aws_error,
)
from account_operator.models import ObjectMeta, Secret
from aws_mock import MockAwsClientBuilder, MockAwsState, client_error


class TestErrorHelpers:
    """Tests for provider error classification helpers."""

    def test_error_code(self) -> None:
        err = client_error("NoSuchEntity", "missing", "GetRole")

        assert error_code(err) == "NoSuchEntity"
        assert is_error_code(err, "EntityAlreadyExists", "NoSuchEntity")
        assert not is_error_code(err, "DeleteConflict")

    def test_non_client_error(self) -> None:
        assert error_code(ValueError("boom")) is None
        assert not is_error_code(ValueError("boom"), "NoSuchEntity")

    def test_log_aws_error_includes_code_and_request_id(self, caplog: pytest.LogCaptureFixture) -> None:
        err = client_error("AccessDenied", "denied", "AssumeRole")
        log = logging.getLogger("test.aws")

        with caplog.at_level(logging.ERROR, logger="test.aws"):
            log_aws_error(log, "Assume failed", err, aws_account_id="123456789012")

        record = caplog.records[0]
        assert record.aws_error_code == "AccessDenied"
        assert record.aws_request_id
        assert record.aws_account_id == "123456789012"


class TestShortUid:
    def test_format(self) -> None:
        uid = generate_short_uid()

        assert len(uid) == SHORT_UID_LENGTH
        assert uid.isalnum()
        assert uid == uid.lower()

    def test_random(self) -> None:
        assert len({generate_short_uid() for _ in range(50)}) > 1


class TestClientBuilder:
    """Tests for credential handling on the client builder."""

    def test_secret_missing_keys(self) -> None:
        builder = MockAwsClientBuilder(MockAwsState())
        secret = Secret(metadata=ObjectMeta(name="empty"), data={"aws_access_key_id": "AKIA"})

        with pytest.raises(CredentialError) as exc_info:
            builder.clients_from_secret(secret)

        assert "aws_secret_access_key" in str(exc_info.value)

    def test_assume_role_success_is_audited(self, caplog: pytest.LogCaptureFixture) -> None:
        state = MockAwsState()
        state.allow_assume("123456789012", "OrganizationAccountAccessRole")
        builder = MockAwsClientBuilder(state)
        sts = builder.operator_clients().sts

        with caplog.at_level(logging.INFO, logger="account_operator.aws"):
            credentials = builder.assume_role(
                sts,
                "arn:aws:iam::123456789012:role/OrganizationAccountAccessRole",
                "FederatedRoleCleanup",
            )

        assert credentials["AccessKeyId"].startswith("ASIA")
        audits = [r for r in caplog.records if getattr(r, "security_audit", False)]
        assert audits[0].result == "success"
        assert builder.clients_from_assumed_role(credentials).sts.account_id == "123456789012"

    def test_assume_role_failure_is_audited_and_raised(self, caplog: pytest.LogCaptureFixture) -> None:
        builder = MockAwsClientBuilder(MockAwsState())
        sts = builder.operator_clients().sts

        with caplog.at_level(logging.INFO, logger="account_operator.aws"):
            with pytest.raises(ClientError):
                builder.assume_role(sts, "arn:aws:iam::123456789012:role/Nope", "session")

        audits = [r for r in caplog.records if getattr(r, "security_audit", False)]
        assert audits[0].result == "failure"

    def test_audit_disabled(self, caplog: pytest.LogCaptureFixture) -> None:
        state = MockAwsState()
        state.allow_assume("123456789012", "Admin")
        builder = MockAwsClientBuilder(state, audit_enabled=False)

        with caplog.at_level(logging.INFO, logger="account_operator.aws"):
            builder.assume_role(
                builder.operator_clients().sts, "arn:aws:iam::123456789012:role/Admin", "s"
            )

        assert not [r for r in caplog.records if getattr(r, "security_audit", False)]
