"""Tests for account creation and outcome classification."""

import pytest
from botocore.exceptions import ClientError

from account_operator.account_provisioning import (
    AccountLimitExceededError,
    FailedCreateAccountError,
    InternalFailureError,
    TooManyRequestsError,
    check_create_account_status,
    classify_create_status,
    create_account,
    tag_account,
)
from aws_mock import MockAwsState, MockOrganizationsClient


@pytest.fixture
def organizations(aws_state: MockAwsState) -> MockOrganizationsClient:
    return MockOrganizationsClient(aws_state)


class TestCreateAccount:
    """Tests for create_account."""

    def test_succeeded_returns_describe_output_unchanged(
        self, aws_state: MockAwsState, organizations: MockOrganizationsClient
    ) -> None:
        output = create_account(organizations, "osd-1", "pool+osd-1@example.com")

        status = output["CreateAccountStatus"]
        assert status["State"] == "SUCCEEDED"
        assert status["AccountId"]
        assert output == organizations.describe_create_account_status(
            CreateAccountRequestId=status["Id"]
        )

    def test_exactly_one_status_check(
        self, aws_state: MockAwsState, organizations: MockOrganizationsClient
    ) -> None:
        aws_state.create_outcome = ("IN_PROGRESS", None)

        output = create_account(organizations, "osd-1", "pool+osd-1@example.com")

        assert output["CreateAccountStatus"]["State"] == "IN_PROGRESS"
        assert aws_state.call_count("create_account") == 1
        assert aws_state.call_count("describe_create_account_status") == 1

    @pytest.mark.parametrize(
        "code,expected,retryable",
        [
            ("ConstraintViolationException", AccountLimitExceededError, False),
            ("ServiceException", InternalFailureError, True),
            ("TooManyRequestsException", TooManyRequestsError, True),
            ("AccessDeniedException", FailedCreateAccountError, True),
        ],
    )
    def test_create_error_classification(
        self,
        aws_state: MockAwsState,
        organizations: MockOrganizationsClient,
        code: str,
        expected: type,
        retryable: bool,
    ) -> None:
        aws_state.inject_error("create_account", code)

        with pytest.raises(expected) as exc_info:
            create_account(organizations, "osd-1", "pool+osd-1@example.com")

        assert exc_info.value.retryable is retryable
        assert isinstance(exc_info.value.cause, ClientError)
        assert aws_state.call_count("describe_create_account_status") == 0

    def test_status_failed_limit_exceeded(
        self, aws_state: MockAwsState, organizations: MockOrganizationsClient
    ) -> None:
        aws_state.create_outcome = ("FAILED", "ACCOUNT_LIMIT_EXCEEDED")

        with pytest.raises(AccountLimitExceededError):
            create_account(organizations, "osd-1", "pool+osd-1@example.com")

    def test_status_failed_other_reason(
        self, aws_state: MockAwsState, organizations: MockOrganizationsClient
    ) -> None:
        aws_state.create_outcome = ("FAILED", "EMAIL_ALREADY_EXISTS")

        with pytest.raises(FailedCreateAccountError) as exc_info:
            create_account(organizations, "osd-1", "pool+osd-1@example.com")

        assert "EMAIL_ALREADY_EXISTS" in str(exc_info.value)

    def test_describe_error_propagates(
        self, aws_state: MockAwsState, organizations: MockOrganizationsClient
    ) -> None:
        aws_state.inject_error("describe_create_account_status", "ServiceException")

        with pytest.raises(ClientError):
            create_account(organizations, "osd-1", "pool+osd-1@example.com")


class TestClassifyCreateStatus:
    @pytest.mark.parametrize("state", ["SUCCEEDED", "IN_PROGRESS"])
    def test_non_failed_states(self, state: str) -> None:
        classify_create_status({"State": state})

    def test_failed_without_reason(self) -> None:
        with pytest.raises(FailedCreateAccountError) as exc_info:
            classify_create_status({"State": "FAILED"})

        assert "unknown reason" in str(exc_info.value)


class TestCheckCreateAccountStatus:
    def test_in_progress_request(
        self, aws_state: MockAwsState, organizations: MockOrganizationsClient
    ) -> None:
        aws_state.create_outcome = ("IN_PROGRESS", None)
        response = organizations.create_account(AccountName="a", Email="e")
        request_id = response["CreateAccountStatus"]["Id"]

        assert check_create_account_status(organizations, request_id)["CreateAccountStatus"][
            "State"
        ] == "IN_PROGRESS"

        account_id = organizations.complete_request(request_id)
        output = check_create_account_status(organizations, request_id)

        assert output["CreateAccountStatus"]["AccountId"] == account_id


class TestTagAccount:
    def test_upsert(self, aws_state: MockAwsState, organizations: MockOrganizationsClient) -> None:
        aws_state.add_account("123456789012", tags={"owner": "old", "team": "sre"})

        tag_account(organizations, "123456789012", "hive-1")
        tag_account(organizations, "123456789012", "hive-1")

        assert aws_state.tags["123456789012"] == {"owner": "hive-1", "team": "sre"}
