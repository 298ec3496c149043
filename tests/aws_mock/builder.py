"""Client builder that hands out mock clients instead of boto3 clients."""

from __future__ import annotations

from typing import Any

from account_operator.aws import AwsClientBuilder, AwsClients, CredentialError
from account_operator.models import Secret

from .iam import MockIamClient
from .organizations import MockOrganizationsClient
from .state import MockAwsState
from .sts import MockStsClient


class MockAwsClientBuilder(AwsClientBuilder):
    """``AwsClientBuilder`` whose clients operate on a ``MockAwsState``.

    ``assume_role`` is inherited unchanged, so audit logging and error
    propagation are the production code paths.
    """

    def __init__(
        self, state: MockAwsState, region: str = "us-east-1", audit_enabled: bool = True
    ) -> None:
        super().__init__(region, audit_enabled)
        self.state = state

    def _for_account(self, account_id: str | None) -> AwsClients:
        return AwsClients(
            organizations=MockOrganizationsClient(self.state),
            iam=MockIamClient(self.state, account_id or "000000000000"),
            sts=MockStsClient(self.state, account_id),
        )

    def operator_clients(self) -> AwsClients:
        return self._for_account(self.state.operator_account_id)

    def clients_from_secret(self, secret: Secret) -> AwsClients:
        if not secret.access_key_id or not secret.secret_access_key:
            raise CredentialError(
                f"Secret {secret.namespace}/{secret.name} is missing "
                "aws_access_key_id or aws_secret_access_key"
            )
        return self._for_account(self.state.access_keys.get(secret.access_key_id))

    def clients_from_assumed_role(self, credentials: dict[str, Any]) -> AwsClients:
        return self._for_account(self.state.access_keys.get(credentials["AccessKeyId"]))


def builder_factory(state: MockAwsState) -> Any:
    """Factory suitable for ``Reconciler(client_builder_factory=...)``."""

    def factory(region: str) -> MockAwsClientBuilder:
        return MockAwsClientBuilder(state, region)

    return factory
