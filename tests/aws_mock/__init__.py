"""AWS API Mock for Testing.

In-memory implementation of the Organizations, IAM and STS operations the
operator uses. Clients raise real ``botocore.exceptions.ClientError`` with
provider error codes and paginate with ``Marker``/``IsTruncated``.

Key Features:
- Organization tree with tags, moves and account creation requests
- One IAM namespace per account with DeleteConflict enforcement
- STS role assumption restricted to explicitly allowed roles
- Error injection and a call log for assertions

Usage:
    from aws_mock import MockAwsState, builder_factory

    state = MockAwsState()
    reconciler = FederatedRoleReconciler(store, builder_factory(state))
    reconciler.reconcile(role, settings)

    assert state.call_count("create_policy") == 1
"""

from .builder import MockAwsClientBuilder, builder_factory
from .iam import MockIamClient
from .organizations import MockOrganizationsClient
from .state import MockAwsState, client_error
from .sts import MockStsClient

__all__ = [
    "MockAwsClientBuilder",
    "MockAwsState",
    "MockIamClient",
    "MockOrganizationsClient",
    "MockStsClient",
    "builder_factory",
    "client_error",
]
