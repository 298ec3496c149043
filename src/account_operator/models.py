"""Pydantic models for the operator's declarative resources.

These models provide:
1. Type-safe YAML parsing of Kubernetes-shaped manifests
2. Validation at the boundary (fail fast, fail loudly)
3. A persisted status surface that is the only memory kept between passes

Wire names are camelCase (aliases); attributes are snake_case.
"""

from __future__ import annotations

import re
from datetime import datetime
from enum import Enum
from typing import Annotated, Any, ClassVar

from pydantic import BaseModel, Field, field_validator

API_VERSION = "aws.managed.io/v1alpha1"

# Label keys persisted on federated access requests
UID_LABEL = "uid"
ACCOUNT_ID_LABEL = "awsAccountID"

FINALIZER = "finalizer.aws.managed.io"

VALID_ACCOUNT_ID_PATTERN = r"^\d{12}$"


# =============================================================================
# Enums
# =============================================================================


class AccountState(str, Enum):
    """Lifecycle states of an Account resource."""

    CREATING = "Creating"
    PENDING_VERIFICATION = "PendingVerification"
    PENDING = "Pending"
    READY = "Ready"
    FAILED = "Failed"


class AccountConditionType(str, Enum):
    """Condition types recorded on Account resources."""

    CREATING = "Creating"
    PENDING_VERIFICATION = "PendingVerification"
    PENDING = "Pending"
    READY = "Ready"
    FAILED = "Failed"
    CLAIMED = "Claimed"
    LIMIT_EXCEEDED = "AccountLimitExceeded"
    CREATION_ERROR = "CreationError"


class ConditionStatus(str, Enum):
    TRUE = "True"
    FALSE = "False"


class FederatedRoleState(str, Enum):
    """Validation outcome of a role template. Valid and Invalid are terminal."""

    UNVALIDATED = "Unvalidated"
    VALID = "Valid"
    INVALID = "Invalid"


class FederatedRoleConditionType(str, Enum):
    VALID = "Valid"
    INVALID = "Invalid"


class FederatedAccessState(str, Enum):
    """Provisioning outcome of an access request. Ready and Failed are terminal."""

    READY = "Ready"
    FAILED = "Failed"


class FederatedAccessConditionType(str, Enum):
    READY = "Ready"
    FAILED = "Failed"


# =============================================================================
# Common
# =============================================================================


class ObjectMeta(BaseModel):
    """Identity and bookkeeping fields shared by every resource."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    name: Annotated[str, Field(min_length=1, max_length=253)]
    namespace: str = "default"
    labels: dict[str, str] = Field(default_factory=dict)
    finalizers: list[str] = Field(default_factory=list)
    deletion_timestamp: datetime | None = Field(None, alias="deletionTimestamp")
    creation_timestamp: datetime | None = Field(None, alias="creationTimestamp")


class Condition(BaseModel):
    """A typed, deduplicated status entry."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    type: str
    status: ConditionStatus = ConditionStatus.TRUE
    reason: str = ""
    message: str = ""
    last_probe_time: datetime | None = Field(None, alias="lastProbeTime")
    last_transition_time: datetime | None = Field(None, alias="lastTransitionTime")


class ObjectReference(BaseModel):
    """Reference to another resource by name and namespace."""

    model_config = {"extra": "ignore"}

    name: Annotated[str, Field(min_length=1)]
    namespace: str = "default"


class Resource(BaseModel):
    """Base class for all manifests handled by the store."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    KIND: ClassVar[str] = ""

    api_version: str = Field(API_VERSION, alias="apiVersion")
    kind: str
    metadata: ObjectMeta

    @field_validator("kind")
    @classmethod
    def validate_kind(cls, v: str) -> str:
        if cls.KIND and v != cls.KIND:
            raise ValueError(f"kind must be '{cls.KIND}', got '{v}'")
        return v

    @property
    def name(self) -> str:
        return self.metadata.name

    @property
    def namespace(self) -> str:
        return self.metadata.namespace

    @property
    def identity(self) -> tuple[str, str, str]:
        """(kind, namespace, name) - the single-flight dispatch key."""
        return (self.kind, self.metadata.namespace, self.metadata.name)

    def to_manifest(self) -> dict[str, Any]:
        """Serialize back to the wire shape."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


# =============================================================================
# Account
# =============================================================================


class AccountSpec(BaseModel):
    model_config = {"extra": "ignore", "populate_by_name": True}

    aws_account_id: str = Field("", alias="awsAccountID")
    byoc: bool = Field(False, alias="byoc")
    claim_link: str = Field("", alias="claimLink")
    claim_link_namespace: str = Field("", alias="claimLinkNamespace")
    account_pool: str = Field("", alias="accountPool")

    @field_validator("aws_account_id")
    @classmethod
    def validate_account_id(cls, v: str) -> str:
        if v and not re.match(VALID_ACCOUNT_ID_PATTERN, v):
            raise ValueError("awsAccountID must be a 12-digit account id")
        return v


class AccountStatus(BaseModel):
    model_config = {"extra": "ignore", "populate_by_name": True}

    state: AccountState | None = None
    claimed: bool = False
    support_case_id: str = Field("", alias="supportCaseID")
    rotate_credentials: bool = Field(False, alias="rotateCredentials")
    rotate_console_credentials: bool = Field(False, alias="rotateConsoleCredentials")
    create_account_request_id: str = Field("", alias="createAccountRequestID")
    conditions: list[Condition] = Field(default_factory=list)


class Account(Resource):
    """A cloud sub-account managed by the operator."""

    KIND: ClassVar[str] = "Account"

    kind: str = "Account"
    spec: AccountSpec = Field(default_factory=AccountSpec)
    status: AccountStatus = Field(default_factory=AccountStatus)


# =============================================================================
# AWSFederatedRole
# =============================================================================


class StatementEntry(BaseModel):
    """One statement of a template's custom policy."""

    model_config = {"extra": "ignore"}

    effect: str = "Allow"
    action: list[str] = Field(default_factory=list)
    resource: list[str] = Field(default_factory=list)
    condition: dict[str, Any] | None = None
    principal: dict[str, Any] | None = None

    @field_validator("effect")
    @classmethod
    def validate_effect(cls, v: str) -> str:
        if v not in ("Allow", "Deny"):
            raise ValueError("effect must be 'Allow' or 'Deny'")
        return v


class AWSCustomPolicy(BaseModel):
    model_config = {"extra": "ignore", "populate_by_name": True}

    name: str = ""
    description: str = ""
    statements: list[StatementEntry] = Field(default_factory=list, alias="awsStatements")


class AWSFederatedRoleSpec(BaseModel):
    model_config = {"extra": "ignore", "populate_by_name": True}

    role_display_name: str = Field("", alias="roleDisplayName")
    role_description: str = Field("", alias="roleDescription")
    custom_policy: AWSCustomPolicy | None = Field(None, alias="awsCustomPolicy")
    managed_policies: list[str] = Field(default_factory=list, alias="awsManagedPolicies")

    @property
    def has_custom_policy(self) -> bool:
        return self.custom_policy is not None and bool(self.custom_policy.name)


class AWSFederatedRoleStatus(BaseModel):
    model_config = {"extra": "ignore"}

    state: FederatedRoleState = FederatedRoleState.UNVALIDATED
    conditions: list[Condition] = Field(default_factory=list)


class AWSFederatedRole(Resource):
    """A role template validated once and referenced by access requests."""

    KIND: ClassVar[str] = "AWSFederatedRole"

    kind: str = "AWSFederatedRole"
    spec: AWSFederatedRoleSpec = Field(default_factory=AWSFederatedRoleSpec)
    status: AWSFederatedRoleStatus = Field(default_factory=AWSFederatedRoleStatus)


# =============================================================================
# AWSFederatedAccountAccess
# =============================================================================


class AWSFederatedAccountAccessSpec(BaseModel):
    model_config = {"extra": "ignore", "populate_by_name": True}

    federated_role: ObjectReference = Field(alias="awsFederatedRole")
    credential_secret: ObjectReference = Field(alias="awsCustomerCredentialSecret")
    external_customer_arn: Annotated[
        str, Field(min_length=1, alias="externalCustomerAWSIAMARN")
    ]

    @field_validator("external_customer_arn")
    @classmethod
    def validate_arn(cls, v: str) -> str:
        if not v.startswith("arn:"):
            raise ValueError("externalCustomerAWSIAMARN must be an ARN")
        return v


class AWSFederatedAccountAccessStatus(BaseModel):
    model_config = {"extra": "ignore", "populate_by_name": True}

    state: FederatedAccessState | None = None
    console_url: str = Field("", alias="consoleURL")
    conditions: list[Condition] = Field(default_factory=list)


class AWSFederatedAccountAccess(Resource):
    """A concrete cross-account role and policy provisioned from a template."""

    KIND: ClassVar[str] = "AWSFederatedAccountAccess"

    kind: str = "AWSFederatedAccountAccess"
    spec: AWSFederatedAccountAccessSpec
    status: AWSFederatedAccountAccessStatus = Field(
        default_factory=AWSFederatedAccountAccessStatus
    )

    @property
    def uid(self) -> str | None:
        return self.metadata.labels.get(UID_LABEL)

    @property
    def target_account_id(self) -> str | None:
        return self.metadata.labels.get(ACCOUNT_ID_LABEL)


# =============================================================================
# Secret
# =============================================================================


class Secret(Resource):
    """Credential secret for a target account.

    Only the two access-key fields are read. Values are never logged.
    """

    KIND: ClassVar[str] = "Secret"

    api_version: str = Field("v1", alias="apiVersion")
    kind: str = "Secret"
    data: dict[str, str] = Field(default_factory=dict)

    @property
    def access_key_id(self) -> str | None:
        return self.data.get("aws_access_key_id")

    @property
    def secret_access_key(self) -> str | None:
        return self.data.get("aws_secret_access_key")

    def __repr__(self) -> str:
        return f"Secret(name={self.metadata.name!r}, keys={sorted(self.data)!r})"


# Registry mapping manifest kinds to model classes
KIND_REGISTRY: dict[str, type[Resource]] = {
    "Account": Account,
    "AWSFederatedRole": AWSFederatedRole,
    "AWSFederatedAccountAccess": AWSFederatedAccountAccess,
    "Secret": Secret,
}


def get_resource_class(kind: str) -> type[Resource]:
    """Get the model class for a manifest kind.

    Raises:
        ValueError: If kind is not recognized.
    """
    resource_class = KIND_REGISTRY.get(kind)
    if resource_class is None:
        valid_kinds = list(KIND_REGISTRY.keys())
        raise ValueError(f"Unknown kind '{kind}'. Valid kinds: {valid_kinds}")
    return resource_class
