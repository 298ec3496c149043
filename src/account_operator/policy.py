"""IAM policy document schema.

Documents are built directly from typed statements and serialized by alias.
Empty optional keys (Resource, Condition, Principal) are omitted from the JSON.
"""

from __future__ import annotations

import json
from typing import Any

from pydantic import BaseModel, Field

from .models import AWSFederatedRole

POLICY_VERSION = "2012-10-17"


class PolicyStatement(BaseModel):
    """A single IAM policy statement."""

    model_config = {"populate_by_name": True}

    effect: str = Field(alias="Effect")
    action: list[str] | None = Field(None, alias="Action")
    resource: list[str] | None = Field(None, alias="Resource")
    condition: dict[str, Any] | None = Field(None, alias="Condition")
    principal: dict[str, Any] | None = Field(None, alias="Principal")


class PolicyDocument(BaseModel):
    """A versioned IAM policy document."""

    model_config = {"populate_by_name": True}

    version: str = Field(POLICY_VERSION, alias="Version")
    statement: list[PolicyStatement] = Field(default_factory=list, alias="Statement")

    def to_json(self) -> str:
        return json.dumps(self.model_dump(by_alias=True, exclude_none=True))


def build_custom_policy_document(role: AWSFederatedRole) -> PolicyDocument:
    """Build the custom policy document declared by a role template.

    Args:
        role: Template whose ``awsCustomPolicy`` statements are converted.

    Returns:
        Policy document with one statement per template statement, in order.
    """
    statements: list[PolicyStatement] = []
    custom = role.spec.custom_policy
    if custom is not None:
        for entry in custom.statements:
            statements.append(
                PolicyStatement(
                    effect=entry.effect,
                    action=entry.action,
                    resource=entry.resource or None,
                    condition=entry.condition or None,
                    principal=entry.principal or None,
                )
            )
    return PolicyDocument(statement=statements)


def build_trust_policy(principal_arn: str) -> PolicyDocument:
    """Trust policy allowing exactly one external principal to assume the role."""
    return PolicyDocument(
        statement=[
            PolicyStatement(
                effect="Allow",
                action=["sts:AssumeRole"],
                principal={"AWS": [principal_arn]},
            )
        ]
    )
