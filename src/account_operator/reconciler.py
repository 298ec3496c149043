"""Shared reconciliation types.

Every controller implements ``reconcile(resource, settings)`` and returns a
``ReconcileResult``. Recognised terminal outcomes are written to status and
reported as success so the dispatcher does not hot-loop. Anything else is
raised and the dispatcher retries with its own backoff.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from .aws import AwsClientBuilder
from .config import OperatorSettings
from .models import Resource
from .store import ResourceStore

logger = logging.getLogger(__name__)


@dataclass
class ReconcileResult:
    """Outcome of reconciling one resource identity."""

    kind: str
    namespace: str
    name: str
    requeue: bool = False
    requeue_after_seconds: float | None = None
    start_time: datetime = field(default_factory=lambda: datetime.now(UTC))
    end_time: datetime | None = None
    error: Exception | None = None

    @classmethod
    def done(cls, resource: Resource) -> ReconcileResult:
        return cls(resource.kind, resource.namespace, resource.name)

    @classmethod
    def after(cls, resource: Resource, seconds: float) -> ReconcileResult:
        return cls(
            resource.kind,
            resource.namespace,
            resource.name,
            requeue=True,
            requeue_after_seconds=seconds,
        )

    @classmethod
    def again(cls, resource: Resource) -> ReconcileResult:
        """Requeue on the next pass."""
        return cls(resource.kind, resource.namespace, resource.name, requeue=True)

    @property
    def duration_seconds(self) -> float:
        """Calculate duration in seconds."""
        if self.end_time is None:
            return 0.0
        return (self.end_time - self.start_time).total_seconds()

    @property
    def success(self) -> bool:
        """Check if reconciliation succeeded."""
        return self.error is None


class Reconciler:
    """Base class holding the collaborators every controller needs."""

    controller_name = "reconciler"
    kind = ""

    def __init__(
        self,
        store: ResourceStore,
        client_builder_factory: Any,
        audit_enabled: bool = True,
        dry_run: bool = False,
    ) -> None:
        """Initialize with collaborators.

        Args:
            store: Resource store to read and persist resources.
            client_builder_factory: Callable taking a region and returning an
                ``AwsClientBuilder``.
            audit_enabled: Emit security audit records.
            dry_run: Log account creation and validation repairs instead of issuing them.
        """
        self._store = store
        self._builder_factory = client_builder_factory
        self._audit_enabled = audit_enabled
        self._dry_run = dry_run

    def client_builder(self, settings: OperatorSettings) -> AwsClientBuilder:
        return self._builder_factory(settings.region)

    def log_context(self, resource: Resource) -> dict[str, Any]:
        return {
            "controller": self.controller_name,
            "kind": resource.kind,
            "namespace": resource.namespace,
            "resource_name": resource.name,
        }

    def reconcile(self, resource: Resource, settings: OperatorSettings) -> ReconcileResult:
        raise NotImplementedError("Subclasses must implement reconcile")
