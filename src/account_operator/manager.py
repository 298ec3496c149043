"""Dispatcher that drives every controller from the resource store.

Each pass:

1. Re-reads the operator settings and the store
2. Lists every resource of each watched kind
3. Reconciles each identity at most once, bounded per controller by
   ``MaxConcurrentReconciles.<controller>``

Controllers are synchronous and run in the default executor. An identity is
never reconciled by two tasks at once. Requeue requests and error backoff are
tracked per controller and identity; the next wakeup is the earliest due
requeue or the reconcile interval, whichever comes first.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from datetime import UTC, datetime, timedelta

from .account_reconciler import AccountReconciler
from .account_validation import AccountValidationReconciler
from .aws import AwsClientBuilder
from .config import (
    RETRY_BACKOFF_BASE_SECONDS,
    RETRY_BACKOFF_MAX_SECONDS,
    Config,
    ConfigurationError,
    OperatorSettings,
)
from .federated_access import FederatedAccessReconciler
from .federated_role import FederatedRoleReconciler
from .models import Account, AWSFederatedAccountAccess, AWSFederatedRole
from .reconciler import ReconcileResult, Reconciler
from .store import ManifestError, ResourceNotFoundError, ResourceStore

logger = logging.getLogger(__name__)

# Lower bound on the wait between passes when a requeue is already due
MIN_WAKEUP_SECONDS = 1.0

Identity = tuple[str, str, str]
RequeueKey = tuple[str, Identity]


def backoff_seconds(failures: int) -> float:
    """Exponential backoff for consecutive failures of one identity."""
    if failures <= 0:
        return 0.0
    return float(min(RETRY_BACKOFF_BASE_SECONDS * 2 ** (failures - 1), RETRY_BACKOFF_MAX_SECONDS))


class OperatorManager:
    """Runs reconciliation passes until shutdown."""

    def __init__(
        self,
        config: Config,
        store: ResourceStore,
        client_builder_factory: Callable[[str], AwsClientBuilder] | None = None,
    ) -> None:
        self._config = config
        self._store = store
        audit_enabled = config.security.enable_audit_logging

        if client_builder_factory is None:

            def client_builder_factory(region: str) -> AwsClientBuilder:
                return AwsClientBuilder(config.region or region, audit_enabled)

        def build(cls: type[Reconciler]) -> Reconciler:
            return cls(store, client_builder_factory, audit_enabled, config.dry_run)

        # Controllers of one kind run in this order for each identity
        self._controllers: dict[str, list[Reconciler]] = {
            Account.KIND: [build(AccountReconciler), build(AccountValidationReconciler)],
            AWSFederatedRole.KIND: [build(FederatedRoleReconciler)],
            AWSFederatedAccountAccess.KIND: [build(FederatedAccessReconciler)],
        }

        self._due: dict[RequeueKey, datetime] = {}
        self._failures: dict[RequeueKey, int] = {}
        self._shutdown_event = asyncio.Event()

    @property
    def controllers(self) -> dict[str, list[Reconciler]]:
        return self._controllers

    def _is_due(self, key: RequeueKey, now: datetime) -> bool:
        due = self._due.get(key)
        return due is None or due <= now

    def _record(self, key: RequeueKey, result: ReconcileResult) -> None:
        now = datetime.now(UTC)
        if result.error is not None:
            failures = self._failures.get(key, 0) + 1
            self._failures[key] = failures
            self._due[key] = now + timedelta(seconds=backoff_seconds(failures))
            return

        self._failures.pop(key, None)
        if result.requeue:
            self._due[key] = now + timedelta(seconds=result.requeue_after_seconds or 0)
        else:
            self._due.pop(key, None)

    def _forget_missing(self, listed: set[Identity]) -> None:
        """Drop requeue and backoff entries of identities that left the store."""
        for key in [key for key in self._due if key[1] not in listed]:
            del self._due[key]
        for key in [key for key in self._failures if key[1] not in listed]:
            del self._failures[key]

    async def _reconcile_identity(
        self,
        identity: Identity,
        settings: OperatorSettings,
        semaphores: dict[str, asyncio.Semaphore],
    ) -> list[ReconcileResult]:
        loop = asyncio.get_running_loop()
        results: list[ReconcileResult] = []

        for controller in self._controllers[identity[0]]:
            key = (controller.controller_name, identity)
            if not self._is_due(key, datetime.now(UTC)):
                continue

            async with semaphores[controller.controller_name]:
                try:
                    resource = await loop.run_in_executor(None, self._store.get, *identity)
                except ResourceNotFoundError:
                    self._due.pop(key, None)
                    self._failures.pop(key, None)
                    return results

                start = datetime.now(UTC)
                try:
                    result = await loop.run_in_executor(
                        None, controller.reconcile, resource, settings
                    )
                except Exception as e:
                    result = ReconcileResult(*identity, requeue=True, error=e)
                    logger.exception(
                        "Reconciliation failed",
                        extra={
                            "controller": controller.controller_name,
                            "kind": identity[0],
                            "namespace": identity[1],
                            "resource_name": identity[2],
                            "error": str(e),
                            "error_type": type(e).__name__,
                        },
                    )
                result.start_time = start
                result.end_time = datetime.now(UTC)

            self._record(key, result)
            self._log_result(controller, result)
            results.append(result)
        return results

    def _log_result(self, controller: Reconciler, result: ReconcileResult) -> None:
        logger.debug(
            "Reconciled",
            extra={
                "controller": controller.controller_name,
                "kind": result.kind,
                "namespace": result.namespace,
                "resource_name": result.name,
                "success": result.success,
                "requeue": result.requeue,
                "requeue_after_seconds": result.requeue_after_seconds,
                "duration_seconds": result.duration_seconds,
            },
        )

    async def run_once(self) -> list[ReconcileResult]:
        """Run one reconciliation pass over every watched resource.

        Raises:
            ConfigurationError: If the operator settings cannot be loaded.
            ManifestError: If a strict store fails to reload.
        """
        loop = asyncio.get_running_loop()
        settings = await loop.run_in_executor(None, self._config.load_settings)
        await loop.run_in_executor(None, self._store.refresh)

        semaphores = {
            controller.controller_name: asyncio.Semaphore(
                settings.max_reconciles(controller.controller_name)
            )
            for controllers in self._controllers.values()
            for controller in controllers
        }

        identities: list[Identity] = []
        for kind in self._controllers:
            identities.extend(resource.identity for resource in self._store.list(kind))
        self._forget_missing(set(identities))

        logger.info(
            "Starting reconciliation pass",
            extra={
                "resources": len(identities),
                "region": self._config.region_for(settings),
                "fedramp": settings.fedramp,
                "dry_run": self._config.dry_run,
            },
        )

        batches = await asyncio.gather(
            *(self._reconcile_identity(identity, settings, semaphores) for identity in identities)
        )
        results = [result for batch in batches for result in batch]

        failed = sum(1 for result in results if not result.success)
        logger.info(
            "Reconciliation pass complete",
            extra={"reconciled": len(results), "failed": failed},
        )
        return results

    def next_wakeup_seconds(self, now: datetime | None = None) -> float:
        """Seconds until the earliest due requeue, capped by the reconcile interval."""
        now = now or datetime.now(UTC)
        interval = float(self._config.reconcile_interval_seconds)
        if not self._due:
            return interval
        earliest = min(self._due.values())
        return min(interval, max((earliest - now).total_seconds(), MIN_WAKEUP_SECONDS))

    async def run(self) -> None:
        """Run reconciliation passes until shutdown is requested."""
        logger.info(
            "Starting operator",
            extra={
                "manifests_dir": str(self._config.manifests_dir),
                "interval_seconds": self._config.reconcile_interval_seconds,
                "dry_run": self._config.dry_run,
            },
        )

        while not self._shutdown_event.is_set():
            try:
                await self.run_once()
            except (ConfigurationError, ManifestError) as e:
                logger.error("Skipping reconciliation pass", extra={"error": str(e)})

            try:
                await asyncio.wait_for(
                    self._shutdown_event.wait(),
                    timeout=self.next_wakeup_seconds(),
                )
            except TimeoutError:
                pass

        logger.info("Operator shutdown complete")

    def shutdown(self) -> None:
        """Signal the run loop to stop."""
        logger.info("Shutdown requested")
        self._shutdown_event.set()
