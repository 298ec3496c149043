"""Finalizer protocol for resources that own provider objects.

The finalizer marker is the durable record that external objects may exist
for a resource identity:

1. A resource seen without the marker gets it added, and the pass ends
   there. No provisioning happens in the same pass.
2. A resource marked for deletion has its teardown run. The marker is
   removed only when teardown succeeds, which lets the store complete the
   deletion. A failed teardown keeps the marker so deletion is retried.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import TypeVar

from .models import FINALIZER, Resource
from .store import ResourceStore

logger = logging.getLogger(__name__)

R = TypeVar("R", bound=Resource)


def _log_context(resource: Resource) -> dict[str, str]:
    return {
        "kind": resource.kind,
        "namespace": resource.namespace,
        "resource_name": resource.name,
    }


def has_finalizer(resource: Resource, finalizer: str = FINALIZER) -> bool:
    return finalizer in resource.metadata.finalizers


def add_finalizer(store: ResourceStore, resource: R, finalizer: str = FINALIZER) -> R:
    """Add the finalizer marker and persist it."""
    if has_finalizer(resource, finalizer):
        return resource
    resource.metadata.finalizers = [*resource.metadata.finalizers, finalizer]
    logger.info(
        "Adding finalizer",
        extra=_log_context(resource),
    )
    return store.update(resource)  # type: ignore[return-value]


def remove_finalizer(store: ResourceStore, resource: R, finalizer: str = FINALIZER) -> None:
    """Remove the finalizer marker, letting the store complete a pending deletion."""
    if not has_finalizer(resource, finalizer):
        return
    resource.metadata.finalizers = [f for f in resource.metadata.finalizers if f != finalizer]
    logger.info(
        "Removing finalizer",
        extra=_log_context(resource),
    )
    store.update(resource)


def ensure_finalizer(store: ResourceStore, resource: R, finalizer: str = FINALIZER) -> bool:
    """Add the finalizer if it is missing.

    Returns:
        True if the marker was added, in which case the caller must end the pass.
    """
    if has_finalizer(resource, finalizer):
        return False
    add_finalizer(store, resource, finalizer)
    return True


def run_finalization(
    store: ResourceStore,
    resource: R,
    teardown: Callable[[R], None],
    finalizer: str = FINALIZER,
) -> None:
    """Run teardown for a deletion-marked resource and release its finalizer.

    Raises:
        Exception: Whatever ``teardown`` raises. The finalizer stays in place.
    """
    if not has_finalizer(resource, finalizer):
        return
    teardown(resource)
    remove_finalizer(store, resource, finalizer)
