"""Declarative resource store.

Resources are Kubernetes-shaped manifests kept in a directory of YAML files.
The store mirrors the platform's deletion semantics:

- Deleting an object that still carries finalizers only sets its
  ``deletionTimestamp``.
- An update that leaves a deletion-marked object without finalizers
  completes the deletion.

SECURITY: All file operations enforce size limits to prevent DoS attacks
via large files. Input validation is performed at the boundary.
"""

from __future__ import annotations

import logging
import threading
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Protocol

import yaml
from pydantic import ValidationError

from .config import MAX_MANIFEST_FILE_SIZE_BYTES
from .models import Resource, get_resource_class

logger = logging.getLogger(__name__)

MANIFEST_SUFFIXES = (".yaml", ".yml")

Identity = tuple[str, str, str]


class ManifestError(Exception):
    """Raised when a manifest file cannot be loaded or validated."""

    pass


class ResourceNotFoundError(Exception):
    """Raised when a resource does not exist in the store."""

    pass


class ResourceConflictError(Exception):
    """Raised when creating a resource whose identity already exists."""

    pass


class ResourceStore(Protocol):
    """Operations reconcilers use to read and persist resources."""

    def refresh(self) -> None: ...

    def get(self, kind: str, namespace: str, name: str) -> Resource: ...

    def list(self, kind: str, namespace: str | None = None) -> list[Resource]: ...

    def update(self, resource: Resource) -> Resource: ...

    def update_status(self, resource: Resource) -> Resource: ...

    def patch_labels(self, resource: Resource, labels: dict[str, str]) -> Resource: ...

    def delete(self, kind: str, namespace: str, name: str) -> None: ...


def parse_manifest(data: Any, source: str = "<memory>") -> Resource:
    """Validate one manifest document into its resource model.

    Raises:
        ManifestError: If the document is not a mapping, has an unknown kind,
            or fails validation.
    """
    if not isinstance(data, dict):
        raise ManifestError(f"Manifest must be a YAML mapping: {source}")

    kind = data.get("kind")
    if not isinstance(kind, str):
        raise ManifestError(f"Manifest is missing 'kind': {source}")

    try:
        resource_class = get_resource_class(kind)
    except ValueError as e:
        raise ManifestError(f"{source}: {e}") from e

    try:
        return resource_class.model_validate(data)
    except ValidationError as e:
        # Format Pydantic validation errors for readability
        errors = []
        for error in e.errors():
            loc = ".".join(str(x) for x in error["loc"])
            msg = error["msg"]
            errors.append(f"  - {loc}: {msg}")

        error_list = "\n".join(errors)
        raise ManifestError(f"Validation failed for {kind} in {source}:\n{error_list}") from e


class InMemoryStore:
    """Thread-safe resource store held in memory.

    Objects are copied on the way in and out so callers never share
    mutable state with the store or with each other.
    """

    def __init__(self, resources: list[Resource] | None = None) -> None:
        self._lock = threading.RLock()
        self._objects: dict[Identity, Resource] = {}
        for resource in resources or []:
            self.create(resource)

    # Hooks for persistent subclasses
    def _on_change(self, identity: Identity) -> None:
        pass

    def refresh(self) -> None:
        """Re-read backing storage. Nothing to do for a memory store."""

    def _key(self, kind: str, namespace: str, name: str) -> Identity:
        return (kind, namespace, name)

    def create(self, resource: Resource) -> Resource:
        with self._lock:
            identity = resource.identity
            if identity in self._objects:
                kind, namespace, name = identity
                raise ResourceConflictError(f"{kind} {namespace}/{name} already exists")
            stored = resource.model_copy(deep=True)
            if stored.metadata.creation_timestamp is None:
                stored.metadata.creation_timestamp = datetime.now(UTC)
            self._objects[identity] = stored
            self._on_change(identity)
            return stored.model_copy(deep=True)

    def get(self, kind: str, namespace: str, name: str) -> Resource:
        with self._lock:
            stored = self._objects.get(self._key(kind, namespace, name))
            if stored is None:
                raise ResourceNotFoundError(f"{kind} {namespace}/{name} not found")
            return stored.model_copy(deep=True)

    def list(self, kind: str, namespace: str | None = None) -> list[Resource]:
        with self._lock:
            return [
                obj.model_copy(deep=True)
                for (obj_kind, obj_ns, _), obj in sorted(self._objects.items())
                if obj_kind == kind and (namespace is None or obj_ns == namespace)
            ]

    def _stored(self, resource: Resource) -> Resource:
        stored = self._objects.get(resource.identity)
        if stored is None:
            raise ResourceNotFoundError(
                f"{resource.kind} {resource.namespace}/{resource.name} not found"
            )
        return stored

    def _finish_deletion(self, identity: Identity) -> bool:
        stored = self._objects[identity]
        if stored.metadata.deletion_timestamp is not None and not stored.metadata.finalizers:
            del self._objects[identity]
            logger.info(
                "Resource deleted",
                extra={
                    "kind": identity[0],
                    "namespace": identity[1],
                    "resource_name": identity[2],
                },
            )
            return True
        return False

    def update(self, resource: Resource) -> Resource:
        """Persist metadata and spec. Status and the deletion marker are kept."""
        with self._lock:
            stored = self._stored(resource)
            updated = resource.model_copy(deep=True)
            updated.metadata.deletion_timestamp = stored.metadata.deletion_timestamp
            updated.metadata.creation_timestamp = stored.metadata.creation_timestamp
            if hasattr(stored, "status"):
                updated.status = stored.status.model_copy(deep=True)  # type: ignore[attr-defined]
            self._objects[resource.identity] = updated
            self._finish_deletion(resource.identity)
            self._on_change(resource.identity)
            return updated.model_copy(deep=True)

    def update_status(self, resource: Resource) -> Resource:
        """Persist only the status subresource."""
        with self._lock:
            stored = self._stored(resource)
            updated = stored.model_copy(deep=True)
            updated.status = resource.status.model_copy(deep=True)  # type: ignore[attr-defined]
            self._objects[resource.identity] = updated
            self._on_change(resource.identity)
            return updated.model_copy(deep=True)

    def patch_labels(self, resource: Resource, labels: dict[str, str]) -> Resource:
        """Merge labels into the stored object."""
        with self._lock:
            stored = self._stored(resource)
            updated = stored.model_copy(deep=True)
            updated.metadata.labels = {**stored.metadata.labels, **labels}
            self._objects[resource.identity] = updated
            self._on_change(resource.identity)
            return updated.model_copy(deep=True)

    def delete(self, kind: str, namespace: str, name: str) -> None:
        with self._lock:
            identity = self._key(kind, namespace, name)
            stored = self._objects.get(identity)
            if stored is None:
                raise ResourceNotFoundError(f"{kind} {namespace}/{name} not found")
            if stored.metadata.deletion_timestamp is None:
                updated = stored.model_copy(deep=True)
                updated.metadata.deletion_timestamp = datetime.now(UTC)
                self._objects[identity] = updated
            self._finish_deletion(identity)
            self._on_change(identity)


class ManifestStore(InMemoryStore):
    """Resource store backed by a directory of YAML manifest files.

    Each file may hold several documents. Changes are written back to the
    file a resource was loaded from, together with any documents that were
    skipped at load time, unchanged. Resources created at runtime get a file
    of their own.
    """

    def __init__(self, manifests_dir: Path, strict: bool = False) -> None:
        super().__init__()
        self._dir = manifests_dir
        self._strict = strict
        self._origins: dict[Identity, Path] = {}
        self._skipped: dict[Path, list[Any]] = {}
        self._unreadable: set[Path] = set()
        self.load_errors: list[str] = []
        self.refresh()

    @property
    def manifests_dir(self) -> Path:
        return self._dir

    def refresh(self) -> None:
        """Reload every manifest from disk.

        Invalid documents are collected in ``load_errors`` and skipped, unless
        the store is strict, in which case the first one raises.

        Raises:
            ManifestError: In strict mode, on the first invalid file or document.
        """
        with self._lock:
            objects: dict[Identity, Resource] = {}
            origins: dict[Identity, Path] = {}
            skipped: dict[Path, list[Any]] = {}
            unreadable: set[Path] = set()
            errors: list[str] = []

            for path in sorted(self._dir.rglob("*")):
                if path.suffix not in MANIFEST_SUFFIXES or not path.is_file():
                    continue
                try:
                    documents = self._read_documents(path)
                except ManifestError as e:
                    if self._strict:
                        raise
                    errors.append(str(e))
                    unreadable.add(path)
                    continue

                for index, document in enumerate(documents):
                    if document is None:
                        continue
                    source = f"{path}#{index}"
                    try:
                        resource = parse_manifest(document, source)
                    except ManifestError as e:
                        if self._strict:
                            raise
                        errors.append(str(e))
                        skipped.setdefault(path, []).append(document)
                        continue
                    if resource.identity in objects:
                        message = f"Duplicate resource {resource.identity} in {source}"
                        if self._strict:
                            raise ManifestError(message)
                        errors.append(message)
                        skipped.setdefault(path, []).append(document)
                        continue
                    objects[resource.identity] = resource
                    origins[resource.identity] = path

            self._objects = objects
            self._origins = origins
            self._skipped = skipped
            self._unreadable = unreadable
            self.load_errors = errors

        for error in errors:
            logger.warning("Skipping invalid manifest", extra={"error": error})
        logger.info(
            "Loaded manifests",
            extra={"manifests_dir": str(self._dir), "resources": len(objects)},
        )

    def _read_documents(self, path: Path) -> list[Any]:
        # SECURITY: Check file size before reading to prevent DoS
        try:
            file_size = path.stat().st_size
        except OSError as e:
            raise ManifestError(f"Failed to stat manifest file {path}: {e}") from e

        if file_size > MAX_MANIFEST_FILE_SIZE_BYTES:
            raise ManifestError(
                f"Manifest file exceeds maximum size of {MAX_MANIFEST_FILE_SIZE_BYTES} bytes: {path}"
            )

        try:
            content = path.read_text(encoding="utf-8")
        except OSError as e:
            raise ManifestError(f"Failed to read manifest file {path}: {e}") from e

        try:
            return list(yaml.safe_load_all(content))
        except yaml.YAMLError as e:
            raise ManifestError(f"Invalid YAML in {path}: {e}") from e

    def _on_change(self, identity: Identity) -> None:
        path = self._origins.get(identity)
        if path is None:
            kind, namespace, name = identity
            path = self._dir / f"{kind.lower()}-{namespace}-{name}.yaml"
            self._origins[identity] = path
        if path in self._unreadable:
            raise ManifestError(f"Refusing to overwrite unreadable manifest file {path}")

        documents = [
            self._objects[other].to_manifest()
            for other, origin in self._origins.items()
            if origin == path and other in self._objects
        ]
        documents.extend(self._skipped.get(path, []))
        if identity not in self._objects:
            del self._origins[identity]

        if documents:
            path.write_text(
                yaml.safe_dump_all(documents, sort_keys=False, default_flow_style=False),
                encoding="utf-8",
            )
        else:
            path.unlink(missing_ok=True)
