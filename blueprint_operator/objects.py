"""Object store access and the generic create/update/prune loop for managed objects."""

from __future__ import annotations

import copy
import itertools
import logging
import threading
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from .types import ObjectMeta

logger = logging.getLogger(__name__)

NAMESPACE_BLUEPRINT_SYSTEM = "blueprint-system"
MANAGED_BY_LABEL = "app.kubernetes.io/managed-by"
MANAGED_BY_VALUE = "blueprint-operator"
PART_OF_LABEL = "app.kubernetes.io/part-of"
PART_OF_VALUE = "blueprint-operator"

_CERT_KINDS = ("Certificate", "Issuer", "ClusterIssuer")


class ApiError(Exception):
    """An error returned by the object store."""


class NotFoundError(ApiError):
    """The requested object does not exist."""


class AlreadyExistsError(ApiError):
    """An object with the same kind, namespace and name already exists."""


@dataclass(frozen=True)
class Request:
    """Identifies the object a reconcile call is about."""

    name: str
    namespace: str = ""


@dataclass(frozen=True)
class Result:
    """Outcome of a reconcile call."""

    requeue: bool = False
    requeue_after: Optional[timedelta] = None


@dataclass
class KubeObject:
    """A generic object identified by its kind, carrying a free-form spec."""

    kind: str
    api_version: str = ""
    metadata: ObjectMeta = field(default_factory=ObjectMeta)
    spec: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class Event:
    """An event recorded against an object."""

    kind: str
    name: str
    namespace: str
    annotations: dict[str, str]
    type: str
    reason: str
    message: str


def _kind_of(obj: Any) -> str:
    kind = getattr(obj, "kind", None)
    if isinstance(kind, str) and kind:
        return kind
    kind = getattr(type(obj), "KIND", None)
    if not kind:
        raise TypeError(f"cannot determine the kind of {type(obj).__name__}")
    return kind


class EventRecorder:
    """Collects events emitted by the reconcilers."""

    def __init__(self) -> None:
        self.events: list[Event] = []
        self._lock = threading.Lock()

    def annotated_event(
        self,
        obj: Any,
        annotations: Mapping[str, str],
        event_type: str,
        reason: str,
        message: str,
    ) -> Event:
        event = Event(
            kind=_kind_of(obj),
            name=obj.metadata.name,
            namespace=obj.metadata.namespace,
            annotations=dict(annotations),
            type=event_type,
            reason=reason,
            message=message,
        )
        with self._lock:
            self.events.append(event)
        logger.info("event %s %s: %s", event_type, reason, message)
        return event


class InMemoryClient:
    """A thread-safe object store with API-server semantics for finalizers and versions."""

    def __init__(self) -> None:
        self._objects: dict[tuple[str, str, str], Any] = {}
        self._versions = itertools.count(1)
        self._lock = threading.RLock()

    @staticmethod
    def _key_of(obj: Any) -> tuple[str, str, str]:
        return (_kind_of(obj), obj.metadata.namespace, obj.metadata.name)

    def _next_version(self) -> str:
        return str(next(self._versions))

    def get(self, kind: str, name: str, namespace: str = "") -> Any:
        """Return a copy of the stored object."""
        with self._lock:
            stored = self._objects.get((kind, namespace, name))
            if stored is None:
                where = f"{namespace}/{name}" if namespace else name
                raise NotFoundError(f"{kind} {where!r} not found")
            return copy.deepcopy(stored)

    def list(self, kind: str, labels: Optional[Mapping[str, str]] = None) -> list[Any]:
        """Return copies of all objects of a kind whose labels include every given pair."""
        wanted = dict(labels or {})
        with self._lock:
            found = [
                copy.deepcopy(obj)
                for (obj_kind, _, _), obj in self._objects.items()
                if obj_kind == kind
                and all(obj.metadata.labels.get(k) == v for k, v in wanted.items())
            ]
        return sorted(found, key=lambda obj: (obj.metadata.namespace, obj.metadata.name))

    def create(self, obj: Any) -> None:
        if not obj.metadata.name:
            raise ApiError(f"{_kind_of(obj)}: name is required")
        key = self._key_of(obj)
        with self._lock:
            if key in self._objects:
                raise AlreadyExistsError(f"{key[0]} {key[1]}/{key[2]} already exists")
            stored = copy.deepcopy(obj)
            stored.metadata.resource_version = self._next_version()
            stored.metadata.deletion_timestamp = None
            self._objects[key] = stored
            obj.metadata.resource_version = stored.metadata.resource_version

    def update(self, obj: Any) -> None:
        """Replace the stored object, keeping its status and deletion state."""
        key = self._key_of(obj)
        with self._lock:
            stored = self._objects.get(key)
            if stored is None:
                raise NotFoundError(f"{key[0]} {key[1]}/{key[2]} not found")
            version = obj.metadata.resource_version
            if version and version != stored.metadata.resource_version:
                raise ApiError(
                    f"conflict updating {key[0]} {key[1]}/{key[2]}: object has been modified"
                )
            new = copy.deepcopy(obj)
            if hasattr(stored, "status"):
                new.status = copy.deepcopy(stored.status)
            new.metadata.deletion_timestamp = stored.metadata.deletion_timestamp
            new.metadata.resource_version = self._next_version()
            if new.metadata.is_being_deleted() and not new.metadata.finalizers:
                del self._objects[key]
            else:
                self._objects[key] = new
            obj.metadata.resource_version = new.metadata.resource_version

    def delete(self, obj: Any) -> None:
        """Delete the object, or mark it for deletion while finalizers remain."""
        key = self._key_of(obj)
        with self._lock:
            stored = self._objects.get(key)
            if stored is None:
                raise NotFoundError(f"{key[0]} {key[1]}/{key[2]} not found")
            if stored.metadata.finalizers:
                if stored.metadata.deletion_timestamp is None:
                    stored.metadata.deletion_timestamp = datetime.now(timezone.utc)
                    stored.metadata.resource_version = self._next_version()
            else:
                del self._objects[key]

    def patch_status(self, obj: Any) -> None:
        """Replace only the status of the stored object."""
        if not hasattr(obj, "status"):
            raise TypeError(f"{_kind_of(obj)} has no status")
        key = self._key_of(obj)
        with self._lock:
            stored = self._objects.get(key)
            if stored is None:
                raise NotFoundError(f"{key[0]} {key[1]}/{key[2]} not found")
            stored.status = copy.deepcopy(obj.status)
            stored.metadata.resource_version = self._next_version()
            obj.metadata.resource_version = stored.metadata.resource_version


ItemsLister = Callable[[InMemoryClient], list[Any]]


def generate_name(obj: Any) -> str:
    """Key of an object: namespace/name, or just the name when cluster scoped."""
    if not obj.metadata.namespace:
        return obj.metadata.name
    return f"{obj.metadata.namespace}/{obj.metadata.name}"


def create_namespace_if_not_exist(client: InMemoryClient, namespace: str) -> None:
    try:
        client.get("Namespace", namespace)
        return
    except NotFoundError:
        pass
    logger.info("Creating namespace %s", namespace)
    try:
        client.create(
            KubeObject(kind="Namespace", api_version="v1", metadata=ObjectMeta(name=namespace))
        )
    except AlreadyExistsError:
        pass


def list_installed_objects(client: InMemoryClient, lister: ItemsLister) -> dict[str, Any]:
    """Objects returned by the lister, keyed by name, leaving out the operator's own."""
    installed = {}
    for item in lister(client):
        if item.metadata.labels.get(PART_OF_LABEL) == PART_OF_VALUE:
            logger.debug("skipping operator object %s", generate_name(item))
            continue
        installed[generate_name(item)] = item
    logger.debug("installed items: %s", sorted(installed))
    return installed


def delete_objects(client: InMemoryClient, objects_to_uninstall: Mapping[str, Any]) -> None:
    for obj in objects_to_uninstall.values():
        if _kind_of(obj) in _CERT_KINDS and (
            obj.metadata.labels.get(MANAGED_BY_LABEL) != MANAGED_BY_VALUE
        ):
            logger.info("Skipping deletion of unmanaged %s %s", _kind_of(obj), generate_name(obj))
            continue
        logger.info("Removing object %s", generate_name(obj))
        try:
            client.delete(obj)
        except NotFoundError:
            pass


def create_or_update_object(client: InMemoryClient, desired: Any) -> None:
    name = desired.metadata.name
    try:
        existing = client.get(_kind_of(desired), name, desired.metadata.namespace)
    except NotFoundError:
        existing = None

    if existing is not None:
        logger.info("Object already exists. Updating %s", generate_name(existing))
        desired.metadata.resource_version = existing.metadata.resource_version
        try:
            client.update(desired)
        except ApiError as err:
            raise ApiError(f"failed to update object {name}: {err}") from err
        return

    logger.info("Creating object %s", generate_name(desired))
    try:
        client.create(desired)
    except ApiError as err:
        raise ApiError(f"failed to create object {name}: {err}") from err


def reconcile_objects(client: InMemoryClient, objects: list[Any], lister: ItemsLister) -> None:
    """Create or update the desired objects and delete listed ones no longer desired."""
    to_uninstall = list_installed_objects(client, lister)

    for obj in objects:
        if obj.metadata.namespace:
            try:
                create_namespace_if_not_exist(client, obj.metadata.namespace)
            except ApiError as err:
                raise ApiError(f"unable to create object namespace: {err}") from err

        logger.info("Reconciling object %s", generate_name(obj))
        create_or_update_object(client, obj)
        to_uninstall.pop(generate_name(obj), None)

    if to_uninstall:
        delete_objects(client, to_uninstall)