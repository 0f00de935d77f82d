"""Reconciler that renders manifests, applies their objects and tracks their health."""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable, Iterator, Mapping
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Optional, Protocol, Union

from .addon_controller import (
    ADDON_ANNOTATION_KEY,
    EVENT_TYPE_NORMAL,
    EVENT_TYPE_WARNING,
    REASON_FAILED_CREATE,
    REASON_FAILED_DELETE,
    REASON_SUCCESSFUL_CREATE,
)
from .metrics import MANIFEST_HIST_VEC, metric_status
from .objects import ApiError, EventRecorder, InMemoryClient, NotFoundError, Request, Result
from .manifest_objects import (
    decode_objects,
    find_obsolete_objects,
    manifest_index,
    manifest_object_refs,
    parse_duration,
)
from .types import Manifest, ManifestObject, ManifestSpec, ObjectMeta, StatusType, Values

logger = logging.getLogger(__name__)

MANIFEST_FINALIZER = "manifest/finalizer"
FAILURE_POLICY_NONE = "None"
FAILURE_POLICY_RETRY = "Retry"


@dataclass(frozen=True)
class ManifestHealth:
    """Aggregated health of the objects behind a manifest."""

    status_type: Union[StatusType, str]
    reason: str
    message: str = ""


class Renderer(Protocol):
    """Produces the YAML stream for a manifest URL with its customisations applied."""

    def render(self, url: str, values: Optional[Values]) -> bytes: ...


class Applier(Protocol):
    """Applies decoded objects to the cluster and deletes them again."""

    def apply(self, objects: list[dict[str, Any]]) -> None: ...

    def delete(self, objects: list[ManifestObject]) -> None: ...


class ManifestHealthChecker(Protocol):
    """Decides on retries, waits for availability and checks object health."""

    def should_retry(self, manifest: Manifest) -> bool: ...

    def await_timeout(self, key: Request, timeout: timedelta) -> None:
        """Return once the manifest is available; raise TimeoutError otherwise."""
        ...

    def check_manifest_status(self, objects: list[ManifestObject]) -> ManifestHealth: ...


def _start_thread(target: Callable[[], None]) -> None:
    threading.Thread(target=target, daemon=True).start()


class ManifestReconciler:
    """Creates, updates and removes the objects of Manifest resources."""

    def __init__(
        self,
        client: InMemoryClient,
        recorder: EventRecorder,
        renderer: Renderer,
        applier: Applier,
        checker: ManifestHealthChecker,
        spawn: Callable[[Callable[[], None]], None] = _start_thread,
    ) -> None:
        self.client = client
        self.recorder = recorder
        self.renderer = renderer
        self.applier = applier
        self.checker = checker
        self.spawn = spawn

    def reconcile(self, request: Request) -> Result:
        """Drive one manifest towards its desired state."""
        start = time.monotonic()
        errors: list[BaseException] = []
        try:
            return self._reconcile(request, errors)
        except BaseException as err:
            errors.append(err)
            raise
        finally:
            status = metric_status(errors[-1] if errors else None)
            MANIFEST_HIST_VEC.observe((request.name, status), time.monotonic() - start)

    def _event(self, manifest: Manifest, event_type: str, reason: str, message: str) -> None:
        self.recorder.annotated_event(
            manifest, {ADDON_ANNOTATION_KEY: manifest.metadata.name}, event_type, reason, message
        )

    @contextmanager
    def _on_failure(
        self,
        instance: Manifest,
        key: Request,
        reason: str,
        text: str,
        *,
        status_reason: Optional[str] = None,
        with_error: bool = True,
    ) -> Iterator[None]:
        """Emit a warning event, and optionally mark the manifest unhealthy, on failure."""
        try:
            yield
        except Exception as err:
            message = f"{text} {instance.metadata.namespace}/{instance.metadata.name}"
            if with_error:
                message = f"{message} : {err}"
            logger.error("%s: %s", text, err)
            self._event(instance, EVENT_TYPE_WARNING, reason, message)
            if status_reason is not None:
                self._try_update_status(
                    key, StatusType.UNHEALTHY, status_reason, f"{status_reason} : {err}"
                )
            raise

    def _reconcile(self, request: Request, errors: list[BaseException]) -> Result:
        logger.info("Reconcile request on Manifest instance %s", request.name)
        key = Request(name=request.name, namespace=request.namespace)
        try:
            instance: Manifest = self.client.get(Manifest.KIND, key.name, key.namespace)
        except NotFoundError as err:
            errors.append(err)
            logger.info("Manifest instance %s not found; it must have been deleted", key.name)
            return Result()

        if not instance.metadata.is_being_deleted():
            if not instance.metadata.has_finalizer(MANIFEST_FINALIZER):
                instance.metadata.add_finalizer(MANIFEST_FINALIZER)
                text = "failed to update manifest object with finalizer"
                with self._on_failure(
                    instance, key, REASON_FAILED_CREATE, text,
                    status_reason=text, with_error=False,
                ):
                    self.client.update(instance)
                logger.info("finalizer added to manifest %s", key.name)
                return Result()
        else:
            if instance.metadata.has_finalizer(MANIFEST_FINALIZER):
                text = "failed to delete manifest objects"
                with self._on_failure(
                    instance, key, REASON_FAILED_DELETE, text,
                    status_reason=text, with_error=False,
                ):
                    self.delete_manifest_objects(instance.spec.objects)

                instance.metadata.remove_finalizer(MANIFEST_FINALIZER)
                text = "failed to remove finalizer"
                with self._on_failure(
                    instance, key, REASON_SUCCESSFUL_CREATE, text,
                    status_reason=text, with_error=False,
                ):
                    self.client.update(instance)
            return Result()

        spec = instance.spec
        if spec.checksum == spec.new_checksum:
            logger.info("checksum %s is unchanged, no update needed", spec.checksum)
            if self.checker.should_retry(instance):
                logger.info("Reapplying manifest")
                instance.spec.checksum = ""
                self.client.update(instance)
                return Result()

            text = "failed to update manifest status"
            with self._on_failure(
                instance, key, REASON_FAILED_CREATE, text, status_reason=text
            ):
                self._update_manifest_status(key, spec.objects)
            return Result()

        if spec.new_checksum:
            logger.info("checksum differs (%s -> %s), update needed", spec.checksum, spec.new_checksum)
            updated = self._bare_copy(instance, checksum=spec.new_checksum)
            with self._on_failure(
                instance, key, REASON_FAILED_CREATE,
                "failed to update manifest resource while update operation",
                status_reason="failed to update manifest crd while update operation ",
            ):
                self.client.update(updated)

            with self._on_failure(
                instance, key, REASON_FAILED_CREATE, "failed to update manifest",
                status_reason="failed to update manifest ",
            ):
                self.update_manifest_objects(request, instance)

            if spec.timeout and spec.failure_policy == FAILURE_POLICY_RETRY:
                self._schedule_retry(instance, key, is_install=False)
        else:
            updated = self._bare_copy(instance, checksum=spec.checksum)
            with self._on_failure(
                instance, key, REASON_FAILED_CREATE,
                "failed to update manifest crd while create operation",
            ):
                self.client.update(updated)

            with self._on_failure(
                instance, key, REASON_FAILED_CREATE,
                "failed to fetch manifest file content for url",
            ):
                body = self.renderer.render(spec.url, spec.values)

            logger.info("received new manifest request; creating manifest objects")
            with self._on_failure(
                instance, key, REASON_FAILED_CREATE, "failed to create objects for the manifest"
            ):
                self.create_manifest_objects(key, body)

            if spec.timeout and spec.failure_policy != FAILURE_POLICY_NONE:
                self._schedule_retry(instance, key, is_install=True)

        self._event(
            instance,
            EVENT_TYPE_NORMAL,
            REASON_SUCCESSFUL_CREATE,
            f"Created Manifest {instance.metadata.namespace}/{instance.metadata.name}",
        )
        return Result()

    @staticmethod
    def _bare_copy(instance: Manifest, *, checksum: str) -> Manifest:
        """A manifest holding only identity and settings, with both checksums set."""
        spec = instance.spec
        return Manifest(
            metadata=ObjectMeta(
                name=instance.metadata.name,
                namespace=instance.metadata.namespace,
                resource_version=instance.metadata.resource_version,
            ),
            spec=ManifestSpec(
                url=spec.url,
                checksum=checksum,
                new_checksum=checksum,
                failure_policy=spec.failure_policy,
                timeout=spec.timeout,
                values=spec.values,
            ),
        )

    def _schedule_retry(self, instance: Manifest, key: Request, *, is_install: bool) -> None:
        with self._on_failure(
            instance, key, REASON_FAILED_CREATE, "failed to parse timeout for the manifest"
        ):
            timeout = parse_duration(instance.spec.timeout)
        self.spawn(lambda: self._retry_after_timeout(key, timeout, is_install))

    def _retry_after_timeout(self, key: Request, timeout: timedelta, is_install: bool) -> None:
        """Force a reinstall or reupgrade if the manifest is not available in time."""
        try:
            self.checker.await_timeout(key, timeout)
        except Exception as timeout_err:
            try:
                manifest: Manifest = self.client.get(Manifest.KIND, key.name, key.namespace)
            except ApiError as err:
                logger.error("Failed to get manifest: %s", err)
                return

            self._event(
                manifest,
                EVENT_TYPE_WARNING,
                REASON_FAILED_CREATE,
                f"manifest creation timed out {manifest.metadata.namespace}/"
                f"{manifest.metadata.name} : {timeout_err}",
            )
            if is_install:
                logger.info("Deleting manifest objects of %s", key.name)
                try:
                    self.delete_manifest_objects(manifest.spec.objects)
                except Exception as err:
                    logger.error("Failed to delete manifest objects: %s", err)
                    return

            manifest.spec.checksum = ""
            try:
                self.client.update(manifest)
            except ApiError as err:
                logger.error("failed to wipe checksum for manifest: %s", err)
            return

        logger.info("Manifest %s is Available before Timeout", key.name)

    def create_manifest_objects(self, key: Request, data: Union[bytes, str]) -> None:
        """Apply the objects of a rendered manifest and record them on the manifest."""
        objects = decode_objects(data)
        self.applier.apply(objects)
        refs = manifest_object_refs(objects)

        try:
            crd: Manifest = self.client.get(Manifest.KIND, key.name, key.namespace)
        except ApiError as err:
            raise ApiError(
                f"failed to get manifest resource {key.namespace}/{key.name}: {err}"
            ) from err

        updated = Manifest(
            metadata=ObjectMeta(
                name=crd.metadata.name,
                namespace=crd.metadata.namespace,
                resource_version=crd.metadata.resource_version,
            ),
            spec=ManifestSpec(
                url=crd.spec.url,
                checksum=crd.spec.checksum,
                new_checksum=crd.spec.new_checksum,
                failure_policy=crd.spec.failure_policy,
                timeout=crd.spec.timeout,
                objects=refs,
            ),
        )
        self.client.update(updated)

    def delete_manifest_objects(self, objects: list[ManifestObject]) -> None:
        """Delete the given manifest objects from the cluster."""
        try:
            self.applier.delete(list(objects))
        except Exception as err:
            raise ApiError(f"failed to delete objects for manifest: {err}") from err

    def update_manifest_objects(self, request: Request, existing: Manifest) -> None:
        """Apply the newly rendered objects, record them and delete those no longer rendered."""
        body = self.renderer.render(existing.spec.url, existing.spec.values)
        objects = decode_objects(body)
        self.applier.apply(objects)

        old_objects = list(existing.spec.objects)
        new_objects = manifest_object_refs(objects)

        crd: Manifest = self.client.get(Manifest.KIND, request.name, request.namespace)
        updated = Manifest(
            metadata=ObjectMeta(
                name=crd.metadata.name,
                namespace=crd.metadata.namespace,
                resource_version=crd.metadata.resource_version,
            ),
            spec=ManifestSpec(
                url=crd.spec.url,
                checksum=crd.spec.new_checksum,
                new_checksum=crd.spec.new_checksum,
                failure_policy=crd.spec.failure_policy,
                timeout=crd.spec.timeout,
                objects=new_objects,
            ),
        )
        self.client.update(updated)

        obsolete = find_obsolete_objects(old_objects, new_objects)
        for obj in obsolete:
            logger.info("obsolete object found: %s %s", obj.kind, obj.name)
        if obsolete:
            try:
                self.delete_manifest_objects(obsolete)
            except ApiError as err:
                logger.error("failed to delete obsolete objects: %s", err)

    def find_associated_manifests(self, obj: Any) -> list[Request]:
        """Requests for the manifests that list this DaemonSet or Deployment."""
        metadata = obj.metadata if hasattr(obj, "metadata") else None
        if metadata is None and isinstance(obj, Mapping):
            meta = obj.get("metadata") or {}
            index_key = f"{meta.get('namespace') or ''}-{meta.get('name') or ''}"
        else:
            index_key = f"{metadata.namespace}-{metadata.name}"
        try:
            manifests = self.client.list(Manifest.KIND)
        except ApiError:
            return []
        return [
            Request(name=m.metadata.name, namespace=m.metadata.namespace)
            for m in manifests
            if index_key in manifest_index(m)
        ]

    def _update_manifest_status(self, key: Request, objects: list[ManifestObject]) -> None:
        health = self.checker.check_manifest_status(list(objects))
        self._update_status(key, health.status_type, health.reason, health.message)

    def _try_update_status(
        self, key: Request, type_to_apply: Union[StatusType, str], reason: str, message: str
    ) -> None:
        try:
            self._update_status(key, type_to_apply, reason, message)
        except ApiError as err:
            logger.warning("failed to update manifest status: %s", err)

    def _update_status(
        self,
        key: Request,
        type_to_apply: Union[StatusType, str],
        reason: str,
        message: Optional[str] = None,
    ) -> None:
        """Apply type, reason and optional message to a freshly read manifest's status."""
        logger.info("Update status with type %s and reason %s", type_to_apply, reason)
        manifest: Manifest = self.client.get(Manifest.KIND, key.name, key.namespace)

        current = manifest.status
        is_set = bool(
            current.type or current.reason or current.message or current.last_transition_time
        )
        if is_set and current.type == type_to_apply and current.reason == reason:
            logger.info("No updates to status needed")
            return

        manifest.status.type = type_to_apply
        manifest.status.reason = reason
        if message is not None:
            manifest.status.message = message
        manifest.status.last_transition_time = datetime.now(timezone.utc)
        self.client.patch_status(manifest)