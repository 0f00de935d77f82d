"""Reconciler that installs addons as Helm releases or manifests and reports their status."""

from __future__ import annotations

import enum
import logging
import time
from datetime import datetime, timezone
from typing import Any, Optional, Protocol, Union

from .metrics import ADDON_HIST_VEC, DEFAULT_REQUEUE_DURATION, metric_status
from .objects import (
    NAMESPACE_BLUEPRINT_SYSTEM,
    ApiError,
    EventRecorder,
    InMemoryClient,
    NotFoundError,
    Request,
    Result,
)
from .types import Addon, Manifest, ManifestInfo, StatusType

logger = logging.getLogger(__name__)

KIND_MANIFEST = "manifest"
KIND_CHART = "chart"
ADDON_FINALIZER = "blueprint.mirantis.com/addon-finalizer"
HELM_RELEASE_KIND = "HelmRelease"

ADDON_ANNOTATION_KEY = "blueprint.mirantis.com/addon"
EVENT_TYPE_NORMAL = "Normal"
EVENT_TYPE_WARNING = "Warning"
REASON_SUCCESSFUL_CREATE = "SuccessfulCreate"
REASON_FAILED_CREATE = "FailedCreate"
REASON_FAILED_DELETE = "FailedDelete"


class ReleaseStatus(str, enum.Enum):
    """Install state of a Helm release."""

    SUCCESS = "success"
    FAILED = "failed"
    PROGRESSING = "progressing"


class HelmReleaseController(Protocol):
    """Creates and removes the Helm release behind a chart addon."""

    def create_helm_release(self, addon: Addon, namespace: str, dry_run: bool) -> None: ...

    def delete_helm_release(self, addon: Addon) -> None: ...

    def release_status(self, release: Any) -> ReleaseStatus: ...


class ManifestController(Protocol):
    """Creates and removes the Manifest resource behind a manifest addon."""

    def create_manifest(self, namespace: str, name: str, info: ManifestInfo) -> None: ...

    def delete_manifest(self, namespace: str, name: str, url: str) -> None: ...


class AddonReconciler:
    """Installs, monitors and removes addons."""

    def __init__(
        self,
        client: InMemoryClient,
        recorder: EventRecorder,
        helm_controller: HelmReleaseController,
        manifest_controller: ManifestController,
    ) -> None:
        self.client = client
        self.recorder = recorder
        self.helm_controller = helm_controller
        self.manifest_controller = manifest_controller

    def reconcile(self, request: Request) -> Result:
        """Drive one addon towards its desired state."""
        start = time.monotonic()
        errors: list[BaseException] = []
        try:
            return self._reconcile(request, errors)
        except BaseException as err:
            errors.append(err)
            raise
        finally:
            status = metric_status(errors[-1] if errors else None)
            ADDON_HIST_VEC.observe((request.name, status), time.monotonic() - start)

    def _event(self, addon: Addon, event_type: str, reason: str, message: str) -> None:
        self.recorder.annotated_event(
            addon, {ADDON_ANNOTATION_KEY: addon.metadata.name}, event_type, reason, message
        )

    def _reconcile(self, request: Request, errors: list[BaseException]) -> Result:
        logger.info("Reconcile request on Addon instance %s", request.name)
        try:
            instance: Addon = self.client.get(Addon.KIND, request.name, request.namespace)
        except NotFoundError as err:
            errors.append(err)
            logger.info("Addon instance %s not found; it must have been deleted", request.name)
            return Result()

        kind = instance.spec.kind
        if kind not in (KIND_CHART, KIND_MANIFEST):
            logger.error("Invalid addon kind %r for addon %s", kind, request.name)
            return Result(requeue=False)
        if kind == KIND_CHART and instance.spec.chart is None:
            logger.error("Chart info is missing for addon %s", request.name)
            return Result(requeue=False)
        if kind == KIND_MANIFEST and instance.spec.manifest is None:
            logger.error("Manifest info is missing for addon %s", request.name)
            return Result(requeue=False)

        if not instance.metadata.is_being_deleted():
            if not instance.metadata.has_finalizer(ADDON_FINALIZER):
                instance.metadata.add_finalizer(ADDON_FINALIZER)
                self.client.update(instance)
                return Result()
        else:
            if instance.metadata.has_finalizer(ADDON_FINALIZER):
                self._delete_addon(instance)
                instance.metadata.remove_finalizer(ADDON_FINALIZER)
                self.client.update(instance)
            return Result()

        if kind == KIND_CHART:
            result = self._reconcile_chart(request, instance, errors)
        else:
            result = self._reconcile_manifest(request, instance, errors)
        if result is not None:
            return result

        logger.info("Finished reconcile request on Addon instance %s", request.name)
        return Result()

    def _reconcile_chart(
        self, request: Request, instance: Addon, errors: list[BaseException]
    ) -> Optional[Result]:
        chart = instance.spec.chart
        logger.info("Creating Addon HelmChart resource %s version %s", chart.name, chart.version)
        try:
            self.helm_controller.create_helm_release(
                instance, instance.spec.namespace, instance.spec.dry_run
            )
        except Exception as err:
            logger.error("failed to install addon %s: %s", chart.name, err)
            self._event(
                instance,
                EVENT_TYPE_WARNING,
                REASON_FAILED_CREATE,
                f"Failed to Create Chart Addon {instance.spec.namespace}/"
                f"{instance.metadata.name} : {err}",
            )
            raise

        release_name = instance.spec.name
        try:
            release = self.client.get(HELM_RELEASE_KIND, release_name, NAMESPACE_BLUEPRINT_SYSTEM)
        except NotFoundError as err:
            errors.append(err)
            logger.info("HelmRelease %s not yet found; requeueing", release_name)
            return Result(requeue_after=DEFAULT_REQUEUE_DURATION)

        self._update_helm_chart_addon_status(request, release, instance)
        return None

    def _reconcile_manifest(
        self, request: Request, instance: Addon, errors: list[BaseException]
    ) -> Optional[Result]:
        info = instance.spec.manifest
        try:
            self.manifest_controller.create_manifest(
                NAMESPACE_BLUEPRINT_SYSTEM, instance.spec.name, info
            )
        except Exception as err:
            logger.error("failed to install addon via manifest %s: %s", info.url, err)
            self._event(
                instance,
                EVENT_TYPE_WARNING,
                REASON_FAILED_CREATE,
                f"Failed to Create Manifest Addon {instance.spec.namespace}/"
                f"{instance.metadata.name} : {err}",
            )
            raise

        try:
            manifest: Manifest = self.client.get(
                Manifest.KIND, instance.spec.name, NAMESPACE_BLUEPRINT_SYSTEM
            )
        except NotFoundError as err:
            errors.append(err)
            try:
                self._update_status(
                    request, StatusType.PROGRESSING, "Awaiting Manifest Resource Creation"
                )
            except ApiError as status_err:
                logger.warning("failed to update addon status: %s", status_err)
            logger.info("Manifest resources %s not yet found; requeueing", instance.spec.name)
            return Result(requeue_after=DEFAULT_REQUEUE_DURATION)

        self._set_owner_reference_on_manifest(instance, manifest)
        self._update_manifest_addon_status(instance, manifest)
        return None

    def _delete_addon(self, addon: Addon) -> None:
        kind = addon.spec.kind
        if kind == KIND_CHART:
            try:
                self.helm_controller.delete_helm_release(addon)
            except Exception as err:
                self._event(
                    addon,
                    EVENT_TYPE_WARNING,
                    REASON_FAILED_DELETE,
                    f"Failed to Delete Chart Addon {addon.spec.namespace}/"
                    f"{addon.metadata.name}: {err}",
                )
                raise
        elif kind == KIND_MANIFEST:
            try:
                self.manifest_controller.delete_manifest(
                    NAMESPACE_BLUEPRINT_SYSTEM, addon.spec.name, addon.spec.manifest.url
                )
            except Exception as err:
                self._event(
                    addon,
                    EVENT_TYPE_WARNING,
                    REASON_FAILED_DELETE,
                    f"Failed to Delete Manifest Addon {addon.spec.namespace}/"
                    f"{addon.metadata.name} : {err}",
                )
                raise
        else:
            raise ValueError(f"invalid addon kind: {kind}")

    def _update_manifest_addon_status(self, addon: Addon, manifest: Manifest) -> None:
        key = Request(name=addon.metadata.name, namespace=addon.metadata.namespace)
        if not manifest.status.type or not manifest.status.reason:
            self._update_status(key, StatusType.PROGRESSING, "Awaiting status from manifest object")
            return

        if (
            manifest.status.type == StatusType.AVAILABLE
            and addon.status.type != StatusType.AVAILABLE
        ):
            self._event(
                addon,
                EVENT_TYPE_NORMAL,
                REASON_SUCCESSFUL_CREATE,
                f"Created Manifest Addon {addon.spec.namespace}/{addon.metadata.name}",
            )

        self._update_status(
            key, manifest.status.type, manifest.status.reason, manifest.status.message
        )

    def _set_owner_reference_on_manifest(self, addon: Addon, manifest: Manifest) -> None:
        """Make the addon the controlling owner of the manifest and store it."""
        logger.info("Set owner ref field on manifest %s", manifest.metadata.name)
        if addon.metadata.namespace and addon.metadata.namespace != manifest.metadata.namespace:
            raise ApiError(
                f"cross-namespace owner references are disallowed: owner's namespace "
                f"{addon.metadata.namespace}, obj's namespace {manifest.metadata.namespace}"
            )
        owner = (Addon.KIND, addon.metadata.name)
        kept = []
        for ref in manifest.metadata.owner_references:
            same = (ref.get("kind"), ref.get("name")) == owner
            if ref.get("controller") and not same:
                raise ApiError(
                    f"Manifest {manifest.metadata.name!r} is already owned by another "
                    f"{ref.get('kind')} controller {ref.get('name')}"
                )
            if not same:
                kept.append(ref)
        kept.append(
            {
                "apiVersion": Addon.API_VERSION,
                "kind": Addon.KIND,
                "name": addon.metadata.name,
                "controller": True,
                "blockOwnerDeletion": True,
            }
        )
        manifest.metadata.owner_references = kept
        self.client.update(manifest)

    def _update_helm_chart_addon_status(self, request: Request, release: Any, addon: Addon) -> None:
        logger.info("Updating Helm Chart Addon Status")
        release_name = release.metadata.name
        status = self.helm_controller.release_status(release)
        if status == ReleaseStatus.SUCCESS:
            self._event(
                addon,
                EVENT_TYPE_NORMAL,
                REASON_SUCCESSFUL_CREATE,
                f"Created Chart Addon {addon.spec.namespace}/{addon.metadata.name}",
            )
            self._update_status(
                request,
                StatusType.AVAILABLE,
                f"Helm Chart {release_name} successfully installed",
            )
        elif status == ReleaseStatus.FAILED:
            self._event(
                addon,
                EVENT_TYPE_WARNING,
                REASON_FAILED_CREATE,
                f"Helm Chart Addon {addon.spec.namespace}/{addon.metadata.name} "
                f"has failed to install",
            )
            self._update_status(
                request, StatusType.UNHEALTHY, f"Helm Chart {release_name} install has failed"
            )
        else:
            self._update_status(
                request,
                StatusType.PROGRESSING,
                f"Helm Chart {release_name} install still progressing",
            )

    def _update_status(
        self,
        key: Request,
        type_to_apply: Union[StatusType, str],
        reason: str,
        message: Optional[str] = None,
    ) -> None:
        """Apply type, reason and optional message to a freshly read addon's status."""
        logger.info("Update status with type %s and reason %s", type_to_apply, reason)
        addon: Addon = self.client.get(Addon.KIND, key.name, key.namespace)

        current = addon.status
        is_set = bool(
            current.type or current.reason or current.message or current.last_transition_time
        )
        if is_set and current.type == type_to_apply and current.reason == reason:
            logger.info("No updates to status needed")
            return

        addon.status.type = type_to_apply
        addon.status.reason = reason
        if message is not None:
            addon.status.message = message
        addon.status.last_transition_time = datetime.now(timezone.utc)
        self.client.patch_status(addon)