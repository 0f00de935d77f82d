"""Reconciler that turns a blueprint into addons and cert-manager resources."""

from __future__ import annotations

import copy
import dataclasses
import logging
from typing import Any, Optional

from .objects import (
    MANAGED_BY_LABEL,
    MANAGED_BY_VALUE,
    NAMESPACE_BLUEPRINT_SYSTEM,
    ApiError,
    InMemoryClient,
    KubeObject,
    NotFoundError,
    Request,
    Result,
    reconcile_objects,
)
from .types import (
    Addon,
    AddonSpec,
    Blueprint,
    Certificate,
    ChartInfo,
    ClusterIssuer,
    Issuer,
    ManifestInfo,
    ObjectMeta,
    Values,
)

logger = logging.getLogger(__name__)

CERT_MANAGER_API_VERSION = "cert-manager.io/v1"


def _managed_labels() -> dict[str, str]:
    return {MANAGED_BY_LABEL: MANAGED_BY_VALUE}


def addon_resource(spec: AddonSpec) -> Addon:
    """Build the Addon resource stored in the operator namespace for a blueprint entry."""
    addon = Addon(
        metadata=ObjectMeta(name=spec.name, namespace=NAMESPACE_BLUEPRINT_SYSTEM),
        spec=AddonSpec(
            name=spec.name,
            namespace=spec.namespace,
            kind=spec.kind,
            dry_run=spec.dry_run,
        ),
    )
    if spec.chart is not None:
        addon.spec.chart = ChartInfo(
            name=spec.chart.name,
            repo=spec.chart.repo,
            version=spec.chart.version,
            set_values=copy.deepcopy(spec.chart.set_values),
            values=copy.deepcopy(spec.chart.values),
            depends_on=list(spec.chart.depends_on),
        )
    if spec.manifest is not None:
        values: Optional[Values] = None
        if spec.manifest.values is not None:
            values = Values(
                patches=copy.deepcopy(spec.manifest.values.patches),
                images=copy.deepcopy(spec.manifest.values.images),
            )
        addon.spec.manifest = ManifestInfo(
            url=spec.manifest.url,
            failure_policy=spec.manifest.failure_policy,
            timeout=spec.manifest.timeout,
            values=values,
        )
    return addon


def issuer_object(issuer: Issuer) -> KubeObject:
    return KubeObject(
        kind="Issuer",
        api_version=CERT_MANAGER_API_VERSION,
        metadata=ObjectMeta(
            name=issuer.name, namespace=issuer.namespace, labels=_managed_labels()
        ),
        spec=copy.deepcopy(issuer.spec),
    )


def cluster_issuer_object(issuer: ClusterIssuer) -> KubeObject:
    return KubeObject(
        kind="ClusterIssuer",
        api_version=CERT_MANAGER_API_VERSION,
        metadata=ObjectMeta(name=issuer.name, labels=_managed_labels()),
        spec=copy.deepcopy(issuer.spec),
    )


def certificate_object(certificate: Certificate) -> KubeObject:
    return KubeObject(
        kind="Certificate",
        api_version=CERT_MANAGER_API_VERSION,
        metadata=ObjectMeta(
            name=certificate.name, namespace=certificate.namespace, labels=_managed_labels()
        ),
        spec=copy.deepcopy(certificate.spec),
    )


def list_issuers(client: InMemoryClient) -> list[Any]:
    """Issuers managed by the operator."""
    return client.list("Issuer", _managed_labels())


def list_cluster_issuers(client: InMemoryClient) -> list[Any]:
    """Cluster issuers managed by the operator."""
    return client.list("ClusterIssuer", _managed_labels())


def list_certificates(client: InMemoryClient) -> list[Any]:
    """Certificates managed by the operator."""
    return client.list("Certificate", _managed_labels())


class BlueprintReconciler:
    """Brings addons and cert-manager resources in line with a blueprint."""

    def __init__(self, client: InMemoryClient) -> None:
        self.client = client

    def reconcile(self, request: Request) -> Result:
        logger.info("Reconcile request on Blueprint instance %s", request.name)
        try:
            instance = self.client.get(Blueprint.KIND, request.name, request.namespace)
        except NotFoundError:
            logger.info("Blueprint instance %s not found; it must have been deleted", request.name)
            return Result()

        self._reconcile_addons(instance)

        cert_management = instance.spec.resources.cert_management
        steps = (
            ("Issuers", [issuer_object(i) for i in cert_management.issuers], list_issuers),
            (
                "ClusterIssuers",
                [cluster_issuer_object(i) for i in cert_management.cluster_issuers],
                list_cluster_issuers,
            ),
            (
                "Resources",
                [certificate_object(c) for c in cert_management.certificates],
                list_certificates,
            ),
        )
        for label, objects, lister in steps:
            try:
                reconcile_objects(self.client, objects, lister)
            except ApiError as err:
                raise ApiError(f"unable to reconcile {label}: {err}") from err

        return Result()

    def _reconcile_addons(self, instance: Blueprint) -> None:
        to_uninstall = {addon.metadata.name: addon for addon in self.client.list(Addon.KIND)}
        logger.info("existing addons are %s", sorted(to_uninstall))

        for addon_spec in instance.spec.components.addons:
            if not addon_spec.namespace:
                addon_spec = dataclasses.replace(addon_spec, namespace=instance.metadata.namespace)
            if not addon_spec.enabled:
                continue

            logger.info("Reconciling addon %s in %s", addon_spec.name, addon_spec.namespace)
            addon = addon_resource(addon_spec)
            self._create_or_update_addon(addon)
            to_uninstall.pop(addon.metadata.name, None)

        for addon in to_uninstall.values():
            logger.info("Removing addon %s", addon.metadata.name)
            try:
                self.client.delete(addon)
            except NotFoundError:
                pass

    def _create_or_update_addon(self, addon: Addon) -> None:
        name = addon.metadata.name
        try:
            existing = self.client.get(Addon.KIND, name, addon.metadata.namespace)
        except NotFoundError:
            existing = None

        if existing is not None:
            if existing.spec.namespace == addon.spec.namespace:
                logger.info("Add-on %s already exists. Updating", name)
                addon.metadata.resource_version = existing.metadata.resource_version
                addon.metadata.finalizers = list(existing.metadata.finalizers)
                try:
                    self.client.update(addon)
                except ApiError as err:
                    raise ApiError(f"failed to update add-on {name}: {err}") from err
                return
            logger.info(
                "Addon %s has moved from namespace %s to %s; deleting old version",
                name,
                existing.spec.namespace,
                addon.spec.namespace,
            )
            try:
                self.client.delete(existing)
            except NotFoundError:
                pass

        logger.info("Creating add-on %s in %s", name, addon.spec.namespace)
        try:
            self.client.create(addon)
        except ApiError as err:
            raise ApiError(f"failed to create add-on {name}: {err}") from err