# blueprint_operator

Reconciliation logic for a cluster add-on operator. A *Blueprint* lists the
add-ons (Helm charts or plain manifests) and the cert-manager objects
(issuers, cluster issuers, certificates) that should exist; the reconcilers
bring the stored objects in line with it, keep finalizers on the resources
they own, record events and report status.

Every reconciler works against `InMemoryClient`, a thread-safe object store
with get / list / create / update / delete / patch_status operations,
resource versions with conflict detection, and finalizer-aware deletion
(an object with finalizers is only marked for deletion until they are
removed).

## Installing

```
pip install .
pip install ".[test]"   # with pytest
```

## Modules

- `blueprint_operator.types`: resource models such as `Blueprint`, `Addon`,
  `AddonSpec`, `ChartInfo`, `ManifestInfo`, `Values`, `Patch`, `Image`,
  `Selector`, `Manifest`, `ManifestSpec`, `ManifestObject`, `Installation`,
  `Issuer`, `ClusterIssuer`, `Certificate`, `Status`, `StatusType`,
  `ObjectMeta` (with `has_finalizer`, `add_finalizer`, `remove_finalizer`,
  `is_being_deleted`) and `GroupVersion`. `AddonSpec.to_dict()` and
  `AddonSpec.from_dict()` convert to and from the camelCase wire form;
  `from_dict` rejects unknown addon kinds, missing required fields and an
  empty manifest URL with `ValueError`.
- `blueprint_operator.objects`: `InMemoryClient`, `Request`, `Result`,
  `KubeObject`, `EventRecorder`, the errors `ApiError`, `NotFoundError` and
  `AlreadyExistsError`, and the generic helpers `generate_name`,
  `create_namespace_if_not_exist`, `list_installed_objects`,
  `delete_objects`, `create_or_update_object` and `reconcile_objects`.
- `blueprint_operator.blueprint_controller`: `BlueprintReconciler`, plus
  `addon_resource`, `issuer_object`, `cluster_issuer_object`,
  `certificate_object`, `list_issuers`, `list_cluster_issuers` and
  `list_certificates`. Cert-manager objects it creates carry the label
  `app.kubernetes.io/managed-by: blueprint-operator`, and only objects with
  that label are listed and pruned.
- `blueprint_operator.addon_controller`: `AddonReconciler` and
  `ReleaseStatus`. It takes a Helm release controller and a manifest
  controller that follow the `HelmReleaseController` and
  `ManifestController` protocols.
- `blueprint_operator.installation_controller`: `InstallationReconciler`,
  which installs each missing `Component` and uninstalls them all when the
  Installation is deleted, and `try_create_installation_resource`, which
  creates the `default/default` Installation and returns whether it did.
- `blueprint_operator.manifest_controller`: `ManifestReconciler`, with
  `create_manifest_objects`, `delete_manifest_objects`,
  `update_manifest_objects` and `find_associated_manifests`. It takes a
  `Renderer`, an `Applier` and a `ManifestHealthChecker`; retries after a
  timeout run through a `spawn` callable that starts a daemon thread by
  default.
- `blueprint_operator.manifest_objects`: `decode_objects` (multi-document
  YAML), `manifest_object_refs`, `find_obsolete_objects`, `manifest_index`
  and `parse_duration` (durations such as `300s`, `10m`, `1h30m`).
- `blueprint_operator.metrics`: `HistogramVec`, the histograms
  `INSTALLATION_HIST_VEC`, `ADDON_HIST_VEC` and `MANIFEST_HIST_VEC`,
  `DEFAULT_REQUEUE_DURATION` and `metric_status`.

## Example

```python
from blueprint_operator.objects import InMemoryClient, Request
from blueprint_operator.blueprint_controller import BlueprintReconciler
from blueprint_operator.types import AddonSpec, Blueprint, ChartInfo, ObjectMeta

client = InMemoryClient()
blueprint = Blueprint(metadata=ObjectMeta(name="demo", namespace="blueprint-system"))
blueprint.spec.components.addons.append(
    AddonSpec(
        name="web",
        kind="chart",
        enabled=True,
        namespace="web",
        chart=ChartInfo(name="nginx", repo="https://charts.example.com", version="16.0.0"),
    )
)
client.create(blueprint)

BlueprintReconciler(client).reconcile(Request(name="demo", namespace="blueprint-system"))
addon = client.get("Addon", "web", "blueprint-system")
```

After reconciling, an `Addon` named `web` exists in the `blueprint-system`
namespace; removing it from the blueprint and reconciling again deletes it.
Disabled add-ons are not created.

## What this package does not do

- It does not talk to a real cluster: all state lives in `InMemoryClient`.
- It has no manager, watch loop or command; the caller decides when to call
  each reconciler's `reconcile(request)`.
- It does not install Helm charts, render or fetch manifests, apply objects
  or judge their health itself. Those steps are supplied by the caller
  through the `HelmReleaseController`, `ManifestController`, `Renderer`,
  `Applier`, `ManifestHealthChecker` and `Component` protocols.
- Metrics are kept in memory and are not served over HTTP.

## Tests

```
pytest
```