import pytest

from blueprint_operator.addon_controller import (
    ADDON_FINALIZER,
    EVENT_TYPE_NORMAL,
    EVENT_TYPE_WARNING,
    REASON_FAILED_CREATE,
    REASON_FAILED_DELETE,
    REASON_SUCCESSFUL_CREATE,
    AddonReconciler,
    ReleaseStatus,
)
from blueprint_operator.metrics import ADDON_HIST_VEC, DEFAULT_REQUEUE_DURATION
from blueprint_operator.objects import (
    NAMESPACE_BLUEPRINT_SYSTEM,
    ApiError,
    EventRecorder,
    InMemoryClient,
    KubeObject,
    NotFoundError,
    Request,
    Result,
)
from blueprint_operator.types import (
    Addon,
    AddonSpec,
    ChartInfo,
    Manifest,
    ManifestInfo,
    ManifestSpec,
    ObjectMeta,
    StatusType,
)


class FakeHelm:
    def __init__(self, client, status=ReleaseStatus.SUCCESS, create_release=True):
        self.client = client
        self.status = status
        self.create_release = create_release
        self.fail_create = None
        self.fail_delete = None
        self.deleted = []

    def create_helm_release(self, addon, namespace, dry_run):
        if self.fail_create:
            raise ApiError(self.fail_create)
        if not self.create_release:
            return
        try:
            self.client.get("HelmRelease", addon.spec.name, NAMESPACE_BLUEPRINT_SYSTEM)
        except NotFoundError:
            self.client.create(
                KubeObject(
                    kind="HelmRelease",
                    metadata=ObjectMeta(name=addon.spec.name, namespace=NAMESPACE_BLUEPRINT_SYSTEM),
                )
            )

    def delete_helm_release(self, addon):
        if self.fail_delete:
            raise ApiError(self.fail_delete)
        self.deleted.append(addon.spec.name)

    def release_status(self, release):
        return self.status


class FakeManifests:
    def __init__(self, client, create=True):
        self.client = client
        self.create = create
        self.deleted = []

    def create_manifest(self, namespace, name, info):
        if not self.create:
            return
        try:
            self.client.get(Manifest.KIND, name, namespace)
        except NotFoundError:
            self.client.create(
                Manifest(
                    metadata=ObjectMeta(name=name, namespace=namespace),
                    spec=ManifestSpec(url=info.url),
                )
            )

    def delete_manifest(self, namespace, name, url):
        self.deleted.append((namespace, name, url))


def chart_addon(name="nginx-addon", **spec):
    return Addon(
        metadata=ObjectMeta(name=name, namespace=NAMESPACE_BLUEPRINT_SYSTEM),
        spec=AddonSpec(
            name=name,
            kind="chart",
            namespace="apps",
            enabled=True,
            chart=ChartInfo(name="nginx", repo="https://charts.example.com", version="16.0.0"),
            **spec,
        ),
    )


def manifest_addon(name="metallb"):
    return Addon(
        metadata=ObjectMeta(name=name, namespace=NAMESPACE_BLUEPRINT_SYSTEM),
        spec=AddonSpec(
            name=name,
            kind="manifest",
            namespace="apps",
            enabled=True,
            manifest=ManifestInfo(url="https://manifests.example.com/metallb.yaml"),
        ),
    )


@pytest.fixture
def env():
    client = InMemoryClient()
    recorder = EventRecorder()
    helm = FakeHelm(client)
    manifests = FakeManifests(client)
    reconciler = AddonReconciler(client, recorder, helm, manifests)
    return client, recorder, helm, manifests, reconciler


def req(name):
    return Request(name=name, namespace=NAMESPACE_BLUEPRINT_SYSTEM)


def get_addon(client, name):
    return client.get(Addon.KIND, name, NAMESPACE_BLUEPRINT_SYSTEM)


def test_missing_addon_is_ignored_and_counted(env):
    *_, reconciler = env
    before = ADDON_HIST_VEC.count(("ghost-addon", "failure"))
    assert reconciler.reconcile(req("ghost-addon")) == Result()
    assert ADDON_HIST_VEC.count(("ghost-addon", "failure")) == before + 1


def test_invalid_kind_is_not_requeued(env):
    client, _, _, _, reconciler = env
    addon = chart_addon("bad-kind")
    addon.spec.kind = "Chart"
    client.create(addon)
    assert reconciler.reconcile(req("bad-kind")) == Result(requeue=False)
    assert get_addon(client, "bad-kind").metadata.finalizers == []


def test_chart_without_chart_info_is_not_requeued(env):
    client, _, _, _, reconciler = env
    addon = chart_addon("no-chart")
    addon.spec.chart = None
    client.create(addon)
    assert reconciler.reconcile(req("no-chart")) == Result(requeue=False)
    assert get_addon(client, "no-chart").metadata.finalizers == []


def test_first_reconcile_adds_finalizer_only(env):
    client, _, helm, _, reconciler = env
    client.create(chart_addon())
    assert reconciler.reconcile(req("nginx-addon")) == Result()
    assert get_addon(client, "nginx-addon").metadata.finalizers == [ADDON_FINALIZER]
    with pytest.raises(NotFoundError):
        client.get("HelmRelease", "nginx-addon", NAMESPACE_BLUEPRINT_SYSTEM)


def test_successful_chart_sets_available(env):
    client, recorder, _, _, reconciler = env
    client.create(chart_addon())
    reconciler.reconcile(req("nginx-addon"))
    before = ADDON_HIST_VEC.count(("nginx-addon", "success"))
    assert reconciler.reconcile(req("nginx-addon")) == Result()
    status = get_addon(client, "nginx-addon").status
    assert status.type == StatusType.AVAILABLE
    assert status.reason == "Helm Chart nginx-addon successfully installed"
    assert status.last_transition_time is not None
    assert recorder.events[-1].type == EVENT_TYPE_NORMAL
    assert recorder.events[-1].reason == REASON_SUCCESSFUL_CREATE
    assert ADDON_HIST_VEC.count(("nginx-addon", "success")) == before + 1


def test_status_not_rewritten_when_unchanged(env):
    client, _, _, _, reconciler = env
    client.create(chart_addon())
    reconciler.reconcile(req("nginx-addon"))
    reconciler.reconcile(req("nginx-addon"))
    first = get_addon(client, "nginx-addon").status.last_transition_time
    reconciler.reconcile(req("nginx-addon"))
    assert get_addon(client, "nginx-addon").status.last_transition_time == first


def test_failed_release_marks_unhealthy(env):
    client, recorder, helm, _, reconciler = env
    helm.status = ReleaseStatus.FAILED
    client.create(chart_addon())
    reconciler.reconcile(req("nginx-addon"))
    reconciler.reconcile(req("nginx-addon"))
    status = get_addon(client, "nginx-addon").status
    assert status.type == StatusType.UNHEALTHY
    assert recorder.events[-1].type == EVENT_TYPE_WARNING
    assert recorder.events[-1].reason == REASON_FAILED_CREATE


def test_progressing_release(env):
    client, recorder, helm, _, reconciler = env
    helm.status = ReleaseStatus.PROGRESSING
    client.create(chart_addon())
    reconciler.reconcile(req("nginx-addon"))
    reconciler.reconcile(req("nginx-addon"))
    assert get_addon(client, "nginx-addon").status.type == StatusType.PROGRESSING
    assert recorder.events == []


def test_missing_release_requeues(env):
    client, _, helm, _, reconciler = env
    helm.create_release = False
    client.create(chart_addon())
    reconciler.reconcile(req("nginx-addon"))
    assert reconciler.reconcile(req("nginx-addon")) == Result(requeue_after=DEFAULT_REQUEUE_DURATION)


def test_helm_create_failure_raises_and_records_event(env):
    client, recorder, helm, _, reconciler = env
    helm.fail_create = "boom"
    client.create(chart_addon())
    reconciler.reconcile(req("nginx-addon"))
    with pytest.raises(ApiError, match="boom"):
        reconciler.reconcile(req("nginx-addon"))
    event = recorder.events[-1]
    assert event.reason == REASON_FAILED_CREATE
    assert "boom" in event.message
    assert event.annotations == {"blueprint.mirantis.com/addon": "nginx-addon"}


def test_manifest_not_yet_created_requeues(env):
    client, _, _, manifests, reconciler = env
    manifests.create = False
    client.create(manifest_addon())
    reconciler.reconcile(req("metallb"))
    assert reconciler.reconcile(req("metallb")) == Result(requeue_after=DEFAULT_REQUEUE_DURATION)
    status = get_addon(client, "metallb").status
    assert status.type == StatusType.PROGRESSING
    assert status.reason == "Awaiting Manifest Resource Creation"


def test_manifest_without_status_sets_owner_and_progressing(env):
    client, _, _, _, reconciler = env
    client.create(manifest_addon())
    reconciler.reconcile(req("metallb"))
    reconciler.reconcile(req("metallb"))
    manifest = client.get(Manifest.KIND, "metallb", NAMESPACE_BLUEPRINT_SYSTEM)
    refs = manifest.metadata.owner_references
    assert len(refs) == 1
    assert refs[0]["kind"] == "Addon"
    assert refs[0]["name"] == "metallb"
    assert refs[0]["controller"] is True
    status = get_addon(client, "metallb").status
    assert status.type == StatusType.PROGRESSING
    assert status.reason == "Awaiting status from manifest object"


def test_manifest_status_bubbles_up(env):
    client, recorder, _, _, reconciler = env
    client.create(manifest_addon())
    reconciler.reconcile(req("metallb"))
    reconciler.reconcile(req("metallb"))
    manifest = client.get(Manifest.KIND, "metallb", NAMESPACE_BLUEPRINT_SYSTEM)
    manifest.status.type = StatusType.AVAILABLE
    manifest.status.reason = "all ready"
    manifest.status.message = "objects healthy"
    client.patch_status(manifest)
    reconciler.reconcile(req("metallb"))
    status = get_addon(client, "metallb").status
    assert (status.type, status.reason, status.message) == (
        StatusType.AVAILABLE,
        "all ready",
        "objects healthy",
    )
    assert recorder.events[-1].reason == REASON_SUCCESSFUL_CREATE
    assert client.get(Manifest.KIND, "metallb", NAMESPACE_BLUEPRINT_SYSTEM).status.reason == "all ready"


def test_manifest_owned_by_other_controller_raises(env):
    client, _, _, _, reconciler = env
    client.create(
        Manifest(
            metadata=ObjectMeta(
                name="metallb",
                namespace=NAMESPACE_BLUEPRINT_SYSTEM,
                owner_references=[{"kind": "Addon", "name": "other", "controller": True}],
            )
        )
    )
    client.create(manifest_addon())
    reconciler.reconcile(req("metallb"))
    with pytest.raises(ApiError, match="already owned"):
        reconciler.reconcile(req("metallb"))


def test_chart_deletion_removes_release_and_finalizer(env):
    client, _, helm, _, reconciler = env
    client.create(chart_addon())
    reconciler.reconcile(req("nginx-addon"))
    client.delete(get_addon(client, "nginx-addon"))
    assert get_addon(client, "nginx-addon").metadata.is_being_deleted()
    assert reconciler.reconcile(req("nginx-addon")) == Result()
    assert helm.deleted == ["nginx-addon"]
    with pytest.raises(NotFoundError):
        get_addon(client, "nginx-addon")


def test_manifest_deletion_calls_manifest_controller(env):
    client, _, _, manifests, reconciler = env
    client.create(manifest_addon())
    reconciler.reconcile(req("metallb"))
    client.delete(get_addon(client, "metallb"))
    reconciler.reconcile(req("metallb"))
    assert manifests.deleted == [
        (NAMESPACE_BLUEPRINT_SYSTEM, "metallb", "https://manifests.example.com/metallb.yaml")
    ]


def test_failed_deletion_keeps_finalizer(env):
    client, recorder, helm, _, reconciler = env
    helm.fail_delete = "cannot uninstall"
    client.create(chart_addon())
    reconciler.reconcile(req("nginx-addon"))
    client.delete(get_addon(client, "nginx-addon"))
    with pytest.raises(ApiError, match="cannot uninstall"):
        reconciler.reconcile(req("nginx-addon"))
    assert get_addon(client, "nginx-addon").metadata.finalizers == [ADDON_FINALIZER]
    assert recorder.events[-1].reason == REASON_FAILED_DELETE