import pytest

from blueprint_operator.objects import (
    MANAGED_BY_LABEL,
    MANAGED_BY_VALUE,
    PART_OF_LABEL,
    PART_OF_VALUE,
    AlreadyExistsError,
    ApiError,
    EventRecorder,
    InMemoryClient,
    KubeObject,
    NotFoundError,
    create_namespace_if_not_exist,
    create_or_update_object,
    delete_objects,
    generate_name,
    list_installed_objects,
    reconcile_objects,
)
from blueprint_operator.types import Addon, ObjectMeta, StatusType


@pytest.fixture
def client():
    return InMemoryClient()


def config_map(name, namespace="ns1", labels=None, spec=None):
    return KubeObject(
        kind="ConfigMap",
        api_version="v1",
        metadata=ObjectMeta(name=name, namespace=namespace, labels=dict(labels or {})),
        spec=dict(spec or {}),
    )


def list_config_maps(c):
    return c.list("ConfigMap")


def test_get_missing_raises_not_found(client):
    with pytest.raises(NotFoundError):
        client.get("ConfigMap", "missing", "ns1")


def test_get_returns_independent_copy(client):
    client.create(config_map("a", spec={"k": "v"}))
    first = client.get("ConfigMap", "a", "ns1")
    first.spec["k"] = "changed"
    assert client.get("ConfigMap", "a", "ns1").spec == {"k": "v"}


def test_create_duplicate_raises_already_exists(client):
    client.create(config_map("a"))
    with pytest.raises(AlreadyExistsError):
        client.create(config_map("a"))


def test_create_without_name_raises(client):
    with pytest.raises(ApiError):
        client.create(config_map(""))


def test_update_missing_raises_not_found(client):
    with pytest.raises(NotFoundError):
        client.update(config_map("a"))


def test_update_with_stale_version_raises(client):
    client.create(config_map("a"))
    first = client.get("ConfigMap", "a", "ns1")
    second = client.get("ConfigMap", "a", "ns1")
    first.spec["x"] = "1"
    client.update(first)
    second.spec["x"] = "2"
    with pytest.raises(ApiError):
        client.update(second)
    assert client.get("ConfigMap", "a", "ns1").spec == {"x": "1"}


def test_delete_with_finalizer_marks_then_removes_on_finalizer_removal(client):
    obj = config_map("a")
    obj.metadata.finalizers.append("example/finalizer")
    client.create(obj)
    client.delete(obj)

    marked = client.get("ConfigMap", "a", "ns1")
    assert marked.metadata.is_being_deleted()

    marked.metadata.remove_finalizer("example/finalizer")
    client.update(marked)
    with pytest.raises(NotFoundError):
        client.get("ConfigMap", "a", "ns1")


def test_delete_missing_raises_not_found(client):
    with pytest.raises(NotFoundError):
        client.delete(config_map("a"))


def test_list_filters_by_labels(client):
    client.create(config_map("a", labels={"team": "x"}))
    client.create(config_map("b", labels={"team": "y"}))
    names = [obj.metadata.name for obj in client.list("ConfigMap", {"team": "x"})]
    assert names == ["a"]
    assert len(client.list("ConfigMap")) == 2


def test_patch_status_changes_status_and_update_keeps_it(client):
    addon = Addon(metadata=ObjectMeta(name="a", namespace="ns1"))
    client.create(addon)
    fresh = client.get("Addon", "a", "ns1")
    fresh.status.type = StatusType.AVAILABLE
    client.patch_status(fresh)

    again = client.get("Addon", "a", "ns1")
    again.status.type = StatusType.UNHEALTHY
    again.spec.kind = "chart"
    client.update(again)

    stored = client.get("Addon", "a", "ns1")
    assert stored.status.type == StatusType.AVAILABLE
    assert stored.spec.kind == "chart"


def test_generate_name():
    assert generate_name(config_map("a", namespace="ns1")) == "ns1/a"
    assert generate_name(config_map("a", namespace="")) == "a"


def test_create_namespace_if_not_exist_is_idempotent(client):
    create_namespace_if_not_exist(client, "team")
    create_namespace_if_not_exist(client, "team")
    names = [ns.metadata.name for ns in client.list("Namespace")]
    assert names == ["team"]


def test_list_installed_objects_skips_operator_objects(client):
    client.create(config_map("own", labels={PART_OF_LABEL: PART_OF_VALUE}))
    client.create(config_map("user"))
    installed = list_installed_objects(client, list_config_maps)
    assert list(installed) == [generate_name(config_map("user"))]


def test_delete_objects_skips_unmanaged_cert_kinds(client):
    managed = KubeObject(
        kind="Issuer",
        metadata=ObjectMeta(name="m", namespace="ns1", labels={MANAGED_BY_LABEL: MANAGED_BY_VALUE}),
    )
    unmanaged = KubeObject(kind="Issuer", metadata=ObjectMeta(name="u", namespace="ns1"))
    other = config_map("c")
    for obj in (managed, unmanaged, other):
        client.create(obj)

    delete_objects(client, {generate_name(o): o for o in (managed, unmanaged, other)})

    assert [o.metadata.name for o in client.list("Issuer")] == ["u"]
    assert client.list("ConfigMap") == []


def test_delete_objects_ignores_missing(client):
    delete_objects(client, {"ns1/gone": config_map("gone")})
    assert client.list("ConfigMap") == []


def test_create_or_update_object_creates_then_updates(client):
    create_or_update_object(client, config_map("a", spec={"v": 1}))
    create_or_update_object(client, config_map("a", spec={"v": 2}))
    stored = client.list("ConfigMap")
    assert len(stored) == 1
    assert stored[0].spec == {"v": 2}


def test_reconcile_objects_creates_namespace_and_prunes(client):
    client.create(config_map("stale", namespace="old"))
    client.create(config_map("own", namespace="old", labels={PART_OF_LABEL: PART_OF_VALUE}))

    reconcile_objects(client, [config_map("fresh", namespace="team")], list_config_maps)

    names = {generate_name(o) for o in client.list("ConfigMap")}
    assert names == {"team/fresh", "old/own"}
    assert client.get("Namespace", "team").metadata.name == "team"


def test_event_recorder_keeps_event():
    recorder = EventRecorder()
    obj = config_map("a")
    recorder.annotated_event(obj, {"addon": "a"}, "Warning", "FailedCreate", "boom")
    assert len(recorder.events) == 1
    event = recorder.events[0]
    assert (event.kind, event.name, event.namespace) == ("ConfigMap", "a", "ns1")
    assert event.annotations == {"addon": "a"}
    assert event.message == "boom"