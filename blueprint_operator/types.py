"""Resource types of the blueprint.mirantis.com/v1alpha1 API group."""

from __future__ import annotations

import enum
from collections.abc import Mapping
from dataclasses import MISSING, dataclass, field, fields, is_dataclass
from datetime import datetime
from typing import Any, ClassVar, Optional, Union


@dataclass(frozen=True)
class GroupVersion:
    """An API group together with one of its versions."""

    group: str
    version: str

    @property
    def api_version(self) -> str:
        return f"{self.group}/{self.version}" if self.group else self.version


GROUP_VERSION = GroupVersion(group="blueprint.mirantis.com", version="v1alpha1")

ADDON_KINDS = ("manifest", "chart", "Manifest", "Chart")


def _meta(
    *,
    json: Optional[str] = None,
    required: bool = False,
    always: bool = False,
    nested: Optional[type] = None,
    many: bool = False,
) -> dict[str, Any]:
    return {
        "json": json,
        "required": required,
        "always": always or required,
        "nested": nested,
        "many": many,
    }


def _camel(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(part.capitalize() for part in rest)


def _json_key(f) -> str:
    return f.metadata.get("json") or _camel(f.name)


def _is_empty(value: Any) -> bool:
    return value is None or value is False or value == "" or value == [] or value == {}


def _to_json(value: Any) -> Any:
    if is_dataclass(value) and not isinstance(value, type):
        result = {}
        for f in fields(value):
            item = getattr(value, f.name)
            if f.metadata.get("always") or not _is_empty(item):
                result[_json_key(f)] = _to_json(item)
        return result
    if isinstance(value, enum.Enum):
        return value.value
    if isinstance(value, (list, tuple)):
        return [_to_json(item) for item in value]
    if isinstance(value, Mapping):
        return {key: _to_json(item) for key, item in value.items()}
    return value


def _from_json(cls: type, data: Any) -> Any:
    if not isinstance(data, Mapping):
        raise ValueError(f"{cls.__name__}: expected a mapping, got {type(data).__name__}")
    kwargs = {}
    for f in fields(cls):
        key = _json_key(f)
        if key not in data:
            if f.metadata.get("required"):
                raise ValueError(f"{cls.__name__}: field {key!r} is required")
            continue
        raw = data[key]
        nested = f.metadata.get("nested")
        if nested is not None and raw is not None:
            if f.metadata.get("many"):
                if not isinstance(raw, list):
                    raise ValueError(f"{cls.__name__}: field {key!r} must be a list")
                raw = [_from_json(nested, item) for item in raw]
            else:
                raw = _from_json(nested, raw)
        elif raw is None and f.default is MISSING and f.default_factory is not MISSING:
            raw = f.default_factory()
        elif isinstance(raw, list):
            raw = list(raw)
        elif isinstance(raw, Mapping):
            raw = dict(raw)
        kwargs[f.name] = raw
    return cls(**kwargs)


@dataclass
class ObjectMeta:
    """Metadata shared by every stored object."""

    name: str = ""
    namespace: str = ""
    labels: dict[str, str] = field(default_factory=dict)
    annotations: dict[str, str] = field(default_factory=dict)
    finalizers: list[str] = field(default_factory=list)
    resource_version: str = ""
    deletion_timestamp: Optional[datetime] = None
    owner_references: list[dict[str, Any]] = field(default_factory=list)

    def has_finalizer(self, name: str) -> bool:
        return name in self.finalizers

    def add_finalizer(self, name: str) -> bool:
        """Add the finalizer; return True if the list changed."""
        if name in self.finalizers:
            return False
        self.finalizers.append(name)
        return True

    def remove_finalizer(self, name: str) -> bool:
        """Remove every occurrence of the finalizer; return True if the list changed."""
        kept = [item for item in self.finalizers if item != name]
        changed = len(kept) != len(self.finalizers)
        self.finalizers = kept
        return changed

    def is_being_deleted(self) -> bool:
        return self.deletion_timestamp is not None


class StatusType(str, enum.Enum):
    """Condition that may apply to a component."""

    AVAILABLE = "Available"
    PROGRESSING = "Progressing"
    DEGRADED = "Degraded"
    READY = "Ready"
    UNHEALTHY = "Unhealthy"


@dataclass
class Status:
    """Observed condition of an addon or manifest."""

    type: Union[StatusType, str] = ""
    last_transition_time: Optional[datetime] = None
    reason: str = ""
    message: str = ""


@dataclass
class Selector:
    """A set of resources a patch applies to."""

    group: str = ""
    version: str = ""
    kind: str = ""
    namespace: str = ""
    name: str = ""
    annotation_selector: str = ""
    label_selector: str = ""


@dataclass
class Patch:
    """An inline strategic-merge or JSON6902 patch and its target."""

    patch: str = field(default="", metadata=_meta(required=True))
    path: str = ""
    target: Optional[Selector] = field(default=None, metadata=_meta(nested=Selector))
    options: dict[str, bool] = field(default_factory=dict)


@dataclass
class Image:
    """Replacement name, tag or digest for an image."""

    name: str = field(default="", metadata=_meta(required=True))
    new_name: str = ""
    tag_suffix: str = ""
    new_tag: str = ""
    digest: str = ""


@dataclass
class Values:
    """Customisations applied when rendering a manifest."""

    patches: list[Patch] = field(default_factory=list, metadata=_meta(nested=Patch, many=True))
    images: list[Image] = field(default_factory=list, metadata=_meta(nested=Image, many=True))


@dataclass
class ChartInfo:
    """Location and settings of a Helm chart."""

    name: str = field(default="", metadata=_meta(required=True))
    repo: str = field(default="", metadata=_meta(required=True))
    version: str = field(default="", metadata=_meta(required=True))
    depends_on: list[str] = field(default_factory=list)
    set_values: dict[str, Union[int, str]] = field(
        default_factory=dict, metadata=_meta(json="set")
    )
    values: Any = None


@dataclass
class ManifestInfo:
    """Location and handling of a manifest addon."""

    url: str = field(default="", metadata=_meta(required=True))
    values: Optional[Values] = field(default=None, metadata=_meta(nested=Values))
    failure_policy: str = ""
    timeout: str = ""


@dataclass
class AddonSpec:
    """Desired state of an addon."""

    name: str = field(default="", metadata=_meta(required=True))
    kind: str = field(default="", metadata=_meta(always=True))
    enabled: bool = field(default=False, metadata=_meta(always=True))
    dry_run: bool = field(default=False, metadata=_meta(always=True))
    namespace: str = ""
    chart: Optional[ChartInfo] = field(default=None, metadata=_meta(nested=ChartInfo))
    manifest: Optional[ManifestInfo] = field(default=None, metadata=_meta(nested=ManifestInfo))

    def to_dict(self) -> dict[str, Any]:
        """Return the spec in its JSON wire form."""
        return _to_json(self)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "AddonSpec":
        """Build and validate a spec from its JSON wire form."""
        spec = _from_json(cls, data)
        if spec.kind not in ADDON_KINDS:
            raise ValueError(f"invalid addon kind: {spec.kind!r}")
        if spec.manifest is not None and not spec.manifest.url:
            raise ValueError("manifest url must not be empty")
        return spec


@dataclass
class Addon:
    """An addon resource."""

    KIND: ClassVar[str] = "Addon"
    API_VERSION: ClassVar[str] = GROUP_VERSION.api_version

    metadata: ObjectMeta = field(default_factory=ObjectMeta)
    spec: AddonSpec = field(default_factory=AddonSpec)
    status: Status = field(default_factory=Status)


@dataclass
class Component:
    """Addon components that should be installed."""

    addons: list[AddonSpec] = field(default_factory=list)


@dataclass
class Issuer:
    """A namespaced cert-manager issuer to manage."""

    name: str
    namespace: str = ""
    spec: dict[str, Any] = field(default_factory=dict)


@dataclass
class ClusterIssuer:
    """A cluster-wide cert-manager issuer to manage."""

    name: str
    spec: dict[str, Any] = field(default_factory=dict)


@dataclass
class Certificate:
    """A cert-manager certificate to manage."""

    name: str
    namespace: str = ""
    spec: dict[str, Any] = field(default_factory=dict)


@dataclass
class CertManagement:
    """Desired cert-manager resources."""

    issuers: list[Issuer] = field(default_factory=list)
    cluster_issuers: list[ClusterIssuer] = field(default_factory=list)
    certificates: list[Certificate] = field(default_factory=list)


@dataclass
class Resources:
    """Resources managed directly by the operator."""

    cert_management: CertManagement = field(default_factory=CertManagement)


@dataclass
class BlueprintSpec:
    """Desired state of a blueprint."""

    components: Component = field(default_factory=Component)
    resources: Resources = field(default_factory=Resources)


@dataclass
class Blueprint:
    """A blueprint resource."""

    KIND: ClassVar[str] = "Blueprint"
    API_VERSION: ClassVar[str] = GROUP_VERSION.api_version

    metadata: ObjectMeta = field(default_factory=ObjectMeta)
    spec: BlueprintSpec = field(default_factory=BlueprintSpec)


@dataclass
class Installation:
    """The installation resource that drives component setup."""

    KIND: ClassVar[str] = "Installation"
    API_VERSION: ClassVar[str] = GROUP_VERSION.api_version

    metadata: ObjectMeta = field(default_factory=ObjectMeta)
    conditions: list[dict[str, Any]] = field(default_factory=list)


@dataclass(frozen=True)
class ManifestObject:
    """Identity of one object created from a manifest."""

    group: str = ""
    version: str = ""
    kind: str = ""
    name: str = ""
    namespace: str = ""


@dataclass
class ManifestSpec:
    """Desired state of a manifest."""

    url: str = ""
    failure_policy: str = ""
    timeout: str = ""
    new_checksum: str = ""
    checksum: str = ""
    values: Optional[Values] = None
    objects: list[ManifestObject] = field(default_factory=list)


@dataclass
class Manifest:
    """A manifest resource."""

    KIND: ClassVar[str] = "Manifest"
    API_VERSION: ClassVar[str] = GROUP_VERSION.api_version

    metadata: ObjectMeta = field(default_factory=ObjectMeta)
    spec: ManifestSpec = field(default_factory=ManifestSpec)
    status: Status = field(default_factory=Status)