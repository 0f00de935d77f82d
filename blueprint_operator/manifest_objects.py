"""Helpers for the objects a manifest renders to."""

from __future__ import annotations

import re
from collections.abc import Iterable, Mapping
from datetime import timedelta
from fractions import Fraction
from typing import Any

import yaml

from .types import Manifest, ManifestObject

INDEXED_KINDS = ("DaemonSet", "Deployment")

_UNITS_NS = {
    "ns": 1,
    "us": 1_000,
    "µs": 1_000,
    "μs": 1_000,
    "ms": 1_000_000,
    "s": 1_000_000_000,
    "m": 60 * 1_000_000_000,
    "h": 3600 * 1_000_000_000,
}
_NUMBER = r"(?:\d+\.?\d*|\.\d+)"
_UNIT = r"(?:ns|us|µs|μs|ms|s|m|h)"
_DURATION_RE = re.compile(rf"([-+]?)((?:{_NUMBER}{_UNIT})+)")
_PART_RE = re.compile(rf"({_NUMBER})({_UNIT})")
_MAX_NS = 2**63 - 1


def decode_objects(data: bytes | str) -> list[dict[str, Any]]:
    """Parse a multi-document YAML stream into objects, skipping empty documents."""
    try:
        documents = list(yaml.safe_load_all(data))
    except yaml.YAMLError as err:
        raise ValueError(f"error decoding yaml manifest file: {err}") from err

    objects = []
    for document in documents:
        if document is None:
            continue
        if not isinstance(document, Mapping):
            raise ValueError(
                "error decoding yaml manifest file: document is not an object"
            )
        if not document.get("kind"):
            raise ValueError("error decoding yaml manifest file: Object 'Kind' is missing")
        objects.append(dict(document))
    return objects


def _group_version(api_version: str) -> tuple[str, str]:
    if "/" in api_version:
        group, _, version = api_version.partition("/")
        return group, version
    return "", api_version


def manifest_object_refs(objects: Iterable[Mapping[str, Any]]) -> list[ManifestObject]:
    """Identities of decoded objects as recorded on a manifest."""
    refs = []
    for obj in objects:
        group, version = _group_version(str(obj.get("apiVersion") or ""))
        metadata = obj.get("metadata") or {}
        refs.append(
            ManifestObject(
                group=group,
                version=version,
                kind=str(obj.get("kind") or ""),
                name=str(metadata.get("name") or ""),
                namespace=str(metadata.get("namespace") or ""),
            )
        )
    return refs


def find_obsolete_objects(
    old_objects: Iterable[ManifestObject], new_objects: Iterable[ManifestObject]
) -> list[ManifestObject]:
    """Old objects absent from the new set; nothing when either set is empty."""
    old = list(old_objects)
    new = list(new_objects)
    if not old or not new:
        return []
    return [obj for obj in old if obj not in new]


def manifest_index(manifest: Manifest) -> list[str]:
    """Index keys namespace-name for the DaemonSets and Deployments of a manifest."""
    return [
        f"{obj.namespace}-{obj.name}"
        for obj in manifest.spec.objects
        if obj.kind in INDEXED_KINDS
    ]


def parse_duration(text: str) -> timedelta:
    """Parse a duration such as 300s, 10m, 1h30m or 1.5h."""
    invalid = ValueError(f"time: invalid duration {text!r}")
    match = _DURATION_RE.fullmatch(text)
    if match is None:
        if text in ("0", "+0", "-0"):
            return timedelta(0)
        raise invalid

    sign, body = match.groups()
    total = Fraction(0)
    for number, unit in _PART_RE.findall(body):
        total += Fraction(number) * _UNITS_NS[unit]
    nanoseconds = int(total)
    if nanoseconds > _MAX_NS:
        raise ValueError(f"time: invalid duration {text!r}")
    delta = timedelta(microseconds=nanoseconds // 1000)
    return -delta if sign == "-" else delta