"""Helpers for working with raw kubernetes objects.

Rendered and live objects are plain dictionaries as decoded from YAML or JSON
documents. This module provides the identity types used to pair them with each
other (ResourceKey, GroupKind) and small accessors for the metadata fields the
comparison engine reads and writes.
"""

from dataclasses import dataclass
from typing import Any

import yaml

from .exceptions import ManifestException

__all__ = [
    "GroupKind",
    "GroupVersionKind",
    "ResourceKey",
    "NAMESPACE_KIND",
    "group_version_kind",
    "get_resource_key",
    "unmarshal_manifest",
    "unmarshal_manifests",
    "has_annotation_option",
]


NAMESPACE_KIND = "Namespace"


@dataclass(frozen=True, order=True)
class GroupKind:
    """Identifier for a type of kubernetes resource, independent of version."""

    group: str
    kind: str

    def __str__(self) -> str:
        if self.group:
            return f"{self.kind}.{self.group}"
        return self.kind


@dataclass(frozen=True)
class GroupVersionKind:
    """The fully qualified type of a kubernetes object."""

    group: str
    version: str
    kind: str

    @property
    def group_kind(self) -> GroupKind:
        return GroupKind(self.group, self.kind)

    def __str__(self) -> str:
        if self.group:
            return f"{self.group}/{self.version}, Kind={self.kind}"
        return f"/{self.version}, Kind={self.kind}"


@dataclass(frozen=True, order=True)
class ResourceKey:
    """Key that uniquely identifies an object in a cluster.

    The version is not part of the key so that an object rendered with a
    newer apiVersion still matches the same live object.
    """

    group: str
    kind: str
    namespace: str
    name: str

    @property
    def group_kind(self) -> GroupKind:
        return GroupKind(self.group, self.kind)

    @property
    def namespaced_name(self) -> str:
        if self.namespace:
            return f"{self.namespace}/{self.name}"
        return self.name

    def __str__(self) -> str:
        return f"{self.group}/{self.kind}/{self.namespace}/{self.name}"


def split_api_version(api_version: str) -> tuple[str, str]:
    """Return the group and version of an apiVersion string."""
    if "/" in api_version:
        group, version = api_version.split("/", 1)
        return group, version
    return "", api_version


def group_version_kind(obj: dict[str, Any]) -> GroupVersionKind:
    """Return the GroupVersionKind of the object."""
    group, version = split_api_version(obj.get("apiVersion") or "")
    return GroupVersionKind(group=group, version=version, kind=obj.get("kind") or "")


def metadata(obj: dict[str, Any]) -> dict[str, Any]:
    """Return the metadata of the object, creating it if missing."""
    if (meta := obj.get("metadata")) is None:
        meta = {}
        obj["metadata"] = meta
    return meta


def get_name(obj: dict[str, Any]) -> str:
    return (obj.get("metadata") or {}).get("name") or ""


def get_generate_name(obj: dict[str, Any]) -> str:
    return (obj.get("metadata") or {}).get("generateName") or ""


def get_namespace(obj: dict[str, Any]) -> str:
    return (obj.get("metadata") or {}).get("namespace") or ""


def set_namespace(obj: dict[str, Any], namespace: str) -> None:
    """Set or clear the namespace of the object."""
    meta = metadata(obj)
    if namespace:
        meta["namespace"] = namespace
    else:
        meta.pop("namespace", None)


def get_annotations(obj: dict[str, Any]) -> dict[str, str]:
    return (obj.get("metadata") or {}).get("annotations") or {}


def set_annotation(obj: dict[str, Any], key: str, value: str) -> None:
    meta = metadata(obj)
    if meta.get("annotations") is None:
        meta["annotations"] = {}
    meta["annotations"][key] = value


def get_labels(obj: dict[str, Any]) -> dict[str, str]:
    return (obj.get("metadata") or {}).get("labels") or {}


def set_label(obj: dict[str, Any], key: str, value: str) -> None:
    meta = metadata(obj)
    if meta.get("labels") is None:
        meta["labels"] = {}
    meta["labels"][key] = value


def get_resource_version(obj: dict[str, Any]) -> str:
    return (obj.get("metadata") or {}).get("resourceVersion") or ""


def get_uid(obj: dict[str, Any]) -> str:
    return (obj.get("metadata") or {}).get("uid") or ""


def get_resource_key(obj: dict[str, Any]) -> ResourceKey:
    """Return the ResourceKey for the object."""
    gvk = group_version_kind(obj)
    return ResourceKey(
        group=gvk.group,
        kind=gvk.kind,
        namespace=get_namespace(obj),
        name=get_name(obj),
    )


def has_annotation_option(obj: dict[str, Any], key: str, option: str) -> bool:
    """Return true if the comma separated annotation value contains the option."""
    if not (value := get_annotations(obj).get(key)):
        return False
    return any(item.strip() == option for item in value.split(","))


def unmarshal_manifest(manifest: str) -> dict[str, Any]:
    """Parse a single rendered manifest document into an object."""
    try:
        obj = yaml.safe_load(manifest)
    except yaml.YAMLError as err:
        raise ManifestException(f"Unable to parse manifest: {err}") from err
    if not isinstance(obj, dict):
        raise ManifestException(
            f"Manifest must be an object, got {type(obj).__name__}: {manifest[:80]}"
        )
    if not obj.get("kind"):
        raise ManifestException(f"Invalid object missing kind: {manifest[:80]}")
    return obj


def unmarshal_manifests(manifests: list[str]) -> list[dict[str, Any]]:
    """Parse a list of rendered manifest documents."""
    return [unmarshal_manifest(manifest) for manifest in manifests]
