"""System level settings used during comparison.

These are the values the settings provider hands to the comparison engine:
per-kind resource overrides, the resource filter, diff compare options and the
options forwarded to the rendering service. All of them are plain manifest
dataclasses so that they may also be loaded from a YAML file.
"""

from dataclasses import dataclass, field
from fnmatch import fnmatchcase
import logging

from mashumaro import field_options

from .manifest import BaseManifest
from .reposerver import HelmOptions, KustomizeOptions
from .resource import GroupKind
from .tracking import LABEL_KEY_APP_INSTANCE, TrackingMethod

__all__ = [
    "ComparisonSettings",
    "FilteredResource",
    "OverrideIgnoreDiff",
    "ResourceCompareOptions",
    "ResourceOverride",
    "ResourcesFilter",
    "IgnoreStatusMode",
]

_LOGGER = logging.getLogger(__name__)


class IgnoreStatusMode:
    """Values of `ignoreResourceStatusField`."""

    CRD = "crd"
    ALL = "all"
    NONE = "none"


@dataclass
class OverrideIgnoreDiff(BaseManifest):
    """Fields ignored for every resource of a kind."""

    json_pointers: list[str] = field(
        default_factory=list, metadata=field_options(alias="jsonPointers")
    )
    managed_fields_managers: list[str] = field(
        default_factory=list, metadata=field_options(alias="managedFieldsManagers")
    )


@dataclass
class ResourceOverride(BaseManifest):
    """Settings applied to every resource of a group and kind."""

    ignore_differences: OverrideIgnoreDiff = field(
        default_factory=OverrideIgnoreDiff,
        metadata=field_options(alias="ignoreDifferences"),
    )
    ignore_resource_updates: OverrideIgnoreDiff = field(
        default_factory=OverrideIgnoreDiff,
        metadata=field_options(alias="ignoreResourceUpdates"),
    )


def override_key(gk: GroupKind) -> str:
    """Return the key for a group kind in the resource overrides map."""
    if gk.group:
        return f"{gk.group}/{gk.kind}"
    return gk.kind


def find_overrides(
    gk: GroupKind, overrides: dict[str, ResourceOverride]
) -> list[ResourceOverride]:
    """Return the overrides whose (possibly wildcard) key matches the group kind."""
    key = override_key(gk)
    return [
        override
        for pattern, override in overrides.items()
        if pattern == key or fnmatchcase(key, pattern)
    ]


@dataclass
class FilteredResource(BaseManifest):
    """A set of api groups, kinds and clusters, each of which may use globs."""

    api_groups: list[str] = field(
        default_factory=list, metadata=field_options(alias="apiGroups")
    )
    kinds: list[str] = field(default_factory=list)
    clusters: list[str] = field(default_factory=list)

    def _match(self, patterns: list[str], value: str) -> bool:
        if not patterns:
            return True
        return any(p == value or fnmatchcase(value, p) for p in patterns)

    def matches(self, group: str, kind: str, cluster: str) -> bool:
        return (
            self._match(self.api_groups, group)
            and self._match(self.kinds, kind)
            and self._match(self.clusters, cluster)
        )


def _default_exclusions() -> list[FilteredResource]:
    return [
        FilteredResource(api_groups=[""], kinds=["Event"]),
        FilteredResource(api_groups=["events.k8s.io"], kinds=["Event"]),
        FilteredResource(api_groups=["metrics.k8s.io"], kinds=["*"]),
        FilteredResource(api_groups=["coordination.k8s.io"], kinds=["Lease"]),
        FilteredResource(
            api_groups=["authentication.k8s.io", "authorization.k8s.io"], kinds=["*"]
        ),
    ]


@dataclass
class ResourcesFilter(BaseManifest):
    """Controls which kinds of resources may be managed at all."""

    resource_exclusions: list[FilteredResource] = field(
        default_factory=list, metadata=field_options(alias="resourceExclusions")
    )
    resource_inclusions: list[FilteredResource] = field(
        default_factory=list, metadata=field_options(alias="resourceInclusions")
    )
    include_defaults: bool = field(
        default=True, metadata=field_options(alias="includeDefaults")
    )

    def is_excluded_resource(self, group: str, kind: str, cluster: str) -> bool:
        """Return true if resources of the group and kind are excluded on the cluster."""
        exclusions = list(self.resource_exclusions)
        if self.include_defaults:
            exclusions.extend(_default_exclusions())
        if any(item.matches(group, kind, cluster) for item in exclusions):
            return True
        if self.resource_inclusions:
            return not any(
                item.matches(group, kind, cluster) for item in self.resource_inclusions
            )
        return False


@dataclass
class ResourceCompareOptions(BaseManifest):
    """Options that change how resources are normalized before diffing."""

    ignore_aggregated_roles: bool = field(
        default=False, metadata=field_options(alias="ignoreAggregatedRoles")
    )
    ignore_resource_status_field: str = field(
        default=IgnoreStatusMode.ALL,
        metadata=field_options(alias="ignoreResourceStatusField"),
    )
    ignore_difference_on_resource_updates: bool = field(
        default=False,
        metadata=field_options(alias="ignoreDifferenceOnResourceUpdates"),
    )


@dataclass
class ComparisonSettings(BaseManifest):
    """All settings read by a comparison pass."""

    app_instance_label_key: str = field(
        default=LABEL_KEY_APP_INSTANCE, metadata=field_options(alias="appInstanceLabelKey")
    )
    tracking_method: str = field(
        default=TrackingMethod.ANNOTATION.value,
        metadata=field_options(alias="trackingMethod"),
    )
    installation_id: str = field(
        default="", metadata=field_options(alias="installationID")
    )
    resource_overrides: dict[str, ResourceOverride] = field(
        default_factory=dict, metadata=field_options(alias="resourceOverrides")
    )
    resources_filter: ResourcesFilter = field(
        default_factory=ResourcesFilter, metadata=field_options(alias="resourcesFilter")
    )
    compare_options: ResourceCompareOptions = field(
        default_factory=ResourceCompareOptions,
        metadata=field_options(alias="compareOptions"),
    )
    enabled_source_types: dict[str, bool] = field(
        default_factory=dict, metadata=field_options(alias="enabledSourceTypes")
    )
    kustomize_build_options: str = field(
        default="", metadata=field_options(alias="kustomizeBuildOptions")
    )
    helm_value_files_schemes: list[str] = field(
        default_factory=lambda: ["https", "http"],
        metadata=field_options(alias="helmValueFilesSchemes"),
    )

    def kustomize_options(self) -> KustomizeOptions:
        return KustomizeOptions(build_options=self.kustomize_build_options)

    def helm_options(self) -> HelmOptions:
        return HelmOptions(value_files_schemes=list(self.helm_value_files_schemes))
