"""Structural diff of target and live objects.

The comparison engine builds a DiffConfig from application and system policy
and hands it, together with the paired objects, to `state_diffs`. Before
comparing, both sides are normalized: server populated metadata, ignored
fields and (depending on settings) the status are removed. The predicted live
state is the target merged onto the live object, or the result of a server
side dry run when server side diff is enabled.
"""

from abc import ABC, abstractmethod
from collections.abc import Generator
import copy
from dataclasses import dataclass, field
import difflib
from fnmatch import fnmatchcase
import json
import logging
import threading
from typing import Any

import yaml

from .exceptions import DiffException
from .manifest import ResourceIgnoreDifferences
from .resource import (
    ResourceKey,
    get_name,
    get_namespace,
    get_resource_key,
    get_resource_version,
    group_version_kind,
)
from .settings import IgnoreStatusMode, ResourceOverride, find_overrides
from .tracking import ANNOTATION_INSTALLATION_ID, ANNOTATION_KEY_APP_INSTANCE

__all__ = [
    "DiffResult",
    "DiffResultList",
    "DiffConfig",
    "DiffConfigBuilder",
    "DiffCache",
    "CachedResourceDiff",
    "ServerSideDryRunner",
    "state_diffs",
    "cached_resource_diffs",
]

_LOGGER = logging.getLogger(__name__)

SSA_MANAGER = "argocd-controller"

_SERVER_METADATA = (
    "managedFields",
    "resourceVersion",
    "uid",
    "creationTimestamp",
    "generation",
    "selfLink",
)
_LAST_APPLIED = "kubectl.kubernetes.io/last-applied-configuration"
_CRD_KIND = "CustomResourceDefinition"


@dataclass
class DiffResult:
    """Outcome of comparing one target with its live object."""

    modified: bool
    normalized_live: dict[str, Any] | None = None
    predicted_live: dict[str, Any] | None = None

    def diff_lines(self, n: int = 3) -> Generator[str, None, None]:
        """Generate a unified diff from the live state to the predicted live state."""
        a = _dump(self.normalized_live)
        b = _dump(self.predicted_live)
        for line in difflib.unified_diff(
            a, b, fromfile="live", tofile="target", n=n, lineterm=""
        ):
            yield line


def _dump(obj: dict[str, Any] | None) -> list[str]:
    if obj is None:
        return []
    return yaml.dump(obj, sort_keys=False).splitlines()


@dataclass
class DiffResultList:
    """Diff results in the same order as the compared pairs."""

    diffs: list[DiffResult] = field(default_factory=list)
    modified: bool = False


@dataclass
class CachedResourceDiff:
    """A diff result remembered for a live object at a resource version."""

    key: ResourceKey
    resource_version: str
    target_hash: str
    result: DiffResult


class DiffCache:
    """Thread safe store of the last diff results of each application."""

    def __init__(self) -> None:
        """Initialize DiffCache."""
        self._lock = threading.Lock()
        self._by_app: dict[str, dict[ResourceKey, CachedResourceDiff]] = {}

    def get_app_managed_resources(
        self, app_name: str
    ) -> dict[ResourceKey, CachedResourceDiff]:
        with self._lock:
            return dict(self._by_app.get(app_name, {}))

    def set_app_managed_resources(
        self, app_name: str, entries: list[CachedResourceDiff]
    ) -> None:
        with self._lock:
            self._by_app[app_name] = {entry.key: entry for entry in entries}


class ServerSideDryRunner(ABC):
    """Predicts the live state of an object by asking the cluster to dry run an apply."""

    @abstractmethod
    async def run(self, obj: dict[str, Any], manager: str) -> dict[str, Any]:
        """Return the object the cluster would store if the object was applied."""


@dataclass
class DiffConfig:
    """Everything that controls how the diff of an application is computed."""

    ignores: list[ResourceIgnoreDifferences] = field(default_factory=list)
    overrides: dict[str, ResourceOverride] = field(default_factory=dict)
    ignore_aggregated_roles: bool = False
    ignore_status_mode: str = IgnoreStatusMode.ALL
    tracking_label_key: str = ""
    tracking_method: str = ""
    app_name: str = ""
    cache: DiffCache | None = None
    no_cache: bool = True
    ignore_mutation_webhook: bool = True
    server_side_diff: bool = False
    server_side_dry_runner: ServerSideDryRunner | None = None
    structured_merge_diff: bool = False
    manager: str = SSA_MANAGER

    def validate(self) -> None:
        """Raise DiffException if the configuration cannot be used."""
        if not self.no_cache and (self.cache is None or not self.app_name):
            raise DiffException(
                "app name and cache must be defined when the diff cache is enabled"
            )
        if self.server_side_diff and self.server_side_dry_runner is None:
            raise DiffException(
                "a server side dry runner is required when server side diff is enabled"
            )
        for ignore in self.ignores:
            _validate_pointers(ignore.json_pointers)
        for override in self.overrides.values():
            _validate_pointers(override.ignore_differences.json_pointers)


class DiffConfigBuilder:
    """Builds a DiffConfig one policy at a time."""

    def __init__(self) -> None:
        """Initialize DiffConfigBuilder."""
        self._config = DiffConfig()

    def with_diff_settings(
        self,
        ignores: list[ResourceIgnoreDifferences],
        overrides: dict[str, ResourceOverride],
        ignore_aggregated_roles: bool,
        ignore_status_mode: str = IgnoreStatusMode.ALL,
    ) -> "DiffConfigBuilder":
        self._config.ignores = list(ignores)
        self._config.overrides = dict(overrides)
        self._config.ignore_aggregated_roles = ignore_aggregated_roles
        self._config.ignore_status_mode = ignore_status_mode
        return self

    def with_tracking(self, label_key: str, tracking_method: str) -> "DiffConfigBuilder":
        self._config.tracking_label_key = label_key
        self._config.tracking_method = tracking_method
        return self

    def with_cache(self, cache: DiffCache, app_name: str) -> "DiffConfigBuilder":
        self._config.cache = cache
        self._config.app_name = app_name
        self._config.no_cache = False
        return self

    def with_no_cache(self) -> "DiffConfigBuilder":
        self._config.no_cache = True
        return self

    def with_ignore_mutation_webhook(self, ignore: bool) -> "DiffConfigBuilder":
        self._config.ignore_mutation_webhook = ignore
        return self

    def with_server_side_diff(self, enabled: bool) -> "DiffConfigBuilder":
        self._config.server_side_diff = enabled
        return self

    def with_server_side_dry_runner(
        self, runner: ServerSideDryRunner | None
    ) -> "DiffConfigBuilder":
        self._config.server_side_dry_runner = runner
        return self

    def with_structured_merge_diff(self, enabled: bool) -> "DiffConfigBuilder":
        self._config.structured_merge_diff = enabled
        return self

    def build(self) -> DiffConfig:
        """Return the config; call `DiffConfig.validate` to check it."""
        return copy.copy(self._config)


def _validate_pointers(pointers: list[str]) -> None:
    for pointer in pointers:
        if not pointer.startswith("/"):
            raise DiffException(f"Invalid JSON pointer '{pointer}'")


def _decode_pointer(pointer: str) -> list[str]:
    return [
        part.replace("~1", "/").replace("~0", "~")
        for part in pointer[1:].split("/")
    ]


def _child(node: Any, part: str) -> Any:
    if isinstance(node, dict):
        return node.get(part)
    if isinstance(node, list) and part.isdigit() and int(part) < len(node):
        return node[int(part)]
    return None


def remove_pointer(obj: dict[str, Any], pointer: str) -> None:
    """Remove the value at the JSON pointer, if present."""
    parts = _decode_pointer(pointer)
    if not parts or parts == [""]:
        return
    parent: Any = obj
    for part in parts[:-1]:
        if (parent := _child(parent, part)) is None:
            return
    last = parts[-1]
    if isinstance(parent, dict):
        parent.pop(last, None)
    elif isinstance(parent, list) and last.isdigit() and int(last) < len(parent):
        del parent[int(last)]


def _managed_field_pointers(fields: dict[str, Any], prefix: str = "") -> list[str]:
    """Return pointers for the leaf fields of a fieldsV1 set, skipping list items."""
    pointers: list[str] = []
    for name, value in fields.items():
        if not name.startswith("f:"):
            continue
        path = f"{prefix}/{name[2:].replace('~', '~0').replace('/', '~1')}"
        children = value if isinstance(value, dict) else {}
        nested = [k for k in children if k.startswith("f:")]
        if nested:
            pointers.extend(_managed_field_pointers(children, path))
        elif not any(k[:2] in ("k:", "v:", "i:") for k in children):
            pointers.append(path)
    return pointers


def _ignore_matches(ignore: ResourceIgnoreDifferences, obj: dict[str, Any]) -> bool:
    gvk = group_version_kind(obj)
    if ignore.group and not (ignore.group == gvk.group or fnmatchcase(gvk.group, ignore.group)):
        return False
    if ignore.group == "" and gvk.group != "":
        return False
    if not (ignore.kind == gvk.kind or fnmatchcase(gvk.kind, ignore.kind)):
        return False
    if ignore.name and ignore.name != get_name(obj):
        return False
    if ignore.namespace and ignore.namespace != get_namespace(obj):
        return False
    return True


def _ignore_pointers(
    obj: dict[str, Any], live: dict[str, Any] | None, config: DiffConfig
) -> list[str]:
    pointers: list[str] = []
    managers: list[str] = []
    for ignore in config.ignores:
        if _ignore_matches(ignore, obj):
            pointers.extend(ignore.json_pointers)
            managers.extend(ignore.managed_fields_managers)
    for override in find_overrides(group_version_kind(obj).group_kind, config.overrides):
        pointers.extend(override.ignore_differences.json_pointers)
        managers.extend(override.ignore_differences.managed_fields_managers)
    if managers and live is not None:
        for entry in (live.get("metadata") or {}).get("managedFields") or []:
            if entry.get("manager") in managers:
                pointers.extend(_managed_field_pointers(entry.get("fieldsV1") or {}))
    return pointers


def _normalize(
    obj: dict[str, Any] | None, live: dict[str, Any] | None, config: DiffConfig
) -> dict[str, Any] | None:
    """Return a normalized copy of the object."""
    if obj is None:
        return None
    result = copy.deepcopy(obj)
    meta = result.get("metadata")
    if isinstance(meta, dict):
        for key in _SERVER_METADATA:
            meta.pop(key, None)
        if annotations := meta.get("annotations"):
            annotations.pop(_LAST_APPLIED, None)
            if config.tracking_method:
                annotations.pop(ANNOTATION_KEY_APP_INSTANCE, None)
                annotations.pop(ANNOTATION_INSTALLATION_ID, None)
            if not annotations:
                meta.pop("annotations")
        if config.tracking_method and config.tracking_label_key and (labels := meta.get("labels")):
            labels.pop(config.tracking_label_key, None)
            if not labels:
                meta.pop("labels")

    kind = result.get("kind")
    if config.ignore_status_mode == IgnoreStatusMode.ALL or (
        config.ignore_status_mode == IgnoreStatusMode.CRD and kind == _CRD_KIND
    ):
        result.pop("status", None)

    if config.ignore_aggregated_roles and kind == "ClusterRole" and result.get("aggregationRule"):
        result.pop("rules", None)

    for pointer in _ignore_pointers(obj, live, config):
        remove_pointer(result, pointer)
    return result


def _is_named_list(value: Any) -> bool:
    return isinstance(value, list) and all(
        isinstance(item, dict) and "name" in item for item in value
    )


def _merge(live: Any, target: Any, merge_by_name: bool) -> Any:
    """Return the target merged onto the live value."""
    if isinstance(live, dict) and isinstance(target, dict):
        result = copy.deepcopy(live)
        for key, value in target.items():
            if key in live:
                result[key] = _merge(live[key], value, merge_by_name)
            else:
                result[key] = copy.deepcopy(value)
        return result
    if merge_by_name and _is_named_list(live) and _is_named_list(target):
        live_by_name = {item["name"]: item for item in live}
        return [
            _merge(live_by_name[item["name"]], item, merge_by_name)
            if item["name"] in live_by_name
            else copy.deepcopy(item)
            for item in target
        ]
    return copy.deepcopy(target)


def _remove_webhook_mutation(
    predicted: Any, target: Any, live: Any
) -> Any:
    """Drop fields of the prediction present in neither the target nor the live object."""
    if not isinstance(predicted, dict):
        return predicted
    target = target if isinstance(target, dict) else {}
    live = live if isinstance(live, dict) else {}
    return {
        key: _remove_webhook_mutation(value, target.get(key), live.get(key))
        for key, value in predicted.items()
        if key in target or key in live
    }


def _target_hash(target: dict[str, Any] | None) -> str:
    return json.dumps(target, sort_keys=True, default=str)


async def _diff(
    target: dict[str, Any] | None,
    live: dict[str, Any] | None,
    config: DiffConfig,
) -> DiffResult:
    normalized_target = _normalize(target, live, config)
    normalized_live = _normalize(live, live, config)
    if normalized_target is None or normalized_live is None:
        return DiffResult(
            modified=normalized_live is None,
            normalized_live=normalized_live,
            predicted_live=normalized_target,
        )

    if config.server_side_diff and config.server_side_dry_runner is not None:
        predicted = await config.server_side_dry_runner.run(
            copy.deepcopy(normalized_target), config.manager
        )
        if config.ignore_mutation_webhook:
            predicted = _remove_webhook_mutation(
                predicted, normalized_target, normalized_live
            )
        predicted_live = _normalize(predicted, live, config)
    else:
        predicted_live = _merge(
            normalized_live, normalized_target, config.structured_merge_diff
        )
    return DiffResult(
        modified=predicted_live != normalized_live,
        normalized_live=normalized_live,
        predicted_live=predicted_live,
    )


async def state_diffs(
    lives: list[dict[str, Any] | None],
    targets: list[dict[str, Any] | None],
    config: DiffConfig,
) -> DiffResultList:
    """Compute the diff of each (live, target) pair, in order."""
    config.validate()
    if len(lives) != len(targets):
        raise DiffException(
            f"Mismatched number of live ({len(lives)}) and target ({len(targets)}) objects"
        )
    cached: dict[ResourceKey, CachedResourceDiff] = {}
    if not config.no_cache and config.cache is not None:
        cached = config.cache.get_app_managed_resources(config.app_name)

    result = DiffResultList()
    for live, target in zip(lives, targets):
        diff_result: DiffResult | None = None
        if cached and live is not None and target is not None:
            entry = cached.get(get_resource_key(live))
            if (
                entry is not None
                and entry.resource_version == get_resource_version(live)
                and entry.target_hash == _target_hash(_normalize(target, live, config))
            ):
                diff_result = entry.result
        if diff_result is None:
            diff_result = await _diff(target, live, config)
        result.diffs.append(diff_result)
        result.modified = result.modified or diff_result.modified
    _LOGGER.debug(
        "Computed %d diffs (server side: %s, cached entries: %d)",
        len(result.diffs),
        config.server_side_diff,
        len(cached),
    )
    return result


def cached_resource_diffs(
    lives: list[dict[str, Any] | None],
    targets: list[dict[str, Any] | None],
    diffs: DiffResultList,
    config: DiffConfig,
) -> list[CachedResourceDiff]:
    """Return the entries to remember for the pairs that have a live and target object."""
    entries: list[CachedResourceDiff] = []
    for live, target, diff_result in zip(lives, targets, diffs.diffs):
        if live is None or target is None:
            continue
        entries.append(
            CachedResourceDiff(
                key=get_resource_key(live),
                resource_version=get_resource_version(live),
                target_hash=_target_hash(_normalize(target, live, config)),
                result=diff_result,
            )
        )
    return entries
