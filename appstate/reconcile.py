"""Pairing of target objects with live objects."""

from dataclasses import dataclass, field
import logging
from typing import Any

from .hooks import ignore, is_hook
from .providers import ResourceInfoProvider
from .exceptions import ClusterException
from .resource import (
    ResourceKey,
    get_name,
    get_namespace,
    get_resource_key,
    get_uid,
    group_version_kind,
)

__all__ = ["ResourcePair", "ReconciliationResult", "reconcile"]

_LOGGER = logging.getLogger(__name__)


@dataclass
class ResourcePair:
    """A target object and the live object it corresponds to.

    At least one of the two is set. A pair with no live object is a resource
    that does not exist yet, a pair with no target is an extraneous resource.
    """

    target: dict[str, Any] | None
    live: dict[str, Any] | None

    @property
    def obj(self) -> dict[str, Any]:
        """Return the live object, or the target if there is no live object."""
        if self.live is not None:
            return self.live
        return self.target  # type: ignore[return-value]


@dataclass
class ReconciliationResult:
    """The ordered pairs of the application and the hooks split from the targets."""

    pairs: list[ResourcePair] = field(default_factory=list)
    hooks: list[dict[str, Any]] = field(default_factory=list)

    @property
    def targets(self) -> list[dict[str, Any] | None]:
        return [pair.target for pair in self.pairs]

    @property
    def lives(self) -> list[dict[str, Any] | None]:
        return [pair.live for pair in self.pairs]


def _split_hooks(
    target_objs: list[dict[str, Any]],
) -> tuple[list[dict[str, Any]], list[dict[str, Any]]]:
    targets: list[dict[str, Any]] = []
    hooks: list[dict[str, Any]] = []
    for obj in target_objs:
        if obj is None or ignore(obj):
            continue
        if is_hook(obj):
            hooks.append(obj)
        else:
            targets.append(obj)
    return targets, hooks


def _dedup_live_resources(
    target_objs: list[dict[str, Any]],
    live_obj_by_key: dict[ResourceKey, dict[str, Any]],
) -> None:
    """Drop live objects reachable under more than one key unless a target wants that key.

    The same object is reported once per api group that serves it, for
    example an Ingress under both extensions and networking.k8s.io.
    """
    by_uid: dict[str, list[ResourceKey]] = {}
    for key, obj in live_obj_by_key.items():
        if obj is not None and (uid := get_uid(obj)):
            by_uid.setdefault(uid, []).append(key)
    target_keys = {get_resource_key(obj) for obj in target_objs}
    for keys in by_uid.values():
        if len(keys) <= 1:
            continue
        for key in keys:
            if key not in target_keys:
                _LOGGER.debug("Dropping duplicate live object %s", key)
                del live_obj_by_key[key]


def reconcile(
    target_objs: list[dict[str, Any]],
    live_obj_by_key: dict[ResourceKey, dict[str, Any]],
    namespace: str,
    info_provider: ResourceInfoProvider | None,
) -> ReconciliationResult:
    """Pair each target with its live object, followed by the unpaired live objects.

    The live map is not modified.
    """
    live_objs = dict(live_obj_by_key)
    targets, hooks = _split_hooks(target_objs)
    _dedup_live_resources(targets, live_objs)

    result = ReconciliationResult(hooks=hooks)
    for obj in targets:
        gvk = group_version_kind(obj)
        ns = get_namespace(obj) or namespace
        unknown_scope = info_provider is None
        namespaced = True
        if info_provider is not None:
            try:
                namespaced = info_provider.is_namespaced(gvk.group_kind)
            except ClusterException:
                unknown_scope = True
        keys_to_check: list[ResourceKey] = []
        if namespaced or unknown_scope:
            keys_to_check.append(ResourceKey(gvk.group, gvk.kind, ns, get_name(obj)))
        if not namespaced or unknown_scope:
            keys_to_check.append(ResourceKey(gvk.group, gvk.kind, "", get_name(obj)))
        live = None
        for key in keys_to_check:
            if key in live_objs:
                live = live_objs.pop(key)
                break
        result.pairs.append(ResourcePair(target=obj, live=live))

    for live in live_objs.values():
        if live is None:
            continue
        result.pairs.append(ResourcePair(target=None, live=live))
    return result
