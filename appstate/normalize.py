"""Normalization of the rendered target objects.

The rendering service does not know which kinds are cluster-scoped, so it may
render a namespace onto cluster-scoped objects, and it may render the same
object more than once when overlays are layered. These passes correct both
before the targets are paired with live objects.
"""

from collections.abc import Callable
import logging
from typing import Any

from .manifest import ApplicationCondition, ConditionType, utcnow
from .providers import ResourceInfoProvider, is_namespaced_or_unknown
from .resource import (
    ResourceKey,
    get_generate_name,
    get_namespace,
    get_resource_key,
    group_version_kind,
    set_namespace,
)

__all__ = [
    "normalize_cluster_scope_tracking",
    "deduplicate_target_objects",
]

_LOGGER = logging.getLogger(__name__)


def normalize_cluster_scope_tracking(
    target_objs: list[dict[str, Any]],
    info_provider: ResourceInfoProvider | None,
    set_app_instance: Callable[[dict[str, Any]], None],
) -> None:
    """Clear the namespace of cluster-scoped objects and regenerate their tracking.

    Objects are modified in place. Tracking metadata is only rewritten for
    objects whose namespace was actually cleared.
    """
    for obj in target_objs:
        gk = group_version_kind(obj).group_kind
        if is_namespaced_or_unknown(info_provider, gk):
            continue
        if get_namespace(obj):
            _LOGGER.debug(
                "Clearing namespace of cluster-scoped %s %s", gk, get_resource_key(obj)
            )
            set_namespace(obj, "")
            set_app_instance(obj)


def deduplicate_target_objects(
    namespace: str,
    objs: list[dict[str, Any] | None],
    info_provider: ResourceInfoProvider | None,
) -> tuple[list[dict[str, Any]], list[ApplicationCondition]]:
    """Assign default namespaces and drop objects rendered more than once.

    Namespaced objects without a namespace get the destination namespace and
    cluster-scoped objects have their namespace cleared. When several objects
    share a key the last one rendered wins and a RepeatedResourceWarning is
    returned for the key.
    """
    target_by_key: dict[ResourceKey, list[dict[str, Any]]] = {}
    for i, obj in enumerate(objs):
        if obj is None:
            continue
        gk = group_version_kind(obj).group_kind
        if not is_namespaced_or_unknown(info_provider, gk):
            set_namespace(obj, "")
        elif not get_namespace(obj):
            set_namespace(obj, namespace)
        key = get_resource_key(obj)
        if not key.name and (generate_name := get_generate_name(obj)):
            key = ResourceKey(key.group, key.kind, key.namespace, f"{generate_name}{i}")
        target_by_key.setdefault(key, []).append(obj)

    conditions: list[ApplicationCondition] = []
    result: list[dict[str, Any]] = []
    now = utcnow()
    for key, targets in target_by_key.items():
        if len(targets) > 1:
            _LOGGER.debug("Resource %s rendered %d times", key, len(targets))
            conditions.append(
                ApplicationCondition(
                    type=ConditionType.REPEATED_RESOURCE_WARNING,
                    message=f"Resource {key} appeared {len(targets)} times among application resources.",
                    last_transition_time=now,
                )
            )
        result.append(targets[-1])
    return result, conditions
