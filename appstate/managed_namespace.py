"""Namespaces whose metadata is governed by the application sync policy."""

import copy
import logging
from typing import Any

from .manifest import ANNOTATION_SYNC_OPTIONS, Application
from .resource import NAMESPACE_KIND, get_name, metadata

__all__ = ["is_managed_namespace", "sync_namespace", "managed_namespace_target"]

_LOGGER = logging.getLogger(__name__)

SYNC_OPTION_SERVER_SIDE_APPLY = "ServerSideApply=true"


def is_managed_namespace(obj: dict[str, Any] | None, app: Application) -> bool:
    """Return true if the object is the destination namespace managed by policy."""
    return (
        obj is not None
        and obj.get("kind") == NAMESPACE_KIND
        and get_name(obj) == app.spec.destination.namespace
        and app.is_managed_namespace_enabled()
    )


def sync_namespace(app: Application, managed_ns: dict[str, Any]) -> bool:
    """Apply the managed labels and annotations to the namespace object.

    Returns true if the namespace object was modified.
    """
    policy = app.spec.sync_policy
    if policy is None or policy.managed_namespace_metadata is None:
        return False
    managed = policy.managed_namespace_metadata
    meta = metadata(managed_ns)
    before = copy.deepcopy(meta)
    if managed.labels:
        meta["labels"] = {**(meta.get("labels") or {}), **managed.labels}
    annotations = {**(meta.get("annotations") or {}), **(managed.annotations or {})}
    annotations[ANNOTATION_SYNC_OPTIONS] = SYNC_OPTION_SERVER_SIDE_APPLY
    meta["annotations"] = annotations
    return meta != before


def managed_namespace_target(app: Application, live_ns: dict[str, Any]) -> dict[str, Any]:
    """Return a synthetic target for a live managed namespace missing from the manifests."""
    target: dict[str, Any] = {
        "apiVersion": "v1",
        "kind": NAMESPACE_KIND,
        "metadata": {"name": get_name(live_ns)},
    }
    sync_namespace(app, target)
    _LOGGER.debug("Synthesized managed namespace target %s", get_name(live_ns))
    return target
