"""Decides whether a live object is owned by the application being compared.

A tracking id copied onto another object (for example by a controller that
copies annotations from its parent) must not make that object part of the
application, or one application could prune or report on another's objects.
"""

import logging
from typing import Any

from .resource import get_name, get_namespace, group_version_kind
from .tracking import (
    AppInstanceValue,
    ResourceTracking,
    TrackingMethod,
    unstructured_to_app_instance_value,
)

__all__ = ["is_self_referenced", "matches_app_instance", "referenced_app_instance"]

_LOGGER = logging.getLogger(__name__)


def matches_app_instance(obj: dict[str, Any], aiv: AppInstanceValue) -> bool:
    """Return true if the object is the object identified by the tracking id.

    Cluster-scoped objects carry the destination namespace in their tracking
    id, so an object without a namespace matches any namespace.
    """
    gvk = group_version_kind(obj)
    namespace = get_namespace(obj)
    return (
        (namespace == aiv.namespace or namespace == "")
        and get_name(obj) == aiv.name
        and gvk.group == aiv.group
        and gvk.kind == aiv.kind
    )


def is_self_referenced(
    live: dict[str, Any] | None,
    target: dict[str, Any] | None,
    app_name: str,
    tracking: ResourceTracking,
) -> bool:
    """Return true if the live object is managed by the application.

    The identity is computed from the target when there is one, so that an
    object whose api group was upgraded is compared against its new tracking
    id. Otherwise the tracking id on the live object is used. When the tracking
    method carries no identity the object is assumed to be managed.
    """
    if live is None:
        return True
    if tracking.tracking_method == TrackingMethod.LABEL:
        return True
    if target is not None:
        return matches_app_instance(
            live, unstructured_to_app_instance_value(target, app_name)
        )
    if (aiv := tracking.get_app_instance(live)) is not None:
        return matches_app_instance(live, aiv)
    return True


def referenced_app_instance(
    live: dict[str, Any], tracking: ResourceTracking
) -> AppInstanceValue | None:
    """Return the tracking id carried by the live object, if any."""
    if tracking.tracking_method == TrackingMethod.LABEL:
        return None
    return tracking.get_app_instance(live)
