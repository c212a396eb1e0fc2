"""Lifecycle hook and sync wave annotations on rendered objects."""

from enum import StrEnum
import logging
from typing import Any

from .resource import get_annotations

__all__ = [
    "HookType",
    "is_hook",
    "hook_types",
    "skip",
    "ignore",
    "is_post_delete_hook",
    "sync_wave",
]

_LOGGER = logging.getLogger(__name__)

ANNOTATION_KEY_HOOK = "argocd.argoproj.io/hook"
ANNOTATION_SYNC_WAVE = "argocd.argoproj.io/sync-wave"
ANNOTATION_HELM_HOOK = "helm.sh/hook"
ANNOTATION_HELM_WEIGHT = "helm.sh/hook-weight"

HELM_CRD_INSTALL = "crd-install"


class HookType(StrEnum):
    """Phase of the sync in which a hook runs."""

    PRE_SYNC = "PreSync"
    SYNC = "Sync"
    POST_SYNC = "PostSync"
    SYNC_FAIL = "SyncFail"
    POST_DELETE = "PostDelete"
    SKIP = "Skip"


HELM_HOOK_TYPES: dict[str, HookType] = {
    "pre-install": HookType.PRE_SYNC,
    "pre-upgrade": HookType.PRE_SYNC,
    "post-install": HookType.POST_SYNC,
    "post-upgrade": HookType.POST_SYNC,
    "post-delete": HookType.POST_DELETE,
}


def _split(value: str) -> list[str]:
    return [item.strip() for item in value.split(",") if item.strip()]


def _argo_hook_types(obj: dict[str, Any]) -> list[HookType]:
    result: list[HookType] = []
    for item in _split(get_annotations(obj).get(ANNOTATION_KEY_HOOK, "")):
        try:
            result.append(HookType(item))
        except ValueError:
            _LOGGER.debug("Ignoring invalid hook type %s", item)
    return result


def _helm_hook_values(obj: dict[str, Any]) -> list[str]:
    return _split(get_annotations(obj).get(ANNOTATION_HELM_HOOK, ""))


def _is_helm_hook(obj: dict[str, Any]) -> bool:
    values = _helm_hook_values(obj)
    return bool(values) and values != [HELM_CRD_INSTALL]


def hook_types(obj: dict[str, Any]) -> list[HookType]:
    """Return the valid hook types of the object."""
    if ANNOTATION_KEY_HOOK in get_annotations(obj):
        return _argo_hook_types(obj)
    result: list[HookType] = []
    for value in _helm_hook_values(obj):
        if (hook_type := HELM_HOOK_TYPES.get(value)) and hook_type not in result:
            result.append(hook_type)
    return result


def skip(obj: dict[str, Any]) -> bool:
    """Return true if the object is marked to be skipped entirely."""
    types = _argo_hook_types(obj)
    return HookType.SKIP in types and len(types) == 1


def is_hook(obj: dict[str, Any]) -> bool:
    """Return true if the object is a lifecycle hook rather than a regular resource."""
    if ANNOTATION_KEY_HOOK in get_annotations(obj):
        return not skip(obj)
    return _is_helm_hook(obj)


def ignore(obj: dict[str, Any]) -> bool:
    """Return true for hooks whose annotation names no valid hook type."""
    return is_hook(obj) and not hook_types(obj)


def is_post_delete_hook(obj: dict[str, Any] | None) -> bool:
    if obj is None:
        return False
    if HookType.POST_DELETE in _argo_hook_types(obj):
        return True
    return "post-delete" in _helm_hook_values(obj)


def sync_wave(obj: dict[str, Any]) -> int:
    """Return the sync wave of the object, defaulting to 0."""
    annotations = get_annotations(obj)
    value = annotations.get(ANNOTATION_SYNC_WAVE)
    if value is None:
        value = annotations.get(ANNOTATION_HELM_WEIGHT)
    if value is None:
        return 0
    try:
        return int(str(value).strip())
    except ValueError:
        _LOGGER.debug("Ignoring invalid sync wave %s", value)
        return 0
