"""Classification of paired resources into sync states."""

from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
import logging
from typing import Any

from .diff import DiffResult, DiffResultList
from .hooks import ignore, is_hook, skip, sync_wave
from .managed_namespace import is_managed_namespace
from .manifest import (
    ANNOTATION_COMPARE_OPTIONS,
    ANNOTATION_SYNC_OPTIONS,
    Application,
    ApplicationCondition,
    ConditionType,
    ResourceStatus,
    SyncStatusCode,
    utcnow,
)
from .ownership import is_self_referenced, referenced_app_instance
from .project import AppProject
from .reconcile import ResourcePair
from .resource import (
    GroupKind,
    ResourceKey,
    get_name,
    get_namespace,
    get_resource_key,
    get_resource_version,
    group_version_kind,
    has_annotation_option,
)
from .tracking import ResourceTracking

__all__ = ["ManagedResource", "SyncClassification", "classify_sync_status"]

_LOGGER = logging.getLogger(__name__)

COMPARE_OPTION_IGNORE_EXTRANEOUS = "IgnoreExtraneous"
SYNC_OPTION_DELETE_REQUIRE_CONFIRM = "Delete=confirm"


@dataclass
class ManagedResource:
    """A paired resource together with its diff and public status."""

    target: dict[str, Any] | None
    live: dict[str, Any] | None
    diff: DiffResult
    status: ResourceStatus
    resource_version: str = ""

    @property
    def key(self) -> ResourceKey:
        return ResourceKey(
            group=self.status.group,
            kind=self.status.kind,
            namespace=self.status.namespace,
            name=self.status.name,
        )

    @property
    def hook(self) -> bool:
        return self.status.hook


@dataclass
class SyncClassification:
    """The aggregate sync code and the per resource results."""

    code: SyncStatusCode = SyncStatusCode.SYNCED
    resources: list[ManagedResource] = field(default_factory=list)
    conditions: list[ApplicationCondition] = field(default_factory=list)


def _empty_diff() -> DiffResult:
    return DiffResult(modified=False, normalized_live={}, predicted_live={})


def _requires_deletion_confirmation(pair: ResourcePair) -> bool:
    return any(
        obj is not None
        and has_annotation_option(obj, ANNOTATION_SYNC_OPTIONS, SYNC_OPTION_DELETE_REQUIRE_CONFIRM)
        for obj in (pair.target, pair.live)
    )


def classify_sync_status(
    pairs: list[ResourcePair],
    diffs: DiffResultList,
    app: Application,
    project: AppProject,
    tracking: ResourceTracking,
    namespaced: Callable[[GroupKind], bool | None],
    failed_to_load: bool,
    reported_shared: set[ResourceKey] | None = None,
) -> SyncClassification:
    """Assign a sync status to every pair and compute the aggregate.

    `namespaced` returns None when the scope of a kind is unknown. Live
    objects whose tracking id names a different resource are left out of the
    aggregate and reported with a SharedResourceWarning, unless their key is
    in `reported_shared`.
    """
    result = SyncClassification()
    reported = set(reported_shared or ())
    now = utcnow()
    for i, pair in enumerate(pairs):
        target, live = pair.target, pair.live
        obj = pair.obj
        gvk = group_version_kind(obj)
        self_referenced = is_self_referenced(live, target, app.name, tracking)

        status = ResourceStatus(
            kind=gvk.kind,
            name=get_name(obj),
            group=gvk.group,
            version=gvk.version,
            namespace=get_namespace(obj),
            hook=is_hook(obj),
            requires_pruning=target is None and live is not None and self_referenced,
            requires_deletion_confirmation=_requires_deletion_confirmation(pair),
        )
        if target is not None:
            status.sync_wave = sync_wave(target)

        diff_result = diffs.diffs[i] if i < len(diffs.diffs) else _empty_diff()
        is_managed_ns = is_managed_namespace(target, app) and live is None

        if status.hook or ignore(obj) or (target is not None and skip(target)) or not self_referenced:
            if not self_referenced and live is not None:
                _report_not_self_referenced(live, app, tracking, reported, result, now)
        elif not is_managed_ns and (diff_result.modified or target is None or live is None):
            status.status = SyncStatusCode.OUT_OF_SYNC
            needs_pruning = target is None and live is not None
            if not needs_pruning or not has_annotation_option(
                obj, ANNOTATION_COMPARE_OPTIONS, COMPARE_OPTION_IGNORE_EXTRANEOUS
            ):
                result.code = SyncStatusCode.OUT_OF_SYNC
        else:
            status.status = SyncStatusCode.SYNCED

        is_namespaced = namespaced(gvk.group_kind)
        if not project.is_group_kind_permitted(gvk.group_kind, bool(is_namespaced)):
            status.status = SyncStatusCode.UNKNOWN

        if is_namespaced and not get_namespace(obj):
            result.conditions.append(
                ApplicationCondition(
                    type=ConditionType.INVALID_SPEC_ERROR,
                    message=f"Namespace for {get_name(obj)} {gvk} is missing.",
                    last_transition_time=now,
                )
            )

        if failed_to_load:
            status.status = SyncStatusCode.UNKNOWN

        result.resources.append(
            ManagedResource(
                target=target,
                live=live,
                diff=diff_result,
                status=status,
                resource_version=get_resource_version(live) if live is not None else "",
            )
        )
    return result


def _report_not_self_referenced(
    live: dict[str, Any],
    app: Application,
    tracking: ResourceTracking,
    reported: set[ResourceKey],
    result: SyncClassification,
    now: datetime,
) -> None:
    key = get_resource_key(live)
    if key in reported:
        return
    reported.add(key)
    aiv = referenced_app_instance(live, tracking)
    owner = str(aiv) if aiv is not None else "another resource"
    _LOGGER.debug("Live object %s is not managed by %s", key, app.qualified_name())
    result.conditions.append(
        ApplicationCondition(
            type=ConditionType.SHARED_RESOURCE_WARNING,
            message=(
                f"{live.get('kind')}/{get_name(live)} carries the tracking id {owner} "
                f"and is not managed by application {app.qualified_name()}"
            ),
            last_transition_time=now,
        )
    )
