"""Health assessment of live resources and of the application as a whole."""

from collections.abc import Callable
import logging
from typing import Any

from .hooks import ignore, is_hook, skip
from .manifest import (
    APPLICATION_GROUP,
    APPLICATION_KIND,
    Application,
    HealthStatus,
    HealthStatusCode,
)
from .resource import GroupKind, get_name, get_namespace, group_version_kind
from .sync_status import ManagedResource

__all__ = [
    "HEALTH_ORDER",
    "is_worse",
    "get_resource_health",
    "has_health_check",
    "set_application_health",
]

_LOGGER = logging.getLogger(__name__)

HEALTH_ORDER = [
    HealthStatusCode.HEALTHY,
    HealthStatusCode.SUSPENDED,
    HealthStatusCode.PROGRESSING,
    HealthStatusCode.MISSING,
    HealthStatusCode.DEGRADED,
    HealthStatusCode.UNKNOWN,
]


def is_worse(current: HealthStatusCode, new: HealthStatusCode) -> bool:
    """Return true if the new health is worse than the current health."""
    return HEALTH_ORDER.index(new) > HEALTH_ORDER.index(current)


def _status(obj: dict[str, Any]) -> dict[str, Any]:
    return obj.get("status") or {}


def _spec(obj: dict[str, Any]) -> dict[str, Any]:
    return obj.get("spec") or {}


def _condition(obj: dict[str, Any], type_: str) -> dict[str, Any] | None:
    for condition in _status(obj).get("conditions") or []:
        if condition.get("type") == type_:
            return condition
    return None


def _generation_observed(obj: dict[str, Any]) -> bool:
    generation = (obj.get("metadata") or {}).get("generation") or 0
    return (_status(obj).get("observedGeneration") or 0) >= generation


def _deployment_health(obj: dict[str, Any]) -> HealthStatus:
    if _spec(obj).get("paused"):
        return HealthStatus(HealthStatusCode.SUSPENDED, "Deployment is paused")
    if not _generation_observed(obj):
        return HealthStatus(
            HealthStatusCode.PROGRESSING,
            "Waiting for rollout to finish: observed deployment generation less than desired generation",
        )
    condition = _condition(obj, "Progressing")
    if condition is not None and condition.get("reason") == "ProgressDeadlineExceeded":
        return HealthStatus(
            HealthStatusCode.DEGRADED,
            f"Deployment {get_name(obj)!r} exceeded its progress deadline",
        )
    status = _status(obj)
    replicas = _spec(obj).get("replicas", 1)
    updated = status.get("updatedReplicas") or 0
    if updated < replicas:
        return HealthStatus(
            HealthStatusCode.PROGRESSING,
            f"Waiting for rollout to finish: {updated} out of {replicas} new replicas have been updated...",
        )
    if (status.get("replicas") or 0) > updated:
        return HealthStatus(
            HealthStatusCode.PROGRESSING,
            f"Waiting for rollout to finish: {status.get('replicas', 0) - updated} old replicas are pending termination...",
        )
    if (status.get("availableReplicas") or 0) < updated:
        return HealthStatus(
            HealthStatusCode.PROGRESSING,
            f"Waiting for rollout to finish: {status.get('availableReplicas') or 0} of {updated} updated replicas are available...",
        )
    return HealthStatus(HealthStatusCode.HEALTHY)


def _stateful_set_health(obj: dict[str, Any]) -> HealthStatus:
    if not _generation_observed(obj):
        return HealthStatus(
            HealthStatusCode.PROGRESSING,
            "Waiting for statefulset spec update to be observed...",
        )
    status = _status(obj)
    replicas = _spec(obj).get("replicas", 1)
    ready = status.get("readyReplicas") or 0
    if ready < replicas:
        return HealthStatus(
            HealthStatusCode.PROGRESSING,
            f"Waiting for {replicas - ready} pods to be ready...",
        )
    strategy = (_spec(obj).get("updateStrategy") or {}).get("type")
    if strategy != "OnDelete" and status.get("updateRevision") != status.get("currentRevision"):
        return HealthStatus(
            HealthStatusCode.PROGRESSING,
            "waiting for statefulset rolling update to complete",
        )
    return HealthStatus(HealthStatusCode.HEALTHY)


def _daemon_set_health(obj: dict[str, Any]) -> HealthStatus:
    if not _generation_observed(obj):
        return HealthStatus(
            HealthStatusCode.PROGRESSING,
            "Waiting for rollout to finish: observed daemon set generation less than desired generation",
        )
    status = _status(obj)
    desired = status.get("desiredNumberScheduled") or 0
    updated = status.get("updatedNumberScheduled") or 0
    if updated < desired:
        return HealthStatus(
            HealthStatusCode.PROGRESSING,
            f"Waiting for daemon set {get_name(obj)!r} rollout to finish: {updated} out of {desired} new pods have been updated...",
        )
    available = status.get("numberAvailable") or 0
    if available < desired:
        return HealthStatus(
            HealthStatusCode.PROGRESSING,
            f"Waiting for daemon set {get_name(obj)!r} rollout to finish: {available} of {desired} updated pods are available...",
        )
    return HealthStatus(HealthStatusCode.HEALTHY)


def _replica_set_health(obj: dict[str, Any]) -> HealthStatus:
    condition = _condition(obj, "ReplicaFailure")
    if condition is not None and condition.get("status") == "True":
        return HealthStatus(HealthStatusCode.DEGRADED, condition.get("message") or "")
    if not _generation_observed(obj):
        return HealthStatus(
            HealthStatusCode.PROGRESSING,
            "Waiting for rollout to finish: observed replica set generation less than desired generation",
        )
    replicas = _spec(obj).get("replicas", 1)
    available = _status(obj).get("availableReplicas") or 0
    if available < replicas:
        return HealthStatus(
            HealthStatusCode.PROGRESSING,
            f"Waiting for rollout to finish: {available} out of {replicas} new replicas are available...",
        )
    return HealthStatus(HealthStatusCode.HEALTHY)


def _pod_health(obj: dict[str, Any]) -> HealthStatus:
    status = _status(obj)
    phase = status.get("phase")
    message = status.get("message") or ""
    if phase == "Pending":
        return HealthStatus(HealthStatusCode.PROGRESSING, message)
    if phase == "Succeeded":
        return HealthStatus(HealthStatusCode.HEALTHY, message)
    if phase == "Failed":
        return HealthStatus(HealthStatusCode.DEGRADED, message)
    if phase == "Running":
        for container in status.get("containerStatuses") or []:
            waiting = (container.get("state") or {}).get("waiting") or {}
            if waiting.get("reason") in ("CrashLoopBackOff", "ImagePullBackOff", "ErrImagePull"):
                return HealthStatus(
                    HealthStatusCode.DEGRADED, waiting.get("message") or waiting["reason"]
                )
        ready = _condition(obj, "Ready")
        if ready is not None and ready.get("status") == "True":
            return HealthStatus(HealthStatusCode.HEALTHY, message)
        return HealthStatus(HealthStatusCode.PROGRESSING, message)
    return HealthStatus(HealthStatusCode.UNKNOWN, message)


def _job_health(obj: dict[str, Any]) -> HealthStatus:
    failed = _condition(obj, "Failed")
    if failed is not None and failed.get("status") == "True":
        return HealthStatus(HealthStatusCode.DEGRADED, failed.get("message") or "")
    complete = _condition(obj, "Complete")
    if complete is not None and complete.get("status") == "True":
        return HealthStatus(HealthStatusCode.HEALTHY, complete.get("message") or "")
    if _spec(obj).get("suspend"):
        return HealthStatus(HealthStatusCode.SUSPENDED, "Job is suspended")
    return HealthStatus(HealthStatusCode.PROGRESSING)


def _pvc_health(obj: dict[str, Any]) -> HealthStatus:
    phase = _status(obj).get("phase")
    if phase == "Lost":
        return HealthStatus(HealthStatusCode.DEGRADED)
    if phase == "Pending":
        return HealthStatus(HealthStatusCode.PROGRESSING)
    if phase == "Bound":
        return HealthStatus(HealthStatusCode.HEALTHY)
    return HealthStatus(HealthStatusCode.UNKNOWN)


def _load_balancer_ingress(obj: dict[str, Any]) -> bool:
    return bool((_status(obj).get("loadBalancer") or {}).get("ingress"))


def _service_health(obj: dict[str, Any]) -> HealthStatus:
    if _spec(obj).get("type") == "LoadBalancer" and not _load_balancer_ingress(obj):
        return HealthStatus(HealthStatusCode.PROGRESSING)
    return HealthStatus(HealthStatusCode.HEALTHY)


def _ingress_health(obj: dict[str, Any]) -> HealthStatus:
    if _load_balancer_ingress(obj):
        return HealthStatus(HealthStatusCode.HEALTHY)
    return HealthStatus(HealthStatusCode.PROGRESSING)


def _application_health(obj: dict[str, Any]) -> HealthStatus:
    health = _status(obj).get("health") or {}
    try:
        code = HealthStatusCode(health.get("status") or HealthStatusCode.UNKNOWN)
    except ValueError:
        code = HealthStatusCode.UNKNOWN
    return HealthStatus(code, health.get("message") or "")


HEALTH_CHECKS: dict[GroupKind, Callable[[dict[str, Any]], HealthStatus]] = {
    GroupKind("apps", "Deployment"): _deployment_health,
    GroupKind("apps", "StatefulSet"): _stateful_set_health,
    GroupKind("apps", "DaemonSet"): _daemon_set_health,
    GroupKind("apps", "ReplicaSet"): _replica_set_health,
    GroupKind("", "Pod"): _pod_health,
    GroupKind("batch", "Job"): _job_health,
    GroupKind("", "PersistentVolumeClaim"): _pvc_health,
    GroupKind("", "Service"): _service_health,
    GroupKind("networking.k8s.io", "Ingress"): _ingress_health,
    GroupKind("extensions", "Ingress"): _ingress_health,
    GroupKind(APPLICATION_GROUP, APPLICATION_KIND): _application_health,
}


def has_health_check(gk: GroupKind) -> bool:
    return gk in HEALTH_CHECKS


def get_resource_health(obj: dict[str, Any]) -> HealthStatus | None:
    """Return the health of the live object, or None if the kind has no health check."""
    gk = group_version_kind(obj).group_kind
    if (check := HEALTH_CHECKS.get(gk)) is None:
        return None
    try:
        return check(obj)
    except (AttributeError, TypeError, ValueError) as err:
        _LOGGER.warning("Failed to assess health of %s %s: %s", gk, get_name(obj), err)
        return HealthStatus(HealthStatusCode.UNKNOWN, f"failed to assess health: {err}")


def _is_self_referenced_app(app: Application, live: dict[str, Any]) -> bool:
    gk = group_version_kind(live).group_kind
    return (
        gk == GroupKind(APPLICATION_GROUP, APPLICATION_KIND)
        and get_name(live) == app.name
        and get_namespace(live) == app.namespace
    )


def set_application_health(
    resources: list[ManagedResource],
    app: Application,
    persist_resource_health: bool,
) -> HealthStatus:
    """Return the aggregate health of the application.

    The health of each resource is written to its status when
    `persist_resource_health` is set, otherwise it is cleared.
    """
    app_health = HealthStatus(HealthStatusCode.HEALTHY)
    for res in resources:
        if res.target is not None and skip(res.target):
            continue
        if res.live is not None and (is_hook(res.live) or ignore(res.live)):
            continue
        if res.live is None:
            health: HealthStatus | None = HealthStatus(HealthStatusCode.MISSING)
        else:
            if _is_self_referenced_app(app, res.live):
                continue
            health = get_resource_health(res.live)
        if health is None:
            continue

        res.status.health = (
            HealthStatus(health.status, health.message) if persist_resource_health else None
        )

        gk = res.key.group_kind
        if health.status == HealthStatusCode.MISSING and not has_health_check(gk):
            continue
        if gk == GroupKind(APPLICATION_GROUP, APPLICATION_KIND) and health.status in (
            HealthStatusCode.MISSING,
            HealthStatusCode.UNKNOWN,
        ):
            continue
        if is_worse(app_health.status, health.status):
            app_health.status = health.status
    return app_health
