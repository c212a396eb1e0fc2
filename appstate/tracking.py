"""Resource tracking metadata.

Objects deployed by an application are marked with tracking metadata that
names the application instance that owns them. Depending on the configured
tracking method this is a label holding the instance name, or an annotation
holding a tracking id of the form `<app>:<group>/<kind>:<namespace>/<name>`.
"""

from dataclasses import dataclass
from enum import StrEnum
import logging
from typing import Any

from .exceptions import TrackingException
from .resource import (
    get_annotations,
    get_labels,
    get_namespace,
    get_name,
    group_version_kind,
    set_annotation,
    set_label,
)

__all__ = [
    "TrackingMethod",
    "AppInstanceValue",
    "ResourceTracking",
    "parse_app_instance_value",
    "unstructured_to_app_instance_value",
]

_LOGGER = logging.getLogger(__name__)

ANNOTATION_KEY_APP_INSTANCE = "argocd.argoproj.io/tracking-id"
ANNOTATION_INSTALLATION_ID = "argocd.argoproj.io/installation-id"
LABEL_KEY_APP_INSTANCE = "app.kubernetes.io/instance"

LABEL_MAX_LENGTH = 63


class TrackingMethod(StrEnum):
    """How ownership of an object is recorded on the object."""

    LABEL = "label"
    ANNOTATION = "annotation"
    ANNOTATION_AND_LABEL = "annotation+label"


@dataclass(frozen=True)
class AppInstanceValue:
    """The parsed value of a tracking id annotation."""

    application_name: str
    group: str
    kind: str
    namespace: str
    name: str

    def __str__(self) -> str:
        return (
            f"{self.application_name}:{self.group}/{self.kind}:"
            f"{self.namespace}/{self.name}"
        )


def parse_app_instance_value(value: str) -> AppInstanceValue:
    """Parse a tracking id annotation value."""
    parts = value.split(":")
    if len(parts) != 3:
        raise TrackingException(f"Invalid tracking id, expected 3 parts: {value}")
    group_kind = parts[1].split("/")
    if len(group_kind) != 2:
        raise TrackingException(f"Invalid tracking id group/kind: {value}")
    namespaced_name = parts[2].split("/")
    if len(namespaced_name) != 2:
        raise TrackingException(f"Invalid tracking id namespace/name: {value}")
    return AppInstanceValue(
        application_name=parts[0],
        group=group_kind[0],
        kind=group_kind[1],
        namespace=namespaced_name[0],
        name=namespaced_name[1],
    )


def unstructured_to_app_instance_value(
    obj: dict[str, Any], app_name: str, namespace: str = ""
) -> AppInstanceValue:
    """Build the tracking id for an object owned by the application.

    The namespace of the object is used, falling back to the given
    namespace when the object has none.
    """
    gvk = group_version_kind(obj)
    return AppInstanceValue(
        application_name=app_name,
        group=gvk.group,
        kind=gvk.kind,
        namespace=get_namespace(obj) or namespace,
        name=get_name(obj),
    )


def _truncate_label_value(value: str) -> str:
    if len(value) <= LABEL_MAX_LENGTH:
        return value
    return value[:LABEL_MAX_LENGTH].rstrip("-._")


class ResourceTracking:
    """Reads and writes tracking metadata using a fixed tracking method."""

    def __init__(
        self,
        tracking_method: TrackingMethod | str = TrackingMethod.ANNOTATION,
        label_key: str = LABEL_KEY_APP_INSTANCE,
        installation_id: str = "",
    ) -> None:
        """Initialize ResourceTracking."""
        try:
            self._tracking_method = TrackingMethod(tracking_method or TrackingMethod.ANNOTATION)
        except ValueError as err:
            raise TrackingException(f"Unknown tracking method: {tracking_method}") from err
        self._label_key = label_key or LABEL_KEY_APP_INSTANCE
        self._installation_id = installation_id

    @property
    def tracking_method(self) -> TrackingMethod:
        return self._tracking_method

    @property
    def label_key(self) -> str:
        return self._label_key

    def _installation_matches(self, obj: dict[str, Any]) -> bool:
        if not self._installation_id:
            return True
        return get_annotations(obj).get(ANNOTATION_INSTALLATION_ID) == self._installation_id

    def get_app_name(self, obj: dict[str, Any]) -> str:
        """Return the instance name of the application owning the object, if any."""
        if not self._installation_matches(obj):
            return ""
        if self._tracking_method == TrackingMethod.LABEL:
            return get_labels(obj).get(self._label_key, "")
        if (instance := self.get_app_instance(obj)) is None:
            return ""
        return instance.application_name

    def get_app_instance(self, obj: dict[str, Any]) -> AppInstanceValue | None:
        """Return the parsed tracking id of the object, or None if absent or invalid."""
        if not self._installation_matches(obj):
            return None
        if not (value := get_annotations(obj).get(ANNOTATION_KEY_APP_INSTANCE)):
            return None
        try:
            return parse_app_instance_value(value)
        except TrackingException as err:
            _LOGGER.debug("Ignoring tracking id on %s: %s", get_name(obj), err)
            return None

    def set_app_instance(
        self, obj: dict[str, Any], app_name: str, namespace: str
    ) -> None:
        """Mark the object as owned by the application instance."""
        if self._installation_id:
            set_annotation(obj, ANNOTATION_INSTALLATION_ID, self._installation_id)
        if self._tracking_method == TrackingMethod.LABEL:
            set_label(obj, self._label_key, _truncate_label_value(app_name))
            return
        value = unstructured_to_app_instance_value(obj, app_name, namespace)
        set_annotation(obj, ANNOTATION_KEY_APP_INSTANCE, str(value))
        if self._tracking_method == TrackingMethod.ANNOTATION_AND_LABEL:
            set_label(obj, self._label_key, _truncate_label_value(app_name))
