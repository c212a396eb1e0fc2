"""Representation of an Application and the status written back onto it.

An Application declares one or more sources of desired state (a repository at
a revision) and a destination cluster and namespace. The comparison engine reads
the spec and writes back only the status: the sync verdict, health, conditions
and the revision history.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import StrEnum
import logging
from typing import Any, ClassVar

from mashumaro import DataClassDictMixin, field_options
from mashumaro.codecs.yaml import yaml_decode, yaml_encode
from mashumaro.config import BaseConfig

from .exceptions import InputException

__all__ = [
    "Application",
    "ApplicationSpec",
    "ApplicationStatus",
    "ApplicationSource",
    "ApplicationDestination",
    "ApplicationCondition",
    "ConditionType",
    "ComparedTo",
    "HealthStatus",
    "HealthStatusCode",
    "ManagedNamespaceMetadata",
    "ResourceIgnoreDifferences",
    "ResourceStatus",
    "RevisionHistory",
    "SyncPolicy",
    "SyncStatus",
    "SyncStatusCode",
]

_LOGGER = logging.getLogger(__name__)


APPLICATION_GROUP = "argoproj.io"
APPLICATION_KIND = "Application"
APPLICATION_DOMAIN = "argoproj.io/"

ANNOTATION_KEY_REFRESH = "argocd.argoproj.io/refresh"
ANNOTATION_KEY_MANIFEST_GENERATE_PATHS = "argocd.argoproj.io/manifest-generate-paths"
ANNOTATION_COMPARE_OPTIONS = "argocd.argoproj.io/compare-options"
ANNOTATION_SYNC_OPTIONS = "argocd.argoproj.io/sync-options"

DEFAULT_REVISION_HISTORY_LIMIT = 10


def _check_version(doc: dict[str, Any], domain: str, kind: str) -> None:
    """Assert that the resource has the expected group and kind."""
    if not (api_version := doc.get("apiVersion")):
        raise InputException(f"Invalid object missing apiVersion: {doc}")
    if not api_version.startswith(domain):
        raise InputException(f"Invalid object expected '{domain}': {doc}")
    if doc.get("kind") != kind:
        raise InputException(f"Invalid object expected kind '{kind}': {doc}")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SyncStatusCode(StrEnum):
    """Whether the live state matches the desired state."""

    SYNCED = "Synced"
    OUT_OF_SYNC = "OutOfSync"
    UNKNOWN = "Unknown"


class HealthStatusCode(StrEnum):
    """Health of a resource or application."""

    HEALTHY = "Healthy"
    PROGRESSING = "Progressing"
    SUSPENDED = "Suspended"
    MISSING = "Missing"
    DEGRADED = "Degraded"
    UNKNOWN = "Unknown"


class ConditionType(StrEnum):
    """Types of conditions recorded on an Application."""

    COMPARISON_ERROR = "ComparisonError"
    INVALID_SPEC_ERROR = "InvalidSpecError"
    UNKNOWN_ERROR = "UnknownError"
    SHARED_RESOURCE_WARNING = "SharedResourceWarning"
    REPEATED_RESOURCE_WARNING = "RepeatedResourceWarning"
    EXCLUDED_RESOURCE_WARNING = "ExcludedResourceWarning"


class RefreshType(StrEnum):
    """Type of refresh requested through the refresh annotation."""

    NORMAL = "normal"
    HARD = "hard"


@dataclass
class BaseManifest(DataClassDictMixin):
    """Base class for all manifest objects."""

    @classmethod
    def parse_yaml(cls, content: str) -> "BaseManifest":
        """Parse a serialized manifest."""
        return yaml_decode(content, cls)

    def yaml(self) -> str:
        """Return a YAML string representation of the object."""
        return yaml_encode(self, self.__class__)  # type: ignore[return-value]

    class Config(BaseConfig):
        omit_none = True
        serialize_by_alias = True


@dataclass
class ApplicationSource(BaseManifest):
    """A pointer to a revision of a repository holding desired state."""

    repo_url: str = field(metadata=field_options(alias="repoURL"))
    """The URL of the git, helm or OCI repository."""

    path: str | None = None
    """Directory within the repository, for git sources."""

    target_revision: str = field(
        default="", metadata=field_options(alias="targetRevision")
    )
    """Branch, tag, commit or chart version to render."""

    chart: str | None = None
    """Name of the chart, for helm repository sources."""

    ref: str | None = None
    """Logical name used by other sources to reference this one."""

    name: str | None = None
    """Optional display name of the source."""

    helm: dict[str, Any] | None = None
    """Opaque templating parameters passed through to the rendering service."""

    kustomize: dict[str, Any] | None = None
    directory: dict[str, Any] | None = None
    plugin: dict[str, Any] | None = None

    def is_helm(self) -> bool:
        """Return true if the source references a chart in a helm repository."""
        return bool(self.chart)

    def is_oci(self) -> bool:
        """Return true if the source references an OCI registry."""
        return self.repo_url.startswith("oci://")

    def __str__(self) -> str:
        parts = [self.repo_url]
        if self.path:
            parts.append(self.path)
        if self.chart:
            parts.append(self.chart)
        return f"{' '.join(parts)}@{self.target_revision or 'HEAD'}"


@dataclass
class ApplicationDestination(BaseManifest):
    """The cluster and namespace that the application deploys to."""

    server: str = ""
    namespace: str = ""
    name: str = ""


@dataclass
class ManagedNamespaceMetadata(BaseManifest):
    """Labels and annotations applied to the destination namespace."""

    labels: dict[str, str] | None = None
    annotations: dict[str, str] | None = None


@dataclass
class SyncPolicy(BaseManifest):
    """Controls when and how a sync is performed."""

    automated: dict[str, Any] | None = None

    sync_options: list[str] = field(
        default_factory=list, metadata=field_options(alias="syncOptions")
    )

    managed_namespace_metadata: ManagedNamespaceMetadata | None = field(
        default=None, metadata=field_options(alias="managedNamespaceMetadata")
    )

    def has_sync_option(self, option: str) -> bool:
        return any(item.strip() == option for item in self.sync_options)


@dataclass
class ResourceIgnoreDifferences(BaseManifest):
    """Fields of a resource that are excluded from the comparison."""

    kind: str
    group: str = ""
    name: str = ""
    namespace: str = ""

    json_pointers: list[str] = field(
        default_factory=list, metadata=field_options(alias="jsonPointers")
    )

    managed_fields_managers: list[str] = field(
        default_factory=list, metadata=field_options(alias="managedFieldsManagers")
    )


@dataclass
class ComparedTo(BaseManifest):
    """The spec snapshot that a sync status was computed against."""

    destination: ApplicationDestination = field(default_factory=ApplicationDestination)
    source: ApplicationSource | None = None
    sources: list[ApplicationSource] = field(default_factory=list)
    ignore_differences: list[ResourceIgnoreDifferences] = field(
        default_factory=list, metadata=field_options(alias="ignoreDifferences")
    )


@dataclass
class ApplicationSpec(BaseManifest):
    """Desired state of an Application."""

    destination: ApplicationDestination = field(default_factory=ApplicationDestination)

    source: ApplicationSource | None = None

    sources: list[ApplicationSource] = field(default_factory=list)

    project: str = "default"

    sync_policy: SyncPolicy | None = field(
        default=None, metadata=field_options(alias="syncPolicy")
    )

    ignore_differences: list[ResourceIgnoreDifferences] = field(
        default_factory=list, metadata=field_options(alias="ignoreDifferences")
    )

    revision_history_limit: int | None = field(
        default=None, metadata=field_options(alias="revisionHistoryLimit")
    )

    def has_multiple_sources(self) -> bool:
        return len(self.sources) > 0

    def get_sources(self) -> list[ApplicationSource]:
        """Return the sources as a list, regardless of how they were declared."""
        if self.has_multiple_sources():
            return list(self.sources)
        if self.source is not None:
            return [self.source]
        return []

    def get_source(self) -> ApplicationSource | None:
        if self.has_multiple_sources():
            return self.sources[0]
        return self.source

    def get_revision_history_limit(self) -> int:
        if self.revision_history_limit is not None:
            return self.revision_history_limit
        return DEFAULT_REVISION_HISTORY_LIMIT

    def build_compared_to_status(
        self, sources: list[ApplicationSource]
    ) -> ComparedTo:
        """Return the snapshot of this spec that a comparison is made against."""
        compared_to = ComparedTo(
            destination=self.destination,
            ignore_differences=list(self.ignore_differences),
        )
        if self.has_multiple_sources():
            compared_to.sources = list(sources)
        else:
            compared_to.source = self.get_source()
        return compared_to


@dataclass
class SyncStatus(BaseManifest):
    """The sync verdict and the revisions it was computed for."""

    status: SyncStatusCode = SyncStatusCode.UNKNOWN

    compared_to: ComparedTo = field(
        default_factory=ComparedTo, metadata=field_options(alias="comparedTo")
    )

    revision: str = ""

    revisions: list[str] = field(default_factory=list)


@dataclass
class HealthStatus(BaseManifest):
    """Health of a resource or of the application as a whole."""

    status: HealthStatusCode = HealthStatusCode.UNKNOWN
    message: str = ""


@dataclass
class ApplicationCondition(BaseManifest):
    """A warning or error condition observed during reconciliation."""

    type: ConditionType
    message: str
    last_transition_time: datetime | None = field(
        default=None, metadata=field_options(alias="lastTransitionTime")
    )

    def is_error(self) -> bool:
        return self.type.endswith("Error")


@dataclass
class ResourceStatus(BaseManifest):
    """Public view of the comparison result for a single resource."""

    kind: str
    name: str
    group: str = ""
    version: str = ""
    namespace: str = ""

    status: SyncStatusCode | None = None
    """Sync status, unset for hooks and resources that are not compared."""

    health: HealthStatus | None = None

    hook: bool = False

    requires_pruning: bool = field(
        default=False, metadata=field_options(alias="requiresPruning")
    )

    requires_deletion_confirmation: bool = field(
        default=False, metadata=field_options(alias="requiresDeletionConfirmation")
    )

    sync_wave: int = field(default=0, metadata=field_options(alias="syncWave"))


@dataclass
class SyncOperationResult(BaseManifest):
    """Result of the last sync operation."""

    revision: str = ""
    revisions: list[str] = field(default_factory=list)
    managed_namespace_metadata: ManagedNamespaceMetadata | None = field(
        default=None, metadata=field_options(alias="managedNamespaceMetadata")
    )


@dataclass
class OperationState(BaseManifest):
    """State of the last operation performed on the application."""

    phase: str = ""
    sync_result: SyncOperationResult | None = field(
        default=None, metadata=field_options(alias="syncResult")
    )


@dataclass
class OperationInitiator(BaseManifest):
    """Who started an operation."""

    username: str = ""
    automated: bool = False


@dataclass
class RevisionHistory(BaseManifest):
    """An entry in the history of deployed revisions."""

    id: int
    deployed_at: datetime = field(metadata=field_options(alias="deployedAt"))
    revision: str = ""
    revisions: list[str] = field(default_factory=list)
    source: ApplicationSource | None = None
    sources: list[ApplicationSource] = field(default_factory=list)
    deploy_started_at: datetime | None = field(
        default=None, metadata=field_options(alias="deployStartedAt")
    )
    initiated_by: OperationInitiator = field(
        default_factory=OperationInitiator, metadata=field_options(alias="initiatedBy")
    )


@dataclass
class ApplicationStatus(BaseManifest):
    """Observed state of an Application."""

    sync: SyncStatus = field(default_factory=SyncStatus)

    health: HealthStatus = field(default_factory=HealthStatus)

    conditions: list[ApplicationCondition] = field(default_factory=list)

    history: list[RevisionHistory] = field(default_factory=list)

    resources: list[ResourceStatus] = field(default_factory=list)

    reconciled_at: datetime | None = field(
        default=None, metadata=field_options(alias="reconciledAt")
    )

    operation_state: OperationState | None = field(
        default=None, metadata=field_options(alias="operationState")
    )

    source_type: str = field(default="", metadata=field_options(alias="sourceType"))

    source_types: list[str] = field(
        default_factory=list, metadata=field_options(alias="sourceTypes")
    )

    def get_revisions(self) -> list[str]:
        """Return the synced revisions, for single and multi source apps."""
        if self.sync.revisions:
            return list(self.sync.revisions)
        if self.sync.revision:
            return [self.sync.revision]
        return []

    def expired(self, status_refresh_timeout: timedelta) -> bool:
        """Return true if the status is older than the refresh timeout."""
        if self.reconciled_at is None:
            return True
        return self.reconciled_at + status_refresh_timeout < utcnow()

    def set_conditions(
        self,
        conditions: list[ApplicationCondition],
        evaluated_types: set[ConditionType],
    ) -> None:
        """Replace the conditions of the evaluated types with the new set.

        Conditions of other types are kept. A condition whose type and message
        did not change keeps its original transition time.
        """
        now = utcnow()
        result: list[ApplicationCondition] = []
        for condition in self.conditions:
            if condition.type in evaluated_types:
                continue
            if condition.last_transition_time is None:
                condition.last_transition_time = now
            result.append(condition)
        for condition in conditions:
            if condition.last_transition_time is None:
                condition.last_transition_time = now
            existing = next(
                (c for c in self.conditions if c.type == condition.type), None
            )
            if existing is not None and existing.message == condition.message:
                result.append(existing)
            else:
                result.append(condition)
        result.sort(key=lambda c: str(c.type))
        self.conditions = result


@dataclass
class Application(BaseManifest):
    """An Application ties a source of desired state to a destination."""

    kind: ClassVar[str] = APPLICATION_KIND

    name: str
    """The name of the Application."""

    namespace: str = ""
    """The namespace that owns the Application."""

    spec: ApplicationSpec = field(default_factory=ApplicationSpec)

    status: ApplicationStatus = field(default_factory=ApplicationStatus)

    annotations: dict[str, str] = field(default_factory=dict)

    labels: dict[str, str] = field(default_factory=dict)

    @classmethod
    def parse_doc(cls, doc: dict[str, Any]) -> "Application":
        """Parse an Application from a kubernetes resource object."""
        _check_version(doc, APPLICATION_DOMAIN, APPLICATION_KIND)
        if not (metadata := doc.get("metadata")):
            raise InputException(f"Invalid {cls} missing metadata: {doc}")
        if not (name := metadata.get("name")):
            raise InputException(f"Invalid {cls} missing metadata.name: {doc}")
        if not (spec := doc.get("spec")):
            raise InputException(f"Invalid {cls} missing spec: {doc}")
        if not spec.get("source") and not spec.get("sources"):
            raise InputException(
                f"Invalid {cls} missing spec.source or spec.sources: {doc}"
            )
        if spec.get("source") and spec.get("sources"):
            _LOGGER.warning(
                "Application %s declares both spec.source and spec.sources, using spec.sources",
                name,
            )
        try:
            app_spec = ApplicationSpec.from_dict(spec)
            app_status = ApplicationStatus.from_dict(doc.get("status") or {})
        except ValueError as err:
            raise InputException(f"Invalid {cls} {name}: {err}") from err
        return cls(
            name=name,
            namespace=metadata.get("namespace") or "",
            spec=app_spec,
            status=app_status,
            annotations=dict(metadata.get("annotations") or {}),
            labels=dict(metadata.get("labels") or {}),
        )

    def instance_name(self, controller_namespace: str) -> str:
        """Return the name used in tracking metadata for this application."""
        if not self.namespace or self.namespace == controller_namespace:
            return self.name
        return f"{self.namespace}_{self.name}"

    def qualified_name(self) -> str:
        if not self.namespace:
            return self.name
        return f"{self.namespace}/{self.name}"

    def get_annotation(self, key: str) -> str:
        return self.annotations.get(key, "")

    def has_annotation_option(self, key: str, option: str) -> bool:
        """Return true if the comma separated annotation value contains the option."""
        if not (value := self.annotations.get(key)):
            return False
        return any(item.strip() == option for item in value.split(","))

    def is_refresh_requested(self) -> tuple[RefreshType | None, bool]:
        """Return the requested refresh type, if a refresh was requested."""
        if (value := self.annotations.get(ANNOTATION_KEY_REFRESH)) is None:
            return None, False
        if value == RefreshType.HARD:
            return RefreshType.HARD, True
        return RefreshType.NORMAL, True

    def is_managed_namespace_enabled(self) -> bool:
        return (
            self.spec.sync_policy is not None
            and self.spec.sync_policy.managed_namespace_metadata is not None
        )

    def has_changed_managed_namespace_metadata(self) -> bool:
        """Return true if the managed namespace metadata changed since the last sync."""
        if not self.is_managed_namespace_enabled():
            return False
        operation_state = self.status.operation_state
        if operation_state is None or operation_state.sync_result is None:
            return False
        synced = operation_state.sync_result.managed_namespace_metadata
        if synced is None:
            return False
        return synced != self.spec.sync_policy.managed_namespace_metadata  # type: ignore[union-attr]
