"""Contract with the manifest rendering service.

The rendering service turns a source at a revision into a list of rendered
resource documents. The comparison engine only depends on the request and
response types in this module and the abstract RepoServerClient; transport,
retries and the templating engines themselves live behind that interface.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
import logging
import posixpath
import re

from .exceptions import RefSourceException
from .manifest import (
    ANNOTATION_KEY_MANIFEST_GENERATE_PATHS,
    Application,
    ApplicationSource,
)

__all__ = [
    "Cluster",
    "Repository",
    "RepoCreds",
    "RefTarget",
    "ManifestRequest",
    "ManifestResponse",
    "UpdateRevisionForPathsRequest",
    "UpdateRevisionForPathsResponse",
    "ResolveRevisionRequest",
    "RepoServerClient",
    "get_ref_sources",
    "get_app_refresh_paths",
]

_LOGGER = logging.getLogger(__name__)

_REF_KEY_RE = re.compile(r"^[a-zA-Z0-9_-]+$")


@dataclass(frozen=True)
class Cluster:
    """A destination cluster known to the controller."""

    server: str
    name: str = ""
    project: str = ""


@dataclass(frozen=True)
class Repository:
    """A repository registered with the controller."""

    url: str
    type: str = "git"
    name: str = ""
    project: str = ""


@dataclass(frozen=True)
class RepoCreds:
    """Credentials that apply to all repositories under a URL prefix."""

    url: str
    type: str = "git"


@dataclass(frozen=True)
class APIResourceInfo:
    """An API resource served by a cluster."""

    group: str
    version: str
    kind: str
    namespaced: bool = True


@dataclass
class KustomizeOptions:
    """Global kustomize build options."""

    build_options: str = ""
    binary_path: str = ""


@dataclass
class HelmOptions:
    """Global helm options."""

    value_files_schemes: list[str] = field(
        default_factory=lambda: ["https", "http"]
    )


@dataclass
class RefTarget:
    """The repository and revision a `$ref` name resolves to."""

    repo: Repository
    target_revision: str
    chart: str | None = None


@dataclass
class ManifestRequest:
    """Request to render the manifests of a single source."""

    repo: Repository
    revision: str
    application_source: ApplicationSource
    app_name: str
    app_label_key: str
    namespace: str = ""
    repos: list[Repository] = field(default_factory=list)
    helm_repo_creds: list[RepoCreds] = field(default_factory=list)
    no_cache: bool = False
    no_revision_cache: bool = False
    kustomize_options: KustomizeOptions | None = None
    helm_options: HelmOptions | None = None
    kube_version: str = ""
    api_versions: list[str] = field(default_factory=list)
    verify_signature: bool = False
    tracking_method: str = ""
    enabled_source_types: dict[str, bool] = field(default_factory=dict)
    has_multiple_sources: bool = False
    ref_sources: dict[str, RefTarget] = field(default_factory=dict)
    project_name: str = ""
    project_source_repos: list[str] = field(default_factory=list)
    annotation_manifest_generate_paths: str = ""
    installation_id: str = ""


@dataclass
class ManifestResponse:
    """Rendered manifests and metadata for a single source."""

    manifests: list[str]
    """JSON or YAML encoded resource documents."""

    revision: str
    """The concrete revision that was rendered."""

    source_type: str = ""
    """The detected source type e.g. Helm, Kustomize, Directory."""

    verify_result: str = ""
    """Raw signature verification output, empty when the revision is unsigned."""

    namespace: str = ""
    server: str = ""


@dataclass
class UpdateRevisionForPathsRequest:
    """Request to check whether any of the paths changed between two revisions."""

    repo: Repository
    revision: str
    synced_revision: str
    paths: list[str]
    application_source: ApplicationSource
    app_name: str
    app_label_key: str
    namespace: str = ""
    no_revision_cache: bool = False
    kube_version: str = ""
    api_versions: list[str] = field(default_factory=list)
    tracking_method: str = ""
    ref_sources: dict[str, RefTarget] = field(default_factory=dict)
    has_multiple_sources: bool = False
    installation_id: str = ""


@dataclass
class UpdateRevisionForPathsResponse:
    """Whether the paths changed, and the revision that was resolved."""

    changes: bool
    revision: str = ""


@dataclass
class ResolveRevisionRequest:
    """Request to resolve an ambiguous revision (branch, tag, HEAD) to a commit."""

    repo: Repository
    ambiguous_revision: str
    source: ApplicationSource


class RepoServerClient(ABC):
    """Client of the manifest rendering service."""

    @abstractmethod
    async def generate_manifest(self, request: ManifestRequest) -> ManifestResponse:
        """Render the manifests of a source at a revision."""

    @abstractmethod
    async def update_revision_for_paths(
        self, request: UpdateRevisionForPathsRequest
    ) -> UpdateRevisionForPathsResponse:
        """Check if any of the paths changed between the synced and new revision."""

    @abstractmethod
    async def resolve_revision(self, request: ResolveRevisionRequest) -> str:
        """Resolve an ambiguous revision to a concrete revision."""


def api_resources_to_strings(
    resources: list[APIResourceInfo], include_kinds: bool
) -> list[str]:
    """Return the group/version (and group/version/kind) strings served by a cluster."""
    result: set[str] = set()
    for res in resources:
        group_version = f"{res.group}/{res.version}" if res.group else res.version
        result.add(group_version)
        if include_kinds:
            result.add(f"{group_version}/{res.kind}")
    return sorted(result)


async def get_ref_sources(
    sources: list[ApplicationSource],
    project: str,
    get_repository,  # type: ignore[no-untyped-def]
    revisions: list[str],
) -> dict[str, RefTarget]:
    """Return the map of `$ref` names to the repository and revision they point to.

    Only applications with more than one source may reference each other. The
    revision passed by the caller for the source takes precedence over the
    declared target revision so that a rollback renders consistent sources.
    """
    ref_sources: dict[str, RefTarget] = {}
    if len(sources) <= 1:
        return ref_sources

    ref_keys: set[str] = set()
    for source in sources:
        if not source.ref:
            continue
        if not _REF_KEY_RE.match(source.ref):
            raise RefSourceException(
                f"sources.ref {source.ref} cannot contain any special characters except '_' and '-'"
            )
        ref_key = f"${source.ref}"
        if ref_key in ref_keys:
            raise RefSourceException(
                "invalid sources: multiple sources had the same `ref` key"
            )
        ref_keys.add(ref_key)

    for i, source in enumerate(sources):
        if not source.ref:
            continue
        repo = await get_repository(source.repo_url, project)
        revision = source.target_revision
        if len(revisions) > i and revisions[i]:
            revision = revisions[i]
        ref_sources[f"${source.ref}"] = RefTarget(
            repo=repo, target_revision=revision, chart=source.chart
        )
    return ref_sources


def get_app_refresh_paths(app: Application) -> list[str]:
    """Return the repository paths that the app renders from.

    Entries of the annotation are separated by `;`. Absolute entries are
    relative to the repository root, relative entries are relative to the
    path of each source.
    """
    paths: list[str] = []
    if not (value := app.get_annotation(ANNOTATION_KEY_MANIFEST_GENERATE_PATHS)):
        return paths
    for item in value.split(";"):
        if not item:
            continue
        if item.startswith("/"):
            paths.append(item[1:])
            continue
        for source in app.spec.get_sources():
            paths.append(posixpath.normpath(posixpath.join(source.path or "", item)))
    _LOGGER.debug("Refresh paths for %s: %s", app.qualified_name(), paths)
    return paths
