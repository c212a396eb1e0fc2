"""Implementations of the engine capabilities backed by plain python objects.

These are used by the command line tool and by tests. They hold everything
in memory and never talk to a cluster or a rendering service.
"""

import copy
import logging
from typing import Any

from .diff import ServerSideDryRunner
from .exceptions import ClusterException, RepoException
from .manifest import Application, ApplicationDestination, RevisionHistory
from .providers import (
    ApplicationClient,
    LiveStateCache,
    RepositoryDB,
    ResourceInfoProvider,
    ServerSideDiffProvider,
    SettingsManager,
)
from .reposerver import (
    APIResourceInfo,
    Cluster,
    HelmOptions,
    KustomizeOptions,
    ManifestRequest,
    ManifestResponse,
    RepoCreds,
    RepoServerClient,
    Repository,
    ResolveRevisionRequest,
    UpdateRevisionForPathsRequest,
    UpdateRevisionForPathsResponse,
)
from .resource import GroupKind, ResourceKey, get_resource_key
from .settings import (
    ComparisonSettings,
    ResourceCompareOptions,
    ResourceOverride,
    ResourcesFilter,
)
from .tracking import ResourceTracking

__all__ = [
    "DEFAULT_CLUSTER",
    "InMemoryResourceInfo",
    "InMemoryLiveStateCache",
    "InMemorySettingsManager",
    "InMemoryRepositoryDB",
    "InMemoryRepoServer",
    "InMemoryApplicationClient",
    "InMemoryDryRunner",
    "InMemoryServerSideDiffProvider",
]

_LOGGER = logging.getLogger(__name__)

DEFAULT_CLUSTER = Cluster(server="https://kubernetes.default.svc", name="in-cluster")

DEFAULT_KINDS: dict[GroupKind, bool] = {
    GroupKind("", "ConfigMap"): True,
    GroupKind("", "Secret"): True,
    GroupKind("", "Service"): True,
    GroupKind("", "ServiceAccount"): True,
    GroupKind("", "Pod"): True,
    GroupKind("", "PersistentVolumeClaim"): True,
    GroupKind("", "Namespace"): False,
    GroupKind("", "PersistentVolume"): False,
    GroupKind("apps", "Deployment"): True,
    GroupKind("apps", "StatefulSet"): True,
    GroupKind("apps", "DaemonSet"): True,
    GroupKind("apps", "ReplicaSet"): True,
    GroupKind("batch", "Job"): True,
    GroupKind("batch", "CronJob"): True,
    GroupKind("networking.k8s.io", "Ingress"): True,
    GroupKind("rbac.authorization.k8s.io", "Role"): True,
    GroupKind("rbac.authorization.k8s.io", "RoleBinding"): True,
    GroupKind("rbac.authorization.k8s.io", "ClusterRole"): False,
    GroupKind("rbac.authorization.k8s.io", "ClusterRoleBinding"): False,
    GroupKind("apiextensions.k8s.io", "CustomResourceDefinition"): False,
    GroupKind("argoproj.io", "Application"): True,
    GroupKind("argoproj.io", "AppProject"): True,
}


class InMemoryResourceInfo(ResourceInfoProvider):
    """Scope of a fixed set of kinds."""

    def __init__(self, kinds: dict[GroupKind, bool] | None = None) -> None:
        """Initialize InMemoryResourceInfo."""
        self._kinds = dict(DEFAULT_KINDS if kinds is None else kinds)

    def is_namespaced(self, gk: GroupKind) -> bool:
        if (namespaced := self._kinds.get(gk)) is None:
            raise ClusterException(f"Unknown kind {gk}")
        return namespaced

    def api_resources(self) -> list[APIResourceInfo]:
        return [
            APIResourceInfo(group=gk.group, version="v1", kind=gk.kind, namespaced=namespaced)
            for gk, namespaced in self._kinds.items()
        ]


class InMemoryLiveStateCache(LiveStateCache):
    """A cluster whose live objects are held in a list.

    Managed objects are the objects whose tracking metadata names the
    application, plus any object with the same key as a target.
    """

    def __init__(
        self,
        live_objs: list[dict[str, Any]] | None = None,
        resource_info: InMemoryResourceInfo | None = None,
        server_version: str = "1.30",
        tracking: ResourceTracking | None = None,
        controller_namespace: str = "argocd",
    ) -> None:
        """Initialize InMemoryLiveStateCache."""
        self._objs = [copy.deepcopy(obj) for obj in live_objs or []]
        self._info = resource_info or InMemoryResourceInfo()
        self._server_version = server_version
        self._tracking = tracking or ResourceTracking()
        self._controller_namespace = controller_namespace

    def add(self, obj: dict[str, Any]) -> None:
        self._objs.append(copy.deepcopy(obj))

    async def get_cluster_cache(self, cluster: Cluster) -> ResourceInfoProvider:
        return self._info

    async def get_managed_live_objs(
        self,
        cluster: Cluster,
        app: Application,
        target_objs: list[dict[str, Any]],
    ) -> dict[ResourceKey, dict[str, Any]]:
        instance_name = app.instance_name(self._controller_namespace)
        target_keys = {get_resource_key(obj) for obj in target_objs}
        result: dict[ResourceKey, dict[str, Any]] = {}
        for obj in self._objs:
            key = get_resource_key(obj)
            if key in target_keys or self._tracking.get_app_name(obj) == instance_name:
                result[key] = copy.deepcopy(obj)
        _LOGGER.debug("Found %d live objects for %s", len(result), app.qualified_name())
        return result

    async def is_namespaced(self, cluster: Cluster, gk: GroupKind) -> bool:
        return self._info.is_namespaced(gk)

    async def get_versions_info(self, cluster: Cluster) -> tuple[str, list[APIResourceInfo]]:
        return self._server_version, self._info.api_resources()


class InMemorySettingsManager(SettingsManager):
    """Settings read from a ComparisonSettings object."""

    def __init__(self, settings: ComparisonSettings | None = None) -> None:
        """Initialize InMemorySettingsManager."""
        self.settings = settings or ComparisonSettings()

    async def get_resource_overrides(self) -> dict[str, ResourceOverride]:
        return dict(self.settings.resource_overrides)

    async def get_app_instance_label_key(self) -> str:
        return self.settings.app_instance_label_key

    async def get_resources_filter(self) -> ResourcesFilter:
        return self.settings.resources_filter

    async def get_installation_id(self) -> str:
        return self.settings.installation_id

    async def get_tracking_method(self) -> str:
        return self.settings.tracking_method

    async def get_enabled_source_types(self) -> dict[str, bool]:
        return dict(self.settings.enabled_source_types)

    async def get_kustomize_options(self) -> KustomizeOptions:
        return self.settings.kustomize_options()

    async def get_helm_options(self) -> HelmOptions:
        return self.settings.helm_options()

    async def get_resource_compare_options(self) -> ResourceCompareOptions:
        return self.settings.compare_options


class InMemoryRepositoryDB(RepositoryDB):
    """Registered repositories and clusters held in lists."""

    def __init__(
        self,
        repositories: list[Repository] | None = None,
        helm_creds: list[RepoCreds] | None = None,
        oci_creds: list[RepoCreds] | None = None,
        clusters: list[Cluster] | None = None,
    ) -> None:
        """Initialize InMemoryRepositoryDB."""
        self._repositories = list(repositories or [])
        self._helm_creds = list(helm_creds or [])
        self._oci_creds = list(oci_creds or [])
        self._clusters = list(clusters or [DEFAULT_CLUSTER])

    async def list_helm_repositories(self) -> list[Repository]:
        return [repo for repo in self._repositories if repo.type == "helm"]

    async def list_oci_repositories(self) -> list[Repository]:
        return [repo for repo in self._repositories if repo.type == "oci"]

    async def get_all_helm_repository_credentials(self) -> list[RepoCreds]:
        return list(self._helm_creds)

    async def get_all_oci_repository_credentials(self) -> list[RepoCreds]:
        return list(self._oci_creds)

    async def get_repository(self, repo_url: str, project: str) -> Repository:
        for repo in self._repositories:
            if repo.url == repo_url and (not repo.project or not project or repo.project == project):
                return repo
        return Repository(url=repo_url)

    async def get_destination_cluster(self, destination: ApplicationDestination) -> Cluster:
        for cluster in self._clusters:
            if destination.server and cluster.server == destination.server:
                return cluster
            if destination.name and cluster.name == destination.name:
                return cluster
        raise ClusterException(
            f"unable to find destination server {destination.server or destination.name!r}"
        )


class InMemoryRepoServer(RepoServerClient):
    """A rendering service returning canned responses keyed by repository URL.

    Every request is recorded so tests can inspect what the engine asked for.
    """

    def __init__(
        self,
        manifests: dict[str, list[str]] | None = None,
        revisions: dict[str, str] | None = None,
        source_type: str = "Directory",
        verify_result: str = "",
        path_changes: bool = True,
    ) -> None:
        """Initialize InMemoryRepoServer."""
        self.manifests = dict(manifests or {})
        self.revisions = dict(revisions or {})
        self.source_type = source_type
        self.verify_result = verify_result
        self.path_changes = path_changes
        self.manifest_requests: list[ManifestRequest] = []
        self.update_requests: list[UpdateRevisionForPathsRequest] = []
        self.resolve_requests: list[ResolveRevisionRequest] = []

    def _resolve(self, repo_url: str, revision: str) -> str:
        return self.revisions.get(repo_url) or revision

    async def generate_manifest(self, request: ManifestRequest) -> ManifestResponse:
        self.manifest_requests.append(request)
        url = request.application_source.repo_url
        if url not in self.manifests:
            raise RepoException(f"repository not found: {url}")
        return ManifestResponse(
            manifests=list(self.manifests[url]),
            revision=self._resolve(url, request.revision),
            source_type=self.source_type,
            verify_result=self.verify_result,
            namespace=request.namespace,
        )

    async def update_revision_for_paths(
        self, request: UpdateRevisionForPathsRequest
    ) -> UpdateRevisionForPathsResponse:
        self.update_requests.append(request)
        return UpdateRevisionForPathsResponse(
            changes=self.path_changes,
            revision=self._resolve(request.repo.url, request.revision),
        )

    async def resolve_revision(self, request: ResolveRevisionRequest) -> str:
        self.resolve_requests.append(request)
        return self._resolve(request.repo.url, request.ambiguous_revision)


class InMemoryApplicationClient(ApplicationClient):
    """Records the history patches written for each application."""

    def __init__(self) -> None:
        """Initialize InMemoryApplicationClient."""
        self.history: dict[str, list[RevisionHistory]] = {}

    async def patch_history(self, app: Application, history: list[RevisionHistory]) -> None:
        self.history[app.qualified_name()] = list(history)


class InMemoryDryRunner(ServerSideDryRunner):
    """A dry run that returns the object with optional server side defaults added."""

    def __init__(self, defaults: dict[str, Any] | None = None) -> None:
        """Initialize InMemoryDryRunner."""
        self._defaults = defaults or {}
        self.calls: list[tuple[dict[str, Any], str]] = []

    async def run(self, obj: dict[str, Any], manager: str) -> dict[str, Any]:
        self.calls.append((obj, manager))
        result = copy.deepcopy(obj)
        for key, value in self._defaults.items():
            result.setdefault(key, copy.deepcopy(value))
        return result


class InMemoryServerSideDiffProvider(ServerSideDiffProvider):
    """Returns the same dry runner for every cluster."""

    def __init__(self, runner: ServerSideDryRunner | None = None) -> None:
        """Initialize InMemoryServerSideDiffProvider."""
        self.runner = runner or InMemoryDryRunner()

    async def get_dry_runner(self, cluster: Cluster) -> ServerSideDryRunner:
        return self.runner
