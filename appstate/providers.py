"""Capabilities the comparison engine depends on.

Each collaborator of the engine is described by a narrow abstract interface.
A deployment supplies one implementation of each; `appstate.in_memory`
provides implementations backed by plain python objects.
"""

from abc import ABC, abstractmethod
import logging
from typing import Any

from .diff import ServerSideDryRunner
from .exceptions import ClusterException
from .manifest import Application, ApplicationDestination, RevisionHistory
from .project import AppProject, get_permitted_repo_creds, get_permitted_repos
from .reposerver import (
    APIResourceInfo,
    Cluster,
    HelmOptions,
    KustomizeOptions,
    RepoCreds,
    Repository,
)
from .resource import GroupKind, ResourceKey
from .settings import (
    ResourceCompareOptions,
    ResourceOverride,
    ResourcesFilter,
)

__all__ = [
    "ResourceInfoProvider",
    "LiveStateCache",
    "SettingsManager",
    "RepositoryDB",
    "PermissionProvider",
    "ProjectPermissions",
    "ServerSideDiffProvider",
    "ApplicationClient",
    "is_namespaced_or_unknown",
]

_LOGGER = logging.getLogger(__name__)


class ResourceInfoProvider(ABC):
    """Knows which kinds of a cluster are namespaced."""

    @abstractmethod
    def is_namespaced(self, gk: GroupKind) -> bool:
        """Return true if the kind is namespaced.

        Raises ClusterException when the kind is not known to the cluster.
        """


def is_namespaced_or_unknown(provider: ResourceInfoProvider | None, gk: GroupKind) -> bool:
    """Return true if the kind is namespaced, assuming namespaced when unknown."""
    if provider is None:
        return True
    try:
        return provider.is_namespaced(gk)
    except ClusterException:
        return True


class LiveStateCache(ABC):
    """Access to the live objects of destination clusters."""

    @abstractmethod
    async def get_cluster_cache(self, cluster: Cluster) -> ResourceInfoProvider:
        """Return the resource info of the cluster."""

    @abstractmethod
    async def get_managed_live_objs(
        self,
        cluster: Cluster,
        app: Application,
        target_objs: list[dict[str, Any]],
    ) -> dict[ResourceKey, dict[str, Any]]:
        """Return the live objects managed by the application or matching a target."""

    @abstractmethod
    async def is_namespaced(self, cluster: Cluster, gk: GroupKind) -> bool:
        """Return true if the kind is namespaced on the cluster."""

    @abstractmethod
    async def get_versions_info(
        self, cluster: Cluster
    ) -> tuple[str, list[APIResourceInfo]]:
        """Return the server version and the api resources served by the cluster."""


class SettingsManager(ABC):
    """Read only lookups of system settings."""

    @abstractmethod
    async def get_resource_overrides(self) -> dict[str, ResourceOverride]:
        """Return the per group/kind resource overrides."""

    @abstractmethod
    async def get_app_instance_label_key(self) -> str:
        """Return the label key used for label based tracking."""

    @abstractmethod
    async def get_resources_filter(self) -> ResourcesFilter:
        """Return the filter of resources that may be managed."""

    @abstractmethod
    async def get_installation_id(self) -> str:
        """Return the installation id written to tracking metadata."""

    @abstractmethod
    async def get_tracking_method(self) -> str:
        """Return the configured tracking method."""

    @abstractmethod
    async def get_enabled_source_types(self) -> dict[str, bool]:
        """Return the templating engines that are enabled."""

    @abstractmethod
    async def get_kustomize_options(self) -> KustomizeOptions:
        """Return the kustomize options passed to the rendering service."""

    @abstractmethod
    async def get_helm_options(self) -> HelmOptions:
        """Return the helm options passed to the rendering service."""

    @abstractmethod
    async def get_resource_compare_options(self) -> ResourceCompareOptions:
        """Return the options that control diff normalization."""


class RepositoryDB(ABC):
    """Registered repositories, credentials and clusters."""

    @abstractmethod
    async def list_helm_repositories(self) -> list[Repository]:
        """Return the registered helm repositories."""

    @abstractmethod
    async def list_oci_repositories(self) -> list[Repository]:
        """Return the registered OCI repositories."""

    @abstractmethod
    async def get_all_helm_repository_credentials(self) -> list[RepoCreds]:
        """Return the credential templates for helm repositories."""

    @abstractmethod
    async def get_all_oci_repository_credentials(self) -> list[RepoCreds]:
        """Return the credential templates for OCI repositories."""

    @abstractmethod
    async def get_repository(self, repo_url: str, project: str) -> Repository:
        """Return the repository for the URL, or an anonymous one if not registered."""

    @abstractmethod
    async def get_destination_cluster(
        self, destination: ApplicationDestination
    ) -> Cluster:
        """Return the cluster the destination refers to."""


class PermissionProvider(ABC):
    """Decides which repositories and credentials a project may use."""

    @abstractmethod
    def get_permitted_repos(
        self, project: AppProject, repos: list[Repository]
    ) -> list[Repository]:
        """Return the permitted subset of the repositories."""

    @abstractmethod
    def get_permitted_repo_creds(
        self, project: AppProject, creds: list[RepoCreds]
    ) -> list[RepoCreds]:
        """Return the permitted subset of the credentials."""


class ProjectPermissions(PermissionProvider):
    """Permissions granted by the source repositories of the project."""

    def get_permitted_repos(
        self, project: AppProject, repos: list[Repository]
    ) -> list[Repository]:
        return get_permitted_repos(project, repos)

    def get_permitted_repo_creds(
        self, project: AppProject, creds: list[RepoCreds]
    ) -> list[RepoCreds]:
        return get_permitted_repo_creds(project, creds)


class ServerSideDiffProvider(ABC):
    """Source of dry run appliers used for server side diffs."""

    @abstractmethod
    async def get_dry_runner(self, cluster: Cluster) -> ServerSideDryRunner:
        """Return the dry runner for the cluster."""


class ApplicationClient(ABC):
    """Writes status back onto Application resources."""

    @abstractmethod
    async def patch_history(
        self, app: Application, history: list[RevisionHistory]
    ) -> None:
        """Replace the revision history of the application."""
