"""Representation of an AppProject and the permissions it grants.

A project restricts which repositories an application may render from, which
clusters and namespaces it may deploy to, which kinds of resources it may
manage and which keys may sign the revisions it deploys.
"""

from dataclasses import dataclass, field
from fnmatch import fnmatchcase
import logging
from typing import Any, ClassVar, TypeVar

from mashumaro import field_options

from .exceptions import InputException
from .manifest import BaseManifest, APPLICATION_DOMAIN, ApplicationDestination
from .resource import GroupKind, get_namespace, group_version_kind
from .reposerver import Cluster, RepoCreds, Repository

__all__ = [
    "AppProject",
    "GroupKindPattern",
    "SignatureKey",
    "get_permitted_repos",
    "get_permitted_repo_creds",
]

_LOGGER = logging.getLogger(__name__)

PROJECT_KIND = "AppProject"

R = TypeVar("R", Repository, RepoCreds)


def normalize_repo_url(url: str) -> str:
    """Normalize a repository URL for comparison against project patterns."""
    url = url.strip().lower().rstrip("/")
    if url.endswith(".git"):
        url = url[:-4]
    return url


def _glob_match(pattern: str, value: str) -> bool:
    return pattern == value or fnmatchcase(value, pattern)


@dataclass
class GroupKindPattern(BaseManifest):
    """A group and kind, each of which may contain glob wildcards."""

    group: str = ""
    kind: str = ""

    def matches(self, gk: GroupKind) -> bool:
        return _glob_match(self.group, gk.group) and _glob_match(self.kind, gk.kind)


@dataclass
class SignatureKey(BaseManifest):
    """A GnuPG key trusted to sign revisions for the project."""

    key_id: str = field(metadata=field_options(alias="keyID"))


def _in_list(gk: GroupKind, patterns: list[GroupKindPattern]) -> bool:
    return any(pattern.matches(gk) for pattern in patterns)


@dataclass
class AppProject(BaseManifest):
    """A logical grouping of applications and the permissions they share."""

    kind: ClassVar[str] = PROJECT_KIND

    name: str

    source_repos: list[str] = field(
        default_factory=list, metadata=field_options(alias="sourceRepos")
    )
    """Repository URL patterns; a leading `!` denies matching repositories."""

    destinations: list[ApplicationDestination] = field(default_factory=list)
    """Server and namespace patterns applications may deploy to."""

    signature_keys: list[SignatureKey] = field(
        default_factory=list, metadata=field_options(alias="signatureKeys")
    )

    cluster_resource_whitelist: list[GroupKindPattern] = field(
        default_factory=list, metadata=field_options(alias="clusterResourceWhitelist")
    )

    cluster_resource_blacklist: list[GroupKindPattern] = field(
        default_factory=list, metadata=field_options(alias="clusterResourceBlacklist")
    )

    namespace_resource_whitelist: list[GroupKindPattern] | None = field(
        default=None, metadata=field_options(alias="namespaceResourceWhitelist")
    )
    """When unset all namespaced kinds are allowed; an empty list allows none."""

    namespace_resource_blacklist: list[GroupKindPattern] = field(
        default_factory=list,
        metadata=field_options(alias="namespaceResourceBlacklist"),
    )

    @classmethod
    def parse_doc(cls, doc: dict[str, Any]) -> "AppProject":
        """Parse an AppProject from a kubernetes resource object."""
        if not (api_version := doc.get("apiVersion")) or not api_version.startswith(
            APPLICATION_DOMAIN
        ):
            raise InputException(f"Invalid object expected '{APPLICATION_DOMAIN}': {doc}")
        if doc.get("kind") != PROJECT_KIND:
            raise InputException(f"Invalid object expected kind '{PROJECT_KIND}': {doc}")
        if not (metadata := doc.get("metadata")):
            raise InputException(f"Invalid {cls} missing metadata: {doc}")
        if not (name := metadata.get("name")):
            raise InputException(f"Invalid {cls} missing metadata.name: {doc}")
        try:
            return cls.from_dict({"name": name, **(doc.get("spec") or {})})
        except ValueError as err:
            raise InputException(f"Invalid {cls} {name}: {err}") from err

    def requires_signed_revisions(self) -> bool:
        return len(self.signature_keys) > 0

    def is_source_permitted(self, repo_url: str) -> bool:
        """Return true if the repository may be used as a source."""
        normalized = normalize_repo_url(repo_url)
        allowed = False
        for pattern in self.source_repos:
            if pattern.startswith("!"):
                if _glob_match(normalize_repo_url(pattern[1:]), normalized):
                    return False
                continue
            if pattern == "*" or _glob_match(normalize_repo_url(pattern), normalized):
                allowed = True
        return allowed

    def is_group_kind_permitted(self, gk: GroupKind, namespaced: bool) -> bool:
        """Return true if resources of the kind may be managed by the project."""
        if namespaced:
            whitelist = self.namespace_resource_whitelist
            is_whitelisted = whitelist is None or (
                len(whitelist) != 0 and _in_list(gk, whitelist)
            )
            is_blacklisted = _in_list(gk, self.namespace_resource_blacklist)
            return is_whitelisted and not is_blacklisted
        is_whitelisted = _in_list(gk, self.cluster_resource_whitelist)
        is_blacklisted = _in_list(gk, self.cluster_resource_blacklist)
        return is_whitelisted and not is_blacklisted

    def is_destination_permitted(self, cluster: Cluster, namespace: str) -> bool:
        """Return true if the project may deploy to the namespace of the cluster."""
        for dest in self.destinations:
            server_match = bool(dest.server) and _glob_match(dest.server, cluster.server)
            name_match = bool(dest.name) and _glob_match(dest.name, cluster.name)
            if (server_match or name_match) and _glob_match(dest.namespace, namespace):
                return True
        return False

    def is_live_resource_permitted(self, obj: dict[str, Any], cluster: Cluster) -> bool:
        """Return true if the live object may be managed by the project."""
        namespace = get_namespace(obj)
        gk = group_version_kind(obj).group_kind
        if not self.is_group_kind_permitted(gk, namespace != ""):
            return False
        if namespace:
            return self.is_destination_permitted(cluster, namespace)
        return True


def get_permitted_repos(project: AppProject, repos: list[R]) -> list[R]:
    """Return the repositories the project is allowed to use."""
    permitted = [repo for repo in repos if project.is_source_permitted(repo.url)]
    _LOGGER.debug(
        "Project %s permits %d of %d repositories",
        project.name,
        len(permitted),
        len(repos),
    )
    return permitted


def get_permitted_repo_creds(project: AppProject, creds: list[RepoCreds]) -> list[RepoCreds]:
    """Return the repository credentials the project is allowed to use."""
    return get_permitted_repos(project, creds)
