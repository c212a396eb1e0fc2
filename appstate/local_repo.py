"""A rendering service for plain manifest directories in a local checkout.

This supports directory sources only: every YAML or JSON file below the
source path is read and each document becomes one rendered manifest, with
tracking metadata applied the way the rendering service would.
"""

import logging
from pathlib import Path
from typing import Any

import aiofiles
from aiofiles.ospath import isdir
import yaml

from .exceptions import ManifestException, RepoException
from .reposerver import (
    ManifestRequest,
    ManifestResponse,
    RepoServerClient,
    ResolveRevisionRequest,
    UpdateRevisionForPathsRequest,
    UpdateRevisionForPathsResponse,
)
from .tracking import ResourceTracking

__all__ = ["LocalRepoServer", "read_documents"]

_LOGGER = logging.getLogger(__name__)

SOURCE_TYPE_DIRECTORY = "Directory"
MANIFEST_SUFFIXES = (".yaml", ".yml", ".json")


async def read_documents(path: Path) -> list[dict[str, Any]]:
    """Return the non empty documents of a YAML or JSON file."""
    async with aiofiles.open(str(path)) as doc_file:
        content = await doc_file.read()
    try:
        docs = list(yaml.safe_load_all(content))
    except yaml.YAMLError as err:
        raise ManifestException(f"Unable to parse {path}: {err}") from err
    result = []
    for doc in docs:
        if doc is None:
            continue
        if not isinstance(doc, dict):
            raise ManifestException(f"Document in {path} must be an object: {doc}")
        result.append(doc)
    return result


class LocalRepoServer(RepoServerClient):
    """Renders directory sources from a local checkout of the repository."""

    def __init__(self, root: Path, revision: str = "local") -> None:
        """Initialize LocalRepoServer."""
        self._root = root
        self._revision = revision

    def _files(self, path: Path, recurse: bool) -> list[Path]:
        pattern = "**/*" if recurse else "*"
        return sorted(
            p for p in path.glob(pattern) if p.is_file() and p.suffix in MANIFEST_SUFFIXES
        )

    async def generate_manifest(self, request: ManifestRequest) -> ManifestResponse:
        source = request.application_source
        path = self._root / (source.path or "")
        if not await isdir(path):
            raise RepoException(f"app path does not exist: {source.path or '.'}")
        recurse = bool((source.directory or {}).get("recurse"))
        tracking = ResourceTracking(
            request.tracking_method, request.app_label_key, request.installation_id
        )
        manifests: list[str] = []
        for manifest_path in self._files(path, recurse):
            _LOGGER.debug("Reading manifests from %s", manifest_path)
            for doc in await read_documents(manifest_path):
                if not doc.get("kind"):
                    raise ManifestException(f"Object in {manifest_path} is missing kind")
                if request.app_name:
                    tracking.set_app_instance(doc, request.app_name, request.namespace)
                manifests.append(yaml.dump(doc, sort_keys=False, explicit_start=True))
        return ManifestResponse(
            manifests=manifests,
            revision=self._revision,
            source_type=SOURCE_TYPE_DIRECTORY,
            namespace=request.namespace,
        )

    async def update_revision_for_paths(
        self, request: UpdateRevisionForPathsRequest
    ) -> UpdateRevisionForPathsResponse:
        return UpdateRevisionForPathsResponse(
            changes=request.synced_revision != self._revision, revision=self._revision
        )

    async def resolve_revision(self, request: ResolveRevisionRequest) -> str:
        return self._revision
