"""Appstate compare action."""

import logging
from argparse import (
    ArgumentParser,
    BooleanOptionalAction,
    _SubParsersAction as SubParsersAction,
)
import pathlib
import sys
from typing import Any, cast

import aiofiles
import yaml

from appstate.config import AppStateManagerConfig
from appstate.exceptions import InputException
from appstate.in_memory import (
    DEFAULT_CLUSTER,
    InMemoryLiveStateCache,
    InMemoryRepositoryDB,
    InMemoryServerSideDiffProvider,
    InMemorySettingsManager,
)
from appstate.local_repo import LocalRepoServer, read_documents
from appstate.manager import AppStateManager, ComparisonResult
from appstate.manifest import APPLICATION_KIND, Application
from appstate.project import PROJECT_KIND, AppProject
from appstate.reposerver import Cluster
from appstate.settings import ComparisonSettings
from appstate.tracking import ResourceTracking

from .format import json_lines, text_lines, yaml_lines


_LOGGER = logging.getLogger(__name__)

DEFAULT_PROJECT = {
    "apiVersion": "argoproj.io/v1alpha1",
    "kind": PROJECT_KIND,
    "metadata": {"name": "default"},
    "spec": {
        "sourceRepos": ["*"],
        "destinations": [{"server": "*", "name": "*", "namespace": "*"}],
        "clusterResourceWhitelist": [{"group": "*", "kind": "*"}],
    },
}


async def _read_kind(path: pathlib.Path, kind: str) -> dict[str, Any]:
    for doc in await read_documents(path):
        if doc.get("kind") == kind:
            return doc
    raise InputException(f"No {kind} found in {path}")


async def _read_settings(path: pathlib.Path | None) -> ComparisonSettings:
    if path is None:
        return ComparisonSettings()
    async with aiofiles.open(str(path)) as settings_file:
        content = await settings_file.read()
    try:
        return ComparisonSettings.from_dict(yaml.safe_load(content) or {})
    except ValueError as err:
        raise InputException(f"Invalid settings file {path}: {err}") from err


def _destination_cluster(app: Application) -> Cluster:
    destination = app.spec.destination
    return Cluster(
        server=destination.server or DEFAULT_CLUSTER.server,
        name=destination.name or DEFAULT_CLUSTER.name,
    )


class CompareAction:
    """Compare an application to a live state."""

    @classmethod
    def register(
        cls, subparsers: SubParsersAction  # type: ignore[type-arg]
    ) -> ArgumentParser:
        """Register the subparser commands."""
        args = cast(
            ArgumentParser,
            subparsers.add_parser(
                "compare",
                help="Compare an Application to its live state",
                description=(
                    "Render the sources of an Application from a local checkout "
                    "and compare them to live objects read from a file."
                ),
            ),
        )
        args.add_argument(
            "--application",
            "-a",
            help="YAML file containing the Application",
            type=pathlib.Path,
            required=True,
        )
        args.add_argument(
            "--project",
            help="YAML file containing the AppProject, defaults to a permissive project",
            type=pathlib.Path,
            default=None,
        )
        args.add_argument(
            "--repo-root",
            help="Local checkout that source paths are relative to",
            type=pathlib.Path,
            default=pathlib.Path("."),
        )
        args.add_argument(
            "--live",
            help="YAML file containing the live objects of the cluster",
            type=pathlib.Path,
            default=None,
        )
        args.add_argument(
            "--local",
            help="Local manifest file to use instead of rendering the sources",
            type=pathlib.Path,
            action="append",
            default=[],
        )
        args.add_argument(
            "--settings",
            help="YAML file containing the comparison settings",
            type=pathlib.Path,
            default=None,
        )
        args.add_argument(
            "--namespace",
            help="Namespace of the controller",
            default="argocd",
        )
        args.add_argument(
            "--server-side-diff",
            type=bool,
            action=BooleanOptionalAction,
            default=False,
            help="Predict the live state with a server side dry run",
        )
        args.add_argument(
            "--show-diff",
            type=bool,
            action=BooleanOptionalAction,
            default=False,
            help="Print the diff of each modified resource",
        )
        args.add_argument(
            "--output",
            "-o",
            choices=["text", "yaml", "json"],
            default="text",
            help="Output format of the command",
        )
        args.set_defaults(cls=cls)
        return args

    async def run(  # type: ignore[no-untyped-def]
        self,
        application: pathlib.Path,
        project: pathlib.Path | None,
        repo_root: pathlib.Path,
        live: pathlib.Path | None,
        local: list[pathlib.Path],
        settings: pathlib.Path | None,
        namespace: str,
        server_side_diff: bool,
        show_diff: bool,
        output: str,
        **kwargs,  # pylint: disable=unused-argument
    ) -> None:
        """Async Action implementation."""
        app = Application.parse_doc(await _read_kind(application, APPLICATION_KIND))
        if project is not None:
            app_project = AppProject.parse_doc(await _read_kind(project, PROJECT_KIND))
        else:
            app_project = AppProject.parse_doc(DEFAULT_PROJECT)
        comparison_settings = await _read_settings(settings)

        live_objs = await read_documents(live) if live is not None else []
        local_manifests: list[str] | None = None
        if local:
            local_manifests = []
            for path in local:
                local_manifests.extend(
                    yaml.dump(doc, sort_keys=False) for doc in await read_documents(path)
                )

        tracking = ResourceTracking(
            comparison_settings.tracking_method,
            comparison_settings.app_instance_label_key,
            comparison_settings.installation_id,
        )
        manager = AppStateManager(
            repo_db=InMemoryRepositoryDB(clusters=[_destination_cluster(app)]),
            repo_server=LocalRepoServer(repo_root),
            settings_manager=InMemorySettingsManager(comparison_settings),
            live_state_cache=InMemoryLiveStateCache(
                live_objs, tracking=tracking, controller_namespace=namespace
            ),
            server_side_diff_provider=InMemoryServerSideDiffProvider(),
            config=AppStateManagerConfig(
                namespace=namespace,
                server_side_diff=server_side_diff,
                persist_resource_health=True,
            ),
        )
        sources = app.spec.get_sources()
        _LOGGER.debug("Comparing %s with %d sources", app.qualified_name(), len(sources))
        result = await manager.compare_app_state(
            app,
            app_project,
            [source.target_revision for source in sources],
            sources,
            no_cache=True,
            no_revision_cache=True,
            local_manifests=local_manifests,
        )
        _print_result(result, output, show_diff)


def _print_result(result: ComparisonResult, output: str, show_diff: bool) -> None:
    if output == "json":
        lines = json_lines(result)
    elif output == "yaml":
        lines = yaml_lines(result)
    else:
        lines = text_lines(result, show_diff)
    for line in lines:
        print(line, file=sys.stdout)
