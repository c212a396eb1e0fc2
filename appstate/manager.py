"""The application state manager.

The manager compares the desired state of an application, rendered from its
sources, with the live state of its destination cluster and derives the sync
status, health and conditions of the application.

A comparison pass runs through a fixed sequence of phases. Failures of a
phase are recorded as conditions and the pass continues with whatever data is
available, so that every pass produces an explainable result. Only a failure
to load the settings ends the pass early. Rendering failures are suppressed
for a grace period by raising `CompareStateRepoError`, which callers treat as
"keep the last known state".

A typical use looks like this:
```python
manager = AppStateManager(
    repo_db=repo_db,
    repo_server=repo_server,
    settings_manager=settings_manager,
    live_state_cache=live_state_cache,
)
result = await manager.compare_app_state(app, project, revisions, sources)
print(result.sync_status.status, result.health_status.status)
```
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import StrEnum
import logging
from typing import Any

from .config import AppStateManagerConfig
from .diff import (
    DiffCache,
    DiffConfig,
    DiffConfigBuilder,
    DiffResultList,
    cached_resource_diffs,
    state_diffs,
)
from .exceptions import (
    AppStateException,
    CompareStateRepoError,
    RepoException,
)
from .health import set_application_health
from .hooks import is_post_delete_hook
from .managed_namespace import is_managed_namespace, managed_namespace_target
from .manifest import (
    ANNOTATION_COMPARE_OPTIONS,
    ANNOTATION_KEY_MANIFEST_GENERATE_PATHS,
    Application,
    ApplicationCondition,
    ApplicationSource,
    ApplicationSpec,
    ComparedTo,
    ConditionType,
    HealthStatus,
    HealthStatusCode,
    OperationInitiator,
    ResourceStatus,
    RevisionHistory,
    SyncStatus,
    SyncStatusCode,
    utcnow,
)
from .normalize import deduplicate_target_objects, normalize_cluster_scope_tracking
from .project import AppProject
from .providers import (
    ApplicationClient,
    LiveStateCache,
    PermissionProvider,
    ProjectPermissions,
    RepositoryDB,
    ResourceInfoProvider,
    ServerSideDiffProvider,
    SettingsManager,
)
from .reconcile import ReconciliationResult, reconcile
from .repo_error_cache import RepoErrorCache
from .reposerver import (
    APIResourceInfo,
    Cluster,
    ManifestRequest,
    ManifestResponse,
    RepoServerClient,
    ResolveRevisionRequest,
    UpdateRevisionForPathsRequest,
    api_resources_to_strings,
    get_app_refresh_paths,
    get_ref_sources,
)
from .resource import (
    GroupKind,
    ResourceKey,
    get_name,
    get_resource_key,
    group_version_kind,
    unmarshal_manifests,
)
from .settings import ResourceCompareOptions, ResourceOverride, ResourcesFilter
from .signature import verify_gnupg_signature
from .stats import TimingStats
from .sync_status import ManagedResource, classify_sync_status
from .tracking import ResourceTracking

__all__ = [
    "AppStateManager",
    "ComparePhase",
    "ComparisonResult",
    "use_diff_cache",
    "spec_equals_compare_to",
]

_LOGGER = logging.getLogger(__name__)

COMPARE_OPTION_SERVER_SIDE_DIFF = "ServerSideDiff=true"
COMPARE_OPTION_NO_SERVER_SIDE_DIFF = "ServerSideDiff=false"
COMPARE_OPTION_INCLUDE_MUTATION_WEBHOOK = "IncludeMutationWebhook=true"
SYNC_OPTION_SERVER_SIDE_APPLY = "ServerSideApply=true"

EVALUATED_CONDITION_TYPES = {
    ConditionType.COMPARISON_ERROR,
    ConditionType.SHARED_RESOURCE_WARNING,
    ConditionType.REPEATED_RESOURCE_WARNING,
    ConditionType.EXCLUDED_RESOURCE_WARNING,
}


class ComparePhase(StrEnum):
    """Phases of a comparison pass, in order."""

    BUILDING_SYNC_STATUS = "BuildingSyncStatus"
    LOADING_SETTINGS = "LoadingSettings"
    ACQUIRING_TARGET_STATE = "AcquiringTargetState"
    NORMALIZING_AND_DEDUPING = "NormalizingAndDeduping"
    LOADING_LIVE_STATE = "LoadingLiveState"
    COMPUTING_DIFF = "ComputingDiff"
    CLASSIFYING_SYNC = "ClassifyingSync"
    EVALUATING_HEALTH = "EvaluatingHealth"
    DONE = "Done"


@dataclass
class ComparisonResult:
    """The complete output of a comparison pass."""

    sync_status: SyncStatus
    health_status: HealthStatus
    managed_resources: list[ManagedResource] = field(default_factory=list)
    reconciliation: ReconciliationResult = field(default_factory=ReconciliationResult)
    diff_config: DiffConfig | None = None
    diff_result_list: DiffResultList = field(default_factory=DiffResultList)
    app_source_type: str = ""
    app_source_types: list[str] = field(default_factory=list)
    timings: dict[str, timedelta] = field(default_factory=dict)
    has_post_delete_hooks: bool = False
    revisions_may_have_changes: bool = False
    failed_to_load: bool = False
    conditions: list[ApplicationCondition] = field(default_factory=list)

    @property
    def resources(self) -> list[ResourceStatus]:
        """Return the public status of each managed resource, in the same order."""
        return [res.status for res in self.managed_resources]


@dataclass
class _ComparisonSettings:
    app_label_key: str
    resource_overrides: dict[str, ResourceOverride]
    resources_filter: ResourcesFilter
    installation_id: str
    tracking_method: str


class _CompareState:
    """Accumulates the conditions and partial results of one comparison pass."""

    def __init__(self, app: Application) -> None:
        self.app = app
        self.phase = ComparePhase.BUILDING_SYNC_STATUS
        self.now = utcnow()
        self.conditions: list[ApplicationCondition] = []
        self.failed_to_load = False

    def enter(self, phase: ComparePhase) -> None:
        _LOGGER.debug("%s: entering phase %s", self.app.qualified_name(), phase)
        self.phase = phase

    def add(
        self,
        message: str,
        condition_type: ConditionType = ConditionType.COMPARISON_ERROR,
        failed: bool = False,
    ) -> None:
        self.conditions.append(
            ApplicationCondition(
                type=condition_type, message=message, last_transition_time=self.now
            )
        )
        if failed:
            self.failed_to_load = True

    def extend(self, conditions: list[ApplicationCondition]) -> None:
        self.conditions.extend(conditions)


def spec_equals_compare_to(
    spec: ApplicationSpec, sources: list[ApplicationSource], compared_to: ComparedTo
) -> bool:
    """Return true if the spec is what the compared to snapshot was computed from."""
    return compared_to == spec.build_compared_to_status(sources)


def use_diff_cache(
    no_cache: bool,
    manifest_infos: list[ManifestResponse],
    sources: list[ApplicationSource],
    app: Application,
    manifest_revisions: list[str],
    status_refresh_timeout: timedelta,
    server_side_diff: bool,
) -> bool:
    """Return true if cached diff results may be reused for this pass."""
    name = app.qualified_name()
    if no_cache:
        _LOGGER.debug("%s: not using diff cache, no cache requested", name)
        return False
    refresh_type, refresh_requested = app.is_refresh_requested()
    if refresh_requested:
        _LOGGER.debug("%s: not using diff cache, %s refresh requested", name, refresh_type)
        return False
    # Server side diff tolerates an expired status to reduce load on the cluster api
    if app.status.expired(status_refresh_timeout) and not server_side_diff:
        _LOGGER.debug("%s: not using diff cache, status expired", name)
        return False
    if len(manifest_infos) != len(sources):
        _LOGGER.debug("%s: not using diff cache, manifest count differs from sources", name)
        return False
    if app.status.get_revisions() != manifest_revisions:
        _LOGGER.debug("%s: not using diff cache, revision changed", name)
        return False
    if not spec_equals_compare_to(app.spec, sources, app.status.sync.compared_to):
        _LOGGER.debug("%s: not using diff cache, spec changed", name)
        return False
    _LOGGER.debug("%s: using diff cache", name)
    return True


class AppStateManager:
    """Compares the desired state of applications to their live state."""

    def __init__(
        self,
        repo_db: RepositoryDB,
        repo_server: RepoServerClient,
        settings_manager: SettingsManager,
        live_state_cache: LiveStateCache,
        permissions: PermissionProvider | None = None,
        repo_error_cache: RepoErrorCache | None = None,
        diff_cache: DiffCache | None = None,
        server_side_diff_provider: ServerSideDiffProvider | None = None,
        app_client: ApplicationClient | None = None,
        config: AppStateManagerConfig | None = None,
    ) -> None:
        """Initialize AppStateManager."""
        self._repo_db = repo_db
        self._repo_server = repo_server
        self._settings = settings_manager
        self._live_state_cache = live_state_cache
        self._permissions = permissions if permissions is not None else ProjectPermissions()
        self._repo_error_cache = (
            repo_error_cache if repo_error_cache is not None else RepoErrorCache()
        )
        self._diff_cache = diff_cache if diff_cache is not None else DiffCache()
        self._server_side_diff_provider = server_side_diff_provider
        self._app_client = app_client
        self._config = config if config is not None else AppStateManagerConfig()

    @property
    def repo_error_cache(self) -> RepoErrorCache:
        return self._repo_error_cache

    @property
    def diff_cache(self) -> DiffCache:
        return self._diff_cache

    async def get_repo_objs(
        self,
        app: Application,
        sources: list[ApplicationSource],
        app_label_key: str,
        revisions: list[str],
        no_cache: bool,
        no_revision_cache: bool,
        verify_signature: bool,
        project: AppProject,
        send_runtime_state: bool,
    ) -> tuple[list[dict[str, Any]], list[ManifestResponse], bool]:
        """Render the manifests of every source of the application.

        Returns the rendered objects of all sources, the response for each
        source and whether the revisions may contain changes. Any failure
        aborts the whole acquisition with a RepoException.
        """
        ts = TimingStats()
        try:
            helm_repos = self._permissions.get_permitted_repos(
                project, await self._repo_db.list_helm_repositories()
            )
            oci_repos = self._permissions.get_permitted_repos(
                project, await self._repo_db.list_oci_repositories()
            )
            ts.add_checkpoint("repo_ms")
            helm_creds = self._permissions.get_permitted_repo_creds(
                project, await self._repo_db.get_all_helm_repository_credentials()
            )
            oci_creds = self._permissions.get_permitted_repo_creds(
                project, await self._repo_db.get_all_oci_repository_credentials()
            )
            enabled_source_types = await self._settings.get_enabled_source_types()
            ts.add_checkpoint("plugins_ms")
            kustomize_options = await self._settings.get_kustomize_options()
            helm_options = await self._settings.get_helm_options()
            tracking_method = await self._settings.get_tracking_method()
            installation_id = await self._settings.get_installation_id()
        except AppStateException as err:
            raise RepoException(f"failed to load repository settings: {err}") from err

        try:
            cluster = await self._repo_db.get_destination_cluster(app.spec.destination)
        except AppStateException as err:
            raise RepoException(f"failed to get destination cluster: {err}") from err
        ts.add_checkpoint("build_options_ms")

        server_version = ""
        api_resources: list[APIResourceInfo] = []
        if send_runtime_state:
            try:
                server_version, api_resources = await self._live_state_cache.get_versions_info(
                    cluster
                )
            except AppStateException as err:
                raise RepoException(
                    f"failed to get cluster version for cluster {cluster.server!r}: {err}"
                ) from err

        revisions = list(revisions)
        try:
            ref_sources = await get_ref_sources(
                sources, project.name, self._repo_db.get_repository, revisions
            )
        except AppStateException as err:
            raise RepoException(f"failed to get ref sources: {err}") from err

        revisions_may_have_changes = False
        generate_paths = app.get_annotation(ANNOTATION_KEY_MANIFEST_GENERATE_PATHS)
        instance_name = app.instance_name(self._config.namespace)
        app_namespace = app.spec.destination.namespace if send_runtime_state else ""
        api_versions = api_resources_to_strings(api_resources, True)

        target_objs: list[dict[str, Any]] = []
        manifest_infos: list[ManifestResponse] = []
        for i, source in enumerate(sources):
            position = f"source {i + 1} of {len(sources)}"
            if len(revisions) <= i:
                revisions.append("")
            if not revisions[i]:
                revisions[i] = source.target_revision
            try:
                repo = await self._repo_db.get_repository(source.repo_url, project.name)
            except AppStateException as err:
                raise RepoException(f"failed to get repo {source.repo_url!r}: {err}") from err

            synced_revision = app.status.sync.revision
            if app.spec.has_multiple_sources():
                synced = app.status.sync.revisions
                synced_revision = synced[i] if i < len(synced) else ""

            revision = revisions[i]
            if (
                not source.is_helm()
                and not source.is_oci()
                and synced_revision
                and generate_paths
            ):
                try:
                    update = await self._repo_server.update_revision_for_paths(
                        UpdateRevisionForPathsRequest(
                            repo=repo,
                            revision=revision,
                            synced_revision=synced_revision,
                            paths=get_app_refresh_paths(app),
                            application_source=source,
                            app_name=instance_name,
                            app_label_key=app_label_key,
                            namespace=app_namespace,
                            no_revision_cache=no_revision_cache,
                            kube_version=server_version,
                            api_versions=api_versions,
                            tracking_method=tracking_method,
                            ref_sources=ref_sources,
                            has_multiple_sources=app.spec.has_multiple_sources(),
                            installation_id=installation_id,
                        )
                    )
                except AppStateException as err:
                    raise RepoException(
                        f"failed to compare revisions for {position}: {err}"
                    ) from err
                if update.changes:
                    revisions_may_have_changes = True
                # Render the revision that was checked for changes since HEAD may move
                if update.revision:
                    revision = update.revision
            else:
                revisions_may_have_changes = True

            repos = list(helm_repos)
            repo_creds = list(helm_creds)
            # OCI images may be helm charts with helm dependencies
            if source.is_oci():
                repos.extend(oci_repos)
                repo_creds.extend(oci_creds)

            _LOGGER.debug("Generating manifests for source %s revision %s", source, revision)
            try:
                manifest_info = await self._repo_server.generate_manifest(
                    ManifestRequest(
                        repo=repo,
                        revision=revision,
                        application_source=source,
                        app_name=instance_name,
                        app_label_key=app_label_key,
                        namespace=app_namespace,
                        repos=repos,
                        helm_repo_creds=repo_creds,
                        no_cache=no_cache,
                        no_revision_cache=no_revision_cache,
                        kustomize_options=kustomize_options,
                        helm_options=helm_options,
                        kube_version=server_version,
                        api_versions=api_versions,
                        verify_signature=verify_signature,
                        tracking_method=tracking_method,
                        enabled_source_types=enabled_source_types,
                        has_multiple_sources=app.spec.has_multiple_sources(),
                        ref_sources=ref_sources,
                        project_name=project.name,
                        project_source_repos=list(project.source_repos),
                        annotation_manifest_generate_paths=generate_paths,
                        installation_id=installation_id,
                    )
                )
            except AppStateException as err:
                raise RepoException(f"failed to generate manifest for {position}: {err}") from err

            try:
                objs = unmarshal_manifests(manifest_info.manifests)
            except AppStateException as err:
                raise RepoException(f"failed to unmarshal manifests for {position}: {err}") from err
            target_objs.extend(objs)
            manifest_infos.append(manifest_info)

        ts.add_checkpoint("manifests_ms")
        _LOGGER.info("GetRepoObjs stats for %s: %s", app.qualified_name(), ts.summary())
        return target_objs, manifest_infos, revisions_may_have_changes

    async def resolve_git_revision(self, repo_url: str, revision: str) -> str:
        """Resolve a branch, tag or HEAD of a git repository to a commit."""
        try:
            repo = await self._repo_db.get_repository(repo_url, "")
            return await self._repo_server.resolve_revision(
                ResolveRevisionRequest(
                    repo=repo,
                    ambiguous_revision=revision,
                    source=ApplicationSource(repo_url=repo_url, target_revision=revision),
                )
            )
        except AppStateException as err:
            raise RepoException(
                f"failed to resolve revision {revision!r} of {repo_url}: {err}"
            ) from err

    async def _load_settings(self) -> _ComparisonSettings:
        return _ComparisonSettings(
            resource_overrides=await self._settings.get_resource_overrides(),
            app_label_key=await self._settings.get_app_instance_label_key(),
            resources_filter=await self._settings.get_resources_filter(),
            installation_id=await self._settings.get_installation_id(),
            tracking_method=await self._settings.get_tracking_method(),
        )

    async def compare_app_state(
        self,
        app: Application,
        project: AppProject,
        revisions: list[str],
        sources: list[ApplicationSource],
        no_cache: bool = False,
        no_revision_cache: bool = False,
        local_manifests: list[str] | None = None,
        has_multiple_sources: bool | None = None,
    ) -> ComparisonResult:
        """Compare the desired state of the application to its live state.

        Conditions of the compared types are written onto the application
        status. Raises CompareStateRepoError while a rendering failure is
        suppressed by the grace period.
        """
        ts = TimingStats()
        state = _CompareState(app)
        if has_multiple_sources is None:
            has_multiple_sources = app.spec.has_multiple_sources()

        sync_status = SyncStatus(
            status=SyncStatusCode.UNKNOWN,
            compared_to=ComparedTo(
                destination=app.spec.destination,
                ignore_differences=list(app.spec.ignore_differences),
            ),
        )
        if has_multiple_sources:
            sync_status.compared_to.sources = list(sources)
            sync_status.revisions = list(revisions)
        else:
            if sources:
                sync_status.compared_to.source = sources[0]
            else:
                _LOGGER.warning("%s: sources should not be empty", app.qualified_name())
            if revisions:
                sync_status.revision = revisions[0]

        state.enter(ComparePhase.LOADING_SETTINGS)
        try:
            settings = await self._load_settings()
        except AppStateException as err:
            _LOGGER.warning(
                "%s: unable to load comparison settings: %s", app.qualified_name(), err
            )
            ts.add_checkpoint("settings_ms")
            return ComparisonResult(
                sync_status=sync_status,
                health_status=HealthStatus(HealthStatusCode.UNKNOWN),
                failed_to_load=True,
                timings=ts.timings(),
            )
        ts.add_checkpoint("settings_ms")
        tracking = ResourceTracking(
            settings.tracking_method, settings.app_label_key, settings.installation_id
        )
        instance_name = app.instance_name(self._config.namespace)

        verify_signature = project.requires_signed_revisions() and self._config.gpg_enabled

        cluster = await self._repo_db.get_destination_cluster(app.spec.destination)
        _LOGGER.info(
            "Comparing app state of %s (cluster: %s, namespace: %s)",
            app.qualified_name(),
            app.spec.destination.server or cluster.server,
            app.spec.destination.namespace,
        )

        state.enter(ComparePhase.ACQUIRING_TARGET_STATE)
        target_objs: list[dict[str, Any]] = []
        manifest_infos: list[ManifestResponse] = []
        revisions_may_have_changes = False
        if not local_manifests:
            if len(revisions) != len(sources):
                revisions = [source.target_revision for source in sources]
            try:
                target_objs, manifest_infos, revisions_may_have_changes = (
                    await self.get_repo_objs(
                        app,
                        sources,
                        settings.app_label_key,
                        revisions,
                        no_cache,
                        no_revision_cache,
                        verify_signature,
                        project,
                        True,
                    )
                )
            except AppStateException as err:
                self._check_repo_error_grace_period(app, err, no_revision_cache)
                state.add(f"Failed to load target state: {err}", failed=True)
            else:
                self._repo_error_cache.delete(app.qualified_name())
        elif verify_signature:
            state.add(
                "Cannot use local manifests when signature verification is required",
                failed=True,
            )
        else:
            try:
                target_objs = unmarshal_manifests(local_manifests)
            except AppStateException as err:
                state.add(f"Failed to load local manifests: {err}", failed=True)
        ts.add_checkpoint("git_ms")

        state.enter(ComparePhase.NORMALIZING_AND_DEDUPING)
        info_provider = await self._get_info_provider(cluster)
        try:
            normalize_cluster_scope_tracking(
                target_objs,
                info_provider,
                lambda obj: tracking.set_app_instance(
                    obj, instance_name, app.spec.destination.namespace
                ),
            )
        except AppStateException as err:
            state.add(f"Failed to normalize cluster-scoped resource tracking: {err}")

        target_objs, dedup_conditions = deduplicate_target_objects(
            app.spec.destination.namespace, list(target_objs), info_provider
        )
        state.extend(dedup_conditions)

        target_ns_exists = False
        kept: list[dict[str, Any]] = []
        for obj in target_objs:
            gvk = group_version_kind(obj)
            if settings.resources_filter.is_excluded_resource(gvk.group, gvk.kind, cluster.server):
                state.add(
                    f"Resource {gvk.group}/{gvk.kind} {get_name(obj)} is excluded in the settings",
                    ConditionType.EXCLUDED_RESOURCE_WARNING,
                )
                continue
            if is_managed_namespace(obj, app):
                target_ns_exists = True
            kept.append(obj)
        target_objs = kept
        ts.add_checkpoint("dedup_ms")

        state.enter(ComparePhase.LOADING_LIVE_STATE)
        try:
            live_obj_by_key = await self._live_state_cache.get_managed_live_objs(
                cluster, app, target_objs
            )
        except AppStateException as err:
            _LOGGER.error("%s: failed to load live state: %s", app.qualified_name(), err)
            live_obj_by_key = {}
            state.add(f"Failed to load live state: {err}", failed=True)

        live_obj_by_key = {
            key: obj
            for key, obj in live_obj_by_key.items()
            if obj is not None and project.is_live_resource_permitted(obj, cluster)
        }

        reported_shared: set[ResourceKey] = set()
        for live in list(live_obj_by_key.values()):
            other = tracking.get_app_name(live)
            if other and other != instance_name:
                reported_shared.add(get_resource_key(live))
                state.add(
                    f"{live.get('kind')}/{get_name(live)} is part of applications "
                    f"{app.qualified_name()} and {other.replace('_', '/')}",
                    ConditionType.SHARED_RESOURCE_WARNING,
                )
            if is_managed_namespace(live, app) and not target_ns_exists:
                target_objs.append(managed_namespace_target(app, live))

        has_post_delete_hooks = any(is_post_delete_hook(obj) for obj in target_objs)
        reconciliation = reconcile(
            target_objs, live_obj_by_key, app.spec.destination.namespace, info_provider
        )
        ts.add_checkpoint("live_ms")

        state.enter(ComparePhase.COMPUTING_DIFF)
        compare_options = await self._get_compare_options()
        manifest_revisions = [info.revision for info in manifest_infos]

        server_side_diff = self._config.server_side_diff or app.has_annotation_option(
            ANNOTATION_COMPARE_OPTIONS, COMPARE_OPTION_SERVER_SIDE_DIFF
        )
        if app.has_annotation_option(
            ANNOTATION_COMPARE_OPTIONS, COMPARE_OPTION_NO_SERVER_SIDE_DIFF
        ):
            server_side_diff = False

        use_cache = use_diff_cache(
            no_cache,
            manifest_infos,
            sources,
            app,
            manifest_revisions,
            self._config.status_refresh_timeout_delta,
            server_side_diff,
        )
        builder = (
            DiffConfigBuilder()
            .with_diff_settings(
                app.spec.ignore_differences,
                settings.resource_overrides,
                compare_options.ignore_aggregated_roles,
                compare_options.ignore_resource_status_field,
            )
            .with_tracking(settings.app_label_key, settings.tracking_method)
        )
        if use_cache:
            builder.with_cache(self._diff_cache, instance_name)
        else:
            builder.with_no_cache()
        if app.has_annotation_option(
            ANNOTATION_COMPARE_OPTIONS, COMPARE_OPTION_INCLUDE_MUTATION_WEBHOOK
        ):
            builder.with_ignore_mutation_webhook(False)
        builder.with_server_side_diff(server_side_diff)
        if server_side_diff:
            if self._server_side_diff_provider is None:
                state.add(
                    "server side diff is enabled but no dry run provider is configured",
                    ConditionType.UNKNOWN_ERROR,
                )
            else:
                try:
                    builder.with_server_side_dry_runner(
                        await self._server_side_diff_provider.get_dry_runner(cluster)
                    )
                except AppStateException as err:
                    _LOGGER.error(
                        "%s: error getting server side diff dry runner: %s",
                        app.qualified_name(),
                        err,
                    )
                    state.add(str(err), ConditionType.UNKNOWN_ERROR)
        policy = app.spec.sync_policy
        if policy is not None and policy.has_sync_option(SYNC_OPTION_SERVER_SIDE_APPLY):
            builder.with_structured_merge_diff(True)
        diff_config = builder.build()

        try:
            diff_results = await state_diffs(
                reconciliation.lives, reconciliation.targets, diff_config
            )
        except AppStateException as err:
            diff_results = DiffResultList()
            state.add(f"Failed to compare desired state to live state: {err}", failed=True)
        else:
            self._diff_cache.set_app_managed_resources(
                instance_name,
                cached_resource_diffs(
                    reconciliation.lives, reconciliation.targets, diff_results, diff_config
                ),
            )
        ts.add_checkpoint("diff_ms")

        state.enter(ComparePhase.CLASSIFYING_SYNC)
        namespaced = await self._namespaced_lookup(cluster, reconciliation)
        classification = classify_sync_status(
            reconciliation.pairs,
            diff_results,
            app,
            project,
            tracking,
            namespaced.get,
            state.failed_to_load,
            reported_shared,
        )
        state.extend(classification.conditions)
        sync_code = classification.code
        if state.failed_to_load:
            sync_code = SyncStatusCode.UNKNOWN
        elif app.has_changed_managed_namespace_metadata():
            sync_code = SyncStatusCode.OUT_OF_SYNC
        sync_status.status = sync_code
        if has_multiple_sources:
            sync_status.revisions = manifest_revisions
        elif manifest_revisions:
            sync_status.revision = manifest_revisions[0]
        ts.add_checkpoint("sync_ms")

        state.enter(ComparePhase.EVALUATING_HEALTH)
        health_status = set_application_health(
            classification.resources, app, self._config.persist_resource_health
        )

        if verify_signature:
            for info in manifest_infos:
                state.extend(verify_gnupg_signature(info.revision, project, info))

        result = ComparisonResult(
            sync_status=sync_status,
            health_status=health_status,
            managed_resources=classification.resources,
            reconciliation=reconciliation,
            diff_config=diff_config,
            diff_result_list=diff_results,
            has_post_delete_hooks=has_post_delete_hooks,
            revisions_may_have_changes=revisions_may_have_changes,
            failed_to_load=state.failed_to_load,
            conditions=list(state.conditions),
        )
        if has_multiple_sources:
            result.app_source_types = [info.source_type for info in manifest_infos]
        elif manifest_infos:
            result.app_source_type = manifest_infos[0].source_type

        app.status.set_conditions(state.conditions, EVALUATED_CONDITION_TYPES)
        ts.add_checkpoint("health_ms")
        state.enter(ComparePhase.DONE)
        result.timings = ts.timings()
        return result

    def _check_repo_error_grace_period(
        self, app: Application, err: Exception, no_revision_cache: bool
    ) -> None:
        """Raise CompareStateRepoError if the failure is within its grace period.

        A forced deep comparison (`no_revision_cache`) is never suppressed and
        neither starts nor resets the grace period.
        """
        key = app.qualified_name()
        if (first_seen := self._repo_error_cache.load(key)) is not None:
            elapsed = self._repo_error_cache.now() - first_seen
            if (
                elapsed <= self._config.repo_error_grace_period_delta
                and not no_revision_cache
            ):
                _LOGGER.debug(
                    "%s: ignoring repo error within grace period: %s", key, err
                )
                raise CompareStateRepoError(key, err) from err
        elif not no_revision_cache:
            _LOGGER.debug("%s: ignoring new repo error: %s", key, err)
            self._repo_error_cache.store(key)
            raise CompareStateRepoError(key, err) from err

    async def _get_info_provider(self, cluster: Cluster) -> ResourceInfoProvider | None:
        try:
            return await self._live_state_cache.get_cluster_cache(cluster)
        except AppStateException as err:
            _LOGGER.warning(
                "Unable to get resource info for cluster %s, assuming namespaced: %s",
                cluster.server,
                err,
            )
            return None

    async def _get_compare_options(self) -> ResourceCompareOptions:
        try:
            return await self._settings.get_resource_compare_options()
        except AppStateException as err:
            _LOGGER.warning(
                "Could not get compare options (assuming defaults): %s", err
            )
            return ResourceCompareOptions()

    async def _namespaced_lookup(
        self, cluster: Cluster, reconciliation: ReconciliationResult
    ) -> dict[GroupKind, bool | None]:
        """Return the scope of each kind in the pairs, None when unknown."""
        result: dict[GroupKind, bool | None] = {}
        for pair in reconciliation.pairs:
            gk = group_version_kind(pair.obj).group_kind
            if gk in result:
                continue
            try:
                result[gk] = await self._live_state_cache.is_namespaced(cluster, gk)
            except AppStateException as err:
                _LOGGER.debug("Unknown scope of %s: %s", gk, err)
                result[gk] = None
        return result

    async def persist_revision_history(
        self,
        app: Application,
        revision: str,
        source: ApplicationSource | None,
        revisions: list[str],
        sources: list[ApplicationSource],
        has_multiple_sources: bool,
        started_at: datetime,
        initiated_by: OperationInitiator,
    ) -> None:
        """Append a deployment to the revision history and trim it to the limit."""
        history = list(app.status.history)
        next_id = history[-1].id + 1 if history else 0
        entry = RevisionHistory(
            id=next_id,
            deployed_at=utcnow(),
            deploy_started_at=started_at,
            initiated_by=initiated_by,
        )
        if has_multiple_sources:
            entry.sources = list(sources)
            entry.revisions = list(revisions)
        else:
            entry.revision = revision
            entry.source = source
        history.append(entry)

        limit = app.spec.get_revision_history_limit()
        if len(history) > limit:
            history = history[len(history) - limit :]
        app.status.history = history
        if self._app_client is None:
            _LOGGER.debug("%s: no application client, history not patched", app.qualified_name())
            return
        await self._app_client.patch_history(app, history)
