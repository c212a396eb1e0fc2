"""Tests for the application state manager."""

from datetime import timedelta
from typing import Any

import pytest

from appstate.config import AppStateManagerConfig
from appstate.diff import DiffCache
from appstate.exceptions import (
    ClusterException,
    CompareStateRepoError,
    SettingsException,
)
from appstate.in_memory import (
    InMemoryApplicationClient,
    InMemoryDryRunner,
    InMemoryLiveStateCache,
    InMemoryRepoServer,
    InMemoryRepositoryDB,
    InMemoryServerSideDiffProvider,
    InMemorySettingsManager,
)
from appstate.manager import AppStateManager, spec_equals_compare_to, use_diff_cache
from appstate.manifest import (
    Application,
    ApplicationDestination,
    ApplicationSource,
    ConditionType,
    HealthStatusCode,
    OperationInitiator,
    SyncStatusCode,
    utcnow,
)
from appstate.project import AppProject
from appstate.reposerver import ManifestResponse
from appstate.repo_error_cache import RepoErrorCache
from appstate.resource import ResourceKey
from appstate.settings import ResourceOverride

from conftest import (
    CONTROLLER_NAMESPACE,
    REPO_URL,
    REVISION,
    SERVER,
    FakeClock,
    app_doc,
    config_map,
    deployment,
    dump,
    project_doc,
    service,
    tracking_id,
)

QUALIFIED_NAME = "argocd/guestbook"


def _manager(
    repo_server: InMemoryRepoServer,
    live_state_cache: InMemoryLiveStateCache | None = None,
    settings_manager: InMemorySettingsManager | None = None,
    clock: FakeClock | None = None,
    **kwargs: Any,
) -> AppStateManager:
    return AppStateManager(
        repo_db=InMemoryRepositoryDB(),
        repo_server=repo_server,
        settings_manager=settings_manager or InMemorySettingsManager(),
        live_state_cache=live_state_cache or InMemoryLiveStateCache(),
        repo_error_cache=RepoErrorCache(clock=clock or FakeClock()),
        config=AppStateManagerConfig(namespace=CONTROLLER_NAMESPACE),
        **kwargs,
    )


async def _compare(
    manager: AppStateManager,
    app: Application,
    project: AppProject,
    **kwargs: Any,
):  # type: ignore[no-untyped-def]
    sources = app.spec.get_sources()
    return await manager.compare_app_state(
        app, project, [s.target_revision for s in sources], sources, **kwargs
    )


def _condition_messages(result: Any, condition_type: ConditionType) -> list[str]:
    return [c.message for c in result.conditions if c.type == condition_type]


async def test_synced(
    manager: AppStateManager, app: Application, project: AppProject
) -> None:
    """Test an application whose live state matches its manifests."""
    result = await _compare(manager, app, project)

    assert result.sync_status.status == SyncStatusCode.SYNCED
    assert result.sync_status.revision == REVISION
    assert result.health_status.status == HealthStatusCode.HEALTHY
    assert not result.failed_to_load
    assert not result.conditions
    assert result.app_source_type == "Directory"
    assert [(r.kind, r.name, r.status) for r in result.resources] == [
        ("Deployment", "guestbook-ui", SyncStatusCode.SYNCED),
        ("Service", "guestbook-ui", SyncStatusCode.SYNCED),
    ]
    assert [m.status for m in result.managed_resources] == result.resources
    assert set(result.timings) >= {"settings_ms", "git_ms", "diff_ms", "health_ms"}


async def test_modified_resource_out_of_sync(
    repo_server: InMemoryRepoServer, app: Application, project: AppProject
) -> None:
    """Test that a changed field makes the resource and application OutOfSync."""
    live = deployment(live=True)
    live["spec"]["replicas"] = 3
    live["status"]["replicas"] = 3
    manager = _manager(repo_server, InMemoryLiveStateCache([live, service(live=True)]))

    result = await _compare(manager, app, project)

    assert result.sync_status.status == SyncStatusCode.OUT_OF_SYNC
    statuses = {r.kind: r.status for r in result.resources}
    assert statuses == {
        "Deployment": SyncStatusCode.OUT_OF_SYNC,
        "Service": SyncStatusCode.SYNCED,
    }
    assert result.diff_result_list.modified
    diff = "\n".join(result.managed_resources[0].diff.diff_lines())
    assert "-  replicas: 3" in diff
    assert "+  replicas: 1" in diff


async def test_idempotent(
    manager: AppStateManager, app: Application, project: AppProject
) -> None:
    """Test that repeating a comparison gives the same result."""
    first = await _compare(manager, app, project)
    second = await _compare(manager, app, project)

    assert first.sync_status == second.sync_status
    assert first.resources == second.resources
    assert first.conditions == second.conditions


async def test_chart_source_without_synced_revision(project: AppProject) -> None:
    """Test a helm chart source that has never been synced."""
    app = Application.parse_doc(
        app_doc(
            source={
                "repoURL": "https://charts.example.com",
                "chart": "guestbook",
                "targetRevision": "1.2.3",
            }
        )
    )
    repo_server = InMemoryRepoServer(
        manifests={"https://charts.example.com": [dump(deployment()), dump(service())]},
        source_type="Helm",
    )
    manager = _manager(repo_server)

    result = await _compare(manager, app, project)

    assert result.revisions_may_have_changes
    assert len([t for t in result.reconciliation.targets if t is not None]) == 2
    assert result.sync_status.revision == "1.2.3"
    assert result.sync_status.status == SyncStatusCode.OUT_OF_SYNC
    assert result.health_status.status == HealthStatusCode.MISSING
    assert result.app_source_type == "Helm"
    assert not repo_server.update_requests


async def test_revision_for_paths_checked(project: AppProject) -> None:
    """Test that an annotated git source asks whether its paths changed."""
    doc = app_doc()
    doc["metadata"]["annotations"] = {
        "argocd.argoproj.io/manifest-generate-paths": ".;/shared"
    }
    doc["status"] = {"sync": {"revision": "0000000"}}
    app = Application.parse_doc(doc)
    repo_server = InMemoryRepoServer(
        manifests={REPO_URL: [dump(deployment())]},
        revisions={REPO_URL: REVISION},
        path_changes=False,
    )
    manager = _manager(repo_server)

    result = await _compare(manager, app, project)

    assert not result.revisions_may_have_changes
    assert len(repo_server.update_requests) == 1
    update = repo_server.update_requests[0]
    assert update.synced_revision == "0000000"
    assert update.paths == ["guestbook", "shared"]
    assert repo_server.manifest_requests[0].revision == REVISION


async def test_manifest_request(
    manager: AppStateManager,
    repo_server: InMemoryRepoServer,
    app: Application,
    project: AppProject,
) -> None:
    """Test the policy passed to the rendering service."""
    await _compare(manager, app, project)

    assert len(repo_server.manifest_requests) == 1
    request = repo_server.manifest_requests[0]
    assert request.app_name == "guestbook"
    assert request.app_label_key == "app.kubernetes.io/instance"
    assert request.tracking_method == "annotation"
    assert request.namespace == "default"
    assert request.kube_version == "1.30"
    assert "apps/v1/Deployment" in request.api_versions
    assert request.project_name == "default"
    assert request.project_source_repos == ["*"]
    assert not request.verify_signature


async def test_shared_resource_with_mismatched_tracking_id(
    repo_server: InMemoryRepoServer, app: Application, project: AppProject
) -> None:
    """Test a live object carrying a tracking id that names another object."""
    copied = deployment(name="guestbook-ui-copy", live=True)
    copied["metadata"]["annotations"]["argocd.argoproj.io/tracking-id"] = tracking_id(
        "Deployment", "guestbook-ui"
    )
    cache = InMemoryLiveStateCache([deployment(live=True), service(live=True), copied])
    manager = _manager(repo_server, cache)

    result = await _compare(manager, app, project)

    messages = _condition_messages(result, ConditionType.SHARED_RESOURCE_WARNING)
    assert len(messages) == 1
    assert "Deployment/guestbook-ui-copy" in messages[0]
    assert result.sync_status.status == SyncStatusCode.SYNCED
    extra = next(r for r in result.resources if r.name == "guestbook-ui-copy")
    assert extra.status is None
    assert not extra.requires_pruning


async def test_shared_resource_owned_by_other_application(
    repo_server: InMemoryRepoServer, app: Application, project: AppProject
) -> None:
    """Test a live object that matches a target but belongs to another application."""
    live = deployment(live=True)
    live["metadata"]["annotations"]["argocd.argoproj.io/tracking-id"] = (
        "other_app:apps/Deployment:default/guestbook-ui"
    )
    manager = _manager(repo_server, InMemoryLiveStateCache([live, service(live=True)]))

    result = await _compare(manager, app, project)

    assert _condition_messages(result, ConditionType.SHARED_RESOURCE_WARNING) == [
        "Deployment/guestbook-ui is part of applications argocd/guestbook and other/app"
    ]


async def test_extraneous_resource_requires_pruning(
    repo_server: InMemoryRepoServer, app: Application, project: AppProject
) -> None:
    """Test a live object of the application that is no longer rendered."""
    extra = config_map("old-config")
    extra["metadata"].update(
        {
            "namespace": "default",
            "annotations": {
                "argocd.argoproj.io/tracking-id": tracking_id(
                    "ConfigMap", "old-config", group=""
                )
            },
        }
    )
    cache = InMemoryLiveStateCache([deployment(live=True), service(live=True), extra])
    manager = _manager(repo_server, cache)

    result = await _compare(manager, app, project)

    assert result.sync_status.status == SyncStatusCode.OUT_OF_SYNC
    status = next(r for r in result.resources if r.name == "old-config")
    assert status.status == SyncStatusCode.OUT_OF_SYNC
    assert status.requires_pruning


async def test_ignore_extraneous(
    repo_server: InMemoryRepoServer, app: Application, project: AppProject
) -> None:
    """Test that an ignore extraneous resource does not change the aggregate."""
    extra = config_map("old-config")
    extra["metadata"].update(
        {
            "namespace": "default",
            "annotations": {
                "argocd.argoproj.io/tracking-id": tracking_id(
                    "ConfigMap", "old-config", group=""
                ),
                "argocd.argoproj.io/compare-options": "IgnoreExtraneous",
            },
        }
    )
    cache = InMemoryLiveStateCache([deployment(live=True), service(live=True), extra])
    manager = _manager(repo_server, cache)

    result = await _compare(manager, app, project)

    assert result.sync_status.status == SyncStatusCode.SYNCED
    status = next(r for r in result.resources if r.name == "old-config")
    assert status.status == SyncStatusCode.OUT_OF_SYNC
    assert status.requires_pruning


async def test_repeated_resources(app: Application, project: AppProject) -> None:
    """Test that a resource rendered twice is kept once, with a warning."""
    repo_server = InMemoryRepoServer(
        manifests={
            REPO_URL: [
                dump(config_map("config", {"a": "1"})),
                dump(config_map("config", {"a": "2"})),
            ]
        }
    )
    manager = _manager(repo_server)

    result = await _compare(manager, app, project)

    targets = [t for t in result.reconciliation.targets if t is not None]
    assert len(targets) == 1
    assert targets[0]["data"] == {"a": "2"}
    assert _condition_messages(result, ConditionType.REPEATED_RESOURCE_WARNING) == [
        "Resource /ConfigMap/default/config appeared 2 times among application resources."
    ]


async def test_excluded_resource(app: Application, project: AppProject) -> None:
    """Test that excluded kinds are dropped from the targets."""
    event = {"apiVersion": "v1", "kind": "Event", "metadata": {"name": "started"}}
    repo_server = InMemoryRepoServer(
        manifests={REPO_URL: [dump(event), dump(config_map("config"))]}
    )
    manager = _manager(repo_server)

    result = await _compare(manager, app, project)

    assert [r.kind for r in result.resources] == ["ConfigMap"]
    assert _condition_messages(result, ConditionType.EXCLUDED_RESOURCE_WARNING) == [
        "Resource /Event started is excluded in the settings"
    ]


async def test_cluster_scoped_namespace_cleared(
    app: Application, project: AppProject
) -> None:
    """Test that a cluster-scoped target loses its namespace and tracking is rewritten."""
    role = {
        "apiVersion": "rbac.authorization.k8s.io/v1",
        "kind": "ClusterRole",
        "metadata": {"name": "reader", "namespace": "default"},
        "rules": [],
    }
    repo_server = InMemoryRepoServer(manifests={REPO_URL: [dump(role)]})
    manager = _manager(repo_server)

    result = await _compare(manager, app, project)

    target = result.reconciliation.targets[0]
    assert target is not None
    assert "namespace" not in target["metadata"]
    assert target["metadata"]["annotations"]["argocd.argoproj.io/tracking-id"] == (
        "guestbook:rbac.authorization.k8s.io/ClusterRole:default/reader"
    )
    assert result.resources[0].namespace == ""
    assert not _condition_messages(result, ConditionType.INVALID_SPEC_ERROR)


async def test_kind_not_permitted(
    repo_server: InMemoryRepoServer,
    live_state_cache: InMemoryLiveStateCache,
    app: Application,
) -> None:
    """Test that resources of kinds the project does not permit are Unknown."""
    project = AppProject.parse_doc(
        project_doc(namespaceResourceBlacklist=[{"group": "", "kind": "Service"}])
    )
    manager = _manager(repo_server, live_state_cache)

    result = await _compare(manager, app, project)

    statuses = {r.kind: r.status for r in result.resources}
    assert statuses["Service"] == SyncStatusCode.UNKNOWN
    assert statuses["Deployment"] == SyncStatusCode.SYNCED


async def test_hooks_not_compared(app: Application, project: AppProject) -> None:
    """Test that hooks are split from the targets and do not affect the sync status."""
    job = {
        "apiVersion": "batch/v1",
        "kind": "Job",
        "metadata": {
            "name": "migrate",
            "annotations": {"argocd.argoproj.io/hook": "PreSync"},
        },
    }
    cleanup = {
        "apiVersion": "batch/v1",
        "kind": "Job",
        "metadata": {
            "name": "cleanup",
            "annotations": {"argocd.argoproj.io/hook": "PostDelete"},
        },
    }
    repo_server = InMemoryRepoServer(manifests={REPO_URL: [dump(job), dump(cleanup)]})
    manager = _manager(repo_server)

    result = await _compare(manager, app, project)

    assert result.sync_status.status == SyncStatusCode.SYNCED
    assert [h["metadata"]["name"] for h in result.reconciliation.hooks] == [
        "migrate",
        "cleanup",
    ]
    assert result.has_post_delete_hooks
    assert not result.resources


async def test_signature_required_but_missing(
    repo_server: InMemoryRepoServer,
    live_state_cache: InMemoryLiveStateCache,
    app: Application,
) -> None:
    """Test that an unsigned revision is reported when the project requires signatures."""
    project = AppProject.parse_doc(
        project_doc(signatureKeys=[{"keyID": "4AEE18F83AFDEB23"}])
    )
    manager = _manager(repo_server, live_state_cache)

    result = await _compare(manager, app, project)

    errors = _condition_messages(result, ConditionType.COMPARISON_ERROR)
    assert len(errors) == 1
    assert "not signed" in errors[0]
    assert REVISION in errors[0]
    assert result.sync_status.status == SyncStatusCode.SYNCED
    assert repo_server.manifest_requests[0].verify_signature
    assert [c.type for c in app.status.conditions] == [ConditionType.COMPARISON_ERROR]


async def test_signature_ignored_when_gpg_disabled(
    repo_server: InMemoryRepoServer,
    live_state_cache: InMemoryLiveStateCache,
    app: Application,
) -> None:
    """Test that signatures are not checked when verification is globally disabled."""
    project = AppProject.parse_doc(
        project_doc(signatureKeys=[{"keyID": "4AEE18F83AFDEB23"}])
    )
    manager = AppStateManager(
        repo_db=InMemoryRepositoryDB(),
        repo_server=repo_server,
        settings_manager=InMemorySettingsManager(),
        live_state_cache=live_state_cache,
        config=AppStateManagerConfig(gpg_enabled=False),
    )

    result = await _compare(manager, app, project)

    assert not result.conditions


async def test_local_manifests(
    live_state_cache: InMemoryLiveStateCache,
    app: Application,
    project: AppProject,
) -> None:
    """Test comparing local manifests instead of rendering the sources."""
    repo_server = InMemoryRepoServer()
    manager = _manager(repo_server, live_state_cache)

    result = await _compare(
        manager,
        app,
        project,
        local_manifests=[dump(deployment()), dump(service())],
    )

    assert result.sync_status.status == SyncStatusCode.SYNCED
    assert not repo_server.manifest_requests


async def test_local_manifests_refused_when_signature_required(
    live_state_cache: InMemoryLiveStateCache, app: Application
) -> None:
    """Test that local manifests cannot be used for projects that require signatures."""
    project = AppProject.parse_doc(
        project_doc(signatureKeys=[{"keyID": "4AEE18F83AFDEB23"}])
    )
    manager = _manager(InMemoryRepoServer(), live_state_cache)

    result = await _compare(
        manager, app, project, local_manifests=[dump(deployment())]
    )

    assert result.failed_to_load
    assert result.sync_status.status == SyncStatusCode.UNKNOWN
    assert _condition_messages(result, ConditionType.COMPARISON_ERROR) == [
        "Cannot use local manifests when signature verification is required"
    ]


class FailingSettingsManager(InMemorySettingsManager):
    """Settings manager whose lookups fail."""

    async def get_resource_overrides(self) -> dict[str, ResourceOverride]:
        raise SettingsException("settings unavailable")


async def test_settings_failure(
    repo_server: InMemoryRepoServer, app: Application, project: AppProject
) -> None:
    """Test that a settings failure ends the comparison with an Unknown result."""
    manager = _manager(repo_server, settings_manager=FailingSettingsManager())

    result = await _compare(manager, app, project)

    assert result.failed_to_load
    assert result.sync_status.status == SyncStatusCode.UNKNOWN
    assert result.health_status.status == HealthStatusCode.UNKNOWN
    assert not result.managed_resources
    assert not repo_server.manifest_requests


class FailingLiveStateCache(InMemoryLiveStateCache):
    """Live state cache that cannot reach the cluster."""

    async def get_managed_live_objs(self, cluster, app, target_objs):  # type: ignore[no-untyped-def]
        raise ClusterException("cluster unreachable")


async def test_live_state_failure(
    repo_server: InMemoryRepoServer, app: Application, project: AppProject
) -> None:
    """Test that a live state failure degrades every status to Unknown."""
    manager = _manager(repo_server, FailingLiveStateCache())

    result = await _compare(manager, app, project)

    assert result.failed_to_load
    assert result.sync_status.status == SyncStatusCode.UNKNOWN
    assert [r.status for r in result.resources] == [
        SyncStatusCode.UNKNOWN,
        SyncStatusCode.UNKNOWN,
    ]
    assert _condition_messages(result, ConditionType.COMPARISON_ERROR) == [
        "Failed to load live state: cluster unreachable"
    ]


async def test_repo_error_first_failure_suppressed(
    app: Application, project: AppProject
) -> None:
    """Test that the first rendering failure starts the grace period."""
    clock = FakeClock()
    manager = _manager(InMemoryRepoServer(), clock=clock)

    with pytest.raises(CompareStateRepoError) as exc_info:
        await _compare(manager, app, project)

    assert exc_info.value.app_name == QUALIFIED_NAME
    assert manager.repo_error_cache.load(QUALIFIED_NAME) == clock.now


async def test_repo_error_within_grace_period(
    app: Application, project: AppProject
) -> None:
    """Test that later failures within the grace period keep the first timestamp."""
    clock = FakeClock()
    manager = _manager(InMemoryRepoServer(), clock=clock)
    with pytest.raises(CompareStateRepoError):
        await _compare(manager, app, project)
    first_seen = clock.now

    clock.advance(60)
    with pytest.raises(CompareStateRepoError):
        await _compare(manager, app, project)

    assert manager.repo_error_cache.load(QUALIFIED_NAME) == first_seen


async def test_repo_error_after_grace_period(
    app: Application, project: AppProject
) -> None:
    """Test that failures after the grace period degrade to an Unknown result."""
    clock = FakeClock()
    manager = _manager(InMemoryRepoServer(), clock=clock)
    with pytest.raises(CompareStateRepoError):
        await _compare(manager, app, project)

    clock.advance(181)
    result = await _compare(manager, app, project)

    assert result.failed_to_load
    assert result.sync_status.status == SyncStatusCode.UNKNOWN
    errors = _condition_messages(result, ConditionType.COMPARISON_ERROR)
    assert len(errors) == 1
    assert errors[0].startswith(
        "Failed to load target state: failed to generate manifest for source 1 of 1"
    )
    assert QUALIFIED_NAME in manager.repo_error_cache


async def test_repo_error_cleared_on_success(
    repo_server: InMemoryRepoServer, app: Application, project: AppProject
) -> None:
    """Test that a successful rendering clears the stored failure."""
    manager = _manager(repo_server)
    manager.repo_error_cache.store(QUALIFIED_NAME)

    await _compare(manager, app, project)

    assert QUALIFIED_NAME not in manager.repo_error_cache
    assert len(manager.repo_error_cache) == 0


async def test_repo_error_forced_deep_compare(
    app: Application, project: AppProject
) -> None:
    """Test that a forced deep compare is never suppressed and leaves the timer alone."""
    clock = FakeClock()
    manager = _manager(InMemoryRepoServer(), clock=clock)

    result = await _compare(manager, app, project, no_revision_cache=True)

    assert result.failed_to_load
    assert result.sync_status.status == SyncStatusCode.UNKNOWN
    assert len(manager.repo_error_cache) == 0

    with pytest.raises(CompareStateRepoError):
        await _compare(manager, app, project)
    first_seen = clock.now
    clock.advance(10)

    result = await _compare(manager, app, project, no_revision_cache=True)

    assert result.failed_to_load
    assert manager.repo_error_cache.load(QUALIFIED_NAME) == first_seen


async def test_repo_error_cache_shared_between_managers(
    app: Application, project: AppProject
) -> None:
    """Test that managers given the same failure cache see each other's entries."""
    clock = FakeClock()
    shared = RepoErrorCache(clock=clock)
    diff_cache = DiffCache()
    managers = [
        AppStateManager(
            repo_db=InMemoryRepositoryDB(),
            repo_server=InMemoryRepoServer(),
            settings_manager=InMemorySettingsManager(),
            live_state_cache=InMemoryLiveStateCache(),
            repo_error_cache=shared,
            diff_cache=diff_cache,
            config=AppStateManagerConfig(namespace=CONTROLLER_NAMESPACE),
        )
        for _ in range(2)
    ]
    assert all(manager.repo_error_cache is shared for manager in managers)
    assert all(manager.diff_cache is diff_cache for manager in managers)

    with pytest.raises(CompareStateRepoError):
        await _compare(managers[0], app, project)
    first_seen = clock.now

    clock.advance(181)
    result = await _compare(managers[1], app, project)

    assert result.failed_to_load
    assert shared.load(QUALIFIED_NAME) == first_seen


async def test_multiple_sources(project: AppProject) -> None:
    """Test an application with two sources, one referencing the other."""
    app = Application.parse_doc(
        app_doc(
            source=None,
            sources=[
                {
                    "repoURL": "https://charts.example.com",
                    "chart": "guestbook",
                    "targetRevision": "1.2.3",
                },
                {
                    "repoURL": REPO_URL,
                    "targetRevision": "main",
                    "ref": "values",
                },
            ],
        )
    )
    repo_server = InMemoryRepoServer(
        manifests={
            "https://charts.example.com": [dump(deployment())],
            REPO_URL: [dump(config_map("values"))],
        },
        revisions={REPO_URL: REVISION},
    )
    manager = _manager(repo_server)

    result = await _compare(manager, app, project)

    assert result.sync_status.revisions == ["1.2.3", REVISION]
    assert result.sync_status.revision == ""
    assert result.sync_status.compared_to.sources == app.spec.sources
    assert result.app_source_types == ["Directory", "Directory"]
    assert len(repo_server.manifest_requests) == 2
    ref = repo_server.manifest_requests[0].ref_sources["$values"]
    assert ref.repo.url == REPO_URL
    assert ref.target_revision == "main"
    assert repo_server.manifest_requests[0].has_multiple_sources


async def test_server_side_diff(
    repo_server: InMemoryRepoServer,
    live_state_cache: InMemoryLiveStateCache,
    app: Application,
    project: AppProject,
) -> None:
    """Test that server side diff enabled by annotation uses the dry runner."""
    app.annotations["argocd.argoproj.io/compare-options"] = "ServerSideDiff=true"
    runner = InMemoryDryRunner()
    manager = _manager(
        repo_server,
        live_state_cache,
        server_side_diff_provider=InMemoryServerSideDiffProvider(runner),
    )

    result = await _compare(manager, app, project)

    assert result.diff_config is not None
    assert result.diff_config.server_side_diff
    assert len(runner.calls) == 2
    assert all(manager_name == "argocd-controller" for _, manager_name in runner.calls)


async def test_server_side_diff_without_provider(
    repo_server: InMemoryRepoServer,
    live_state_cache: InMemoryLiveStateCache,
    app: Application,
    project: AppProject,
) -> None:
    """Test that server side diff without a dry run provider degrades the result."""
    app.annotations["argocd.argoproj.io/compare-options"] = "ServerSideDiff=true"
    manager = _manager(repo_server, live_state_cache)

    result = await _compare(manager, app, project)

    assert result.failed_to_load
    assert result.sync_status.status == SyncStatusCode.UNKNOWN
    assert _condition_messages(result, ConditionType.UNKNOWN_ERROR)


async def test_server_side_diff_disabled_by_annotation(
    repo_server: InMemoryRepoServer,
    live_state_cache: InMemoryLiveStateCache,
    app: Application,
    project: AppProject,
) -> None:
    """Test that the annotation turns off a globally enabled server side diff."""
    app.annotations["argocd.argoproj.io/compare-options"] = "ServerSideDiff=false"
    manager = AppStateManager(
        repo_db=InMemoryRepositoryDB(),
        repo_server=repo_server,
        settings_manager=InMemorySettingsManager(),
        live_state_cache=live_state_cache,
        config=AppStateManagerConfig(server_side_diff=True),
    )

    result = await _compare(manager, app, project)

    assert result.diff_config is not None
    assert not result.diff_config.server_side_diff
    assert result.sync_status.status == SyncStatusCode.SYNCED


async def test_diff_cache_written(
    repo_server: InMemoryRepoServer,
    live_state_cache: InMemoryLiveStateCache,
    app: Application,
    project: AppProject,
) -> None:
    """Test that the diff results are remembered per application."""
    diff_cache = DiffCache()
    manager = _manager(repo_server, live_state_cache, diff_cache=diff_cache)

    await _compare(manager, app, project)

    entries = diff_cache.get_app_managed_resources("guestbook")
    assert set(entries) == {
        ResourceKey("apps", "Deployment", "default", "guestbook-ui"),
        ResourceKey("", "Service", "default", "guestbook-ui"),
    }


async def test_managed_namespace(project: AppProject) -> None:
    """Test that a live managed namespace is compared against a synthetic target."""
    app = Application.parse_doc(
        app_doc(
            destination={"server": "https://kubernetes.default.svc", "namespace": "guestbook"},
            syncPolicy={"managedNamespaceMetadata": {"labels": {"team": "a"}}},
        )
    )
    namespace = {
        "apiVersion": "v1",
        "kind": "Namespace",
        "metadata": {
            "name": "guestbook",
            "labels": {"team": "a"},
            "annotations": {
                "argocd.argoproj.io/tracking-id": "guestbook:/Namespace:guestbook/guestbook",
                "argocd.argoproj.io/sync-options": "ServerSideApply=true",
            },
        },
    }
    repo_server = InMemoryRepoServer(manifests={REPO_URL: []})
    manager = _manager(repo_server, InMemoryLiveStateCache([namespace]))

    result = await _compare(manager, app, project)

    assert len(result.managed_resources) == 1
    res = result.managed_resources[0]
    assert res.target is not None
    assert res.target["metadata"]["labels"] == {"team": "a"}
    assert res.status.status == SyncStatusCode.SYNCED
    assert result.sync_status.status == SyncStatusCode.SYNCED


async def test_conditions_written_to_status(
    app: Application, project: AppProject
) -> None:
    """Test that evaluated condition types replace earlier conditions of those types."""
    repo_server = InMemoryRepoServer(
        manifests={
            REPO_URL: [dump(config_map("config")), dump(config_map("config"))]
        }
    )
    manager = _manager(repo_server)

    await _compare(manager, app, project)
    assert [c.type for c in app.status.conditions] == [
        ConditionType.REPEATED_RESOURCE_WARNING
    ]

    repo_server.manifests[REPO_URL] = [dump(config_map("config"))]
    await _compare(manager, app, project)
    assert not app.status.conditions


def _cache_app(reconciled_ago: timedelta = timedelta(seconds=10)) -> Application:
    doc = app_doc()
    app = Application.parse_doc(doc)
    app.status.sync.revision = REVISION
    app.status.sync.compared_to = app.spec.build_compared_to_status(
        app.spec.get_sources()
    )
    app.status.reconciled_at = utcnow() - reconciled_ago
    return app


def _use_diff_cache(app: Application, **kwargs: Any) -> bool:
    sources = app.spec.get_sources()
    params: dict[str, Any] = {
        "no_cache": False,
        "manifest_infos": [ManifestResponse(manifests=[], revision=REVISION)],
        "sources": sources,
        "app": app,
        "manifest_revisions": [REVISION],
        "status_refresh_timeout": timedelta(minutes=3),
        "server_side_diff": False,
    }
    params.update(kwargs)
    return use_diff_cache(**params)


def test_use_diff_cache() -> None:
    """Test that the diff cache is used when nothing changed."""
    assert _use_diff_cache(_cache_app())


def test_use_diff_cache_no_cache() -> None:
    assert not _use_diff_cache(_cache_app(), no_cache=True)


def test_use_diff_cache_refresh_requested() -> None:
    app = _cache_app()
    app.annotations["argocd.argoproj.io/refresh"] = "normal"
    assert not _use_diff_cache(app)


def test_use_diff_cache_revision_changed() -> None:
    assert not _use_diff_cache(_cache_app(), manifest_revisions=["f00"])


def test_use_diff_cache_manifest_count() -> None:
    assert not _use_diff_cache(_cache_app(), manifest_infos=[])


def test_use_diff_cache_spec_changed() -> None:
    app = _cache_app()
    app.spec.destination = ApplicationDestination(server=SERVER, namespace="other")
    assert not _use_diff_cache(app)


def test_use_diff_cache_status_expired() -> None:
    """Test that an expired status disables the cache, unless server side diff is used."""
    app = _cache_app(reconciled_ago=timedelta(minutes=10))
    assert not _use_diff_cache(app)
    assert _use_diff_cache(app, server_side_diff=True)


def test_spec_equals_compare_to() -> None:
    app = _cache_app()
    sources = app.spec.get_sources()
    assert spec_equals_compare_to(app.spec, sources, app.status.sync.compared_to)
    app.spec.source = ApplicationSource(repo_url=REPO_URL, path="other")
    assert not spec_equals_compare_to(
        app.spec, app.spec.get_sources(), app.status.sync.compared_to
    )


async def test_resolve_git_revision(manager: AppStateManager, repo_server: InMemoryRepoServer) -> None:
    """Test resolving a branch through the rendering service."""
    assert await manager.resolve_git_revision(REPO_URL, "main") == REVISION
    assert repo_server.resolve_requests[0].ambiguous_revision == "main"


async def test_persist_revision_history(
    manager: AppStateManager,
    app_client: InMemoryApplicationClient,
    app: Application,
) -> None:
    """Test that the history is trimmed to the limit, keeping the newest entries."""
    app.spec.revision_history_limit = 2
    source = app.spec.get_source()
    for revision in ("r1", "r2", "r3"):
        await manager.persist_revision_history(
            app,
            revision,
            source,
            [],
            [],
            False,
            utcnow(),
            OperationInitiator(username="admin"),
        )

    assert [h.revision for h in app.status.history] == ["r2", "r3"]
    assert [h.id for h in app.status.history] == [1, 2]
    assert app_client.history[QUALIFIED_NAME] == app.status.history
