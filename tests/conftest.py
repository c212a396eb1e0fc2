"""Shared fixtures for appstate tests."""

from datetime import datetime, timedelta, timezone
from typing import Any

import pytest
import yaml

from appstate.config import AppStateManagerConfig
from appstate.in_memory import (
    InMemoryApplicationClient,
    InMemoryLiveStateCache,
    InMemoryRepoServer,
    InMemoryRepositoryDB,
    InMemorySettingsManager,
)
from appstate.manager import AppStateManager
from appstate.manifest import Application
from appstate.project import AppProject
from appstate.repo_error_cache import RepoErrorCache

APP_NAME = "guestbook"
CONTROLLER_NAMESPACE = "argocd"
DEST_NAMESPACE = "default"
SERVER = "https://kubernetes.default.svc"
REPO_URL = "https://github.com/example/apps.git"
REVISION = "a1b2c3d4e5f6"


def tracking_id(kind: str, name: str, group: str = "apps", namespace: str = DEST_NAMESPACE) -> str:
    return f"{APP_NAME}:{group}/{kind}:{namespace}/{name}"


def deployment(name: str = "guestbook-ui", live: bool = False, **annotations: str) -> dict[str, Any]:
    """Return a Deployment, with server populated fields when live."""
    obj: dict[str, Any] = {
        "apiVersion": "apps/v1",
        "kind": "Deployment",
        "metadata": {"name": name},
        "spec": {
            "replicas": 1,
            "template": {
                "spec": {"containers": [{"name": "ui", "image": "guestbook:v1"}]}
            },
        },
    }
    if annotations:
        obj["metadata"]["annotations"] = dict(annotations)
    if live:
        obj["metadata"]["namespace"] = DEST_NAMESPACE
        obj["metadata"]["uid"] = f"uid-{name}"
        obj["metadata"]["resourceVersion"] = "100"
        obj["metadata"]["generation"] = 1
        obj["metadata"].setdefault("annotations", {})[
            "argocd.argoproj.io/tracking-id"
        ] = tracking_id("Deployment", name)
        obj["status"] = {
            "observedGeneration": 1,
            "replicas": 1,
            "updatedReplicas": 1,
            "readyReplicas": 1,
            "availableReplicas": 1,
        }
    return obj


def service(name: str = "guestbook-ui", live: bool = False) -> dict[str, Any]:
    """Return a ClusterIP Service, with server populated fields when live."""
    obj: dict[str, Any] = {
        "apiVersion": "v1",
        "kind": "Service",
        "metadata": {"name": name},
        "spec": {"ports": [{"port": 80, "targetPort": 80}]},
    }
    if live:
        obj["metadata"]["namespace"] = DEST_NAMESPACE
        obj["metadata"]["uid"] = f"uid-svc-{name}"
        obj["metadata"]["resourceVersion"] = "200"
        obj["metadata"]["annotations"] = {
            "argocd.argoproj.io/tracking-id": tracking_id("Service", name, group="")
        }
        obj["spec"]["type"] = "ClusterIP"
        obj["spec"]["clusterIP"] = "10.0.0.10"
    return obj


def config_map(name: str, data: dict[str, str] | None = None) -> dict[str, Any]:
    return {
        "apiVersion": "v1",
        "kind": "ConfigMap",
        "metadata": {"name": name},
        "data": data or {},
    }


def dump(obj: dict[str, Any]) -> str:
    return yaml.dump(obj, sort_keys=False)


def app_doc(**spec: Any) -> dict[str, Any]:
    """Return an Application document with a single git source."""
    return {
        "apiVersion": "argoproj.io/v1alpha1",
        "kind": "Application",
        "metadata": {"name": APP_NAME, "namespace": CONTROLLER_NAMESPACE},
        "spec": {
            "project": "default",
            "source": {
                "repoURL": REPO_URL,
                "path": "guestbook",
                "targetRevision": "main",
            },
            "destination": {"server": SERVER, "namespace": DEST_NAMESPACE},
            **spec,
        },
    }


def project_doc(**spec: Any) -> dict[str, Any]:
    """Return a permissive AppProject document."""
    return {
        "apiVersion": "argoproj.io/v1alpha1",
        "kind": "AppProject",
        "metadata": {"name": "default", "namespace": CONTROLLER_NAMESPACE},
        "spec": {
            "sourceRepos": ["*"],
            "destinations": [{"server": "*", "namespace": "*"}],
            "clusterResourceWhitelist": [{"group": "*", "kind": "*"}],
            **spec,
        },
    }


class FakeClock:
    """A clock that only moves when told to."""

    def __init__(self) -> None:
        self.now = datetime(2024, 1, 1, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


@pytest.fixture(name="app")
def app_fixture() -> Application:
    return Application.parse_doc(app_doc())


@pytest.fixture(name="project")
def project_fixture() -> AppProject:
    return AppProject.parse_doc(project_doc())


@pytest.fixture(name="repo_server")
def repo_server_fixture() -> InMemoryRepoServer:
    return InMemoryRepoServer(
        manifests={REPO_URL: [dump(deployment()), dump(service())]},
        revisions={REPO_URL: REVISION},
    )


@pytest.fixture(name="live_objs")
def live_objs_fixture() -> list[dict[str, Any]]:
    return [deployment(live=True), service(live=True)]


@pytest.fixture(name="live_state_cache")
def live_state_cache_fixture(live_objs: list[dict[str, Any]]) -> InMemoryLiveStateCache:
    return InMemoryLiveStateCache(live_objs)


@pytest.fixture(name="settings_manager")
def settings_manager_fixture() -> InMemorySettingsManager:
    return InMemorySettingsManager()


@pytest.fixture(name="clock")
def clock_fixture() -> FakeClock:
    return FakeClock()


@pytest.fixture(name="app_client")
def app_client_fixture() -> InMemoryApplicationClient:
    return InMemoryApplicationClient()


@pytest.fixture(name="manager")
def manager_fixture(
    repo_server: InMemoryRepoServer,
    live_state_cache: InMemoryLiveStateCache,
    settings_manager: InMemorySettingsManager,
    clock: FakeClock,
    app_client: InMemoryApplicationClient,
) -> AppStateManager:
    return AppStateManager(
        repo_db=InMemoryRepositoryDB(),
        repo_server=repo_server,
        settings_manager=settings_manager,
        live_state_cache=live_state_cache,
        repo_error_cache=RepoErrorCache(clock=clock),
        app_client=app_client,
        config=AppStateManagerConfig(namespace=CONTROLLER_NAMESPACE),
    )
