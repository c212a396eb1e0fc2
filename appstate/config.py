"""Configuration objects for appstate."""

from dataclasses import dataclass
from datetime import timedelta


@dataclass
class AppStateManagerConfig:
    """Configuration for the AppStateManager."""

    namespace: str = "argocd"
    """Namespace of the controller, used to compute application instance names."""

    status_refresh_timeout: float = 180.0
    """Seconds after which a reconciled status is considered expired."""

    repo_error_grace_period: float = 180.0
    """Seconds during which repeated rendering failures are suppressed."""

    server_side_diff: bool = False

    persist_resource_health: bool = False

    gpg_enabled: bool = True

    @property
    def status_refresh_timeout_delta(self) -> timedelta:
        return timedelta(seconds=self.status_refresh_timeout)

    @property
    def repo_error_grace_period_delta(self) -> timedelta:
        return timedelta(seconds=self.repo_error_grace_period)
