"""Exceptions related to appstate."""

__all__ = [
    "AppStateException",
    "InputException",
    "ManifestException",
    "SettingsException",
    "RepoException",
    "CompareStateRepoError",
    "ClusterException",
    "DiffException",
    "TrackingException",
    "RefSourceException",
]


class AppStateException(Exception):
    """Generic base exception used for this library."""


class InputException(AppStateException):
    """Raised when the input documents or values are not formatted as expected."""


class ManifestException(InputException):
    """Raised when a rendered manifest could not be parsed into an object."""


class SettingsException(AppStateException):
    """Raised when the comparison settings could not be loaded."""


class RepoException(AppStateException):
    """Raised when there is a failure talking to the rendering service or repo db."""


class CompareStateRepoError(AppStateException):
    """Raised when a repository error is suppressed during the grace period.

    Callers should treat this as "no new result" and keep the last known
    application state instead of reporting the failure.
    """

    def __init__(self, app_name: str, cause: Exception) -> None:
        super().__init__(f"failed to get repo objects for {app_name}: {cause}")
        self.app_name = app_name
        self.cause = cause


class ClusterException(AppStateException):
    """Raised when live state could not be loaded from the cluster."""


class DiffException(AppStateException):
    """Raised when the desired state could not be compared to the live state."""


class TrackingException(AppStateException):
    """Raised when resource tracking metadata is invalid or cannot be applied."""


class RefSourceException(InputException):
    """Raised when multi-source `ref` declarations are invalid."""
