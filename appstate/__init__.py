"""
appstate compares the desired state of an application, rendered from its
sources, with the live state of a cluster and derives its sync status, health
and conditions.
"""

__all__ = [
    "manager",
    "manifest",
    "project",
    "providers",
    "diff",
    "exceptions",
    # Note this is exposed for CLI documentation, not to be used as a library
    "tool",
]
