"""Verification of signed revisions.

The rendering service runs `git verify-commit` and returns its raw gpg output
with each manifest response. This module parses that output and decides,
against the keys trusted by the project, whether the revision may be deployed.
"""

from dataclasses import dataclass
from enum import StrEnum
import logging
import re

from .manifest import ApplicationCondition, ConditionType, utcnow
from .project import AppProject
from .reposerver import ManifestResponse

__all__ = [
    "VerifyResult",
    "GitCommitVerification",
    "key_id",
    "parse_git_commit_verification",
    "verify_gnupg_signature",
]

_LOGGER = logging.getLogger(__name__)

_SIGNATURE_MADE = re.compile(r"^gpg: Signature made (.+)$")
_KEY_ID = re.compile(r"^gpg:\s+using\s([A-Za-z]+)\skey\s([a-zA-Z0-9]+)$")
_STATUS = re.compile(r'^gpg: ([a-zA-Z]+) signature from "([^"]+)" \[([a-zA-Z]+)\]$')
_CANT_CHECK = "gpg: Can't check signature: "
_LONG_KEY_ID = re.compile(r"^[A-Fa-f0-9]{16}$")
_FINGERPRINT = re.compile(r"^[A-Fa-f0-9]{40}$")


class VerifyResult(StrEnum):
    """Outcome of a commit signature verification."""

    GOOD = "Good"
    BAD = "Bad"
    INVALID = "Invalid"
    UNTRUSTED = "Untrusted"
    EXPIRED = "Expired"
    EXPIRED_KEY = "ExpiredKey"
    UNKNOWN = "Unknown"


_STATUS_RESULTS = {
    "good": VerifyResult.GOOD,
    "bad": VerifyResult.BAD,
    "expired": VerifyResult.EXPIRED,
}


@dataclass
class GitCommitVerification:
    """The parsed result of a `git verify-commit` run."""

    result: VerifyResult = VerifyResult.UNKNOWN
    cipher: str = ""
    key_id: str = ""
    identity: str = ""
    trust: str = ""
    date: str = ""
    message: str = ""


def key_id(value: str) -> str:
    """Return the 16 character long key id for a key id or fingerprint.

    Returns an empty string for anything else, including short key ids.
    """
    value = value.strip().upper()
    if _LONG_KEY_ID.match(value):
        return value
    if _FINGERPRINT.match(value):
        return value[24:]
    return ""


def parse_git_commit_verification(output: str) -> GitCommitVerification:
    """Parse the gpg output of `git verify-commit`."""
    result = GitCommitVerification()
    for line in output.splitlines():
        line = line.rstrip()
        if line.startswith(_CANT_CHECK):
            result.result = VerifyResult.INVALID
            result.identity = "unknown"
            result.trust = "unknown"
            result.message = line
            break
        if match := _SIGNATURE_MADE.match(line):
            result.date = match.group(1)
        elif match := _KEY_ID.match(line):
            result.cipher = match.group(1)
            result.key_id = key_id(match.group(2))
        elif match := _STATUS.match(line):
            result.result = _STATUS_RESULTS.get(
                match.group(1).lower(), VerifyResult.UNKNOWN
            )
            result.identity = match.group(2)
            result.trust = match.group(3)
            result.message = line
    return result


def verify_gnupg_signature(
    revision: str, project: AppProject, manifest_info: ManifestResponse
) -> list[ApplicationCondition]:
    """Return the ComparisonError conditions for an unacceptable signature."""
    now = utcnow()

    def error(message: str) -> list[ApplicationCondition]:
        _LOGGER.debug("Signature check failed for %s: %s", revision, message)
        return [
            ApplicationCondition(
                type=ConditionType.COMPARISON_ERROR,
                message=message,
                last_transition_time=now,
            )
        ]

    if not manifest_info.verify_result:
        return error(
            f"Target revision {revision} in Git is not signed, but a signature is required"
        )
    verification = parse_git_commit_verification(manifest_info.verify_result)
    if verification.result == VerifyResult.GOOD:
        trusted = {key_id(k.key_id) for k in project.signature_keys} - {""}
        if verification.key_id and verification.key_id in trusted:
            return []
        return error(
            f"Found good signature made with {verification.cipher} key "
            f"{verification.key_id}, but this key is not allowed in AppProject"
        )
    if verification.result == VerifyResult.INVALID:
        return error(
            f"Found signature made with {verification.cipher} key "
            f"{verification.key_id}, but verification result was invalid: "
            f"'{verification.message}'"
        )
    return error(
        f"Could not verify commit signature on revision '{revision}', "
        "check logs for more information."
    )
