"""Tests for commit signature verification."""

from appstate.manifest import ConditionType
from appstate.project import AppProject
from appstate.reposerver import ManifestResponse
from appstate.signature import (
    VerifyResult,
    key_id,
    parse_git_commit_verification,
    verify_gnupg_signature,
)

from conftest import project_doc

REVISION = "a1b2c3d4e5f6"
KEY_ID = "4AEE18F83AFDEB23"

GOOD_SIGNATURE = f"""\
gpg: Signature made Wed Feb 26 23:22:34 2020 CET
gpg:                using RSA key {KEY_ID}
gpg: Good signature from "GitHub <noreply@github.com>" [ultimate]
"""

BAD_SIGNATURE = f"""\
gpg: Signature made Wed Feb 26 23:22:34 2020 CET
gpg:                using RSA key {KEY_ID}
gpg: BAD signature from "GitHub <noreply@github.com>" [ultimate]
"""

CANT_CHECK = """\
gpg: Signature made Wed Feb 26 23:22:34 2020 CET
gpg:                using RSA key 0000000000000000
gpg: Can't check signature: No public key
"""


def _project(*keys: str) -> AppProject:
    return AppProject.parse_doc(
        project_doc(signatureKeys=[{"keyID": key} for key in keys])
    )


def _response(verify_result: str) -> ManifestResponse:
    return ManifestResponse(manifests=[], revision=REVISION, verify_result=verify_result)


def test_key_id() -> None:
    assert key_id("4aee18f83afdeb23") == KEY_ID
    assert key_id("D56C4FCA57A46444C2F5D4E24AEE18F83AFDEB23") == KEY_ID
    assert key_id("83AFDEB23") == ""


def test_parse_good_signature() -> None:
    result = parse_git_commit_verification(GOOD_SIGNATURE)
    assert result.result == VerifyResult.GOOD
    assert result.cipher == "RSA"
    assert result.key_id == KEY_ID
    assert result.identity == "GitHub <noreply@github.com>"
    assert result.trust == "ultimate"
    assert result.date == "Wed Feb 26 23:22:34 2020 CET"


def test_parse_cant_check() -> None:
    result = parse_git_commit_verification(CANT_CHECK)
    assert result.result == VerifyResult.INVALID
    assert result.identity == "unknown"


def test_trusted_signature() -> None:
    assert verify_gnupg_signature(REVISION, _project(KEY_ID), _response(GOOD_SIGNATURE)) == []


def test_unsigned() -> None:
    conditions = verify_gnupg_signature(REVISION, _project(KEY_ID), _response(""))
    assert [c.type for c in conditions] == [ConditionType.COMPARISON_ERROR]
    assert conditions[0].message == (
        f"Target revision {REVISION} in Git is not signed, but a signature is required"
    )


def test_untrusted_key() -> None:
    conditions = verify_gnupg_signature(
        REVISION, _project("0000000000000001"), _response(GOOD_SIGNATURE)
    )
    assert len(conditions) == 1
    assert conditions[0].message == (
        f"Found good signature made with RSA key {KEY_ID}, "
        "but this key is not allowed in AppProject"
    )


def test_invalid_signature() -> None:
    conditions = verify_gnupg_signature(REVISION, _project(KEY_ID), _response(CANT_CHECK))
    assert len(conditions) == 1
    assert "verification result was invalid" in conditions[0].message


def test_bad_signature() -> None:
    conditions = verify_gnupg_signature(REVISION, _project(KEY_ID), _response(BAD_SIGNATURE))
    assert len(conditions) == 1
    assert conditions[0].message == (
        f"Could not verify commit signature on revision '{REVISION}', "
        "check logs for more information."
    )
