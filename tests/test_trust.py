import pytest

from moduletrust.config import GPGConfig
from moduletrust.exceptions import OperationError, ProtocolError, ValidationError
from moduletrust.keys import KeyFetcher
from moduletrust.trust import OwnertrustManager, signed_by_root
from tests.conftest import FakeRunner, ROOT_FPR, ROOT_LONG, SIGNER_FPR, SIGNER_LONG, result

HEADER = (
    "# List of assigned trustvalues, created Tue Jan  2 00:00:00 2024 UTC\n"
    '# (Use "gpg --import-ownertrust" to restore them)\n'
)
OTHER_FPR = "1111222233334444555566667777888899990000"


def manager(runner):
    runner.on("--list-keys", responses=[result(exit_code=0)])
    return OwnertrustManager(runner, KeyFetcher(runner))


# =============================================================================
# Ownertrust
# =============================================================================


def test_adds_root_when_missing(runner):
    runner.on("--export-ownertrust", responses=[result(stdout=HEADER + f"{OTHER_FPR}:4:\n")])
    runner.on("--import-ownertrust", responses=[result()])

    assert manager(runner).ensure_root_trusted()

    imported = runner.stdin_data[-1].decode("utf-8").split("\n")
    assert imported[0].startswith("# List of assigned trustvalues")
    assert f"{OTHER_FPR}:4:" in imported
    assert imported[-2:] == [f"{ROOT_FPR}:6:", "# Trailing comment"]
    assert runner.lock_count >= 1


def test_idempotent_when_root_trusted(runner):
    runner.on("--export-ownertrust", responses=[result(stdout=HEADER + f"{ROOT_FPR}:6:\n")])

    assert manager(runner).ensure_root_trusted()
    assert manager(runner).ensure_root_trusted()
    assert runner.calls_starting_with("--import-ownertrust") == []


def test_trust_root_spelling_matches_export(config):
    runner = FakeRunner(config.with_overrides(trust_root="0x" + ROOT_FPR.lower()))
    runner.on("--export-ownertrust", responses=[result(stdout=HEADER + f"{ROOT_FPR}:6:\n")])

    assert manager(runner).ensure_root_trusted()
    assert runner.calls_starting_with("--import-ownertrust") == []


def test_long_id_trust_root_rejected(tmp_path):
    with pytest.raises(ValidationError):
        GPGConfig(home_dir=tmp_path, trust_root=ROOT_LONG)


def test_root_key_fetched_first(runner):
    runner.on("--export-ownertrust", responses=[result(stdout=HEADER + f"{ROOT_FPR}:6:\n")])

    manager(runner).ensure_root_trusted()
    assert runner.calls[0] == ["--list-keys", ROOT_LONG]


def test_empty_export_is_accepted(runner):
    runner.on("--export-ownertrust", responses=[result(stdout="")])
    runner.on("--import-ownertrust", responses=[result()])

    assert manager(runner).ensure_root_trusted()
    assert runner.stdin_data[-1] == f"{ROOT_FPR}:6:\n# Trailing comment".encode("utf-8")


def test_malformed_export(runner):
    runner.on("--export-ownertrust", responses=[result(stdout="gpg: something odd\n")])

    with pytest.raises(ProtocolError):
        manager(runner).ensure_root_trusted()


def test_import_failure(runner):
    runner.on("--export-ownertrust", responses=[result(stdout=HEADER)])
    runner.on("--import-ownertrust", responses=[result(stderr="denied", exit_code=2)])

    with pytest.raises(OperationError) as excinfo:
        manager(runner).ensure_root_trusted()
    assert excinfo.value.result.exit_code == 2


# =============================================================================
# Chain of custody
# =============================================================================


def colons(*records):
    return "\n".join(records) + "\n"


def test_signer_certified_by_root(runner):
    runner.on("--keyid-format", responses=[result(stdout=colons(
        f"pub:f:4096:1:{SIGNER_LONG}:1500000000:::-:::scESC::::::23::0:",
        f"uid:f::::1500000000::HASH::Module Signer <signer@example.com>::::::::::0:",
        f"sig:!::1:{SIGNER_LONG}:1500000000::::Module Signer:13x::{SIGNER_FPR}:::10:",
        f"sig:!::1:{ROOT_LONG}:1500000100::::Master Key:10x::{ROOT_FPR}:::10:",
    ))])

    assert signed_by_root(runner, SIGNER_FPR)
    assert runner.calls[0] == ["--keyid-format", "long", "--with-colons", "--check-sigs", SIGNER_FPR]


def test_signer_without_root_certification(runner):
    runner.on("--keyid-format", responses=[result(stdout=colons(
        f"pub:f:4096:1:{SIGNER_LONG}:1500000000:::-:::scESC::::::23::0:",
        f"sig:!::1:{SIGNER_LONG}:1500000000::::Module Signer:13x::{SIGNER_FPR}:::10:",
        "sig:!::1:1234567890ABCDEF:1500000100::::Somebody Else:10x:::::10:",
    ))])

    assert not signed_by_root(runner, SIGNER_FPR)


def test_bad_root_certification_does_not_count(runner):
    runner.on("--keyid-format", responses=[result(stdout=colons(
        f"pub:f:4096:1:{SIGNER_LONG}:1500000000:::-:::scESC::::::23::0:",
        f"sig:-::1:{ROOT_LONG}:1500000100::::Master Key:10x::{ROOT_FPR}:::10:",
    ))])

    assert not signed_by_root(runner, SIGNER_FPR)


@pytest.mark.parametrize("validity", ["?", "%"])
def test_unchecked_root_certification_does_not_count(runner, validity):
    runner.on("--keyid-format", responses=[result(stdout=colons(
        f"pub:f:4096:1:{SIGNER_LONG}:1500000000:::-:::scESC::::::23::0:",
        f"sig:{validity}::1:{ROOT_LONG}:1500000100::::[User ID not found]:10x:::::10:",
    ))])

    assert not signed_by_root(runner, SIGNER_FPR)


def test_root_itself_is_accepted(runner):
    runner.on("--keyid-format", responses=[result(stdout=colons(
        f"pub:u:4096:1:{ROOT_LONG}:1400000000:::u:::scESC::::::23::0:",
        f"sig:!::1:{ROOT_LONG}:1400000000::::Master Key:13x::{ROOT_FPR}:::10:",
    ))])

    assert signed_by_root(runner, ROOT_FPR)
