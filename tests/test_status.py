import pytest

from moduletrust.exceptions import TrustFailure, ValidationError
from moduletrust.status import (
    SignatureStatus,
    StatusEvent,
    evaluate,
    parse_status_line,
)
from tests.conftest import (
    BADSIG,
    ERRSIG_NO_PUBKEY,
    GOOD_TRUSTED,
    NO_PUBKEY,
    SIGNER_FPR,
    SIGNER_LONG,
    TRUST_FULLY,
    TRUST_UNDEFINED,
    VALIDSIG,
)


def test_valid_and_trusted():
    verdict = evaluate(list(GOOD_TRUSTED))

    assert verdict.valid
    assert verdict.trust
    assert verdict.flags & SignatureStatus.GOOD
    assert verdict.flags & SignatureStatus.TRUSTED
    assert verdict.signer == SIGNER_FPR
    assert verdict.timestamp == 1704153600
    assert verdict.trust_details == ()
    assert verdict.ok


def test_trust_fully_counts_as_trusted():
    verdict = evaluate([VALIDSIG, TRUST_FULLY])
    assert verdict.trust
    assert verdict.ok


def test_valid_but_untrusted():
    verdict = evaluate([VALIDSIG, TRUST_UNDEFINED])

    assert verdict.valid
    assert not verdict.trust
    assert verdict.flags == SignatureStatus.GOOD
    assert not verdict.ok


def test_trusted_but_not_valid():
    verdict = evaluate([TRUST_FULLY])

    assert verdict.trust
    assert not verdict.valid
    assert not verdict.ok


def test_badsig_is_tampered_and_untrusted():
    verdict = evaluate([BADSIG])

    assert not verdict.trust
    assert verdict.flags & SignatureStatus.TAMPERED
    assert "Tampered" in verdict.trust_details[0]


def test_tampered_clears_good():
    verdict = evaluate([VALIDSIG, BADSIG, TRUST_FULLY])

    assert not verdict.flags & SignatureStatus.GOOD
    assert verdict.flags & SignatureStatus.TAMPERED
    assert verdict.flags & SignatureStatus.TRUSTED
    assert not verdict.ok


@pytest.mark.parametrize(
    "line, flag, detail",
    [
        (f"[GNUPG:] REVKEYSIG {SIGNER_LONG} Someone", SignatureStatus.REVOKED, "Revoked"),
        (f"[GNUPG:] EXPKEYSIG {SIGNER_LONG} Someone", SignatureStatus.EXPIRED, "Expired"),
        (ERRSIG_NO_PUBKEY, SignatureStatus.INVALID, "Unknown Signature"),
    ],
)
def test_failure_events(line, flag, detail):
    verdict = evaluate([line, VALIDSIG, TRUST_FULLY])

    assert verdict.flags & flag
    assert detail in verdict.trust_details[0]
    assert not verdict.ok


def test_missing_key_from_no_pubkey():
    verdict = evaluate(["[GNUPG:] NEWSIG", NO_PUBKEY])
    assert verdict.missing_key == SIGNER_LONG


def test_missing_key_from_errsig_return_code():
    verdict = evaluate([ERRSIG_NO_PUBKEY])
    assert verdict.missing_key == SIGNER_LONG


def test_errsig_other_return_code_is_not_missing_key():
    verdict = evaluate([f"[GNUPG:] ERRSIG {SIGNER_LONG} 1 8 01 1704153600 4 -"])
    assert verdict.missing_key is None
    assert verdict.flags & SignatureStatus.INVALID


def test_unrecognized_lines_ignored():
    verdict = evaluate(["gpg: random noise", "[GNUPG:] PLAINTEXT 62 0", ""])
    assert verdict.flags == SignatureStatus.NONE
    assert not verdict.valid
    assert not verdict.trust


@pytest.mark.parametrize("bad", [None, "[GNUPG:] VALIDSIG x", 42])
def test_non_sequence_rejected(bad):
    with pytest.raises(ValidationError):
        evaluate(bad)


def test_parse_status_line():
    parsed = parse_status_line(VALIDSIG)
    assert parsed.event is StatusEvent.VALIDSIG
    assert parsed.arg(0) == SIGNER_FPR
    assert parsed.arg(99) is None
    assert parse_status_line("VALIDSIG without prefix") is None


def test_raise_for_trust():
    evaluate(list(GOOD_TRUSTED)).raise_for_trust()

    with pytest.raises(TrustFailure) as excinfo:
        evaluate([VALIDSIG]).raise_for_trust()
    assert "not trusted" in str(excinfo.value)
    assert excinfo.value.verdict.valid
