"""
Status Protocol Evaluation

gpg reports what it found on its --status-fd channel as a flat stream of
"[GNUPG:] KEYWORD args..." lines. This module turns that stream into a single
immutable Verdict. All keyword matching happens here; callers only look at
the resulting Verdict.

A Verdict has two independent axes:

  valid: a VALIDSIG line was seen, the signature checked out mathematically
  trust: gpg's own policy considers the signer fully or ultimately trusted

Both can be true or false independently of each other. A caller that needs
full assurance must require both (see Verdict.ok).

Relevant status lines (see doc/DETAILS in the GnuPG sources):

    VALIDSIG <fpr> <sig_creation_date> <sig-timestamp> <expire-timestamp> ...
    BADSIG <long_keyid_or_fpr> <username>
    ERRSIG <keyid> <pkalgo> <hashalgo> <sig_class> <time> <rc> <fpr>
    REVKEYSIG / EXPKEYSIG <long_keyid_or_fpr> <username>
    NO_PUBKEY <long keyid>
    TRUST_ULTIMATE / TRUST_FULLY [0 [<validation_model>]]
"""

import enum
import logging
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Iterable, Optional

from moduletrust.exceptions import TrustFailure, ValidationError

logger = logging.getLogger(__name__)

STATUS_PREFIX = "[GNUPG:] "

# ERRSIG return code meaning "no public key"
ERRSIG_NO_PUBKEY = "9"


class SignatureStatus(enum.IntFlag):
    """Signature state bits. Values match the ones stored by older installs."""

    NONE = 0
    GOOD = 1  # Valid signature
    TAMPERED = 2  # File has been tampered
    INVALID = 4  # Signed, but not by a valid signature
    UNSIGNED = 8
    UNSUPPORTED = 16
    EXPIRED = 32  # Signing key has expired
    REVOKED = 64  # Signing key has been explicitly revoked
    TRUSTED = 128  # Signer is trusted by gpg's policy


FAILURE_FLAGS = (
    SignatureStatus.TAMPERED
    | SignatureStatus.INVALID
    | SignatureStatus.REVOKED
    | SignatureStatus.EXPIRED
)


class StatusEvent(enum.Enum):
    """Status keywords this package understands."""

    VALIDSIG = "VALIDSIG"
    GOODSIG = "GOODSIG"
    BADSIG = "BADSIG"
    ERRSIG = "ERRSIG"
    REVKEYSIG = "REVKEYSIG"
    EXPKEYSIG = "EXPKEYSIG"
    EXPSIG = "EXPSIG"
    NO_PUBKEY = "NO_PUBKEY"
    NODATA = "NODATA"
    TRUST_ULTIMATE = "TRUST_ULTIMATE"
    TRUST_FULLY = "TRUST_FULLY"
    TRUST_MARGINAL = "TRUST_MARGINAL"
    TRUST_NEVER = "TRUST_NEVER"
    TRUST_UNDEFINED = "TRUST_UNDEFINED"
    IMPORT_OK = "IMPORT_OK"
    IMPORTED = "IMPORTED"
    IMPORT_RES = "IMPORT_RES"


_KEYWORDS = {event.value: event for event in StatusEvent}


@dataclass(frozen=True)
class StatusLine:
    """One parsed status line."""

    event: StatusEvent
    args: tuple[str, ...]
    raw: str

    def arg(self, index: int) -> Optional[str]:
        return self.args[index] if index < len(self.args) else None


def parse_status_line(line: str) -> Optional[StatusLine]:
    """
    Parse a single status line.

    Returns:
        StatusLine for recognized keywords, None for anything else
    """
    if not line.startswith(STATUS_PREFIX):
        return None
    tokens = line[len(STATUS_PREFIX):].split(" ")
    event = _KEYWORDS.get(tokens[0])
    if event is None:
        return None
    return StatusLine(event=event, args=tuple(tokens[1:]), raw=line)


def parse_status(lines: Iterable[str]) -> list[StatusLine]:
    """All recognized events in `lines`, in order."""
    parsed = (parse_status_line(line) for line in lines)
    return [event for event in parsed if event is not None]


def has_event(lines: Iterable[str], event: StatusEvent) -> bool:
    return any(parsed.event is event for parsed in parse_status(lines))


# =============================================================================
# Verdict
# =============================================================================


@dataclass(frozen=True)
class Verdict:
    """
    Outcome of evaluating one signature.

    Attributes:
        flags: Combined SignatureStatus bits
        valid: A mathematically checked signature (VALIDSIG) was seen
        trust: gpg's policy marks the signer fully or ultimately trusted
        signer: Fingerprint captured from VALIDSIG
        timestamp: Signature timestamp captured from VALIDSIG
        trust_details: Human readable findings, in order
        missing_key: Key id gpg reported as missing, if any
    """

    flags: SignatureStatus = SignatureStatus.NONE
    valid: bool = False
    trust: bool = False
    signer: Optional[str] = None
    timestamp: Optional[int] = None
    trust_details: tuple[str, ...] = ()
    missing_key: Optional[str] = None

    @property
    def ok(self) -> bool:
        """True only when the signature is valid, trusted and nothing failed."""
        return self.valid and self.trust and not (self.flags & FAILURE_FLAGS)

    def raise_for_trust(self) -> None:
        """Raise TrustFailure unless this verdict gives full assurance."""
        if self.ok:
            return
        reasons = list(self.trust_details)
        if not self.valid:
            reasons.append("no valid signature")
        if not self.trust:
            reasons.append("signer is not trusted")
        raise TrustFailure("Signature not trusted: " + "; ".join(reasons), verdict=self)

    def to_dict(self) -> dict:
        return {
            "flags": int(self.flags),
            "valid": self.valid,
            "trust": self.trust,
            "signer": self.signer,
            "timestamp": self.timestamp,
            "trust_details": list(self.trust_details),
            "missing_key": self.missing_key,
        }


def _parse_timestamp(token: Optional[str]) -> Optional[int]:
    if token is None:
        return None
    try:
        return int(token)
    except ValueError:
        # ISO 8601 timestamps show up with --fixed-list-mode off; not needed here.
        return None


def evaluate(lines: Sequence[str]) -> Verdict:
    """
    Reduce status lines to a Verdict.

    Args:
        lines: Status lines as captured by GPGRunner

    Returns:
        The Verdict for the signature described by `lines`

    Raises:
        ValidationError: If `lines` is not a sequence of strings
    """
    if isinstance(lines, (str, bytes)) or not isinstance(lines, Sequence):
        raise ValidationError("No status was given to evaluate")

    flags = SignatureStatus.NONE
    valid = False
    trust = False
    signer = None
    timestamp = None
    details = []
    missing_key = None

    for line in parse_status(lines):
        event = line.event
        if event is StatusEvent.VALIDSIG:
            valid = True
            flags |= SignatureStatus.GOOD
            signer = line.arg(0)
            timestamp = _parse_timestamp(line.arg(2))
        elif event is StatusEvent.BADSIG:
            flags |= SignatureStatus.TAMPERED
            details.append(f"Bad Signature, Tampered! ({line.raw})")
        elif event is StatusEvent.ERRSIG:
            flags |= SignatureStatus.INVALID
            details.append(f"Unknown Signature ({line.raw})")
            if line.arg(5) == ERRSIG_NO_PUBKEY and missing_key is None:
                missing_key = line.arg(0)
        elif event is StatusEvent.REVKEYSIG:
            flags |= SignatureStatus.REVOKED
            details.append(f"Signed by Revoked Key ({line.raw})")
        elif event is StatusEvent.EXPKEYSIG:
            flags |= SignatureStatus.EXPIRED
            details.append(f"Signed by Expired Key ({line.raw})")
        elif event in (StatusEvent.TRUST_ULTIMATE, StatusEvent.TRUST_FULLY):
            trust = True
            flags |= SignatureStatus.TRUSTED
        elif event is StatusEvent.NO_PUBKEY and missing_key is None:
            missing_key = line.arg(0)

    if flags & SignatureStatus.TAMPERED:
        flags &= ~SignatureStatus.GOOD

    verdict = Verdict(
        flags=flags,
        valid=valid,
        trust=trust,
        signer=signer,
        timestamp=timestamp,
        trust_details=tuple(details),
        missing_key=missing_key,
    )
    if details:
        logger.debug("Signature findings: %s", "; ".join(details))
    return verdict
