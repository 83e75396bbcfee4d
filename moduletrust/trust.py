"""
Trust Root Handling

Two things tie the keyring to the trust root:

Ownertrust
    gpg only reports TRUST_ULTIMATE / TRUST_FULLY for a signer if some key
    on the path to it carries ownertrust. ensure_root_trusted() makes sure
    the trust root itself is marked ultimately trusted (level 6). The export
    looks like:

        # List of assigned trustvalues, created Tue Jan  2 00:00:00 2024 UTC
        # (Use "gpg --import-ownertrust" to restore them)
        2016349F5BC6F49340FCCAF99F9169F4B33B4659:6:

Chain of custody
    gpg may consider a signer trusted for reasons unrelated to the trust
    root (another ultimately trusted key in the same keyring, for example).
    signed_by_root() additionally requires that the signer's key carries a
    certification made by the trust root that gpg could check, or is the
    trust root.
"""

import logging
import tempfile

from moduletrust.exceptions import OperationError, ProtocolError
from moduletrust.keys import KeyFetcher, long_key_id
from moduletrust.runner import GPGRunner

logger = logging.getLogger(__name__)

OWNERTRUST_HEADER = "# List of assigned trustvalues"
ULTIMATE_TRUST = "6"

# --with-colons record types that carry a key id in field 5
KEY_RECORDS = ("pub", "sub")
SIG_RECORD = "sig"
# "!" is a verified signature; "-" bad, "?" unchecked (no key), "%" error
GOOD_SIG_VALIDITY = "!"


class OwnertrustManager:
    """Keeps the trust root marked as ultimately trusted."""

    def __init__(self, runner: GPGRunner, fetcher: KeyFetcher):
        self.runner = runner
        self.fetcher = fetcher
        self.config = runner.config

    def export(self) -> list[str]:
        """
        Current ownertrust entries, header comments included.

        Raises:
            ProtocolError: If the export does not start with the expected header
        """
        result = self.runner.run(["--export-ownertrust"])
        lines = result.stdout.split("\n")
        while lines and not lines[-1].strip():
            lines.pop()

        if lines and not lines[0].startswith(OWNERTRUST_HEADER):
            raise ProtocolError(
                f"gpg --export-ownertrust didn't return sane stuff - {result.to_dict()}"
            )
        return lines

    def is_root_trusted(self, lines: list[str]) -> bool:
        for line in lines:
            if not line or line.startswith("#"):
                continue
            fields = line.split(":")
            if fields[0].upper() == self.config.trust_root:
                return True
        return False

    def ensure_root_trusted(self) -> bool:
        """
        Mark the trust root as ultimately trusted if it is not already.

        Running this again when the root is already trusted changes nothing.

        Returns:
            True once the root is trusted

        Raises:
            LookupFailure: If the trust root key cannot be obtained
            ProtocolError: If the ownertrust export is malformed
            OperationError: If gpg refuses the ownertrust import
        """
        self.fetcher.acquire()

        with self.runner.locked():
            lines = self.export()
            if self.is_root_trusted(lines):
                logger.debug("Trust root %s already trusted", self.config.trust_root)
                return True

            lines.append(f"{self.config.trust_root}:{ULTIMATE_TRUST}:")
            lines.append("# Trailing comment")

            with tempfile.TemporaryFile(mode="w+b", prefix="moduletrust_trust_") as trust_file:
                trust_file.write("\n".join(lines).encode("utf-8"))
                trust_file.seek(0)
                result = self.runner.run(["--import-ownertrust"], stdin=trust_file)

            if result.exit_code != 0:
                raise OperationError(
                    f"Unable to trust the root key {self.config.trust_root}! -- {result.to_dict()}",
                    result=result,
                )

        logger.info("Marked %s as ultimately trusted", self.config.trust_root)
        return True


def signed_by_root(runner: GPGRunner, signer: str) -> bool:
    """
    Check that `signer` is the trust root or certified by it.

    Args:
        runner: Runner for the keyring holding the signer's key
        signer: Fingerprint or key id of the signing key

    Returns:
        True if a certification by the trust root (or the root itself) is found
    """
    root = runner.config.trust_root_long
    result = runner.run(["--keyid-format", "long", "--with-colons", "--check-sigs", signer])

    for line in result.stdout.splitlines():
        fields = line.split(":")
        if len(fields) < 5:
            continue
        record, validity, key_id = fields[0], fields[1], fields[4].upper()
        if key_id != root:
            continue
        if record in KEY_RECORDS:
            return True
        if record == SIG_RECORD and validity == GOOD_SIG_VALIDITY:
            return True

    logger.warning("Key %s is trusted but not certified by %s", signer, long_key_id(root))
    return False
