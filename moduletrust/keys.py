"""
Public Key Acquisition

Before a signature can be checked, the signer's public key has to be in the
keyring. KeyFetcher.acquire() tries each source in turn and stops at the
first one that works:

  1. The keyring itself (gpg --list-keys <id>)
  2. Each configured key server, in order, walked exactly once
  3. A bundled key file named <long-id>.key, then <short-id>.key

Key ids
-------
gpg accepts several spellings of a key id. This package normalizes them:

    2016349F5BC6F49340FCCAF99F9169F4B33B4659   fingerprint (40 hex)
            9F9169F4B33B4659                   long id (last 16 hex)
                    B33B4659                   short id (last 8 hex)

Anything longer than 16 characters is cut down to its last 16.

Key servers
-----------
Endpoints with an http:// or https:// scheme are queried over HKP with
requests, the response is imported with gpg --import:

    GET https://keys.openpgp.org/pks/lookup?op=get&options=mr&search=0x9F9169F4B33B4659

Anything else (hkp://, hkps://, bare host names) is passed to gpg's own
--keyserver/--recv-keys. A server that times out, refuses the connection or
does not know the key is skipped, and so is one whose import does not
include the requested key. None of those is an error on its own.
"""

import logging
import re
import tempfile
from pathlib import Path
from typing import Optional
from urllib.parse import urlparse

import requests

from moduletrust.exceptions import (
    GPGTimeoutError,
    LookupFailure,
    OperationError,
    ProcessError,
    ValidationError,
)
from moduletrust.runner import GPGRunner, ProcessResult
from moduletrust.status import StatusEvent, has_event, parse_status

logger = logging.getLogger(__name__)

HKP_LOOKUP_PATH = "/pks/lookup"


# =============================================================================
# Key id helpers
# =============================================================================


def normalize_key_id(key_id: str) -> str:
    """
    Normalize a key id to uppercase hex of at most 16 characters.

    Args:
        key_id: Fingerprint, long id or short id, optionally 0x-prefixed

    Returns:
        The trailing 16 (or fewer) hex characters, uppercase

    Raises:
        ValidationError: If the id is empty or not hexadecimal
    """
    if not isinstance(key_id, str):
        raise ValidationError(f"Key id must be a string, got {type(key_id).__name__}")

    key = re.sub(r"\s+", "", key_id).upper()
    if key.startswith("0X"):
        key = key[2:]
    if len(key) > 16:
        key = key[-16:]

    if not key or not re.fullmatch(r"[0-9A-F]+", key):
        raise ValidationError(f"Key provided - {key_id} - is not hex")
    return key


def long_key_id(key_id: str) -> str:
    return normalize_key_id(key_id)[-16:]


def short_key_id(key_id: str) -> str:
    return normalize_key_id(key_id)[-8:]


def is_http_endpoint(endpoint: str) -> bool:
    return urlparse(endpoint).scheme in ("http", "https")


# =============================================================================
# Fetcher
# =============================================================================


class KeyFetcher:
    """Resolves public keys into the keyring from the configured sources."""

    def __init__(self, runner: GPGRunner, session: Optional[requests.Session] = None):
        self.runner = runner
        self.config = runner.config
        self.session = session

    def has_key(self, key_id: str) -> bool:
        """True if the keyring already holds `key_id`."""
        result = self.runner.run(["--list-keys", key_id])
        return result.exit_code == 0

    def acquire(self, key_id: Optional[str] = None) -> bool:
        """
        Make sure a public key is in the keyring.

        Args:
            key_id: Key to fetch; the trust root when omitted

        Returns:
            True once the key is present

        Raises:
            ValidationError: If the key id is not hex
            LookupFailure: If no source had the key
            OperationError: If a bundled key file was found but did not import
        """
        key = normalize_key_id(key_id if key_id else self.config.trust_root)

        if self.has_key(key):
            logger.debug("Key %s already in keyring", key)
            return True

        with self.runner.locked():
            for keyserver in self.config.keyservers:
                if self.fetch_from_keyserver(key, keyserver):
                    logger.info("Imported key %s from %s", key, keyserver)
                    return True

            long_path = self.config.key_dir / f"{key}.key"
            short_path = self.config.key_dir / f"{key[-8:]}.key"
            for candidate in (long_path, short_path):
                if candidate.is_file():
                    self.import_key_file(candidate, key)
                    logger.info("Imported key %s from %s", key, candidate)
                    return True

        raise LookupFailure(key, [str(long_path), str(short_path)])

    def fetch_from_keyserver(self, key: str, keyserver: str) -> bool:
        """
        Try a single key server.

        Returns:
            True if the key was received and imported, False to move on
        """
        if is_http_endpoint(keyserver):
            return self._fetch_hkp(key, keyserver)

        try:
            result = self.runner.run(
                ["--keyserver", keyserver, "--recv-keys", key],
                timeout=self.config.keyserver_timeout,
            )
        except GPGTimeoutError:
            logger.warning("Key server %s timed out looking up %s", keyserver, key)
            return False
        except ProcessError as e:
            logger.warning("Could not query key server %s: %s", keyserver, e)
            return False

        if has_event(result.status, StatusEvent.NODATA):
            logger.debug("Key %s not found on %s", key, keyserver)
            return False
        if not _imported(result, key):
            logger.warning(
                "Key server %s did not provide %s (exit %d): %s",
                keyserver,
                key,
                result.exit_code,
                result.stderr.strip(),
            )
            return False
        return True

    def _fetch_hkp(self, key: str, keyserver: str) -> bool:
        url = keyserver.rstrip("/") + HKP_LOOKUP_PATH
        params = {"op": "get", "options": "mr", "search": f"0x{key}"}
        getter = self.session.get if self.session is not None else requests.get

        try:
            resp = getter(url, params=params, timeout=self.config.keyserver_timeout)
        except requests.RequestException as e:
            logger.warning("Key server %s unreachable: %s", keyserver, e)
            return False

        if resp.status_code == 404:
            logger.debug("Key %s not found on %s", key, keyserver)
            return False
        if resp.status_code != 200:
            logger.warning("Key server %s returned %s", keyserver, resp.status_code)
            return False
        if b"BEGIN PGP PUBLIC KEY BLOCK" not in resp.content:
            logger.warning("Key server %s returned no key block for %s", keyserver, key)
            return False

        with tempfile.TemporaryFile(prefix="moduletrust_key_") as key_file:
            key_file.write(resp.content)
            key_file.seek(0)
            try:
                result = self.runner.run(["--import"], stdin=key_file)
            except (GPGTimeoutError, ProcessError) as e:
                logger.warning("Could not import key from %s: %s", keyserver, e)
                return False

        if not _imported(result, key):
            logger.warning("Key server %s returned a key other than %s", keyserver, key)
            return False
        return True

    def import_key_file(self, path: Path, key: Optional[str] = None) -> ProcessResult:
        """
        Import a bundled key file.

        Raises:
            OperationError: If gpg rejects the file, or it does not hold `key`
        """
        result = self.runner.run(["--import", str(path)])
        if key is not None and not _imported(result, key):
            raise OperationError(f"Key file {path} does not provide {key}", result=result)
        if result.exit_code != 0 and not _imported(result):
            raise OperationError(f"Unable to import key file {path}", result=result)
        return result


def _imported(result: ProcessResult, key: Optional[str] = None) -> bool:
    """True if gpg reports an import, of `key` itself when one is given."""
    for line in parse_status(result.status):
        # IMPORT_OK <reason> <fingerprint>, IMPORTED <long id> <user id>
        if line.event is StatusEvent.IMPORT_OK:
            imported = line.arg(1)
        elif line.event is StatusEvent.IMPORTED:
            imported = line.arg(0)
        else:
            continue
        if key is None or (imported and imported.upper().endswith(key)):
            return True
    return False
