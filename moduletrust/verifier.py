"""
Signature and Package Verification

Verifier is the entry point for callers. It owns one GPGRunner (and so one
keyring) and offers:

  verify_file(path)        single signed file, with the chain-of-custody check
  verify_package(name)     signed manifest plus on-disk hash comparison
  acquire_key(key_id)      fetch a public key into the keyring
  ensure_root_trusted()    mark the trust root as ultimately trusted
  strip_signature(path)    write the signed content of a .gpg file next to it
  list_secret_keys()       ids of the secret keys in the keyring

Missing keys
------------
gpg normally fetches unknown signing keys itself (auto-key-retrieve), but a
slow or stale key server can still leave it without one. When a verification
reports a missing public key, the key is fetched through KeyFetcher and the
verification is repeated exactly once. A LookupFailure from that fetch is
passed on to the caller.

Package verification flow
-------------------------
  1. Locate the package's signed manifest (PathResolver.manifest_path)
  2. Verify the manifest's signature, retrying once for a missing key
  3. Parse the verified body as {path: sha256}
  4. Hash each listed file and compare; entries the resolver marks as not
     checkable are skipped
"""

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from moduletrust.config import GPGConfig
from moduletrust.exceptions import OperationError, TrustFailure, ValidationError
from moduletrust.keys import KeyFetcher
from moduletrust.manifest import PathResolver, compute_sha256, parse_manifest
from moduletrust.runner import GPGRunner, ProcessResult
from moduletrust.status import SignatureStatus, Verdict, evaluate
from moduletrust.trust import OwnertrustManager, signed_by_root

logger = logging.getLogger(__name__)

SIGNATURE_FAILED = "manifest signature verification failed"


@dataclass(frozen=True)
class PackageVerdict:
    """
    Outcome of verifying a package.

    Attributes:
        flags: Combined SignatureStatus bits
        details: Findings, e.g. "lib/a.php altered"
        signature: Verdict for the manifest's own signature, if one was checked
    """

    flags: SignatureStatus
    details: tuple[str, ...] = ()
    signature: Optional[Verdict] = None

    @property
    def ok(self) -> bool:
        return bool(self.flags & SignatureStatus.GOOD) and bool(
            self.flags & SignatureStatus.TRUSTED
        ) and not (self.flags & SignatureStatus.TAMPERED)

    def raise_for_status(self) -> None:
        """Raise TrustFailure unless the package verified cleanly."""
        if not self.ok:
            raise TrustFailure(
                "Package verification failed: " + "; ".join(self.details), verdict=self
            )

    def to_dict(self) -> dict:
        return {
            "status": int(self.flags),
            "details": list(self.details),
            "signature": self.signature.to_dict() if self.signature else None,
        }


class Verifier:
    """
    Signature verification engine bound to one keyring.

    Args:
        config: Engine configuration; read from the environment when omitted
        resolver: Locates manifests and package files for verify_package
        runner: Pre-built runner (mainly for tests)
    """

    def __init__(
        self,
        config: Optional[GPGConfig] = None,
        resolver: Optional[PathResolver] = None,
        runner: Optional[GPGRunner] = None,
    ):
        self.runner = runner if runner is not None else GPGRunner(config or GPGConfig.from_env())
        self.config = self.runner.config
        self.resolver = resolver
        self.fetcher = KeyFetcher(self.runner)
        self.ownertrust = OwnertrustManager(self.runner, self.fetcher)

    # -------------------------------------------------------------------------
    # Keys and trust
    # -------------------------------------------------------------------------

    def acquire_key(self, key_id: Optional[str] = None) -> bool:
        return self.fetcher.acquire(key_id)

    def ensure_root_trusted(self) -> bool:
        return self.ownertrust.ensure_root_trusted()

    # -------------------------------------------------------------------------
    # Signature checks
    # -------------------------------------------------------------------------

    def _verify_with_retry(self, args: list[str]) -> tuple[Verdict, ProcessResult]:
        result = self.runner.run(args)
        verdict = evaluate(result.status)

        if verdict.missing_key:
            logger.info("Public key %s missing, fetching and retrying", verdict.missing_key)
            self.fetcher.acquire(verdict.missing_key)
            result = self.runner.run(args)
            verdict = evaluate(result.status)

        return verdict, result

    def verify_file(self, filename) -> bool:
        """
        Validate a signed file against the trust root.

        The signature must be valid and trusted by gpg, and the signing key
        must be the trust root or carry a certification made by it.

        Args:
            filename: Signed file to check

        Returns:
            True only if all of the above hold

        Raises:
            ValidationError: If the file does not exist
            LookupFailure: If the signer's key was missing and could not be fetched
        """
        path = Path(filename)
        if not path.exists():
            raise ValidationError(f"Unable to open file {path}")

        verdict, _ = self._verify_with_retry(["--verify", str(path)])
        if not verdict.ok:
            logger.warning("Signature on %s not trusted (status %d)", path, int(verdict.flags))
            return False
        if not verdict.signer:
            return False

        return signed_by_root(self.runner, verdict.signer)

    def check_signed_document(self, sigfile) -> tuple[Verdict, Optional[dict[str, str]]]:
        """
        Verify a signed manifest and parse its body.

        Args:
            sigfile: Path to the signed manifest

        Returns:
            Tuple of (verdict, manifest); manifest is None unless the verdict is ok

        Raises:
            ValidationError: If `sigfile` is not a file
            ProtocolError: If the verified body is not a valid manifest
        """
        path = Path(sigfile)
        if not path.is_file():
            raise ValidationError(f"{path} is not a file")

        verdict, result = self._verify_with_retry(["--output", "-", str(path)])
        if not verdict.ok:
            return verdict, None
        return verdict, parse_manifest(result.stdout)

    def verify_package(self, name: str) -> PackageVerdict:
        """
        Check a package's signed manifest against the files on disk.

        Args:
            name: Package name (no path components)

        Returns:
            PackageVerdict; GOOD|TRUSTED with no details when everything matches

        Raises:
            ValidationError: If `name` contains a path separator or no resolver is set
        """
        if not name or "/" in name or "\\" in name or name in (".", ".."):
            raise ValidationError(
                f"Path given to verify_package ({name!r}). Only provide a package name"
            )
        if self.resolver is None:
            raise ValidationError("No path resolver configured for package verification")

        sigfile = self.resolver.manifest_path(name)
        if sigfile is None:
            return PackageVerdict(flags=SignatureStatus.UNSIGNED, details=("unsigned",))

        verdict, manifest = self.check_signed_document(sigfile)
        if manifest is None:
            return PackageVerdict(
                flags=verdict.flags,
                details=(SIGNATURE_FAILED, *verdict.trust_details),
                signature=verdict,
            )

        flags = SignatureStatus.GOOD | SignatureStatus.TRUSTED
        details = []

        for rel_path, expected in manifest.items():
            dest = self.resolver.destination(name, rel_path)
            if dest is None:
                continue
            if not dest.is_file():
                details.append(f"{rel_path} missing")
            elif compute_sha256(dest) != expected:
                details.append(f"{rel_path} altered")
            else:
                continue
            flags |= SignatureStatus.TAMPERED
            flags &= ~SignatureStatus.GOOD

        if details:
            logger.warning("Package %s failed verification: %s", name, ", ".join(details))
        return PackageVerdict(flags=flags, details=tuple(details), signature=verdict)

    # -------------------------------------------------------------------------
    # Misc keyring operations
    # -------------------------------------------------------------------------

    def strip_signature(self, filename) -> Path:
        """
        Write the signed content of a .gpg file next to it.

        Args:
            filename: Path ending in .gpg

        Returns:
            Path of the written file (the input minus .gpg)

        Raises:
            ValidationError: If the file does not end in .gpg
            OperationError: If gpg cannot verify/decrypt it
        """
        path = Path(filename)
        if path.suffix != ".gpg":
            raise ValidationError("I can only do .gpg files at the moment")

        output = path.with_suffix("")
        result = self.runner.run(["--yes", "--out", str(output), "--decrypt", str(path)])
        if result.exit_code != 0:
            raise OperationError(
                f"Unable to strip signature - result was: {result.to_dict()}", result=result
            )
        return output

    def list_secret_keys(self) -> list[str]:
        """Key ids of every secret key in the keyring."""
        result = self.runner.run(["-K", "--with-colons"])
        keys = []
        for line in result.stdout.splitlines():
            fields = line.split(":")
            if fields[0] == "sec" and len(fields) > 4:
                keys.append(fields[4])
        return keys
