"""
Errors raised by the signature verification engine.

Every failure the engine can report is a subclass of ModuleTrustError, so a
caller embedding the engine can catch one type at its boundary. The more
specific classes also derive from the matching builtin where one exists
(ValueError, TimeoutError, LookupError) so generic handlers keep working.
"""

from typing import Optional, Sequence


class ModuleTrustError(Exception):
    """Base class for all verification engine errors."""


class ValidationError(ModuleTrustError, ValueError):
    """Bad input: malformed key id, path traversal attempt, wrong input shape."""


class ProcessError(ModuleTrustError):
    """The external tool could not be started."""


class GPGTimeoutError(ModuleTrustError, TimeoutError):
    """The status channel stayed silent past the configured deadline."""

    def __init__(self, message: str, command: Optional[Sequence[str]] = None):
        super().__init__(message)
        self.command = list(command) if command else []


class ProtocolError(ModuleTrustError):
    """Malformed or unexpected tool output (status lines, ownertrust export, manifest)."""


class LookupFailure(ModuleTrustError, LookupError):
    """
    A public key could not be found anywhere.

    Attributes:
        key_id: The normalized key id that was requested
        paths: The local key bundle files that were tried
    """

    def __init__(self, key_id: str, paths: Sequence[str]):
        self.key_id = key_id
        self.paths = list(paths)
        tried = " or ".join(str(p) for p in self.paths)
        super().__init__(f"Unable to download GPG key {key_id}, or find {tried}")


class TrustFailure(ModuleTrustError):
    """A signature is present but not trusted, tampered, revoked or expired."""

    def __init__(self, message: str, verdict=None):
        super().__init__(message)
        self.verdict = verdict


class OperationError(ModuleTrustError):
    """A keyring operation (ownertrust import, key import, decrypt) failed."""

    def __init__(self, message: str, result=None):
        super().__init__(message)
        self.result = result
