"""
moduletrust - verify signed module packages against a GPG web of trust.

Example:
    >>> from moduletrust import Verifier, GPGConfig, DirectoryResolver
    >>> verifier = Verifier(
    ...     GPGConfig(home_dir="/home/asterisk/.gnupg"),
    ...     resolver=DirectoryResolver("/var/www/html/admin/modules"),
    ... )
    >>> verifier.ensure_root_trusted()
    True
    >>> verifier.verify_package("core").ok
    True
"""

from moduletrust.config import GPGConfig
from moduletrust.exceptions import (
    GPGTimeoutError,
    LookupFailure,
    ModuleTrustError,
    OperationError,
    ProcessError,
    ProtocolError,
    TrustFailure,
    ValidationError,
)
from moduletrust.keys import KeyFetcher, long_key_id, normalize_key_id, short_key_id
from moduletrust.manifest import (
    DirectoryResolver,
    PathResolver,
    compute_hashes,
    compute_sha256,
    parse_manifest,
    render_manifest,
)
from moduletrust.runner import GPGRunner, ProcessResult
from moduletrust.status import SignatureStatus, StatusEvent, Verdict, evaluate
from moduletrust.trust import OwnertrustManager, signed_by_root
from moduletrust.verifier import PackageVerdict, Verifier

__version__ = "0.1.0"

__all__ = [
    "GPGConfig",
    "GPGRunner",
    "ProcessResult",
    "SignatureStatus",
    "StatusEvent",
    "Verdict",
    "evaluate",
    "KeyFetcher",
    "normalize_key_id",
    "long_key_id",
    "short_key_id",
    "OwnertrustManager",
    "signed_by_root",
    "DirectoryResolver",
    "PathResolver",
    "compute_hashes",
    "compute_sha256",
    "parse_manifest",
    "render_manifest",
    "PackageVerdict",
    "Verifier",
    "ModuleTrustError",
    "ValidationError",
    "ProcessError",
    "GPGTimeoutError",
    "ProtocolError",
    "LookupFailure",
    "TrustFailure",
    "OperationError",
]
