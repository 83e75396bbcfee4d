"""
Package Manifests

A signed package carries a manifest: a document listing every file of the
package together with its SHA256 digest. Once the manifest's own signature
has been verified, each listed file is hashed on disk and compared.

Manifest format
---------------
The signed body is a flat key/value document. Each key is a path relative to
the package directory, each value a lowercase hex SHA256 digest:

    # comment
    module.xml = 6f1ed002ab5595859014ebf0951522d9...
    lib/helper.php = 2cf24dba5fb0a30e26e83b2ac5b9e29e...

Older packages wrap the entries in an INI section; when a [hashes] section is
present only its entries count:

    [config]
    version = 1
    [hashes]
    module.xml = "6f1ed002ab5595859014ebf0951522d9..."

Where files live
----------------
Mapping a manifest entry to a file on disk is up to a PathResolver. The
resolver can also declare an entry "not checkable" (return None), in which
case it is skipped. DirectoryResolver covers the common case of one
directory per package.
"""

import fnmatch
import hashlib
import logging
import os
import re
from pathlib import Path, PurePosixPath
from typing import Iterable, Optional, Protocol

from moduletrust.exceptions import ProtocolError, ValidationError

logger = logging.getLogger(__name__)

HASHES_SECTION = "hashes"
DEFAULT_MANIFEST_NAME = "module.sig"

_SECTION_RE = re.compile(r"^\[\s*([^\]]+?)\s*\]$")
_DIGEST_RE = re.compile(r"^[0-9a-f]{64}$")


# =============================================================================
# Parsing
# =============================================================================


def _unquote(value: str) -> str:
    value = value.strip()
    if len(value) >= 2 and value[0] == value[-1] and value[0] in ("'", '"'):
        return value[1:-1]
    return value


def parse_manifest(text: str) -> dict[str, str]:
    """
    Parse a manifest body into {relative path: sha256 hex digest}.

    Args:
        text: The verified, decoded manifest body

    Returns:
        Mapping of relative file paths to lowercase hex digests

    Raises:
        ProtocolError: If a line is not a key/value pair or a digest is malformed
    """
    sections: dict[Optional[str], dict[str, str]] = {None: {}}
    current: Optional[str] = None

    for lineno, raw in enumerate(text.splitlines(), start=1):
        line = raw.strip()
        if not line or line[0] in "#;":
            continue

        match = _SECTION_RE.match(line)
        if match:
            current = match.group(1).lower()
            sections.setdefault(current, {})
            continue

        if "=" not in line:
            raise ProtocolError(f"Manifest line {lineno} is not a key/value pair: {raw!r}")

        # Digests never contain "=", so split on the last one; paths may.
        key, value = line.rsplit("=", 1)
        path = _unquote(key)
        digest = _unquote(value).lower()
        if not path:
            raise ProtocolError(f"Manifest line {lineno} has an empty path")
        sections[current][path] = digest

    entries = sections[HASHES_SECTION] if HASHES_SECTION in sections else sections[None]

    for path, digest in entries.items():
        if not _DIGEST_RE.match(digest):
            raise ProtocolError(f"Manifest entry {path} has a malformed digest: {digest!r}")
    return entries


def render_manifest(hashes: dict[str, str]) -> str:
    """Render hashes as a flat manifest body, sorted by path."""
    lines = [f"{path} = {digest}" for path, digest in sorted(hashes.items())]
    return "\n".join(lines) + "\n"


# =============================================================================
# Hashing
# =============================================================================


def compute_sha256(file_path: Path) -> str:
    """
    Compute the SHA256 hash of a file.

    Reads file in chunks to handle large files efficiently.

    Args:
        file_path: Path to the file to hash

    Returns:
        Lowercase hexadecimal SHA256 digest
    """
    sha256_hash = hashlib.sha256()

    with open(file_path, "rb") as f:
        # Read in 64KB chunks for memory efficiency
        for chunk in iter(lambda: f.read(65536), b""):
            sha256_hash.update(chunk)

    return sha256_hash.hexdigest()


def iter_files(directory: Path) -> Iterable[Path]:
    """Files below `directory`, recursively, skipping hidden entries."""
    for dirpath, dirnames, filenames in os.walk(directory):
        dirnames[:] = sorted(d for d in dirnames if not d.startswith("."))
        for name in sorted(filenames):
            if not name.startswith("."):
                yield Path(dirpath) / name


def compute_hashes(directory: Path) -> dict[str, str]:
    """
    Hash every file below a directory.

    Args:
        directory: Package directory

    Returns:
        Mapping of POSIX-style relative paths to SHA256 digests

    Raises:
        ValidationError: If `directory` is not a directory
    """
    directory = Path(directory)
    if not directory.is_dir():
        raise ValidationError(f"{directory} is not a directory!")

    return {
        file.relative_to(directory).as_posix(): compute_sha256(file)
        for file in iter_files(directory)
    }


# =============================================================================
# Path resolution
# =============================================================================


class PathResolver(Protocol):
    """Maps package names and manifest entries to files on disk."""

    def manifest_path(self, package: str) -> Optional[Path]:
        """The package's signed manifest, or None if there isn't one."""
        ...

    def destination(self, package: str, rel_path: str) -> Optional[Path]:
        """Where `rel_path` lives on disk, or None if it is not checkable."""
        ...


class DirectoryResolver:
    """
    One directory per package below a common root.

    Args:
        root: Directory holding the package directories
        manifest_name: File name of the signed manifest in each package
        unchecked: fnmatch patterns of manifest entries to skip
    """

    def __init__(
        self,
        root: Path,
        manifest_name: str = DEFAULT_MANIFEST_NAME,
        unchecked: Iterable[str] = (),
    ):
        self.root = Path(root)
        self.manifest_name = manifest_name
        self.unchecked = tuple(unchecked)

    def package_dir(self, package: str) -> Path:
        return self.root / package

    def manifest_path(self, package: str) -> Optional[Path]:
        path = self.package_dir(package) / self.manifest_name
        return path if path.is_file() else None

    def destination(self, package: str, rel_path: str) -> Optional[Path]:
        if any(fnmatch.fnmatch(rel_path, pattern) for pattern in self.unchecked):
            return None

        base = self.package_dir(package)
        pure = PurePosixPath(rel_path)
        if pure.is_absolute() or ".." in pure.parts:
            raise ValidationError(f"Manifest entry {rel_path} escapes package {package}")
        return base.joinpath(*pure.parts)

    def hashes(self, package: str) -> dict[str, str]:
        """Current hashes of every file in the package, manifest excluded."""
        hashes = compute_hashes(self.package_dir(package))
        hashes.pop(self.manifest_name, None)
        return hashes
