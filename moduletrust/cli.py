"""
Command Line Interface

Usage:
    moduletrust verify-file /path/to/file.xml.asc
    moduletrust verify-package --root /var/www/admin/modules core
    moduletrust fetch-key 9F9169F4B33B4659
    moduletrust trust-root
    moduletrust hashes /var/www/admin/modules/core
    moduletrust strip /tmp/download/core.tgz.gpg
    moduletrust secret-keys

Global options (before the command) override MODULETRUST_* environment
variables, which override the built-in defaults.
"""

import argparse
import logging
import sys
from pathlib import Path
from typing import Optional, Sequence

from moduletrust.config import GPGConfig
from moduletrust.exceptions import ModuleTrustError
from moduletrust.manifest import DirectoryResolver, compute_hashes, render_manifest
from moduletrust.status import SignatureStatus
from moduletrust.verifier import Verifier


def build_config(args: argparse.Namespace) -> GPGConfig:
    return GPGConfig.from_env(
        gpg_binary=args.gpg,
        home_dir=args.homedir,
        trust_root=args.trust_root,
        timeout=args.timeout,
        keyservers=tuple(args.keyserver) if args.keyserver else None,
        key_dir=args.key_dir,
    )


def describe_flags(flags: SignatureStatus) -> str:
    names = [flag.name for flag in SignatureStatus if flag and flags & flag]
    return "|".join(names) if names else "NONE"


# =============================================================================
# Commands
# =============================================================================


def cmd_verify_file(verifier: Verifier, args: argparse.Namespace) -> bool:
    ok = verifier.verify_file(args.file)
    if ok:
        print(f"✓ {args.file}: signed by a key certified by {verifier.config.trust_root}")
    else:
        print(f"✗ {args.file}: signature not trusted")
    return ok


def cmd_verify_package(verifier: Verifier, args: argparse.Namespace) -> bool:
    print(f"\n{'=' * 60}")
    print(f"Verifying package: {args.package}")
    print("=" * 60)

    result = verifier.verify_package(args.package)
    print(f"  Status: {describe_flags(result.flags)}")
    for detail in result.details[:10]:  # Limit output
        print(f"    - {detail}")
    if len(result.details) > 10:
        print(f"    ... and {len(result.details) - 10} more")

    print("=" * 60)
    if result.ok:
        print(f"✓ VERIFICATION PASSED for {args.package}")
    else:
        print(f"✗ VERIFICATION FAILED for {args.package}")
    print("=" * 60)
    return result.ok


def cmd_fetch_key(verifier: Verifier, args: argparse.Namespace) -> bool:
    key = args.key_id or verifier.config.trust_root
    verifier.acquire_key(args.key_id)
    print(f"✓ Key {key} is in the keyring")
    return True


def cmd_trust_root(verifier: Verifier, args: argparse.Namespace) -> bool:
    verifier.ensure_root_trusted()
    print(f"✓ {verifier.config.trust_root} is ultimately trusted")
    return True


def cmd_hashes(verifier: Verifier, args: argparse.Namespace) -> bool:
    sys.stdout.write(render_manifest(compute_hashes(args.directory)))
    return True


def cmd_strip(verifier: Verifier, args: argparse.Namespace) -> bool:
    output = verifier.strip_signature(args.file)
    print(f"✓ Wrote {output}")
    return True


def cmd_secret_keys(verifier: Verifier, args: argparse.Namespace) -> bool:
    for key in verifier.list_secret_keys():
        print(key)
    return True


# =============================================================================
# Main
# =============================================================================


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="moduletrust",
        description="Verify signed module packages against a GPG trust root",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s verify-package --root /var/www/admin/modules core
  %(prog)s --homedir /home/asterisk/.gnupg trust-root
  %(prog)s --keyserver hkps://keys.openpgp.org fetch-key 9F9169F4B33B4659

A package passes only if its manifest signature is valid AND trusted, and
every file listed in the manifest still has the recorded SHA256 hash.
        """,
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    parser.add_argument("--gpg", default=None, help="Path to the gpg binary")
    parser.add_argument("--homedir", type=Path, default=None, help="Keyring directory")
    parser.add_argument("--trust-root", default=None, help="Fingerprint of the trust root")
    parser.add_argument("--timeout", type=float, default=None, help="Seconds to wait for gpg")
    parser.add_argument(
        "--keyserver",
        action="append",
        default=None,
        help="Key server to try (repeatable, tried in order)",
    )
    parser.add_argument("--key-dir", type=Path, default=None, help="Directory of bundled .key files")

    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("verify-file", help="Verify a signed file")
    p.add_argument("file", type=Path)
    p.set_defaults(func=cmd_verify_file)

    p = sub.add_parser("verify-package", help="Verify a package against its signed manifest")
    p.add_argument("package")
    p.add_argument("--root", type=Path, required=True, help="Directory holding package directories")
    p.add_argument("--manifest-name", default="module.sig")
    p.add_argument(
        "--unchecked",
        action="append",
        default=[],
        help="Glob of manifest entries to skip (repeatable)",
    )
    p.set_defaults(func=cmd_verify_package)

    p = sub.add_parser("fetch-key", help="Fetch a public key (default: the trust root)")
    p.add_argument("key_id", nargs="?", default=None)
    p.set_defaults(func=cmd_fetch_key)

    p = sub.add_parser("trust-root", help="Mark the trust root as ultimately trusted")
    p.set_defaults(func=cmd_trust_root)

    p = sub.add_parser("hashes", help="Print a manifest body for a directory")
    p.add_argument("directory", type=Path)
    p.set_defaults(func=cmd_hashes)

    p = sub.add_parser("strip", help="Write the signed content of a .gpg file")
    p.add_argument("file", type=Path)
    p.set_defaults(func=cmd_strip)

    p = sub.add_parser("secret-keys", help="List secret key ids")
    p.set_defaults(func=cmd_secret_keys)

    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        config = build_config(args)
        resolver = None
        if getattr(args, "root", None) is not None:
            resolver = DirectoryResolver(args.root, args.manifest_name, args.unchecked)
        verifier = Verifier(config, resolver=resolver)
        ok = args.func(verifier, args)
    except ModuleTrustError as e:
        print(f"Error: {e}")
        return 1

    return 0 if ok else 1


if __name__ == "__main__":
    sys.exit(main())
