"""
Engine Configuration

All of the knobs the verification engine needs live in a single GPGConfig
value that is handed to each engine object when it is constructed. Nothing
is read from module-level state at call time, so two engines pointed at two
different keyrings can live in the same process.

Values can come from three places, in increasing priority:
  1. The defaults below
  2. MODULETRUST_* environment variables (GPGConfig.from_env)
  3. Explicit keyword arguments / command line flags
"""

import getpass
import os
import re
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Mapping, Optional

from moduletrust.exceptions import ValidationError


# =============================================================================
# Defaults
# =============================================================================

# The master key every other signing key must be certified by.
DEFAULT_TRUST_ROOT = "2016349F5BC6F49340FCCAF99F9169F4B33B4659"

# Ownertrust entries are keyed by full fingerprint, so nothing shorter will do.
FINGERPRINT_LENGTH = 40

DEFAULT_GPG_BINARY = "/usr/bin/gpg"

# Seconds to wait for the status channel. Slow boards may need more.
DEFAULT_TIMEOUT = 3.0

DEFAULT_KEYSERVER_TIMEOUT = 10.0

# Walked once, in order. The https endpoint is queried over HKP directly;
# the rest are handed to gpg's own --keyserver.
DEFAULT_KEYSERVERS = (
    "https://keys.openpgp.org",
    "hkp://keyserver.ubuntu.com:80",  # in case port 11371 is blocked outbound
    "hkps://keyserver.ubuntu.com",
    "pgp.mit.edu",
)

# Where packagers install bundled <long-id>.key / <short-id>.key files,
# e.g. 9F9169F4B33B4659.key for the trust root. Override with
# MODULETRUST_KEY_DIR or --key-dir.
DEFAULT_KEY_DIR = Path("/usr/share/moduletrust/keys")

ENV_PREFIX = "MODULETRUST_"


def default_run_as() -> str:
    """Login name the tool's environment is built for."""
    try:
        return getpass.getuser()
    except (KeyError, OSError):
        return "nobody"


def default_home_dir(user: str) -> Path:
    """Keyring directory for `user`: ~user/.gnupg."""
    home = Path(os.path.expanduser(f"~{user}"))
    if not home.is_absolute():
        home = Path.home()
    return home / ".gnupg"


def _is_hex(value: str) -> bool:
    return bool(re.fullmatch(r"[0-9A-Fa-f]+", value))


# =============================================================================
# Configuration Object
# =============================================================================


@dataclass(frozen=True)
class GPGConfig:
    """
    Configuration for one verification engine.

    Attributes:
        gpg_binary: Path to the gpg executable
        home_dir: Keyring directory passed as --homedir
        run_as: Identity placed in the tool's USER variable
        trust_root: Fingerprint of the trust root key
        timeout: Seconds to wait for the status channel
        keyserver_timeout: Seconds to wait per key server
        keyservers: Ordered key-server endpoints
        key_dir: Directory of bundled <id>.key files
        extra_options: Additional options placed before every command
    """

    gpg_binary: str = DEFAULT_GPG_BINARY
    home_dir: Optional[Path] = None
    run_as: str = field(default_factory=default_run_as)
    trust_root: str = DEFAULT_TRUST_ROOT
    timeout: float = DEFAULT_TIMEOUT
    keyserver_timeout: float = DEFAULT_KEYSERVER_TIMEOUT
    keyservers: tuple[str, ...] = DEFAULT_KEYSERVERS
    key_dir: Path = DEFAULT_KEY_DIR
    extra_options: tuple[str, ...] = ()

    def __post_init__(self):
        root = re.sub(r"\s+", "", self.trust_root).upper()
        if root.startswith("0X"):
            root = root[2:]
        if len(root) != FINGERPRINT_LENGTH or not _is_hex(root):
            raise ValidationError(
                f"Trust root {self.trust_root!r} is not a {FINGERPRINT_LENGTH} character hex fingerprint"
            )
        object.__setattr__(self, "trust_root", root)

        if self.home_dir is None:
            object.__setattr__(self, "home_dir", default_home_dir(self.run_as))
        else:
            object.__setattr__(self, "home_dir", Path(self.home_dir))
        object.__setattr__(self, "key_dir", Path(self.key_dir))
        object.__setattr__(self, "keyservers", tuple(self.keyservers))
        object.__setattr__(self, "extra_options", tuple(self.extra_options))

        if self.timeout <= 0 or self.keyserver_timeout <= 0:
            raise ValidationError("Timeouts must be positive")

    @property
    def trust_root_long(self) -> str:
        """Long (16 hex) form of the trust root id."""
        return self.trust_root[-16:]

    def environment(self) -> dict[str, str]:
        """The fixed, sanitized environment the tool runs with."""
        return {
            "PATH": "/bin:/usr/bin",
            "USER": self.run_as,
            "HOME": "/tmp",
            "SHELL": "/bin/bash",
        }

    def with_overrides(self, **overrides) -> "GPGConfig":
        """Copy of this config with the non-None overrides applied."""
        changes = {k: v for k, v in overrides.items() if v is not None}
        return replace(self, **changes)

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None, **overrides) -> "GPGConfig":
        """
        Build a config from MODULETRUST_* environment variables.

        Args:
            environ: Mapping to read instead of os.environ
            **overrides: Explicit values that win over the environment

        Returns:
            A new GPGConfig

        Raises:
            ValidationError: If a numeric variable does not parse
        """
        env = os.environ if environ is None else environ
        values = {}

        def get(name: str) -> Optional[str]:
            value = env.get(ENV_PREFIX + name)
            return value.strip() if value and value.strip() else None

        if get("GPG"):
            values["gpg_binary"] = get("GPG")
        if get("HOME"):
            values["home_dir"] = Path(get("HOME"))
        if get("USER"):
            values["run_as"] = get("USER")
        if get("TRUST_ROOT"):
            values["trust_root"] = get("TRUST_ROOT")
        if get("KEY_DIR"):
            values["key_dir"] = Path(get("KEY_DIR"))
        if get("KEYSERVERS"):
            values["keyservers"] = tuple(
                ks.strip() for ks in get("KEYSERVERS").split(",") if ks.strip()
            )
        for name, attr in (("TIMEOUT", "timeout"), ("KEYSERVER_TIMEOUT", "keyserver_timeout")):
            raw = get(name)
            if raw is None:
                continue
            try:
                values[attr] = float(raw)
            except ValueError:
                raise ValidationError(f"{ENV_PREFIX}{name}={raw!r} is not a number") from None

        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)
