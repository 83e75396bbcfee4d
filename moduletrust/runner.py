"""
Running GPG

Every interaction with the keyring goes through GPGRunner.run(). It starts
gpg with a fixed environment and captures three output channels:

  - stdout: human readable output (or the decrypted document body)
  - stderr: human readable diagnostics
  - status: the machine readable --status-fd channel, one event per line:

        [GNUPG:] NEWSIG
        [GNUPG:] VALIDSIG 2016349F5BC6F49340FCCAF99F9169F4B33B4659 2024-01-02 1704153600 ...
        [GNUPG:] TRUST_ULTIMATE 0 pgp

Reading order matters. gpg does not finish its status channel until its
other buffers have been drained, so stdout and stderr are read as data
arrives while waiting on the status channel. The status channel is only
complete once gpg has closed all three. The configured timeout applies to
the status channel becoming readable; if it stays silent the process is
killed before GPGTimeoutError is raised.

The exit code is part of the result, but zero only means gpg did not hit an
internal error. It says nothing about whether a signature is trusted.
"""

import fcntl
import logging
import os
import select
import subprocess
import time
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import IO, Iterator, Optional, Sequence

from moduletrust.config import GPGConfig
from moduletrust.exceptions import GPGTimeoutError, ProcessError

logger = logging.getLogger(__name__)

LOCK_FILE_NAME = ".moduletrust.lock"
READ_CHUNK = 65536


@dataclass(frozen=True)
class ProcessResult:
    """Output of a single gpg invocation."""

    stdout: str
    stderr: str
    status: tuple[str, ...]
    exit_code: int

    def to_dict(self) -> dict:
        return {
            "stdout": self.stdout,
            "stderr": self.stderr,
            "status": list(self.status),
            "exit_code": self.exit_code,
        }


def split_status(raw: str) -> tuple[str, ...]:
    """Split raw status output into lines, dropping trailing blank lines."""
    lines = raw.splitlines()
    while lines and not lines[-1].strip():
        lines.pop()
    return tuple(lines)


class GPGRunner:
    """Runs gpg against one keyring directory."""

    def __init__(self, config: GPGConfig):
        self.config = config

    @property
    def home_dir(self) -> Path:
        return self.config.home_dir

    def build_command(self, args: Sequence[str], status_fd: int) -> list[str]:
        """Full command line for `args` with the status channel on `status_fd`."""
        return [
            self.config.gpg_binary,
            "--homedir", str(self.home_dir),
            "--batch",
            "--no-tty",
            "--no-permission-warning",
            "--keyserver-options", "auto-key-retrieve=true",
            *self.config.extra_options,
            "--status-fd", str(status_fd),
            *args,
        ]

    def run(
        self,
        args: Sequence[str],
        stdin: Optional[IO] = None,
        timeout: Optional[float] = None,
    ) -> ProcessResult:
        """
        Run gpg and collect its output.

        Args:
            args: Arguments after the fixed options (e.g. ["--verify", path])
            stdin: Optional readable file object fed to gpg's stdin
            timeout: Seconds to wait for the status channel (default from config)

        Returns:
            ProcessResult with stdout, stderr, status lines and exit code

        Raises:
            ProcessError: If gpg cannot be started
            GPGTimeoutError: If the status channel stays silent past the deadline
        """
        if isinstance(args, str):
            raise TypeError("args must be a sequence of arguments, not a string")

        wait = self.config.timeout if timeout is None else timeout
        status_read, status_write = os.pipe()
        command = self.build_command(args, status_write)
        logger.debug("Running %s", " ".join(command))

        try:
            proc = subprocess.Popen(
                command,
                stdin=stdin if stdin is not None else subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                pass_fds=(status_write,),
                cwd="/tmp",
                env=self.config.environment(),
            )
        except OSError as e:
            os.close(status_read)
            os.close(status_write)
            raise ProcessError(f"Unable to start GPG ({self.config.gpg_binary}): {e}") from e

        # Only the child may hold the write end, otherwise EOF never arrives.
        os.close(status_write)

        try:
            output = self._collect(proc, status_read, wait)
        except GPGTimeoutError:
            proc.kill()
            proc.communicate()
            raise GPGTimeoutError(
                f"gpg took too long to run the command: {' '.join(args)}",
                command=command,
            ) from None
        finally:
            os.close(status_read)

        proc.wait()
        proc.stdout.close()
        proc.stderr.close()

        result = ProcessResult(
            stdout=output["stdout"].decode("utf-8", errors="replace"),
            stderr=output["stderr"].decode("utf-8", errors="replace"),
            status=split_status(output["status"].decode("utf-8", errors="replace")),
            exit_code=proc.returncode,
        )
        logger.debug("gpg exited %d with %d status lines", result.exit_code, len(result.status))
        return result

    def _collect(self, proc: subprocess.Popen, status_fd: int, wait: float) -> dict[str, bytes]:
        """
        Read stdout, stderr and the status channel until all three close.

        Raises:
            GPGTimeoutError: If the status channel is not readable within `wait`
        """
        names = {
            proc.stdout.fileno(): "stdout",
            proc.stderr.fileno(): "stderr",
            status_fd: "status",
        }
        chunks = {name: [] for name in names.values()}
        pending = set(names)
        deadline = time.monotonic() + wait
        status_ready = False

        while pending:
            timeout = None
            if not status_ready:
                timeout = deadline - time.monotonic()
                if timeout <= 0:
                    raise GPGTimeoutError("status channel stayed silent")

            ready, _, _ = select.select(list(pending), [], [], timeout)
            if not ready:
                raise GPGTimeoutError("status channel stayed silent")

            for fd in ready:
                if fd == status_fd:
                    status_ready = True
                data = os.read(fd, READ_CHUNK)
                if data:
                    chunks[names[fd]].append(data)
                else:
                    pending.discard(fd)

        return {name: b"".join(parts) for name, parts in chunks.items()}

    @contextmanager
    def locked(self) -> Iterator[None]:
        """
        Hold an exclusive lock on the keyring directory.

        gpg does not serialize writers to the trust database, so every
        mutation made by this package runs inside this block. The lock is
        advisory and only excludes other users of the same lock file.
        """
        self.home_dir.mkdir(parents=True, exist_ok=True)
        lock_path = self.home_dir / LOCK_FILE_NAME
        fd = os.open(str(lock_path), os.O_RDWR | os.O_CREAT, 0o600)
        try:
            fcntl.flock(fd, fcntl.LOCK_EX)
            logger.debug("Acquired keyring lock %s", lock_path)
            yield
        finally:
            fcntl.flock(fd, fcntl.LOCK_UN)
            os.close(fd)
