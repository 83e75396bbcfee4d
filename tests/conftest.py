from contextlib import contextmanager

import pytest

from moduletrust.config import GPGConfig
from moduletrust.runner import ProcessResult

ROOT_FPR = "2016349F5BC6F49340FCCAF99F9169F4B33B4659"
ROOT_LONG = ROOT_FPR[-16:]
SIGNER_FPR = "ABCDEF0123456789ABCDEF0123456789ABCDEF01"
SIGNER_LONG = SIGNER_FPR[-16:]

VALIDSIG = f"[GNUPG:] VALIDSIG {SIGNER_FPR} 2024-01-02 1704153600 0 4 0 1 10 00 {SIGNER_FPR}"
GOODSIG = f"[GNUPG:] GOODSIG {SIGNER_LONG} Module Signer <signer@example.com>"
BADSIG = f"[GNUPG:] BADSIG {SIGNER_LONG} Module Signer <signer@example.com>"
TRUST_ULTIMATE = "[GNUPG:] TRUST_ULTIMATE 0 pgp"
TRUST_FULLY = "[GNUPG:] TRUST_FULLY 0 pgp"
TRUST_UNDEFINED = "[GNUPG:] TRUST_UNDEFINED 0 pgp"
NO_PUBKEY = f"[GNUPG:] NO_PUBKEY {SIGNER_LONG}"
ERRSIG_NO_PUBKEY = f"[GNUPG:] ERRSIG {SIGNER_LONG} 1 8 01 1704153600 9 {SIGNER_FPR}"
NODATA = "[GNUPG:] NODATA 1"
IMPORT_OK = f"[GNUPG:] IMPORT_OK 1 {SIGNER_FPR}"

GOOD_TRUSTED = (
    "[GNUPG:] NEWSIG",
    GOODSIG,
    VALIDSIG,
    TRUST_ULTIMATE,
)


def result(status=(), stdout="", stderr="", exit_code=0):
    return ProcessResult(stdout=stdout, stderr=stderr, status=tuple(status), exit_code=exit_code)


class FakeRunner:
    """
    Stands in for GPGRunner.

    Responses are registered per argument prefix and handed out in order;
    the last response for a prefix repeats. A response that is an exception
    instance is raised instead of returned.
    """

    def __init__(self, config):
        self.config = config
        self.calls = []
        self.stdin_data = []
        self.lock_count = 0
        self._responses = []

    def on(self, *prefix, responses):
        self._responses.append((list(prefix), list(responses)))
        return self

    def run(self, args, stdin=None, timeout=None):
        args = list(args)
        self.calls.append(args)
        self.stdin_data.append(stdin.read() if stdin is not None else None)

        for prefix, responses in self._responses:
            if args[: len(prefix)] == prefix:
                response = responses.pop(0) if len(responses) > 1 else responses[0]
                if isinstance(response, BaseException):
                    raise response
                return response
        raise AssertionError(f"Unexpected gpg call: {args}")

    def calls_starting_with(self, *prefix):
        return [call for call in self.calls if call[: len(prefix)] == list(prefix)]

    @contextmanager
    def locked(self):
        self.lock_count += 1
        yield


@pytest.fixture
def config(tmp_path):
    return GPGConfig(
        home_dir=tmp_path / "gnupg",
        key_dir=tmp_path / "keys",
        run_as="tester",
        keyservers=("hkp://ks-one.example", "hkp://ks-two.example"),
    )


@pytest.fixture
def runner(config):
    return FakeRunner(config)
