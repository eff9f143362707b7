"""Unit tests for binary identity and the candidate pipeline."""

import hashlib
import stat
import sys
from collections.abc import AsyncIterator, Callable
from pathlib import Path

import pytest

from overseer import Binary, BinaryUnavailableError, SwapError, UpgradeValidationError
from overseer._binary import file_digest, sanity_check, stage_candidate, swap

WriteScript = Callable[[str, str], Path]

ANSWERING_SCRIPT = """\
import os
import sys

sys.stdout.write(os.environ["OVERSEER_BIN_CHECK"])
"""


async def _chunks(*parts: bytes) -> AsyncIterator[bytes]:
    for part in parts:
        yield part


async def _failing_chunks() -> AsyncIterator[bytes]:
    yield b"partial"
    msg = "connection reset"
    raise ConnectionError(msg)


@pytest.fixture
def trusted(
    write_script: WriteScript, python_binary: Callable[[Path], Binary]
) -> Binary:
    return python_binary(write_script("app.py", "print('v1')\n"))


class TestBinary:
    def test_load_reads_digest_and_mode(self, trusted: Binary) -> None:
        expected = hashlib.sha1(trusted.path.read_bytes()).hexdigest()  # noqa: S324

        assert trusted.digest == expected
        assert trusted.mode == 0o755
        assert trusted.generation == 1

    def test_short_id(self, trusted: Binary) -> None:
        assert trusted.short_id == trusted.digest[:12]

    def test_command_uses_interpreter_and_args(self, tmp_path: Path) -> None:
        binary = Binary(
            path=tmp_path / "app", interpreter=("/usr/bin/python3",), args=("-v",)
        )

        assert binary.command() == ["/usr/bin/python3", str(tmp_path / "app"), "-v"]
        assert binary.command(tmp_path / "next")[1] == str(tmp_path / "next")

    def test_current_describes_running_script(
        self, monkeypatch: pytest.MonkeyPatch, trusted: Binary
    ) -> None:
        monkeypatch.setattr(sys, "argv", [str(trusted.path), "--port", "80"])

        binary = Binary.current()

        assert binary.path == trusted.path.resolve()
        assert binary.interpreter == (sys.executable,)
        assert binary.args == ("--port", "80")

    @pytest.mark.parametrize("argv0", ["-c", ""])
    def test_current_without_script_is_unavailable(
        self, monkeypatch: pytest.MonkeyPatch, argv0: str
    ) -> None:
        monkeypatch.setattr(sys, "argv", [argv0])

        with pytest.raises(BinaryUnavailableError) as exc_info:
            _ = Binary.current()

        assert isinstance(exc_info.value.cause, OSError)

    def test_is_replaceable(self, trusted: Binary) -> None:
        assert trusted.is_replaceable()


@pytest.mark.anyio
class TestStageCandidate:
    async def test_writes_beside_trusted_binary(self, trusted: Binary) -> None:
        candidate = await stage_candidate(trusted, _chunks(b"print(", b"'v2')\n"))

        try:
            assert candidate.path.parent == trusted.path.parent
            assert candidate.path != trusted.path
            assert candidate.path.read_bytes() == b"print('v2')\n"
            assert candidate.size == 12
            assert candidate.digest == file_digest(candidate.path)
            assert stat.S_IMODE(candidate.path.stat().st_mode) == trusted.mode
        finally:
            candidate.discard()

        assert not candidate.path.exists()

    async def test_failed_stream_leaves_no_file(self, trusted: Binary) -> None:
        with pytest.raises(ConnectionError):
            _ = await stage_candidate(trusted, _failing_chunks())

        assert sorted(p.name for p in trusted.path.parent.iterdir()) == ["app.py"]


@pytest.mark.anyio
class TestSanityCheck:
    async def test_accepts_answering_candidate(
        self, trusted: Binary, write_script: WriteScript
    ) -> None:
        candidate = write_script("next.py", ANSWERING_SCRIPT)

        await sanity_check(trusted, candidate, timeout=10)

    async def test_rejects_wrong_token(
        self, trusted: Binary, write_script: WriteScript
    ) -> None:
        candidate = write_script("next.py", "print('hello')\n")

        with pytest.raises(UpgradeValidationError) as exc_info:
            await sanity_check(trusted, candidate, timeout=10)

        assert exc_info.value.reason == "token_mismatch"
        assert exc_info.value.path == candidate

    async def test_rejects_token_with_trailing_newline(
        self, trusted: Binary, write_script: WriteScript
    ) -> None:
        candidate = write_script(
            "next.py", "import os\nprint(os.environ['OVERSEER_BIN_CHECK'])\n"
        )

        with pytest.raises(UpgradeValidationError) as exc_info:
            await sanity_check(trusted, candidate, timeout=10)

        assert exc_info.value.reason == "token_mismatch"

    async def test_rejects_non_zero_exit(
        self, trusted: Binary, write_script: WriteScript
    ) -> None:
        candidate = write_script("next.py", "raise SystemExit(3)\n")

        with pytest.raises(UpgradeValidationError) as exc_info:
            await sanity_check(trusted, candidate, timeout=10)

        assert exc_info.value.reason == "exit_code"

    async def test_rejects_hanging_candidate(
        self, trusted: Binary, write_script: WriteScript
    ) -> None:
        candidate = write_script("next.py", "import time\ntime.sleep(30)\n")

        with pytest.raises(UpgradeValidationError) as exc_info:
            await sanity_check(trusted, candidate, timeout=0.5)

        assert exc_info.value.reason == "timeout"

    async def test_rejects_unrunnable_candidate(self, tmp_path: Path) -> None:
        binary = Binary(path=tmp_path / "app")
        candidate = tmp_path / "missing"

        with pytest.raises(UpgradeValidationError) as exc_info:
            await sanity_check(binary, candidate, timeout=5)

        assert exc_info.value.reason == "exec"


@pytest.mark.anyio
class TestSwap:
    async def test_replaces_trusted_binary(self, trusted: Binary) -> None:
        candidate = await stage_candidate(trusted, _chunks(b"print('v2')\n"))

        swap(trusted, candidate)

        assert trusted.path.read_bytes() == b"print('v2')\n"
        assert trusted.digest == candidate.digest
        assert trusted.generation == 2
        assert not candidate.path.exists()
        assert trusted.path.stat().st_mode & stat.S_IXUSR

    async def test_failure_leaves_trusted_binary(self, trusted: Binary) -> None:
        candidate = await stage_candidate(trusted, _chunks(b"print('v2')\n"))
        candidate.discard()
        original = trusted.path.read_bytes()
        digest = trusted.digest

        with pytest.raises(SwapError) as exc_info:
            swap(trusted, candidate)

        assert exc_info.value.path == trusted.path
        assert trusted.path.read_bytes() == original
        assert trusted.digest == digest
        assert trusted.generation == 1
