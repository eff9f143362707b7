"""Binary identity and the candidate upgrade pipeline.

A fetched binary moves through three steps before it is trusted:

1. stage_candidate() streams it to a temporary file next to the trusted
   binary, so the final rename stays on one filesystem.
2. sanity_check() runs it with a random token and requires the token back
   on stdout, proving it is a compatible overseer build.
3. swap() renames it over the trusted path and advances the generation.

The trusted binary is only modified by swap(), and only after the first
two steps succeeded.
"""

from __future__ import annotations

import contextlib
import hashlib
import os
import secrets
import stat
import sys
import tempfile
from collections.abc import AsyncIterator, Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path

import anyio

from overseer.exceptions import (
    BinaryUnavailableError,
    SwapError,
    UpgradeValidationError,
)

from ._env import ENV_BIN_CHECK

_CHUNK_SIZE: int = 64 * 1024


def file_digest(path: Path) -> str:
    """Return the sha1 hex digest of a file."""
    digest = hashlib.sha1()  # noqa: S324 - identity, not security
    with path.open("rb") as f:
        for chunk in iter(lambda: f.read(_CHUNK_SIZE), b""):
            digest.update(chunk)
    return digest.hexdigest()


@dataclass(slots=True)
class Binary:
    """The executable the master trusts and launches slaves from.

    Only the master mutates a Binary, and only through swap().

    Attributes:
        path: Filesystem path of the trusted executable.
        interpreter: Command prefix used to launch it (the Python
            interpreter for scripts and zipapps, empty for frozen builds).
        digest: sha1 hex digest of the trusted executable.
        mode: Permission bits of the trusted executable.
        generation: Incremented every time a candidate is swapped in.
        args: Command-line arguments passed on to every launch.
    """

    path: Path
    interpreter: tuple[str, ...] = ()
    digest: str = ""
    mode: int = 0o755
    generation: int = 1
    args: tuple[str, ...] = ()

    @classmethod
    def current(cls) -> Binary:
        """Describe the executable of the running process.

        Frozen builds (PyInstaller and similar) are the executable
        themselves; otherwise the main script or zipapp is the binary and
        the current interpreter launches it.

        Raises:
            BinaryUnavailableError: If the executable cannot be read, as
                with "python -c" or an interactive session.
        """
        if getattr(sys, "frozen", False):
            path = Path(sys.executable).resolve()
            interpreter: tuple[str, ...] = ()
        else:
            path = Path(sys.argv[0] if sys.argv else "").resolve()
            interpreter = (sys.executable,)
        try:
            return cls.load(path, interpreter=interpreter, args=tuple(sys.argv[1:]))
        except OSError as e:
            msg = f"cannot identify the running executable {path}: {e}"
            raise BinaryUnavailableError(msg, path=path, cause=e) from e

    @classmethod
    def load(
        cls,
        path: Path,
        *,
        interpreter: Sequence[str] = (),
        args: Sequence[str] = (),
    ) -> Binary:
        """Describe the executable at path, reading its digest and mode."""
        info = path.stat()
        return cls(
            path=path,
            interpreter=tuple(interpreter),
            digest=file_digest(path),
            mode=stat.S_IMODE(info.st_mode),
            args=tuple(args),
        )

    @property
    def short_id(self) -> str:
        """Return an abbreviated digest for logs."""
        return self.digest[:12]

    def command(self, path: Path | None = None) -> list[str]:
        """Build the argv that launches this binary.

        Args:
            path: Executable to launch instead of the trusted path, used
                for candidates.

        Returns:
            The command line, including the original arguments.
        """
        return [*self.interpreter, str(path or self.path), *self.args]

    def is_replaceable(self) -> bool:
        """Return True if the binary's directory allows the atomic swap."""
        return os.access(self.path.parent, os.W_OK | os.X_OK)


@dataclass(slots=True)
class Candidate:
    """A fetched binary staged next to the trusted one.

    Attributes:
        path: Temporary path of the staged file.
        digest: sha1 hex digest of the staged content.
        size: Number of bytes staged.
    """

    path: Path
    digest: str
    size: int

    def discard(self) -> None:
        """Delete the staged file if it still exists."""
        with contextlib.suppress(FileNotFoundError):
            self.path.unlink()


async def stage_candidate(binary: Binary, chunks: AsyncIterator[bytes]) -> Candidate:
    """Write fetched bytes to a temporary file beside the trusted binary.

    Args:
        binary: The trusted binary.
        chunks: The fetched content.

    Returns:
        The staged candidate.

    Raises:
        OSError: If the file cannot be written. Partial files are removed.
    """
    fd, name = tempfile.mkstemp(
        dir=binary.path.parent,
        prefix=f".{binary.path.name}.",
        suffix=".tmp",
    )
    os.close(fd)
    path = Path(name)
    digest = hashlib.sha1()  # noqa: S324 - identity, not security
    size = 0
    try:
        async with await anyio.open_file(path, "wb") as f:
            async for chunk in chunks:
                digest.update(chunk)
                size += len(chunk)
                _ = await f.write(chunk)
        os.chmod(path, binary.mode)
    except BaseException:
        with contextlib.suppress(FileNotFoundError):
            path.unlink()
        raise
    return Candidate(path=path, digest=digest.hexdigest(), size=size)


async def sanity_check(
    binary: Binary,
    path: Path,
    timeout: float,
    *,
    environ: Mapping[str, str] | None = None,
) -> None:
    """Confirm that the executable at path is a compatible overseer build.

    The executable is started with a random token in OVERSEER_BIN_CHECK
    and must print exactly that token and exit with status 0.

    Args:
        binary: The trusted binary, used to build the command line.
        path: The executable to check.
        timeout: Seconds the executable gets to answer.
        environ: Base environment, defaults to the current one.

    Raises:
        UpgradeValidationError: If the executable fails, times out or
            prints something else.
    """
    token = secrets.token_hex(16)
    env = {**(os.environ if environ is None else environ), ENV_BIN_CHECK: token}

    try:
        with anyio.fail_after(timeout):
            result = await anyio.run_process(binary.command(path), env=env, check=False)
    except TimeoutError as e:
        msg = f"sanity check timed out after {timeout:.1f}s"
        raise UpgradeValidationError(msg, path=path, reason="timeout") from e
    except OSError as e:
        msg = f"failed to run candidate: {e}"
        raise UpgradeValidationError(msg, path=path, reason="exec") from e

    if result.returncode != 0:
        msg = f"candidate exited with code {result.returncode}"
        raise UpgradeValidationError(msg, path=path, reason="exit_code")

    if result.stdout != token.encode():
        output = result.stdout.decode(errors="replace")
        msg = f"sanity check failed: expected token, got {output[:64]!r}"
        raise UpgradeValidationError(msg, path=path, reason="token_mismatch")


def swap(binary: Binary, candidate: Candidate) -> None:
    """Atomically replace the trusted binary with a validated candidate.

    Args:
        binary: The trusted binary, updated in place on success.
        candidate: The validated candidate.

    Raises:
        SwapError: If the rename fails. The trusted binary is unchanged.
    """
    try:
        os.chmod(
            candidate.path,
            binary.mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH,
        )
        os.replace(candidate.path, binary.path)
    except OSError as e:
        msg = f"failed to replace {binary.path}: {e}"
        raise SwapError(msg, path=binary.path, cause=e) from e

    binary.digest = candidate.digest
    binary.generation += 1
