"""Overseer exceptions."""

from pathlib import Path  # noqa: TC003 - Used in runtime type annotations


class OverseerError(Exception):
    """Base exception for overseer errors."""


# =============================================================================
# Setup Exceptions
# =============================================================================


class ConfigInvalidError(OverseerError):
    """Raised when a Config fails validation.

    Attributes:
        field: The configuration field that failed validation.
    """

    def __init__(self, message: str, *, field: str | None = None) -> None:
        """Initialize with error message and field context.

        Args:
            message: Human-readable error message.
            field: The configuration field that failed validation.
        """
        super().__init__(message)
        self.field: str | None = field


class PlatformUnsupportedError(OverseerError):
    """Raised when the platform lacks signals or descriptor inheritance.

    Attributes:
        platform: The platform identifier that is not supported.
    """

    def __init__(self, message: str, *, platform: str) -> None:
        """Initialize with error message and platform context."""
        super().__init__(message)
        self.platform: str = platform


class BinaryUnavailableError(OverseerError):
    """Raised when the running executable cannot be identified.

    Attributes:
        path: The path that was expected to hold the executable.
        cause: The underlying exception that caused the failure.
    """

    def __init__(
        self,
        message: str,
        *,
        path: Path,
        cause: Exception | None = None,
    ) -> None:
        """Initialize with error message and path context."""
        super().__init__(message)
        self.path: Path = path
        self.cause: Exception | None = cause


class BindError(OverseerError):
    """Raised when a listening socket cannot be bound.

    Attributes:
        address: The address that failed to bind.
        cause: The underlying exception that caused the failure.
    """

    def __init__(
        self,
        message: str,
        *,
        address: str,
        cause: Exception | None = None,
    ) -> None:
        """Initialize with error message and address context.

        Args:
            message: Human-readable error message.
            address: The address that failed to bind.
            cause: The underlying exception that caused the failure.
        """
        super().__init__(message)
        self.address: str = address
        self.cause: Exception | None = cause


class SlaveEnvironmentError(OverseerError):
    """Raised when a slave inherits a malformed environment.

    Attributes:
        variable: The environment variable that failed to parse.
        value: The raw value of the variable, if present.
    """

    def __init__(
        self,
        message: str,
        *,
        variable: str,
        value: str | None = None,
    ) -> None:
        """Initialize with error message and variable context."""
        super().__init__(message)
        self.variable: str = variable
        self.value: str | None = value


# =============================================================================
# Upgrade Exceptions
# =============================================================================


class UpgradeError(OverseerError):
    """Base exception for recoverable binary upgrade errors."""


class FetchError(UpgradeError):
    """Raised when a fetcher fails to retrieve a binary.

    Attributes:
        cause: The underlying exception that caused the failure.
    """

    def __init__(self, message: str, *, cause: Exception | None = None) -> None:
        """Initialize with error message and cause."""
        super().__init__(message)
        self.cause: Exception | None = cause


class UpgradeValidationError(UpgradeError):
    """Raised when a candidate binary is rejected.

    Rejection happens either in the user's pre-upgrade hook or in the
    sanity check.

    Attributes:
        path: Path to the rejected candidate.
        reason: Short machine-readable reason ("pre_upgrade", "timeout",
            "exit_code", "token_mismatch", "exec").
    """

    def __init__(self, message: str, *, path: Path, reason: str) -> None:
        """Initialize with error message and candidate context.

        Args:
            message: Human-readable error message.
            path: Path to the rejected candidate.
            reason: Short machine-readable rejection reason.
        """
        super().__init__(message)
        self.path: Path = path
        self.reason: str = reason


class SwapError(UpgradeError):
    """Raised when a validated candidate cannot replace the trusted binary.

    Attributes:
        path: Path of the trusted binary that was not replaced.
        cause: The underlying exception that caused the failure.
    """

    def __init__(
        self,
        message: str,
        *,
        path: Path,
        cause: Exception | None = None,
    ) -> None:
        """Initialize with error message and binary context."""
        super().__init__(message)
        self.path: Path = path
        self.cause: Exception | None = cause


# =============================================================================
# Runtime Exceptions
# =============================================================================


class SlaveStartError(OverseerError):
    """Raised when a slave process cannot be spawned.

    Attributes:
        slave_id: The instance identifier of the generation that failed.
        cause: The underlying exception that caused the failure.
    """

    def __init__(
        self,
        message: str,
        *,
        slave_id: int | None = None,
        cause: Exception | None = None,
    ) -> None:
        """Initialize with error message and slave context.

        Args:
            message: Human-readable error message.
            slave_id: The instance identifier of the generation that failed.
            cause: The underlying exception that caused the failure.
        """
        super().__init__(message)
        self.slave_id: int | None = slave_id
        self.cause: Exception | None = cause


class SlaveCrashError(OverseerError):
    """Raised when slaves keep crashing faster than the restart ceiling allows.

    Attributes:
        crashes: Number of crashes observed inside the crash window.
        exit_code: Exit code of the last crashed slave.
    """

    def __init__(
        self,
        message: str,
        *,
        crashes: int,
        exit_code: int | None = None,
    ) -> None:
        """Initialize with error message and crash context.

        Args:
            message: Human-readable error message.
            crashes: Number of crashes observed inside the crash window.
            exit_code: Exit code of the last crashed slave.
        """
        super().__init__(message)
        self.crashes: int = crashes
        self.exit_code: int | None = exit_code


class ListenerClosedError(OverseerError, OSError):
    """Raised by Listener.accept() once the listener has been closed."""
