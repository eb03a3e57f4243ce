"""Custom exceptions for tftpi.

Every component raises from this hierarchy so callers can branch on the
kind of failure instead of parsing messages.

Exception Hierarchy:
    TftpiError (base)
        ├── ValidationError
        │   └── InvalidNodeIDError
        ├── NotFoundError
        │   └── CacheKeyNotFoundError
        ├── TransientError
        │   └── ConnectionFailedError
        ├── BMCWedgedError
        ├── OperationCancelledError
        └── TerminalError
            ├── EndpointClosedError
            ├── RemoteCommandError
            ├── RemoteTimeoutError
            ├── ExpectTimeoutError
            ├── ImageOpsError
            │   ├── CommandError
            │   ├── PartitionMapError
            │   └── MountError
            ├── CacheError
            │   └── CacheIntegrityError
            ├── StateError
            ├── InstallationError
            │   ├── UnsupportedBoardError
            │   ├── UartMonitorError
            │   └── PasswordChangeError
            ├── PostInstallError
            └── PhaseError
                └── PhaseAlreadyRunningError

Usage:
    from tftpi.exceptions import CacheKeyNotFoundError

    try:
        meta = cache.stat(ctx, key)
    except CacheKeyNotFoundError:
        meta = None
"""

from __future__ import annotations


class TftpiError(Exception):
    """Base exception for all tftpi operations."""


# ==============================================================================
# Validation
# ==============================================================================


class ValidationError(TftpiError):
    """Missing or out-of-range input."""

    def __init__(self, field: str, reason: str):
        self.field = field
        self.reason = reason
        super().__init__(f"Invalid {field}: {reason}")


class InvalidNodeIDError(ValidationError):
    """Node ID outside the supported slot range."""

    def __init__(self, value: object):
        self.value = value
        super().__init__("node ID", f"{value!r} (node ID must be between 1 and 4)")


# ==============================================================================
# Not found
# ==============================================================================


class NotFoundError(TftpiError):
    """Requested object does not exist."""


class CacheKeyNotFoundError(NotFoundError):
    """Cache has no entry for the key."""

    def __init__(self, key: str):
        self.key = key
        super().__init__(f"Cache key not found: {key}")


# ==============================================================================
# Transient / wedged / cancelled
# ==============================================================================


class TransientError(TftpiError):
    """Retriable failure that persisted after every retry."""


class ConnectionFailedError(TransientError):
    """Could not reach a remote endpoint."""

    def __init__(self, host: str, attempts: int, reason: str):
        self.host = host
        self.attempts = attempts
        self.reason = reason
        super().__init__(
            f"Failed to connect to {host} after {attempts} attempt(s): {reason}"
        )


class BMCWedgedError(TftpiError):
    """BMC vendor API refuses local connections and needs a power cycle."""

    def __init__(self, output: str = ""):
        self.output = output
        super().__init__(
            "BMC API is not responding (connection to 127.0.0.1 refused). "
            "Power cycle the Turing Pi board and retry"
        )


class OperationCancelledError(TftpiError):
    """Execution context was cancelled or its deadline passed."""

    def __init__(self, reason: str = "context cancelled"):
        self.reason = reason
        super().__init__(reason)


# ==============================================================================
# Terminal
# ==============================================================================


class TerminalError(TftpiError):
    """Non-retriable failure that surfaces immediately."""


class EndpointClosedError(TerminalError):
    """Operation attempted on a closed endpoint."""

    def __init__(self, host: str):
        self.host = host
        super().__init__(f"Endpoint for {host} is closed")


class RemoteCommandError(TerminalError):
    """Remote command exited with a non-zero status."""

    def __init__(self, command: str, exit_status: int, stdout: str = "", stderr: str = ""):
        self.command = command
        self.exit_status = exit_status
        self.stdout = stdout
        self.stderr = stderr
        msg = f"Remote command failed with exit status {exit_status}: {command}"
        if stderr.strip():
            msg += f" (stderr: {stderr.strip()})"
        super().__init__(msg)


class RemoteTimeoutError(TerminalError):
    """Remote operation exceeded its timeout."""

    def __init__(self, command: str, timeout: float):
        self.command = command
        self.timeout = timeout
        super().__init__(f"Remote command timed out after {timeout:g}s: {command}")


class ExpectTimeoutError(TerminalError):
    """Interactive dialog did not see the expected text in time."""

    def __init__(self, expected: str, transcript: str):
        self.expected = expected
        self.transcript = transcript
        super().__init__(f"Timed out waiting for {expected!r} in interactive session")


class ImageOpsError(TerminalError):
    """Base exception for image customization failures."""


class CommandError(ImageOpsError):
    """Host or container tool exited with a non-zero status."""

    def __init__(self, command: list[str], returncode: int, message: str):
        self.command = list(command)
        self.returncode = returncode
        self.message = message
        super().__init__(f"Command failed ({' '.join(self.command)}): {message}")


class PartitionMapError(ImageOpsError):
    """Partition mapping could not be created or parsed."""

    def __init__(self, image_path: str, reason: str):
        self.image_path = image_path
        self.reason = reason
        super().__init__(f"Partition mapping failed for {image_path}: {reason}")


class MountError(ImageOpsError):
    """Mounting or unmounting an image partition failed."""

    def __init__(self, device: str, mountpoint: str, reason: str):
        self.device = device
        self.mountpoint = mountpoint
        self.reason = reason
        super().__init__(f"Mount of {device} at {mountpoint} failed: {reason}")


class CacheError(TerminalError):
    """Base exception for cache failures."""


class CacheIntegrityError(CacheError):
    """Stored content does not match its metadata."""

    def __init__(self, key: str, expected: str, actual: str):
        self.key = key
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Hash mismatch for cache key {key}: expected {expected}, got {actual}"
        )


class StateError(TerminalError):
    """State file could not be written."""


class InstallationError(TerminalError):
    """Base exception for OS installation failures."""


class UnsupportedBoardError(InstallationError):
    """No flashing strategy exists for the board type."""

    def __init__(self, board: str):
        self.board = board
        super().__init__(f"Unsupported board type for installation: {board}")


class UartMonitorError(InstallationError):
    """UART readout failed too many times in a row."""

    def __init__(self, node_id: int, failures: int, reason: str):
        self.node_id = node_id
        self.failures = failures
        self.reason = reason
        super().__init__(
            f"UART monitoring of node {node_id} failed {failures} consecutive "
            f"times: {reason}"
        )


class PasswordChangeError(InstallationError):
    """First-boot password change did not complete."""

    def __init__(self, host: str, reason: str, transcript: str = ""):
        self.host = host
        self.reason = reason
        self.transcript = transcript
        super().__init__(f"Password change on {host} failed: {reason}")


class PostInstallError(TerminalError):
    """User post-install action failed."""


class PhaseError(TerminalError):
    """Provisioning phase failed; wraps the underlying cause."""

    def __init__(self, phase: str, node_id: int, reason: str):
        self.phase = phase
        self.node_id = node_id
        self.reason = reason
        super().__init__(f"Phase {phase} failed for node {node_id}: {reason}")


class PhaseAlreadyRunningError(PhaseError):
    """Phase has an unfinished Start record for the node."""

    def __init__(self, phase: str, node_id: int):
        TerminalError.__init__(
            self,
            f"Phase {phase} is already running for node {node_id} "
            f"(clear it with 'tftpi status {node_id} --clear')",
        )
        self.phase = phase
        self.node_id = node_id
        self.reason = "already running"
