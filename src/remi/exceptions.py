"""Custom exceptions for remi."""

from typing import Optional


class RemiError(Exception):
    """Base exception for all remi errors."""

    pass


class SourceReadError(RemiError):
    """Raised when a source location is unreadable or malformed."""

    def __init__(self, location: str, reason: str):
        self.location = location
        self.reason = reason
        super().__init__(f"Cannot read source {location}: {reason}")


class NormalizationError(RemiError):
    """Raised when a native record cannot be mapped to canonical fields."""

    def __init__(self, native_id: str, reason: str):
        self.native_id = native_id
        self.reason = reason
        super().__init__(f"Cannot normalize record {native_id}: {reason}")


class StoreWriteError(RemiError):
    """Raised when a batch transaction fails. Retrying is always safe."""

    pass


class IntegrityError(RemiError):
    """Raised when structural corruption is detected in the store."""

    def __init__(self, problems: list[str]):
        self.problems = problems
        super().__init__("Store integrity check failed: " + "; ".join(problems))


class ArchiveVerificationError(RemiError):
    """Raised when an archive file does not match its recorded checksum."""

    def __init__(self, path: str, expected: str, actual: Optional[str]):
        self.path = path
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Archive verification failed for {path}: "
            f"expected {expected[:12]}..., got {(actual or 'missing')[:12]}"
        )


class ArchiveRunNotFoundError(RemiError):
    """Raised when an archive run id does not exist."""

    def __init__(self, run_id: str):
        self.run_id = run_id
        super().__init__(f"Archive run not found: {run_id}")


class UnknownAgentError(RemiError):
    """Raised when no adapter is registered for an agent name."""

    def __init__(self, agent: str, known: Optional[list[str]] = None):
        self.agent = agent
        message = f"Unknown agent: {agent}"
        if known:
            message += f" (known: {', '.join(known)})"
        super().__init__(message)


class ArchiveWriteError(RemiError):
    """Raised when archive files cannot be written."""

    pass


class ArchiveRunStateError(RemiError):
    """Raised when an archive run is not in a state that allows the action."""

    def __init__(self, run_id: str, status: str, action: str):
        self.run_id = run_id
        self.status = status
        super().__init__(f"Cannot {action} archive run {run_id}: run is {status}")


class BundleFormatError(RemiError):
    """Raised when an archive bundle cannot be parsed."""

    def __init__(self, path: str, reason: str):
        self.path = path
        super().__init__(f"Invalid archive bundle {path}: {reason}")


class NativeArchiveUnsupportedError(RemiError):
    """Raised when native archiving is requested from a FALLBACK adapter."""

    def __init__(self, agent: str):
        self.agent = agent
        super().__init__(f"{agent} sources are archived by copying raw files")
