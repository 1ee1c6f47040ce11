"""
Error taxonomy for ergo.

Everything derives from ErgoError, which is a RuntimeError so command-layer
code can keep catching RuntimeError. The families are:

- LogIntegrityError: the log itself is damaged or inconsistent. Always fatal,
  never auto-repaired.
- LockBusyError: another process holds the lock. Fail fast, retry outside.
- ErgoValidationError: the requested change is illegal against the current
  graph. Raised before anything is appended.
- NoReadyWorkError: an expected "nothing to do" outcome.
"""

from pathlib import Path
from typing import Optional


class ErgoError(RuntimeError):
    """Base class for all ergo errors."""


# ============================================================================
# Log integrity
# ============================================================================

class LogIntegrityError(ErgoError):
    """The event log cannot be trusted as written."""


class EventLogParseError(LogIntegrityError):
    """A line in the interior of the event log is not a valid event."""

    hint = "invalid JSON in events log"

    def __init__(self, path: Path, line: int, snippet: str, cause: str = ""):
        self.path = Path(path)
        self.line = line
        self.snippet = snippet
        self.cause = cause
        message = f"{self.path}:{line}: {self.hint}: {snippet}"
        if cause:
            message += f" ({cause})"
        super().__init__(message)


class MergeConflictError(EventLogParseError):
    """The event log contains unresolved version-control conflict markers."""

    hint = "merge conflict markers in events log (resolve then run `ergo compact`)"


class EventReplayError(LogIntegrityError):
    """
    A line that parsed but cannot be folded into the graph.

    Replay fills in `path` and `line` once it knows which log line the event
    came from, and the message is rebuilt with that location.
    """

    def __init__(self, detail: str):
        self.detail = detail
        self.path = None
        self.line = None
        super().__init__(detail)

    def locate(self, path: Optional[Path], line: Optional[int]) -> None:
        if path is not None:
            self.path = Path(path)
        if line is not None:
            self.line = line
        where = [str(part) for part in (self.path, self.line) if part is not None]
        message = f"{':'.join(where)}: {self.detail}" if where else self.detail
        self.args = (message,)


class DuplicateIDError(EventReplayError):
    def __init__(self, task_id: str):
        self.task_id = task_id
        super().__init__(f"duplicate id {task_id} in events log")


class EventPayloadError(EventReplayError):
    """An event of a known type has an unusable payload."""

    def __init__(self, event_type: str, reason: str):
        self.event_type = event_type
        super().__init__(f"bad {event_type} event: {reason}")


# ============================================================================
# Contention
# ============================================================================

class LockBusyError(ErgoError):
    def __init__(self, lock_path: Path):
        self.lock_path = Path(lock_path)
        super().__init__(f"lock busy: {self.lock_path} is held by another process")


# ============================================================================
# Validation
# ============================================================================

class ErgoValidationError(ErgoError):
    """A requested change was rejected before any event was written."""


class NotFoundError(ErgoValidationError):
    def __init__(self, task_id: str):
        self.task_id = task_id
        super().__init__(f"no such task: {task_id}")


class PrunedError(ErgoValidationError):
    def __init__(self, task_id: str):
        self.task_id = task_id
        super().__init__(f"id {task_id} is pruned")


class InvalidTransitionError(ErgoValidationError):
    def __init__(self, from_state: str, to_state: str):
        self.from_state = from_state
        self.to_state = to_state
        super().__init__(f"invalid transition {from_state} -> {to_state}")


class ClaimInvariantError(ErgoValidationError):
    """A state/claim combination that can never be stored."""


class DependencyError(ErgoValidationError):
    """Self, mixed-kind, cyclic, or dangling dependency edge."""


class ValidationError(ErgoValidationError):
    """
    Structured input validation failure.

    Carries enough detail for an agent to fix its payload: a short error code
    ("parse_error" or "validation_failed"), a summary message, the list of
    missing required fields and a field -> reason map.
    """

    def __init__(self, error: str, message: str,
                 missing: Optional[list] = None, invalid: Optional[dict] = None):
        self.error = error
        self.message = message
        self.missing = list(missing or [])
        self.invalid = dict(invalid or {})
        super().__init__(self._describe())

    def _describe(self) -> str:
        parts = [self.message]
        if self.missing:
            parts.append(f"missing required: {', '.join(self.missing)}")
        for field, reason in sorted(self.invalid.items()):
            parts.append(f"{field}: {reason}")
        return "; ".join(parts)

    def to_dict(self) -> dict:
        data = {'error': self.error, 'message': self.message}
        if self.missing:
            data['missing'] = self.missing
        if self.invalid:
            data['invalid'] = self.invalid
        return data


# ============================================================================
# Outcomes and setup
# ============================================================================

class NoReadyWorkError(ErgoError):
    """claim-next found nothing to claim. Callers usually treat this as success."""

    def __init__(self, message: str = "no ready tasks"):
        super().__init__(message)


class NoErgoDirError(ErgoError):
    def __init__(self, start: Path):
        self.start = Path(start)
        super().__init__(f"no .ergo directory found from {self.start} (run ergo init)")
