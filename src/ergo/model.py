"""
Core data types for ergo: events, tasks, results, and the replayed graph.

Also holds the small domain rules every other module leans on: the state
machine, the claim invariant, worker affinity, timestamps, and ID generation.
"""

import base64
import json
import re
import secrets
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Iterable, Optional

from ergo.errors import ClaimInvariantError, InvalidTransitionError


# ============================================================================
# Lifecycle
# ============================================================================

STATE_TODO = 'todo'
STATE_DOING = 'doing'
STATE_DONE = 'done'
STATE_BLOCKED = 'blocked'
STATE_CANCELED = 'canceled'
STATE_ERROR = 'error'

STATES = (STATE_TODO, STATE_DOING, STATE_DONE, STATE_BLOCKED, STATE_CANCELED, STATE_ERROR)

TRANSITIONS = {
    STATE_TODO: {STATE_DOING, STATE_DONE, STATE_BLOCKED, STATE_CANCELED},
    STATE_DOING: {STATE_TODO, STATE_DONE, STATE_BLOCKED, STATE_CANCELED, STATE_ERROR},
    STATE_BLOCKED: {STATE_TODO, STATE_DOING, STATE_DONE, STATE_CANCELED},
    STATE_DONE: {STATE_TODO},
    STATE_CANCELED: {STATE_TODO},
    STATE_ERROR: {STATE_TODO, STATE_DOING, STATE_CANCELED},
}

# Entering one of these drops whoever held the claim.
CLAIM_CLEARING_STATES = {STATE_TODO, STATE_DONE, STATE_CANCELED}
CLAIM_REQUIRED_STATES = {STATE_DOING, STATE_ERROR}
CLOSED_STATES = {STATE_DONE, STATE_CANCELED}


def is_valid_state(state: str) -> bool:
    return state in TRANSITIONS


def is_closed(state: Optional[str]) -> bool:
    return state in CLOSED_STATES


def check_transition(from_state: str, to_state: str) -> None:
    """Raise InvalidTransitionError unless from_state -> to_state is allowed."""
    if from_state == to_state:
        return
    if to_state not in TRANSITIONS.get(from_state, ()):
        raise InvalidTransitionError(from_state, to_state)


def check_claim_invariant(state: str, claimed_by: Optional[str]) -> None:
    """
    Check that a state and a claim holder can coexist.

    doing and error need a holder, todo/done/canceled must not have one,
    blocked accepts either.
    """
    if state in CLAIM_REQUIRED_STATES and not claimed_by:
        raise ClaimInvariantError(f"state {state} requires a claim")
    if state in CLAIM_CLEARING_STATES and claimed_by:
        raise ClaimInvariantError(f"state {state} cannot be claimed (held by {claimed_by})")


# ============================================================================
# Worker affinity
# ============================================================================

WORKER_ANY = 'any'
WORKER_AGENT = 'agent'
WORKER_HUMAN = 'human'

WORKERS = (WORKER_ANY, WORKER_AGENT, WORKER_HUMAN)


def parse_worker(value: Optional[str]) -> str:
    """Parse a worker tag; empty means any."""
    text = (value or '').strip().lower()
    if text in ('', WORKER_ANY):
        return WORKER_ANY
    if text in WORKERS:
        return text
    raise ValueError(f"invalid worker {value!r}, expected: any, agent, human")


def worker_allowed(task_worker: Optional[str], as_worker: Optional[str]) -> bool:
    """Whether someone acting as `as_worker` may see/claim a task tagged `task_worker`."""
    if not as_worker or as_worker == WORKER_ANY:
        return True
    tag = task_worker or WORKER_ANY
    return tag == WORKER_ANY or tag == as_worker


# ============================================================================
# Timestamps
# ============================================================================

_TIME_RE = re.compile(
    r'^(\d{4})-(\d{2})-(\d{2})[Tt](\d{2}):(\d{2}):(\d{2})'
    r'(?:\.(\d{1,9}))?'
    r'(Z|z|[+-]\d{2}:\d{2})$'
)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def format_time(value: datetime) -> str:
    """Format as RFC 3339 UTC with a Z suffix, trimming trailing zero fractions."""
    value = value.astimezone(timezone.utc)
    text = value.strftime('%Y-%m-%dT%H:%M:%S')
    if value.microsecond:
        text += ('.%06d' % value.microsecond).rstrip('0')
    return text + 'Z'


def parse_time(text: str) -> datetime:
    """
    Parse an RFC 3339 timestamp into an aware UTC datetime.

    Fractions beyond microseconds are truncated.

    Raises:
        ValueError: if the text is not a timestamp
    """
    if not isinstance(text, str):
        raise ValueError(f"timestamp must be a string, got {type(text).__name__}")
    match = _TIME_RE.match(text.strip())
    if not match:
        raise ValueError(f"invalid timestamp {text!r}")
    year, month, day, hour, minute, second, fraction, offset = match.groups()
    micros = int((fraction or '').ljust(6, '0')[:6])
    iso_offset = '+00:00' if offset in ('Z', 'z') else offset
    parsed = datetime.fromisoformat(
        f"{year}-{month}-{day}T{hour}:{minute}:{second}.{micros:06d}{iso_offset}"
    )
    return parsed.astimezone(timezone.utc)


def latest(*values: Optional[datetime]) -> Optional[datetime]:
    present = [v for v in values if v is not None]
    return max(present) if present else None


# ============================================================================
# Identifiers
# ============================================================================

SHORT_ID_LENGTH = 6
MAX_ID_ATTEMPTS = 64


def new_short_id(taken: Callable[[str], bool]) -> str:
    """
    Generate a short, human-typeable ID not rejected by `taken`.

    Raises:
        RuntimeError: if no free ID turned up after MAX_ID_ATTEMPTS tries
    """
    for _ in range(MAX_ID_ATTEMPTS):
        candidate = base64.b32encode(secrets.token_bytes(4)).decode('ascii')[:SHORT_ID_LENGTH]
        if not taken(candidate):
            return candidate
    raise RuntimeError(f"could not allocate a free id after {MAX_ID_ATTEMPTS} attempts")


def new_uuid() -> str:
    return str(uuid.uuid4())


# ============================================================================
# Events
# ============================================================================

EV_NEW_TASK = 'new_task'
EV_NEW_EPIC = 'new_epic'
EV_STATE = 'state'
EV_CLAIM = 'claim'
EV_UNCLAIM = 'unclaim'
EV_TITLE = 'title'
EV_BODY = 'body'
EV_EPIC = 'epic'
EV_WORKER = 'worker'
EV_LINK = 'link'
EV_UNLINK = 'unlink'
EV_RESULT = 'result'
EV_TOMBSTONE = 'tombstone'

DEP_TYPE = 'depends'


@dataclass(frozen=True)
class Event:
    """One line of the event log: `{"type": ..., "ts": ..., "data": {...}}`."""

    type: str
    ts: str
    data: dict = field(default_factory=dict)
    # 1-based line in the log it was read from; None for events built in memory
    line: Optional[int] = field(default=None, compare=False, repr=False)

    @classmethod
    def create(cls, event_type: str, when: datetime, data: dict) -> 'Event':
        return cls(type=event_type, ts=format_time(when), data=data)

    @classmethod
    def from_dict(cls, raw: dict, line: Optional[int] = None) -> 'Event':
        """
        Build an Event from a decoded log line.

        Raises:
            ValueError: if the object does not have the event envelope shape
        """
        if not isinstance(raw, dict):
            raise ValueError("event must be a JSON object")
        event_type = raw.get('type')
        if not isinstance(event_type, str) or not event_type:
            raise ValueError("event is missing a type")
        data = raw.get('data')
        if data is None:
            data = {}
        if not isinstance(data, dict):
            raise ValueError("event data must be a JSON object")
        ts = raw.get('ts') or ''
        if not isinstance(ts, str):
            raise ValueError("event ts must be a string")
        return cls(type=event_type, ts=ts, data=data, line=line)

    def to_dict(self) -> dict:
        return {'type': self.type, 'ts': self.ts, 'data': self.data}

    def to_line(self) -> str:
        return json.dumps(self.to_dict(), ensure_ascii=False, separators=(',', ':')) + '\n'


# ============================================================================
# Entities
# ============================================================================

@dataclass
class Result:
    """Evidence attached to a task: a file snapshot plus a one-line summary."""

    summary: str
    path: str
    sha256_at_attach: str
    created_at: datetime
    mtime_at_attach: Optional[datetime] = None
    git_commit_at_attach: Optional[str] = None


@dataclass
class Task:
    """
    A task or an epic as readers see it.

    Epics always have state and worker set to None and never hold a claim.
    Results are kept newest first.
    """

    id: str
    uuid: str
    title: str
    body: str
    created_at: datetime
    updated_at: datetime
    is_epic: bool = False
    state: Optional[str] = None
    worker: Optional[str] = None
    claimed_by: Optional[str] = None
    claimed_at: Optional[datetime] = None
    epic_id: Optional[str] = None
    deps: list = field(default_factory=list)
    rdeps: list = field(default_factory=list)
    results: list = field(default_factory=list)

    @property
    def kind(self) -> str:
        return 'epic' if self.is_epic else 'task'


@dataclass
class Provenance:
    """
    Compaction bookkeeping for one entity.

    The creation snapshot plus the last time each field was touched. Produced
    by replay, consumed only by compaction; readers never look at it.
    """

    created_title: str
    created_body: str
    created_state: Optional[str]
    created_worker: Optional[str]
    created_epic_id: Optional[str]
    last_title_at: Optional[datetime] = None
    last_body_at: Optional[datetime] = None
    last_epic_at: Optional[datetime] = None
    last_state_at: Optional[datetime] = None
    last_worker_at: Optional[datetime] = None
    last_claim_at: Optional[datetime] = None


@dataclass
class Graph:
    """
    Current state materialized from the event log.

    `deps[a]` holds every id that `a` depends on; `rdeps` is the reverse index.
    Rebuilt from scratch on every read and never written to disk as such.
    """

    tasks: dict = field(default_factory=dict)
    deps: dict = field(default_factory=dict)
    rdeps: dict = field(default_factory=dict)
    tombstones: set = field(default_factory=set)
    provenance: dict = field(default_factory=dict)

    def get(self, task_id: str) -> Optional[Task]:
        return self.tasks.get(task_id)

    def is_pruned(self, task_id: str) -> bool:
        return task_id in self.tombstones

    def id_taken(self, task_id: str) -> bool:
        return task_id in self.tasks or task_id in self.tombstones

    def deps_of(self, task_id: str) -> set:
        return self.deps.get(task_id, set())

    def rdeps_of(self, task_id: str) -> set:
        return self.rdeps.get(task_id, set())

    def epic_tasks(self, epic_id: str) -> list:
        """Non-epic members of an epic, sorted by id."""
        return sorted(
            (t for t in self.tasks.values() if not t.is_epic and t.epic_id == epic_id),
            key=lambda t: t.id,
        )

    def edges(self) -> list:
        """All (from, to) dependency edges, sorted."""
        return sorted((src, dst) for src, targets in self.deps.items() for dst in targets)

    def add_edge(self, from_id: str, to_id: str) -> None:
        self.deps.setdefault(from_id, set()).add(to_id)
        self.rdeps.setdefault(to_id, set()).add(from_id)

    def remove_edge(self, from_id: str, to_id: str) -> None:
        targets = self.deps.get(from_id)
        if targets is not None:
            targets.discard(to_id)
            if not targets:
                del self.deps[from_id]
        sources = self.rdeps.get(to_id)
        if sources is not None:
            sources.discard(from_id)
            if not sources:
                del self.rdeps[to_id]


def sort_tasks(tasks: Iterable[Task]) -> list:
    """Oldest first, ties broken by id."""
    return sorted(tasks, key=lambda t: (t.created_at, t.id))
