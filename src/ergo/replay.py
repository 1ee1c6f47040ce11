"""
Replay: fold an ordered event sequence into a Graph.

Pure and deterministic. Every timestamp comes from the events themselves, so
replaying the same log twice always gives equal graphs.

Per-event rules:
- new_task/new_epic create an entity; a second creation of a live id is a
  DuplicateIDError, a creation of a tombstoned id is ignored.
- Field events for unknown or tombstoned ids are skipped.
- state -> todo/done/canceled drops the claim.
- tombstone removes the entity and every edge touching it, permanently.
- Unknown event types are skipped.

After the fold, edges with a missing endpoint are dropped, reverse edges are
derived, and legacy entries without a title get one from their body.
"""

import logging
from datetime import datetime
from pathlib import Path
from typing import Iterable, Optional

from ergo.errors import DuplicateIDError, EventPayloadError, EventReplayError
from ergo.model import (
    CLAIM_CLEARING_STATES,
    DEP_TYPE,
    EV_BODY,
    EV_CLAIM,
    EV_EPIC,
    EV_LINK,
    EV_NEW_EPIC,
    EV_NEW_TASK,
    EV_RESULT,
    EV_STATE,
    EV_TITLE,
    EV_TOMBSTONE,
    EV_UNCLAIM,
    EV_UNLINK,
    EV_WORKER,
    STATE_TODO,
    Event,
    Graph,
    Provenance,
    Result,
    Task,
    is_valid_state,
    parse_time,
    parse_worker,
)

logger = logging.getLogger(__name__)

UNTITLED = '(untitled)'


# ============================================================================
# Payload helpers
# ============================================================================

def _require_str(event: Event, key: str) -> str:
    value = event.data.get(key)
    if not isinstance(value, str) or not value:
        raise EventPayloadError(event.type, f"missing {key}")
    return value


def _optional_str(event: Event, key: str) -> Optional[str]:
    value = event.data.get(key)
    if value is None or value == '':
        return None
    if not isinstance(value, str):
        raise EventPayloadError(event.type, f"{key} must be a string")
    return value


def _text(event: Event, key: str) -> str:
    value = event.data.get(key, '')
    if value is None:
        return ''
    if not isinstance(value, str):
        raise EventPayloadError(event.type, f"{key} must be a string")
    return value


def _time(event: Event, key: str = 'ts') -> datetime:
    raw = event.data.get(key) or event.ts
    try:
        return parse_time(raw)
    except ValueError as e:
        raise EventPayloadError(event.type, str(e)) from e


def _worker(event: Event, value) -> str:
    try:
        return parse_worker(value)
    except ValueError as e:
        raise EventPayloadError(event.type, str(e)) from e


# ============================================================================
# Replayer
# ============================================================================

class _Replayer:
    """Mutable fold state. One instance per replay() call."""

    def __init__(self):
        self.graph = Graph()

    def live(self, event: Event, key: str = 'id') -> Optional[Task]:
        return self.graph.tasks.get(_require_str(event, key))

    def apply(self, event: Event) -> None:
        handler = self.HANDLERS.get(event.type)
        if handler is None:
            logger.debug("skipping unknown event type %r", event.type)
            return
        handler(self, event)

    def on_new(self, event: Event) -> None:
        graph = self.graph
        task_id = _require_str(event, 'id')
        if task_id in graph.tombstones:
            return
        if task_id in graph.tasks:
            raise DuplicateIDError(task_id)

        is_epic = event.type == EV_NEW_EPIC
        created_at = _time(event, 'created_at')
        title = _text(event, 'title')
        body = _text(event, 'body')
        if is_epic:
            state, worker, epic_id = None, None, None
        else:
            state = _optional_str(event, 'state') or STATE_TODO
            if not is_valid_state(state):
                raise EventPayloadError(event.type, f"invalid state {state!r}")
            worker = _worker(event, event.data.get('worker'))
            epic_id = _optional_str(event, 'epic_id')

        graph.tasks[task_id] = Task(
            id=task_id,
            uuid=_text(event, 'uuid'),
            title=title,
            body=body,
            created_at=created_at,
            updated_at=created_at,
            is_epic=is_epic,
            state=state,
            worker=worker,
            epic_id=epic_id,
        )
        graph.provenance[task_id] = Provenance(
            created_title=title,
            created_body=body,
            created_state=state,
            created_worker=worker,
            created_epic_id=epic_id,
        )

    def on_state(self, event: Event) -> None:
        task = self.live(event)
        if task is None or task.is_epic:
            return
        state = _require_str(event, 'state')
        if not is_valid_state(state):
            raise EventPayloadError(event.type, f"invalid state {state!r}")
        ts = _time(event)
        task.state = state
        task.updated_at = max(task.updated_at, ts)
        if state in CLAIM_CLEARING_STATES:
            task.claimed_by = None
            task.claimed_at = None
        self.graph.provenance[task.id].last_state_at = ts

    def on_claim(self, event: Event) -> None:
        task = self.live(event)
        if task is None or task.is_epic:
            return
        ts = _time(event)
        task.claimed_by = _require_str(event, 'agent_id')
        task.claimed_at = ts
        self.graph.provenance[task.id].last_claim_at = ts

    def on_unclaim(self, event: Event) -> None:
        task = self.live(event)
        if task is None:
            return
        task.claimed_by = None
        task.claimed_at = None

    def on_title(self, event: Event) -> None:
        task = self.live(event)
        if task is None:
            return
        ts = _time(event)
        task.title = _text(event, 'title')
        task.updated_at = max(task.updated_at, ts)
        self.graph.provenance[task.id].last_title_at = ts

    def on_body(self, event: Event) -> None:
        task = self.live(event)
        if task is None:
            return
        ts = _time(event)
        task.body = _text(event, 'body')
        task.updated_at = max(task.updated_at, ts)
        self.graph.provenance[task.id].last_body_at = ts

    def on_epic(self, event: Event) -> None:
        task = self.live(event)
        if task is None or task.is_epic:
            return
        ts = _time(event)
        task.epic_id = _optional_str(event, 'epic_id')
        task.updated_at = max(task.updated_at, ts)
        self.graph.provenance[task.id].last_epic_at = ts

    def on_worker(self, event: Event) -> None:
        task = self.live(event)
        if task is None or task.is_epic:
            return
        ts = _time(event)
        task.worker = _worker(event, event.data.get('worker'))
        task.updated_at = max(task.updated_at, ts)
        self.graph.provenance[task.id].last_worker_at = ts

    def on_link(self, event: Event) -> None:
        if event.data.get('type', DEP_TYPE) != DEP_TYPE:
            return
        from_id = _require_str(event, 'from_id')
        to_id = _require_str(event, 'to_id')
        if self.graph.is_pruned(from_id) or self.graph.is_pruned(to_id):
            return
        if event.type == EV_LINK:
            self.graph.add_edge(from_id, to_id)
        else:
            self.graph.remove_edge(from_id, to_id)

    def on_result(self, event: Event) -> None:
        task = self.live(event, 'task_id')
        if task is None:
            return
        ts = _time(event)
        mtime = None
        if event.data.get('mtime_at_attach'):
            mtime = _time(event, 'mtime_at_attach')
        task.results.insert(0, Result(
            summary=_text(event, 'summary'),
            path=_text(event, 'path'),
            sha256_at_attach=_text(event, 'sha256_at_attach'),
            created_at=ts,
            mtime_at_attach=mtime,
            git_commit_at_attach=_optional_str(event, 'git_commit_at_attach'),
        ))
        task.updated_at = max(task.updated_at, ts)

    def on_tombstone(self, event: Event) -> None:
        graph = self.graph
        task_id = _require_str(event, 'id')
        graph.tombstones.add(task_id)
        graph.tasks.pop(task_id, None)
        graph.provenance.pop(task_id, None)
        for dst in list(graph.deps_of(task_id)):
            graph.remove_edge(task_id, dst)
        for src in list(graph.rdeps_of(task_id)):
            graph.remove_edge(src, task_id)

    HANDLERS = {
        EV_NEW_TASK: on_new,
        EV_NEW_EPIC: on_new,
        EV_STATE: on_state,
        EV_CLAIM: on_claim,
        EV_UNCLAIM: on_unclaim,
        EV_TITLE: on_title,
        EV_BODY: on_body,
        EV_EPIC: on_epic,
        EV_WORKER: on_worker,
        EV_LINK: on_link,
        EV_UNLINK: on_link,
        EV_RESULT: on_result,
        EV_TOMBSTONE: on_tombstone,
    }

    def finish(self) -> Graph:
        graph = self.graph
        for from_id, to_id in graph.edges():
            if from_id not in graph.tasks or to_id not in graph.tasks:
                graph.remove_edge(from_id, to_id)
        for task_id, task in graph.tasks.items():
            task.deps = sorted(graph.deps_of(task_id))
            task.rdeps = sorted(graph.rdeps_of(task_id))
        migrate_legacy_titles(graph)
        return graph


def replay(events: Iterable[Event], path: Optional[Path] = None) -> Graph:
    """
    Fold events, in order, into a fresh Graph.

    `path` names the log the events were read from; integrity errors then
    report it along with the event's line number.
    """
    replayer = _Replayer()
    for event in events:
        try:
            replayer.apply(event)
        except EventReplayError as e:
            e.locate(path, event.line)
            raise
    return replayer.finish()


# ============================================================================
# Legacy title migration
# ============================================================================

def _is_heading(line: str) -> bool:
    """A markdown heading with text after the hashes."""
    line = line.strip()
    if not line.startswith('#'):
        return False
    return line.lstrip('#').strip() != ''


def title_from_body(body: str) -> tuple:
    """
    Split a legacy body into (title, remaining body).

    The first non-blank, non-heading line becomes the title and everything
    after it stays as the body.
    """
    lines = body.split('\n')
    for i, raw in enumerate(lines):
        trimmed = raw.strip()
        if not trimmed or _is_heading(trimmed):
            continue
        return trimmed, '\n'.join(lines[i + 1:])
    if not body.strip():
        return UNTITLED, ''
    return UNTITLED, body


def migrate_legacy_titles(graph: Graph) -> None:
    """Give every untitled entity a title derived from its body. Idempotent."""
    for task in graph.tasks.values():
        if task.title.strip():
            continue
        task.title, task.body = title_from_body(task.body)
