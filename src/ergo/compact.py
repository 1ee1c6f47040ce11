"""
Compaction: turn a replayed Graph back into the shortest event log that
replays to the same observable state.

For each live entity, oldest first:
    new_task/new_epic with the creation snapshot values
    title/body/epic/worker events where the field changed or was touched later
    claim if currently claimed
    state if it differs from creation or was touched later
    results, oldest first
Field events are ordered by timestamp. Every dependency edge is then emitted
once as a link. Tombstoned entities do not appear at all.
"""

from datetime import datetime
from typing import Optional

from ergo.model import (
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
    EV_WORKER,
    Event,
    Graph,
    Provenance,
    Task,
    format_time,
    sort_tasks,
)


def pick_time(last: Optional[datetime], fallback: datetime) -> datetime:
    return last if last is not None else fallback


def _touched(value, created_value, last_at: Optional[datetime], created_at: datetime) -> bool:
    # Both checks matter: a value edited away and back still needs its event.
    return value != created_value or (last_at is not None and last_at > created_at)


def _snapshot(task: Task, graph: Graph) -> Provenance:
    prov = graph.provenance.get(task.id)
    if prov is not None:
        return prov
    return Provenance(
        created_title=task.title,
        created_body=task.body,
        created_state=task.state,
        created_worker=task.worker,
        created_epic_id=task.epic_id,
    )


def _creation_event(task: Task, prov: Provenance) -> Event:
    data = {
        'id': task.id,
        'uuid': task.uuid,
        'epic_id': prov.created_epic_id or '',
        'state': prov.created_state or '',
        'title': prov.created_title,
        'body': prov.created_body,
        'worker': prov.created_worker or '',
        'created_at': format_time(task.created_at),
    }
    event_type = EV_NEW_EPIC if task.is_epic else EV_NEW_TASK
    return Event.create(event_type, task.created_at, data)


def _field_event(event_type: str, task_id: str, when: datetime, **fields) -> tuple:
    data = {'id': task_id}
    data.update(fields)
    data['ts'] = format_time(when)
    return when, Event.create(event_type, when, data)


def _entity_events(task: Task, graph: Graph) -> list:
    prov = _snapshot(task, graph)
    created_at = task.created_at
    updates = []

    if _touched(task.title, prov.created_title, prov.last_title_at, created_at):
        ts = pick_time(prov.last_title_at, task.updated_at)
        updates.append(_field_event(EV_TITLE, task.id, ts, title=task.title))

    if _touched(task.body, prov.created_body, prov.last_body_at, created_at):
        ts = pick_time(prov.last_body_at, task.updated_at)
        updates.append(_field_event(EV_BODY, task.id, ts, body=task.body))

    if not task.is_epic:
        if _touched(task.epic_id, prov.created_epic_id, prov.last_epic_at, created_at):
            ts = pick_time(prov.last_epic_at, task.updated_at)
            updates.append(_field_event(EV_EPIC, task.id, ts, epic_id=task.epic_id or ''))

        if task.worker and _touched(task.worker, prov.created_worker, prov.last_worker_at, created_at):
            ts = pick_time(prov.last_worker_at, task.updated_at)
            updates.append(_field_event(EV_WORKER, task.id, ts, worker=task.worker))

        if task.claimed_by:
            ts = pick_time(task.claimed_at or prov.last_claim_at, task.updated_at)
            updates.append(_field_event(EV_CLAIM, task.id, ts, agent_id=task.claimed_by))

        if _touched(task.state, prov.created_state, prov.last_state_at, created_at):
            ts = pick_time(prov.last_state_at, task.updated_at)
            updates.append(_field_event(EV_STATE, task.id, ts, state=task.state))

    for result in reversed(task.results):
        updates.append((result.created_at, Event.create(EV_RESULT, result.created_at, {
            'task_id': task.id,
            'summary': result.summary,
            'path': result.path,
            'sha256_at_attach': result.sha256_at_attach,
            'mtime_at_attach': format_time(result.mtime_at_attach) if result.mtime_at_attach else '',
            'git_commit_at_attach': result.git_commit_at_attach or '',
            'ts': format_time(result.created_at),
        })))

    # Stable, so same-timestamp events keep the order above (claim before state).
    updates.sort(key=lambda item: item[0])
    return [_creation_event(task, prov)] + [event for _, event in updates]


def compact(graph: Graph) -> list:
    """Produce the minimal event sequence that replays to `graph`'s visible state."""
    events = []
    for task in sort_tasks(graph.tasks.values()):
        events.extend(_entity_events(task, graph))

    for from_id, to_id in graph.edges():
        src, dst = graph.get(from_id), graph.get(to_id)
        if src is None or dst is None:
            continue
        when = max(src.created_at, dst.created_at)
        events.append(Event.create(EV_LINK, when, {
            'from_id': from_id,
            'to_id': to_id,
            'type': DEP_TYPE,
        }))
    return events
