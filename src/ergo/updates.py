"""
Typed task updates and the events they turn into.

A TaskUpdate holds only the fields the caller actually set. The fields are
validated and applied in a fixed order (title/body, epic, worker, claim, then
state) because later checks depend on earlier ones: moving to doing needs to
know whether this same update also set a claim.
"""

from dataclasses import dataclass, fields
from datetime import datetime
from typing import Optional

from ergo.errors import (
    ClaimInvariantError,
    NotFoundError,
    PrunedError,
    ValidationError,
)
from ergo.evidence import ResultEvidence, validate_summary
from ergo.model import (
    CLAIM_CLEARING_STATES,
    CLAIM_REQUIRED_STATES,
    EV_BODY,
    EV_CLAIM,
    EV_EPIC,
    EV_RESULT,
    EV_STATE,
    EV_TITLE,
    EV_UNCLAIM,
    EV_WORKER,
    STATE_DOING,
    STATES,
    Event,
    Graph,
    Task,
    check_claim_invariant,
    check_transition,
    format_time,
    is_valid_state,
    parse_worker,
)

EPIC_ONLY_REJECTIONS = {
    'epic': "epics cannot be assigned to other epics",
    'worker': "epics do not have workers",
    'state': "epics do not have state (use epic dependencies)",
    'claim': "epics cannot be claimed",
    'result_path': "results attach to tasks, not epics",
}


@dataclass
class TaskUpdate:
    """
    Optional-field update for a task or epic. None means "leave alone".

    `epic=""` removes the task from its epic and `claim=""` releases the claim.
    """

    title: Optional[str] = None
    body: Optional[str] = None
    epic: Optional[str] = None
    worker: Optional[str] = None
    state: Optional[str] = None
    claim: Optional[str] = None
    result_path: Optional[str] = None
    result_summary: Optional[str] = None

    def provided(self) -> list:
        """Names of the fields that were set, in declaration order."""
        return [f.name for f in fields(self) if getattr(self, f.name) is not None]

    @property
    def empty(self) -> bool:
        return not self.provided()

    @property
    def has_result(self) -> bool:
        return self.result_path is not None or self.result_summary is not None


def _invalid(field: str, reason: str) -> ValidationError:
    return ValidationError('validation_failed', 'invalid input', invalid={field: reason})


def build_update_events(graph: Graph, task: Task, update: TaskUpdate,
                        agent_id: Optional[str], now: datetime,
                        evidence: Optional[ResultEvidence] = None) -> list:
    """
    Validate `update` against the current graph and build its events.

    Nothing is written here; the caller appends the returned events as one
    unit. `evidence` must be supplied whenever the update carries a result.

    Raises:
        ErgoValidationError: if any part of the update is illegal
    """
    if update.empty:
        raise ValidationError('validation_failed', 'nothing to update')

    ts = format_time(now)
    events = []

    def emit(event_type: str, **data):
        payload = {'id': task.id}
        payload.update(data)
        payload['ts'] = ts
        events.append(Event.create(event_type, now, payload))

    if task.is_epic:
        rejected = {name: EPIC_ONLY_REJECTIONS[name]
                    for name in update.provided() if name in EPIC_ONLY_REJECTIONS}
        if update.result_summary is not None and 'result_path' not in rejected:
            rejected['result_path'] = EPIC_ONLY_REJECTIONS['result_path']
        if rejected:
            raise ValidationError('validation_failed', 'invalid input', invalid=rejected)

    # -- content ------------------------------------------------------------
    if update.title is not None:
        title = update.title.strip()
        if not title:
            raise _invalid('title', 'cannot be empty')
        emit(EV_TITLE, title=title)

    if update.body is not None:
        if not update.body.strip():
            raise _invalid('body', 'cannot be empty')
        emit(EV_BODY, body=update.body)

    # -- epic membership ----------------------------------------------------
    if update.epic is not None:
        epic_id = update.epic.strip()
        if epic_id:
            if graph.is_pruned(epic_id):
                raise PrunedError(epic_id)
            epic = graph.get(epic_id)
            if epic is None:
                raise NotFoundError(epic_id)
            if not epic.is_epic:
                raise _invalid('epic', f"{epic_id} is not an epic")
        emit(EV_EPIC, epic_id=epic_id)

    # -- worker -------------------------------------------------------------
    if update.worker is not None:
        try:
            worker = parse_worker(update.worker)
        except ValueError as e:
            raise _invalid('worker', str(e)) from None
        emit(EV_WORKER, worker=worker)

    # -- claim and state ----------------------------------------------------
    state = update.state
    if state is not None and not is_valid_state(state):
        raise _invalid('state', f"invalid value {state!r}, expected: {', '.join(STATES)}")

    claimed_by = task.claimed_by
    claim = update.claim.strip() if update.claim is not None else None
    if claim and state is None:
        state = STATE_DOING

    if claim is not None:
        if claim:
            emit(EV_CLAIM, agent_id=claim)
            claimed_by = claim
        else:
            emit(EV_UNCLAIM)
            claimed_by = None

    if state is not None:
        check_transition(task.state, state)
        if state in CLAIM_REQUIRED_STATES and not claimed_by and claim is None:
            if not agent_id:
                raise ClaimInvariantError(
                    "state requires claim; pass --agent or set claim explicitly")
            emit(EV_CLAIM, agent_id=agent_id)
            claimed_by = agent_id
        if state in CLAIM_CLEARING_STATES:
            # the state event itself drops any claim
            claimed_by = None
        check_claim_invariant(state, claimed_by)
        emit(EV_STATE, state=state)
    elif not task.is_epic:
        check_claim_invariant(task.state, claimed_by)

    # -- result -------------------------------------------------------------
    if update.has_result:
        if evidence is None or update.result_summary is None:
            missing = 'result_summary' if update.result_summary is None else 'result_path'
            raise _invalid(missing, "result_path and result_summary must be provided together")
        summary = validate_summary(update.result_summary)
        events.append(result_event(task.id, summary, evidence, now))

    return events


def result_event(task_id: str, summary: str, evidence: ResultEvidence, now: datetime) -> Event:
    return Event.create(EV_RESULT, now, {
        'task_id': task_id,
        'summary': summary,
        'path': evidence.path,
        'sha256_at_attach': evidence.sha256,
        'mtime_at_attach': format_time(evidence.mtime),
        'git_commit_at_attach': evidence.git_commit or '',
        'ts': format_time(now),
    })
