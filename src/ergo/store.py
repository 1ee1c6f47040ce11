"""
Store: the transaction layer every command goes through.

Each mutation runs the same protocol:

    with store.transaction() as txn:     # non-blocking exclusive lock
        graph = txn.graph                # freshly replayed from disk
        ...validate against graph...
        txn.add(events)                  # appended in one write on exit

If the lock is held elsewhere, LockBusyError is raised at once. If anything
inside the block raises, nothing is appended.

Usage:
    from ergo import Store

    store = Store.discover(agent_id='agent-7')
    task = store.claim_next()
    store.update(task.id, TaskUpdate(state='done'))
"""

import logging
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Callable, Optional

from ergo.compact import compact
from ergo.errors import (
    ClaimInvariantError,
    DependencyError,
    NoReadyWorkError,
    NotFoundError,
    PrunedError,
    ValidationError,
)
from ergo.evidence import capture
from ergo.graph import has_cycle, list_epics, list_tasks, ready_tasks
from ergo.inputs import PlanInput
from ergo.model import (
    DEP_TYPE,
    EV_LINK,
    EV_NEW_EPIC,
    EV_NEW_TASK,
    EV_UNLINK,
    STATE_DOING,
    STATE_TODO,
    Event,
    Graph,
    Task,
    format_time,
    new_short_id,
    new_uuid,
    parse_worker,
    utc_now,
)
from ergo.prune import PrunePlan, plan_prune, tombstone_events
from ergo.replay import replay
from ergo.storage import (
    EVENTS_FILE_NAME,
    LOCK_FILE_NAME,
    EventLog,
    file_lock,
    init_ergo_dir,
    resolve_ergo_dir,
)
from ergo.updates import TaskUpdate, build_update_events

logger = logging.getLogger(__name__)


class Transaction:
    """State for one locked read-validate-append unit."""

    def __init__(self, events: list, now: datetime, path: Optional[Path] = None):
        self.base_events = events
        self.graph = replay(events, path)
        self.now = now
        self.pending = []

    def add(self, events) -> None:
        self.pending.extend(events)

    def result(self) -> Graph:
        """The graph as it will look once the pending events are appended."""
        return replay(self.base_events + self.pending)


@dataclass
class PlanOutcome:
    epic: Task
    tasks: list
    edges: list


def require_live(graph: Graph, task_id: str) -> Task:
    """
    Look up a live task or epic.

    Raises:
        PrunedError: if the id was tombstoned
        NotFoundError: if the id never existed
    """
    if graph.is_pruned(task_id):
        raise PrunedError(task_id)
    task = graph.get(task_id)
    if task is None:
        raise NotFoundError(task_id)
    return task


def check_edge(graph: Graph, from_id: str, to_id: str, adding: bool = True) -> None:
    """Validate a dependency edge from_id -> to_id against the graph."""
    src = require_live(graph, from_id)
    dst = require_live(graph, to_id)
    if from_id == to_id:
        raise DependencyError(f"{from_id} cannot depend on itself")
    if src.is_epic != dst.is_epic:
        raise DependencyError(
            f"cannot link {src.kind} {from_id} to {dst.kind} {to_id}: "
            "dependencies must be task-to-task or epic-to-epic")
    if adding and has_cycle(graph, from_id, to_id):
        raise DependencyError(f"link {from_id} -> {to_id} would create a cycle")


def _link_event(event_type: str, from_id: str, to_id: str, now: datetime) -> Event:
    return Event.create(event_type, now, {'from_id': from_id, 'to_id': to_id, 'type': DEP_TYPE})


@dataclass
class Store:
    """
    Handle on one `.ergo` directory.

    Holds no graph between calls: every read replays the log and every
    mutation replays it again under the lock.
    """

    ergo_dir: Path
    agent_id: Optional[str] = None
    clock: Callable[[], datetime] = utc_now
    log: EventLog = field(init=False, repr=False)

    def __post_init__(self):
        self.ergo_dir = Path(self.ergo_dir)
        self.log = EventLog(self.events_path)

    # ========================================================================
    # Setup
    # ========================================================================

    @classmethod
    def init(cls, directory: Path, **kwargs) -> 'Store':
        """Create `.ergo/` under `directory` (idempotent) and open it."""
        return cls(init_ergo_dir(directory), **kwargs)

    @classmethod
    def discover(cls, start_dir: Optional[Path] = None, **kwargs) -> 'Store':
        """Open the nearest `.ergo/` at or above `start_dir`."""
        return cls(resolve_ergo_dir(start_dir), **kwargs)

    @property
    def events_path(self) -> Path:
        return self.ergo_dir / EVENTS_FILE_NAME

    @property
    def lock_path(self) -> Path:
        return self.ergo_dir / LOCK_FILE_NAME

    @property
    def repo_dir(self) -> Path:
        return self.ergo_dir.parent

    # ========================================================================
    # Read path (no lock)
    # ========================================================================

    def load_graph(self) -> Graph:
        return replay(self.log.read(), self.events_path)

    def get(self, task_id: str) -> Task:
        return require_live(self.load_graph(), task_id)

    def list_tasks(self, epic_id: Optional[str] = None, ready_only: bool = False,
                   blocked_only: bool = False, include_all: bool = False,
                   as_worker: Optional[str] = None) -> list:
        return list_tasks(self.load_graph(), epic_id=epic_id, ready_only=ready_only,
                          blocked_only=blocked_only, include_all=include_all,
                          as_worker=as_worker)

    def list_epics(self) -> list:
        return list_epics(self.load_graph())

    def ready_tasks(self, epic_id: Optional[str] = None, as_worker: Optional[str] = None) -> list:
        return ready_tasks(self.load_graph(), epic_id=epic_id, as_worker=as_worker)

    # ========================================================================
    # Transactions
    # ========================================================================

    @contextmanager
    def transaction(self):
        """Lock, replay, yield a Transaction, then append its events in one write."""
        with file_lock(self.lock_path):
            txn = Transaction(self.log.read(), self.clock(), self.events_path)
            yield txn
            if txn.pending:
                self.log.append(txn.pending)
                logger.debug("committed %d events", len(txn.pending))

    def _require_agent(self, action: str) -> str:
        if not self.agent_id:
            raise ClaimInvariantError(f"{action} requires an agent id; pass --agent")
        return self.agent_id

    def _new_entity(self, txn: Transaction, is_epic: bool, title: str, body: str,
                    epic_id: Optional[str] = None, worker: Optional[str] = None,
                    taken: Optional[set] = None) -> Event:
        taken = taken if taken is not None else set()
        task_id = new_short_id(lambda c: txn.graph.id_taken(c) or c in taken)
        taken.add(task_id)
        data = {
            'id': task_id,
            'uuid': new_uuid(),
            'epic_id': '' if is_epic else (epic_id or ''),
            'state': '' if is_epic else STATE_TODO,
            'title': title,
            'body': body,
            'worker': '' if is_epic else parse_worker(worker),
            'created_at': format_time(txn.now),
        }
        return Event.create(EV_NEW_EPIC if is_epic else EV_NEW_TASK, txn.now, data)

    # ========================================================================
    # Creation
    # ========================================================================

    def create_task(self, title: str, body: str = '', epic_id: Optional[str] = None,
                    worker: Optional[str] = None, state: Optional[str] = None,
                    claim: Optional[str] = None, result_path: Optional[str] = None,
                    result_summary: Optional[str] = None) -> Task:
        """
        Create a task, optionally already in an epic, claimed, or moved along.

        The creation and any initial state/claim/result go out in one append.

        Returns:
            The task as it reads back after the write
        """
        title = (title or '').strip()
        if not title:
            raise ValidationError('validation_failed', 'missing required fields', missing=['title'])
        try:
            worker = parse_worker(worker)
        except ValueError as e:
            raise ValidationError('validation_failed', 'invalid input', invalid={'worker': str(e)}) from None

        followup = TaskUpdate(state=state, claim=claim,
                              result_path=result_path, result_summary=result_summary)
        evidence = None
        if result_path is not None:
            evidence = capture(self.repo_dir, self.ergo_dir, result_path)

        with self.transaction() as txn:
            if epic_id:
                epic = require_live(txn.graph, epic_id)
                if not epic.is_epic:
                    raise ValidationError('validation_failed', 'invalid input',
                                          invalid={'epic': f"{epic_id} is not an epic"})
            created = self._new_entity(txn, False, title, body or '', epic_id=epic_id, worker=worker)
            txn.add([created])
            task_id = created.data['id']
            if not followup.empty:
                scratch = txn.result()
                txn.add(build_update_events(scratch, scratch.tasks[task_id], followup,
                                            self.agent_id, txn.now, evidence))
            task = txn.result().tasks[task_id]
        logger.info("created task %s", task_id)
        return task

    def create_epic(self, title: str, body: str = '') -> Task:
        title = (title or '').strip()
        if not title:
            raise ValidationError('validation_failed', 'missing required fields', missing=['title'])
        with self.transaction() as txn:
            created = self._new_entity(txn, True, title, body or '')
            txn.add([created])
            epic = txn.result().tasks[created.data['id']]
        logger.info("created epic %s", epic.id)
        return epic

    def plan(self, plan: PlanInput) -> PlanOutcome:
        """
        Create an epic, its tasks, and their ordering in a single append.

        The payload is fully validated (titles, references, cycles) before any
        id is allocated.
        """
        plan.validate()
        with self.transaction() as txn:
            taken = set()
            epic_event = self._new_entity(txn, True, plan.title, plan.body or '', taken=taken)
            epic_id = epic_event.data['id']
            task_events = [
                self._new_entity(txn, False, item.title.strip(), item.body or '',
                                 epic_id=epic_id, worker=item.worker, taken=taken)
                for item in plan.tasks
            ]
            ids = [e.data['id'] for e in task_events]
            edges = [(ids[i], ids[j]) for i, j in plan.edges()]
            txn.add([epic_event])
            txn.add(task_events)
            txn.add(_link_event(EV_LINK, src, dst, txn.now) for src, dst in edges)
            graph = txn.result()
        logger.info("planned epic %s with %d tasks", epic_id, len(ids))
        return PlanOutcome(
            epic=graph.tasks[epic_id],
            tasks=[graph.tasks[i] for i in ids],
            edges=edges,
        )

    # ========================================================================
    # Updates and claims
    # ========================================================================

    def update(self, task_id: str, update: TaskUpdate) -> Task:
        """
        Apply a typed update to one task or epic.

        Result evidence, if any, is captured before the lock is taken.
        """
        evidence = None
        if update.result_path is not None:
            evidence = capture(self.repo_dir, self.ergo_dir, update.result_path)
        with self.transaction() as txn:
            task = require_live(txn.graph, task_id)
            txn.add(build_update_events(txn.graph, task, update, self.agent_id, txn.now, evidence))
            return txn.result().tasks[task_id]

    def attach_result(self, task_id: str, summary: str, path: str) -> Task:
        return self.update(task_id, TaskUpdate(result_path=path, result_summary=summary))

    def claim(self, task_id: str) -> Task:
        """Claim a specific task for this agent and move it to doing."""
        agent = self._require_agent("claim")
        with self.transaction() as txn:
            task = require_live(txn.graph, task_id)
            if task.is_epic:
                raise ValidationError('validation_failed', 'invalid input',
                                      invalid={'claim': 'epics cannot be claimed'})
            if task.claimed_by and task.claimed_by != agent:
                raise ClaimInvariantError(f"{task_id} is already claimed by {task.claimed_by}")
            txn.add(build_update_events(txn.graph, task, TaskUpdate(claim=agent, state=STATE_DOING),
                                        agent, txn.now))
            return txn.result().tasks[task_id]

    def claim_next(self, epic_id: Optional[str] = None, as_worker: Optional[str] = None) -> Task:
        """
        Claim the oldest ready task.

        The readiness scan and the claim happen under the same lock, so two
        racing processes can never claim the same task.

        Raises:
            NoReadyWorkError: if nothing is ready
        """
        agent = self._require_agent("claim")
        with self.transaction() as txn:
            if epic_id:
                require_live(txn.graph, epic_id)
            candidates = ready_tasks(txn.graph, epic_id=epic_id, as_worker=as_worker)
            if not candidates:
                raise NoReadyWorkError()
            task = candidates[0]
            txn.add(build_update_events(txn.graph, task, TaskUpdate(claim=agent, state=STATE_DOING),
                                        agent, txn.now))
            claimed = txn.result().tasks[task.id]
        logger.info("%s claimed %s", agent, claimed.id)
        return claimed

    # ========================================================================
    # Dependencies
    # ========================================================================

    def link(self, from_id: str, to_id: str) -> None:
        """Record that from_id depends on to_id."""
        with self.transaction() as txn:
            check_edge(txn.graph, from_id, to_id)
            txn.add([_link_event(EV_LINK, from_id, to_id, txn.now)])

    def unlink(self, from_id: str, to_id: str) -> None:
        with self.transaction() as txn:
            check_edge(txn.graph, from_id, to_id, adding=False)
            txn.add([_link_event(EV_UNLINK, from_id, to_id, txn.now)])

    def sequence(self, ids: list) -> list:
        """
        Chain items so each one depends on the one before it.

        All links are validated together, later ones seeing earlier ones, and
        written in one append.

        Returns:
            The (from, to) edges that were added
        """
        if len(ids) < 2:
            raise ValidationError('validation_failed', 'sequence needs at least two ids')
        edges = [(ids[i], ids[i - 1]) for i in range(1, len(ids))]
        with self.transaction() as txn:
            for from_id, to_id in edges:
                check_edge(txn.graph, from_id, to_id)
                txn.graph.add_edge(from_id, to_id)
            txn.add(_link_event(EV_LINK, src, dst, txn.now) for src, dst in edges)
        return edges

    def unsequence(self, first_id: str, second_id: str) -> None:
        """Undo `sequence first second`: second no longer waits on first."""
        self.unlink(second_id, first_id)

    # ========================================================================
    # Maintenance
    # ========================================================================

    def compact(self) -> dict:
        """
        Rewrite the log as the minimal equivalent event sequence.

        Tombstoned entities are dropped for good.
        """
        with file_lock(self.lock_path):
            events = self.log.read()
            compacted = compact(replay(events, self.events_path))
            self.log.write_full(compacted)
        logger.info("compacted %s: %d -> %d events", self.events_path, len(events), len(compacted))
        return {'events_before': len(events), 'events_after': len(compacted)}

    def prune(self, dry_run: bool = True) -> PrunePlan:
        """
        Tombstone closed tasks and finished epics.

        The plan is computed under the lock either way; a dry run just appends
        nothing.
        """
        with self.transaction() as txn:
            plan = plan_prune(txn.graph)
            plan.dry_run = dry_run
            if not dry_run and plan.ids:
                txn.add(tombstone_events(plan, self.agent_id or '', txn.now))
        if not dry_run:
            logger.info("pruned %d ids", len(plan.ids))
        return plan
