"""
Prune planning: pick closed work that can be forgotten.

First every task in done/canceled is selected. Then, using that selection,
every epic with no remaining non-selected tasks is selected too, so an epic
whose children are all being pruned in this pass goes with them.
"""

from dataclasses import dataclass, field
from datetime import datetime

from ergo.model import EV_TOMBSTONE, Event, Graph, format_time, is_closed


@dataclass
class PruneItem:
    id: str
    title: str
    state: str
    is_epic: bool = False

    def to_dict(self) -> dict:
        return {'id': self.id, 'title': self.title, 'state': self.state, 'is_epic': self.is_epic}


@dataclass
class PrunePlan:
    ids: list = field(default_factory=list)
    items: list = field(default_factory=list)
    dry_run: bool = True

    @property
    def empty(self) -> bool:
        return not self.ids

    def to_dict(self) -> dict:
        return {
            'dry_run': self.dry_run,
            'ids': list(self.ids),
            'items': [item.to_dict() for item in self.items],
        }


def plan_prune(graph: Graph) -> PrunePlan:
    """Compute which ids a prune would tombstone. Pure; nothing is written."""
    selected = {
        t.id for t in graph.tasks.values()
        if not t.is_epic and is_closed(t.state)
    }
    for epic in graph.tasks.values():
        if not epic.is_epic:
            continue
        if all(child.id in selected for child in graph.epic_tasks(epic.id)):
            selected.add(epic.id)

    plan = PrunePlan()
    for task_id in sorted(selected):
        task = graph.tasks[task_id]
        plan.ids.append(task_id)
        plan.items.append(PruneItem(
            id=task_id,
            title=task.title,
            state=task.state or '',
            is_epic=task.is_epic,
        ))
    return plan


def tombstone_events(plan: PrunePlan, agent_id: str, now: datetime) -> list:
    """One tombstone event per planned id."""
    ts = format_time(now)
    return [
        Event.create(EV_TOMBSTONE, now, {'id': task_id, 'agent_id': agent_id, 'ts': ts})
        for task_id in plan.ids
    ]
