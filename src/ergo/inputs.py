"""
JSON input contracts for mutations.

Agents pipe JSON to stdin instead of fighting shell quoting:

    echo '{"title": "Do X"}' | ergo new task
    echo '{"state": "done"}' | ergo set ABC123
    echo '{"title": "Epic", "tasks": [...]}' | ergo plan

Parse failures raise ValidationError(error="parse_error"); semantic failures
raise ValidationError(error="validation_failed") listing every problem found.
"""

import difflib
import json
from dataclasses import dataclass, field, fields
from typing import Optional

from ergo.errors import ValidationError
from ergo.graph import has_cycle
from ergo.model import STATES, Graph, is_valid_state, parse_worker
from ergo.updates import EPIC_ONLY_REJECTIONS, TaskUpdate


def _load_object(text: Optional[str], known: tuple) -> dict:
    if text is None or not text.strip():
        raise ValidationError('parse_error', 'no input: pipe JSON to stdin')
    try:
        raw = json.loads(text)
    except json.JSONDecodeError as e:
        raise ValidationError('parse_error', f'invalid JSON: {e}') from None
    if not isinstance(raw, dict):
        raise ValidationError('parse_error', 'invalid JSON: expected an object')

    unknown = sorted(set(raw) - set(known))
    if unknown:
        invalid = {}
        for name in unknown:
            close = difflib.get_close_matches(name, known, n=1)
            invalid[name] = f'unknown field (did you mean: {close[0]}?)' if close else 'unknown field'
        raise ValidationError('parse_error', f'invalid JSON: unknown field {unknown[0]!r}',
                              invalid=invalid)
    return raw


def _string_field(raw: dict, name: str, invalid: dict) -> Optional[str]:
    value = raw.get(name)
    if value is None:
        return None
    if not isinstance(value, str):
        invalid[name] = 'must be a string'
        return None
    return value


# ============================================================================
# Single task/epic input
# ============================================================================

@dataclass
class TaskInput:
    """One schema for `new` and `set`; only the title requirement differs."""

    title: Optional[str] = None
    body: Optional[str] = None
    epic: Optional[str] = None
    worker: Optional[str] = None
    state: Optional[str] = None
    claim: Optional[str] = None
    result_path: Optional[str] = None
    result_summary: Optional[str] = None

    @classmethod
    def from_json(cls, text: Optional[str]) -> 'TaskInput':
        names = tuple(f.name for f in fields(cls))
        raw = _load_object(text, names)
        invalid = {}
        values = {name: _string_field(raw, name, invalid) for name in names}
        if invalid:
            raise ValidationError('parse_error', 'invalid JSON: wrong field types', invalid=invalid)
        return cls(**values)

    def _validate(self, require_title: bool, is_epic: bool) -> None:
        missing = []
        invalid = {}

        has_title = self.title is not None and self.title.strip() != ''
        if require_title and not has_title:
            missing.append('title')
        elif self.title is not None and not has_title:
            invalid['title'] = 'cannot be empty'

        if self.body is not None and not self.body.strip():
            invalid['body'] = 'cannot be empty'

        if self.worker is not None:
            try:
                parse_worker(self.worker)
            except ValueError:
                invalid['worker'] = f'invalid value {self.worker!r}, expected: any, agent, human'

        if self.state is not None and not is_valid_state(self.state):
            invalid['state'] = f"invalid value {self.state!r}, expected: {', '.join(STATES)}"

        if self.result_path is not None and self.result_summary is None:
            invalid['result_summary'] = 'required when result_path is provided'
        if self.result_summary is not None and self.result_path is None:
            invalid['result_path'] = 'required when result_summary is provided'

        if is_epic:
            for name, reason in EPIC_ONLY_REJECTIONS.items():
                if getattr(self, name) is not None:
                    invalid[name] = reason

        if missing or invalid:
            message = 'missing required fields' if missing and not invalid else 'invalid input'
            raise ValidationError('validation_failed', message, missing=missing, invalid=invalid)

    def validate_for_new(self, is_epic: bool = False) -> None:
        self._validate(require_title=True, is_epic=is_epic)

    def validate_for_set(self) -> None:
        self._validate(require_title=False, is_epic=False)

    def to_update(self) -> TaskUpdate:
        return TaskUpdate(**{f.name: getattr(self, f.name) for f in fields(self)})


# ============================================================================
# Plan input: one epic plus its tasks and their ordering
# ============================================================================

@dataclass
class PlanTask:
    title: str
    body: Optional[str] = None
    worker: Optional[str] = None
    after: list = field(default_factory=list)


@dataclass
class PlanInput:
    """
    Payload for `ergo plan`.

    Tasks refer to each other by title through `after`; titles are resolved to
    real ids only once the whole payload has been validated.
    """

    title: str
    body: Optional[str] = None
    tasks: list = field(default_factory=list)

    @classmethod
    def from_json(cls, text: Optional[str]) -> 'PlanInput':
        raw = _load_object(text, ('title', 'body', 'tasks'))
        missing = []
        invalid = {}

        title = _string_field(raw, 'title', invalid)
        if title is None or not title.strip():
            if 'title' not in invalid:
                missing.append('title')
        body = _string_field(raw, 'body', invalid)
        if body is not None and not body.strip():
            invalid['body'] = 'cannot be empty'

        raw_tasks = raw.get('tasks')
        if raw_tasks is None or raw_tasks == []:
            missing.append('tasks')
            raw_tasks = []
        elif not isinstance(raw_tasks, list):
            invalid['tasks'] = 'must be a list'
            raw_tasks = []

        tasks = []
        for i, item in enumerate(raw_tasks):
            prefix = f'tasks[{i}]'
            if not isinstance(item, dict):
                invalid[prefix] = 'must be an object'
                tasks.append(PlanTask(title=''))
                continue
            extra = sorted(set(item) - {'title', 'body', 'worker', 'after'})
            for name in extra:
                invalid[f'{prefix}.{name}'] = 'unknown field'
            task_invalid = {}
            task_title = _string_field(item, 'title', task_invalid)
            task_body = _string_field(item, 'body', task_invalid)
            worker = _string_field(item, 'worker', task_invalid)
            after = item.get('after') or []
            if not isinstance(after, list) or not all(isinstance(a, str) for a in after):
                task_invalid['after'] = 'must be a list of task titles'
                after = []
            for name, reason in task_invalid.items():
                invalid[f'{prefix}.{name}'] = reason
            if task_title is None or not task_title.strip():
                if 'title' not in task_invalid:
                    missing.append(f'{prefix}.title')
                task_title = ''
            if task_body is not None and not task_body.strip():
                invalid[f'{prefix}.body'] = 'cannot be empty'
            if worker is not None:
                try:
                    worker = parse_worker(worker)
                except ValueError:
                    invalid[f'{prefix}.worker'] = f'invalid value {worker!r}, expected: any, agent, human'
            tasks.append(PlanTask(title=task_title, body=task_body, worker=worker, after=list(after)))

        plan = cls(title=(title or '').strip(), body=body, tasks=tasks)
        plan.validate(missing, invalid)
        return plan

    def validate(self, missing: Optional[list] = None, invalid: Optional[dict] = None) -> None:
        """
        Check titles and `after` references, then look for cycles.

        Problems already found while parsing can be passed in so that a single
        ValidationError reports everything.
        """
        missing = list(missing or [])
        invalid = dict(invalid or {})
        if not self.title.strip() and 'title' not in missing and 'title' not in invalid:
            missing.append('title')
        if not self.tasks and 'tasks' not in missing and 'tasks' not in invalid:
            missing.append('tasks')
        for i, task in enumerate(self.tasks):
            where = f'tasks[{i}].title'
            if not task.title.strip() and where not in missing and where not in invalid \
                    and f'tasks[{i}]' not in invalid:
                missing.append(where)

        index_by_title = {}
        for i, task in enumerate(self.tasks):
            if not task.title:
                continue
            if task.title in index_by_title:
                invalid[f'tasks[{i}].title'] = (
                    f'duplicate title {task.title!r} '
                    f'(already used by tasks[{index_by_title[task.title]}].title)')
            else:
                index_by_title[task.title] = i

        scratch = Graph()
        for i, task in enumerate(self.tasks):
            if not task.title:
                continue
            seen = set()
            for j, dep_title in enumerate(task.after):
                where = f'tasks[{i}].after[{j}]'
                if not dep_title.strip():
                    invalid[where] = 'cannot be empty'
                    continue
                if dep_title == task.title:
                    invalid[where] = 'task cannot depend on itself'
                    continue
                if dep_title not in index_by_title:
                    invalid[where] = f'unknown task title {dep_title!r}'
                    continue
                if dep_title in seen:
                    continue
                seen.add(dep_title)
                if has_cycle(scratch, task.title, dep_title):
                    invalid['tasks'] = 'after graph contains a cycle'
                    continue
                scratch.add_edge(task.title, dep_title)

        if missing or invalid:
            message = 'missing required fields' if missing and not invalid else 'invalid input'
            raise ValidationError('validation_failed', message,
                                  missing=sorted(missing), invalid=invalid)

    def edges(self) -> list:
        """(task index, dependency index) pairs, duplicates removed."""
        index_by_title = {task.title: i for i, task in enumerate(self.tasks)}
        pairs = []
        for i, task in enumerate(self.tasks):
            for dep_title in task.after:
                pair = (i, index_by_title[dep_title])
                if pair not in pairs:
                    pairs.append(pair)
        return pairs
