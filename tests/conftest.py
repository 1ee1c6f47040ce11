"""
Pytest configuration and shared fixtures for ergo tests.
"""

import shutil
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from ergo.model import Event, format_time
from ergo.storage import init_ergo_dir
from ergo.store import Store

BASE_TIME = datetime(2024, 1, 15, 10, 0, 0, tzinfo=timezone.utc)


class FakeClock:
    """Deterministic clock: each call returns a time one step after the last."""

    def __init__(self, start: datetime = BASE_TIME, step: timedelta = timedelta(seconds=1)):
        self.now = start
        self.step = step

    def __call__(self) -> datetime:
        value = self.now
        self.now += self.step
        return value


class EventFactory:
    """Builds raw log events with strictly increasing timestamps."""

    def __init__(self, start: datetime = BASE_TIME):
        self.clock = FakeClock(start)

    def _field(self, event_type, task_id, **data):
        when = self.clock()
        payload = {'id': task_id}
        payload.update(data)
        payload['ts'] = format_time(when)
        return Event.create(event_type, when, payload)

    def new_task(self, task_id, title='Task', body='', epic_id='', state='todo', worker='any'):
        when = self.clock()
        return Event.create('new_task', when, {
            'id': task_id, 'uuid': f'uuid-{task_id}', 'epic_id': epic_id, 'state': state,
            'title': title, 'body': body, 'worker': worker, 'created_at': format_time(when),
        })

    def new_epic(self, epic_id, title='Epic', body='', state=''):
        when = self.clock()
        return Event.create('new_epic', when, {
            'id': epic_id, 'uuid': f'uuid-{epic_id}', 'epic_id': '', 'state': state,
            'title': title, 'body': body, 'worker': '', 'created_at': format_time(when),
        })

    def state(self, task_id, state):
        return self._field('state', task_id, state=state)

    def claim(self, task_id, agent_id):
        return self._field('claim', task_id, agent_id=agent_id)

    def unclaim(self, task_id):
        return self._field('unclaim', task_id)

    def title(self, task_id, title):
        return self._field('title', task_id, title=title)

    def body(self, task_id, body):
        return self._field('body', task_id, body=body)

    def epic(self, task_id, epic_id):
        return self._field('epic', task_id, epic_id=epic_id)

    def worker(self, task_id, worker):
        return self._field('worker', task_id, worker=worker)

    def tombstone(self, task_id, agent_id='pruner'):
        return self._field('tombstone', task_id, agent_id=agent_id)

    def link(self, from_id, to_id):
        return Event.create('link', self.clock(), {'from_id': from_id, 'to_id': to_id, 'type': 'depends'})

    def unlink(self, from_id, to_id):
        return Event.create('unlink', self.clock(), {'from_id': from_id, 'to_id': to_id, 'type': 'depends'})

    def result(self, task_id, summary='did it', path='out.txt', sha='ab' * 32, commit=''):
        when = self.clock()
        return Event.create('result', when, {
            'task_id': task_id, 'summary': summary, 'path': path, 'sha256_at_attach': sha,
            'mtime_at_attach': format_time(when), 'git_commit_at_attach': commit,
            'ts': format_time(when),
        })


@pytest.fixture
def temp_project():
    """Create a temporary project directory for testing."""
    temp_dir = tempfile.mkdtemp()
    yield Path(temp_dir)

    # Cleanup
    shutil.rmtree(temp_dir)


@pytest.fixture
def ergo_dir(temp_project):
    """An initialized, empty .ergo directory."""
    return init_ergo_dir(temp_project)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store(ergo_dir, clock):
    """A Store acting as agent-1 with a pinned clock."""
    return Store(ergo_dir, agent_id='agent-1', clock=clock)


@pytest.fixture
def ev():
    """Factory for hand-built log events."""
    return EventFactory()
