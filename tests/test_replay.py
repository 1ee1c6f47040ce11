"""
Tests for folding events into a Graph.
"""

import pytest

from ergo.errors import DuplicateIDError, EventPayloadError
from ergo.model import Event
from ergo.replay import UNTITLED, migrate_legacy_titles, replay, title_from_body


class TestCreation:
    """Test new_task/new_epic handling."""

    def test_task_defaults(self, ev):
        graph = replay([ev.new_task('A', title='First', body='details')])
        task = graph.get('A')
        assert task.title == 'First'
        assert task.body == 'details'
        assert task.state == 'todo'
        assert task.worker == 'any'
        assert task.claimed_by is None
        assert task.epic_id is None
        assert task.created_at == task.updated_at

    def test_epic_has_no_state_or_worker(self, ev):
        """Legacy epics were written with state todo; readers never see it."""
        graph = replay([ev.new_epic('E', state='todo')])
        epic = graph.get('E')
        assert epic.is_epic
        assert epic.state is None
        assert epic.worker is None
        assert epic.kind == 'epic'

    def test_duplicate_live_id_fails(self, ev):
        with pytest.raises(DuplicateIDError) as exc:
            replay([ev.new_task('A'), ev.new_task('A')])
        assert 'duplicate id A' in str(exc.value)

    def test_invalid_creation_state_fails(self, ev):
        with pytest.raises(EventPayloadError):
            replay([ev.new_task('A', state='paused')])

    def test_missing_id_fails(self):
        event = Event.from_dict({'type': 'new_task', 'ts': '2024-01-15T10:00:00Z',
                                 'data': {'title': 'x'}})
        with pytest.raises(EventPayloadError):
            replay([event])

    def test_duplicate_reports_log_line(self, ev, tmp_path):
        first = ev.new_task('A').to_dict()
        second = ev.new_task('A').to_dict()
        events = [Event.from_dict(first, line=1), Event.from_dict(second, line=2)]
        log_path = tmp_path / 'events.jsonl'
        with pytest.raises(DuplicateIDError) as exc:
            replay(events, log_path)
        assert exc.value.line == 2
        assert exc.value.path == log_path
        assert str(exc.value) == f"{log_path}:2: duplicate id A in events log"

    def test_payload_error_without_location(self, ev):
        with pytest.raises(EventPayloadError) as exc:
            replay([ev.new_task('A', state='paused')])
        assert exc.value.line is None
        assert str(exc.value).startswith('bad new_task event')


class TestStateAndClaims:
    """Test state and claim events."""

    def test_claim_then_done_clears_claim(self, ev):
        graph = replay([
            ev.new_task('A'),
            ev.claim('A', 'bot'),
            ev.state('A', 'doing'),
            ev.state('A', 'done'),
        ])
        task = graph.get('A')
        assert task.state == 'done'
        assert task.claimed_by is None
        assert task.claimed_at is None

    def test_blocked_keeps_claim(self, ev):
        graph = replay([
            ev.new_task('A'),
            ev.claim('A', 'bot'),
            ev.state('A', 'doing'),
            ev.state('A', 'blocked'),
        ])
        assert graph.get('A').claimed_by == 'bot'

    def test_claim_does_not_touch_updated_at(self, ev):
        created = ev.new_task('A')
        claim = ev.claim('A', 'bot')
        graph = replay([created, claim])
        task = graph.get('A')
        assert task.updated_at == task.created_at
        assert task.claimed_at > task.created_at

    def test_unclaim(self, ev):
        graph = replay([ev.new_task('A'), ev.claim('A', 'bot'), ev.unclaim('A')])
        assert graph.get('A').claimed_by is None

    def test_state_on_epic_ignored(self, ev):
        graph = replay([ev.new_epic('E'), ev.state('E', 'done'), ev.claim('E', 'bot')])
        epic = graph.get('E')
        assert epic.state is None
        assert epic.claimed_by is None

    def test_events_for_unknown_ids_skipped(self, ev):
        graph = replay([ev.state('ZZZ', 'done'), ev.title('ZZZ', 'x')])
        assert graph.tasks == {}

    def test_unknown_event_type_skipped(self, ev):
        future = Event.from_dict({'type': 'priority', 'ts': '2024-01-15T10:00:00Z',
                                  'data': {'id': 'A', 'priority': 1}})
        graph = replay([ev.new_task('A'), future])
        assert graph.get('A').state == 'todo'

    def test_bad_timestamp_fails(self, ev):
        event = Event.from_dict({'type': 'state', 'ts': 'garbage',
                                 'data': {'id': 'A', 'state': 'done'}})
        with pytest.raises(EventPayloadError):
            replay([ev.new_task('A'), event])


class TestFields:
    """Test field edits and results."""

    def test_edits_bump_updated_at(self, ev):
        graph = replay([
            ev.new_task('A'),
            ev.title('A', 'Renamed'),
            ev.body('A', 'New body'),
            ev.worker('A', 'human'),
        ])
        task = graph.get('A')
        assert task.title == 'Renamed'
        assert task.body == 'New body'
        assert task.worker == 'human'
        assert task.updated_at > task.created_at

    def test_epic_assignment_and_removal(self, ev):
        graph = replay([ev.new_epic('E'), ev.new_task('A'), ev.epic('A', 'E')])
        assert graph.get('A').epic_id == 'E'
        assert [t.id for t in graph.epic_tasks('E')] == ['A']

        graph = replay([ev.new_epic('E'), ev.new_task('A', epic_id='E'), ev.epic('A', '')])
        assert graph.get('A').epic_id is None

    def test_results_newest_first(self, ev):
        graph = replay([
            ev.new_task('A'),
            ev.result('A', summary='first'),
            ev.result('A', summary='second', commit='c0ffee'),
        ])
        results = graph.get('A').results
        assert [r.summary for r in results] == ['second', 'first']
        assert results[0].git_commit_at_attach == 'c0ffee'
        assert results[1].git_commit_at_attach is None
        assert graph.get('A').updated_at == results[0].created_at


class TestLinks:
    """Test dependency edges."""

    def test_link_and_reverse_index(self, ev):
        graph = replay([ev.new_task('A'), ev.new_task('B'), ev.link('B', 'A')])
        assert graph.get('B').deps == ['A']
        assert graph.get('A').rdeps == ['B']

    def test_unlink(self, ev):
        graph = replay([ev.new_task('A'), ev.new_task('B'), ev.link('B', 'A'), ev.unlink('B', 'A')])
        assert graph.edges() == []
        assert graph.get('B').deps == []

    def test_dangling_edge_dropped(self, ev):
        graph = replay([ev.new_task('A'), ev.link('A', 'GHOST')])
        assert graph.edges() == []

    def test_other_link_types_ignored(self, ev):
        event = Event.from_dict({'type': 'link', 'ts': '2024-01-15T10:00:00Z',
                                 'data': {'from_id': 'B', 'to_id': 'A', 'type': 'relates'}})
        graph = replay([ev.new_task('A'), ev.new_task('B'), event])
        assert graph.edges() == []


class TestTombstones:
    """Test that pruning is permanent."""

    def test_tombstone_removes_entity_and_edges(self, ev):
        graph = replay([
            ev.new_task('A'),
            ev.new_task('B'),
            ev.link('B', 'A'),
            ev.tombstone('A'),
        ])
        assert graph.get('A') is None
        assert graph.is_pruned('A')
        assert graph.get('B').deps == []
        assert graph.edges() == []

    def test_events_after_tombstone_ignored(self, ev):
        graph = replay([
            ev.new_task('A'),
            ev.tombstone('A'),
            ev.state('A', 'doing'),
            ev.new_task('A', title='Resurrected'),
            ev.new_task('B'),
            ev.link('B', 'A'),
        ])
        assert graph.get('A') is None
        assert graph.edges() == []

    def test_tombstone_before_creation_wins(self, ev):
        graph = replay([ev.tombstone('A'), ev.new_task('A')])
        assert graph.get('A') is None
        assert graph.id_taken('A')


class TestLegacyTitles:
    """Test deriving titles for entries written before titles existed."""

    def test_title_from_body_skips_headings(self):
        title, body = title_from_body("# Heading\n\nFirst line\nrest\nmore")
        assert title == 'First line'
        assert body == 'rest\nmore'

    def test_bare_hash_line_is_a_title(self):
        title, body = title_from_body("#\nnext")
        assert title == '#'
        assert body == 'next'

    def test_empty_body(self):
        assert title_from_body('') == (UNTITLED, '')
        assert title_from_body('  \n ') == (UNTITLED, '')

    def test_only_headings(self):
        assert title_from_body('# One\n## Two') == (UNTITLED, '# One\n## Two')

    def test_replay_migrates(self, ev):
        graph = replay([ev.new_task('A', title='', body='Fix the thing\nsteps here')])
        task = graph.get('A')
        assert task.title == 'Fix the thing'
        assert task.body == 'steps here'

    def test_migration_idempotent(self, ev):
        graph = replay([ev.new_task('A', title='', body='Fix the thing\nsteps here')])
        migrate_legacy_titles(graph)
        task = graph.get('A')
        assert task.title == 'Fix the thing'
        assert task.body == 'steps here'


class TestDeterminism:
    """Replaying the same events twice gives equal graphs."""

    def test_equal_graphs(self, ev):
        events = [
            ev.new_epic('E'),
            ev.new_task('A', epic_id='E'),
            ev.new_task('B'),
            ev.link('B', 'A'),
            ev.claim('A', 'bot'),
            ev.state('A', 'doing'),
            ev.result('A'),
        ]
        first = replay(events)
        second = replay(events)
        assert first.tasks == second.tasks
        assert first.edges() == second.edges()
