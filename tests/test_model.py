"""
Tests for the core domain rules in ergo.model.
"""

from datetime import datetime, timezone

import pytest

from ergo.errors import ClaimInvariantError, InvalidTransitionError
from ergo.model import (
    Event,
    Graph,
    check_claim_invariant,
    check_transition,
    format_time,
    new_short_id,
    parse_time,
    parse_worker,
    worker_allowed,
)


class TestTransitions:
    """Test the state machine."""

    @pytest.mark.parametrize('from_state,to_state', [
        ('todo', 'doing'),
        ('todo', 'canceled'),
        ('doing', 'error'),
        ('blocked', 'done'),
        ('done', 'todo'),
        ('canceled', 'todo'),
        ('error', 'doing'),
    ])
    def test_allowed(self, from_state, to_state):
        check_transition(from_state, to_state)

    @pytest.mark.parametrize('from_state,to_state', [
        ('todo', 'error'),
        ('done', 'doing'),
        ('canceled', 'done'),
        ('error', 'done'),
        ('blocked', 'error'),
    ])
    def test_rejected(self, from_state, to_state):
        with pytest.raises(InvalidTransitionError) as exc:
            check_transition(from_state, to_state)
        assert f"{from_state} -> {to_state}" in str(exc.value)

    def test_same_state_is_allowed(self):
        """Re-asserting the current state is never an error."""
        check_transition('done', 'done')


class TestClaimInvariant:
    """Test the claim/state compatibility rules."""

    def test_doing_requires_claim(self):
        with pytest.raises(ClaimInvariantError):
            check_claim_invariant('doing', None)
        check_claim_invariant('doing', 'agent-1')

    def test_error_requires_claim(self):
        with pytest.raises(ClaimInvariantError):
            check_claim_invariant('error', '')

    @pytest.mark.parametrize('state', ['todo', 'done', 'canceled'])
    def test_clearing_states_forbid_claim(self, state):
        with pytest.raises(ClaimInvariantError):
            check_claim_invariant(state, 'agent-1')
        check_claim_invariant(state, None)

    def test_blocked_accepts_either(self):
        check_claim_invariant('blocked', None)
        check_claim_invariant('blocked', 'agent-1')


class TestWorkers:
    """Test worker parsing and affinity."""

    def test_parse_defaults_to_any(self):
        assert parse_worker(None) == 'any'
        assert parse_worker('') == 'any'
        assert parse_worker(' Agent ') == 'agent'

    def test_parse_rejects_unknown(self):
        with pytest.raises(ValueError):
            parse_worker('robot')

    def test_affinity(self):
        assert worker_allowed('any', 'agent')
        assert worker_allowed('agent', 'agent')
        assert not worker_allowed('human', 'agent')
        assert worker_allowed('human', None)
        assert worker_allowed('human', 'any')


class TestTimestamps:
    """Test RFC 3339 formatting and parsing."""

    def test_format_whole_seconds(self):
        value = datetime(2024, 1, 15, 10, 0, 0, tzinfo=timezone.utc)
        assert format_time(value) == '2024-01-15T10:00:00Z'

    def test_format_trims_fraction(self):
        value = datetime(2024, 1, 15, 10, 0, 0, 250000, tzinfo=timezone.utc)
        assert format_time(value) == '2024-01-15T10:00:00.25Z'

    def test_parse_nanoseconds_truncated(self):
        parsed = parse_time('2024-01-15T10:00:00.123456789Z')
        assert parsed.microsecond == 123456
        assert parsed.tzinfo == timezone.utc

    def test_parse_offset_normalized_to_utc(self):
        parsed = parse_time('2024-01-15T12:00:00+02:00')
        assert format_time(parsed) == '2024-01-15T10:00:00Z'

    def test_parse_rejects_garbage(self):
        with pytest.raises(ValueError):
            parse_time('yesterday')
        with pytest.raises(ValueError):
            parse_time(12345)

    def test_round_trip_keeps_microseconds(self):
        value = datetime(2024, 3, 1, 8, 30, 15, 1, tzinfo=timezone.utc)
        assert parse_time(format_time(value)) == value


class TestShortIds:
    """Test short ID allocation."""

    def test_shape(self):
        task_id = new_short_id(lambda c: False)
        assert len(task_id) == 6
        assert set(task_id) <= set('ABCDEFGHIJKLMNOPQRSTUVWXYZ234567')

    def test_skips_taken(self):
        seen = []

        def taken(candidate):
            seen.append(candidate)
            return len(seen) < 3

        task_id = new_short_id(taken)
        assert task_id == seen[-1]
        assert len(seen) == 3

    def test_gives_up(self):
        with pytest.raises(RuntimeError):
            new_short_id(lambda c: True)


class TestEvent:
    """Test the log line envelope."""

    def test_to_line_is_compact_json(self):
        when = datetime(2024, 1, 15, 10, 0, 0, tzinfo=timezone.utc)
        event = Event.create('claim', when, {'id': 'ABC123', 'agent_id': 'bot'})
        line = event.to_line()
        assert line.endswith('\n')
        assert line.count('\n') == 1
        assert ' ' not in line
        assert '"type":"claim"' in line

    def test_from_dict_validates_shape(self):
        with pytest.raises(ValueError):
            Event.from_dict(['not', 'an', 'object'])
        with pytest.raises(ValueError):
            Event.from_dict({'ts': '2024-01-15T10:00:00Z'})
        with pytest.raises(ValueError):
            Event.from_dict({'type': 'state', 'data': 'nope'})

    def test_from_dict_missing_data(self):
        event = Event.from_dict({'type': 'future_thing'})
        assert event.data == {}


class TestGraphEdges:
    """Test the dependency index helpers."""

    def test_add_and_remove(self):
        graph = Graph()
        graph.add_edge('A', 'B')
        graph.add_edge('A', 'C')
        assert graph.edges() == [('A', 'B'), ('A', 'C')]
        assert graph.rdeps_of('B') == {'A'}

        graph.remove_edge('A', 'B')
        assert graph.edges() == [('A', 'C')]
        assert 'B' not in graph.rdeps

    def test_remove_missing_edge_is_noop(self):
        graph = Graph()
        graph.remove_edge('X', 'Y')
        assert graph.edges() == []
