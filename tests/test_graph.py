"""
Tests for cycle detection, readiness, and listing.
"""

import random

from ergo.graph import (
    epic_deps_complete,
    has_cycle,
    is_blocked,
    is_epic_complete,
    is_ready,
    list_tasks,
    ready_tasks,
    topo_sort_tasks,
)
from ergo.model import Graph
from ergo.replay import replay


class TestHasCycle:
    """Test cycle detection for a proposed edge."""

    def test_self_edge(self):
        assert has_cycle(Graph(), 'A', 'A')

    def test_direct_back_edge(self):
        graph = Graph()
        graph.add_edge('B', 'A')
        assert has_cycle(graph, 'A', 'B')
        assert not has_cycle(graph, 'C', 'B')

    def test_transitive(self):
        graph = Graph()
        graph.add_edge('C', 'B')
        graph.add_edge('B', 'A')
        assert has_cycle(graph, 'A', 'C')

    def test_diamond_is_not_a_cycle(self):
        graph = Graph()
        graph.add_edge('D', 'B')
        graph.add_edge('D', 'C')
        graph.add_edge('B', 'A')
        graph.add_edge('C', 'A')
        assert not has_cycle(graph, 'D', 'A')
        assert has_cycle(graph, 'A', 'D')


class TestReadiness:
    """Test the ready and blocked predicates."""

    def test_plain_todo_is_ready(self, ev):
        graph = replay([ev.new_task('A')])
        assert is_ready(graph.get('A'), graph)
        assert not is_blocked(graph.get('A'), graph)

    def test_open_dependency_blocks(self, ev):
        graph = replay([ev.new_task('A'), ev.new_task('B'), ev.link('B', 'A')])
        assert not is_ready(graph.get('B'), graph)
        assert is_blocked(graph.get('B'), graph)

    def test_closed_dependency_unblocks(self, ev):
        for final in ('done', 'canceled'):
            graph = replay([ev.new_task('A'), ev.new_task('B'), ev.link('B', 'A'), ev.state('A', final)])
            assert is_ready(graph.get('B'), graph)

    def test_claimed_is_neither(self, ev):
        graph = replay([ev.new_task('A'), ev.claim('A', 'bot')])
        assert not is_ready(graph.get('A'), graph)
        assert not is_blocked(graph.get('A'), graph)

    def test_explicit_blocked(self, ev):
        graph = replay([ev.new_task('A'), ev.state('A', 'blocked')])
        assert is_blocked(graph.get('A'), graph)
        assert not is_ready(graph.get('A'), graph)

    def test_epics_never_ready(self, ev):
        graph = replay([ev.new_epic('E')])
        assert not is_ready(graph.get('E'), graph)
        assert not is_blocked(graph.get('E'), graph)
        assert not is_ready(None, graph)

    def test_epic_dependency_gates_tasks(self, ev):
        events = [
            ev.new_epic('E1'),
            ev.new_epic('E2'),
            ev.new_task('A', epic_id='E1'),
            ev.new_task('B', epic_id='E2'),
            ev.link('E2', 'E1'),
        ]
        graph = replay(events)
        assert not is_epic_complete(graph, 'E1')
        assert not epic_deps_complete(graph, 'E2')
        assert is_blocked(graph.get('B'), graph)
        assert is_ready(graph.get('A'), graph)

        graph = replay(events + [ev.state('A', 'done')])
        assert is_epic_complete(graph, 'E1')
        assert is_ready(graph.get('B'), graph)

    def test_empty_epic_is_complete(self, ev):
        graph = replay([ev.new_epic('E1'), ev.new_epic('E2'), ev.new_task('B', epic_id='E2'),
                        ev.link('E2', 'E1')])
        assert is_epic_complete(graph, 'E1')
        assert is_ready(graph.get('B'), graph)

    def test_ready_and_blocked_exclusive(self, ev):
        """No task is ever both ready and blocked, whatever the graph looks like."""
        rng = random.Random(7)
        ids = [f'T{i}' for i in range(12)]
        events = [ev.new_epic('E1'), ev.new_epic('E2'), ev.link('E2', 'E1')]
        for task_id in ids:
            events.append(ev.new_task(task_id, epic_id=rng.choice(['', 'E1', 'E2'])))
        for _ in range(20):
            a, b = rng.sample(ids, 2)
            events.append(ev.link(a, b))
        for task_id in ids:
            choice = rng.choice(['todo', 'doing', 'done', 'blocked', 'canceled'])
            if choice in ('doing', 'blocked'):
                events.append(ev.claim(task_id, 'bot'))
            events.append(ev.state(task_id, choice))
        graph = replay(events)
        for task in graph.tasks.values():
            assert not (is_ready(task, graph) and is_blocked(task, graph))


class TestListing:
    """Test listing, filters and ordering."""

    def test_default_lists_ready_and_blocked(self, ev):
        graph = replay([
            ev.new_task('C'),
            ev.new_task('B'),
            ev.link('B', 'C'),
            ev.new_task('A'),
            ev.state('A', 'done'),
        ])
        assert [t.id for t in list_tasks(graph)] == ['B', 'C']
        assert [t.id for t in list_tasks(graph, ready_only=True)] == ['C']
        assert [t.id for t in list_tasks(graph, blocked_only=True)] == ['B']
        assert [t.id for t in list_tasks(graph, include_all=True)] == ['A', 'B', 'C']

    def test_epic_and_worker_filters(self, ev):
        graph = replay([
            ev.new_epic('E'),
            ev.new_task('A', epic_id='E', worker='human'),
            ev.new_task('B', epic_id='E', worker='agent'),
            ev.new_task('C'),
        ])
        assert [t.id for t in list_tasks(graph, epic_id='E')] == ['A', 'B']
        assert [t.id for t in list_tasks(graph, as_worker='agent')] == ['B', 'C']

    def test_ready_tasks_oldest_first(self, ev):
        graph = replay([ev.new_task('Z'), ev.new_task('A')])
        assert [t.id for t in ready_tasks(graph)] == ['Z', 'A']

    def test_topo_sort_puts_dependencies_first(self, ev):
        graph = replay([
            ev.new_task('A'),
            ev.new_task('B'),
            ev.new_task('C'),
            ev.link('A', 'C'),
            ev.link('B', 'A'),
        ])
        ordered = topo_sort_tasks(graph.tasks.values(), graph)
        assert [t.id for t in ordered] == ['C', 'A', 'B']

    def test_topo_sort_survives_cycles(self, ev):
        graph = replay([ev.new_task('A'), ev.new_task('B'), ev.link('A', 'B'), ev.link('B', 'A'),
                        ev.new_task('C')])
        ordered = topo_sort_tasks(graph.tasks.values(), graph)
        assert [t.id for t in ordered] == ['C', 'A', 'B']
