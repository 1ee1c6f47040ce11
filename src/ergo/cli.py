#!/usr/bin/env python3
"""
Ergo CLI - a shared task backlog for agents and humans.

Usage:
    ergo init                         # Create .ergo/ in the current directory
    ergo new task --title "Do X"      # Create a task (or pipe JSON to stdin)
    ergo new epic --title "Release"   # Create an epic
    ergo plan < plan.json             # Create an epic with ordered tasks
    ergo list                         # Show ready and blocked work
    ergo claim --agent bot-1          # Claim the oldest ready task
    ergo set ABC123 --state done      # Update a task (or pipe JSON to stdin)
    ergo sequence A B C               # B waits on A, C waits on B
    ergo prune --yes                  # Forget closed work
    ergo compact                      # Rewrite the log minimally
"""

import argparse
import json
import logging
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from ergo import __version__
from ergo.colors import Colors, colorize, state_str
from ergo.errors import LockBusyError, NoReadyWorkError, ValidationError
from ergo.evidence import file_url
from ergo.graph import is_blocked, is_ready, list_epics, list_tasks, topo_sort_tasks
from ergo.inputs import PlanInput, TaskInput
from ergo.model import WORKERS, Graph, Task, format_time
from ergo.storage import resolve_ergo_dir
from ergo.store import Store, require_live

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_LOCK_BUSY = 75  # EX_TEMPFAIL: try again later
EXIT_INTERRUPTED = 130


@dataclass
class GlobalOptions:
    """Flags shared by every command."""

    start_dir: Optional[Path] = None
    agent_id: Optional[str] = None
    as_worker: Optional[str] = None
    json: bool = False
    quiet: bool = False
    verbose: bool = False

    @classmethod
    def from_args(cls, args) -> 'GlobalOptions':
        return cls(
            start_dir=Path(args.dir) if args.dir else None,
            agent_id=args.agent,
            as_worker=args.as_worker,
            json=args.json,
            quiet=args.quiet,
            verbose=args.verbose,
        )


def ergo_dir(opts: GlobalOptions) -> Path:
    """Resolve the data directory: --dir is authoritative, else walk upward."""
    return resolve_ergo_dir(opts.start_dir)


def open_store(opts: GlobalOptions) -> Store:
    return Store(ergo_dir(opts), agent_id=opts.agent_id)


# ============================================================================
# Formatting Helpers
# ============================================================================

def _fmt(value) -> str:
    return format_time(value) if value else ''


def _print_json(data) -> None:
    print(json.dumps(data, indent=2, ensure_ascii=False))


def task_list_item(task: Task, graph: Graph) -> dict:
    return {
        'id': task.id,
        'kind': task.kind,
        'epic_id': task.epic_id or '',
        'state': task.state or '',
        'claimed_by': task.claimed_by or '',
        'title': task.title,
        'worker': task.worker or '',
        'ready': is_ready(task, graph),
        'blocked': is_blocked(task, graph),
        'has_results': bool(task.results),
    }


def task_document(task: Task, repo_dir: Path) -> dict:
    return {
        'id': task.id,
        'uuid': task.uuid,
        'title': task.title,
        'kind': task.kind,
        'epic_id': task.epic_id or '',
        'state': task.state or '',
        'worker': task.worker or '',
        'claimed_by': task.claimed_by or '',
        'claimed_at': _fmt(task.claimed_at),
        'created_at': _fmt(task.created_at),
        'updated_at': _fmt(task.updated_at),
        'deps': list(task.deps),
        'rdeps': list(task.rdeps),
        'body': task.body,
        'results': [
            {
                'summary': r.summary,
                'path': r.path,
                'file_url': file_url(repo_dir, r.path),
                'sha256_at_attach': r.sha256_at_attach,
                'mtime_at_attach': _fmt(r.mtime_at_attach),
                'git_commit_at_attach': r.git_commit_at_attach or '',
                'created_at': _fmt(r.created_at),
            }
            for r in task.results
        ],
    }


def _format_task_short(task: Task) -> str:
    if task.is_epic:
        return f"{Colors.EPIC_ICON} {colorize(task.id, Colors.BOLD)} {task.title}"
    line = f"{Colors.state_icon(task.state)} {colorize(task.id, Colors.BOLD)} {task.title}"
    if task.claimed_by:
        line += colorize(f"  @{task.claimed_by}", Colors.DIM)
    return line


def _read_stdin() -> Optional[str]:
    """Piped stdin, or None when attached to a terminal."""
    if sys.stdin is None or sys.stdin.isatty():
        return None
    return sys.stdin.read()


def _input_from_flags(args) -> Optional[TaskInput]:
    values = {
        'title': getattr(args, 'title', None),
        'body': getattr(args, 'body', None),
        'epic': getattr(args, 'epic', None),
        'worker': getattr(args, 'worker', None),
        'state': getattr(args, 'state', None),
        'claim': getattr(args, 'claim', None),
        'result_path': getattr(args, 'result_path', None),
        'result_summary': getattr(args, 'result_summary', None),
    }
    if all(v is None for v in values.values()):
        return None
    return TaskInput(**values)


def _task_input(args) -> TaskInput:
    flagged = _input_from_flags(args)
    if flagged is not None:
        return flagged
    return TaskInput.from_json(_read_stdin())


# ============================================================================
# Commands
# ============================================================================

def cmd_init(args, opts):
    """Create .ergo/ in the given directory."""
    target = Path(args.path) if args.path else Path.cwd()
    store = Store.init(target)
    if opts.json:
        _print_json({'ergo_dir': str(store.ergo_dir)})
    elif not opts.quiet:
        print(f"✓ Initialized {store.ergo_dir}")


def cmd_where(args, store, opts):
    """Print the resolved data directory."""
    if opts.json:
        _print_json({'ergo_dir': str(store.ergo_dir), 'repo_dir': str(store.repo_dir)})
    else:
        print(store.ergo_dir)


def cmd_new(args, store, opts):
    """Create a task or an epic."""
    is_epic = args.kind == 'epic'
    task_input = _task_input(args)
    task_input.validate_for_new(is_epic=is_epic)

    if is_epic:
        task = store.create_epic(task_input.title, task_input.body or '')
    else:
        task = store.create_task(
            task_input.title,
            task_input.body or '',
            epic_id=task_input.epic or None,
            worker=task_input.worker,
            state=task_input.state,
            claim=task_input.claim,
            result_path=task_input.result_path,
            result_summary=task_input.result_summary,
        )

    if opts.json:
        _print_json(task_document(task, store.repo_dir))
    elif opts.quiet:
        print(task.id)
    else:
        print(f"✓ Created {task.kind} {_format_task_short(task)}")


def cmd_plan(args, store, opts):
    """Create an epic and its ordered tasks from one JSON payload."""
    plan = PlanInput.from_json(_read_stdin())
    outcome = store.plan(plan)
    if opts.json:
        _print_json({
            'epic': task_document(outcome.epic, store.repo_dir),
            'tasks': [task_document(t, store.repo_dir) for t in outcome.tasks],
            'edges': [{'from_id': src, 'to_id': dst} for src, dst in outcome.edges],
        })
    elif opts.quiet:
        print(outcome.epic.id)
    else:
        print(f"✓ Planned {_format_task_short(outcome.epic)}")
        for task in outcome.tasks:
            print(f"  {_format_task_short(task)}")
        if outcome.edges:
            print(f"  {len(outcome.edges)} dependency link(s)")


def cmd_set(args, store, opts):
    """Update a task or epic."""
    task_input = _task_input(args)
    task_input.validate_for_set()
    task = store.update(args.task_id, task_input.to_update())
    if opts.json:
        _print_json(task_document(task, store.repo_dir))
    elif not opts.quiet:
        print(f"✓ Updated {_format_task_short(task)}")


def cmd_claim(args, store, opts):
    """Claim a specific task, or the oldest ready one."""
    if args.task_id:
        task = store.claim(args.task_id)
    else:
        task = store.claim_next(epic_id=args.epic, as_worker=opts.as_worker)
    if opts.json:
        _print_json(task_document(task, store.repo_dir))
    elif opts.quiet:
        print(task.id)
    else:
        print(f"✓ Claimed {_format_task_short(task)}")
        if task.body:
            print(f"  {task.body.splitlines()[0][:100]}")


def _print_tree(graph: Graph, tasks: list) -> None:
    by_epic = {}
    for task in tasks:
        by_epic.setdefault(task.epic_id, []).append(task)

    epic_ids = sorted(e for e in by_epic if e)
    for epic_id in epic_ids:
        epic = graph.get(epic_id)
        if epic is not None:
            print(_format_task_short(epic))
        else:
            print(colorize(f"{Colors.EPIC_ICON} {epic_id} (missing epic)", Colors.DIM))
        for task in topo_sort_tasks(by_epic[epic_id], graph):
            print(f"  {_format_task_short(task)}")
    for task in topo_sort_tasks(by_epic.get(None, []), graph):
        print(_format_task_short(task))


def cmd_list(args, store, opts):
    """List tasks (ready and blocked by default) or epics."""
    graph = store.load_graph()
    if args.epics:
        epics = list_epics(graph)
        if opts.json:
            _print_json([task_list_item(e, graph) for e in epics])
        elif not epics:
            print("No epics")
        else:
            for epic in epics:
                count = len(graph.epic_tasks(epic.id))
                print(f"{_format_task_short(epic)}  {colorize(f'({count} tasks)', Colors.DIM)}")
        return

    tasks = list_tasks(
        graph,
        epic_id=args.epic,
        ready_only=args.ready,
        blocked_only=args.blocked,
        include_all=args.all,
        as_worker=opts.as_worker,
    )
    if opts.json:
        _print_json([task_list_item(t, graph) for t in tasks])
        return
    if not tasks:
        print("No tasks found")
        return
    _print_tree(graph, tasks)
    ready = sum(1 for t in tasks if is_ready(t, graph))
    print(f"\n{len(tasks)} task(s), {ready} ready")


def cmd_show(args, store, opts):
    """Show one task or epic."""
    graph = store.load_graph()
    task = require_live(graph, args.task_id)
    if opts.json:
        _print_json(task_document(task, store.repo_dir))
        return
    if args.short:
        print(_format_task_short(task))
        return

    print(f"\n{task.id}: \"{task.title}\"")
    print("━" * 50)
    if not task.is_epic:
        status_line = f"State:       {state_str(task.state)}"
        if task.claimed_by:
            status_line += f" (claimed by {task.claimed_by})"
        print(status_line)
        print(f"Worker:      {task.worker}")
        if task.epic_id:
            print(f"Epic:        {task.epic_id}")
        if is_ready(task, graph):
            print("Ready:       yes")
        elif is_blocked(task, graph):
            print("Blocked:     yes")
    else:
        members = graph.epic_tasks(task.id)
        done = sum(1 for t in members if t.state in ('done', 'canceled'))
        print(f"Tasks:       {done}/{len(members)} closed")
    if task.deps:
        print(f"Depends on:  {', '.join(task.deps)}")
    if task.rdeps:
        print(f"Blocks:      {', '.join(task.rdeps)}")
    print(f"Created:     {_fmt(task.created_at)}")
    print(f"Updated:     {_fmt(task.updated_at)}")

    if task.body:
        print("\nBody:")
        for line in task.body.split('\n'):
            print(f"  {line}")

    if task.results:
        print(f"\nResults ({len(task.results)}):")
        for result in task.results:
            print(f"  • {result.summary}")
            print(f"    {file_url(store.repo_dir, result.path)}")
    print()


def cmd_sequence(args, store, opts):
    """Chain items in order, or remove one link with `sequence rm A B`."""
    ids = args.ids
    if ids and ids[0] == 'rm':
        if len(ids) != 3:
            raise ValidationError('validation_failed', 'usage: ergo sequence rm <A> <B>')
        store.unsequence(ids[1], ids[2])
        if opts.json:
            _print_json({'removed': [{'from_id': ids[2], 'to_id': ids[1]}]})
        elif not opts.quiet:
            print(f"✓ {ids[2]} no longer waits on {ids[1]}")
        return

    edges = store.sequence(ids)
    if opts.json:
        _print_json({'added': [{'from_id': src, 'to_id': dst} for src, dst in edges]})
    elif not opts.quiet:
        print(f"✓ Sequenced {' → '.join(ids)}")


def cmd_compact(args, store, opts):
    """Rewrite the event log minimally."""
    stats = store.compact()
    if opts.json:
        _print_json(stats)
    elif not opts.quiet:
        print(f"✓ Compacted {stats['events_before']} → {stats['events_after']} events")


def cmd_prune(args, store, opts):
    """Tombstone closed work. Dry run unless --yes."""
    plan = store.prune(dry_run=not args.yes)
    if opts.json:
        _print_json(plan.to_dict())
        return
    if plan.empty:
        print("Nothing to prune")
        return
    verb = "Would prune" if plan.dry_run else "✓ Pruned"
    print(f"{verb} {len(plan.ids)} item(s):")
    for item in plan.items:
        label = 'epic' if item.is_epic else item.state
        print(f"  {item.id}  [{label}] {item.title}")
    if plan.dry_run:
        print("\nRun 'ergo prune --yes' to apply")


# ============================================================================
# Entry point
# ============================================================================

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='ergo',
        description='Ergo - a shared task backlog for agents and humans',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog='''
Examples:
  ergo init                          Initialize in current directory
  ergo new task --title "Fix bug"    Create a task
  ergo claim --agent bot-1           Claim the next ready task
  ergo set ABC123 --state done       Mark a task done
  ergo prune --yes                   Tombstone closed work
''',
    )
    parser.add_argument('--version', action='version', version=f'ergo {__version__}')
    parser.add_argument('--dir', help='Path to the .ergo directory or a directory below it')
    parser.add_argument('--agent', help='Agent id used for claims')
    parser.add_argument('--as', dest='as_worker', choices=WORKERS,
                        help='Only see tasks for this kind of worker')
    parser.add_argument('--json', action='store_true', help='Output in JSON format')
    parser.add_argument('--quiet', '-q', action='store_true', help='Minimal output')
    parser.add_argument('--verbose', '-v', action='store_true', help='Verbose output')

    subparsers = parser.add_subparsers(dest='command')

    init_p = subparsers.add_parser('init', help='Create .ergo/ in a directory')
    init_p.add_argument('path', nargs='?', help='Directory to initialize (default: current dir)')

    subparsers.add_parser('where', help='Print the .ergo directory in use')

    new_p = subparsers.add_parser('new', help='Create a task or epic')
    new_p.add_argument('kind', choices=['task', 'epic'])
    new_p.add_argument('--title', '-t')
    new_p.add_argument('--body', '-b')
    new_p.add_argument('--epic', '-e', help='Epic to put the task in')
    new_p.add_argument('--worker', '-w', help='any, agent, or human')

    subparsers.add_parser('plan', help='Create an epic with tasks from JSON on stdin')

    set_p = subparsers.add_parser('set', help='Update a task or epic')
    set_p.add_argument('task_id')
    set_p.add_argument('--title', '-t')
    set_p.add_argument('--body', '-b')
    set_p.add_argument('--epic', '-e', help='Epic id, or "" to unassign')
    set_p.add_argument('--worker', '-w')
    set_p.add_argument('--state', '-s')
    set_p.add_argument('--claim', '-c', help='Agent id, or "" to unclaim')
    set_p.add_argument('--result-path', dest='result_path')
    set_p.add_argument('--result-summary', dest='result_summary')

    claim_p = subparsers.add_parser('claim', help='Claim a task (default: oldest ready)')
    claim_p.add_argument('task_id', nargs='?')
    claim_p.add_argument('--epic', '-e', help='Only claim from this epic')

    list_p = subparsers.add_parser('list', help='List tasks')
    filters = list_p.add_mutually_exclusive_group()
    filters.add_argument('--ready', action='store_true', help='Only ready tasks')
    filters.add_argument('--blocked', action='store_true', help='Only blocked tasks')
    filters.add_argument('--epics', action='store_true', help='List epics instead')
    filters.add_argument('--all', action='store_true', help='Include tasks in every state')
    list_p.add_argument('--epic', '-e', help='Only tasks in this epic')

    show_p = subparsers.add_parser('show', help='Show a task or epic')
    show_p.add_argument('task_id')
    show_p.add_argument('--short', action='store_true', help='One line only')

    seq_p = subparsers.add_parser('sequence', help='Chain items: each waits on the previous')
    seq_p.add_argument('ids', nargs='+', metavar='id', help='Ids in order, or: rm A B')

    subparsers.add_parser('compact', help='Rewrite the event log minimally')

    prune_p = subparsers.add_parser('prune', help='Tombstone closed tasks and finished epics')
    prune_p.add_argument('--yes', '-y', action='store_true', help='Apply (default is a dry run)')

    return parser


COMMANDS = {
    'where': cmd_where,
    'new': cmd_new,
    'plan': cmd_plan,
    'set': cmd_set,
    'claim': cmd_claim,
    'list': cmd_list,
    'show': cmd_show,
    'sequence': cmd_sequence,
    'compact': cmd_compact,
    'prune': cmd_prune,
}


def _fail(message: str, opts: GlobalOptions) -> None:
    print(f"✗ {message}", file=sys.stderr)
    if opts.verbose:
        import traceback
        traceback.print_exc()


def run(argv=None) -> int:
    """Parse arguments, run one command, and return the exit code."""
    parser = build_parser()
    args = parser.parse_args(argv)
    opts = GlobalOptions.from_args(args)

    logging.basicConfig(
        level=logging.DEBUG if opts.verbose else logging.WARNING,
        format='%(asctime)s [%(levelname)s] %(message)s',
        datefmt='%H:%M:%S',
        stream=sys.stderr,
    )

    if args.command is None:
        parser.print_help()
        return EXIT_OK

    try:
        if args.command == 'init':
            cmd_init(args, opts)
        else:
            COMMANDS[args.command](args, open_store(opts), opts)
        return EXIT_OK
    except KeyboardInterrupt:
        print("\nInterrupted", file=sys.stderr)
        return EXIT_INTERRUPTED
    except NoReadyWorkError:
        if opts.json:
            _print_json({'status': 'no_ready'})
        elif not opts.quiet:
            print("No ready tasks", file=sys.stderr)
        return EXIT_OK
    except LockBusyError as e:
        _fail(f"{e} (try again)", opts)
        return EXIT_LOCK_BUSY
    except ValidationError as e:
        if opts.json:
            _print_json(e.to_dict())
            return EXIT_ERROR
        _fail(str(e), opts)
        return EXIT_ERROR
    except RuntimeError as e:
        _fail(str(e), opts)
        return EXIT_ERROR
    except OSError as e:
        _fail(f"I/O error: {e}", opts)
        return EXIT_ERROR


def main():
    sys.exit(run())


if __name__ == '__main__':
    main()
