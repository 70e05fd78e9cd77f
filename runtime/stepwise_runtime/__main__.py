"""
Command-line host for the stepwise interpreter.

Programs are AST files in dict/JSON form. Paused states go to a snapshot
store and are resumed by handle:

    python -m stepwise_runtime run program.json
    python -m stepwise_runtime step program.json --steps 8 --store ./snaps
    python -m stepwise_runtime resume &h_snap_... --store ./snaps
    python -m stepwise_runtime demo
"""

import argparse
import json
import logging
import sys

from .stepwise_ast import StepwiseError, node_from_dict, count_nodes
from .stepwise_runtime import Interpreter, run_demo
from .st_codec import STError, encode_st
from .snapshot_store import DEFAULT_STORE_PATH, SnapshotStore


logger = logging.getLogger("stepwise_runtime")


def load_program(path: str):
    """Read a program file (AST in dict form)."""
    with open(path, 'r', encoding='utf-8') as f:
        data = json.load(f)
    ast = node_from_dict(data)
    logger.info("Loaded %s (%d nodes)", path, count_nodes(ast))
    return ast


def advance(interp: Interpreter, steps) -> bool:
    """Run `steps` steps (all remaining if None); True while not halted."""
    if steps is None:
        interp.run()
        return False
    for _ in range(steps):
        if not interp.step():
            return False
    return not interp.halted


def cmd_run(args) -> int:
    interp = Interpreter(load_program(args.program))
    result = interp.run()
    if args.result:
        print(f"Result: {result}")
    return 0


def cmd_step(args) -> int:
    interp = Interpreter(load_program(args.program))
    running = advance(interp, args.steps)
    with SnapshotStore(args.store) as store:
        handle = store.add_snapshot(interp, label=args.label)
    print(handle)
    if not running:
        print(f"Halted. Result: {interp.result}", file=sys.stderr)
    return 0


def cmd_resume(args) -> int:
    with SnapshotStore(args.store) as store:
        interp = store.load(args.handle)
        running = advance(interp, args.steps)
        if args.save:
            print(store.add_snapshot(interp, label=args.label))
    if not running and args.result:
        print(f"Result: {interp.result}")
    return 0


def cmd_show(args) -> int:
    with SnapshotStore(args.store) as store:
        data = store.get(args.handle)
    if args.format == 'json':
        print(json.dumps(data, indent=2))
    else:
        print(encode_st(data))
    return 0


def cmd_list(args) -> int:
    with SnapshotStore(args.store) as store:
        rows = store.query(label=args.label, halted=args.halted)
    for row in rows:
        state = "halted" if row["halted"] else "paused"
        print(f"{row['handle']}  {row['label']}  depth={row['depth']}  {state}")
    return 0


def cmd_demo(args) -> int:
    result = run_demo()
    print(f"Result: {result}")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="stepwise",
        description="Pausable small-step interpreter: run, pause, persist and resume programs."
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Log every evaluation step.")
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("run", help="Run a program to completion.")
    p.add_argument("program", type=str, help="Path to the program JSON file.")
    p.add_argument("--result", action="store_true", help="Print the final root value.")
    p.set_defaults(func=cmd_run)

    store_help = f"Snapshot store directory (default: {DEFAULT_STORE_PATH})."

    p = sub.add_parser("step", help="Run some steps, then persist the paused state.")
    p.add_argument("program", type=str, help="Path to the program JSON file.")
    p.add_argument("--steps", type=int, required=True, help="Number of steps to run.")
    p.add_argument("--store", type=str, default=str(DEFAULT_STORE_PATH), help=store_help)
    p.add_argument("--label", type=str, default="unnamed", help="Snapshot label.")
    p.set_defaults(func=cmd_step)

    p = sub.add_parser("resume", help="Resume a stored snapshot.")
    p.add_argument("handle", type=str, help="Snapshot handle (&h_snap_...).")
    p.add_argument("--store", type=str, default=str(DEFAULT_STORE_PATH), help=store_help)
    p.add_argument("--steps", type=int, default=None, help="Steps to run (default: to completion).")
    p.add_argument("--save", action="store_true", help="Persist the state reached.")
    p.add_argument("--label", type=str, default="unnamed", help="Label for --save.")
    p.add_argument("--result", action="store_true", help="Print the final root value.")
    p.set_defaults(func=cmd_resume)

    p = sub.add_parser("show", help="Print a stored state.")
    p.add_argument("handle", type=str, help="Snapshot handle (&h_snap_...).")
    p.add_argument("--store", type=str, default=str(DEFAULT_STORE_PATH), help=store_help)
    p.add_argument("--format", choices=["st", "json"], default="st", help="Output format.")
    p.set_defaults(func=cmd_show)

    p = sub.add_parser("list", help="List stored snapshots.")
    p.add_argument("--store", type=str, default=str(DEFAULT_STORE_PATH), help=store_help)
    p.add_argument("--label", type=str, default=None, help="Filter by label substring.")
    halted = p.add_mutually_exclusive_group()
    halted.add_argument("--halted", dest="halted", action="store_const", const=True, default=None)
    halted.add_argument("--paused", dest="halted", action="store_const", const=False)
    p.set_defaults(func=cmd_list)

    p = sub.add_parser("demo", help="Pause after the first print, resume from text.")
    p.set_defaults(func=cmd_demo)

    return parser


def main(argv=None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="[%(levelname)s] %(name)s: %(message)s",
    )

    if getattr(args, "steps", None) is not None and args.steps < 0:
        print("Error: --steps must be non-negative.", file=sys.stderr)
        return 1

    try:
        return args.func(args)
    except FileNotFoundError as e:
        print(f"Error: File '{e.filename}' not found.", file=sys.stderr)
    except (StepwiseError, STError) as e:
        print(f"Error: {e}", file=sys.stderr)
    except KeyError as e:
        print(f"Error: {e.args[0]}", file=sys.stderr)
    except (ValueError, OSError) as e:
        print(f"Error: {e}", file=sys.stderr)
    return 1


if __name__ == "__main__":
    sys.exit(main())
