"""Command-line entry point.

Usage::

    research-society create <name> --problem problem.md --agents 5
    research-society list
    research-society run <name> --max-cost 10
    research-society run <name> --tick 2
    research-society status <name>
    research-society clean <name> --yes
    research-society models claude
"""

import argparse
import os
import sys
from pathlib import Path
from typing import List, Optional, Tuple

import litellm
from loguru import logger

from . import config
from .content import FileContentStore
from .controller import RunController
from .errors import ResearchError
from .publications import parse_order
from .store import RecordStore
from .types import ListOrder, PublicationStatus, StopReason


def _configure_logging(verbose: bool) -> None:
    logger.remove()
    logger.add(sys.stderr, level="DEBUG" if verbose else "INFO")


def _open_stores() -> Tuple[RecordStore, FileContentStore]:
    return (
        RecordStore(config.database_url()),
        FileContentStore(config.content_dir()),
    )


def _read_text(value: str) -> str:
    """Return the file contents if *value* is a path, else *value*."""
    if os.path.isfile(value):
        with open(value, "r", encoding="utf-8") as f:
            return f.read()
    return value


def cmd_create(args: argparse.Namespace) -> int:
    if args.agents < 1:
        print("--agents must be at least 1", file=sys.stderr)
        return 2
    try:
        config.validate_profile(args.profile)
    except ValueError as e:
        print(str(e), file=sys.stderr)
        return 2
    problem = _read_text(args.problem)
    if not problem.strip():
        print("--problem must not be empty", file=sys.stderr)
        return 2

    store, _ = _open_stores()
    experiment = store.create_experiment(
        args.name, problem, args.model, args.agents, args.profile
    )
    print(
        f"Created experiment '{experiment.name}' (id={experiment.id}, "
        f"{experiment.agent_count} agents, {experiment.model})"
    )
    return 0


def cmd_list(args: argparse.Namespace) -> int:
    store, _ = _open_stores()
    experiments = store.list_experiments()
    if not experiments:
        print("(no experiments)")
        return 0
    for e in experiments:
        print(
            f"{e.name}\tagents={e.agent_count}\tmodel={e.model}\t"
            f"profile={e.profile}\ttokens={e.tokens}"
        )
    return 0


def cmd_run(args: argparse.Namespace) -> int:
    store, content = _open_stores()
    experiment = store.find_experiment_by_name(args.name)
    if experiment is None:
        print(f"Experiment '{args.name}' not found", file=sys.stderr)
        return 1
    config.check_api_keys()

    reviewers = (
        args.reviewers
        if args.reviewers is not None
        else config.default_reviewer_count(experiment.agent_count)
    )
    run_config = config.RunConfig(
        reviewers=reviewers,
        tools=[] if args.no_computer else ["computer"],
        thinking=not args.no_thinking,
    )
    controller = RunController(
        experiment,
        store,
        content,
        run_config,
        custom_prompt=args.prompt,
    )
    if args.path:
        if not run_config.has_computer:
            print("--path requires the computer tool", file=sys.stderr)
            return 2
        controller.copy_to_computers([Path(p) for p in args.path])

    if args.tick is not None:
        controller.tick_once(args.tick)
        return 0

    outcome = controller.run_all(max_cost=args.max_cost)
    print(
        f"Stopped: {outcome.reason.value} after {outcome.ticks} ticks, "
        f"cost ${outcome.cost:.2f}"
    )
    return 1 if outcome.reason is StopReason.ERROR else 0


def cmd_status(args: argparse.Namespace) -> int:
    store, _ = _open_stores()
    experiment = store.find_experiment_by_name(args.name)
    if experiment is None:
        print(f"Experiment '{args.name}' not found", file=sys.stderr)
        return 1
    publications = store.list_publications(experiment.id)
    counts = {
        s: sum(1 for p in publications if p.status is s)
        for s in PublicationStatus
    }
    print(
        f"{experiment.name}: {experiment.agent_count} agents, "
        f"{experiment.tokens} tokens"
    )
    print(
        ", ".join(f"{s.value}={n}" for s, n in counts.items())
    )

    order = parse_order(args.order)
    print("\nPublished:")
    for p in store.list_published(experiment.id, order, args.limit, 0):
        print(
            f"  [{p.reference}] {p.title} (Agent {p.author}, "
            f"{p.citation_count} citations)"
        )

    print("\nSolutions:")
    solutions = store.list_solutions(experiment.id)
    if not solutions:
        print("  (no votes)")
    for s in solutions:
        print(
            f"  Agent {s.agent} -> [{s.publication.reference}] "
            f"{s.publication.title}"
        )
    return 0


def cmd_clean(args: argparse.Namespace) -> int:
    store, content = _open_stores()
    experiment = store.find_experiment_by_name(args.name)
    if experiment is None:
        print(f"Experiment '{args.name}' not found", file=sys.stderr)
        return 1
    if not args.yes:
        print(
            f"Refusing to delete '{args.name}' and all its data without "
            f"--yes",
            file=sys.stderr,
        )
        return 2
    references = [
        p.reference for p in store.list_publications(experiment.id)
    ]
    store.delete_experiment(experiment.id)
    content.remove(experiment.id, references)
    print(f"Deleted experiment '{args.name}'")
    return 0


def cmd_models(args: argparse.Namespace) -> int:
    matches = sorted(
        name
        for name in litellm.model_cost
        if not args.filter or args.filter.lower() in name.lower()
    )
    if not matches:
        print("(no models found)")
        return 0
    for name in matches:
        info = litellm.model_cost[name]
        input_cost = (info.get("input_cost_per_token") or 0) * 1e6
        output_cost = (info.get("output_cost_per_token") or 0) * 1e6
        context = info.get("max_input_tokens") or "?"
        print(
            f"{name}\tin=${input_cost:.2f}/M\tout=${output_cost:.2f}/M\t"
            f"context={context}"
        )
    return 0


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="research-society",
        description="Run a society of research agents that publish, "
        "review and cite each other's work",
    )
    p.add_argument(
        "-v", "--verbose", action="store_true", help="Enable debug logging"
    )
    sub = p.add_subparsers(dest="command", required=True)

    create = sub.add_parser("create", help="Create an experiment")
    create.add_argument("name", help="Unique experiment name")
    create.add_argument(
        "--problem", required=True, help="Problem statement or path to it"
    )
    create.add_argument(
        "--model", default=config.DEFAULT_MODEL, help="litellm model"
    )
    create.add_argument(
        "--agents", type=int, default=5, help="Number of agents"
    )
    create.add_argument(
        "--profile",
        default=config.DEFAULT_PROFILE,
        choices=config.PROFILES,
        help="Agent profile",
    )
    create.set_defaults(func=cmd_create)

    lst = sub.add_parser("list", help="List experiments")
    lst.set_defaults(func=cmd_list)

    run = sub.add_parser("run", help="Run the agents of an experiment")
    run.add_argument("name", help="Experiment name")
    run.add_argument(
        "--max-cost", type=float, default=None, help="Dollar ceiling"
    )
    run.add_argument(
        "--tick", type=int, default=None, help="Run one tick of this agent"
    )
    run.add_argument(
        "--reviewers", type=int, default=None, help="Reviewers per submission"
    )
    run.add_argument(
        "--no-thinking", action="store_true", help="Disable reasoning"
    )
    run.add_argument(
        "--no-computer", action="store_true", help="Disable the computer tool"
    )
    run.add_argument(
        "--path",
        action="append",
        default=[],
        help="File or directory to copy into every computer (repeatable)",
    )
    run.add_argument(
        "--prompt", default=None, help="Custom system prompt or path to it"
    )
    run.set_defaults(func=cmd_run)

    status = sub.add_parser("status", help="Show publications and votes")
    status.add_argument("name", help="Experiment name")
    status.add_argument(
        "--order",
        default=ListOrder.CITATIONS.value,
        choices=[o.value for o in ListOrder],
    )
    status.add_argument("--limit", type=int, default=20)
    status.set_defaults(func=cmd_status)

    clean = sub.add_parser("clean", help="Delete an experiment and its data")
    clean.add_argument("name", help="Experiment name")
    clean.add_argument(
        "--yes", action="store_true", help="Confirm the deletion"
    )
    clean.set_defaults(func=cmd_clean)

    models = sub.add_parser("models", help="Look up model pricing")
    models.add_argument("filter", nargs="?", default=None)
    models.set_defaults(func=cmd_models)
    return p


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    _configure_logging(args.verbose)
    try:
        return args.func(args)
    except ResearchError as e:
        logger.error(str(e))
        return 1


if __name__ == "__main__":
    sys.exit(main())
