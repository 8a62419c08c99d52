from __future__ import annotations

import argparse
import logging
import os
import sys

from . import engine
from .descriptor import load_project, resolve_project_name
from .docker_ops import DockerRuntime
from .errors import CcrError, DescriptorError
from .progress import Progress
from .settings import settings

logger = logging.getLogger(__name__)


def _runtime() -> DockerRuntime:
    return DockerRuntime.from_env()


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="ccr", description="Converge containers, networks and volumes to a compose file")
    p.add_argument("-f", "--file", default=settings.compose_file, help="Load compose file FILE")
    p.add_argument(
        "-p",
        "--project-name",
        default=settings.project_name,
        help="Set project name NAME (default: compose file's folder name)",
    )
    p.add_argument("--log-level", default=settings.log_level, help="DEBUG, INFO, WARNING or ERROR")
    sub = p.add_subparsers(dest="cmd", required=True)

    s_up = sub.add_parser("up", help="Create and start application services")
    s_up.add_argument("--dry-run", action="store_true", help="Print the plan without applying it")

    sub.add_parser("down", help="Stop and remove everything created by `up`")
    sub.add_parser("plan", help="Show what `up` would change")
    return p


def _print_plan(plan, progress: Progress) -> None:
    changes = plan.changes()
    if not changes:
        progress.line(f"Project {plan.project} is up to date.")
        return
    for action in changes:
        progress.line(action.describe())


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(level=args.log_level.upper(), format="%(levelname)s %(name)s: %(message)s")
    progress = Progress()

    try:
        if args.cmd == "down":
            # A missing or broken compose file must not prevent teardown.
            project = None
            if os.path.exists(args.file):
                try:
                    project = load_project(args.file, args.project_name)
                except DescriptorError as e:
                    logger.warning("Ignoring compose file: %s", e)
            name = project.name if project else resolve_project_name(args.file, args.project_name)
            engine.down(name, _runtime(), project=project, progress=progress)
            return 0

        project = load_project(args.file, args.project_name)
        runtime = _runtime()
        if args.cmd == "plan" or (args.cmd == "up" and args.dry_run):
            _print_plan(engine.plan(project, runtime), progress)
            return 0
        if args.cmd == "up":
            engine.up(project, runtime, progress=progress)
            return 0
    except CcrError as e:
        print(f"error: {e}", file=sys.stderr)
        return 1
    return 2


if __name__ == "__main__":
    raise SystemExit(main(sys.argv[1:]))
