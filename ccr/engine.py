from __future__ import annotations

import logging

from .inventory import collect
from .models import BindingTable, Project
from .planner import Plan, build_plan
from .progress import Progress
from .provisioner import Provisioner
from .teardown import teardown

logger = logging.getLogger(__name__)


def plan(project: Project, runtime) -> Plan:
    """Diff the project against the runtime without changing anything."""
    inventory = collect(runtime, project.name)
    return build_plan(project, inventory, runtime)


def up(
    project: Project,
    runtime,
    progress: Progress | None = None,
    dry_run: bool = False,
    bindings: BindingTable | None = None,
) -> Plan:
    """Converge the runtime toward `project` and return the plan that was applied."""
    result = plan(project, runtime)
    if dry_run:
        return result
    if result.converged:
        logger.info("Project %s is up to date", project.name)
        return result
    Provisioner(
        runtime,
        project,
        bindings if bindings is not None else BindingTable.from_project(project),
        progress=progress,
    ).apply(result)
    return result


def down(project_name: str, runtime, project: Project | None = None, progress: Progress | None = None) -> int:
    """Remove everything labeled for the project; external resources are skipped."""
    return teardown(
        runtime,
        project_name,
        external_networks=project.external_networks() if project else (),
        external_volumes=project.external_volumes() if project else (),
        progress=progress,
    )
