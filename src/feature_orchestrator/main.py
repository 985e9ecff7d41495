"""CLI entrypoint for feature-orchestrator."""

import logging
import sys
from collections.abc import Callable
from pathlib import Path
from typing import TypeVar

import rich_click as click

from feature_orchestrator import __version__
from feature_orchestrator.config import Settings
from feature_orchestrator.orchestrator.controllers import (
    AnalyzeCommand,
    AutoRunCommand,
    FeatureAddCommand,
    FeatureCliController,
    FeatureCommandResult,
    FeatureFollowUpCommand,
    FeatureListCommand,
    FeatureRefCommand,
    FeatureRunCommand,
    FeatureSetStatusCommand,
    PlanDecisionCommand,
    RecoverCommand,
    WorktreeCommand,
)
from feature_orchestrator.orchestrator.errors import OrchestratorError
from feature_orchestrator.orchestrator.events import OrchestratorEvent
from feature_orchestrator.orchestrator.models import FeatureStatus, PlanningMode

click.rich_click.USE_MARKDOWN = True

T = TypeVar("T")

PLANNING_MODES = [mode.value for mode in PlanningMode]


def _project_option(func):
    return click.option(
        "--project",
        "project_path",
        type=click.Path(path_type=Path, file_okay=False, exists=True),
        default=Path.cwd,
        show_default="current directory",
        help="Project root that holds the feature board.",
    )(func)


def _worktrees_option(func):
    return click.option(
        "--worktrees/--no-worktrees",
        "use_worktrees",
        default=True,
        show_default=True,
        help="Run in the feature's git worktree when its branch has one.",
    )(func)


@click.group()
@click.version_option(version=__version__, prog_name="feature-orchestrator")
@click.option("-v", "--verbose", is_flag=True, help="Enable debug logging.")
def feature_orchestrator(verbose: bool) -> None:
    """Queue features and let a CLI coding agent implement them."""

    level = logging.DEBUG if verbose else Settings.from_env().log_level
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@feature_orchestrator.group()
def features() -> None:
    """Board commands."""


@features.command("add")
@_project_option
@click.argument("description")
@click.option("--id", "feature_id", default=None, help="Explicit feature id.")
@click.option("--title", default=None, help="Short title; defaults to the first line.")
@click.option("--category", default=None, help="Free-form category label.")
@click.option(
    "--priority",
    type=click.IntRange(min=0),
    default=2,
    show_default=True,
    help="Lower values run first.",
)
@click.option("--skip-tests", is_flag=True, help="Finish in waiting_approval for manual review.")
@click.option("--model", default=None, help="Provider model id for this feature.")
@click.option(
    "--planning",
    "planning_mode",
    type=click.Choice(PLANNING_MODES),
    default=PlanningMode.SKIP.value,
    show_default=True,
    help="Planning phase before implementation.",
)
@click.option("--require-approval", is_flag=True, help="Wait for plan approval.")
@click.option("--depends-on", "dependencies", multiple=True, help="Feature id. Can be repeated.")
@click.option(
    "--image",
    "image_paths",
    multiple=True,
    type=click.Path(exists=True, dir_okay=False),
    help="Context image to attach. Can be repeated.",
)
@click.option("--branch", "branch_name", default=None, help="Branch whose worktree to use.")
def features_add(  # noqa: PLR0913
    project_path: Path,
    description: str,
    feature_id: str | None,
    title: str | None,
    category: str | None,
    priority: int,
    skip_tests: bool,
    model: str | None,
    planning_mode: str,
    require_approval: bool,
    dependencies: tuple[str, ...],
    image_paths: tuple[str, ...],
    branch_name: str | None,
) -> None:
    """Add a feature to the board."""

    _emit_lines(
        _call(
            lambda: _controller().add_feature(
                FeatureAddCommand(
                    project_path=project_path,
                    description=description,
                    feature_id=feature_id,
                    title=title,
                    category=category,
                    priority=priority,
                    skip_tests=skip_tests,
                    model=model,
                    planning_mode=planning_mode,
                    require_plan_approval=require_approval,
                    dependencies=dependencies,
                    image_paths=image_paths,
                    branch_name=branch_name,
                ),
            ),
        ),
    )


@features.command("list")
@_project_option
@click.option("--status", default=None, help="Only show features in this status.")
def features_list(project_path: Path, status: str | None) -> None:
    """List features in priority order."""

    _emit_lines(
        _call(
            lambda: _controller().list_features(
                FeatureListCommand(project_path=project_path, status=status),
            ),
        ),
    )


@features.command("show")
@_project_option
@click.argument("feature_id")
def features_show(project_path: Path, feature_id: str) -> None:
    """Show one feature with its plan."""

    _emit_lines(
        _call(
            lambda: _controller().show_feature(
                FeatureRefCommand(project_path=project_path, feature_id=feature_id),
            ),
        ),
    )


@features.command("delete")
@_project_option
@click.argument("feature_id")
def features_delete(project_path: Path, feature_id: str) -> None:
    """Delete a feature and its transcript."""

    _emit_lines(
        _call(
            lambda: _controller().delete_feature(
                FeatureRefCommand(project_path=project_path, feature_id=feature_id),
            ),
        ),
    )


@features.command("set-status")
@_project_option
@click.argument("feature_id")
@click.argument("status")
def features_set_status(project_path: Path, feature_id: str, status: str) -> None:
    """Move a feature to another status, for example back to backlog."""

    known = {item.value for item in FeatureStatus}
    if status not in known and not status.startswith("pipeline_"):
        raise click.BadParameter(
            f"Unknown status {status!r}; expected one of {', '.join(sorted(known))} "
            "or pipeline_<step>.",
            param_hint="STATUS",
        )
    _emit_lines(
        _call(
            lambda: _controller().set_status(
                FeatureSetStatusCommand(
                    project_path=project_path,
                    feature_id=feature_id,
                    status=status,
                ),
            ),
        ),
    )


@feature_orchestrator.group()
def auto() -> None:
    """Auto mode commands."""


@auto.command("run")
@_project_option
@click.option(
    "--max-concurrency",
    type=click.IntRange(min=1),
    default=None,
    help="Parallel features; defaults to FEATURE_ORCHESTRATOR_MAX_CONCURRENCY.",
)
@click.option(
    "--worktrees/--no-worktrees",
    "use_worktrees",
    default=None,
    help="Override FEATURE_ORCHESTRATOR_USE_WORKTREES.",
)
@click.option(
    "--forever",
    is_flag=True,
    help="Keep polling after the board is idle; stop with Ctrl-C.",
)
def auto_run(
    project_path: Path,
    max_concurrency: int | None,
    use_worktrees: bool | None,
    forever: bool,
) -> None:
    """Dispatch eligible features until the board is idle."""

    _emit_result(
        _call(
            lambda: _controller(echo=True).run_auto(
                AutoRunCommand(
                    project_path=project_path,
                    max_concurrency=max_concurrency,
                    use_worktrees=use_worktrees,
                    stop_when_idle=not forever,
                ),
            ),
        ),
    )


@feature_orchestrator.group()
def feature() -> None:
    """Single feature commands."""


@feature.command("run")
@_project_option
@_worktrees_option
@click.argument("feature_id")
@click.option(
    "--review/--no-review",
    "review_plans",
    default=True,
    show_default=True,
    help="Ask for plan approval interactively; otherwise park the plan for approve/reject.",
)
def feature_run(
    project_path: Path,
    use_worktrees: bool,
    feature_id: str,
    review_plans: bool,
) -> None:
    """Run one feature in the foreground."""

    _emit_result(
        _call(
            lambda: _controller(echo=True, interactive=review_plans).run_feature(
                FeatureRunCommand(
                    project_path=project_path,
                    feature_id=feature_id,
                    use_worktrees=use_worktrees,
                ),
            ),
        ),
    )


@feature.command("resume")
@_project_option
@_worktrees_option
@click.argument("feature_id")
def feature_resume(project_path: Path, use_worktrees: bool, feature_id: str) -> None:
    """Resume an interrupted feature from its transcript."""

    _emit_result(
        _call(
            lambda: _controller(echo=True, interactive=True).resume_feature(
                FeatureRunCommand(
                    project_path=project_path,
                    feature_id=feature_id,
                    use_worktrees=use_worktrees,
                ),
            ),
        ),
    )


@feature.command("follow-up")
@_project_option
@click.argument("feature_id")
@click.argument("prompt")
@click.option(
    "--image",
    "image_paths",
    multiple=True,
    type=click.Path(exists=True, dir_okay=False),
    help="Extra context image. Can be repeated.",
)
def feature_follow_up(
    project_path: Path,
    feature_id: str,
    prompt: str,
    image_paths: tuple[str, ...],
) -> None:
    """Continue a finished feature with extra instructions."""

    _emit_result(
        _call(
            lambda: _controller(echo=True).follow_up(
                FeatureFollowUpCommand(
                    project_path=project_path,
                    feature_id=feature_id,
                    prompt=prompt,
                    image_paths=image_paths,
                ),
            ),
        ),
    )


@feature.command("verify")
@_project_option
@click.argument("feature_id")
def feature_verify(project_path: Path, feature_id: str) -> None:
    """Run lint, typecheck, tests and build in the feature's work dir."""

    _emit_result(
        _call(
            lambda: _controller().verify(
                FeatureRefCommand(project_path=project_path, feature_id=feature_id),
            ),
        ),
    )


@feature.command("commit")
@_project_option
@click.argument("feature_id")
def feature_commit(project_path: Path, feature_id: str) -> None:
    """Commit the feature's changes."""

    _emit_lines(
        _call(
            lambda: _controller().commit(
                FeatureRefCommand(project_path=project_path, feature_id=feature_id),
            ),
        ),
    )


@feature.command("analyze")
@_project_option
def feature_analyze(project_path: Path) -> None:
    """Summarize the project structure into project-analysis.md."""

    _emit_result(
        _call(lambda: _controller(echo=True).analyze(AnalyzeCommand(project_path=project_path))),
    )


@feature.command("approve")
@_project_option
@click.argument("feature_id")
@click.option(
    "--edited-plan",
    "edited_plan_path",
    type=click.Path(path_type=Path, exists=True, dir_okay=False),
    default=None,
    help="File with an edited plan to approve instead of the generated one.",
)
def feature_approve(project_path: Path, feature_id: str, edited_plan_path: Path | None) -> None:
    """Approve a generated plan and continue the implementation."""

    _emit_result(
        _call(
            lambda: _controller(echo=True).decide_plan(
                PlanDecisionCommand(
                    project_path=project_path,
                    feature_id=feature_id,
                    approved=True,
                    edited_plan_path=edited_plan_path,
                ),
            ),
        ),
    )


@feature.command("reject")
@_project_option
@click.argument("feature_id")
@click.option("--feedback", default=None, help="Revision request; omit to cancel the plan.")
@click.option(
    "--edited-plan",
    "edited_plan_path",
    type=click.Path(path_type=Path, exists=True, dir_okay=False),
    default=None,
    help="File with an edited plan to revise from.",
)
def feature_reject(
    project_path: Path,
    feature_id: str,
    feedback: str | None,
    edited_plan_path: Path | None,
) -> None:
    """Reject a plan; with feedback or edits the plan is revised."""

    _emit_result(
        _call(
            lambda: _controller(echo=True, interactive=True).decide_plan(
                PlanDecisionCommand(
                    project_path=project_path,
                    feature_id=feature_id,
                    approved=False,
                    feedback=feedback,
                    edited_plan_path=edited_plan_path,
                ),
            ),
        ),
    )


@feature_orchestrator.command("recover")
@_project_option
@_worktrees_option
def recover(project_path: Path, use_worktrees: bool) -> None:
    """Resume every feature left in progress by a crash."""

    _emit_lines(
        _call(
            lambda: _controller(echo=True).recover(
                RecoverCommand(project_path=project_path, use_worktrees=use_worktrees),
            ),
        ),
    )


@feature_orchestrator.group()
def worktree() -> None:
    """Git worktree commands."""


@worktree.command("find")
@_project_option
@click.argument("branch_name")
def worktree_find(project_path: Path, branch_name: str) -> None:
    """Print the worktree bound to a branch."""

    _emit_lines(
        _call(
            lambda: _controller().find_worktree(
                WorktreeCommand(project_path=project_path, branch_name=branch_name),
            ),
        ),
    )


@worktree.command("create")
@_project_option
@click.argument("branch_name")
@click.option("--base", "base_branch", default=None, help="Base for a new branch (HEAD).")
def worktree_create(project_path: Path, branch_name: str, base_branch: str | None) -> None:
    """Create (or reuse) the worktree for a branch."""

    _emit_lines(
        _call(
            lambda: _controller().create_worktree(
                WorktreeCommand(
                    project_path=project_path,
                    branch_name=branch_name,
                    base_branch=base_branch,
                ),
            ),
        ),
    )


def _controller(*, echo: bool = False, interactive: bool = False) -> FeatureCliController:
    reviewer = _review_plan_interactively if interactive and sys.stdin.isatty() else None
    return FeatureCliController(
        echo=click.echo if echo else None,
        plan_reviewer=reviewer,
    )


def _review_plan_interactively(event: OrchestratorEvent) -> tuple[bool, str | None]:
    feature_id = event.payload.get("feature_id")
    if click.confirm(f"Approve plan for {feature_id}?", default=True):
        return True, None
    feedback = click.prompt(
        "Feedback for a revision (empty to cancel the plan)",
        default="",
        show_default=False,
    )
    return False, feedback.strip() or None


def _call(operation: Callable[[], T]) -> T:
    try:
        return operation()
    except (OrchestratorError, ValueError) as error:
        raise click.ClickException(str(error)) from error


def _emit_result(result: FeatureCommandResult) -> None:
    _emit_lines(result.lines)
    if not result.success:
        raise SystemExit(1)


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    feature_orchestrator()
