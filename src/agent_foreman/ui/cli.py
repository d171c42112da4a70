"""Command-line interface router for agent-foreman."""

from __future__ import annotations

import argparse
import json
import sys
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Final

from rich.prompt import Prompt

from agent_foreman.config import (
    DEFAULT_CONFIG_FILE,
    ConfigLoadError,
    ConfigValidationError,
    dump_effective_config,
    load_config,
    redact_config,
    require_env_value,
)
from agent_foreman.context import OrchestratorContext
from agent_foreman.dispatch.dispatcher import Dispatcher
from agent_foreman.dispatch.tickets import DispatchError, Ticket
from agent_foreman.oversight.review import ReviewSession
from agent_foreman.producer.base import ArtifactProducer
from agent_foreman.producer.openai_compatible import OpenAICompatibleProducer
from agent_foreman.resources.governor import DEFAULT_EXPORT_FILENAME
from agent_foreman.ui.render import CLIRenderer, create_renderer
from agent_foreman.workflow.steps import DEFAULT_WORKFLOW, WORKFLOWS, UnknownWorkflowError, WorkflowRun

REPORT_PERIODS: Final[tuple[str, ...]] = ("hour", "day", "week", "all")
WORKFLOW_FAILED_EXIT: Final[int] = 1


@dataclass(frozen=True, slots=True)
class CLIError(RuntimeError):
    """Typed CLI failure with an explicit process exit code."""

    message: str
    exit_code: int = 1

    def __str__(self) -> str:
        return self.message


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------


def build_parser() -> argparse.ArgumentParser:
    """Build the argparse command router for all supported CLI workflows."""

    parser = argparse.ArgumentParser(
        prog="foreman",
        description=(
            "agent-foreman: dispatch tickets to agent roles and integrate their branches.\n\n"
            "Common workflows:\n"
            "  foreman assign tickets.md      Classify and assign tickets\n"
            "  foreman status                 Show active assignments by role\n"
            "  foreman workflow               Run standardIntegration\n"
            "  foreman oversight review       Review pending checkpoints\n"
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument(
        "--repo-root",
        default=".",
        help="Repository root directory (default: current working directory).",
    )
    common.add_argument(
        "--config",
        dest="config_path",
        default=None,
        help=f"Path to foreman TOML config (default: ./{DEFAULT_CONFIG_FILE} if present).",
    )
    common.add_argument(
        "--profile",
        default=None,
        help="Optional config profile overlay name.",
    )
    common.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        default=False,
        help="Show detailed output.",
    )
    common.add_argument(
        "--no-color",
        action="store_true",
        default=False,
        help="Disable colored output (also respects NO_COLOR env var).",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    # assign --------------------------------------------------------------
    assign_parser = _add_command(
        subparsers,
        common,
        "assign",
        help="Classify tickets and assign them to agent roles",
        description=(
            "Parse tickets (a file, a JSON/YAML ticket list or inline ids), classify each one\n"
            "and persist the assignments. A confirm/edit step runs before dispatch.\n\n"
            "Examples:\n"
            "  foreman assign tickets.md\n"
            '  foreman assign "#12, #13" --yes\n'
            "  foreman assign tickets.md --role TICKET-12=database --yes\n"
        ),
        handler=_cmd_assign,
    )
    assign_parser.add_argument("tickets", help="Ticket file path or inline ticket references")
    assign_parser.add_argument(
        "--role",
        dest="role_overrides",
        action="append",
        default=[],
        metavar="TICKET=ROLE",
        help="Force a role for one ticket (repeatable).",
    )
    assign_parser.add_argument("--yes", "-y", action="store_true", help="Skip the confirm/edit step")

    # status / agent / complete ------------------------------------------
    _add_command(subparsers, common, "status", help="Show assignments grouped by role", handler=_cmd_status)
    agent_parser = _add_command(
        subparsers, common, "agent", help="Show open work and instructions for a role", handler=_cmd_agent
    )
    agent_parser.add_argument("role", help="Agent role name")
    complete_parser = _add_command(
        subparsers, common, "complete", help="Mark an assignment completed", handler=_cmd_complete
    )
    complete_parser.add_argument("ticket_id", help="Ticket id, e.g. TICKET-12")

    # recovery ------------------------------------------------------------
    recovery_parser = subparsers.add_parser("recovery", help="Recovery checkpoints and failure history")
    recovery_sub = recovery_parser.add_subparsers(dest="recovery_command", required=True)
    cleanup_parser = _add_command(
        recovery_sub, common, "cleanup", help="Purge old recovery checkpoints", handler=_cmd_recovery_cleanup
    )
    cleanup_parser.add_argument("hours", nargs="?", type=float, default=None, help="Maximum age in hours")
    failure_parser = _add_command(
        recovery_sub, common, "report", help="Failure report grouped by error", handler=_cmd_recovery_report
    )
    failure_parser.add_argument("agent_id", nargs="?", default=None, help="Restrict to one agent")
    _add_command(recovery_sub, common, "list", help="List recovery checkpoints", handler=_cmd_recovery_list)

    # oversight -----------------------------------------------------------
    oversight_parser = subparsers.add_parser("oversight", help="Human review of generated changesets")
    oversight_sub = oversight_parser.add_subparsers(dest="oversight_command", required=True)
    review_parser = _add_command(
        oversight_sub, common, "review", help="Interactive review of pending checkpoints", handler=_cmd_review
    )
    review_parser.add_argument("--reviewer", default="human", help="Name recorded on decisions")
    _add_command(
        oversight_sub,
        common,
        "auto-approve",
        help="Auto-approve checkpoints whose review window expired",
        handler=_cmd_auto_approve,
    )
    _add_command(oversight_sub, common, "report", help="Oversight summary report", handler=_cmd_oversight_report)
    _add_command(oversight_sub, common, "queue", help="Pending review queue", handler=_cmd_oversight_queue)

    # resources -----------------------------------------------------------
    resources_parser = subparsers.add_parser("resources", help="Usage, cost and process limits")
    resources_sub = resources_parser.add_subparsers(dest="resources_command", required=True)
    usage_parser = _add_command(
        resources_sub, common, "report", help="Usage report for a period", handler=_cmd_resources_report
    )
    usage_parser.add_argument("period", nargs="?", default="day", choices=REPORT_PERIODS)
    export_parser = _add_command(
        resources_sub, common, "export", help="Export API calls as CSV", handler=_cmd_resources_export
    )
    export_parser.add_argument("file", nargs="?", default=DEFAULT_EXPORT_FILENAME, help="Output CSV path")
    _add_command(
        resources_sub, common, "limits", help="Configured ceilings and current usage", handler=_cmd_resources_limits
    )

    # validate ------------------------------------------------------------
    validate_parser = _add_command(
        subparsers,
        common,
        "validate",
        help="Validate files on disk",
        description=(
            "Run syntax, security, quality and reference checks on each file.\n"
            "Exits 1 when any file has errors.\n\n"
            "Examples:\n"
            "  foreman validate src/lib/orders.ts\n"
            "  foreman validate src/**/*.ts --json\n"
        ),
        handler=_cmd_validate,
    )
    validate_parser.add_argument("files", nargs="+", help="Files to validate")

    # workflow ------------------------------------------------------------
    workflow_parser = _add_command(
        subparsers,
        common,
        "workflow",
        help="Run a named integration workflow",
        description=(
            "Run an integration workflow against the repository.\n\n"
            f"Workflows: {', '.join(WORKFLOWS)}\n"
        ),
        handler=_cmd_workflow,
    )
    workflow_parser.add_argument("name", nargs="?", default=DEFAULT_WORKFLOW, help="Workflow name")

    # ai-workflow ---------------------------------------------------------
    ai_parser = _add_command(
        subparsers,
        common,
        "ai-workflow",
        help="Assign tickets, generate their code and integrate",
        description=(
            "Assign tickets, run the producer-backed agent runner for each assignment and\n"
            f"finish with {DEFAULT_WORKFLOW}. Needs the producer API credential.\n"
        ),
        handler=_cmd_ai_workflow,
    )
    ai_parser.add_argument("tickets", help="Ticket file path or inline ticket references")
    ai_parser.add_argument(
        "--no-integrate",
        action="store_true",
        help=f"Stop after the agent runs; do not run {DEFAULT_WORKFLOW}",
    )

    # config --------------------------------------------------------------
    _add_command(subparsers, common, "config", help="Show the effective (redacted) config", handler=_cmd_config)

    return parser


def _add_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
    common: argparse.ArgumentParser,
    name: str,
    *,
    help: str,
    handler: object,
    description: str | None = None,
) -> argparse.ArgumentParser:
    command = subparsers.add_parser(
        name,
        parents=[common],
        help=help,
        description=description or help,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    command.add_argument("--json", action="store_true", help="Emit deterministic JSON output")
    command.set_defaults(handler=handler)
    return command


# ---------------------------------------------------------------------------
# Entrypoints
# ---------------------------------------------------------------------------


def run_cli(argv: Sequence[str] | None = None) -> int:
    """Parse argv, route to a command handler, and return process exit code."""

    parser = build_parser()
    namespace = parser.parse_args(list(argv) if argv is not None else None)
    handler = getattr(namespace, "handler", None)
    if not callable(handler):
        parser.print_help(sys.stderr)
        return 2

    try:
        result = handler(namespace)
    except CLIError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return exc.exit_code
    return int(result)


# ---------------------------------------------------------------------------
# Command handlers: dispatch
# ---------------------------------------------------------------------------


def _cmd_assign(args: argparse.Namespace) -> int:
    overrides = _parse_role_overrides(args.role_overrides)
    with _open_context(args) as ctx:
        dispatcher = ctx.dispatcher()
        tickets = _parse_tickets(dispatcher, args.tickets)
        if not _flag(args, "yes"):
            overrides = _confirm_assignments(_get_renderer(args), dispatcher, tickets, overrides)
            if overrides is None:
                print("Assignment cancelled.", file=sys.stderr)
                return 1
        try:
            assignments = dispatcher.assign(tickets, overrides)
        except DispatchError as exc:
            raise CLIError(str(exc), exit_code=2) from exc

        payload = {
            "command": "assign",
            "assignments": [item.to_payload() for item in assignments],
            "taskDir": str(dispatcher.task_dir),
        }
        if _flag(args, "json"):
            _emit_json(payload)
            return 0

        renderer = _get_renderer(args)
        renderer.heading(f"Assigned {len(assignments)} ticket(s)")
        renderer.table(
            ["Ticket", "Role", "Branch", "Confidence", "Model"],
            [
                [a.ticket_id, a.role, a.branch_name, f"{a.confidence}%", a.suggested_model]
                for a in assignments
            ],
        )
        renderer.kv("Task files", dispatcher.task_dir)
        renderer.next_steps([f"foreman agent {role}" for role in sorted({a.role for a in assignments})])
    return 0


def _confirm_assignments(
    renderer: CLIRenderer,
    dispatcher: Dispatcher,
    tickets: Sequence[Ticket],
    overrides: dict[str, str],
) -> dict[str, str] | None:
    """Show the proposed roles and let the operator accept, edit or cancel."""

    roles = list(dispatcher.roles)
    proposed = {ticket.id: dispatcher.classify(ticket) for ticket in tickets}
    while True:
        renderer.table(
            ["Ticket", "Role", "Confidence", "Description"],
            [
                [
                    ticket.id,
                    overrides.get(ticket.id, proposed[ticket.id].role),
                    "override" if ticket.id in overrides else f"{proposed[ticket.id].confidence}%",
                    _truncate(ticket.description, 60),
                ]
                for ticket in tickets
            ],
            title="Proposed assignments:",
        )
        choice = Prompt.ask("Dispatch these assignments?", choices=["y", "e", "n"], default="y")
        if choice == "y":
            return overrides
        if choice == "n":
            return None
        ticket_id = Prompt.ask("Ticket to reassign", choices=[ticket.id for ticket in tickets])
        overrides[ticket_id] = Prompt.ask("New role", choices=roles)


def _cmd_status(args: argparse.Namespace) -> int:
    with _open_context(args) as ctx:
        status = ctx.dispatcher().status()

    if _flag(args, "json"):
        _emit_json({"command": "status", **status.to_payload()})
        return 0

    renderer = _get_renderer(args)
    renderer.heading("Assignment status")
    renderer.kv("Completed", status.completed_count)
    for state, count in sorted(status.by_status.items()):
        renderer.kv(state, count)
    if not status.by_role:
        renderer.text("No active assignments.")
        return 0
    for role, entries in sorted(status.by_role.items()):
        renderer.table(
            ["Ticket", "Status", "Branch", "Blocked by"],
            [
                [
                    str(entry["ticketId"]),
                    str(entry["status"]),
                    str(entry["branchName"]),
                    ", ".join(entry.get("blockedBy", [])) or "-",  # type: ignore[arg-type]
                ]
                for entry in entries
            ],
            title=f"{role}:",
        )
    return 0


def _cmd_agent(args: argparse.Namespace) -> int:
    with _open_context(args) as ctx:
        try:
            tasks = ctx.dispatcher().agent_tasks(args.role)
        except DispatchError as exc:
            raise CLIError(str(exc), exit_code=2) from exc

    if _flag(args, "json"):
        _emit_json({"command": "agent", "role": args.role, "tasks": [task.to_payload() for task in tasks]})
        return 0

    renderer = _get_renderer(args)
    renderer.heading(f"Open tasks for {args.role}: {len(tasks)}")
    for task in tasks:
        renderer.section(f"{task.ticket.id}: {task.ticket.description}")
        renderer.kv("  Branch", task.assignment.branch_name)
        renderer.kv("  Status", task.assignment.status)
        renderer.kv("  Model", task.instructions.suggested_model)
        if task.blocked_by:
            renderer.warning(f"blocked by {', '.join(task.blocked_by)}")
        renderer.items(list(task.instructions.guidelines))
    return 0


def _cmd_complete(args: argparse.Namespace) -> int:
    with _open_context(args) as ctx:
        try:
            assignment = ctx.dispatcher().complete(args.ticket_id)
        except DispatchError as exc:
            raise CLIError(str(exc), exit_code=2) from exc

    if _flag(args, "json"):
        _emit_json({"command": "complete", "assignment": assignment.to_payload()})
        return 0
    _get_renderer(args).ok(f"{assignment.ticket_id} completed ({assignment.role})")
    return 0


# ---------------------------------------------------------------------------
# Command handlers: recovery
# ---------------------------------------------------------------------------


def _cmd_recovery_cleanup(args: argparse.Namespace) -> int:
    with _open_context(args) as ctx:
        recovery = ctx.recovery()
        hours = args.hours if args.hours is not None else recovery.checkpoint_max_age_hours
        removed = recovery.cleanup_old_checkpoints(hours)

    if _flag(args, "json"):
        _emit_json({"command": "recovery cleanup", "removed": removed, "maxAgeHours": hours})
        return 0
    _get_renderer(args).text(f"Removed {removed} checkpoint(s) older than {hours:g}h")
    return 0


def _cmd_recovery_report(args: argparse.Namespace) -> int:
    with _open_context(args) as ctx:
        report = ctx.recovery().failure_report(_optional_str(args.agent_id))

    if _flag(args, "json"):
        _emit_json({"command": "recovery report", **report.to_payload()})
        return 0

    renderer = _get_renderer(args)
    renderer.heading("Failure report")
    renderer.kv("Total failures", report.total_failures)
    renderer.kv("Unique errors", report.unique_errors)
    renderer.table(
        ["Count", "Last occurrence", "Agents", "Error"],
        [
            [group.count, group.last_occurrence, ", ".join(group.agents), _truncate(group.message, 80)]
            for group in report.groups
        ],
        title="Error groups:",
    )
    return 0


def _cmd_recovery_list(args: argparse.Namespace) -> int:
    with _open_context(args) as ctx:
        checkpoints = ctx.recovery().list_checkpoints()

    if _flag(args, "json"):
        _emit_json({"command": "recovery list", "checkpoints": [item.to_payload() for item in checkpoints]})
        return 0

    renderer = _get_renderer(args)
    if not checkpoints:
        renderer.text("No recovery checkpoints.")
        return 0
    renderer.table(
        ["Id", "Agent", "Task", "Branch", "Timestamp"],
        [[item.id, item.agent_id, item.task_id, item.branch, item.timestamp] for item in checkpoints],
        title="Recovery checkpoints:",
    )
    return 0


# ---------------------------------------------------------------------------
# Command handlers: oversight
# ---------------------------------------------------------------------------


def _cmd_review(args: argparse.Namespace) -> int:
    with _open_context(args) as ctx:
        gate = ctx.oversight()
        gate.process_auto_approvals()
        decisions = ReviewSession(gate, reviewer=args.reviewer).run()

    if _flag(args, "json"):
        _emit_json(
            {
                "command": "oversight review",
                "decisions": [
                    {"checkpointId": item.checkpoint_id, "outcome": item.outcome, "reason": item.reason}
                    for item in decisions
                ],
            }
        )
        return 0

    renderer = _get_renderer(args)
    for outcome in ("approved", "rejected", "skipped"):
        renderer.kv(outcome.capitalize(), sum(1 for item in decisions if item.outcome == outcome))
    return 0


def _cmd_auto_approve(args: argparse.Namespace) -> int:
    with _open_context(args) as ctx:
        approved = ctx.oversight().process_auto_approvals()

    if _flag(args, "json"):
        _emit_json({"command": "oversight auto-approve", "autoApproved": approved})
        return 0
    _get_renderer(args).text(f"Auto-approved {approved} checkpoint(s)")
    return 0


def _cmd_oversight_report(args: argparse.Namespace) -> int:
    with _open_context(args) as ctx:
        report = ctx.oversight().report()

    if _flag(args, "json"):
        _emit_json({"command": "oversight report", **report.to_payload()})
        return 0

    renderer = _get_renderer(args)
    renderer.heading("Oversight report")
    for key, value in report.summary.items():
        renderer.kv(key, value)
    renderer.table(["Type", "Count"], sorted(report.by_type.items()), title="By type:")
    renderer.table(
        ["Timestamp", "Status", "Checkpoint", "By"],
        [
            [
                str(item.get("timestamp", "")),
                str(item.get("status", "")),
                str(item.get("checkpointId", "")),
                str(item.get("approvedBy", "")),
            ]
            for item in report.recent_activity
        ],
        title="Recent activity:",
    )
    if report.critical_pending:
        renderer.section("Critical pending:")
        renderer.items([f"{item.get('id')} ({item.get('taskId')})" for item in report.critical_pending])
    return 0


def _cmd_oversight_queue(args: argparse.Namespace) -> int:
    with _open_context(args) as ctx:
        gate = ctx.oversight()
        entries = gate.queue()
        rows = []
        for entry in entries:
            checkpoint = gate.checkpoint(entry.checkpoint_id)
            rows.append((entry, checkpoint))

    if _flag(args, "json"):
        _emit_json(
            {
                "command": "oversight queue",
                "queue": [
                    {**entry.to_payload(), "type": checkpoint.type.value, "taskId": checkpoint.task_id}
                    for entry, checkpoint in rows
                ],
            }
        )
        return 0

    renderer = _get_renderer(args)
    if not rows:
        renderer.text("No checkpoints awaiting review.")
        return 0
    renderer.table(
        ["Checkpoint", "Type", "Priority", "Task", "Expires"],
        [
            [entry.checkpoint_id, checkpoint.type.value, entry.priority, checkpoint.task_id, entry.expires_at or "-"]
            for entry, checkpoint in rows
        ],
        title="Review queue:",
    )
    return 0


# ---------------------------------------------------------------------------
# Command handlers: resources
# ---------------------------------------------------------------------------


def _cmd_resources_report(args: argparse.Namespace) -> int:
    with _open_context(args) as ctx:
        report = ctx.governor().report(args.period)

    if _flag(args, "json"):
        _emit_json({"command": "resources report", **report.to_payload()})
        return 0

    renderer = _get_renderer(args)
    renderer.heading(f"Usage report ({report.period})")
    for key, value in report.summary.items():
        renderer.kv(key, value)
    renderer.table(
        ["Agent", "Sessions", "Tokens", "Cost"],
        [
            [agent, data.get("sessions", 0), data.get("tokens", 0), _money(data.get("cost", 0.0))]
            for agent, data in sorted(report.by_agent.items())
        ],
        title="By agent:",
    )
    renderer.table(
        ["Model", "Calls", "Tokens", "Cost"],
        [
            [model, data.get("calls", 0), data.get("tokens", 0), _money(data.get("cost", 0.0))]
            for model, data in sorted(report.by_model.items())
        ],
        title="By model:",
    )
    return 0


def _cmd_resources_export(args: argparse.Namespace) -> int:
    repo_root = _repo_root(args)
    target = Path(args.file).expanduser()
    if not target.is_absolute():
        target = repo_root / target
    with _open_context(args) as ctx:
        written = ctx.governor().export_csv(target)

    if _flag(args, "json"):
        _emit_json({"command": "resources export", "path": str(written)})
        return 0
    _get_renderer(args).text(f"Exported usage to {written}")
    return 0


def _cmd_resources_limits(args: argparse.Namespace) -> int:
    with _open_context(args) as ctx:
        view = ctx.governor().limits_view(ctx.latest_sample())

    if _flag(args, "json"):
        _emit_json({"command": "resources limits", **view})
        return 0

    renderer = _get_renderer(args)
    renderer.section("Limits:")
    for key, value in view["limits"].items():  # type: ignore[union-attr]
        renderer.kv(f"  {key}", value)
    renderer.section("Current usage:")
    for key, value in view["current"].items():  # type: ignore[union-attr]
        renderer.kv(f"  {key}", value)
    sample = view.get("latestSample")
    if isinstance(sample, Mapping):
        renderer.section("Latest sample:")
        for key, value in sample.items():
            renderer.kv(f"  {key}", value)
    return 0


# ---------------------------------------------------------------------------
# Command handlers: validation, workflows, config
# ---------------------------------------------------------------------------


def _cmd_validate(args: argparse.Namespace) -> int:
    repo_root = _repo_root(args)
    paths = [_resolve_input_path(raw, repo_root) for raw in _string_sequence(args.files)]
    with _open_context(args) as ctx:
        reports = ctx.validation().validate_batch(paths)
    failed = sum(1 for report in reports if not report.valid)

    if _flag(args, "json"):
        _emit_json(
            {"command": "validate", "failed": failed, "reports": [report.to_payload() for report in reports]}
        )
        return 1 if failed else 0

    renderer = _get_renderer(args)
    for report in reports:
        if report.valid:
            renderer.ok(report.file_path)
        else:
            renderer.fail(report.file_path)
        for issue in report.errors:
            renderer.error(_issue_line(issue))
        for issue in report.warnings:
            renderer.warning(_issue_line(issue))
        if renderer.verbose:
            renderer.items([_issue_line(issue) for issue in report.suggestions], prefix="suggestion: ")
    renderer.blank()
    renderer.text(f"{len(reports) - failed}/{len(reports)} file(s) valid")
    return 1 if failed else 0


def _cmd_workflow(args: argparse.Namespace) -> int:
    with _open_context(args) as ctx:
        try:
            run = ctx.workflow_engine().run(args.name)
        except UnknownWorkflowError as exc:
            raise CLIError(str(exc), exit_code=2) from exc

    return _report_run(args, run, command="workflow")


def _cmd_ai_workflow(args: argparse.Namespace) -> int:
    config = _load_effective_config(args)
    try:
        require_env_value(config)
    except ConfigLoadError as exc:
        raise CLIError(str(exc), exit_code=2) from exc
    producer = build_producer(config)
    with _open_context(args, config=config) as ctx:
        dispatcher = ctx.dispatcher()
        assignments = dispatcher.assign(_parse_tickets(dispatcher, args.tickets))
        runner = ctx.agent_runner(producer)
        results = [
            runner.run(assignment.ticket_id)
            for assignment in assignments
            if assignment.status != "completed"
        ]
        run = None if _flag(args, "no_integrate") else ctx.workflow_engine().run(DEFAULT_WORKFLOW)

    if _flag(args, "json"):
        _emit_json(
            {
                "command": "ai-workflow",
                "agents": [result.to_payload() for result in results],
                "workflow": run.to_payload() if run is not None else None,
            }
        )
        return 0 if run is None or run.status == "completed" else WORKFLOW_FAILED_EXIT

    renderer = _get_renderer(args)
    renderer.table(
        ["Ticket", "Role", "Files", "Commit", "Checkpoint"],
        [
            [
                result.ticket_id,
                result.role,
                len(result.files),
                (result.commit or "-")[:10],
                f"{result.checkpoint_id} ({result.checkpoint_status})" if result.checkpoint_id else "-",
            ]
            for result in results
        ],
        title="Agent runs:",
    )
    for result in results:
        for item in result.files:
            if not item.valid:
                renderer.warning(f"{item.path} committed with validation errors: {'; '.join(item.errors)}")
    if run is None:
        return 0
    return _report_run(args, run, command="ai-workflow", renderer=renderer)


def _cmd_config(args: argparse.Namespace) -> int:
    config = _load_effective_config(args)
    profile = _optional_str(getattr(args, "profile", None))

    if _flag(args, "json"):
        _emit_json({"command": "config", "active_profile": profile, "config": redact_config(config)})
        return 0

    renderer = _get_renderer(args)
    renderer.kv("Active profile", profile or "(default)")
    renderer.text(dump_effective_config(config))
    return 0


def build_producer(config: Mapping[str, object]) -> ArtifactProducer:
    """Producer used by ``ai-workflow``; tests replace this seam."""

    return OpenAICompatibleProducer.from_config(config["producer"])  # type: ignore[arg-type]


# ---------------------------------------------------------------------------
# Rendering helpers
# ---------------------------------------------------------------------------


def _emit_json(payload: Mapping[str, object]) -> None:
    """Emit a JSON payload to stdout with deterministic formatting."""

    print(json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False))


def _get_renderer(args: argparse.Namespace) -> CLIRenderer:
    return create_renderer(no_color=_flag(args, "no_color"), verbose=_flag(args, "verbose"))


def _report_run(
    args: argparse.Namespace,
    run: WorkflowRun,
    *,
    command: str,
    renderer: CLIRenderer | None = None,
) -> int:
    exit_code = 0 if run.status == "completed" else WORKFLOW_FAILED_EXIT
    if _flag(args, "json"):
        _emit_json({"command": command, "run": run.to_payload()})
        return exit_code

    renderer = renderer or _get_renderer(args)
    renderer.heading(f"Workflow {run.workflow}: {run.status}")
    renderer.kv("Run", run.id)
    for name, result in run.step_results.items():
        label = f"{name} ({result.status})"
        if result.status == "failed":
            renderer.fail(f"{label}: {result.error}" if result.error else label)
        else:
            renderer.ok(label)
        for warning in _collect_warnings(result.details):
            renderer.warning(warning)
    if run.failed_step is not None:
        renderer.warning(f"failed at {run.failed_step}")
    return exit_code


def _collect_warnings(details: object) -> list[str]:
    """Every ``warnings`` list and ``lintWarning`` message in a step's (nested) details."""

    found: list[str] = []
    if isinstance(details, Mapping):
        for key, value in details.items():
            if key == "warnings" and isinstance(value, list):
                found.extend(str(item) for item in value)
            elif key == "lintWarning" and value:
                found.append(str(value))
            else:
                found.extend(_collect_warnings(value))
    elif isinstance(details, list):
        for item in details:
            found.extend(_collect_warnings(item))
    return found


def _issue_line(issue: object) -> str:
    line = getattr(issue, "line", None)
    location = f" (line {line})" if line is not None else ""
    return f"[{getattr(issue, 'category', '?')}] {getattr(issue, 'message', issue)}{location}"


def _money(value: object) -> str:
    return f"${float(value):.4f}"  # type: ignore[arg-type]


def _truncate(text: str, max_len: int) -> str:
    if len(text) <= max_len:
        return text
    return text[: max_len - 3] + "..."


# ---------------------------------------------------------------------------
# Helpers: config, paths, context
# ---------------------------------------------------------------------------


def _repo_root(args: argparse.Namespace) -> Path:
    raw = _require_str(getattr(args, "repo_root", None), "repo_root")
    candidate = Path(raw).expanduser().resolve()
    if not candidate.exists() or not candidate.is_dir():
        raise CLIError(f"repo root is not a directory: {candidate}", exit_code=2)
    return candidate


def _load_effective_config(args: argparse.Namespace) -> dict[str, object]:
    config_path: str | Path | None = _optional_str(getattr(args, "config_path", None))
    if config_path is None:
        candidate = _repo_root(args) / DEFAULT_CONFIG_FILE
        config_path = candidate if candidate.is_file() else None
    profile = _optional_str(getattr(args, "profile", None))

    try:
        return load_config(config_path, profile=profile)
    except (ConfigLoadError, ConfigValidationError) as exc:
        raise CLIError(str(exc), exit_code=2) from exc


def _open_context(
    args: argparse.Namespace,
    *,
    config: Mapping[str, object] | None = None,
) -> OrchestratorContext:
    return OrchestratorContext.open(
        config if config is not None else _load_effective_config(args),
        repo_root=_repo_root(args),
    )


def _resolve_input_path(raw: str, repo_root: Path) -> Path:
    candidate = Path(raw).expanduser()
    resolved = candidate if candidate.is_absolute() else repo_root / candidate
    if not resolved.is_file():
        raise CLIError(f"file not found: {raw}", exit_code=2)
    return resolved


def _parse_tickets(dispatcher: Dispatcher, raw: str) -> list[Ticket]:
    try:
        tickets = dispatcher.parse(raw)
    except (DispatchError, OSError) as exc:
        raise CLIError(f"unable to parse tickets: {exc}", exit_code=2) from exc
    if not tickets:
        raise CLIError("no tickets found", exit_code=2)
    return tickets


def _parse_role_overrides(values: Sequence[str]) -> dict[str, str]:
    overrides: dict[str, str] = {}
    for raw in values:
        ticket_id, sep, role = raw.partition("=")
        if not sep or not ticket_id.strip() or not role.strip():
            raise CLIError(f"invalid --role value {raw!r}; expected TICKET=ROLE", exit_code=2)
        overrides[ticket_id.strip().upper()] = role.strip()
    return overrides


# ---------------------------------------------------------------------------
# Helpers: argument parsing
# ---------------------------------------------------------------------------


def _require_str(value: object, name: str) -> str:
    if not isinstance(value, str):
        raise CLIError(f"invalid {name}: expected string", exit_code=2)
    cleaned = value.strip()
    if not cleaned:
        raise CLIError(f"invalid {name}: value cannot be empty", exit_code=2)
    return cleaned


def _optional_str(value: object) -> str | None:
    if value is None:
        return None
    if not isinstance(value, str):
        raise CLIError("invalid optional string argument", exit_code=2)
    cleaned = value.strip()
    return cleaned or None


def _flag(args: argparse.Namespace, name: str) -> bool:
    return bool(getattr(args, name, False))


def _string_sequence(value: object) -> tuple[str, ...]:
    if value is None:
        return ()
    if isinstance(value, str):
        cleaned = value.strip()
        return () if not cleaned else (cleaned,)
    parsed: list[str] = []
    for item in value:  # type: ignore[attr-defined]
        cleaned = str(item).strip()
        if cleaned:
            parsed.append(cleaned)
    return tuple(parsed)


__all__ = ["CLIError", "build_parser", "build_producer", "run_cli"]
