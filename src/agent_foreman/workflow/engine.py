"""
agent-foreman: workflow engine

File: src/agent_foreman/workflow/engine.py

Purpose
- Run a named integration workflow step by step against the local repository:
  fetch agent branches, review them, check boundaries, run tests, detect and
  resolve conflicts, merge into the integration branch, validate it and
  publish to the mainline.

Functional requirements
- Steps run in declared order and each result is persisted before the next
  step starts.
- A step that raises is recorded as ``failed``, optionally followed by a
  ``rollback`` step (hard reset plus clean), and the remaining steps are
  skipped.
- Test failures in ``run-tests`` are soft: recorded as ``failed`` and the run
  continues.
- Integration validation failures stop the run unless
  ``workflow.can_override_any_agent`` is set.
- Branches with queued or rejected oversight checkpoints are never merged.
- The last 50 runs are kept in the ``workflow_runs`` document.
"""

from __future__ import annotations

import secrets
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import timedelta
from pathlib import PurePosixPath
from typing import TYPE_CHECKING, Final

import structlog

from agent_foreman.constants import DEFAULT_BRANCH_PREFIXES, WORKFLOW_RUNS_DOCUMENT
from agent_foreman.integration.commands import CommandResult, run_command
from agent_foreman.integration.conflict_resolution import (
    ConflictResolver,
    MergeAbortedError,
    resolve_merge_conflicts,
)
from agent_foreman.integration.git_engine import BranchHead, GitEngine, GitEngineError
from agent_foreman.observability.logging import correlation_scope
from agent_foreman.persistence.documents import DocumentStore, Payload, append_capped
from agent_foreman.utils.clock import Clock, isoformat_z, system_clock
from agent_foreman.validation.rules import check_security
from agent_foreman.workflow.steps import (
    ROLLBACK_STEP,
    StepFailedError,
    StepKind,
    StepResult,
    StepStatus,
    WorkflowRun,
    order_by_tier,
    resolve_workflow,
    role_for_branch,
    ticket_for_branch,
)

if TYPE_CHECKING:
    from agent_foreman.dispatch.dispatcher import Dispatcher
    from agent_foreman.dispatch.roles import RoleSpec
    from agent_foreman.oversight.gate import OversightGate
    from agent_foreman.recovery.failure_recovery import FailureRecovery

CommandRunner = Callable[..., CommandResult]

logger = structlog.get_logger(__name__)

RUN_HISTORY_CAP: Final[int] = 50
DOC_FILE_THRESHOLD: Final[int] = 5
_SCANNED_SUFFIXES: Final[frozenset[str]] = frozenset({".js", ".jsx", ".ts", ".tsx", ".mjs", ".cjs", ".py"})
_ENGINE_AGENT: Final[str] = "foreman"


def _empty_runs() -> Payload:
    return {"runs": []}


def is_test_path(path: str) -> bool:
    name = PurePosixPath(path).name
    lowered = path.lower()
    return (
        ".test." in name
        or ".spec." in name
        or name.startswith("test_")
        or lowered.startswith(("tests/", "__tests__/", "e2e/"))
        or "/__tests__/" in lowered
    )


def is_doc_path(path: str) -> bool:
    lowered = path.lower()
    return "readme" in lowered or lowered.endswith(".md") or lowered.startswith("docs/") or "/docs/" in lowered


@dataclass(slots=True)
class StepOutcome:
    status: StepStatus = "completed"
    details: dict[str, object] = field(default_factory=dict)
    error: str | None = None


@dataclass(slots=True)
class _RunState:
    branches: list[str] = field(default_factory=list)
    approved: list[str] = field(default_factory=list)
    merged: list[str] = field(default_factory=list)
    integration_base: str | None = None
    integration_ok: bool | None = None


class WorkflowEngine:
    """Executes the named workflows in ``WORKFLOWS`` through one step dispatcher."""

    def __init__(
        self,
        git: GitEngine,
        store: DocumentStore,
        config: Mapping[str, Mapping[str, object]],
        *,
        roles: Mapping[str, RoleSpec],
        oversight: OversightGate | None = None,
        dispatcher: Dispatcher | None = None,
        recovery: FailureRecovery | None = None,
        clock: Clock = system_clock,
        runner: CommandRunner = run_command,
    ) -> None:
        git_config = config.get("git", {})
        workflow_config = config.get("workflow", {})
        self._git = git
        self._store = store
        self._roles = roles
        self._oversight = oversight
        self._dispatcher = dispatcher
        self._recovery = recovery
        self._clock = clock
        self._runner = runner

        self.branch_prefixes = tuple(git_config.get("branch_prefixes", DEFAULT_BRANCH_PREFIXES))  # type: ignore[arg-type]
        self.ready_max_age_hours = float(git_config.get("ready_max_age_hours", 24.0))  # type: ignore[arg-type]
        self.can_override_boundaries = bool(workflow_config.get("can_override_boundaries", True))
        self.can_override_any_agent = bool(workflow_config.get("can_override_any_agent", False))
        self.auto_resolve_conflicts = bool(workflow_config.get("auto_resolve_conflicts", True))
        self.rollback_on_failure = bool(workflow_config.get("rollback_on_failure", True))
        self.build_command = str(workflow_config.get("build_command", "") or "")
        self.test_command = str(workflow_config.get("test_command", "") or "")
        self.lint_command = str(workflow_config.get("lint_command", "") or "")
        self.install_command = str(workflow_config.get("install_command", "") or "")
        self.command_timeout_seconds = float(workflow_config.get("command_timeout_seconds", 900.0))  # type: ignore[arg-type]
        self._resolver = ConflictResolver(
            default=workflow_config.get("conflict_default", "theirs"),  # type: ignore[arg-type]
        )

    # Public API -----------------------------------------------------------

    def run(self, workflow: str) -> WorkflowRun:
        steps = resolve_workflow(workflow)
        started = self._clock()
        run = WorkflowRun(
            id=f"{workflow}-{int(started.timestamp() * 1000)}-{secrets.token_hex(2)}",
            workflow=workflow,
            start_time=isoformat_z(started),
        )
        state = _RunState()

        with correlation_scope(workflow_run_id=run.id):
            logger.info("workflow_started", workflow=workflow, steps=[step.value for step in steps])
            self._persist(run)
            for kind in steps:
                try:
                    outcome = self._dispatch(kind, state)
                except Exception as exc:
                    details = exc.details if isinstance(exc, StepFailedError) else {}
                    logger.error("workflow_step_failed", step=kind.value, error=str(exc))
                    run.record(kind.value, self._result("failed", details, str(exc)))
                    self._persist(run)
                    if self.rollback_on_failure:
                        self._rollback(run)
                    run.status = "failed"
                    break
                run.record(kind.value, self._result(outcome.status, outcome.details, outcome.error))
                self._persist(run)
                logger.info("workflow_step_finished", step=kind.value, status=outcome.status)
            else:
                run.status = "completed"

            run.end_time = isoformat_z(self._clock())
            self._persist(run)
            logger.info("workflow_finished", workflow=workflow, status=run.status)
        return run

    def runs(self) -> list[WorkflowRun]:
        payload = self._store.read(WORKFLOW_RUNS_DOCUMENT, _empty_runs)
        return [WorkflowRun.from_payload(item) for item in payload.get("runs", [])]  # type: ignore[union-attr]

    # Dispatch -------------------------------------------------------------

    def _dispatch(self, kind: StepKind, state: _RunState) -> StepOutcome:
        match kind:
            case StepKind.FETCH:
                return self._fetch(state)
            case StepKind.REVIEW:
                return self._review(state)
            case StepKind.VALIDATE_BOUNDARIES:
                return self._validate_boundaries(state)
            case StepKind.RUN_TESTS:
                return self._run_tests()
            case StepKind.CHECK_CONFLICTS:
                return self._check_conflicts(state)
            case StepKind.MERGE_TO_INTEGRATION:
                return self._merge_to_integration(state)
            case StepKind.VALIDATE_INTEGRATION:
                return self._validate_integration(state)
            case StepKind.PUSH_TO_MAIN:
                return self._push_to_main(state)
            case StepKind.COLLECT_READY_BRANCHES:
                return self._collect_ready_branches(state)
            case StepKind.ORDER_BY_DEPENDENCY:
                return self._order_by_dependency(state)
            case StepKind.SEQUENTIAL_INTEGRATION:
                return self._sequential_integration(state)
            case StepKind.FULL_REGRESSION:
                return self._full_regression()
        raise AssertionError(f"unhandled step kind {kind!r}")

    # Standard integration steps -------------------------------------------

    def _fetch(self, state: _RunState) -> StepOutcome:
        self._fetch_remote("fetch")
        state.branches = [branch.name for branch in self._candidate_branches()]
        return StepOutcome(details={"branches": list(state.branches)})

    def _review(self, state: _RunState) -> StepOutcome:
        reviews: dict[str, object] = {}
        state.approved = []
        for branch in state.branches:
            files = [entry.path for entry in self._git.changed_files(self._git.integration_branch, self._ref(branch))]
            issues: list[str] = []
            warnings: list[str] = []
            if not any(is_test_path(path) for path in files):
                issues.append("No test files found")
            if len(files) > DOC_FILE_THRESHOLD and not any(is_doc_path(path) for path in files):
                warnings.append("No documentation updates for significant changes")
            blockers = self._merge_blockers(branch)
            if blockers:
                issues.append(f"Awaiting human review ({len(blockers)} checkpoint(s))")
            passed = not issues
            if passed:
                state.approved.append(branch)
            reviews[branch] = {"passed": passed, "files": len(files), "issues": issues, "warnings": warnings}
            logger.info("branch_reviewed", branch=branch, passed=passed, issues=len(issues))
        return StepOutcome(details={"branches": reviews, "approved": list(state.approved)})

    def _validate_boundaries(self, state: _RunState) -> StepOutcome:
        violations: dict[str, list[dict[str, str]]] = {}
        for branch in state.approved:
            role = role_for_branch(branch)
            spec = self._roles.get(role) if role is not None else None
            if spec is None:
                continue
            found: list[dict[str, str]] = []
            for entry in self._git.changed_files(self._git.integration_branch, self._ref(branch)):
                if spec.permits(entry.path):
                    continue
                excluded = spec.excludes(entry.path)
                found.append({"file": entry.path, "type": "excluded" if excluded else "not-allowed"})
            if found:
                violations[branch] = found
                logger.warning("boundary_violation", branch=branch, role=role, files=len(found))

        details: dict[str, object] = {"violations": violations, "overridden": bool(violations)}
        if violations and not self.can_override_boundaries:
            details["overridden"] = False
            raise StepFailedError(
                StepKind.VALIDATE_BOUNDARIES.value,
                f"boundary violations on {', '.join(sorted(violations))}",
                details=details,
            )
        return StepOutcome(details=details)

    def _run_tests(self) -> StepOutcome:
        if not self.test_command:
            return StepOutcome(status="skipped", details={"reason": "no test command configured"})
        result = self._command(self.test_command)
        details: dict[str, object] = {"passed": result.ok, "command": result.to_dict()}
        if result.ok:
            return StepOutcome(details=details)
        details["canOverride"] = True
        logger.warning("tests_failed", returncode=result.returncode, timed_out=result.timed_out)
        return StepOutcome(status="failed", details=details, error="tests failed")

    def _check_conflicts(self, state: _RunState) -> StepOutcome:
        conflicts: dict[str, list[str]] = {}
        for branch in state.approved:
            dry_run = self._git.dry_run_merge(self._ref(branch), self._git.integration_branch)
            if not dry_run.clean_merge:
                conflicts[branch] = list(dry_run.conflicts)
        return StepOutcome(details={"conflicts": conflicts, "clean": not conflicts})

    def _merge_to_integration(self, state: _RunState) -> StepOutcome:
        git = self._git
        git.checkout(git.integration_branch)
        state.integration_base = git.rev_parse("HEAD")
        merges: dict[str, object] = {}
        for branch in state.approved:
            status = self._merge_branch(branch)
            merges[branch] = status
            if status in {"merged", "merged-with-conflicts"}:
                state.merged.append(branch)
        return StepOutcome(details={"merges": merges, "merged": list(state.merged)})

    def _validate_integration(self, state: _RunState) -> StepOutcome:
        checks: dict[str, object] = {}
        failures: list[str] = []
        for label, command in (("build", self.build_command), ("tests", self.test_command)):
            if not command:
                continue
            result = self._command(command)
            checks[label] = result.ok
            if not result.ok:
                failures.append(label)
        if self.lint_command:
            lint = self._command(self.lint_command)
            checks["lint"] = lint.ok
            if not lint.ok:
                checks["lintWarning"] = "lint reported problems"

        findings = self._scan_for_secrets(state.integration_base)
        checks["security"] = findings
        if findings:
            failures.append("security")

        state.integration_ok = not failures
        details: dict[str, object] = {"checks": checks, "failures": failures}
        if not failures:
            return StepOutcome(details=details)
        if self.can_override_any_agent:
            details["overridden"] = True
            logger.warning("integration_validation_overridden", failures=failures)
            return StepOutcome(status="failed", details=details, error=f"integration validation failed: {', '.join(failures)}")
        raise StepFailedError(
            StepKind.VALIDATE_INTEGRATION.value,
            f"integration validation failed: {', '.join(failures)}",
            details=details,
        )

    def _push_to_main(self, state: _RunState) -> StepOutcome:
        if state.integration_ok is False and not self.can_override_any_agent:
            return StepOutcome(status="skipped", details={"reason": "integration validation failed"})
        if not state.merged:
            return StepOutcome(status="skipped", details={"reason": "no branches merged"})

        git = self._git
        try:
            git.checkout(git.main_branch)
            release = git.merge(git.integration_branch, message=f"Release {git.integration_branch} into {git.main_branch}")
            if not release.clean:
                raise GitEngineError(f"{git.main_branch} diverged from {git.integration_branch}: {', '.join(release.conflicts)}")
            if git.has_remote():
                self._with_recovery("push-to-main", lambda: git.push(git.main_branch))
                self._with_recovery("push-to-main", lambda: git.push(git.integration_branch))
            deleted = self._delete_merged(state.merged)
        except GitEngineError as exc:
            self._return_to_main()
            raise StepFailedError(StepKind.PUSH_TO_MAIN.value, str(exc)) from exc
        for branch in state.merged:
            self._complete_assignment(branch)
        return StepOutcome(details={"pushed": git.has_remote(), "deletedBranches": deleted})

    # Sequential integration steps -----------------------------------------

    def _collect_ready_branches(self, state: _RunState) -> StepOutcome:
        self._fetch_remote("collect-ready-branches")
        cutoff = self._clock() - timedelta(hours=self.ready_max_age_hours)
        branches = self._candidate_branches()
        state.branches = [branch.name for branch in branches if branch.committed_at >= cutoff]
        stale = [branch.name for branch in branches if branch.committed_at < cutoff]
        return StepOutcome(details={"ready": list(state.branches), "stale": stale})

    def _order_by_dependency(self, state: _RunState) -> StepOutcome:
        state.branches = order_by_tier(state.branches)
        return StepOutcome(details={"order": list(state.branches)})

    def _sequential_integration(self, state: _RunState) -> StepOutcome:
        git = self._git
        git.checkout(git.integration_branch)
        state.integration_base = git.rev_parse("HEAD")
        results: dict[str, object] = {}
        for branch in state.branches:
            if self._merge_blockers(branch):
                results[branch] = "awaiting-review"
                continue
            outcome = git.merge(self._ref(branch), message=f"Integrate {branch}")
            if not outcome.clean:
                git.abort_merge()
                results[branch] = "skipped-conflict"
                logger.warning("sequential_merge_conflict", branch=branch, conflicts=list(outcome.conflicts))
                continue
            if self.build_command and not self._command(self.build_command).ok:
                git.reset_hard("HEAD~1")
                results[branch] = "reverted-build-failure"
                logger.warning("sequential_merge_reverted", branch=branch)
                continue
            state.merged.append(branch)
            results[branch] = "merged"
        return StepOutcome(details={"results": results, "merged": list(state.merged)})

    def _full_regression(self) -> StepOutcome:
        checks: dict[str, object] = {}
        for label, command in (("build", self.build_command), ("tests", self.test_command)):
            if not command:
                continue
            result = self._command(command)
            checks[label] = result.ok
            if not result.ok:
                raise StepFailedError(
                    StepKind.FULL_REGRESSION.value,
                    f"{label} failed on {self._git.integration_branch}",
                    details={"checks": checks, "command": result.to_dict()},
                )
        return StepOutcome(details={"checks": checks})

    # Helpers --------------------------------------------------------------

    def _merge_branch(self, branch: str) -> str:
        git = self._git
        outcome = git.merge(self._ref(branch), message=f"Integrate {branch}")
        if outcome.clean:
            logger.info("branch_merged", branch=branch)
            return "merged"
        if not self.auto_resolve_conflicts:
            git.abort_merge()
            logger.warning("merge_conflict_skipped", branch=branch, conflicts=list(outcome.conflicts))
            return "skipped-conflict"
        try:
            resolve_merge_conflicts(
                git,
                self._resolver,
                source=branch,
                regenerate_command=self.install_command or None,
                timeout_seconds=self.command_timeout_seconds,
            )
        except MergeAbortedError:
            return "skipped-conflict"
        logger.info("branch_merged", branch=branch, conflicts=len(outcome.conflicts))
        return "merged-with-conflicts"

    def _merge_blockers(self, branch: str) -> list[object]:
        if self._oversight is None:
            return []
        ticket_id = self._ticket_for(branch)
        if ticket_id is None:
            return []
        return list(self._oversight.merge_blockers(ticket_id))

    def _ticket_for(self, branch: str) -> str | None:
        if self._dispatcher is not None:
            for assignment in self._dispatcher.assignments():
                if assignment.branch_name == branch:
                    return assignment.ticket_id
        return ticket_for_branch(branch)

    def _complete_assignment(self, branch: str) -> None:
        if self._dispatcher is None:
            return
        for assignment in self._dispatcher.assignments():
            if assignment.branch_name == branch and assignment.status != "completed":
                self._dispatcher.complete(assignment.ticket_id)

    def _scan_for_secrets(self, base: str | None) -> list[dict[str, object]]:
        git = self._git
        since = base if base is not None else "HEAD~1"
        findings: list[dict[str, object]] = []
        for entry in git.changed_files(since, "HEAD"):
            if entry.status == "D" or PurePosixPath(entry.path).suffix not in _SCANNED_SUFFIXES:
                continue
            target = git.repo_path / entry.path
            if not target.is_file():
                continue
            outcome = check_security(target.read_text(encoding="utf-8", errors="replace"))
            for issue in outcome.errors:
                findings.append({"file": entry.path, "issue": issue.message})
        return findings

    def _candidate_branches(self) -> list[BranchHead]:
        # Without a remote, agent branches only exist locally.
        if self._git.has_remote():
            return self._git.remote_branches(self.branch_prefixes)
        return self._git.local_branches(self.branch_prefixes)

    def _delete_merged(self, merged: list[str]) -> list[str]:
        git = self._git
        deleted: list[str] = []
        for branch in merged:
            removed = git.has_remote() and git.delete_remote_branch(branch)
            if git.branch_exists(branch) and branch != git.current_branch():
                try:
                    git.delete_branch(branch)
                except GitEngineError as exc:
                    logger.warning("local_branch_delete_failed", branch=branch, error=str(exc))
                else:
                    removed = True
            if removed:
                deleted.append(branch)
        return deleted

    def _fetch_remote(self, step: str) -> None:
        if self._git.has_remote():
            self._with_recovery(step, self._git.fetch)

    def _with_recovery(self, step: str, operation: Callable[[], object]) -> None:
        if self._recovery is None:
            operation()
            return
        self._recovery.execute_with_recovery(_ENGINE_AGENT, step, operation, {"step": step})

    def _command(self, command: str) -> CommandResult:
        return self._runner(command, cwd=self._git.repo_path, timeout_seconds=self.command_timeout_seconds)

    def _ref(self, branch: str) -> str:
        return f"{self._git.remote}/{branch}" if self._git.has_remote() else branch

    def _rollback(self, run: WorkflowRun) -> None:
        git = self._git
        try:
            git.abort_merge()
            git.reset_hard("HEAD")
            git.clean()
        except GitEngineError as exc:
            logger.error("rollback_failed", error=str(exc))
            run.record(ROLLBACK_STEP, self._result("failed", {}, str(exc)))
        else:
            logger.warning("workflow_rolled_back", run_id=run.id)
            run.record(ROLLBACK_STEP, self._result("completed", {"reset": "HEAD", "clean": True}))
        self._persist(run)

    def _return_to_main(self) -> None:
        try:
            self._git.abort_merge()
            self._git.checkout(self._git.main_branch)
        except GitEngineError as exc:
            logger.error("return_to_main_failed", error=str(exc))

    def _result(self, status: StepStatus, details: Mapping[str, object], error: str | None = None) -> StepResult:
        return StepResult(status=status, timestamp=isoformat_z(self._clock()), details=dict(details), error=error)

    def _persist(self, run: WorkflowRun) -> None:
        snapshot = run.to_payload()

        def mutate(payload: Payload) -> None:
            runs: list[dict[str, object]] = payload.setdefault("runs", [])  # type: ignore[assignment]
            for index, item in enumerate(runs):
                if item.get("id") == run.id:
                    runs[index] = snapshot
                    return
            append_capped(runs, snapshot, RUN_HISTORY_CAP)

        self._store.update(WORKFLOW_RUNS_DOCUMENT, mutate, default_factory=_empty_runs)


__all__ = [
    "DOC_FILE_THRESHOLD",
    "RUN_HISTORY_CAP",
    "CommandRunner",
    "StepOutcome",
    "WorkflowEngine",
    "is_doc_path",
    "is_test_path",
]
