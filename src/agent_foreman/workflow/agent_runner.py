"""
agent-foreman: agent runner

File: src/agent_foreman/workflow/agent_runner.py

Purpose
- Carry one assignment from ticket to reviewable branch: generate each target
  file through the artifact producer, validate it (with one repair attempt),
  write it with a companion test, commit, publish the branch when a remote is
  configured, and hand the resulting changeset to the oversight gate.

Functional requirements
- Target files are inferred from the ticket description and the owning role
  when the caller does not name them.
- Every producer call is tracked against a usage session for the ticket.
- The whole run is wrapped in failure recovery when a recovery subsystem is
  supplied; the assignment is completed only after the commit and checkpoint.
"""

from __future__ import annotations

import re
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath
from typing import TYPE_CHECKING, Final

import structlog

from agent_foreman.integration.git_engine import GitEngine
from agent_foreman.observability.logging import correlation_scope
from agent_foreman.oversight.gate import ChangedFile, Changeset
from agent_foreman.producer.base import ArtifactProducer, ProducerResult, strip_code_fences
from agent_foreman.producer.prompts import PromptRenderer
from agent_foreman.workflow.engine import is_test_path

if TYPE_CHECKING:
    from agent_foreman.dispatch.dispatcher import Assignment, Dispatcher, TaskInstructions
    from agent_foreman.dispatch.tickets import Ticket
    from agent_foreman.oversight.gate import OversightGate
    from agent_foreman.recovery.failure_recovery import FailureRecovery
    from agent_foreman.resources.governor import ResourceGovernor
    from agent_foreman.resources.sampler import ProcessSample, SessionSampler
    from agent_foreman.validation.layer import ValidationLayer

logger = structlog.get_logger(__name__)

_TESTABLE_SUFFIX_RE: Final[re.Pattern[str]] = re.compile(r"\.(ts|tsx|js|jsx)$")
_COMPONENT_RE: Final[re.Pattern[str]] = re.compile(r"(\w+)\s*component", re.IGNORECASE)
_PAGE_RE: Final[re.Pattern[str]] = re.compile(r"(\w+)\s*page", re.IGNORECASE)
_ENDPOINT_RE: Final[re.Pattern[str]] = re.compile(r"(\w+)\s*(?:api|endpoint)", re.IGNORECASE)


def infer_target_files(ticket: Ticket, role: str) -> list[str]:
    """Guess the files a ticket touches from keywords in its description."""

    description = ticket.description.lower()
    slug = ticket.id.lower()
    files: list[str] = []

    if role == "frontend":
        if "component" in description:
            match = _COMPONENT_RE.search(ticket.description)
            files.append(f"src/components/{match.group(1) if match else 'Component'}.tsx")
        elif "page" in description:
            match = _PAGE_RE.search(ticket.description)
            files.append(f"src/app/{match.group(1).lower() if match else 'page'}/page.tsx")
        elif "chat" in description or "prompt" in description:
            files.extend(("src/components/chat/ChatInterface.tsx", "src/components/chat/PromptSuggestions.tsx"))
        else:
            files.append(f"src/components/{slug}.tsx")
    elif role == "backend":
        if "api" in description or "endpoint" in description:
            match = _ENDPOINT_RE.search(ticket.description)
            files.append(f"src/app/api/{match.group(1).lower() if match else 'endpoint'}/route.ts")
        if "service" in description:
            files.append(f"src/lib/services/{slug}.ts")
    elif role == "database":
        if "model" in description or "schema" in description:
            files.append("prisma/schema.prisma")
        if "migration" in description:
            files.append(f"prisma/migrations/{slug}/migration.sql")

    return files or [f"src/{role}/{slug}.ts"]


def companion_test_path(path: str) -> str | None:
    """Companion test location for ``path``, or ``None`` when no test is generated."""

    if is_test_path(path):
        return None
    if _TESTABLE_SUFFIX_RE.search(path):
        return _TESTABLE_SUFFIX_RE.sub(r".test.\1", path)
    pure = PurePosixPath(path)
    if pure.suffix == ".py":
        return str(pure.with_name(f"test_{pure.name}"))
    return None


@dataclass(frozen=True, slots=True)
class GeneratedFile:
    path: str
    valid: bool
    repaired: bool = False
    errors: tuple[str, ...] = ()
    test_path: str | None = None

    def to_payload(self) -> dict[str, object]:
        return {
            "path": self.path,
            "valid": self.valid,
            "repaired": self.repaired,
            "errors": list(self.errors),
            "testPath": self.test_path,
        }


@dataclass(frozen=True, slots=True)
class AgentRunResult:
    ticket_id: str
    role: str
    branch: str
    commit: str | None
    files: tuple[GeneratedFile, ...]
    checkpoint_id: str | None = None
    checkpoint_status: str | None = None
    session_id: str | None = None
    usage: dict[str, int] = field(default_factory=dict)

    def to_payload(self) -> dict[str, object]:
        return {
            "ticketId": self.ticket_id,
            "role": self.role,
            "branch": self.branch,
            "commit": self.commit,
            "files": [item.to_payload() for item in self.files],
            "checkpointId": self.checkpoint_id,
            "checkpointStatus": self.checkpoint_status,
            "sessionId": self.session_id,
            "usage": dict(self.usage),
        }


class AgentRunner:
    """Runs one producer-backed agent against a dispatcher assignment."""

    def __init__(
        self,
        git: GitEngine,
        dispatcher: Dispatcher,
        producer: ArtifactProducer,
        validation: ValidationLayer,
        *,
        governor: ResourceGovernor | None = None,
        oversight: OversightGate | None = None,
        recovery: FailureRecovery | None = None,
        prompts: PromptRenderer | None = None,
        sampler_factory: Callable[[str], SessionSampler] | None = None,
        sampler_release: Callable[[str], object] | None = None,
    ) -> None:
        self._git = git
        self._dispatcher = dispatcher
        self._producer = producer
        self._validation = validation
        self._governor = governor
        self._oversight = oversight
        self._recovery = recovery
        self._prompts = prompts or PromptRenderer()
        self._sampler_factory = sampler_factory
        self._sampler_release = sampler_release

    def run(self, ticket_id: str, files: Sequence[str] | None = None) -> AgentRunResult:
        ticket = self._dispatcher.ticket(ticket_id)
        assignment = self._dispatcher.assignment(ticket.id)
        role = assignment.role

        with correlation_scope(agent_id=role, ticket_id=ticket.id):
            session_id = self._governor.start_session(role, ticket.id) if self._governor else None
            sampler = self._sampler_factory(session_id) if self._sampler_factory and session_id else None
            if sampler is not None:
                sampler.start()
            self._dispatcher.start(ticket.id)
            logger.info("agent_run_started", role=role, branch=assignment.branch_name)

            def operation() -> AgentRunResult:
                return self._execute(ticket, assignment, files, session_id)

            try:
                if self._recovery is None:
                    result = operation()
                else:
                    result = self._recovery.execute_with_recovery(
                        role,
                        ticket.id,
                        operation,
                        {"branch": assignment.branch_name, "role": role},
                    )
            finally:
                self._finish_session(session_id, sampler)

            self._dispatcher.complete(ticket.id)
            logger.info(
                "agent_run_finished",
                role=role,
                commit=result.commit,
                files=len(result.files),
                checkpoint_id=result.checkpoint_id,
            )
            return result

    def _finish_session(self, session_id: str | None, sampler: SessionSampler | None) -> None:
        samples: list[ProcessSample] = []
        if sampler is not None:
            sampler.stop()
            samples = sampler.samples()
            if self._sampler_release is not None:
                self._sampler_release(sampler.session_id)
        if self._governor is None or session_id is None:
            return
        if samples:
            self._governor.check_process_limits(samples[-1])
        self._governor.end_session(session_id, samples or None)

    def _execute(
        self,
        ticket: Ticket,
        assignment: Assignment,
        files: Sequence[str] | None,
        session_id: str | None,
    ) -> AgentRunResult:
        git = self._git
        role = assignment.role
        spec = self._dispatcher.roles[role]
        instructions = self._dispatcher.instructions_for(ticket, assignment)
        base_ref = git.integration_branch if git.branch_exists(git.integration_branch) else git.main_branch
        git.ensure_branch(assignment.branch_name, base=base_ref)

        usage = {"inputTokens": 0, "outputTokens": 0, "calls": 0}
        targets = list(files) if files else infer_target_files(ticket, role)
        generated: list[GeneratedFile] = []
        written: list[str] = []

        for path in targets:
            target = git.repo_path / path
            existing = target.read_text(encoding="utf-8") if target.is_file() else None
            prompt = self._prompts.generate(
                persona=spec.persona, ticket=ticket, path=path, instructions=instructions, existing=existing
            )
            artifact = self._produce(role, prompt, instructions, session_id, usage)
            context = {"ticket": ticket.id, "agent": role}
            report = self._validation.validate(artifact, path, context)
            repaired = False
            if not report.valid:
                logger.warning("artifact_invalid", file_path=path, errors=len(report.errors))
                repair_prompt = self._prompts.repair(
                    persona=spec.persona, path=path, artifact=artifact, issues=report.errors
                )
                artifact = self._produce(role, repair_prompt, instructions, session_id, usage)
                report = self._validation.validate(artifact, path, {**context, "attempt": 2})
                repaired = True
                if not report.valid:
                    logger.warning("artifact_still_invalid", file_path=path, errors=len(report.errors))

            _write(target, artifact)
            written.append(path)

            test_path = companion_test_path(path)
            if test_path is not None:
                tests_prompt = self._prompts.tests(
                    persona=spec.persona, path=path, test_path=test_path, artifact=artifact
                )
                _write(git.repo_path / test_path, self._produce(role, tests_prompt, instructions, session_id, usage))
                written.append(test_path)

            generated.append(
                GeneratedFile(
                    path=path,
                    valid=report.valid,
                    repaired=repaired,
                    errors=tuple(issue.message for issue in report.errors),
                    test_path=test_path,
                )
            )

        git.add(*written)
        commit = None
        if git.has_staged_changes():
            commit = git.commit(f"feat({ticket.id}): {ticket.description}")
        else:
            logger.info("agent_run_no_changes", role=role)
        if commit is not None and git.has_remote():
            # integration workflows discover agent branches on the remote
            git.push(assignment.branch_name)
            logger.info("agent_branch_pushed", branch=assignment.branch_name, remote=git.remote)

        checkpoint_id = checkpoint_status = None
        if self._oversight is not None and commit is not None:
            changeset = self._changeset(base_ref, ticket)
            checkpoint = self._oversight.create_checkpoint(
                role,
                ticket.id,
                changeset,
                {"branch": assignment.branch_name, "commit": commit},
            )
            checkpoint_id, checkpoint_status = checkpoint.id, checkpoint.status

        return AgentRunResult(
            ticket_id=ticket.id,
            role=role,
            branch=assignment.branch_name,
            commit=commit,
            files=tuple(generated),
            checkpoint_id=checkpoint_id,
            checkpoint_status=checkpoint_status,
            session_id=session_id,
            usage=usage,
        )

    def _produce(
        self,
        role: str,
        prompt: str,
        instructions: TaskInstructions,
        session_id: str | None,
        usage: dict[str, int],
    ) -> str:
        result: ProducerResult = self._producer.generate(role, prompt, model=instructions.suggested_model)
        usage["inputTokens"] += result.usage.input_tokens
        usage["outputTokens"] += result.usage.output_tokens
        usage["calls"] += 1
        if self._governor is not None and session_id is not None:
            self._governor.track_api_call(
                session_id, result.usage.model, result.usage.input_tokens, result.usage.output_tokens
            )
        return strip_code_fences(result.text)

    def _changeset(self, base_ref: str, ticket: Ticket) -> Changeset:
        # Full content: classification matches anywhere in the file. Previews are cut in show_diff.
        entries = []
        for entry in self._git.changed_files(base_ref, "HEAD"):
            target = self._git.repo_path / entry.path
            content = target.read_text(encoding="utf-8", errors="replace") if target.is_file() else None
            entries.append(ChangedFile(entry.path, entry.additions, entry.deletions, content))
        return Changeset(files=tuple(entries), description=ticket.description)


def _write(target: Path, text: str) -> None:
    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_text(text, encoding="utf-8")


__all__ = [
    "AgentRunResult",
    "AgentRunner",
    "GeneratedFile",
    "infer_target_files",
    "companion_test_path",
]
