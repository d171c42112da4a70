"""
agent-foreman: orchestrator context

File: src/agent_foreman/context.py

Purpose
- Own everything a foreman process shares across subsystems: the effective
  config, the state store, the clock and sleep functions, the logging handle
  and the table of running resource samplers.
- Build each subsystem from that shared state on first use.

Functional requirements
- No module-level mutable state; every component is reached through a
  context instance.
- ``close()`` stops every sampler and shuts the logging pipeline down. It is
  safe to call twice.
"""

from __future__ import annotations

import secrets
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from types import TracebackType
from typing import Any

import structlog

from agent_foreman.dispatch.dispatcher import Dispatcher
from agent_foreman.dispatch.roles import RoleSpec, load_role_table
from agent_foreman.integration.git_engine import GitEngine
from agent_foreman.observability.logging import LoggingConfig, StructuredLoggingHandle, setup_structured_logging
from agent_foreman.oversight.gate import OversightGate
from agent_foreman.persistence.documents import DocumentStore
from agent_foreman.persistence.state_db import StateDB
from agent_foreman.producer.base import ArtifactProducer
from agent_foreman.recovery.failure_recovery import FailureRecovery
from agent_foreman.resources.governor import ResourceGovernor
from agent_foreman.resources.sampler import ProcessSample, SessionSampler
from agent_foreman.utils.clock import Clock, Sleeper, system_clock, system_sleep
from agent_foreman.validation.layer import ValidationLayer
from agent_foreman.workflow.agent_runner import AgentRunner
from agent_foreman.workflow.engine import WorkflowEngine

logger = structlog.get_logger(__name__)


@dataclass(slots=True)
class OrchestratorContext:
    """Shared state for one foreman process."""

    config: Mapping[str, Any]
    repo_root: Path
    store: DocumentStore
    clock: Clock = system_clock
    sleep: Sleeper = system_sleep
    session_id: str = field(default_factory=lambda: secrets.token_hex(6))
    logging_handle: StructuredLoggingHandle | None = None
    samplers: dict[str, SessionSampler] = field(default_factory=dict)
    _roles: dict[str, RoleSpec] | None = None
    _closed: bool = False

    @classmethod
    def open(
        cls,
        config: Mapping[str, Any],
        *,
        repo_root: Path | str = ".",
        clock: Clock = system_clock,
        sleep: Sleeper = system_sleep,
        setup_logging: bool = True,
    ) -> OrchestratorContext:
        root = Path(repo_root).expanduser().resolve()
        store = DocumentStore(StateDB(_resolve(root, config["paths"]["state_db"])))
        context = cls(config=config, repo_root=root, store=store, clock=clock, sleep=sleep)
        if setup_logging:
            observability = dict(config["observability"])
            observability["log_dir"] = str(_resolve(root, observability["log_dir"]))
            context.logging_handle = setup_structured_logging(
                LoggingConfig.from_observability(observability, session_id=context.session_id)
            )
        logger.debug("context_opened", repo_root=str(root))
        return context

    # Components -----------------------------------------------------------

    @property
    def roles(self) -> dict[str, RoleSpec]:
        if self._roles is None:
            self._roles = load_role_table(_resolve(self.repo_root, self.config["paths"]["roles_file"]))
        return self._roles

    def git(self) -> GitEngine:
        section = self.config["git"]
        return GitEngine(
            self.repo_root,
            main_branch=section["main_branch"],
            integration_branch=section["integration_branch"],
            remote=section["remote"],
        )

    def dispatcher(self) -> Dispatcher:
        return Dispatcher(
            self.store,
            self.roles,
            task_dir=_resolve(self.repo_root, self.config["paths"]["task_dir"]),
            clock=self.clock,
        )

    def recovery(self) -> FailureRecovery:
        return FailureRecovery(
            self.store,
            self.config["recovery"],
            clock=self.clock,
            sleep=self.sleep,
            branch_ops=self.git(),
        )

    def oversight(self) -> OversightGate:
        return OversightGate(self.store, self.config["oversight"], clock=self.clock)

    def governor(self) -> ResourceGovernor:
        return ResourceGovernor(self.store, self.config["resources"], clock=self.clock)

    def validation(self) -> ValidationLayer:
        return ValidationLayer(
            self.store,
            self.config["validation"],
            project_root=self.repo_root,
            clock=self.clock,
        )

    def workflow_engine(self) -> WorkflowEngine:
        return WorkflowEngine(
            self.git(),
            self.store,
            self.config,
            roles=self.roles,
            oversight=self.oversight(),
            dispatcher=self.dispatcher(),
            recovery=self.recovery(),
            clock=self.clock,
        )

    def agent_runner(self, producer: ArtifactProducer) -> AgentRunner:
        return AgentRunner(
            self.git(),
            self.dispatcher(),
            producer,
            self.validation(),
            governor=self.governor(),
            oversight=self.oversight(),
            recovery=self.recovery(),
            sampler_factory=self.sampler_for,
            sampler_release=self.release_sampler,
        )

    # Samplers -------------------------------------------------------------

    def sampler_for(self, session_id: str) -> SessionSampler:
        """Register a sampler for ``session_id``; ``close()`` stops any not yet released."""

        existing = self.samplers.get(session_id)
        if existing is not None:
            return existing
        section = self.config["resources"]
        sampler = SessionSampler(
            session_id,
            interval_seconds=float(section["sample_interval_seconds"]),
            retention=int(section["sample_retention"]),
            clock=self.clock,
        )
        self.samplers[session_id] = sampler
        return sampler

    def release_sampler(self, session_id: str) -> SessionSampler | None:
        """Stop and forget the sampler for a finished session."""

        sampler = self.samplers.pop(session_id, None)
        if sampler is not None:
            sampler.stop()
            logger.debug("sampler_stopped", session_id=session_id)
        return sampler

    def latest_sample(self) -> ProcessSample:
        """Most recent sample from any registered sampler, or a fresh one-off reading."""

        for sampler in reversed(list(self.samplers.values())):
            sample = sampler.latest()
            if sample is not None:
                return sample
        one_off = SessionSampler("limits-sample", interval_seconds=1.0, retention=1, clock=self.clock)
        return one_off.sample_once()

    # Lifecycle ------------------------------------------------------------

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        for session_id in list(self.samplers):
            self.release_sampler(session_id)
        if self.logging_handle is not None:
            self.logging_handle.shutdown()

    def __enter__(self) -> OrchestratorContext:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.close()


def _resolve(root: Path, raw: str) -> Path:
    path = Path(raw).expanduser()
    return path if path.is_absolute() else root / path


__all__ = ["OrchestratorContext"]
