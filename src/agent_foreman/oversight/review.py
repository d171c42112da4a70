"""Interactive review loop over the oversight queue."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from typing import Final, Literal

import structlog
from rich.console import Console
from rich.prompt import Prompt

from agent_foreman.oversight.gate import OversightGate, ReviewCheckpoint

ReviewOutcome = Literal["approved", "rejected", "skipped"]
Ask = Callable[..., str]

ACTIONS: Final[dict[str, str]] = {
    "a": "Approve",
    "r": "Reject",
    "d": "View diff",
    "c": "Add comment",
    "s": "Skip (review later)",
}

logger = structlog.get_logger(__name__)


@dataclass(frozen=True, slots=True)
class ReviewDecision:
    checkpoint_id: str
    outcome: ReviewOutcome
    reason: str | None = None


class ReviewSession:
    """Walk the pending queue in priority order and ask a human for each entry.

    Viewing the diff and commenting loop back to the action prompt; approve,
    reject and skip move on to the next entry.
    """

    def __init__(
        self,
        gate: OversightGate,
        *,
        reviewer: str = "human",
        console: Console | None = None,
        ask: Ask = Prompt.ask,
    ) -> None:
        self._gate = gate
        self._reviewer = reviewer
        self._console = console or Console()
        self._ask = ask

    def run(self) -> list[ReviewDecision]:
        decisions: list[ReviewDecision] = []
        entries = self._gate.queue()
        if not entries:
            self._console.print("No checkpoints awaiting review.")
            return decisions
        for entry in entries:
            checkpoint = self._gate.checkpoint(entry.checkpoint_id)
            if checkpoint.status != "pending":
                continue
            decisions.append(self.review(checkpoint))
        return decisions

    def review(self, checkpoint: ReviewCheckpoint) -> ReviewDecision:
        self._present(checkpoint)
        while True:
            action = self._ask(
                "Action",
                choices=list(ACTIONS),
                default="s",
                console=self._console,
            )
            if action == "a":
                self._gate.approve(checkpoint.id, self._reviewer)
                return ReviewDecision(checkpoint.id, "approved")
            if action == "r":
                reason = self._ask("Rejection reason", console=self._console).strip()
                if not reason:
                    self._console.print("A rejection needs a reason.")
                    continue
                self._gate.reject(checkpoint.id, self._reviewer, reason)
                return ReviewDecision(checkpoint.id, "rejected", reason)
            if action == "d":
                self._console.print(self._gate.show_diff(checkpoint.id), markup=False, highlight=False)
                continue
            if action == "c":
                comment = self._ask("Comment", console=self._console).strip()
                if comment:
                    self._gate.add_comment(checkpoint.id, self._reviewer, comment)
                    self._console.print("Comment added.")
                continue
            logger.debug("review_skipped", checkpoint_id=checkpoint.id)
            return ReviewDecision(checkpoint.id, "skipped")

    def _present(self, checkpoint: ReviewCheckpoint) -> None:
        console = self._console
        console.rule(f"APPROVAL REQUEST: {checkpoint.type.value}")
        console.print(f"Agent: {checkpoint.agent_id}", markup=False)
        console.print(f"Task: {checkpoint.task_id}", markup=False)
        console.print(f"Time: {checkpoint.timestamp}", markup=False)
        if checkpoint.changeset.description:
            console.print(f"Description: {checkpoint.changeset.description}", markup=False)
        console.print("Changes:")
        for item in checkpoint.changeset.files:
            console.print(f"  - {item.path} (+{item.additions}/-{item.deletions})", markup=False)
        risks = checkpoint.metadata.get("risks")
        if isinstance(risks, list) and risks:
            console.print("Identified risks:")
            for risk in risks:
                console.print(f"  - {risk}", markup=False)
        console.print("Options: " + ", ".join(f"[{key}] {label}" for key, label in ACTIONS.items()), markup=False)


__all__ = ["ACTIONS", "ReviewDecision", "ReviewSession"]
