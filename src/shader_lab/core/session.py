from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from shader_lab.core.types import ControllerState

if TYPE_CHECKING:
    from shader_lab.core.protocols import HistorySink
    from shader_lab.core.types import Artifact, EvaluationVerdict


@dataclass
class Session:
    """Mutable state for one prompt session, passed to every controller step."""

    history: HistorySink
    prompt: str = ""
    session_id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    state: ControllerState = ControllerState.IDLE
    status: str = "Idle."
    artifact: Artifact | None = None
    verdict: EvaluationVerdict | None = None
    commentary: str = ""
    next_index: int = 0
    manual_iterations: int = 0
    epoch: int = 0
    verdict_cache: dict[str, EvaluationVerdict] = field(default_factory=dict)

    def reset(self, prompt: str) -> int:
        """Start a brand-new prompt session and clear its history."""
        self.prompt = prompt
        self.session_id = uuid.uuid4().hex[:12]
        self.state = ControllerState.IDLE
        self.status = "Idle."
        self.artifact = None
        self.verdict = None
        self.commentary = ""
        self.next_index = 0
        self.manual_iterations = 0
        self.verdict_cache.clear()
        self.history.reset()
        return self.begin_action()

    def begin_action(self) -> int:
        self.epoch += 1
        return self.epoch

    def abandon(self) -> None:
        self.epoch += 1
        self.state = ControllerState.IDLE
        self.status = "Session abandoned."

    def is_current(self, epoch: int) -> bool:
        return self.epoch == epoch

    def allocate_index(self) -> int:
        index = self.next_index
        self.next_index += 1
        return index

    @property
    def diagnostic_log(self) -> str:
        return self.verdict.diagnostic_log if self.verdict is not None else ""
