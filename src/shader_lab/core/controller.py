from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from rich.console import Console
from rich.markup import escape

from shader_lab.core.errors import FailureKind, MalformedResponse, TransportFailure
from shader_lab.core.types import (
    ControllerState,
    EvaluationVerdict,
    IterationKind,
    IterationRecord,
    LabConfig,
    ParsedResponse,
    ParseStrategy,
)

if TYPE_CHECKING:
    from shader_lab.core.protocols import Evaluator, GenerativeBackend, ResponseParser
    from shader_lab.core.requests import RequestBuilder
    from shader_lab.core.session import Session

console = Console()
logger = logging.getLogger(__name__)


@dataclass
class StepOutcome:
    state: ControllerState
    status: str
    artifact: str | None = None
    verdict: EvaluationVerdict | None = None
    records: list[IterationRecord] = field(default_factory=list)
    attempts: int = 0
    discarded: bool = False
    error: str = ""


class _Discarded(Exception):
    """The session moved on while a step was suspended."""


class IterationController:
    """Generate -> evaluate -> refine loop for one session at a time.

    Each public entry point runs the initiating attempt plus up to
    config.max_auto_iterations automatic retries, appending exactly one
    IterationRecord per completed attempt.
    """

    def __init__(
        self,
        generator: GenerativeBackend,
        parser: ResponseParser,
        evaluator: Evaluator,
        request_builder: RequestBuilder,
        config: LabConfig,
    ) -> None:
        self.generator = generator
        self.parser = parser
        self.evaluator = evaluator
        self.request_builder = request_builder
        self.config = config

    async def submit_prompt(self, session: Session, prompt: str) -> StepOutcome:
        epoch = session.reset(prompt)
        console.print("\n[bold blue]Generating initial shader...[/bold blue]")
        return await self._run(session, epoch, IterationKind.INITIAL, feedback=None)

    async def submit_feedback(self, session: Session, feedback: str | None = None) -> StepOutcome:
        if session.artifact is None:
            raise ValueError("Nothing to iterate on: submit a prompt first")
        epoch = session.begin_action()
        console.print("\n[bold blue]Iterating on current shader...[/bold blue]")
        return await self._run(session, epoch, IterationKind.MANUAL_ITERATION, feedback)

    async def manual_compile(self, session: Session, artifact: str) -> StepOutcome:
        """Evaluate a user-edited artifact without calling the generative backend."""
        epoch = session.begin_action()
        session.state = ControllerState.EVALUATING
        verdict = await self._evaluate(session, artifact)
        if not session.is_current(epoch):
            return self._discarded(session)

        index = session.allocate_index()
        record = session.history.append(IterationRecord(
            index=index,
            prompt=session.prompt,
            artifact=artifact,
            verdict=verdict.with_iteration(index),
            reflection="Manual edit",
            kind=IterationKind.MANUAL_ITERATION,
        ))
        session.artifact = artifact
        session.verdict = record.verdict

        if verdict.passed(anomaly_blocks=self.config.anomaly_blocks_manual):
            return self._finish(session, ControllerState.SUCCESS, [record], 1)
        return self._finish(session, ControllerState.EXHAUSTED, [record], 1)

    async def _run(
        self,
        session: Session,
        epoch: int,
        first_kind: IterationKind,
        feedback: str | None,
    ) -> StepOutcome:
        budget = max(0, self.config.max_auto_iterations)
        records: list[IterationRecord] = []
        attempt = 0

        while True:
            automatic = attempt > 0
            if automatic:
                console.print(
                    f"[bold]--- Auto-iteration {attempt}/{budget} ---[/bold]"
                )

            try:
                record = await self._attempt(session, epoch, first_kind, feedback, attempt, budget)
            except _Discarded:
                return self._discarded(session)
            except TransportFailure as e:
                # Only the initiating attempt is allowed to fail hard
                logger.debug("Transport failure on initiating attempt", exc_info=True)
                console.print(f"[red]Generation failed: {escape(str(e))}[/red]")
                session.state = ControllerState.FATAL_ERROR
                session.status = f"Generation failed: {e}"
                return StepOutcome(
                    state=ControllerState.FATAL_ERROR,
                    status=session.status,
                    artifact=session.artifact,
                    verdict=session.verdict,
                    records=records,
                    attempts=attempt + 1,
                    error=str(e),
                )

            records.append(record)
            passed = record.failure is None and record.verdict.passed(
                anomaly_blocks=self._anomaly_blocks(first_kind, automatic)
            )
            if passed:
                console.print(
                    f"[green]Shader compiled and rendered.[/green] {escape(record.reflection[:120])}"
                )
                return self._finish(session, ControllerState.SUCCESS, records, attempt + 1)

            reason = record.error or record.verdict.diagnostic_log or "failed"
            console.print(f"[yellow]Attempt failed:[/yellow] {escape(reason.splitlines()[0][:120])}")
            if attempt >= budget:
                return self._finish(session, ControllerState.EXHAUSTED, records, attempt + 1)

            session.state = ControllerState.ITERATING
            attempt += 1

    async def _attempt(
        self,
        session: Session,
        epoch: int,
        first_kind: IterationKind,
        feedback: str | None,
        attempt: int,
        budget: int,
    ) -> IterationRecord:
        automatic = attempt > 0
        session.state = ControllerState.GENERATING
        request = self.request_builder.build_request(session, feedback, automatic=automatic)

        failure: FailureKind | None = None
        error = ""
        try:
            raw = await self.generator.complete(request)
        except TransportFailure as e:
            if not session.is_current(epoch):
                raise _Discarded() from e
            if not automatic:
                raise
            logger.warning("Auto-iteration %d: generation failed: %s", attempt, e)
            failure = FailureKind.TRANSPORT_FAILURE
            error = str(e)
            parsed = None
            verdict = session.verdict or EvaluationVerdict.compile_failure("")
        except MalformedResponse as e:
            if not session.is_current(epoch):
                raise _Discarded() from e
            logger.warning("Malformed response from %s: %s", request.model, e)
            failure = FailureKind.MALFORMED_RESPONSE
            error = str(e)
            parsed = ParsedResponse(artifact="", commentary="", strategy=ParseStrategy.PASSTHROUGH)
            verdict = EvaluationVerdict.malformed_response(f"Malformed response: {e}")
        else:
            if not session.is_current(epoch):
                raise _Discarded()
            parsed = self.parser.parse(raw)
            logger.debug("Parsed artifact via %s strategy", parsed.strategy.value)
            session.state = ControllerState.EVALUATING
            verdict = await self._evaluate(session, parsed.artifact)
            if not session.is_current(epoch):
                raise _Discarded()
            if not parsed.artifact:
                failure = FailureKind.COMPILE_ERROR
            else:
                failure = verdict.failure_kind

        if first_kind is IterationKind.MANUAL_ITERATION and not automatic:
            session.manual_iterations += 1

        index = session.allocate_index()
        if automatic:
            terminal = (failure is None and verdict.passed()) or attempt >= budget
            kind = (
                IterationKind.AUTO_ITERATION_FINAL if terminal
                else IterationKind.AUTO_ITERATION_INTERMEDIATE
            )
        else:
            kind = first_kind

        if parsed is not None and failure is not FailureKind.MALFORMED_RESPONSE:
            artifact = parsed.artifact
            verdict = verdict.with_iteration(index)
        else:
            artifact = session.artifact or ""

        record = session.history.append(IterationRecord(
            index=index,
            prompt=session.prompt,
            artifact=artifact,
            verdict=verdict,
            reflection=parsed.reflection if parsed is not None else "",
            kind=kind,
            model=request.model,
            feedback=feedback,
            # Anomalies are classified on the verdict; the record's failure is about
            # the attempt itself
            failure=failure if failure is not FailureKind.RUNTIME_ANOMALY else None,
            error=error,
        ))

        if parsed is not None and failure is not FailureKind.MALFORMED_RESPONSE:
            session.artifact = record.artifact
            session.commentary = parsed.commentary
        session.verdict = record.verdict
        return record

    async def _evaluate(self, session: Session, artifact: str) -> EvaluationVerdict:
        cached = session.verdict_cache.get(artifact)
        if cached is not None:
            logger.debug("Artifact unchanged since a previous attempt; reusing its verdict")
            return cached
        verdict = await self.evaluator.evaluate(artifact)
        session.verdict_cache[artifact] = verdict
        return verdict

    def _anomaly_blocks(self, first_kind: IterationKind, automatic: bool) -> bool:
        if automatic or first_kind is IterationKind.INITIAL:
            return True
        return self.config.anomaly_blocks_manual

    def _finish(
        self,
        session: Session,
        state: ControllerState,
        records: list[IterationRecord],
        attempts: int,
    ) -> StepOutcome:
        verdict = session.verdict
        if state is ControllerState.SUCCESS:
            status = "Shader compiles and renders. Enter feedback to refine it further."
            if verdict is not None and verdict.has_anomaly:
                status = (
                    f"Shader compiles but looks wrong ({verdict.anomaly_reason}). "
                    "Enter feedback to improve it."
                )
        elif verdict is not None and not verdict.compiled:
            status = (
                f"Stopped after {attempts} attempt(s): shader has compilation errors. "
                "Enter specific feedback to fix the remaining issues."
            )
        elif verdict is not None and not verdict.linked:
            status = (
                f"Stopped after {attempts} attempt(s): program failed to link. "
                "Enter specific feedback to fix the remaining issues."
            )
        else:
            reason = verdict.anomaly_reason if verdict is not None else "unknown"
            status = (
                f"Stopped after {attempts} attempt(s): shader compiles but is not rendering "
                f"properly ({reason}). Enter feedback to improve it."
            )

        session.state = state
        session.status = status
        style = "green" if state is ControllerState.SUCCESS else "yellow"
        console.print(f"[bold {style}]{status}[/bold {style}]")
        return StepOutcome(
            state=state,
            status=status,
            artifact=session.artifact,
            verdict=verdict,
            records=records,
            attempts=attempts,
        )

    def _discarded(self, session: Session) -> StepOutcome:
        logger.info("Discarding result for a session that has moved on")
        return StepOutcome(
            state=session.state,
            status=session.status,
            artifact=session.artifact,
            verdict=session.verdict,
            discarded=True,
        )
