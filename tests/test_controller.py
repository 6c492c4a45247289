from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock

import pytest

from shader_lab.core.controller import IterationController
from shader_lab.core.errors import FailureKind, MalformedResponse, TransportFailure
from shader_lab.core.requests import RequestBuilder
from shader_lab.core.session import Session
from shader_lab.core.types import ControllerState, IterationKind, LabConfig
from shader_lab.domains.glsl.evaluator import ShaderEvaluator
from shader_lab.domains.glsl.parser import FragmentResponseParser
from shader_lab.domains.glsl.prompts import FRAGMENT_MARKER, PromptTemplates
from shader_lab.logging.history import HistoryLog

GRADIENT = """precision mediump float;
varying vec2 vUv;

void main() {
    gl_FragColor = vec4(0.0, 0.0, vUv.y, 1.0);
}"""

GRADIENT_NO_SEMICOLON = """precision mediump float;
varying vec2 vUv;

void main() {
    gl_FragColor = vec4(0.0, 0.0, vUv.y, 1.0)
}"""

BRIGHTER = """precision mediump float;
varying vec2 vUv;

void main() {
    gl_FragColor = vec4(0.2, 0.2, vUv.y, 1.0);
}"""


def reply(shader: str, note: str = "Blue gradient along vUv.y.") -> str:
    return f"{note}\n\n{FRAGMENT_MARKER}\n```glsl\n{shader}\n```"


def make_config(**kwargs) -> LabConfig:
    kwargs.setdefault("max_screenshots", 1)
    kwargs.setdefault("fps_frames", 2)
    return LabConfig(**kwargs)


def make_controller(backend, generator, config: LabConfig) -> IterationController:
    return IterationController(
        generator=generator,
        parser=FragmentResponseParser(),
        evaluator=ShaderEvaluator(backend, config),
        request_builder=RequestBuilder(config, PromptTemplates()),
        config=config,
    )


def make_generator(*responses) -> MagicMock:
    generator = MagicMock()
    generator.complete = AsyncMock(side_effect=list(responses))
    return generator


def sent_request(generator: MagicMock, call: int):
    return generator.complete.call_args_list[call].args[0]


def assert_dense_indices(session: Session) -> None:
    indices = [r.index for r in session.history.list_all()]
    assert indices == list(range(len(indices)))


@pytest.fixture
def session():
    return Session(history=HistoryLog())


@pytest.mark.asyncio
async def test_missing_semicolon_is_fixed_by_auto_iteration(session, make_backend):
    """A compile error on the first attempt is fed back and fixed automatically."""
    config = make_config()
    generator = make_generator(reply(GRADIENT_NO_SEMICOLON), reply(GRADIENT))
    controller = make_controller(make_backend(), generator, config)

    outcome = await controller.submit_prompt(session, "blue gradient")

    assert outcome.state is ControllerState.SUCCESS
    assert outcome.artifact == GRADIENT
    assert outcome.attempts == 2
    kinds = [r.kind for r in session.history.list_all()]
    assert kinds == [IterationKind.INITIAL, IterationKind.AUTO_ITERATION_FINAL]
    assert session.history.list_all()[0].failure is FailureKind.COMPILE_ERROR
    assert session.history.list_all()[1].success

    retry = sent_request(generator, 1)
    assert retry.messages[1].text.text == GRADIENT_NO_SEMICOLON
    assert "syntax error" in retry.messages[-1].text.text
    assert retry.messages[-1].text.text.startswith("Iteration 1:")
    assert_dense_indices(session)


@pytest.mark.asyncio
async def test_initial_request_contains_prompt(session, make_backend):
    generator = make_generator(reply(GRADIENT))
    controller = make_controller(make_backend(), generator, make_config())

    await controller.submit_prompt(session, "blue gradient")

    request = sent_request(generator, 0)
    assert [m.role.value for m in request.messages] == ["system", "user"]
    assert request.messages[1].text.text == "Create a shader that produces: blue gradient"


@pytest.mark.asyncio
async def test_exhausts_budget_and_keeps_only_significant_records(session, make_backend):
    config = make_config(max_auto_iterations=3)
    backend = make_backend()
    generator = make_generator(*[reply(GRADIENT_NO_SEMICOLON)] * 4)
    controller = make_controller(backend, generator, config)

    outcome = await controller.submit_prompt(session, "blue gradient")

    assert outcome.state is ControllerState.EXHAUSTED
    assert "compilation errors" in outcome.status
    assert generator.complete.call_count == 4
    records = session.history.list_all()
    assert [r.kind for r in records] == [
        IterationKind.INITIAL,
        IterationKind.AUTO_ITERATION_INTERMEDIATE,
        IterationKind.AUTO_ITERATION_INTERMEDIATE,
        IterationKind.AUTO_ITERATION_FINAL,
    ]
    assert [r.index for r in session.history.list_significant()] == [0, 3]
    assert_dense_indices(session)


@pytest.mark.asyncio
async def test_identical_artifact_is_evaluated_once(session, make_backend):
    backend = make_backend()
    generator = make_generator(*[reply(GRADIENT_NO_SEMICOLON)] * 3)
    controller = make_controller(backend, generator, make_config(max_auto_iterations=2))

    await controller.submit_prompt(session, "blue gradient")

    # One vertex and one fragment compile for the single real evaluation
    assert len(backend.created) == 2


@pytest.mark.asyncio
async def test_zero_budget_stops_after_first_attempt(session, make_backend):
    generator = make_generator(reply(GRADIENT_NO_SEMICOLON))
    controller = make_controller(make_backend(), generator, make_config(max_auto_iterations=0))

    outcome = await controller.submit_prompt(session, "blue gradient")

    assert outcome.state is ControllerState.EXHAUSTED
    assert len(session.history) == 1


@pytest.mark.asyncio
async def test_transport_failure_on_initial_generation_is_fatal(session, make_backend):
    generator = make_generator(TransportFailure("rate limited", model="gpt-4.1-mini"))
    controller = make_controller(make_backend(), generator, make_config())

    outcome = await controller.submit_prompt(session, "blue gradient")

    assert outcome.state is ControllerState.FATAL_ERROR
    assert "rate limited" in outcome.error
    assert session.artifact is None
    assert len(session.history) == 0


@pytest.mark.asyncio
async def test_transport_failure_on_manual_iteration_keeps_artifact(session, make_backend):
    generator = make_generator(reply(GRADIENT), TransportFailure("connection reset"))
    controller = make_controller(make_backend(), generator, make_config())

    await controller.submit_prompt(session, "blue gradient")
    outcome = await controller.submit_feedback(session, "make it brighter")

    assert outcome.state is ControllerState.FATAL_ERROR
    assert session.artifact == GRADIENT
    assert len(session.history) == 1
    # The failed call did not use up the first manual iteration
    assert session.manual_iterations == 0


@pytest.mark.asyncio
async def test_transport_failure_during_retry_consumes_budget(session, make_backend):
    generator = make_generator(
        reply(GRADIENT_NO_SEMICOLON), TransportFailure("timeout"), reply(GRADIENT)
    )
    controller = make_controller(make_backend(), generator, make_config(max_auto_iterations=3))

    outcome = await controller.submit_prompt(session, "blue gradient")

    assert outcome.state is ControllerState.SUCCESS
    records = session.history.list_all()
    assert len(records) == 3
    assert records[1].failure is FailureKind.TRANSPORT_FAILURE
    assert records[1].artifact == GRADIENT_NO_SEMICOLON
    assert records[1].kind is IterationKind.AUTO_ITERATION_INTERMEDIATE
    assert records[2].kind is IterationKind.AUTO_ITERATION_FINAL
    assert_dense_indices(session)


@pytest.mark.asyncio
async def test_transport_failure_on_last_retry_exhausts(session, make_backend):
    generator = make_generator(reply(GRADIENT_NO_SEMICOLON), TransportFailure("timeout"))
    controller = make_controller(make_backend(), generator, make_config(max_auto_iterations=1))

    outcome = await controller.submit_prompt(session, "blue gradient")

    assert outcome.state is ControllerState.EXHAUSTED
    last = session.history.list_all()[-1]
    assert last.kind is IterationKind.AUTO_ITERATION_FINAL
    assert last.error == "timeout"
    assert not last.success


@pytest.mark.asyncio
async def test_malformed_response_is_recorded_and_retried(session, make_backend):
    generator = make_generator(MalformedResponse("Response contained no choices"), reply(GRADIENT))
    controller = make_controller(make_backend(), generator, make_config())

    outcome = await controller.submit_prompt(session, "blue gradient")

    assert outcome.state is ControllerState.SUCCESS
    first = session.history.list_all()[0]
    assert first.failure is FailureKind.MALFORMED_RESPONSE
    assert first.verdict.failure_kind is FailureKind.MALFORMED_RESPONSE
    # No artifact yet, so the retry is still phrased as an initial request
    retry = sent_request(generator, 1)
    assert [m.role.value for m in retry.messages] == ["system", "user"]


@pytest.mark.asyncio
async def test_empty_extraction_counts_as_compile_failure(session, make_backend):
    generator = make_generator(f"Sorry, I can't.\n{FRAGMENT_MARKER}\n", reply(GRADIENT))
    controller = make_controller(make_backend(), generator, make_config())

    outcome = await controller.submit_prompt(session, "blue gradient")

    assert outcome.state is ControllerState.SUCCESS
    assert session.history.list_all()[0].failure is FailureKind.COMPILE_ERROR


@pytest.mark.asyncio
async def test_abandoned_session_discards_in_flight_result(session, make_backend):
    async def complete(request):
        session.abandon()
        return reply(GRADIENT)

    generator = MagicMock()
    generator.complete = AsyncMock(side_effect=complete)
    controller = make_controller(make_backend(), generator, make_config())

    outcome = await controller.submit_prompt(session, "blue gradient")

    assert outcome.discarded
    assert session.state is ControllerState.IDLE
    assert session.artifact is None
    assert len(session.history) == 0


@pytest.mark.asyncio
async def test_new_prompt_resets_history(session, make_backend):
    generator = make_generator(reply(GRADIENT), reply(BRIGHTER, "Plasma."))
    controller = make_controller(make_backend(), generator, make_config())

    await controller.submit_prompt(session, "blue gradient")
    await controller.submit_prompt(session, "plasma")

    records = session.history.list_all()
    assert len(records) == 1
    assert records[0].index == 0
    assert records[0].prompt == "plasma"


@pytest.mark.asyncio
async def test_feedback_before_prompt_is_rejected(session, make_backend):
    controller = make_controller(make_backend(), make_generator(), make_config())

    with pytest.raises(ValueError):
        await controller.submit_feedback(session, "brighter")


@pytest.mark.asyncio
async def test_manual_feedback_is_sent_with_evaluation(session, make_backend):
    generator = make_generator(reply(GRADIENT), reply(BRIGHTER, "Lifted the base color."))
    controller = make_controller(make_backend(), generator, make_config())

    await controller.submit_prompt(session, "blue gradient")
    outcome = await controller.submit_feedback(session, "  make it brighter ")

    assert outcome.state is ControllerState.SUCCESS
    assert outcome.artifact == BRIGHTER
    record = session.history.list_all()[-1]
    assert record.kind is IterationKind.MANUAL_ITERATION
    assert record.feedback == "  make it brighter "
    assert record.reflection == "Lifted the base color."

    text = sent_request(generator, 1).messages[-1].text.text
    assert text.startswith("Iteration 1: make it brighter")
    assert '"compiled": true' in text
    assert "Compiler output" not in text


@pytest.mark.asyncio
async def test_specialized_model_only_for_cold_start_and_first_manual(session, make_backend):
    config = make_config(
        use_specialized_model=True,
        specialized_model_name="ft:shader-tuned",
        default_model_name="gpt-4o",
    )
    generator = make_generator(
        reply(GRADIENT_NO_SEMICOLON), reply(GRADIENT),
        reply(BRIGHTER), reply(GRADIENT),
    )
    controller = make_controller(make_backend(), generator, config)

    await controller.submit_prompt(session, "blue gradient")
    await controller.submit_feedback(session, "brighter")
    await controller.submit_feedback(session, "darker again")

    models = [r.model for r in session.history.list_all()]
    assert models == ["ft:shader-tuned", "gpt-4o", "ft:shader-tuned", "gpt-4o"]
    assert sent_request(generator, 0).specialized
    assert not sent_request(generator, 1).specialized


@pytest.mark.asyncio
async def test_anomaly_blocks_initial_generation(session, make_backend):
    generator = make_generator(reply(GRADIENT), reply(BRIGHTER))
    controller = make_controller(make_backend(alpha=0), generator, make_config(max_auto_iterations=1))

    outcome = await controller.submit_prompt(session, "blue gradient")

    assert outcome.state is ControllerState.EXHAUSTED
    assert "not rendering properly" in outcome.status
    assert generator.complete.call_count == 2
    # Anomalies live on the verdict, not on the record
    assert session.history.list_all()[0].failure is None


@pytest.mark.asyncio
async def test_anomaly_is_advisory_for_manual_iteration(session, make_backend):
    generator = make_generator(reply(GRADIENT), reply(BRIGHTER))
    controller = make_controller(make_backend(alpha=0), generator, make_config(max_auto_iterations=0))

    await controller.submit_prompt(session, "blue gradient")
    outcome = await controller.submit_feedback(session, "brighter")

    assert outcome.state is ControllerState.SUCCESS
    assert "looks wrong" in outcome.status
    assert outcome.verdict.has_anomaly


@pytest.mark.asyncio
async def test_anomaly_can_block_manual_iteration(session, make_backend):
    generator = make_generator(reply(GRADIENT), reply(BRIGHTER))
    config = make_config(max_auto_iterations=0, anomaly_blocks_manual=True)
    controller = make_controller(make_backend(alpha=0), generator, config)

    await controller.submit_prompt(session, "blue gradient")
    outcome = await controller.submit_feedback(session, "brighter")

    assert outcome.state is ControllerState.EXHAUSTED


@pytest.mark.asyncio
async def test_manual_compile_skips_generation(session, make_backend):
    generator = make_generator(reply(GRADIENT))
    controller = make_controller(make_backend(), generator, make_config())

    await controller.submit_prompt(session, "blue gradient")
    outcome = await controller.manual_compile(session, GRADIENT_NO_SEMICOLON)

    assert generator.complete.call_count == 1
    assert outcome.state is ControllerState.EXHAUSTED
    record = session.history.list_all()[-1]
    assert record.index == 1
    assert record.kind is IterationKind.MANUAL_ITERATION
    assert record.reflection == "Manual edit"
    assert session.artifact == GRADIENT_NO_SEMICOLON
