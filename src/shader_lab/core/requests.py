from __future__ import annotations

import json
import logging
from typing import TYPE_CHECKING

from shader_lab.core.types import (
    FALLBACK_MODEL_NAME,
    ConversationMessage,
    Evidence,
    GenerationRequest,
    ImagePart,
    LabConfig,
    Role,
    TextPart,
)

if TYPE_CHECKING:
    from shader_lab.core.session import Session
    from shader_lab.domains.glsl.prompts import PromptTemplates

logger = logging.getLogger(__name__)


def resolve_default_model(config: LabConfig) -> str:
    model = (config.default_model_name or "").strip()
    if not model:
        logger.warning(
            "Default model name is blank; falling back to %r", FALLBACK_MODEL_NAME
        )
        return FALLBACK_MODEL_NAME
    return model


def resolve_specialized_model(config: LabConfig) -> str | None:
    if not config.use_specialized_model:
        return None
    model = (config.specialized_model_name or "").strip()
    if not model:
        logger.warning("Specialized model enabled but no name configured; using default model")
        return None
    return model


def select_model(config: LabConfig, session: Session, automatic: bool = False) -> tuple[str, bool]:
    """Pick the backend model for the next call.

    The specialized model is only used for the first generation of a session
    and for the first manual iteration. Everything else uses the default.
    Returns (model, specialized).
    """
    first_generation = session.artifact is None and not automatic
    first_manual = (
        not automatic and session.artifact is not None and session.manual_iterations == 0
    )
    if first_generation or first_manual:
        specialized = resolve_specialized_model(config)
        if specialized is not None:
            return specialized, True
    return resolve_default_model(config), False


def supports_images(config: LabConfig, model: str) -> bool:
    # Provider-prefixed names ("openai/gpt-4o") match on the bare model id
    bare = model.rsplit("/", 1)[-1]
    return model in config.image_capable_models or bare in config.image_capable_models


def select_evidence(evidence: tuple[Evidence, ...] | list[Evidence], config: LabConfig) -> list[Evidence]:
    """Choose which evidence items fit in one request.

    Items over the per-item cap, or that would push the request past the
    aggregate cap, are skipped silently; at most max_attached_images are kept.
    """
    selected: list[Evidence] = []
    total = 0
    for item in evidence:
        if len(selected) >= config.max_attached_images:
            break
        size = item.size_bytes
        if size == 0 or size > config.per_image_byte_cap:
            logger.info(
                "Skipping screenshot from iteration %d (%d KB over per-image cap)",
                item.iteration, size // 1024,
            )
            continue
        if total + size > config.aggregate_byte_cap:
            logger.info(
                "Skipping screenshot from iteration %d (request would exceed %d KB)",
                item.iteration, config.aggregate_byte_cap // 1024,
            )
            continue
        selected.append(item)
        total += size
    return selected


class RequestBuilder:
    def __init__(self, config: LabConfig, prompts: PromptTemplates) -> None:
        self.config = config
        self.prompts = prompts

    def build_request(
        self,
        session: Session,
        feedback: str | None = None,
        automatic: bool = False,
    ) -> GenerationRequest:
        model, specialized = select_model(self.config, session, automatic)
        if not model.strip():
            model = FALLBACK_MODEL_NAME

        iteration = session.artifact is not None
        messages = [
            ConversationMessage(
                role=Role.SYSTEM,
                text=TextPart(self.prompts.system_instruction(iteration, specialized)),
            )
        ]

        if not iteration:
            messages.append(
                ConversationMessage(
                    role=Role.USER, text=TextPart(self.prompts.initial_user(session.prompt))
                )
            )
        else:
            messages.append(
                ConversationMessage(role=Role.ASSISTANT, text=TextPart(session.artifact))
            )
            messages.append(self._iteration_message(session, feedback, model))

        request = GenerationRequest(
            model=model, messages=tuple(messages), specialized=specialized
        )
        logger.debug(
            "=== REQUEST (index %d, model %s, automatic=%s, images=%d) ===",
            session.next_index, model, automatic, request.image_count,
        )
        for message in messages:
            logger.debug("%s:\n%s", message.role.value.upper(), message.text.text)
        return request

    def _iteration_message(
        self, session: Session, feedback: str | None, model: str
    ) -> ConversationMessage:
        verdict = session.verdict
        summary = None
        diagnostic = None
        if verdict is not None:
            summary = json.dumps(verdict.summary())
            if not (verdict.compiled and verdict.linked):
                diagnostic = verdict.diagnostic_log

        text = self.prompts.iteration_user(
            index=session.next_index,
            feedback=feedback.strip() if feedback else None,
            verdict_summary=summary,
            diagnostic_log=diagnostic,
        )

        images: list[ImagePart] = []
        evidence = verdict.evidence if verdict is not None else ()
        if evidence:
            if supports_images(self.config, model):
                images = [
                    ImagePart(data=item.data, media_type=item.media_type)
                    for item in select_evidence(evidence, self.config)
                ]
            else:
                logger.debug("Model %s does not accept images; sending text only", model)

        return ConversationMessage(role=Role.USER, text=TextPart(text), images=tuple(images))
