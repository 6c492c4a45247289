from __future__ import annotations

import logging
from typing import TYPE_CHECKING

import litellm

from shader_lab.core.errors import MalformedResponse, TransportFailure

if TYPE_CHECKING:
    from shader_lab.core.types import GenerationRequest

litellm.drop_params = True

logger = logging.getLogger(__name__)


class LLMClient:
    def __init__(self, max_tokens: int = 16384, temperature: float = 0.7) -> None:
        self.max_tokens = max_tokens
        self.temperature = temperature

    async def complete(self, request: GenerationRequest) -> str:
        try:
            response = await litellm.acompletion(
                model=request.model,
                messages=[m.to_dict() for m in request.messages],
                max_tokens=self.max_tokens,
                temperature=self.temperature,
            )
        except Exception as e:
            raise TransportFailure(f"{type(e).__name__}: {e}", model=request.model) from e

        text = _extract_content(response)
        logger.debug("RESPONSE (%s, %d chars):\n%s", request.model, len(text), text)
        return text


def _extract_content(response) -> str:
    choices = getattr(response, "choices", None)
    if not choices:
        raise MalformedResponse("Response contained no choices")
    message = getattr(choices[0], "message", None)
    content = getattr(message, "content", None)
    if not isinstance(content, str) or not content.strip():
        raise MalformedResponse("First choice has no text content")
    return content
