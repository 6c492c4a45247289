from __future__ import annotations

import re

from shader_lab.core.types import ParsedResponse, ParseStrategy
from shader_lab.domains.glsl.prompts import FRAGMENT_MARKER

_FENCE = re.compile(r"```(?:[\w+#.-]*[ \t]*(?=\r?\n|$))?")
_HTML_COMMENT = re.compile(r"<!--.*?-->", re.DOTALL)
_PRECISION = re.compile(r"^[ \t]*precision\s+(?:lowp|mediump|highp)\s+float\s*;", re.MULTILINE)
_CLOSING_FENCE = re.compile(r"^[ \t]*```[ \t\r]*$", re.MULTILINE)
_REFLECTION = re.compile(r"Reflection:\s*(.*?)(?:\n|$)", re.IGNORECASE)


def sanitize(code: str) -> str:
    """Strip code fences (with or without a language tag), HTML comments and
    surrounding whitespace.

    Passes repeat until nothing changes, so removing one construct can never
    expose another one for a later call: sanitize(sanitize(x)) == sanitize(x).
    """
    text = code or ""
    while True:
        cleaned = _HTML_COMMENT.sub("", text)
        cleaned = _FENCE.sub("", cleaned)
        cleaned = cleaned.strip()
        if cleaned == text:
            return cleaned
        text = cleaned


def _extract_reflection(commentary: str) -> str:
    match = _REFLECTION.search(commentary)
    if match and match.group(1).strip():
        return match.group(1).strip()
    return " ".join(commentary.split())


def parse_response(raw_text: str) -> ParsedResponse:
    """Extract a fragment shader from a free-form model response.

    Strategies, in order: the explicit marker, a precision qualifier that
    starts the shader boilerplate, then the whole text.
    """
    raw_text = raw_text or ""

    marker_at = raw_text.find(FRAGMENT_MARKER)
    if marker_at != -1:
        commentary = sanitize(raw_text[:marker_at])
        artifact = sanitize(raw_text[marker_at + len(FRAGMENT_MARKER):])
        return ParsedResponse(
            artifact=artifact,
            commentary=commentary,
            strategy=ParseStrategy.MARKER,
            reflection=_extract_reflection(commentary),
        )

    match = _PRECISION.search(raw_text)
    if match:
        commentary = sanitize(raw_text[:match.start()])
        remainder = raw_text[match.start():]
        # Prose after a closing fence is not shader code
        closing = _CLOSING_FENCE.search(remainder)
        if closing:
            remainder = remainder[:closing.start()]
        return ParsedResponse(
            artifact=sanitize(remainder),
            commentary=commentary,
            strategy=ParseStrategy.KEYWORD,
            reflection=_extract_reflection(commentary),
        )

    return ParsedResponse(
        artifact=sanitize(raw_text),
        commentary="",
        strategy=ParseStrategy.PASSTHROUGH,
    )


class FragmentResponseParser:
    def parse(self, raw_text: str) -> ParsedResponse:
        return parse_response(raw_text)
