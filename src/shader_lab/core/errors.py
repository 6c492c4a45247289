from __future__ import annotations

from enum import Enum


class FailureKind(str, Enum):
    COMPILE_ERROR = "compile_error"
    LINK_ERROR = "link_error"
    RUNTIME_ANOMALY = "runtime_anomaly"
    MALFORMED_RESPONSE = "malformed_response"
    TRANSPORT_FAILURE = "transport_failure"


class ShaderLabError(Exception):
    """Base class for errors raised across component boundaries."""


class TransportFailure(ShaderLabError):
    """The generative backend call itself failed (network, auth, rate limit...)."""

    def __init__(self, message: str, model: str | None = None) -> None:
        super().__init__(message)
        self.model = model


class MalformedResponse(ShaderLabError, ValueError):
    """The generative backend replied without any usable choice/content."""


class RenderBackendError(ShaderLabError):
    """A render capability call failed inside the evaluator."""
