from __future__ import annotations

from typing import TYPE_CHECKING, Protocol, runtime_checkable

if TYPE_CHECKING:
    from shader_lab.core.types import (
        Artifact,
        EvaluationVerdict,
        GenerationRequest,
        IterationRecord,
        ParsedResponse,
    )


@runtime_checkable
class GenerativeBackend(Protocol):
    async def complete(self, request: GenerationRequest) -> str: ...


@runtime_checkable
class Evaluator(Protocol):
    async def evaluate(self, artifact: Artifact) -> EvaluationVerdict: ...


@runtime_checkable
class ResponseParser(Protocol):
    def parse(self, raw_text: str) -> ParsedResponse: ...


@runtime_checkable
class HistorySink(Protocol):
    def append(self, record: IterationRecord) -> IterationRecord: ...

    def list_significant(self) -> list[IterationRecord]: ...

    def list_all(self) -> list[IterationRecord]: ...

    def reset(self) -> None: ...
