from __future__ import annotations

import base64
from dataclasses import dataclass, field, replace
from enum import Enum
from pathlib import Path

from shader_lab.core.errors import FailureKind

Artifact = str

MiB = 1024 * 1024

FALLBACK_MODEL_NAME = "default-model"

IMAGE_CAPABLE_MODELS = (
    "gpt-4-vision-preview",
    "gpt-4-turbo",
    "gpt-4-turbo-preview",
    "gpt-4-1106-vision-preview",
    "gpt-4-0125-preview",
    "gpt-4-1106-preview",
    "gpt-4.1",
    "gpt-4.1-preview",
    "gpt-4.1-mini",
    "gpt-4o",
    "gpt-4o-mini",
)


class IterationKind(str, Enum):
    INITIAL = "initial"
    MANUAL_ITERATION = "manual_iteration"
    AUTO_ITERATION_INTERMEDIATE = "auto_iteration_intermediate"
    AUTO_ITERATION_FINAL = "auto_iteration_final"


class ControllerState(str, Enum):
    IDLE = "idle"
    GENERATING = "generating"
    EVALUATING = "evaluating"
    ITERATING = "iterating"
    SUCCESS = "success"
    EXHAUSTED = "exhausted"
    FATAL_ERROR = "fatal_error"


class Role(str, Enum):
    SYSTEM = "system"
    ASSISTANT = "assistant"
    USER = "user"


class ParseStrategy(str, Enum):
    MARKER = "marker"
    KEYWORD = "keyword"
    PASSTHROUGH = "passthrough"


@dataclass(frozen=True)
class Metrics:
    similarity: float = 0.0
    frames_per_second: float = 0.0

    def to_dict(self) -> dict[str, float]:
        return {
            "similarity": round(self.similarity, 4),
            "fps": round(self.frames_per_second, 2),
        }


@dataclass(frozen=True)
class Evidence:
    data: bytes
    media_type: str  # e.g. "image/jpeg"
    time_offset: float = 0.0
    iteration: int = 0
    reference: str | None = None  # storage path once persisted

    @property
    def size_bytes(self) -> int:
        return len(self.data)

    @property
    def extension(self) -> str:
        return self.media_type.split("/")[-1].replace("jpeg", "jpg")


@dataclass(frozen=True)
class EvaluationVerdict:
    compiled: bool
    linked: bool
    diagnostic_log: str = ""
    metrics: Metrics = field(default_factory=Metrics)
    has_anomaly: bool = False
    evidence: tuple[Evidence, ...] = ()
    anomaly_reason: str = ""
    visible_rgb: bool = False
    malformed: bool = False

    @classmethod
    def compile_failure(cls, log: str) -> EvaluationVerdict:
        return cls(compiled=False, linked=False, diagnostic_log=log)

    @classmethod
    def link_failure(cls, log: str) -> EvaluationVerdict:
        return cls(compiled=True, linked=False, diagnostic_log=log)

    @classmethod
    def malformed_response(cls, log: str) -> EvaluationVerdict:
        return cls(compiled=False, linked=False, diagnostic_log=log, malformed=True)

    @property
    def failure_kind(self) -> FailureKind | None:
        if self.malformed:
            return FailureKind.MALFORMED_RESPONSE
        if not self.compiled:
            return FailureKind.COMPILE_ERROR
        if not self.linked:
            return FailureKind.LINK_ERROR
        if self.has_anomaly:
            return FailureKind.RUNTIME_ANOMALY
        return None

    def passed(self, anomaly_blocks: bool = True) -> bool:
        if not (self.compiled and self.linked):
            return False
        return not (anomaly_blocks and self.has_anomaly)

    def summary(self) -> dict:
        return {
            "compiled": self.compiled,
            "hasAnomaly": self.has_anomaly,
            "metrics": self.metrics.to_dict(),
        }

    def with_iteration(self, index: int) -> EvaluationVerdict:
        return replace(
            self, evidence=tuple(replace(e, iteration=index) for e in self.evidence)
        )


@dataclass(frozen=True)
class IterationRecord:
    index: int
    prompt: str
    artifact: Artifact
    verdict: EvaluationVerdict
    reflection: str
    kind: IterationKind
    model: str = ""
    feedback: str | None = None
    failure: FailureKind | None = None
    error: str = ""

    @property
    def significant(self) -> bool:
        return self.index == 0 or self.kind in (
            IterationKind.MANUAL_ITERATION,
            IterationKind.AUTO_ITERATION_FINAL,
        )

    @property
    def success(self) -> bool:
        return self.failure is None and self.verdict.compiled and self.verdict.linked


@dataclass(frozen=True)
class TextPart:
    text: str


@dataclass(frozen=True)
class ImagePart:
    data: bytes
    media_type: str

    def data_uri(self) -> str:
        b64 = base64.b64encode(self.data).decode()
        return f"data:{self.media_type};base64,{b64}"


@dataclass(frozen=True)
class ConversationMessage:
    role: Role
    text: TextPart
    images: tuple[ImagePart, ...] = ()

    def to_dict(self) -> dict:
        if not self.images:
            return {"role": self.role.value, "content": self.text.text}
        content: list[dict] = [{"type": "text", "text": self.text.text}]
        for image in self.images:
            content.append({
                "type": "image_url",
                "image_url": {"url": image.data_uri()},
            })
        return {"role": self.role.value, "content": content}


@dataclass(frozen=True)
class GenerationRequest:
    model: str
    messages: tuple[ConversationMessage, ...]
    specialized: bool = False

    @property
    def image_count(self) -> int:
        return sum(len(m.images) for m in self.messages)


@dataclass(frozen=True)
class ParsedResponse:
    artifact: Artifact
    commentary: str
    strategy: ParseStrategy
    reflection: str = ""


@dataclass
class LabConfig:
    specialized_model_name: str | None = None
    default_model_name: str = "gpt-4.1-mini"
    use_specialized_model: bool = False
    max_auto_iterations: int = 3
    max_screenshots: int = 5
    screenshot_jitter: float = 2.0
    per_image_byte_cap: int = 1 * MiB
    aggregate_byte_cap: int = 3 * MiB
    max_attached_images: int = 1
    evidence_byte_cap: int = 2 * MiB
    screenshot_max_dimension: int = 400
    fps_frames: int = 60
    base_time: float = 0.0
    scene: str = "quad"
    render_width: int = 512
    render_height: int = 512
    renderer: str = "playwright"
    reference_dir: Path | None = None
    image_capable_models: tuple[str, ...] = IMAGE_CAPABLE_MODELS
    anomaly_blocks_manual: bool = False
    temperature: float = 0.7
    output_dir: Path = field(default_factory=lambda: Path("runs"))
