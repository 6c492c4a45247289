from __future__ import annotations

import io
import logging
import random
import time
from typing import TYPE_CHECKING, Callable

from PIL import Image

from shader_lab.core.errors import RenderBackendError
from shader_lab.core.types import EvaluationVerdict, Evidence, LabConfig, Metrics
from shader_lab.domains.glsl.renderer import (
    NO_ERROR,
    VERTEX_SHADER_SOURCE,
    CompileResult,
    StageKind,
)
from shader_lab.domains.glsl.similarity import NEUTRAL_SIMILARITY
from shader_lab.domains.glsl.uniforms import harness_uniforms

if TYPE_CHECKING:
    from shader_lab.domains.glsl.renderer import Pixels, RenderBackend
    from shader_lab.domains.glsl.similarity import SimilarityMetric

logger = logging.getLogger(__name__)

_STAGE_LABELS = {
    StageKind.VERTEX: "Vertex shader",
    StageKind.FRAGMENT: "Fragment shader",
}


class ShaderEvaluator:
    """Compile a fragment shader against the fixed vertex stage, render it and
    measure it.

    Never raises for bad shader source or render failures: every outcome is
    reported through the returned EvaluationVerdict.
    """

    def __init__(
        self,
        backend: RenderBackend,
        config: LabConfig,
        similarity: SimilarityMetric | None = None,
        clock: Callable[[], float] = time.perf_counter,
        rng: random.Random | None = None,
    ) -> None:
        self.backend = backend
        self.config = config
        self.similarity = similarity
        self.clock = clock
        self.rng = rng or random.Random()

    async def evaluate(self, artifact: str) -> EvaluationVerdict:
        if not artifact or not artifact.strip():
            return EvaluationVerdict.compile_failure("Fragment shader: empty source")

        handles: list[int] = []
        try:
            vertex = await self._compile(VERTEX_SHADER_SOURCE, StageKind.VERTEX, handles)
            fragment = await self._compile(artifact, StageKind.FRAGMENT, handles)

            log = "\n".join(
                f"{_STAGE_LABELS[stage]}: {result.log.strip()}"
                for stage, result in ((StageKind.VERTEX, vertex), (StageKind.FRAGMENT, fragment))
                if not result.ok
            )
            if not (vertex.ok and fragment.ok):
                logger.debug("Compilation failed:\n%s", log)
                return EvaluationVerdict.compile_failure(log)

            try:
                link = await self.backend.link([vertex.handle, fragment.handle])
            except RenderBackendError as e:
                return EvaluationVerdict.link_failure(f"Program link: {e}")
            if link.handle is not None:
                handles.append(link.handle)
            if not link.ok:
                logger.debug("Link failed:\n%s", link.log)
                return EvaluationVerdict.link_failure(f"Program link: {link.log.strip()}")

            return await self._measure(link.handle)
        finally:
            await self._release_all(handles)

    async def _compile(self, source: str, stage: StageKind, handles: list[int]) -> CompileResult:
        try:
            result = await self.backend.compile(source, stage)
        except RenderBackendError as e:
            return CompileResult(ok=False, log=str(e))
        # Failed shaders still hold a handle until released
        if result.handle is not None:
            handles.append(result.handle)
        return result

    async def _release_all(self, handles: list[int]) -> None:
        for handle in reversed(handles):
            try:
                await self.backend.release(handle)
            except RenderBackendError as e:
                logger.warning("Failed to release render handle %d: %s", handle, e)

    async def _measure(self, program: int) -> EvaluationVerdict:
        width, height = self.backend.width, self.backend.height

        try:
            await self.backend.render(
                program, harness_uniforms(width, height, time=self.config.base_time)
            )
        except RenderBackendError as e:
            logger.debug("Settled frame failed to render: %s", e)
            return EvaluationVerdict(
                compiled=True,
                linked=True,
                diagnostic_log=f"Render: {e}",
                has_anomaly=True,
                anomaly_reason="settled frame failed to render",
            )

        pixels = await self._read_pixels()
        similarity = self._similarity(pixels)

        anomaly_reason = ""
        if pixels is None:
            anomaly_reason = "framebuffer could not be sampled"
        elif not pixels.has_visible_alpha():
            anomaly_reason = "no visible output"
        error = await self._get_error()
        if error != NO_ERROR and not anomaly_reason:
            anomaly_reason = f"render backend reported error 0x{error:04x}"

        fps = await self._measure_fps(program)
        evidence = await self._capture_screenshots(program)

        if anomaly_reason:
            logger.debug("Runtime anomaly: %s", anomaly_reason)
        return EvaluationVerdict(
            compiled=True,
            linked=True,
            diagnostic_log=anomaly_reason,
            metrics=Metrics(similarity=similarity, frames_per_second=fps),
            has_anomaly=bool(anomaly_reason),
            evidence=tuple(evidence),
            anomaly_reason=anomaly_reason,
            visible_rgb=pixels.has_visible_rgb() if pixels is not None else False,
        )

    async def _read_pixels(self) -> Pixels | None:
        try:
            return await self.backend.read_pixels()
        except RenderBackendError as e:
            logger.debug("read_pixels failed: %s", e)
            return None

    async def _get_error(self) -> int:
        try:
            return await self.backend.get_error()
        except RenderBackendError as e:
            logger.debug("get_error failed: %s", e)
            return NO_ERROR

    def _similarity(self, pixels: Pixels | None) -> float:
        if self.similarity is None or pixels is None:
            return NEUTRAL_SIMILARITY
        try:
            return self.similarity.score(pixels, self.config.scene)
        except (RenderBackendError, ValueError, OSError) as e:
            logger.debug("Similarity failed, using neutral score: %s", e)
            return NEUTRAL_SIMILARITY

    async def _measure_fps(self, program: int) -> float:
        frames = self.config.fps_frames
        width, height = self.backend.width, self.backend.height
        if frames <= 0:
            return 0.0

        start = self.clock()
        try:
            for i in range(frames):
                t = self.config.base_time + (i / frames) * self.config.screenshot_jitter
                await self.backend.render(program, harness_uniforms(width, height, time=t, frame=i))
        except RenderBackendError as e:
            logger.debug("Throughput measurement aborted: %s", e)
            return 0.0
        elapsed = self.clock() - start

        if elapsed <= 0:
            return 0.0
        return frames / elapsed

    async def _capture_screenshots(self, program: int) -> list[Evidence]:
        width, height = self.backend.width, self.backend.height
        evidence: list[Evidence] = []

        for i in range(self.config.max_screenshots):
            t = self.config.base_time + self.rng.random() * self.config.screenshot_jitter
            try:
                await self.backend.render(program, harness_uniforms(width, height, time=t, frame=i))
                pixels = await self.backend.read_pixels()
            except RenderBackendError as e:
                logger.debug("Screenshot %d failed: %s", i, e)
                continue

            try:
                data = self._encode(pixels)
            except (ValueError, OSError) as e:
                logger.debug("Screenshot %d could not be encoded: %s", i, e)
                continue
            if len(data) > self.config.evidence_byte_cap:
                logger.warning(
                    "Screenshot %d too large (%d KB), dropping", i, len(data) // 1024
                )
                continue
            evidence.append(Evidence(data=data, media_type="image/jpeg", time_offset=t))

        return evidence

    def _encode(self, pixels: Pixels) -> bytes:
        image = pixels.to_image()
        background = Image.new("RGBA", image.size, (0, 0, 0, 255))
        image = Image.alpha_composite(background, image).convert("RGB")
        limit = self.config.screenshot_max_dimension
        image.thumbnail((limit, limit))

        buffer = io.BytesIO()
        image.save(buffer, format="JPEG", quality=50)
        return buffer.getvalue()
