from __future__ import annotations

import re

import pytest

from shader_lab.core.errors import RenderBackendError
from shader_lab.domains.glsl.renderer import (
    CompileResult,
    LinkResult,
    Pixels,
    RenderBackend,
    StageKind,
)

_MISSING_SEMICOLON = re.compile(r"gl_FragColor\s*=[^;]*\n\s*}")


def default_compile_check(source: str, stage: StageKind) -> str:
    if stage is StageKind.FRAGMENT and "void main" not in source:
        return "ERROR: 0:1: 'main' : function not defined"
    if _MISSING_SEMICOLON.search(source):
        return "ERROR: 0:4: '}' : syntax error"
    return ""


class FakeRenderBackend(RenderBackend):
    """In-memory render backend that tracks every handle it hands out."""

    def __init__(
        self,
        width: int = 4,
        height: int = 4,
        compile_check=default_compile_check,
        link_log: str = "",
        alpha: int = 255,
        error_code: int = 0,
        fail_render: bool = False,
    ) -> None:
        self.width = width
        self.height = height
        self.compile_check = compile_check
        self.link_log = link_log
        self.alpha = alpha
        self.error_code = error_code
        self.fail_render = fail_render
        self.live: set[int] = set()
        self.created: list[int] = []
        self.renders: list[dict] = []
        self._next = 1

    def _new_handle(self) -> int:
        handle = self._next
        self._next += 1
        self.live.add(handle)
        self.created.append(handle)
        return handle

    async def compile(self, source: str, stage: StageKind) -> CompileResult:
        log = self.compile_check(source, stage)
        return CompileResult(ok=not log, log=log, handle=self._new_handle())

    async def link(self, stage_handles: list[int]) -> LinkResult:
        return LinkResult(ok=not self.link_log, log=self.link_log, handle=self._new_handle())

    async def render(self, program: int, uniforms: dict) -> None:
        if self.fail_render:
            raise RenderBackendError("context lost")
        self.renders.append(uniforms)

    async def read_pixels(self) -> Pixels:
        pixel = bytes([0, 0, 255, self.alpha])
        return Pixels(self.width, self.height, pixel * (self.width * self.height))

    async def get_error(self) -> int:
        return self.error_code

    async def release(self, handle: int) -> None:
        self.live.discard(handle)


@pytest.fixture
def make_backend():
    return FakeRenderBackend
