from __future__ import annotations

import base64
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING

from shader_lab.core.errors import RenderBackendError
from shader_lab.domains.glsl.uniforms import UNIFORM_SETTERS

if TYPE_CHECKING:
    from PIL import Image

    from shader_lab.domains.glsl.uniforms import UniformValue

logger = logging.getLogger(__name__)

# Fixed vertex stage: full-screen quad, vUv in [0, 1]
VERTEX_SHADER_SOURCE = """attribute vec2 position;
varying vec2 vUv;

void main() {
    vUv = position * 0.5 + 0.5;
    gl_Position = vec4(position, 0.0, 1.0);
}"""

NO_ERROR = 0


class StageKind(str, Enum):
    VERTEX = "vertex"
    FRAGMENT = "fragment"


@dataclass(frozen=True)
class CompileResult:
    ok: bool
    log: str
    handle: int | None = None


@dataclass(frozen=True)
class LinkResult:
    ok: bool
    log: str
    handle: int | None = None


@dataclass(frozen=True)
class Pixels:
    """RGBA framebuffer contents, bottom row first (GL origin)."""

    width: int
    height: int
    data: bytes

    def has_visible_alpha(self) -> bool:
        return any(self.data[3::4])

    def has_visible_rgb(self) -> bool:
        for channel in range(3):
            if any(self.data[channel::4]):
                return True
        return False

    def to_image(self) -> Image.Image:
        from PIL import Image

        image = Image.frombytes("RGBA", (self.width, self.height), self.data)
        return image.transpose(Image.Transpose.FLIP_TOP_BOTTOM)


class RenderBackend(ABC):
    """Compile, link, run and sample a shader program.

    Every handle returned by compile() or link() must be given back to
    release(); the backend owns nothing else between calls.
    """

    width: int
    height: int

    @abstractmethod
    async def compile(self, source: str, stage: StageKind) -> CompileResult: ...

    @abstractmethod
    async def link(self, stage_handles: list[int]) -> LinkResult: ...

    @abstractmethod
    async def render(self, program: int, uniforms: dict[str, UniformValue]) -> None: ...

    @abstractmethod
    async def read_pixels(self) -> Pixels: ...

    @abstractmethod
    async def get_error(self) -> int: ...

    @abstractmethod
    async def release(self, handle: int) -> None: ...

    async def __aenter__(self) -> RenderBackend:
        return self

    async def __aexit__(self, *exc) -> None:
        return None


_HARNESS_HTML = """<!DOCTYPE html>
<html><body style="margin:0;padding:0;background:black;">
<canvas id="lab"></canvas>
<script>
window.__lab = {
  gl: null, handles: new Map(), next: 1,
  init(width, height) {
    const canvas = document.getElementById('lab');
    canvas.width = width; canvas.height = height;
    this.gl = canvas.getContext('webgl', {preserveDrawingBuffer: true});
    return this.gl !== null;
  },
  compile(source, stage) {
    const gl = this.gl;
    const shader = gl.createShader(stage === 'vertex' ? gl.VERTEX_SHADER : gl.FRAGMENT_SHADER);
    gl.shaderSource(shader, source);
    gl.compileShader(shader);
    const id = this.next++;
    this.handles.set(id, {kind: 'shader', obj: shader});
    const ok = !!gl.getShaderParameter(shader, gl.COMPILE_STATUS);
    return {id, ok, log: ok ? '' : (gl.getShaderInfoLog(shader) || '')};
  },
  link(ids) {
    const gl = this.gl;
    const program = gl.createProgram();
    for (const id of ids) gl.attachShader(program, this.handles.get(id).obj);
    gl.linkProgram(program);
    const id = this.next++;
    this.handles.set(id, {kind: 'program', obj: program});
    const ok = !!gl.getProgramParameter(program, gl.LINK_STATUS);
    return {id, ok, log: ok ? '' : (gl.getProgramInfoLog(program) || '')};
  },
  render(id, uniforms) {
    const gl = this.gl;
    const program = this.handles.get(id).obj;
    gl.viewport(0, 0, gl.canvas.width, gl.canvas.height);
    gl.clearColor(0, 0, 0, 0);
    gl.clear(gl.COLOR_BUFFER_BIT);
    gl.useProgram(program);
    for (const u of uniforms) {
      const loc = gl.getUniformLocation(program, u.name);
      if (loc !== null) gl[u.setter](loc, ...u.values);
    }
    const buffer = gl.createBuffer();
    gl.bindBuffer(gl.ARRAY_BUFFER, buffer);
    gl.bufferData(gl.ARRAY_BUFFER, new Float32Array([-1, -1, 1, -1, -1, 1, 1, 1]), gl.STATIC_DRAW);
    const position = gl.getAttribLocation(program, 'position');
    if (position !== -1) {
      gl.enableVertexAttribArray(position);
      gl.vertexAttribPointer(position, 2, gl.FLOAT, false, 0, 0);
      gl.drawArrays(gl.TRIANGLE_STRIP, 0, 4);
      gl.disableVertexAttribArray(position);
    }
    gl.deleteBuffer(buffer);
    gl.finish();
  },
  readPixels() {
    const gl = this.gl;
    const w = gl.canvas.width, h = gl.canvas.height;
    const pixels = new Uint8Array(w * h * 4);
    gl.readPixels(0, 0, w, h, gl.RGBA, gl.UNSIGNED_BYTE, pixels);
    let binary = '';
    for (let i = 0; i < pixels.length; i += 0x8000) {
      binary += String.fromCharCode.apply(null, pixels.subarray(i, i + 0x8000));
    }
    return btoa(binary);
  },
  getError() { return this.gl.getError(); },
  release(id) {
    const entry = this.handles.get(id);
    if (!entry) return false;
    if (entry.kind === 'shader') this.gl.deleteShader(entry.obj);
    else this.gl.deleteProgram(entry.obj);
    this.handles.delete(id);
    return true;
  },
};
</script>
</body></html>"""


class PlaywrightWebGLBackend(RenderBackend):
    """WebGL 1 backend running in headless Chromium (SwiftShader)."""

    def __init__(self, width: int = 512, height: int = 512, headless: bool = True) -> None:
        self.width = width
        self.height = height
        self.headless = headless
        self._playwright = None
        self._browser = None
        self._page = None

    async def start(self) -> None:
        from playwright.async_api import async_playwright

        self._playwright = await async_playwright().start()
        self._browser = await self._playwright.chromium.launch(
            headless=self.headless,
            args=["--use-gl=angle", "--use-angle=swiftshader", "--ignore-gpu-blocklist"],
        )
        self._page = await self._browser.new_page(
            viewport={"width": self.width, "height": self.height}
        )
        await self._page.set_content(_HARNESS_HTML)
        ok = await self._call("([w, h]) => window.__lab.init(w, h)", [self.width, self.height])
        if not ok:
            await self.close()
            raise RenderBackendError("WebGL is not available in the headless browser")
        logger.debug("WebGL backend ready (%dx%d)", self.width, self.height)

    async def close(self) -> None:
        if self._browser is not None:
            await self._browser.close()
            self._browser = None
        if self._playwright is not None:
            await self._playwright.stop()
            self._playwright = None
        self._page = None

    async def __aenter__(self) -> PlaywrightWebGLBackend:
        await self.start()
        return self

    async def __aexit__(self, *exc) -> None:
        await self.close()

    async def _call(self, expression: str, arg=None):
        from playwright.async_api import Error as PlaywrightError

        if self._page is None:
            raise RenderBackendError("WebGL backend is not started")
        try:
            return await self._page.evaluate(expression, arg)
        except PlaywrightError as e:
            raise RenderBackendError(str(e)) from e

    async def compile(self, source: str, stage: StageKind) -> CompileResult:
        result = await self._call(
            "([src, stage]) => window.__lab.compile(src, stage)", [source, stage.value]
        )
        return CompileResult(ok=result["ok"], log=result["log"], handle=result["id"])

    async def link(self, stage_handles: list[int]) -> LinkResult:
        result = await self._call("(ids) => window.__lab.link(ids)", stage_handles)
        return LinkResult(ok=result["ok"], log=result["log"], handle=result["id"])

    async def render(self, program: int, uniforms: dict[str, UniformValue]) -> None:
        payload = [
            {"name": name, "setter": UNIFORM_SETTERS[value.kind], "values": list(value.components)}
            for name, value in uniforms.items()
        ]
        await self._call("([id, u]) => window.__lab.render(id, u)", [program, payload])

    async def read_pixels(self) -> Pixels:
        encoded = await self._call("() => window.__lab.readPixels()")
        return Pixels(width=self.width, height=self.height, data=base64.b64decode(encoded))

    async def get_error(self) -> int:
        return int(await self._call("() => window.__lab.getError()"))

    async def release(self, handle: int) -> None:
        await self._call("(id) => window.__lab.release(id)", handle)


def create_backend(name: str = "playwright", width: int = 512, height: int = 512) -> RenderBackend:
    backends = {
        "playwright": PlaywrightWebGLBackend,
    }
    if name not in backends:
        raise ValueError(f"Unknown renderer: {name!r}. Choose from: {list(backends)}")
    return backends[name](width=width, height=height)
