from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import ClassVar, Union


class UniformKind(str, Enum):
    FLOAT = "float"
    INT = "int"
    VEC2 = "vec2"
    VEC3 = "vec3"
    VEC4 = "vec4"


@dataclass(frozen=True)
class Float:
    kind: ClassVar[UniformKind] = UniformKind.FLOAT
    value: float

    @property
    def components(self) -> tuple[float, ...]:
        return (float(self.value),)


@dataclass(frozen=True)
class Int:
    kind: ClassVar[UniformKind] = UniformKind.INT
    value: int

    @property
    def components(self) -> tuple[int, ...]:
        return (int(self.value),)


@dataclass(frozen=True)
class Vec2:
    kind: ClassVar[UniformKind] = UniformKind.VEC2
    x: float
    y: float

    @property
    def components(self) -> tuple[float, ...]:
        return (float(self.x), float(self.y))


@dataclass(frozen=True)
class Vec3:
    kind: ClassVar[UniformKind] = UniformKind.VEC3
    x: float
    y: float
    z: float

    @property
    def components(self) -> tuple[float, ...]:
        return (float(self.x), float(self.y), float(self.z))


@dataclass(frozen=True)
class Vec4:
    kind: ClassVar[UniformKind] = UniformKind.VEC4
    x: float
    y: float
    z: float
    w: float

    @property
    def components(self) -> tuple[float, ...]:
        return (float(self.x), float(self.y), float(self.z), float(self.w))


UniformValue = Union[Float, Int, Vec2, Vec3, Vec4]

# WebGL setter for each tag
UNIFORM_SETTERS: dict[UniformKind, str] = {
    UniformKind.FLOAT: "uniform1f",
    UniformKind.INT: "uniform1i",
    UniformKind.VEC2: "uniform2f",
    UniformKind.VEC3: "uniform3f",
    UniformKind.VEC4: "uniform4f",
}


def harness_uniforms(
    width: int,
    height: int,
    time: float,
    frame: int = 0,
    extra: dict[str, UniformValue] | None = None,
) -> dict[str, UniformValue]:
    """Standard uniforms every fragment shader can rely on."""
    uniforms: dict[str, UniformValue] = {
        "uTime": Float(time),
        "uResolution": Vec2(width, height),
        "uMouse": Vec2(0.5, 0.5),
        "uMouseClick": Vec2(0.5, 0.5),
        "uIsMouseDown": Int(0),
        "uFrame": Int(frame),
        "uAspect": Float(width / height if height else 1.0),
    }
    if extra:
        for name, value in extra.items():
            uniforms.setdefault(name, value)
    return uniforms
