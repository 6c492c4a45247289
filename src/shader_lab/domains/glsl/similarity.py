from __future__ import annotations

import logging
from pathlib import Path
from typing import TYPE_CHECKING, Protocol

from PIL import Image, ImageChops, ImageStat

if TYPE_CHECKING:
    from shader_lab.domains.glsl.renderer import Pixels

logger = logging.getLogger(__name__)

NEUTRAL_SIMILARITY = 0.0


class SimilarityMetric(Protocol):
    def score(self, pixels: Pixels, scene: str) -> float: ...


class ReferenceImageSimilarity:
    """Mean absolute pixel difference against a per-scene reference image.

    1.0 means identical. Scenes without a reference score NEUTRAL_SIMILARITY.
    """

    def __init__(self, references: dict[str, Image.Image] | None = None) -> None:
        self.references: dict[str, Image.Image] = dict(references or {})

    @classmethod
    def from_directory(cls, directory: Path | None) -> ReferenceImageSimilarity:
        references: dict[str, Image.Image] = {}
        if directory is not None and directory.exists():
            for path in sorted(directory.glob("*.png")):
                with Image.open(path) as image:
                    references[path.stem] = image.convert("RGB")
        return cls(references)

    def score(self, pixels: Pixels, scene: str) -> float:
        reference = self.references.get(scene)
        if reference is None:
            return NEUTRAL_SIMILARITY

        rendered = pixels.to_image().convert("RGB")
        if reference.size != rendered.size:
            reference = reference.resize(rendered.size)
        diff = ImageChops.difference(rendered, reference)
        mean = sum(ImageStat.Stat(diff).mean) / 3
        return max(0.0, min(1.0, 1.0 - mean / 255.0))
