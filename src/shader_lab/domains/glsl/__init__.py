from __future__ import annotations

from pathlib import Path
from typing import TYPE_CHECKING

import yaml

from shader_lab.core.requests import RequestBuilder
from shader_lab.domains.base import DomainComponents, DomainPlugin
from shader_lab.domains.glsl.evaluator import ShaderEvaluator
from shader_lab.domains.glsl.parser import FragmentResponseParser
from shader_lab.domains.glsl.prompts import PromptTemplates
from shader_lab.domains.glsl.similarity import ReferenceImageSimilarity

if TYPE_CHECKING:
    from shader_lab.core.types import LabConfig
    from shader_lab.domains.glsl.renderer import RenderBackend

CONFIGS_DIR = Path(__file__).parent.parent.parent.parent.parent / "configs" / "glsl"


class GLSLDomain(DomainPlugin):
    name = "glsl"
    description = "WebGL fragment shaders compiled against a fixed full-screen-quad harness"

    def create_components(self, config: LabConfig, backend: RenderBackend) -> DomainComponents:
        reference_dir = config.reference_dir or CONFIGS_DIR / "references"
        similarity = ReferenceImageSimilarity.from_directory(reference_dir)
        return DomainComponents(
            parser=FragmentResponseParser(),
            evaluator=ShaderEvaluator(backend, config, similarity=similarity),
            request_builder=RequestBuilder(config, PromptTemplates()),
        )

    def list_configs(self, config_type: str) -> list[str]:
        config_dir = CONFIGS_DIR / config_type
        if not config_dir.exists():
            return []
        return sorted(p.stem for p in config_dir.glob("*.yaml"))

    def load_config(self, config_type: str, name: str) -> dict:
        path = CONFIGS_DIR / config_type / f"{name}.yaml"
        if not path.exists():
            available = self.list_configs(config_type)
            raise FileNotFoundError(
                f"{config_type[:-1].title()} {name!r} not found. Available: {available}"
            )
        return yaml.safe_load(path.read_text())
