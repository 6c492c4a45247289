from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

from shader_lab.core.protocols import Evaluator, ResponseParser

if TYPE_CHECKING:
    from shader_lab.core.requests import RequestBuilder
    from shader_lab.core.types import LabConfig


@dataclass
class DomainComponents:
    parser: ResponseParser
    evaluator: Evaluator
    request_builder: RequestBuilder


class DomainPlugin:
    name: str
    description: str

    def create_components(self, config: LabConfig, backend) -> DomainComponents:
        raise NotImplementedError

    def list_configs(self, config_type: str) -> list[str]:
        """List available config names for a given type (e.g. 'prompts')."""
        raise NotImplementedError

    def load_config(self, config_type: str, name: str) -> dict:
        """Load a config by type and name."""
        raise NotImplementedError
