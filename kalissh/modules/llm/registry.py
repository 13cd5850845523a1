"""
Model registry.

The registry is static for the lifetime of the process: it is built once at
startup and shared read-only by the client, orchestrator and API.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Dict, Iterator, Mapping, Optional


class ModelRole(str, Enum):
    """Declared specialty of a model in the panel."""

    GENERAL = "general"
    REASONING = "reasoning"
    ANALYSIS = "analysis"
    VALIDATION = "validation"
    CREATIVITY = "creativity"
    LOGIC = "logic"


@dataclass(frozen=True)
class ModelConfig:
    """One configured model backend."""

    key: str
    model_id: str
    display_name: str
    role: ModelRole
    timeout: float
    cost_weight: float = 1.0


DEFAULT_MODELS = (
    ModelConfig("llama", "meta-llama/llama-3-8b-instruct", "Llama-3-8B", ModelRole.GENERAL, 30, 1.0),
    ModelConfig("deepseek", "deepseek/deepseek-chat", "DeepSeek", ModelRole.REASONING, 35, 1.2),
    ModelConfig("mistral", "mistralai/mistral-7b-instruct", "Mistral-7B", ModelRole.ANALYSIS, 25, 1.0),
    ModelConfig("qwen", "qwen/qwen-2.5-14b-instruct", "Qwen-2.5-14B", ModelRole.VALIDATION, 30, 1.5),
    ModelConfig("gpt", "openai/gpt-3.5-turbo", "GPT-3.5-Turbo", ModelRole.CREATIVITY, 30, 1.8),
    ModelConfig("gemma", "google/gemma-7b-it", "Gemma-7B", ModelRole.LOGIC, 25, 1.0),
)


class ModelRegistry(Mapping[str, ModelConfig]):
    """Immutable mapping of registry key to ModelConfig, in declaration order."""

    def __init__(self, models=DEFAULT_MODELS):
        self._models: Dict[str, ModelConfig] = {}
        for model in models:
            if model.key in self._models:
                raise ValueError(f"Duplicate model key: {model.key}")
            self._models[model.key] = model

    def __getitem__(self, key: str) -> ModelConfig:
        return self._models[key]

    def __iter__(self) -> Iterator[str]:
        return iter(self._models)

    def __len__(self) -> int:
        return len(self._models)

    def by_model_id(self, model_id: str) -> Optional[ModelConfig]:
        for model in self._models.values():
            if model.model_id == model_id:
                return model
        return None
