"""
LLM Module - Black Box Interface

Purpose: Describe the model panel and call individual model backends
Interface: ModelRegistry, ModelClient.call(), ModelStatsTracker
Hidden: HTTP payload format, timeout enforcement, response normalization

Can be replaced with any chat-completions compatible backend.
"""

from .client import Message, ModelClient, ModelResponse
from .registry import DEFAULT_MODELS, ModelConfig, ModelRegistry, ModelRole
from .stats import ModelCallStats, ModelStatsTracker

__all__ = [
    "DEFAULT_MODELS",
    "Message",
    "ModelCallStats",
    "ModelClient",
    "ModelConfig",
    "ModelRegistry",
    "ModelResponse",
    "ModelRole",
    "ModelStatsTracker",
]
