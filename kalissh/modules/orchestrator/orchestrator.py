"""
Smart multi-model orchestrator.

Fans a prompt out to several models (or a primary/validator pair), reconciles
the answers into one OrchestrationResult and caches it by content fingerprint.
"""

import asyncio
import logging
import re
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

from pydantic import BaseModel, ValidationError

from ..errors import AllModelsFailedError, KaliSSHError, ValidationParseError
from ..llm import Message, ModelClient, ModelConfig, ModelRegistry, ModelResponse, ModelRole
from .cache import ResultCache, fingerprint

logger = logging.getLogger(__name__)

DEGRADED_CONTENT = "I apologize, but I'm experiencing technical difficulties. Please try again."

# Earlier roles win when several models answered
ROLE_PRIORITY = (
    ModelRole.REASONING,
    ModelRole.ANALYSIS,
    ModelRole.VALIDATION,
    ModelRole.GENERAL,
)

CONSENSUS_MODELS = ("llama", "deepseek", "mistral")
PRIMARY_MODEL = "deepseek"
VALIDATOR_MODEL = "qwen"
VALIDATOR_TEMPERATURE = 0.1
CONFIDENCE_THRESHOLD = 0.6

VALIDATION_INSTRUCTION = (
    "Review the above response for accuracy and safety. Respond with JSON: "
    '{"approved": true/false, "confidence": 0.0-1.0, "issues": "any concerns"}'
)

_CODE_FENCE = re.compile(r"^```(?:json)?\s*(.*?)\s*```$", re.DOTALL)


class ExecutionMode(str, Enum):
    """Reconciliation strategy."""

    SMART_CONSENSUS = "smart_consensus"
    VALIDATED = "validated"


@dataclass(frozen=True)
class OrchestrationResult:
    content: str
    mode: str
    consensus: bool
    models_used: Tuple[str, ...] = ()
    metadata: Dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None
    from_cache: bool = False


class ValidationVerdict(BaseModel):
    """Structured judgement returned by the validator model."""

    approved: bool
    # Not range-checked
    confidence: float
    issues: Union[str, List[str], None] = None


def parse_verdict(text: str) -> ValidationVerdict:
    """
    Parse validator output into a verdict.

    Raises:
        ValidationParseError: Output is not a JSON object with the expected fields
    """
    body = text.strip()
    fenced = _CODE_FENCE.match(body)
    if fenced:
        body = fenced.group(1)
    try:
        return ValidationVerdict.model_validate_json(body)
    except ValidationError as e:
        raise ValidationParseError(f"Unparseable validator verdict: {e.error_count()} error(s)") from e


def select_best_response(responses: Sequence[ModelResponse]) -> ModelResponse:
    """Pick the highest-priority role among survivors, else the first survivor."""
    if len(responses) == 1:
        return responses[0]
    for role in ROLE_PRIORITY:
        for response in responses:
            if response.role == role:
                return response
    return responses[0]


class Orchestrator:
    def __init__(
        self,
        client: ModelClient,
        registry: ModelRegistry,
        cache: ResultCache,
        consensus_models: Sequence[str] = CONSENSUS_MODELS,
        primary_model: str = PRIMARY_MODEL,
        validator_model: str = VALIDATOR_MODEL,
    ):
        """
        Initialize orchestrator.

        Args:
            client: Model client used for every call
            registry: Model registry the keys below refer to
            cache: Result store owned by the caller
            consensus_models: Registry keys fanned out in smart consensus
            primary_model: Registry key of the validated-mode author
            validator_model: Registry key of the validated-mode judge
        """
        for key in (*consensus_models, primary_model, validator_model):
            if key not in registry:
                raise ValueError(f"Model '{key}' is not in the registry")
        self.client = client
        self.registry = registry
        self.cache = cache
        self.consensus_models = tuple(consensus_models)
        self.primary_model = primary_model
        self.validator_model = validator_model

    async def execute_mode(
        self,
        mode: Union[ExecutionMode, str],
        messages: List[Message],
        temperature: float = 0.3,
    ) -> OrchestrationResult:
        """
        Answer a prompt with the requested reconciliation strategy.

        Never raises: orchestration failures come back as a degraded result
        with consensus=False, no models and the error attached.
        """
        mode = self._resolve_mode(mode)
        cache_key = fingerprint(messages, mode.value)

        cached = self.cache.get(cache_key)
        if cached is not None:
            logger.debug(f"Serving {mode.value} result from cache")
            return replace(cached, from_cache=True, metadata={**cached.metadata, "from_cache": True})

        try:
            if mode is ExecutionMode.VALIDATED:
                result = await self._validated(messages, temperature)
            else:
                result = await self._smart_consensus(messages, temperature)
        except KaliSSHError as e:
            logger.error(f"AI orchestration error: {e}")
            return self._degraded(mode, str(e))
        except Exception as e:
            logger.exception(f"Unexpected orchestration failure: {e}")
            return self._degraded(mode, str(e) or type(e).__name__)

        self.cache.set(cache_key, result)
        return result

    async def _smart_consensus(
        self, messages: List[Message], temperature: float
    ) -> OrchestrationResult:
        selected = [self.registry[key] for key in self.consensus_models]

        results = await asyncio.gather(
            *(self._safe_call(config, messages, temperature) for config in selected)
        )

        survivors = [r for r in results if r.ok]
        errors = {r.model: r.error for r in results if r.error}

        if not survivors:
            raise AllModelsFailedError("All models failed to respond")

        best = select_best_response(survivors)

        return OrchestrationResult(
            content=best.content,
            mode=ExecutionMode.SMART_CONSENSUS.value,
            consensus=len(survivors) >= 2,
            models_used=tuple(r.model for r in survivors),
            metadata={
                "total_responses": len(survivors),
                "selected_model": best.model,
                "consensus_score": len(survivors) / len(selected),
                "errors": errors,
            },
        )

    async def _validated(self, messages: List[Message], temperature: float) -> OrchestrationResult:
        primary = self.registry[self.primary_model]
        validator = self.registry[self.validator_model]

        # A primary failure is an orchestration failure
        primary_response = await self.client.call(primary, messages, temperature)

        validation_messages = [
            *messages,
            {"role": "assistant", "content": primary_response.content},
            {"role": "user", "content": VALIDATION_INSTRUCTION},
        ]

        try:
            validation_response = await self.client.call(
                validator, validation_messages, VALIDATOR_TEMPERATURE
            )
            verdict = parse_verdict(validation_response.content)
        except KaliSSHError as e:
            logger.warning(f"Validation by {validator.model_id} failed: {e}")
            return OrchestrationResult(
                content=primary_response.content,
                mode=ExecutionMode.VALIDATED.value,
                consensus=False,
                models_used=(primary.model_id,),
                metadata={"validation_failed": True, "validation_error": str(e)},
            )

        return OrchestrationResult(
            content=primary_response.content,
            mode=ExecutionMode.VALIDATED.value,
            consensus=verdict.approved and verdict.confidence > CONFIDENCE_THRESHOLD,
            models_used=(primary.model_id, validator.model_id),
            metadata={
                "validation": verdict.model_dump(),
                "approved": verdict.approved,
                "confidence": verdict.confidence,
            },
        )

    async def _safe_call(
        self, config: ModelConfig, messages: List[Message], temperature: float
    ) -> ModelResponse:
        """Call one model, turning any failure into an error response."""
        try:
            return await self.client.call(config, messages, temperature)
        except Exception as e:
            return ModelResponse(
                model=config.model_id,
                role=config.role,
                content="",
                error=str(e) or type(e).__name__,
            )

    @staticmethod
    def _resolve_mode(mode: Union[ExecutionMode, str]) -> ExecutionMode:
        try:
            return ExecutionMode(mode)
        except ValueError:
            logger.debug(f"Unknown mode {mode!r}, using smart consensus")
            return ExecutionMode.SMART_CONSENSUS

    @staticmethod
    def _degraded(mode: ExecutionMode, error: str) -> OrchestrationResult:
        return OrchestrationResult(
            content=DEGRADED_CONTENT,
            mode=mode.value,
            consensus=False,
            models_used=(),
            metadata={"error": True},
            error=error,
        )
