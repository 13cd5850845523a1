"""
Model client for OpenAI-compatible chat-completions backends.

One call, one model, one deadline. Retry policy belongs to the caller.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import httpx

from ..errors import BackendError, ModelTimeoutError
from .registry import ModelConfig, ModelRole
from .stats import ModelStatsTracker

logger = logging.getLogger(__name__)

Message = Dict[str, str]


@dataclass(frozen=True)
class ModelResponse:
    """Outcome of a single model call."""

    model: str
    role: ModelRole
    content: str
    error: Optional[str] = None
    latency: float = 0.0

    @property
    def ok(self) -> bool:
        return self.error is None and bool(self.content)


class ModelClient:
    def __init__(
        self,
        api_key: str,
        api_url: str,
        http_client: Optional[httpx.AsyncClient] = None,
        stats: Optional[ModelStatsTracker] = None,
    ):
        """
        Initialize model client.

        Args:
            api_key: Bearer credential for the backend
            api_url: Chat-completions endpoint URL
            http_client: Shared async HTTP client (one is created if omitted)
            stats: Optional tracker that records every call outcome
        """
        self.api_key = api_key
        self.api_url = api_url
        self.stats = stats
        self._owns_client = http_client is None
        self._http = http_client or httpx.AsyncClient()

    async def call(
        self, config: ModelConfig, messages: List[Message], temperature: float
    ) -> ModelResponse:
        """
        Invoke one model.

        Args:
            config: Model to call
            messages: Chat message sequence ({"role": ..., "content": ...})
            temperature: Sampling temperature

        Returns:
            ModelResponse with the first choice's content

        Raises:
            BackendError: Transport failure, non-2xx status or no choices
            ModelTimeoutError: config.timeout elapsed
        """
        started = time.monotonic()
        try:
            content = await asyncio.wait_for(
                self._request(config, messages, temperature), timeout=config.timeout
            )
        except (asyncio.TimeoutError, httpx.TimeoutException):
            error = f"{config.model_id} timed out after {config.timeout}s"
            self._record_failure(config, error)
            raise ModelTimeoutError(error) from None
        except BackendError as e:
            self._record_failure(config, str(e))
            raise

        latency = time.monotonic() - started
        if self.stats:
            self.stats.record_success(config.model_id, latency)
        logger.debug(f"{config.model_id} answered in {latency:.2f}s")

        return ModelResponse(
            model=config.model_id,
            role=config.role,
            content=content,
            latency=latency,
        )

    async def _request(
        self, config: ModelConfig, messages: List[Message], temperature: float
    ) -> str:
        payload = {
            "model": config.model_id,
            "messages": messages,
            "temperature": temperature,
        }
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }

        try:
            response = await self._http.post(
                self.api_url, json=payload, headers=headers, timeout=config.timeout
            )
        except httpx.TimeoutException:
            raise
        except httpx.HTTPError as e:
            raise BackendError(f"Request to {config.model_id} failed: {e}") from e

        if response.status_code < 200 or response.status_code >= 300:
            raise BackendError(f"API request failed with status {response.status_code}")

        try:
            data: Dict[str, Any] = response.json()
        except ValueError as e:
            raise BackendError(f"Invalid JSON from {config.model_id}") from e

        choices = data.get("choices") if isinstance(data, dict) else None
        if not choices:
            raise BackendError("Invalid response from API: no choices")

        try:
            content = choices[0]["message"]["content"]
        except (KeyError, IndexError, TypeError) as e:
            raise BackendError("Invalid response from API: malformed choice") from e

        return content or ""

    def _record_failure(self, config: ModelConfig, error: str) -> None:
        logger.warning(f"Model call failed: {error}")
        if self.stats:
            self.stats.record_failure(config.model_id, error)

    async def aclose(self) -> None:
        """Close the HTTP client if this instance created it."""
        if self._owns_client:
            await self._http.aclose()
