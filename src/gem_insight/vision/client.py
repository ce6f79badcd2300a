"""Vision capability client: an abstract contract and an OpenAI-compatible implementation."""

from __future__ import annotations

import base64
import os
from dataclasses import dataclass
from typing import Any, Protocol

import openai
from openai import AsyncOpenAI

from gem_insight.config import VisionConfig
from gem_insight.errors import ExtractionParseError, ExtractionTimeout, ExtractionUnavailable
from utils.logging import get_logger

LOGGER = get_logger(__name__, extra={"component": "vision_client"})


@dataclass(frozen=True)
class VisionImage:
    data: bytes
    mime_type: str

    def to_data_url(self) -> str:
        b64 = base64.b64encode(self.data).decode("ascii")
        return f"data:{self.mime_type};base64,{b64}"


@dataclass(frozen=True)
class VisionRequest:
    model: str
    system_prompt: str
    user_prompt: str
    images: tuple[VisionImage, ...]
    max_tokens: int
    temperature: float
    image_detail: str
    timeout_s: float


@dataclass(frozen=True)
class VisionReply:
    content: str
    model: str
    prompt_tokens: int = 0
    completion_tokens: int = 0


class VisionClient(Protocol):
    """Anything that can answer a structured vision request with a JSON string."""

    async def complete(self, request: VisionRequest) -> VisionReply: ...


class OpenAIVisionClient:
    """Chat-completions client for OpenAI or any OpenAI-compatible endpoint."""

    def __init__(self, api_key: str | None, base_url: str | None = None) -> None:
        # Retries are owned by the pipeline's bounded retry policy.
        self._client = AsyncOpenAI(api_key=api_key, base_url=base_url, max_retries=0)

    @classmethod
    def from_config(cls, config: VisionConfig) -> OpenAIVisionClient:
        return cls(api_key=os.getenv(config.api_key_env), base_url=config.base_url)

    def _build_messages(self, request: VisionRequest) -> list[dict[str, Any]]:
        content: list[dict[str, Any]] = [{"type": "text", "text": request.user_prompt}]
        for image in request.images:
            content.append(
                {
                    "type": "image_url",
                    "image_url": {"url": image.to_data_url(), "detail": request.image_detail},
                }
            )
        return [
            {"role": "system", "content": request.system_prompt},
            {"role": "user", "content": content},
        ]

    async def complete(self, request: VisionRequest) -> VisionReply:
        try:
            response = await self._client.chat.completions.create(
                model=request.model,
                messages=self._build_messages(request),
                max_tokens=request.max_tokens,
                temperature=request.temperature,
                response_format={"type": "json_object"},
                timeout=request.timeout_s,
            )
        except openai.APITimeoutError as exc:
            raise ExtractionTimeout(f"vision request timed out after {request.timeout_s:.0f}s") from exc
        except (openai.APIConnectionError, openai.RateLimitError, openai.InternalServerError) as exc:
            raise ExtractionUnavailable(f"vision capability unavailable: {exc}") from exc
        except openai.APIStatusError as exc:
            raise ExtractionUnavailable(f"vision request rejected with HTTP {exc.status_code}") from exc

        if not response.choices:
            raise ExtractionParseError("vision response contained no choices")
        choice = response.choices[0]
        if choice.finish_reason == "length":
            raise ExtractionParseError("vision response truncated at max_tokens")
        content = choice.message.content
        if not content:
            raise ExtractionParseError("vision response was empty")

        usage = response.usage
        return VisionReply(
            content=content,
            model=response.model or request.model,
            prompt_tokens=usage.prompt_tokens if usage else 0,
            completion_tokens=usage.completion_tokens if usage else 0,
        )

    async def aclose(self) -> None:
        await self._client.close()


__all__ = ["OpenAIVisionClient", "VisionClient", "VisionImage", "VisionReply", "VisionRequest"]
