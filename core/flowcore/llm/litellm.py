"""LiteLLM-backed provider: one interface over OpenAI, Anthropic, OpenRouter, ..."""

import logging
from typing import Any

import litellm

from flowcore.llm.provider import (
    GeneratedImage,
    ImageGenerationResponse,
    LLMProvider,
    LLMResponse,
)

logger = logging.getLogger(__name__)


class LiteLLMProvider(LLMProvider):
    """
    Provider that routes through ``litellm``.

    Model strings use litellm's ``provider/model`` form, e.g.
    ``openai/gpt-4o-mini`` or ``anthropic/claude-sonnet-4-20250514``.
    """

    def __init__(
        self,
        model: str = "openai/gpt-4o-mini",
        api_key: str | None = None,
        api_base: str | None = None,
        timeout: float = 120.0,
        **extra_kwargs: Any,
    ):
        self.model = model
        self.api_key = api_key
        self.api_base = api_base
        self.timeout = timeout
        self.extra_kwargs = extra_kwargs

    def _common_kwargs(self) -> dict[str, Any]:
        kwargs: dict[str, Any] = {"timeout": self.timeout, **self.extra_kwargs}
        if self.api_key:
            kwargs["api_key"] = self.api_key
        if self.api_base:
            kwargs["api_base"] = self.api_base
        return kwargs

    async def complete(
        self,
        messages: list[dict[str, Any]],
        system: str = "",
        model: str | None = None,
        max_tokens: int = 1024,
        temperature: float | None = None,
        json_mode: bool = False,
    ) -> LLMResponse:
        full_messages = [{"role": "system", "content": system}] if system else []
        full_messages.extend(messages)

        kwargs = self._common_kwargs()
        if temperature is not None:
            kwargs["temperature"] = temperature
        if json_mode:
            kwargs["response_format"] = {"type": "json_object"}

        target_model = model or self.model
        logger.debug(f"LLM request to {target_model} ({len(full_messages)} messages)")
        response = await litellm.acompletion(
            model=target_model,
            messages=full_messages,
            max_tokens=max_tokens,
            **kwargs,
        )

        choice = response.choices[0]
        usage = getattr(response, "usage", None)
        return LLMResponse(
            content=choice.message.content or "",
            model=getattr(response, "model", None) or target_model,
            input_tokens=getattr(usage, "prompt_tokens", 0) or 0,
            output_tokens=getattr(usage, "completion_tokens", 0) or 0,
            stop_reason=choice.finish_reason or "",
            raw_response=response,
        )

    async def generate_image(
        self,
        prompt: str,
        model: str | None = None,
        size: str = "1024x1024",
        n: int = 1,
    ) -> ImageGenerationResponse:
        target_model = model or "openai/dall-e-3"
        response = await litellm.aimage_generation(
            prompt=prompt,
            model=target_model,
            size=size,
            n=n,
            **self._common_kwargs(),
        )
        images = [
            GeneratedImage(
                url=getattr(item, "url", None),
                b64_json=getattr(item, "b64_json", None),
                revised_prompt=getattr(item, "revised_prompt", None),
            )
            for item in response.data or []
        ]
        return ImageGenerationResponse(images=images, model=target_model, raw_response=response)
