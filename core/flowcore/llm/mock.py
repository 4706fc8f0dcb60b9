"""Scripted LLM provider for tests and dry runs."""

from typing import Any

from flowcore.llm.provider import (
    GeneratedImage,
    ImageGenerationResponse,
    LLMProvider,
    LLMResponse,
)


class MockLLMProvider(LLMProvider):
    """
    Returns scripted responses without any network access.

    ``responses`` items are consumed in order; each may be a string, an
    ``LLMResponse``, an exception instance (raised), or a callable taking
    the request messages. When the script runs out, ``default_response``
    is returned. Every call is recorded in ``calls``.
    """

    def __init__(
        self,
        responses: list[Any] | None = None,
        default_response: str = "mock response",
        model: str = "mock-model",
        tokens_per_call: tuple[int, int] = (10, 5),
    ):
        self.responses = list(responses or [])
        self.default_response = default_response
        self.model = model
        self.tokens_per_call = tokens_per_call
        self.calls: list[dict[str, Any]] = []
        self.image_calls: list[dict[str, Any]] = []

    async def complete(
        self,
        messages: list[dict[str, Any]],
        system: str = "",
        model: str | None = None,
        max_tokens: int = 1024,
        temperature: float | None = None,
        json_mode: bool = False,
    ) -> LLMResponse:
        self.calls.append({"messages": messages, "system": system, "model": model})

        item: Any = self.responses.pop(0) if self.responses else self.default_response
        if callable(item):
            item = item(messages)
        if isinstance(item, BaseException):
            raise item
        if isinstance(item, LLMResponse):
            return item

        prompt_tokens, completion_tokens = self.tokens_per_call
        return LLMResponse(
            content=str(item),
            model=model or self.model,
            input_tokens=prompt_tokens,
            output_tokens=completion_tokens,
            stop_reason="stop",
        )

    async def generate_image(
        self,
        prompt: str,
        model: str | None = None,
        size: str = "1024x1024",
        n: int = 1,
    ) -> ImageGenerationResponse:
        self.image_calls.append({"prompt": prompt, "model": model, "size": size, "n": n})
        return ImageGenerationResponse(
            images=[
                GeneratedImage(url=f"https://images.test/{i}.png", revised_prompt=prompt)
                for i in range(n)
            ],
            model=model or self.model,
        )
