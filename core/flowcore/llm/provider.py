"""LLM Provider abstraction for pluggable LLM backends."""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any


@dataclass
class LLMResponse:
    """Response from an LLM call."""

    content: str
    model: str
    input_tokens: int = 0
    output_tokens: int = 0
    stop_reason: str = ""
    raw_response: Any = None


@dataclass
class GeneratedImage:
    """One image returned by an image-generation call."""

    url: str | None = None
    b64_json: str | None = None
    revised_prompt: str | None = None


@dataclass
class ImageGenerationResponse:
    """Response from an image-generation call."""

    images: list[GeneratedImage] = field(default_factory=list)
    model: str = ""
    raw_response: Any = None


class LLMProvider(ABC):
    """
    Abstract LLM provider - plug in any LLM backend.

    Calls are async so the engine can run other branches (and honour
    cancellation) while a request is in flight. Implementations raise on
    provider failure; the node dispatcher turns that into an error result.
    """

    @abstractmethod
    async def complete(
        self,
        messages: list[dict[str, Any]],
        system: str = "",
        model: str | None = None,
        max_tokens: int = 1024,
        temperature: float | None = None,
        json_mode: bool = False,
    ) -> LLMResponse:
        """
        Generate a completion from the LLM.

        Args:
            messages: Conversation history [{role: "user"|"assistant", content: str}]
            system: System prompt
            model: Override the provider's default model
            max_tokens: Maximum tokens to generate
            temperature: Sampling temperature (provider default when None)
            json_mode: Request a JSON object response

        Returns:
            LLMResponse with content and token usage
        """

    async def generate_image(
        self,
        prompt: str,
        model: str | None = None,
        size: str = "1024x1024",
        n: int = 1,
    ) -> ImageGenerationResponse:
        """Generate images from a prompt. Providers without image support raise."""
        raise NotImplementedError(f"{type(self).__name__} does not support image generation")
