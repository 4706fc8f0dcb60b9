"""LLM provider abstraction."""

from flowcore.llm.litellm import LiteLLMProvider
from flowcore.llm.mock import MockLLMProvider
from flowcore.llm.provider import (
    GeneratedImage,
    ImageGenerationResponse,
    LLMProvider,
    LLMResponse,
)

__all__ = [
    "LLMProvider",
    "LLMResponse",
    "GeneratedImage",
    "ImageGenerationResponse",
    "LiteLLMProvider",
    "MockLLMProvider",
]
