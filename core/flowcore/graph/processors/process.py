"""PROCESS nodes: prompt an LLM with optional static knowledge and retrieved context."""

import logging

from flowcore.graph.errors import NodeExecutionError
from flowcore.graph.node import NodeContext, NodeOutput

logger = logging.getLogger(__name__)

DEFAULT_TEMPERATURE = 0.7
DEFAULT_MAX_TOKENS = 2048


def build_system_prompt(system_prompt: str, knowledge_items: list[dict], retrieved: list[str]) -> str:
    """Append knowledge items and retrieved chunks to the system prompt."""
    parts = [system_prompt.strip()] if system_prompt.strip() else []
    if knowledge_items:
        knowledge = "\n\n".join(
            f"[{item.get('name', 'reference')}]\n{item.get('content', '')}" for item in knowledge_items
        )
        parts.append(f"Reference material:\n{knowledge}")
    if retrieved:
        parts.append("## Knowledge base results\n" + "\n\n".join(retrieved))
    return "\n\n".join(parts)


async def run_process(ctx: NodeContext) -> NodeOutput:
    config = ctx.config
    if ctx.llm is None:
        raise NodeExecutionError("No LLM provider configured")

    user_prompt = str(config.get("userPrompt") or "")
    if not user_prompt.strip():
        raise NodeExecutionError("User prompt must not be empty")

    retrieved: list[str] = []
    if ctx.retriever is not None and (config.get("ragEnabled") or config.get("knowledgeBaseId")):
        try:
            retrieved = await ctx.retriever(user_prompt, config)
        except Exception as e:
            # Retrieval is best-effort; the prompt still goes out without it
            logger.warning(f"Knowledge retrieval failed for node '{ctx.node.name}': {e}")

    system = build_system_prompt(
        str(config.get("systemPrompt") or ""),
        config.get("knowledgeItems") or [],
        retrieved,
    )

    response = await ctx.llm.complete(
        messages=[{"role": "user", "content": user_prompt}],
        system=system,
        model=config.get("model") or None,
        max_tokens=int(config.get("maxTokens") or DEFAULT_MAX_TOKENS),
        temperature=config.get("temperature", DEFAULT_TEMPERATURE),
        json_mode=bool(config.get("jsonMode")),
    )

    logger.info(
        f"LLM call for '{ctx.node.name}' used {response.input_tokens + response.output_tokens} tokens",
        extra={"model": response.model, "tokens_used": response.input_tokens + response.output_tokens},
    )
    return NodeOutput(
        data={"result": response.content, "model": response.model},
        prompt_tokens=response.input_tokens,
        completion_tokens=response.output_tokens,
    )
