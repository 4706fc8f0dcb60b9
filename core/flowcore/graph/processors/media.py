"""
DATA, IMAGE, VIDEO and AUDIO nodes ingest files; IMAGE_GEN creates images.

Ingestion reads what it can as text (inline content, local files, http
URLs for DATA; spreadsheets through openpyxl, CSV and JSON parsed) and
passes media references through untouched. With a ``prompt`` configured,
the material is handed to the LLM for analysis; images are sent as
``image_url`` message parts.
"""

import asyncio
import csv
import io
import json
import logging
from pathlib import Path
from typing import Any

import httpx
from openpyxl import load_workbook

from flowcore.graph.errors import NodeExecutionError
from flowcore.graph.node import NodeContext, NodeOutput

logger = logging.getLogger(__name__)

MAX_TEXT_CHARS = 100_000
TEXT_SUFFIXES = {".txt", ".md", ".csv", ".json", ".xlsx", ".xlsm", ".html", ".xml", ".yaml", ".yml", ".log"}


def read_spreadsheet(path: Path) -> list[list[Any]]:
    workbook = load_workbook(path, read_only=True, data_only=True)
    try:
        sheet = workbook.active
        return [list(row) for row in sheet.iter_rows(values_only=True)]
    finally:
        workbook.close()


def read_local_file(path: Path) -> Any:
    """Parsed content of a local data file (rows, JSON value or text)."""
    suffix = path.suffix.lower()
    if suffix in (".xlsx", ".xlsm"):
        return read_spreadsheet(path)
    text = path.read_text(encoding="utf-8", errors="replace")
    if suffix == ".csv":
        return list(csv.reader(io.StringIO(text)))
    if suffix == ".json":
        try:
            return json.loads(text)
        except ValueError:
            return text
    return text


def _as_text(value: Any) -> str:
    if isinstance(value, str):
        return value[:MAX_TEXT_CHARS]
    return json.dumps(value, ensure_ascii=False, default=str)[:MAX_TEXT_CHARS]


async def load_file(ctx: NodeContext, spec: dict[str, Any], fetch_remote: bool) -> dict[str, Any]:
    name = spec.get("name") or spec.get("path") or spec.get("url") or "file"
    meta: dict[str, Any] = {
        "name": name,
        "url": spec.get("url"),
        "mimeType": spec.get("mimeType"),
    }

    if spec.get("content") is not None:
        meta["content"] = spec["content"]
    elif spec.get("path"):
        path = Path(spec["path"]).expanduser()
        if not path.is_file():
            raise NodeExecutionError(f"File not found: {path}")
        if path.suffix.lower() in TEXT_SUFFIXES:
            meta["content"] = await asyncio.to_thread(read_local_file, path)
        meta["size"] = path.stat().st_size
    elif spec.get("url") and fetch_remote:
        client = ctx.http_client
        try:
            if client is not None:
                response = await client.get(spec["url"], timeout=30.0)
            else:
                async with httpx.AsyncClient() as own_client:
                    response = await own_client.get(spec["url"], timeout=30.0)
        except httpx.HTTPError as e:
            raise NodeExecutionError(f"Failed to fetch {spec['url']}: {e}") from e
        if not response.is_success:
            raise NodeExecutionError(f"Failed to fetch {spec['url']}: HTTP {response.status_code}")
        meta["content"] = response.text[:MAX_TEXT_CHARS]
    return meta


async def run_media(ctx: NodeContext) -> NodeOutput:
    config = ctx.config
    node_type = str(ctx.node.type)
    files = config.get("files") or []
    if not isinstance(files, list):
        raise NodeExecutionError("'files' must be a list")

    loaded = [await load_file(ctx, spec, fetch_remote=node_type == "DATA") for spec in files]
    text = "\n\n".join(
        f"[{f['name']}]\n{_as_text(f['content'])}" for f in loaded if f.get("content") is not None
    )
    data: dict[str, Any] = {"files": loaded, "content": text, "result": text}

    prompt = str(config.get("prompt") or "").strip()
    if not prompt:
        return NodeOutput(data=data)
    if ctx.llm is None:
        raise NodeExecutionError("No LLM provider configured")

    parts: list[dict[str, Any]] = [{"type": "text", "text": f"{prompt}\n\n{text}".strip()}]
    if node_type == "IMAGE":
        parts.extend({"type": "image_url", "image_url": {"url": f["url"]}} for f in loaded if f.get("url"))
    message_content: Any = parts if len(parts) > 1 else parts[0]["text"]

    response = await ctx.llm.complete(
        messages=[{"role": "user", "content": message_content}],
        system=str(config.get("systemPrompt") or ""),
        model=config.get("model") or None,
        max_tokens=int(config.get("maxTokens") or 2048),
    )
    data["result"] = response.content
    data["analysis"] = response.content
    return NodeOutput(
        data=data,
        prompt_tokens=response.input_tokens,
        completion_tokens=response.output_tokens,
    )


async def run_image_gen(ctx: NodeContext) -> NodeOutput:
    config = ctx.config
    prompt = str(config.get("prompt") or "").strip()
    if not prompt:
        raise NodeExecutionError("Image generation prompt must not be empty")
    if ctx.llm is None:
        raise NodeExecutionError("No image generation provider configured")

    n = int(config.get("n") or 1)
    if not 1 <= n <= 10:
        raise NodeExecutionError("Image count must be between 1 and 10")

    response = await ctx.llm.generate_image(
        prompt,
        model=config.get("model") or None,
        size=str(config.get("size") or "1024x1024"),
        n=n,
    )
    images = [
        {"url": img.url, "b64": img.b64_json, "revisedPrompt": img.revised_prompt}
        for img in response.images
    ]
    if not images:
        raise NodeExecutionError("Image provider returned no images")

    return NodeOutput(
        data={
            "result": images[0]["url"] or images[0]["b64"],
            "images": images,
            "imageUrls": [
                {"index": i + 1, "url": img["url"], "description": img["revisedPrompt"] or prompt}
                for i, img in enumerate(images)
                if img["url"]
            ],
            "model": response.model,
        }
    )
