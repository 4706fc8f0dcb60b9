"""
OUTPUT nodes: shape accumulated upstream data into the execution's result.

Text formats (text, json, markdown) produce content only. Document formats
(html, word, excel, pdf) also write a file under
``<output_dir>/<execution_id>/``. With ``aiGenerate`` set, the content is
written by the LLM from the upstream data and the node's prompt;
otherwise the resolved prompt is the content, or, without a prompt, the
upstream outputs rendered in the requested format.
"""

import asyncio
import json
import logging
import re
from datetime import datetime
from pathlib import Path
from typing import Any
from xml.sax.saxutils import escape

from docx import Document
from openpyxl import Workbook
from reportlab.lib.pagesizes import A4
from reportlab.lib.styles import getSampleStyleSheet
from reportlab.platypus import Paragraph, SimpleDocTemplate, Spacer

from flowcore.graph.errors import NodeExecutionError
from flowcore.graph.node import NodeContext, NodeOutput
from flowcore.graph.variables import parse_json_like

logger = logging.getLogger(__name__)

OUTPUT_FORMATS = ("text", "json", "markdown", "html", "word", "excel", "pdf", "image")
FILE_EXTENSIONS = {"html": "html", "word": "docx", "excel": "xlsx", "pdf": "pdf"}

FORMAT_INSTRUCTIONS = {
    "text": "Write plain text without any markup.",
    "json": "Write valid JSON only. The output must parse as JSON.",
    "markdown": "Write Markdown using headings, lists and code blocks where useful.",
    "html": "Write a complete, well-structured HTML document.",
    "word": "Write document content with clear headings and paragraphs.",
    "excel": "Write tabular content as a JSON array of objects, one object per row.",
    "pdf": "Write document content with clear headings and paragraphs.",
    "image": "Write a detailed, concrete description of the image to produce.",
}


# ---- rendering helpers ----


def to_text(value: Any, indent: str = "") -> str:
    if not isinstance(value, dict):
        return f"{indent}{value}\n"
    lines = []
    for key, item in value.items():
        if isinstance(item, dict):
            lines.append(f"{indent}{key}:\n{to_text(item, indent + '  ')}")
        elif isinstance(item, list):
            lines.append(f"{indent}{key}: {json.dumps(item, ensure_ascii=False, default=str)}\n")
        else:
            lines.append(f"{indent}{key}: {item}\n")
    return "".join(lines)


def to_markdown(value: dict[str, Any], level: int = 1) -> str:
    parts = []
    for key, item in value.items():
        heading = "#" * min(level, 6)
        if isinstance(item, dict):
            parts.append(f"{heading} {key}\n\n{to_markdown(item, level + 1)}")
        elif isinstance(item, list):
            bullets = "\n".join(f"- {_cell(i)}" for i in item)
            parts.append(f"{heading} {key}\n\n{bullets}\n")
        else:
            parts.append(f"{heading} {key}\n\n{item}\n")
    return "\n".join(parts)


def format_upstream(outputs: dict[str, Any], fmt: str) -> str:
    match fmt:
        case "text":
            return to_text(outputs)
        case "markdown":
            return to_markdown(outputs)
        case _:
            return json.dumps(outputs, indent=2, ensure_ascii=False, default=str)


def sanitize_file_name(name: str) -> str:
    cleaned = re.sub(r'[\\/:*?"<>|\x00-\x1f]', "_", name).strip(" .")
    return cleaned[:200] or "output"


def table_rows(content: str) -> list[list[Any]]:
    """Rows for a spreadsheet: JSON list of objects, JSON object, pipe table or lines."""
    parsed = parse_json_like(content)
    if isinstance(parsed, list) and parsed and all(isinstance(r, dict) for r in parsed):
        headers = list(dict.fromkeys(k for row in parsed for k in row))
        return [headers] + [[_cell(row.get(h)) for h in headers] for row in parsed]
    if isinstance(parsed, dict):
        return [["key", "value"]] + [[k, _cell(v)] for k, v in parsed.items()]

    rows = []
    for line in content.splitlines():
        if not line.strip() or re.fullmatch(r"[\s|:\-]+", line):
            continue
        if "|" in line:
            rows.append([c.strip() for c in line.strip().strip("|").split("|")])
        else:
            rows.append([line])
    return rows


def _cell(value: Any) -> Any:
    if isinstance(value, dict | list):
        return json.dumps(value, ensure_ascii=False, default=str)
    return value


def write_word(path: Path, title: str, content: str) -> None:
    document = Document()
    if title:
        document.add_heading(title, level=0)
    for block in content.split("\n\n"):
        stripped = block.strip()
        if not stripped:
            continue
        heading = re.match(r"^(#{1,6})\s+(.*)$", stripped)
        if heading:
            document.add_heading(heading.group(2), level=min(len(heading.group(1)), 4))
        else:
            document.add_paragraph(stripped)
    document.save(str(path))


def write_excel(path: Path, title: str, content: str) -> None:
    workbook = Workbook()
    sheet = workbook.active
    sheet.title = (title or "Sheet1")[:31]
    for row in table_rows(content):
        sheet.append(row)
    workbook.save(str(path))


def write_pdf(path: Path, title: str, content: str) -> None:
    styles = getSampleStyleSheet()
    story = []
    if title:
        story.append(Paragraph(escape(title), styles["Title"]))
        story.append(Spacer(1, 12))
    for block in content.split("\n\n"):
        stripped = block.strip()
        if stripped:
            story.append(Paragraph(escape(stripped).replace("\n", "<br/>"), styles["BodyText"]))
            story.append(Spacer(1, 6))
    SimpleDocTemplate(str(path), pagesize=A4).build(story)


def write_html(path: Path, title: str, content: str) -> None:
    if "<html" not in content.lower():
        content = (
            f"<!DOCTYPE html>\n<html><head><meta charset=\"utf-8\"><title>{escape(title)}</title></head>"
            f"<body><pre>{escape(content)}</pre></body></html>"
        )
    path.write_text(content, encoding="utf-8")


_WRITERS = {"word": write_word, "excel": write_excel, "pdf": write_pdf, "html": write_html}


async def generate_file(output_dir: Path, fmt: str, file_name: str, title: str, content: str) -> dict[str, Any]:
    """Write a document file off the event loop and describe it."""
    path = output_dir / f"{sanitize_file_name(file_name)}.{FILE_EXTENSIONS[fmt]}"

    def _write() -> int:
        path.parent.mkdir(parents=True, exist_ok=True)
        _WRITERS[fmt](path, title, content)
        return path.stat().st_size

    size = await asyncio.to_thread(_write)
    logger.info(f"Generated {fmt} file {path.name} ({size} bytes)")
    return {"fileName": path.name, "path": str(path), "format": fmt, "size": size}


# ---- processor ----


def collect_upstream(ctx: NodeContext) -> dict[str, Any]:
    return {r.node_name: r.data for r in ctx.results.values() if r.success}


async def run_output(ctx: NodeContext) -> NodeOutput:
    config = ctx.config
    fmt = str(config.get("format") or "text").lower()
    if fmt not in OUTPUT_FORMATS:
        raise NodeExecutionError(f"Unsupported output format: {fmt}")

    outputs = collect_upstream(ctx)
    prompt = config.get("prompt")
    if prompt is None or isinstance(prompt, str):
        prompt_text = prompt or ""
    else:
        prompt_text = json.dumps(prompt, ensure_ascii=False, default=str)
    prompt_tokens = completion_tokens = 0

    if config.get("aiGenerate") and prompt_text.strip():
        if ctx.llm is None:
            raise NodeExecutionError("No LLM provider configured")
        user_prompt = (
            "Outputs of the workflow's nodes:\n\n"
            f"{json.dumps(outputs, indent=2, ensure_ascii=False, default=str)}\n\n"
            f"Output requirements:\n{prompt_text}"
        )
        response = await ctx.llm.complete(
            messages=[{"role": "user", "content": user_prompt}],
            system=f"You are a content generation assistant. {FORMAT_INSTRUCTIONS[fmt]}",
            model=config.get("model") or None,
            max_tokens=int(config.get("maxTokens") or 4096),
            temperature=config.get("temperature", 0.7),
        )
        content = response.content
        prompt_tokens, completion_tokens = response.input_tokens, response.output_tokens
    elif prompt_text.strip():
        content = prompt_text
    else:
        content = format_upstream(outputs, fmt)

    data: dict[str, Any] = {"result": content, "format": fmt, "files": []}

    if fmt == "json":
        parsed = parse_json_like(content)
        if parsed is not None:
            data["result"] = parsed
    elif fmt == "image":
        images = [img for out in outputs.values() for img in out.get("images") or [] if isinstance(img, dict)]
        data["images"] = images
    elif fmt in FILE_EXTENSIONS:
        output_root = ctx.engine_config.output_dir if ctx.engine_config else Path("outputs")
        file_name = str(config.get("fileName") or f"{ctx.node.name}_{datetime.now():%Y%m%d_%H%M%S}")
        data["files"].append(
            await generate_file(
                output_root / ctx.execution_id,
                fmt,
                file_name,
                str(config.get("title") or ctx.node.name),
                content,
            )
        )

    return NodeOutput(data=data, prompt_tokens=prompt_tokens, completion_tokens=completion_tokens)
