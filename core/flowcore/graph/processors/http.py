"""
HTTP nodes: one outbound request with auth, timeout and a bounded retry.

Retries cover transport errors and the ``retryOnStatus`` codes, with
exponential backoff (``retryDelay * 2**attempt`` milliseconds). A non-2xx
final response or a timeout is a node error. Credentials never reach the
logs: sensitive headers are masked before anything is logged.
"""

import asyncio
import json
import logging
from typing import Any

import httpx

from flowcore.graph.errors import NodeExecutionError, NodeTimeoutError
from flowcore.graph.node import NodeContext, NodeOutput
from flowcore.utils.redaction import redact_headers

logger = logging.getLogger(__name__)

HTTP_METHODS = ("GET", "POST", "PUT", "DELETE", "PATCH")
DEFAULT_TIMEOUT_MS = 30_000
DEFAULT_MAX_RETRIES = 1
DEFAULT_RETRY_DELAY_MS = 1_000
DEFAULT_RETRY_STATUS_CODES = (408, 429, 500, 502, 503, 504)


def build_request_kwargs(config: dict[str, Any]) -> dict[str, Any]:
    """Translate node config into ``httpx`` request keyword arguments."""
    method = str(config.get("method", "GET")).upper()
    if method not in HTTP_METHODS:
        raise NodeExecutionError(f"Unsupported HTTP method: {method}")
    url = str(config.get("url") or "").strip()
    if not url:
        raise NodeExecutionError("HTTP node requires a URL")
    if not url.startswith(("http://", "https://")):
        raise NodeExecutionError(f"Invalid URL: {url}")

    headers = {str(k): str(v) for k, v in (config.get("headers") or {}).items()}
    params = {str(k): str(v) for k, v in (config.get("queryParams") or {}).items()}
    kwargs: dict[str, Any] = {"method": method, "url": url}

    auth = config.get("auth") or {}
    match auth.get("type", "none"):
        case "basic":
            kwargs["auth"] = httpx.BasicAuth(auth.get("username", ""), auth.get("password", ""))
        case "bearer":
            headers["Authorization"] = f"Bearer {auth.get('token', '')}"
        case "apikey":
            api_key = auth.get("apiKey") or {}
            if api_key.get("addTo") == "query":
                params[api_key.get("key", "api_key")] = str(api_key.get("value", ""))
            else:
                headers[api_key.get("key", "X-API-Key")] = str(api_key.get("value", ""))
        case "none" | None:
            pass
        case other:
            raise NodeExecutionError(f"Unsupported auth type: {other}")

    body = config.get("body") or {}
    body_type = body.get("type", "none")
    content = body.get("content")
    if method in ("POST", "PUT", "PATCH", "DELETE") and body_type != "none" and content is not None:
        match body_type:
            case "json":
                if isinstance(content, str):
                    try:
                        content = json.loads(content)
                    except ValueError as e:
                        raise NodeExecutionError(f"HTTP body is not valid JSON: {e}") from e
                kwargs["json"] = content
            case "form":
                if not isinstance(content, dict):
                    raise NodeExecutionError("Form body must be an object")
                kwargs["data"] = {str(k): str(v) for k, v in content.items()}
            case "text":
                kwargs["content"] = content if isinstance(content, str) else json.dumps(content)
                headers.setdefault("Content-Type", "text/plain")
            case _:
                raise NodeExecutionError(f"Unsupported body type: {body_type}")

    kwargs["headers"] = headers
    if params:
        kwargs["params"] = params
    return kwargs


async def send_with_retry(
    client: httpx.AsyncClient,
    request_kwargs: dict[str, Any],
    timeout_s: float,
    max_retries: int,
    retry_delay_ms: int,
    retry_on_status: tuple[int, ...] | list[int],
) -> httpx.Response:
    attempt = 0
    while True:
        try:
            response = await client.request(**request_kwargs, timeout=timeout_s)
        except httpx.TimeoutException:
            if attempt >= max_retries:
                raise
        except httpx.TransportError as e:
            if attempt >= max_retries:
                raise NodeExecutionError(f"Network error: {e}") from e
        else:
            if response.status_code not in retry_on_status or attempt >= max_retries:
                return response
            logger.info(f"HTTP {response.status_code}, retrying (attempt {attempt + 1}/{max_retries})")

        await asyncio.sleep(retry_delay_ms * (2**attempt) / 1000)
        attempt += 1


def parse_body(response: httpx.Response, response_type: str) -> Any:
    content_type = response.headers.get("content-type", "")
    if response_type == "json" or "application/json" in content_type:
        try:
            return response.json()
        except ValueError:
            return response.text
    return response.text


async def run_http(ctx: NodeContext) -> NodeOutput:
    config = ctx.config
    request_kwargs = build_request_kwargs(config)
    timeout_ms = int(config.get("timeout") or DEFAULT_TIMEOUT_MS)
    retry = config.get("retry") or {}

    logger.info(
        f"{request_kwargs['method']} {request_kwargs['url']}",
        extra={"event": "http_request"},
    )
    logger.debug(f"Request headers: {redact_headers(request_kwargs['headers'])}")

    async def _send(client: httpx.AsyncClient) -> httpx.Response:
        return await send_with_retry(
            client,
            request_kwargs,
            timeout_ms / 1000,
            int(retry.get("maxRetries", DEFAULT_MAX_RETRIES)),
            int(retry.get("retryDelay", DEFAULT_RETRY_DELAY_MS)),
            tuple(retry.get("retryOnStatus") or DEFAULT_RETRY_STATUS_CODES),
        )

    try:
        if ctx.http_client is not None:
            response = await _send(ctx.http_client)
        else:
            async with httpx.AsyncClient(verify=bool(config.get("validateSSL", True))) as client:
                response = await _send(client)
    except httpx.TimeoutException as e:
        raise NodeTimeoutError(f"Request timeout after {timeout_ms}ms") from e

    body = parse_body(response, str(config.get("responseType", "json")))
    if not response.is_success:
        raise NodeExecutionError(f"HTTP {response.status_code}: {response.reason_phrase}")

    return NodeOutput(
        data={
            "result": body,
            "body": body,
            "status": response.status_code,
            "statusText": response.reason_phrase,
            "headers": redact_headers(dict(response.headers)),
            "ok": True,
        }
    )
