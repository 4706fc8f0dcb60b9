"""
NOTIFICATION nodes: post a message to a Feishu, DingTalk or WeCom webhook.

Each platform has its own payload shape and its own success marker in the
response body (Feishu ``code``/``StatusCode`` == 0, DingTalk and WeCom
``errcode`` == 0). A delivery the platform rejects is a node error.
"""

import logging
from typing import Any

import httpx

from flowcore.graph.errors import NodeExecutionError
from flowcore.graph.node import NodeContext, NodeOutput

logger = logging.getLogger(__name__)

PLATFORMS = ("feishu", "dingtalk", "wecom")
MESSAGE_TYPES = ("text", "markdown", "card")
DEFAULT_TITLE = "Notification"
NOTIFICATION_TIMEOUT_S = 15.0


def _feishu_card(title: str, content: str) -> dict[str, Any]:
    card: dict[str, Any] = {"elements": [{"tag": "markdown", "content": content}]}
    if title:
        card["header"] = {"title": {"tag": "plain_text", "content": title}, "template": "blue"}
    return {"msg_type": "interactive", "card": card}


def build_payload(
    platform: str,
    message_type: str,
    content: str,
    title: str = "",
    at_mobiles: list[str] | None = None,
    at_all: bool = False,
) -> dict[str, Any]:
    """Platform-specific webhook body."""
    at_mobiles = [str(m) for m in at_mobiles or []]

    match platform:
        case "feishu":
            if message_type == "markdown":
                return _feishu_card(title, content)
            if message_type == "card":
                return _feishu_card(title or DEFAULT_TITLE, content)
            return {"msg_type": "text", "content": {"text": content}}

        case "dingtalk":
            at = {"atMobiles": at_mobiles, "isAtAll": at_all}
            if message_type == "markdown":
                return {
                    "msgtype": "markdown",
                    "markdown": {"title": title or DEFAULT_TITLE, "text": content},
                    "at": at,
                }
            if message_type == "card":
                return {
                    "msgtype": "actionCard",
                    "actionCard": {
                        "title": title or DEFAULT_TITLE,
                        "text": content,
                        "hideAvatar": "0",
                        "btnOrientation": "0",
                    },
                }
            return {"msgtype": "text", "text": {"content": content}, "at": at}

        case "wecom":
            if message_type == "markdown":
                return {
                    "msgtype": "markdown",
                    "markdown": {"content": f"## {title}\n{content}" if title else content},
                }
            if message_type == "card":
                return {
                    "msgtype": "template_card",
                    "template_card": {
                        "card_type": "text_notice",
                        "main_title": {"title": title or DEFAULT_TITLE},
                        "sub_title_text": content[:200],
                        "card_action": {"type": 1, "url": ""},
                    },
                }
            mentions = at_mobiles + (["@all"] if at_all else [])
            return {"msgtype": "text", "text": {"content": content, "mentioned_mobile_list": mentions}}

        case _:
            raise NodeExecutionError(f"Unsupported notification platform: {platform}")


def delivery_error(platform: str, body: Any) -> str | None:
    """None when the platform acknowledged the message, else its error text."""
    if not isinstance(body, dict):
        return "Unexpected webhook response"
    if platform == "feishu":
        if body.get("code") == 0 or body.get("StatusCode") == 0:
            return None
        return str(body.get("msg") or body.get("Message") or "Delivery failed")
    if body.get("errcode") == 0:
        return None
    return str(body.get("errmsg") or "Delivery failed")


async def run_notification(ctx: NodeContext) -> NodeOutput:
    config = ctx.config
    platform = str(config.get("platform") or "").lower()
    message_type = str(config.get("messageType") or "text").lower()
    webhook_url = str(config.get("webhookUrl") or "").strip()
    content = config.get("content")

    if platform not in PLATFORMS:
        raise NodeExecutionError(f"Unsupported notification platform: {platform or '(none)'}")
    if message_type not in MESSAGE_TYPES:
        raise NodeExecutionError(f"Unsupported message type: {message_type}")
    if not webhook_url:
        raise NodeExecutionError("Notification node requires a webhook URL")
    if content is None or str(content).strip() == "":
        raise NodeExecutionError("Notification content must not be empty")

    payload = build_payload(
        platform,
        message_type,
        str(content),
        str(config.get("title") or ""),
        config.get("atMobiles"),
        bool(config.get("atAll")),
    )

    async def _post(client: httpx.AsyncClient) -> httpx.Response:
        return await client.post(webhook_url, json=payload, timeout=NOTIFICATION_TIMEOUT_S)

    try:
        if ctx.http_client is not None:
            response = await _post(ctx.http_client)
        else:
            async with httpx.AsyncClient() as client:
                response = await _post(client)
    except httpx.TimeoutException as e:
        raise NodeExecutionError(f"{platform} webhook timed out") from e
    except httpx.TransportError as e:
        raise NodeExecutionError(f"{platform} webhook unreachable: {e}") from e

    try:
        body = response.json()
    except ValueError:
        body = None
    if not response.is_success:
        raise NodeExecutionError(f"{platform} webhook returned HTTP {response.status_code}")
    error = delivery_error(platform, body)
    if error is not None:
        raise NodeExecutionError(f"{platform} delivery failed: {error}")

    logger.info(f"Sent {message_type} notification via {platform}")
    return NodeOutput(
        data={
            "result": "sent",
            "success": True,
            "platform": platform,
            "messageType": message_type,
            "response": body,
        }
    )
