"""Outbound webhook used when a run needs a human to clear a challenge."""

from __future__ import annotations

from typing import Any, Dict, List, Sequence

import httpx
from jinja2 import Template

from rental_sync.common.json_logger import JsonLogger, log_event

WEBHOOK_TIMEOUT_SECONDS = 10.0

ATTENTION_TEMPLATE = Template(
    "[{{ app_name }}] 线上订单同步需要人工介入\n"
    "{% if site_name %}站点: {{ site_name }}\n{% endif %}"
    "原因: {{ reason }}\n"
    "远程处理链接: {{ remote_url }}"
)


def render_attention_message(*, reason: str, remote_url: str, site_name: str | None = None, app_name: str = "ERP Lite") -> str:
    return ATTENTION_TEMPLATE.render(app_name=app_name, reason=reason, remote_url=remote_url, site_name=site_name)


def build_webhook_payload(url: str, content: str) -> Dict[str, Any]:
    """Feishu/Lark bots expect ``msg_type``; WeCom/DingTalk style bots expect ``msgtype``."""

    lowered = url.lower()
    if "feishu" in lowered or "larksuite" in lowered:
        return {"msg_type": "text", "content": {"text": content}}
    return {"msgtype": "text", "text": {"content": content}}


async def send_webhooks(
    urls: Sequence[str],
    content: str,
    *,
    logger: JsonLogger,
    site_id: str | None = None,
    client: httpx.AsyncClient | None = None,
) -> List[str]:
    """Post ``content`` to each URL; failures are logged and do not raise."""

    delivered: List[str] = []
    targets = [url.strip() for url in urls if url and url.strip()]
    if not targets:
        return delivered

    owns_client = client is None
    http = client or httpx.AsyncClient(timeout=WEBHOOK_TIMEOUT_SECONDS)
    try:
        for url in targets:
            try:
                response = await http.post(url, json=build_webhook_payload(url, content))
                response.raise_for_status()
            except httpx.HTTPError as exc:
                log_event(
                    logger=logger,
                    phase="webhook",
                    status="warn",
                    message=f"Webhook 发送失败: {exc}",
                    site_id=site_id,
                    url=url,
                )
                continue
            delivered.append(url)
    finally:
        if owns_client:
            await http.aclose()

    log_event(
        logger=logger,
        phase="webhook",
        message=f"Webhook 已发送 {len(delivered)}/{len(targets)}",
        site_id=site_id,
    )
    return delivered
