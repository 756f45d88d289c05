"""
Request Defense Gateway — Alert Dispatchers.

Forwards security-monitor alerts to operators over Telegram and generic
JSON webhooks. Delivery is best-effort: a failing channel is logged and
never surfaces to the request that triggered the alert.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass
from typing import Any, Optional

import httpx

logger = logging.getLogger("gateway.alerts")

SEVERITY_ICONS = {"low": "ℹ️", "medium": "⚠️", "high": "🚨", "critical": "🚨"}


@dataclass
class AlertEvent:
    """One alert raised by the security monitor."""
    severity: str       # low | medium | high | critical
    title: str
    message: str
    source_ip: Optional[str] = None
    event_type: Optional[str] = None
    metadata: Optional[dict] = None


class AlertDispatcher(ABC):
    """A delivery channel for alerts."""

    timeout: float = 10.0

    @property
    def configured(self) -> bool:
        return True

    @abstractmethod
    async def send(self, event: AlertEvent) -> bool:
        ...

    async def _post(self, url: str, payload: dict[str, Any], label: str) -> bool:
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                resp = await client.post(url, json=payload)
                resp.raise_for_status()
        except httpx.HTTPError as exc:
            logger.warning("%s alert delivery failed: %s", label, exc)
            return False
        return True


class TelegramAlert(AlertDispatcher):
    """Telegram Bot API ``sendMessage``."""

    def __init__(self, bot_token: Optional[str] = None, chat_id: Optional[str] = None) -> None:
        self.bot_token = bot_token
        self.chat_id = chat_id

    @property
    def configured(self) -> bool:
        return bool(self.bot_token and self.chat_id)

    async def send(self, event: AlertEvent) -> bool:
        if not self.configured:
            logger.debug("Telegram not configured, skipping alert")
            return False
        sent = await self._post(
            f"https://api.telegram.org/bot{self.bot_token}/sendMessage",
            {"chat_id": self.chat_id, "text": self.format(event), "parse_mode": "Markdown"},
            "Telegram",
        )
        if sent:
            logger.info("Telegram alert sent: %s", event.title)
        return sent

    @staticmethod
    def format(event: AlertEvent) -> str:
        lines = [
            f"{SEVERITY_ICONS.get(event.severity, '📢')} *{event.title}* ({event.severity})",
            "",
            event.message,
        ]
        if event.source_ip:
            lines.append(f"Source IP: `{event.source_ip}`")
        if event.event_type:
            lines.append(f"Event type: `{event.event_type}`")
        return "\n".join(lines)


class WebhookAlert(AlertDispatcher):
    """POST the alert as JSON to a configurable URL."""

    def __init__(self, url: Optional[str] = None) -> None:
        self.url = url

    @property
    def configured(self) -> bool:
        return bool(self.url)

    async def send(self, event: AlertEvent) -> bool:
        if not self.configured:
            logger.debug("Webhook not configured, skipping alert")
            return False
        sent = await self._post(self.url, asdict(event), "Webhook")
        if sent:
            logger.info("Webhook alert sent: %s", event.title)
        return sent


class AlertManager:
    """Fans an alert out to every configured channel concurrently."""

    def __init__(self, dispatchers: Optional[list[AlertDispatcher]] = None) -> None:
        self.dispatchers: list[AlertDispatcher] = dispatchers or []

    @classmethod
    def from_settings(cls, cfg) -> "AlertManager":
        channels = [
            TelegramAlert(cfg.telegram_bot_token, cfg.telegram_chat_id),
            WebhookAlert(cfg.webhook_url),
        ]
        return cls([c for c in channels if c.configured])

    async def alert(self, event: AlertEvent) -> None:
        results = await asyncio.gather(
            *(d.send(event) for d in self.dispatchers), return_exceptions=True,
        )
        for dispatcher, result in zip(self.dispatchers, results):
            if isinstance(result, Exception):
                logger.error(
                    "Dispatcher %s failed", type(dispatcher).__name__, exc_info=result,
                )
