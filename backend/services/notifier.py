"""Telegram notifications for signal lifecycle events."""

from __future__ import annotations

from typing import Any, Optional

import httpx

from config import settings
from models.database import AsyncSessionLocal, NotificationLog
from models.positions import NotificationEvent
from models.types import SignalStatus
from services.upstream_guard import UpstreamGuard
from utils.errors import NonRetryableUpstreamError, TransientUpstreamError
from utils.http import json_body, raise_for_upstream_status
from utils.logger import get_logger
from utils.utcnow import utcnow

logger = get_logger("notifier")

UPSTREAM = "telegram"
MAX_MESSAGE_LENGTH = 4096
LOGGED_MESSAGE_LENGTH = 500
HEADER = "🔔 *Consensus Signal Engine*"


class NotificationDeliveryError(TransientUpstreamError):
    """Telegram accepted the request but did not deliver the message."""


def _escape_md(text: Any) -> str:
    """Escape special characters for Telegram MarkdownV2."""
    special = r"\_*[]()~`>#+=|{}.!-"
    escaped: list[str] = []
    for ch in str(text):
        if ch in special:
            escaped.append(f"\\{ch}")
        else:
            escaped.append(ch)
    return "".join(escaped)


def _bold(text: str) -> str:
    return f"*{_escape_md(text)}*"


def _format_price(value: Optional[float]) -> str:
    if value is None:
        return "n/a"
    if value >= 100:
        return f"{value:,.2f}"
    return f"{value:.6g}"


def confidence_level(wallet_count: int) -> str:
    if wallet_count >= 10:
        return "🟢 High"
    if wallet_count >= 7:
        return "🟡 Medium"
    if wallet_count >= 5:
        return "🟠 Low"
    return "🔴 Very Low"


def _truncate(text: str, limit: int = MAX_MESSAGE_LENGTH) -> str:
    if len(text) <= limit:
        return text
    cut = text[: limit - 1]
    # Never end on a dangling escape character.
    if cut.endswith("\\"):
        cut = cut[:-1]
    return cut + "…"


def format_message(event: NotificationEvent) -> str:
    """Render a notification as a MarkdownV2 message no longer than Telegram allows."""
    direction = event.direction.value
    lines = [HEADER, ""]

    if event.type == "new_signal":
        lines.append(f"🚨 {_bold(f'New {direction} signal: {event.pair}')}")
        lines.append(f"Entry: {_escape_md(_format_price(event.price))}")
        if event.stop_loss_price is not None:
            lines.append(f"Stop loss: {_escape_md(_format_price(event.stop_loss_price))}")
        for index, target in enumerate(event.target_prices, start=1):
            lines.append(f"TP{index}: {_escape_md(_format_price(target))}")
        if event.participant_count is not None:
            lines.append(f"Wallets: {event.participant_count}")
            lines.append(f"Confidence: {_escape_md(confidence_level(event.participant_count))}")
        if event.avg_leverage is not None:
            lines.append(f"Average leverage: {_escape_md(f'{event.avg_leverage:.1f}x')}")
    elif event.type == SignalStatus.SL_HIT.value:
        lines.append(f"🛑 {_bold(f'Stop loss hit: {event.pair} {direction}')}")
        lines.append(f"Price: {_escape_md(_format_price(event.price))}")
        if event.pnl is not None:
            lines.append(f"PnL: {_escape_md(f'{event.pnl:,.2f}')}")
        lines.append("")
        lines.append(_escape_md("⚠️ Always size positions so a stop loss is survivable."))
    elif event.type in (SignalStatus.PARTIAL_TP.value, SignalStatus.TP_HIT.value):
        title = "All targets hit" if event.type == SignalStatus.TP_HIT.value else "Target hit"
        lines.append(f"🎯 {_bold(f'{title}: {event.pair} {direction}')}")
        lines.append(f"Price: {_escape_md(_format_price(event.price))}")
        if event.hit_targets:
            rungs = ", ".join(f"TP{i + 1}" for i in event.hit_targets)
            lines.append(f"Reached: {_escape_md(rungs)}")
        if event.pnl is not None:
            lines.append(f"PnL: {_escape_md(f'{event.pnl:,.2f}')}")
        if event.type == SignalStatus.PARTIAL_TP.value:
            lines.append("")
            lines.append(_escape_md("💡 Consider securing partial profits and moving the stop to breakeven."))
    else:
        lines.append(f"{_bold(event.type)}: {_escape_md(event.pair)} {_escape_md(direction)}")
        lines.append(f"Price: {_escape_md(_format_price(event.price))}")

    lines.append("")
    lines.append(f"Signal: `{_escape_md(event.signal_id)}`")
    lines.append(f"⏰ {_escape_md(utcnow().isoformat() + 'Z')}")
    return _truncate("\n".join(lines))


class TelegramNotifier:
    """Delivers queued notification events to one Telegram chat."""

    def __init__(
        self,
        guard: UpstreamGuard,
        bot_token: Optional[str] = None,
        chat_id: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
        base_url: Optional[str] = None,
    ):
        self.guard = guard
        self._bot_token = bot_token if bot_token is not None else settings.TELEGRAM_BOT_TOKEN
        self._chat_id = chat_id if chat_id is not None else settings.TELEGRAM_CHAT_ID
        self.base_url = base_url or settings.TELEGRAM_API_BASE
        self._http_client: Optional[httpx.AsyncClient] = client

    @property
    def configured(self) -> bool:
        return bool(self._bot_token and self._chat_id)

    async def _get_client(self) -> httpx.AsyncClient:
        if self._http_client is None or self._http_client.is_closed:
            self._http_client = httpx.AsyncClient(timeout=15.0)
        return self._http_client

    async def close(self):
        if self._http_client and not self._http_client.is_closed:
            await self._http_client.aclose()

    async def _post_message(self, text: str) -> dict:
        client = await self._get_client()
        url = f"{self.base_url}/bot{self._bot_token}/sendMessage"
        payload = {
            "chat_id": self._chat_id,
            "text": text,
            "parse_mode": "MarkdownV2",
            "disable_web_page_preview": True,
        }
        response = await client.post(url, json=payload)
        if response.status_code == 429:
            body = json_body(response, UPSTREAM)
            retry_after = (body.get("parameters") or {}).get("retry_after") if isinstance(body, dict) else None
            raise TransientUpstreamError(
                "telegram rate limited",
                upstream=UPSTREAM,
                status_code=429,
                retry_after=float(retry_after) if retry_after is not None else None,
            )
        raise_for_upstream_status(response, UPSTREAM)
        body = json_body(response, UPSTREAM)
        if not isinstance(body, dict) or not body.get("ok"):
            description = body.get("description") if isinstance(body, dict) else None
            raise NotificationDeliveryError(
                f"telegram did not accept message: {description or 'unknown error'}",
                upstream=UPSTREAM,
                status_code=response.status_code,
            )
        return body

    async def send(self, text: str) -> bool:
        """Send one message. False when credentials are missing."""
        if not self.configured:
            logger.debug("Telegram credentials not configured, skipping message")
            return False
        await self.guard.call(self._post_message, text)
        logger.debug("Telegram message sent successfully")
        return True

    async def handle_payload(self, payload: dict[str, Any]) -> bool:
        """Queue handler. Raises on delivery failure so the message is retried."""
        event = NotificationEvent.model_validate(payload)
        text = format_message(event)
        try:
            sent = await self.send(text)
        except NonRetryableUpstreamError as e:
            await self._log(event, text, "failed")
            logger.error("Notification rejected", signal_id=event.signal_id, type=event.type, error=str(e))
            raise
        if not sent:
            raise NotificationDeliveryError("telegram credentials not configured", upstream=UPSTREAM)
        await self._log(event, text, "sent")
        logger.info("Notification sent", signal_id=event.signal_id, type=event.type)
        return True

    async def send_test_message(self) -> bool:
        text = f"{HEADER}\n\n🧪 {_bold('Test notification')}\n{_escape_md('Telegram integration is working.')}"
        return await self.send(text)

    async def _log(self, event: NotificationEvent, text: str, status: str):
        async with AsyncSessionLocal() as session:
            session.add(
                NotificationLog(
                    type=event.type,
                    signal_id=event.signal_id,
                    message=text[:LOGGED_MESSAGE_LENGTH],
                    status=status,
                    sent_at=utcnow(),
                )
            )
            await session.commit()
