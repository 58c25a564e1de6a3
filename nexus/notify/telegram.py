"""Telegram Bot API async client.

Outbound notifications are best effort: HTTP failures are logged and
reported as ``None`` so a dead chat never blocks trading.
"""

import logging
from typing import Optional

import httpx

logger = logging.getLogger("nexus.telegram")

TELEGRAM_API_URL = "https://api.telegram.org"

BOT_COMMANDS: list[tuple[str, str]] = [
    ("start", "Welcome message & bot info"),
    ("help", "List all available commands"),
    ("status", "Balance & system status"),
    ("signals", "Last 5 trade signals"),
    ("positions", "Open positions & live P&L"),
    ("list", "List open positions with IDs"),
    ("performance", "Win rate & trading metrics"),
    ("marketstatus", "Forex sessions & market hours"),
    ("pair", "Show or switch active pair"),
    ("alerts", "Toggle signal alert notifications"),
    ("buy", "Open BUY position [PAIR] [LOT]"),
    ("sell", "Open SELL position [PAIR] [LOT]"),
    ("close", "Close position by ID [ID]"),
    ("closeall", "Close all positions [PAIR]"),
    ("closetype", "Close by type [BUY|SELL] [PAIR]"),
    ("price", "Get market price [PAIR]"),
]


class TelegramBot:
    """Sends messages to one chat and polls for incoming commands.

    Args:
        token: Bot token; empty disables the bot.
        chat_id: Target chat; empty disables the bot.
        base_url: API root, overridable for tests.
    """

    def __init__(
        self,
        token: str,
        chat_id: str,
        base_url: str = TELEGRAM_API_URL,
    ) -> None:
        self._token = token
        self._chat_id = chat_id
        self._base_url = f"{base_url}/bot{token}"

    @property
    def enabled(self) -> bool:
        return bool(self._token and self._chat_id)

    @property
    def chat_id(self) -> str:
        return self._chat_id

    async def _post(self, method: str, payload: dict) -> Optional[dict]:
        try:
            async with httpx.AsyncClient() as client:
                resp = await client.post(
                    f"{self._base_url}/{method}", json=payload, timeout=10.0
                )
            resp.raise_for_status()
            body = resp.json()
        except (httpx.HTTPError, ValueError) as exc:
            logger.error("Telegram %s failed: %s", method, exc)
            return None
        if not isinstance(body, dict):
            logger.error("Telegram %s returned an unexpected body", method)
            return None

        if not body.get("ok"):
            logger.error("Telegram %s rejected: %s", method, body.get("description"))
        return body

    async def send_message(self, text: str, **options) -> Optional[dict]:
        """Send HTML *text* to the configured chat."""
        if not self.enabled:
            return None
        payload = {
            "chat_id": self._chat_id,
            "text": text,
            "parse_mode": "HTML",
            "disable_web_page_preview": True,
            **options,
        }
        return await self._post("sendMessage", payload)

    async def register_commands(self) -> bool:
        """Publish the slash-command menu.  Returns True on success."""
        if not self.enabled:
            return False
        commands = [{"command": c, "description": d} for c, d in BOT_COMMANDS]
        body = await self._post("setMyCommands", {"commands": commands})
        ok = bool(body and body.get("ok"))
        if ok:
            logger.info("Telegram slash commands registered")
        return ok

    async def get_updates(self, offset: Optional[int] = None, timeout: int = 0) -> list[dict]:
        """Fetch pending updates; an empty list when disabled or on error."""
        if not self.enabled:
            return []
        payload: dict = {"timeout": timeout, "allowed_updates": ["message"]}
        if offset is not None:
            payload["offset"] = offset
        body = await self._post("getUpdates", payload)
        if not body or not body.get("ok"):
            return []
        return list(body.get("result", []))


def extract_command(update: dict, chat_id: str) -> Optional[str]:
    """Text of a message *update* sent from *chat_id*, if it is a command."""
    message = update.get("message") or {}
    text = message.get("text") or ""
    sender = str((message.get("chat") or {}).get("id", ""))
    if sender != str(chat_id) or not text.startswith("/"):
        return None
    return text
