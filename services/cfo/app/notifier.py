"""
Admin notifications.

Every state-changing outcome is reported here. Messages go to the admin
Telegram chat when a bot token is configured and are always logged.
Delivery failures are logged and never propagate: a dead chat must not
stop trading logic.
"""

import logging
from typing import List, Optional

import httpx

from .config import TELEGRAM_ADMIN_CHAT_ID, TELEGRAM_API, TELEGRAM_BOT_TOKEN


logger = logging.getLogger(__name__)

PRIORITY_PREFIX = {
    "low": "",
    "medium": "",
    "high": "[HIGH] ",
    "critical": "[CRITICAL] ",
}


class Notifier:

    def __init__(
        self,
        bot_token: str = TELEGRAM_BOT_TOKEN,
        chat_id: str = TELEGRAM_ADMIN_CHAT_ID,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.bot_token = bot_token
        self.chat_id = chat_id
        self._client = client
        # Most recent messages, newest last (for /status and tests)
        self.history: List[str] = []

    @property
    def enabled(self) -> bool:
        return bool(self.bot_token and self.chat_id)

    async def notify(self, text: str, priority: str = "medium") -> None:
        message = f"{PRIORITY_PREFIX.get(priority, '')}{text}"
        self.history.append(message)
        del self.history[:-100]
        logger.info(f"[notify:{priority}] {text}")

        if not self.enabled:
            return

        try:
            if self._client is None:
                self._client = httpx.AsyncClient(timeout=10)
            resp = await self._client.post(
                f"{TELEGRAM_API}/bot{self.bot_token}/sendMessage",
                json={"chat_id": self.chat_id, "text": message},
            )
            if resp.status_code != 200:
                logger.warning(f"Telegram notify failed: {resp.status_code} {resp.text[:200]}")
        except httpx.HTTPError as e:
            logger.warning(f"Telegram notify error: {e}")

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
