"""Telegram notifications for operator alerts (escalated closes, ledger mismatches)."""

import logging

from telegram import Bot
from telegram.error import TelegramError

logger = logging.getLogger(__name__)


class TelegramNotifier:
    """Send-only Telegram client. No command handling; alerts go to every whitelisted chat."""

    def __init__(self, token: str, chat_ids: list[int]):
        self.chat_ids = set(chat_ids)
        self._bot = Bot(token=token)
        self._initialized = False

    async def send_notification(self, message: str):
        """Send a message to all whitelisted chat IDs."""
        if not self.chat_ids:
            return
        if not self._initialized:
            try:
                await self._bot.initialize()
            except TelegramError as e:
                logger.warning(f"Telegram bot initialization failed: {e}")
                return
            self._initialized = True
        for chat_id in self.chat_ids:
            try:
                await self._bot.send_message(chat_id=chat_id, text=message)
            except TelegramError as e:
                logger.warning(f"Failed to send Telegram notification to {chat_id}: {e}")

    async def close(self):
        if self._initialized:
            await self._bot.shutdown()
            self._initialized = False
