"""
Notification Service — Telegram messages to owners.
Fire-and-forget: delivery failures are logged, never raised to the poller.
"""

import html
import logging
from typing import Optional

from telegram import Bot

from review_responder.config import Settings, get_settings

logger = logging.getLogger(__name__)


class Notifier:
    def __init__(self, bot: Optional[Bot] = None, settings: Optional[Settings] = None):
        settings = settings or get_settings()
        if bot is None and settings.telegram_enabled:
            bot = Bot(token=settings.telegram_bot_token)
        self.bot = bot
        if self.bot is None:
            logger.info("TELEGRAM_BOT_TOKEN not set; owner notifications disabled")

    @property
    def enabled(self) -> bool:
        return self.bot is not None

    async def _send(self, chat_id: int, text: str) -> bool:
        if self.bot is None:
            logger.debug(f"Notification to {chat_id} dropped (Telegram disabled)")
            return False
        try:
            await self.bot.send_message(chat_id=chat_id, text=text, parse_mode="HTML")
            return True
        except Exception as e:
            logger.error(f"Failed to send Telegram message to {chat_id}: {e}")
            return False

    async def send_new_reviews_summary(self, chat_id: int, count: int) -> bool:
        word = "review" if count == 1 else "reviews"
        logger.debug(f"Sending summary to {chat_id}: {count} new {word}")
        return await self._send(
            chat_id,
            f"📬 <b>{count} new {word}</b>\n\nUse /review to go through them.",
        )

    async def send_credential_error(self, chat_id: int, resource_name: str, error: str) -> bool:
        logger.debug(f"Sending credential error for {resource_name} to {chat_id}")
        return await self._send(
            chat_id,
            f"⚠️ <b>Credential Error for {html.escape(resource_name)}</b>\n\n"
            f"{html.escape(error)}\n\n"
            f"Your credentials look expired or revoked. Please re-submit them using /account",
        )
