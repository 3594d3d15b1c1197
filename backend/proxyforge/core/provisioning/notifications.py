"""
Installation Notifications - Telegram delivery and message templates.

Without a bot token the notifier runs in logging-only mode.
"""

from typing import Optional, Protocol

import httpx
import structlog

from proxyforge.core.config import settings

logger = structlog.get_logger()


class Notifier(Protocol):
    async def send(self, recipient_id: str, text: str) -> bool:
        ...


class NotificationTemplates:
    """Markdown message templates for installation outcomes."""

    @staticmethod
    def installation_succeeded(endpoint: str, username: str, password: str) -> str:
        return (
            "✅ *Your Squid Proxy is ready!*\n"
            f"*Proxy:* `{endpoint}`\n"
            f"*Username:* `{username}`\n"
            f"*Password:* `{password}`"
        )

    @staticmethod
    def installation_failed(host: str, error: str, step: Optional[str] = None) -> str:
        lines = ["❌ *Proxy installation failed*", f"*Host:* `{host}`"]
        if step:
            lines.append(f"*Step:* {step}")
        excerpt = error if len(error) <= 200 else error[:197] + "..."
        lines.append(f"*Error:* {excerpt}")
        return "\n".join(lines)


class TelegramNotifier:
    """
    Sends messages through the Telegram Bot API.

    ``send`` returns False on HTTP or API errors and raises nothing.
    """

    def __init__(
        self,
        bot_token: Optional[str] = None,
        api_url: Optional[str] = None,
        timeout: float = settings.TELEGRAM_TIMEOUT,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.bot_token = bot_token if bot_token is not None else settings.TELEGRAM_BOT_TOKEN
        self.api_url = (api_url or settings.TELEGRAM_API_URL).rstrip("/")
        self._client = client or httpx.AsyncClient(timeout=timeout)

        if self.enabled:
            logger.info("telegram_notifier_initialized", mode="live")
        else:
            logger.info("telegram_notifier_initialized", mode="logging_only")

    @property
    def enabled(self) -> bool:
        return bool(self.bot_token)

    async def send(self, recipient_id: str, text: str) -> bool:
        """Send a Markdown message to a chat, or log it when disabled."""
        if not self.enabled:
            logger.info("telegram_message_logged", chat_id=recipient_id, text=text, mode="disabled")
            return True

        try:
            response = await self._client.post(
                f"{self.api_url}/bot{self.bot_token}/sendMessage",
                json={
                    "chat_id": recipient_id,
                    "text": text,
                    "parse_mode": "Markdown",
                },
            )
            if response.status_code == 200 and response.json().get("ok", False):
                logger.debug("telegram_message_sent", chat_id=recipient_id)
                return True

            logger.warning(
                "telegram_message_failed",
                chat_id=recipient_id,
                status_code=response.status_code,
            )
            return False
        except (httpx.HTTPError, ValueError) as e:
            logger.error("telegram_error", error=str(e), chat_id=recipient_id)
            return False

    async def aclose(self) -> None:
        await self._client.aclose()
