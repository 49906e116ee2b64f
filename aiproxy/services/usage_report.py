"""Authoritative usage report client.

Fetches the token counts the backend actually billed for one generation.
The report is keyed by (chat id, message id) and may lag the end of the
stream by a few seconds, so "no data yet" is a normal answer.

Response shape:
    {"data": [{"promptTokens": 812, "completionTokens": 2410, ...}]}
"""

import logging

import httpx

from aiproxy.core.config import Settings, settings
from aiproxy.providers.base import TokenUsage
from aiproxy.providers.errors import TransientError
from aiproxy.providers.retry import RetryPolicy, with_retries

logger = logging.getLogger(__name__)


class UsageReportClient:
    """Reads per-message usage from the report endpoint.

    Args:
        http: Shared HTTP client. A private one is created when omitted.
        app_settings: Settings for URL, key and timeout.
        retry_policy: Backoff for transport failures.
    """

    def __init__(
        self,
        http: httpx.AsyncClient | None = None,
        app_settings: Settings | None = None,
        retry_policy: RetryPolicy | None = None,
    ) -> None:
        self._settings = app_settings or settings
        self._http = http or httpx.AsyncClient(timeout=self._settings.usage_report_timeout_seconds)
        self._owns_http = http is None
        self._retry_policy = retry_policy or RetryPolicy()

    async def aclose(self) -> None:
        if self._owns_http:
            await self._http.aclose()

    async def fetch(self, chat_id: str, message_id: str) -> TokenUsage | None:
        """Fetch actual usage for one message.

        Args:
            chat_id: Conversation key.
            message_id: Backend generation id.

        Returns:
            TokenUsage, or None when the report is not available (non-2xx,
            empty data, or transport failures after retries).
        """
        try:
            return await with_retries(
                lambda: self._fetch_once(chat_id, message_id),
                self._retry_policy,
                retryable_errors=(TransientError,),
            )
        except TransientError as e:
            logger.warning(
                "Usage report unavailable for %s/%s: %s", chat_id, message_id, e
            )
            return None

    async def _fetch_once(self, chat_id: str, message_id: str) -> TokenUsage | None:
        api_key = self._settings.usage_report_api_key.get_secret_value()
        try:
            response = await self._http.get(
                self._settings.usage_report_url,
                params={"chatId": chat_id, "messageId": message_id},
                headers={
                    "Authorization": f"Bearer {api_key}",
                    "Content-Type": "application/json",
                },
                timeout=self._settings.usage_report_timeout_seconds,
            )
        except httpx.TransportError as e:
            raise TransientError(f"Usage report request failed: {e}") from e

        if response.status_code >= 500:
            raise TransientError(f"Usage report returned {response.status_code}")
        if not response.is_success:
            logger.info(
                "Usage report returned %d for %s/%s",
                response.status_code,
                chat_id,
                message_id,
            )
            return None

        try:
            payload = response.json()
        except ValueError:
            logger.warning("Usage report body is not JSON for %s/%s", chat_id, message_id)
            return None

        entries = payload.get("data") if isinstance(payload, dict) else None
        if not entries:
            return None
        entry = entries[0]
        return TokenUsage(
            input_tokens=int(entry.get("promptTokens") or 0),
            output_tokens=int(entry.get("completionTokens") or 0),
        )
