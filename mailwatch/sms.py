"""Async SMS gateway client for high-importance alerts."""

from __future__ import annotations

from typing import TYPE_CHECKING

import httpx
import structlog

from .config import SmsConfig
from .errors import GatewayError, MailwatchError
from .models import SmsResult

if TYPE_CHECKING:
    from .store import SettingsStore

logger = structlog.get_logger()


class SmsGateway:
    """Sends alerts through a bearer-authenticated HTTP SMS provider.

    Credentials are resolved per call: the user's own token and phone
    number when both are stored, otherwise the global ``SMS_`` fallback.
    Every failure is returned as an :class:`SmsResult`, never raised.
    """

    def __init__(
        self,
        config: SmsConfig,
        settings_store: SettingsStore | None = None,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._config = config
        self._settings = settings_store
        self._transport = transport

    async def resolve(self, user_id: str | None) -> tuple[str | None, list[str]]:
        """Return ``(token, numbers)`` for *user_id*.

        Raises :class:`PersistenceError` when the settings store fails.
        """
        if user_id is not None and self._settings is not None:
            credentials = await self._settings.get(user_id)
            if credentials is not None and credentials.sms_token is not None:
                token = credentials.sms_token.get_secret_value()
                if token:
                    numbers = [credentials.sms_recipient] if credentials.sms_recipient else []
                    return token, numbers

        token = self._config.token.get_secret_value() or None
        return token, list(self._config.numbers)

    @staticmethod
    def compose_alert(sender: str, subject: str, summary: str) -> str:
        return f"IMPORTANT EMAIL\nFrom: {sender}\nSubject: {subject}\nSummary: {summary}"

    async def send_alert(
        self,
        sender: str,
        subject: str,
        summary: str,
        *,
        user_id: str | None = None,
    ) -> SmsResult:
        return await self.send(self.compose_alert(sender, subject, summary), user_id=user_id)

    async def send_test(self, *, user_id: str | None = None) -> SmsResult:
        return await self.send("Mailwatch test - alerts are working.", user_id=user_id)

    async def is_configured(self, *, user_id: str | None = None) -> bool:
        try:
            token, numbers = await self.resolve(user_id)
        except MailwatchError as exc:
            logger.warning("sms_settings_unavailable", user_id=user_id, error=str(exc))
            return False
        return bool(token and numbers)

    async def send(
        self,
        message: str,
        *,
        user_id: str | None = None,
        numbers: list[str] | None = None,
    ) -> SmsResult:
        try:
            token, default_numbers = await self.resolve(user_id)
        except MailwatchError as exc:
            logger.warning("sms_settings_unavailable", user_id=user_id, error=str(exc))
            return SmsResult(success=False, error=f"SMS settings unavailable: {exc}")
        targets = numbers or default_numbers

        if not token:
            return SmsResult(success=False, error="SMS token not configured")
        if not targets:
            return SmsResult(success=False, error="No recipient number configured")

        payload = {"numbers": targets, "message": message[: self._config.max_length]}
        try:
            message_id = await self._post(token, payload)
        except GatewayError as exc:
            logger.warning("sms_send_failed", user_id=user_id, error=str(exc))
            return SmsResult(success=False, error=str(exc))

        logger.info("sms_sent", user_id=user_id, message_id=message_id, recipients=len(targets))
        return SmsResult(success=True, message_id=message_id)

    async def _post(self, token: str, payload: dict[str, object]) -> str:
        """POST *payload* and return the provider message id.

        Raises :class:`GatewayError` for transport and provider failures.
        """
        try:
            async with httpx.AsyncClient(
                timeout=httpx.Timeout(self._config.timeout_seconds),
                transport=self._transport,
            ) as client:
                response = await client.post(
                    self._config.endpoint,
                    json=payload,
                    headers={"Authorization": f"Bearer {token}"},
                )
        except httpx.TimeoutException as exc:
            raise GatewayError("Connection error with the SMS API (timeout)") from exc
        except httpx.TransportError as exc:
            raise GatewayError("Connection error with the SMS API") from exc

        if response.status_code not in (200, 201):
            try:
                detail = response.json().get("message") or response.reason_phrase
            except (ValueError, AttributeError):
                detail = response.reason_phrase
            raise GatewayError(f"API error: {response.status_code} - {detail}")

        try:
            data = response.json()
        except ValueError:
            data = {}
        if not isinstance(data, dict):
            data = {}
        return str(data.get("messageId") or data.get("id") or "unknown")
