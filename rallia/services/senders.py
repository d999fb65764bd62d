"""
rallia.services.senders — Per-Channel Delivery Providers
=========================================================

Concrete :class:`~rallia.engine.repositories.ChannelSender` implementations:

- email → Resend REST API
- push  → Expo push API
- sms   → Twilio Messages API

Each sender owns its own ``httpx.Client`` timeout.  Provider rejections and
transport errors come back as ``SendResult(success=False, ...)``; a sender
never raises for a failed delivery.  Credentials are read from the
environment by :func:`build_senders`.
"""

from __future__ import annotations

import logging
import os

import httpx

from rallia.config import SenderConfig
from rallia.database.models import DeliveryChannel, NotificationPriority
from rallia.engine.dispatch import SendResult

logger = logging.getLogger(__name__)

_EXPO_PRIORITY = {
    NotificationPriority.LOW.value: "normal",
    NotificationPriority.NORMAL.value: "default",
    NotificationPriority.HIGH.value: "high",
    NotificationPriority.URGENT.value: "high",
}


def _response_json(response: httpx.Response) -> dict:
    try:
        data = response.json()
    except ValueError:
        return {"status_code": response.status_code, "text": response.text[:500]}
    if not isinstance(data, dict):
        data = {"data": data}
    data.setdefault("status_code", response.status_code)
    return data


class _HttpSender:
    """Shared request/response handling for the HTTP providers."""

    name = "http"

    def __init__(
        self,
        base_url: str,
        *,
        timeout: float = 10.0,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self._client = httpx.Client(base_url=base_url, timeout=timeout, transport=transport)

    def close(self) -> None:
        self._client.close()

    def _post(self, path: str, **kwargs) -> SendResult:
        try:
            response = self._client.post(path, **kwargs)
        except httpx.HTTPError as exc:
            logger.warning("%s request failed: %s", self.name, exc)
            return SendResult(
                success=False,
                error_message=f"{self.name} transport error: {type(exc).__name__}: {exc}",
            )

        body = _response_json(response)
        if response.is_success:
            return self._interpret(body)

        message = body.get("message") or body.get("error") or response.reason_phrase
        logger.warning("%s rejected request (%d): %s", self.name, response.status_code, message)
        return SendResult(
            success=False,
            provider_response=body,
            error_message=f"{self.name} HTTP {response.status_code}: {message}",
        )

    def _interpret(self, body: dict) -> SendResult:
        return SendResult(success=True, provider_response=body)


# ---------------------------------------------------------------------------
# Email
# ---------------------------------------------------------------------------
class ResendEmailSender(_HttpSender):
    name = "resend"

    def __init__(
        self,
        api_key: str,
        *,
        from_address: str,
        base_url: str = "https://api.resend.com",
        timeout: float = 10.0,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        super().__init__(base_url, timeout=timeout, transport=transport)
        self._api_key = api_key
        self._from = from_address

    def send(self, channel: DeliveryChannel, recipient: str, payload: dict) -> SendResult:
        return self._post(
            "/emails",
            headers={"Authorization": f"Bearer {self._api_key}"},
            json={
                "from": self._from,
                "to": [recipient],
                "subject": payload.get("title") or "",
                "text": payload.get("body") or payload.get("title") or "",
            },
        )


# ---------------------------------------------------------------------------
# Push
# ---------------------------------------------------------------------------
class ExpoPushSender(_HttpSender):
    name = "expo"

    def __init__(
        self,
        access_token: str | None = None,
        *,
        base_url: str = "https://exp.host/--/api/v2",
        timeout: float = 10.0,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        super().__init__(base_url, timeout=timeout, transport=transport)
        self._access_token = access_token

    def send(self, channel: DeliveryChannel, recipient: str, payload: dict) -> SendResult:
        headers = {"Accept": "application/json"}
        if self._access_token:
            headers["Authorization"] = f"Bearer {self._access_token}"
        data = dict(payload.get("payload") or {})
        data.update(notification_id=payload.get("notification_id"), type=payload.get("type"))
        return self._post(
            "/push/send",
            headers=headers,
            json={
                "to": recipient,
                "title": payload.get("title") or "",
                "body": payload.get("body") or "",
                "data": data,
                "sound": "default",
                "priority": _EXPO_PRIORITY.get(payload.get("priority"), "default"),
            },
        )

    def _interpret(self, body: dict) -> SendResult:
        # Expo answers 200 with a per-message ticket that may still be an error.
        ticket = body.get("data")
        if isinstance(ticket, list):
            ticket = ticket[0] if ticket else {}
        if isinstance(ticket, dict) and ticket.get("status") == "error":
            return SendResult(
                success=False,
                provider_response=body,
                error_message=f"expo ticket error: {ticket.get('message', 'unknown')}",
            )
        return SendResult(success=True, provider_response=body)


# ---------------------------------------------------------------------------
# SMS
# ---------------------------------------------------------------------------
class TwilioSmsSender(_HttpSender):
    name = "twilio"

    def __init__(
        self,
        account_sid: str,
        auth_token: str,
        *,
        from_number: str,
        base_url: str = "https://api.twilio.com/2010-04-01",
        timeout: float = 10.0,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        super().__init__(base_url, timeout=timeout, transport=transport)
        self._account_sid = account_sid
        self._auth = (account_sid, auth_token)
        self._from = from_number

    def send(self, channel: DeliveryChannel, recipient: str, payload: dict) -> SendResult:
        text = payload.get("title") or ""
        if payload.get("body"):
            text = f"{text}\n{payload['body']}" if text else payload["body"]
        return self._post(
            f"/Accounts/{self._account_sid}/Messages.json",
            auth=self._auth,
            data={"To": recipient, "From": self._from, "Body": text},
        )


# ---------------------------------------------------------------------------
# Development
# ---------------------------------------------------------------------------
class LoggingSender:
    """Logs instead of delivering.  Development only, see ``log_unconfigured``."""

    def send(self, channel: DeliveryChannel, recipient: str, payload: dict) -> SendResult:
        logger.info(
            "[dev] %s to %s: %s", DeliveryChannel(channel).value, recipient, payload.get("title")
        )
        return SendResult(success=True, provider_response={"logged": True})


def build_senders(config: SenderConfig | None = None) -> dict[DeliveryChannel, object]:
    """Build one sender per configured channel from *config* and provider env vars.

    A channel whose credentials are missing is left out of the map, so
    dispatch records a ``failed`` attempt for it.  With
    ``config.log_unconfigured`` set it gets a :class:`LoggingSender` instead.
    """
    config = config or SenderConfig()
    senders: dict[DeliveryChannel, object] = {}

    resend_key = os.getenv("RESEND_API_KEY", "").strip()
    if resend_key:
        senders[DeliveryChannel.EMAIL] = ResendEmailSender(
            resend_key,
            from_address=config.email_from,
            base_url=config.resend_base_url,
            timeout=config.timeout_seconds,
        )

    senders[DeliveryChannel.PUSH] = ExpoPushSender(
        os.getenv("EXPO_ACCESS_TOKEN", "").strip() or None,
        base_url=config.expo_base_url,
        timeout=config.timeout_seconds,
    )

    sid = os.getenv("TWILIO_ACCOUNT_SID", "").strip()
    token = os.getenv("TWILIO_AUTH_TOKEN", "").strip()
    if sid and token and config.twilio_from_number:
        senders[DeliveryChannel.SMS] = TwilioSmsSender(
            sid, token,
            from_number=config.twilio_from_number,
            base_url=config.twilio_base_url,
            timeout=config.timeout_seconds,
        )

    for channel in DeliveryChannel:
        if channel in senders:
            continue
        if config.log_unconfigured:
            logger.warning("No provider credentials for %s; using LoggingSender", channel.value)
            senders[channel] = LoggingSender()
        else:
            logger.warning(
                "No provider credentials for %s; deliveries will fail", channel.value
            )
    return senders
