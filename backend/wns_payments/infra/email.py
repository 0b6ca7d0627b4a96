import logging
import random
import smtplib
from email.message import EmailMessage
from email.utils import formataddr
from typing import Any

import anyio
import httpx

from wns_payments.infra.metrics import metrics
from wns_payments.settings import settings
from wns_payments.shared.circuit_breaker import CircuitBreaker, CircuitBreakerOpenError

logger = logging.getLogger(__name__)

SENDGRID_SEND_URL = "https://api.sendgrid.com/v3/mail/send"


class NoopEmailAdapter:
    async def send_email(
        self, recipient: str, subject: str, body: str, *, headers: dict[str, str] | None = None
    ) -> bool:
        logger.info(
            "email_send_skipped",
            extra={"extra": {"recipient": recipient, "subject": subject, "mode": "noop"}},
        )
        metrics.record_email_adapter("skipped")
        return False


class EmailAdapter:
    """Plain-text mail over SendGrid's HTTP API or SMTP, behind a circuit breaker."""

    def __init__(self, app_settings=None, http_client: httpx.AsyncClient | None = None) -> None:
        self.settings = app_settings or settings
        self.http_client = http_client
        self._breaker = CircuitBreaker(
            name="email",
            failure_threshold=self.settings.email_circuit_failure_threshold,
            recovery_time=self.settings.email_circuit_recovery_seconds,
        )

    async def send_email(
        self, recipient: str, subject: str, body: str, *, headers: dict[str, str] | None = None
    ) -> bool:
        if self.settings.email_mode == "off" or not recipient:
            metrics.record_email_adapter("skipped")
            return False
        try:
            await self._breaker.call(
                self._deliver, to_email=recipient, subject=subject, body=body, headers=headers
            )
        except CircuitBreakerOpenError:
            logger.warning("email_circuit_open", extra={"extra": {"recipient": recipient}})
            metrics.record_email_adapter("circuit_open")
            return False
        except Exception:
            metrics.record_email_adapter("error")
            raise
        metrics.record_email_adapter("sent")
        return True

    async def _deliver(
        self, to_email: str, subject: str, body: str, headers: dict[str, str] | None = None
    ) -> None:
        mode = self.settings.email_mode
        if mode == "sendgrid":
            await self._send_via_sendgrid(to_email, subject, body, headers=headers)
        elif mode == "smtp":
            await self._send_via_smtp(to_email, subject, body, headers=headers)
        else:
            raise RuntimeError("unsupported_email_mode")

    async def _send_via_sendgrid(
        self, to_email: str, subject: str, body: str, *, headers: dict[str, str] | None = None
    ) -> None:
        api_key = self.settings.sendgrid_api_key
        from_email = self.settings.email_sender
        if not api_key or not from_email:
            raise RuntimeError("sendgrid_not_configured")
        sender: dict[str, str] = {"email": from_email}
        if self.settings.email_from_name:
            sender["name"] = self.settings.email_from_name
        payload: dict[str, Any] = {
            "personalizations": [{"to": [{"email": to_email}]}],
            "from": sender,
            "subject": subject,
            "content": [{"type": "text/plain", "value": body}],
        }
        if headers:
            payload["headers"] = headers

        client = self.http_client or httpx.AsyncClient()
        try:
            response = await self._post_with_retry(
                client, headers={"Authorization": f"Bearer {api_key}"}, json=payload
            )
        finally:
            if self.http_client is None:
                await client.aclose()
        if response.status_code >= 400:
            raise RuntimeError(f"sendgrid_status_{response.status_code}")

    async def _send_via_smtp(
        self, to_email: str, subject: str, body: str, *, headers: dict[str, str] | None = None
    ) -> None:
        cfg = self.settings
        host = cfg.smtp_host
        port = cfg.smtp_port or 587
        from_email = cfg.email_sender
        if not host or not from_email:
            raise RuntimeError("smtp_not_configured")

        message = EmailMessage()
        message["From"] = formataddr((cfg.email_from_name, from_email)) if cfg.email_from_name else from_email
        message["To"] = to_email
        message["Subject"] = subject
        for header_name, header_value in (headers or {}).items():
            message[header_name] = header_value
        message.set_content(body)

        def _send_blocking() -> None:
            smtp_cls = smtplib.SMTP if cfg.smtp_use_tls else smtplib.SMTP_SSL
            with smtp_cls(host, port, timeout=cfg.smtp_timeout_seconds) as smtp:
                if cfg.smtp_use_tls:
                    smtp.starttls()
                if cfg.smtp_username and cfg.smtp_password:
                    smtp.login(cfg.smtp_username, cfg.smtp_password)
                smtp.send_message(message)

        await anyio.to_thread.run_sync(_send_blocking)

    def _backoff(self, attempt: int) -> float:
        delay = min(
            self.settings.email_http_backoff_seconds * (2 ** (attempt - 1)),
            self.settings.email_http_backoff_max_seconds,
        )
        return delay + delay * random.uniform(0.0, 0.3)

    async def _post_with_retry(
        self, client: httpx.AsyncClient, *, headers: dict[str, str], json: dict[str, Any]
    ) -> httpx.Response:
        max_attempts = max(self.settings.email_http_max_attempts, 1)
        for attempt in range(1, max_attempts + 1):
            try:
                response = await client.post(
                    SENDGRID_SEND_URL,
                    headers=headers,
                    json=json,
                    timeout=self.settings.email_timeout_seconds,
                )
            except (httpx.TimeoutException, httpx.ConnectError):
                if attempt >= max_attempts:
                    raise
                await anyio.sleep(self._backoff(attempt))
                continue
            retryable = response.status_code == 429 or response.status_code >= 500
            if retryable and attempt < max_attempts:
                await anyio.sleep(self._backoff(attempt))
                continue
            return response
        raise RuntimeError("email_http_retry_exhausted")  # pragma: no cover


def resolve_email_adapter(app_settings) -> EmailAdapter | NoopEmailAdapter:
    if app_settings.email_mode == "off" or getattr(app_settings, "testing", False):
        return NoopEmailAdapter()
    return EmailAdapter(app_settings)
