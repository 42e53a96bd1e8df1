"""
Outgoing e-mail for participant notifications.

Two transports: Brevo's transactional API (production) and plain SMTP
(local relays such as Mailpit). ``KX_EMAIL_PROVIDER`` selects one.
"""

from __future__ import annotations

import hashlib
import ssl
from abc import ABC, abstractmethod
from collections.abc import Callable
from email.message import EmailMessage
from typing import TYPE_CHECKING, Any

import aiosmtplib
import httpx
import structlog

from kickexpert.config import Settings, get_settings
from kickexpert.email.templates import competition_results

if TYPE_CHECKING:
    from redis.asyncio import Redis

logger = structlog.get_logger()

# Template registry: name -> function(**context) -> (subject, html, text)
_TEMPLATE_REGISTRY: dict[str, Any] = {
    "competition_results": competition_results,
}


class BaseEmailProvider(ABC):
    """A delivery transport. ``send`` never raises; failures are logged and reported as False."""

    name = "base"

    def __init__(self, from_address: str, from_name: str) -> None:
        self.from_address = from_address
        self.from_name = from_name

    async def send(
        self,
        to_email: str,
        subject: str,
        html_body: str,
        text_body: str,
        to_name: str | None = None,
    ) -> bool:
        try:
            message_id = await self._deliver(to_email, subject, html_body, text_body, to_name)
        except Exception:
            logger.exception("email_send_failed", to=to_email, provider=self.name)
            return False
        logger.info("email_sent", to=to_email, subject=subject, provider=self.name, message_id=message_id)
        return True

    @abstractmethod
    async def _deliver(
        self,
        to_email: str,
        subject: str,
        html_body: str,
        text_body: str,
        to_name: str | None,
    ) -> str | None:
        """Hand the message to the transport. Returns the provider message id, if any."""


class SMTPProvider(BaseEmailProvider):
    """Multipart (text + HTML) mail over SMTP with optional STARTTLS."""

    name = "smtp"

    def __init__(
        self,
        host: str,
        port: int,
        username: str,
        password: str,
        from_address: str,
        from_name: str,
        use_tls: bool = True,
    ) -> None:
        super().__init__(from_address, from_name)
        self.host = host
        self.port = port
        self.username = username
        self.password = password
        self.use_tls = use_tls

    def build_message(
        self,
        to_email: str,
        subject: str,
        html_body: str,
        text_body: str,
        to_name: str | None = None,
    ) -> EmailMessage:
        msg = EmailMessage()
        msg["From"] = f"{self.from_name} <{self.from_address}>"
        msg["To"] = f"{to_name} <{to_email}>" if to_name else to_email
        msg["Subject"] = subject
        msg.set_content(text_body)
        msg.add_alternative(html_body, subtype="html")
        return msg

    async def _deliver(self, to_email, subject, html_body, text_body, to_name):
        msg = self.build_message(to_email, subject, html_body, text_body, to_name)
        await aiosmtplib.send(
            msg,
            hostname=self.host,
            port=self.port,
            username=self.username or None,
            password=self.password or None,
            start_tls=self.use_tls,
            tls_context=ssl.create_default_context() if self.use_tls else None,
        )
        return None


class BrevoProvider(BaseEmailProvider):
    """Brevo (Sendinblue) transactional e-mail API."""

    name = "brevo"
    API_URL = "https://api.brevo.com/v3/smtp/email"

    def __init__(
        self,
        api_key: str,
        from_address: str,
        from_name: str,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        super().__init__(from_address, from_name)
        self.api_key = api_key
        self._transport = transport

    async def _deliver(self, to_email, subject, html_body, text_body, to_name):
        recipient: dict[str, str] = {"email": to_email}
        if to_name:
            recipient["name"] = to_name
        async with httpx.AsyncClient(transport=self._transport, timeout=10.0) as client:
            response = await client.post(
                self.API_URL,
                headers={"api-key": self.api_key, "accept": "application/json"},
                json={
                    "sender": {"email": self.from_address, "name": self.from_name},
                    "to": [recipient],
                    "subject": subject,
                    "htmlContent": html_body,
                    "textContent": text_body,
                },
            )
            response.raise_for_status()
            return response.json().get("messageId")


def _smtp(settings: Settings) -> BaseEmailProvider:
    return SMTPProvider(
        host=settings.smtp_host,
        port=settings.smtp_port,
        username=settings.smtp_username,
        password=settings.smtp_password,
        from_address=settings.email_from_address,
        from_name=settings.email_from_name,
        use_tls=settings.smtp_use_tls,
    )


def _brevo(settings: Settings) -> BaseEmailProvider:
    return BrevoProvider(
        api_key=settings.brevo_api_key,
        from_address=settings.email_from_address,
        from_name=settings.email_from_name,
    )


_PROVIDERS: dict[str, Callable[[Settings], BaseEmailProvider]] = {
    "smtp": _smtp,
    "brevo": _brevo,
}


def _create_provider() -> BaseEmailProvider:
    """Build the provider named by ``email_provider``."""
    settings = get_settings()
    provider_name = settings.email_provider.lower()
    factory = _PROVIDERS.get(provider_name)
    if factory is None:
        msg = f"Unsupported email provider: {provider_name}"
        raise ValueError(msg)
    return factory(settings)


class EmailService:
    """
    Renders templates and sends them through the configured provider.

    Each recipient may receive at most ``rate_limit_max`` mails per hour,
    counted in Redis. Without Redis there is no cap.
    """

    RATE_LIMIT_WINDOW = 3600

    def __init__(
        self,
        provider: BaseEmailProvider | None = None,
        redis: Redis | None = None,
        rate_limit_max: int | None = None,
    ) -> None:
        self.provider = provider or _create_provider()
        self._redis = redis
        self.rate_limit_max = rate_limit_max or get_settings().email_rate_limit_per_hour

    async def _within_rate_limit(self, email: str) -> bool:
        if self._redis is None:
            return True
        key = f"email_rate:{hashlib.sha256(email.lower().encode()).hexdigest()}"
        count = await self._redis.incr(key)
        if count == 1:
            await self._redis.expire(key, self.RATE_LIMIT_WINDOW)
        return count <= self.rate_limit_max

    async def send_email(
        self,
        to: str,
        subject: str,
        html_body: str,
        text_body: str,
        to_name: str | None = None,
    ) -> bool:
        """Send one message. False if the recipient is over the hourly cap or delivery failed."""
        if not await self._within_rate_limit(to):
            logger.warning("email_rate_limited", to=to, subject=subject)
            return False
        return await self.provider.send(to, subject, html_body, text_body, to_name=to_name)

    async def send_template(
        self,
        to: str,
        template_name: str,
        context: dict[str, Any],
        to_name: str | None = None,
    ) -> bool:
        """
        Render a registered template and send it.

        Raises:
            ValueError: If the template name is unknown.
        """
        template_func = _TEMPLATE_REGISTRY.get(template_name)
        if template_func is None:
            msg = f"Unknown template: {template_name}"
            raise ValueError(msg)

        subject, html_body, text_body = template_func(**context)
        return await self.send_email(to, subject, html_body, text_body, to_name=to_name)


_email_service: EmailService | None = None


def get_email_service(redis: Redis | None = None) -> EmailService:
    """Process-wide email service, created on first use."""
    global _email_service  # noqa: PLW0603
    if _email_service is None:
        _email_service = EmailService(redis=redis)
    return _email_service


def reset_email_service() -> None:
    """Drop the cached service (tests and app shutdown)."""
    global _email_service  # noqa: PLW0603
    _email_service = None
