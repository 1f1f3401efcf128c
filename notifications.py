"""Channel dispatcher: delivers a rendered batch through one channel.

Backends:
    email:   SMTP session (STARTTLS, implicit SSL, or plain), optional
             login, one multipart/alternative message to every
             recipient, then quit. Runs in a worker thread.
    ntfy:    One JSON publish POST to the ntfy server (Markdown body).
    webhook: One JSON POST carrying the rendered batch.

Every send is a single attempt bounded by the dispatcher timeout. Any
failure, including the timeout, surfaces as DeliveryError; retry policy
belongs to the caller, which knows whether items were already marked.
"""

import asyncio
import logging
import smtplib
import ssl
from datetime import datetime, timezone
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from email.utils import formataddr, formatdate, make_msgid

import aiohttp
import certifi

from models.channel import (
    Channel,
    EmailChannelConfig,
    NtfyChannelConfig,
    WebhookChannelConfig,
)
from rendering import RenderedBatch

logger = logging.getLogger(__name__)

USER_AGENT = "Courier/1.0"


class DeliveryError(Exception):
    """A channel send did not complete."""

    def __init__(self, channel_id: str, message: str):
        self.channel_id = channel_id
        super().__init__(f"channel {channel_id}: {message}")


def _ssl_context() -> ssl.SSLContext:
    """SSL context verified against the certifi bundle."""
    return ssl.create_default_context(cafile=certifi.where())


def build_email(config: EmailChannelConfig, message: RenderedBatch) -> MIMEMultipart:
    """Build the multipart/alternative email for a rendered batch."""
    mail = MIMEMultipart("alternative")
    mail["Subject"] = message.subject
    mail["From"] = formataddr((config.from_name, config.from_address))
    mail["To"] = ", ".join(config.to_addresses)
    mail["Date"] = formatdate(localtime=True)
    mail["Message-ID"] = make_msgid()
    mail.attach(MIMEText(message.text or message.subject, "plain", "utf-8"))
    mail.attach(MIMEText(message.html, "html", "utf-8"))
    return mail


def _smtp_send(config: EmailChannelConfig, mail: MIMEMultipart, timeout: float) -> None:
    if config.security == "ssl":
        server = smtplib.SMTP_SSL(
            config.smtp_host, config.smtp_port, timeout=timeout, context=_ssl_context()
        )
    else:
        server = smtplib.SMTP(config.smtp_host, config.smtp_port, timeout=timeout)

    with server:
        if config.security == "starttls":
            server.starttls(context=_ssl_context())
        if config.username:
            server.login(config.username, config.password)
        server.send_message(mail, from_addr=config.from_address, to_addrs=config.to_addresses)


async def send_email(
    channel_id: str,
    config: EmailChannelConfig,
    message: RenderedBatch,
    timeout: float,
) -> None:
    """Send one email to all recipients.

    Raises:
        DeliveryError: On connection, TLS, authentication or send failure
    """
    mail = build_email(config, message)
    try:
        await asyncio.to_thread(_smtp_send, config, mail, timeout)
    except (smtplib.SMTPException, OSError) as e:
        raise DeliveryError(channel_id, f"SMTP send failed: {e}") from e

    logger.info(
        "Email sent | channel=%s host=%s recipients=%d",
        channel_id, config.smtp_host, len(config.to_addresses),
    )


async def _post_json(
    channel_id: str,
    url: str,
    payload: dict,
    headers: dict[str, str],
    timeout: float,
) -> None:
    headers = {"User-Agent": USER_AGENT, **headers}
    connector = aiohttp.TCPConnector(ssl=_ssl_context())
    try:
        async with aiohttp.ClientSession(connector=connector) as session:
            async with session.post(
                url,
                json=payload,
                headers=headers,
                timeout=aiohttp.ClientTimeout(total=timeout),
            ) as resp:
                if resp.status >= 300:
                    body = (await resp.text())[:200]
                    raise DeliveryError(channel_id, f"HTTP {resp.status}: {body}")
    except asyncio.TimeoutError as e:
        raise DeliveryError(channel_id, f"timeout posting to {url}") from e
    except aiohttp.ClientError as e:
        raise DeliveryError(channel_id, f"{type(e).__name__}: {e}") from e


async def send_ntfy(
    channel_id: str,
    config: NtfyChannelConfig,
    message: RenderedBatch,
    timeout: float,
) -> None:
    """Publish the batch digest to an ntfy topic.

    Raises:
        DeliveryError: On a network error or non-2xx response
    """
    payload = {
        "topic": config.topic,
        "title": message.subject,
        "message": message.text or message.subject,
        "markdown": True,
    }
    headers = {}
    if config.token:
        headers["Authorization"] = f"Bearer {config.token}"

    await _post_json(channel_id, config.server_url, payload, headers, timeout)
    logger.info("ntfy published | channel=%s topic=%s", channel_id, config.topic)


async def send_webhook(
    channel_id: str,
    config: WebhookChannelConfig,
    message: RenderedBatch,
    timeout: float,
) -> None:
    """POST the rendered batch to a webhook endpoint.

    Raises:
        DeliveryError: On a network error or non-2xx response
    """
    payload = {
        "type": "news_batch",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "subject": message.subject,
        "item_count": message.item_count,
        "text": message.text,
        "html": message.html,
    }
    await _post_json(channel_id, config.url, payload, config.headers, timeout)
    logger.info("Webhook sent | channel=%s items=%d", channel_id, message.item_count)


def probe_message() -> RenderedBatch:
    """Synthetic payload used by channel tests."""
    now = datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M:%S")
    return RenderedBatch(
        subject="Courier test notification",
        html=f"<p>This is a test notification sent at {now} UTC.</p>",
        text=f"This is a test notification sent at {now} UTC.",
        item_count=0,
    )


class Dispatcher:
    """Sends rendered batches through channels.

    Example:
        >>> dispatcher = Dispatcher(timeout=30.0)
        >>> await dispatcher.send(channel, rendered)
        >>> await dispatcher.test(channel)
    """

    def __init__(self, timeout: float = 30.0):
        self.timeout = timeout

    async def send(self, channel: Channel, message: RenderedBatch) -> None:
        """Deliver one message through a channel, as a single attempt.

        Raises:
            DeliveryError: If the send fails or exceeds the timeout
        """
        if not channel.enabled:
            raise DeliveryError(channel.id, "channel is disabled")

        if channel.type == "email":
            coro = send_email(channel.id, channel.config, message, self.timeout)
        elif channel.type == "ntfy":
            coro = send_ntfy(channel.id, channel.config, message, self.timeout)
        elif channel.type == "webhook":
            coro = send_webhook(channel.id, channel.config, message, self.timeout)
        else:
            raise DeliveryError(channel.id, f"unsupported channel type: {channel.type}")

        try:
            await asyncio.wait_for(coro, timeout=self.timeout)
        except asyncio.TimeoutError as e:
            raise DeliveryError(channel.id, f"dispatch timed out after {self.timeout:.0f}s") from e

    async def test(self, channel: Channel) -> None:
        """Send a synthetic message without touching the reading window.

        Disabled channels can still be tested.

        Raises:
            DeliveryError: If the test send fails
        """
        logger.info("Channel test | channel=%s type=%s", channel.id, channel.type)
        await self.send(channel.model_copy(update={"enabled": True}), probe_message())
