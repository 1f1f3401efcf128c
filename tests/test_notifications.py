"""Tests for the channel dispatcher backends."""

import asyncio
import smtplib
from unittest.mock import patch

import pytest
from aiohttp import test_utils, web

from models.channel import parse_channel
from notifications import DeliveryError, Dispatcher, build_email
from rendering import RenderedBatch

pytestmark = pytest.mark.anyio

MESSAGE = RenderedBatch(
    subject="News digest - 2024-05-01",
    html="<h1>2 items</h1>",
    text="**1. Headline**",
    item_count=2,
)


def _email_channel(**config):
    data = {
        "smtp_host": "smtp.example.com",
        "smtp_port": 587,
        "username": "bot",
        "password": "secret",
        "from_address": "bot@example.com",
        "from_name": "Courier",
        "to_addresses": "a@example.com, b@example.com",
    }
    data.update(config)
    return parse_channel({"id": "mail", "name": "Mail", "type": "email", "config": data})


def _recording_app(status: int = 200, delay: float = 0.0):
    received = []

    async def handler(request: web.Request) -> web.Response:
        received.append({"json": await request.json(), "headers": dict(request.headers)})
        if delay:
            await asyncio.sleep(delay)
        return web.json_response({"id": "abc"}, status=status)

    app = web.Application()
    app.router.add_post("/", handler)
    app.router.add_post("/hook", handler)
    return app, received


class TestEmail:

    def test_build_email_is_multipart_alternative(self):
        channel = _email_channel()
        mail = build_email(channel.config, MESSAGE)

        assert mail.get_content_subtype() == "alternative"
        assert mail["To"] == "a@example.com, b@example.com"
        assert mail["From"] == "Courier <bot@example.com>"
        parts = [p.get_content_type() for p in mail.get_payload()]
        assert parts == ["text/plain", "text/html"]

    async def test_starttls_login_and_single_send(self):
        channel = _email_channel()
        with patch("notifications.smtplib.SMTP") as smtp_cls:
            server = smtp_cls.return_value
            await Dispatcher(timeout=5).send(channel, MESSAGE)

        smtp_cls.assert_called_once_with("smtp.example.com", 587, timeout=5)
        server.starttls.assert_called_once()
        server.login.assert_called_once_with("bot", "secret")
        server.send_message.assert_called_once()
        assert server.send_message.call_args.kwargs["to_addrs"] == ["a@example.com", "b@example.com"]

    async def test_ssl_uses_smtp_ssl(self):
        channel = _email_channel(security="ssl", smtp_port=465, username="")
        with patch("notifications.smtplib.SMTP_SSL") as smtp_cls:
            server = smtp_cls.return_value
            await Dispatcher(timeout=5).send(channel, MESSAGE)

        server.starttls.assert_not_called()
        server.login.assert_not_called()
        server.send_message.assert_called_once()

    async def test_auth_failure_is_delivery_error(self):
        channel = _email_channel()
        with patch("notifications.smtplib.SMTP") as smtp_cls:
            server = smtp_cls.return_value
            server.login.side_effect = smtplib.SMTPAuthenticationError(535, b"bad credentials")

            with pytest.raises(DeliveryError) as exc:
                await Dispatcher(timeout=5).send(channel, MESSAGE)

        assert exc.value.channel_id == "mail"
        server.send_message.assert_not_called()

    async def test_connection_refused_is_delivery_error(self):
        channel = _email_channel()
        with patch("notifications.smtplib.SMTP", side_effect=ConnectionRefusedError()):
            with pytest.raises(DeliveryError):
                await Dispatcher(timeout=5).send(channel, MESSAGE)


class TestNtfy:

    async def test_publishes_markdown_json(self):
        app, received = _recording_app()
        async with test_utils.TestServer(app) as server:
            channel = parse_channel({
                "id": "phone",
                "name": "Phone",
                "type": "ntfy",
                "config": {"server_url": str(server.make_url("/")), "topic": "news", "token": "tk"},
            })
            await Dispatcher(timeout=5).send(channel, MESSAGE)

        assert len(received) == 1
        body = received[0]["json"]
        assert body == {
            "topic": "news",
            "title": "News digest - 2024-05-01",
            "message": "**1. Headline**",
            "markdown": True,
        }
        assert received[0]["headers"]["Authorization"] == "Bearer tk"

    async def test_error_status_is_delivery_error(self):
        app, _ = _recording_app(status=500)
        async with test_utils.TestServer(app) as server:
            channel = parse_channel({
                "id": "phone",
                "name": "Phone",
                "type": "ntfy",
                "config": {"server_url": str(server.make_url("/")), "topic": "news"},
            })
            with pytest.raises(DeliveryError) as exc:
                await Dispatcher(timeout=5).send(channel, MESSAGE)

        assert "HTTP 500" in str(exc.value)


class TestWebhook:

    async def test_posts_batch(self):
        app, received = _recording_app()
        async with test_utils.TestServer(app) as server:
            channel = parse_channel({
                "id": "hook",
                "name": "Hook",
                "type": "webhook",
                "config": {"url": str(server.make_url("/hook")), "headers": {"X-Token": "t"}},
            })
            await Dispatcher(timeout=5).send(channel, MESSAGE)

        body = received[0]["json"]
        assert body["type"] == "news_batch"
        assert body["item_count"] == 2
        assert body["html"] == "<h1>2 items</h1>"
        assert received[0]["headers"]["X-Token"] == "t"

    async def test_timeout_is_delivery_error(self):
        app, _ = _recording_app(delay=2.0)
        async with test_utils.TestServer(app) as server:
            channel = parse_channel({
                "id": "hook",
                "name": "Hook",
                "type": "webhook",
                "config": {"url": str(server.make_url("/hook"))},
            })
            with pytest.raises(DeliveryError):
                await Dispatcher(timeout=0.2).send(channel, MESSAGE)


class TestDispatcher:

    async def test_disabled_channel_is_not_sent(self):
        channel = _email_channel().model_copy(update={"enabled": False})
        with patch("notifications.smtplib.SMTP") as smtp_cls:
            with pytest.raises(DeliveryError):
                await Dispatcher(timeout=5).send(channel, MESSAGE)
        smtp_cls.assert_not_called()

    async def test_test_sends_probe_to_disabled_channel(self):
        channel = _email_channel().model_copy(update={"enabled": False})
        with patch("notifications.smtplib.SMTP") as smtp_cls:
            server = smtp_cls.return_value
            await Dispatcher(timeout=5).test(channel)

        mail = server.send_message.call_args.args[0]
        assert mail["Subject"] == "Courier test notification"
