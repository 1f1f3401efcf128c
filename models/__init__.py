"""Pydantic models for the Courier push service.

NewsItem:
    Processed news item handed over by the upstream producer.

ReadingEntry:
    Reading-window membership and push state of a NewsItem.

Channel:
    Tagged variant over EmailChannel, NtfyChannel and WebhookChannel.

Template:
    Operator-authored message template.

ScheduledTask / AutoPushConfig:
    The two triggers that push the reading window.

Example:
    >>> from models import NewsItem, parse_channel
    >>> channel = parse_channel({"type": "ntfy", "name": "phone",
    ...     "config": {"server_url": "https://ntfy.sh", "topic": "news"}})
"""

from models.news import NewsItem, ReadingEntry
from models.channel import (
    Channel,
    EmailChannel,
    EmailChannelConfig,
    NtfyChannel,
    NtfyChannelConfig,
    WebhookChannel,
    WebhookChannelConfig,
    parse_channel,
)
from models.template import Template
from models.task import AutoPushConfig, ScheduledTask

__all__ = [
    "NewsItem",
    "ReadingEntry",
    "Channel",
    "EmailChannel",
    "EmailChannelConfig",
    "NtfyChannel",
    "NtfyChannelConfig",
    "WebhookChannel",
    "WebhookChannelConfig",
    "parse_channel",
    "Template",
    "AutoPushConfig",
    "ScheduledTask",
]
