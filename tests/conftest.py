"""Shared fixtures: in-memory store, fake dispatcher, saved channel."""

import asyncio
import re
from collections import Counter
from datetime import datetime, timedelta, timezone

import pytest

import catalog
from database import Database
from models.news import NewsItem
from notifications import DeliveryError
from rendering import compile_template

# Renders each entry id so the fake dispatcher can count deliveries per entry
ENTRY_TEMPLATE = "{% for item in news %}[{{ item.entry_id }}]{% endfor %}"

BASE_TIME = datetime(2024, 5, 1, 9, 0, tzinfo=timezone.utc)


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
def db():
    """Fresh in-memory store."""
    database = Database(":memory:")
    yield database
    database.close()


class FakeDispatcher:
    """Records every send and counts deliveries per entry id."""

    def __init__(self, delay: float = 0.0, fail: bool = False):
        self.delay = delay
        self.fail = fail
        self.messages = []
        self.per_entry = Counter()
        self.tests = []

    async def send(self, channel, message):
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail:
            raise DeliveryError(channel.id, "relay unavailable")
        ids = [int(x) for x in re.findall(r"\[(\d+)\]", message.html)]
        self.per_entry.update(ids)
        self.messages.append(message)

    async def test(self, channel):
        if self.fail:
            raise DeliveryError(channel.id, "relay unavailable")
        self.tests.append(channel.id)

    @property
    def calls(self) -> int:
        return len(self.messages)


@pytest.fixture
def fake_dispatcher():
    return FakeDispatcher()


@pytest.fixture
def dispatcher_factory():
    return FakeDispatcher


@pytest.fixture
def entry_template():
    return compile_template(ENTRY_TEMPLATE)


@pytest.fixture
def channel(db):
    """An ntfy channel saved in the store."""
    return catalog.save_channel(db, {
        "id": "phone",
        "name": "Phone",
        "type": "ntfy",
        "config": {"server_url": "https://ntfy.example.com", "topic": "news"},
    })


@pytest.fixture
def add_items(db):
    """Append ``count`` items of one category, one minute apart."""
    counter = {"n": 0}

    def _add(count: int, category: str = "tech") -> list[int]:
        ids = []
        for _ in range(count):
            counter["n"] += 1
            n = counter["n"]
            item = NewsItem(
                id=f"item-{n}",
                title=f"Headline {n}",
                summary=f"Summary {n}",
                url=f"https://example.com/{n}",
                source="Example",
                category=category,
            )
            ids.append(db.append_to_window(item, added_at=BASE_TIME + timedelta(minutes=n)))
        return ids

    return _add
