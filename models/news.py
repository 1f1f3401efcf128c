"""News item and reading-window entry models.

A NewsItem is produced upstream (collected, translated, summarized and
categorized) and is never mutated here. Its membership in the reading
window, and whether it has already been delivered, lives on the
ReadingEntry that is created when the item enters the window.

Push State:
    pushed=False: eligible for exactly one future batch
    pushed=True:  excluded from every future selection until the entry
                  is removed or cleared from the window
"""

import uuid
from datetime import datetime, timezone

from pydantic import BaseModel, Field


def _new_id() -> str:
    return uuid.uuid4().hex


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class NewsItem(BaseModel):
    """A processed news item handed over by the upstream producer.

    Attributes:
        id: Unique item identifier
        title: Original headline
        summary: Original summary
        url: Link to the article
        source: Source name (feed, site, aggregator)
        category: Category tag assigned upstream (tech, ai, ...)
        trans_title: Translated headline (may be empty)
        trans_summary: Translated summary (may be empty)

    Example:
        >>> item = NewsItem(
        ...     title="OpenAI announces GPT-5",
        ...     url="https://example.com/gpt5",
        ...     source="Hacker News",
        ...     category="ai",
        ... )
        >>> item.display_title
        'OpenAI announces GPT-5'
    """

    id: str = Field(default_factory=_new_id, description="Unique item identifier")
    title: str = Field(description="Original headline")
    summary: str = Field(default="", description="Original summary")
    content: str = Field(default="", description="Article body, if collected")
    url: str = Field(default="", description="Article URL")
    source: str = Field(default="", description="Source name")
    category: str = Field(default="", description="Category tag")
    image_url: str = Field(default="", description="Lead image URL")
    author: str = Field(default="", description="Article author")
    trans_title: str = Field(default="", description="Translated headline")
    trans_summary: str = Field(default="", description="Translated summary")
    published_at: datetime | None = Field(default=None, description="Publication time")
    created_at: datetime = Field(default_factory=_utcnow, description="Ingestion time")

    @property
    def display_title(self) -> str:
        """Translated headline when available, original otherwise."""
        return self.trans_title or self.title

    @property
    def display_summary(self) -> str:
        """Translated summary when available, original otherwise."""
        return self.trans_summary or self.summary

    def __str__(self) -> str:
        return f"NewsItem({self.id[:8]}, '{self.title[:50]}')"


class ReadingEntry(BaseModel):
    """Reading-window membership of a news item.

    Attributes:
        entry_id: Store-assigned entry identifier
        item_id: The NewsItem this entry refers to
        category: Category copied from the item when it entered the window
        added_at: When the item entered the window
        pushed: Whether a successful batch has delivered this entry
        pushed_at: When the delivering batch was marked
        item: The joined NewsItem, when loaded
    """

    entry_id: int
    item_id: str
    category: str = ""
    added_at: datetime
    pushed: bool = False
    pushed_at: datetime | None = None
    item: NewsItem | None = None
