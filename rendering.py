"""Template engine for notification batches.

Operator-authored Jinja templates are compiled once (when saved or
previewed) and rendered against a batch context. Rendering is a pure
function of the compiled template and the context: it returns a
RenderedBatch or raises one of two typed errors, and never lets a
template fault escape into the caller's control flow.

Error Kinds:
    CompileError: Template syntax is invalid. Blocks saving the template
        and attaching it to a task.
    RenderError: Template compiled but failed against a particular
        batch. Only that batch attempt fails.

Batch Context:
    date:      Generation date (YYYY-MM-DD)
    count:     Number of items in the batch
    generated: Generation timestamp (YYYY-MM-DD HH:MM:SS)
    news:      Ordered item views (title, summary, trans_title,
               trans_summary, url, source, category, display_title,
               display_summary)

Example:
    >>> compiled = compile_template("<h1>{{ count }} items</h1>")
    >>> batch = render(compiled, build_context(entries, now))
    >>> batch.subject, batch.item_count
    ('News digest - 2024-05-01', 3)
"""

import logging
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import Any, Sequence

import jinja2
from jinja2 import ChainableUndefined, TemplateSyntaxError
from jinja2.sandbox import SandboxedEnvironment

from models.news import NewsItem, ReadingEntry

logger = logging.getLogger(__name__)

# Plain-text digest limits (ntfy body, email text part)
DIGEST_MAX_ITEMS = 10
DIGEST_SUMMARY_CHARS = 100

DEFAULT_SUBJECT = "News digest - {date}"


class CompileError(Exception):
    """Template source does not compile."""

    def __init__(self, message: str, lineno: int | None = None, part: str = "content"):
        self.lineno = lineno
        self.part = part
        where = f"{part} line {lineno}" if lineno else part
        super().__init__(f"{where}: {message}")


class RenderError(Exception):
    """Compiled template failed while rendering a batch."""
    pass


# Autoescaped environment for the HTML body; missing optional fields
# (and attributes of missing fields) render as empty strings.
_html_env = SandboxedEnvironment(
    autoescape=True,
    undefined=ChainableUndefined,
    trim_blocks=True,
    lstrip_blocks=True,
)

# Subject lines are plain text
_text_env = SandboxedEnvironment(autoescape=False, undefined=ChainableUndefined)


@dataclass(frozen=True)
class ItemView:
    """Read-only view of one news item inside a batch."""

    entry_id: int
    title: str
    summary: str
    trans_title: str
    trans_summary: str
    url: str
    source: str
    category: str
    display_title: str
    display_summary: str


@dataclass(frozen=True)
class CompiledTemplate:
    body: jinja2.Template
    subject: jinja2.Template | None = None


@dataclass(frozen=True)
class RenderedBatch:
    """A rendered message ready for any channel.

    Attributes:
        subject: Subject / notification title
        html: Rendered template body
        text: Markdown digest (ntfy body, email plain-text part)
        item_count: Number of items in the batch
    """

    subject: str
    html: str
    text: str
    item_count: int

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def compile_template(body: str, subject: str | None = None) -> CompiledTemplate:
    """Compile a template body and optional subject line.

    Raises:
        CompileError: On a syntax error in either part (with its line number)
    """
    try:
        compiled_body = _html_env.from_string(body)
    except TemplateSyntaxError as e:
        raise CompileError(e.message or str(e), e.lineno, "content") from e

    compiled_subject = None
    if subject and subject.strip():
        try:
            compiled_subject = _text_env.from_string(subject)
        except TemplateSyntaxError as e:
            raise CompileError(e.message or str(e), e.lineno, "subject") from e

    return CompiledTemplate(body=compiled_body, subject=compiled_subject)


def item_view(entry_id: int, item: NewsItem) -> ItemView:
    return ItemView(
        entry_id=entry_id,
        title=item.title,
        summary=item.summary,
        trans_title=item.trans_title,
        trans_summary=item.trans_summary,
        url=item.url,
        source=item.source,
        category=item.category,
        display_title=item.display_title,
        display_summary=item.display_summary,
    )


def build_context(entries: Sequence[ReadingEntry], now: datetime | None = None) -> dict[str, Any]:
    """Build the batch context for a selected set of entries.

    Args:
        entries: Selected entries, in batch order (each with its item loaded)
        now: Generation time (defaults to current UTC time)
    """
    now = now or datetime.now(timezone.utc)
    news = [item_view(e.entry_id, e.item) for e in entries if e.item is not None]
    return {
        "date": now.strftime("%Y-%m-%d"),
        "count": len(news),
        "generated": now.strftime("%Y-%m-%d %H:%M:%S"),
        "news": news,
    }


def build_digest(news: Sequence[ItemView]) -> str:
    """Markdown digest of the first items of a batch."""
    lines = []
    for i, view in enumerate(news[:DIGEST_MAX_ITEMS], start=1):
        summary = view.display_summary
        if len(summary) > DIGEST_SUMMARY_CHARS:
            summary = summary[:DIGEST_SUMMARY_CHARS] + "..."

        lines.append(f"**{i}. {view.display_title}**")
        if summary:
            lines.append(summary)
        if view.url:
            lines.append(f"[Read more]({view.url})")
        lines.append("")

    remaining = len(news) - DIGEST_MAX_ITEMS
    if remaining > 0:
        lines.append(f"... and {remaining} more")
    return "\n".join(lines).strip()


def render(compiled: CompiledTemplate, context: dict[str, Any]) -> RenderedBatch:
    """Render a compiled template against a batch context.

    Raises:
        RenderError: If executing the template fails for this batch
    """
    try:
        html = compiled.body.render(**context)
        subject = ""
        if compiled.subject is not None:
            subject = compiled.subject.render(**context).strip()
    except Exception as e:
        raise RenderError(f"{type(e).__name__}: {e}") from e

    if not subject:
        subject = DEFAULT_SUBJECT.format(date=context.get("date", ""))

    news = context.get("news", [])
    return RenderedBatch(
        subject=" ".join(subject.split()),
        html=html,
        text=build_digest(news),
        item_count=context.get("count", len(news)),
    )


def sample_entries(now: datetime | None = None) -> list[ReadingEntry]:
    """Placeholder entries for previewing a template against an empty window."""
    now = now or datetime.now(timezone.utc)
    samples = [
        NewsItem(
            id="sample-1",
            title="Open-source model tops reasoning benchmark",
            summary="A community-trained model matched proprietary systems on a new reasoning suite.",
            trans_title="",
            url="https://example.com/news/1",
            source="Example Wire",
            category="ai",
        ),
        NewsItem(
            id="sample-2",
            title="Chipmaker announces 2nm production line",
            summary="Volume production is expected to begin next year.",
            url="https://example.com/news/2",
            source="Example Tech",
            category="tech",
        ),
        NewsItem(
            id="sample-3",
            title="Central bank holds rates steady",
            summary="",
            url="https://example.com/news/3",
            source="Example Finance",
            category="finance",
        ),
    ]
    return [
        ReadingEntry(entry_id=0, item_id=item.id, category=item.category, added_at=now, item=item)
        for item in samples
    ]


def preview(
    body: str,
    subject: str | None,
    entries: Sequence[ReadingEntry],
    now: datetime | None = None,
) -> RenderedBatch:
    """Compile and render a template for the live-preview editor.

    Uses sample items when the window has nothing to show.

    Raises:
        CompileError: If the template does not compile
        RenderError: If it compiles but fails to render
    """
    compiled = compile_template(body, subject)
    if not entries:
        entries = sample_entries(now)
    return render(compiled, build_context(entries, now))


DEFAULT_TEMPLATE = """<!DOCTYPE html>
<html>
<head>
    <meta charset="UTF-8">
    <meta name="viewport" content="width=device-width, initial-scale=1.0">
    <style>
        body { font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif; background: #f5f5f5; margin: 0; padding: 20px; }
        .container { max-width: 680px; margin: 0 auto; background: #fff; border-radius: 12px; overflow: hidden; }
        .header { background: #5a67d8; color: white; padding: 30px; text-align: center; }
        .header h1 { margin: 0; font-size: 24px; }
        .content { padding: 20px; }
        .news-item { border-bottom: 1px solid #eee; padding: 20px 0; }
        .news-item:last-child { border-bottom: none; }
        .news-title { font-size: 18px; font-weight: 600; margin: 0 0 10px; }
        .news-title a { color: #5a67d8; text-decoration: none; }
        .news-meta { font-size: 12px; color: #999; margin-bottom: 10px; }
        .category-tag { display: inline-block; background: #f0f0f0; padding: 2px 8px; border-radius: 4px; }
        .news-summary { color: #666; line-height: 1.8; margin: 0; }
        .footer { background: #fafafa; padding: 20px; text-align: center; color: #999; font-size: 12px; }
    </style>
</head>
<body>
    <div class="container">
        <div class="header">
            <h1>News Digest</h1>
            <p>{{ date }} &middot; {{ count }} items</p>
        </div>
        <div class="content">
            {% for item in news %}
            <div class="news-item">
                <h2 class="news-title"><a href="{{ item.url }}" target="_blank">{{ item.display_title }}</a></h2>
                <div class="news-meta">
                    <span class="category-tag">{{ item.category }}</span>
                    <span>Source: {{ item.source }}</span>
                </div>
                <div class="news-summary">{{ item.display_summary }}</div>
            </div>
            {% endfor %}
        </div>
        <div class="footer">
            <p>Generated by Courier at {{ generated }}</p>
        </div>
    </div>
</body>
</html>
"""

BILINGUAL_TEMPLATE = """<!DOCTYPE html>
<html>
<head>
    <meta charset="UTF-8">
    <meta name="viewport" content="width=device-width, initial-scale=1.0">
    <style>
        body { font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif; background: #f5f5f5; margin: 0; padding: 20px; }
        .container { max-width: 720px; margin: 0 auto; background: #fff; border-radius: 12px; overflow: hidden; }
        .header { background: #5a67d8; color: white; padding: 30px; text-align: center; }
        .content { padding: 20px; }
        .news-item { border-bottom: 1px solid #eee; padding: 24px 0; }
        .news-title a { color: #5a67d8; text-decoration: none; }
        .news-meta { font-size: 12px; color: #999; margin-bottom: 12px; }
        .category-tag { background: #5a67d8; color: white; padding: 2px 10px; border-radius: 4px; font-size: 11px; }
        .lang-section { padding: 15px; background: #fafafa; }
        .lang-section.original { border-bottom: 1px solid #eee; }
        .lang-label { font-size: 11px; color: #999; margin-bottom: 6px; text-transform: uppercase; }
        .lang-text { color: #555; line-height: 1.8; margin: 0; }
        .footer { background: #fafafa; padding: 20px; text-align: center; color: #999; font-size: 12px; }
    </style>
</head>
<body>
    <div class="container">
        <div class="header">
            <h1>News Digest</h1>
            <p>{{ date }} &middot; {{ count }} items</p>
        </div>
        <div class="content">
            {% for item in news %}
            <div class="news-item">
                <h2 class="news-title"><a href="{{ item.url }}" target="_blank">{{ item.title }}</a></h2>
                <div class="news-meta">
                    <span class="category-tag">{{ item.category }}</span>
                    <span>Source: {{ item.source }}</span>
                </div>
                <div class="lang-section original">
                    <div class="lang-label">Original</div>
                    <p class="lang-text">{{ item.summary }}</p>
                </div>
                {% if item.trans_title or item.trans_summary %}
                <div class="lang-section translated">
                    <div class="lang-label">Translation</div>
                    <p class="lang-text"><strong>{{ item.trans_title }}</strong></p>
                    <p class="lang-text">{{ item.trans_summary }}</p>
                </div>
                {% endif %}
            </div>
            {% endfor %}
        </div>
        <div class="footer">
            <p>Generated by Courier at {{ generated }}</p>
        </div>
    </div>
</body>
</html>
"""

BUILTIN_TEMPLATES = {
    "default": DEFAULT_TEMPLATE,
    "bilingual": BILINGUAL_TEMPLATE,
}
