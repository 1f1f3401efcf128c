"""Tests for template compilation, rendering and the text digest."""

from datetime import datetime, timezone

import pytest

from models.news import NewsItem, ReadingEntry
from rendering import (
    BUILTIN_TEMPLATES,
    CompileError,
    RenderError,
    build_context,
    compile_template,
    preview,
    render,
)

NOW = datetime(2024, 5, 1, 8, 30, 15, tzinfo=timezone.utc)


def _entries(count: int, **item_kwargs) -> list[ReadingEntry]:
    entries = []
    for n in range(1, count + 1):
        fields = {
            "id": f"n{n}",
            "title": f"Headline {n}",
            "summary": f"Summary {n}",
            "url": f"https://example.com/{n}",
            "source": "Wire",
            "category": "tech",
        }
        fields.update(item_kwargs)
        item = NewsItem(**fields)
        entries.append(
            ReadingEntry(entry_id=n, item_id=item.id, category=item.category, added_at=NOW, item=item)
        )
    return entries


class TestCompile:

    def test_syntax_error_carries_line_number(self):
        with pytest.raises(CompileError) as exc:
            compile_template("<p>\n{{ count }\n</p>")
        assert exc.value.lineno == 2
        assert exc.value.part == "content"

    def test_unclosed_block_is_compile_error(self):
        with pytest.raises(CompileError):
            compile_template("{% for item in news %}<li>{{ item.title }}</li>")

    def test_subject_syntax_error(self):
        with pytest.raises(CompileError) as exc:
            compile_template("<p>ok</p>", subject="{{ date ")
        assert exc.value.part == "subject"

    def test_builtin_templates_compile(self):
        for body in BUILTIN_TEMPLATES.values():
            compile_template(body)


class TestRender:

    def test_context_fields(self):
        context = build_context(_entries(2), NOW)
        assert context["date"] == "2024-05-01"
        assert context["generated"] == "2024-05-01 08:30:15"
        assert context["count"] == 2
        assert [v.title for v in context["news"]] == ["Headline 1", "Headline 2"]

    def test_renders_items_in_order(self):
        compiled = compile_template("{% for item in news %}{{ item.title }};{% endfor %}")
        batch = render(compiled, build_context(_entries(3), NOW))
        assert batch.html == "Headline 1;Headline 2;Headline 3;"
        assert batch.item_count == 3

    def test_missing_fields_render_empty(self):
        compiled = compile_template("[{{ item_missing.deeper }}]{% for item in news %}[{{ item.nope }}]{% endfor %}")
        batch = render(compiled, build_context(_entries(1), NOW))
        assert batch.html == "[][]"

    def test_html_is_escaped(self):
        compiled = compile_template("{% for item in news %}{{ item.title }}{% endfor %}")
        batch = render(compiled, build_context(_entries(1, title="<script>x</script>"), NOW))
        assert "<script>" not in batch.html
        assert "&lt;script&gt;" in batch.html

    def test_display_fields_prefer_translation(self):
        compiled = compile_template("{% for item in news %}{{ item.display_title }}{% endfor %}")
        batch = render(compiled, build_context(_entries(1, trans_title="Translated"), NOW))
        assert batch.html == "Translated"

    def test_runtime_failure_is_render_error(self):
        compiled = compile_template("{{ count // 0 }}")
        with pytest.raises(RenderError):
            render(compiled, build_context(_entries(1), NOW))

    def test_default_subject(self):
        batch = render(compile_template("x"), build_context(_entries(1), NOW))
        assert batch.subject == "News digest - 2024-05-01"

    def test_custom_subject(self):
        compiled = compile_template("x", subject="{{ count }} stories for {{ date }}")
        batch = render(compiled, build_context(_entries(2), NOW))
        assert batch.subject == "2 stories for 2024-05-01"

    def test_builtin_default_renders_batch(self):
        batch = render(compile_template(BUILTIN_TEMPLATES["default"]), build_context(_entries(2), NOW))
        assert "Headline 2" in batch.html
        assert "2 items" in batch.html


class TestDigest:

    def test_digest_lists_at_most_ten(self):
        batch = render(compile_template("x"), build_context(_entries(12), NOW))
        assert "**10. Headline 10**" in batch.text
        assert "Headline 11" not in batch.text
        assert batch.text.endswith("... and 2 more")

    def test_digest_truncates_summary(self):
        batch = render(compile_template("x"), build_context(_entries(1, summary="s" * 150), NOW))
        assert "s" * 100 + "..." in batch.text
        assert "s" * 101 not in batch.text

    def test_digest_links(self):
        batch = render(compile_template("x"), build_context(_entries(1), NOW))
        assert "[Read more](https://example.com/1)" in batch.text


class TestPreview:

    def test_empty_window_uses_samples(self):
        batch = preview(BUILTIN_TEMPLATES["bilingual"], None, [], NOW)
        assert batch.item_count == 3
        assert "Chipmaker" in batch.html

    def test_preview_uses_entries(self):
        batch = preview("{{ count }}", "{{ date }}", _entries(4), NOW)
        assert batch.html == "4"
        assert batch.subject == "2024-05-01"

    def test_preview_reports_compile_error(self):
        with pytest.raises(CompileError):
            preview("{% if %}", None, [], NOW)
