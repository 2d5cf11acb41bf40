"""Report normalizer: raw workflow payload → ordered typed content blocks.

The report endpoint returns ``{"content": {"label", "reportData": [...]}}``
where each item declares a ``type``:

  summary  — free text with optional HTML, Markdown emphasis and pipe tables
  chart    — a chart.js-style descriptor (type / data / options)
  table    — a pre-rendered HTML table

Pipe tables embedded in summaries are lifted out into TableBlocks with the
surrounding prose kept as TextBlocks.  Items that cannot be understood are
skipped one by one; normalization never raises for bad items.

Metric extraction scans the tag-stripped prose for an OHLCV summary
("Open Price: $93.27", …) and returns None when the four prices are not
all present.
"""

from __future__ import annotations

import json
import logging
import re
from typing import Any

from bs4 import BeautifulSoup

from trendmate.models import (
    ChartBlock,
    ChartSeries,
    MetricSnapshot,
    Report,
    TableBlock,
    TextBlock,
)

log = logging.getLogger(__name__)

ContentBlock = TextBlock | ChartBlock | TableBlock


class MalformedContentItem(ValueError):
    """A single report item that cannot be turned into a block."""


# ═══════════════════════════════════════════════════════════════════════════
#  Text cleanup
# ═══════════════════════════════════════════════════════════════════════════

_BLOCK_TAGS = frozenset([
    "p", "div", "h1", "h2", "h3", "h4", "h5", "h6",
    "li", "ol", "ul", "blockquote", "pre", "hr",
    "section", "article", "header", "footer",
    "tr", "table", "thead", "tbody", "tfoot",
])
_AGENT_MARKER_RE = re.compile(r"\$agent\.[^\s<]+")
_EMPHASIS_RE = re.compile(r"[*`]|__")


def _soup(markup: str) -> BeautifulSoup:
    soup = BeautifulSoup(markup, "html.parser")
    for tag in soup(["script", "style"]):
        tag.decompose()
    return soup


def sanitize_html(text: str) -> str:
    """Remove ``<script>`` and ``<style>`` blocks, keep everything else."""
    if "<" not in text:
        return text
    return _soup(text).decode(formatter=None)


def strip_html(text: str) -> str:
    """Drop markup, keeping line structure and unescaping entities."""
    soup = _soup(text)
    for br in soup.find_all("br"):
        br.replace_with("\n")
    for tag in soup.find_all(True):
        if tag.name in _BLOCK_TAGS:
            tag.append("\n")
    return soup.get_text()


def _clean_summary(text: str) -> str:
    return _AGENT_MARKER_RE.sub("", sanitize_html(text))


# ═══════════════════════════════════════════════════════════════════════════
#  Pipe tables
# ═══════════════════════════════════════════════════════════════════════════

_ALIGN_CELL_RE = re.compile(r"^:?-+:?$")
_FENCE_OPEN_RE = re.compile(r"```[\w-]*[ \t]*\r?\n?\Z")
_FENCE_CLOSE_RE = re.compile(r"\A[ \t]*```[ \t]*(?:\r?\n)?")


def _is_pipe_row(line: str) -> bool:
    s = line.strip()
    return len(s) >= 2 and s.startswith("|") and s.endswith("|")


def _split_cells(line: str) -> list[str]:
    s = line.strip()
    if s.startswith("|"):
        s = s[1:]
    if s.endswith("|"):
        s = s[:-1]
    return [cell.strip() for cell in s.split("|")]


def _is_alignment_row(cells: list[str]) -> bool:
    filled = [c for c in cells if c]
    return bool(filled) and all(_ALIGN_CELL_RE.match(c) for c in filled)


def _row_dict(headers: list[str], cells: list[str]) -> dict[str, str]:
    cells = (cells + [""] * len(headers))[: len(headers)]
    return dict(zip(headers, cells))


def split_pipe_table(text: str) -> tuple[str, list[dict[str, str]], str] | None:
    """Split text around its first pipe table.

    Returns ``(before, rows, after)`` or None when the text holds no table.
    The first line starting with ``|`` that names a column is the header;
    rows continue until a line that does not both start and end with ``|``.
    """
    lines = text.splitlines(keepends=True)
    start = 0
    while True:
        start = next((i for i in range(start, len(lines)) if lines[i].lstrip().startswith("|")), None)
        if start is None:
            return None
        headers = [" ".join(cell.split()) for cell in _split_cells(lines[start])]
        if any(headers):
            break
        start += 1

    rows: list[dict[str, str]] = []
    end = start + 1
    while end < len(lines) and _is_pipe_row(lines[end]):
        cells = _split_cells(lines[end])
        if not _is_alignment_row(cells):
            rows.append(_row_dict(headers, cells))
        end += 1

    before = "".join(lines[:start])
    after = "".join(lines[end:])

    # ```-fenced tables: drop the fence lines together with the table
    fence = _FENCE_OPEN_RE.search(before)
    if fence:
        before = before[: fence.start()]
        after = _FENCE_CLOSE_RE.sub("", after, count=1)

    return before, rows, after


def _summary_blocks(text: str) -> list[ContentBlock]:
    blocks: list[ContentBlock] = []
    remaining = text
    while True:
        parts = split_pipe_table(remaining)
        if parts is None:
            blocks.append(TextBlock(raw_text=remaining))
            return blocks
        before, rows, remaining = parts
        blocks.append(TextBlock(raw_text=before))
        blocks.append(TableBlock(rows=rows))


# ═══════════════════════════════════════════════════════════════════════════
#  HTML tables
# ═══════════════════════════════════════════════════════════════════════════
def parse_html_table(markup: str) -> list[dict[str, str]]:
    """Read ``<tr>`` rows into dicts keyed by the first row's cells."""
    grid: list[list[str]] = []
    for tr in _soup(markup).find_all("tr"):
        cells = [" ".join(td.get_text().split()) for td in tr.find_all(["td", "th"])]
        if cells:
            grid.append(cells)
    if not grid:
        return []
    headers = grid[0]
    return [_row_dict(headers, cells) for cells in grid[1:]]


# ═══════════════════════════════════════════════════════════════════════════
#  Numbers
# ═══════════════════════════════════════════════════════════════════════════

_CURRENCY_RE = re.compile(r"[$€£¥,\s]|USD", re.I)


def parse_number(raw: str) -> float:
    """Parse '$27,742,915.50' style values; raises ValueError if not numeric."""
    return float(_CURRENCY_RE.sub("", raw))


def _chart_value(value: Any) -> float | None:
    if value is None:
        return None
    if isinstance(value, bool):
        raise MalformedContentItem(f"non-numeric chart value {value!r}")
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return parse_number(value)
        except ValueError:
            raise MalformedContentItem(f"non-numeric chart value {value!r}") from None
    raise MalformedContentItem(f"non-numeric chart value {value!r}")


# ═══════════════════════════════════════════════════════════════════════════
#  Item → block
# ═══════════════════════════════════════════════════════════════════════════

def _normalize_summary(item: dict) -> list[ContentBlock]:
    content = item.get("content")
    if not isinstance(content, str):
        raise MalformedContentItem("summary content is not text")
    return _summary_blocks(_clean_summary(content))


def _normalize_chart(item: dict) -> list[ContentBlock]:
    content = item.get("content")
    if isinstance(content, str):
        try:
            content = json.loads(content)
        except json.JSONDecodeError as exc:
            raise MalformedContentItem(f"chart descriptor is not JSON: {exc}") from None
    if not isinstance(content, dict):
        raise MalformedContentItem("chart descriptor is not an object")

    data = content.get("data")
    if not isinstance(data, dict):
        raise MalformedContentItem("chart has no data")
    datasets = data.get("datasets")
    if not isinstance(datasets, list) or not datasets:
        raise MalformedContentItem("chart has no series")

    series: list[ChartSeries] = []
    for ds in datasets:
        if not isinstance(ds, dict) or not isinstance(ds.get("data"), list):
            raise MalformedContentItem("chart series has no data")
        series.append(ChartSeries(
            name=str(ds.get("label") or ""),
            values=[_chart_value(v) for v in ds["data"]],
            style={k: v for k, v in ds.items() if k not in ("label", "data")},
        ))

    labels = data.get("labels") or []
    if not isinstance(labels, list):
        raise MalformedContentItem("chart labels are not a list")

    options = content.get("options")
    return [ChartBlock(
        chart_kind=str(content.get("type") or "line"),
        labels=[str(label) for label in labels],
        series=series,
        axis_config=options if isinstance(options, dict) else {},
        label=str(item.get("chartLabel") or ""),
    )]


def _normalize_table(item: dict) -> list[ContentBlock]:
    content = item.get("content")
    if not isinstance(content, str):
        raise MalformedContentItem("table content is not HTML text")
    markup = sanitize_html(content)
    return [TableBlock(rows=parse_html_table(markup), html=markup)]


_HANDLERS = {
    "summary": _normalize_summary,
    "chart": _normalize_chart,
    "table": _normalize_table,
}


def _report_envelope(payload: Any) -> tuple[str | None, list]:
    """Find ``(label, items)`` in the shapes the endpoint returns."""
    if isinstance(payload, list):
        return None, payload
    if not isinstance(payload, dict):
        return None, []
    content = payload.get("content", payload)
    if not isinstance(content, dict):
        return None, []
    items = content.get("reportData")
    label = content.get("label")
    return (str(label) if label else None), (items if isinstance(items, list) else [])


def normalize_report(payload: Any) -> Report:
    """Normalize a report payload, skipping malformed items."""
    label, items = _report_envelope(payload)
    blocks: list[ContentBlock] = []
    skipped = 0

    for index, item in enumerate(items):
        try:
            if not isinstance(item, dict):
                raise MalformedContentItem("item is not an object")
            kind = item.get("type")
            handler = _HANDLERS.get(kind) if isinstance(kind, str) else None
            if handler is None:
                raise MalformedContentItem(f"unknown item type {kind!r}")
            blocks.extend(handler(item))
        except (ValueError, TypeError) as exc:  # pydantic ValidationError included
            skipped += 1
            log.warning("Skipping report item %d: %s", index, exc)

    return Report(
        label=label,
        blocks=blocks,
        metrics=extract_metrics(blocks),
        skipped=skipped,
    )


def normalize(payload: Any) -> list[ContentBlock]:
    """Ordered content blocks for a report payload."""
    return normalize_report(payload).blocks


# ═══════════════════════════════════════════════════════════════════════════
#  Metric extraction
# ═══════════════════════════════════════════════════════════════════════════

_PRICE_VALUE = r"\s*[:=\-–]?\s*(?:USD\s*)?[$€£¥]?\s*(\d[\d,]*(?:\.\d+)?)"

PRICE_PATTERNS: dict[str, re.Pattern[str]] = {
    field: re.compile(rf"\b{field}\s+Price{_PRICE_VALUE}", re.I)
    for field in ("Open", "High", "Low", "Close")
}
VOLUME_PATTERN = re.compile(r"\bVolume\s*[:=\-–]?\s*(\d[\d,]*)(?![\d,]|\.\d)", re.I)


def metrics_from_text(text: str) -> MetricSnapshot | None:
    """OHLCV snapshot from one piece of prose, or None if a price is missing."""
    plain = _EMPHASIS_RE.sub("", strip_html(text))

    prices: dict[str, float] = {}
    for field, pattern in PRICE_PATTERNS.items():
        match = pattern.search(plain)
        if match is None:
            return None
        prices[field.lower()] = parse_number(match.group(1))

    volume_match = VOLUME_PATTERN.search(plain)
    volume = int(parse_number(volume_match.group(1))) if volume_match else None
    return MetricSnapshot(volume=volume, **prices)


def extract_metrics(blocks: list[ContentBlock]) -> MetricSnapshot | None:
    """First OHLCV snapshot found across the text blocks, in order."""
    for block in blocks:
        if isinstance(block, TextBlock):
            snapshot = metrics_from_text(block.raw_text)
            if snapshot is not None:
                return snapshot
    return None
