"""Carrying chart data through text channels.

Three conventions share one JSON encoding (camelCase keys, absent optionals
omitted):

- stream sentinel:  ``__CHART_DATA_START__[...]__CHART_DATA_END__`` appended to
  narrative text so a text-stream consumer can pull the charts out and strip them;
- document comment: ``<!-- CHART_DATA:[...] -->`` persisted inside a report body;
- inline markers:   ``[chart:chart-data-<i>]`` placed in prose where chart ``i`` goes.

A marker string occurring inside a chart title or label is unicode-escaped in the
JSON, so extraction always recovers exactly what was encoded.
"""

from __future__ import annotations

import json
import re
from typing import Any, Iterable, List, Optional, Sequence, Tuple, Union

from charts import ChartData

CHART_DATA_START = "__CHART_DATA_START__"
CHART_DATA_END = "__CHART_DATA_END__"
COMMENT_PREFIX = "<!-- CHART_DATA:"
COMMENT_SUFFIX = " -->"

_CHART_MARKER = re.compile(r"\[chart:([^\]]+)\]")
_DATA_MARKER = re.compile(r"^chart-data-(\d+)$")

ChartLike = Union[ChartData, dict]


def _dumps(charts: Iterable[ChartLike]) -> str:
    payload = [c.to_dict() if isinstance(c, ChartData) else c for c in charts]
    raw = json.dumps(payload, ensure_ascii=False, separators=(",", ":"))
    # Markers can only appear inside JSON strings, where \u escapes decode back verbatim.
    raw = raw.replace(CHART_DATA_START, "\\u005f" + CHART_DATA_START[1:])
    raw = raw.replace(CHART_DATA_END, "\\u005f" + CHART_DATA_END[1:])
    return raw.replace("-->", "--\\u003e")


def _loads(raw: str) -> List[ChartData]:
    data = json.loads(raw)
    if not isinstance(data, list):
        raise ValueError("chart payload must be a JSON array")
    return [ChartData.model_validate(item) for item in data]


# ------------------------------------------------------------
# Stream sentinel
# ------------------------------------------------------------
def encode_chart_block(charts: Sequence[ChartLike]) -> str:
    return f"{CHART_DATA_START}{_dumps(charts)}{CHART_DATA_END}"


def _last_span(text: str, start_marker: str, end_marker: str) -> Optional[Tuple[int, int]]:
    """Span of the last start..end pair. Markers in free text before it are ignored."""
    end = text.rfind(end_marker)
    if end < 0:
        return None
    start = text.rfind(start_marker, 0, end)
    if start < 0:
        return None
    return start, end + len(end_marker)


def extract_chart_block(text: str) -> Tuple[List[ChartData], str]:
    """Return (charts, text without the block). No block -> ([], text)."""
    text = text or ""
    span = _last_span(text, CHART_DATA_START, CHART_DATA_END)
    if span is None:
        return [], text
    start, end = span
    charts = _loads(text[start + len(CHART_DATA_START): end - len(CHART_DATA_END)])
    return charts, text[:start] + text[end:]


def compose_answer(narrative: str, charts: Sequence[ChartLike]) -> str:
    """Narrative text with the sentinel block appended when there is anything to chart."""
    if not charts:
        return narrative
    return f"{narrative}\n\n{encode_chart_block(charts)}"


# ------------------------------------------------------------
# Document persistence
# ------------------------------------------------------------
def embed_chart_comment(content: str, charts: Sequence[ChartLike]) -> str:
    if not charts:
        return content
    return f"{content}\n\n{COMMENT_PREFIX}{_dumps(charts)}{COMMENT_SUFFIX}\n\n"


def extract_chart_comment(content: str) -> Tuple[List[ChartData], str]:
    content = content or ""
    span = _last_span(content, COMMENT_PREFIX, COMMENT_SUFFIX)
    if span is None:
        return [], content
    start, end = span
    charts = _loads(content[start + len(COMMENT_PREFIX): end - len(COMMENT_SUFFIX)])
    before, after = content[:start], content[end:]
    if before.endswith("\n\n"):
        before = before[:-2]
    if after.startswith("\n\n"):
        after = after[2:]
    return charts, before + after


# ------------------------------------------------------------
# Inline markers
# ------------------------------------------------------------
def find_chart_markers(text: str) -> List[str]:
    return _CHART_MARKER.findall(text or "")


def resolve_chart_marker(name: str, charts: Sequence[ChartLike]) -> Optional[ChartData]:
    m = _DATA_MARKER.match((name or "").strip())
    if not m:
        return None
    index = int(m.group(1))
    if index >= len(charts):
        return None
    chart: Any = charts[index]
    return chart if isinstance(chart, ChartData) else ChartData.model_validate(chart)


def chart_markers_for(charts: Sequence[ChartLike]) -> List[str]:
    return [f"[chart:chart-data-{i}]" for i in range(len(charts))]
