"""Heuristic chart inference over query results.

Rules are independent predicate+transform pairs applied in order; every rule
that matches contributes one chart (no de-duplication). The fallback only
runs when nothing else matched.

Known limitation: the multi-series rule sums all numeric columns into a
single bar per label instead of emitting separate series. Consumers rely on
the summed `value`, so it stays that way until the chart UI can draw real
multi-series charts.
"""

from __future__ import annotations

import logging
import math
import re
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Callable, Dict, List, Literal, Mapping, Optional, Sequence, Union

from pydantic import BaseModel, ConfigDict, Field

from executor import QueryResult
from metrics import CHARTS_EXTRACTED_TOTAL

logger = logging.getLogger("querylens.charts")

FALLBACK_ROW_CAP = 20

_DATE_PREFIX = re.compile(r"^\d{4}-\d{2}-\d{2}")


# ------------------------------------------------------------
# Models
# ------------------------------------------------------------
class ChartPoint(BaseModel):
    model_config = ConfigDict(extra="allow", frozen=True)

    label: str
    value: float


class ChartData(BaseModel):
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    type: Literal["bar", "line", "pie", "area"]
    title: str
    data: List[ChartPoint]
    x_axis: Optional[str] = Field(default=None, alias="xAxis")
    y_axis: Optional[str] = Field(default=None, alias="yAxis")
    description: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


# ------------------------------------------------------------
# Value helpers
# ------------------------------------------------------------
def is_number(value: Any) -> bool:
    """Numbers, numeric strings and NULL (charted as 0) count; bools do not."""
    if value is None:
        return True
    if isinstance(value, bool):
        return False
    if isinstance(value, (int, float, Decimal)):
        return True
    if isinstance(value, str):
        try:
            return math.isfinite(float(value.strip()))
        except ValueError:
            return False
    return False


def to_number(value: Any) -> float:
    """Anything unparseable, NULL, NaN or inf becomes 0."""
    try:
        n = float(value)
    except (TypeError, ValueError):
        return 0.0
    return n if math.isfinite(n) else 0.0


def to_label(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    return str(value)


def is_date_like(value: Any) -> bool:
    if isinstance(value, (datetime, date)):
        return True
    if not isinstance(value, str) or not _DATE_PREFIX.match(value):
        return False
    try:
        date.fromisoformat(value[:10])
    except ValueError:
        return False
    return True


# ------------------------------------------------------------
# Result shape
# ------------------------------------------------------------
@dataclass(frozen=True)
class ResultShape:
    rows: List[Mapping[str, Any]]
    field_names: List[str]
    numeric_fields: List[str]
    categorical_fields: List[str]
    time_fields: List[str]

    @classmethod
    def from_rows(cls, rows: Sequence[Any]) -> Optional["ResultShape"]:
        if not rows or not isinstance(rows[0], Mapping):
            return None
        rows = [r for r in rows if isinstance(r, Mapping)]
        field_names = list(rows[0].keys())
        numeric = [f for f in field_names if all(is_number(r.get(f)) for r in rows)]
        categorical = [f for f in field_names if f not in numeric]
        # one parseable date is enough
        time_fields = [f for f in field_names if any(is_date_like(r.get(f)) for r in rows)]
        return cls(rows, field_names, numeric, categorical, time_fields)


def _points(rows: Sequence[Mapping[str, Any]], label_field: str, value_field: str) -> List[ChartPoint]:
    return [ChartPoint(label=to_label(r.get(label_field)), value=to_number(r.get(value_field))) for r in rows]


# ------------------------------------------------------------
# Rules
# ------------------------------------------------------------
ChartRule = Callable[[ResultShape], Optional[ChartData]]


def two_column_rule(shape: ResultShape) -> Optional[ChartData]:
    """Exactly two columns, one numeric and one not: bar of value by label."""
    if len(shape.field_names) != 2 or len(shape.numeric_fields) != 1:
        return None
    value_field = shape.numeric_fields[0]
    label_field = shape.categorical_fields[0]
    return ChartData(
        type="bar",
        title=f"{value_field} by {label_field}",
        xAxis=label_field,
        yAxis=value_field,
        description=f"Distribution of {value_field} across different {label_field} values",
        data=_points(shape.rows, label_field, value_field),
    )


def multi_series_rule(shape: ResultShape) -> Optional[ChartData]:
    """One label column plus several numeric columns, summed per row."""
    if len(shape.numeric_fields) <= 1 or len(shape.categorical_fields) != 1:
        return None
    label_field = shape.categorical_fields[0]
    series = shape.numeric_fields
    points = []
    for r in shape.rows:
        values = {f: to_number(r.get(f)) for f in series}
        extra = {f: v for f, v in values.items() if f not in ("label", "value")}
        points.append(ChartPoint(label=to_label(r.get(label_field)), value=sum(values.values()), **extra))
    return ChartData(
        type="bar",
        title=f"Multi-series Analysis by {label_field}",
        xAxis=label_field,
        yAxis="Values",
        description=f"Sum of {', '.join(series)} for each {label_field}",
        data=points,
    )


def time_series_rule(shape: ResultShape) -> Optional[ChartData]:
    """First date-like column against the first numeric column."""
    if not shape.time_fields or not shape.numeric_fields:
        return None
    time_field = shape.time_fields[0]
    value_field = shape.numeric_fields[0]
    return ChartData(
        type="line",
        title=f"{value_field} Over Time",
        xAxis=time_field,
        yAxis=value_field,
        description=f"Trend of {value_field} over {time_field}",
        data=_points(shape.rows, time_field, value_field),
    )


def fallback_rule(shape: ResultShape) -> Optional[ChartData]:
    """First numeric column against the first label column (or row position), first 20 rows."""
    if len(shape.field_names) < 2:
        return None
    value_field = shape.numeric_fields[0] if shape.numeric_fields else None
    label_field = shape.categorical_fields[0] if shape.categorical_fields else None
    if value_field is None:
        return None

    rows = shape.rows[:FALLBACK_ROW_CAP]
    if label_field is not None:
        return ChartData(
            type="bar",
            title=f"Data Analysis: {value_field} by {label_field}",
            xAxis=label_field,
            yAxis=value_field,
            description=f"Distribution of {value_field} across different {label_field} values",
            data=_points(rows, label_field, value_field),
        )
    return ChartData(
        type="bar",
        title=f"{value_field} Distribution",
        xAxis="Row",
        yAxis=value_field,
        description=f"{value_field} for the first {len(rows)} rows",
        data=[ChartPoint(label=f"Row {i}", value=to_number(r.get(value_field))) for i, r in enumerate(rows, start=1)],
    )


CHART_RULES: List[ChartRule] = [two_column_rule, multi_series_rule, time_series_rule]


# ------------------------------------------------------------
# Entry point
# ------------------------------------------------------------
def extract_charts(result: Union[QueryResult, Sequence[Mapping[str, Any]]]) -> List[ChartData]:
    rows = result.rows if isinstance(result, QueryResult) else result
    shape = ResultShape.from_rows(list(rows or []))
    if shape is None:
        return []

    charts = [chart for chart in (rule(shape) for rule in CHART_RULES) if chart is not None]
    if not charts:
        chart = fallback_rule(shape)
        if chart is not None:
            charts.append(chart)

    for chart in charts:
        CHARTS_EXTRACTED_TOTAL.labels(type=chart.type).inc()
    logger.info(
        "chart_rules_applied",
        extra={
            "row_count": len(shape.rows),
            "numeric_fields": shape.numeric_fields,
            "time_fields": shape.time_fields,
            "charts": [c.title for c in charts],
        },
    )
    return charts
