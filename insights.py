"""Advisory text about a query run. Nothing here affects chart extraction."""

from __future__ import annotations

from typing import Any, Dict, List

from executor import QueryResult

LARGE_RESULT_ROWS = 1000
SLOW_QUERY_MS = 5000
FAST_QUERY_MS = 100
MANY_COLUMNS = 20


def generate_insights(result: QueryResult) -> List[str]:
    insights: List[str] = []

    if result.row_count == 0:
        insights.append("No rows returned - the query conditions may be too restrictive or the data doesn't exist")
    else:
        insights.append(f"Query returned {result.row_count} rows in {result.execution_time_ms}ms")

        if result.row_count > LARGE_RESULT_ROWS:
            insights.append("Large result set - consider adding LIMIT clause for better performance")

        if result.execution_time_ms > SLOW_QUERY_MS:
            insights.append("Slow query execution - consider optimizing with indexes or query restructuring")
        elif result.execution_time_ms < FAST_QUERY_MS:
            insights.append("Fast query execution - well optimized")

    if len(result.fields) > MANY_COLUMNS:
        insights.append("Many columns returned - consider selecting specific columns for better performance")

    if result.rows:
        first = result.rows[0]
        null_fields = [k for k, v in first.items() if v is None]
        if null_fields:
            insights.append(f"Found NULL values in columns: {', '.join(null_fields)}")

    return insights


def _performance_score(execution_time_ms: float) -> str:
    if execution_time_ms < 1000:
        return "excellent"
    if execution_time_ms < 5000:
        return "good"
    if execution_time_ms < 10000:
        return "fair"
    return "poor"


def analyze_query_performance(query: str, execution_time_ms: float, row_count: int) -> Dict[str, Any]:
    """Rule-of-thumb review of a query that already ran."""
    suggestions: List[str] = []

    if execution_time_ms > 10000:
        suggestions.append("Very slow query (>10s) - consider major optimization")
    elif execution_time_ms > 5000:
        suggestions.append("Slow query (>5s) - optimization recommended")
    elif execution_time_ms > 1000:
        suggestions.append("Moderate execution time - minor optimization could help")

    if row_count > 10000:
        suggestions.append("Large result set - consider adding LIMIT clause")

    q = (query or "").lower()
    if "select *" in q:
        suggestions.append("Avoid SELECT * - specify only needed columns")
    if "like %" in q or "like '%" in q:
        suggestions.append("Leading wildcard LIKE patterns are slow - consider full-text search")
    if "limit" not in q and row_count > 1000:
        suggestions.append("Consider adding LIMIT clause for large datasets")
    if "order by" in q and "limit" not in q:
        suggestions.append("ORDER BY without LIMIT can be expensive on large datasets")

    if "join" in q:
        complexity = "high"
    elif "group by" in q:
        complexity = "medium"
    else:
        complexity = "low"

    return {
        "performanceScore": _performance_score(execution_time_ms),
        "suggestions": suggestions,
        "metrics": {
            "executionTime": execution_time_ms,
            "rowCount": row_count,
            "estimatedComplexity": complexity,
        },
    }
