from __future__ import annotations

import os
from typing import Dict

from prometheus_client import Counter, Histogram

# Labels kept small to avoid cardinality explosions
API_REQUESTS_TOTAL = Counter(
    "querylens_api_requests_total",
    "Total API requests",
    ["path", "method", "status"],
)

API_LATENCY_SECONDS = Histogram(
    "querylens_api_latency_seconds",
    "API request latency (seconds)",
    ["path"],
    buckets=(0.05, 0.1, 0.25, 0.5, 1, 2, 3, 5, 8, 13, 21, 34),
)

QUERY_EXECUTIONS_TOTAL = Counter(
    "querylens_query_executions_total",
    "SQL executions by outcome",
    ["status"],  # ok | rejected | config_error | timeout | driver_error
)

DB_LATENCY_SECONDS = Histogram(
    "querylens_db_latency_seconds",
    "Database execution latency of successful queries (seconds)",
    buckets=(0.01, 0.02, 0.05, 0.1, 0.2, 0.35, 0.5, 0.8, 1.3, 2.1, 3.4, 5.5, 8.9, 14.4, 30),
)

CHARTS_EXTRACTED_TOTAL = Counter(
    "querylens_charts_extracted_total",
    "Charts inferred from query results",
    ["type"],
)

LLM_LATENCY_SECONDS = Histogram(
    "querylens_llm_latency_seconds",
    "LLM call latency (seconds)",
    ["agent"],  # intent | analyst | general | report
    buckets=(0.05, 0.1, 0.25, 0.5, 1, 2, 3, 5, 8, 13, 21),
)

RETRIEVAL_LATENCY_SECONDS = Histogram(
    "querylens_retrieval_latency_seconds",
    "Vector store search latency (seconds)",
    ["store"],  # tables | query_logs
    buckets=(0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1, 2, 5),
)


def env_flags() -> Dict[str, str]:
    return {
        "database_configured": "1" if (os.getenv("POSTGRES_URL") or os.getenv("DATABASE_URL")) else "0",
        "rate_limit_storage": "redis" if (os.getenv("RATE_LIMIT_STORAGE_URI") or os.getenv("REDIS_URL")) else "memory",
        "rate_limit_enabled": os.getenv("RATELIMIT_ENABLED", "1"),
        "schema_catalog": "1" if os.getenv("SCHEMA_CATALOG_PATH") else "0",
        "query_log_catalog": "1" if os.getenv("QUERY_LOGS_PATH") else "0",
    }
