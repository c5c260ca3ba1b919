from __future__ import annotations

import os
import re
import time
from typing import Any, Dict, List
from uuid import uuid4

from dotenv import load_dotenv
from flask import Flask, g, jsonify, request
from flask_cors import CORS
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from agents import answer_general, classify_intent, create_report, json_safe, run_analyst_agent, run_query
from chart_stream import compose_answer, extract_chart_block, extract_chart_comment, find_chart_markers, resolve_chart_marker
from charts import extract_charts
from guardrails import validate_query
from infra import configure_logging
from metrics import API_LATENCY_SECONDS, API_REQUESTS_TOTAL, env_flags
from retrieval import get_query_log_store, get_schema_store, suggest_query_logs, suggest_tables

load_dotenv()

# ------------------------------------------------------------
# App
# ------------------------------------------------------------
app = Flask(__name__)
app.config["MAX_CONTENT_LENGTH"] = int(os.getenv("MAX_CONTENT_LENGTH", "262144"))  # 256 KB
app.config["RATELIMIT_ENABLED"] = os.getenv("RATELIMIT_ENABLED", "1") == "1"
log = configure_logging()

MAX_SQL_CHARS = int(os.getenv("MAX_SQL_CHARS", "20000"))
MAX_CHART_ROWS = int(os.getenv("MAX_CHART_ROWS", "5000"))
MAX_HISTORY_MESSAGES = int(os.getenv("MAX_HISTORY_MESSAGES", "30"))
MAX_REPORT_CHARS = int(os.getenv("MAX_REPORT_CHARS", "200000"))

# ------------------------------------------------------------
# CORS (restrict in production)
# ------------------------------------------------------------
origins = os.getenv("CORS_ORIGINS", "http://localhost:3000,http://127.0.0.1:3000").split(",")
CORS(app, resources={r"/*": {"origins": [o.strip() for o in origins]}})

# ------------------------------------------------------------
# Rate limiting
# ------------------------------------------------------------
storage_uri = os.getenv("RATE_LIMIT_STORAGE_URI") or os.getenv("REDIS_URL")

limiter = Limiter(
    get_remote_address,
    app=app,
    default_limits=["30 per minute"],
    storage_uri=storage_uri or "memory://",
)


def _safe_error(msg: str) -> str:
    """Best-effort redaction for user-facing errors."""
    msg = msg or "Request failed"
    msg = re.sub(r"(postgres(?:ql)?(?:\+\w+)?://)([^:@\s]+):([^@\s]+)@", r"\1***:***@", msg, flags=re.IGNORECASE)
    msg = re.sub(r"password=\S+", "password=***", msg, flags=re.IGNORECASE)
    msg = re.sub(r"AIza[0-9A-Za-z\-_]{20,}", "AIza***REDACTED***", msg)
    return msg


def _body() -> Dict[str, Any]:
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else {}


# ------------------------------------------------------------
# Request lifecycle: request id + security headers + structured logs + metrics
# ------------------------------------------------------------
@app.before_request
def _before_request():
    g.request_id = (request.headers.get("X-Request-ID") or str(uuid4())).strip()
    g.start_time = time.time()


@app.after_request
def _after_request(resp):
    # Security headers
    resp.headers["X-Request-ID"] = getattr(g, "request_id", "")
    resp.headers["X-Content-Type-Options"] = "nosniff"
    resp.headers["X-Frame-Options"] = "DENY"
    resp.headers["Referrer-Policy"] = "no-referrer"
    resp.headers["Permissions-Policy"] = "geolocation=(), microphone=(), camera=()"

    latency_s = max(0.0, time.time() - getattr(g, "start_time", time.time()))

    # Metrics
    API_REQUESTS_TOTAL.labels(path=request.path, method=request.method, status=str(resp.status_code)).inc()
    API_LATENCY_SECONDS.labels(path=request.path).observe(latency_s)

    # Structured log line
    log.info(
        "request",
        extra={
            "request_id": getattr(g, "request_id", ""),
            "path": request.path,
            "method": request.method,
            "status": resp.status_code,
            "latency_ms": int(latency_s * 1000),
        },
    )
    return resp


# ------------------------------------------------------------
# Service endpoints
# ------------------------------------------------------------
@app.route("/", methods=["GET"])
@limiter.exempt
def home():
    return jsonify(
        {
            "name": "QueryLens",
            "status": "running",
            "usage": {
                "POST /validate": {"sql": "SELECT * FROM accounts"},
                "POST /query": {"sql": "SELECT account_name, balance FROM accounts LIMIT 10"},
                "POST /charts": {"rows": [{"month": "Jan", "revenue": 120}]},
                "POST /chat": {"message": "Which accounts have the highest balance?"},
                "POST /report": {"question": "Which accounts have the highest balance?", "answer": "</chat answer>"},
                "POST /report/parse": {"content": "<report content>"},
            },
            "features": env_flags(),
        }
    )


@app.route("/health", methods=["GET"])
@limiter.exempt
def health():
    return jsonify({"status": "ok"})


@app.route("/metrics", methods=["GET"])
@limiter.exempt
def metrics():
    return generate_latest(), 200, {"Content-Type": CONTENT_TYPE_LATEST}


# ------------------------------------------------------------
# Query core
# ------------------------------------------------------------
def _sql_from_body(data: Dict[str, Any]):
    sql = data.get("sql")
    if not isinstance(sql, str) or not sql.strip():
        return None, (jsonify({"error": "Missing 'sql' in the request body"}), 400)
    if len(sql) > MAX_SQL_CHARS:
        return None, (jsonify({"error": "sql too large"}), 400)
    return sql, None


@app.route("/validate", methods=["POST"])
def validate():
    sql, err = _sql_from_body(_body())
    if err:
        return err
    return jsonify(validate_query(sql).to_dict())


@app.route("/query", methods=["POST"])
@limiter.limit("12 per minute; 300 per day")
def query():
    sql, err = _sql_from_body(_body())
    if err:
        return err
    try:
        payload = run_query(sql)
        if not payload["success"]:
            payload["error"] = _safe_error(payload["error"])
        return jsonify(payload)
    except Exception as e:
        log.exception("query_failed", extra={"request_id": getattr(g, "request_id", "")})
        return jsonify({"success": False, "error": _safe_error(str(e))}), 500


@app.route("/charts", methods=["POST"])
def charts():
    rows = _body().get("rows")
    if not isinstance(rows, list):
        return jsonify({"error": "'rows' must be a list of objects"}), 400
    if len(rows) > MAX_CHART_ROWS:
        return jsonify({"error": f"Too many rows (max {MAX_CHART_ROWS})"}), 400
    return jsonify({"chartData": [c.to_dict() for c in extract_charts(rows)]})


# ------------------------------------------------------------
# Chat
# ------------------------------------------------------------
@app.route("/chat", methods=["POST"])
@limiter.limit("6 per minute; 100 per day")
def chat():
    try:
        data = _body()
        message = (data.get("message") or "").strip() if isinstance(data.get("message"), str) else ""
        if not message:
            return jsonify({"error": "Missing 'message' in the request body"}), 400

        raw_history = data.get("messages")
        history: List[Dict[str, Any]] = []
        if isinstance(raw_history, list):
            history = [m for m in raw_history if isinstance(m, dict)][-MAX_HISTORY_MESSAGES:]

        intent = classify_intent(message)

        if not intent.is_sql_related:
            answer = answer_general(message, history)
            return jsonify({"intent": intent.to_dict(), "answer": answer, "chartData": [], "toolCalls": []})

        collection_id = str(data.get("collection_id") or "all")
        table_schema = str(data.get("table_schema") or "") or suggest_tables(
            message, intent, get_schema_store(), collection_id=collection_id
        )
        query_logs = str(data.get("query_logs") or "") or suggest_query_logs(
            message, intent, get_query_log_store(), collection_id=collection_id
        )

        outcome = run_analyst_agent(
            message,
            intent,
            history,
            table_schema=table_schema,
            query_logs=query_logs,
            collection_id=collection_id,
        )
        payload: Dict[str, Any] = {
            "intent": intent.to_dict(),
            "answer": compose_answer(outcome.text, outcome.chart_data),
            "chartData": outcome.chart_data,
            "toolCalls": json_safe(outcome.trace.summary()),
        }
        if data.get("report") is True:
            payload["report"] = create_report(message, outcome).to_dict()
        return jsonify(payload)

    except Exception as e:
        log.exception("chat_failed", extra={"request_id": getattr(g, "request_id", "")})
        return jsonify({"error": _safe_error(str(e))}), 500


# ------------------------------------------------------------
# Reports
# ------------------------------------------------------------
@app.route("/report", methods=["POST"])
@limiter.limit("6 per minute; 100 per day")
def report():
    data = _body()
    question = data.get("question").strip() if isinstance(data.get("question"), str) else ""
    answer = data.get("answer") if isinstance(data.get("answer"), str) else ""
    if not question or not answer.strip():
        return jsonify({"error": "'question' and 'answer' are required"}), 400
    if len(answer) > MAX_REPORT_CHARS:
        return jsonify({"error": "answer too large"}), 400

    try:
        charts, narrative = extract_chart_block(answer)
    except ValueError:
        return jsonify({"error": "Invalid chart data in 'answer'"}), 400

    try:
        title = data.get("title") if isinstance(data.get("title"), str) else None
        result = create_report(question, narrative.strip(), [c.to_dict() for c in charts], title=title)
        return jsonify(result.to_dict())
    except Exception as e:
        log.exception("report_failed", extra={"request_id": getattr(g, "request_id", "")})
        return jsonify({"error": _safe_error(str(e))}), 500


@app.route("/report/parse", methods=["POST"])
def report_parse():
    """Split stored report content into its markdown body and the charts its markers point at."""
    content = _body().get("content")
    if not isinstance(content, str):
        return jsonify({"error": "Missing 'content' in the request body"}), 400
    if len(content) > MAX_REPORT_CHARS:
        return jsonify({"error": "content too large"}), 400

    try:
        charts, body = extract_chart_comment(content)
    except ValueError:
        return jsonify({"error": "Invalid chart data in 'content'"}), 400

    placements = []
    for name in find_chart_markers(body):
        chart = resolve_chart_marker(name, charts)
        placements.append({"marker": name, "chart": chart.to_dict() if chart else None})
    return jsonify({"content": body, "chartData": [c.to_dict() for c in charts], "placements": placements})


if __name__ == "__main__":
    app.run(host="0.0.0.0", port=int(os.getenv("PORT", "5000")), debug=os.getenv("FLASK_DEBUG", "0") == "1")
