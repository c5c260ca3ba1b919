"""QueryLens orchestration.

Thin LLM routines around the query core:
- `run_query`: the capability handed to agents (validate -> execute -> charts + insights)
- `classify_intent`: is this message about data, and which business domains does it touch
- `run_analyst_agent`: tool-calling loop that runs SQL and reviews performance
- `create_report`: markdown report over an analysis, with chart markers and the chart data embedded

Every LLM-facing function takes an injected chat model; the default Gemini
client is built lazily so importing this module never needs credentials.
"""

from __future__ import annotations

import json
import logging
import os
import time
from dataclasses import dataclass
from datetime import date, datetime
from datetime import time as dt_time
from decimal import Decimal
from functools import lru_cache
from typing import Any, Dict, List, Literal, Optional, Sequence, Tuple, Union
from uuid import UUID

from dotenv import load_dotenv
from langchain_core.messages import AIMessage, BaseMessage, HumanMessage, SystemMessage, ToolMessage
from langchain_core.output_parsers import StrOutputParser
from langchain_core.prompts import ChatPromptTemplate
from langchain_core.tools import StructuredTool
from langchain_google_genai import ChatGoogleGenerativeAI
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from chart_stream import chart_markers_for, embed_chart_comment, find_chart_markers, resolve_chart_marker
from charts import ChartData, extract_charts
from executor import QueryExecutor, get_executor
from guardrails import ExecutionError
from infra import sql_preview
from insights import analyze_query_performance, generate_insights
from metrics import LLM_LATENCY_SECONDS

logger = logging.getLogger("querylens.agents")

load_dotenv()

# ------------------------------------------------------------
# LLM
# ------------------------------------------------------------
GEMINI_MODEL = os.getenv("GEMINI_MODEL", "gemini-2.5-flash")
ANALYST_MAX_STEPS = int(os.getenv("ANALYST_MAX_STEPS", "5"))


@lru_cache(maxsize=1)
def get_llm() -> ChatGoogleGenerativeAI:
    return ChatGoogleGenerativeAI(model=GEMINI_MODEL, temperature=0)


def _message_text(message: Any) -> str:
    """Plain text of a chat message (Gemini may return a list of content parts)."""
    content = getattr(message, "content", message)
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts = []
        for part in content:
            if isinstance(part, str):
                parts.append(part)
            elif isinstance(part, dict) and part.get("type") == "text":
                parts.append(str(part.get("text") or ""))
        return "".join(parts)
    return "" if content is None else str(content)


# ------------------------------------------------------------
# JSON-safe rows
# ------------------------------------------------------------
def json_safe(value: Any) -> Any:
    if value is None or isinstance(value, (bool, int, float, str)):
        return value
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, (datetime, date, dt_time)):
        return value.isoformat()
    if isinstance(value, (bytes, bytearray, memoryview)):
        return bytes(value).hex()
    if isinstance(value, UUID):
        return str(value)
    if isinstance(value, dict):
        return {str(k): json_safe(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [json_safe(v) for v in value]
    return str(value)


# ------------------------------------------------------------
# Exposed capability: run a query
# ------------------------------------------------------------
def run_query(sql: str, executor: Optional[QueryExecutor] = None) -> Dict[str, Any]:
    """Validate, execute and chart `sql`. Never raises for query failures.

    Success: {success, rowCount, executionTimeMs, rows, fields, chartData, insights, summary}
    Failure: {success: False, error, errorKind, suggestions}
    """
    runner = executor or get_executor()
    try:
        result = runner.execute(sql)
    except ExecutionError as exc:
        return {
            "success": False,
            "error": exc.message,
            "errorKind": exc.kind,
            "suggestions": list(exc.suggestions),
        }

    charts = extract_charts(result)
    return {
        "success": True,
        "rowCount": result.row_count,
        "executionTimeMs": result.execution_time_ms,
        "rows": [json_safe(r) for r in result.rows],
        "fields": result.fields,
        "chartData": [c.to_dict() for c in charts],
        "insights": generate_insights(result),
        "summary": f"Query executed successfully. {result.row_count} rows returned in {result.execution_time_ms}ms.",
    }


# ------------------------------------------------------------
# Intent classification
# ------------------------------------------------------------
DomainName = Literal[
    "finance", "sales", "marketing", "hr", "operations",
    "inventory", "customer-service", "analytics", "custom",
]


class BusinessDomain(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    domain: DomainName = Field(description="Business domain/workspace")
    relevance: float = Field(ge=0, le=1, description="Relevance score for this domain")
    workspace_type: Literal["system", "custom"] = Field(
        description="Type of workspace - system (predefined) or custom (user-defined)"
    )


class IntentResult(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    is_sql_related: bool = Field(
        description="Whether the user question is related to SQL, databases, or data queries"
    )
    confidence: float = Field(ge=0, le=1, description="Confidence score for the classification")
    business_domains: List[BusinessDomain] = Field(
        default_factory=list, description="Relevant business domains if SQL-related"
    )
    reasoning: str = Field(description="Brief explanation of the classification decision")

    def to_dict(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True)


def fallback_intent() -> IntentResult:
    return IntentResult(
        is_sql_related=False,
        confidence=0,
        business_domains=[],
        reasoning="Error occurred during intent classification",
    )


intent_prompt = ChatPromptTemplate.from_messages(
    [
        ("system",
         "You are an expert at classifying user questions and mapping them to business domains for SQL query assistance.\n\n"
         "Your task is to:\n"
         "1. Determine if the user's question is SQL-related (involves databases, tables, data exploration, data queries, analytics, reporting, etc.)\n"
         "2. If SQL-related, identify which business domains/workspaces are most relevant\n"
         "3. Classify workspaces as either \"system\" (predefined business areas) or \"custom\" (user-specific domains)\n\n"
         "Available business domains:\n"
         "- finance: Financial data, accounting, budgets, revenue, expenses\n"
         "- sales: Sales performance, leads, deals, customer acquisition\n"
         "- marketing: Campaigns, leads, conversion rates, marketing metrics\n"
         "- hr: Employee data, payroll, performance, recruitment\n"
         "- operations: Business processes, logistics, supply chain\n"
         "- inventory: Stock levels, product management, warehousing\n"
         "- customer-service: Support tickets, customer satisfaction, service metrics\n"
         "- analytics: General data analysis, reporting, dashboards\n"
         "- custom: User-specific or industry-specific domains not covered above\n\n"
         "Guidelines:\n"
         "- Mark as SQL-related if the question involves data retrieval, database queries, reporting, analytics, data analysis or table operations\n"
         "- Provide relevance scores (0-1) for each domain and a confidence score for the overall classification\n"
         "- Be concise but clear in reasoning"),
        ("human", "User Question: {message}"),
    ]
)


def classify_intent(message: str, llm: Any = None) -> IntentResult:
    """Structured intent for `message`. Any LLM failure yields the non-SQL default."""
    started = time.perf_counter()
    try:
        model = llm if llm is not None else get_llm()
        chain = intent_prompt | model.with_structured_output(IntentResult)
        intent = chain.invoke({"message": message})
        if not isinstance(intent, IntentResult):
            intent = IntentResult.model_validate(intent)
    except Exception:
        logger.exception("intent_classification_failed")
        return fallback_intent()
    finally:
        LLM_LATENCY_SECONDS.labels(agent="intent").observe(time.perf_counter() - started)

    logger.info(
        "intent_classified",
        extra={
            "is_sql_related": intent.is_sql_related,
            "confidence": intent.confidence,
            "domains": [d.domain for d in intent.business_domains],
        },
    )
    return intent


# ------------------------------------------------------------
# Analyst: tool trace
# ------------------------------------------------------------
@dataclass(frozen=True)
class ToolCall:
    id: str
    tool: str
    args: Dict[str, Any]


@dataclass(frozen=True)
class ToolResult:
    call_id: str
    tool: str
    output: Dict[str, Any]


@dataclass(frozen=True)
class ToolTrace:
    """Everything the analyst asked for and got back, in order."""

    calls: Tuple[ToolCall, ...] = ()
    results: Tuple[ToolResult, ...] = ()

    def extended(self, calls: Sequence[ToolCall], results: Sequence[ToolResult]) -> "ToolTrace":
        return ToolTrace(self.calls + tuple(calls), self.results + tuple(results))

    @property
    def chart_data(self) -> List[Dict[str, Any]]:
        charts: List[Dict[str, Any]] = []
        for r in self.results:
            if r.tool == "execute_sql_query" and r.output.get("success"):
                charts.extend(r.output.get("chartData") or [])
        return charts

    def summary(self) -> List[Dict[str, Any]]:
        """Compact per-call view for API responses and logs."""
        outputs = {r.call_id: r.output for r in self.results}
        out = []
        for c in self.calls:
            result = outputs.get(c.id, {})
            item: Dict[str, Any] = {"tool": c.tool, "args": json_safe(c.args)}
            if "success" in result:
                item["success"] = result["success"]
            if result.get("error"):
                item["error"] = str(result["error"])[:200]
            out.append(item)
        return out


@dataclass(frozen=True)
class AnalystOutcome:
    text: str
    trace: ToolTrace
    chart_data: List[Dict[str, Any]]


# ------------------------------------------------------------
# Analyst: tools
# ------------------------------------------------------------
class ExecuteSqlArgs(BaseModel):
    query: str = Field(description="The SQL SELECT query to execute")
    purpose: str = Field(description="Brief explanation of what this query is trying to accomplish")


class AnalyzePerformanceArgs(BaseModel):
    query: str = Field(description="The SQL query to analyze")
    executionTime: float = Field(description="Query execution time in milliseconds")
    rowCount: int = Field(description="Number of rows returned")


def build_analyst_tools(executor: Optional[QueryExecutor] = None) -> List[StructuredTool]:
    def execute_sql_query(query: str, purpose: str) -> Dict[str, Any]:
        logger.info("analyst_sql_requested", extra={"sql": sql_preview(query), "purpose": purpose})
        return run_query(query, executor=executor)

    def analyze_performance(query: str, executionTime: float, rowCount: int) -> Dict[str, Any]:  # noqa: N803
        return analyze_query_performance(query, executionTime, rowCount)

    return [
        StructuredTool.from_function(
            func=execute_sql_query,
            name="execute_sql_query",
            description="Execute a SQL query safely and return results with analysis",
            args_schema=ExecuteSqlArgs,
        ),
        StructuredTool.from_function(
            func=analyze_performance,
            name="analyze_query_performance",
            description="Analyze query performance and suggest optimizations",
            args_schema=AnalyzePerformanceArgs,
        ),
    ]


def _run_tool(tools: Dict[str, StructuredTool], call: ToolCall) -> Dict[str, Any]:
    tool = tools.get(call.tool)
    if tool is None:
        return {"success": False, "error": f"Unknown tool '{call.tool}'"}
    try:
        output = tool.invoke(call.args)
    except Exception as e:
        logger.warning("analyst_tool_failed", extra={"tool": call.tool, "error": str(e)})
        return {"success": False, "error": f"Tool '{call.tool}' failed: {e}"}
    return output if isinstance(output, dict) else {"result": output}


# ------------------------------------------------------------
# Analyst: prompt + loop
# ------------------------------------------------------------
def analyst_system_prompt(
    question: str,
    intent: IntentResult,
    table_schema: str,
    query_logs: str,
    collection_id: str,
) -> str:
    domains = ", ".join(f"{d.domain} ({round(d.relevance * 100)}% relevant)" for d in intent.business_domains)
    return (
        "You are an expert SQL analyst with deep database knowledge. Your role is to analyze database schemas, "
        "execute SQL queries safely, and provide meaningful insights from the results.\n\n"
        "## Your Task:\n"
        "1. Analyze the provided table schema and query logs\n"
        "2. Generate and execute SQL queries to answer the user's question\n"
        "3. Provide insights and recommendations based on the results\n"
        "4. Ensure all queries are safe and optimized\n\n"
        "## Available Information:\n"
        f"### Table Schema:\n{table_schema}\n\n"
        f"### Historical Query Logs:\n{query_logs}\n\n"
        "## Guidelines:\n"
        "- Only execute SELECT queries - no data modification allowed\n"
        "- Analyze query performance and suggest optimizations\n"
        "- Provide clear explanations of the results\n"
        "- Suggest alternative approaches when applicable\n"
        "- Use insights from historical queries to inform your analysis\n\n"
        "User's context:\n"
        f"- Question: \"{question}\"\n"
        f"- Business domains: {domains}\n"
        f"- Collection: {collection_id}\n\n"
        "You MUST use the execute_sql_query tool to run queries and analyze results. "
        "Always explain your approach and findings."
    )


_ROLE_MESSAGES = {"user": HumanMessage, "human": HumanMessage, "assistant": AIMessage, "ai": AIMessage, "system": SystemMessage}


def to_chat_messages(messages: Optional[List[Dict[str, Any]]]) -> List[BaseMessage]:
    """Frontend history ([{role, content}, ...]) -> LangChain messages. Unknown roles are dropped."""
    out: List[BaseMessage] = []
    for m in messages or []:
        if isinstance(m, BaseMessage):
            out.append(m)
            continue
        cls = _ROLE_MESSAGES.get(str(m.get("role", "")).lower())
        content = m.get("content")
        if cls is not None and isinstance(content, str):
            out.append(cls(content=content))
    return out


def run_analyst_agent(
    question: str,
    intent: IntentResult,
    messages: Optional[List[Dict[str, Any]]] = None,
    table_schema: str = "",
    query_logs: str = "",
    collection_id: str = "all",
    *,
    llm: Any = None,
    executor: Optional[QueryExecutor] = None,
    max_steps: int = ANALYST_MAX_STEPS,
) -> AnalystOutcome:
    """Let the model run SQL through the tools for at most `max_steps` turns.

    Returns the last model text, the accumulated tool trace and every chart
    produced by successful `execute_sql_query` calls (in call order).
    """
    tools = build_analyst_tools(executor)
    by_name = {t.name: t for t in tools}
    model = (llm if llm is not None else get_llm()).bind_tools(tools)

    history: List[BaseMessage] = [
        SystemMessage(content=analyst_system_prompt(question, intent, table_schema, query_logs, collection_id))
    ]
    history.extend(to_chat_messages(messages))
    if not history or not (isinstance(history[-1], HumanMessage) and history[-1].content == question):
        history.append(HumanMessage(content=question))

    trace = ToolTrace()
    text = ""
    for step in range(1, max_steps + 1):
        started = time.perf_counter()
        reply = model.invoke(history)
        LLM_LATENCY_SECONDS.labels(agent="analyst").observe(time.perf_counter() - started)
        history.append(reply)
        text = _message_text(reply)

        calls = [
            ToolCall(id=str(tc.get("id") or f"call-{step}-{i}"), tool=tc["name"], args=dict(tc.get("args") or {}))
            for i, tc in enumerate(getattr(reply, "tool_calls", None) or [])
        ]
        if not calls:
            break

        results = []
        for call in calls:
            output = _run_tool(by_name, call)
            results.append(ToolResult(call_id=call.id, tool=call.tool, output=output))
            history.append(ToolMessage(content=json.dumps(output, default=str), tool_call_id=call.id, name=call.tool))
        trace = trace.extended(calls, results)

        logger.info(
            "analyst_step_finished",
            extra={"step": step, "tool_calls": len(calls), "text_preview": text[:100]},
        )
    else:
        logger.warning("analyst_max_steps_reached", extra={"max_steps": max_steps})

    logger.info(
        "analyst_finished",
        extra={
            "tool_calls": len(trace.calls),
            "tool_results": len(trace.results),
            "tools": [c.tool for c in trace.calls],
        },
    )
    return AnalystOutcome(text=text, trace=trace, chart_data=trace.chart_data)


# ------------------------------------------------------------
# Non-data questions
# ------------------------------------------------------------
general_prompt = ChatPromptTemplate.from_messages(
    [
        ("system",
         "You are a friendly, concise assistant for a data analytics product. "
         "Answer the user's question directly. If they ask about their data, "
         "suggest rephrasing it as a question about specific tables or metrics."),
        ("placeholder", "{history}"),
        ("human", "{message}"),
    ]
)


def answer_general(message: str, messages: Optional[List[Dict[str, Any]]] = None, llm: Any = None) -> str:
    model = llm if llm is not None else get_llm()
    chain = general_prompt | model | StrOutputParser()
    started = time.perf_counter()
    try:
        return chain.invoke({"message": message, "history": to_chat_messages(messages)})
    finally:
        LLM_LATENCY_SECONDS.labels(agent="general").observe(time.perf_counter() - started)


# ------------------------------------------------------------
# Report
# ------------------------------------------------------------
report_prompt = ChatPromptTemplate.from_messages(
    [
        ("system",
         "You are creating a comprehensive SQL analysis document that presents the final results of a database analysis. "
         "Create a well-structured report with clear sections that showcases the important findings, query results and recommendations.\n\n"
         "## Chart Integration:\n"
         "Embed a chart by writing its marker on its own line, e.g. [chart:chart-data-0]. "
         "The index refers to the list of available charts below. Never invent markers.\n\n"
         "## Available Chart Data:\n{chart_catalog}\n\n"
         "## Document Structure:\n"
         "### 1. Executive Summary\n"
         "### 2. Database Schema Analysis\n"
         "### 3. Historical Query Patterns\n"
         "### 4. Query Execution Results\n"
         "### 5. Data Visualization\n"
         "### 6. Comprehensive Recommendations\n"
         "### 7. Technical Appendix\n\n"
         "## Formatting Requirements:\n"
         "- Use clear markdown headers (##, ###)\n"
         "- Put SQL in fenced code blocks\n"
         "- Use tables for structured data and bullet points for key insights\n"
         "- Highlight important findings with **bold** text\n\n"
         "## Analysis to Synthesize:\n{analysis}"),
        ("human",
         "Create a comprehensive SQL Analysis Report titled \"{title}\" answering: {question}\n\n"
         "Make it a professional, actionable report. Use the chart markers to illustrate key findings."),
    ]
)


@dataclass(frozen=True)
class Report:
    title: str
    content: str
    chart_data: List[Dict[str, Any]]
    markers: List[str]

    def to_dict(self) -> Dict[str, Any]:
        return {"title": self.title, "content": self.content, "chartData": self.chart_data, "markers": self.markers}


def chart_catalog(charts: Sequence[Dict[str, Any]]) -> str:
    if not charts:
        return "No chart data is available for this report; do not use chart markers."
    lines = []
    for i, (chart, marker) in enumerate(zip(charts, chart_markers_for(charts)), start=1):
        lines.append(
            f"{i}. {chart.get('title', 'Untitled')} ({chart.get('type', 'bar')} chart)\n"
            f"   - Description: {chart.get('description') or 'No description'}\n"
            f"   - Data points: {len(chart.get('data') or [])}\n"
            f"   - Use marker: {marker}"
        )
    return "\n".join(lines)


def _placed_markers(body: str, charts: Sequence[Dict[str, Any]]) -> List[str]:
    placed: List[str] = []
    for name in find_chart_markers(body):
        if name not in placed and resolve_chart_marker(name, charts) is not None:
            placed.append(name)
    return placed


def create_report(
    question: str,
    analysis: Union[str, AnalystOutcome],
    charts: Optional[Sequence[Union[ChartData, Dict[str, Any]]]] = None,
    llm: Any = None,
    title: Optional[str] = None,
) -> Report:
    """Markdown report over `analysis`.

    Charts default to the outcome's charts. When the model places none of the
    available markers, a Data Visualization section listing all of them is
    appended. The returned content carries the chart data as a trailing
    document comment so it can be stored and re-rendered later.
    """
    if isinstance(analysis, AnalystOutcome):
        text = analysis.text
        if charts is None:
            charts = analysis.chart_data
    else:
        text = analysis or ""
    chart_dicts = [c.to_dict() if isinstance(c, ChartData) else dict(c) for c in (charts or [])]
    title = (title or question).strip()

    model = llm if llm is not None else get_llm()
    chain = report_prompt | model | StrOutputParser()
    started = time.perf_counter()
    try:
        body = chain.invoke(
            {
                "title": title,
                "question": question,
                "analysis": text or "No analysis text was produced.",
                "chart_catalog": chart_catalog(chart_dicts),
            }
        )
    finally:
        LLM_LATENCY_SECONDS.labels(agent="report").observe(time.perf_counter() - started)

    placed = _placed_markers(body, chart_dicts)
    if chart_dicts and not placed:
        body = body.rstrip() + "\n\n## Data Visualization\n\n" + "\n\n".join(chart_markers_for(chart_dicts))
        placed = _placed_markers(body, chart_dicts)

    logger.info("report_created", extra={"title": title, "charts": len(chart_dicts), "markers": placed})
    return Report(title=title, content=embed_chart_comment(body, chart_dicts), chart_data=chart_dicts, markers=placed)
