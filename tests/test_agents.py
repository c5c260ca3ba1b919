from datetime import date
from decimal import Decimal

import pytest
from langchain_core.messages import AIMessage, HumanMessage, SystemMessage, ToolMessage
from langchain_core.runnables import RunnableLambda

import agents
from agents import (
    AnalystOutcome,
    IntentResult,
    Report,
    ToolCall,
    ToolResult,
    ToolTrace,
    answer_general,
    chart_catalog,
    classify_intent,
    create_report,
    fallback_intent,
    json_safe,
    run_analyst_agent,
    run_query,
    to_chat_messages,
)
from chart_stream import extract_chart_comment
from guardrails import TROUBLESHOOTING_SUGGESTIONS


# ------------------------------------------------------------
# Stub chat models
# ------------------------------------------------------------
class StructuredStub:
    def __init__(self, result):
        self.result = result
        self.schema = None

    def with_structured_output(self, schema):
        self.schema = schema

        def _run(_prompt_value):
            if isinstance(self.result, Exception):
                raise self.result
            return self.result

        return RunnableLambda(_run)


class ScriptedLLM:
    """Replays canned AI messages; the last one repeats forever."""

    def __init__(self, replies):
        self.replies = list(replies)
        self.seen = []
        self.bound = None

    def bind_tools(self, tools):
        self.bound = [t.name for t in tools]
        return self

    def invoke(self, messages):
        self.seen.append(list(messages))
        if len(self.replies) > 1:
            return self.replies.pop(0)
        return self.replies[0]


def _tool_call(name, args, call_id):
    return AIMessage(content="", tool_calls=[{"name": name, "args": args, "id": call_id}])


@pytest.fixture
def finance_intent():
    return IntentResult(
        is_sql_related=True,
        confidence=0.9,
        business_domains=[{"domain": "finance", "relevance": 0.8, "workspace_type": "system"}],
        reasoning="asks about balances",
    )


# ------------------------------------------------------------
# run_query
# ------------------------------------------------------------
def test_run_query_success(sqlite_executor):
    out = run_query("SELECT account_name, balance FROM accounts", executor=sqlite_executor)
    assert out["success"] is True
    assert out["rowCount"] == 3
    assert out["fields"] == [{"name": "account_name"}, {"name": "balance"}]
    assert len(out["chartData"]) == 1
    assert out["chartData"][0]["xAxis"] == "account_name"
    assert out["insights"][0].startswith("Query returned 3 rows in ")
    assert out["summary"].startswith("Query executed successfully. 3 rows returned in ")


def test_run_query_rejects_with_reason(sqlite_executor):
    out = run_query("SELECT * FROM accounts; DROP TABLE accounts", executor=sqlite_executor)
    assert out["success"] is False
    assert out["errorKind"] == "validation"
    assert out["error"] == "Dangerous keyword 'drop' is not allowed"


def test_run_query_driver_error_suggestions(sqlite_executor):
    out = run_query("SELECT * FROM nope", executor=sqlite_executor)
    assert out["success"] is False
    assert out["errorKind"] == "driver"
    assert out["error"].startswith("Query execution failed: ")
    assert out["suggestions"] == list(TROUBLESHOOTING_SUGGESTIONS)


def test_run_query_uses_process_executor(monkeypatch, sqlite_executor):
    monkeypatch.setattr(agents, "get_executor", lambda: sqlite_executor)
    out = run_query("SELECT COUNT(*) AS n FROM accounts")
    assert out["rows"] == [{"n": 3}]


def test_json_safe():
    row = {"d": date(2024, 1, 2), "amount": Decimal("2.50"), "raw": b"\x01", "tags": ("a", 1)}
    assert json_safe(row) == {"d": "2024-01-02", "amount": 2.5, "raw": "01", "tags": ["a", 1]}


# ------------------------------------------------------------
# Intent
# ------------------------------------------------------------
def test_classify_intent(finance_intent):
    stub = StructuredStub(finance_intent)
    intent = classify_intent("Which accounts have the highest balance?", llm=stub)
    assert stub.schema is IntentResult
    assert intent.is_sql_related is True
    assert intent.business_domains[0].domain == "finance"


def test_classify_intent_accepts_camel_case_dict():
    stub = StructuredStub(
        {
            "isSqlRelated": True,
            "confidence": 0.7,
            "businessDomains": [{"domain": "sales", "relevance": 0.6, "workspaceType": "system"}],
            "reasoning": "pipeline question",
        }
    )
    intent = classify_intent("How many deals closed last month?", llm=stub)
    assert intent.business_domains[0].workspace_type == "system"
    assert intent.to_dict()["businessDomains"][0]["workspaceType"] == "system"


def test_classify_intent_falls_back_on_error():
    intent = classify_intent("hello", llm=StructuredStub(RuntimeError("quota exceeded")))
    assert intent == fallback_intent()
    assert intent.to_dict() == {
        "isSqlRelated": False,
        "confidence": 0,
        "businessDomains": [],
        "reasoning": "Error occurred during intent classification",
    }


def test_classify_intent_falls_back_on_bad_output():
    intent = classify_intent("hello", llm=StructuredStub({"confidence": 3}))
    assert intent.reasoning == "Error occurred during intent classification"


# ------------------------------------------------------------
# Analyst
# ------------------------------------------------------------
def test_tool_trace_is_immutable():
    empty = ToolTrace()
    call = ToolCall(id="c1", tool="execute_sql_query", args={"query": "select 1"})
    result = ToolResult(call_id="c1", tool="execute_sql_query", output={"success": True, "chartData": [{"type": "bar"}]})
    trace = empty.extended([call], [result])
    assert empty.calls == () and empty.results == ()
    assert trace.calls == (call,)
    assert trace.chart_data == [{"type": "bar"}]
    assert trace.summary() == [{"tool": "execute_sql_query", "args": {"query": "select 1"}, "success": True}]


def test_analyst_runs_tools_and_collects_charts(sqlite_executor, finance_intent):
    sql = "SELECT account_name, balance FROM accounts"
    llm = ScriptedLLM(
        [
            _tool_call("execute_sql_query", {"query": sql, "purpose": "balances"}, "c1"),
            _tool_call("analyze_query_performance", {"query": sql, "executionTime": 12, "rowCount": 3}, "c2"),
            AIMessage(content="Acme holds the largest balance."),
        ]
    )
    outcome = run_analyst_agent(
        "Who has the largest balance?",
        finance_intent,
        table_schema="accounts(account_name text, balance numeric)",
        llm=llm,
        executor=sqlite_executor,
    )

    assert isinstance(outcome, AnalystOutcome)
    assert llm.bound == ["execute_sql_query", "analyze_query_performance"]
    assert outcome.text == "Acme holds the largest balance."
    assert [c.tool for c in outcome.trace.calls] == ["execute_sql_query", "analyze_query_performance"]
    assert outcome.trace.results[0].output["success"] is True
    assert outcome.trace.results[1].output["performanceScore"] == "excellent"
    assert len(outcome.chart_data) == 1
    assert outcome.chart_data[0]["yAxis"] == "balance"

    first_turn = llm.seen[0]
    assert isinstance(first_turn[0], SystemMessage)
    assert "finance (80% relevant)" in first_turn[0].content
    assert "accounts(account_name text, balance numeric)" in first_turn[0].content
    assert isinstance(first_turn[-1], HumanMessage)

    second_turn = llm.seen[1]
    assert isinstance(second_turn[-1], ToolMessage)
    assert second_turn[-1].tool_call_id == "c1"


def test_analyst_reports_failed_queries(sqlite_executor, finance_intent):
    llm = ScriptedLLM(
        [
            _tool_call("execute_sql_query", {"query": "DELETE FROM accounts", "purpose": "oops"}, "c1"),
            AIMessage(content="I can only read data."),
        ]
    )
    outcome = run_analyst_agent("Clean up accounts", finance_intent, llm=llm, executor=sqlite_executor)
    assert outcome.trace.results[0].output["success"] is False
    assert outcome.trace.results[0].output["error"] == "Only SELECT queries are allowed"
    assert outcome.chart_data == []
    assert outcome.trace.summary()[0]["error"] == "Only SELECT queries are allowed"


def test_analyst_stops_after_max_steps(sqlite_executor, finance_intent):
    llm = ScriptedLLM([_tool_call("execute_sql_query", {"query": "SELECT 1 AS one", "purpose": "loop"}, "c")])
    outcome = run_analyst_agent("loop", finance_intent, llm=llm, executor=sqlite_executor, max_steps=3)
    assert len(llm.seen) == 3
    assert len(outcome.trace.calls) == 3


def test_analyst_unknown_tool(sqlite_executor, finance_intent):
    llm = ScriptedLLM([_tool_call("drop_everything", {}, "c1"), AIMessage(content="done")])
    outcome = run_analyst_agent("?", finance_intent, llm=llm, executor=sqlite_executor)
    assert outcome.trace.results[0].output == {"success": False, "error": "Unknown tool 'drop_everything'"}


def test_history_is_converted_and_question_not_duplicated(sqlite_executor, finance_intent):
    llm = ScriptedLLM([AIMessage(content="ok")])
    history = [
        {"role": "user", "content": "hi"},
        {"role": "assistant", "content": "hello"},
        {"role": "tool", "content": "ignored"},
        {"role": "user", "content": "Top accounts?"},
    ]
    run_analyst_agent("Top accounts?", finance_intent, history, llm=llm, executor=sqlite_executor)
    sent = llm.seen[0]
    assert [type(m) for m in sent] == [SystemMessage, HumanMessage, AIMessage, HumanMessage]


def test_to_chat_messages_drops_unknown_roles():
    out = to_chat_messages([{"role": "system", "content": "s"}, {"role": "bot", "content": "x"}, {"role": "user"}])
    assert len(out) == 1 and isinstance(out[0], SystemMessage)


def test_answer_general():
    model = RunnableLambda(lambda _prompt: AIMessage(content="Hello! Ask me about your data."))
    assert answer_general("hi", llm=model) == "Hello! Ask me about your data."


# ------------------------------------------------------------
# Report
# ------------------------------------------------------------
BALANCE_CHART = {
    "type": "bar",
    "title": "balance by account_name",
    "data": [{"label": "Acme", "value": 1200.5}, {"label": "Globex", "value": 830.0}],
    "xAxis": "account_name",
    "yAxis": "balance",
}


class PromptRecorder:
    """Chat model stub that remembers the rendered prompt and replies with fixed markdown."""

    def __init__(self, reply):
        self.reply = reply
        self.prompt = None
        self.runnable = RunnableLambda(self._run)

    def _run(self, prompt_value):
        self.prompt = prompt_value.to_string()
        return AIMessage(content=self.reply)


def test_chart_catalog_lists_markers():
    catalog = chart_catalog([BALANCE_CHART])
    assert "1. balance by account_name (bar chart)" in catalog
    assert "Data points: 2" in catalog
    assert "Use marker: [chart:chart-data-0]" in catalog
    assert "do not use chart markers" in chart_catalog([])


def test_create_report_keeps_placed_markers():
    recorder = PromptRecorder("# Balances\n\n## Data Visualization\n\n[chart:chart-data-0]\n\n[chart:chart-data-7]")
    outcome = AnalystOutcome(text="Acme holds the largest balance.", trace=ToolTrace(), chart_data=[BALANCE_CHART])

    report = create_report("Who has the largest balance?", outcome, llm=recorder.runnable)

    assert isinstance(report, Report)
    assert report.title == "Who has the largest balance?"
    assert report.markers == ["chart-data-0"]
    assert "Acme holds the largest balance." in recorder.prompt
    assert "Use marker: [chart:chart-data-0]" in recorder.prompt
    assert 'titled "Who has the largest balance?"' in recorder.prompt

    charts, body = extract_chart_comment(report.content)
    assert [c.to_dict() for c in charts] == [BALANCE_CHART]
    assert body.startswith("# Balances")
    assert report.to_dict()["chartData"] == [BALANCE_CHART]


def test_create_report_appends_markers_the_model_left_out():
    recorder = PromptRecorder("# Balances\n\nAcme leads.")
    report = create_report("Balances?", "Acme leads.", charts=[BALANCE_CHART, BALANCE_CHART], llm=recorder.runnable)

    assert report.markers == ["chart-data-0", "chart-data-1"]
    _, body = extract_chart_comment(report.content)
    assert body.endswith("## Data Visualization\n\n[chart:chart-data-0]\n\n[chart:chart-data-1]")


def test_create_report_without_charts_is_plain_markdown():
    recorder = PromptRecorder("# Nothing to chart")
    report = create_report("Anything?", "", llm=recorder.runnable, title="Empty run")
    assert report.title == "Empty run"
    assert report.content == "# Nothing to chart"
    assert report.markers == []
    assert "No analysis text was produced." in recorder.prompt
