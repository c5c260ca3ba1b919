import json
from uuid import uuid4

import pytest
from langchain_core.documents import Document
from langchain_core.embeddings import DeterministicFakeEmbedding

import retrieval
from agents import IntentResult
from retrieval import (
    build_vector_store,
    query_log_documents,
    search_text,
    split_table_blocks,
    suggest_query_logs,
    suggest_tables,
    table_block_metadata,
)

CATALOG = """
Table Name: accounts
Collection: finance
Columns: account_name (text), balance (numeric)

Table Name: deals
Collection: sales
Columns: deal_id (int), amount (numeric), closed_at (date)

Table Name: tickets
Columns: ticket_id (int), status (text)
"""


class FakeStore:
    def __init__(self, docs=None, error=None):
        self.docs = docs or []
        self.error = error
        self.calls = []

    def similarity_search(self, query, k=4, filter=None):
        self.calls.append({"query": query, "k": k, "filter": filter})
        if self.error:
            raise self.error
        return self.docs[:k]


@pytest.fixture
def sales_intent():
    return IntentResult(
        is_sql_related=True,
        confidence=0.8,
        business_domains=[
            {"domain": "finance", "relevance": 0.3, "workspace_type": "system"},
            {"domain": "sales", "relevance": 0.9, "workspace_type": "system"},
        ],
        reasoning="pipeline question",
    )


# ------------------------------------------------------------
# Catalog parsing
# ------------------------------------------------------------
def test_split_table_blocks():
    blocks = split_table_blocks(CATALOG)
    assert len(blocks) == 3
    assert blocks[0].startswith("Table Name: accounts")
    assert split_table_blocks("  ") == []


def test_table_block_metadata():
    blocks = split_table_blocks(CATALOG)
    assert table_block_metadata(blocks[1]) == {"table_name": "deals", "collection_id": "sales"}
    assert table_block_metadata(blocks[2]) == {"table_name": "tickets", "collection_id": "default"}


def test_query_log_documents_skip_entries_without_sql():
    texts, metadatas = query_log_documents(
        [
            {"query_text": "Monthly revenue", "sql_query": "SELECT 1", "query_type": "select", "semantic_category": "revenue"},
            {"query_text": "no sql here"},
            "junk",
        ]
    )
    assert texts == ["Monthly revenue"]
    assert metadatas == [
        {"sql_query": "SELECT 1", "query_type": "SELECT", "category": "revenue", "collection_id": "default"}
    ]


def test_search_text_lists_domains_by_relevance(sales_intent):
    assert search_text("Deals this month?", sales_intent) == "Deals this month?\nBusiness domains: sales, finance"
    assert search_text("Deals this month?", None) == "Deals this month?"


# ------------------------------------------------------------
# Table suggestions
# ------------------------------------------------------------
def test_suggest_tables_without_store(sales_intent):
    assert suggest_tables("Deals this month?", sales_intent, None) == ""


def test_suggest_tables_joins_unique_blocks(sales_intent):
    deals = Document(page_content="Table Name: deals\nColumns: amount", metadata={"table_name": "deals"})
    accounts = Document(page_content="Table Name: accounts\nColumns: balance", metadata={"table_name": "accounts"})
    store = FakeStore([deals, deals, accounts])

    out = suggest_tables("Deals this month?", sales_intent, store, k=5)

    assert out == "Table Name: deals\nColumns: amount\n\nTable Name: accounts\nColumns: balance"
    assert store.calls == [{"query": "Deals this month?\nBusiness domains: sales, finance", "k": 5, "filter": None}]


def test_suggest_tables_filters_by_collection(sales_intent):
    store = FakeStore()
    suggest_tables("Deals?", sales_intent, store, collection_id="sales")
    suggest_tables("Deals?", sales_intent, store, collection_id="all")
    assert store.calls[0]["filter"] == {"collection_id": "sales"}
    assert store.calls[1]["filter"] is None


def test_suggest_tables_search_failure_is_empty(sales_intent):
    store = FakeStore(error=RuntimeError("embedding quota exceeded"))
    assert suggest_tables("Deals?", sales_intent, store) == ""


# ------------------------------------------------------------
# Query-log suggestions
# ------------------------------------------------------------
def test_suggest_query_logs_formats_sql(sales_intent):
    docs = [
        Document(page_content="Revenue by month", metadata={"sql_query": "SELECT month, SUM(amount) FROM deals GROUP BY month"}),
        Document(page_content="Missing sql", metadata={}),
    ]
    out = suggest_query_logs("Revenue trend?", sales_intent, FakeStore(docs))
    assert out == "-- Revenue by month\nSELECT month, SUM(amount) FROM deals GROUP BY month"


def test_suggest_query_logs_combines_filters(sales_intent):
    store = FakeStore()
    suggest_query_logs("Revenue?", sales_intent, store, collection_id="sales", query_type="select", category="revenue")
    assert store.calls[0]["filter"] == {
        "$and": [{"collection_id": "sales"}, {"query_type": "SELECT"}, {"category": "revenue"}]
    }


# ------------------------------------------------------------
# Chroma
# ------------------------------------------------------------
def test_chroma_store_scopes_tables_to_a_collection(sales_intent):
    blocks = split_table_blocks(CATALOG)
    store = build_vector_store(
        f"test_schema_{uuid4().hex[:8]}",
        blocks,
        [table_block_metadata(b) for b in blocks],
        embeddings=DeterministicFakeEmbedding(size=16),
    )
    out = suggest_tables("Which deals closed?", sales_intent, store, k=3, collection_id="sales")
    assert out.startswith("Table Name: deals")
    assert "accounts" not in out


def test_query_log_store_from_file(tmp_path, monkeypatch):
    path = tmp_path / "logs.json"
    path.write_text(json.dumps([{"query_text": "Top accounts", "sql_query": "SELECT * FROM accounts LIMIT 5"}]))
    built = {}

    def fake_build(name, texts, metadatas=None, **kwargs):
        built.update(name=name, texts=list(texts), metadatas=metadatas)
        return FakeStore()

    monkeypatch.setattr(retrieval, "QUERY_LOGS_PATH", str(path))
    monkeypatch.setattr(retrieval, "build_vector_store", fake_build)
    retrieval.get_query_log_store.cache_clear()
    try:
        assert isinstance(retrieval.get_query_log_store(), FakeStore)
    finally:
        retrieval.get_query_log_store.cache_clear()
    assert built["texts"] == ["Top accounts"]
    assert built["metadatas"][0]["sql_query"] == "SELECT * FROM accounts LIMIT 5"


def test_missing_catalog_means_no_store(tmp_path, monkeypatch):
    monkeypatch.setattr(retrieval, "SCHEMA_CATALOG_PATH", str(tmp_path / "missing.txt"))
    retrieval.get_schema_store.cache_clear()
    try:
        assert retrieval.get_schema_store() is None
    finally:
        retrieval.get_schema_store.cache_clear()
