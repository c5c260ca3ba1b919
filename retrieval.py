"""Schema and query-log retrieval for the analyst.

Table descriptions and past queries are embedded with Gemini into Chroma
collections. Both searches are advisory: with no store configured, or when a
search fails, the analyst simply gets an empty section.

Catalog files (both optional):
- SCHEMA_CATALOG_PATH: text made of ``Table Name: ...`` blocks; a block may carry
  a ``Collection: <id>`` line to scope it to one collection.
- QUERY_LOGS_PATH: JSON list of ``{query_text, sql_query, query_type?,
  semantic_category?, collection_id?}`` objects.
"""

from __future__ import annotations

import json
import logging
import os
import re
import time
from functools import lru_cache
from typing import Any, Dict, Iterable, List, Optional

from dotenv import load_dotenv
from langchain_chroma import Chroma
from langchain_google_genai import GoogleGenerativeAIEmbeddings

from agents import IntentResult
from metrics import RETRIEVAL_LATENCY_SECONDS

logger = logging.getLogger("querylens.retrieval")

load_dotenv()

EMBEDDING_MODEL = os.getenv("EMBEDDING_MODEL", "models/gemini-embedding-001")
SCHEMA_RAG_K = int(os.getenv("SCHEMA_RAG_K", "8"))
QUERY_LOG_K = int(os.getenv("QUERY_LOG_K", "5"))
SCHEMA_CATALOG_PATH = os.getenv("SCHEMA_CATALOG_PATH", "")
QUERY_LOGS_PATH = os.getenv("QUERY_LOGS_PATH", "")
VECTOR_PERSIST_DIR = os.getenv("VECTOR_PERSIST_DIR") or None

DEFAULT_COLLECTION = "default"

_TABLE_NAME = re.compile(r"^Table Name:\s*(\S+)", re.MULTILINE)
_COLLECTION = re.compile(r"^Collection:\s*(\S+)", re.MULTILINE)


@lru_cache(maxsize=1)
def get_embeddings() -> GoogleGenerativeAIEmbeddings:
    return GoogleGenerativeAIEmbeddings(model=EMBEDDING_MODEL, task_type="retrieval_query")


def build_vector_store(
    collection_name: str,
    texts: Iterable[str],
    metadatas: Optional[List[Dict[str, Any]]] = None,
    *,
    embeddings: Any = None,
    persist_directory: Optional[str] = None,
) -> Chroma:
    vs = Chroma(
        collection_name=collection_name,
        embedding_function=embeddings if embeddings is not None else get_embeddings(),
        persist_directory=persist_directory,
    )
    texts = list(texts)
    if texts:
        vs.add_texts(texts=texts, metadatas=metadatas)
    return vs


# ------------------------------------------------------------
# Catalog loading
# ------------------------------------------------------------
def split_table_blocks(table_details: str) -> List[str]:
    """Split 'Table Name:' blocks into list strings."""
    td = (table_details or "").strip()
    if not td:
        return []
    parts = re.split(r"(?=Table Name:)", td)
    return [p.strip() for p in parts if p.strip()]


def table_block_metadata(block: str) -> Dict[str, Any]:
    name = _TABLE_NAME.search(block)
    collection = _COLLECTION.search(block)
    return {
        "table_name": name.group(1) if name else "",
        "collection_id": collection.group(1) if collection else DEFAULT_COLLECTION,
    }


def query_log_documents(entries: Iterable[Dict[str, Any]]):
    """(texts, metadatas) for query-log entries; entries without SQL are skipped."""
    texts: List[str] = []
    metadatas: List[Dict[str, Any]] = []
    for e in entries:
        if not isinstance(e, dict) or not e.get("sql_query"):
            continue
        texts.append(str(e.get("query_text") or e["sql_query"]))
        metadatas.append(
            {
                "sql_query": str(e["sql_query"]),
                "query_type": str(e.get("query_type") or "SELECT").upper(),
                "category": str(e.get("semantic_category") or e.get("category") or "general"),
                "collection_id": str(e.get("collection_id") or DEFAULT_COLLECTION),
            }
        )
    return texts, metadatas


@lru_cache(maxsize=1)
def get_schema_store() -> Optional[Chroma]:
    if not SCHEMA_CATALOG_PATH:
        return None
    try:
        with open(SCHEMA_CATALOG_PATH, "r", encoding="utf-8") as f:
            blocks = split_table_blocks(f.read())
        vs = build_vector_store(
            "querylens_schema",
            blocks,
            [table_block_metadata(b) for b in blocks],
            persist_directory=VECTOR_PERSIST_DIR,
        )
    except Exception:
        logger.exception("schema_store_unavailable", extra={"path": SCHEMA_CATALOG_PATH})
        return None
    logger.info("schema_store_ready", extra={"tables": len(blocks)})
    return vs


@lru_cache(maxsize=1)
def get_query_log_store() -> Optional[Chroma]:
    if not QUERY_LOGS_PATH:
        return None
    try:
        with open(QUERY_LOGS_PATH, "r", encoding="utf-8") as f:
            texts, metadatas = query_log_documents(json.load(f))
        vs = build_vector_store("querylens_query_logs", texts, metadatas, persist_directory=VECTOR_PERSIST_DIR)
    except Exception:
        logger.exception("query_log_store_unavailable", extra={"path": QUERY_LOGS_PATH})
        return None
    logger.info("query_log_store_ready", extra={"queries": len(texts)})
    return vs


# ------------------------------------------------------------
# Search
# ------------------------------------------------------------
def search_text(question: str, intent: Optional[IntentResult]) -> str:
    """The question, followed by its business domains (most relevant first)."""
    domains = sorted(intent.business_domains, key=lambda d: -d.relevance) if intent else []
    if not domains:
        return question
    return f"{question}\nBusiness domains: {', '.join(d.domain for d in domains)}"


def _search(store: Any, name: str, query: str, k: int, where: Dict[str, Any]):
    kwargs: Dict[str, Any] = {"k": k}
    if len(where) == 1:
        kwargs["filter"] = where
    elif where:
        kwargs["filter"] = {"$and": [{key: value} for key, value in where.items()]}

    started = time.perf_counter()
    try:
        return store.similarity_search(query, **kwargs)
    except Exception as e:
        logger.warning("retrieval_failed", extra={"store": name, "error": str(e)})
        return []
    finally:
        RETRIEVAL_LATENCY_SECONDS.labels(store=name).observe(time.perf_counter() - started)


def suggest_tables(
    question: str,
    intent: Optional[IntentResult],
    retriever: Any = None,
    *,
    k: int = SCHEMA_RAG_K,
    collection_id: str = "all",
) -> str:
    """Table blocks most similar to the question, joined for the analyst prompt."""
    if retriever is None:
        return ""
    where = {} if collection_id in ("", "all") else {"collection_id": collection_id}
    docs = _search(retriever, "tables", search_text(question, intent), k, where)

    blocks: List[str] = []
    tables: List[str] = []
    for d in docs:
        text = (d.page_content or "").strip()
        if not text or text in blocks:
            continue
        blocks.append(text)
        tables.append((d.metadata or {}).get("table_name", ""))

    logger.info("tables_suggested", extra={"tables": tables, "collection_id": collection_id})
    return "\n\n".join(blocks)


def suggest_query_logs(
    question: str,
    intent: Optional[IntentResult],
    retriever: Any = None,
    *,
    k: int = QUERY_LOG_K,
    collection_id: str = "all",
    query_type: Optional[str] = None,
    category: Optional[str] = None,
) -> str:
    """Past queries similar to the question, as commented SQL."""
    if retriever is None:
        return ""
    where: Dict[str, Any] = {}
    if collection_id not in ("", "all"):
        where["collection_id"] = collection_id
    if query_type:
        where["query_type"] = query_type.upper()
    if category:
        where["category"] = category
    docs = _search(retriever, "query_logs", search_text(question, intent), k, where)

    entries: List[str] = []
    for d in docs:
        sql = ((d.metadata or {}).get("sql_query") or "").strip()
        if not sql:
            continue
        entry = f"-- {(d.page_content or '').strip()}\n{sql}"
        if entry not in entries:
            entries.append(entry)

    logger.info("query_logs_suggested", extra={"count": len(entries), "collection_id": collection_id})
    return "\n\n".join(entries)
