"""SQL guardrails.

LLM-generated SQL is **untrusted input**. The check here works on the literal
text only (no parser): it must start as a read statement and must not mention
anything on the denylist, anywhere, in any case. That is intentionally blunt.
`SELECT created_at ...` is rejected because it contains `create`; a false
rejection costs one LLM retry, a false acceptance costs the database.

This gate is necessary but not sufficient. Run the executor under a read-only,
least-privileged Postgres role as well.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, List, Optional, Tuple

# Order matters only for how keywords are listed in error messages.
DANGEROUS_KEYWORDS: Tuple[str, ...] = (
    "drop", "delete", "insert", "update", "alter", "truncate",
    "create", "grant", "revoke", "exec", "execute", "call",
    "declare", "merge", "replace", "rename", "comment",
)

TROUBLESHOOTING_SUGGESTIONS: Tuple[str, ...] = (
    "Check table and column names for typos",
    "Verify that referenced tables exist in the current database",
    "Ensure proper JOIN conditions if using multiple tables",
    "Check data types in WHERE clause conditions",
)


# ------------------------------------------------------------
# Validation
# ------------------------------------------------------------
@dataclass(frozen=True)
class ValidationResult:
    is_valid: bool
    error: Optional[str] = None

    def to_dict(self) -> dict:
        out = {"isValid": self.is_valid}
        if self.error:
            out["error"] = self.error
        return out


def _keyword_error(found: List[str]) -> str:
    if len(found) == 1:
        return f"Dangerous keyword '{found[0]}' is not allowed"
    quoted = ", ".join(f"'{k}'" for k in found)
    return f"Dangerous keywords {quoted} are not allowed"


def validate_query(query: str) -> ValidationResult:
    """Classify `query` as executable or rejected. Never raises."""
    lowered = (query or "").strip().lower()

    if not (lowered.startswith("select") or lowered.startswith("with")):
        return ValidationResult(False, "Only SELECT queries are allowed")

    if lowered.startswith("with") and "select" not in lowered[len("with"):]:
        return ValidationResult(False, "CTE queries (WITH ...) must contain a SELECT statement")

    found = [k for k in DANGEROUS_KEYWORDS if k in lowered]
    if found:
        return ValidationResult(False, _keyword_error(found))

    return ValidationResult(True)


# ------------------------------------------------------------
# Error taxonomy
# ------------------------------------------------------------
class ExecutionError(Exception):
    """Base for every failure of a query run. Carries advisory suggestions."""

    kind = "execution"
    default_suggestions: Tuple[str, ...] = TROUBLESHOOTING_SUGGESTIONS

    def __init__(self, message: str, suggestions: Optional[Iterable[str]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.suggestions: List[str] = list(suggestions if suggestions is not None else self.default_suggestions)


class QueryValidationError(ExecutionError, ValueError):
    kind = "validation"
    default_suggestions = (
        "Rewrite the request as a single read-only SELECT (or WITH ... SELECT) statement",
        "Avoid identifiers or literals that contain blocked keywords such as 'update' or 'create'",
    )


class ConfigurationError(ExecutionError):
    kind = "configuration"
    default_suggestions = (
        "Set POSTGRES_URL (or DATABASE_URL) to a read-only Postgres connection string",
    )


class QueryTimeoutError(ExecutionError):
    kind = "timeout"
    default_suggestions = (
        "Simplify the query or add filters/LIMIT to reduce the work it does",
    ) + TROUBLESHOOTING_SUGGESTIONS

    def __init__(self, timeout_s: float = 30, suggestions: Optional[Iterable[str]] = None) -> None:
        self.timeout_s = timeout_s
        super().__init__(f"Query timeout: execution exceeded {timeout_s:g} seconds", suggestions)


class DriverError(ExecutionError):
    kind = "driver"
