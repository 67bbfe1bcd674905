"""Repositories over the state DB for records outside the case write path."""

from __future__ import annotations

from datetime import date

from case_forge.domain.models import TokenUsage
from case_forge.persistence.state_db import RowValue, StateDB, utc_now_iso


class _BaseRepo:
    def __init__(self, db: StateDB) -> None:
        self._db = db
        self._db.migrate()


class TokenUsageRepo(_BaseRepo):
    """Per-day, per-model token counters; writes accumulate into one row."""

    def record_usage(self, *, day: date, model: str, usage: TokenUsage) -> None:
        if not model.strip():
            raise ValueError("model must be non-empty")
        self._db.execute(
            """
            INSERT INTO token_usage
                (day, model, prompt_tokens, completion_tokens, total_tokens, updated_at)
            VALUES (?, ?, ?, ?, ?, ?)
            ON CONFLICT(day, model) DO UPDATE SET
                prompt_tokens = token_usage.prompt_tokens + excluded.prompt_tokens,
                completion_tokens = token_usage.completion_tokens + excluded.completion_tokens,
                total_tokens = token_usage.total_tokens + excluded.total_tokens,
                updated_at = excluded.updated_at
            """,
            (
                day.isoformat(),
                model,
                usage.prompt_tokens,
                usage.completion_tokens,
                usage.total_tokens,
                utc_now_iso(),
            ),
        )

    def get(self, *, day: date, model: str) -> TokenUsage | None:
        row = self._db.query_one(
            """
            SELECT prompt_tokens, completion_tokens, total_tokens
            FROM token_usage
            WHERE day = ? AND model = ?
            """,
            (day.isoformat(), model),
        )
        return None if row is None else _usage_from_row(row)

    def totals_for_day(self, day: date) -> dict[str, TokenUsage]:
        rows = self._db.query_all(
            """
            SELECT model, prompt_tokens, completion_tokens, total_tokens
            FROM token_usage
            WHERE day = ?
            ORDER BY model ASC
            """,
            (day.isoformat(),),
        )
        return {str(row["model"]): _usage_from_row(row) for row in rows}


def _usage_from_row(row: dict[str, RowValue]) -> TokenUsage:
    return TokenUsage(
        prompt_tokens=_count(row.get("prompt_tokens")),
        completion_tokens=_count(row.get("completion_tokens")),
        total_tokens=_count(row.get("total_tokens")),
    )


def _count(value: RowValue) -> int:
    return value if isinstance(value, int) else 0


__all__ = ["TokenUsageRepo"]
