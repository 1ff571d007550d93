"""Ad-hoc schema additions that ``SQLModel.metadata.create_all`` does not cover."""

from __future__ import annotations

from sqlalchemy import text


def ensure_run_log_indexes(conn) -> None:
    # stats and retention filter by owner and start time together
    conn.execute(
        text(
            """
            CREATE INDEX IF NOT EXISTS ix_sync_run_log_owner_started
            ON sync_run_log (owner_id, started_at)
            """
        )
    )


def run_all(engine) -> None:
    if engine.dialect.name != "sqlite":
        return
    with engine.begin() as conn:
        ensure_run_log_indexes(conn)


__all__ = ["run_all"]
