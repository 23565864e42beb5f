"""Shared SQLite database handle for ledger and task repositories."""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

from sqlmodel import Session

from generation_engine.storage.alembic_runner import upgrade_head
from generation_engine.storage.common import build_sqlite_engine


class Database:
    """Owns the SQLAlchemy engine and hands out transactional sessions.

    The ledger and the task repository share one instance so a status change
    and the matching ledger write can commit in a single transaction.
    """

    def __init__(self, db_path: Path, *, busy_timeout_ms: int = 5_000) -> None:
        self.db_path = db_path
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=busy_timeout_ms)

    def init_schema(self) -> None:
        """Run schema migrations."""

        upgrade_head(self.db_path)

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def session(self) -> Session:
        return Session(self.engine)

    @contextmanager
    def transaction(self, session: Session | None = None) -> Iterator[Session]:
        """Yield a session that commits on success.

        When ``session`` is given the caller owns the transaction: the session
        is yielded as-is and neither committed nor closed here.
        """

        if session is not None:
            yield session
            return
        with Session(self.engine) as owned:
            yield owned
            owned.commit()
