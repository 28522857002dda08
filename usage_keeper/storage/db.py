"""
Database connection management.

Provides the single SQLite connection used by the usage store.
"""

import sqlite3
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Callable, Iterator, Optional

# Number of SQLite VM instructions between deadline checks.
_PROGRESS_INTERVAL = 100


def get_connection(db_path: str, busy_timeout: float = 5.0) -> sqlite3.Connection:
    """Create a SQLite connection configured for a single writer.

    Args:
        db_path: Path to SQLite database file
        busy_timeout: Seconds to wait on a locked database before failing

    Returns:
        Autocommit connection with WAL journaling and a bounded busy wait
    """
    path = Path(db_path)
    conn = sqlite3.connect(
        str(path),
        timeout=busy_timeout,
        isolation_level=None,
        check_same_thread=False,
    )
    try:
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute(f"PRAGMA busy_timeout={int(busy_timeout * 1000)}")
    except sqlite3.Error:
        conn.close()
        raise
    return conn


@contextmanager
def deadline(conn: sqlite3.Connection, timeout: Optional[float]) -> Iterator[Callable[[], bool]]:
    """Bound the statements run on conn to timeout seconds.

    Statements still running when the deadline passes are interrupted and
    raise sqlite3.OperationalError. The yielded callable reports whether
    the deadline has passed, for checks between statements. With no
    timeout this never expires.
    """
    if timeout is None:
        yield lambda: False
        return

    expires_at = time.monotonic() + timeout

    def expired() -> bool:
        return time.monotonic() >= expires_at

    conn.set_progress_handler(lambda: 1 if expired() else 0, _PROGRESS_INTERVAL)
    try:
        yield expired
    finally:
        conn.set_progress_handler(None, _PROGRESS_INTERVAL)
