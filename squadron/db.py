import os
import sqlite3
import logging
from contextlib import contextmanager
from pathlib import Path

logger = logging.getLogger(__name__)

DB_DIR = Path(os.getenv("DB_DIR", "./data"))
DB_PATH = DB_DIR / os.getenv("DB_FILE", "squadron.sqlite")
DB_BUSY_TIMEOUT = float(os.getenv("DB_BUSY_TIMEOUT", "30"))


def _casefold(value):
    # NOCASE only folds ASCII
    return value.casefold() if isinstance(value, str) else value


def get_connection():
    Path(DB_PATH).parent.mkdir(parents=True, exist_ok=True)
    con = sqlite3.connect(DB_PATH, timeout=DB_BUSY_TIMEOUT, check_same_thread=False)
    con.row_factory = sqlite3.Row
    con.execute("PRAGMA foreign_keys = ON")
    con.create_function("casefold", 1, _casefold, deterministic=True)
    return con


@contextmanager
def connect():
    con = get_connection()
    try:
        yield con
    finally:
        con.close()


@contextmanager
def transaction(con: sqlite3.Connection):
    """Run a block of statements atomically.

    Commits when the block exits cleanly; any exception rolls back every
    statement issued inside the block and is re-raised.
    """
    if not con.in_transaction:
        # Take the write lock up front; other writers wait on the busy timeout
        con.execute("BEGIN IMMEDIATE")
    cur = con.cursor()
    try:
        yield cur
    except Exception:
        con.rollback()
        raise
    con.commit()
