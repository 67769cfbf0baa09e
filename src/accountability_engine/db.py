import sqlite3
from datetime import datetime, timezone
from pathlib import Path

from .settings import settings


SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS portfolios (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    name TEXT NOT NULL,
    owner_name TEXT,
    broker TEXT,
    risk_profile TEXT,
    available_cash REAL NOT NULL DEFAULT 0,
    is_active INTEGER NOT NULL DEFAULT 1,
    telegram_chat_id TEXT,
    notifications_muted INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS holdings (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    portfolio_id INTEGER NOT NULL,
    symbol TEXT NOT NULL,
    exchange TEXT NOT NULL DEFAULT 'NSE',
    quantity REAL NOT NULL,
    avg_price REAL NOT NULL,
    current_price REAL,
    updated_at TEXT NOT NULL,
    UNIQUE(portfolio_id, symbol),
    FOREIGN KEY(portfolio_id) REFERENCES portfolios(id)
);

CREATE TABLE IF NOT EXISTS daily_targets (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    portfolio_id INTEGER NOT NULL,
    target_date TEXT NOT NULL,
    ai_target REAL NOT NULL DEFAULT 0,
    ai_rationale TEXT,
    ai_confidence INTEGER,
    ai_updated_at TEXT,
    user_target REAL,
    user_updated_at TEXT,
    earned_actual REAL NOT NULL DEFAULT 0,
    earned_updated_at TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    UNIQUE(portfolio_id, target_date),
    FOREIGN KEY(portfolio_id) REFERENCES portfolios(id)
);

CREATE TABLE IF NOT EXISTS trade_signals (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    portfolio_id INTEGER NOT NULL,
    symbol TEXT NOT NULL,
    exchange TEXT NOT NULL DEFAULT 'NSE',
    side TEXT NOT NULL,
    quantity INTEGER NOT NULL,
    trigger_type TEXT NOT NULL DEFAULT 'MARKET',
    trigger_price REAL,
    trigger_low REAL,
    trigger_high REAL,
    confidence INTEGER NOT NULL DEFAULT 50,
    rationale TEXT,
    status TEXT NOT NULL DEFAULT 'PENDING',
    last_notified_at TEXT,
    notify_count INTEGER NOT NULL DEFAULT 0,
    expires_at TEXT NOT NULL,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    FOREIGN KEY(portfolio_id) REFERENCES portfolios(id)
);

CREATE INDEX IF NOT EXISTS idx_trade_signals_portfolio_status ON trade_signals(portfolio_id, status);
CREATE INDEX IF NOT EXISTS idx_trade_signals_status_notified ON trade_signals(status, last_notified_at);
CREATE INDEX IF NOT EXISTS idx_trade_signals_created ON trade_signals(created_at);

CREATE TABLE IF NOT EXISTS signal_acks (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    signal_id INTEGER NOT NULL,
    action TEXT NOT NULL,
    actor TEXT NOT NULL,
    note TEXT,
    created_at TEXT NOT NULL,
    FOREIGN KEY(signal_id) REFERENCES trade_signals(id)
);

CREATE INDEX IF NOT EXISTS idx_signal_acks_signal ON signal_acks(signal_id);
"""


def to_db_timestamp(value: datetime) -> str:
    """Serialize an aware instant as fixed-width UTC ISO text.

    A constant width keeps lexical ordering in SQL equal to time ordering.
    """
    if value.tzinfo is None:
        raise ValueError("naive datetimes are not stored; attach a timezone first")
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def from_db_timestamp(value: str | None) -> datetime | None:
    if not value:
        return None
    return datetime.fromisoformat(value)


def get_connection(db_path: Path | None = None) -> sqlite3.Connection:
    path = Path(db_path or settings.db_path)
    path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(path, timeout=10.0)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON")
    return conn


def initialize_database(db_path: Path | None = None) -> None:
    with get_connection(db_path) as conn:
        conn.executescript(SCHEMA_SQL)
        conn.execute("PRAGMA journal_mode = WAL")
        conn.commit()
