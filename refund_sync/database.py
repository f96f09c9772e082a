"""
SQLite 数据库连接管理和初始化。
使用同步 sqlite3，提供 get_db() 获取连接。
"""

import os
import sqlite3
from pathlib import Path

import bcrypt
from dotenv import load_dotenv

load_dotenv()

DB_PATH = os.getenv("DB_PATH", "data/refund_sync.db")


def get_db() -> sqlite3.Connection:
    """获取 SQLite 数据库连接，启用 WAL 模式和外键约束。"""
    conn = sqlite3.connect(DB_PATH, timeout=15)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA foreign_keys=ON")
    return conn


# ── 建表 SQL ──────────────────────────────────────────────

_CREATE_TABLES = """
CREATE TABLE IF NOT EXISTS admin (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    username        VARCHAR(64)  NOT NULL UNIQUE,
    password_hash   VARCHAR(128) NOT NULL,
    login_fail_count INTEGER     DEFAULT 0,
    locked_until    DATETIME,
    created_at      DATETIME     NOT NULL DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS system_config (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    config_key      VARCHAR(64)  NOT NULL UNIQUE,
    config_value    TEXT,
    updated_at      DATETIME     NOT NULL DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS orders (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    order_number    VARCHAR(64)  NOT NULL UNIQUE,
    amount          DECIMAL(10,2) NOT NULL,
    payment_status  VARCHAR(16)  NOT NULL DEFAULT 'pending',
    refund_status   VARCHAR(16)  NOT NULL DEFAULT 'none',
    refund_method   VARCHAR(32),
    refund_order_id VARCHAR(40),
    refunded_at     DATETIME,
    paid_at         DATETIME,
    created_at      DATETIME     NOT NULL DEFAULT (datetime('now')),
    updated_at      DATETIME     NOT NULL DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS access_codes (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    code            VARCHAR(20)  NOT NULL UNIQUE,
    order_number    VARCHAR(64)  NOT NULL REFERENCES orders(order_number),
    status          VARCHAR(16)  NOT NULL DEFAULT 'active',
    amount          DECIMAL(10,2) NOT NULL,
    refund_order_id VARCHAR(40),
    refund_reason   TEXT,
    refunded_at     DATETIME,
    refund_claim    VARCHAR(32),
    refund_claimed_at DATETIME,
    created_at      DATETIME     NOT NULL DEFAULT (datetime('now')),
    updated_at      DATETIME     NOT NULL DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS reconciliation_logs (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    operation_type  VARCHAR(16)  NOT NULL,
    access_code     VARCHAR(20)  NOT NULL,
    order_number    VARCHAR(64)  NOT NULL,
    gateway_response TEXT,
    performed_by    VARCHAR(64)  NOT NULL,
    performed_at    DATETIME     NOT NULL DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS job_runs (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    job_type        VARCHAR(32)  NOT NULL,
    trigger_source  VARCHAR(32)  NOT NULL,
    checked         INTEGER      DEFAULT 0,
    changed         INTEGER      DEFAULT 0,
    unchanged       INTEGER      DEFAULT 0,
    errored         INTEGER      DEFAULT 0,
    params          TEXT,
    started_at      DATETIME     NOT NULL,
    finished_at     DATETIME     NOT NULL
);
"""

# 日志表只允许追加
_CREATE_TRIGGERS = """
CREATE TRIGGER IF NOT EXISTS trg_reconciliation_logs_no_update
BEFORE UPDATE ON reconciliation_logs
BEGIN
    SELECT RAISE(ABORT, 'reconciliation_logs is append-only');
END;

CREATE TRIGGER IF NOT EXISTS trg_reconciliation_logs_no_delete
BEFORE DELETE ON reconciliation_logs
BEGIN
    SELECT RAISE(ABORT, 'reconciliation_logs is append-only');
END;
"""

# ── 索引 SQL ──────────────────────────────────────────────

_CREATE_INDEXES = """
CREATE UNIQUE INDEX IF NOT EXISTS idx_orders_order_number
    ON orders(order_number);
CREATE UNIQUE INDEX IF NOT EXISTS idx_access_codes_code
    ON access_codes(code);
CREATE INDEX IF NOT EXISTS idx_access_codes_order_number
    ON access_codes(order_number);
CREATE INDEX IF NOT EXISTS idx_access_codes_status
    ON access_codes(status);
CREATE INDEX IF NOT EXISTS idx_access_codes_status_refunded_at
    ON access_codes(status, refunded_at);
CREATE INDEX IF NOT EXISTS idx_reconciliation_logs_code
    ON reconciliation_logs(access_code);
CREATE INDEX IF NOT EXISTS idx_reconciliation_logs_performed_at
    ON reconciliation_logs(performed_at);
CREATE INDEX IF NOT EXISTS idx_job_runs_started
    ON job_runs(started_at);
CREATE UNIQUE INDEX IF NOT EXISTS idx_system_config_key
    ON system_config(config_key);
"""


# ── 初始化 ────────────────────────────────────────────────

def init_db() -> None:
    """创建数据库目录、表、索引，并在首次启动时创建默认管理员。"""
    db_dir = Path(DB_PATH).parent
    db_dir.mkdir(parents=True, exist_ok=True)

    conn = get_db()
    try:
        conn.executescript(_CREATE_TABLES)
        conn.executescript(_CREATE_TRIGGERS)
        conn.executescript(_CREATE_INDEXES)

        # 首次启动：通过环境变量创建默认管理员
        _create_default_admin(conn)

        conn.commit()
    finally:
        conn.close()


def _create_default_admin(conn: sqlite3.Connection) -> None:
    """如果 admin 表为空，则根据环境变量创建默认管理员账号。"""
    row = conn.execute("SELECT COUNT(*) AS cnt FROM admin").fetchone()
    if row["cnt"] > 0:
        return

    username = os.getenv("ADMIN_USERNAME", "admin")
    password = os.getenv("ADMIN_PASSWORD", "admin123")

    password_hash = bcrypt.hashpw(
        password.encode("utf-8"), bcrypt.gensalt()
    ).decode("utf-8")

    conn.execute(
        "INSERT INTO admin (username, password_hash) VALUES (?, ?)",
        (username, password_hash),
    )
