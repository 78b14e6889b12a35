import hashlib
import hmac
import json
import secrets
import sqlite3
from typing import Any, Literal, TypedDict

from schooldesk.config import (
    ADMIN_PASSWORD,
    ADMIN_USERNAME,
    DB_PATH,
    DEFAULT_SCHOOL_NAME,
    DEFAULT_SCHOOL_PHONE,
)


PASSWORD_HASH_ALGO = "pbkdf2_sha256"
PASSWORD_HASH_ITERATIONS = 120_000
SETTINGS_KEY = "school_settings"

# Wiped by a factory reset, children before parents.
SCHOOL_DATA_TABLES = (
    "attendance",
    "fee_payments",
    "students",
    "families",
    "teachers",
    "expenses",
)

ResetEventType = Literal["OTP_REQUESTED", "RESET_CONFIRMED", "RESET_REJECTED", "RESET_FAILED"]


class SchoolSettings(TypedDict):
    school_name: str
    school_phone: str
    owner_phone: str
    whatsapp_provider: Literal["none", "ultramsg", "official"]
    whatsapp_api_url: str
    whatsapp_api_key: str
    whatsapp_priority: str
    whatsapp_phone_number_id: str
    whatsapp_access_token: str


DEFAULT_SETTINGS: SchoolSettings = {
    "school_name": DEFAULT_SCHOOL_NAME,
    "school_phone": DEFAULT_SCHOOL_PHONE,
    "owner_phone": "",
    "whatsapp_provider": "ultramsg",
    "whatsapp_api_url": "",
    "whatsapp_api_key": "",
    "whatsapp_priority": "10",
    "whatsapp_phone_number_id": "",
    "whatsapp_access_token": "",
}


def _hash_password(password: str, *, salt: str | None = None) -> str:
    salt_value = salt or secrets.token_hex(16)
    digest = hashlib.pbkdf2_hmac(
        "sha256",
        password.encode("utf-8"),
        salt_value.encode("utf-8"),
        PASSWORD_HASH_ITERATIONS,
    ).hex()
    return f"{PASSWORD_HASH_ALGO}${PASSWORD_HASH_ITERATIONS}${salt_value}${digest}"


def _verify_password(password: str, password_hash: str) -> bool:
    try:
        algo, rounds_text, salt_value, expected_digest = password_hash.split("$", 3)
        rounds = int(rounds_text)
    except (ValueError, TypeError):
        return False

    if algo != PASSWORD_HASH_ALGO or rounds <= 0:
        return False

    candidate_digest = hashlib.pbkdf2_hmac(
        "sha256",
        password.encode("utf-8"),
        salt_value.encode("utf-8"),
        rounds,
    ).hex()
    return hmac.compare_digest(candidate_digest, expected_digest)


def connect_db():
    conn = sqlite3.connect(str(DB_PATH), check_same_thread=False)
    conn.execute("PRAGMA foreign_keys = ON;")
    return conn


def _ensure_default_admin(cursor: sqlite3.Cursor) -> None:
    username = (ADMIN_USERNAME or "").strip()
    password = (ADMIN_PASSWORD or "").strip()
    if not username or not password:
        return

    cursor.execute(
        """
        SELECT id
        FROM admin_users
        WHERE username = ? COLLATE NOCASE
        """,
        (username,),
    )
    if cursor.fetchone():
        return

    cursor.execute(
        """
        INSERT INTO admin_users (username, password_hash)
        VALUES (?, ?)
        """,
        (username, _hash_password(password)),
    )


def create_tables():
    conn = connect_db()
    cursor = conn.cursor()

    cursor.execute(
        """
    CREATE TABLE IF NOT EXISTS admin_users (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        username TEXT NOT NULL UNIQUE COLLATE NOCASE,
        password_hash TEXT NOT NULL,
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    )
    """
    )

    cursor.execute("""
    CREATE TABLE IF NOT EXISTS app_settings (
        key TEXT PRIMARY KEY,
        value TEXT NOT NULL,
        updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    )
    """)

    cursor.execute("""
    CREATE TABLE IF NOT EXISTS families (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        father_name TEXT NOT NULL,
        phone TEXT,
        address TEXT,
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    )
    """)

    cursor.execute("""
    CREATE TABLE IF NOT EXISTS students (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        family_id INTEGER,
        full_name TEXT NOT NULL,
        class_name TEXT,
        status TEXT DEFAULT 'Active',    -- Active | Inactive | Graduated
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        FOREIGN KEY (family_id) REFERENCES families(id) ON DELETE SET NULL
    )
    """)

    cursor.execute("""
    CREATE TABLE IF NOT EXISTS teachers (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        full_name TEXT NOT NULL,
        phone TEXT,
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    )
    """)

    cursor.execute("""
    CREATE TABLE IF NOT EXISTS fee_payments (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        family_id INTEGER NOT NULL,
        amount INTEGER NOT NULL,         -- PKR
        paid_on TEXT NOT NULL,           -- YYYY-MM-DD
        FOREIGN KEY (family_id) REFERENCES families(id) ON DELETE CASCADE
    )
    """)

    cursor.execute("""
    CREATE TABLE IF NOT EXISTS expenses (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        category TEXT NOT NULL,
        amount INTEGER NOT NULL,
        spent_on TEXT NOT NULL           -- YYYY-MM-DD
    )
    """)

    cursor.execute("""
    CREATE TABLE IF NOT EXISTS attendance (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        student_id INTEGER NOT NULL,
        date TEXT NOT NULL,              -- YYYY-MM-DD
        status TEXT NOT NULL,            -- Present | Absent | Leave
        FOREIGN KEY (student_id) REFERENCES students(id) ON DELETE CASCADE,
        UNIQUE(student_id, date)
    )
    """)

    # Single slot: at most one row, id pinned to 1.
    cursor.execute("""
    CREATE TABLE IF NOT EXISTS verification_slot (
        id INTEGER PRIMARY KEY CHECK (id = 1),
        code TEXT NOT NULL,
        issued_at REAL NOT NULL
    )
    """)

    cursor.execute("""
    CREATE TABLE IF NOT EXISTS reset_events (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        event_type TEXT NOT NULL,
        reason TEXT NOT NULL,
        actor TEXT,
        detail TEXT,
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    )
    """)

    _ensure_default_admin(cursor)

    conn.commit()
    conn.close()


def verify_admin_credentials(username: str, password: str) -> dict | None:
    clean_username = username.strip()
    clean_password = password.strip()
    if not clean_username or not clean_password:
        return None

    conn = connect_db()
    cur = conn.cursor()
    cur.execute(
        """
        SELECT id, username, password_hash
        FROM admin_users
        WHERE username = ? COLLATE NOCASE
        """,
        (clean_username,),
    )
    row = cur.fetchone()
    conn.close()

    if not row:
        return None

    admin_id, saved_username, password_hash = row
    if not _verify_password(clean_password, password_hash):
        return None

    return {"id": admin_id, "username": saved_username}


# -----------------------------
# School settings
# -----------------------------
def get_school_settings() -> SchoolSettings:
    conn = connect_db()
    cur = conn.cursor()
    cur.execute("SELECT value FROM app_settings WHERE key = ?", (SETTINGS_KEY,))
    row = cur.fetchone()
    conn.close()

    settings: dict[str, Any] = dict(DEFAULT_SETTINGS)
    if row:
        try:
            stored = json.loads(row[0])
        except (TypeError, ValueError):
            stored = {}
        if isinstance(stored, dict):
            settings.update({k: v for k, v in stored.items() if k in DEFAULT_SETTINGS})
    return settings  # type: ignore[return-value]


def update_school_settings(changes: dict[str, Any]) -> SchoolSettings:
    settings: dict[str, Any] = dict(get_school_settings())
    settings.update({k: v for k, v in changes.items() if k in DEFAULT_SETTINGS and v is not None})

    conn = connect_db()
    cur = conn.cursor()
    cur.execute(
        """
        INSERT INTO app_settings (key, value, updated_at)
        VALUES (?, ?, CURRENT_TIMESTAMP)
        ON CONFLICT(key) DO UPDATE SET value = excluded.value, updated_at = CURRENT_TIMESTAMP
        """,
        (SETTINGS_KEY, json.dumps(settings, sort_keys=True)),
    )
    conn.commit()
    conn.close()
    return settings  # type: ignore[return-value]


# -----------------------------
# School data
# -----------------------------
def count_school_data() -> dict[str, int]:
    conn = connect_db()
    cur = conn.cursor()
    counts = {}
    for table in SCHOOL_DATA_TABLES:
        cur.execute(f"SELECT COUNT(*) FROM {table}")
        counts[table] = int(cur.fetchone()[0])
    conn.close()
    return counts


def clear_school_data() -> dict[str, int]:
    """
    Delete every row of every school data table in one transaction.

    Admin users, settings and the reset audit log are kept.
    Returns the number of deleted rows per table.
    """
    conn = connect_db()
    try:
        cur = conn.cursor()
        deleted = {}
        for table in SCHOOL_DATA_TABLES:
            cur.execute(f"DELETE FROM {table};")
            deleted[table] = max(0, cur.rowcount)
            cur.execute("DELETE FROM sqlite_sequence WHERE name = ?;", (table,))
        conn.commit()
        return deleted
    except sqlite3.Error:
        conn.rollback()
        raise
    finally:
        conn.close()


# -----------------------------
# Verification slot
# -----------------------------
def get_verification_slot() -> tuple[str, float] | None:
    conn = connect_db()
    cur = conn.cursor()
    cur.execute("SELECT code, issued_at FROM verification_slot WHERE id = 1")
    row = cur.fetchone()
    conn.close()
    if not row:
        return None
    return str(row[0]), float(row[1])


def set_verification_slot(code: str, issued_at: float) -> None:
    conn = connect_db()
    conn.execute(
        """
        INSERT INTO verification_slot (id, code, issued_at)
        VALUES (1, ?, ?)
        ON CONFLICT(id) DO UPDATE SET code = excluded.code, issued_at = excluded.issued_at
        """,
        (code, issued_at),
    )
    conn.commit()
    conn.close()


def delete_verification_slot(expected: tuple[str, float] | None = None) -> bool:
    conn = connect_db()
    cur = conn.cursor()
    if expected is None:
        cur.execute("DELETE FROM verification_slot WHERE id = 1")
    else:
        code, issued_at = expected
        cur.execute(
            "DELETE FROM verification_slot WHERE id = 1 AND code = ? AND issued_at = ?",
            (code, issued_at),
        )
    deleted = cur.rowcount > 0
    conn.commit()
    conn.close()
    return deleted


# -----------------------------
# Reset audit log
# -----------------------------
def log_reset_event(
    event_type: ResetEventType,
    *,
    reason: str,
    actor: str | None = None,
    detail: dict[str, Any] | None = None,
) -> int:
    conn = connect_db()
    cur = conn.cursor()
    cur.execute(
        """
        INSERT INTO reset_events (event_type, reason, actor, detail)
        VALUES (?, ?, ?, ?)
        """,
        (
            event_type,
            reason,
            actor,
            json.dumps(detail, separators=(",", ":"), sort_keys=True) if detail else None,
        ),
    )
    event_id = int(cur.lastrowid)
    conn.commit()
    conn.close()
    return event_id


def get_reset_events(limit: int = 50) -> list[dict[str, Any]]:
    conn = connect_db()
    cur = conn.cursor()
    cur.execute(
        """
        SELECT id, event_type, reason, actor, detail, created_at
        FROM reset_events
        ORDER BY id DESC
        LIMIT ?
        """,
        (limit,),
    )
    rows = cur.fetchall()
    conn.close()
    return [
        {
            "id": r[0],
            "event_type": r[1],
            "reason": r[2],
            "actor": r[3],
            "detail": json.loads(r[4]) if r[4] else None,
            "created_at": r[5],
        }
        for r in rows
    ]
