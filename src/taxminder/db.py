"""SQLite persistence: single file, zero config.

The connection runs in autocommit mode; multi-statement units of work are
wrapped in ``transaction()``, which nests through SAVEPOINTs so a failing
client can be rolled back without discarding the rest of a batch.
"""

from __future__ import annotations

import json
import sqlite3
from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from datetime import date, datetime, timedelta, timezone
from pathlib import Path
from typing import Any
from uuid import uuid4

from taxminder.errors import LockHeldError
from taxminder.models import (
    Client,
    ClientTemplateOverride,
    DeadlineOverride,
    FilingAssignment,
    ReminderQueueEntry,
    ReminderTemplate,
    StepFields,
    TemplateStep,
)

SCHEMA = """\
CREATE TABLE IF NOT EXISTS clients(
  id TEXT PRIMARY KEY, company_name TEXT NOT NULL,
  client_type TEXT DEFAULT 'Limited Company', email TEXT DEFAULT '',
  year_end_date TEXT, vat_registered INTEGER DEFAULT 0,
  vat_stagger_group INTEGER, reminders_paused INTEGER DEFAULT 0,
  records_received_for TEXT DEFAULT '[]',
  created TEXT DEFAULT(datetime('now')),
  updated TEXT DEFAULT(datetime('now'))
);
CREATE TABLE IF NOT EXISTS filing_assignments(
  client_id TEXT NOT NULL, filing_type_id TEXT NOT NULL,
  is_active INTEGER DEFAULT 1,
  PRIMARY KEY(client_id, filing_type_id)
);
CREATE TABLE IF NOT EXISTS deadline_overrides(
  client_id TEXT NOT NULL, filing_type_id TEXT NOT NULL,
  override_date TEXT NOT NULL, reason TEXT DEFAULT '',
  PRIMARY KEY(client_id, filing_type_id)
);
CREATE TABLE IF NOT EXISTS reminder_templates(
  id TEXT PRIMARY KEY, name TEXT NOT NULL, filing_type_id TEXT NOT NULL,
  steps TEXT DEFAULT '[]', is_active INTEGER DEFAULT 1
);
CREATE TABLE IF NOT EXISTS template_overrides(
  client_id TEXT NOT NULL, template_id TEXT NOT NULL, step_index INTEGER NOT NULL,
  overridden_fields TEXT DEFAULT '{}',
  PRIMARY KEY(client_id, template_id, step_index)
);
CREATE TABLE IF NOT EXISTS reminder_queue(
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  client_id TEXT NOT NULL, filing_type_id TEXT NOT NULL, template_id TEXT NOT NULL,
  step_index INTEGER NOT NULL, deadline_date TEXT NOT NULL, send_date TEXT NOT NULL,
  subject TEXT DEFAULT '', body TEXT DEFAULT '',
  resolved_subject TEXT, resolved_body TEXT,
  status TEXT DEFAULT 'scheduled',
  UNIQUE(client_id, filing_type_id, deadline_date, step_index)
);
CREATE TABLE IF NOT EXISTS audit(
  id INTEGER PRIMARY KEY AUTOINCREMENT, client_id TEXT,
  action TEXT, filing_type_id TEXT, detail TEXT DEFAULT '{}',
  ts TEXT DEFAULT(datetime('now'))
);
CREATE TABLE IF NOT EXISTS locks(
  name TEXT PRIMARY KEY, owner TEXT, expires_at TEXT NOT NULL
);
CREATE TABLE IF NOT EXISTS oauth_tokens(
  provider TEXT PRIMARY KEY, data TEXT DEFAULT '{}',
  updated TEXT DEFAULT(datetime('now'))
);
CREATE TABLE IF NOT EXISTS bank_holidays_cache(
  division TEXT PRIMARY KEY, dates TEXT DEFAULT '[]', fetched_at TEXT NOT NULL
);"""

# Columns added after initial schema, migrated on connect
_MIGRATIONS = [
    ("clients", "completed_for", "TEXT DEFAULT '[]'"),
    ("reminder_queue", "queued_at", "TEXT"),
]

# Set-valued client columns, stored as JSON arrays
SET_COLUMNS = ("records_received_for", "completed_for")


def _migrate(c: sqlite3.Connection):
    """Add new columns to existing tables if missing."""
    for table, col, typedef in _MIGRATIONS:
        try:
            c.execute(f"ALTER TABLE {table} ADD COLUMN {col} {typedef}")
        except sqlite3.OperationalError:
            pass  # column already exists


def default_path() -> Path:
    from taxminder.config import get_settings
    return get_settings().db_path


@contextmanager
def conn(path: str | Path | None = None) -> Iterator[sqlite3.Connection]:
    db_path = Path(path) if path else default_path()
    db_path.parent.mkdir(parents=True, exist_ok=True)
    c = sqlite3.connect(str(db_path), isolation_level=None)
    c.row_factory = sqlite3.Row
    c.executescript(SCHEMA)
    _migrate(c)
    try:
        yield c
    finally:
        c.close()


@contextmanager
def transaction(c: sqlite3.Connection) -> Iterator[sqlite3.Connection]:
    """All-or-nothing scope; nests via SAVEPOINT."""
    sp = f"sp_{uuid4().hex[:12]}"
    c.execute(f"SAVEPOINT {sp}")
    try:
        yield c
    except BaseException:
        c.execute(f"ROLLBACK TO {sp}")
        c.execute(f"RELEASE {sp}")
        raise
    c.execute(f"RELEASE {sp}")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ── Locks ────────────────────────────────────────────────────────────────────

def acquire_lock(c, name: str, ttl_seconds: int, owner: str = "",
                 now: datetime | None = None) -> bool:
    """Take an advisory lock row; expired rows are reclaimed first."""
    now = now or _utcnow()
    c.execute("DELETE FROM locks WHERE name=? AND expires_at < ?", (name, now.isoformat()))
    cur = c.execute(
        "INSERT INTO locks(name, owner, expires_at) VALUES(?,?,?) ON CONFLICT(name) DO NOTHING",
        (name, owner, (now + timedelta(seconds=ttl_seconds)).isoformat()),
    )
    return cur.rowcount == 1


def release_lock(c, name: str, owner: str = ""):
    c.execute("DELETE FROM locks WHERE name=? AND owner=?", (name, owner))


@contextmanager
def lock(c, name: str, ttl_seconds: int = 300) -> Iterator[str]:
    """Hold ``name`` for the duration of the block or raise LockHeldError."""
    owner = uuid4().hex
    if not acquire_lock(c, name, ttl_seconds, owner):
        raise LockHeldError(f"Lock {name!r} already held by another process")
    try:
        yield owner
    finally:
        release_lock(c, name, owner)


def client_lock_name(client_id: str) -> str:
    return f"client:{client_id}"


# ── Audit ────────────────────────────────────────────────────────────────────

def log(c, client_id: str | None, action: str, filing_type_id: str | None = None,
        detail: dict[str, Any] | None = None):
    c.execute(
        "INSERT INTO audit(client_id, action, filing_type_id, detail) VALUES(?,?,?,?)",
        (client_id, action, filing_type_id, json.dumps(detail or {}, default=str)),
    )


def audit_rows(c, client_id: str | None = None) -> list[dict]:
    sql, args = "SELECT * FROM audit", ()
    if client_id:
        sql, args = sql + " WHERE client_id=?", (client_id,)
    rows = []
    for r in c.execute(sql + " ORDER BY id", args):
        row = dict(r)
        row["detail"] = json.loads(row["detail"] or "{}")
        rows.append(row)
    return rows


# ── Clients ──────────────────────────────────────────────────────────────────

def _client(r: sqlite3.Row) -> Client:
    d = dict(r)
    for col in SET_COLUMNS:
        d[col] = json.loads(d.get(col) or "[]")
    d["vat_registered"] = bool(d["vat_registered"])
    d["reminders_paused"] = bool(d["reminders_paused"])
    return Client.model_validate(d)


def get_client(c, client_id: str) -> Client | None:
    r = c.execute("SELECT * FROM clients WHERE id=?", (client_id,)).fetchone()
    return _client(r) if r else None


def list_clients(c, include_paused: bool = True) -> list[Client]:
    sql = "SELECT * FROM clients"
    if not include_paused:
        sql += " WHERE reminders_paused=0"
    return [_client(r) for r in c.execute(sql + " ORDER BY id")]


def save_client(c, client: Client):
    c.execute(
        "INSERT INTO clients(id, company_name, client_type, email, year_end_date, vat_registered,"
        " vat_stagger_group, reminders_paused, records_received_for, completed_for)"
        " VALUES(?,?,?,?,?,?,?,?,?,?)"
        " ON CONFLICT(id) DO UPDATE SET company_name=excluded.company_name,"
        " client_type=excluded.client_type, email=excluded.email,"
        " year_end_date=excluded.year_end_date, vat_registered=excluded.vat_registered,"
        " vat_stagger_group=excluded.vat_stagger_group, reminders_paused=excluded.reminders_paused,"
        " records_received_for=excluded.records_received_for, completed_for=excluded.completed_for,"
        " updated=datetime('now')",
        (
            client.id, client.company_name, client.client_type.value, client.email,
            client.year_end_date.isoformat() if client.year_end_date else None,
            int(client.vat_registered), client.vat_stagger_group, int(client.reminders_paused),
            json.dumps(client.records_received_for), json.dumps(client.completed_for),
        ),
    )


def update_client(c, client_id: str, **fields: Any):
    """Update plain client columns (dates are stored as ISO strings)."""
    if not fields:
        return
    cols, vals = [], []
    for k, v in fields.items():
        if isinstance(v, date):
            v = v.isoformat()
        elif isinstance(v, bool):
            v = int(v)
        elif k in SET_COLUMNS:
            v = json.dumps(list(dict.fromkeys(v)))
        cols.append(f"{k}=?")
        vals.append(v)
    c.execute(
        f"UPDATE clients SET {', '.join(cols)}, updated=datetime('now') WHERE id=?",
        (*vals, client_id),
    )


def add_to_set(c, client_id: str, column: str, value: str) -> bool:
    """Add ``value`` to a set column; False when it was already present."""
    client = get_client(c, client_id)
    current = getattr(client, column) if client else []
    if value in current:
        return False
    update_client(c, client_id, **{column: [*current, value]})
    return True


def remove_from_set(c, client_id: str, column: str, value: str) -> bool:
    """Remove ``value`` from a set column; False when it was absent."""
    client = get_client(c, client_id)
    current = getattr(client, column) if client else []
    if value not in current:
        return False
    update_client(c, client_id, **{column: [v for v in current if v != value]})
    return True


# ── Filing assignments & deadline overrides ─────────────────────────────────

def upsert_assignment(c, a: FilingAssignment):
    c.execute(
        "INSERT INTO filing_assignments(client_id, filing_type_id, is_active) VALUES(?,?,?)"
        " ON CONFLICT(client_id, filing_type_id) DO UPDATE SET is_active=excluded.is_active",
        (a.client_id, a.filing_type_id.value, int(a.is_active)),
    )


def list_assignments(c, client_id: str | None = None, active_only: bool = True) -> list[FilingAssignment]:
    sql, args = "SELECT * FROM filing_assignments WHERE 1=1", []
    if client_id:
        sql += " AND client_id=?"
        args.append(client_id)
    if active_only:
        sql += " AND is_active=1"
    return [
        FilingAssignment(client_id=r["client_id"], filing_type_id=r["filing_type_id"],
                         is_active=bool(r["is_active"]))
        for r in c.execute(sql + " ORDER BY client_id, filing_type_id", args)
    ]


def get_assignment(c, client_id: str, filing_type_id: str) -> FilingAssignment | None:
    r = c.execute(
        "SELECT * FROM filing_assignments WHERE client_id=? AND filing_type_id=?",
        (client_id, filing_type_id),
    ).fetchone()
    if not r:
        return None
    return FilingAssignment(client_id=r["client_id"], filing_type_id=r["filing_type_id"],
                            is_active=bool(r["is_active"]))


def upsert_deadline_override(c, o: DeadlineOverride):
    c.execute(
        "INSERT INTO deadline_overrides(client_id, filing_type_id, override_date, reason)"
        " VALUES(?,?,?,?) ON CONFLICT(client_id, filing_type_id)"
        " DO UPDATE SET override_date=excluded.override_date, reason=excluded.reason",
        (o.client_id, o.filing_type_id.value, o.override_date.isoformat(), o.reason),
    )


def delete_deadline_override(c, client_id: str, filing_type_id: str):
    c.execute("DELETE FROM deadline_overrides WHERE client_id=? AND filing_type_id=?",
              (client_id, filing_type_id))


def deadline_overrides(c, client_id: str | None = None) -> dict[tuple[str, str], DeadlineOverride]:
    """Overrides keyed by (client_id, filing_type_id)."""
    sql, args = "SELECT * FROM deadline_overrides", ()
    if client_id:
        sql, args = sql + " WHERE client_id=?", (client_id,)
    return {
        (r["client_id"], r["filing_type_id"]): DeadlineOverride.model_validate(dict(r))
        for r in c.execute(sql, args)
    }


# ── Templates ────────────────────────────────────────────────────────────────

def _template(r: sqlite3.Row) -> ReminderTemplate:
    return ReminderTemplate(
        id=r["id"], name=r["name"], filing_type_id=r["filing_type_id"],
        steps=[TemplateStep.model_validate(s) for s in json.loads(r["steps"] or "[]")],
        is_active=bool(r["is_active"]),
    )


def save_template(c, t: ReminderTemplate):
    c.execute(
        "INSERT INTO reminder_templates(id, name, filing_type_id, steps, is_active) VALUES(?,?,?,?,?)"
        " ON CONFLICT(id) DO UPDATE SET name=excluded.name, filing_type_id=excluded.filing_type_id,"
        " steps=excluded.steps, is_active=excluded.is_active",
        (t.id, t.name, t.filing_type_id.value,
         json.dumps([s.model_dump() for s in t.steps]), int(t.is_active)),
    )


def get_template(c, template_id: str) -> ReminderTemplate | None:
    r = c.execute("SELECT * FROM reminder_templates WHERE id=?", (template_id,)).fetchone()
    return _template(r) if r else None


def list_templates(c, active_only: bool = True) -> list[ReminderTemplate]:
    sql = "SELECT * FROM reminder_templates"
    if active_only:
        sql += " WHERE is_active=1"
    return [_template(r) for r in c.execute(sql + " ORDER BY id")]


def upsert_template_override(c, o: ClientTemplateOverride):
    c.execute(
        "INSERT INTO template_overrides(client_id, template_id, step_index, overridden_fields)"
        " VALUES(?,?,?,?) ON CONFLICT(client_id, template_id, step_index)"
        " DO UPDATE SET overridden_fields=excluded.overridden_fields",
        (o.client_id, o.template_id, o.step_index, json.dumps(o.overridden_fields.present())),
    )


def delete_template_override(c, client_id: str, template_id: str, step_index: int):
    c.execute("DELETE FROM template_overrides WHERE client_id=? AND template_id=? AND step_index=?",
              (client_id, template_id, step_index))


def list_template_overrides(c, client_id: str, template_id: str | None = None) -> list[ClientTemplateOverride]:
    sql, args = "SELECT * FROM template_overrides WHERE client_id=?", [client_id]
    if template_id:
        sql += " AND template_id=?"
        args.append(template_id)
    return [
        ClientTemplateOverride(
            client_id=r["client_id"], template_id=r["template_id"], step_index=r["step_index"],
            overridden_fields=StepFields.model_validate(json.loads(r["overridden_fields"] or "{}")),
        )
        for r in c.execute(sql + " ORDER BY template_id, step_index", args)
    ]


# ── Reminder queue ───────────────────────────────────────────────────────────

def _entry(r: sqlite3.Row) -> ReminderQueueEntry:
    return ReminderQueueEntry.model_validate(dict(r))


def insert_queue_entry(c, e: ReminderQueueEntry) -> bool:
    """Insert keyed on (client, filing type, deadline, step); a conflict is a no-op."""
    cur = c.execute(
        "INSERT INTO reminder_queue(client_id, filing_type_id, template_id, step_index,"
        " deadline_date, send_date, subject, body, status) VALUES(?,?,?,?,?,?,?,?,?)"
        " ON CONFLICT(client_id, filing_type_id, deadline_date, step_index) DO NOTHING",
        (e.client_id, e.filing_type_id, e.template_id, e.step_index,
         e.deadline_date.isoformat(), e.send_date.isoformat(), e.subject, e.body, e.status.value),
    )
    return cur.rowcount == 1


def queue_entries(c, client_id: str | None = None, filing_type_id: str | None = None,
                  statuses: Iterable[str] | None = None) -> list[ReminderQueueEntry]:
    sql, args = "SELECT * FROM reminder_queue WHERE 1=1", []
    if client_id:
        sql += " AND client_id=?"
        args.append(client_id)
    if filing_type_id:
        sql += " AND filing_type_id=?"
        args.append(filing_type_id)
    if statuses is not None:
        statuses = list(statuses)
        sql += f" AND status IN ({','.join('?' * len(statuses))})"
        args.extend(statuses)
    return [_entry(r) for r in c.execute(sql + " ORDER BY send_date, id", args)]


def update_queue_entry(c, entry_id: int, **fields: Any):
    if not fields:
        return
    cols, vals = [], []
    for k, v in fields.items():
        if isinstance(v, (date, datetime)):
            v = v.isoformat()
        elif hasattr(v, "value"):
            v = v.value
        cols.append(f"{k}=?")
        vals.append(v)
    c.execute(f"UPDATE reminder_queue SET {', '.join(cols)} WHERE id=?", (*vals, entry_id))


def delete_queue_entries(c, entry_ids: Iterable[int]) -> int:
    ids = list(entry_ids)
    if not ids:
        return 0
    cur = c.execute(f"DELETE FROM reminder_queue WHERE id IN ({','.join('?' * len(ids))})", ids)
    return cur.rowcount


def delete_queue_by_status(c, client_id: str, filing_type_id: str, status: str) -> int:
    cur = c.execute(
        "DELETE FROM reminder_queue WHERE client_id=? AND filing_type_id=? AND status=?",
        (client_id, filing_type_id, status),
    )
    return cur.rowcount


def set_queue_status(c, client_id: str, filing_type_id: str, from_status: str,
                     to_status: str, send_before: date | None = None) -> int:
    """Move matching entries between statuses; returns how many moved."""
    sql = "UPDATE reminder_queue SET status=? WHERE client_id=? AND status=?"
    args: list[Any] = [to_status, client_id, from_status]
    if filing_type_id:
        sql += " AND filing_type_id=?"
        args.append(filing_type_id)
    if send_before:
        sql += " AND send_date < ?"
        args.append(send_before.isoformat())
    return c.execute(sql, args).rowcount


def update_queue_status(c, entry_id: int, status: str):
    """Write-back point for the external sender (sent / failed)."""
    c.execute("UPDATE reminder_queue SET status=? WHERE id=?", (status, entry_id))


# ── OAuth tokens ─────────────────────────────────────────────────────────────

def get_token(c, provider: str) -> dict | None:
    r = c.execute("SELECT data FROM oauth_tokens WHERE provider=?", (provider,)).fetchone()
    return json.loads(r["data"]) if r else None


def store_token(c, provider: str, data: dict):
    c.execute(
        "INSERT INTO oauth_tokens(provider, data) VALUES(?,?)"
        " ON CONFLICT(provider) DO UPDATE SET data=excluded.data, updated=datetime('now')",
        (provider, json.dumps(data)),
    )


# ── Bank holiday cache ───────────────────────────────────────────────────────

def get_cached_holidays(c, division: str) -> tuple[frozenset[str], datetime] | None:
    """Last good holiday set for ``division`` and when it was fetched."""
    r = c.execute("SELECT dates, fetched_at FROM bank_holidays_cache WHERE division=?",
                  (division,)).fetchone()
    if not r:
        return None
    return frozenset(json.loads(r["dates"])), datetime.fromisoformat(r["fetched_at"])


def store_cached_holidays(c, division: str, dates: Iterable[str], fetched_at: datetime):
    c.execute(
        "INSERT INTO bank_holidays_cache(division, dates, fetched_at) VALUES(?,?,?)"
        " ON CONFLICT(division) DO UPDATE SET dates=excluded.dates, fetched_at=excluded.fetched_at",
        (division, json.dumps(sorted(dates)), fetched_at.isoformat()),
    )
