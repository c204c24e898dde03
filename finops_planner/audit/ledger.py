"""
Audit Ledger: append-only, hash-chained record of every state change.

Behavioral Contract:
- Append-only. No entry is ever modified or deleted.
- Entries for one plan are strictly ordered by `created_at`.
- Each stored row is hashed and chained to the previous row (tamper-evident).
- Listing is lazy and restartable: every iteration re-reads the store.
"""

import hashlib
import json
import logging
from datetime import datetime, timedelta, timezone
from typing import Iterator, Optional

from finops_planner.errors import InvalidEntry, ValidationError
from finops_planner.models.audit import AuditAction, AuditLogEntry
from finops_planner.storage.database import Database

logger = logging.getLogger(__name__)

_PAGE_SIZE = 100
_ONE_TICK = timedelta(microseconds=1)


def _normalize_timestamp(value: datetime) -> datetime:
    """Store every timestamp as naive UTC so string ordering matches time ordering."""
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def _format_timestamp(value: datetime) -> str:
    return value.isoformat(timespec="microseconds")


def _sign(entry_json: str, prior_hash: Optional[str]) -> str:
    payload = json.dumps(
        {"entry": json.loads(entry_json), "prior": prior_hash}, sort_keys=True
    ).encode()
    return hashlib.sha256(payload).hexdigest()


class AuditQuery:
    """A restartable view over ledger entries. Iterating runs the query again."""

    def __init__(
        self,
        ledger: "AuditLedger",
        plan_id: Optional[str],
        action: Optional[AuditAction],
        order: str,
        limit: Optional[int],
    ):
        self._ledger = ledger
        self.plan_id = plan_id
        self.action = action
        self.order = order
        self.limit = limit

    def __iter__(self) -> Iterator[AuditLogEntry]:
        return self._ledger._iter_entries(
            self.plan_id, self.action, self.order, self.limit
        )


class AuditLedger:
    """
    Append-only audit log.
    Prototype: SQLite, sharing the plan store's database for atomic writes.
    """

    def __init__(self, db: Optional[Database] = None):
        self.db = db or Database()
        self._init_schema()

    def _init_schema(self) -> None:
        """Create the audit table if it doesn't exist."""
        self.db.execute_script([
            """
            CREATE TABLE IF NOT EXISTS audit_log (
                sequence INTEGER PRIMARY KEY AUTOINCREMENT,
                action TEXT NOT NULL,
                plan_id TEXT NOT NULL,
                performed_by TEXT NOT NULL,
                created_at TEXT NOT NULL,
                entry_json TEXT NOT NULL,
                signature TEXT NOT NULL,
                prior_record_hash TEXT
            )
            """,
            "CREATE INDEX IF NOT EXISTS idx_audit_plan_id ON audit_log(plan_id)",
            "CREATE INDEX IF NOT EXISTS idx_audit_created_at ON audit_log(created_at)",
        ])

    def append(self, entry: AuditLogEntry) -> AuditLogEntry:
        """
        Append an entry. Assigns `created_at` when omitted and the sequence
        number; every other submitted field is stored as given.
        """
        self._validate(entry)

        with self.db.transaction() as conn:
            row = conn.execute(
                "SELECT MAX(created_at) AS last FROM audit_log WHERE plan_id = ?",
                (entry.plan_id,),
            ).fetchone()
            last = datetime.fromisoformat(row["last"]) if row["last"] else None

            if entry.created_at is None:
                created_at = datetime.utcnow()
                if last is not None and created_at <= last:
                    created_at = last + _ONE_TICK
            else:
                created_at = _normalize_timestamp(entry.created_at)
                if last is not None and created_at <= last:
                    raise InvalidEntry(
                        f"Entry for plan {entry.plan_id} is not later than "
                        f"the previous entry ({_format_timestamp(last)})",
                        {"plan_id": entry.plan_id, "created_at": _format_timestamp(created_at)},
                    )

            stored = entry.model_copy(update={"created_at": created_at, "sequence": None})
            entry_json = stored.model_dump_json(exclude={"sequence"})

            prior = conn.execute(
                "SELECT signature FROM audit_log ORDER BY sequence DESC LIMIT 1"
            ).fetchone()
            prior_hash = prior["signature"] if prior else None

            cursor = conn.execute(
                """
                INSERT INTO audit_log (
                    action, plan_id, performed_by, created_at,
                    entry_json, signature, prior_record_hash
                ) VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    stored.action.value,
                    stored.plan_id,
                    stored.performed_by,
                    _format_timestamp(created_at),
                    entry_json,
                    _sign(entry_json, prior_hash),
                    prior_hash,
                ),
            )
            sequence = cursor.lastrowid

        logger.info(
            "Audit %s for plan %s by %s", stored.action.value, stored.plan_id, stored.performed_by
        )
        return stored.model_copy(update={"sequence": sequence})

    def _validate(self, entry: AuditLogEntry) -> None:
        missing = [
            name for name in ("plan_id", "performed_by")
            if not getattr(entry, name, "").strip()
        ]
        if entry.action is None:
            missing.insert(0, "action")
        if missing:
            raise InvalidEntry(
                f"Audit entry is missing required fields: {', '.join(missing)}",
                {"missing": missing},
            )

    def list(
        self,
        plan_id: Optional[str] = None,
        action: Optional[AuditAction] = None,
        order: str = "desc",
        limit: Optional[int] = None,
    ) -> AuditQuery:
        """Entries ordered by `created_at` (newest first by default)."""
        if order not in ("asc", "desc"):
            raise ValidationError(f"Unknown order: {order}", {"order": order})
        if limit is not None and limit < 0:
            raise ValidationError("limit must be non-negative", {"limit": limit})
        return AuditQuery(self, plan_id, action, order, limit)

    def _iter_entries(
        self,
        plan_id: Optional[str],
        action: Optional[AuditAction],
        order: str,
        limit: Optional[int],
    ) -> Iterator[AuditLogEntry]:
        """Keyset-paginated scan so large ledgers are never loaded at once."""
        descending = order == "desc"
        cmp = "<" if descending else ">"
        direction = "DESC" if descending else "ASC"
        yielded = 0
        cursor_key = None

        while limit is None or yielded < limit:
            clauses, params = [], []
            if plan_id is not None:
                clauses.append("plan_id = ?")
                params.append(plan_id)
            if action is not None:
                clauses.append("action = ?")
                params.append(action.value)
            if cursor_key is not None:
                clauses.append(
                    f"(created_at {cmp} ? OR (created_at = ? AND sequence {cmp} ?))"
                )
                params.extend([cursor_key[0], cursor_key[0], cursor_key[1]])
            where = f"WHERE {' AND '.join(clauses)}" if clauses else ""

            page = _PAGE_SIZE if limit is None else min(_PAGE_SIZE, limit - yielded)
            rows = self.db.fetch_all(
                f"SELECT sequence, created_at, entry_json FROM audit_log {where} "
                f"ORDER BY created_at {direction}, sequence {direction} LIMIT ?",
                (*params, page),
            )
            if not rows:
                return

            for row in rows:
                entry = AuditLogEntry.model_validate_json(row["entry_json"])
                yield entry.model_copy(update={"sequence": row["sequence"]})
                yielded += 1
            cursor_key = (rows[-1]["created_at"], rows[-1]["sequence"])

            if len(rows) < page:
                return

    def verify_chain_integrity(self) -> bool:
        """Verify no entries have been tampered with."""
        rows = self.db.fetch_all(
            "SELECT entry_json, signature, prior_record_hash FROM audit_log ORDER BY sequence"
        )

        prior_sig = None
        for row in rows:
            if row["prior_record_hash"] != prior_sig:
                return False
            if _sign(row["entry_json"], row["prior_record_hash"]) != row["signature"]:
                return False
            prior_sig = row["signature"]

        return True

    def count(self, plan_id: Optional[str] = None) -> int:
        """Total number of entries, optionally for one plan."""
        if plan_id is not None:
            row = self.db.fetch_one(
                "SELECT COUNT(*) AS cnt FROM audit_log WHERE plan_id = ?", (plan_id,)
            )
        else:
            row = self.db.fetch_one("SELECT COUNT(*) AS cnt FROM audit_log")
        return row["cnt"]
