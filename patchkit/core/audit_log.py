"""Append-only, hash-chained audit log backed by SQLite.

Every pipeline action that changes deployed state writes one entry here
before the action is reported back to the caller.  The status view and
the JSONL export are projections of this table.

Design:
- Append-only: only ``append()``/``record()`` write; no update, no delete.
- Hash-chained per run: each entry includes SHA-256 of the previous one.
- WAL journal mode so the detached monitor can write while the CLI reads.
"""

from __future__ import annotations

import json
import logging
import sqlite3
from datetime import datetime
from pathlib import Path
from typing import Any

from patchkit.core.hasher import canonical_json_bytes, compute_entry_hash
from patchkit.models.ledger import AuditEntry

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# DDL
# ---------------------------------------------------------------------------

_CREATE_AUDIT = """
CREATE TABLE IF NOT EXISTS audit_log (
    id                  INTEGER PRIMARY KEY AUTOINCREMENT,
    entry_id            TEXT NOT NULL UNIQUE,
    run_id              TEXT NOT NULL,
    action              TEXT NOT NULL,
    phase               TEXT NOT NULL DEFAULT '',
    outcome             TEXT NOT NULL DEFAULT '',
    timestamp_utc       TEXT NOT NULL,
    details_json        TEXT NOT NULL DEFAULT '{}',
    previous_entry_hash TEXT NOT NULL DEFAULT '',
    entry_hash          TEXT NOT NULL UNIQUE
);
"""

_CREATE_IDX_RUN = """
CREATE INDEX IF NOT EXISTS idx_audit_run ON audit_log(run_id, id);
"""


class AuditIntegrityError(RuntimeError):
    """Raised when the hash chain is broken."""


class AuditLog:
    """Append-only, hash-chained audit log.

    Parameters
    ----------
    db_path:
        Path to the SQLite database file.  Created if it does not exist.
    """

    def __init__(self, db_path: Path) -> None:
        self._db_path = Path(db_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_schema()

    @property
    def db_path(self) -> Path:
        return self._db_path

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(str(self._db_path), check_same_thread=False)
        conn.execute("PRAGMA journal_mode=WAL")
        return conn

    def _init_schema(self) -> None:
        with self._connect() as conn:
            conn.execute(_CREATE_AUDIT)
            conn.execute(_CREATE_IDX_RUN)
            conn.commit()

    # ------------------------------------------------------------------
    # Core: append-only write
    # ------------------------------------------------------------------

    def append(self, entry: AuditEntry) -> AuditEntry:
        """Seal *entry* onto its run's chain and persist it.

        This is the ONLY write path.  There is no update or delete.
        """
        previous_hash = self._get_latest_hash(entry.run_id)

        entry_dict = entry.model_dump(mode="json")
        entry_dict["previous_entry_hash"] = previous_hash
        entry_dict["entry_hash"] = ""

        sealed = entry.model_copy(
            update={
                "previous_entry_hash": previous_hash,
                "entry_hash": compute_entry_hash(entry_dict),
            }
        )
        self._insert(sealed)
        logger.debug(
            "Audit %s/%s %s -> %s", sealed.run_id, sealed.action, sealed.phase, sealed.outcome
        )
        return sealed

    def record(
        self,
        run_id: str,
        action: str,
        *,
        phase: str = "",
        outcome: str = "",
        **details: Any,
    ) -> AuditEntry:
        """Convenience wrapper: build and append an entry in one call."""
        return self.append(
            AuditEntry(
                run_id=run_id,
                action=action,
                phase=phase,
                outcome=outcome,
                details=details,
            )
        )

    def _insert(self, entry: AuditEntry) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO audit_log
                    (entry_id, run_id, action, phase, outcome, timestamp_utc,
                     details_json, previous_entry_hash, entry_hash)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    entry.entry_id,
                    entry.run_id,
                    entry.action,
                    entry.phase,
                    entry.outcome,
                    entry.timestamp_utc.isoformat()
                    if isinstance(entry.timestamp_utc, datetime)
                    else entry.timestamp_utc,
                    json.dumps(entry.model_dump(mode="json")["details"]),
                    entry.previous_entry_hash,
                    entry.entry_hash,
                ),
            )
            conn.commit()

    def _get_latest_hash(self, run_id: str) -> str:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT entry_hash FROM audit_log WHERE run_id = ? ORDER BY id DESC LIMIT 1",
                (run_id,),
            ).fetchone()
        return row[0] if row else ""

    # ------------------------------------------------------------------
    # Query methods (read-only)
    # ------------------------------------------------------------------

    def get_run_entries(self, run_id: str) -> list[AuditEntry]:
        """Return all entries for a run, oldest first."""
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM audit_log WHERE run_id = ? ORDER BY id ASC",
                (run_id,),
            ).fetchall()
        return [self._row_to_entry(row) for row in rows]

    def recent(self, limit: int = 20, *, action: str | None = None) -> list[AuditEntry]:
        """Return the most recent entries across all runs, newest first."""
        query = "SELECT * FROM audit_log"
        params: tuple[Any, ...] = ()
        if action:
            query += " WHERE action = ?"
            params = (action,)
        query += " ORDER BY id DESC LIMIT ?"
        with self._connect() as conn:
            rows = conn.execute(query, (*params, limit)).fetchall()
        return [self._row_to_entry(row) for row in rows]

    def get_all_run_ids(self) -> list[str]:
        """Return distinct run ids, most recently started first."""
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT run_id FROM audit_log GROUP BY run_id ORDER BY MIN(id) DESC"
            ).fetchall()
        return [row[0] for row in rows]

    def count(self) -> int:
        with self._connect() as conn:
            return conn.execute("SELECT COUNT(*) FROM audit_log").fetchone()[0]

    # ------------------------------------------------------------------
    # Chain verification
    # ------------------------------------------------------------------

    def verify_chain(self, run_id: str) -> bool:
        """Recompute every hash for a run and check the links.

        Returns True if the chain is valid, raises AuditIntegrityError otherwise.
        """
        prev_hash = ""
        for entry in self.get_run_entries(run_id):
            if entry.previous_entry_hash != prev_hash:
                raise AuditIntegrityError(
                    f"Chain broken at entry {entry.entry_id}: "
                    f"expected previous_hash={prev_hash!r}, "
                    f"got {entry.previous_entry_hash!r}"
                )
            expected_hash = compute_entry_hash(entry.model_dump(mode="json"))
            if entry.entry_hash != expected_hash:
                raise AuditIntegrityError(
                    f"Tampered entry {entry.entry_id}: "
                    f"expected hash={expected_hash!r}, got {entry.entry_hash!r}"
                )
            prev_hash = entry.entry_hash
        return True

    def verify_all(self) -> bool:
        for run_id in self.get_all_run_ids():
            self.verify_chain(run_id)
        return True

    # ------------------------------------------------------------------
    # Export
    # ------------------------------------------------------------------

    def export_jsonl(self, path: Path) -> int:
        """Write every entry, oldest first, as one canonical JSON object per line."""
        with self._connect() as conn:
            rows = conn.execute("SELECT * FROM audit_log ORDER BY id ASC").fetchall()
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "wb") as fh:
            for row in rows:
                fh.write(canonical_json_bytes(self._row_to_entry(row).model_dump(mode="json")))
                fh.write(b"\n")
        return len(rows)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _row_to_entry(row: tuple) -> AuditEntry:
        (
            _id,
            entry_id,
            run_id,
            action,
            phase,
            outcome,
            timestamp_utc,
            details_json,
            previous_entry_hash,
            entry_hash,
        ) = row
        return AuditEntry(
            entry_id=entry_id,
            run_id=run_id,
            action=action,
            phase=phase,
            outcome=outcome,
            timestamp_utc=timestamp_utc,
            details=json.loads(details_json),
            previous_entry_hash=previous_entry_hash,
            entry_hash=entry_hash,
        )
