from __future__ import annotations

import logging
import sqlite3
import time
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Set

from ..observability import record_histogram
from .errors import CaseWorkflowError, PersistenceError
from .models import (
    CaseAssignment,
    CaseRecord,
    StageBackup,
    StageRecord,
    StageSnapshot,
    Transition,
    TransitionKind,
    dump_snapshot,
    load_snapshot,
    parse_iso,
    to_iso,
)
from .stages import CaseStage

logger = logging.getLogger(__name__)


SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS cases (
  case_id INTEGER PRIMARY KEY AUTOINCREMENT,
  case_number TEXT NOT NULL UNIQUE,
  client_id TEXT NOT NULL,
  project_name TEXT NOT NULL,
  current_state TEXT NOT NULL,
  assigned_to TEXT,
  version INTEGER NOT NULL DEFAULT 1,
  created_by TEXT NOT NULL,
  created_at TEXT NOT NULL,
  updated_at TEXT NOT NULL,
  closed_at TEXT
);

CREATE INDEX IF NOT EXISTS idx_cases_state ON cases(current_state);
CREATE INDEX IF NOT EXISTS idx_cases_assigned_to ON cases(assigned_to);

CREATE TABLE IF NOT EXISTS case_transitions (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  case_id INTEGER NOT NULL REFERENCES cases(case_id),
  from_state TEXT,
  to_state TEXT NOT NULL,
  transitioned_by TEXT NOT NULL,
  transition_date TEXT NOT NULL,
  duration_in_state REAL NOT NULL DEFAULT 0,
  notes TEXT,
  reference_id TEXT,
  kind TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_transitions_case_id ON case_transitions(case_id, id);
CREATE INDEX IF NOT EXISTS idx_transitions_actor ON case_transitions(transitioned_by);

CREATE TRIGGER IF NOT EXISTS trg_case_transitions_no_update
BEFORE UPDATE ON case_transitions
BEGIN
  SELECT RAISE(ABORT, 'case_transitions is append-only');
END;

CREATE TRIGGER IF NOT EXISTS trg_case_transitions_no_delete
BEFORE DELETE ON case_transitions
BEGIN
  SELECT RAISE(ABORT, 'case_transitions is append-only');
END;

CREATE TABLE IF NOT EXISTS case_assignments (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  case_id INTEGER NOT NULL REFERENCES cases(case_id),
  assigned_to TEXT,
  previous_assignee TEXT,
  assigned_by TEXT NOT NULL,
  assigned_at TEXT NOT NULL,
  notes TEXT
);

CREATE INDEX IF NOT EXISTS idx_case_assignments_case_id ON case_assignments(case_id, id);

CREATE TRIGGER IF NOT EXISTS trg_case_assignments_no_update
BEFORE UPDATE ON case_assignments
BEGIN
  SELECT RAISE(ABORT, 'case_assignments is append-only');
END;

CREATE TRIGGER IF NOT EXISTS trg_case_assignments_no_delete
BEFORE DELETE ON case_assignments
BEGIN
  SELECT RAISE(ABORT, 'case_assignments is append-only');
END;

CREATE TABLE IF NOT EXISTS stage_records (
  id TEXT PRIMARY KEY,
  case_id INTEGER NOT NULL REFERENCES cases(case_id),
  stage TEXT NOT NULL,
  record_type TEXT NOT NULL,
  snapshot TEXT NOT NULL,
  created_by TEXT NOT NULL,
  created_at TEXT NOT NULL,
  deleted_at TEXT,
  deleted_by TEXT,
  restored_from_backup INTEGER
);

CREATE INDEX IF NOT EXISTS idx_stage_records_case ON stage_records(case_id, stage);

CREATE TABLE IF NOT EXISTS stage_backups (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  case_id INTEGER NOT NULL REFERENCES cases(case_id),
  case_number TEXT NOT NULL,
  stage TEXT NOT NULL,
  stage_record_id TEXT,
  snapshot_data TEXT,
  previous_state TEXT NOT NULL,
  reverted_to_state TEXT NOT NULL,
  deleted_at TEXT NOT NULL,
  deleted_by TEXT NOT NULL,
  deletion_reason TEXT,
  recreated INTEGER NOT NULL DEFAULT 0,
  recreated_at TEXT,
  recreated_by TEXT,
  recreated_record_id TEXT
);

CREATE INDEX IF NOT EXISTS idx_stage_backups_case_stage ON stage_backups(case_id, stage);

CREATE TABLE IF NOT EXISTS document_sequences (
  doctype TEXT NOT NULL,
  fiscal_year TEXT NOT NULL,
  last_seq INTEGER NOT NULL,
  PRIMARY KEY (doctype, fiscal_year)
);
"""


class CaseStore:
    """
    SQLite persistence for cases, the transition log, assignment history,
    stage records and backups.

    Mutations go through `transaction()`, which holds an IMMEDIATE write lock
    for its whole body: the stage record write, the log append and the case
    update commit together or not at all.
    """

    def __init__(self, db_path: Path):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(str(self.db_path), check_same_thread=False, timeout=10)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL;")
        conn.execute("PRAGMA synchronous=NORMAL;")
        conn.execute("PRAGMA busy_timeout=5000;")
        conn.execute("PRAGMA foreign_keys=ON;")
        return conn

    def _init_db(self) -> None:
        conn = self._connect()
        try:
            conn.executescript(SCHEMA_SQL)
            conn.commit()
        finally:
            conn.close()

    @contextmanager
    def transaction(self, operation: str, case_id: Any = None) -> Iterator[sqlite3.Connection]:
        """
        One atomic unit of work.

        Business-rule errors roll back and propagate unchanged; storage errors
        roll back and surface as PersistenceError.
        """
        started = time.monotonic()
        conn = self._connect()
        try:
            conn.execute("BEGIN IMMEDIATE;")
            yield conn
            conn.commit()
        except CaseWorkflowError:
            conn.rollback()
            raise
        except sqlite3.Error as e:
            conn.rollback()
            logger.error(
                f"Case store transaction failed: {operation}: {e}",
                extra={"case_id": case_id, "operation": operation},
            )
            raise PersistenceError(operation, case_id=case_id, cause=e) from e
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()
            record_histogram(
                "db_transaction_duration_seconds",
                time.monotonic() - started,
                {"operation": operation},
            )

    @contextmanager
    def _read(self) -> Iterator[sqlite3.Connection]:
        conn = self._connect()
        try:
            yield conn
        finally:
            conn.close()

    # ------------------------------------------------------------------
    # Row mapping
    # ------------------------------------------------------------------

    def _row_to_case(self, row: sqlite3.Row) -> CaseRecord:
        return CaseRecord(
            case_id=int(row["case_id"]),
            case_number=row["case_number"],
            client_id=row["client_id"],
            project_name=row["project_name"],
            current_state=row["current_state"],
            assigned_to=row["assigned_to"],
            version=int(row["version"]),
            created_by=row["created_by"],
            created_at=parse_iso(row["created_at"]),
            updated_at=parse_iso(row["updated_at"]),
            closed_at=parse_iso(row["closed_at"]),
        )

    def _row_to_transition(self, row: sqlite3.Row) -> Transition:
        return Transition(
            id=int(row["id"]),
            case_id=int(row["case_id"]),
            from_state=row["from_state"],
            to_state=row["to_state"],
            transitioned_by=row["transitioned_by"],
            transition_date=parse_iso(row["transition_date"]),
            duration_in_state=float(row["duration_in_state"] or 0),
            notes=row["notes"],
            reference_id=row["reference_id"],
            kind=row["kind"],
        )

    def _row_to_assignment(self, row: sqlite3.Row) -> CaseAssignment:
        return CaseAssignment(
            id=int(row["id"]),
            case_id=int(row["case_id"]),
            assigned_to=row["assigned_to"],
            previous_assignee=row["previous_assignee"],
            assigned_by=row["assigned_by"],
            assigned_at=parse_iso(row["assigned_at"]),
            notes=row["notes"],
        )

    def _row_to_stage_record(self, row: sqlite3.Row) -> StageRecord:
        return StageRecord(
            id=row["id"],
            case_id=int(row["case_id"]),
            stage=row["stage"],
            snapshot=load_snapshot(row["snapshot"]),
            created_by=row["created_by"],
            created_at=parse_iso(row["created_at"]),
            deleted_at=parse_iso(row["deleted_at"]),
            deleted_by=row["deleted_by"],
            restored_from_backup=row["restored_from_backup"],
        )

    def _row_to_backup(self, row: sqlite3.Row) -> StageBackup:
        snapshot = load_snapshot(row["snapshot_data"]) if row["snapshot_data"] else None
        return StageBackup(
            id=int(row["id"]),
            case_id=int(row["case_id"]),
            case_number=row["case_number"],
            stage=row["stage"],
            stage_record_id=row["stage_record_id"],
            snapshot_data=snapshot,
            previous_state=row["previous_state"],
            reverted_to_state=row["reverted_to_state"],
            deleted_at=parse_iso(row["deleted_at"]),
            deleted_by=row["deleted_by"],
            deletion_reason=row["deletion_reason"],
            recreated=bool(row["recreated"]),
            recreated_at=parse_iso(row["recreated_at"]),
            recreated_by=row["recreated_by"],
            recreated_record_id=row["recreated_record_id"],
        )

    # ------------------------------------------------------------------
    # Cases
    # ------------------------------------------------------------------

    def insert_case(
        self,
        conn: sqlite3.Connection,
        *,
        case_number: str,
        client_id: str,
        project_name: str,
        state: CaseStage,
        assigned_to: Optional[str],
        created_by: str,
        now: datetime,
    ) -> int:
        cur = conn.execute(
            """
            INSERT INTO cases (
              case_number, client_id, project_name, current_state, assigned_to,
              version, created_by, created_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, 1, ?, ?, ?)
            """,
            (
                case_number,
                client_id,
                project_name,
                CaseStage(state).value,
                assigned_to,
                created_by,
                to_iso(now),
                to_iso(now),
            ),
        )
        return int(cur.lastrowid)

    def fetch_case(self, conn: sqlite3.Connection, case_id: int) -> Optional[CaseRecord]:
        row = conn.execute("SELECT * FROM cases WHERE case_id=?", (case_id,)).fetchone()
        return self._row_to_case(row) if row else None

    def get_case(self, case_id: int) -> Optional[CaseRecord]:
        with self._read() as conn:
            return self.fetch_case(conn, case_id)

    def get_case_by_number(self, case_number: str) -> Optional[CaseRecord]:
        with self._read() as conn:
            row = conn.execute("SELECT * FROM cases WHERE case_number=?", (case_number,)).fetchone()
            return self._row_to_case(row) if row else None

    def update_case_state(
        self,
        conn: sqlite3.Connection,
        *,
        case_id: int,
        expected_version: int,
        state: CaseStage,
        now: datetime,
        closed_at: Optional[datetime] = None,
    ) -> bool:
        """Compare-and-set on `version`; False means another writer got there first."""
        cur = conn.execute(
            """
            UPDATE cases
            SET current_state=?, version=version + 1, updated_at=?, closed_at=?
            WHERE case_id=? AND version=?
            """,
            (CaseStage(state).value, to_iso(now), to_iso(closed_at), case_id, expected_version),
        )
        return cur.rowcount == 1

    def update_assignment(
        self,
        conn: sqlite3.Connection,
        *,
        case_id: int,
        expected_version: int,
        assigned_to: Optional[str],
        now: datetime,
    ) -> bool:
        cur = conn.execute(
            """
            UPDATE cases
            SET assigned_to=?, version=version + 1, updated_at=?
            WHERE case_id=? AND version=?
            """,
            (assigned_to, to_iso(now), case_id, expected_version),
        )
        return cur.rowcount == 1

    def append_assignment(
        self,
        conn: sqlite3.Connection,
        *,
        case_id: int,
        assigned_to: Optional[str],
        previous_assignee: Optional[str],
        assigned_by: str,
        now: datetime,
        notes: Optional[str] = None,
    ) -> CaseAssignment:
        cur = conn.execute(
            """
            INSERT INTO case_assignments (
              case_id, assigned_to, previous_assignee, assigned_by, assigned_at, notes
            ) VALUES (?, ?, ?, ?, ?, ?)
            """,
            (case_id, assigned_to, previous_assignee, assigned_by, to_iso(now), (notes or None) and notes[:2000]),
        )
        row = conn.execute("SELECT * FROM case_assignments WHERE id=?", (cur.lastrowid,)).fetchone()
        return self._row_to_assignment(row)

    def list_assignments(self, case_id: int) -> List[CaseAssignment]:
        """Assignment history of a case, oldest first."""
        with self._read() as conn:
            rows = conn.execute(
                "SELECT * FROM case_assignments WHERE case_id=? ORDER BY id", (case_id,)
            ).fetchall()
        return [self._row_to_assignment(r) for r in rows]

    def list_cases(
        self,
        *,
        state: Optional[str] = None,
        assigned_to: Optional[str] = None,
        client_id: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> List[CaseRecord]:
        where, params = self._case_filters(state=state, assigned_to=assigned_to, client_id=client_id)
        sql = "SELECT * FROM cases"
        if where:
            sql += " WHERE " + " AND ".join(where)
        sql += " ORDER BY created_at DESC, case_id DESC LIMIT ? OFFSET ?"
        params.extend([max(1, int(limit)), max(0, int(offset))])

        with self._read() as conn:
            rows = conn.execute(sql, params).fetchall()
            return [self._row_to_case(row) for row in rows]

    def count_cases(
        self,
        *,
        state: Optional[str] = None,
        assigned_to: Optional[str] = None,
        client_id: Optional[str] = None,
    ) -> int:
        where, params = self._case_filters(state=state, assigned_to=assigned_to, client_id=client_id)
        sql = "SELECT COUNT(*) AS n FROM cases"
        if where:
            sql += " WHERE " + " AND ".join(where)
        with self._read() as conn:
            return int(conn.execute(sql, params).fetchone()["n"])

    @staticmethod
    def _case_filters(**filters: Optional[str]):
        where: List[str] = []
        params: List[Any] = []
        column_map = {"state": "current_state", "assigned_to": "assigned_to", "client_id": "client_id"}
        for key, value in filters.items():
            if value:
                where.append(f"{column_map[key]} = ?")
                params.append(value)
        return where, params

    def all_cases(self) -> List[CaseRecord]:
        with self._read() as conn:
            rows = conn.execute("SELECT * FROM cases ORDER BY case_id ASC").fetchall()
            return [self._row_to_case(row) for row in rows]

    def stage_counts(self) -> Dict[str, int]:
        with self._read() as conn:
            rows = conn.execute(
                "SELECT current_state, COUNT(*) AS n FROM cases GROUP BY current_state ORDER BY current_state"
            ).fetchall()
            return {r["current_state"]: int(r["n"]) for r in rows}

    # ------------------------------------------------------------------
    # Transition log
    # ------------------------------------------------------------------

    def last_transition(self, conn: sqlite3.Connection, case_id: int) -> Optional[Transition]:
        row = conn.execute(
            "SELECT * FROM case_transitions WHERE case_id=? ORDER BY id DESC LIMIT 1",
            (case_id,),
        ).fetchone()
        return self._row_to_transition(row) if row else None

    def append_transition(
        self,
        conn: sqlite3.Connection,
        *,
        case_id: int,
        from_state: Optional[CaseStage],
        to_state: CaseStage,
        transitioned_by: str,
        transition_date: datetime,
        duration_in_state: float,
        notes: Optional[str],
        reference_id: Optional[str],
        kind: TransitionKind,
    ) -> Transition:
        cur = conn.execute(
            """
            INSERT INTO case_transitions (
              case_id, from_state, to_state, transitioned_by, transition_date,
              duration_in_state, notes, reference_id, kind
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                case_id,
                CaseStage(from_state).value if from_state else None,
                CaseStage(to_state).value,
                transitioned_by,
                to_iso(transition_date),
                float(duration_in_state),
                (notes or None) and notes[:2000],
                reference_id,
                TransitionKind(kind).value,
            ),
        )
        row = conn.execute("SELECT * FROM case_transitions WHERE id=?", (cur.lastrowid,)).fetchone()
        return self._row_to_transition(row)

    def latest_reference(self, conn: sqlite3.Connection, case_id: int, stage: CaseStage) -> Optional[str]:
        """Reference recorded by the most recent entry into `stage` that carried one."""
        row = conn.execute(
            """
            SELECT reference_id FROM case_transitions
            WHERE case_id=? AND to_state=? AND reference_id IS NOT NULL
            ORDER BY id DESC LIMIT 1
            """,
            (case_id, CaseStage(stage).value),
        ).fetchone()
        return row["reference_id"] if row else None

    def list_transitions(self, case_id: int) -> List[Transition]:
        with self._read() as conn:
            rows = conn.execute(
                "SELECT * FROM case_transitions WHERE case_id=? ORDER BY id ASC",
                (case_id,),
            ).fetchall()
            return [self._row_to_transition(r) for r in rows]

    def transitions_by_case(self) -> Dict[int, List[Transition]]:
        """The whole log grouped per case, each list in append order."""
        out: Dict[int, List[Transition]] = {}
        with self._read() as conn:
            rows = conn.execute("SELECT * FROM case_transitions ORDER BY case_id ASC, id ASC").fetchall()
            for r in rows:
                t = self._row_to_transition(r)
                out.setdefault(t.case_id, []).append(t)
        return out

    # ------------------------------------------------------------------
    # Stage records
    # ------------------------------------------------------------------

    def insert_stage_record(self, conn: sqlite3.Connection, record: StageRecord) -> StageRecord:
        conn.execute(
            """
            INSERT INTO stage_records (
              id, case_id, stage, record_type, snapshot, created_by, created_at,
              deleted_at, deleted_by, restored_from_backup
            ) VALUES (?, ?, ?, ?, ?, ?, ?, NULL, NULL, ?)
            """,
            (
                record.id,
                record.case_id,
                record.stage.value,
                record.snapshot.record_type,
                dump_snapshot(record.snapshot),
                record.created_by,
                to_iso(record.created_at),
                record.restored_from_backup,
            ),
        )
        return record

    def fetch_stage_record(self, conn: sqlite3.Connection, record_id: str) -> Optional[StageRecord]:
        row = conn.execute("SELECT * FROM stage_records WHERE id=?", (record_id,)).fetchone()
        return self._row_to_stage_record(row) if row else None

    def get_stage_record(self, record_id: str) -> Optional[StageRecord]:
        with self._read() as conn:
            return self.fetch_stage_record(conn, record_id)

    def soft_delete_stage_record(
        self,
        conn: sqlite3.Connection,
        *,
        record_id: str,
        deleted_by: str,
        now: datetime,
    ) -> bool:
        cur = conn.execute(
            "UPDATE stage_records SET deleted_at=?, deleted_by=? WHERE id=? AND deleted_at IS NULL",
            (to_iso(now), deleted_by, record_id),
        )
        return cur.rowcount == 1

    def list_stage_records(self, case_id: int, include_deleted: bool = False) -> List[StageRecord]:
        sql = "SELECT * FROM stage_records WHERE case_id=?"
        if not include_deleted:
            sql += " AND deleted_at IS NULL"
        sql += " ORDER BY created_at ASC, rowid ASC"
        with self._read() as conn:
            return [self._row_to_stage_record(r) for r in conn.execute(sql, (case_id,)).fetchall()]

    def deleted_reference_ids(self, case_id: int) -> Set[str]:
        """Stage record ids of this case that have been soft-deleted."""
        with self._read() as conn:
            rows = conn.execute(
                "SELECT id FROM stage_records WHERE case_id=? AND deleted_at IS NOT NULL",
                (case_id,),
            ).fetchall()
            return {r["id"] for r in rows}

    # ------------------------------------------------------------------
    # Stage backups
    # ------------------------------------------------------------------

    def insert_backup(
        self,
        conn: sqlite3.Connection,
        *,
        case: CaseRecord,
        stage: CaseStage,
        stage_record_id: Optional[str],
        snapshot: Optional[StageSnapshot],
        previous_state: CaseStage,
        reverted_to_state: CaseStage,
        deleted_by: str,
        deletion_reason: Optional[str],
        now: datetime,
    ) -> StageBackup:
        cur = conn.execute(
            """
            INSERT INTO stage_backups (
              case_id, case_number, stage, stage_record_id, snapshot_data,
              previous_state, reverted_to_state, deleted_at, deleted_by, deletion_reason
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                case.case_id,
                case.case_number,
                CaseStage(stage).value,
                stage_record_id,
                dump_snapshot(snapshot) if snapshot is not None else None,
                CaseStage(previous_state).value,
                CaseStage(reverted_to_state).value,
                to_iso(now),
                deleted_by,
                (deletion_reason or "")[:500] or None,
            ),
        )
        return self.fetch_backup(conn, int(cur.lastrowid))

    def fetch_backup(self, conn: sqlite3.Connection, backup_id: int) -> Optional[StageBackup]:
        row = conn.execute("SELECT * FROM stage_backups WHERE id=?", (backup_id,)).fetchone()
        return self._row_to_backup(row) if row else None

    def get_backup(self, backup_id: int) -> Optional[StageBackup]:
        with self._read() as conn:
            return self.fetch_backup(conn, backup_id)

    def mark_backup_recreated(
        self,
        conn: sqlite3.Connection,
        *,
        backup_id: int,
        recreated_by: str,
        recreated_record_id: Optional[str],
        now: datetime,
    ) -> bool:
        """One-shot: only flips a backup that has not been consumed yet."""
        cur = conn.execute(
            """
            UPDATE stage_backups
            SET recreated=1, recreated_at=?, recreated_by=?, recreated_record_id=?
            WHERE id=? AND recreated=0
            """,
            (to_iso(now), recreated_by, recreated_record_id, backup_id),
        )
        return cur.rowcount == 1

    def list_backups(
        self,
        *,
        case_id: Optional[int] = None,
        stage: Optional[str] = None,
        include_recreated: bool = True,
    ) -> List[StageBackup]:
        where: List[str] = []
        params: List[Any] = []
        if case_id is not None:
            where.append("case_id = ?")
            params.append(case_id)
        if stage:
            where.append("stage = ?")
            params.append(CaseStage(stage).value)
        if not include_recreated:
            where.append("recreated = 0")

        sql = "SELECT * FROM stage_backups"
        if where:
            sql += " WHERE " + " AND ".join(where)
        sql += " ORDER BY deleted_at DESC, id DESC"

        with self._read() as conn:
            return [self._row_to_backup(r) for r in conn.execute(sql, params).fetchall()]
