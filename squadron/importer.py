"""Bulk qualification import.

Records arrive as ``{callsign, skill_name, status}`` string triples, usually
parsed from an uploaded CSV. Each record is validated against the pilots and
skills tables and merged into ``qualifications`` with last-writer-wins upsert
semantics. A record that fails validation is skipped and reported; the rest
of the batch still applies. The whole batch shares one transaction, so an
unexpected store error leaves nothing behind.
"""
import io
import logging
import sqlite3
from typing import Any, Dict, List, Sequence, Tuple

import pandas as pd

from .auth import can_manage_wing
from .db import transaction
from .utils import strip_or_none

logger = logging.getLogger(__name__)

MAX_IMPORT_RECORDS = 1000
MAX_REPORTED_ERRORS = 20

# Ordered by proficiency, lowest first
VALID_STATUSES = ("NMQ", "MQT", "FMQ", "IP")

CSV_COLUMN_HELP = "CSV must have Callsign, Skill (or Skill_Name), and Status columns"


class BatchTooLargeError(ValueError):
    pass


class RecordRejected(Exception):
    """A single import record failed validation and is skipped."""


def parse_qualification_csv(content: bytes) -> List[Dict[str, str]]:
    df = pd.read_csv(io.BytesIO(content), dtype=str, keep_default_na=False, skip_blank_lines=True)
    columns = {str(c).strip().strip('"').lower(): c for c in df.columns}
    callsign_col = columns.get("callsign")
    skill_col = columns.get("skill") or columns.get("skill_name")
    status_col = columns.get("status")
    if callsign_col is None or skill_col is None or status_col is None:
        raise ValueError(CSV_COLUMN_HELP)
    records = []
    for _, row in df.iterrows():
        records.append({
            "callsign": row[callsign_col],
            "skill_name": row[skill_col],
            "status": row[status_col],
        })
    return records


def upsert_qualification(cur, pilot_id: int, skill_id: int, status: str, updated_by: str) -> None:
    cur.execute(
        """
        INSERT INTO qualifications (pilot_id, skill_id, status, last_updated, updated_by)
        VALUES (?, ?, ?, datetime('now'), ?)
        ON CONFLICT(pilot_id, skill_id) DO UPDATE SET
          status=excluded.status,
          last_updated=excluded.last_updated,
          updated_by=excluded.updated_by
        """,
        (pilot_id, skill_id, status, updated_by),
    )


def _resolve_pilot(cur, callsign: str, caller: Dict[str, Any]) -> sqlite3.Row:
    rows = cur.execute(
        "SELECT id, wing_id FROM pilots WHERE casefold(callsign) = casefold(?) ORDER BY id",
        (callsign,),
    ).fetchall()
    if not rows:
        raise RecordRejected(f'pilot "{callsign}" not found')
    if len(rows) > 1 and caller.get("wing_id") is not None:
        own = [r for r in rows if r["wing_id"] == caller["wing_id"]]
        if own:
            rows = own
    if len(rows) > 1:
        raise RecordRejected(f'callsign "{callsign}" matches {len(rows)} pilots')
    return rows[0]


def _resolve_skill(cur, skill_name: str, pilot_wing_id: int) -> sqlite3.Row:
    rows = cur.execute(
        "SELECT id, wing_id FROM skills WHERE casefold(name) = casefold(?) ORDER BY id",
        (skill_name,),
    ).fetchall()
    if not rows:
        raise RecordRejected(f'skill "{skill_name}" not found')
    in_wing = [r for r in rows if r["wing_id"] == pilot_wing_id]
    if len(in_wing) > 1:
        raise RecordRejected(f'skill "{skill_name}" matches {len(in_wing)} skills in the pilot\'s wing')
    # A foreign-wing match is returned so the wing check can report it
    return in_wing[0] if in_wing else rows[0]


def validate_record(cur, record: Any, caller: Dict[str, Any]) -> Tuple[int, int, str]:
    fields = record if isinstance(record, dict) else {}
    callsign = strip_or_none(fields.get("callsign"))
    skill_name = strip_or_none(fields.get("skill_name"))
    raw_status = strip_or_none(fields.get("status"))
    if not (callsign and skill_name and raw_status):
        raise RecordRejected("missing callsign, skill_name, or status")

    status = raw_status.upper()
    if status not in VALID_STATUSES:
        raise RecordRejected(f'invalid status "{raw_status}"')

    pilot = _resolve_pilot(cur, callsign, caller)
    skill = _resolve_skill(cur, skill_name, pilot["wing_id"])

    if not can_manage_wing(caller, pilot["wing_id"]):
        raise RecordRejected(f'pilot "{callsign}" is not in your wing')
    if skill["wing_id"] != pilot["wing_id"]:
        raise RecordRejected(f'skill "{skill_name}" does not belong to pilot\'s wing')
    if not can_manage_wing(caller, skill["wing_id"]):
        raise RecordRejected(f'skill "{skill_name}" is not in your wing')

    return pilot["id"], skill["id"], status


def import_qualifications(con: sqlite3.Connection, records: Sequence[Any], caller: Dict[str, Any]) -> Dict[str, Any]:
    """Validate and merge ``records`` on behalf of ``caller``.

    Returns ``{"imported", "skipped", "errors"}`` where ``errors`` holds at most
    MAX_REPORTED_ERRORS messages. Raises BatchTooLargeError before touching the
    store when the batch exceeds MAX_IMPORT_RECORDS. Any other exception rolls
    back the entire batch and propagates.
    """
    if len(records) > MAX_IMPORT_RECORDS:
        raise BatchTooLargeError(f"Maximum {MAX_IMPORT_RECORDS} records per import")

    imported = 0
    skipped = 0
    errors: List[str] = []
    actor = caller.get("email")

    with transaction(con) as cur:
        for i, record in enumerate(records, start=1):
            try:
                pilot_id, skill_id, status = validate_record(cur, record, caller)
            except RecordRejected as e:
                skipped += 1
                errors.append(f"Row {i}: {e}")
                continue
            upsert_qualification(cur, pilot_id, skill_id, status, actor)
            imported += 1

    logger.info(f"Qualification import by {actor}: {imported} imported, {skipped} skipped")
    return {"imported": imported, "skipped": skipped, "errors": errors[:MAX_REPORTED_ERRORS]}
