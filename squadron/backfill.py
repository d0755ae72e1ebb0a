import logging

from .db import transaction

logger = logging.getLogger(__name__)

BACKFILL_ACTOR = "system_backfill"
MIGRATION_ACTOR = "system_migration"

BACKFILL_SQL = """
INSERT INTO qualifications (pilot_id, skill_id, status, last_updated, updated_by)
SELECT p.id, s.id, 'NMQ', datetime('now'), ?
FROM pilots p
JOIN skills s ON s.wing_id = p.wing_id
WHERE NOT EXISTS (
    SELECT 1 FROM qualifications q
    WHERE q.pilot_id = p.id AND q.skill_id = s.id
)
ON CONFLICT(pilot_id, skill_id) DO NOTHING
"""


def backfill_qualifications(con, updated_by: str = BACKFILL_ACTOR) -> int:
    """Give every same-wing pilot/skill pair without a qualification an NMQ row.

    Existing rows are never touched, so a second run inserts nothing.
    Returns the number of rows inserted.
    """
    with transaction(con) as cur:
        cur.execute(BACKFILL_SQL, (updated_by,))
        inserted = cur.rowcount
    logger.info(f"Backfill by {updated_by} inserted {inserted} NMQ qualifications")
    return inserted
