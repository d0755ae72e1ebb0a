"""Read-only reporting over qualifications: readiness stats, the skill matrix,
pilot profiles and CSV export."""
import csv
import logging
from typing import Any, Dict, List, Optional

import pandas as pd

from .utils import csv_safe

logger = logging.getLogger(__name__)

COMBAT_READY_THRESHOLD = 3
QUALIFIED_STATUSES = ("FMQ", "IP")

EXPORT_COLUMNS = {
    "callsign": "Callsign",
    "first_name": "First Name",
    "last_name": "Last Name",
    "wing_name": "Wing",
    "category": "Category",
    "skill_name": "Skill",
    "status": "Status",
    "last_updated": "Last Updated",
    "updated_by": "Updated By",
}


def pilot_completion(qualified_count: int, total_qualifications: int, total_skills: int) -> float:
    denominator = total_qualifications or total_skills
    if not denominator:
        return 0.0
    return qualified_count / denominator * 100


def load_pilot_tallies(con, wing_id: Optional[int] = None) -> pd.DataFrame:
    where = "WHERE p.wing_id = :wing_id" if wing_id is not None else ""
    q = f"""
        SELECT
          p.id AS pilot_id,
          p.callsign,
          p.wing_id,
          COALESCE(SUM(CASE WHEN q.status IN ('FMQ','IP') THEN 1 ELSE 0 END), 0) AS qualified_count,
          COUNT(q.id) AS total_qualifications,
          (SELECT COUNT(*) FROM skills s WHERE s.wing_id = p.wing_id) AS total_skills
        FROM pilots p
        LEFT JOIN qualifications q ON q.pilot_id = p.id
        {where}
        GROUP BY p.id
        ORDER BY p.callsign COLLATE NOCASE
    """
    params = {"wing_id": wing_id} if wing_id is not None else {}
    return pd.read_sql_query(q, con, params=params)


def summarize_readiness(tallies: pd.DataFrame) -> Dict[str, Any]:
    total = int(len(tallies))
    if total == 0:
        return {
            "total_pilots": 0,
            "combat_ready_pilots": 0,
            "overall_readiness_percentage": 0,
            "average_completion_percentage": 0,
        }
    combat_ready = int((tallies["qualified_count"] >= COMBAT_READY_THRESHOLD).sum())

    # Pilots without rows fall back to the wing's skill count
    denominator = tallies["total_qualifications"].where(
        tallies["total_qualifications"] > 0, tallies["total_skills"]
    )
    completion = (tallies["qualified_count"] / denominator.where(denominator > 0)).fillna(0) * 100

    return {
        "total_pilots": total,
        "combat_ready_pilots": combat_ready,
        "overall_readiness_percentage": combat_ready / total * 100,
        "average_completion_percentage": float(completion.mean()),
    }


def readiness_stats(con, wing_id: Optional[int] = None) -> Dict[str, Any]:
    return summarize_readiness(load_pilot_tallies(con, wing_id))


def qualification_matrix(con, wing_id: int) -> List[Dict[str, Any]]:
    """One cell per pilot/skill pair of the wing.

    ``status`` is None where no qualification row exists yet, which callers
    display as NMQ.
    """
    rows = con.execute(
        """
        SELECT p.id AS pilot_id, s.id AS skill_id, p.callsign, s.name AS skill_name,
               s.category, q.status, q.last_updated, q.updated_by
        FROM pilots p
        JOIN skills s ON s.wing_id = p.wing_id
        LEFT JOIN qualifications q ON q.pilot_id = p.id AND q.skill_id = s.id
        WHERE p.wing_id = ?
        ORDER BY p.callsign COLLATE NOCASE, s.sort_order, s.name
        """,
        (wing_id,),
    ).fetchall()
    return [dict(r) for r in rows]


def pilot_profile(con, pilot_id: int) -> Optional[Dict[str, Any]]:
    pilot = con.execute(
        """
        SELECT p.*, w.name AS wing_name
        FROM pilots p
        JOIN wings w ON w.id = p.wing_id
        WHERE p.id = ?
        """,
        (pilot_id,),
    ).fetchone()
    if not pilot:
        return None
    quals = con.execute(
        """
        SELECT q.*, s.name AS skill_name, s.category, s.sort_order
        FROM qualifications q
        JOIN skills s ON s.id = q.skill_id
        WHERE q.pilot_id = ?
        ORDER BY s.sort_order, s.name
        """,
        (pilot_id,),
    ).fetchall()
    total_skills = con.execute(
        "SELECT COUNT(*) AS n FROM skills WHERE wing_id = ?", (pilot["wing_id"],)
    ).fetchone()["n"]
    qualified = sum(1 for q in quals if q["status"] in QUALIFIED_STATUSES)
    out = dict(pilot)
    out["qualifications"] = [dict(q) for q in quals]
    out["completion_percentage"] = pilot_completion(qualified, len(quals), total_skills)
    return out


def export_qualifications_csv(con, wing_id: Optional[int] = None) -> str:
    where = "WHERE s.wing_id = p.wing_id"
    params: Dict[str, Any] = {}
    order = "w.name, p.callsign, s.sort_order"
    if wing_id is not None:
        where += " AND p.wing_id = :wing_id"
        params["wing_id"] = wing_id
        order = "p.callsign, s.sort_order"
    q = f"""
        SELECT p.callsign, p.first_name, p.last_name, w.name AS wing_name,
               s.category, s.name AS skill_name, q.status, q.last_updated, q.updated_by
        FROM pilots p
        JOIN wings w ON w.id = p.wing_id
        CROSS JOIN skills s
        LEFT JOIN qualifications q ON q.pilot_id = p.id AND q.skill_id = s.id
        {where}
        ORDER BY {order}
    """
    df = pd.read_sql_query(q, con, params=params)
    df = df.astype(object).where(df.notna(), None)
    for col in df.columns:
        if col == "last_updated":
            df[col] = df[col].map(lambda v: "" if v is None else str(v))
        else:
            df[col] = df[col].map(csv_safe)
    df = df.rename(columns=EXPORT_COLUMNS)[list(EXPORT_COLUMNS.values())]
    logger.debug(f"Exported {len(df)} qualification rows")
    return df.to_csv(index=False, quoting=csv.QUOTE_ALL, lineterminator="\n")
