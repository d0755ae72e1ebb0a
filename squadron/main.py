import os
import secrets
import logging
import sqlite3
from typing import Optional, Dict, Any, List

from fastapi import FastAPI, UploadFile, File, HTTPException, Depends, Response
from fastapi.middleware.cors import CORSMiddleware

from .db import connect, transaction
from .schema_sql import SCHEMA_SQL
from .utils import strip_or_none, to_int_or_none, is_hex_color
from .importer import (
    BatchTooLargeError,
    VALID_STATUSES,
    import_qualifications,
    parse_qualification_csv,
    upsert_qualification,
)
from .backfill import backfill_qualifications, BACKFILL_ACTOR, MIGRATION_ACTOR
from .reports import readiness_stats, qualification_matrix, pilot_profile, export_qualifications_csv
from .auth import (
    ROLE_LABELS,
    create_session,
    create_user,
    delete_session,
    ensure_default_admin,
    require_role,
    require_user,
    require_wing_access,
    set_password,
    verify_password,
)

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title="Squadron Qualification Tracker")


# CORS configurable through environment variables
def _parse_csv_env(s: str) -> list[str]:
    parts = [p.strip() for p in (s or "").split(",")]
    return [p for p in parts if p]

_origins_env = os.getenv("ALLOWED_ORIGINS", "http://localhost:5173")
_methods_env = os.getenv("CORS_ALLOW_METHODS", "*")
_headers_env = os.getenv("CORS_ALLOW_HEADERS", "*")
_creds_env = os.getenv("CORS_ALLOW_CREDENTIALS", "true").lower() in ("1", "true", "yes")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"] if _origins_env.strip() == "*" else _parse_csv_env(_origins_env),
    allow_credentials=_creds_env,
    allow_methods=["*"] if _methods_env.strip() == "*" else _parse_csv_env(_methods_env),
    allow_headers=["*"] if _headers_env.strip() == "*" else _parse_csv_env(_headers_env),
)

DEFAULT_CATEGORY_COLOR = "#3B82F6"
SETTINGS_KEYS = {"nav_title", "nav_color", "nav_icon", "app_subtitle"}
MAX_SETTING_LENGTH = 500

USER_SELECT = """
    SELECT
      u.id, u.email, u.role, u.created_at, u.updated_at,
      p.id AS pilot_id, p.callsign, p.first_name, p.last_name, p.wing_id,
      w.name AS wing_name, p.board_number
    FROM users u
    LEFT JOIN pilots p ON p.user_id = u.id
    LEFT JOIN wings w ON w.id = p.wing_id
"""


@app.on_event("startup")
def startup():
    with connect() as con:
        cur = con.cursor()
        cur.executescript(SCHEMA_SQL)
        ensure_default_admin(cur)
        con.commit()
        backfill_qualifications(con, MIGRATION_ACTOR)
    logger.info("Schema ready")


# ---------------------- Health ----------------------
@app.get("/api/health")
def health(response: Response):
    try:
        with connect() as con:
            con.execute("SELECT 1").fetchone()
    except sqlite3.Error:
        logger.exception("Health check failed")
        response.status_code = 503
        return {"status": "error", "db": "unreachable"}
    return {"status": "ok", "db": "connected"}


# ---------------------- Auth ----------------------
def _user_summary(cur, user_id: int) -> Optional[Dict[str, Any]]:
    row = cur.execute(
        """
        SELECT u.id, u.email, u.role, p.id AS pilot_id, p.wing_id, w.name AS wing_name
        FROM users u
        LEFT JOIN pilots p ON p.user_id = u.id
        LEFT JOIN wings w ON w.id = p.wing_id
        WHERE u.id=?
        """,
        (user_id,),
    ).fetchone()
    return dict(row) if row else None


@app.post("/api/auth/login")
def login(payload: Dict[str, Any], response: Response):
    email = payload.get("email")
    password = payload.get("password")
    if not email or not password:
        raise HTTPException(status_code=400, detail="Email and password are required")
    if not isinstance(email, str) or len(email) > 255:
        raise HTTPException(status_code=400, detail="Invalid email")
    if not isinstance(password, str) or len(password) > 72:
        raise HTTPException(status_code=400, detail="Invalid password")
    with connect() as con:
        cur = con.cursor()
        row = cur.execute(
            "SELECT id, password_hash, password_salt FROM users WHERE email=?",
            (email.strip().lower(),),
        ).fetchone()
        if not row or not verify_password(password, row["password_salt"], row["password_hash"]):
            raise HTTPException(status_code=401, detail="Invalid email or password")
        session = create_session(cur, row["id"])
        con.commit()
        secure = os.getenv("COOKIE_SECURE", "false").lower() in ("1", "true", "yes")
        response.set_cookie(key="session", value=session["token"], httponly=True, samesite="lax", path="/", secure=secure)
        return {
            "token": session["token"],
            "expires_at": session["expires_at"],
            "user": _user_summary(cur, row["id"]),
        }


@app.post("/api/auth/logout")
def logout(response: Response, current_user: Dict[str, Any] = Depends(require_user)):
    with connect() as con:
        delete_session(con.cursor(), current_user["session_token"])
        con.commit()
    response.delete_cookie("session", path="/")
    return {"ok": True}


@app.post("/api/auth/register")
def register():
    raise HTTPException(status_code=403, detail="Self-registration is disabled. Contact an administrator.")


@app.get("/api/auth/me")
def me(current_user: Dict[str, Any] = Depends(require_user)):
    with connect() as con:
        user = _user_summary(con.cursor(), current_user["id"])
    if not user:
        raise HTTPException(status_code=404, detail="User not found")
    return {"user": user, "expires_at": current_user["session_expires_at"]}


# ---------------------- Wings ----------------------
def _get_wing(cur, wing_id: int):
    w = cur.execute("SELECT * FROM wings WHERE id=?", (wing_id,)).fetchone()
    if not w:
        raise HTTPException(status_code=404, detail="Wing not found")
    return w


@app.get("/api/wings")
def list_wings(current_user: Dict[str, Any] = Depends(require_user)):
    with connect() as con:
        rows = con.execute("SELECT * FROM wings ORDER BY name").fetchall()
        return [dict(r) for r in rows]


@app.get("/api/wings/{wing_id}")
def get_wing(wing_id: int, current_user: Dict[str, Any] = Depends(require_user)):
    with connect() as con:
        cur = con.cursor()
        w = _get_wing(cur, wing_id)
        skills = cur.execute(
            "SELECT * FROM skills WHERE wing_id=? ORDER BY sort_order, name", (wing_id,)
        ).fetchall()
        return {**dict(w), "skills": [dict(s) for s in skills]}


@app.post("/api/wings", status_code=201)
def create_wing(payload: Dict[str, Any], current_user: Dict[str, Any] = Depends(require_role("admin"))):
    name = strip_or_none(payload.get("name"))
    if not name:
        raise HTTPException(status_code=400, detail="Wing name is required")
    with connect() as con:
        cur = con.cursor()
        try:
            cur.execute("INSERT INTO wings(name) VALUES (?)", (name,))
        except sqlite3.IntegrityError:
            raise HTTPException(status_code=409, detail="A wing with this name already exists")
        con.commit()
        return dict(_get_wing(cur, cur.lastrowid))


@app.put("/api/wings/{wing_id}")
def rename_wing(wing_id: int, payload: Dict[str, Any], current_user: Dict[str, Any] = Depends(require_role("admin"))):
    name = strip_or_none(payload.get("name"))
    if not name:
        raise HTTPException(status_code=400, detail="Wing name is required")
    with connect() as con:
        cur = con.cursor()
        _get_wing(cur, wing_id)
        try:
            cur.execute("UPDATE wings SET name=?, updated_at=datetime('now') WHERE id=?", (name, wing_id))
        except sqlite3.IntegrityError:
            raise HTTPException(status_code=409, detail="A wing with this name already exists")
        con.commit()
        return dict(_get_wing(cur, wing_id))


@app.delete("/api/wings/{wing_id}")
def delete_wing(wing_id: int, current_user: Dict[str, Any] = Depends(require_role("admin"))):
    with connect() as con:
        cur = con.cursor()
        _get_wing(cur, wing_id)
        n = cur.execute("SELECT COUNT(*) AS n FROM pilots WHERE wing_id=?", (wing_id,)).fetchone()["n"]
        if n > 0:
            raise HTTPException(status_code=400, detail="Cannot delete a wing that has pilots assigned to it")
        cur.execute("DELETE FROM wings WHERE id=?", (wing_id,))
        con.commit()
        return {"deleted": True}


# ---------------------- Categories ----------------------
@app.get("/api/wings/{wing_id}/category-colors")
def get_category_colors(wing_id: int, current_user: Dict[str, Any] = Depends(require_user)):
    with connect() as con:
        rows = con.execute(
            "SELECT category, color FROM category_colors WHERE wing_id=? ORDER BY sort_order, category",
            (wing_id,),
        ).fetchall()
        return {r["category"]: r["color"] for r in rows}


@app.get("/api/wings/{wing_id}/categories")
def list_categories(wing_id: int, current_user: Dict[str, Any] = Depends(require_user)):
    with connect() as con:
        names = [
            r["category"]
            for r in con.execute(
                "SELECT category FROM skills WHERE wing_id=? GROUP BY category ORDER BY MIN(id)",
                (wing_id,),
            ).fetchall()
        ]
        meta = {
            r["category"]: r
            for r in con.execute(
                "SELECT category, color, sort_order FROM category_colors WHERE wing_id=?", (wing_id,)
            ).fetchall()
        }
    out = []
    for idx, name in enumerate(names):
        existing = meta.get(name)
        out.append({
            "category": name,
            "color": existing["color"] if existing else DEFAULT_CATEGORY_COLOR,
            "sort_order": existing["sort_order"] if existing else idx,
        })
    out.sort(key=lambda c: (c["sort_order"], c["category"]))
    return out


def _require_color(color: Any) -> str:
    if not color:
        raise HTTPException(status_code=400, detail="color is required")
    if not is_hex_color(color):
        raise HTTPException(status_code=400, detail="color must be a valid hex color (e.g. #3B82F6)")
    return color


CATEGORY_SCOPE_DETAIL = "Instructors can only manage categories in their own wing"


@app.put("/api/wings/{wing_id}/category-colors")
def set_category_color(
    wing_id: int,
    payload: Dict[str, Any],
    current_user: Dict[str, Any] = Depends(require_role("instructor", "admin")),
):
    category = strip_or_none(payload.get("category"))
    if not category or not payload.get("color"):
        raise HTTPException(status_code=400, detail="category and color are required")
    color = _require_color(payload.get("color"))
    require_wing_access(current_user, wing_id, CATEGORY_SCOPE_DETAIL)
    with connect() as con:
        _get_wing(con.cursor(), wing_id)
        con.execute(
            """
            INSERT INTO category_colors(wing_id, category, color) VALUES (?,?,?)
            ON CONFLICT(wing_id, category) DO UPDATE SET color=excluded.color
            """,
            (wing_id, category, color),
        )
        con.commit()
    return {"category": category, "color": color}


@app.post("/api/wings/{wing_id}/categories", status_code=201)
def create_category(
    wing_id: int,
    payload: Dict[str, Any],
    current_user: Dict[str, Any] = Depends(require_role("instructor", "admin")),
):
    category = strip_or_none(payload.get("category"))
    if not category:
        raise HTTPException(status_code=400, detail="category name is required")
    color = _require_color(payload.get("color"))
    require_wing_access(current_user, wing_id, CATEGORY_SCOPE_DETAIL)
    with connect() as con:
        cur = con.cursor()
        _get_wing(cur, wing_id)
        next_order = cur.execute(
            "SELECT COALESCE(MAX(sort_order), -1) + 1 AS n FROM category_colors WHERE wing_id=?", (wing_id,)
        ).fetchone()["n"]
        try:
            cur.execute(
                "INSERT INTO category_colors(wing_id, category, color, sort_order) VALUES (?,?,?,?)",
                (wing_id, category, color, next_order),
            )
        except sqlite3.IntegrityError:
            raise HTTPException(status_code=409, detail="A category with this name already exists for this wing")
        con.commit()
    return {"category": category, "color": color, "sort_order": next_order}


@app.put("/api/wings/{wing_id}/categories/reorder")
def reorder_categories(
    wing_id: int,
    payload: Dict[str, Any],
    current_user: Dict[str, Any] = Depends(require_role("instructor", "admin")),
):
    order = payload.get("categoryOrder")
    if not isinstance(order, list) or not order:
        raise HTTPException(status_code=400, detail="categoryOrder array is required")
    require_wing_access(current_user, wing_id, CATEGORY_SCOPE_DETAIL)
    with connect() as con:
        with transaction(con) as cur:
            for i, name in enumerate(order):
                cur.execute(
                    """
                    INSERT INTO category_colors(wing_id, category, sort_order, color) VALUES (?,?,?,?)
                    ON CONFLICT(wing_id, category) DO UPDATE SET sort_order=excluded.sort_order
                    """,
                    (wing_id, str(name), i, DEFAULT_CATEGORY_COLOR),
                )
    return {"reordered": True}


@app.delete("/api/wings/{wing_id}/categories/{category}")
def delete_category(
    wing_id: int,
    category: str,
    current_user: Dict[str, Any] = Depends(require_role("instructor", "admin")),
):
    require_wing_access(current_user, wing_id, CATEGORY_SCOPE_DETAIL)
    with connect() as con:
        # Only the color/order metadata goes; skills keep their category label
        con.execute("DELETE FROM category_colors WHERE wing_id=? AND category=?", (wing_id, category))
        con.commit()
    return {"deleted": True}


# ---------------------- Skills ----------------------
@app.get("/api/skills")
def list_skills(wing_id: Optional[int] = None, current_user: Dict[str, Any] = Depends(require_user)):
    with connect() as con:
        if wing_id is not None:
            rows = con.execute(
                "SELECT * FROM skills WHERE wing_id=? ORDER BY sort_order, name", (wing_id,)
            ).fetchall()
        else:
            rows = con.execute("SELECT * FROM skills ORDER BY wing_id, sort_order, name").fetchall()
        return [dict(r) for r in rows]


@app.post("/api/wings/{wing_id}/skills", status_code=201)
def add_skill(wing_id: int, payload: Dict[str, Any], current_user: Dict[str, Any] = Depends(require_role("admin"))):
    name = strip_or_none(payload.get("name"))
    category = strip_or_none(payload.get("category"))
    if not name or not category:
        raise HTTPException(status_code=400, detail="Skill name and category are required")
    with connect() as con:
        cur = con.cursor()
        _get_wing(cur, wing_id)
        order = to_int_or_none(payload.get("sort_order"))
        if order is None:
            order = cur.execute(
                "SELECT COALESCE(MAX(sort_order), 0) + 1 AS n FROM skills WHERE wing_id=?", (wing_id,)
            ).fetchone()["n"]
        cur.execute(
            "INSERT INTO skills(wing_id, name, category, description, sort_order) VALUES (?,?,?,?,?)",
            (wing_id, name, category, strip_or_none(payload.get("description")), order),
        )
        skill_id = cur.lastrowid
        con.commit()
        return dict(cur.execute("SELECT * FROM skills WHERE id=?", (skill_id,)).fetchone())


@app.put("/api/wings/{wing_id}/skills/reorder")
def reorder_skills(wing_id: int, payload: Dict[str, Any], current_user: Dict[str, Any] = Depends(require_role("admin"))):
    skill_ids = payload.get("skill_ids")
    if not isinstance(skill_ids, list) or not skill_ids:
        raise HTTPException(status_code=400, detail="skill_ids must be a non-empty array of skill IDs in the desired order")
    if not all(isinstance(i, int) and not isinstance(i, bool) for i in skill_ids):
        raise HTTPException(status_code=400, detail="skill_ids must contain integer skill IDs")
    with connect() as con:
        with transaction(con) as cur:
            marks = ",".join("?" for _ in skill_ids)
            found = cur.execute(
                f"SELECT COUNT(*) AS n FROM skills WHERE wing_id=? AND id IN ({marks})",
                (wing_id, *skill_ids),
            ).fetchone()["n"]
            if found != len(set(skill_ids)) or len(set(skill_ids)) != len(skill_ids):
                raise HTTPException(status_code=400, detail="Some skill IDs are invalid or do not belong to this wing")
            for i, skill_id in enumerate(skill_ids, start=1):
                cur.execute("UPDATE skills SET sort_order=? WHERE id=? AND wing_id=?", (i, skill_id, wing_id))
        rows = con.execute("SELECT * FROM skills WHERE wing_id=? ORDER BY sort_order, name", (wing_id,)).fetchall()
        return [dict(r) for r in rows]


@app.put("/api/wings/{wing_id}/skills/{skill_id}")
def update_skill(
    wing_id: int,
    skill_id: int,
    payload: Dict[str, Any],
    current_user: Dict[str, Any] = Depends(require_role("admin")),
):
    fields = {}
    for k in ("name", "category", "description"):
        v = strip_or_none(payload.get(k))
        if v:
            fields[k] = v
    if payload.get("sort_order") is not None:
        order = to_int_or_none(payload.get("sort_order"))
        if order is None:
            raise HTTPException(status_code=400, detail="sort_order must be an integer")
        fields["sort_order"] = order
    if not fields:
        raise HTTPException(status_code=400, detail="No fields to update")
    with connect() as con:
        cur = con.cursor()
        sets = ", ".join(f"{k}=:{k}" for k in fields)
        cur.execute(
            f"UPDATE skills SET {sets} WHERE id=:id AND wing_id=:wing_id",
            {**fields, "id": skill_id, "wing_id": wing_id},
        )
        if cur.rowcount == 0:
            raise HTTPException(status_code=404, detail="Skill not found")
        con.commit()
        return dict(cur.execute("SELECT * FROM skills WHERE id=?", (skill_id,)).fetchone())


@app.delete("/api/wings/{wing_id}/skills/{skill_id}")
def delete_skill(wing_id: int, skill_id: int, current_user: Dict[str, Any] = Depends(require_role("admin"))):
    with connect() as con:
        cur = con.cursor()
        cur.execute("DELETE FROM skills WHERE id=? AND wing_id=?", (skill_id, wing_id))
        if cur.rowcount == 0:
            raise HTTPException(status_code=404, detail="Skill not found")
        con.commit()
        return {"deleted": True}


# ---------------------- Pilots ----------------------
PILOT_SELECT = """
    SELECT p.*, w.name AS wing_name
    FROM pilots p
    JOIN wings w ON w.id = p.wing_id
"""


@app.post("/api/pilots", status_code=201)
def create_pilot(payload: Dict[str, Any], current_user: Dict[str, Any] = Depends(require_role("instructor", "admin"))):
    callsign = strip_or_none(payload.get("callsign"))
    first_name = strip_or_none(payload.get("first_name"))
    last_name = strip_or_none(payload.get("last_name"))
    email = strip_or_none(payload.get("email"))
    if not (callsign and first_name and last_name and email):
        raise HTTPException(status_code=400, detail="Callsign, first name, last name, and email are required")
    if len(email) > 255:
        raise HTTPException(status_code=400, detail="Invalid email")
    if len(callsign) > 100:
        raise HTTPException(status_code=400, detail="Callsign must be 100 characters or fewer")
    email = email.lower()

    if current_user["role"] == "instructor":
        wing_id = current_user.get("wing_id")
        if wing_id is None:
            raise HTTPException(status_code=400, detail="Your account has no wing assigned")
        role = "pilot"
    else:
        wing_id = to_int_or_none(payload.get("wing_id"))
        if wing_id is None:
            raise HTTPException(status_code=400, detail="Wing is required")
        role = payload.get("role") or "pilot"
    if role not in ROLE_LABELS:
        raise HTTPException(status_code=400, detail=f"Role must be one of: {', '.join(sorted(ROLE_LABELS))}")

    temp_password = secrets.token_hex(8)
    with connect() as con:
        try:
            with transaction(con) as cur:
                if not cur.execute("SELECT id FROM wings WHERE id=?", (wing_id,)).fetchone():
                    raise HTTPException(status_code=400, detail="Wing not found")
                if cur.execute("SELECT id FROM users WHERE email=?", (email,)).fetchone():
                    raise HTTPException(status_code=409, detail="A user with this email already exists")
                user_id = create_user(cur, email, temp_password, role)
                cur.execute(
                    """
                    INSERT INTO pilots(user_id, callsign, first_name, last_name, wing_id, board_number, role, email)
                    VALUES (?,?,?,?,?,?,?,?)
                    """,
                    (user_id, callsign, first_name, last_name, wing_id,
                     strip_or_none(payload.get("board_number")), role, email),
                )
                pilot_id = cur.lastrowid
        except sqlite3.IntegrityError:
            raise HTTPException(status_code=409, detail="A user with this email already exists")
        row = con.execute(PILOT_SELECT + " WHERE p.id=?", (pilot_id,)).fetchone()
    logger.info(f"{current_user['email']} created pilot {callsign} in wing {wing_id}")
    return {**dict(row), "temp_password": temp_password}


@app.get("/api/pilots")
def list_pilots(wing_id: Optional[int] = None, current_user: Dict[str, Any] = Depends(require_user)):
    with connect() as con:
        if wing_id is not None:
            rows = con.execute(PILOT_SELECT + " WHERE p.wing_id=? ORDER BY p.callsign", (wing_id,)).fetchall()
        else:
            rows = con.execute(PILOT_SELECT + " ORDER BY w.name, p.callsign").fetchall()
        return [dict(r) for r in rows]


@app.get("/api/pilots/search")
def search_pilot(q: Optional[str] = None, current_user: Dict[str, Any] = Depends(require_user)):
    if not q:
        raise HTTPException(status_code=400, detail="Search query required")
    kw = f"%{q}%"
    with connect() as con:
        row = con.execute(
            PILOT_SELECT + " WHERE p.callsign LIKE ? OR p.email LIKE ? ORDER BY p.callsign LIMIT 1",
            (kw, kw),
        ).fetchone()
    if not row:
        raise HTTPException(status_code=404, detail="Pilot not found")
    return dict(row)


@app.get("/api/pilots/{pilot_id}")
def get_pilot(pilot_id: int, current_user: Dict[str, Any] = Depends(require_user)):
    with connect() as con:
        profile = pilot_profile(con, pilot_id)
    if not profile:
        raise HTTPException(status_code=404, detail="Pilot not found")
    return profile


# ---------------------- Qualifications ----------------------
PILOT_SCOPE_DETAIL = "Instructors can only edit pilots in their own wing"


def _scoped_pilot_and_skill(cur, pilot_id: Any, skill_id: Any, current_user: Dict[str, Any]):
    pilot = cur.execute("SELECT id, wing_id FROM pilots WHERE id=?", (pilot_id,)).fetchone()
    if not pilot:
        raise HTTPException(status_code=404, detail="Pilot not found")
    require_wing_access(current_user, pilot["wing_id"], PILOT_SCOPE_DETAIL)
    skill = cur.execute("SELECT id, wing_id FROM skills WHERE id=?", (skill_id,)).fetchone()
    if not skill:
        raise HTTPException(status_code=404, detail="Skill not found")
    if skill["wing_id"] != pilot["wing_id"]:
        raise HTTPException(status_code=400, detail="Skill does not belong to pilot's wing")
    return pilot, skill


@app.get("/api/qualifications")
def list_qualifications(pilot_id: Optional[int] = None, current_user: Dict[str, Any] = Depends(require_user)):
    with connect() as con:
        if pilot_id is not None:
            rows = con.execute(
                "SELECT * FROM qualifications WHERE pilot_id=? ORDER BY skill_id", (pilot_id,)
            ).fetchall()
        else:
            rows = con.execute("SELECT * FROM qualifications ORDER BY pilot_id, skill_id").fetchall()
        return [dict(r) for r in rows]


@app.put("/api/qualifications")
def set_qualification(payload: Dict[str, Any], current_user: Dict[str, Any] = Depends(require_role("instructor", "admin"))):
    pilot_id = payload.get("pilot_id")
    skill_id = payload.get("skill_id")
    status = strip_or_none(payload.get("status"))
    if not pilot_id or not skill_id or not status:
        raise HTTPException(status_code=400, detail="pilot_id, skill_id, and status are required")
    status = status.upper()
    if status not in VALID_STATUSES:
        raise HTTPException(status_code=400, detail=f"Status must be one of: {', '.join(VALID_STATUSES)}")
    with connect() as con:
        cur = con.cursor()
        _scoped_pilot_and_skill(cur, pilot_id, skill_id, current_user)
        upsert_qualification(cur, pilot_id, skill_id, status, current_user["email"])
        con.commit()
        row = cur.execute(
            "SELECT * FROM qualifications WHERE pilot_id=? AND skill_id=?", (pilot_id, skill_id)
        ).fetchone()
        return dict(row)


@app.delete("/api/qualifications")
def delete_qualification(payload: Dict[str, Any], current_user: Dict[str, Any] = Depends(require_role("instructor", "admin"))):
    pilot_id = payload.get("pilot_id")
    skill_id = payload.get("skill_id")
    if not pilot_id or not skill_id:
        raise HTTPException(status_code=400, detail="pilot_id and skill_id are required")
    with connect() as con:
        cur = con.cursor()
        pilot = cur.execute("SELECT wing_id FROM pilots WHERE id=?", (pilot_id,)).fetchone()
        if not pilot:
            raise HTTPException(status_code=404, detail="Pilot not found")
        require_wing_access(current_user, pilot["wing_id"], PILOT_SCOPE_DETAIL)
        cur.execute("DELETE FROM qualifications WHERE pilot_id=? AND skill_id=?", (pilot_id, skill_id))
        if cur.rowcount == 0:
            raise HTTPException(status_code=404, detail="Qualification not found")
        con.commit()
        return {"deleted": True}


@app.get("/api/qualifications/export")
def export_qualifications(
    wing_id: Optional[int] = None,
    current_user: Dict[str, Any] = Depends(require_role("instructor", "admin")),
):
    if current_user["role"] == "instructor":
        wing_id = current_user.get("wing_id")
        if wing_id is None:
            raise HTTPException(status_code=400, detail="Your account has no wing assigned")
    with connect() as con:
        body = export_qualifications_csv(con, wing_id)
    return Response(
        content=body,
        media_type="text/csv",
        headers={"Content-Disposition": "attachment; filename=qualifications_export.csv"},
    )


def _run_import(records: List[Any], current_user: Dict[str, Any]) -> Dict[str, Any]:
    with connect() as con:
        try:
            return import_qualifications(con, records, current_user)
        except BatchTooLargeError as e:
            logger.warning(f"Rejected import of {len(records)} records from {current_user['email']}")
            raise HTTPException(status_code=400, detail=str(e))
        except Exception:
            logger.exception("Bulk import failed, batch rolled back")
            raise HTTPException(status_code=500, detail="Internal server error")


@app.post("/api/qualifications/bulk")
def bulk_import(payload: Dict[str, Any], current_user: Dict[str, Any] = Depends(require_role("instructor", "admin"))):
    records = payload.get("records")
    if not isinstance(records, list) or not records:
        raise HTTPException(status_code=400, detail="records array is required")
    return _run_import(records, current_user)


@app.post("/api/qualifications/import")
async def upload_import(
    file: UploadFile = File(...),
    current_user: Dict[str, Any] = Depends(require_role("instructor", "admin")),
):
    content = await file.read()
    try:
        records = parse_qualification_csv(content)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    if not records:
        raise HTTPException(status_code=400, detail="No valid records found in CSV")
    return _run_import(records, current_user)


@app.get("/api/qualifications/stats")
def qualification_stats(wing_id: Optional[int] = None, current_user: Dict[str, Any] = Depends(require_user)):
    with connect() as con:
        return readiness_stats(con, wing_id)


@app.get("/api/qualifications/matrix")
def qualification_matrix_view(wing_id: int, current_user: Dict[str, Any] = Depends(require_user)):
    with connect() as con:
        _get_wing(con.cursor(), wing_id)
        return qualification_matrix(con, wing_id)


@app.post("/api/qualifications/backfill")
def run_backfill(current_user: Dict[str, Any] = Depends(require_role("admin"))):
    with connect() as con:
        try:
            inserted = backfill_qualifications(con, BACKFILL_ACTOR)
        except sqlite3.Error:
            logger.exception("Backfill failed")
            raise HTTPException(status_code=500, detail="Internal server error")
    return {"message": "Backfill completed successfully", "rowsInserted": inserted}


# ---------------------- Admin ----------------------
def _require_other_user(user_id: int, current_user: Dict[str, Any], detail: str) -> None:
    if user_id == current_user["id"]:
        raise HTTPException(status_code=400, detail=detail)


@app.get("/api/admin/users")
def list_users(current_user: Dict[str, Any] = Depends(require_role("admin"))):
    with connect() as con:
        rows = con.execute(USER_SELECT + " ORDER BY u.created_at, u.id").fetchall()
        return [dict(r) for r in rows]


@app.put("/api/admin/users/{user_id}/role")
def update_user_role(user_id: int, payload: Dict[str, Any], current_user: Dict[str, Any] = Depends(require_role("admin"))):
    role = payload.get("role")
    if not role:
        raise HTTPException(status_code=400, detail="Role is required")
    if role not in ROLE_LABELS:
        raise HTTPException(status_code=400, detail=f"Role must be one of: {', '.join(sorted(ROLE_LABELS))}")
    _require_other_user(user_id, current_user, "Cannot change your own role")
    with connect() as con:
        with transaction(con) as cur:
            cur.execute("UPDATE users SET role=?, updated_at=datetime('now') WHERE id=?", (role, user_id))
            if cur.rowcount == 0:
                raise HTTPException(status_code=404, detail="User not found")
            # pilots.role mirrors users.role
            cur.execute("UPDATE pilots SET role=?, updated_at=datetime('now') WHERE user_id=?", (role, user_id))
        row = con.execute("SELECT id, email, role FROM users WHERE id=?", (user_id,)).fetchone()
        return dict(row)


@app.put("/api/admin/users/{user_id}")
def update_user(user_id: int, payload: Dict[str, Any], current_user: Dict[str, Any] = Depends(require_role("admin"))):
    email = payload.get("email")
    if email is not None and (not isinstance(email, str) or not email.strip() or len(email) > 255):
        raise HTTPException(status_code=400, detail="Invalid email")
    with connect() as con:
        try:
            with transaction(con) as cur:
                if not cur.execute("SELECT id FROM users WHERE id=?", (user_id,)).fetchone():
                    raise HTTPException(status_code=404, detail="User not found")
                pilot_fields = {}
                if email:
                    email = email.strip().lower()
                    clash = cur.execute("SELECT id FROM users WHERE email=? AND id<>?", (email, user_id)).fetchone()
                    if clash:
                        raise HTTPException(status_code=409, detail="Email already in use")
                    cur.execute("UPDATE users SET email=?, updated_at=datetime('now') WHERE id=?", (email, user_id))
                    pilot_fields["email"] = email
                for k in ("callsign", "first_name", "last_name"):
                    v = strip_or_none(payload.get(k))
                    if v:
                        pilot_fields[k] = v
                if "board_number" in payload:
                    pilot_fields["board_number"] = strip_or_none(payload.get("board_number"))
                if pilot_fields:
                    sets = ", ".join(f"{k}=:{k}" for k in pilot_fields)
                    cur.execute(
                        f"UPDATE pilots SET {sets}, updated_at=datetime('now') WHERE user_id=:user_id",
                        {**pilot_fields, "user_id": user_id},
                    )
        except sqlite3.IntegrityError:
            raise HTTPException(status_code=409, detail="Email already in use")
        row = con.execute(USER_SELECT + " WHERE u.id=?", (user_id,)).fetchone()
        return dict(row)


@app.delete("/api/admin/users/{user_id}")
def delete_user(user_id: int, current_user: Dict[str, Any] = Depends(require_role("admin"))):
    _require_other_user(user_id, current_user, "Cannot delete your own account")
    with connect() as con:
        with transaction(con) as cur:
            # Pilot rows cascade to their qualifications
            cur.execute("DELETE FROM pilots WHERE user_id=?", (user_id,))
            cur.execute("DELETE FROM users WHERE id=?", (user_id,))
            if cur.rowcount == 0:
                raise HTTPException(status_code=404, detail="User not found")
    logger.info(f"{current_user['email']} deleted user {user_id}")
    return {"deleted": True}


@app.post("/api/admin/users/{user_id}/reset-password")
def reset_password(user_id: int, payload: Dict[str, Any], current_user: Dict[str, Any] = Depends(require_role("admin"))):
    password = payload.get("password")
    if not isinstance(password, str) or not 8 <= len(password) <= 72:
        raise HTTPException(status_code=400, detail="Password must be between 8 and 72 characters")
    with connect() as con:
        if set_password(con.cursor(), user_id, password) == 0:
            raise HTTPException(status_code=404, detail="User not found")
        con.commit()
    return {"success": True}


@app.get("/api/admin/settings")
def get_settings(current_user: Dict[str, Any] = Depends(require_role("admin"))):
    with connect() as con:
        rows = con.execute("SELECT key, value FROM settings ORDER BY key").fetchall()
        return {r["key"]: r["value"] for r in rows}


@app.put("/api/admin/settings")
def update_settings(payload: Dict[str, Any], current_user: Dict[str, Any] = Depends(require_role("admin"))):
    settings = payload.get("settings")
    if not isinstance(settings, dict) or not settings:
        raise HTTPException(status_code=400, detail="Settings object is required")
    for key, value in settings.items():
        if key not in SETTINGS_KEYS:
            raise HTTPException(status_code=400, detail=f"Unknown setting key: {key}")
        if not isinstance(value, str) or len(value) > MAX_SETTING_LENGTH:
            raise HTTPException(status_code=400, detail=f"Invalid value for setting: {key}")
    with connect() as con:
        with transaction(con) as cur:
            for key, value in settings.items():
                cur.execute("UPDATE settings SET value=?, updated_at=datetime('now') WHERE key=?", (value, key))
    return {"success": True, "message": "Settings updated"}
