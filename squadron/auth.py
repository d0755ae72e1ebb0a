import os
import secrets
import hashlib
import logging
from datetime import datetime, timedelta
from typing import Any, Dict, Optional, Callable

from fastapi import HTTPException, Header, Depends, Cookie

from .db import connect

logger = logging.getLogger(__name__)

SESSION_DURATION_SECONDS = int(os.getenv("SESSION_DURATION_SECONDS", "86400"))

ROLE_LABELS = {"pilot", "instructor", "admin"}


def hash_password(password: str, salt: str) -> str:
    return hashlib.sha256((salt + password).encode("utf-8")).hexdigest()


def verify_password(password: str, salt: str, password_hash: str) -> bool:
    return secrets.compare_digest(hash_password(password, salt), password_hash)


def create_user(cur, email: str, password: str, role: str) -> int:
    email = email.strip().lower()
    if role not in ROLE_LABELS:
        raise ValueError(f"Role must be one of: {', '.join(sorted(ROLE_LABELS))}")
    salt = secrets.token_hex(16)
    pwd_hash = hash_password(password, salt)
    cur.execute(
        "INSERT INTO users(email, password_hash, password_salt, role) VALUES (?,?,?,?)",
        (email, pwd_hash, salt, role),
    )
    return cur.lastrowid


def set_password(cur, user_id: int, password: str) -> int:
    salt = secrets.token_hex(16)
    cur.execute(
        "UPDATE users SET password_hash=?, password_salt=?, updated_at=datetime('now') WHERE id=?",
        (hash_password(password, salt), salt, user_id),
    )
    return cur.rowcount


def ensure_default_admin(cur) -> None:
    count = cur.execute("SELECT COUNT(*) AS n FROM users").fetchone()["n"]
    if count:
        return
    email = os.getenv("ADMIN_DEFAULT_EMAIL", "admin@squadron.local")
    create_user(cur, email, os.getenv("ADMIN_DEFAULT_PASSWORD", "admin123"), "admin")
    logger.info(f"Seeded default admin account {email}")


def create_session(cur, user_id: int) -> Dict[str, str]:
    token = secrets.token_hex(32)
    expires_at = (datetime.utcnow() + timedelta(seconds=SESSION_DURATION_SECONDS)).isoformat()
    cur.execute(
        "INSERT INTO user_session(token, user_id, expires_at) VALUES (?,?,?)",
        (token, user_id, expires_at),
    )
    return {"token": token, "expires_at": expires_at}


def delete_session(cur, token: str) -> None:
    cur.execute("DELETE FROM user_session WHERE token=?", (token,))


def _extract_token(authorization: Optional[str], cookie_token: Optional[str] = None) -> str:
    if not authorization:
        if cookie_token:
            return cookie_token
        raise HTTPException(status_code=401, detail="No token provided")
    prefix = "Bearer "
    if not authorization.startswith(prefix):
        raise HTTPException(status_code=401, detail="Invalid token format")
    token = authorization[len(prefix):].strip()
    if not token:
        raise HTTPException(status_code=401, detail="No token provided")
    return token


def get_current_user(
    authorization: Optional[str] = Header(None),
    session: Optional[str] = Cookie(default=None),
) -> Dict[str, Any]:
    token = _extract_token(authorization, session)
    with connect() as con:
        cur = con.cursor()
        row = cur.execute(
            """
            SELECT s.token, s.expires_at, u.id AS user_id, u.email, u.role,
                   p.id AS pilot_id, p.wing_id
            FROM user_session s
            JOIN users u ON u.id = s.user_id
            LEFT JOIN pilots p ON p.user_id = u.id
            WHERE s.token=?
            """,
            (token,),
        ).fetchone()
        if not row:
            raise HTTPException(status_code=401, detail="Invalid token")
        try:
            expires_at = datetime.fromisoformat(row["expires_at"])
        except ValueError:
            expires_at = datetime.utcnow() - timedelta(seconds=1)
        if expires_at < datetime.utcnow():
            cur.execute("DELETE FROM user_session WHERE token=?", (token,))
            con.commit()
            raise HTTPException(status_code=401, detail="Session expired")
        return {
            "id": row["user_id"],
            "email": row["email"],
            "role": row["role"],
            "pilot_id": row["pilot_id"],
            "wing_id": row["wing_id"],
            "session_token": row["token"],
            "session_expires_at": row["expires_at"],
        }


def require_user(user=Depends(get_current_user)) -> Dict[str, Any]:
    return user


def require_role(*roles: str) -> Callable:
    allowed = {r.lower() for r in roles if r}

    def dependency(user=Depends(get_current_user)) -> Dict[str, Any]:
        if allowed and user["role"].lower() not in allowed:
            raise HTTPException(status_code=403, detail="Insufficient permissions")
        return user

    return dependency


def can_manage_wing(caller: Dict[str, Any], wing_id: Optional[int]) -> bool:
    """Decide whether ``caller`` may write records owned by ``wing_id``.

    Admins manage every wing. Instructors manage only the wing their pilot
    record belongs to. Everyone else manages nothing.
    """
    role = (caller.get("role") or "").lower()
    if role == "admin":
        return True
    if role == "instructor":
        own = caller.get("wing_id")
        return own is not None and wing_id is not None and int(own) == int(wing_id)
    return False


def require_wing_access(caller: Dict[str, Any], wing_id: Optional[int], detail: str) -> None:
    if not can_manage_wing(caller, wing_id):
        raise HTTPException(status_code=403, detail=detail)
