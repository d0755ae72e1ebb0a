import pytest
from fastapi.testclient import TestClient

from squadron import db
from squadron.schema_sql import SCHEMA_SQL

ADMIN_EMAIL = "admin@test.local"
ADMIN_PASSWORD = "admin-pass-123"


@pytest.fixture
def db_path(tmp_path, monkeypatch):
    path = tmp_path / "squadron-test.sqlite"
    monkeypatch.setattr(db, "DB_PATH", path)
    return path


@pytest.fixture
def con(db_path):
    con = db.get_connection()
    con.executescript(SCHEMA_SQL)
    yield con
    con.close()


def _insert(con, sql, params):
    cur = con.execute(sql, params)
    return cur.lastrowid


@pytest.fixture
def world(con):
    """Two wings sharing a skill name, three pilots."""
    ids = {}
    ids["wing_a"] = _insert(con, "INSERT INTO wings(name) VALUES (?)", ("VFA-143",))
    ids["wing_b"] = _insert(con, "INSERT INTO wings(name) VALUES (?)", ("VFA-31",))

    for key, name, order in [
        ("startup_a", "Startup", 1),
        ("radios_a", "Radios", 2),
        ("airfield_a", "Airfield Ops", 3),
        ("case1_a", "CASE I Procedures", 4),
    ]:
        ids[key] = _insert(
            con,
            "INSERT INTO skills(wing_id, name, category, sort_order) VALUES (?,?,?,?)",
            (ids["wing_a"], name, "90TH BASIC", order),
        )
    ids["startup_b"] = _insert(
        con,
        "INSERT INTO skills(wing_id, name, category, sort_order) VALUES (?,?,?,?)",
        (ids["wing_b"], "Startup", "BASIC", 1),
    )
    ids["tanking_b"] = _insert(
        con,
        "INSERT INTO skills(wing_id, name, category, sort_order) VALUES (?,?,?,?)",
        (ids["wing_b"], "Tanking", "ADVANCED", 2),
    )

    for key, callsign, wing in [
        ("viper", "VIPER", "wing_a"),
        ("iceman", "Iceman", "wing_a"),
        ("ghostrider", "Ghostrider", "wing_b"),
    ]:
        ids[key] = _insert(
            con,
            "INSERT INTO pilots(callsign, first_name, last_name, wing_id, email) VALUES (?,?,?,?,?)",
            (callsign, callsign.title(), "Test", ids[wing], f"{callsign.lower()}@test.local"),
        )
    con.commit()
    return ids


@pytest.fixture
def admin(world):
    return {"id": 1, "email": "admin@test.local", "role": "admin", "wing_id": None}


@pytest.fixture
def instructor_a(world):
    return {"id": 2, "email": "jester@test.local", "role": "instructor", "wing_id": world["wing_a"]}


def qualification(con, pilot_id, skill_id):
    return con.execute(
        "SELECT * FROM qualifications WHERE pilot_id=? AND skill_id=?", (pilot_id, skill_id)
    ).fetchone()


def count_qualifications(con):
    return con.execute("SELECT COUNT(*) AS n FROM qualifications").fetchone()["n"]


@pytest.fixture
def client(db_path, monkeypatch):
    monkeypatch.setenv("ADMIN_DEFAULT_EMAIL", ADMIN_EMAIL)
    monkeypatch.setenv("ADMIN_DEFAULT_PASSWORD", ADMIN_PASSWORD)
    from squadron.main import app

    with TestClient(app) as c:
        yield c


def login(client, email, password):
    r = client.post("/api/auth/login", json={"email": email, "password": password})
    assert r.status_code == 200, r.text
    # Authenticate by header only; drop the session cookie login just set
    client.cookies.clear()
    return {"Authorization": f"Bearer {r.json()['token']}"}


@pytest.fixture
def admin_headers(client):
    return login(client, ADMIN_EMAIL, ADMIN_PASSWORD)
