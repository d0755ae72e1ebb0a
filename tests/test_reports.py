"""
Tests for readiness statistics, the qualification matrix, pilot profiles
and CSV export.
"""

import pandas as pd
import pytest

from squadron.importer import upsert_qualification
from squadron.reports import (
    COMBAT_READY_THRESHOLD,
    export_qualifications_csv,
    load_pilot_tallies,
    pilot_completion,
    pilot_profile,
    qualification_matrix,
    readiness_stats,
    summarize_readiness,
)


def qualify(con, pilot_id, skill_id, status):
    upsert_qualification(con.cursor(), pilot_id, skill_id, status, "tester@test.local")
    con.commit()


@pytest.fixture
def graded(con, world):
    """VIPER: 3 of 4 qualified. Iceman: 2 of 2 qualified. Ghostrider: no rows."""
    qualify(con, world["viper"], world["startup_a"], "FMQ")
    qualify(con, world["viper"], world["radios_a"], "IP")
    qualify(con, world["viper"], world["airfield_a"], "FMQ")
    qualify(con, world["viper"], world["case1_a"], "NMQ")
    qualify(con, world["iceman"], world["startup_a"], "FMQ")
    qualify(con, world["iceman"], world["radios_a"], "IP")
    return world


class TestPilotCompletion:

    def test_uses_qualification_rows_as_denominator(self):
        assert pilot_completion(3, 4, 10) == 75.0

    def test_falls_back_to_skill_count(self):
        assert pilot_completion(0, 0, 5) == 0.0

    def test_no_denominator_is_zero(self):
        assert pilot_completion(0, 0, 0) == 0.0


class TestReadinessStats:

    def test_wing_scoped(self, con, graded):
        stats = readiness_stats(con, graded["wing_a"])

        assert stats["total_pilots"] == 2
        assert stats["combat_ready_pilots"] == 1
        assert stats["overall_readiness_percentage"] == pytest.approx(50.0)
        assert stats["average_completion_percentage"] == pytest.approx(87.5)

    def test_global(self, con, graded):
        stats = readiness_stats(con)

        assert stats["total_pilots"] == 3
        assert stats["combat_ready_pilots"] == 1
        assert stats["overall_readiness_percentage"] == pytest.approx(100 / 3)
        assert stats["average_completion_percentage"] == pytest.approx((75 + 100 + 0) / 3)

    def test_two_qualified_skills_is_not_combat_ready(self, con, world):
        qualify(con, world["iceman"], world["startup_a"], "FMQ")
        qualify(con, world["iceman"], world["radios_a"], "IP")
        assert readiness_stats(con, world["wing_a"])["combat_ready_pilots"] == 0

        qualify(con, world["iceman"], world["airfield_a"], "IP")
        assert readiness_stats(con, world["wing_a"])["combat_ready_pilots"] == 1

    def test_mqt_does_not_count(self, con, world):
        for key in ("startup_a", "radios_a", "airfield_a", "case1_a"):
            qualify(con, world["viper"], world[key], "MQT")
        stats = readiness_stats(con, world["wing_a"])

        assert stats["combat_ready_pilots"] == 0
        assert stats["average_completion_percentage"] == 0

    def test_empty_wing(self, con, world):
        cur = con.execute("INSERT INTO wings(name) VALUES ('Empty')")
        con.commit()
        assert readiness_stats(con, cur.lastrowid) == {
            "total_pilots": 0,
            "combat_ready_pilots": 0,
            "overall_readiness_percentage": 0,
            "average_completion_percentage": 0,
        }

    def test_pilot_in_wing_without_skills(self, con, world):
        wing = con.execute("INSERT INTO wings(name) VALUES ('Bare')").lastrowid
        con.execute(
            "INSERT INTO pilots(callsign, first_name, last_name, wing_id, email) VALUES ('Rook','R','R',?,'rook@test.local')",
            (wing,),
        )
        con.commit()
        stats = readiness_stats(con, wing)

        assert stats["total_pilots"] == 1
        assert stats["average_completion_percentage"] == 0

    def test_tallies_frame(self, con, graded):
        tallies = load_pilot_tallies(con, graded["wing_a"]).set_index("callsign")

        assert tallies.loc["VIPER", "qualified_count"] == 3
        assert tallies.loc["VIPER", "total_qualifications"] == 4
        assert tallies.loc["Iceman", "total_skills"] == 4

    def test_summarize_threshold_constant(self):
        tallies = pd.DataFrame({
            "qualified_count": [COMBAT_READY_THRESHOLD, COMBAT_READY_THRESHOLD - 1],
            "total_qualifications": [5, 5],
            "total_skills": [5, 5],
        })
        assert summarize_readiness(tallies)["combat_ready_pilots"] == 1


class TestMatrix:

    def test_missing_rows_read_as_none(self, con, world):
        cells = qualification_matrix(con, world["wing_a"])

        assert len(cells) == 8
        assert all(c["status"] is None for c in cells)

    def test_existing_rows_fill_cells_in_order(self, con, world):
        qualify(con, world["viper"], world["radios_a"], "MQT")
        cells = qualification_matrix(con, world["wing_a"])

        assert [c["callsign"] for c in cells[:4]] == ["Iceman"] * 4
        assert [c["skill_name"] for c in cells[:4]] == ["Startup", "Radios", "Airfield Ops", "CASE I Procedures"]
        viper_radios = [c for c in cells if c["callsign"] == "VIPER" and c["skill_name"] == "Radios"]
        assert viper_radios[0]["status"] == "MQT"


class TestPilotProfile:

    def test_profile_includes_completion(self, con, graded):
        profile = pilot_profile(con, graded["viper"])

        assert profile["wing_name"] == "VFA-143"
        assert len(profile["qualifications"]) == 4
        assert profile["qualifications"][0]["skill_name"] == "Startup"
        assert profile["completion_percentage"] == 75.0

    def test_unknown_pilot(self, con, world):
        assert pilot_profile(con, 9999) is None


class TestExport:

    HEADER = '"Callsign","First Name","Last Name","Wing","Category","Skill","Status","Last Updated","Updated By"'

    def test_wing_export_covers_every_pair(self, con, graded):
        lines = export_qualifications_csv(con, graded["wing_a"]).strip().split("\n")

        assert lines[0] == self.HEADER
        assert len(lines) == 1 + 2 * 4
        assert any('"VIPER"' in line and '"Radios"' in line and '"IP"' in line for line in lines)

    def test_global_export_spans_wings(self, con, graded):
        lines = export_qualifications_csv(con).strip().split("\n")

        assert len(lines) == 1 + 2 * 4 + 1 * 2
        assert any(line.startswith('"Ghostrider"') and '"Tanking"' in line for line in lines)

    def test_formula_prefixes_are_stripped(self, con, world):
        con.execute("UPDATE pilots SET callsign='=HYPERLINK(1)', first_name='+Bob' WHERE id=?", (world["viper"],))
        con.commit()
        body = export_qualifications_csv(con, world["wing_a"])

        assert '"HYPERLINK(1)","Bob"' in body
        assert '"=' not in body
        assert '"+' not in body
