"""
Tests for the scripted anomaly scenarios.

Each scenario is run at every isolation level; the expected table records
which anomalies a level lets through and how the others are prevented.
"""

import pytest

from isokv import IsolationLevel
from isokv.scenarios import (
    SCENARIOS,
    atm_lost_update,
    birthday_bonus_phantom,
    blocked_deposit,
    charity_dirty_read,
    main,
    on_call_write_skew,
    oversold_item,
    run_all,
)

RU = IsolationLevel.READ_UNCOMMITTED
RC = IsolationLevel.READ_COMMITTED
RR = IsolationLevel.REPEATABLE_READ
SZ = IsolationLevel.SERIALIZABLE

# (scenario, level, anomaly, error)
EXPECTED = [
    (charity_dirty_read, RU, True, None),
    (charity_dirty_read, RC, False, None),
    (charity_dirty_read, RR, False, None),
    (charity_dirty_read, SZ, False, None),
    (atm_lost_update, RU, False, None),
    (atm_lost_update, RC, True, None),
    (atm_lost_update, RR, False, "SerializationConflictError"),
    (atm_lost_update, SZ, False, "SerializationConflictError"),
    (blocked_deposit, RU, True, None),
    (blocked_deposit, RC, False, "LockTimeoutError"),
    (blocked_deposit, RR, False, "LockTimeoutError"),
    (blocked_deposit, SZ, False, "LockTimeoutError"),
    (oversold_item, RU, False, None),
    (oversold_item, RC, True, None),
    (oversold_item, RR, False, "SerializationConflictError"),
    (oversold_item, SZ, False, "LockTimeoutError"),
    (birthday_bonus_phantom, RU, True, None),
    (birthday_bonus_phantom, RC, True, None),
    (birthday_bonus_phantom, RR, True, "SerializationConflictError"),
    (birthday_bonus_phantom, SZ, False, "LockTimeoutError"),
    (on_call_write_skew, RU, True, None),
    (on_call_write_skew, RC, True, None),
    (on_call_write_skew, RR, True, None),
    (on_call_write_skew, SZ, False, "SerializationConflictError"),
]


class TestScenarios:
    """Tests for each scenario at each level."""

    @pytest.mark.parametrize(
        "scenario,level,anomaly,error",
        EXPECTED,
        ids=[f"{s.__name__}-{lvl.name}" for s, lvl, _, _ in EXPECTED],
    )
    def test_outcome(self, scenario, level, anomaly, error):
        outcome = scenario(level, lock_wait_timeout=0.1)
        assert outcome.scenario == scenario.__name__
        assert outcome.level is level
        assert outcome.anomaly is anomaly, outcome.detail
        assert outcome.prevented is not anomaly
        assert outcome.error == error

    def test_every_scenario_covered(self):
        assert {s.__name__ for s, _, _, _ in EXPECTED} == set(SCENARIOS)

    def test_lost_update_balances(self):
        assert "final balance 250" in atm_lost_update(RC).detail
        assert "final balance 0" in atm_lost_update(RU).detail

    def test_oversold_quantity(self):
        assert oversold_item(RC, lock_wait_timeout=0.1).detail == "final quantity -1"


class TestRunner:
    """Tests for the command line runner."""

    def test_run_all_selection(self):
        outcomes = run_all([SZ], ["on_call_write_skew", "charity_dirty_read"], 0.1)
        assert [(o.scenario, o.level) for o in outcomes] == [
            ("on_call_write_skew", SZ),
            ("charity_dirty_read", SZ),
        ]

    def test_main_prints_matrix(self, capsys):
        code = main(["--level", "read-committed", "--scenario", "atm_lost_update"])
        assert code == 0
        out = capsys.readouterr().out
        assert "atm_lost_update" in out
        assert "READ_COMMITTED" in out
        assert "ANOMALY" in out

    def test_main_rejects_unknown_scenario(self):
        with pytest.raises(SystemExit):
            main(["--scenario", "nope"])
