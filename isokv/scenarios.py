#!/usr/bin/env python3
"""
Scripted concurrency anomalies.

Each scenario opens two or three sessions at one isolation level, runs a
fixed interleaving of statements, and reports whether the anomaly it is
named after showed up. Blocking steps rely on a short lock-wait timeout
instead of threads, so every scenario is deterministic.

Scenarios:
- charity_dirty_read: a rolled-back deposit is read and built upon
- atm_lost_update: two withdrawals computed from the same stale balance
- blocked_deposit: a deposit waits for an uncommitted withdrawal
- oversold_item: the last item in stock is sold twice
- birthday_bonus_phantom: a new matching row appears in a repeated range read
- on_call_write_skew: two doctors go off call based on the same check

Run ``python -m isokv.scenarios`` to print the outcome for every level.
"""

from __future__ import annotations

import argparse
import sys
from dataclasses import dataclass
from typing import Callable

from .engine import Engine
from .enums import IsolationLevel
from .exceptions import TransactionAbortedError
from .predicates import Predicate

ACCOUNT = ("account", 1)
ITEM = ("items", 1)


@dataclass(frozen=True)
class ScenarioOutcome:
    """What a scenario observed at one isolation level."""

    scenario: str
    level: IsolationLevel
    anomaly: bool
    detail: str
    error: str | None = None

    @property
    def prevented(self) -> bool:
        return not self.anomaly


def _balance(engine: Engine) -> int:
    with engine.open() as session:
        return session.read(ACCOUNT)["balance"]


def _error_name(exc: BaseException) -> str:
    return type(exc).__name__


def charity_dirty_read(level: IsolationLevel, lock_wait_timeout: float = 0.2) -> ScenarioOutcome:
    """
    Two 100 deposits on a 500 account; the first is rolled back after the
    second read the balance it wrote. Anything but 600 is money from nowhere.
    """
    with Engine(lock_wait_timeout=lock_wait_timeout) as engine:
        with engine.open() as setup:
            setup.insert(ACCOUNT, {"balance": 500})

        t1 = engine.open(level, autocommit=False, name="deposit-1")
        t2 = engine.open(level, autocommit=False, name="deposit-2")
        error = None
        try:
            seen1 = t1.read(ACCOUNT)["balance"]
            t1.write(ACCOUNT, {"balance": seen1 + 100})
            seen2 = t2.read(ACCOUNT)["balance"]
            t1.rollback()
            t2.write(ACCOUNT, {"balance": seen2 + 100})
            t2.commit()
        except TransactionAbortedError as e:
            error = _error_name(e)
        finally:
            t1.close()
            t2.close()

        final = _balance(engine)
        return ScenarioOutcome(
            scenario="charity_dirty_read",
            level=level,
            anomaly=final != 600,
            detail=f"final balance {final}, expected 600",
            error=error,
        )


def atm_lost_update(level: IsolationLevel, lock_wait_timeout: float = 0.2) -> ScenarioOutcome:
    """
    A man withdraws 250 at an ATM while his wife, having seen 500 in her app,
    spends 250 online. The second update is computed from the stale balance.
    """
    with Engine(lock_wait_timeout=lock_wait_timeout) as engine:
        with engine.open() as setup:
            setup.insert(ACCOUNT, {"balance": 500})

        t1 = engine.open(level, autocommit=False, name="atm")
        t2 = engine.open(level, autocommit=False, name="app")
        withdrawals = 0
        error = None
        try:
            seen1 = t1.read(ACCOUNT)["balance"]
            t1.write(ACCOUNT, {"balance": seen1 - 250})
            seen2 = t2.read(ACCOUNT)["balance"]
            t1.commit()
            withdrawals += 1
            t2.write(ACCOUNT, {"balance": seen2 - 250})
            t2.commit()
            withdrawals += 1
        except TransactionAbortedError as e:
            error = _error_name(e)
        finally:
            t1.close()
            t2.close()

        final = _balance(engine)
        expected = 500 - 250 * withdrawals
        return ScenarioOutcome(
            scenario="atm_lost_update",
            level=level,
            anomaly=final != expected,
            detail=f"{withdrawals} withdrawals committed, final balance {final}, expected {expected}",
            error=error,
        )


def blocked_deposit(level: IsolationLevel, lock_wait_timeout: float = 0.2) -> ScenarioOutcome:
    """
    A man empties the account in one office while his wife deposits 1000 in
    another. Her update must wait for his uncommitted one.
    """
    with Engine(lock_wait_timeout=lock_wait_timeout) as engine:
        with engine.open() as setup:
            setup.insert(ACCOUNT, {"balance": 500})

        t1 = engine.open(level, autocommit=False, name="withdraw")
        t2 = engine.open(level, autocommit=False, name="deposit")
        error = None
        overwritten = False
        try:
            t1.read(ACCOUNT)
            seen2 = t2.read(ACCOUNT)["balance"]
            t1.write(ACCOUNT, {"balance": 0})
            t2.write(ACCOUNT, {"balance": seen2 + 1000})
            overwritten = True
        except TransactionAbortedError as e:
            error = _error_name(e)
        finally:
            t1.rollback()
            t1.close()
            t2.rollback()
            t2.close()

        return ScenarioOutcome(
            scenario="blocked_deposit",
            level=level,
            anomaly=overwritten,
            detail=(
                "deposit overwrote an uncommitted withdrawal"
                if overwritten
                else "deposit waited for the withdrawal's lock"
            ),
            error=error,
        )


def oversold_item(level: IsolationLevel, lock_wait_timeout: float = 0.2) -> ScenarioOutcome:
    """
    A customer finds an item out of stock. A manager adds one; a second
    customer orders it. The first customer looks again, still sees it in
    stock, and orders it too. Quantity must never go negative.
    """
    in_stock = Predicate.on("items", lambda row: row["quantity"] > 0, id=1)

    with Engine(lock_wait_timeout=lock_wait_timeout) as engine:
        first = engine.open(level, autocommit=False, name="customer-1")
        second = engine.open(level, autocommit=False, name="customer-2")
        manager = engine.open(level, autocommit=True, name="manager")
        error = None
        try:
            found_empty = not first.scan(in_stock)
            first.commit()

            manager.insert(ITEM, {"id": 1, "quantity": 1})

            if second.scan(in_stock):
                second.update(ITEM, lambda row: {**row, "quantity": row["quantity"] - 1})
            still_there = bool(first.scan(in_stock))
            second.commit()

            if found_empty and still_there:
                first.update(ITEM, lambda row: {**row, "quantity": row["quantity"] - 1})
            first.commit()
        except TransactionAbortedError as e:
            error = _error_name(e)
        finally:
            first.close()
            second.close()
            manager.close()

        with engine.open() as check:
            quantity = check.read(ITEM)["quantity"]
        return ScenarioOutcome(
            scenario="oversold_item",
            level=level,
            anomaly=quantity < 0,
            detail=f"final quantity {quantity}",
            error=error,
        )


def birthday_bonus_phantom(
    level: IsolationLevel, lock_wait_timeout: float = 0.2
) -> ScenarioOutcome:
    """
    One manager gives a bonus to everyone born today while another hires an
    employee born today. The first manager's two range reads must agree.
    """
    today = "2000-01-01"
    born_today = Predicate.on("employee", birthday=today)

    with Engine(lock_wait_timeout=lock_wait_timeout) as engine:
        with engine.open() as setup:
            setup.insert(("employee", 1), {"id": 1, "birthday": today, "bonus": None})

        payroll = engine.open(level, autocommit=False, name="payroll")
        hiring = engine.open(level, autocommit=False, name="hiring")
        error = None
        before: set = set()
        after: set = set()
        try:
            before = {key for key, _ in payroll.scan(born_today)}
            try:
                hiring.insert(("employee", 2), {"id": 2, "birthday": today, "bonus": None})
                hiring.commit()
            except TransactionAbortedError as e:
                error = _error_name(e)
            after = {key for key, _ in payroll.scan(born_today)}
            for key in after:
                payroll.update(key, lambda row: {**row, "bonus": 100})
            payroll.commit()
        except TransactionAbortedError as e:
            error = _error_name(e)
        finally:
            payroll.close()
            hiring.close()

        return ScenarioOutcome(
            scenario="birthday_bonus_phantom",
            level=level,
            anomaly=after != before,
            detail=f"first read {len(before)} rows, second read {len(after)} rows",
            error=error,
        )


def on_call_write_skew(level: IsolationLevel, lock_wait_timeout: float = 0.2) -> ScenarioOutcome:
    """
    Alice and Bob are both on call. Each checks that someone else is on call
    and signs off. At least one doctor must remain on call.
    """
    doctors = [("doctor", "alice"), ("doctor", "bob")]

    with Engine(lock_wait_timeout=lock_wait_timeout) as engine:
        with engine.open() as setup:
            for key in doctors:
                setup.insert(key, {"on_call": True})

        sessions = [
            engine.open(level, autocommit=False, name=f"{key[1]}-signs-off") for key in doctors
        ]
        error = None
        try:
            # Both check before either signs off
            counts = [
                sum(1 for key in doctors if session.read(key)["on_call"])
                for session in sessions
            ]
            for session, key, on_call in zip(sessions, doctors, counts):
                if on_call >= 2:
                    session.write(key, {"on_call": False})
            for session in sessions:
                session.commit()
        except TransactionAbortedError as e:
            error = _error_name(e)
        finally:
            for session in sessions:
                session.close()

        with engine.open() as check:
            remaining = sum(1 for key in doctors if check.read(key)["on_call"])
        return ScenarioOutcome(
            scenario="on_call_write_skew",
            level=level,
            anomaly=remaining == 0,
            detail=f"{remaining} doctors on call",
            error=error,
        )


SCENARIOS: dict[str, Callable[..., ScenarioOutcome]] = {
    "charity_dirty_read": charity_dirty_read,
    "atm_lost_update": atm_lost_update,
    "blocked_deposit": blocked_deposit,
    "oversold_item": oversold_item,
    "birthday_bonus_phantom": birthday_bonus_phantom,
    "on_call_write_skew": on_call_write_skew,
}


def run_all(
    levels: list[IsolationLevel] | None = None,
    names: list[str] | None = None,
    lock_wait_timeout: float = 0.2,
) -> list[ScenarioOutcome]:
    """Run the selected scenarios at the selected levels."""
    levels = levels or list(IsolationLevel)
    names = names or list(SCENARIOS)
    return [
        SCENARIOS[name](level, lock_wait_timeout=lock_wait_timeout)
        for name in names
        for level in levels
    ]


def print_outcomes(outcomes: list[ScenarioOutcome]) -> None:
    """Print outcomes as a table."""
    print()
    print("=" * 100)
    print(f"{'Scenario':<24} {'Level':<18} {'Result':<10} {'Error':<28} Detail")
    print("-" * 100)
    for outcome in outcomes:
        result = "ANOMALY" if outcome.anomaly else "prevented"
        print(
            f"{outcome.scenario:<24} {outcome.level.name:<18} {result:<10} "
            f"{outcome.error or '-':<28} {outcome.detail}"
        )
    print("=" * 100)


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Run isolation anomaly scenarios")
    parser.add_argument(
        "--level",
        action="append",
        type=IsolationLevel.parse,
        help="Isolation level to run (repeatable, default: all)",
    )
    parser.add_argument(
        "--scenario",
        action="append",
        choices=sorted(SCENARIOS),
        help="Scenario to run (repeatable, default: all)",
    )
    parser.add_argument(
        "--timeout",
        type=float,
        default=0.2,
        help="Lock wait timeout in seconds (default: 0.2)",
    )
    args = parser.parse_args(argv)

    outcomes = run_all(args.level, args.scenario, args.timeout)
    print_outcomes(outcomes)
    return 0


if __name__ == "__main__":
    sys.exit(main())
