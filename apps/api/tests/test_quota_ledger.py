"""Quota admission and settlement tests against both store backends."""

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta
from pathlib import Path
import tempfile
import threading
import unittest

from lectern.repositories.base import QuotaStore
from lectern.repositories.memory import InMemoryQuotaStore
from lectern.repositories.sql import SqlQuotaStore
from lectern.services.quota_ledger import Denied, Granted, QuotaLedger


class _LedgerBehaviour:
    """Shared assertions; subclasses provide ``make_store``."""

    def make_store(self) -> QuotaStore:
        raise NotImplementedError

    def setUp(self) -> None:
        self.store = self.make_store()
        self.ledger = QuotaLedger(self.store)

    def test_concurrent_admissions_grant_exactly_the_available_units(self) -> None:
        units, callers = 3, 12
        self.ledger.open_account("acct-race", remaining_units=units)
        barrier = threading.Barrier(callers)

        def attempt(_: int):
            barrier.wait()
            return self.ledger.try_consume("acct-race")

        with ThreadPoolExecutor(max_workers=callers) as pool:
            results = list(pool.map(attempt, range(callers)))

        granted = [result for result in results if isinstance(result, Granted)]
        denied = [result for result in results if isinstance(result, Denied)]
        self.assertEqual(len(granted), units)
        self.assertEqual(len(denied), callers - units)
        self.assertTrue(all(result.reason == "no_remaining_units" for result in denied))

        for admission in granted:
            self.ledger.commit(admission.reservation)
        balance = self.ledger.get_balance("acct-race")
        self.assertEqual(balance.remaining_units, 0)
        self.assertEqual(balance.reserved_units, 0)

    def test_unlimited_account_is_never_mutated(self) -> None:
        self.ledger.open_account("acct-pro", remaining_units=0, unlimited=True)
        before = self.store.get_account("acct-pro")

        for _ in range(5):
            admission = self.ledger.try_consume("acct-pro")
            self.assertIsInstance(admission, Granted)
            self.assertTrue(admission.reservation.unlimited)
            self.ledger.commit(admission.reservation)

        after = self.store.get_account("acct-pro")
        self.assertEqual(after.remaining_units, before.remaining_units)
        self.assertEqual(after.reserved_units, 0)
        self.assertEqual(after.version, before.version)

    def test_missing_account_is_denied_with_account_not_found(self) -> None:
        admission = self.ledger.try_consume("acct-ghost")

        self.assertEqual(admission, Denied("account_not_found"))
        self.assertIsNone(self.ledger.get_balance("acct-ghost"))

    def test_zero_balance_is_denied_without_side_effect(self) -> None:
        self.ledger.open_account("acct-empty", remaining_units=0)
        before = self.store.get_account("acct-empty")

        admission = self.ledger.try_consume("acct-empty")

        self.assertEqual(admission, Denied("no_remaining_units"))
        self.assertEqual(self.store.get_account("acct-empty").version, before.version)

    def test_commit_spends_one_unit_and_release_spends_none(self) -> None:
        self.ledger.open_account("acct-a", remaining_units=3)

        first = self.ledger.try_consume("acct-a")
        second = self.ledger.try_consume("acct-a")
        pending = self.ledger.get_balance("acct-a")
        self.assertEqual(pending.remaining_units, 3)
        self.assertEqual(pending.reserved_units, 2)
        self.assertEqual(pending.available_units, 1)

        self.assertTrue(self.ledger.commit(first.reservation))
        self.assertTrue(self.ledger.release(second.reservation))

        balance = self.ledger.get_balance("acct-a")
        self.assertEqual(balance.remaining_units, 2)
        self.assertEqual(balance.reserved_units, 0)

    def test_settlement_is_idempotent(self) -> None:
        self.ledger.open_account("acct-a", remaining_units=2)
        admission = self.ledger.try_consume("acct-a")

        self.assertTrue(self.ledger.commit(admission.reservation))
        self.assertFalse(self.ledger.commit(admission.reservation))
        self.assertFalse(self.ledger.release(admission.reservation))

        self.assertEqual(self.ledger.get_balance("acct-a").remaining_units, 1)

    def test_pending_charge_blocks_the_last_unit(self) -> None:
        self.ledger.open_account("acct-last", remaining_units=1)

        first = self.ledger.try_consume("acct-last")
        second = self.ledger.try_consume("acct-last")

        self.assertIsInstance(first, Granted)
        self.assertEqual(second, Denied("no_remaining_units"))
        self.ledger.release(first.reservation)
        self.assertIsInstance(self.ledger.try_consume("acct-last"), Granted)

    def test_upgrade_during_pending_charge_does_not_spend(self) -> None:
        self.ledger.open_account("acct-up", remaining_units=1)
        admission = self.ledger.try_consume("acct-up")

        self.ledger.mark_unlimited("acct-up")
        self.ledger.commit(admission.reservation)

        balance = self.ledger.get_balance("acct-up")
        self.assertTrue(balance.unlimited)
        self.assertEqual(balance.remaining_units, 1)
        self.assertEqual(balance.reserved_units, 0)

    def test_grant_units_and_mark_limited(self) -> None:
        self.ledger.open_account("acct-sub", remaining_units=0, unlimited=True)

        self.ledger.mark_limited("acct-sub")
        balance = self.ledger.grant_units("acct-sub", 4)

        self.assertFalse(balance.unlimited)
        self.assertEqual(balance.remaining_units, 4)
        self.assertIsNone(self.ledger.grant_units("acct-ghost", 1))

    def test_ensure_account_provisions_once(self) -> None:
        first = self.ledger.ensure_account("acct-new", free_units=5)
        admission = self.ledger.try_consume("acct-new")
        self.ledger.commit(admission.reservation)
        again = self.ledger.ensure_account("acct-new", free_units=5)

        self.assertEqual(first.remaining_units, 5)
        self.assertEqual(again.remaining_units, 4)

    def test_release_stale_skips_live_jobs(self) -> None:
        self.ledger.open_account("acct-crash", remaining_units=3)
        orphan = self.ledger.try_consume("acct-crash", job_id="job-orphan")
        live = self.ledger.try_consume("acct-crash", job_id="job-live")

        released = self.ledger.release_stale(older_than=timedelta(seconds=-1), live_job_ids={"job-live"})

        self.assertEqual(released, 1)
        self.assertEqual(self.ledger.get_balance("acct-crash").reserved_units, 1)
        self.assertFalse(self.ledger.release(orphan.reservation))
        self.assertTrue(self.ledger.release(live.reservation))

    def test_refund_credits_limited_accounts_only(self) -> None:
        self.ledger.open_account("acct-limited", remaining_units=1)
        self.ledger.open_account("acct-pro", remaining_units=2)
        self.ledger.mark_unlimited("acct-pro")
        before = self.store.get_account("acct-pro")

        limited = self.ledger.refund("acct-limited", units=2)
        unlimited = self.ledger.refund("acct-pro")

        self.assertEqual(limited.remaining_units, 3)
        self.assertTrue(unlimited.unlimited)
        after = self.store.get_account("acct-pro")
        self.assertEqual(after.remaining_units, 2)
        self.assertEqual(after.version, before.version)
        self.assertIsNone(self.ledger.refund("acct-ghost"))


def _sqlite_store(case: unittest.TestCase) -> SqlQuotaStore:
    tmp = tempfile.TemporaryDirectory()
    store = SqlQuotaStore.from_url(f"sqlite:///{Path(tmp.name) / 'quota.db'}")
    case.addCleanup(tmp.cleanup)
    case.addCleanup(store.dispose)
    return store


class InMemoryQuotaLedgerTests(_LedgerBehaviour, unittest.TestCase):
    def make_store(self) -> QuotaStore:
        return InMemoryQuotaStore()

    def test_per_account_locks_do_not_share_state(self) -> None:
        self.ledger.open_account("acct-a", remaining_units=1)
        self.ledger.open_account("acct-b", remaining_units=1)

        self.assertIsInstance(self.ledger.try_consume("acct-a"), Granted)
        self.assertIsInstance(self.ledger.try_consume("acct-b"), Granted)


class SqlQuotaLedgerTests(_LedgerBehaviour, unittest.TestCase):
    def make_store(self) -> QuotaStore:
        return _sqlite_store(self)


class _DecrementOnAdmissionBehaviour:
    def make_store(self) -> QuotaStore:
        raise NotImplementedError

    def setUp(self) -> None:
        self.store = self.make_store()
        self.store.open_account("acct-a", remaining_units=2, unlimited=False)

    def test_unit_is_spent_at_admission(self) -> None:
        ledger = QuotaLedger(self.store, policy="decrement_on_admission")

        admission = ledger.try_consume("acct-a")

        self.assertTrue(admission.reservation.charged)
        balance = ledger.get_balance("acct-a")
        self.assertEqual(balance.remaining_units, 1)
        self.assertEqual(balance.reserved_units, 0)
        ledger.commit(admission.reservation)
        self.assertEqual(ledger.get_balance("acct-a").remaining_units, 1)

    def test_failure_is_not_refunded_by_default(self) -> None:
        ledger = QuotaLedger(self.store, policy="decrement_on_admission")

        admission = ledger.try_consume("acct-a")
        ledger.release(admission.reservation)

        self.assertEqual(ledger.get_balance("acct-a").remaining_units, 1)

    def test_failure_is_refunded_when_enabled(self) -> None:
        ledger = QuotaLedger(self.store, policy="decrement_on_admission", refund_on_failure=True)

        admission = ledger.try_consume("acct-a")
        ledger.release(admission.reservation)
        ledger.release(admission.reservation)

        self.assertEqual(ledger.get_balance("acct-a").remaining_units, 2)

    def test_empty_and_missing_accounts_are_denied(self) -> None:
        ledger = QuotaLedger(self.store, policy="decrement_on_admission")
        ledger.try_consume("acct-a")
        ledger.try_consume("acct-a")

        self.assertEqual(ledger.try_consume("acct-a"), Denied("no_remaining_units"))
        self.assertEqual(ledger.try_consume("acct-ghost"), Denied("account_not_found"))
        self.assertEqual(ledger.get_balance("acct-a").remaining_units, 0)

    def test_concurrent_admissions_spend_exactly_the_available_units(self) -> None:
        units, callers = 3, 12
        self.store.open_account("acct-race", remaining_units=units, unlimited=False)
        ledger = QuotaLedger(self.store, policy="decrement_on_admission")
        barrier = threading.Barrier(callers)

        def attempt(_: int):
            barrier.wait()
            return ledger.try_consume("acct-race")

        with ThreadPoolExecutor(max_workers=callers) as pool:
            results = list(pool.map(attempt, range(callers)))

        granted = [result for result in results if isinstance(result, Granted)]
        self.assertEqual(len(granted), units)
        self.assertEqual(results.count(Denied("no_remaining_units")), callers - units)
        balance = ledger.get_balance("acct-race")
        self.assertEqual(balance.remaining_units, 0)
        self.assertEqual(balance.reserved_units, 0)


class InMemoryDecrementOnAdmissionTests(_DecrementOnAdmissionBehaviour, unittest.TestCase):
    def make_store(self) -> QuotaStore:
        return InMemoryQuotaStore()


class SqlDecrementOnAdmissionTests(_DecrementOnAdmissionBehaviour, unittest.TestCase):
    def make_store(self) -> QuotaStore:
        return _sqlite_store(self)


if __name__ == "__main__":
    unittest.main()
