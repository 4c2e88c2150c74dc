#!/usr/bin/env python3
"""
Integration tests: concurrent requests on one space or session

Runs against a file-backed SQLite database so every thread gets its own
connection; exactly one of two simultaneous requests may succeed.
"""

import os
import tempfile
import threading
import unittest
import sys
from pathlib import Path

# Add the src directory to the Python path
sys.path.insert(0, str(Path(__file__).resolve().parents[2] / "src"))

from qrpark.config import Settings
from qrpark.main import ParkingApplication
from qrpark.domain.models import SessionAlreadyCompletedError, SpaceOccupiedError


ENTRY = 1_768_845_600_000  # 2026-01-19T18:00:00Z


class ConcurrencyTestBase(unittest.TestCase):

    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.addCleanup(self.tmp.cleanup)
        database_url = f"sqlite:///{os.path.join(self.tmp.name, 'qrpark.db')}"

        self.now = ENTRY
        self.app = ParkingApplication(Settings(database_url=database_url), clock=lambda: self.now)
        demo = self.app.create_demo_lot()
        self.qr_code = demo["spaces"][0]["qr_code"]
        self.service = self.app.parking_service

    def run_twice(self, operation):
        """Run operation in two threads released at the same moment"""
        barrier = threading.Barrier(2)
        successes, errors = [], []
        lock = threading.Lock()

        def worker():
            barrier.wait()
            try:
                result = operation()
            except Exception as e:
                with lock:
                    errors.append(e)
            else:
                with lock:
                    successes.append(result)

        threads = [threading.Thread(target=worker) for _ in range(2)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=60)
        return successes, errors


class TestConcurrentCheckIn(ConcurrencyTestBase):

    def test_exactly_one_check_in_wins(self):
        successes, errors = self.run_twice(lambda: self.service.check_in(self.qr_code))

        self.assertEqual(len(successes), 1)
        self.assertEqual(len(errors), 1)
        self.assertIsInstance(errors[0], SpaceOccupiedError)

        dashboard = self.service.get_dashboard(self.app.auth())
        active = [entry for entry in dashboard.spaces if entry.active_session]
        self.assertEqual(len(active), 1)
        self.assertEqual(active[0].active_session.session_token, successes[0].session_token)
        self.assertEqual(dashboard.summary.occupied, 1)


class TestConcurrentCheckout(ConcurrencyTestBase):

    def test_exactly_one_checkout_wins(self):
        token = self.service.check_in(self.qr_code).session_token
        self.now += 90 * 60_000

        successes, errors = self.run_twice(lambda: self.service.complete_checkout(token, "demo"))

        self.assertEqual(len(successes), 1)
        self.assertEqual(len(errors), 1)
        self.assertIsInstance(errors[0], SessionAlreadyCompletedError)

        history = self.service.get_payment_history(self.app.auth())
        self.assertEqual(len(history), 1)
        self.assertEqual(history[0].amount, successes[0].amount)
        self.assertEqual(self.service.get_dashboard(self.app.auth()).summary.occupied, 0)


if __name__ == '__main__':
    unittest.main()
