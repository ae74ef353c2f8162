from __future__ import annotations

import os
import tempfile
import unittest

from database.db import TradeJournal
from main import history_lines
from trading.models import Alert, AlertKind


class TradeJournalTests(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.journal = TradeJournal(f"sqlite:///{os.path.join(self._tmp.name, 'journal.db')}")
        self.journal.init()

    def tearDown(self) -> None:
        self.journal.engine.dispose()
        self._tmp.cleanup()

    def test_records_trades_and_sums_realized_pnl(self) -> None:
        self.journal.record_trade(asset_address="MintA", side="buy", base_amount=0.1, units=1000.0, symbol="AAA")
        self.journal.record_trade(
            asset_address="MintA", side="partial_sell", base_amount=0.12, units=750.0, pnl_base=0.045
        )
        self.journal.record_trade(asset_address="MintA", side="sell", base_amount=0.01, units=250.0, pnl_base=-0.015)
        self.journal.record_trade(asset_address="MintB", side="force_close", base_amount=0.0, units=10.0, pnl_base=-0.1)

        self.assertAlmostEqual(self.journal.realized_pnl(), -0.07)
        recent = self.journal.recent_trades(limit=2)
        self.assertEqual([t.side for t in recent], ["force_close", "sell"])

    def test_history_lines_list_oldest_first_with_total(self) -> None:
        self.journal.record_trade(asset_address="MintA", side="buy", base_amount=0.1, units=1000.0, symbol="AAA")
        self.journal.record_trade(asset_address="MintA", side="sell", base_amount=0.15, units=1000.0, symbol="AAA", pnl_base=0.05)

        lines = history_lines(self.journal, 10)

        self.assertEqual(len(lines), 3)
        self.assertIn("buy", lines[0])
        self.assertIn("pnl=+0.0500", lines[1])
        self.assertEqual(lines[2], "Realized PnL: +0.0500 SOL")

    def test_realized_pnl_is_zero_without_sells(self) -> None:
        self.journal.record_trade(asset_address="MintA", side="buy", base_amount=0.1, units=1000.0)
        self.assertEqual(self.journal.realized_pnl(), 0.0)

    def test_records_alerts(self) -> None:
        ok = self.journal.record_alert(Alert("MintA", AlertKind.STOP_LOSS, -55.0, 1_700_000_000.0, "stop"))
        self.assertTrue(ok)
        self.assertEqual(self.journal.write_failures, 0)

    def test_write_failure_is_logged_not_raised(self) -> None:
        self.journal.engine.dispose()
        broken = TradeJournal(f"sqlite:///{os.path.join(self._tmp.name, 'missing', 'nested.db')}")
        with self.assertLogs("database.db", level="WARNING"):
            ok = broken.record_trade(asset_address="MintA", side="buy", base_amount=0.1, units=1.0)
        self.assertFalse(ok)
        self.assertEqual(broken.write_failures, 1)


if __name__ == "__main__":
    unittest.main()
