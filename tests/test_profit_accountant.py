from __future__ import annotations

import unittest

from tests.fakes import FakePriceSource
from trading.models import Position
from trading.profit_accountant import ProfitAccountant


class ProfitAccountantTests(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        self.accountant = ProfitAccountant(stale_after_seconds=10.0)
        self.prices = FakePriceSource(base_usd=100.0)
        self.position = Position.open("MintA", 0.0, 0.1, 1000.0, None, symbol="AAA")
        self.accountant.open_position(self.position)

    async def test_valuation_tracks_price_in_base_currency(self) -> None:
        # 0.02 USD per unit at 100 USD per SOL = 0.0002 SOL per unit.
        self.prices.prices["MintA"] = 0.02
        valuations = await self.accountant.refresh_all([self.position], self.prices, now=5.0)

        valuation = valuations["MintA"]
        self.assertAlmostEqual(valuation.current_price_per_unit, 0.0002)
        self.assertAlmostEqual(valuation.current_value_base, 0.2)
        self.assertAlmostEqual(valuation.pnl_base, 0.1)
        self.assertAlmostEqual(valuation.pnl_percent, 100.0)
        self.assertEqual(valuation.last_refreshed_at, 5.0)

    async def test_watermarks_are_monotonic(self) -> None:
        for now, price in enumerate((0.02, 0.015, 0.005, 0.012), start=1):
            self.prices.prices["MintA"] = price
            await self.accountant.refresh_all([self.position], self.prices, now=float(now))

        valuation = self.accountant.valuation("MintA")
        self.assertAlmostEqual(valuation.high_water_value, 0.2)
        self.assertAlmostEqual(valuation.low_water_value, 0.05)
        self.assertAlmostEqual(valuation.current_value_base, 0.12)
        self.assertAlmostEqual(valuation.drawdown_percent, 40.0)

    async def test_failed_fetch_keeps_previous_valuation(self) -> None:
        self.prices.prices["MintA"] = 0.02
        await self.accountant.refresh_all([self.position], self.prices, now=5.0)

        self.prices.failing.add("MintA")
        await self.accountant.refresh_all([self.position], self.prices, now=6.0)

        valuation = self.accountant.valuation("MintA")
        self.assertAlmostEqual(valuation.current_value_base, 0.2)
        self.assertEqual(valuation.last_refreshed_at, 5.0)
        self.assertEqual(self.accountant.refresh_failures, 1)

    async def test_stale_price_does_not_count_as_refresh(self) -> None:
        self.prices.prices["MintA"] = 0.02
        self.prices.stale.add("MintA")
        await self.accountant.refresh_all([self.position], self.prices, now=5.0)

        self.assertIsNone(self.accountant.valuation("MintA").last_refreshed_at)
        self.assertTrue(self.accountant.is_stale("MintA", now=5.0))

    async def test_is_stale_after_threshold(self) -> None:
        self.prices.prices["MintA"] = 0.02
        await self.accountant.refresh_all([self.position], self.prices, now=5.0)
        self.assertFalse(self.accountant.is_stale("MintA", now=10.0))
        self.assertTrue(self.accountant.is_stale("MintA", now=20.0))

    async def test_malformed_price_for_one_asset_does_not_block_others(self) -> None:
        other = Position.open("MintB", 0.0, 0.1, 1000.0, None, symbol="BBB")
        self.accountant.open_position(other)
        self.prices.broken["MintA"] = AttributeError("'str' object has no attribute 'get'")
        self.prices.prices["MintB"] = 0.02

        with self.assertLogs("trading.profit_accountant", level="WARNING"):
            await self.accountant.refresh_all([self.position, other], self.prices, now=5.0)

        self.assertIsNone(self.accountant.valuation("MintA").last_refreshed_at)
        self.assertEqual(self.accountant.valuation("MintB").last_refreshed_at, 5.0)
        self.assertEqual(self.accountant.refresh_failures, 1)

    async def test_rebase_after_partial_resets_high_water(self) -> None:
        self.prices.prices["MintA"] = 0.02
        await self.accountant.refresh_all([self.position], self.prices, now=5.0)

        after = self.position.reduce_holdings(750.0, 0.15)
        self.accountant.rebase_after_partial(self.position, after)

        valuation = self.accountant.valuation("MintA")
        self.assertAlmostEqual(valuation.current_value_base, 0.05)
        self.assertAlmostEqual(valuation.high_water_value, 0.05)
        self.assertAlmostEqual(valuation.drawdown_percent, 0.0)

    def test_portfolio_summary(self) -> None:
        other = Position.open("MintB", 0.0, 0.1, 500.0, None, symbol="BBB")
        self.accountant.open_position(other)
        self.accountant.valuation("MintA").current_value_base = 0.15
        self.accountant.valuation("MintA").pnl_base = 0.05
        self.accountant.valuation("MintA").pnl_percent = 50.0
        self.accountant.valuation("MintB").current_value_base = 0.08
        self.accountant.valuation("MintB").pnl_base = -0.02
        self.accountant.valuation("MintB").pnl_percent = -20.0

        summary = self.accountant.portfolio_summary([self.position, other])

        self.assertEqual(summary.active, 2)
        self.assertEqual((summary.winning, summary.losing), (1, 1))
        self.assertAlmostEqual(summary.total_invested, 0.2)
        self.assertAlmostEqual(summary.total_value, 0.23)
        self.assertAlmostEqual(summary.total_pnl_percent, 15.0)
        self.assertEqual(summary.best_asset, "AAA")
        self.assertEqual(summary.worst_asset, "BBB")


if __name__ == "__main__":
    unittest.main()
