from __future__ import annotations

import unittest
from dataclasses import replace

from config import TelegramSettings, TradingSettings
from monitor.alerter import AlertDispatcher, format_buy, format_rejection
from tests.fakes import FakeClock, RecordingNotifier, make_pool
from trading.models import Alert, AlertKind, Position, Valuation


def _valuation(pnl_percent: float, invested: float = 0.1, refreshed_at: float = 1.0) -> Valuation:
    value = invested * (1 + pnl_percent / 100.0)
    return Valuation(
        current_price_per_unit=value / 1000.0,
        current_value_base=value,
        pnl_base=value - invested,
        pnl_percent=pnl_percent,
        high_water_value=value,
        low_water_value=min(value, invested),
        last_refreshed_at=refreshed_at,
    )


class _JournalSpy:
    def __init__(self) -> None:
        self.alerts: list[Alert] = []

    def record_alert(self, alert: Alert) -> bool:
        self.alerts.append(alert)
        return True


class AlertDispatcherTests(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        self.clock = FakeClock(0.0)
        self.notifier = RecordingNotifier()
        self.journal = _JournalSpy()
        self.telegram = TelegramSettings(
            bot_token="token",
            chat_id="42",
            notifications_enabled=True,
            alert_min_interval_seconds=0.0,
            time_alert_interval_seconds=1800,
        )
        self.dispatcher = AlertDispatcher(
            self.notifier, self.telegram, TradingSettings(), clock=self.clock, journal=self.journal
        )
        self.position = Position.open("MintA", 0.0, 0.1, 1000.0, None, symbol="AAA")

    def _alert(self, kind: AlertKind = AlertKind.BOUGHT, asset: str = "MintA") -> Alert:
        return Alert(asset, kind, 0.0, self.clock(), f"{kind.value} {asset}")

    async def test_profit_alert_fires_once_per_crossing(self) -> None:
        kinds = []
        for now, pnl in enumerate((49.0, 51.0, 52.0, 49.0, 51.0), start=1):
            fired = await self.dispatcher.observe(self.position, _valuation(pnl), float(now))
            kinds.extend(alert.kind for alert in fired)

        self.assertEqual(kinds, [AlertKind.PROFIT_TARGET, AlertKind.PROFIT_TARGET])
        self.assertEqual(len(self.notifier.messages), 2)

    async def test_stop_loss_and_trailing_alerts_use_hysteresis(self) -> None:
        falling = _valuation(-55.0)
        falling.high_water_value = 0.1
        first = await self.dispatcher.observe(self.position, falling, 1.0)
        again = await self.dispatcher.observe(self.position, falling, 2.0)

        self.assertEqual({a.kind for a in first}, {AlertKind.STOP_LOSS, AlertKind.TRAILING_STOP})
        self.assertEqual(again, [])

    async def test_no_price_alerts_before_first_refresh(self) -> None:
        fired = await self.dispatcher.observe(self.position, Valuation.at_entry(self.position), 10.0)
        self.assertEqual(fired, [])

    async def test_time_alerts_fire_once_per_boundary(self) -> None:
        fired = []
        for now in (1799.0, 1800.0, 2000.0, 3600.0, 9000.0):
            fired.extend(await self.dispatcher.observe(self.position, None, now))

        self.assertEqual([a.kind for a in fired], [AlertKind.TIME_ELAPSED] * 3)
        self.assertEqual([a.emitted_at for a in fired], [1800.0, 3600.0, 9000.0])

    async def test_delivery_failure_is_counted_not_raised(self) -> None:
        dispatcher = AlertDispatcher(RecordingNotifier(fail=True), self.telegram, TradingSettings(), clock=self.clock)
        with self.assertLogs("monitor.alerter", level="WARNING"):
            sent = await dispatcher.emit(self._alert())
        self.assertFalse(sent)
        self.assertEqual(dispatcher.runtime_stats()["failed"], 1)

    async def test_rate_limit_per_asset_and_kind(self) -> None:
        dispatcher = AlertDispatcher(
            self.notifier,
            TelegramSettings(bot_token="t", chat_id="1", notifications_enabled=True, alert_min_interval_seconds=5.0),
            TradingSettings(),
            clock=self.clock,
        )
        self.assertTrue(await dispatcher.emit(self._alert()))
        self.assertFalse(await dispatcher.emit(self._alert()))
        self.assertTrue(await dispatcher.emit(self._alert(asset="MintB")))
        self.clock.advance(6.0)
        self.assertTrue(await dispatcher.emit(self._alert()))
        self.assertEqual(dispatcher.suppressed, 1)

    async def test_quick_recrossing_is_delivered_with_default_spacing(self) -> None:
        telegram = TelegramSettings(bot_token="t", chat_id="1", notifications_enabled=True)
        self.assertGreater(telegram.alert_min_interval_seconds, 1.0)
        dispatcher = AlertDispatcher(self.notifier, telegram, TradingSettings(), clock=self.clock)

        for pnl in (49.0, 51.0, 49.0, 51.0, 52.0, 55.0, 57.0):
            self.clock.advance(1.0)
            await dispatcher.observe(self.position, _valuation(pnl), self.clock())

        self.assertEqual(len(self.notifier.messages), 2)
        self.assertEqual(dispatcher.suppressed, 0)

    async def test_toggles_suppress_delivery(self) -> None:
        dispatcher = AlertDispatcher(
            self.notifier,
            TelegramSettings(bot_token="t", chat_id="1", notifications_enabled=True, send_rejection_alerts=False),
            TradingSettings(),
            clock=self.clock,
        )
        self.assertFalse(await dispatcher.emit(self._alert(AlertKind.REJECTED)))
        self.assertTrue(await dispatcher.emit(self._alert(AlertKind.SOLD)))
        self.assertEqual(len(self.notifier.messages), 1)

        muted = AlertDispatcher(self.notifier, TelegramSettings(), TradingSettings(), clock=self.clock)
        self.assertFalse(await muted.emit(self._alert(AlertKind.SOLD)))

    async def test_sent_alerts_are_journaled(self) -> None:
        await self.dispatcher.emit(self._alert(AlertKind.SOLD))
        self.assertEqual([a.kind for a in self.journal.alerts], [AlertKind.SOLD])

    async def test_forget_rearms_asset(self) -> None:
        await self.dispatcher.observe(self.position, _valuation(60.0), 1.0)
        self.dispatcher.forget("MintA")
        fired = await self.dispatcher.observe(self.position, _valuation(60.0), 2.0)
        self.assertEqual([a.kind for a in fired], [AlertKind.PROFIT_TARGET])


class AlertFormattingTests(unittest.TestCase):
    def test_messages_escape_html(self) -> None:
        pool = replace(make_pool(), symbol="<b>X</b>")
        text = format_rejection(pool, "low score & more")
        self.assertIn("&lt;b&gt;X&lt;/b&gt;", text)
        self.assertIn("low score &amp; more", text)

    def test_paper_buy_is_labelled(self) -> None:
        pool = make_pool()
        position = Position.open(pool.asset_address, 0.0, 0.1, 1000.0, None, symbol=pool.symbol)
        self.assertIn("PAPER BUY", format_buy(pool, position, paper=True))
        self.assertNotIn("Tx:", format_buy(pool, position, paper=True))


if __name__ == "__main__":
    unittest.main()
