from __future__ import annotations

import unittest

from config import SecuritySettings
from tests.fakes import FakeSecurityCheck, make_pool
from trading.entry_gate import EntryGate
from trading.models import SecurityFinding, SecurityReport, Severity
from utils.errors import SecurityCheckError


class EntryGateTests(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        self.check = FakeSecurityCheck(SecurityReport(score=85, findings=(), source="fake"))
        self.gate = EntryGate(self.check, SecuritySettings(min_acceptable_score=70, strict=True), 10.0)

    async def test_accepts_liquid_pool_with_good_score(self) -> None:
        decision = await self.gate.evaluate(make_pool(liquidity=50.0))
        self.assertTrue(decision.accepted)
        self.assertEqual(decision.report.score, 85)

    async def test_low_liquidity_rejected_before_security_check(self) -> None:
        decision = await self.gate.evaluate(make_pool(liquidity=5.0))
        self.assertFalse(decision.accepted)
        self.assertEqual(decision.reason, "low liquidity")
        self.assertEqual(self.check.calls, [])

    async def test_critical_finding_rejects_despite_high_score(self) -> None:
        pool = make_pool()
        self.check.reports[pool.asset_address] = SecurityReport(
            score=95,
            findings=(SecurityFinding("honeypot", Severity.CRITICAL, "cannot sell"),),
        )
        decision = await self.gate.evaluate(pool)
        self.assertFalse(decision.accepted)
        self.assertEqual(decision.reason, "critical risk: honeypot")

    async def test_warning_findings_do_not_reject(self) -> None:
        pool = make_pool()
        self.check.reports[pool.asset_address] = SecurityReport(
            score=80,
            findings=(SecurityFinding("low_lp_lock", Severity.WARNING),),
        )
        self.assertTrue((await self.gate.evaluate(pool)).accepted)

    async def test_low_and_missing_scores_rejected(self) -> None:
        low, unknown = make_pool(1), make_pool(2)
        self.check.reports[low.asset_address] = SecurityReport(score=69)
        self.check.reports[unknown.asset_address] = SecurityReport(score=None)

        self.assertEqual((await self.gate.evaluate(low)).reason, "low score")
        self.assertEqual((await self.gate.evaluate(unknown)).reason, "low score")

    async def test_strict_mode_rejects_when_check_unavailable(self) -> None:
        pool = make_pool()
        self.check.errors[pool.asset_address] = SecurityCheckError("timeout", source="rugcheck")
        decision = await self.gate.evaluate(pool)
        self.assertFalse(decision.accepted)
        self.assertEqual(decision.reason, "security check unavailable")

    async def test_permissive_mode_continues_with_degraded_report(self) -> None:
        gate = EntryGate(self.check, SecuritySettings(min_acceptable_score=70, strict=False, degraded_score=70), 10.0)
        pool = make_pool()
        self.check.errors[pool.asset_address] = SecurityCheckError("timeout", source="rugcheck")

        decision = await gate.evaluate(pool)

        self.assertTrue(decision.accepted)
        self.assertTrue(decision.report.degraded)
        self.assertEqual(decision.report.findings[0].severity, Severity.WARNING)

    async def test_permissive_mode_still_applies_score_floor(self) -> None:
        gate = EntryGate(self.check, SecuritySettings(min_acceptable_score=70, strict=False, degraded_score=50), 10.0)
        pool = make_pool()
        self.check.errors[pool.asset_address] = SecurityCheckError("timeout", source="rugcheck")
        self.assertEqual((await gate.evaluate(pool)).reason, "low score")


if __name__ == "__main__":
    unittest.main()
