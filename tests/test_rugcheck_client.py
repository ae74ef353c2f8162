from __future__ import annotations

import unittest

from config import ApiSettings, SecuritySettings
from monitor.token_checker import UNCHECKED_FINDING, RugCheckClient
from tests.fakes import FakeClock, StubHttp
from trading.models import Severity
from utils.errors import SecurityCheckError
from utils.http_client import HttpResult

MINT = "MintA111111111111111111111111111111111111111"
REPORT_URL = f"https://api.rugcheck.xyz/v1/tokens/{MINT}/report"


class RugCheckClientTests(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        self.http = StubHttp()
        self.clock = FakeClock(0.0)
        self.client = RugCheckClient(self.http, ApiSettings(), SecuritySettings(cache_ttl_seconds=60), clock=self.clock)

    def test_parse_report_maps_score_and_levels(self) -> None:
        report = self.client.parse_report(
            {
                "score_normalised": 12,
                "risks": [
                    {"name": "Low Liquidity", "level": "danger", "description": "thin pool"},
                    {"name": "Large Amount of LP Unlocked", "level": "warn"},
                    {"name": "Copycat token", "level": "info"},
                ],
            }
        )
        self.assertEqual(report.score, 88)
        severities = {f.name: f.severity for f in report.findings}
        self.assertEqual(severities["Low Liquidity"], Severity.CRITICAL)
        self.assertEqual(severities["Large Amount of LP Unlocked"], Severity.WARNING)
        self.assertEqual(severities["Copycat token"], Severity.INFO)
        self.assertIn(UNCHECKED_FINDING, report.findings)

    def test_parse_report_flags_authorities_lp_and_holders(self) -> None:
        report = self.client.parse_report(
            {
                "score_normalised": 5,
                "mintAuthority": "Auth1111111111111111111111111111111111111111",
                "freezeAuthority": None,
                "markets": [{"lp": {"lpLockedPct": 20}}, {"lp": {"lpLockedPct": 40}}],
                "topHolders": [{"pct": 10}, {"pct": 15}, {"pct": 12}],
            }
        )
        names = {f.name: f.severity for f in report.findings}
        self.assertEqual(names["mint_authority"], Severity.CRITICAL)
        self.assertNotIn("freeze_authority", names)
        self.assertEqual(names["lp_unlocked"], Severity.WARNING)
        self.assertEqual(names["holder_concentration"], Severity.WARNING)
        self.assertEqual(report.critical_findings()[0].name, "mint_authority")

    def test_missing_score_is_unknown(self) -> None:
        self.assertIsNone(self.client.parse_report({"risks": []}).score)

    async def test_reports_are_cached_until_ttl(self) -> None:
        self.http.add(REPORT_URL, HttpResult(True, 200, {"score_normalised": 20}))
        self.http.add(REPORT_URL, HttpResult(True, 200, {"score_normalised": 90}))

        first = await self.client.check_token(MINT)
        second = await self.client.check_token(MINT)
        self.clock.advance(61)
        third = await self.client.check_token(MINT)

        self.assertEqual((first.score, second.score, third.score), (80, 80, 10))
        self.assertEqual(self.client.runtime_stats()["cache_hits"], 1)
        self.assertEqual(len(self.http.calls), 2)

    async def test_unavailable_service_raises_security_check_error(self) -> None:
        self.http.add(REPORT_URL, HttpResult(False, 502, None, error="http_status_502"))
        with self.assertRaises(SecurityCheckError):
            await self.client.check_token(MINT)
        stats = self.client.runtime_stats()
        self.assertEqual(stats["api_fail"], 1)
        self.assertEqual(stats["fail_reason_top"], "http_502")


if __name__ == "__main__":
    unittest.main()
