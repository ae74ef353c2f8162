"""Entry gate: liquidity floor, security score and critical findings."""

from __future__ import annotations

import logging
from typing import Any

from config import SecuritySettings
from monitor.token_checker import SecurityCheck
from trading.models import GateDecision, Pool, SecurityFinding, SecurityReport, Severity
from utils.errors import SecurityCheckError

logger = logging.getLogger(__name__)


class EntryGate:
    def __init__(self, security_check: SecurityCheck, settings: SecuritySettings, min_liquidity_base: float) -> None:
        self._check = security_check
        self._settings = settings
        self._min_liquidity_base = float(min_liquidity_base)
        self._accepted = 0
        self._rejected = 0

    async def evaluate(self, pool: Pool) -> GateDecision:
        decision = await self._evaluate(pool)
        if decision.accepted:
            self._accepted += 1
            score = decision.report.score if decision.report else None
            logger.info("GATE_ACCEPT pool=%s asset=%s score=%s", pool.pool_id, pool.asset_address, score)
        else:
            self._rejected += 1
            logger.info("GATE_REJECT pool=%s asset=%s reason=%s", pool.pool_id, pool.asset_address, decision.reason)
        return decision

    def runtime_stats(self, reset: bool = False) -> dict[str, Any]:
        stats = {"accepted": self._accepted, "rejected": self._rejected, "security": self._check.runtime_stats(reset=reset)}
        if reset:
            self._accepted = 0
            self._rejected = 0
        return stats

    async def _evaluate(self, pool: Pool) -> GateDecision:
        if pool.liquidity_base < self._min_liquidity_base:
            return GateDecision.reject("low liquidity")

        try:
            report = await self._check.check_token(pool.asset_address)
        except SecurityCheckError as exc:
            if self._settings.strict:
                logger.warning("Security check unavailable asset=%s error=%s", pool.asset_address, exc)
                return GateDecision.reject("security check unavailable")
            logger.warning("Security check unavailable, continuing degraded asset=%s error=%s", pool.asset_address, exc)
            report = SecurityReport(
                score=self._settings.degraded_score,
                findings=(
                    SecurityFinding(
                        name="security_check_unavailable",
                        severity=Severity.WARNING,
                        description=str(exc),
                    ),
                ),
                source="degraded",
                degraded=True,
            )

        if report.score is None or report.score < self._settings.min_acceptable_score:
            return GateDecision.reject("low score", report)

        critical = report.critical_findings()
        if critical:
            return GateDecision.reject(f"critical risk: {critical[0].name}", report)

        return GateDecision.accept(report)
