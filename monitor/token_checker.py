"""Token security checks backed by the RugCheck report API."""

from __future__ import annotations

import logging
import time
from typing import Any, Callable, Protocol

from config import ApiSettings, SecuritySettings
from trading.models import SecurityFinding, SecurityReport, Severity
from utils.addressing import normalize_address
from utils.errors import SecurityCheckError
from utils.http_client import ResilientHttpClient

logger = logging.getLogger(__name__)

_LEVEL_SEVERITY = {
    "danger": Severity.CRITICAL,
    "warn": Severity.WARNING,
    "warning": Severity.WARNING,
}

UNCHECKED_FINDING = SecurityFinding(
    name="partial_coverage",
    severity=Severity.INFO,
    description="Transfer tax and sell simulation are not evaluated",
)


class SecurityCheck(Protocol):
    async def check_token(self, address: str) -> SecurityReport:
        ...

    def runtime_stats(self, reset: bool = False) -> dict[str, Any]:
        ...


def _to_float(value: Any) -> float | None:
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


class RugCheckClient:
    """Maps a RugCheck token report onto a 0-100 safety score (higher is safer)."""

    def __init__(
        self,
        http: ResilientHttpClient,
        apis: ApiSettings,
        security: SecuritySettings,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._http = http
        self._api_base = apis.rugcheck_api.rstrip("/")
        self._settings = security
        self._clock = clock
        self._checks_total = 0
        self._api_ok = 0
        self._api_fail = 0
        self._cache_hits = 0
        self._api_fail_reasons: dict[str, int] = {}
        self._safety_cache: dict[str, tuple[float, SecurityReport]] = {}

    async def close(self) -> None:
        await self._http.close()

    def runtime_stats(self, reset: bool = False) -> dict[str, Any]:
        total = int(self._checks_total)
        err_pct = (float(self._api_fail) / total * 100.0) if total > 0 else 0.0
        top_reason = "none"
        top_count = 0
        if self._api_fail_reasons:
            top_reason, top_count = max(self._api_fail_reasons.items(), key=lambda kv: int(kv[1]))
        out = {
            "checks_total": total,
            "api_ok": int(self._api_ok),
            "api_fail": int(self._api_fail),
            "cache_hits": int(self._cache_hits),
            "api_error_percent": round(err_pct, 2),
            "fail_reason_top": top_reason,
            "fail_reason_top_count": int(top_count),
            "fail_reason_counts": dict(self._api_fail_reasons),
        }
        if reset:
            self._checks_total = 0
            self._api_ok = 0
            self._api_fail = 0
            self._cache_hits = 0
            self._api_fail_reasons = {}
        return out

    def _mark_fail_reason(self, reason: str | None) -> str:
        key = str(reason or "unknown").strip().lower() or "unknown"
        self._api_fail_reasons[key] = int(self._api_fail_reasons.get(key, 0)) + 1
        return key

    def _remember(self, address: str, report: SecurityReport) -> None:
        self._safety_cache[address] = (self._clock(), report)
        if len(self._safety_cache) > 5000:
            oldest_key = min(self._safety_cache.items(), key=lambda kv: kv[1][0])[0]
            self._safety_cache.pop(oldest_key, None)

    def _get_cached(self, address: str) -> SecurityReport | None:
        entry = self._safety_cache.get(address)
        if entry is None:
            return None
        ts, report = entry
        if self._clock() - ts > float(self._settings.cache_ttl_seconds):
            self._safety_cache.pop(address, None)
            return None
        return report

    async def check_token(self, address: str) -> SecurityReport:
        address = normalize_address(address)
        cached = self._get_cached(address)
        if cached is not None:
            self._cache_hits += 1
            return cached

        self._checks_total += 1
        result = await self._http.get_json(f"{self._api_base}/tokens/{address}/report", source="rugcheck")
        if not result.ok or not isinstance(result.data, dict):
            self._api_fail += 1
            reason = self._mark_fail_reason(f"http_{result.status}" if result.status else result.error or "bad_payload")
            raise SecurityCheckError(f"RugCheck unavailable for {address}: {reason}", source="rugcheck", status=result.status)

        self._api_ok += 1
        report = self.parse_report(result.data)
        self._remember(address, report)
        return report

    def parse_report(self, data: dict[str, Any]) -> SecurityReport:
        score: int | None = None
        risk = _to_float(data.get("score_normalised"))
        if risk is not None:
            score = int(round(max(0.0, min(100.0, 100.0 - risk))))

        findings: list[SecurityFinding] = []
        for item in data.get("risks") or []:
            if not isinstance(item, dict):
                continue
            level = str(item.get("level") or "").strip().lower()
            findings.append(
                SecurityFinding(
                    name=str(item.get("name") or "unnamed risk"),
                    severity=_LEVEL_SEVERITY.get(level, Severity.INFO),
                    description=str(item.get("description") or item.get("value") or ""),
                )
            )

        authority_severity = Severity.CRITICAL if self._settings.reject_active_authorities else Severity.WARNING

        def _flag(name: str, severity: Severity, description: str) -> None:
            findings.append(SecurityFinding(name=name, severity=severity, description=description))

        if data.get("mintAuthority"):
            _flag("mint_authority", authority_severity, "Mint authority is still active")
        if data.get("freezeAuthority"):
            _flag("freeze_authority", authority_severity, "Freeze authority is still active")

        lp_locked = self._best_lp_locked_pct(data.get("markets"))
        if lp_locked is not None and lp_locked < self._settings.min_lp_locked_percent:
            _flag(
                "lp_unlocked",
                Severity.WARNING,
                f"LP locked {lp_locked:.1f}% < {self._settings.min_lp_locked_percent:.1f}%",
            )

        top10 = self._top10_holders_pct(data.get("topHolders"))
        if top10 is not None and top10 > self._settings.max_top10_holders_percent:
            _flag(
                "holder_concentration",
                Severity.WARNING,
                f"Top 10 holders own {top10:.1f}% > {self._settings.max_top10_holders_percent:.1f}%",
            )

        findings.append(UNCHECKED_FINDING)
        return SecurityReport(score=score, findings=tuple(findings), source="rugcheck")

    @staticmethod
    def _best_lp_locked_pct(markets: Any) -> float | None:
        if not isinstance(markets, list):
            return None
        best: float | None = None
        for market in markets:
            if not isinstance(market, dict):
                continue
            pct = _to_float((market.get("lp") or {}).get("lpLockedPct"))
            if pct is not None and (best is None or pct > best):
                best = pct
        return best

    @staticmethod
    def _top10_holders_pct(holders: Any) -> float | None:
        if not isinstance(holders, list) or not holders:
            return None
        pcts = [_to_float(h.get("pct")) for h in holders[:10] if isinstance(h, dict)]
        values = [p for p in pcts if p is not None]
        if not values:
            return None
        return sum(values)
