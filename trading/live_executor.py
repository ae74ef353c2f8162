"""Swap execution through the Jupiter aggregator, live or paper."""

from __future__ import annotations

import base64
import logging
from typing import Any, Protocol

from config import ApiSettings, TradingSettings, WalletSettings
from trading.models import Quote, SwapResult, TradeFill
from trading.wallet import LAMPORTS_PER_SOL, SolanaRpcClient, Wallet
from utils.errors import ExecutionRejected, TransportError, ValidationError
from utils.http_client import HttpResult, ResilientHttpClient

logger = logging.getLogger(__name__)

NO_ROUTE_MARKERS = (
    "no route",
    "no routes found",
    "could not find any route",
    "not tradable",
    "token_not_tradable",
    "could_not_find_any_route",
)


def _is_no_route(text: str) -> bool:
    lowered = str(text or "").lower()
    return any(marker in lowered for marker in NO_ROUTE_MARKERS)


def _to_raw(amount: float, decimals: int) -> int:
    """UI amount to integer base units, rounded to the nearest unit."""
    return int(round(amount * (10**decimals)))


class Executor(Protocol):
    async def buy(self, asset_address: str, base_amount: float) -> TradeFill:
        ...

    async def sell(self, asset_address: str, units: float) -> TradeFill:
        ...


class JupiterClient:
    def __init__(
        self,
        http: ResilientHttpClient,
        apis: ApiSettings,
        trading: TradingSettings,
        wallet: Wallet | None = None,
    ) -> None:
        self._http = http
        self._quote_urls = tuple(apis.jupiter_quote_urls)
        self._swap_url = apis.jupiter_swap_url
        self._headers = {"x-api-key": apis.jupiter_api_key} if apis.jupiter_api_key else {}
        self._priority_fee_lamports = int(trading.priority_fee_lamports)
        self._wallet = wallet

    @staticmethod
    def _parse_quote(data: dict[str, Any], slippage_bps: int) -> Quote:
        try:
            route_labels = tuple(
                str((step.get("swapInfo") or {}).get("label") or "")
                for step in data.get("routePlan") or []
                if isinstance(step, dict)
            )
            return Quote(
                input_mint=str(data["inputMint"]),
                output_mint=str(data["outputMint"]),
                in_amount_raw=int(data["inAmount"]),
                out_amount_raw=int(data["outAmount"]),
                slippage_bps=int(data.get("slippageBps", slippage_bps)),
                price_impact_pct=float(data.get("priceImpactPct") or 0),
                route_labels=route_labels,
                raw=data,
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise ValidationError(f"Malformed Jupiter quote: {exc}") from exc

    async def get_quote(self, input_mint: str, output_mint: str, amount_raw: int, slippage_bps: int) -> Quote:
        if amount_raw <= 0:
            raise ExecutionRejected(f"quote amount must be positive, got {amount_raw}")
        params = {
            "inputMint": input_mint,
            "outputMint": output_mint,
            "amount": str(int(amount_raw)),
            "slippageBps": str(int(slippage_bps)),
        }
        last: HttpResult | None = None
        for url in self._quote_urls:
            result = await self._http.get_json(url, source="jupiter", params=params, headers=self._headers)
            if result.ok and isinstance(result.data, dict):
                if result.data.get("error"):
                    message = str(result.data.get("error"))
                    if _is_no_route(message) or _is_no_route(str(result.data.get("errorCode") or "")):
                        raise ExecutionRejected(f"no route {input_mint}->{output_mint}: {message}")
                    raise ValidationError(f"Jupiter quote error: {message}")
                return self._parse_quote(result.data, slippage_bps)
            if not result.retryable and _is_no_route(result.body):
                raise ExecutionRejected(f"no route {input_mint}->{output_mint}: {result.body[:200]}")
            logger.warning("Jupiter quote endpoint failed url=%s status=%s error=%s", url, result.status, result.error)
            last = result
        error = last.error if last is not None else "no quote endpoints configured"
        raise TransportError(f"all Jupiter quote endpoints failed: {error}", source="jupiter", status=last.status if last else 0)

    async def execute_swap(self, quote: Quote) -> SwapResult:
        if self._wallet is None:
            raise ExecutionRejected("live swap requires a wallet")
        payload = {
            "quoteResponse": quote.raw,
            "userPublicKey": self._wallet.public_key,
            "wrapAndUnwrapSol": True,
            "dynamicComputeUnitLimit": True,
            "prioritizationFeeLamports": self._priority_fee_lamports,
        }
        result = await self._http.post_json(self._swap_url, payload, source="jupiter", headers=self._headers)
        if not result.ok:
            if result.retryable:
                raise TransportError(f"Jupiter swap failed: {result.error}", source="jupiter", status=result.status)
            raise ExecutionRejected(f"Jupiter swap rejected status={result.status}: {result.body[:200]}")
        data = result.data if isinstance(result.data, dict) else {}
        if data.get("simulationError"):
            raise ExecutionRejected(f"swap simulation failed: {data['simulationError']}")
        swap_tx_b64 = data.get("swapTransaction")
        if not swap_tx_b64:
            raise ValidationError("Jupiter swap response has no swapTransaction")

        signed = self._wallet.sign(base64.b64decode(swap_tx_b64))
        signature = await self._wallet.rpc.send_transaction(signed)
        await self._wallet.rpc.confirm_transaction(signature)
        return SwapResult(signature=signature, in_amount_raw=quote.in_amount_raw, out_amount_raw=quote.out_amount_raw)


class LiveExecutor:
    def __init__(self, jupiter: JupiterClient, wallet: Wallet, trading: TradingSettings, wallet_settings: WalletSettings) -> None:
        self._jupiter = jupiter
        self.wallet = wallet
        self._slippage_bps = int(trading.max_slippage_bps)
        self._base_mint = wallet_settings.base_mint

    async def buy(self, asset_address: str, base_amount: float) -> TradeFill:
        decimals = await self.wallet.get_token_decimals(asset_address)
        quote = await self._jupiter.get_quote(
            self._base_mint, asset_address, int(round(base_amount * LAMPORTS_PER_SOL)), self._slippage_bps
        )
        swap = await self._jupiter.execute_swap(quote)
        units = swap.out_amount_raw / (10**decimals)
        logger.info("LIVE_BUY asset=%s spent=%.6f units=%.6f tx=%s", asset_address, base_amount, units, swap.signature)
        return TradeFill(base_amount=swap.in_amount_raw / LAMPORTS_PER_SOL, units=units, execution_ref=swap.signature)

    async def sell(self, asset_address: str, units: float) -> TradeFill:
        decimals = await self.wallet.get_token_decimals(asset_address)
        quote = await self._jupiter.get_quote(
            asset_address, self._base_mint, _to_raw(units, decimals), self._slippage_bps
        )
        swap = await self._jupiter.execute_swap(quote)
        received = swap.out_amount_raw / LAMPORTS_PER_SOL
        logger.info("LIVE_SELL asset=%s units=%.6f received=%.6f tx=%s", asset_address, units, received, swap.signature)
        return TradeFill(base_amount=received, units=units, execution_ref=swap.signature)


class PaperExecutor:
    """Prices fills from real Jupiter quotes without submitting anything."""

    def __init__(self, jupiter: JupiterClient, rpc: SolanaRpcClient, trading: TradingSettings, wallet_settings: WalletSettings) -> None:
        self._jupiter = jupiter
        self._rpc = rpc
        self._slippage_bps = int(trading.max_slippage_bps)
        self._base_mint = wallet_settings.base_mint

    async def buy(self, asset_address: str, base_amount: float) -> TradeFill:
        decimals = await self._rpc.get_token_decimals(asset_address)
        quote = await self._jupiter.get_quote(
            self._base_mint, asset_address, int(round(base_amount * LAMPORTS_PER_SOL)), self._slippage_bps
        )
        units = quote.out_amount_raw / (10**decimals)
        logger.info("PAPER_BUY asset=%s spent=%.6f units=%.6f", asset_address, base_amount, units)
        return TradeFill(base_amount=base_amount, units=units, execution_ref=None)

    async def sell(self, asset_address: str, units: float) -> TradeFill:
        decimals = await self._rpc.get_token_decimals(asset_address)
        quote = await self._jupiter.get_quote(
            asset_address, self._base_mint, _to_raw(units, decimals), self._slippage_bps
        )
        received = quote.out_amount_raw / LAMPORTS_PER_SOL
        logger.info("PAPER_SELL asset=%s units=%.6f received=%.6f", asset_address, units, received)
        return TradeFill(base_amount=received, units=units, execution_ref=None)
