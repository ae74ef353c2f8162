"""Solana wallet: keypair signing plus the JSON-RPC calls the executor needs."""

from __future__ import annotations

import asyncio
import base64
import json
import logging
import time
from typing import Any

from solders.keypair import Keypair
from solders.transaction import VersionedTransaction

from config import WalletSettings
from utils.errors import ConfigError, ExecutionRejected, TransportError, ValidationError
from utils.http_client import ResilientHttpClient

logger = logging.getLogger(__name__)

LAMPORTS_PER_SOL = 1_000_000_000


def load_keypair(private_key: str) -> Keypair:
    """Accept a base58 secret key or a JSON byte array as exported by solana-keygen."""
    raw = str(private_key or "").strip()
    if not raw:
        raise ConfigError("SOLANA_PRIVATE_KEY is empty")
    try:
        if raw.startswith("["):
            return Keypair.from_bytes(bytes(json.loads(raw)))
        return Keypair.from_base58_string(raw)
    except ValueError as exc:
        raise ConfigError(f"SOLANA_PRIVATE_KEY is not a valid keypair: {exc}") from exc


class SolanaRpcClient:
    def __init__(self, http: ResilientHttpClient, settings: WalletSettings) -> None:
        self._http = http
        self._url = settings.rpc_url
        self._confirm_timeout = float(settings.confirm_timeout_seconds)
        self._decimals_cache: dict[str, int] = {settings.base_mint: int(settings.base_decimals)}

    async def call(self, method: str, params: list[Any]) -> Any:
        payload = {"jsonrpc": "2.0", "id": 1, "method": method, "params": params}
        result = await self._http.post_json(self._url, payload, source="rpc")
        result.raise_for_transport("rpc")
        data = result.data
        if not isinstance(data, dict):
            raise ValidationError(f"RPC {method} returned unexpected payload")
        if data.get("error"):
            raise ExecutionRejected(f"RPC {method} error: {data['error']}")
        return data.get("result")

    async def get_balance_lamports(self, pubkey: str) -> int:
        result = await self.call("getBalance", [pubkey, {"commitment": "confirmed"}])
        try:
            return int((result or {}).get("value"))
        except (TypeError, ValueError) as exc:
            raise ValidationError(f"getBalance returned unexpected value: {result!r}") from exc

    async def get_token_decimals(self, mint: str) -> int:
        cached = self._decimals_cache.get(mint)
        if cached is not None:
            return cached
        result = await self.call("getTokenSupply", [mint])
        try:
            decimals = int(((result or {}).get("value") or {})["decimals"])
        except (KeyError, TypeError, ValueError) as exc:
            raise ValidationError(f"getTokenSupply returned no decimals for {mint}") from exc
        self._decimals_cache[mint] = decimals
        return decimals

    async def send_transaction(self, signed_tx: bytes) -> str:
        encoded = base64.b64encode(signed_tx).decode("ascii")
        signature = await self.call(
            "sendTransaction",
            [encoded, {"encoding": "base64", "skipPreflight": False, "maxRetries": 3}],
        )
        if not signature:
            raise ValidationError("sendTransaction returned no signature")
        return str(signature)

    async def confirm_transaction(self, signature: str, poll_seconds: float = 0.5) -> None:
        deadline = time.monotonic() + self._confirm_timeout
        while time.monotonic() < deadline:
            result = await self.call("getSignatureStatuses", [[signature], {"searchTransactionHistory": True}])
            statuses = (result or {}).get("value") or []
            status = statuses[0] if statuses else None
            if status:
                if status.get("err") is not None:
                    raise ExecutionRejected(f"transaction {signature} failed on-chain: {status['err']}")
                if status.get("confirmationStatus") in ("confirmed", "finalized"):
                    return
            await asyncio.sleep(poll_seconds)
        raise TransportError(f"transaction {signature} not confirmed within {self._confirm_timeout:.0f}s", source="rpc")


class Wallet:
    def __init__(self, keypair: Keypair, rpc: SolanaRpcClient) -> None:
        self._keypair = keypair
        self.rpc = rpc

    @property
    def public_key(self) -> str:
        return str(self._keypair.pubkey())

    def sign(self, tx_bytes: bytes) -> bytes:
        tx = VersionedTransaction.from_bytes(tx_bytes)
        signed = VersionedTransaction(tx.message, [self._keypair])
        return bytes(signed)

    async def get_balance(self) -> float:
        lamports = await self.rpc.get_balance_lamports(self.public_key)
        return lamports / LAMPORTS_PER_SOL

    async def get_token_decimals(self, mint: str) -> int:
        return await self.rpc.get_token_decimals(mint)
