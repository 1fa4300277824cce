"""
Tier oracle: AU token balance for a wallet, and the quota table for each tier.

Balance lookups go to a Solana JSON-RPC endpoint. A lookup never raises:
any failure is logged and reported as a Free Trial fallback with
`degraded=True`, so an RPC outage cannot break chat for anyone.
"""
import logging
from typing import Any, Dict, Optional, Union

import httpx

from config import AU_TOKEN_MINT, BALANCE_TIMEOUT_SECONDS, SOLANA_RPC_URL
from models import Tier, TierLimits, TokenBalance, is_valid_wallet_address
from utils.soft_result import SoftResult

logger = logging.getLogger("au_gold")

# Thresholds are cumulative holdings, checked highest first.
TIER_THRESHOLDS = (
    (300_000, Tier.GOLD),
    (200_000, Tier.PRO),
    (100_000, Tier.ELECTRUM),
)

TIER_LIMITS: Dict[Tier, TierLimits] = {
    Tier.FREE_TRIAL: TierLimits(message_limit=5, message_period_hours=4, voice_limit=1, voice_period_hours=4),
    Tier.ELECTRUM: TierLimits(message_limit=20, message_period_hours=1, voice_limit=60, voice_period_hours=24),
    Tier.PRO: TierLimits(message_limit=40, message_period_hours=1, voice_limit=120, voice_period_hours=24),
    Tier.GOLD: TierLimits(message_limit=50, message_period_hours=1, voice_limit=240, voice_period_hours=24),
}


def tier_for_balance(balance: float) -> Tier:
    for threshold, tier in TIER_THRESHOLDS:
        if balance >= threshold:
            return tier
    return Tier.FREE_TRIAL


def get_tier_limits(tier: Union[Tier, str, None]) -> TierLimits:
    """Quota table for a tier. Unknown names resolve to Free Trial."""
    try:
        key = Tier(tier) if tier is not None else Tier.FREE_TRIAL
    except ValueError:
        logger.warning(f"[tier] Unknown tier {tier!r}; using Free Trial limits")
        key = Tier.FREE_TRIAL
    return TIER_LIMITS[key]


class BalanceLookupError(Exception):
    """Balance source returned something unusable."""


def _sum_ui_amounts(payload: Dict[str, Any]) -> float:
    if not isinstance(payload, dict):
        raise BalanceLookupError("RPC body is not an object")
    if payload.get("error"):
        raise BalanceLookupError(f"RPC error: {payload['error']}")
    result = payload.get("result")
    if not isinstance(result, dict) or not isinstance(result.get("value"), list):
        raise BalanceLookupError("RPC result missing value list")

    total = 0.0
    for account in result["value"]:
        try:
            token_amount = account["account"]["data"]["parsed"]["info"]["tokenAmount"]
        except (KeyError, TypeError) as e:
            raise BalanceLookupError(f"Unexpected token account shape: {e}") from e
        ui_amount = token_amount.get("uiAmount")
        if ui_amount is None:
            # uiAmount is null for zero balances on some RPC nodes
            ui_amount = token_amount.get("uiAmountString") or 0
        total += float(ui_amount)
    return total


class BalanceOracle:
    """Looks up AU holdings over Solana JSON-RPC (`getTokenAccountsByOwner`)."""

    def __init__(
        self,
        rpc_url: str = SOLANA_RPC_URL,
        mint: str = AU_TOKEN_MINT,
        timeout_seconds: float = BALANCE_TIMEOUT_SECONDS,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.rpc_url = rpc_url
        self.mint = mint
        self.timeout_seconds = timeout_seconds
        self._transport = transport

    def _rpc_body(self, wallet_address: str) -> Dict[str, Any]:
        return {
            "jsonrpc": "2.0",
            "id": 1,
            "method": "getTokenAccountsByOwner",
            "params": [
                wallet_address,
                {"mint": self.mint},
                {"encoding": "jsonParsed"},
            ],
        }

    async def get_token_balance(self, wallet_address: str) -> SoftResult[TokenBalance]:
        fallback = TokenBalance(balance=0, tier=Tier.FREE_TRIAL)
        if not is_valid_wallet_address(wallet_address):
            logger.warning(f"[tier] Invalid wallet address {wallet_address!r}; defaulting to Free Trial")
            return SoftResult.fallback(fallback, "invalid_address")

        try:
            async with httpx.AsyncClient(timeout=self.timeout_seconds, transport=self._transport) as client:
                resp = await client.post(self.rpc_url, json=self._rpc_body(wallet_address))
            resp.raise_for_status()
            balance = _sum_ui_amounts(resp.json())
        except httpx.TimeoutException as e:
            logger.warning(f"[tier] Balance lookup timed out for {wallet_address}: {e}")
            return SoftResult.fallback(fallback, "timeout")
        except httpx.HTTPError as e:
            logger.warning(f"[tier] Balance lookup failed for {wallet_address}: {e}")
            return SoftResult.fallback(fallback, "transport_error")
        except (BalanceLookupError, ValueError) as e:
            logger.warning(f"[tier] Unusable balance response for {wallet_address}: {e}")
            return SoftResult.fallback(fallback, "malformed_response")

        tier = tier_for_balance(balance)
        logger.info(f"[tier] wallet={wallet_address} balance={balance} tier={tier.value}")
        return SoftResult.ok(TokenBalance(balance=balance, tier=tier))
