"""
Tests for tier derivation and the Solana balance oracle.
"""
import httpx
import pytest

pytestmark = pytest.mark.unit

from mock_helpers import WALLET, rpc_balance_body
from models import Tier
from services_tier import TIER_LIMITS, get_tier_limits, tier_for_balance


@pytest.mark.parametrize(
    "balance,expected",
    [
        (0, Tier.FREE_TRIAL),
        (99_999.99, Tier.FREE_TRIAL),
        (100_000, Tier.ELECTRUM),
        (199_999, Tier.ELECTRUM),
        (200_000, Tier.PRO),
        (300_000, Tier.GOLD),
        (5_000_000, Tier.GOLD),
    ],
)
def test_tier_for_balance_thresholds(balance, expected):
    assert tier_for_balance(balance) == expected


def test_tier_limits_table():
    free = get_tier_limits(Tier.FREE_TRIAL)
    assert (free.message_limit, free.message_period_hours) == (5, 4)
    assert (free.voice_limit, free.voice_period_hours) == (1, 4)

    gold = get_tier_limits("Gold")
    assert (gold.message_limit, gold.message_period_hours) == (50, 1)
    assert (gold.voice_limit, gold.voice_period_hours) == (240, 24)


def test_unknown_tier_resolves_to_free_trial():
    assert get_tier_limits("Platinum") == TIER_LIMITS[Tier.FREE_TRIAL]
    assert get_tier_limits(None) == TIER_LIMITS[Tier.FREE_TRIAL]


@pytest.mark.asyncio
async def test_balance_sums_accounts_and_derives_tier(balance_oracle, rpc):
    rpc.respond(json_body=rpc_balance_body(150_000, 60_000))

    result = await balance_oracle.get_token_balance(WALLET)

    assert not result.degraded
    assert result.value.balance == 210_000
    assert result.value.tier == Tier.PRO

    body = rpc.last_json()
    assert body["method"] == "getTokenAccountsByOwner"
    assert body["params"][0] == WALLET
    assert body["params"][1] == {"mint": "AUmint"}
    assert body["params"][2] == {"encoding": "jsonParsed"}


@pytest.mark.asyncio
async def test_null_ui_amount_counts_as_zero(balance_oracle, rpc):
    rpc.respond(json_body=rpc_balance_body(None, 100_000))

    result = await balance_oracle.get_token_balance(WALLET)

    assert result.value.balance == 100_000
    assert result.value.tier == Tier.ELECTRUM


@pytest.mark.asyncio
async def test_invalid_address_never_calls_rpc(balance_oracle, rpc):
    result = await balance_oracle.get_token_balance("not-a-wallet")

    assert result.degraded
    assert result.reason == "invalid_address"
    assert result.value.tier == Tier.FREE_TRIAL
    assert rpc.call_count == 0


@pytest.mark.asyncio
async def test_timeout_falls_back_to_free_trial(balance_oracle, rpc):
    rpc.fail_with(httpx.ReadTimeout)

    result = await balance_oracle.get_token_balance(WALLET)

    assert result.degraded
    assert result.reason == "timeout"
    assert result.value.balance == 0
    assert result.value.tier == Tier.FREE_TRIAL


@pytest.mark.asyncio
async def test_rpc_error_body_is_malformed(balance_oracle, rpc):
    rpc.respond(json_body={"jsonrpc": "2.0", "id": 1, "error": {"code": -32602, "message": "bad params"}})

    result = await balance_oracle.get_token_balance(WALLET)

    assert result.degraded
    assert result.reason == "malformed_response"


@pytest.mark.asyncio
async def test_http_500_is_transport_error(balance_oracle, rpc):
    rpc.respond(status_code=500, json_body={"error": "boom"})

    result = await balance_oracle.get_token_balance(WALLET)

    assert result.degraded
    assert result.reason == "transport_error"
