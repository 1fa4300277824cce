"""
Wallet link management: connect, disconnect and balance refresh.

The cached balance/tier on the Session is what quota checks use. A degraded
oracle answer on refresh leaves the cache untouched so a transient RPC outage
does not demote a holder to Free Trial.
"""
import logging
from typing import Tuple

from models import Session, Tier
from services_tier import BalanceOracle
from storage import Storage

logger = logging.getLogger("au_gold")


class NoWalletConnected(Exception):
    pass


class WalletService:
    def __init__(self, storage: Storage, oracle: BalanceOracle):
        self.storage = storage
        self.oracle = oracle

    async def connect(self, session: Session, wallet_address: str) -> Tuple[Session, bool]:
        result = await self.oracle.get_token_balance(wallet_address)
        updated = await self.storage.update_session(
            session.id,
            wallet_address=wallet_address,
            token_balance=result.value.balance,
            tier=result.value.tier,
        )
        logger.info(
            f"[wallet] Session {session.id} connected {wallet_address} tier={updated.tier.value} "
            f"degraded={result.degraded}"
        )
        return updated, result.degraded

    async def disconnect(self, session: Session) -> Session:
        updated = await self.storage.update_session(
            session.id,
            wallet_address=None,
            token_balance=0,
            tier=Tier.FREE_TRIAL,
        )
        logger.info(f"[wallet] Session {session.id} disconnected wallet")
        return updated

    async def refresh(self, session: Session) -> Tuple[Session, bool]:
        if not session.wallet_address:
            raise NoWalletConnected(session.id)
        result = await self.oracle.get_token_balance(session.wallet_address)
        if result.degraded:
            logger.warning(
                f"[wallet] Refresh for session {session.id} degraded ({result.reason}); keeping cached tier"
            )
            return await self.storage.update_session(session.id), True
        updated = await self.storage.update_session(
            session.id,
            token_balance=result.value.balance,
            tier=result.value.tier,
        )
        return updated, False
