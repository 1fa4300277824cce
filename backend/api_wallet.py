from fastapi import APIRouter, Depends, HTTPException, status

from auth import get_current_session
from dependencies import get_wallet_service
from models import Session, WalletConnectRequest, WalletView
from services_wallet import NoWalletConnected, WalletService

router = APIRouter(prefix="/api/wallet", tags=["wallet"])


def _view(session: Session, degraded: bool = False) -> WalletView:
    return WalletView(
        wallet_address=session.wallet_address,
        token_balance=session.token_balance,
        tier=session.tier,
        degraded=degraded,
    )


@router.post("/connect", response_model=WalletView)
async def connect_wallet(
    payload: WalletConnectRequest,
    session: Session = Depends(get_current_session),
    wallets: WalletService = Depends(get_wallet_service),
):
    updated, degraded = await wallets.connect(session, payload.wallet_address)
    return _view(updated, degraded)


@router.post("/disconnect", response_model=WalletView)
async def disconnect_wallet(
    session: Session = Depends(get_current_session),
    wallets: WalletService = Depends(get_wallet_service),
):
    return _view(await wallets.disconnect(session))


@router.post("/refresh", response_model=WalletView)
async def refresh_wallet(
    session: Session = Depends(get_current_session),
    wallets: WalletService = Depends(get_wallet_service),
):
    """Re-query the balance. A degraded lookup keeps the cached tier."""
    try:
        updated, degraded = await wallets.refresh(session)
    except NoWalletConnected:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="No wallet connected")
    return _view(updated, degraded)
