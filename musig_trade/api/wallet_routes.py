"""API routes for the wallet."""

from fastapi import APIRouter, Depends
from fastapi.responses import StreamingResponse

from musig_trade.models import ListUnspentResponse, NewAddressResponse, WalletBalanceResponse
from musig_trade.services import WalletInfoService
from .dependencies import get_wallet_info_service
from .streaming import ndjson_response

router = APIRouter(prefix="/v1/wallet", tags=["wallet"])


@router.get("/balance", response_model=WalletBalanceResponse)
async def get_balance(
    service: WalletInfoService = Depends(get_wallet_info_service),
) -> WalletBalanceResponse:
    return await service.get_balance()


@router.post("/new-address", response_model=NewAddressResponse)
async def new_address(
    service: WalletInfoService = Depends(get_wallet_info_service),
) -> NewAddressResponse:
    """Reveal the next unused receive address."""
    return await service.new_address()


@router.get("/unspent", response_model=ListUnspentResponse)
async def list_unspent(
    service: WalletInfoService = Depends(get_wallet_info_service),
) -> ListUnspentResponse:
    return await service.list_unspent()


@router.get("/confidence/{txid}", response_class=StreamingResponse)
async def get_tx_confidence(
    txid: str,
    service: WalletInfoService = Depends(get_wallet_info_service),
) -> StreamingResponse:
    """
    Stream ConfEvent lines (NDJSON) for a wallet tx: the current confidence
    first, then every change, until the client disconnects.
    """
    return ndjson_response(service.confidence_events(txid))
