"""API routes for the musig trade protocol."""

from fastapi import APIRouter, Depends
from fastapi.responses import StreamingResponse

from musig_trade.models import (
    AbortTradeRequest,
    AbortTradeResponse,
    CloseTradeRequest,
    CloseTradeResponse,
    DepositPsbt,
    DepositTxSignatureRequest,
    NonceSharesMessage,
    NonceSharesRequest,
    PartialSignaturesMessage,
    PartialSignaturesRequest,
    PubKeySharesRequest,
    PubKeySharesResponse,
    PublishDepositTxRequest,
    SubscribeTxConfirmationStatusRequest,
    SwapTxSignatureRequest,
    SwapTxSignatureResponse,
)
from musig_trade.services import MusigService
from .dependencies import get_musig_service
from .streaming import ndjson_response

router = APIRouter(prefix="/v1/musig", tags=["musig"])


@router.post("/init-trade", response_model=PubKeySharesResponse)
async def init_trade(
    request: PubKeySharesRequest,
    service: MusigService = Depends(get_musig_service),
) -> PubKeySharesResponse:
    """
    Create a trade and generate my key shares for both payout outputs.

    Returns: buyerOutputPubKeyShare, sellerOutputPubKeyShare, currentBlockHeight
    """
    return await service.init_trade(request)


@router.post("/nonce-shares", response_model=NonceSharesMessage)
async def get_nonce_shares(
    request: NonceSharesRequest,
    service: MusigService = Depends(get_musig_service),
) -> NonceSharesMessage:
    """
    Take the peer's key shares and the trade parameters; fund my half of the
    deposit tx and generate my nonce shares.
    """
    return await service.get_nonce_shares(request)


@router.post("/partial-signatures", response_model=PartialSignaturesMessage)
async def get_partial_signatures(
    request: PartialSignaturesRequest,
    service: MusigService = Depends(get_musig_service),
) -> PartialSignaturesMessage:
    """Take the peer's nonce round and partially sign all prepared txs."""
    return await service.get_partial_signatures(request)


@router.post("/sign-deposit-tx", response_model=DepositPsbt)
async def sign_deposit_tx(
    request: DepositTxSignatureRequest,
    service: MusigService = Depends(get_musig_service),
) -> DepositPsbt:
    """Finalize my warning/redirect txs, then sign my deposit tx inputs."""
    return await service.sign_deposit_tx(request)


@router.post("/publish-deposit-tx", response_class=StreamingResponse)
async def publish_deposit_tx(
    request: PublishDepositTxRequest,
    service: MusigService = Depends(get_musig_service),
) -> StreamingResponse:
    """
    Broadcast the fully signed deposit tx.

    Streams TxConfirmationStatus lines (NDJSON) until the tx is confirmed.
    """
    return ndjson_response(await service.publish_deposit_tx(request))


@router.post("/subscribe-tx-confirmation-status", response_class=StreamingResponse)
async def subscribe_tx_confirmation_status(
    request: SubscribeTxConfirmationStatusRequest,
    service: MusigService = Depends(get_musig_service),
) -> StreamingResponse:
    """Stream TxConfirmationStatus lines (NDJSON) for the trade's deposit tx."""
    return ndjson_response(await service.subscribe_tx_confirmation_status(request))


@router.post("/sign-swap-tx", response_model=SwapTxSignatureResponse)
async def sign_swap_tx(
    request: SwapTxSignatureRequest,
    service: MusigService = Depends(get_musig_service),
) -> SwapTxSignatureResponse:
    """Seller only: complete the swap tx and reveal my key share for the buyer output."""
    return await service.sign_swap_tx(request)


@router.post("/close-trade", response_model=CloseTradeResponse)
async def close_trade(
    request: CloseTradeRequest,
    service: MusigService = Depends(get_musig_service),
) -> CloseTradeResponse:
    """
    Close the trade cooperatively, from a published swap tx (buyer) or by
    force (seller).

    Returns: peerOutputPrvKeyShare, plus swapTx on force-close
    """
    return await service.close_trade(request)


@router.post("/abort-trade", response_model=AbortTradeResponse)
async def abort_trade(
    request: AbortTradeRequest,
    service: MusigService = Depends(get_musig_service),
) -> AbortTradeResponse:
    """
    Abandon a trade whose deposit tx is not yet signed and release its
    reserved wallet coins.
    """
    return await service.abort_trade(request)
