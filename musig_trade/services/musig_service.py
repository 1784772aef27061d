"""Orchestration of the musig trade protocol, one method per RPC."""

import logging
from contextlib import aclosing
from typing import AsyncIterator, Callable, TypeVar

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
    TxConfirmationStatus,
)
from musig_trade.protocol import (
    MissingField,
    PeerDataInvalid,
    ProtocolViolation,
    TradeModel,
    TradeModelStore,
    TradeRole,
)
from musig_trade.protocol.transactions import OutPoint, Transaction
from musig_trade.wallet import WalletService
from .convert import (
    fee_bump_addresses_from_message,
    format_pub_key,
    format_scalar,
    half_deposit_from_model,
    mask_secret,
    nonce_shares_to_message,
    parse_pub_key,
    parse_scalar,
    parse_tx,
    partial_signatures_from_message,
    partial_signatures_to_message,
    pub_nonces_from_message,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


class MusigService:
    """
    Runs each trade protocol RPC as exactly one locked step on the trade.

    Request fields are parsed before the trade lock is taken, and anything
    touching the network (broadcasts, confirmation streams) happens after it
    is released.
    """

    def __init__(
        self,
        store: TradeModelStore,
        wallet_service: WalletService,
        network: str = "regtest",
        required_confirmations: int = 1,
    ):
        self.store = store
        self.wallet_service = wallet_service
        self.network = network
        self.required_confirmations = required_confirmations

    def _handle_request(self, trade_id: str, operation: str, handler: Callable[[TradeModel], T]) -> T:
        logger.info(f"Trade {trade_id}: {operation}")
        handle = self.store.get_trade_model(trade_id)
        with handle.lock() as trade_model:
            return handler(trade_model)

    async def init_trade(self, request: PubKeySharesRequest) -> PubKeySharesResponse:
        logger.info(f"Trade {request.tradeId}: init_trade as {request.myRole}")
        self.store.evict_settled()

        trade_model = TradeModel(request.tradeId, TradeRole(request.myRole), self.network)
        trade_model.init_my_key_shares()
        my_key_shares = trade_model.get_my_key_shares()
        response = PubKeySharesResponse(
            buyerOutputPubKeyShare=format_pub_key(my_key_shares[0].pub_key),
            sellerOutputPubKeyShare=format_pub_key(my_key_shares[1].pub_key),
            currentBlockHeight=self.wallet_service.tip_height(),
        )
        self.store.add_trade_model(trade_model)
        return response

    async def get_nonce_shares(self, request: NonceSharesRequest) -> NonceSharesMessage:
        buyer_output_pub_key = parse_pub_key(request.buyerOutputPeersPubKeyShare, "peer's buyer output key share")
        seller_output_pub_key = parse_pub_key(request.sellerOutputPeersPubKeyShare, "peer's seller output key share")

        def handler(trade_model: TradeModel) -> NonceSharesMessage:
            with trade_model.atomic():
                trade_model.set_peer_key_shares(buyer_output_pub_key, seller_output_pub_key)
                trade_model.aggregate_key_shares()
                trade_model.set_trade_parameters(
                    trade_amount=request.tradeAmount,
                    buyers_security_deposit=request.buyersSecurityDeposit,
                    sellers_security_deposit=request.sellersSecurityDeposit,
                    deposit_tx_fee_rate=request.depositTxFeeRate,
                    prepared_tx_fee_rate=request.preparedTxFeeRate,
                )
                trade_model.init_my_fee_bump_addresses(self.wallet_service)
                trade_model.init_my_nonce_shares()
                # Reserves wallet coins, so it goes last
                trade_model.init_my_half_deposit(self.wallet_service)
            return nonce_shares_to_message(
                trade_model.get_my_nonce_shares(),
                trade_model.get_my_fee_bump_addresses(),
                trade_model.get_my_half_deposit(),
            )

        return self._handle_request(request.tradeId, "get_nonce_shares", handler)

    async def get_partial_signatures(self, request: PartialSignaturesRequest) -> PartialSignaturesMessage:
        peer_nonce_shares = request.peersNonceShares
        if peer_nonce_shares is None:
            raise MissingField("missing peer's nonce shares")
        fee_bump_addresses = fee_bump_addresses_from_message(peer_nonce_shares)
        half_deposit = half_deposit_from_model(peer_nonce_shares.halfDeposit)
        pub_nonces = pub_nonces_from_message(peer_nonce_shares)
        receivers = [(receiver.address, receiver.amount) for receiver in request.receivers]

        def handler(trade_model: TradeModel) -> PartialSignaturesMessage:
            with trade_model.atomic():
                trade_model.set_peer_fee_bump_addresses(fee_bump_addresses)
                trade_model.set_redirection_receivers(receivers)
                trade_model.set_peer_half_deposit(half_deposit)
                trade_model.set_peer_nonce_shares(pub_nonces)
                trade_model.aggregate_nonce_shares()
                trade_model.sign_partial()
            return partial_signatures_to_message(trade_model.get_my_partial_signatures_on_peer_txs())

        return self._handle_request(request.tradeId, "get_partial_signatures", handler)

    async def sign_deposit_tx(self, request: DepositTxSignatureRequest) -> DepositPsbt:
        peer_partial_signatures = partial_signatures_from_message(request.peersPartialSignatures)

        def handler(trade_model: TradeModel) -> DepositPsbt:
            trade_model.set_peer_partial_signatures_on_my_txs(peer_partial_signatures)
            trade_model.aggregate_partial_signatures()
            deposit_tx = trade_model.sign_deposit_tx(self.wallet_service)
            return DepositPsbt(depositTx=deposit_tx.hex())

        return self._handle_request(request.tradeId, "sign_deposit_tx", handler)

    async def publish_deposit_tx(self, request: PublishDepositTxRequest) -> AsyncIterator[TxConfirmationStatus]:
        """Merge the peer's deposit signatures, broadcast, then stream confirmations."""
        peer_deposit_tx = parse_tx(request.peersDepositTx, "peer's deposit tx") \
            if request.peersDepositTx is not None else None

        def handler(trade_model: TradeModel) -> Transaction:
            if peer_deposit_tx is not None:
                trade_model.set_peer_deposit_tx_signatures(peer_deposit_tx)
            return trade_model.get_deposit_tx_for_publication()

        deposit_tx = self._handle_request(request.tradeId, "publish_deposit_tx", handler)
        # A failed broadcast leaves the trade unpublished, so the request can be retried
        txid = await self.wallet_service.broadcast_transaction(deposit_tx)
        self._handle_request(request.tradeId, "mark_deposit_tx_published",
                             lambda trade_model: trade_model.mark_deposit_tx_published())
        return self._confirmation_status_stream(txid)

    async def subscribe_tx_confirmation_status(
        self, request: SubscribeTxConfirmationStatusRequest
    ) -> AsyncIterator[TxConfirmationStatus]:
        def handler(trade_model: TradeModel) -> str:
            if trade_model.deposit_tx is None:
                raise ProtocolViolation("deposit tx not yet built")
            return trade_model.deposit_tx.txid()

        txid = self._handle_request(request.tradeId, "subscribe_tx_confirmation_status", handler)
        return self._confirmation_status_stream(txid)

    async def _confirmation_status_stream(self, txid: str) -> AsyncIterator[TxConfirmationStatus]:
        """
        Yield a status on every confidence change of ``txid`` until it has the
        required number of confirmations. Runs without any trade lock.
        """
        async with aclosing(self.wallet_service.get_tx_confidence_stream(txid)) as confidences:
            async for confidence in confidences:
                if confidence is None:
                    continue
                yield TxConfirmationStatus(
                    tx=confidence.wallet_tx.tx.hex(),
                    currentBlockHeight=self.wallet_service.tip_height(),
                    numConfirmations=confidence.num_confirmations,
                )
                if confidence.num_confirmations >= self.required_confirmations:
                    logger.info(f"Tx {txid} reached {confidence.num_confirmations} confirmations")
                    return

    async def sign_swap_tx(self, request: SwapTxSignatureRequest) -> SwapTxSignatureResponse:
        peer_partial_signature = parse_scalar(
            request.swapTxInputPeersPartialSignature, "peer's swap tx input partial signature")

        def handler(trade_model: TradeModel) -> SwapTxSignatureResponse:
            trade_model.set_swap_tx_input_peers_partial_signature(peer_partial_signature)
            trade_model.aggregate_swap_tx_partial_signatures()
            trade_model.compute_swap_tx_input_signature()
            prv_key_share = format_scalar(trade_model.get_my_private_key_share_for_peer_output())
            logger.info(f"Trade {trade_model.trade_id}: swap tx signed, "
                        f"revealing key share for peer output {mask_secret(prv_key_share)}")
            return SwapTxSignatureResponse(
                swapTx=trade_model.get_signed_swap_tx().hex(),
                peerOutputPrvKeyShare=prv_key_share,
            )

        return self._handle_request(request.tradeId, "sign_swap_tx", handler)

    async def close_trade(self, request: CloseTradeRequest) -> CloseTradeResponse:
        if request.myOutputPeersPrvKeyShare is not None:
            response = self._close_cooperatively(request)
        elif request.swapTx is not None:
            response = self._close_from_swap_tx(request)
        else:
            response, swap_tx = self._force_close(request)
            await self.wallet_service.broadcast_transaction(swap_tx)
            logger.info(f"Trade {request.tradeId}: force-closed, published swap tx {swap_tx.txid()}")
        self.store.evict_settled()
        return response

    def _close_cooperatively(self, request: CloseTradeRequest) -> CloseTradeResponse:
        peer_prv_key_share = parse_scalar(request.myOutputPeersPrvKeyShare, "peer's private key share")

        def handler(trade_model: TradeModel) -> CloseTradeResponse:
            trade_model.set_peer_private_key_share_for_my_output(peer_prv_key_share)
            trade_model.aggregate_private_keys_for_my_output()
            return self._close_trade_response(trade_model)

        return self._handle_request(request.tradeId, "close_trade (cooperative)", handler)

    def _close_from_swap_tx(self, request: CloseTradeRequest) -> CloseTradeResponse:
        swap_tx = parse_tx(request.swapTx, "signed swap tx")
        if len(swap_tx.inputs) != 1 or len(swap_tx.inputs[0].witness) != 1:
            raise PeerDataInvalid("swap tx must have exactly one key-path signed input")

        def handler(trade_model: TradeModel) -> CloseTradeResponse:
            if trade_model.swap_tx is None or trade_model.swap_tx.txid() != swap_tx.txid():
                raise PeerDataInvalid("supplied tx is not this trade's swap tx")
            trade_model.recover_seller_private_key_share_for_buyer_output(swap_tx.inputs[0].witness[0])
            trade_model.aggregate_private_keys_for_my_output()
            return self._close_trade_response(trade_model)

        return self._handle_request(request.tradeId, "close_trade (swap tx)", handler)

    def _force_close(self, request: CloseTradeRequest) -> tuple[CloseTradeResponse, Transaction]:
        def handler(trade_model: TradeModel) -> tuple[CloseTradeResponse, Transaction]:
            swap_tx = trade_model.force_close()
            response = self._close_trade_response(trade_model)
            response.swapTx = swap_tx.hex()
            return response, swap_tx

        return self._handle_request(request.tradeId, "close_trade (force)", handler)

    async def abort_trade(self, request: AbortTradeRequest) -> AbortTradeResponse:
        """Abandon a trade before its deposit tx is signed and forget it."""
        def handler(trade_model: TradeModel) -> list[OutPoint]:
            return trade_model.abort(self.wallet_service)

        released = self._handle_request(request.tradeId, "abort_trade", handler)
        self.store.remove_trade_model(request.tradeId)
        return AbortTradeResponse(releasedCoins=[str(outpoint) for outpoint in released])

    def _close_trade_response(self, trade_model: TradeModel) -> CloseTradeResponse:
        prv_key_share = trade_model.get_my_private_key_share_for_peer_output()
        if prv_key_share is None:
            raise ProtocolViolation("private key share for peer output cannot be revealed yet")
        return CloseTradeResponse(peerOutputPrvKeyShare=format_scalar(prv_key_share))
