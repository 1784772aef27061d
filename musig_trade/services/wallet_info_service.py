"""Read-mostly wallet queries exposed over HTTP."""

import logging
import re
from contextlib import aclosing
from typing import AsyncIterator

from musig_trade.models import (
    ConfEvent,
    ListUnspentResponse,
    NewAddressResponse,
    TransactionOutput,
    WalletBalanceResponse,
)
from musig_trade.protocol import PeerDataInvalid
from musig_trade.protocol.transactions import script_pubkey_to_address
from musig_trade.wallet import TxConfidence, WalletService

logger = logging.getLogger(__name__)

TXID_PATTERN = re.compile(r"^[0-9a-f]{64}$")


def conf_event(confidence: TxConfidence | None) -> ConfEvent:
    """Map a wallet confidence update to a stream event."""
    if confidence is None:
        return ConfEvent()
    wallet_tx = confidence.wallet_tx
    return ConfEvent(
        rawTx=wallet_tx.tx.hex(),
        confidenceType="BUILDING" if wallet_tx.is_confirmed else "PENDING",
        numConfirmations=confidence.num_confirmations,
        confirmationBlockHeight=wallet_tx.confirmation_height,
    )


class WalletInfoService:
    """Service for wallet balance, addresses, coins and tx confidence."""

    def __init__(self, wallet_service: WalletService, network: str = "regtest"):
        self.wallet_service = wallet_service
        self.network = network

    async def get_balance(self) -> WalletBalanceResponse:
        balance = self.wallet_service.balance()
        return WalletBalanceResponse(
            immature=balance.immature,
            trustedPending=balance.trusted_pending,
            untrustedPending=balance.untrusted_pending,
            confirmed=balance.confirmed,
            total=balance.total,
        )

    async def new_address(self) -> NewAddressResponse:
        address = self.wallet_service.reveal_next_address()
        logger.info(f"Revealed address #{address.index}: {address.address}")
        return NewAddressResponse(address=address.address, derivationPath=address.derivation_path or "")

    async def list_unspent(self) -> ListUnspentResponse:
        utxos = []
        for utxo in self.wallet_service.list_unspent():
            try:
                address = script_pubkey_to_address(utxo.txout.script_pubkey, self.network)
            except ValueError:
                address = None
            utxos.append(TransactionOutput(
                txId=utxo.outpoint.txid,
                vout=utxo.outpoint.vout,
                value=utxo.txout.value,
                scriptPubKey=utxo.txout.script_pubkey.hex(),
                address=address,
                confirmationHeight=utxo.confirmation_height,
                locked=utxo.is_locked,
            ))
        return ListUnspentResponse(utxos=utxos)

    def confidence_events(self, txid: str) -> AsyncIterator[ConfEvent]:
        txid = txid.lower()
        if not TXID_PATTERN.match(txid):
            raise PeerDataInvalid(f"invalid txid: {txid}")
        return self._confidence_events(txid)

    async def _confidence_events(self, txid: str) -> AsyncIterator[ConfEvent]:
        async with aclosing(self.wallet_service.get_tx_confidence_stream(txid)) as confidences:
            async for confidence in confidences:
                yield conf_event(confidence)
