"""Conversions between wire models (hex strings) and protocol types."""

from typing import Optional

from coincurve import PublicKey

from musig_trade.models import (
    ChangeOutputModel,
    FundingInputModel,
    HalfDepositModel,
    NonceSharesMessage,
    PartialSignaturesMessage,
)
from musig_trade.protocol import musig2
from musig_trade.protocol.errors import MissingField, PeerDataInvalid
from musig_trade.protocol.musig2 import PubNonce
from musig_trade.protocol.trade_model import (
    BUYERS_REDIRECT_TX_INPUT,
    BUYERS_WARNING_TX_BUYER_INPUT,
    BUYERS_WARNING_TX_SELLER_INPUT,
    PartialSignatures,
    SELLERS_REDIRECT_TX_INPUT,
    SELLERS_WARNING_TX_BUYER_INPUT,
    SELLERS_WARNING_TX_SELLER_INPUT,
    SWAP_TX_INPUT,
)
from musig_trade.protocol.transactions import FundingInput, HalfDeposit, OutPoint, Transaction, TxOut

# Signed input -> NonceSharesMessage field
NONCE_SHARE_FIELDS = {
    SWAP_TX_INPUT: "swapTxInputNonceShare",
    BUYERS_WARNING_TX_BUYER_INPUT: "buyersWarningTxBuyerInputNonceShare",
    BUYERS_WARNING_TX_SELLER_INPUT: "buyersWarningTxSellerInputNonceShare",
    SELLERS_WARNING_TX_BUYER_INPUT: "sellersWarningTxBuyerInputNonceShare",
    SELLERS_WARNING_TX_SELLER_INPUT: "sellersWarningTxSellerInputNonceShare",
    BUYERS_REDIRECT_TX_INPUT: "buyersRedirectTxInputNonceShare",
    SELLERS_REDIRECT_TX_INPUT: "sellersRedirectTxInputNonceShare",
}


def mask_secret(value: Optional[str]) -> str:
    """Render a secret hex value for logs without exposing it."""
    if not value:
        return "<unset>"
    return f"{value[:4]}...({len(value) // 2} bytes)"


def parse_hex(value: Optional[str], what: str) -> bytes:
    if value is None:
        raise MissingField(f"missing {what}")
    try:
        return bytes.fromhex(value)
    except ValueError as e:
        raise PeerDataInvalid(f"{what} is not valid hex") from e


def parse_pub_key(value: Optional[str], what: str) -> PublicKey:
    return musig2.parse_point(parse_hex(value, what))


def parse_scalar(value: Optional[str], what: str) -> int:
    return musig2.parse_scalar(parse_hex(value, what))


def parse_tx(value: Optional[str], what: str) -> Transaction:
    if value is None:
        raise MissingField(f"missing {what}")
    return Transaction.from_hex(value)


def format_scalar(value: int) -> str:
    return musig2.scalar_to_bytes(value).hex()


def format_pub_key(pub_key: PublicKey) -> str:
    return pub_key.format().hex()


def half_deposit_to_model(half: HalfDeposit) -> HalfDepositModel:
    return HalfDepositModel(
        inputs=[
            FundingInputModel(
                txId=i.outpoint.txid,
                vout=i.outpoint.vout,
                value=i.prevout.value,
                scriptPubKey=i.prevout.script_pubkey.hex(),
            )
            for i in half.inputs
        ],
        change=ChangeOutputModel(value=half.change.value, scriptPubKey=half.change.script_pubkey.hex())
        if half.change is not None else None,
    )


def half_deposit_from_model(model: Optional[HalfDepositModel]) -> HalfDeposit:
    if model is None:
        raise MissingField("missing peer's half-deposit")
    inputs = []
    for i in model.inputs:
        if len(parse_hex(i.txId, "funding input txid")) != 32:
            raise PeerDataInvalid(f"funding input txid {i.txId} is not 32 bytes")
        inputs.append(FundingInput(
            outpoint=OutPoint(i.txId.lower(), i.vout),
            prevout=TxOut(i.value, parse_hex(i.scriptPubKey, "funding input script")),
        ))
    change = None
    if model.change is not None:
        change = TxOut(model.change.value, parse_hex(model.change.scriptPubKey, "change output script"))
    return HalfDeposit(inputs=inputs, change=change)


def nonce_shares_to_message(
    pub_nonces: dict[str, PubNonce],
    fee_bump_addresses: list[str],
    half_deposit: HalfDeposit,
) -> NonceSharesMessage:
    fields = {NONCE_SHARE_FIELDS[name]: pub_nonce.serialize().hex() for name, pub_nonce in pub_nonces.items()}
    return NonceSharesMessage(
        warningTxFeeBumpAddress=fee_bump_addresses[0],
        redirectTxFeeBumpAddress=fee_bump_addresses[1],
        halfDeposit=half_deposit_to_model(half_deposit),
        **fields,
    )


def pub_nonces_from_message(message: NonceSharesMessage) -> dict[str, Optional[PubNonce]]:
    """Parse every nonce share present; absent ones map to None."""
    pub_nonces = {}
    for name, field_name in NONCE_SHARE_FIELDS.items():
        value = getattr(message, field_name)
        pub_nonces[name] = None if value is None else PubNonce.parse(parse_hex(value, field_name))
    return pub_nonces


def fee_bump_addresses_from_message(message: NonceSharesMessage) -> list[str]:
    if message.warningTxFeeBumpAddress is None:
        raise MissingField("missing peer's warning tx fee bump address")
    if message.redirectTxFeeBumpAddress is None:
        raise MissingField("missing peer's redirect tx fee bump address")
    return [message.warningTxFeeBumpAddress, message.redirectTxFeeBumpAddress]


def partial_signatures_to_message(sigs: PartialSignatures) -> PartialSignaturesMessage:
    return PartialSignaturesMessage(
        peersWarningTxBuyerInputPartialSignature=format_scalar(sigs.warning_tx_buyer_input),
        peersWarningTxSellerInputPartialSignature=format_scalar(sigs.warning_tx_seller_input),
        peersRedirectTxInputPartialSignature=format_scalar(sigs.redirect_tx_input),
        swapTxInputPartialSignature=format_scalar(sigs.swap_tx_input) if sigs.swap_tx_input is not None else None,
    )


def partial_signatures_from_message(message: Optional[PartialSignaturesMessage]) -> PartialSignatures:
    if message is None:
        raise MissingField("missing peer's partial signatures")
    swap = message.swapTxInputPartialSignature
    return PartialSignatures(
        warning_tx_buyer_input=parse_scalar(
            message.peersWarningTxBuyerInputPartialSignature, "warning tx buyer input partial signature"),
        warning_tx_seller_input=parse_scalar(
            message.peersWarningTxSellerInputPartialSignature, "warning tx seller input partial signature"),
        redirect_tx_input=parse_scalar(
            message.peersRedirectTxInputPartialSignature, "redirect tx input partial signature"),
        swap_tx_input=parse_scalar(swap, "swap tx input partial signature") if swap is not None else None,
    )
