"""Request and response models for the musig trade protocol endpoints."""

from typing import Literal, Optional
from pydantic import BaseModel, Field, ConfigDict


class PubKeySharesRequest(BaseModel):
    """Start a new trade in the given role."""
    model_config = ConfigDict(populate_by_name=True)

    tradeId: str = Field(min_length=1, description="Trade id, unique across all trades")
    myRole: Literal["BUYER", "SELLER"] = Field(description="This party's role in the trade")


class PubKeySharesResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    buyerOutputPubKeyShare: str = Field(description="My public key share for the buyer payout (33-byte hex)")
    sellerOutputPubKeyShare: str = Field(description="My public key share for the seller payout (33-byte hex)")
    currentBlockHeight: int = Field(description="Wallet tip height")


class NonceSharesRequest(BaseModel):
    """Peer's public key shares plus the trade's economic parameters."""
    model_config = ConfigDict(populate_by_name=True)

    tradeId: str
    buyerOutputPeersPubKeyShare: Optional[str] = None
    sellerOutputPeersPubKeyShare: Optional[str] = None
    depositTxFeeRate: Optional[int] = Field(default=None, description="Deposit tx fee rate in sat/kwu")
    preparedTxFeeRate: Optional[int] = Field(default=None, description="Warning/redirect/swap tx fee rate in sat/kwu")
    tradeAmount: Optional[int] = Field(default=None, description="Trade amount in sats")
    buyersSecurityDeposit: Optional[int] = Field(default=None, description="Buyer's security deposit in sats")
    sellersSecurityDeposit: Optional[int] = Field(default=None, description="Seller's security deposit in sats")


class FundingInputModel(BaseModel):
    """A wallet coin committed to the deposit tx."""
    model_config = ConfigDict(populate_by_name=True)

    txId: str
    vout: int = Field(ge=0)
    value: int = Field(ge=0, description="Amount in sats")
    scriptPubKey: str = Field(description="Hex-encoded output script")


class ChangeOutputModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    value: int = Field(ge=0, description="Amount in sats")
    scriptPubKey: str = Field(description="Hex-encoded output script")


class HalfDepositModel(BaseModel):
    """One party's inputs and change for the deposit tx."""
    model_config = ConfigDict(populate_by_name=True)

    inputs: list[FundingInputModel] = Field(default_factory=list)
    change: Optional[ChangeOutputModel] = None


class NonceSharesMessage(BaseModel):
    """
    Everything a party sends its peer in the nonce round: fee bump
    addresses, its half of the deposit tx and one public nonce (66-byte hex)
    per collaboratively signed tx input.
    """
    model_config = ConfigDict(populate_by_name=True)

    warningTxFeeBumpAddress: Optional[str] = None
    redirectTxFeeBumpAddress: Optional[str] = None
    halfDeposit: Optional[HalfDepositModel] = None
    swapTxInputNonceShare: Optional[str] = None
    buyersWarningTxBuyerInputNonceShare: Optional[str] = None
    buyersWarningTxSellerInputNonceShare: Optional[str] = None
    sellersWarningTxBuyerInputNonceShare: Optional[str] = None
    sellersWarningTxSellerInputNonceShare: Optional[str] = None
    buyersRedirectTxInputNonceShare: Optional[str] = None
    sellersRedirectTxInputNonceShare: Optional[str] = None


class ReceiverAddressAndAmount(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    address: str
    amount: int = Field(description="Amount in sats")


class PartialSignaturesRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    tradeId: str
    peersNonceShares: Optional[NonceSharesMessage] = None
    receivers: list[ReceiverAddressAndAmount] = Field(
        default_factory=list,
        description="Outputs of the redirect txs",
    )


class PartialSignaturesMessage(BaseModel):
    """My partial signatures (32-byte hex scalars) on the peer's prepared txs."""
    model_config = ConfigDict(populate_by_name=True)

    peersWarningTxBuyerInputPartialSignature: Optional[str] = None
    peersWarningTxSellerInputPartialSignature: Optional[str] = None
    peersRedirectTxInputPartialSignature: Optional[str] = None
    swapTxInputPartialSignature: Optional[str] = None


class DepositTxSignatureRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    tradeId: str
    peersPartialSignatures: Optional[PartialSignaturesMessage] = None


class DepositPsbt(BaseModel):
    """The deposit tx with this party's inputs signed."""
    model_config = ConfigDict(populate_by_name=True)

    depositTx: str = Field(description="Hex-encoded deposit tx, witnesses present for my inputs only")


class PublishDepositTxRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    tradeId: str
    peersDepositTx: Optional[str] = Field(
        default=None,
        description="Peer's signed deposit tx; required unless already merged",
    )


class SubscribeTxConfirmationStatusRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    tradeId: str


class TxConfirmationStatus(BaseModel):
    """One line of the deposit tx confirmation stream."""
    model_config = ConfigDict(populate_by_name=True)

    tx: str = Field(description="Hex-encoded signed deposit tx")
    currentBlockHeight: int
    numConfirmations: int


class SwapTxSignatureRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    tradeId: str
    swapTxInputPeersPartialSignature: Optional[str] = None


class SwapTxSignatureResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    swapTx: str = Field(description="Hex-encoded fully signed swap tx")
    peerOutputPrvKeyShare: str = Field(description="My private key share for the buyer payout")


class CloseTradeRequest(BaseModel):
    """
    Close a trade. Exactly one of three paths is taken:

    - ``myOutputPeersPrvKeyShare`` set: cooperative close
    - ``swapTx`` set (buyer): recover the seller's key share from the signed swap tx
    - neither (seller): force-close by publishing the swap tx
    """
    model_config = ConfigDict(populate_by_name=True)

    tradeId: str
    myOutputPeersPrvKeyShare: Optional[str] = None
    swapTx: Optional[str] = None


class CloseTradeResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    peerOutputPrvKeyShare: str = Field(description="My private key share for the peer's payout")
    swapTx: Optional[str] = Field(default=None, description="Broadcast swap tx, on force-close only")


class AbortTradeRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    tradeId: str


class AbortTradeResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    releasedCoins: list[str] = Field(
        default_factory=list,
        description="Wallet coins (txid:vout) no longer reserved for the trade",
    )
