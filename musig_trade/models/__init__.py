from .musig import (
    PubKeySharesRequest,
    PubKeySharesResponse,
    NonceSharesRequest,
    NonceSharesMessage,
    FundingInputModel,
    ChangeOutputModel,
    HalfDepositModel,
    ReceiverAddressAndAmount,
    PartialSignaturesRequest,
    PartialSignaturesMessage,
    DepositTxSignatureRequest,
    DepositPsbt,
    PublishDepositTxRequest,
    SubscribeTxConfirmationStatusRequest,
    TxConfirmationStatus,
    SwapTxSignatureRequest,
    SwapTxSignatureResponse,
    CloseTradeRequest,
    CloseTradeResponse,
    AbortTradeRequest,
    AbortTradeResponse,
)
from .wallet import (
    WalletBalanceResponse,
    NewAddressResponse,
    TransactionOutput,
    ListUnspentResponse,
    ConfEvent,
)

__all__ = [
    "PubKeySharesRequest",
    "PubKeySharesResponse",
    "NonceSharesRequest",
    "NonceSharesMessage",
    "FundingInputModel",
    "ChangeOutputModel",
    "HalfDepositModel",
    "ReceiverAddressAndAmount",
    "PartialSignaturesRequest",
    "PartialSignaturesMessage",
    "DepositTxSignatureRequest",
    "DepositPsbt",
    "PublishDepositTxRequest",
    "SubscribeTxConfirmationStatusRequest",
    "TxConfirmationStatus",
    "SwapTxSignatureRequest",
    "SwapTxSignatureResponse",
    "CloseTradeRequest",
    "CloseTradeResponse",
    "AbortTradeRequest",
    "AbortTradeResponse",
    "WalletBalanceResponse",
    "NewAddressResponse",
    "TransactionOutput",
    "ListUnspentResponse",
    "ConfEvent",
]
