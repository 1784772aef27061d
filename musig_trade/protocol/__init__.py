from .errors import (
    TradeProtocolError,
    TradeNotFound,
    ProtocolViolation,
    CryptoFailure,
    MissingField,
    PeerDataInvalid,
    WalletError,
    InsufficientFunds,
)
from .trade_model import TradeModel, TradeRole, TradeState, PartialSignatures
from .store import TradeModelStore, TradeModelHandle

__all__ = [
    "TradeProtocolError",
    "TradeNotFound",
    "ProtocolViolation",
    "CryptoFailure",
    "MissingField",
    "PeerDataInvalid",
    "WalletError",
    "InsufficientFunds",
    "TradeModel",
    "TradeRole",
    "TradeState",
    "PartialSignatures",
    "TradeModelStore",
    "TradeModelHandle",
]
