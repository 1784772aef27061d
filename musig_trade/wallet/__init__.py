from .base import (
    WalletService,
    AddressInfo,
    Balance,
    KeychainKind,
    LocalOutput,
    TxConfidence,
    WalletTx,
)
from .bitcoind import BitcoindClient, BitcoindRpcError
from .keychain import KeychainWalletService
from .observable import ObservableHashMap

__all__ = [
    "WalletService",
    "AddressInfo",
    "Balance",
    "KeychainKind",
    "LocalOutput",
    "TxConfidence",
    "WalletTx",
    "BitcoindClient",
    "BitcoindRpcError",
    "KeychainWalletService",
    "ObservableHashMap",
]
