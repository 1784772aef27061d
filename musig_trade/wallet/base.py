"""Abstract base class for the wallet collaborator."""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import AsyncIterator, Optional

from musig_trade.protocol.transactions import OutPoint, Transaction, TxOut


class KeychainKind(str, Enum):
    EXTERNAL = "external"
    INTERNAL = "internal"


@dataclass(frozen=True)
class AddressInfo:
    index: int
    address: str
    keychain: KeychainKind = KeychainKind.EXTERNAL
    derivation_path: Optional[str] = None


@dataclass(frozen=True)
class Balance:
    """Wallet balance in sats, split by how far each coin can be trusted."""
    immature: int = 0
    trusted_pending: int = 0
    untrusted_pending: int = 0
    confirmed: int = 0

    @property
    def trusted_spendable(self) -> int:
        return self.confirmed + self.trusted_pending

    @property
    def total(self) -> int:
        return self.immature + self.trusted_pending + self.untrusted_pending + self.confirmed


@dataclass(frozen=True)
class LocalOutput:
    outpoint: OutPoint
    txout: TxOut
    keychain: KeychainKind
    derivation_index: int
    confirmation_height: Optional[int] = None
    is_immature: bool = False
    is_locked: bool = False

    @property
    def is_spendable(self) -> bool:
        return not self.is_immature and not self.is_locked


@dataclass(frozen=True)
class WalletTx:
    txid: str
    tx: Transaction
    confirmation_height: Optional[int] = None

    @property
    def is_confirmed(self) -> bool:
        return self.confirmation_height is not None


@dataclass(frozen=True)
class TxConfidence:
    wallet_tx: WalletTx
    num_confirmations: int


class WalletService(ABC):
    """
    Interface the trade protocol uses to reach the on-chain wallet.

    Implementations are shared by all trades and must be safe to call from
    any thread. Synchronous methods never perform network I/O, so they may be
    called while a trade lock is held.
    """

    @abstractmethod
    async def connect(self) -> None:
        """
        Sync the wallet with the chain, then keep polling for new blocks and
        mempool transactions. Only returns by raising (or being cancelled).
        """
        pass

    @abstractmethod
    def tip_height(self) -> int:
        pass

    @abstractmethod
    def balance(self) -> Balance:
        pass

    @abstractmethod
    def reveal_next_address(self, keychain: KeychainKind = KeychainKind.EXTERNAL) -> AddressInfo:
        pass

    @abstractmethod
    def list_unspent(self) -> list[LocalOutput]:
        pass

    @abstractmethod
    def lock_unspent(self, outpoints: list[OutPoint]) -> None:
        """
        Reserve coins for a deposit tx so no other trade selects them.

        Raises:
            WalletError: if any of the coins is unknown, spent or already reserved
        """
        pass

    @abstractmethod
    def unlock_unspent(self, outpoints: list[OutPoint]) -> None:
        """Release reserved coins. Coins that are not reserved are ignored."""
        pass

    @abstractmethod
    def sign_inputs(self, tx: Transaction, prevouts: list[TxOut]) -> int:
        """
        Add key-path witnesses to every unsigned input of ``tx`` that spends
        one of this wallet's coins.

        Returns:
            Number of inputs signed
        """
        pass

    @abstractmethod
    async def broadcast_transaction(self, tx: Transaction) -> str:
        """Relay a fully signed transaction and return its txid."""
        pass

    @abstractmethod
    def get_tx_confidence_stream(self, txid: str) -> AsyncIterator[Optional[TxConfidence]]:
        """
        Stream confidence updates for a wallet transaction.

        The first item is the current confidence (None when the wallet does
        not know the tx yet); later items follow every change. Closing the
        iterator deregisters the observer.
        """
        pass

    async def close(self) -> None:
        """Release network resources."""
        pass
