"""Wallet endpoint models."""

from typing import Literal, Optional
from pydantic import BaseModel, Field, ConfigDict


class WalletBalanceResponse(BaseModel):
    """Wallet balance in sats."""
    model_config = ConfigDict(populate_by_name=True)

    immature: int = Field(description="Coinbase outputs not yet spendable")
    trustedPending: int = Field(description="Unconfirmed change from our own txs")
    untrustedPending: int = Field(description="Unconfirmed incoming coins")
    confirmed: int
    total: int


class NewAddressResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    address: str
    derivationPath: str


class TransactionOutput(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    txId: str
    vout: int
    value: int = Field(description="Amount in sats")
    scriptPubKey: str
    address: Optional[str] = None
    confirmationHeight: Optional[int] = None
    locked: bool = Field(default=False, description="Reserved for a pending deposit tx")


class ListUnspentResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    utxos: list[TransactionOutput]


class ConfEvent(BaseModel):
    """One line of a tx confidence stream."""
    model_config = ConfigDict(populate_by_name=True)

    rawTx: Optional[str] = Field(default=None, description="Hex-encoded tx, unset while unknown")
    confidenceType: Literal["UNKNOWN", "PENDING", "BUILDING"] = "UNKNOWN"
    numConfirmations: int = 0
    confirmationBlockHeight: Optional[int] = None
