"""
Bitcoin transaction primitives and the trade's transaction templates.

Templates (all Taproot key-path, built identically by both parties):

  - Deposit tx:  both parties' funding inputs -> buyer payout + seller payout
                 (+ change for each party)
  - Warning tx:  both deposit payouts -> escrow output + fee-bump anchor.
                 One per party.
  - Redirect tx: warning escrow -> redirection receivers + fee-bump anchor,
                 after a relative timelock. One per party.
  - Swap tx:     seller payout -> seller-only Taproot output.

Digests are BIP-341 SIGHASH_DEFAULT key-path signature messages.
"""

import hashlib
import logging
import math
import struct
from dataclasses import dataclass, field
from io import BytesIO
from typing import BinaryIO, Optional

import bech32

from .errors import PeerDataInvalid
from .musig2 import tagged_hash

logger = logging.getLogger(__name__)

# =============================================================================
# CONSTANTS
# =============================================================================

NETWORK_HRPS = {
    "mainnet": "bc",
    "testnet": "tb",
    "signet": "tb",
    "regtest": "bcrt",
}

TX_VERSION = 2
SEQUENCE_RBF = 0xFFFFFFFD
# BIP-68 relative lock (in blocks) before a redirect tx may spend the warning escrow
REDIRECT_TX_RELATIVE_LOCKTIME = 144

DUST_LIMIT = 330
FEE_BUMP_OUTPUT_AMOUNT = 330

BUYER_PAYOUT_VOUT = 0
SELLER_PAYOUT_VOUT = 1
WARNING_ESCROW_VOUT = 0

# Weight units, Taproot key-path spend with a 64-byte signature
TX_OVERHEAD_WEIGHT = 4 * (4 + 1 + 1 + 4) + 2
P2TR_INPUT_WEIGHT = 4 * (36 + 1 + 4) + (1 + 1 + 64)
P2TR_OUTPUT_WEIGHT = 4 * (8 + 1 + 34)

DUMMY_SIGNATURE = bytes(64)


# =============================================================================
# SERIALIZATION HELPERS
# =============================================================================

def compact_size(n: int) -> bytes:
    if n < 0xFD:
        return bytes([n])
    if n <= 0xFFFF:
        return b"\xfd" + struct.pack("<H", n)
    if n <= 0xFFFFFFFF:
        return b"\xfe" + struct.pack("<I", n)
    return b"\xff" + struct.pack("<Q", n)


def _read_exact(stream: BinaryIO, n: int) -> bytes:
    data = stream.read(n)
    if len(data) != n:
        raise PeerDataInvalid("unexpected end of transaction data")
    return data


def read_compact_size(stream: BinaryIO) -> int:
    prefix = _read_exact(stream, 1)[0]
    if prefix < 0xFD:
        return prefix
    if prefix == 0xFD:
        return struct.unpack("<H", _read_exact(stream, 2))[0]
    if prefix == 0xFE:
        return struct.unpack("<I", _read_exact(stream, 4))[0]
    return struct.unpack("<Q", _read_exact(stream, 8))[0]


def sha256(data: bytes) -> bytes:
    return hashlib.sha256(data).digest()


# =============================================================================
# TRANSACTION MODEL
# =============================================================================

@dataclass(frozen=True, order=True)
class OutPoint:
    """Reference to a transaction output (txid in display byte order)."""
    txid: str
    vout: int

    def serialize(self) -> bytes:
        return bytes.fromhex(self.txid)[::-1] + struct.pack("<I", self.vout)

    def __str__(self) -> str:
        return f"{self.txid}:{self.vout}"


@dataclass
class TxOut:
    value: int
    script_pubkey: bytes

    def serialize(self) -> bytes:
        return struct.pack("<q", self.value) + compact_size(len(self.script_pubkey)) + self.script_pubkey

    @property
    def weight(self) -> int:
        return 4 * len(self.serialize())


@dataclass
class TxIn:
    outpoint: OutPoint
    sequence: int = SEQUENCE_RBF
    witness: list[bytes] = field(default_factory=list)

    def serialize(self) -> bytes:
        # scriptSig is always empty for segwit spends
        return self.outpoint.serialize() + b"\x00" + struct.pack("<I", self.sequence)


@dataclass
class Transaction:
    inputs: list[TxIn]
    outputs: list[TxOut]
    version: int = TX_VERSION
    locktime: int = 0

    @property
    def has_witness(self) -> bool:
        return any(txin.witness for txin in self.inputs)

    def serialize(self, include_witness: bool = True) -> bytes:
        with_witness = include_witness and self.has_witness
        raw = struct.pack("<i", self.version)
        if with_witness:
            raw += b"\x00\x01"
        raw += compact_size(len(self.inputs))
        for txin in self.inputs:
            raw += txin.serialize()
        raw += compact_size(len(self.outputs))
        for txout in self.outputs:
            raw += txout.serialize()
        if with_witness:
            for txin in self.inputs:
                raw += compact_size(len(txin.witness))
                for item in txin.witness:
                    raw += compact_size(len(item)) + item
        raw += struct.pack("<I", self.locktime)
        return raw

    def txid(self) -> str:
        return sha256(sha256(self.serialize(include_witness=False)))[::-1].hex()

    def weight(self) -> int:
        base = len(self.serialize(include_witness=False))
        total = len(self.serialize(include_witness=True))
        return 3 * base + total

    def vsize(self) -> int:
        return math.ceil(self.weight() / 4)

    def hex(self) -> str:
        return self.serialize().hex()

    def is_fully_signed(self) -> bool:
        return all(txin.witness for txin in self.inputs)

    @classmethod
    def read(cls, stream: BinaryIO) -> "Transaction":
        version = struct.unpack("<i", _read_exact(stream, 4))[0]
        n_inputs = read_compact_size(stream)
        segwit = False
        if n_inputs == 0:
            flag = _read_exact(stream, 1)[0]
            if flag != 1:
                raise PeerDataInvalid("unsupported transaction serialization flag")
            segwit = True
            n_inputs = read_compact_size(stream)

        inputs = []
        for _ in range(n_inputs):
            prev_hash = _read_exact(stream, 32)
            vout = struct.unpack("<I", _read_exact(stream, 4))[0]
            _read_exact(stream, read_compact_size(stream))  # scriptSig
            sequence = struct.unpack("<I", _read_exact(stream, 4))[0]
            inputs.append(TxIn(OutPoint(prev_hash[::-1].hex(), vout), sequence))

        outputs = []
        for _ in range(read_compact_size(stream)):
            value = struct.unpack("<q", _read_exact(stream, 8))[0]
            script_pubkey = _read_exact(stream, read_compact_size(stream))
            outputs.append(TxOut(value, script_pubkey))

        if segwit:
            for txin in inputs:
                txin.witness = [_read_exact(stream, read_compact_size(stream))
                                for _ in range(read_compact_size(stream))]

        locktime = struct.unpack("<I", _read_exact(stream, 4))[0]
        return cls(inputs=inputs, outputs=outputs, version=version, locktime=locktime)

    @classmethod
    def deserialize(cls, data: bytes) -> "Transaction":
        stream = BytesIO(data)
        tx = cls.read(stream)
        if stream.read(1):
            raise PeerDataInvalid("trailing bytes after transaction")
        return tx

    @classmethod
    def from_hex(cls, data: str) -> "Transaction":
        try:
            raw = bytes.fromhex(data)
        except ValueError as e:
            raise PeerDataInvalid(f"transaction is not valid hex: {e}") from e
        return cls.deserialize(raw)


def parse_block_transactions(raw_block: bytes) -> list[Transaction]:
    """Parse the transactions of a serialized block (header skipped)."""
    stream = BytesIO(raw_block)
    _read_exact(stream, 80)
    return [Transaction.read(stream) for _ in range(read_compact_size(stream))]


# =============================================================================
# ADDRESSES
# =============================================================================

def p2tr_script_pubkey(output_key: bytes) -> bytes:
    """OP_1 <32-byte x-only key>."""
    if len(output_key) != 32:
        raise ValueError(f"expected a 32-byte x-only key, got {len(output_key)} bytes")
    return b"\x51\x20" + output_key


def address_to_script_pubkey(address: str, network: str) -> bytes:
    """Decode a bech32/bech32m segwit address for ``network``."""
    hrp = NETWORK_HRPS[network]
    version, program = bech32.decode(hrp, address)
    if version is None or program is None:
        raise PeerDataInvalid(f"invalid {network} segwit address: {address}")
    op_version = 0 if version == 0 else 0x50 + version
    return bytes([op_version, len(program)]) + bytes(program)


def script_pubkey_to_address(script_pubkey: bytes, network: str) -> str:
    if len(script_pubkey) < 4 or script_pubkey[1] != len(script_pubkey) - 2:
        raise ValueError("not a segwit output script")
    version = 0 if script_pubkey[0] == 0 else script_pubkey[0] - 0x50
    address = bech32.encode(NETWORK_HRPS[network], version, list(script_pubkey[2:]))
    if address is None:
        raise ValueError("segwit address encoding failed")
    return address


def taproot_output_key_of(script_pubkey: bytes) -> Optional[bytes]:
    if len(script_pubkey) == 34 and script_pubkey[:2] == b"\x51\x20":
        return script_pubkey[2:]
    return None


# =============================================================================
# SIGHASH (BIP-341, key path, SIGHASH_DEFAULT)
# =============================================================================

def taproot_sighash(tx: Transaction, input_index: int, prevouts: list[TxOut]) -> bytes:
    """
    BIP-341 signature message for a key-path spend with SIGHASH_DEFAULT.

    ``prevouts`` are the outputs spent by every input of ``tx``, in order.
    """
    if len(prevouts) != len(tx.inputs):
        raise ValueError("need exactly one prevout per input")

    sha_prevouts = sha256(b"".join(txin.outpoint.serialize() for txin in tx.inputs))
    sha_amounts = sha256(b"".join(struct.pack("<q", p.value) for p in prevouts))
    sha_scriptpubkeys = sha256(b"".join(compact_size(len(p.script_pubkey)) + p.script_pubkey for p in prevouts))
    sha_sequences = sha256(b"".join(struct.pack("<I", txin.sequence) for txin in tx.inputs))
    sha_outputs = sha256(b"".join(txout.serialize() for txout in tx.outputs))

    msg = b"\x00"  # epoch
    msg += b"\x00"  # hash type
    msg += struct.pack("<i", tx.version)
    msg += struct.pack("<I", tx.locktime)
    msg += sha_prevouts + sha_amounts + sha_scriptpubkeys + sha_sequences + sha_outputs
    msg += b"\x00"  # spend type: key path, no annex
    msg += struct.pack("<I", input_index)
    return tagged_hash("TapSighash", msg)


# =============================================================================
# FEES
# =============================================================================

def fee_for_weight(weight: int, fee_rate: int) -> int:
    """Fee in sats for ``weight`` at ``fee_rate`` sat/kwu, rounded up."""
    return math.ceil(weight * fee_rate / 1000)


def _fee_with_dummy_witnesses(tx: Transaction, fee_rate: int) -> int:
    for txin in tx.inputs:
        txin.witness = [DUMMY_SIGNATURE]
    try:
        return fee_for_weight(tx.weight(), fee_rate)
    finally:
        for txin in tx.inputs:
            txin.witness = []


# =============================================================================
# DEPOSIT TX
# =============================================================================

@dataclass
class FundingInput:
    """A wallet output one party commits to the deposit tx."""
    outpoint: OutPoint
    prevout: TxOut


@dataclass
class HalfDeposit:
    """One party's funding inputs for the deposit tx, with optional change."""
    inputs: list[FundingInput]
    change: Optional[TxOut] = None

    @property
    def input_value(self) -> int:
        return sum(i.prevout.value for i in self.inputs)

    @property
    def change_value(self) -> int:
        return self.change.value if self.change else 0


def half_deposit_fee(num_inputs: int, change: Optional[TxOut], fee_rate: int) -> int:
    """
    One party's share of the deposit tx fee: its own inputs and change, plus
    half of the shared overhead and payout outputs.
    """
    weight = num_inputs * P2TR_INPUT_WEIGHT + (TX_OVERHEAD_WEIGHT + 2 * P2TR_OUTPUT_WEIGHT) // 2
    if change is not None:
        weight += change.weight
    return fee_for_weight(weight, fee_rate)


def fund_half_deposit(
    candidates: list[FundingInput],
    contribution: int,
    fee_rate: int,
    change_script: bytes,
) -> Optional[HalfDeposit]:
    """
    Select coins (largest first) covering ``contribution`` plus this party's
    fee share. Returns None when the candidates are insufficient.
    """
    selected: list[FundingInput] = []
    total = 0
    for candidate in sorted(candidates, key=lambda c: c.prevout.value, reverse=True):
        selected.append(candidate)
        total += candidate.prevout.value

        change = TxOut(0, change_script)
        fee = half_deposit_fee(len(selected), change, fee_rate)
        change.value = total - contribution - fee
        if change.value >= DUST_LIMIT:
            return HalfDeposit(inputs=selected, change=change)

        fee_without_change = half_deposit_fee(len(selected), None, fee_rate)
        if total >= contribution + fee_without_change:
            return HalfDeposit(inputs=selected, change=None)
    return None


def check_half_deposit(half: HalfDeposit, contribution: int, fee_rate: int) -> None:
    """Reject a peer half-deposit that does not cover its contribution and fee share."""
    if not half.inputs:
        raise PeerDataInvalid("half-deposit has no inputs")
    if half.change is not None and half.change.value < DUST_LIMIT:
        raise PeerDataInvalid("half-deposit change output is below the dust limit")
    required = contribution + half_deposit_fee(len(half.inputs), half.change, fee_rate)
    if half.input_value - half.change_value < required:
        raise PeerDataInvalid(
            f"half-deposit provides {half.input_value - half.change_value} sats, needs {required}"
        )


def build_deposit_tx(
    buyer_half: HalfDeposit,
    seller_half: HalfDeposit,
    buyer_payout_key: bytes,
    seller_payout_key: bytes,
    buyer_payout_amount: int,
    seller_payout_amount: int,
) -> tuple[Transaction, list[TxOut]]:
    """
    Build the deposit tx and the list of prevouts its inputs spend.

    Inputs are sorted by outpoint so both parties derive the same tx.
    """
    funding = sorted(buyer_half.inputs + seller_half.inputs, key=lambda i: i.outpoint)
    if len({i.outpoint for i in funding}) != len(funding):
        raise PeerDataInvalid("half-deposits spend the same output twice")

    outputs = [
        TxOut(buyer_payout_amount, p2tr_script_pubkey(buyer_payout_key)),
        TxOut(seller_payout_amount, p2tr_script_pubkey(seller_payout_key)),
    ]
    for half in (buyer_half, seller_half):
        if half.change is not None:
            outputs.append(TxOut(half.change.value, half.change.script_pubkey))

    tx = Transaction(inputs=[TxIn(i.outpoint) for i in funding], outputs=outputs)
    return tx, [i.prevout for i in funding]


# =============================================================================
# PREPARED TXS
# =============================================================================

def build_warning_tx(
    deposit_tx: Transaction,
    escrow_key: bytes,
    fee_bump_script: bytes,
    fee_rate: int,
) -> Transaction:
    """Spend both deposit payouts to an escrow output plus a fee-bump anchor."""
    deposit_txid = deposit_tx.txid()
    input_value = deposit_tx.outputs[BUYER_PAYOUT_VOUT].value + deposit_tx.outputs[SELLER_PAYOUT_VOUT].value
    tx = Transaction(
        inputs=[TxIn(OutPoint(deposit_txid, BUYER_PAYOUT_VOUT)), TxIn(OutPoint(deposit_txid, SELLER_PAYOUT_VOUT))],
        outputs=[TxOut(0, p2tr_script_pubkey(escrow_key)), TxOut(FEE_BUMP_OUTPUT_AMOUNT, fee_bump_script)],
    )
    escrow_value = input_value - FEE_BUMP_OUTPUT_AMOUNT - _fee_with_dummy_witnesses(tx, fee_rate)
    if escrow_value < DUST_LIMIT:
        raise PeerDataInvalid("trade amounts are too small to pay for the warning tx")
    tx.outputs[WARNING_ESCROW_VOUT].value = escrow_value
    return tx


def warning_tx_prevouts(deposit_tx: Transaction) -> list[TxOut]:
    return [deposit_tx.outputs[BUYER_PAYOUT_VOUT], deposit_tx.outputs[SELLER_PAYOUT_VOUT]]


def build_redirect_tx(
    warning_tx: Transaction,
    receivers: list[TxOut],
    fee_bump_script: bytes,
    fee_rate: int,
) -> Transaction:
    """Spend a warning escrow to the redirection receivers after the relative timelock."""
    escrow = warning_tx.outputs[WARNING_ESCROW_VOUT]
    tx = Transaction(
        inputs=[TxIn(OutPoint(warning_tx.txid(), WARNING_ESCROW_VOUT), sequence=REDIRECT_TX_RELATIVE_LOCKTIME)],
        outputs=[TxOut(r.value, r.script_pubkey) for r in receivers] + [TxOut(FEE_BUMP_OUTPUT_AMOUNT, fee_bump_script)],
    )
    required = sum(r.value for r in receivers) + FEE_BUMP_OUTPUT_AMOUNT + _fee_with_dummy_witnesses(tx, fee_rate)
    if required > escrow.value:
        raise PeerDataInvalid(f"redirection receivers need {required} sats, escrow holds {escrow.value}")
    return tx


def redirect_tx_prevouts(warning_tx: Transaction) -> list[TxOut]:
    return [warning_tx.outputs[WARNING_ESCROW_VOUT]]


def build_swap_tx(deposit_tx: Transaction, payout_key: bytes, fee_rate: int) -> Transaction:
    """Spend the seller payout to a key the seller alone controls."""
    seller_payout = deposit_tx.outputs[SELLER_PAYOUT_VOUT]
    tx = Transaction(
        inputs=[TxIn(OutPoint(deposit_tx.txid(), SELLER_PAYOUT_VOUT))],
        outputs=[TxOut(0, p2tr_script_pubkey(payout_key))],
    )
    value = seller_payout.value - _fee_with_dummy_witnesses(tx, fee_rate)
    if value < DUST_LIMIT:
        raise PeerDataInvalid("seller security deposit is too small to pay for the swap tx")
    tx.outputs[0].value = value
    return tx


def swap_tx_prevouts(deposit_tx: Transaction) -> list[TxOut]:
    return [deposit_tx.outputs[SELLER_PAYOUT_VOUT]]
