"""Tests for transaction serialization, addresses and the trade tx templates."""

import hashlib

import pytest

from musig_trade.protocol import musig2
from musig_trade.protocol import transactions as txs
from musig_trade.protocol.errors import PeerDataInvalid
from musig_trade.protocol.transactions import (
    FundingInput,
    HalfDeposit,
    OutPoint,
    Transaction,
    TxIn,
    TxOut,
)

BUYER_KEY = musig2.taproot_output_key(musig2.generate_key_share().pub_key)
SELLER_KEY = musig2.taproot_output_key(musig2.generate_key_share().pub_key)
FEE_RATE = 2_500  # 10 sat/vB


def p2tr(key: bytes = None) -> bytes:
    return txs.p2tr_script_pubkey(key or musig2.taproot_output_key(musig2.generate_key_share().pub_key))


def funding_input(txid_byte: int, value: int) -> FundingInput:
    return FundingInput(OutPoint((bytes([txid_byte]) * 32).hex(), 0), TxOut(value, p2tr()))


def make_deposit_tx():
    buyer_half = txs.fund_half_deposit([funding_input(0xbb, 50_000)], 5_000, FEE_RATE, p2tr())
    seller_half = txs.fund_half_deposit([funding_input(0x11, 200_000)], 105_000, FEE_RATE, p2tr())
    return txs.build_deposit_tx(buyer_half, seller_half, BUYER_KEY, SELLER_KEY, 105_000, 5_000)


def test_segwit_serialization_round_trip():
    tx = Transaction(
        inputs=[TxIn(OutPoint("ab" * 32, 1), witness=[bytes(64)]), TxIn(OutPoint("cd" * 32, 0))],
        outputs=[TxOut(12_345, p2tr()), TxOut(330, p2tr())],
        locktime=800_000,
    )
    parsed = Transaction.from_hex(tx.hex())
    assert parsed == tx
    assert parsed.txid() == tx.txid()


def test_txid_ignores_witness():
    tx = Transaction(inputs=[TxIn(OutPoint("ab" * 32, 0))], outputs=[TxOut(1_000, p2tr())])
    txid = tx.txid()
    tx.inputs[0].witness = [bytes(64)]
    assert tx.txid() == txid
    assert tx.weight() > 4 * len(tx.serialize(include_witness=False))


def test_from_hex_rejects_garbage():
    with pytest.raises(PeerDataInvalid):
        Transaction.from_hex("zz")
    with pytest.raises(PeerDataInvalid):
        Transaction.from_hex("0200000001")
    tx = Transaction(inputs=[TxIn(OutPoint("ab" * 32, 0))], outputs=[TxOut(1_000, p2tr())])
    with pytest.raises(PeerDataInvalid):
        Transaction.from_hex(tx.hex() + "00")


def test_address_decoding_matches_known_scripts():
    assert txs.address_to_script_pubkey(
        "bc1qw508d6qejxtdg4y5r3zarvary0c5xw7kv8f3t4", "mainnet"
    ).hex() == "0014751e76e8199196d454941c45d1b3a323f1433bd6"
    assert txs.address_to_script_pubkey(
        "bc1p0xlxvlhemja6c4dqv22uapctqupfhlxm9h8z3k2e72q4k9hcz7vqzk5jj0", "mainnet"
    ).hex() == "512079be667ef9dcbbac55a06295ce870b07029bfcdb2dce28d959f2815b16f81798"


def test_address_encoding_round_trip_per_network():
    script = p2tr(BUYER_KEY)
    for network, prefix in (("regtest", "bcrt1p"), ("testnet", "tb1p"), ("mainnet", "bc1p")):
        address = txs.script_pubkey_to_address(script, network)
        assert address.startswith(prefix)
        assert txs.address_to_script_pubkey(address, network) == script


def test_address_for_wrong_network_is_rejected():
    address = txs.script_pubkey_to_address(p2tr(BUYER_KEY), "mainnet")
    with pytest.raises(PeerDataInvalid):
        txs.address_to_script_pubkey(address, "regtest")
    with pytest.raises(PeerDataInvalid):
        txs.address_to_script_pubkey("not-an-address", "regtest")


def test_fund_half_deposit_adds_change():
    half = txs.fund_half_deposit([funding_input(1, 50_000), funding_input(2, 3_000)], 5_000, FEE_RATE, p2tr())
    assert [i.prevout.value for i in half.inputs] == [50_000]
    assert half.change is not None
    fee = txs.half_deposit_fee(1, half.change, FEE_RATE)
    assert half.input_value - half.change_value == 5_000 + fee
    txs.check_half_deposit(half, 5_000, FEE_RATE)


def test_fund_half_deposit_insufficient():
    assert txs.fund_half_deposit([funding_input(1, 4_000)], 5_000, FEE_RATE, p2tr()) is None
    assert txs.fund_half_deposit([], 5_000, FEE_RATE, p2tr()) is None


def test_check_half_deposit_rejects_underfunding():
    short = HalfDeposit(inputs=[funding_input(1, 5_000)], change=None)
    with pytest.raises(PeerDataInvalid):
        txs.check_half_deposit(short, 5_000, FEE_RATE)
    with pytest.raises(PeerDataInvalid):
        txs.check_half_deposit(HalfDeposit(inputs=[]), 5_000, FEE_RATE)


def test_deposit_tx_layout():
    deposit_tx, prevouts = make_deposit_tx()
    outpoints = [txin.outpoint for txin in deposit_tx.inputs]
    assert outpoints == sorted(outpoints)
    assert len(prevouts) == len(deposit_tx.inputs)
    assert deposit_tx.outputs[txs.BUYER_PAYOUT_VOUT] == TxOut(105_000, txs.p2tr_script_pubkey(BUYER_KEY))
    assert deposit_tx.outputs[txs.SELLER_PAYOUT_VOUT] == TxOut(5_000, txs.p2tr_script_pubkey(SELLER_KEY))
    assert len(deposit_tx.outputs) == 4


def test_deposit_tx_rejects_shared_inputs():
    shared = funding_input(7, 200_000)
    half = HalfDeposit(inputs=[shared])
    with pytest.raises(PeerDataInvalid):
        txs.build_deposit_tx(half, half, BUYER_KEY, SELLER_KEY, 105_000, 5_000)


def test_prepared_tx_chain():
    deposit_tx, _ = make_deposit_tx()
    escrow_key = musig2.taproot_output_key(musig2.generate_key_share().pub_key)

    warning_tx = txs.build_warning_tx(deposit_tx, escrow_key, p2tr(), FEE_RATE)
    assert [txin.outpoint for txin in warning_tx.inputs] == [
        OutPoint(deposit_tx.txid(), 0), OutPoint(deposit_tx.txid(), 1)]
    assert warning_tx.outputs[1].value == txs.FEE_BUMP_OUTPUT_AMOUNT
    fee = 110_000 - sum(out.value for out in warning_tx.outputs)
    assert fee > 0

    receivers = [TxOut(90_000, p2tr()), TxOut(10_000, p2tr())]
    redirect_tx = txs.build_redirect_tx(warning_tx, receivers, p2tr(), FEE_RATE)
    assert redirect_tx.inputs[0].outpoint == OutPoint(warning_tx.txid(), txs.WARNING_ESCROW_VOUT)
    assert redirect_tx.inputs[0].sequence == txs.REDIRECT_TX_RELATIVE_LOCKTIME
    assert redirect_tx.outputs[:2] == receivers

    swap_tx = txs.build_swap_tx(deposit_tx, SELLER_KEY, FEE_RATE)
    assert swap_tx.inputs[0].outpoint == OutPoint(deposit_tx.txid(), txs.SELLER_PAYOUT_VOUT)
    assert 0 < swap_tx.outputs[0].value < 5_000


def test_redirect_receivers_cannot_overspend_escrow():
    deposit_tx, _ = make_deposit_tx()
    warning_tx = txs.build_warning_tx(deposit_tx, BUYER_KEY, p2tr(), FEE_RATE)
    escrow = warning_tx.outputs[txs.WARNING_ESCROW_VOUT].value
    with pytest.raises(PeerDataInvalid):
        txs.build_redirect_tx(warning_tx, [TxOut(escrow, p2tr())], p2tr(), FEE_RATE)


def test_templates_are_deterministic():
    deposit_tx, _ = make_deposit_tx()
    fee_bump = p2tr()
    first = txs.build_warning_tx(deposit_tx, BUYER_KEY, fee_bump, FEE_RATE)
    second = txs.build_warning_tx(deposit_tx, BUYER_KEY, fee_bump, FEE_RATE)
    assert first.txid() == second.txid()
    assert not first.has_witness


def test_sighash_commits_to_prevout_amounts():
    deposit_tx, _ = make_deposit_tx()
    swap_tx = txs.build_swap_tx(deposit_tx, SELLER_KEY, FEE_RATE)
    prevouts = txs.swap_tx_prevouts(deposit_tx)
    sighash = txs.taproot_sighash(swap_tx, 0, prevouts)
    assert len(sighash) == 32
    assert sighash != txs.taproot_sighash(swap_tx, 0, [TxOut(prevouts[0].value + 1, prevouts[0].script_pubkey)])
    with pytest.raises(ValueError):
        txs.taproot_sighash(swap_tx, 0, [])


def test_sighash_message_layout():
    key_a, key_b, key_out = bytes([0x11]) * 32, bytes([0x22]) * 32, bytes([0x33]) * 32
    tx = Transaction(
        inputs=[TxIn(OutPoint("01" + "00" * 31, 1), sequence=0xfffffffd),
                TxIn(OutPoint("02" + "00" * 31, 0), sequence=0xffffffff)],
        outputs=[TxOut(60_000, txs.p2tr_script_pubkey(key_out))],
        version=2,
        locktime=700_000,
    )
    prevouts = [TxOut(50_000, txs.p2tr_script_pubkey(key_a)), TxOut(20_000, txs.p2tr_script_pubkey(key_b))]

    def sha(data: bytes) -> bytes:
        return hashlib.sha256(data).digest()

    # Outpoint txids are in internal (reversed) byte order
    sha_prevouts = sha(bytes(31) + b"\x01" + b"\x01\x00\x00\x00" + bytes(31) + b"\x02" + bytes(4))
    sha_amounts = sha((50_000).to_bytes(8, "little") + (20_000).to_bytes(8, "little"))
    sha_scriptpubkeys = sha(b"\x22\x51\x20" + key_a + b"\x22\x51\x20" + key_b)
    sha_sequences = sha(bytes.fromhex("fdffffff" "ffffffff"))
    sha_outputs = sha((60_000).to_bytes(8, "little") + b"\x22\x51\x20" + key_out)

    for index in range(2):
        sig_msg = (
            b"\x00"  # epoch
            + b"\x00"  # SIGHASH_DEFAULT
            + bytes.fromhex("02000000")
            + (700_000).to_bytes(4, "little")
            + sha_prevouts + sha_amounts + sha_scriptpubkeys + sha_sequences + sha_outputs
            + b"\x00"  # key path spend, no annex
            + index.to_bytes(4, "little")
        )
        tag = sha(b"TapSighash")
        assert txs.taproot_sighash(tx, index, prevouts) == sha(tag + tag + sig_msg)
