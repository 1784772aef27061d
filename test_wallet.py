"""Tests for the keychain wallet, its confidence streams and the bitcoind sync."""

import asyncio
import json
import secrets

import httpx
import pytest
from bip_utils import Bip39SeedGenerator

from musig_trade.protocol import WalletError
from musig_trade.protocol import musig2
from musig_trade.protocol import transactions as txs
from musig_trade.protocol.transactions import OutPoint, Transaction, TxIn, TxOut
from musig_trade.wallet import (
    BitcoindClient,
    BitcoindRpcError,
    KeychainKind,
    KeychainWalletService,
    ObservableHashMap,
)
from musig_trade.wallet.keychain import NULL_TXID


def payment_to(wallet: KeychainWalletService, value: int, prev_txid: str = None) -> Transaction:
    address = wallet.reveal_next_address().address
    return Transaction(
        inputs=[TxIn(OutPoint(prev_txid or secrets.token_hex(32), 0))],
        outputs=[TxOut(value, txs.address_to_script_pubkey(address, wallet.network))],
    )


def spend_all(wallet: KeychainWalletService, value: int) -> tuple[Transaction, list[TxOut]]:
    utxos = wallet.list_unspent()
    change = wallet.reveal_next_address(KeychainKind.INTERNAL).address
    tx = Transaction(
        inputs=[TxIn(utxo.outpoint) for utxo in utxos],
        outputs=[TxOut(value, txs.address_to_script_pubkey(change, wallet.network))],
    )
    return tx, [utxo.txout for utxo in utxos]


def test_addresses_follow_derivation_paths():
    wallet = KeychainWalletService(seed=bytes(32))
    first, second = wallet.reveal_next_address(), wallet.reveal_next_address()
    change = wallet.reveal_next_address(KeychainKind.INTERNAL)
    assert first.address.startswith("bcrt1p")
    assert first.address != second.address
    assert first.derivation_path == "m/86'/1'/0'/0/0"
    assert second.derivation_path == "m/86'/1'/0'/0/1"
    assert change.derivation_path == "m/86'/1'/0'/1/0"
    assert wallet.is_mine(txs.address_to_script_pubkey(change.address, "regtest"))

    # Same seed, same keys
    assert KeychainWalletService(seed=bytes(32)).reveal_next_address().address == first.address
    assert KeychainWalletService(seed=bytes(32), network="mainnet").reveal_next_address().derivation_path == \
        "m/86'/0'/0'/0/0"


def test_keys_match_bip86_reference_addresses():
    mnemonic = "abandon abandon abandon abandon abandon abandon abandon abandon abandon abandon abandon about"
    wallet = KeychainWalletService(seed=Bip39SeedGenerator(mnemonic).Generate(), network="mainnet")
    assert wallet.reveal_next_address().address == \
        "bc1p5cyxnuxmeuwuvkwfem96lqzszd02n6xdcjrs20cac6yqjjwudpxqkedrcr"
    assert wallet.reveal_next_address().address == \
        "bc1p4qhjn9zdvkux4e44uhx8tc55attvtyu358kutcqkudyccelu0was9fqzwh"
    assert wallet.reveal_next_address(KeychainKind.INTERNAL).address == \
        "bc1p3qkhfews2uk44qtvauqyr2ttdsw7svhkl9nkm9s9c3x4ax5h60wqwruhk7"


def test_funding_shows_in_balance_and_unspent():
    wallet = KeychainWalletService()
    funding = payment_to(wallet, 50_000)
    wallet.apply_block(1, [funding, payment_to(KeychainWalletService(), 7_000)])

    assert wallet.tip_height() == 1
    assert wallet.balance().confirmed == 50_000
    assert wallet.balance().total == 50_000
    [utxo] = wallet.list_unspent()
    assert utxo.outpoint == OutPoint(funding.txid(), 0)
    assert utxo.confirmation_height == 1
    assert utxo.is_spendable


def test_unconfirmed_balance_is_split_by_trust():
    wallet = KeychainWalletService()
    wallet.apply_unconfirmed_transactions([payment_to(wallet, 20_000)])
    assert wallet.balance().untrusted_pending == 20_000

    tx, prevouts = spend_all(wallet, 19_000)
    assert wallet.sign_inputs(tx, prevouts) == 1
    wallet.apply_unconfirmed_transactions([tx])
    balance = wallet.balance()
    assert balance.untrusted_pending == 0
    assert balance.trusted_pending == 19_000
    assert balance.trusted_spendable == 19_000


def test_coinbase_outputs_mature_after_100_blocks():
    wallet = KeychainWalletService()
    coinbase = payment_to(wallet, 5_000_000_000, prev_txid=NULL_TXID)
    wallet.apply_block(1, [coinbase])
    [utxo] = wallet.list_unspent()
    assert utxo.is_immature and not utxo.is_spendable
    assert wallet.balance().immature == 5_000_000_000

    wallet.apply_block(100, [])
    [utxo] = wallet.list_unspent()
    assert utxo.is_spendable


def test_lock_unspent_reserves_each_coin_once():
    wallet = KeychainWalletService()
    funding = payment_to(wallet, 50_000)
    wallet.apply_block(1, [funding])
    outpoint = OutPoint(funding.txid(), 0)

    wallet.lock_unspent([outpoint])
    assert wallet.list_unspent()[0].is_locked
    with pytest.raises(WalletError):
        wallet.lock_unspent([outpoint])
    with pytest.raises(WalletError):
        wallet.lock_unspent([OutPoint("ab" * 32, 0)])

    wallet.unlock_unspent([outpoint])
    assert wallet.list_unspent()[0].is_spendable


def test_signed_inputs_verify():
    wallet = KeychainWalletService()
    wallet.apply_block(1, [payment_to(wallet, 30_000), payment_to(wallet, 40_000)])
    tx, prevouts = spend_all(wallet, 69_000)
    foreign = TxIn(OutPoint("cd" * 32, 0))
    tx.inputs.append(foreign)
    prevouts.append(TxOut(1_000, txs.p2tr_script_pubkey(bytes(31) + b"\x01")))

    assert wallet.sign_inputs(tx, prevouts) == 2
    assert foreign.witness == []
    for index in range(2):
        sighash = txs.taproot_sighash(tx, index, prevouts)
        output_key = txs.taproot_output_key_of(prevouts[index].script_pubkey)
        assert musig2.verify_signature(output_key, sighash, tx.inputs[index].witness[0])

    # Already signed inputs are left alone
    assert wallet.sign_inputs(tx, prevouts) == 0


def test_broadcast_refuses_unsigned_tx():
    wallet = KeychainWalletService()
    wallet.apply_block(1, [payment_to(wallet, 30_000)])
    tx, _ = spend_all(wallet, 29_000)
    with pytest.raises(WalletError):
        asyncio.run(wallet.broadcast_transaction(tx))


def test_confidence_stream_follows_confirmations():
    wallet = KeychainWalletService()
    funding = payment_to(wallet, 50_000)
    txid = funding.txid()

    async def watch():
        stream = wallet.get_tx_confidence_stream(txid)
        assert await anext(stream) is None
        assert wallet.confidence_observer_count(txid) == 1

        wallet.apply_unconfirmed_transactions([funding])
        pending = await anext(stream)
        assert pending.num_confirmations == 0

        wallet.apply_block(1, [funding])
        assert (await anext(stream)).num_confirmations == 1
        wallet.apply_block(2, [])
        assert (await anext(stream)).num_confirmations == 2

        await stream.aclose()
        assert wallet.confidence_observer_count() == 0

    asyncio.run(watch())


def test_disconnected_blocks_roll_back_confirmations():
    wallet = KeychainWalletService()
    funding = payment_to(wallet, 50_000)
    wallet.apply_block(1, [funding])
    wallet.apply_block(2, [])

    wallet.disconnect_blocks(1)
    assert wallet.tip_height() == 0
    assert wallet.get_wallet_tx(funding.txid()).confirmation_height is None
    assert wallet.balance().untrusted_pending == 50_000

    async def current_confidence():
        stream = wallet.get_tx_confidence_stream(funding.txid())
        try:
            return await anext(stream)
        finally:
            await stream.aclose()

    assert asyncio.run(current_confidence()).num_confirmations == 0


class FakeBitcoind:
    """In-memory bitcoind answering the JSON-RPC calls the wallet makes."""

    def __init__(self):
        self.blocks: list[tuple[str, list[Transaction]]] = []
        self.mempool: dict[str, Transaction] = {}
        self.sent: list[str] = []

    def mine(self, transactions: list[Transaction]) -> None:
        self.blocks.append((secrets.token_hex(32), transactions))

    def raw_block(self, block_hash: str) -> str:
        for candidate, transactions in self.blocks:
            if candidate == block_hash:
                body = txs.compact_size(len(transactions)) + b"".join(tx.serialize() for tx in transactions)
                return (bytes(80) + body).hex()
        raise KeyError(block_hash)

    def handle(self, request: httpx.Request) -> httpx.Response:
        payload = json.loads(request.content)
        method, params = payload["method"], payload["params"]
        if method == "getblockchaininfo":
            result = {"chain": "regtest", "blocks": len(self.blocks) - 1, "bestblockhash": self.blocks[-1][0]}
        elif method == "getblockcount":
            result = len(self.blocks) - 1
        elif method == "getblockhash":
            result = self.blocks[params[0]][0]
        elif method == "getblock":
            result = self.raw_block(params[0])
        elif method == "getrawmempool":
            result = list(self.mempool)
        elif method == "getrawtransaction":
            if params[0] not in self.mempool:
                error = {"code": -5, "message": "No such mempool or blockchain transaction"}
                return httpx.Response(500, json={"result": None, "error": error, "id": payload["id"]})
            result = self.mempool[params[0]].hex()
        elif method == "sendrawtransaction":
            self.sent.append(params[0])
            result = Transaction.from_hex(params[0]).txid()
        else:
            return httpx.Response(404)
        return httpx.Response(200, json={"result": result, "error": None, "id": payload["id"]})

    def client(self) -> BitcoindClient:
        client = BitcoindClient("http://bitcoind.test")
        client._client = httpx.AsyncClient(base_url=client.rpc_url, transport=httpx.MockTransport(self.handle))
        return client


def test_bitcoind_client_reports_rpc_errors():
    node = FakeBitcoind()
    node.mine([])

    async def run():
        client = node.client()
        try:
            assert await client.get_block_count() == 0
            with pytest.raises(BitcoindRpcError) as excinfo:
                await client.get_raw_transaction("ab" * 32)
            assert excinfo.value.code == -5
            with pytest.raises(WalletError):
                await client.call("stop")
        finally:
            await client.close()

    asyncio.run(run())


def test_sync_follows_chain_and_reorgs():
    node = FakeBitcoind()
    wallet = KeychainWalletService(rpc_client=node.client())
    funding = payment_to(wallet, 50_000)
    pending = payment_to(wallet, 8_000)
    node.mine([])
    node.mine([funding])
    node.mempool[pending.txid()] = pending

    async def run():
        await wallet._sync_blocks()
        await wallet._sync_mempool()
        assert wallet.tip_height() == 1
        assert wallet.balance().confirmed == 50_000
        assert wallet.balance().untrusted_pending == 8_000

        # Replace block 1 with one that does not contain the funding tx
        node.blocks[1] = (secrets.token_hex(32), [])
        node.mine([])
        await wallet._sync_blocks()
        assert wallet.tip_height() == 2
        assert wallet.get_wallet_tx(funding.txid()).confirmation_height is None
        assert wallet.balance().confirmed == 0

        await wallet.close()

    asyncio.run(run())


def test_broadcast_relays_through_bitcoind():
    node = FakeBitcoind()
    wallet = KeychainWalletService(rpc_client=node.client())
    wallet.apply_block(1, [payment_to(wallet, 30_000)])
    tx, prevouts = spend_all(wallet, 29_000)
    wallet.sign_inputs(tx, prevouts)

    async def run():
        txid = await wallet.broadcast_transaction(tx)
        await wallet.close()
        return txid

    assert asyncio.run(run()) == tx.txid()
    assert node.sent == [tx.hex()]
    assert wallet.get_wallet_tx(tx.txid()) is not None


def test_observable_map_notifies_changes_only():
    entries = ObservableHashMap()

    async def watch():
        stream = entries.observe("k")
        assert await anext(stream) is None
        entries.insert("k", 1)
        entries.insert("k", 1)
        entries.insert("other", 5)
        assert await anext(stream) == 1
        entries.remove("k")
        assert await anext(stream) is None
        await stream.aclose()
        assert entries.observer_count() == 0

    asyncio.run(watch())
    assert entries.get("other") == 5


def test_slow_observer_only_sees_latest_value():
    entries = ObservableHashMap()

    async def watch():
        stream = entries.observe("k")
        assert await anext(stream) is None
        for value in range(1_000):
            entries.insert("k", value)
        assert await anext(stream) == 999

        # Nothing else is pending
        entries.insert("k", 1_000)
        assert await anext(stream) == 1_000
        await stream.aclose()

    asyncio.run(watch())
