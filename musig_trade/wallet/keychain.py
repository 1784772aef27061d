"""In-memory Taproot keychain wallet, optionally synced from bitcoind."""

import asyncio
import logging
import secrets
import threading
from typing import AsyncIterator, Iterable, Iterator, Optional

from bip_utils import Bip44Changes, Bip86, Bip86Coins

from musig_trade.protocol import musig2
from musig_trade.protocol.errors import WalletError
from musig_trade.protocol.transactions import (
    OutPoint,
    Transaction,
    TxOut,
    p2tr_script_pubkey,
    parse_block_transactions,
    script_pubkey_to_address,
    taproot_sighash,
)
from .base import (
    AddressInfo,
    Balance,
    KeychainKind,
    LocalOutput,
    TxConfidence,
    WalletService,
    WalletTx,
)
from .bitcoind import BitcoindClient, BitcoindRpcError
from .observable import ObservableHashMap

logger = logging.getLogger(__name__)

COINBASE_MATURITY = 100
LOOKAHEAD = 25
MAX_REORG_DEPTH = 100
NULL_TXID = "00" * 32


def is_coinbase(tx: Transaction) -> bool:
    return len(tx.inputs) == 1 and tx.inputs[0].outpoint.txid == NULL_TXID


class KeychainWalletService(WalletService):
    """
    Single-seed Taproot wallet with an external and an internal keychain.

    Keys are BIP-86 derivations ``m/86'/<coin>'/0'/<change>/<index>`` of
    the seed, so any BIP-86 wallet restored from the same seed sees the same
    addresses. Every address is a key-path-only P2TR output.

    Chain data arrives through ``apply_block`` and
    ``apply_unconfirmed_transactions``, either from the ``connect`` polling
    loop or directly from the caller.
    """

    def __init__(
        self,
        seed: Optional[bytes] = None,
        network: str = "regtest",
        rpc_client: Optional[BitcoindClient] = None,
        birth_height: int = 0,
        poll_interval: float = 1.0,
    ):
        self.network = network
        self._seed = seed if seed is not None else secrets.token_bytes(32)
        self._rpc = rpc_client
        self._birth_height = birth_height
        self._poll_interval = poll_interval

        coin = Bip86Coins.BITCOIN if network == "mainnet" else Bip86Coins.BITCOIN_TESTNET
        account = Bip86.FromSeed(self._seed, coin).Purpose().Coin().Account(0)
        self._change_ctxs = {
            KeychainKind.EXTERNAL: account.Change(Bip44Changes.CHAIN_EXT),
            KeychainKind.INTERNAL: account.Change(Bip44Changes.CHAIN_INT),
        }

        # Lock order: self._lock first, then the confidence map's own lock
        self._lock = threading.Lock()
        self._scripts: dict[bytes, tuple[KeychainKind, int]] = {}
        self._derived = {KeychainKind.EXTERNAL: 0, KeychainKind.INTERNAL: 0}
        self._revealed = {KeychainKind.EXTERNAL: 0, KeychainKind.INTERNAL: 0}
        self._txs: dict[str, WalletTx] = {}
        self._block_hashes: dict[int, Optional[str]] = {}
        self._locked_outpoints: set[OutPoint] = set()
        self._checked_mempool_txids: set[str] = set()
        self._tx_confidence_map: ObservableHashMap[str, TxConfidence] = ObservableHashMap()

        for keychain in KeychainKind:
            self._fill_lookahead(keychain)

    # -------------------------------------------------------------------------
    # Keys
    # -------------------------------------------------------------------------

    def derivation_path(self, keychain: KeychainKind, index: int) -> str:
        coin_type = 0 if self.network == "mainnet" else 1
        change = 0 if keychain is KeychainKind.EXTERNAL else 1
        return f"m/86'/{coin_type}'/0'/{change}/{index}"

    def _private_key(self, keychain: KeychainKind, index: int) -> int:
        ctx = self._change_ctxs[keychain].AddressIndex(index)
        return musig2.int_from_bytes(ctx.PrivateKey().Raw().ToBytes())

    def _script_pubkey(self, keychain: KeychainKind, index: int) -> bytes:
        pub_key = musig2.point_mul_g(self._private_key(keychain, index))
        return p2tr_script_pubkey(musig2.taproot_output_key(pub_key))

    def _fill_lookahead(self, keychain: KeychainKind) -> None:
        # Caller holds self._lock, or is the constructor
        while self._derived[keychain] < self._revealed[keychain] + LOOKAHEAD:
            index = self._derived[keychain]
            self._scripts[self._script_pubkey(keychain, index)] = (keychain, index)
            self._derived[keychain] += 1

    def _mark_used(self, script_pubkey: bytes) -> None:
        keychain, index = self._scripts[script_pubkey]
        if index >= self._revealed[keychain]:
            self._revealed[keychain] = index + 1
            self._fill_lookahead(keychain)

    def reveal_next_address(self, keychain: KeychainKind = KeychainKind.EXTERNAL) -> AddressInfo:
        with self._lock:
            index = self._revealed[keychain]
            self._revealed[keychain] += 1
            self._fill_lookahead(keychain)
        address = script_pubkey_to_address(self._script_pubkey(keychain, index), self.network)
        return AddressInfo(
            index=index,
            address=address,
            keychain=keychain,
            derivation_path=self.derivation_path(keychain, index),
        )

    def is_mine(self, script_pubkey: bytes) -> bool:
        with self._lock:
            return script_pubkey in self._scripts

    # -------------------------------------------------------------------------
    # Chain data
    # -------------------------------------------------------------------------

    def tip_height(self) -> int:
        with self._lock:
            return self._tip_height()

    def _tip_height(self) -> int:
        return max(self._block_hashes) if self._block_hashes else self._birth_height

    def _is_relevant(self, tx: Transaction) -> bool:
        if any(txout.script_pubkey in self._scripts for txout in tx.outputs):
            return True
        for txin in tx.inputs:
            prev = self._txs.get(txin.outpoint.txid)
            if prev is not None and txin.outpoint.vout < len(prev.tx.outputs) and \
                    prev.tx.outputs[txin.outpoint.vout].script_pubkey in self._scripts:
                return True
        return False

    def _insert_tx(self, tx: Transaction, confirmation_height: Optional[int]) -> None:
        txid = tx.txid()
        self._txs[txid] = WalletTx(txid=txid, tx=tx, confirmation_height=confirmation_height)
        for txout in tx.outputs:
            if txout.script_pubkey in self._scripts:
                self._mark_used(txout.script_pubkey)

    def apply_block(self, height: int, transactions: Iterable[Transaction], block_hash: Optional[str] = None) -> None:
        """Record a connected block, keeping the transactions relevant to this wallet."""
        with self._lock:
            for tx in transactions:
                if self._is_relevant(tx):
                    self._insert_tx(tx, height)
            self._block_hashes[height] = block_hash
            for stale in [h for h in self._block_hashes if h <= height - MAX_REORG_DEPTH]:
                del self._block_hashes[stale]
            self._sync_tx_confidence_map()

    def apply_unconfirmed_transactions(self, transactions: Iterable[Transaction]) -> None:
        with self._lock:
            for tx in transactions:
                if tx.txid() not in self._txs and self._is_relevant(tx):
                    self._insert_tx(tx, None)
            self._sync_tx_confidence_map()

    def disconnect_blocks(self, from_height: int) -> None:
        """Roll back blocks at ``from_height`` and above; their txs become unconfirmed."""
        with self._lock:
            for txid, wallet_tx in list(self._txs.items()):
                if wallet_tx.confirmation_height is not None and wallet_tx.confirmation_height >= from_height:
                    self._txs[txid] = WalletTx(txid=txid, tx=wallet_tx.tx, confirmation_height=None)
            for height in [h for h in self._block_hashes if h >= from_height]:
                del self._block_hashes[height]
            self._sync_tx_confidence_map()
        logger.warning(f"Disconnected blocks from height {from_height}")

    def _sync_tx_confidence_map(self) -> None:
        # Caller holds self._lock
        next_height = self._tip_height() + 1
        entries = []
        for txid, wallet_tx in self._txs.items():
            conf_height = wallet_tx.confirmation_height if wallet_tx.is_confirmed else next_height
            entries.append((txid, TxConfidence(wallet_tx=wallet_tx, num_confirmations=next_height - conf_height)))
        self._tx_confidence_map.sync(entries)

    def get_wallet_tx(self, txid: str) -> Optional[WalletTx]:
        with self._lock:
            return self._txs.get(txid)

    # -------------------------------------------------------------------------
    # Coins
    # -------------------------------------------------------------------------

    def _unspent(self) -> Iterator[LocalOutput]:
        # Caller holds self._lock
        spent = {txin.outpoint for wallet_tx in self._txs.values() for txin in wallet_tx.tx.inputs}
        tip = self._tip_height()
        for txid, wallet_tx in self._txs.items():
            coinbase = is_coinbase(wallet_tx.tx)
            for vout, txout in enumerate(wallet_tx.tx.outputs):
                outpoint = OutPoint(txid, vout)
                derivation = self._scripts.get(txout.script_pubkey)
                if derivation is None or outpoint in spent:
                    continue
                immature = coinbase and (
                    not wallet_tx.is_confirmed or tip - wallet_tx.confirmation_height + 1 < COINBASE_MATURITY)
                yield LocalOutput(
                    outpoint=outpoint,
                    txout=txout,
                    keychain=derivation[0],
                    derivation_index=derivation[1],
                    confirmation_height=wallet_tx.confirmation_height,
                    is_immature=immature,
                    is_locked=outpoint in self._locked_outpoints,
                )

    def list_unspent(self) -> list[LocalOutput]:
        with self._lock:
            return list(self._unspent())

    def _spends_own_coins(self, tx: Transaction) -> bool:
        for txin in tx.inputs:
            prev = self._txs.get(txin.outpoint.txid)
            if prev is not None and prev.tx.outputs[txin.outpoint.vout].script_pubkey in self._scripts:
                return True
        return False

    def balance(self) -> Balance:
        immature = trusted_pending = untrusted_pending = confirmed = 0
        with self._lock:
            for utxo in self._unspent():
                value = utxo.txout.value
                if utxo.is_immature:
                    immature += value
                elif utxo.confirmation_height is not None:
                    confirmed += value
                elif self._spends_own_coins(self._txs[utxo.outpoint.txid].tx):
                    trusted_pending += value
                else:
                    untrusted_pending += value
        return Balance(
            immature=immature,
            trusted_pending=trusted_pending,
            untrusted_pending=untrusted_pending,
            confirmed=confirmed,
        )

    def lock_unspent(self, outpoints: list[OutPoint]) -> None:
        with self._lock:
            unspent = {utxo.outpoint for utxo in self._unspent()}
            for outpoint in outpoints:
                if outpoint not in unspent:
                    raise WalletError(f"coin {outpoint} is not an unspent wallet output")
                if outpoint in self._locked_outpoints:
                    raise WalletError(f"coin {outpoint} is already reserved")
            self._locked_outpoints.update(outpoints)

    def unlock_unspent(self, outpoints: list[OutPoint]) -> None:
        with self._lock:
            self._locked_outpoints.difference_update(outpoints)

    # -------------------------------------------------------------------------
    # Signing and broadcast
    # -------------------------------------------------------------------------

    def sign_inputs(self, tx: Transaction, prevouts: list[TxOut]) -> int:
        with self._lock:
            derivations = [
                None if txin.witness else self._scripts.get(prevout.script_pubkey)
                for txin, prevout in zip(tx.inputs, prevouts)
            ]

        signed = 0
        for index, derivation in enumerate(derivations):
            if derivation is None:
                continue
            prv_key = musig2.taproot_tweak_private_key(self._private_key(*derivation))
            sighash = taproot_sighash(tx, index, prevouts)
            tx.inputs[index].witness = [musig2.schnorr_sign(prv_key, sighash)]
            signed += 1
        return signed

    async def broadcast_transaction(self, tx: Transaction) -> str:
        if not tx.is_fully_signed():
            raise WalletError(f"refusing to broadcast unsigned tx {tx.txid()}")
        if self._rpc is not None:
            await self._rpc.send_raw_transaction(tx.hex())
        self.apply_unconfirmed_transactions([tx])
        logger.info(f"Broadcast tx {tx.txid()} ({tx.vsize()} vB)")
        return tx.txid()

    def get_tx_confidence_stream(self, txid: str) -> AsyncIterator[Optional[TxConfidence]]:
        return self._tx_confidence_map.observe(txid)

    def confidence_observer_count(self, txid: Optional[str] = None) -> int:
        return self._tx_confidence_map.observer_count(txid)

    # -------------------------------------------------------------------------
    # bitcoind sync
    # -------------------------------------------------------------------------

    async def connect(self) -> None:
        if self._rpc is None:
            raise WalletError("no bitcoind RPC endpoint configured")

        info = await self._rpc.get_blockchain_info()
        logger.info(f"Connected to Bitcoin Core RPC. Chain: {info['chain']}, "
                    f"latest block {info['bestblockhash']} at height {info['blocks']}")
        logger.info(f"Current wallet tip is at height {self.tip_height()}")

        await self._sync_blocks()
        await self._sync_mempool()
        logger.info(f"Wallet balance after syncing: {self.balance().total}")

        logger.info("Polling for further blocks and mempool txs...")
        while True:
            await asyncio.sleep(self._poll_interval)
            await self._sync_blocks()
            await self._sync_mempool()

    async def _find_reorg_height(self, chain_height: int) -> Optional[int]:
        with self._lock:
            known = sorted(self._block_hashes.items(), reverse=True)
        reorg_height = None
        for height, block_hash in known:
            if block_hash is None:
                break
            if height <= chain_height and await self._rpc.get_block_hash(height) == block_hash:
                break
            reorg_height = height
        return reorg_height

    async def _sync_blocks(self) -> None:
        chain_height = await self._rpc.get_block_count()
        reorg_height = await self._find_reorg_height(chain_height)
        if reorg_height is not None:
            self.disconnect_blocks(reorg_height)

        with self._lock:
            height = max(self._block_hashes) + 1 if self._block_hashes else self._birth_height
        while height <= chain_height:
            block_hash = await self._rpc.get_block_hash(height)
            raw_block = await self._rpc.get_raw_block(block_hash)
            self.apply_block(height, parse_block_transactions(raw_block), block_hash)
            logger.debug(f"Applied block {block_hash} at height {height}")
            height += 1

    async def _sync_mempool(self) -> None:
        mempool = set(await self._rpc.get_raw_mempool())
        new_txids = mempool - self._checked_mempool_txids
        self._checked_mempool_txids = mempool

        transactions = []
        for txid in sorted(new_txids):
            if self.get_wallet_tx(txid) is not None:
                continue
            try:
                raw = await self._rpc.get_raw_transaction(txid)
            except BitcoindRpcError as e:
                # Evicted or mined between the two calls
                logger.debug(f"Skipping mempool tx {txid}: {e.message}")
                continue
            transactions.append(Transaction.deserialize(raw))
        if transactions:
            self.apply_unconfirmed_transactions(transactions)

    async def close(self) -> None:
        if self._rpc is not None:
            await self._rpc.close()
