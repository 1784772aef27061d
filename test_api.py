"""End-to-end tests of the HTTP API, with one app per trade party."""

import json
import secrets
import threading
import time
from typing import Optional

import pytest
from fastapi.testclient import TestClient

from musig_trade.app import create_app
from musig_trade.config import Config
from musig_trade.protocol import WalletError, musig2
from musig_trade.protocol import transactions as txs
from musig_trade.protocol.transactions import OutPoint, Transaction, TxIn, TxOut
from musig_trade.wallet import KeychainWalletService

TRADE_PARAMETERS = {
    "tradeAmount": 100_000,
    "buyersSecurityDeposit": 5_000,
    "sellersSecurityDeposit": 5_000,
    "depositTxFeeRate": 2_500,
    "preparedTxFeeRate": 2_500,
}


def funded_wallet(value: int, wallet: Optional[KeychainWalletService] = None, height: int = 1) -> KeychainWalletService:
    wallet = wallet if wallet is not None else KeychainWalletService()
    address = wallet.reveal_next_address().address
    wallet.apply_block(height, [Transaction(
        inputs=[TxIn(OutPoint(secrets.token_hex(32), 0))],
        outputs=[TxOut(value, txs.address_to_script_pubkey(address, "regtest"))],
    )])
    return wallet


class FlakyBroadcastWallet(KeychainWalletService):
    """Wallet whose first broadcast fails, as if bitcoind were unreachable."""

    def __init__(self):
        super().__init__()
        self.failures_left = 1

    async def broadcast_transaction(self, tx: Transaction) -> str:
        if self.failures_left:
            self.failures_left -= 1
            raise WalletError("bitcoind unreachable")
        return await super().broadcast_transaction(tx)


def mine_when_broadcast(wallet: KeychainWalletService, txid: str, height: int) -> threading.Thread:
    """Confirm ``txid`` in a new block as soon as the wallet has seen it."""
    def run():
        deadline = time.monotonic() + 10
        while time.monotonic() < deadline:
            wallet_tx = wallet.get_wallet_tx(txid)
            if wallet_tx is not None:
                wallet.apply_block(height, [wallet_tx.tx])
                return
            time.sleep(0.01)

    thread = threading.Thread(target=run, daemon=True)
    thread.start()
    return thread


def ndjson(response) -> list[dict]:
    return [json.loads(line) for line in response.text.splitlines() if line]


class Party:
    def __init__(self, role: str, value: int, wallet: Optional[KeychainWalletService] = None):
        self.role = role
        self.wallet = funded_wallet(value, wallet)
        self.client = TestClient(create_app(Config(), wallet_service=self.wallet))

    def post(self, path: str, body: dict):
        response = self.client.post(f"/v1/musig/{path}", json=body)
        assert response.status_code == 200, response.text
        return response


@pytest.fixture
def parties():
    buyer, seller = Party("BUYER", 50_000), Party("SELLER", 200_000)
    with buyer.client, seller.client:
        yield buyer, seller


@pytest.fixture
def receivers():
    escrow_agent = KeychainWalletService()
    return [{"address": escrow_agent.reveal_next_address().address, "amount": 90_000},
            {"address": escrow_agent.reveal_next_address().address, "amount": 10_000}]


def nonce_shares_request(trade_id: str, peer_keys: dict) -> dict:
    return {
        "tradeId": trade_id,
        "buyerOutputPeersPubKeyShare": peer_keys["buyerOutputPubKeyShare"],
        "sellerOutputPeersPubKeyShare": peer_keys["sellerOutputPubKeyShare"],
        **TRADE_PARAMETERS,
    }


def run_until_deposit_signed(buyer: Party, seller: Party, trade_id: str, receivers: list[dict]) -> dict:
    keys = {}
    for party in (buyer, seller):
        keys[party.role] = party.post("init-trade", {"tradeId": trade_id, "myRole": party.role}).json()
        assert keys[party.role]["currentBlockHeight"] == 1

    nonces = {}
    for party, peer in ((buyer, seller), (seller, buyer)):
        nonces[party.role] = party.post("nonce-shares", nonce_shares_request(trade_id, keys[peer.role])).json()

    partial_signatures = {}
    for party, peer in ((buyer, seller), (seller, buyer)):
        partial_signatures[party.role] = party.post("partial-signatures", {
            "tradeId": trade_id,
            "peersNonceShares": nonces[peer.role],
            "receivers": receivers,
        }).json()

    deposit_txs = {}
    for party, peer in ((buyer, seller), (seller, buyer)):
        deposit_txs[party.role] = party.post("sign-deposit-tx", {
            "tradeId": trade_id,
            "peersPartialSignatures": partial_signatures[peer.role],
        }).json()["depositTx"]

    txid = Transaction.from_hex(deposit_txs["BUYER"]).txid()
    assert Transaction.from_hex(deposit_txs["SELLER"]).txid() == txid
    return {"keys": keys, "nonces": nonces, "partial_signatures": partial_signatures,
            "deposit_txs": deposit_txs, "deposit_txid": txid}


def publish_deposit(party: Party, trade_id: str, peers_deposit_tx: str, txid: str) -> list[dict]:
    miner = mine_when_broadcast(party.wallet, txid, height=2)
    response = party.post("publish-deposit-tx", {"tradeId": trade_id, "peersDepositTx": peers_deposit_tx})
    miner.join(timeout=10)
    assert response.headers["content-type"].startswith("application/x-ndjson")
    statuses = ndjson(response)
    assert statuses[-1]["numConfirmations"] == 1
    assert statuses[-1]["currentBlockHeight"] == 2
    assert Transaction.from_hex(statuses[-1]["tx"]).is_fully_signed()
    return statuses


def run_until_deposit_confirmed(buyer: Party, seller: Party, trade_id: str, receivers: list[dict]) -> dict:
    trade = run_until_deposit_signed(buyer, seller, trade_id, receivers)
    for party, peer in ((buyer, seller), (seller, buyer)):
        publish_deposit(party, trade_id, trade["deposit_txs"][peer.role], trade["deposit_txid"])
    return trade


def test_trade_settles_cooperatively(parties, receivers):
    buyer, seller = parties
    trade = run_until_deposit_confirmed(buyer, seller, "trade-coop", receivers)

    # Already confirmed, so the subscription ends after one status
    statuses = ndjson(buyer.post("subscribe-tx-confirmation-status", {"tradeId": "trade-coop"}))
    assert [status["numConfirmations"] for status in statuses] == [1]

    swap = seller.post("sign-swap-tx", {
        "tradeId": "trade-coop",
        "swapTxInputPeersPartialSignature": trade["partial_signatures"]["BUYER"]["swapTxInputPartialSignature"],
    }).json()
    assert Transaction.from_hex(swap["swapTx"]).is_fully_signed()

    buyer_close = buyer.post("close-trade", {
        "tradeId": "trade-coop",
        "myOutputPeersPrvKeyShare": swap["peerOutputPrvKeyShare"],
    }).json()
    assert buyer_close["swapTx"] is None

    seller_close = seller.post("close-trade", {
        "tradeId": "trade-coop",
        "myOutputPeersPrvKeyShare": buyer_close["peerOutputPrvKeyShare"],
    }).json()

    # Each revealed share belongs to the public key share announced at init
    buyer_keys, seller_keys = trade["keys"]["BUYER"], trade["keys"]["SELLER"]
    revealed_by_seller = musig2.point_mul_g(int(swap["peerOutputPrvKeyShare"], 16))
    revealed_by_buyer = musig2.point_mul_g(int(buyer_close["peerOutputPrvKeyShare"], 16))
    assert revealed_by_seller.format().hex() == seller_keys["buyerOutputPubKeyShare"]
    assert revealed_by_buyer.format().hex() == buyer_keys["sellerOutputPubKeyShare"]
    assert seller_close["peerOutputPrvKeyShare"] == swap["peerOutputPrvKeyShare"]


def test_failed_deposit_broadcast_can_be_retried(receivers):
    buyer, seller = Party("BUYER", 50_000), Party("SELLER", 200_000, FlakyBroadcastWallet())
    with buyer.client, seller.client:
        trade = run_until_deposit_signed(buyer, seller, "trade-flaky", receivers)
        publish = {"tradeId": "trade-flaky", "peersDepositTx": trade["deposit_txs"]["BUYER"]}
        swap_request = {
            "tradeId": "trade-flaky",
            "swapTxInputPeersPartialSignature": trade["partial_signatures"]["BUYER"]["swapTxInputPartialSignature"],
        }

        response = seller.client.post("/v1/musig/publish-deposit-tx", json=publish)
        assert response.status_code == 503
        assert response.json()["error"] == "WalletError"

        # Still unpublished, so the swap tx must not be signed yet
        response = seller.client.post("/v1/musig/sign-swap-tx", json=swap_request)
        assert response.status_code == 409

        publish_deposit(seller, "trade-flaky", trade["deposit_txs"]["BUYER"], trade["deposit_txid"])
        swap = seller.post("sign-swap-tx", swap_request).json()
        assert Transaction.from_hex(swap["swapTx"]).is_fully_signed()


def test_abort_releases_reserved_coins(parties):
    buyer, seller = parties
    seller_keys = {trade_id: seller.post("init-trade", {"tradeId": trade_id, "myRole": "SELLER"}).json()
                   for trade_id in ("trade-a", "trade-b")}
    for trade_id in ("trade-a", "trade-b"):
        buyer.post("init-trade", {"tradeId": trade_id, "myRole": "BUYER"})

    # The buyer's only coin goes to the first trade
    buyer.post("nonce-shares", nonce_shares_request("trade-a", seller_keys["trade-a"]))
    [utxo] = buyer.client.get("/v1/wallet/unspent").json()["utxos"]
    assert utxo["locked"] is True
    response = buyer.client.post("/v1/musig/nonce-shares", json=nonce_shares_request("trade-b", seller_keys["trade-b"]))
    assert response.status_code == 503
    assert response.json()["error"] == "InsufficientFunds"

    aborted = buyer.post("abort-trade", {"tradeId": "trade-a"}).json()
    assert aborted == {"releasedCoins": [f"{utxo['txId']}:{utxo['vout']}"]}
    buyer.post("nonce-shares", nonce_shares_request("trade-b", seller_keys["trade-b"]))

    response = buyer.client.post("/v1/musig/abort-trade", json={"tradeId": "trade-a"})
    assert response.status_code == 404


def test_abort_is_refused_after_deposit_is_signed(parties, receivers):
    buyer, seller = parties
    run_until_deposit_signed(buyer, seller, "trade-late", receivers)
    response = buyer.client.post("/v1/musig/abort-trade", json={"tradeId": "trade-late"})
    assert response.status_code == 409
    assert response.json()["error"] == "ProtocolViolation"
    assert buyer.client.get("/v1/wallet/unspent").json()["utxos"][0]["locked"] is True


def test_buyer_closes_from_published_swap_tx(parties, receivers):
    buyer, seller = parties
    trade = run_until_deposit_confirmed(buyer, seller, "trade-swap", receivers)
    swap = seller.post("sign-swap-tx", {
        "tradeId": "trade-swap",
        "swapTxInputPeersPartialSignature": trade["partial_signatures"]["BUYER"]["swapTxInputPartialSignature"],
    }).json()

    buyer_close = buyer.post("close-trade", {"tradeId": "trade-swap", "swapTx": swap["swapTx"]}).json()
    revealed = musig2.point_mul_g(int(buyer_close["peerOutputPrvKeyShare"], 16))
    assert revealed.format().hex() == trade["keys"]["BUYER"]["sellerOutputPubKeyShare"]


def test_seller_force_closes(parties, receivers):
    buyer, seller = parties
    trade = run_until_deposit_confirmed(buyer, seller, "trade-force", receivers)
    seller.post("sign-swap-tx", {
        "tradeId": "trade-force",
        "swapTxInputPeersPartialSignature": trade["partial_signatures"]["BUYER"]["swapTxInputPartialSignature"],
    })

    closed = seller.post("close-trade", {"tradeId": "trade-force"}).json()
    swap_tx = Transaction.from_hex(closed["swapTx"])
    assert swap_tx.is_fully_signed()
    assert swap_tx.inputs[0].outpoint == OutPoint(trade["deposit_txid"], txs.SELLER_PAYOUT_VOUT)
    assert closed["peerOutputPrvKeyShare"]


def test_error_responses(parties):
    buyer, _ = parties
    client = buyer.client
    buyer.post("init-trade", {"tradeId": "trade-err", "myRole": "BUYER"})

    response = client.post("/v1/musig/init-trade", json={"tradeId": "trade-err", "myRole": "BUYER"})
    assert response.status_code == 409
    assert response.json()["error"] == "ProtocolViolation"

    response = client.post("/v1/musig/subscribe-tx-confirmation-status", json={"tradeId": "missing"})
    assert response.status_code == 404
    assert response.json() == {"error": "NotFound", "detail": "trade missing not found"}

    response = client.post("/v1/musig/nonce-shares", json={"tradeId": "trade-err", **TRADE_PARAMETERS})
    assert response.status_code == 400
    assert response.json()["error"] == "MissingField"

    response = client.post("/v1/musig/nonce-shares", json={
        "tradeId": "trade-err",
        "buyerOutputPeersPubKeyShare": "zz",
        "sellerOutputPeersPubKeyShare": "02" + "00" * 32,
        **TRADE_PARAMETERS,
    })
    assert response.status_code == 422
    assert response.json()["error"] == "PeerDataInvalid"

    response = client.post("/v1/musig/sign-swap-tx", json={
        "tradeId": "trade-err", "swapTxInputPeersPartialSignature": "01" * 32})
    assert response.status_code == 409

    response = client.post("/v1/musig/init-trade", json={"tradeId": "t", "myRole": "ARBITER"})
    assert response.status_code == 422


def test_underfunded_wallet_is_reported(receivers):
    poor, rich = Party("BUYER", 1_000), Party("SELLER", 200_000)
    with poor.client, rich.client:
        keys = {p.role: p.post("init-trade", {"tradeId": "trade-poor", "myRole": p.role}).json()
                for p in (poor, rich)}
        request = nonce_shares_request("trade-poor", keys["SELLER"])
        response = poor.client.post("/v1/musig/nonce-shares", json=request)
        assert response.status_code == 503
        assert response.json()["error"] == "InsufficientFunds"

        # Nothing was kept from the failed round, so the same request works once funded
        funded_wallet(200_000, poor.wallet, height=2)
        nonces = poor.post("nonce-shares", request).json()
        assert nonces["swapTxInputNonceShare"]


def test_wallet_endpoints(parties):
    buyer, _ = parties
    client = buyer.client

    balance = client.get("/v1/wallet/balance").json()
    assert balance["confirmed"] == 50_000
    assert balance["total"] == 50_000

    address = client.post("/v1/wallet/new-address").json()
    assert address["address"].startswith("bcrt1p")
    assert address["derivationPath"].startswith("m/86'/1'/0'/0/")

    [utxo] = client.get("/v1/wallet/unspent").json()["utxos"]
    assert utxo["value"] == 50_000
    assert utxo["confirmationHeight"] == 1
    assert utxo["locked"] is False

    response = client.get("/v1/wallet/confidence/not-a-txid")
    assert response.status_code == 422


def test_health(parties):
    buyer, _ = parties
    assert buyer.client.get("/health").json() == {"status": "healthy", "network": "regtest", "tipHeight": 1}
