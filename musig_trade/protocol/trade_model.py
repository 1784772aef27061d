"""
Per-trade protocol state machine.

A TradeModel holds everything one party knows about one trade: its own key
shares and nonces, what the peer sent, the transaction templates and the
signatures over them. Operations must be called in protocol order; each one
fails closed when its inputs are missing, and every field can be set only
once.

    CREATED -> KEYS_EXCHANGED -> NONCES_EXCHANGED -> PARTIALLY_SIGNED
            -> DEPOSIT_SIGNED -> SETTLING -> SETTLED

Until the deposit tx is signed a trade can instead be ABORTED, which releases
the wallet coins reserved for it.
"""

import logging
import time
from contextlib import contextmanager
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Iterable, Iterator, Optional

from . import musig2
from . import transactions as txs
from .errors import InsufficientFunds, MissingField, PeerDataInvalid, ProtocolViolation
from .musig2 import KeyAggContext, KeyShare, NonceShare, PreSignature, PubNonce, SigningSession
from .transactions import FundingInput, HalfDeposit, OutPoint, Transaction, TxOut

if TYPE_CHECKING:
    from musig_trade.wallet.base import WalletService

logger = logging.getLogger(__name__)


class TradeRole(str, Enum):
    """Side of the trade, fixed for its lifetime."""
    BUYER = "BUYER"
    SELLER = "SELLER"


class TradeState(str, Enum):
    CREATED = "CREATED"
    KEYS_EXCHANGED = "KEYS_EXCHANGED"
    NONCES_EXCHANGED = "NONCES_EXCHANGED"
    PARTIALLY_SIGNED = "PARTIALLY_SIGNED"
    DEPOSIT_SIGNED = "DEPOSIT_SIGNED"
    SETTLING = "SETTLING"
    SETTLED = "SETTLED"
    ABORTED = "ABORTED"


ABORTABLE_STATES = frozenset({
    TradeState.CREATED,
    TradeState.KEYS_EXCHANGED,
    TradeState.NONCES_EXCHANGED,
    TradeState.PARTIALLY_SIGNED,
})


BUYER_OUTPUT = 0
SELLER_OUTPUT = 1

WARNING_TX_FEE_BUMP = 0
REDIRECT_TX_FEE_BUMP = 1

SWAP_TX_INPUT = "swap_tx_input"
BUYERS_WARNING_TX_BUYER_INPUT = "buyers_warning_tx_buyer_input"
BUYERS_WARNING_TX_SELLER_INPUT = "buyers_warning_tx_seller_input"
SELLERS_WARNING_TX_BUYER_INPUT = "sellers_warning_tx_buyer_input"
SELLERS_WARNING_TX_SELLER_INPUT = "sellers_warning_tx_seller_input"
BUYERS_REDIRECT_TX_INPUT = "buyers_redirect_tx_input"
SELLERS_REDIRECT_TX_INPUT = "sellers_redirect_tx_input"

# Signed input -> which trade output's aggregated key signs it
SIGNED_INPUTS = {
    SWAP_TX_INPUT: SELLER_OUTPUT,
    BUYERS_WARNING_TX_BUYER_INPUT: BUYER_OUTPUT,
    BUYERS_WARNING_TX_SELLER_INPUT: SELLER_OUTPUT,
    SELLERS_WARNING_TX_BUYER_INPUT: BUYER_OUTPUT,
    SELLERS_WARNING_TX_SELLER_INPUT: SELLER_OUTPUT,
    BUYERS_REDIRECT_TX_INPUT: BUYER_OUTPUT,
    SELLERS_REDIRECT_TX_INPUT: SELLER_OUTPUT,
}


def _set_once(obj, attr: str, value, what: str) -> None:
    if getattr(obj, attr) is not None:
        raise ProtocolViolation(f"{what} already set")
    setattr(obj, attr, value)


def _require(value, what: str):
    if value is None:
        raise ProtocolViolation(f"{what} not yet available")
    return value


class InputSigCtx:
    """Signing state for one collaboratively signed transaction input."""

    def __init__(self, name: str):
        self.name = name
        self.my_nonce_share: Optional[NonceShare] = None
        self.peer_nonce_share: Optional[NonceShare] = None
        self.session: Optional[SigningSession] = None
        self.my_partial_sig: Optional[int] = None
        self.peer_partial_sig: Optional[int] = None

    def verify_peer_partial_sig(self, psig: int, peer_key_share: KeyShare) -> None:
        session = _require(self.session, f"{self.name} signing session")
        if self.peer_partial_sig is not None:
            raise ProtocolViolation(f"peer's partial signature on {self.name} already set")
        if not musig2.verify_partial_signature(psig, self.peer_nonce_share.pub_nonce, peer_key_share.pub_key, session):
            raise PeerDataInvalid(f"peer's partial signature on {self.name} does not verify")

    def set_peer_partial_sig(self, psig: int, peer_key_share: KeyShare) -> None:
        self.verify_peer_partial_sig(psig, peer_key_share)
        self.peer_partial_sig = psig

    def aggregate(self) -> bytes:
        session = _require(self.session, f"{self.name} signing session")
        return musig2.aggregate_partial_signatures(
            _require(self.my_partial_sig, f"my partial signature on {self.name}"),
            _require(self.peer_partial_sig, f"peer's partial signature on {self.name}"),
            session,
        )


@dataclass
class PartialSignatures:
    """A party's partial signatures on its peer's prepared txs."""
    warning_tx_buyer_input: int
    warning_tx_seller_input: int
    redirect_tx_input: int
    swap_tx_input: Optional[int] = None


class TradeModel:
    """
    Protocol state for one trade, from this party's point of view.

    Key shares and signing contexts are indexed by trade output: index 0 is
    the buyer's payout output, index 1 the seller's.
    """

    def __init__(self, trade_id: str, my_role: TradeRole, network: str = "regtest"):
        self.trade_id = trade_id
        self.my_role = my_role
        self.network = network
        self.state = TradeState.CREATED
        self.settled_at: Optional[float] = None

        self.my_key_shares: Optional[list[KeyShare]] = None
        self.peer_key_shares: Optional[list[KeyShare]] = None
        self.buyer_output_key_ctx: Optional[KeyAggContext] = None
        self.seller_output_key_ctx: Optional[KeyAggContext] = None

        self.trade_amount: Optional[int] = None
        self.buyers_security_deposit: Optional[int] = None
        self.sellers_security_deposit: Optional[int] = None
        self.deposit_tx_fee_rate: Optional[int] = None
        self.prepared_tx_fee_rate: Optional[int] = None

        self.my_fee_bump_addresses: Optional[list[str]] = None
        self.peer_fee_bump_addresses: Optional[list[str]] = None
        self.redirection_receivers: Optional[list[TxOut]] = None
        self.my_half_deposit: Optional[HalfDeposit] = None
        self.peer_half_deposit: Optional[HalfDeposit] = None

        self.deposit_tx: Optional[Transaction] = None
        self.deposit_tx_prevouts: Optional[list[TxOut]] = None
        self.buyers_warning_tx: Optional[Transaction] = None
        self.sellers_warning_tx: Optional[Transaction] = None
        self.buyers_redirect_tx: Optional[Transaction] = None
        self.sellers_redirect_tx: Optional[Transaction] = None
        self.swap_tx: Optional[Transaction] = None

        self.sig_ctxs = {name: InputSigCtx(name) for name in SIGNED_INPUTS}
        self.deposit_tx_published: Optional[bool] = None
        self.swap_tx_pre_signature: Optional[PreSignature] = None
        self.swap_tx_input_signature: Optional[bytes] = None

        self.peer_private_key_share_for_my_output: Optional[int] = None
        self.my_output_private_key: Optional[int] = None
        self.force_closed: Optional[bool] = None

    def __repr__(self) -> str:
        return f"TradeModel(trade_id={self.trade_id!r}, my_role={self.my_role.value}, state={self.state.value})"

    # -------------------------------------------------------------------------
    # Roles and indexing
    # -------------------------------------------------------------------------

    @property
    def is_buyer(self) -> bool:
        return self.my_role is TradeRole.BUYER

    @property
    def my_output(self) -> int:
        return BUYER_OUTPUT if self.is_buyer else SELLER_OUTPUT

    @property
    def peer_output(self) -> int:
        return SELLER_OUTPUT if self.is_buyer else BUYER_OUTPUT

    def key_ctx(self, output: int) -> KeyAggContext:
        ctx = self.buyer_output_key_ctx if output == BUYER_OUTPUT else self.seller_output_key_ctx
        return _require(ctx, "aggregated key")

    def _my_prepared_tx_inputs(self) -> tuple[str, str, str]:
        if self.is_buyer:
            return BUYERS_WARNING_TX_BUYER_INPUT, BUYERS_WARNING_TX_SELLER_INPUT, BUYERS_REDIRECT_TX_INPUT
        return SELLERS_WARNING_TX_BUYER_INPUT, SELLERS_WARNING_TX_SELLER_INPUT, SELLERS_REDIRECT_TX_INPUT

    def _peer_prepared_tx_inputs(self) -> tuple[str, str, str]:
        if self.is_buyer:
            return SELLERS_WARNING_TX_BUYER_INPUT, SELLERS_WARNING_TX_SELLER_INPUT, SELLERS_REDIRECT_TX_INPUT
        return BUYERS_WARNING_TX_BUYER_INPUT, BUYERS_WARNING_TX_SELLER_INPUT, BUYERS_REDIRECT_TX_INPUT

    def _require_role(self, role: TradeRole, operation: str) -> None:
        if self.my_role is not role:
            raise ProtocolViolation(f"{operation} is only allowed for the {role.value.lower()}")

    def _advance(self, state: TradeState) -> None:
        logger.debug(f"Trade {self.trade_id}: {self.state.value} -> {state.value}")
        self.state = state
        if state is TradeState.SETTLED:
            self.settled_at = time.monotonic()

    @contextmanager
    def atomic(self) -> Iterator["TradeModel"]:
        """
        Run several operations as one: if any of them raises, every field they
        assigned is put back, so the peer can resend corrected data.

            with trade_model.atomic():
                trade_model.set_peer_fee_bump_addresses(addresses)
                trade_model.set_redirection_receivers(receivers)

        Wallet side effects are not undone, so operations that reserve coins
        must come last in the block.
        """
        saved = dict(vars(self))
        saved_ctxs = {name: dict(vars(ctx)) for name, ctx in self.sig_ctxs.items()}
        try:
            yield self
        except Exception:
            vars(self).clear()
            vars(self).update(saved)
            for name, ctx in self.sig_ctxs.items():
                vars(ctx).clear()
                vars(ctx).update(saved_ctxs[name])
            logger.debug(f"Trade {self.trade_id}: rolled back to {self.state.value}")
            raise

    # -------------------------------------------------------------------------
    # Key shares
    # -------------------------------------------------------------------------

    def init_my_key_shares(self) -> None:
        _set_once(self, "my_key_shares", [musig2.generate_key_share(), musig2.generate_key_share()],
                  "my key shares")

    def get_my_key_shares(self) -> Optional[list[KeyShare]]:
        return self.my_key_shares

    def set_peer_key_shares(self, buyer_output_pub_key, seller_output_pub_key) -> None:
        my_key_shares = _require(self.my_key_shares, "my key shares")
        peer_key_shares = [KeyShare(buyer_output_pub_key), KeyShare(seller_output_pub_key)]
        for mine, theirs in zip(my_key_shares, peer_key_shares):
            if mine.pub_key_bytes == theirs.pub_key_bytes:
                raise PeerDataInvalid("peer's public key share equals my own")
        _set_once(self, "peer_key_shares", peer_key_shares, "peer's key shares")

    def aggregate_key_shares(self) -> None:
        my_key_shares = _require(self.my_key_shares, "my key shares")
        peer_key_shares = _require(self.peer_key_shares, "peer's key shares")
        self.buyer_output_key_ctx = musig2.aggregate_public_keys(
            my_key_shares[BUYER_OUTPUT].pub_key, peer_key_shares[BUYER_OUTPUT].pub_key)
        self.seller_output_key_ctx = musig2.aggregate_public_keys(
            my_key_shares[SELLER_OUTPUT].pub_key, peer_key_shares[SELLER_OUTPUT].pub_key)
        if self.state is TradeState.CREATED:
            self._advance(TradeState.KEYS_EXCHANGED)

    # -------------------------------------------------------------------------
    # Trade parameters, addresses and funding
    # -------------------------------------------------------------------------

    def set_trade_parameters(
        self,
        trade_amount: int,
        buyers_security_deposit: int,
        sellers_security_deposit: int,
        deposit_tx_fee_rate: int,
        prepared_tx_fee_rate: int,
    ) -> None:
        """Set the economic parameters, all together and exactly once."""
        self.key_ctx(BUYER_OUTPUT)
        if self.trade_amount is not None:
            raise ProtocolViolation("trade parameters already set")
        for name, value in (("trade amount", trade_amount),
                            ("buyer's security deposit", buyers_security_deposit),
                            ("seller's security deposit", sellers_security_deposit),
                            ("deposit tx fee rate", deposit_tx_fee_rate),
                            ("prepared tx fee rate", prepared_tx_fee_rate)):
            if value is None:
                raise MissingField(f"missing {name}")
            if value <= 0:
                raise PeerDataInvalid(f"{name} must be positive")
        self.trade_amount = trade_amount
        self.buyers_security_deposit = buyers_security_deposit
        self.sellers_security_deposit = sellers_security_deposit
        self.deposit_tx_fee_rate = deposit_tx_fee_rate
        self.prepared_tx_fee_rate = prepared_tx_fee_rate

    @property
    def buyer_payout_amount(self) -> int:
        return self.trade_amount + self.buyers_security_deposit

    @property
    def seller_payout_amount(self) -> int:
        return self.sellers_security_deposit

    def deposit_contribution(self, role: TradeRole) -> int:
        _require(self.trade_amount, "trade parameters")
        if role is TradeRole.BUYER:
            return self.buyers_security_deposit
        return self.trade_amount + self.sellers_security_deposit

    def init_my_fee_bump_addresses(self, wallet: "WalletService") -> None:
        self.key_ctx(BUYER_OUTPUT)
        if self.my_fee_bump_addresses is not None:
            raise ProtocolViolation("my fee bump addresses already set")
        self.my_fee_bump_addresses = [wallet.reveal_next_address().address, wallet.reveal_next_address().address]

    def get_my_fee_bump_addresses(self) -> Optional[list[str]]:
        return self.my_fee_bump_addresses

    def set_peer_fee_bump_addresses(self, addresses: list[str]) -> None:
        if len(addresses) != 2:
            raise MissingField("expected a warning tx and a redirect tx fee bump address")
        for address in addresses:
            txs.address_to_script_pubkey(address, self.network)
        _set_once(self, "peer_fee_bump_addresses", list(addresses), "peer's fee bump addresses")

    def set_redirection_receivers(self, receivers: Iterable[tuple[str, int]]) -> None:
        outputs = []
        for address, amount in receivers:
            if amount is None or amount < txs.DUST_LIMIT:
                raise PeerDataInvalid(f"redirection amount for {address} is below the dust limit")
            outputs.append(TxOut(amount, txs.address_to_script_pubkey(address, self.network)))
        if not outputs:
            raise MissingField("no redirection receivers given")
        _set_once(self, "redirection_receivers", outputs, "redirection receivers")

    def init_my_half_deposit(self, wallet: "WalletService") -> None:
        """Select wallet coins funding my side of the deposit tx and reserve them."""
        contribution = self.deposit_contribution(self.my_role)
        if self.my_half_deposit is not None:
            raise ProtocolViolation("my half-deposit already set")
        candidates = [FundingInput(utxo.outpoint, utxo.txout) for utxo in wallet.list_unspent() if utxo.is_spendable]
        change_script = txs.address_to_script_pubkey(wallet.reveal_next_address().address, self.network)
        half = txs.fund_half_deposit(candidates, contribution, self.deposit_tx_fee_rate, change_script)
        if half is None:
            raise InsufficientFunds(f"wallet cannot fund a deposit contribution of {contribution} sats")
        wallet.lock_unspent([i.outpoint for i in half.inputs])
        self.my_half_deposit = half
        logger.info(f"Trade {self.trade_id}: funding {contribution} sats from {len(half.inputs)} inputs")

    def get_my_half_deposit(self) -> Optional[HalfDeposit]:
        return self.my_half_deposit

    def set_peer_half_deposit(self, half: HalfDeposit) -> None:
        peer_role = TradeRole.SELLER if self.is_buyer else TradeRole.BUYER
        txs.check_half_deposit(half, self.deposit_contribution(peer_role), self.deposit_tx_fee_rate)
        _set_once(self, "peer_half_deposit", half, "peer's half-deposit")

    # -------------------------------------------------------------------------
    # Nonces
    # -------------------------------------------------------------------------

    def init_my_nonce_shares(self) -> None:
        _require(self.trade_amount, "trade parameters")
        my_key_shares = _require(self.my_key_shares, "my key shares")
        if any(ctx.my_nonce_share is not None for ctx in self.sig_ctxs.values()):
            raise ProtocolViolation("my nonce shares already set")
        for name, output in SIGNED_INPUTS.items():
            self.sig_ctxs[name].my_nonce_share = musig2.generate_nonce_share(
                my_key_shares[output], agg_pub_key=self.key_ctx(output).output_key)
        self._advance(TradeState.NONCES_EXCHANGED)

    def get_my_nonce_shares(self) -> Optional[dict[str, PubNonce]]:
        if self.sig_ctxs[SWAP_TX_INPUT].my_nonce_share is None:
            return None
        return {name: ctx.my_nonce_share.pub_nonce for name, ctx in self.sig_ctxs.items()}

    def set_peer_nonce_shares(self, pub_nonces: dict[str, PubNonce]) -> None:
        if self.get_my_nonce_shares() is None:
            raise ProtocolViolation("my nonce shares not yet available")
        missing = [name for name in SIGNED_INPUTS if pub_nonces.get(name) is None]
        if missing:
            raise MissingField(f"missing peer nonce shares: {', '.join(missing)}")
        if any(ctx.peer_nonce_share is not None for ctx in self.sig_ctxs.values()):
            raise ProtocolViolation("peer's nonce shares already set")
        for name, ctx in self.sig_ctxs.items():
            if pub_nonces[name].serialize() == ctx.my_nonce_share.pub_nonce.serialize():
                raise PeerDataInvalid(f"peer's nonce share for {name} equals my own")
        for name, ctx in self.sig_ctxs.items():
            ctx.peer_nonce_share = NonceShare(pub_nonces[name])

    def aggregate_nonce_shares(self) -> None:
        """Build the transaction templates and open a signing session per input."""
        for ctx in self.sig_ctxs.values():
            if ctx.my_nonce_share is None or ctx.peer_nonce_share is None:
                raise ProtocolViolation(f"nonce shares for {ctx.name} not yet available")
        if self.sig_ctxs[SWAP_TX_INPUT].session is not None:
            return

        self._build_txs()
        digests = {
            BUYERS_WARNING_TX_BUYER_INPUT: txs.taproot_sighash(self.buyers_warning_tx, 0, txs.warning_tx_prevouts(self.deposit_tx)),
            BUYERS_WARNING_TX_SELLER_INPUT: txs.taproot_sighash(self.buyers_warning_tx, 1, txs.warning_tx_prevouts(self.deposit_tx)),
            SELLERS_WARNING_TX_BUYER_INPUT: txs.taproot_sighash(self.sellers_warning_tx, 0, txs.warning_tx_prevouts(self.deposit_tx)),
            SELLERS_WARNING_TX_SELLER_INPUT: txs.taproot_sighash(self.sellers_warning_tx, 1, txs.warning_tx_prevouts(self.deposit_tx)),
            BUYERS_REDIRECT_TX_INPUT: txs.taproot_sighash(self.buyers_redirect_tx, 0, txs.redirect_tx_prevouts(self.buyers_warning_tx)),
            SELLERS_REDIRECT_TX_INPUT: txs.taproot_sighash(self.sellers_redirect_tx, 0, txs.redirect_tx_prevouts(self.sellers_warning_tx)),
            SWAP_TX_INPUT: txs.taproot_sighash(self.swap_tx, 0, txs.swap_tx_prevouts(self.deposit_tx)),
        }
        # The swap tx signature reveals the seller's key share for the buyer output
        swap_adaptor_point = self._seller_key_share(BUYER_OUTPUT).pub_key

        for name, ctx in self.sig_ctxs.items():
            agg_nonce = musig2.aggregate_nonces(ctx.my_nonce_share.pub_nonce, ctx.peer_nonce_share.pub_nonce)
            ctx.session = SigningSession(
                key_agg_ctx=self.key_ctx(SIGNED_INPUTS[name]),
                agg_nonce=agg_nonce,
                message=digests[name],
                adaptor_point=swap_adaptor_point if name == SWAP_TX_INPUT else None,
            )

    def _seller_key_share(self, output: int) -> KeyShare:
        shares = self.peer_key_shares if self.is_buyer else self.my_key_shares
        return shares[output]

    def _build_txs(self) -> None:
        my_fee_bump = _require(self.my_fee_bump_addresses, "my fee bump addresses")
        peer_fee_bump = self.peer_fee_bump_addresses
        if peer_fee_bump is None:
            raise MissingField("peer's fee bump addresses")
        if self.redirection_receivers is None:
            raise MissingField("redirection receivers")
        if self.peer_half_deposit is None:
            raise MissingField("peer's half-deposit")
        my_half = _require(self.my_half_deposit, "my half-deposit")

        buyer_half, seller_half = (my_half, self.peer_half_deposit) if self.is_buyer else (self.peer_half_deposit, my_half)
        buyer_fee_bump, seller_fee_bump = (my_fee_bump, peer_fee_bump) if self.is_buyer else (peer_fee_bump, my_fee_bump)
        buyer_ctx, seller_ctx = self.key_ctx(BUYER_OUTPUT), self.key_ctx(SELLER_OUTPUT)

        def fee_bump_script(addresses: list[str], index: int) -> bytes:
            return txs.address_to_script_pubkey(addresses[index], self.network)

        self.deposit_tx, self.deposit_tx_prevouts = txs.build_deposit_tx(
            buyer_half, seller_half,
            buyer_ctx.output_key, seller_ctx.output_key,
            self.buyer_payout_amount, self.seller_payout_amount,
        )
        self.buyers_warning_tx = txs.build_warning_tx(
            self.deposit_tx, buyer_ctx.output_key,
            fee_bump_script(buyer_fee_bump, WARNING_TX_FEE_BUMP), self.prepared_tx_fee_rate)
        self.sellers_warning_tx = txs.build_warning_tx(
            self.deposit_tx, seller_ctx.output_key,
            fee_bump_script(seller_fee_bump, WARNING_TX_FEE_BUMP), self.prepared_tx_fee_rate)
        self.buyers_redirect_tx = txs.build_redirect_tx(
            self.buyers_warning_tx, self.redirection_receivers,
            fee_bump_script(buyer_fee_bump, REDIRECT_TX_FEE_BUMP), self.prepared_tx_fee_rate)
        self.sellers_redirect_tx = txs.build_redirect_tx(
            self.sellers_warning_tx, self.redirection_receivers,
            fee_bump_script(seller_fee_bump, REDIRECT_TX_FEE_BUMP), self.prepared_tx_fee_rate)
        self.swap_tx = txs.build_swap_tx(
            self.deposit_tx,
            musig2.taproot_output_key(self._seller_key_share(SELLER_OUTPUT).pub_key),
            self.prepared_tx_fee_rate)
        logger.info(f"Trade {self.trade_id}: built deposit tx {self.deposit_tx.txid()}")

    # -------------------------------------------------------------------------
    # Partial signatures
    # -------------------------------------------------------------------------

    def sign_partial(self) -> None:
        """Partially sign every prepared tx input: the peer's txs, my own txs and the swap tx."""
        my_key_shares = _require(self.my_key_shares, "my key shares")
        if any(ctx.session is None for ctx in self.sig_ctxs.values()):
            raise ProtocolViolation("signing sessions not yet available")
        if any(ctx.my_partial_sig is not None for ctx in self.sig_ctxs.values()):
            raise ProtocolViolation("my partial signatures already set")
        for name, ctx in self.sig_ctxs.items():
            ctx.my_partial_sig = musig2.partial_sign(
                my_key_shares[SIGNED_INPUTS[name]], ctx.my_nonce_share.sec_nonce, ctx.session)
        self._advance(TradeState.PARTIALLY_SIGNED)

    def get_my_partial_signatures_on_peer_txs(self) -> Optional[PartialSignatures]:
        warning_buyer, warning_seller, redirect = (self.sig_ctxs[n] for n in self._peer_prepared_tx_inputs())
        if redirect.my_partial_sig is None:
            return None
        return PartialSignatures(
            warning_tx_buyer_input=warning_buyer.my_partial_sig,
            warning_tx_seller_input=warning_seller.my_partial_sig,
            redirect_tx_input=redirect.my_partial_sig,
            swap_tx_input=self.sig_ctxs[SWAP_TX_INPUT].my_partial_sig,
        )

    def set_peer_partial_signatures_on_my_txs(self, sigs: PartialSignatures) -> None:
        """
        Accept the peer's partial signatures on my warning and redirect txs.

        The buyer also takes the seller's swap tx partial signature here. The
        seller only accepts the buyer's swap tx partial signature later, in
        ``set_swap_tx_input_peers_partial_signature``.

        Either every signature is stored or none is.
        """
        if self.state is not TradeState.PARTIALLY_SIGNED:
            raise ProtocolViolation(f"cannot accept peer's partial signatures in state {self.state.value}")
        peer_key_shares = self.peer_key_shares
        warning_buyer, warning_seller, redirect = self._my_prepared_tx_inputs()
        if self.is_buyer and sigs.swap_tx_input is None:
            raise MissingField("missing seller's swap tx input partial signature")

        accepted = [
            (warning_buyer, sigs.warning_tx_buyer_input, peer_key_shares[BUYER_OUTPUT]),
            (warning_seller, sigs.warning_tx_seller_input, peer_key_shares[SELLER_OUTPUT]),
            (redirect, sigs.redirect_tx_input, peer_key_shares[self.my_output]),
        ]
        if self.is_buyer:
            accepted.append((SWAP_TX_INPUT, sigs.swap_tx_input, peer_key_shares[SELLER_OUTPUT]))
        for name, psig, peer_key_share in accepted:
            self.sig_ctxs[name].verify_peer_partial_sig(psig, peer_key_share)
        for name, psig, _ in accepted:
            self.sig_ctxs[name].peer_partial_sig = psig

    def aggregate_partial_signatures(self) -> None:
        """Finalize my warning and redirect txs (and, for the buyer, the swap tx pre-signature)."""
        warning_buyer, warning_seller, redirect = (self.sig_ctxs[n] for n in self._my_prepared_tx_inputs())
        my_warning_tx = self.buyers_warning_tx if self.is_buyer else self.sellers_warning_tx
        my_redirect_tx = self.buyers_redirect_tx if self.is_buyer else self.sellers_redirect_tx
        if my_redirect_tx is not None and my_redirect_tx.is_fully_signed():
            return

        signatures = [warning_buyer.aggregate(), warning_seller.aggregate(), redirect.aggregate()]
        my_warning_tx.inputs[0].witness = [signatures[0]]
        my_warning_tx.inputs[1].witness = [signatures[1]]
        my_redirect_tx.inputs[0].witness = [signatures[2]]

        if self.is_buyer:
            swap = self.sig_ctxs[SWAP_TX_INPUT]
            self.swap_tx_pre_signature = musig2.aggregate_adaptor_partial_signatures(
                swap.my_partial_sig, swap.peer_partial_sig, swap.session)
        logger.info(f"Trade {self.trade_id}: warning tx {my_warning_tx.txid()} and redirect tx "
                    f"{my_redirect_tx.txid()} fully signed")

    def get_my_warning_tx(self) -> Optional[Transaction]:
        return self.buyers_warning_tx if self.is_buyer else self.sellers_warning_tx

    def get_my_redirect_tx(self) -> Optional[Transaction]:
        return self.buyers_redirect_tx if self.is_buyer else self.sellers_redirect_tx

    # -------------------------------------------------------------------------
    # Deposit tx
    # -------------------------------------------------------------------------

    def sign_deposit_tx(self, wallet: "WalletService") -> Transaction:
        """
        Sign my deposit tx inputs with the wallet.

        Only allowed once my warning and redirect txs are fully signed, so the
        deposit can never be funded without a way out.
        """
        my_redirect_tx = self.get_my_redirect_tx()
        if my_redirect_tx is None or not my_redirect_tx.is_fully_signed():
            raise ProtocolViolation("my warning and redirect txs must be fully signed before the deposit tx")
        if self.state is not TradeState.PARTIALLY_SIGNED:
            raise ProtocolViolation("deposit tx already signed")
        if self.is_buyer and self.swap_tx_pre_signature is None:
            raise ProtocolViolation("swap tx pre-signature not yet available")

        signed = wallet.sign_inputs(self.deposit_tx, self.deposit_tx_prevouts)
        if signed != len(self.my_half_deposit.inputs):
            raise InsufficientFunds(f"wallet signed {signed} of {len(self.my_half_deposit.inputs)} deposit inputs")
        self._advance(TradeState.DEPOSIT_SIGNED)
        return self.deposit_tx

    def set_peer_deposit_tx_signatures(self, peer_deposit_tx: Transaction) -> None:
        """Merge the peer's deposit input witnesses after checking each signature."""
        if self.state is not TradeState.DEPOSIT_SIGNED:
            raise ProtocolViolation(f"cannot merge deposit signatures in state {self.state.value}")
        if peer_deposit_tx.txid() != self.deposit_tx.txid():
            raise PeerDataInvalid("peer's deposit tx does not match ours")

        for index, (mine, theirs) in enumerate(zip(self.deposit_tx.inputs, peer_deposit_tx.inputs)):
            if mine.witness or not theirs.witness:
                continue
            prevout = self.deposit_tx_prevouts[index]
            output_key = txs.taproot_output_key_of(prevout.script_pubkey)
            sighash = txs.taproot_sighash(self.deposit_tx, index, self.deposit_tx_prevouts)
            if output_key is None or len(theirs.witness) != 1 or \
                    not musig2.verify_signature(output_key, sighash, theirs.witness[0]):
                raise PeerDataInvalid(f"peer's signature on deposit input {index} does not verify")
            mine.witness = list(theirs.witness)

    def get_deposit_tx_for_publication(self) -> Transaction:
        """The fully signed deposit tx, ready to broadcast. Changes no state."""
        if self.state is not TradeState.DEPOSIT_SIGNED:
            raise ProtocolViolation(f"cannot publish deposit tx in state {self.state.value}")
        if not self.deposit_tx.is_fully_signed():
            raise MissingField("deposit tx is missing the peer's input signatures")
        return self.deposit_tx

    def mark_deposit_tx_published(self) -> Transaction:
        """
        Record that the deposit tx reached the network.

        Call only after a successful broadcast. Repeatable until the swap tx is
        signed, so the deposit tx can be rebroadcast.
        """
        deposit_tx = self.get_deposit_tx_for_publication()
        if not self.deposit_tx_published:
            self.deposit_tx_published = True
            logger.info(f"Trade {self.trade_id}: deposit tx {deposit_tx.txid()} published")
        return deposit_tx

    # -------------------------------------------------------------------------
    # Swap tx (seller)
    # -------------------------------------------------------------------------

    def set_swap_tx_input_peers_partial_signature(self, psig: int) -> None:
        self._require_role(TradeRole.SELLER, "signing the swap tx")
        if not self.deposit_tx_published:
            raise ProtocolViolation("deposit tx not yet published")
        self.sig_ctxs[SWAP_TX_INPUT].set_peer_partial_sig(psig, self.peer_key_shares[SELLER_OUTPUT])

    def aggregate_swap_tx_partial_signatures(self) -> None:
        self._require_role(TradeRole.SELLER, "signing the swap tx")
        swap = self.sig_ctxs[SWAP_TX_INPUT]
        if swap.peer_partial_sig is None:
            raise MissingField("missing buyer's swap tx input partial signature")
        if self.swap_tx_pre_signature is None:
            self.swap_tx_pre_signature = musig2.aggregate_adaptor_partial_signatures(
                swap.my_partial_sig, swap.peer_partial_sig, swap.session)

    def compute_swap_tx_input_signature(self) -> bytes:
        """Complete the swap tx signature with my key share for the buyer output."""
        self._require_role(TradeRole.SELLER, "signing the swap tx")
        pre_signature = _require(self.swap_tx_pre_signature, "swap tx pre-signature")
        signature = musig2.adapt_signature(pre_signature, self.my_key_shares[BUYER_OUTPUT].prv_key)
        _set_once(self, "swap_tx_input_signature", signature, "swap tx signature")
        self.swap_tx.inputs[0].witness = [signature]
        self._advance(TradeState.SETTLING)
        return signature

    def get_signed_swap_tx(self) -> Optional[Transaction]:
        if self.swap_tx is None or not self.swap_tx.is_fully_signed():
            return None
        return self.swap_tx

    # -------------------------------------------------------------------------
    # Settlement
    # -------------------------------------------------------------------------

    def get_my_private_key_share_for_peer_output(self) -> Optional[int]:
        """
        Reveal my private key share for the peer's output.

        Only possible once the swap tx is fully signed (seller) or once I hold
        the peer's private key share for my own output (either role).
        """
        if self.swap_tx_input_signature is None and self.peer_private_key_share_for_my_output is None:
            return None
        return self.my_key_shares[self.peer_output].prv_key

    def set_peer_private_key_share_for_my_output(self, prv_key: int) -> None:
        peer_share = _require(self.peer_key_shares, "peer's key shares")[self.my_output]
        if not peer_share.matches(prv_key):
            raise PeerDataInvalid("peer's private key share does not match its public key share")
        _set_once(self, "peer_private_key_share_for_my_output", prv_key, "peer's private key share for my output")
        peer_share.prv_key = prv_key

    def recover_seller_private_key_share_for_buyer_output(self, swap_tx_input_signature: bytes) -> None:
        """Recover the seller's key share for the buyer output from the published swap tx."""
        self._require_role(TradeRole.BUYER, "recovering the seller's key share")
        pre_signature = _require(self.swap_tx_pre_signature, "swap tx pre-signature")
        prv_key = musig2.recover_private_key_share(swap_tx_input_signature, pre_signature)
        self.set_peer_private_key_share_for_my_output(prv_key)
        logger.info(f"Trade {self.trade_id}: recovered seller's key share from the published swap tx")

    def aggregate_private_keys_for_my_output(self) -> int:
        if self.peer_private_key_share_for_my_output is None:
            raise MissingField("missing peer's private key share for my output")
        if self.my_output_private_key is None:
            self.my_output_private_key = musig2.aggregate_private_keys(
                self.key_ctx(self.my_output),
                [self.my_key_shares[self.my_output], self.peer_key_shares[self.my_output]],
            )
            self._advance(TradeState.SETTLED)
        return self.my_output_private_key

    def force_close(self) -> Transaction:
        """Seller's unilateral close: hand out the fully signed swap tx for broadcast."""
        self._require_role(TradeRole.SELLER, "force-closing via the swap tx")
        swap_tx = self.get_signed_swap_tx()
        if swap_tx is None:
            raise ProtocolViolation("swap tx not yet signed")
        # Repeatable, so a failed broadcast can be retried
        if not self.force_closed:
            self.force_closed = True
            self._advance(TradeState.SETTLED)
        return swap_tx

    # -------------------------------------------------------------------------
    # Abort
    # -------------------------------------------------------------------------

    def abort(self, wallet: "WalletService") -> list[OutPoint]:
        """
        Abandon the trade and release the coins reserved for my half-deposit.

        Refused once my deposit tx inputs are signed: from then on the peer
        can publish the deposit tx, so the coins are no longer mine to reuse.
        """
        if self.state not in ABORTABLE_STATES:
            raise ProtocolViolation(f"cannot abort a trade in state {self.state.value}")
        released = [i.outpoint for i in self.my_half_deposit.inputs] if self.my_half_deposit is not None else []
        wallet.unlock_unspent(released)
        self._advance(TradeState.ABORTED)
        logger.info(f"Trade {self.trade_id}: aborted, released {len(released)} reserved coins")
        return released
