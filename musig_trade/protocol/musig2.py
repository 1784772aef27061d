"""
MuSig2 (BIP-327) two-party signing over secp256k1.

Curve arithmetic is delegated to libsecp256k1 through ``coincurve``; this
module implements the MuSig2 layer on top of it:

  - key aggregation with canonical key ordering and a BIP-341 Taproot tweak,
  - two-round nonce generation and aggregation,
  - partial signing, partial signature verification and aggregation,
  - adaptor signatures, used by the swap tx so that publishing the final
    signature reveals the adaptor secret (a private key share) to whoever
    holds the pre-signature.

Points are ``coincurve.PublicKey`` objects, with ``None`` standing for the
point at infinity. Scalars are plain ints reduced modulo the curve order.
"""

import hashlib
import logging
import secrets
from dataclasses import dataclass
from functools import cached_property
from typing import Iterable, Optional, Sequence

from coincurve import PrivateKey, PublicKey, PublicKeyXOnly

from .errors import CryptoFailure, PeerDataInvalid

logger = logging.getLogger(__name__)

CURVE_ORDER = 0xFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFEBAAEDCE6AF48A03BBFD25E8CD0364141
GENERATOR = PublicKey.from_secret((1).to_bytes(32, "big"))
ZERO_POINT_BYTES = bytes(33)


# =============================================================================
# CURVE HELPERS
# =============================================================================

def tagged_hash(tag: str, msg: bytes) -> bytes:
    """BIP-340 tagged hash: SHA256(SHA256(tag) || SHA256(tag) || msg)."""
    tag_hash = hashlib.sha256(tag.encode()).digest()
    return hashlib.sha256(tag_hash + tag_hash + msg).digest()


def int_from_bytes(data: bytes) -> int:
    return int.from_bytes(data, "big")


def scalar_to_bytes(x: int) -> bytes:
    return (x % CURVE_ORDER).to_bytes(32, "big")


def parse_scalar(data: bytes) -> int:
    """Parse a 32-byte big-endian scalar, rejecting out-of-range values."""
    if len(data) != 32:
        raise PeerDataInvalid(f"expected a 32-byte scalar, got {len(data)} bytes")
    x = int_from_bytes(data)
    if x >= CURVE_ORDER:
        raise PeerDataInvalid("scalar exceeds the curve order")
    return x


def parse_point(data: bytes) -> PublicKey:
    """Parse a 33-byte compressed point."""
    if len(data) != 33:
        raise PeerDataInvalid(f"expected a 33-byte compressed point, got {len(data)} bytes")
    try:
        return PublicKey(data)
    except ValueError as e:
        raise PeerDataInvalid(f"invalid curve point: {e}") from e


def point_mul_g(k: int) -> Optional[PublicKey]:
    k %= CURVE_ORDER
    if k == 0:
        return None
    return PublicKey.from_secret(scalar_to_bytes(k))


def point_mul(point: Optional[PublicKey], k: int) -> Optional[PublicKey]:
    k %= CURVE_ORDER
    if point is None or k == 0:
        return None
    return point.multiply(scalar_to_bytes(k))


def point_negate(point: Optional[PublicKey]) -> Optional[PublicKey]:
    if point is None:
        return None
    data = point.format()
    return PublicKey(bytes([data[0] ^ 1]) + data[1:])


def point_add(p1: Optional[PublicKey], p2: Optional[PublicKey]) -> Optional[PublicKey]:
    if p1 is None:
        return p2
    if p2 is None:
        return p1
    b1, b2 = p1.format(), p2.format()
    if b1[1:] == b2[1:] and b1[0] != b2[0]:
        return None
    return PublicKey.combine_keys([p1, p2])


def points_equal(p1: Optional[PublicKey], p2: Optional[PublicKey]) -> bool:
    return cbytes_ext(p1) == cbytes_ext(p2)


def has_even_y(point: PublicKey) -> bool:
    return point.format()[0] == 2


def xbytes(point: PublicKey) -> bytes:
    return point.format()[1:]


def cbytes_ext(point: Optional[PublicKey]) -> bytes:
    if point is None:
        return ZERO_POINT_BYTES
    return point.format()


def lift_x(x: bytes) -> PublicKey:
    return parse_point(b"\x02" + x)


# =============================================================================
# TAPROOT
# =============================================================================

def taproot_tweak(internal_key: bytes) -> int:
    """BIP-341 tweak for a key-path-only output (no script tree)."""
    tweak = int_from_bytes(tagged_hash("TapTweak", internal_key))
    if tweak >= CURVE_ORDER:
        raise CryptoFailure("taproot tweak exceeds the curve order")
    return tweak


def taproot_output_key(pub_key: PublicKey) -> bytes:
    """X-only Taproot output key committing to ``pub_key`` as internal key."""
    internal = lift_x(xbytes(pub_key))
    output = point_add(internal, point_mul_g(taproot_tweak(xbytes(pub_key))))
    if output is None:
        raise CryptoFailure("taproot output key is the point at infinity")
    return xbytes(output)


def taproot_tweak_private_key(prv_key: int) -> int:
    """Private key that signs for ``taproot_output_key(prv_key * G)``."""
    point = point_mul_g(prv_key)
    if point is None:
        raise CryptoFailure("private key is zero")
    if not has_even_y(point):
        prv_key = CURVE_ORDER - prv_key
    return (prv_key + taproot_tweak(xbytes(point))) % CURVE_ORDER


def schnorr_sign(prv_key: int, message: bytes) -> bytes:
    """BIP-340 signature with a (tweaked) private key."""
    return PrivateKey(scalar_to_bytes(prv_key)).sign_schnorr(message, secrets.token_bytes(32))


def verify_signature(output_key: bytes, message: bytes, signature: bytes) -> bool:
    """Verify a BIP-340 signature against an x-only key."""
    if len(signature) != 64 or len(output_key) != 32:
        return False
    try:
        return PublicKeyXOnly(output_key).verify(signature, message)
    except ValueError:
        return False


# =============================================================================
# KEY SHARES AND KEY AGGREGATION
# =============================================================================

@dataclass
class KeyShare:
    """
    One party's share of the key controlling a trade output.

    Shares received from the peer carry only the public point until the peer
    reveals the private scalar during settlement.
    """
    pub_key: PublicKey
    prv_key: Optional[int] = None

    @property
    def pub_key_bytes(self) -> bytes:
        return self.pub_key.format()

    def matches(self, prv_key: int) -> bool:
        """Check whether ``prv_key`` is the private scalar of this share."""
        return points_equal(point_mul_g(prv_key), self.pub_key)


def generate_key_share() -> KeyShare:
    """Generate a fresh random key share."""
    prv_key = PrivateKey()
    return KeyShare(pub_key=prv_key.public_key, prv_key=int_from_bytes(prv_key.secret))


def _second_key(pub_keys: Sequence[bytes]) -> bytes:
    for pub_key in pub_keys[1:]:
        if pub_key != pub_keys[0]:
            return pub_key
    return ZERO_POINT_BYTES


def _key_agg_coefficient(pub_keys: Sequence[bytes], pub_key: bytes) -> int:
    if pub_key == _second_key(pub_keys):
        return 1
    list_hash = tagged_hash("KeyAgg list", b"".join(pub_keys))
    return int_from_bytes(tagged_hash("KeyAgg coefficient", list_hash + pub_key)) % CURVE_ORDER


def key_agg(pub_keys: Sequence[bytes]) -> PublicKey:
    """BIP-327 KeyAgg of compressed keys, in the order given and untweaked."""
    q = None
    for pub_key in pub_keys:
        q = point_add(q, point_mul(parse_point(pub_key), _key_agg_coefficient(pub_keys, pub_key)))
    if q is None:
        raise CryptoFailure("aggregated public key is the point at infinity")
    return q


@dataclass(frozen=True)
class KeyAggContext:
    """
    Result of aggregating two public key shares.

    ``pub_keys`` are the compressed shares in canonical (sorted) order;
    ``q`` is the tweaked aggregate point, whose x coordinate is the Taproot
    output key. ``gacc``/``tacc`` carry the tweak into signing.
    """
    pub_keys: tuple[bytes, ...]
    internal_key: bytes
    q: PublicKey
    gacc: int
    tacc: int

    @property
    def output_key(self) -> bytes:
        return xbytes(self.q)

    def coefficient(self, pub_key: bytes) -> int:
        if pub_key not in self.pub_keys:
            raise CryptoFailure("public key is not part of the aggregated key")
        return _key_agg_coefficient(self.pub_keys, pub_key)


def aggregate_public_keys(a: PublicKey, b: PublicKey) -> KeyAggContext:
    """
    Aggregate two public key shares into a Taproot output key.

    The shares are sorted before aggregation, so the result does not depend
    on argument order and both parties derive byte-identical keys.
    """
    pub_keys = tuple(sorted([a.format(), b.format()]))
    q = key_agg(pub_keys)
    internal_key = xbytes(q)
    tweak = taproot_tweak(internal_key)
    g = 1 if has_even_y(q) else CURVE_ORDER - 1
    tweaked = point_add(point_mul(q, g), point_mul_g(tweak))
    if tweaked is None:
        raise CryptoFailure("tweaked public key is the point at infinity")

    return KeyAggContext(pub_keys=pub_keys, internal_key=internal_key, q=tweaked, gacc=g, tacc=tweak)


def aggregate_private_keys(key_agg_ctx: KeyAggContext, shares: Iterable[KeyShare]) -> int:
    """
    Combine both private key shares into the key that spends the output alone.

    Returns the tweaked private key for the aggregated output key.
    """
    d = 0
    seen = set()
    for share in shares:
        if share.prv_key is None:
            raise CryptoFailure("private key share is missing")
        if not share.matches(share.prv_key):
            raise CryptoFailure("private key share does not match its public key")
        d += key_agg_ctx.coefficient(share.pub_key_bytes) * share.prv_key
        seen.add(share.pub_key_bytes)
    if seen != set(key_agg_ctx.pub_keys):
        raise CryptoFailure("private key shares do not cover the aggregated key")

    prv_key = (key_agg_ctx.gacc * d + key_agg_ctx.tacc) % CURVE_ORDER
    point = point_mul_g(prv_key)
    if point is None or xbytes(point) != key_agg_ctx.output_key:
        raise CryptoFailure("aggregated private key does not match the output key")
    return prv_key


# =============================================================================
# NONCES
# =============================================================================

@dataclass(frozen=True)
class PubNonce:
    """Round-1 public nonce pair (R1, R2)."""
    r1: PublicKey
    r2: PublicKey

    def serialize(self) -> bytes:
        return self.r1.format() + self.r2.format()

    @classmethod
    def parse(cls, data: bytes) -> "PubNonce":
        if len(data) != 66:
            raise PeerDataInvalid(f"expected a 66-byte public nonce, got {len(data)} bytes")
        return cls(r1=parse_point(data[:33]), r2=parse_point(data[33:]))


class SecNonce:
    """
    Secret nonce pair, usable for exactly one partial signature.

    Reusing a secret nonce for two different messages leaks the private key,
    so ``take`` hands the scalars out once and forgets them.
    """

    def __init__(self, k1: int, k2: int, pub_key: bytes, pub_nonce: bytes):
        self._k: Optional[tuple[int, int]] = (k1, k2)
        self.pub_key = pub_key
        self.pub_nonce = pub_nonce

    @property
    def used(self) -> bool:
        return self._k is None

    def take(self) -> tuple[int, int]:
        if self._k is None:
            raise CryptoFailure("secret nonce has already been used")
        k, self._k = self._k, None
        return k

    def __repr__(self) -> str:
        return f"SecNonce(used={self.used})"


@dataclass
class NonceShare:
    """A public nonce, plus the secret nonce when this party generated it."""
    pub_nonce: PubNonce
    sec_nonce: Optional[SecNonce] = None


def generate_nonce_share(
    key_share: KeyShare,
    agg_pub_key: bytes = b"",
    message: Optional[bytes] = None,
    extra_in: bytes = b"",
) -> NonceShare:
    """
    BIP-327 NonceGen with fresh randomness.

    Every call returns a new nonce; callers need one per message to sign.
    """
    rand = secrets.token_bytes(32)
    if key_share.prv_key is not None:
        aux = tagged_hash("MuSig/aux", rand)
        rand = bytes(x ^ y for x, y in zip(scalar_to_bytes(key_share.prv_key), aux))

    pub_key = key_share.pub_key_bytes
    if message is None:
        msg_prefixed = b"\x00"
    else:
        msg_prefixed = b"\x01" + len(message).to_bytes(8, "big") + message

    k = []
    for i in range(2):
        data = (rand + bytes([len(pub_key)]) + pub_key + bytes([len(agg_pub_key)]) + agg_pub_key
                + msg_prefixed + len(extra_in).to_bytes(4, "big") + extra_in + bytes([i]))
        k.append(int_from_bytes(tagged_hash("MuSig/nonce", data)) % CURVE_ORDER)
    if 0 in k:
        raise CryptoFailure("nonce generation produced a zero scalar")

    pub_nonce = PubNonce(r1=point_mul_g(k[0]), r2=point_mul_g(k[1]))
    sec_nonce = SecNonce(k[0], k[1], pub_key, pub_nonce.serialize())
    return NonceShare(pub_nonce=pub_nonce, sec_nonce=sec_nonce)


@dataclass(frozen=True)
class AggregatedNonce:
    """Sum of both parties' public nonces, remembering which nonces went in."""
    r1: Optional[PublicKey]
    r2: Optional[PublicKey]
    contributions: tuple[bytes, ...]

    def serialize(self) -> bytes:
        return cbytes_ext(self.r1) + cbytes_ext(self.r2)


def aggregate_nonces(a: PubNonce, b: PubNonce) -> AggregatedNonce:
    """Combine two public nonces; the result does not depend on argument order."""
    return AggregatedNonce(
        r1=point_add(a.r1, b.r1),
        r2=point_add(a.r2, b.r2),
        contributions=tuple(sorted([a.serialize(), b.serialize()])),
    )


# =============================================================================
# SIGNING
# =============================================================================

@dataclass(frozen=True)
class SigningSession:
    """
    Everything both signers must agree on to sign one message.

    With an ``adaptor_point`` T the aggregated result is a pre-signature that
    only becomes valid once adapted with the discrete log of T.
    """
    key_agg_ctx: KeyAggContext
    agg_nonce: AggregatedNonce
    message: bytes
    adaptor_point: Optional[PublicKey] = None

    @cached_property
    def b(self) -> int:
        data = self.agg_nonce.serialize() + self.key_agg_ctx.output_key + self.message
        return int_from_bytes(tagged_hash("MuSig/noncecoef", data)) % CURVE_ORDER

    @cached_property
    def r(self) -> PublicKey:
        r = point_add(self.agg_nonce.r1, point_mul(self.agg_nonce.r2, self.b))
        if r is None:
            r = GENERATOR
        r = point_add(r, self.adaptor_point)
        if r is None:
            raise CryptoFailure("session nonce is the point at infinity")
        return r

    @cached_property
    def e(self) -> int:
        data = xbytes(self.r) + self.key_agg_ctx.output_key + self.message
        return int_from_bytes(tagged_hash("BIP0340/challenge", data)) % CURVE_ORDER

    @property
    def g(self) -> int:
        return 1 if has_even_y(self.key_agg_ctx.q) else CURVE_ORDER - 1

    def contains_nonce(self, pub_nonce: bytes) -> bool:
        return pub_nonce in self.agg_nonce.contributions


def partial_sign(key_share: KeyShare, sec_nonce: SecNonce, session: SigningSession) -> int:
    """
    Produce this signer's partial signature for ``session``.

    Refuses to sign if the session was not built from this signer's own key
    share and nonce, and consumes the secret nonce.
    """
    if key_share.prv_key is None:
        raise CryptoFailure("cannot sign without the private key share")
    pub_key = key_share.pub_key_bytes
    if pub_key not in session.key_agg_ctx.pub_keys:
        raise CryptoFailure("signer's key share is not part of the aggregated key")
    if sec_nonce.pub_key != pub_key:
        raise CryptoFailure("secret nonce was generated for a different key share")
    if not session.contains_nonce(sec_nonce.pub_nonce):
        raise CryptoFailure("signer's nonce is not part of the aggregated nonce")

    k1, k2 = sec_nonce.take()
    if not has_even_y(session.r):
        k1, k2 = CURVE_ORDER - k1, CURVE_ORDER - k2

    a = session.key_agg_ctx.coefficient(pub_key)
    d = session.g * session.key_agg_ctx.gacc * key_share.prv_key % CURVE_ORDER
    s = (k1 + session.b * k2 + session.e * a * d) % CURVE_ORDER

    if not verify_partial_signature(s, PubNonce.parse(sec_nonce.pub_nonce), key_share.pub_key, session):
        raise CryptoFailure("partial signature failed self-verification")
    return s


def verify_partial_signature(psig: int, pub_nonce: PubNonce, pub_key: PublicKey, session: SigningSession) -> bool:
    """Check a partial signature against the signer's public key share and nonce."""
    if not 0 <= psig < CURVE_ORDER:
        return False
    pub_key_bytes = pub_key.format()
    if pub_key_bytes not in session.key_agg_ctx.pub_keys:
        return False
    if not session.contains_nonce(pub_nonce.serialize()):
        return False

    re = point_add(pub_nonce.r1, point_mul(pub_nonce.r2, session.b))
    if not has_even_y(session.r):
        re = point_negate(re)
    a = session.key_agg_ctx.coefficient(pub_key_bytes)
    g = session.g * session.key_agg_ctx.gacc % CURVE_ORDER
    expected = point_add(re, point_mul(pub_key, session.e * a * g))
    return points_equal(point_mul_g(psig), expected)


def _sum_partial_signatures(psigs: Iterable[int], session: SigningSession) -> int:
    s = sum(psigs) + session.e * session.g * session.key_agg_ctx.tacc
    return s % CURVE_ORDER


def aggregate_partial_signatures(a: int, b: int, session: SigningSession) -> bytes:
    """Combine both partial signatures into a BIP-340 signature and verify it."""
    if session.adaptor_point is not None:
        raise CryptoFailure("adaptor session must be aggregated into a pre-signature")
    signature = xbytes(session.r) + scalar_to_bytes(_sum_partial_signatures([a, b], session))
    if not verify_signature(session.key_agg_ctx.output_key, session.message, signature):
        raise CryptoFailure("aggregated signature does not verify")
    return signature


@dataclass(frozen=True)
class PreSignature:
    """Aggregated adaptor signature: valid once adapted with the adaptor secret."""
    r: PublicKey
    s: int
    adaptor_point: PublicKey
    output_key: bytes
    message: bytes

    def adapt(self, secret: int) -> bytes:
        """Complete the signature with the discrete log of the adaptor point."""
        if not points_equal(point_mul_g(secret), self.adaptor_point):
            raise CryptoFailure("adaptor secret does not match the adaptor point")
        if has_even_y(self.r):
            s = self.s + secret
        else:
            s = self.s - secret
        signature = xbytes(self.r) + scalar_to_bytes(s)
        if not verify_signature(self.output_key, self.message, signature):
            raise CryptoFailure("adapted signature does not verify")
        return signature


def adapt_signature(pre_signature: PreSignature, secret: int) -> bytes:
    return pre_signature.adapt(secret)


def aggregate_adaptor_partial_signatures(a: int, b: int, session: SigningSession) -> PreSignature:
    """Combine both partial signatures of an adaptor session into a pre-signature."""
    if session.adaptor_point is None:
        raise CryptoFailure("session has no adaptor point")
    return PreSignature(
        r=session.r,
        s=_sum_partial_signatures([a, b], session),
        adaptor_point=session.adaptor_point,
        output_key=session.key_agg_ctx.output_key,
        message=session.message,
    )


def recover_private_key_share(published_signature: bytes, pre_signature: PreSignature) -> int:
    """
    Extract the adaptor secret from a published signature.

    The published signature must share the pre-signature's nonce; the
    recovered scalar is checked against the adaptor point, which is the
    counterparty's public key share.

    ``pre_signature`` stands in for the known partial signature and the
    shared nonce: its ``s`` is the sum of both partial signatures (ours
    included), and its ``r`` is the aggregated nonce shares plus T. The
    published ``s`` differs from it only by the adaptor secret, negated when
    ``r`` has an odd y.
    """
    if len(published_signature) != 64:
        raise PeerDataInvalid(f"expected a 64-byte signature, got {len(published_signature)} bytes")
    if published_signature[:32] != xbytes(pre_signature.r):
        raise CryptoFailure("published signature nonce does not match the pre-signature")
    if not verify_signature(pre_signature.output_key, pre_signature.message, published_signature):
        raise CryptoFailure("published signature does not verify")

    s = parse_scalar(published_signature[32:])
    if has_even_y(pre_signature.r):
        secret = (s - pre_signature.s) % CURVE_ORDER
    else:
        secret = (pre_signature.s - s) % CURVE_ORDER

    if not points_equal(point_mul_g(secret), pre_signature.adaptor_point):
        raise CryptoFailure("recovered secret does not match the expected key share")
    logger.debug("Recovered adaptor secret from published signature")
    return secret
