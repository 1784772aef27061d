"""Error kinds raised by the trade protocol and its collaborators."""


class TradeProtocolError(Exception):
    """Base class for all errors surfaced to callers of the trade protocol."""

    kind = "TradeProtocolError"

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class TradeNotFound(TradeProtocolError):
    """No trade model is registered under the requested trade id."""

    kind = "NotFound"


class ProtocolViolation(TradeProtocolError):
    """An operation was invoked out of order, or a set-once field was set twice."""

    kind = "ProtocolViolation"


class CryptoFailure(TradeProtocolError):
    """Aggregation, signing or key recovery failed mathematically."""

    kind = "CryptoFailure"


class MissingField(TradeProtocolError):
    """A required value was absent when it had to be consumed."""

    kind = "MissingField"


class PeerDataInvalid(TradeProtocolError):
    """The counterparty supplied malformed keys, nonces, signatures or addresses."""

    kind = "PeerDataInvalid"


class WalletError(TradeProtocolError):
    """The wallet collaborator could not satisfy a request."""

    kind = "WalletError"


class InsufficientFunds(WalletError):
    """The wallet does not hold enough spendable coins to fund a deposit."""

    kind = "InsufficientFunds"
