"""Map trade protocol errors to HTTP responses."""

import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from musig_trade.protocol.errors import (
    CryptoFailure,
    MissingField,
    PeerDataInvalid,
    ProtocolViolation,
    TradeNotFound,
    TradeProtocolError,
    WalletError,
)

logger = logging.getLogger(__name__)

ERROR_STATUS_CODES = {
    TradeNotFound: 404,
    ProtocolViolation: 409,
    MissingField: 400,
    PeerDataInvalid: 422,
    CryptoFailure: 422,
    WalletError: 503,
}


def status_code_for(error: TradeProtocolError) -> int:
    for error_type in type(error).__mro__:
        if error_type in ERROR_STATUS_CODES:
            return ERROR_STATUS_CODES[error_type]
    return 500


async def trade_protocol_error_handler(request: Request, exc: TradeProtocolError) -> JSONResponse:
    status_code = status_code_for(exc)
    logger.warning(f"{request.method} {request.url.path} failed with {exc.kind} ({status_code}): {exc.message}")
    return JSONResponse(status_code=status_code, content={"error": exc.kind, "detail": exc.message})


def register_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(TradeProtocolError, trade_protocol_error_handler)
