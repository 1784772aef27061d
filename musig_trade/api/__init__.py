from .routes import router
from .wallet_routes import router as wallet_router
from .errors import register_error_handlers

__all__ = [
    "router",
    "wallet_router",
    "register_error_handlers",
]
