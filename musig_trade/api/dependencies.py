"""FastAPI dependencies for dependency injection."""

from fastapi import Request

from musig_trade.services import MusigService, WalletInfoService


def get_musig_service(request: Request) -> MusigService:
    """Get the app's musig service, created at app construction."""
    service = getattr(request.app.state, "musig_service", None)
    if service is None:
        raise RuntimeError("MusigService not initialized. Use create_app() to build the app.")
    return service


def get_wallet_info_service(request: Request) -> WalletInfoService:
    service = getattr(request.app.state, "wallet_info_service", None)
    if service is None:
        raise RuntimeError("WalletInfoService not initialized. Use create_app() to build the app.")
    return service
