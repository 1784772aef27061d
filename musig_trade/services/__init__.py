from .musig_service import MusigService
from .wallet_info_service import WalletInfoService

__all__ = [
    "MusigService",
    "WalletInfoService",
]
