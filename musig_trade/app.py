"""FastAPI application factory."""

import asyncio
import logging
from contextlib import asynccontextmanager, suppress

from fastapi import FastAPI

from musig_trade.config import Config
from musig_trade.api import register_error_handlers, router, wallet_router
from musig_trade.protocol import TradeModelStore
from musig_trade.services import MusigService, WalletInfoService
from musig_trade.wallet import BitcoindClient, KeychainWalletService, WalletService

logger = logging.getLogger(__name__)


def create_wallet_service(config: Config) -> KeychainWalletService:
    """Build the keychain wallet, with a bitcoind client when an RPC URL is configured."""
    rpc_client = None
    if config.bitcoind_rpc_url:
        rpc_client = BitcoindClient(
            rpc_url=config.bitcoind_rpc_url,
            rpc_user=config.bitcoind_rpc_user,
            rpc_password=config.bitcoind_rpc_password,
            cookie_file=config.bitcoind_cookie_file,
        )
    return KeychainWalletService(
        seed=bytes.fromhex(config.wallet_seed) if config.wallet_seed else None,
        network=config.network,
        rpc_client=rpc_client,
        birth_height=config.wallet_birth_height,
        poll_interval=config.wallet_poll_interval,
    )


def create_app(
    config: Config | None = None,
    wallet_service: WalletService | None = None,
    trade_store: TradeModelStore | None = None,
) -> FastAPI:
    """
    Create and configure the FastAPI application.

    Args:
        config: Application configuration. If None, loads from environment.
        wallet_service: Wallet to use. If None, builds a keychain wallet from config.
        trade_store: Trade registry. If None, creates an empty one.

    Returns:
        Configured FastAPI application
    """
    if config is None:
        config = Config.from_env()
    if wallet_service is None:
        wallet_service = create_wallet_service(config)
    if trade_store is None:
        trade_store = TradeModelStore(config.settled_trade_retention_seconds)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application lifespan handler for startup/shutdown."""
        # Startup
        logger.info(f"Starting MuSig trade protocol server on {config.network}")
        sync_task = None
        if config.bitcoind_rpc_url:
            logger.info(f"Syncing wallet from bitcoind at {config.bitcoind_rpc_url}")
            sync_task = asyncio.create_task(wallet_service.connect())
            sync_task.add_done_callback(_log_sync_task_exit)

        yield

        # Shutdown
        logger.info("Shutting down...")
        if sync_task is not None:
            sync_task.cancel()
            with suppress(asyncio.CancelledError):
                await sync_task
        await wallet_service.close()

    app = FastAPI(
        title="MuSig Trade Protocol API",
        description="Two-party MuSig2 trade protocol: deposit, warning, redirect and swap txs",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.config = config
    app.state.trade_store = trade_store
    app.state.wallet_service = wallet_service
    app.state.musig_service = MusigService(
        trade_store,
        wallet_service,
        network=config.network,
        required_confirmations=config.required_confirmations,
    )
    app.state.wallet_info_service = WalletInfoService(wallet_service, network=config.network)

    # Include API routes
    app.include_router(router)
    app.include_router(wallet_router)
    register_error_handlers(app)

    # Health check endpoint
    @app.get("/health")
    async def health_check():
        return {"status": "healthy", "network": config.network, "tipHeight": wallet_service.tip_height()}

    return app


def _log_sync_task_exit(task: asyncio.Task) -> None:
    if task.cancelled():
        return
    if task.exception() is not None:
        logger.error(f"Wallet sync stopped: {task.exception()!r}")
