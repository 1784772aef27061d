"""Bitcoin Core JSON-RPC client."""

import asyncio
import logging
from pathlib import Path
from typing import Any, Optional

import httpx

from musig_trade.protocol.errors import WalletError

logger = logging.getLogger(__name__)

# RPC constants
DEFAULT_RPC_URL = "http://127.0.0.1:18443"
REQUEST_TIMEOUT = 30.0
MAX_RETRIES = 10
RETRY_DELAY = 2.0


class BitcoindRpcError(WalletError):
    """bitcoind answered a call with a JSON-RPC error object."""

    def __init__(self, method: str, code: int, message: str):
        self.method = method
        self.code = code
        super().__init__(f"{method} failed with RPC error {code}: {message}")


class BitcoindClient:
    """
    Async JSON-RPC client for the handful of bitcoind calls the wallet needs.

    Authenticates with either a user/password pair or bitcoind's cookie file;
    the cookie is re-read on every new connection since bitcoind rewrites it
    on restart.
    """

    def __init__(
        self,
        rpc_url: str = DEFAULT_RPC_URL,
        rpc_user: Optional[str] = None,
        rpc_password: Optional[str] = None,
        cookie_file: Optional[str] = None,
    ):
        self.rpc_url = rpc_url
        self.rpc_user = rpc_user
        self.rpc_password = rpc_password
        self.cookie_file = cookie_file
        self._client: Optional[httpx.AsyncClient] = None
        self._request_id = 0

    def _auth(self) -> Optional[tuple[str, str]]:
        if self.cookie_file:
            user, _, password = Path(self.cookie_file).read_text().strip().partition(":")
            return user, password
        if self.rpc_user is not None:
            return self.rpc_user, self.rpc_password or ""
        return None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create the HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.rpc_url,
                auth=self._auth(),
                headers={"Content-Type": "application/json"},
                timeout=REQUEST_TIMEOUT,
            )
        return self._client

    async def call(self, method: str, *params: Any, retry_count: int = 0) -> Any:
        """
        Make a JSON-RPC call with timeout handling and retries.

        Args:
            method: RPC method name
            params: Positional RPC parameters
            retry_count: Current retry attempt

        Returns:
            The call's ``result`` field
        """
        client = await self._get_client()
        self._request_id += 1
        payload = {"jsonrpc": "1.0", "id": self._request_id, "method": method, "params": list(params)}

        try:
            response = await client.post("/", json=payload)
            if response.status_code != 200 and response.headers.get("content-type", "").startswith("application/json"):
                # bitcoind reports RPC errors with a non-200 status and a JSON body
                body = response.json()
                if body.get("error"):
                    raise BitcoindRpcError(method, body["error"].get("code", 0), body["error"].get("message", ""))
            response.raise_for_status()
            body = response.json()

        except (httpx.TimeoutException, httpx.ConnectError) as e:
            if retry_count < MAX_RETRIES:
                logger.warning(
                    f"RPC {method} failed: {e!r} (attempt {retry_count + 1}/{MAX_RETRIES}). "
                    f"Retrying in {RETRY_DELAY}s..."
                )
                await asyncio.sleep(RETRY_DELAY)
                return await self.call(method, *params, retry_count=retry_count + 1)
            logger.error(f"RPC {method} failed after {MAX_RETRIES} retries: {e}")
            raise WalletError(f"bitcoind unreachable: {e}") from e

        except httpx.HTTPStatusError as e:
            logger.error(f"HTTP error {e.response.status_code} for RPC {method}: {e}")
            raise WalletError(f"bitcoind returned HTTP {e.response.status_code}") from e

        if body.get("error"):
            raise BitcoindRpcError(method, body["error"].get("code", 0), body["error"].get("message", ""))
        return body["result"]

    async def get_blockchain_info(self) -> dict:
        return await self.call("getblockchaininfo")

    async def get_block_count(self) -> int:
        return await self.call("getblockcount")

    async def get_block_hash(self, height: int) -> str:
        return await self.call("getblockhash", height)

    async def get_raw_block(self, block_hash: str) -> bytes:
        return bytes.fromhex(await self.call("getblock", block_hash, 0))

    async def get_raw_mempool(self) -> list[str]:
        return await self.call("getrawmempool")

    async def get_raw_transaction(self, txid: str) -> bytes:
        return bytes.fromhex(await self.call("getrawtransaction", txid))

    async def send_raw_transaction(self, tx_hex: str) -> str:
        return await self.call("sendrawtransaction", tx_hex)

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None
