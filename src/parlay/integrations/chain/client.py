"""Read-only Polygon lookups over web3.py.

Settlement needs three things from the chain: the current block (so a
payout check knows where to start scanning), a wallet's USDC balance, and
the USDC Transfer logs paid into a wallet. Fee transfers are sent by
permit.py, which borrows this client's web3 handle and thread pool.

web3's HTTP provider blocks, so every call runs in the executor. RPC calls
retry on transient failures with RPC_RETRY.
"""

import asyncio
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any, Callable, Optional, Union

import structlog

from parlay.core.retry import RPC_RETRY, retry_transient, wrap_external_error

log = structlog.get_logger()

# USDC.e, the collateral Polymarket settles in
USDC_ADDRESS = "0x2791Bca1f2de4661ED88A30C99A7a9449Aa84174"
USDC_DECIMALS = 6

# keccak256("Transfer(address,address,uint256)")
TRANSFER_TOPIC = "0xddf252ad1be2c89b69c2b068fc378daa952ba7f163c4a11628f55a4df523b3ef"

BALANCE_OF_ABI = [
    {
        "inputs": [{"name": "account", "type": "address"}],
        "name": "balanceOf",
        "outputs": [{"name": "", "type": "uint256"}],
        "stateMutability": "view",
        "type": "function",
    },
]

BlockRef = Union[int, str]


class PolygonClientError(Exception):
    """The RPC endpoint is unreachable or the client was never connected."""


@dataclass(frozen=True)
class TransferLog:
    """One USDC Transfer event; value_micro is the raw 6-decimal amount."""

    tx_hash: str
    block_number: int
    from_address: str
    to_address: str
    value_micro: int


def _address_topic(address: str) -> str:
    """Left-pad an address to the 32-byte form indexed log topics use."""
    return "0x" + address.lower().removeprefix("0x").rjust(64, "0")


def _topic_to_address(topic: Any) -> str:
    return "0x" + bytes(topic)[-20:].hex()


def _parse_transfer(entry: Any) -> TransferLog:
    _, sender, recipient = entry["topics"][:3]
    return TransferLog(
        tx_hash=bytes(entry["transactionHash"]).hex(),
        block_number=entry["blockNumber"],
        from_address=_topic_to_address(sender),
        to_address=_topic_to_address(recipient),
        value_micro=int.from_bytes(bytes(entry["data"]), "big"),
    )


class PolygonClient:
    """USDC reads against one Polygon RPC endpoint.

    Usage:
        async with PolygonClient(rpc_url) as polygon:
            start = await polygon.get_block_number()
            paid = await polygon.get_usdc_transfers_to(wallet, start - 5_000)
    """

    def __init__(
        self,
        rpc_url: str,
        usdc_address: str = USDC_ADDRESS,
        executor: Optional[ThreadPoolExecutor] = None,
    ):
        self._rpc_url = rpc_url
        self._usdc_address = usdc_address
        self._pool = executor or ThreadPoolExecutor(max_workers=2)
        self._w3: Any = None
        self._usdc: Any = None
        self._log = log.bind(component="polygon_client", rpc=rpc_url)

    @property
    def is_connected(self) -> bool:
        return self._w3 is not None

    @property
    def web3(self) -> Any:
        """The underlying Web3 instance, for callers that build transactions."""
        if self._w3 is None:
            raise PolygonClientError("Client not connected. Call connect() first.")
        return self._w3

    async def connect(self) -> None:
        """Create the provider and check the endpoint answers.

        Raises:
            PolygonClientError: The RPC endpoint did not respond.
        """
        if self._w3 is not None:
            return

        from web3 import Web3

        w3 = Web3(Web3.HTTPProvider(self._rpc_url))
        if not await self.blocking(w3.is_connected):
            raise PolygonClientError(f"No answer from RPC endpoint {self._rpc_url}")

        self._usdc = w3.eth.contract(
            address=Web3.to_checksum_address(self._usdc_address),
            abi=BALANCE_OF_ABI,
        )
        self._w3 = w3
        self._log.info("polygon_connected")

    async def close(self) -> None:
        self._w3 = None
        self._usdc = None

    async def __aenter__(self) -> "PolygonClient":
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    async def blocking(self, func: Callable[..., Any], *args: Any) -> Any:
        """Run a blocking web3 call on this client's thread pool."""
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self._pool, func, *args)

    @retry_transient(RPC_RETRY)
    async def get_block_number(self) -> int:
        w3 = self.web3
        try:
            return await self.blocking(lambda: w3.eth.block_number)
        except Exception as e:
            raise wrap_external_error(e, "eth_blockNumber") from e

    @retry_transient(RPC_RETRY)
    async def get_usdc_balance_micro(self, address: str) -> int:
        from web3 import Web3

        if self._usdc is None:
            raise PolygonClientError("Client not connected. Call connect() first.")
        balance_of = self._usdc.functions.balanceOf(Web3.to_checksum_address(address))
        try:
            return await self.blocking(balance_of.call)
        except Exception as e:
            raise wrap_external_error(e, "balanceOf") from e

    @retry_transient(RPC_RETRY)
    async def get_usdc_transfers_to(
        self,
        wallet_address: str,
        from_block: int,
        to_block: BlockRef = "latest",
    ) -> list[TransferLog]:
        """USDC Transfer logs whose recipient is wallet_address, oldest first."""
        from web3 import Web3

        w3 = self.web3
        log_filter = {
            "address": Web3.to_checksum_address(self._usdc_address),
            "fromBlock": from_block,
            "toBlock": to_block,
            "topics": [TRANSFER_TOPIC, None, _address_topic(wallet_address)],
        }
        try:
            entries = await self.blocking(w3.eth.get_logs, log_filter)
        except Exception as e:
            raise wrap_external_error(e, "eth_getLogs") from e
        return [_parse_transfer(entry) for entry in entries]
