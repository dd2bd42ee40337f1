"""EIP-2612 permit transfers of USDC with platform-paid gas.

Three wallets take part:
1. Owner (user's custodial wallet) signs a permit off-chain, no gas needed
2. Platform wallet submits permit() then transferFrom() and pays the gas
3. Recipient (commission wallet) receives the tokens
"""

import time
from dataclasses import dataclass
from typing import Any, Optional

import structlog

from parlay.domain.money import from_micro
from parlay.integrations.chain.client import USDC_ADDRESS, PolygonClient

log = structlog.get_logger()

POLYGON_CHAIN_ID = 137
DEFAULT_DEADLINE_SECONDS = 3600
RECEIPT_TIMEOUT_SECONDS = 120

PERMIT_DOMAIN_NAME = "USD Coin (PoS)"
PERMIT_DOMAIN_VERSION = "1"

PERMIT_TYPES = {
    "Permit": [
        {"name": "owner", "type": "address"},
        {"name": "spender", "type": "address"},
        {"name": "value", "type": "uint256"},
        {"name": "nonce", "type": "uint256"},
        {"name": "deadline", "type": "uint256"},
    ],
}

USDC_PERMIT_ABI = [
    {
        "inputs": [
            {"name": "owner", "type": "address"},
            {"name": "spender", "type": "address"},
            {"name": "value", "type": "uint256"},
            {"name": "deadline", "type": "uint256"},
            {"name": "v", "type": "uint8"},
            {"name": "r", "type": "bytes32"},
            {"name": "s", "type": "bytes32"},
        ],
        "name": "permit",
        "outputs": [],
        "stateMutability": "nonpayable",
        "type": "function",
    },
    {
        "inputs": [
            {"name": "from", "type": "address"},
            {"name": "to", "type": "address"},
            {"name": "amount", "type": "uint256"},
        ],
        "name": "transferFrom",
        "outputs": [{"name": "", "type": "bool"}],
        "stateMutability": "nonpayable",
        "type": "function",
    },
    {
        "inputs": [{"name": "owner", "type": "address"}],
        "name": "nonces",
        "outputs": [{"name": "", "type": "uint256"}],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "inputs": [{"name": "account", "type": "address"}],
        "name": "balanceOf",
        "outputs": [{"name": "", "type": "uint256"}],
        "stateMutability": "view",
        "type": "function",
    },
]


@dataclass(frozen=True)
class PermitSignature:
    v: int
    r: bytes
    s: bytes


@dataclass(frozen=True)
class PermitTransferResult:
    success: bool
    tx_hash: Optional[str] = None
    error: Optional[str] = None


def build_permit_typed_data(
    owner: str,
    spender: str,
    value_micro: int,
    nonce: int,
    deadline: int,
    chain_id: int = POLYGON_CHAIN_ID,
    verifying_contract: str = USDC_ADDRESS,
) -> tuple[dict[str, Any], dict[str, Any], dict[str, Any]]:
    """Return (domain, types, message) for an EIP-2612 permit."""
    domain = {
        "name": PERMIT_DOMAIN_NAME,
        "version": PERMIT_DOMAIN_VERSION,
        "chainId": chain_id,
        "verifyingContract": verifying_contract,
    }
    message = {
        "owner": owner,
        "spender": spender,
        "value": value_micro,
        "nonce": nonce,
        "deadline": deadline,
    }
    return domain, PERMIT_TYPES, message


def sign_permit(
    owner_private_key: str,
    spender: str,
    value_micro: int,
    nonce: int,
    deadline: int,
    chain_id: int = POLYGON_CHAIN_ID,
    verifying_contract: str = USDC_ADDRESS,
) -> PermitSignature:
    """Sign a permit with the owner's key (off-chain)."""
    from eth_account import Account

    owner = Account.from_key(owner_private_key).address
    domain, types, message = build_permit_typed_data(
        owner, spender, value_micro, nonce, deadline, chain_id, verifying_contract
    )
    signed = Account.sign_typed_data(
        owner_private_key,
        domain_data=domain,
        message_types=types,
        message_data=message,
    )
    return PermitSignature(
        v=signed.v,
        r=signed.r.to_bytes(32, "big"),
        s=signed.s.to_bytes(32, "big"),
    )


class PermitTransfer:
    """Moves USDC from an owner to a recipient with the platform paying gas."""

    def __init__(
        self,
        polygon_client: PolygonClient,
        platform_private_key: str,
        usdc_address: str = USDC_ADDRESS,
        chain_id: int = POLYGON_CHAIN_ID,
        deadline_seconds: int = DEFAULT_DEADLINE_SECONDS,
    ):
        self._polygon = polygon_client
        self._platform_key = platform_private_key
        self._usdc_address = usdc_address
        self._chain_id = chain_id
        self._deadline_seconds = deadline_seconds
        self._log = log.bind(component="permit_transfer")

    async def transfer(
        self,
        owner_private_key: str,
        recipient: str,
        amount_micro: int,
    ) -> PermitTransferResult:
        """Sign a permit as owner, then permit + transferFrom as platform.

        Never raises: every failure comes back as an unsuccessful result.
        """
        try:
            return await self._transfer(owner_private_key, recipient, amount_micro)
        except Exception as e:
            self._log.error(
                "permit_transfer_failed",
                recipient=recipient,
                amount=from_micro(amount_micro, 6),
                error=str(e),
                error_type=type(e).__name__,
            )
            return PermitTransferResult(success=False, error=str(e))

    async def _transfer(
        self,
        owner_private_key: str,
        recipient: str,
        amount_micro: int,
    ) -> PermitTransferResult:
        from eth_account import Account
        from web3 import Web3

        await self._polygon.connect()
        w3 = self._polygon.web3
        owner = Account.from_key(owner_private_key).address
        platform = Account.from_key(self._platform_key)
        usdc = w3.eth.contract(
            address=Web3.to_checksum_address(self._usdc_address),
            abi=USDC_PERMIT_ABI,
        )

        balance = await self._polygon.blocking(usdc.functions.balanceOf(owner).call)
        if balance < amount_micro:
            self._log.warning(
                "permit_insufficient_balance",
                owner=owner,
                balance=from_micro(balance, 6),
                required=from_micro(amount_micro, 6),
            )
            return PermitTransferResult(
                success=False,
                error=f"Insufficient balance. Available: {from_micro(balance)} USDC",
            )

        nonce = await self._polygon.blocking(usdc.functions.nonces(owner).call)
        deadline = int(time.time()) + self._deadline_seconds
        signature = sign_permit(
            owner_private_key,
            platform.address,
            amount_micro,
            nonce,
            deadline,
            self._chain_id,
            Web3.to_checksum_address(self._usdc_address),
        )

        self._log.info(
            "executing_permit_transfer",
            owner=owner,
            recipient=recipient,
            amount=from_micro(amount_micro, 6),
            platform_wallet=platform.address,
        )

        await self._send(
            w3,
            platform,
            usdc.functions.permit(
                owner,
                platform.address,
                amount_micro,
                deadline,
                signature.v,
                signature.r,
                signature.s,
            ),
        )
        receipt = await self._send(
            w3,
            platform,
            usdc.functions.transferFrom(
                owner, Web3.to_checksum_address(recipient), amount_micro
            ),
        )

        tx_hash = bytes(receipt["transactionHash"]).hex()
        if receipt["status"] != 1:
            return PermitTransferResult(
                success=False, tx_hash=tx_hash, error="transferFrom reverted"
            )

        self._log.info(
            "permit_transfer_completed",
            tx_hash=tx_hash,
            block_number=receipt["blockNumber"],
            gas_used=receipt["gasUsed"],
        )
        return PermitTransferResult(success=True, tx_hash=tx_hash)

    async def _send(self, w3: Any, account: Any, call: Any) -> Any:
        """Build, sign and submit a contract call from account; wait for receipt."""

        def send():
            tx = call.build_transaction({
                "from": account.address,
                "nonce": w3.eth.get_transaction_count(account.address, "pending"),
                "chainId": self._chain_id,
            })
            signed = account.sign_transaction(tx)
            raw = getattr(signed, "raw_transaction", None) or signed.rawTransaction
            tx_hash = w3.eth.send_raw_transaction(raw)
            return w3.eth.wait_for_transaction_receipt(
                tx_hash, timeout=RECEIPT_TIMEOUT_SECONDS
            )

        receipt = await self._polygon.blocking(send)
        if receipt["status"] != 1 and call.fn_name == "permit":
            raise RuntimeError("permit() reverted")
        return receipt
