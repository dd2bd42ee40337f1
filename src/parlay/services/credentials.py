"""Credential Service - per-wallet exchange clients.

Trading on behalf of a user needs two things bound to their custodial
wallet: the signing key (from the keystore) and L2 API credentials. The
credentials are derived once through the exchange and cached in the
record store; later lookups never touch the exchange.
"""

import asyncio
from concurrent.futures import ThreadPoolExecutor
from typing import Optional

import structlog

from parlay.integrations.chain.keystore import KeystoreError, KeystoreSigner
from parlay.integrations.polymarket.clob import CLOBClient, CLOBClientError
from parlay.integrations.polymarket.types import ApiCredentials, PolymarketSettings
from parlay.services.record_store import RecordStore

log = structlog.get_logger()


class CredentialsError(Exception):
    """Trading credentials for a wallet could not be resolved."""

    pass


class CredentialService:
    """Resolves a connected CLOBClient for a wallet, deriving creds lazily."""

    def __init__(
        self,
        store: RecordStore,
        signer: Optional[KeystoreSigner],
        settings: PolymarketSettings,
        executor: Optional[ThreadPoolExecutor] = None,
    ):
        self._store = store
        self._signer = signer
        self._settings = settings
        self._executor = executor or ThreadPoolExecutor(max_workers=4)
        self._clients: dict[str, CLOBClient] = {}
        self._lock = asyncio.Lock()
        self._log = log.bind(component="credential_service")

    def private_key_for(self, wallet_address: str) -> str:
        """Raises CredentialsError if the wallet has no usable key."""
        if not wallet_address:
            raise CredentialsError("No wallet address on record")
        if self._signer is None:
            raise CredentialsError("No wallet signer configured")
        try:
            return self._signer.get_private_key(wallet_address)
        except KeystoreError as e:
            raise CredentialsError(str(e)) from e

    async def get_credentials(self, wallet_address: str) -> ApiCredentials:
        """Load cached API credentials or derive and cache them.

        Raises:
            CredentialsError: Missing wallet or derivation failure.
        """
        cached = await self._store.get_credentials(wallet_address)
        if cached:
            return ApiCredentials(**cached)

        private_key = self.private_key_for(wallet_address)
        self._log.info("deriving_api_credentials", wallet=wallet_address)
        deriving_client = CLOBClient(self._settings, private_key, executor=self._executor)
        try:
            await deriving_client.connect()
            creds = await deriving_client.derive_api_credentials()
        except CLOBClientError as e:
            raise CredentialsError(f"Failed to derive API credentials: {e}") from e
        finally:
            await deriving_client.close()

        await self._store.save_credentials(
            wallet_address,
            api_key=creds.api_key,
            api_secret=creds.api_secret,
            api_passphrase=creds.api_passphrase,
        )
        self._log.info("api_credentials_cached", wallet=wallet_address)
        return creds

    async def client_for(self, wallet_address: str) -> CLOBClient:
        """Connected exchange client trading for wallet_address.

        Raises:
            CredentialsError: If the wallet's credentials cannot be resolved.
        """
        key = (wallet_address or "").lower()
        async with self._lock:
            client = self._clients.get(key)
            if client is not None:
                return client

            creds = await self.get_credentials(wallet_address)
            client = CLOBClient(
                self._settings,
                self.private_key_for(wallet_address),
                credentials=creds,
                executor=self._executor,
            )
            try:
                await client.connect()
            except CLOBClientError as e:
                raise CredentialsError(str(e)) from e
            self._clients[key] = client
            return client

    async def close(self) -> None:
        for client in self._clients.values():
            await client.close()
        self._clients.clear()
