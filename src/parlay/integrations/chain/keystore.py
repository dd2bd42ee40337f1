"""Custodial signing keys from eth-account keystore files.

Each user wallet has an encrypted keystore JSON (Web3 Secret Storage) in one
directory. The file name is free-form; the wallet is identified by the
file's "address" field.
"""

import json
from pathlib import Path
from typing import Optional

import structlog

log = structlog.get_logger()


class KeystoreError(Exception):
    """No keystore for the wallet, or it could not be decrypted."""

    pass


def _normalize(address: str) -> str:
    address = address.lower()
    return address[2:] if address.startswith("0x") else address


class KeystoreSigner:
    """Looks up and decrypts a wallet's private key."""

    def __init__(self, keystore_dir: str, password: str):
        self._dir = Path(keystore_dir)
        self._password = password
        self._index: Optional[dict[str, Path]] = None
        self._log = log.bind(component="keystore_signer")

    def _build_index(self) -> dict[str, Path]:
        index: dict[str, Path] = {}
        if not self._dir.is_dir():
            self._log.warning("keystore_dir_missing", path=str(self._dir))
            return index
        for path in sorted(self._dir.glob("*.json")):
            try:
                data = json.loads(path.read_text())
            except (OSError, ValueError) as e:
                self._log.warning("keystore_unreadable", path=str(path), error=str(e))
                continue
            address = data.get("address")
            if address:
                index[_normalize(address)] = path
        return index

    def has_wallet(self, address: str) -> bool:
        if self._index is None:
            self._index = self._build_index()
        return _normalize(address) in self._index

    def get_private_key(self, address: str) -> str:
        """Decrypt and return the wallet's private key as 0x-prefixed hex.

        Raises:
            KeystoreError: If the wallet is unknown or decryption fails.
        """
        from eth_account import Account

        if not self.has_wallet(address):
            # A keystore may have been added since the index was built
            self._index = self._build_index()
        path = (self._index or {}).get(_normalize(address))
        if path is None:
            raise KeystoreError(f"No wallet found for {address}")

        try:
            key = Account.decrypt(json.loads(path.read_text()), self._password)
        except Exception as e:
            raise KeystoreError(f"Failed to sign: cannot unlock wallet {address}: {e}") from e
        return "0x" + bytes(key).hex()
