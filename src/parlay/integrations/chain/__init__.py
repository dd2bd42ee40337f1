# Chain Interactions
# Polygon/Web3 lookups, custodial keystores and permit-based USDC transfers

from parlay.integrations.chain.client import (
    USDC_ADDRESS,
    PolygonClient,
    PolygonClientError,
    TransferLog,
)
from parlay.integrations.chain.keystore import KeystoreError, KeystoreSigner
from parlay.integrations.chain.permit import (
    PermitSignature,
    PermitTransfer,
    PermitTransferResult,
    sign_permit,
)

__all__ = [
    "USDC_ADDRESS",
    "PolygonClient",
    "PolygonClientError",
    "TransferLog",
    "KeystoreError",
    "KeystoreSigner",
    "PermitSignature",
    "PermitTransfer",
    "PermitTransferResult",
    "sign_permit",
]
