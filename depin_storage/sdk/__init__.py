"""
Capability adapters for external systems.

Provides the chain client and the content-network daemon client.
"""

from .chain_client import PurchaseCall, TxReceipt, Web3ChainClient
from .ipfs_client import IpfsDaemon

__all__ = ["IpfsDaemon", "PurchaseCall", "TxReceipt", "Web3ChainClient"]
