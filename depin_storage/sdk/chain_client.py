"""
Chain client: payment token and storage purchase contracts.

Wraps web3.py behind a small capability surface. Every web3 or transport
failure is translated into a ChainError with a distinguishable reason, so
callers never handle raw RPC exceptions.
"""

import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

import requests
from eth_account import Account
from web3 import Web3
from web3.exceptions import ContractLogicError, TimeExhausted

from ..config.loader import ChainConfig
from ..core.errors import ChainError, ChainErrorReason

logger = logging.getLogger(__name__)

# JSON-RPC error code for a user-declined wallet request (EIP-1193)
USER_REJECTED_CODE = 4001

GAS_BUFFER_NUMERATOR = 12
GAS_BUFFER_DENOMINATOR = 10
FALLBACK_APPROVE_GAS = 100_000

ERC20_ABI = [
    {
        "name": "balanceOf", "type": "function", "stateMutability": "view",
        "inputs": [{"name": "account", "type": "address"}],
        "outputs": [{"name": "", "type": "uint256"}],
    },
    {
        "name": "decimals", "type": "function", "stateMutability": "view",
        "inputs": [],
        "outputs": [{"name": "", "type": "uint8"}],
    },
    {
        "name": "allowance", "type": "function", "stateMutability": "view",
        "inputs": [
            {"name": "owner", "type": "address"},
            {"name": "spender", "type": "address"},
        ],
        "outputs": [{"name": "", "type": "uint256"}],
    },
    {
        "name": "approve", "type": "function", "stateMutability": "nonpayable",
        "inputs": [
            {"name": "spender", "type": "address"},
            {"name": "value", "type": "uint256"},
        ],
        "outputs": [{"name": "", "type": "bool"}],
    },
]

STORAGE_ABI = [
    {
        "name": "purchaseStorage", "type": "function", "stateMutability": "nonpayable",
        "inputs": [
            {"name": "provider", "type": "address"},
            {"name": "storageAmount", "type": "uint256"},
            {"name": "tokenAmount", "type": "uint256"},
            {"name": "duration", "type": "uint256"},
        ],
        "outputs": [{"name": "", "type": "bool"}],
    },
    {
        "name": "StoragePurchased", "type": "event", "anonymous": False,
        "inputs": [
            {"name": "user", "type": "address", "indexed": True},
            {"name": "provider", "type": "address", "indexed": True},
            {"name": "amount", "type": "uint256", "indexed": False},
        ],
    },
]


@dataclass(frozen=True)
class PurchaseCall:
    """Arguments of one purchaseStorage invocation."""
    provider_address: str
    gb: int
    token_amount: int
    duration_seconds: int


@dataclass(frozen=True)
class TxReceipt:
    tx_hash: str
    status: int
    block_number: Optional[int] = None
    gas_used: Optional[int] = None

    @property
    def succeeded(self) -> bool:
        return self.status == 1


def _rpc_error_code(exc: Exception) -> Optional[int]:
    response = getattr(exc, "rpc_response", None)
    if isinstance(response, dict) and isinstance(response.get("error"), dict):
        return response["error"].get("code")
    if exc.args and isinstance(exc.args[0], dict):
        return exc.args[0].get("code")
    return None


def translate_error(exc: Exception, action: str) -> ChainError:
    """Map a web3/transport exception onto a ChainError reason."""
    if isinstance(exc, ChainError):
        return exc
    if _rpc_error_code(exc) == USER_REJECTED_CODE:
        return ChainError(ChainErrorReason.USER_REJECTED, f"{action}: request rejected by user")
    if isinstance(exc, (TimeExhausted, requests.exceptions.Timeout, TimeoutError)):
        return ChainError(ChainErrorReason.TIMEOUT, f"{action}: timed out")
    if isinstance(exc, ContractLogicError):
        return ChainError(ChainErrorReason.CONTRACT_CALL, f"{action}: contract call reverted ({exc})")
    if isinstance(exc, (requests.exceptions.ConnectionError, ConnectionError)):
        return ChainError(ChainErrorReason.NETWORK_ERROR, f"{action}: network error ({exc})")
    return ChainError(ChainErrorReason.CONTRACT_CALL, f"{action}: {exc}")


class Web3ChainClient:
    """Signer-bound access to the payment token and purchase contracts.

    Constructed once at process start and passed to the purchase
    orchestrator. Transactions are signed locally; ``confirm`` plays the
    role of the wallet prompt and may decline any transaction.
    """

    def __init__(
        self,
        config: ChainConfig,
        private_key: str,
        confirm: Optional[Callable[[str], bool]] = None,
        rpc_url: Optional[str] = None,
        web3: Optional[Web3] = None
    ):
        """Initialize the chain client.

        Args:
            config: Target network and contract addresses
            private_key: Hex private key of the buyer's signer
            confirm: Prompt callback; returning False rejects the transaction
            rpc_url: RPC the signer is currently connected to (defaults to the target)
            web3: Preconstructed Web3 instance (tests inject a mock)
        """
        if not private_key or not private_key.strip():
            raise ValueError("private_key is required and cannot be empty")
        key = private_key.strip()
        if not key.startswith("0x"):
            key = f"0x{key}"

        self.config = config
        self.account = Account.from_key(key)
        self.address = self.account.address
        self._confirm = confirm
        self._networks: Dict[int, ChainConfig] = {}
        self.w3 = web3 or Web3(self._http_provider(rpc_url or config.rpc_url))

        self.token = self.w3.eth.contract(
            address=Web3.to_checksum_address(config.token_address), abi=ERC20_ABI
        )
        self.storage = self.w3.eth.contract(
            address=Web3.to_checksum_address(config.storage_contract_address), abi=STORAGE_ABI
        )

    def _http_provider(self, rpc_url: str):
        return Web3.HTTPProvider(rpc_url, request_kwargs={"timeout": self.config.request_timeout})

    def _guarded(self, action: str, fn: Callable[[], Any]) -> Any:
        try:
            return fn()
        except Exception as e:
            error = translate_error(e, action)
            logger.debug("Chain call failed: %s (%s)", action, error.reason.name)
            raise error from e

    # -- network -----------------------------------------------------------

    def get_active_network(self) -> int:
        return self._guarded("read active network", lambda: int(self.w3.eth.chain_id))

    def add_network(self, network: ChainConfig) -> None:
        """Register a network with the signer, like wallet_addEthereumChain."""
        logger.info("Registering network %s (%d)", network.chain_name, network.chain_id)
        self._networks[network.chain_id] = network

    def switch_network(self, chain_id: int) -> None:
        """Point the signer at ``chain_id``, registering the target if unknown.

        Raises:
            ChainError: NETWORK_MISMATCH if the network is unknown or the RPC
                reports a different chain after switching
        """
        if chain_id not in self._networks:
            if chain_id != self.config.chain_id:
                raise ChainError(
                    ChainErrorReason.NETWORK_MISMATCH, f"Unknown network {chain_id}"
                )
            self.add_network(self.config)

        if self._confirm is not None and not self._confirm(
            f"Switch to network {self._networks[chain_id].chain_name} ({chain_id})?"
        ):
            raise ChainError(ChainErrorReason.USER_REJECTED, "network switch rejected by user")

        self.w3.provider = self._http_provider(self._networks[chain_id].rpc_url)
        active = self.get_active_network()
        if active != chain_id:
            raise ChainError(
                ChainErrorReason.NETWORK_MISMATCH,
                f"RPC reports chain {active} after switching to {chain_id}"
            )

    # -- token reads -------------------------------------------------------

    def get_token_balance(self, address: str) -> int:
        owner = Web3.to_checksum_address(address)
        return self._guarded(
            "read token balance",
            lambda: int(self.token.functions.balanceOf(owner).call())
        )

    def get_token_decimals(self) -> int:
        return self._guarded(
            "read token decimals",
            lambda: int(self.token.functions.decimals().call())
        )

    def get_allowance(self, owner: str, spender: str) -> int:
        owner_address = Web3.to_checksum_address(owner)
        spender_address = Web3.to_checksum_address(spender)
        return self._guarded(
            "read token allowance",
            lambda: int(self.token.functions.allowance(owner_address, spender_address).call())
        )

    # -- transactions ------------------------------------------------------

    def approve(self, spender: str, amount: int) -> str:
        """Submit an approval for exactly ``amount`` base units; returns the tx hash."""
        fn = self.token.functions.approve(Web3.to_checksum_address(spender), amount)
        try:
            gas_limit = self._buffered(self._guarded(
                "estimate approval gas", lambda: fn.estimate_gas({"from": self.address})
            ))
        except ChainError:
            gas_limit = FALLBACK_APPROVE_GAS
        return self._send(fn, gas_limit, f"Approve {amount} token units for {spender}?")

    def estimate_gas(self, call: PurchaseCall) -> int:
        """Gas estimate for a purchase, with a 20% buffer."""
        fn = self._purchase_fn(call)
        estimate = self._guarded(
            "estimate purchase gas", lambda: fn.estimate_gas({"from": self.address})
        )
        return self._buffered(estimate)

    def submit_purchase(
        self,
        provider: str,
        gb: int,
        amount: int,
        duration_seconds: int,
        gas_limit: int
    ) -> str:
        """Submit purchaseStorage; returns the transaction hash."""
        call = PurchaseCall(
            provider_address=provider,
            gb=gb,
            token_amount=amount,
            duration_seconds=duration_seconds
        )
        return self._send(
            self._purchase_fn(call),
            gas_limit,
            f"Purchase {gb} GB from {provider} for {amount} token units?"
        )

    def wait_for_confirmation(self, tx_hash: str) -> TxReceipt:
        """Block until the transaction is mined or the timeout elapses."""
        receipt = self._guarded(
            f"wait for {tx_hash}",
            lambda: self.w3.eth.wait_for_transaction_receipt(
                tx_hash, timeout=self.config.confirmation_timeout
            )
        )
        return TxReceipt(
            tx_hash=tx_hash,
            status=int(receipt["status"]),
            block_number=receipt.get("blockNumber"),
            gas_used=receipt.get("gasUsed")
        )

    def _purchase_fn(self, call: PurchaseCall):
        return self.storage.functions.purchaseStorage(
            Web3.to_checksum_address(call.provider_address),
            call.gb,
            call.token_amount,
            call.duration_seconds
        )

    @staticmethod
    def _buffered(estimate: int) -> int:
        return int(estimate) * GAS_BUFFER_NUMERATOR // GAS_BUFFER_DENOMINATOR

    def _send(self, fn, gas_limit: int, description: str) -> str:
        if self._confirm is not None and not self._confirm(description):
            raise ChainError(ChainErrorReason.USER_REJECTED, "transaction rejected by user")

        def _sign_and_send() -> str:
            tx = fn.build_transaction({
                "from": self.address,
                "nonce": self.w3.eth.get_transaction_count(self.address, "pending"),
                "gas": gas_limit,
                "chainId": self.config.chain_id,
            })
            signed = self.account.sign_transaction(tx)
            return Web3.to_hex(self.w3.eth.send_raw_transaction(signed.raw_transaction))

        tx_hash = self._guarded("submit transaction", _sign_and_send)
        logger.info("Submitted transaction %s", tx_hash)
        return tx_hash
