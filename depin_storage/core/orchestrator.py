"""
Buyer-side storage purchase orchestration.

A purchase is a linear pipeline of checkpoints. Each step reads fresh state,
returns a StepResult, and the pipeline stops at the first failed result.
Nothing proceeds past a failed checkpoint.

Pipeline Order:
1. Network check - signer is on the configured target chain
2. Liveness and capacity - provider is online and can serve the request
3. Balance - buyer holds enough payment tokens
4. Allowance - purchase contract may spend the required tokens
5. Reservation - conditional capacity decrement plus a capacity hold
6. Payment - purchase transaction submitted and confirmed on-chain
7. Commit - allocation record written, hold consumed

A failure after step 5 hands the held capacity back, unless the payment
transaction may still land (broadcast but unconfirmed), in which case the
hold stays until it ages out.
"""

import logging
import threading
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from .errors import (
    CapacityConflict,
    ChainError,
    ChainErrorReason,
    Checkpoint,
    ErrorKind,
    ProviderNotFound,
    PurchaseError,
    StoreError,
)
from .liveness import offline_reason
from .pricing import DEFAULT_TOKEN_DECIMALS, format_units, required_tokens
from depin_storage.config.loader import ChainConfig
from depin_storage.logging_config import log_event
from depin_storage.sdk.chain_client import PurchaseCall
from depin_storage.storage.models import (
    ALLOCATION_TERM,
    AllocationRecord,
    CapacityHold,
    ProviderRecord,
    utc_now,
)
from depin_storage.storage.repository import InventoryStore

logger = logging.getLogger(__name__)

PURCHASE_DURATION_SECONDS = int(ALLOCATION_TERM.total_seconds())
FALLBACK_PURCHASE_GAS = 300_000

_CHAIN_ERROR_KINDS = {
    ChainErrorReason.USER_REJECTED: ErrorKind.REJECTED,
    ChainErrorReason.NETWORK_MISMATCH: ErrorKind.CONNECTIVITY,
    ChainErrorReason.TIMEOUT: ErrorKind.CONNECTIVITY,
    ChainErrorReason.NETWORK_ERROR: ErrorKind.CONNECTIVITY,
    ChainErrorReason.CONTRACT_CALL: ErrorKind.CHAIN_EXECUTION,
}


@dataclass
class StepResult:
    """Outcome of one checkpoint."""
    error: Optional[PurchaseError] = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass
class PurchaseResult:
    """Outcome of a whole purchase attempt."""
    allocation: Optional[AllocationRecord] = None
    error: Optional[PurchaseError] = None
    decimals: int = DEFAULT_TOKEN_DECIMALS

    @property
    def ok(self) -> bool:
        return self.error is None and self.allocation is not None


@dataclass
class _PurchaseState:
    provider_id: str
    gb: int
    buyer: str
    provider: Optional[ProviderRecord] = None
    decimals: int = DEFAULT_TOKEN_DECIMALS
    required: int = 0
    hold: Optional[CapacityHold] = None
    release_on_abort: bool = False
    tx_hash: Optional[str] = None
    paid: bool = False
    allocation: Optional[AllocationRecord] = None


def _fail(
    kind: ErrorKind,
    checkpoint: Checkpoint,
    message: str,
    shortfall: Optional[int] = None,
    tx_hash: Optional[str] = None
) -> StepResult:
    return StepResult(PurchaseError(kind, checkpoint, message, shortfall=shortfall, tx_hash=tx_hash))


def _chain_failure(
    error: ChainError,
    checkpoint: Checkpoint,
    action: str,
    tx_hash: Optional[str] = None
) -> StepResult:
    kind = _CHAIN_ERROR_KINDS.get(error.reason, ErrorKind.CHAIN_EXECUTION)
    if error.reason == ChainErrorReason.USER_REJECTED:
        message = f"{action} rejected by user"
    elif error.reason == ChainErrorReason.NETWORK_MISMATCH:
        message = f"{action} failed: wrong network ({error})"
    elif error.reason == ChainErrorReason.TIMEOUT:
        message = f"{action} timed out"
    else:
        message = f"{action} failed: {error}"
    return _fail(kind, checkpoint, message, tx_hash=tx_hash or error.tx_hash)


def validate_quantity(gb) -> Optional[PurchaseError]:
    """Reject non-positive or fractional GB requests before any I/O."""
    if isinstance(gb, bool) or not isinstance(gb, int):
        return PurchaseError(
            ErrorKind.INVALID_REQUEST, Checkpoint.VALIDATION,
            f"requested GB must be a whole number, got {gb!r}"
        )
    if gb <= 0:
        return PurchaseError(
            ErrorKind.INVALID_REQUEST, Checkpoint.VALIDATION,
            f"requested GB must be positive, got {gb}"
        )
    return None


class PurchaseOrchestrator:
    """Runs storage purchases end to end against explicit capability objects.

    The chain client and inventory store are constructed once at process
    start and passed in. One orchestrator may serve many concurrent
    purchases; each call to purchase() keeps its state local.
    """

    def __init__(
        self,
        chain,
        store: InventoryStore,
        chain_config: ChainConfig,
        clock: Callable[[], datetime] = utc_now
    ):
        self.chain = chain
        self.store = store
        self.chain_config = chain_config
        self._clock = clock

    def purchase(
        self,
        provider_id: str,
        gb: int,
        cancel: Optional[threading.Event] = None
    ) -> PurchaseResult:
        """Buy ``gb`` gigabytes from a provider.

        Args:
            provider_id: Provider record identity
            gb: Requested capacity, positive integer
            cancel: Optional event; when set before payment starts the
                attempt is abandoned and held capacity is released

        Returns:
            PurchaseResult with the allocation, or the first checkpoint error
        """
        invalid = validate_quantity(gb)
        if invalid is not None:
            return self._abort(None, invalid)

        state = _PurchaseState(provider_id=provider_id, gb=gb, buyer=self.chain.address)
        steps = [
            (Checkpoint.NETWORK, self._check_network),
            (Checkpoint.LIVENESS, self._check_provider),
            (Checkpoint.BALANCE, self._check_balance),
            (Checkpoint.ALLOWANCE, self._ensure_allowance),
            (Checkpoint.RESERVATION, self._reserve_capacity),
            (Checkpoint.PAYMENT, self._submit_payment),
            (Checkpoint.COMMIT, self._commit_allocation),
        ]

        for checkpoint, step in steps:
            if cancel is not None and cancel.is_set() and not state.paid and state.tx_hash is None:
                return self._abort(state, PurchaseError(
                    ErrorKind.CANCELLED, checkpoint, "purchase cancelled by caller"
                ))
            try:
                result = step(state)
            except Exception as e:
                logger.exception("Unexpected failure at %s", checkpoint.value)
                result = self._unexpected(state, checkpoint, e)
            if not result.ok:
                return self._abort(state, result.error)
            log_event(logger, "purchase_checkpoint", level=logging.DEBUG,
                      checkpoint=checkpoint.name, provider_id=provider_id, gb=gb)

        log_event(logger, "purchase_completed", provider_id=provider_id, gb=gb,
                  tx_hash=state.tx_hash, allocation_id=state.allocation.id)
        return PurchaseResult(allocation=state.allocation, decimals=state.decimals)

    # -- checkpoints ---------------------------------------------------------

    def _check_network(self, state: _PurchaseState) -> StepResult:
        target = self.chain_config.chain_id
        try:
            active = self.chain.get_active_network()
            if active != target:
                logger.info("Signer on chain %s, switching to %s", active, target)
                self.chain.switch_network(target)
        except ChainError as e:
            return _chain_failure(e, Checkpoint.NETWORK, f"switch to {self.chain_config.chain_name}")
        return StepResult()

    def _check_provider(self, state: _PurchaseState) -> StepResult:
        try:
            provider = self.store.get_provider(state.provider_id)
        except ProviderNotFound:
            return _fail(ErrorKind.PROVIDER_UNAVAILABLE, Checkpoint.LIVENESS,
                         f"provider {state.provider_id} not found")
        except StoreError as e:
            return _fail(ErrorKind.CONNECTIVITY, Checkpoint.LIVENESS,
                         f"could not read provider status ({e})")

        reason = offline_reason(provider, self._clock())
        if reason is not None:
            return _fail(ErrorKind.PROVIDER_UNAVAILABLE, Checkpoint.LIVENESS, reason)

        if provider.available_storage < state.gb:
            return _fail(
                ErrorKind.INSUFFICIENT_RESOURCE, Checkpoint.LIVENESS,
                f"insufficient capacity: requested {state.gb} GB, "
                f"provider has {provider.available_storage} GB",
                shortfall=state.gb - provider.available_storage
            )

        state.provider = provider
        return StepResult()

    def _check_balance(self, state: _PurchaseState) -> StepResult:
        try:
            state.decimals = self.chain.get_token_decimals()
        except ChainError as e:
            logger.warning("Token decimals unavailable (%s), assuming %d",
                           e, DEFAULT_TOKEN_DECIMALS)
            state.decimals = DEFAULT_TOKEN_DECIMALS

        state.required = required_tokens(state.provider.price_per_gb, state.gb, state.decimals)

        try:
            balance = self.chain.get_token_balance(state.buyer)
        except ChainError as e:
            return _chain_failure(e, Checkpoint.BALANCE, "token balance check")

        if balance < state.required:
            shortfall = state.required - balance
            return _fail(
                ErrorKind.INSUFFICIENT_RESOURCE, Checkpoint.BALANCE,
                f"insufficient token balance: need {format_units(state.required, state.decimals)}, "
                f"have {format_units(balance, state.decimals)}, "
                f"short by {format_units(shortfall, state.decimals)} tokens",
                shortfall=shortfall
            )
        return StepResult()

    def _ensure_allowance(self, state: _PurchaseState) -> StepResult:
        spender = self.chain_config.storage_contract_address
        try:
            allowance = self.chain.get_allowance(state.buyer, spender)
        except ChainError as e:
            return _chain_failure(e, Checkpoint.ALLOWANCE, "token allowance check")

        if allowance >= state.required:
            return StepResult()

        try:
            tx_hash = self.chain.approve(spender, state.required)
        except ChainError as e:
            return _chain_failure(e, Checkpoint.ALLOWANCE, "token approval")

        try:
            receipt = self.chain.wait_for_confirmation(tx_hash)
        except ChainError as e:
            return _chain_failure(e, Checkpoint.ALLOWANCE, "approval confirmation", tx_hash=tx_hash)

        if not receipt.succeeded:
            return _fail(ErrorKind.CHAIN_EXECUTION, Checkpoint.ALLOWANCE,
                         f"approval transaction {tx_hash} failed", tx_hash=tx_hash)
        return StepResult()

    def _reserve_capacity(self, state: _PurchaseState) -> StepResult:
        try:
            current = self.store.get_provider(state.provider_id)
        except StoreError as e:
            return _fail(ErrorKind.CONNECTIVITY, Checkpoint.RESERVATION,
                         f"could not re-read provider capacity ({e})")

        if current.available_storage < state.gb:
            return _fail(
                ErrorKind.CONFLICT, Checkpoint.RESERVATION,
                f"capacity no longer available: {current.available_storage} GB left, "
                f"{state.gb} GB requested",
                shortfall=state.gb - current.available_storage
            )

        hold = CapacityHold(
            id=str(uuid.uuid4()),
            provider_id=state.provider_id,
            buyer_address=state.buyer,
            gb=state.gb,
            created_at=self._clock()
        )
        try:
            self.store.conditional_update_capacity(
                state.provider_id,
                expected_current=current.available_storage,
                new_value=current.available_storage - state.gb,
                hold=hold
            )
        except CapacityConflict:
            return _fail(ErrorKind.CONFLICT, Checkpoint.RESERVATION,
                         "capacity changed concurrently, re-check the provider and retry")
        except StoreError as e:
            return _fail(ErrorKind.CONNECTIVITY, Checkpoint.RESERVATION,
                         f"capacity reservation failed ({e})")

        state.hold = hold
        state.release_on_abort = True
        return StepResult()

    def _submit_payment(self, state: _PurchaseState) -> StepResult:
        call = PurchaseCall(
            provider_address=state.provider.wallet_address,
            gb=state.gb,
            token_amount=state.required,
            duration_seconds=PURCHASE_DURATION_SECONDS
        )
        try:
            gas_limit = self.chain.estimate_gas(call)
        except ChainError as e:
            logger.warning("Gas estimation failed (%s), using %d", e, FALLBACK_PURCHASE_GAS)
            gas_limit = FALLBACK_PURCHASE_GAS

        # From here on the payment may land; keep the hold unless proven otherwise
        state.release_on_abort = False
        try:
            state.tx_hash = self.chain.submit_purchase(
                call.provider_address, call.gb, call.token_amount,
                call.duration_seconds, gas_limit=gas_limit
            )
        except ChainError as e:
            # A timeout or dropped connection may follow a broadcast
            state.release_on_abort = e.reason not in (ChainErrorReason.TIMEOUT, ChainErrorReason.NETWORK_ERROR)
            return _chain_failure(e, Checkpoint.PAYMENT, "purchase submission")

        try:
            receipt = self.chain.wait_for_confirmation(state.tx_hash)
        except ChainError as e:
            return _fail(
                ErrorKind.CHAIN_EXECUTION, Checkpoint.PAYMENT,
                f"confirmation of {state.tx_hash} failed ({e}); "
                f"capacity stays reserved until the outcome is known",
                tx_hash=state.tx_hash
            )

        if not receipt.succeeded:
            state.release_on_abort = True
            return _fail(ErrorKind.CHAIN_EXECUTION, Checkpoint.PAYMENT,
                         f"purchase transaction {state.tx_hash} reverted",
                         tx_hash=state.tx_hash)

        state.paid = True
        return StepResult()

    def _commit_allocation(self, state: _PurchaseState) -> StepResult:
        now = self._clock()
        record = AllocationRecord(
            id=str(uuid.uuid4()),
            user_address=state.buyer,
            provider_id=state.provider_id,
            allocated_gb=state.gb,
            paid_amount=state.required,
            transaction_hash=state.tx_hash,
            expires_at=now + ALLOCATION_TERM,
            created_at=now
        )
        try:
            state.allocation = self.store.insert_allocation(record, hold_id=state.hold.id)
        except StoreError as e:
            return _fail(
                ErrorKind.POST_PAYMENT_INCONSISTENCY, Checkpoint.COMMIT,
                f"payment {state.tx_hash} confirmed but the allocation record could not "
                f"be written ({e}); reconcile before retrying",
                tx_hash=state.tx_hash
            )
        return StepResult()

    # -- abort handling ------------------------------------------------------

    def _unexpected(self, state: _PurchaseState, checkpoint: Checkpoint, error: Exception) -> StepResult:
        if state.paid:
            return _fail(ErrorKind.POST_PAYMENT_INCONSISTENCY, checkpoint,
                         f"payment {state.tx_hash} confirmed but commit failed unexpectedly ({error})",
                         tx_hash=state.tx_hash)
        return _fail(ErrorKind.CONNECTIVITY, checkpoint,
                     f"unexpected error ({error})", tx_hash=state.tx_hash)

    def _abort(self, state: Optional[_PurchaseState], error: PurchaseError) -> PurchaseResult:
        if state is not None and state.hold is not None and state.release_on_abort:
            self._release(state.hold)

        if error.kind == ErrorKind.POST_PAYMENT_INCONSISTENCY:
            log_event(logger, "post_payment_inconsistency", level=logging.CRITICAL,
                      provider_id=state.provider_id, buyer=state.buyer, gb=state.gb,
                      paid_amount=str(state.required), tx_hash=error.tx_hash)
        else:
            level = logging.WARNING if error.kind in (
                ErrorKind.CHAIN_EXECUTION, ErrorKind.CONNECTIVITY
            ) else logging.INFO
            logger.log(level, "Purchase aborted: %s", error)
        return PurchaseResult(error=error)

    def _release(self, hold: CapacityHold) -> None:
        try:
            self.store.release_capacity(hold)
            log_event(logger, "capacity_released", provider_id=hold.provider_id,
                      gb=hold.gb, hold_id=hold.id)
        except StoreError as e:
            # Hold ages out of the tracker's accounting after HOLD_TTL
            logger.error("Could not release hold %s: %s", hold.id, e)
