"""
Order execution engine.

The engine owns the order store, the execution queue and the statistics, and
is the only code that mutates them. A single asyncio task services the queue
head-first, so at most one transaction is in flight and orders are attempted
in the order they were accepted. Orders that fail transiently go back to the
tail of the queue until their retry budget is spent.
"""

import asyncio
import base64
import inspect
import time
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Union

import pydantic
from mcp.server.fastmcp.utilities.logging import get_logger
from solders.compute_budget import set_compute_unit_price
from solders.keypair import Keypair
from solders.message import Message
from solders.pubkey import Pubkey
from solders.transaction import Transaction
from spl.token.instructions import get_associated_token_address

from continuum_relayer.config import LAMPORTS_PER_SOL, RelayerConfig
from continuum_relayer.errors import (
    DuplicateSubmissionError,
    ExecutionError,
    InstructionBuildError,
    InvalidState,
    MissingPayload,
    NotOrderOwner,
    OrderNotFound,
    SettlementError,
    SubmissionRejected,
    TransientSubmissionError,
    ValidationError,
)
from continuum_relayer.instructions import InstructionBuilder, SwapInstructionRequest
from continuum_relayer.ledger import LedgerClient
from continuum_relayer.models import (
    CreateOrderParams,
    CreateOrderResult,
    ExecutionReport,
    Order,
    OrderResult,
    OrderStatus,
    OrderSubmission,
    PoolInfo,
    Statistics,
)
from continuum_relayer.stats import StatisticsAggregator
from continuum_relayer.store import ExecutionQueue, OrderStore

logger = get_logger(__name__)

DUPLICATE_DIAGNOSTIC = (
    "Transaction already processed - likely broadcast outside the relayer "
    "(e.g. a wallet auto-broadcast of the signed transaction). "
    "Frontends should hand the signed transaction to the relayer only."
)


class OrderEvent(str, Enum):
    ORDER_EXECUTED = "order_executed"
    ORDER_FAILED = "order_failed"


Listener = Callable[..., Any]


class RelayerEngine:
    def __init__(
        self,
        ledger: LedgerClient,
        relayer_keypair: Keypair,
        config: Optional[RelayerConfig] = None,
        instruction_builder: Optional[InstructionBuilder] = None,
        store: Optional[OrderStore] = None,
    ):
        self.ledger = ledger
        self.relayer_keypair = relayer_keypair
        self.config = config or RelayerConfig()
        self.instruction_builder = instruction_builder
        self.store = store or OrderStore(self.config.order_store_file)
        self.queue = ExecutionQueue()
        self.stats = StatisticsAggregator()
        self.continuum_program_id = Pubkey.from_string(self.config.continuum_program_id)
        self._listeners: Dict[OrderEvent, List[Listener]] = {event: [] for event in OrderEvent}
        self._in_flight: Optional[str] = None
        self._running = False
        self._task: Optional[asyncio.Task] = None
        self._wake = asyncio.Event()
        # Held for the whole of an execution so at most one order is in flight
        self._execution_lock = asyncio.Lock()
        self._restore()

    def _restore(self) -> None:
        self.store.load()
        for order in self.store.pending_queued():
            self.queue.push(order.order_id)
            self.stats.record_accepted()
        if len(self.queue):
            logger.info(f"Requeued {len(self.queue)} pending orders from the order store")

    # --- Lifecycle ---

    @property
    def is_running(self) -> bool:
        return self._running

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._execution_loop())
        logger.info("Relayer engine started")

    async def stop(self) -> None:
        """Stops the loop once the order currently in flight has finished."""
        if not self._running:
            return
        self._running = False
        self._wake.set()
        if self._task is not None:
            await self._task
            self._task = None
        logger.info("Relayer engine stopped")

    async def _execution_loop(self) -> None:
        while self._running:
            if await self.execute_next() is not None:
                continue
            try:
                await asyncio.wait_for(self._wake.wait(), timeout=self.config.idle_poll_interval)
            except asyncio.TimeoutError:
                pass # Idle interval elapsed with nothing queued
            self._wake.clear()

    # --- Notifications ---

    def add_listener(self, event: OrderEvent, callback: Listener) -> None:
        """
        Registers a callback for an order event. ``order_executed`` callbacks get
        ``(order_id, ExecutionReport)``; ``order_failed`` callbacks get
        ``(order_id, ExecutionError)``. Coroutine callbacks are awaited.
        """
        self._listeners[OrderEvent(event)].append(callback)

    def remove_listener(self, event: OrderEvent, callback: Listener) -> None:
        listeners = self._listeners[OrderEvent(event)]
        if callback in listeners:
            listeners.remove(callback)

    async def _emit(self, event: OrderEvent, *args: Any) -> None:
        for callback in list(self._listeners[event]):
            try:
                result = callback(*args)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.exception(f"Listener for {event.value} raised: {e}")

    # --- Submission ---

    def _order_reference(self, user_public_key: str, sequence: int) -> str:
        reference, _ = Pubkey.find_program_address(
            [b"order", bytes(Pubkey.from_string(user_public_key)), sequence.to_bytes(8, "little")],
            self.continuum_program_id,
        )
        return str(reference)

    async def submit_order(self, params: Union[OrderSubmission, Dict[str, Any]]) -> OrderResult:
        """Accepts an order for relayed execution and appends it to the queue."""
        try:
            submission = params if isinstance(params, OrderSubmission) else OrderSubmission.model_validate(params)
        except pydantic.ValidationError as e:
            raise ValidationError(f"Invalid order submission: {e}") from e
        if len(self.queue) >= self.config.max_pending_orders:
            raise ValidationError(
                f"Relayer queue is full ({self.config.max_pending_orders} pending orders), try again later."
            )

        if submission.payload is None:
            logger.warning(f"No transaction provided for order from {submission.user_public_key} on pool {submission.pool_id}")
        else:
            logger.debug(f"Received {submission.payload.kind} transaction from {submission.user_public_key}")

        # No awaits from here on: the scheduler must never see a half-recorded order
        order = Order(sequence=self.store.next_sequence(), **submission.model_dump())
        self.store.add(order)
        self.queue.push(order.order_id)
        self.stats.record_accepted()
        self.store.save()
        self._wake.set()

        logger.info(f"Order {order.order_id} submitted with sequence {order.sequence} for pool {order.pool_id}")
        return OrderResult(
            order_id=order.order_id,
            order_reference=self._order_reference(order.user_public_key, order.sequence),
            sequence=order.sequence,
            estimated_execution_time_ms=self.config.estimated_execution_time_ms,
            fee_lamports=self.config.relayer_fee_lamports,
        )

    async def create_order_transaction(self, params: Union[CreateOrderParams, Dict[str, Any]]) -> CreateOrderResult:
        """
        Builds an unsigned swap transaction for the user to sign and broadcast
        themselves. The order is recorded for tracking but never queued.
        """
        try:
            request = params if isinstance(params, CreateOrderParams) else CreateOrderParams.model_validate(params)
        except pydantic.ValidationError as e:
            raise ValidationError(f"Invalid order parameters: {e}") from e

        pool = self.config.get_pool(request.pool_id)
        if self.instruction_builder is None:
            raise InstructionBuildError("No instruction builder configured")
        logger.debug(f"Pool configuration found for {pool.pool_id}: {pool.token_a_symbol}/{pool.token_b_symbol}")

        user = Pubkey.from_string(request.user_public_key)
        user_token_a = (
            Pubkey.from_string(request.user_token_a) if request.user_token_a
            else get_associated_token_address(user, Pubkey.from_string(pool.token_a_mint))
        )
        user_token_b = (
            Pubkey.from_string(request.user_token_b) if request.user_token_b
            else get_associated_token_address(user, Pubkey.from_string(pool.token_b_mint))
        )
        source, destination = (user_token_a, user_token_b) if request.is_base_input else (user_token_b, user_token_a)
        swap_request = SwapInstructionRequest(
            user=user,
            amount_in=request.amount_in,
            min_amount_out=request.min_amount_out,
            is_base_input=request.is_base_input,
            user_source_token=source,
            user_destination_token=destination,
        )
        try:
            swap_ix = self.instruction_builder.build_swap(pool, swap_request)
        except (ValueError, TypeError, KeyError) as e:
            raise InstructionBuildError(f"Failed to build swap instruction: {e}") from e

        instructions = [swap_ix]
        if self.config.priority_fee_micro_lamports > 0:
            instructions.append(set_compute_unit_price(self.config.priority_fee_micro_lamports))

        blockhash = await self.ledger.latest_blockhash()
        message = Message.new_with_blockhash(instructions, user, blockhash)
        transaction = Transaction.new_unsigned(message)
        required_signers = list(message.account_keys[: message.header.num_required_signatures])
        requires_relayer_signature = self.relayer_keypair.pubkey() in required_signers
        if requires_relayer_signature:
            transaction.partial_sign([self.relayer_keypair], blockhash)
        transaction_base64 = base64.b64encode(bytes(transaction)).decode("ascii")

        order = Order(
            sequence=self.store.next_sequence(),
            execution_mode="external",
            **request.model_dump(exclude={"user_token_a", "user_token_b"}),
        )
        self.store.add(order)
        self.stats.record_accepted()
        self.store.save()

        logger.info(
            f"Transaction created for order {order.order_id} (sequence {order.sequence}, "
            f"relayer signed: {requires_relayer_signature}, {len(transaction_base64)} bytes base64)"
        )
        return CreateOrderResult(
            order_id=order.order_id,
            order_reference=self._order_reference(order.user_public_key, order.sequence),
            sequence=order.sequence,
            estimated_execution_time_ms=self.config.estimated_execution_time_ms,
            fee_lamports=self.config.relayer_fee_lamports,
            transaction_base64=transaction_base64,
        )

    # --- Queries ---

    def get_order_status(self, order_id: str) -> Optional[Order]:
        """Returns a snapshot of the order; changing it does not touch the store."""
        order = self.store.get(order_id)
        return order.model_copy(deep=True) if order is not None else None

    async def cancel_order(self, order_id: str, owner: Optional[str] = None) -> Order:
        order = self.store.get(order_id)
        if order is None:
            raise OrderNotFound(f"Order {order_id} not found")
        if owner is not None and owner != order.user_public_key:
            raise NotOrderOwner(f"You ({owner}) are not the owner of order {order_id}.")
        if order.status is not OrderStatus.PENDING:
            raise InvalidState(f"Can only cancel pending orders; order {order_id} is {order.status.value}")
        if order_id == self._in_flight:
            raise InvalidState(f"Order {order_id} is being executed and can no longer be cancelled")

        self.queue.remove(order_id)
        order.status = OrderStatus.CANCELLED
        self.store.save()
        logger.info(f"Cancelled order {order_id}")
        return order.model_copy(deep=True)

    def get_success_rate(self) -> float:
        return self.stats.success_rate()

    def get_avg_execution_time(self) -> float:
        return self.stats.avg_execution_time_ms()

    def get_total_orders(self) -> int:
        return self.stats.total_orders

    async def get_statistics(self) -> Statistics:
        balance = await self.ledger.get_balance(self.relayer_keypair.pubkey())
        return Statistics(
            total_orders=self.stats.total_orders,
            successful_orders=self.stats.successful_orders,
            failed_orders=self.stats.failed_orders,
            success_rate=self.stats.success_rate(),
            avg_execution_time_ms=self.stats.avg_execution_time_ms(),
            pending_orders=len(self.queue),
            relayer_balance_lamports=balance,
            relayer_balance=balance / LAMPORTS_PER_SOL,
        )

    def get_supported_pools(self) -> List[str]:
        return [pool.pool_id for pool in self.config.pools]

    def get_supported_pools_with_info(self) -> List[PoolInfo]:
        return [
            PoolInfo(
                pool_id=pool.pool_id,
                token0=pool.token_a_mint,
                token1=pool.token_b_mint,
                fee=self.config.pool_fee_rate,
            )
            for pool in self.config.pools
        ]

    # --- Execution ---

    async def execute_next(self) -> Optional[str]:
        """Removes the queue head and executes it. Returns its id, or None if the queue was empty."""
        async with self._execution_lock:
            order_id = self.queue.pop()
            if order_id is None:
                return None
            await self._execute(order_id)
            return order_id

    async def execute_order(self, order_id: str) -> Optional[Order]:
        """
        Executes a specific queued order out of turn, taking it out of the queue
        first. Waits for any execution already in flight to finish.
        """
        async with self._execution_lock:
            order = self.store.get(order_id)
            if order is None:
                raise OrderNotFound(f"Order {order_id} not found")
            if order.execution_mode != "queued":
                raise InvalidState(f"Order {order_id} is broadcast by its owner and is not executed by the relayer")
            self.queue.remove(order_id)
            await self._execute(order_id)
        return self.get_order_status(order_id)

    async def _execute(self, order_id: str) -> None:
        order = self.store.get(order_id)
        if order is None or order.status is not OrderStatus.PENDING:
            logger.debug(f"Skipping order {order_id}: not pending")
            return

        self._in_flight = order_id
        start = time.monotonic()
        logger.info(
            f"Executing order {order_id} (sequence {order.sequence}, user {order.user_public_key}, "
            f"pool {order.pool_id}, amount_in {order.amount_in})"
        )
        try:
            signature = await self._submit_and_confirm(order)
        except ExecutionError as e:
            await self._handle_failure(order, e, start)
        except Exception as e:
            logger.exception(f"Unexpected error executing order {order_id}: {e}")
            await self._handle_failure(order, SubmissionRejected(str(e) or type(e).__name__), start)
        else:
            await self._handle_success(order, signature, start)
        finally:
            self._in_flight = None

    async def _submit_and_confirm(self, order: Order) -> str:
        if order.payload is None:
            raise MissingPayload("No transaction found in order - user must provide signed transaction")

        payload = order.payload.co_sign(self.relayer_keypair)
        if payload is not order.payload:
            logger.info(f"Added relayer signature to order {order.order_id}")
        missing = payload.missing_signers()
        if missing:
            logger.warning(f"Order {order.order_id} is missing signatures from {[str(k) for k in missing]}")

        logger.info(f"Sending pre-signed {payload.kind} transaction for order {order.order_id}")
        try:
            signature = await asyncio.wait_for(
                self.ledger.submit(payload),
                timeout=self.config.submission_timeout,
            )
        except asyncio.TimeoutError as e:
            raise TransientSubmissionError(
                f"Submission of order {order.order_id} timed out after {self.config.submission_timeout}s"
            ) from e
        logger.info(f"Transaction sent for order {order.order_id}: {signature}, confirming")

        try:
            confirmation = await asyncio.wait_for(
                self.ledger.confirm(signature, self.config.commitment),
                timeout=self.config.confirmation_timeout,
            )
        except asyncio.TimeoutError as e:
            raise TransientSubmissionError(
                f"Transaction {signature} not confirmed within {self.config.confirmation_timeout}s"
            ) from e

        if confirmation.error:
            raise SettlementError(f"Transaction failed: {confirmation.error}")
        if not confirmation.settled:
            raise TransientSubmissionError(f"Transaction {signature} not yet settled")
        return signature

    def _still_pending(self, order: Order, outcome: str) -> bool:
        if order.status is OrderStatus.PENDING:
            return True
        logger.warning(f"Order {order.order_id} became {order.status.value} while in flight; ignoring {outcome}")
        return False

    async def _handle_success(self, order: Order, signature: str, start: float) -> None:
        if not self._still_pending(order, f"settlement {signature}"):
            return
        # Settled amounts are not introspected; report the guaranteed minimum
        order.actual_amount_out = order.min_amount_out
        order.execution_price = order.min_amount_out / order.amount_in
        order.network_transaction_id = signature
        order.executed_at = datetime.now(timezone.utc)
        order.status = OrderStatus.EXECUTED

        execution_time_ms = (time.monotonic() - start) * 1000
        self.stats.record_success(execution_time_ms)
        self.store.save()
        logger.info(f"Order {order.order_id} executed: {signature} in {execution_time_ms:.0f}ms")

        await self._emit(
            OrderEvent.ORDER_EXECUTED,
            order.order_id,
            ExecutionReport(
                network_transaction_id=signature,
                execution_price=order.execution_price,
                actual_amount_out=order.actual_amount_out,
            ),
        )

    async def _handle_failure(self, order: Order, error: ExecutionError, start: float) -> None:
        if not self._still_pending(order, f"failure ({error})"):
            return
        execution_time_ms = (time.monotonic() - start) * 1000
        if error.retryable and order.retry_count < self.config.max_retries:
            order.retry_count += 1
            self.queue.push(order.order_id)
            self.store.save()
            logger.warning(
                f"Order {order.order_id} failed transiently ({error}); requeued "
                f"(retry {order.retry_count}/{self.config.max_retries})"
            )
            return

        order.status = OrderStatus.FAILED
        order.error_kind = error.kind
        if isinstance(error, DuplicateSubmissionError):
            order.error = f"{error}. {DUPLICATE_DIAGNOSTIC}"
            logger.warning(
                f"Order {order.order_id} (sequence {order.sequence}, user {order.user_public_key}) "
                f"was already processed by the network; transaction "
                f"{order.payload.first_signature() if order.payload else 'unknown'}. {DUPLICATE_DIAGNOSTIC}"
            )
        elif error.retryable:
            order.error = f"{error} (gave up after {order.retry_count} retries)"
            logger.error(f"Order {order.order_id} failed after exhausting retries: {error}")
        else:
            order.error = str(error)
            logger.error(
                f"Order {order.order_id} failed (sequence {order.sequence}, pool {order.pool_id}, "
                f"{execution_time_ms:.0f}ms): {error}"
            )
        self.stats.record_failure()
        self.store.save()

        await self._emit(OrderEvent.ORDER_FAILED, order.order_id, error)
