import time
import uuid
from datetime import datetime
from enum import Enum
from typing import Literal, Optional

from pydantic import BaseModel, Field, field_validator
from solders.pubkey import Pubkey

from continuum_relayer.payload import SignedPayload

U64_MAX = 2**64 - 1

# --- Data Structures ---

def new_order_id() -> str:
    return f"ord_{int(time.time() * 1000)}_{uuid.uuid4().hex[:9]}"


class OrderStatus(str, Enum):
    PENDING = "pending"
    EXECUTED = "executed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class SwapParams(BaseModel):
    """Swap parameters shared by every way of accepting an order."""
    pool_id: str
    user_public_key: str
    amount_in: int # In base units of the input token
    min_amount_out: int # In base units of the output token
    is_base_input: bool = True

    @field_validator("pool_id", "user_public_key")
    @classmethod
    def _check_pubkey(cls, value: str) -> str:
        Pubkey.from_string(value) # Raises ValueError on a malformed key
        return value

    @field_validator("amount_in")
    @classmethod
    def _check_amount_in(cls, value: int) -> int:
        if value <= 0 or value > U64_MAX:
            raise ValueError("amount_in must be a positive u64")
        return value

    @field_validator("min_amount_out")
    @classmethod
    def _check_min_amount_out(cls, value: int) -> int:
        if value < 0 or value > U64_MAX:
            raise ValueError("min_amount_out must fit in a u64")
        return value


class OrderSubmission(SwapParams):
    payload: Optional[SignedPayload] = None

    @field_validator("payload")
    @classmethod
    def _check_payload(cls, value: Optional[SignedPayload]) -> Optional[SignedPayload]:
        if value is None:
            return value
        try:
            tx = value.transaction()
        except ValueError as e: # binascii.Error is a ValueError too
            raise ValueError(f"payload is not a serialized transaction: {e}") from e
        if SignedPayload.from_transaction(tx).kind != value.kind:
            raise ValueError(f"payload kind {value.kind!r} does not match the transaction")
        return value


class CreateOrderParams(SwapParams):
    # Default to the user's associated token accounts for the pool mints
    user_token_a: Optional[str] = None
    user_token_b: Optional[str] = None

    @field_validator("user_token_a", "user_token_b")
    @classmethod
    def _check_token_account(cls, value: Optional[str]) -> Optional[str]:
        if value is not None:
            Pubkey.from_string(value)
        return value


class Order(SwapParams):
    order_id: str = Field(default_factory=new_order_id)
    sequence: int
    status: OrderStatus = OrderStatus.PENDING
    execution_mode: Literal["queued", "external"] = "queued"
    payload: Optional[SignedPayload] = None
    retry_count: int = 0
    actual_amount_out: Optional[int] = None
    execution_price: Optional[float] = None
    network_transaction_id: Optional[str] = None
    executed_at: Optional[datetime] = None
    error: Optional[str] = None
    error_kind: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status is not OrderStatus.PENDING


class OrderResult(BaseModel):
    order_id: str
    order_reference: str # Program derived address of the on-chain order record
    sequence: int
    estimated_execution_time_ms: int
    fee_lamports: int


class CreateOrderResult(OrderResult):
    transaction_base64: str


class ExecutionReport(BaseModel):
    network_transaction_id: str
    execution_price: float
    actual_amount_out: int


class Statistics(BaseModel):
    total_orders: int
    successful_orders: int
    failed_orders: int
    success_rate: float
    avg_execution_time_ms: float
    pending_orders: int
    relayer_balance_lamports: Optional[int] = None
    relayer_balance: Optional[float] = None # In SOL


class PoolInfo(BaseModel):
    pool_id: str
    token0: str
    token1: str
    fee: float
    is_active: bool = True
