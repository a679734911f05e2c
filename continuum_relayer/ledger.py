"""
Ledger client contract and its Solana RPC implementation.

The engine only ever talks to the network through ``LedgerClient``. Errors
raised by ``submit`` and ``confirm`` are already classified into the
execution error classes so the engine can decide between retrying and
failing without looking at RPC details.
"""

import asyncio
from typing import Optional, Protocol

import httpx
from mcp.server.fastmcp.utilities.logging import get_logger
from pydantic import BaseModel
from solana.exceptions import SolanaRpcException
from solana.rpc.async_api import AsyncClient
from solana.rpc.commitment import Confirmed
from solana.rpc.core import RPCException
from solana.rpc.types import TxOpts
from solders.hash import Hash as Blockhash
from solders.pubkey import Pubkey
from solders.signature import Signature
from solders.transaction_status import TransactionConfirmationStatus

from continuum_relayer.errors import (
    DuplicateSubmissionError,
    ExecutionError,
    SubmissionRejected,
    TransientSubmissionError,
)
from continuum_relayer.payload import SignedPayload

logger = get_logger(__name__)

DUPLICATE_MARKERS = ("already been processed",)
TRANSIENT_MARKERS = (
    "blockhash not found",
    "node is behind",
    "node is unhealthy",
    "too many requests",
    "429",
    "timed out",
    "connection",
)

_COMMITMENT_ORDER = (
    ("processed", TransactionConfirmationStatus.Processed),
    ("confirmed", TransactionConfirmationStatus.Confirmed),
    ("finalized", TransactionConfirmationStatus.Finalized),
)


class Confirmation(BaseModel):
    settled: bool
    error: Optional[str] = None


class LedgerClient(Protocol):
    async def submit(self, payload: SignedPayload) -> str:
        ...

    async def confirm(self, signature: str, commitment: str = "confirmed") -> Confirmation:
        ...

    async def get_balance(self, address: Pubkey) -> int:
        ...

    async def latest_blockhash(self) -> Blockhash:
        ...


def classify_submission_error(error: Exception) -> ExecutionError:
    """Maps an RPC or transport failure to an execution error class."""
    message = str(error)
    lowered = message.lower()
    if any(marker in lowered for marker in DUPLICATE_MARKERS):
        return DuplicateSubmissionError(message)
    if isinstance(error, (httpx.TransportError, SolanaRpcException)):
        return TransientSubmissionError(message or type(error).__name__)
    if any(marker in lowered for marker in TRANSIENT_MARKERS):
        return TransientSubmissionError(message)
    return SubmissionRejected(message or type(error).__name__)


def _commitment_rank(status: Optional[TransactionConfirmationStatus]) -> int:
    if status is None:
        # Older nodes leave the status empty once a transaction is rooted
        return len(_COMMITMENT_ORDER) - 1
    for rank, (_, level) in enumerate(_COMMITMENT_ORDER):
        if status == level:
            return rank
    return -1


def _required_rank(commitment: str) -> int:
    for rank, (name, _) in enumerate(_COMMITMENT_ORDER):
        if name == commitment:
            return rank
    raise ValueError(f"Unknown commitment level: {commitment}")


class SolanaLedgerClient:
    """LedgerClient backed by a Solana JSON-RPC endpoint."""

    def __init__(self, endpoint: str, poll_interval: float = 0.5):
        self.endpoint = endpoint
        self.poll_interval = poll_interval

    async def submit(self, payload: SignedPayload) -> str:
        logger.debug(f"Sending {payload.kind} transaction to {self.endpoint}")
        async with AsyncClient(self.endpoint) as client:
            try:
                resp = await client.send_raw_transaction(
                    payload.raw(),
                    opts=TxOpts(skip_preflight=False, preflight_commitment=Confirmed),
                )
            except (RPCException, SolanaRpcException, httpx.HTTPError) as e:
                raise classify_submission_error(e) from e
        return str(resp.value)

    async def confirm(self, signature: str, commitment: str = "confirmed") -> Confirmation:
        """
        Polls the signature status until it reaches ``commitment`` or reports an
        error. Callers bound the wait with their own timeout.
        """
        required = _required_rank(commitment)
        sig = Signature.from_string(signature)
        async with AsyncClient(self.endpoint) as client:
            while True:
                try:
                    resp = await client.get_signature_statuses([sig])
                except (RPCException, SolanaRpcException, httpx.HTTPError) as e:
                    raise classify_submission_error(e) from e
                status = resp.value[0]
                if status is not None:
                    if status.err is not None:
                        return Confirmation(settled=True, error=str(status.err))
                    if _commitment_rank(status.confirmation_status) >= required:
                        return Confirmation(settled=True)
                await asyncio.sleep(self.poll_interval)

    async def get_balance(self, address: Pubkey) -> int:
        async with AsyncClient(self.endpoint) as client:
            resp = await client.get_balance(address)
        return resp.value

    async def latest_blockhash(self) -> Blockhash:
        async with AsyncClient(self.endpoint) as client:
            resp = await client.get_latest_blockhash()
        return resp.value.blockhash
