import sys
import types
from pathlib import Path
from typing import Generator, List, Optional
from unittest.mock import AsyncMock, MagicMock # For mocking the ledger and Context

import pytest
from pytest import MonkeyPatch
from solders.hash import Hash
from solders.instruction import AccountMeta, Instruction
from solders.keypair import Keypair
from solders.message import Message, MessageV0
from solders.pubkey import Pubkey
from solders.signature import Signature
from solders.system_program import TransferParams, transfer
from solders.transaction import Transaction, VersionedTransaction

# Ensure the package can be imported
ROOT_DIR = Path(__file__).parent.parent.parent
sys.path.insert(0, str(ROOT_DIR))

from continuum_relayer.config import DEFAULT_CONTINUUM_PROGRAM_ID, PoolConfig, RelayerConfig
from continuum_relayer.engine import RelayerEngine
from continuum_relayer.instructions import SwapInstructionRequest
from continuum_relayer.ledger import Confirmation
from continuum_relayer.payload import SignedPayload
from continuum_relayer.store import OrderStore

# --- Payload helpers ---

def make_legacy_payload(payer: Optional[Keypair] = None) -> SignedPayload:
    """A fully signed legacy transfer transaction."""
    payer = payer or Keypair()
    ix = transfer(TransferParams(from_pubkey=payer.pubkey(), to_pubkey=Pubkey.new_unique(), lamports=1))
    tx = Transaction.new_signed_with_payer([ix], payer.pubkey(), [payer], Hash.new_unique())
    return SignedPayload.from_transaction(tx)


def make_versioned_payload(payer: Optional[Keypair] = None) -> SignedPayload:
    """A fully signed v0 transfer transaction."""
    payer = payer or Keypair()
    ix = transfer(TransferParams(from_pubkey=payer.pubkey(), to_pubkey=Pubkey.new_unique(), lamports=1))
    message = MessageV0.try_compile(payer.pubkey(), [ix], [], Hash.new_unique())
    return SignedPayload.from_transaction(VersionedTransaction(message, [payer]))


def make_cosign_payload(user: Keypair, relayer: Keypair) -> SignedPayload:
    """A legacy transaction signed by the user that still needs the relayer's signature."""
    blockhash = Hash.new_unique()
    ix = transfer(TransferParams(from_pubkey=relayer.pubkey(), to_pubkey=user.pubkey(), lamports=1))
    tx = Transaction.new_unsigned(Message.new_with_blockhash([ix], user.pubkey(), blockhash))
    tx.partial_sign([user], blockhash)
    return SignedPayload.from_transaction(tx)


def order_params(payload: Optional[SignedPayload] = None, **overrides) -> dict:
    params = {
        "pool_id": str(Pubkey.new_unique()),
        "user_public_key": str(Keypair().pubkey()),
        "amount_in": 100,
        "min_amount_out": 90,
        "is_base_input": True,
        "payload": payload,
    }
    params.update(overrides)
    return params


# --- Instruction builder fake ---

class FakeInstructionBuilder:
    """Records swap requests and returns a minimal instruction naming the user as signer."""

    def __init__(self, extra_signer: Optional[Pubkey] = None, error: Optional[Exception] = None):
        self.extra_signer = extra_signer
        self.error = error
        self.requests: List[SwapInstructionRequest] = []

    def build_swap(self, pool: PoolConfig, request: SwapInstructionRequest) -> Instruction:
        self.requests.append(request)
        if self.error is not None:
            raise self.error
        accounts = [
            AccountMeta(request.user, True, False),
            AccountMeta(Pubkey.from_string(pool.pool_id), False, True),
            AccountMeta(request.user_source_token, False, True),
            AccountMeta(request.user_destination_token, False, True),
        ]
        if self.extra_signer is not None:
            accounts.append(AccountMeta(self.extra_signer, True, False))
        return Instruction(Pubkey.from_string(DEFAULT_CONTINUUM_PROGRAM_ID), bytes([1, 2, 3]), accounts)


# --- Fixtures ---

@pytest.fixture(scope="function")
def temp_order_store_path(tmp_path_factory: pytest.TempPathFactory) -> Path:
    """Creates a temporary directory and path for the order store JSON file."""
    temp_dir = tmp_path_factory.mktemp("relayer_data")
    return temp_dir / "test_order_store.json"


@pytest.fixture(scope="function")
def mock_context() -> MagicMock:
    """Provides a mock MCP Context object."""
    return MagicMock()


@pytest.fixture(scope="function")
def relayer_keypair() -> Keypair:
    return Keypair()


@pytest.fixture(scope="function")
def pool_config() -> PoolConfig:
    return PoolConfig(
        pool_id=str(Pubkey.new_unique()),
        amm_config=str(Pubkey.new_unique()),
        token_a_mint=str(Pubkey.new_unique()),
        token_b_mint=str(Pubkey.new_unique()),
        token_a_vault=str(Pubkey.new_unique()),
        token_b_vault=str(Pubkey.new_unique()),
        observation_state=str(Pubkey.new_unique()),
        token_a_symbol="USDC",
        token_b_symbol="WSOL",
        token_b_decimals=9,
    )


@pytest.fixture(scope="function")
def relayer_config(pool_config: PoolConfig) -> RelayerConfig:
    return RelayerConfig(
        pools=[pool_config],
        max_retries=1,
        confirmation_timeout=1.0,
        idle_poll_interval=0.01,
    )


@pytest.fixture(scope="function")
def mock_ledger() -> AsyncMock:
    """A ledger client whose submissions all settle successfully."""
    ledger = AsyncMock()
    ledger.submit.side_effect = lambda payload: str(Signature.new_unique())
    ledger.confirm.return_value = Confirmation(settled=True)
    ledger.get_balance.return_value = 2_500_000_000
    ledger.latest_blockhash.return_value = Hash.new_unique()
    return ledger


@pytest.fixture(scope="function")
def instruction_builder() -> FakeInstructionBuilder:
    return FakeInstructionBuilder()


@pytest.fixture(scope="function")
def engine(
    mock_ledger: AsyncMock,
    relayer_keypair: Keypair,
    relayer_config: RelayerConfig,
    instruction_builder: FakeInstructionBuilder,
) -> RelayerEngine:
    """An in-memory engine with the mocked ledger."""
    return RelayerEngine(
        ledger=mock_ledger,
        relayer_keypair=relayer_keypair,
        config=relayer_config,
        instruction_builder=instruction_builder,
        store=OrderStore(),
    )


@pytest.fixture(scope="function")
def patched_server_module(
    monkeypatch: MonkeyPatch, engine: RelayerEngine
) -> Generator[types.ModuleType, None, None]:
    """Provides the server module with its global engine replaced by the test engine."""
    import continuum_relayer.server as server
    monkeypatch.setattr(server, "engine", engine)
    yield server
