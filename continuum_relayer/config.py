"""
Relayer configuration.

Values come from the environment (optionally a ``.env`` file at the project
root) and from a pool registry JSON file in the devnet constants format:

    {"devnet": {"pools": {"USDC-WSOL": {"poolId": "...", "ammConfig": "...", ...}}}}
"""

import json
import os
from pathlib import Path
from typing import Dict, List, Literal, Optional

from dotenv import load_dotenv
from mcp.server.fastmcp.utilities.logging import get_logger
from pydantic import BaseModel, ConfigDict, Field
from solders.keypair import Keypair

from continuum_relayer.errors import ConfigurationNotFound

# Load environment variables from .env file in the project root
dotenv_path = Path(__file__).parent.parent / '.env'
load_dotenv(dotenv_path=dotenv_path)

LAMPORTS_PER_SOL = 1_000_000_000

DEFAULT_CONTINUUM_PROGRAM_ID = "7uLunyG2Gr1uVNAS32qS4pKn7KkioTRvmKwpYgJeK65m"
DEFAULT_CP_SWAP_PROGRAM_ID = "GkenxCtvEabZrwFf15D3E6LjoZTywH2afNwiqDwthyDp"

# Compute unit price in micro-lamports per priority level
PRIORITY_FEE_MICRO_LAMPORTS = {
    "none": 0,
    "low": 10_000,
    "medium": 50_000,
    "high": 100_000,
}

logger = get_logger(__name__)

PriorityFeeLevel = Literal["none", "low", "medium", "high"]
Commitment = Literal["processed", "confirmed", "finalized"]


class PoolConfig(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    pool_id: str = Field(alias="poolId")
    amm_config: str = Field(alias="ammConfig")
    token_a_mint: str = Field(alias="tokenAMint")
    token_b_mint: str = Field(alias="tokenBMint")
    token_a_vault: str = Field(alias="tokenAVault")
    token_b_vault: str = Field(alias="tokenBVault")
    authority: Optional[str] = Field(default=None, alias="cpPoolAuthority")
    observation_state: str = Field(alias="observationState")
    token_a_symbol: str = ""
    token_b_symbol: str = ""
    token_a_decimals: int = 6
    token_b_decimals: int = 6


class RelayerConfig(BaseModel):
    rpc_endpoint: str = "http://localhost:8899"
    continuum_program_id: str = DEFAULT_CONTINUUM_PROGRAM_ID
    cp_swap_program_id: str = DEFAULT_CP_SWAP_PROGRAM_ID
    order_store_file: Optional[Path] = None
    pools: List[PoolConfig] = Field(default_factory=list)
    # Execution
    max_retries: int = 3
    submission_timeout: float = 30.0 # Seconds
    confirmation_timeout: float = 30.0 # Seconds
    idle_poll_interval: float = 1.0 # Seconds
    commitment: Commitment = "confirmed"
    max_pending_orders: int = 100
    # Fees
    priority_fee_level: PriorityFeeLevel = "medium"
    relayer_fee_lamports: int = 100_000
    relayer_fee_bps: int = 10
    pool_fee_rate: float = 0.0025
    estimated_execution_time_ms: int = 5000

    @classmethod
    def from_env(cls) -> "RelayerConfig":
        """Builds the configuration from environment variables."""
        store_file = os.getenv("ORDER_STORE_FILE")
        registry_file = os.getenv("POOL_REGISTRY_FILE")
        return cls(
            rpc_endpoint=os.getenv("RPC_ENDPOINT", "http://localhost:8899"),
            continuum_program_id=os.getenv("CONTINUUM_PROGRAM_ID", DEFAULT_CONTINUUM_PROGRAM_ID),
            cp_swap_program_id=os.getenv("CP_SWAP_PROGRAM_ID", DEFAULT_CP_SWAP_PROGRAM_ID),
            order_store_file=Path(store_file) if store_file else None,
            pools=load_pool_registry(Path(registry_file)) if registry_file else [],
            max_retries=int(os.getenv("MAX_RETRIES", "3")),
            submission_timeout=float(os.getenv("SUBMISSION_TIMEOUT", "30")),
            confirmation_timeout=float(os.getenv("CONFIRMATION_TIMEOUT", "30")),
            idle_poll_interval=float(os.getenv("IDLE_POLL_INTERVAL", "1")),
            commitment=os.getenv("COMMITMENT", "confirmed"),
            max_pending_orders=int(os.getenv("MAX_PENDING_ORDERS", "100")),
            priority_fee_level=os.getenv("PRIORITY_FEE_LEVEL", "medium"),
            relayer_fee_lamports=int(os.getenv("RELAYER_FEE_LAMPORTS", "100000")),
            relayer_fee_bps=int(os.getenv("RELAYER_FEE_BPS", "10")),
            pool_fee_rate=float(os.getenv("POOL_FEE_RATE", "0.0025")),
            estimated_execution_time_ms=int(os.getenv("ESTIMATED_EXECUTION_TIME_MS", "5000")),
        )

    @property
    def priority_fee_micro_lamports(self) -> int:
        return PRIORITY_FEE_MICRO_LAMPORTS[self.priority_fee_level]

    def pool_registry(self) -> Dict[str, PoolConfig]:
        return {pool.pool_id: pool for pool in self.pools}

    def get_pool(self, pool_id: str) -> PoolConfig:
        for pool in self.pools:
            if pool.pool_id == pool_id:
                return pool
        raise ConfigurationNotFound(f"Pool configuration not found for pool: {pool_id}")


def _default_decimals(symbol: str) -> int:
    return 9 if "SOL" in symbol else 6


def load_pool_registry(path: Path, network: str = "devnet") -> List[PoolConfig]:
    """Loads pool configurations from a constants JSON file."""
    if not path.exists():
        logger.warning(f"Pool registry file {path} not found, no pools configured.")
        return []
    with open(path, 'r') as f:
        constants = json.load(f)
    pools = []
    for pool_name, pool_data in constants.get(network, {}).get("pools", {}).items():
        token_a, _, token_b = pool_name.partition("-")
        pools.append(PoolConfig(
            **pool_data,
            token_a_symbol=token_a,
            token_b_symbol=token_b,
            token_a_decimals=_default_decimals(token_a),
            token_b_decimals=_default_decimals(token_b),
        ))
    logger.info(f"Loaded {len(pools)} pools from {path}")
    return pools


def load_relayer_keypair(path: Optional[Path] = None) -> Keypair:
    """Reads a Solana CLI keypair file (a JSON array of 64 bytes)."""
    if path is None:
        path = Path(os.getenv("RELAYER_KEYPAIR_PATH", str(Path.home() / ".config/solana/id.json")))
    with open(path, 'r') as f:
        secret = json.load(f)
    return Keypair.from_bytes(bytes(secret))
