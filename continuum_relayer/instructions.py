"""
Instruction builder contract.

Account layouts and instruction data for the on-chain swap program are owned
by the program's SDK. The relayer only needs something that turns a pool
configuration and swap parameters into an instruction, so it accepts any
object implementing ``InstructionBuilder``.
"""

from dataclasses import dataclass
from typing import Protocol

from solders.instruction import Instruction
from solders.pubkey import Pubkey

from continuum_relayer.config import PoolConfig


@dataclass(frozen=True)
class SwapInstructionRequest:
    user: Pubkey
    amount_in: int
    min_amount_out: int
    is_base_input: bool
    user_source_token: Pubkey
    user_destination_token: Pubkey


class InstructionBuilder(Protocol):
    def build_swap(self, pool: PoolConfig, request: SwapInstructionRequest) -> Instruction:
        """Raises InstructionBuildError (or ValueError) when the instruction cannot be built."""
        ...
