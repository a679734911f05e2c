# Continuum Relayer MCP server
import json
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Optional

from mcp.server.fastmcp import Context, FastMCP
from mcp.server.fastmcp.utilities.logging import get_logger
from pydantic import Field
from solders.pubkey import Pubkey

from continuum_relayer.config import RelayerConfig, load_relayer_keypair
from continuum_relayer.engine import RelayerEngine
from continuum_relayer.errors import RelayerError
from continuum_relayer.ledger import SolanaLedgerClient
from continuum_relayer.payload import SignedPayload

logger = get_logger(__name__)

# Built lazily so importing the module does not need a keypair on disk
engine: Optional[RelayerEngine] = None


def build_engine() -> RelayerEngine:
    config = RelayerConfig.from_env()
    logger.info(f"Using RPC endpoint {config.rpc_endpoint} with {len(config.pools)} pools")
    return RelayerEngine(
        ledger=SolanaLedgerClient(config.rpc_endpoint),
        relayer_keypair=load_relayer_keypair(),
        config=config,
    )


def get_engine() -> RelayerEngine:
    global engine
    if engine is None:
        engine = build_engine()
    return engine


def _optional(value: Any) -> Any:
    # Direct calls that omit an optional argument receive the FieldInfo default
    return value if isinstance(value, (str, int, bool)) else None


@asynccontextmanager
async def relayer_lifespan(server: FastMCP) -> AsyncIterator[None]:
    """Runs the execution loop for as long as the server is up."""
    relayer = get_engine()
    await relayer.start()
    try:
        yield
    finally:
        await relayer.stop()


# --- Server Setup ---
mcp = FastMCP(name="Continuum Relayer", lifespan=relayer_lifespan)

# --- MCP Tools ---

@mcp.tool()
async def submit_order(
    context: Context,
    pool_id: str = Field(..., description="The pool to swap against."),
    user_public_key: str = Field(..., description="The public key string of the user."),
    amount_in: int = Field(..., description="The input amount (in base units)."),
    min_amount_out: int = Field(..., description="The minimum acceptable output amount (in base units)."),
    is_base_input: bool = Field(True, description="True to swap token A for token B."),
    transaction_base64: Optional[str] = Field(None, description="The user-signed swap transaction, base64 encoded."),
) -> str:
    """Queues a signed swap order for relayed execution."""
    logger.info(f"Received submit_order request for pool={pool_id}, user={user_public_key}, amount_in={amount_in}")
    try:
        encoded = _optional(transaction_base64)
        payload = SignedPayload.from_base64(encoded) if encoded else None
        result = await get_engine().submit_order({
            "pool_id": pool_id,
            "user_public_key": user_public_key,
            "amount_in": amount_in,
            "min_amount_out": min_amount_out,
            "is_base_input": is_base_input if isinstance(is_base_input, bool) else True,
            "payload": payload,
        })
        return json.dumps(result.model_dump(mode="json"), indent=2)
    except RelayerError as e:
        return f"Error: {e}"
    except Exception as e:
        logger.exception(f"Error submitting order: {e}")
        return f"An error occurred while submitting the order: {e}"


@mcp.tool()
async def create_order_transaction(
    context: Context,
    pool_id: str = Field(..., description="The pool to swap against."),
    user_public_key: str = Field(..., description="The public key string of the user (fee payer)."),
    amount_in: int = Field(..., description="The input amount (in base units)."),
    min_amount_out: int = Field(..., description="The minimum acceptable output amount (in base units)."),
    is_base_input: bool = Field(True, description="True to swap token A for token B."),
    user_token_a: Optional[str] = Field(None, description="The user's token A account (defaults to the ATA)."),
    user_token_b: Optional[str] = Field(None, description="The user's token B account (defaults to the ATA)."),
) -> str:
    """Builds an unsigned swap transaction for the user to sign and broadcast."""
    logger.info(f"Received create_order_transaction request for pool={pool_id}, user={user_public_key}")
    try:
        result = await get_engine().create_order_transaction({
            "pool_id": pool_id,
            "user_public_key": user_public_key,
            "amount_in": amount_in,
            "min_amount_out": min_amount_out,
            "is_base_input": is_base_input if isinstance(is_base_input, bool) else True,
            "user_token_a": _optional(user_token_a),
            "user_token_b": _optional(user_token_b),
        })
        return json.dumps(result.model_dump(mode="json"), indent=2)
    except RelayerError as e:
        return f"Error: {e}"
    except Exception as e:
        logger.exception(f"Error creating order transaction: {e}")
        return f"An error occurred while creating the order transaction: {e}"


@mcp.tool()
async def get_order_status(
    context: Context,
    order_id: str = Field(..., description="The ID of the order."),
) -> str:
    """Returns the current state of an order."""
    order = get_engine().get_order_status(order_id)
    if order is None:
        return f"Error: Order {order_id} not found."
    data = order.model_dump(mode="json", exclude={"payload"})
    data["has_payload"] = order.payload is not None
    return json.dumps(data, indent=2)


@mcp.tool()
async def cancel_order(
    context: Context,
    order_id: str = Field(..., description="The ID of the order to cancel."),
    owner: str = Field(..., description="The public key string of the order owner."),
) -> str:
    """Cancels a pending order."""
    try:
        Pubkey.from_string(owner) # Validate pubkey format
    except ValueError:
        return "Invalid owner public key format."
    try:
        await get_engine().cancel_order(order_id, owner=owner)
    except RelayerError as e:
        return f"Error: {e}"
    logger.info(f"Cancelled order {order_id} by {owner}")
    return f"Order {order_id} cancelled successfully."


@mcp.tool()
async def get_statistics(context: Context) -> str:
    """Returns relayer execution statistics and the relayer wallet balance."""
    try:
        stats = await get_engine().get_statistics()
    except Exception as e:
        logger.exception(f"Error fetching statistics: {e}")
        return f"An error occurred while fetching statistics: {e}"
    return json.dumps(stats.model_dump(mode="json"), indent=2)


@mcp.tool()
async def get_supported_pools(context: Context) -> str:
    """Lists the pools the relayer can build transactions for."""
    pools = get_engine().get_supported_pools_with_info()
    return json.dumps({"pools": [p.model_dump() for p in pools]}, indent=2)


def main() -> None:
    mcp.run(transport="stdio")


if __name__ == "__main__":
    main()
