"""
Integration Tests for Continuum Relayer

The integration tests cover:
- Order submission, sequencing and FIFO queueing
- Execution, retry/requeue and failure classification
- Cancellation and the order lifecycle state machine
- Statistics and the query surface
- Relay-built transactions for out-of-band signing
- Order store persistence
- Solana RPC ledger client error classification
- MCP tool responses

All tests use a mocked ledger client (or a patched AsyncClient) and temporary
file storage so they run without blockchain access.
"""

# Integration tests for continuum-relayer
