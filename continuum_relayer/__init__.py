"""
Continuum Relayer Package

This package relays user-signed swap orders to Solana in a single global
order. Orders are accepted into a FIFO execution queue, submitted one at a
time by the execution engine, retried when the network reports a transient
failure, and tracked until they settle, fail or are cancelled.

Main components:
- engine.py: Execution engine, scheduler loop and retry policy
- store.py: Order store and execution queue, with optional JSON persistence
- ledger.py: Ledger client contract and Solana RPC implementation
- payload.py: Signed transaction payloads (legacy and versioned)
- server.py: MCP server exposing the engine as tools
"""

# Continuum Relayer
