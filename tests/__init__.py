"""
Test Package for Continuum Relayer

This package contains the test suite for the Continuum Relayer. It includes
integration tests that drive the execution engine, the order store and the
MCP tools against a mocked ledger, so no Solana validator is needed.

Test Structure:
- integration/: Integration tests for the engine, store, ledger client and server
- integration/conftest.py: Pytest fixtures and configuration for testing
"""

# Test package for continuum-relayer
