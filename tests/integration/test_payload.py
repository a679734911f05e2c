"""
Integration Tests for signed payloads
"""

import base64

import pytest
from solders.keypair import Keypair
from solders.message import to_bytes_versioned
from solders.signature import Signature
from solders.transaction import VersionedTransaction

from continuum_relayer.errors import ValidationError
from continuum_relayer.payload import SignedPayload

from tests.integration.conftest import make_cosign_payload, make_legacy_payload, make_versioned_payload

# Mark all tests in this module as asyncio
pytestmark = pytest.mark.asyncio


async def test_payload_kind_detection():
    """Tests that the discriminant follows the message version."""
    legacy = make_legacy_payload()
    versioned = make_versioned_payload()
    assert legacy.kind == "legacy"
    assert versioned.kind == "versioned"
    assert SignedPayload.from_bytes(legacy.raw()).kind == "legacy"
    assert SignedPayload.from_base64(versioned.data).kind == "versioned"


async def test_payload_signers():
    """Tests signer inspection of a fully signed transaction."""
    payer = Keypair()
    payload = make_legacy_payload(payer)
    assert payload.required_signers() == [payer.pubkey()]
    assert payload.missing_signers() == []
    assert payload.first_signature() == str(payload.transaction().signatures[0])


async def test_payload_co_sign():
    """Tests that co-signing fills only the relayer's empty slot."""
    user = Keypair()
    relayer = Keypair()
    payload = make_cosign_payload(user, relayer)
    assert payload.missing_signers() == [relayer.pubkey()]

    signed = payload.co_sign(relayer)

    assert signed is not payload
    assert signed.kind == "legacy"
    assert signed.missing_signers() == []
    tx = signed.transaction()
    assert tx.signatures[0] == payload.transaction().signatures[0] # User signature kept
    assert tx.signatures[1] != Signature.default()
    assert tx.signatures[1].verify(relayer.pubkey(), to_bytes_versioned(tx.message))


async def test_payload_co_sign_not_required():
    """Tests that a keypair that is not a signer leaves the payload untouched."""
    payload = make_legacy_payload()
    assert payload.co_sign(Keypair()) is payload


async def test_payload_co_sign_already_signed():
    """Tests that an existing signature is never replaced."""
    payer = Keypair()
    payload = make_versioned_payload(payer)
    assert payload.co_sign(payer) is payload


async def test_payload_unsigned_has_no_first_signature():
    """Tests first_signature on a transaction nobody signed."""
    user = Keypair()
    relayer = Keypair()
    payload = make_cosign_payload(user, relayer)
    unsigned = SignedPayload.from_transaction(
        VersionedTransaction.populate(
            payload.transaction().message, [Signature.default(), Signature.default()]
        )
    )
    assert unsigned.first_signature() is None


@pytest.mark.parametrize("encoded", ["not base64!!", base64.b64encode(b"\x01\x02\x03").decode()])
async def test_payload_invalid(encoded: str):
    """Tests that garbage input is a ValidationError."""
    with pytest.raises(ValidationError):
        SignedPayload.from_base64(encoded)
