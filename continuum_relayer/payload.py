"""
Signed transaction payloads.

A payload is the serialized transaction a user (or the relayer) wants to
broadcast. Both legacy and v0 transactions share the same wire layout for
signatures, so they are carried as one model with a ``kind`` discriminant and
parsed through ``VersionedTransaction`` whenever the contents are inspected.
"""

import base64
import binascii
from typing import List, Literal, Optional, Union

from pydantic import BaseModel
from solders.keypair import Keypair
from solders.message import MessageV0, to_bytes_versioned
from solders.pubkey import Pubkey
from solders.signature import Signature
from solders.transaction import Transaction, VersionedTransaction

from continuum_relayer.errors import ValidationError

PayloadKind = Literal["legacy", "versioned"]


class SignedPayload(BaseModel):
    kind: PayloadKind
    data: str # Base64 encoded wire bytes

    @classmethod
    def from_bytes(cls, raw: bytes) -> "SignedPayload":
        try:
            tx = VersionedTransaction.from_bytes(raw)
        except (ValueError, TypeError) as e:
            raise ValidationError(f"Invalid transaction payload: {e}") from e
        kind: PayloadKind = "versioned" if isinstance(tx.message, MessageV0) else "legacy"
        return cls(kind=kind, data=base64.b64encode(raw).decode("ascii"))

    @classmethod
    def from_base64(cls, encoded: str) -> "SignedPayload":
        try:
            raw = base64.b64decode(encoded, validate=True)
        except (binascii.Error, ValueError) as e:
            raise ValidationError(f"Transaction payload is not valid base64: {e}") from e
        return cls.from_bytes(raw)

    @classmethod
    def from_transaction(cls, tx: Union[Transaction, VersionedTransaction]) -> "SignedPayload":
        kind: PayloadKind = "versioned" if isinstance(tx, VersionedTransaction) and isinstance(tx.message, MessageV0) else "legacy"
        return cls(kind=kind, data=base64.b64encode(bytes(tx)).decode("ascii"))

    def raw(self) -> bytes:
        return base64.b64decode(self.data)

    def transaction(self) -> VersionedTransaction:
        return VersionedTransaction.from_bytes(self.raw())

    def required_signers(self) -> List[Pubkey]:
        message = self.transaction().message
        return list(message.account_keys[: message.header.num_required_signatures])

    def missing_signers(self) -> List[Pubkey]:
        """Required signers whose signature slot is still empty."""
        tx = self.transaction()
        signers = self.required_signers()
        empty = Signature.default()
        missing = []
        for i, signer in enumerate(signers):
            if i >= len(tx.signatures) or tx.signatures[i] == empty:
                missing.append(signer)
        return missing

    def first_signature(self) -> Optional[str]:
        """The transaction id the network will know this payload by, if signed."""
        empty = Signature.default()
        for sig in self.transaction().signatures:
            if sig != empty:
                return str(sig)
        return None

    def co_sign(self, keypair: Keypair) -> "SignedPayload":
        """
        Adds the keypair's signature when it is a required signer whose slot is
        empty. Returns ``self`` unchanged otherwise.
        """
        tx = self.transaction()
        signers = self.required_signers()
        signer = keypair.pubkey()
        if signer not in signers:
            return self
        index = signers.index(signer)
        signatures = list(tx.signatures)
        while len(signatures) < len(signers):
            signatures.append(Signature.default())
        if signatures[index] != Signature.default():
            return self
        signatures[index] = keypair.sign_message(to_bytes_versioned(tx.message))
        signed = VersionedTransaction.populate(tx.message, signatures)
        return SignedPayload(kind=self.kind, data=base64.b64encode(bytes(signed)).decode("ascii"))
