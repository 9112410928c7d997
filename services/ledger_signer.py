"""
Ed25519 signer for the service's ledger account.

The account address is derived the way the ledger derives single-key
authentication keys: sha3-256(public_key || 0x00).
"""

import hashlib
import logging
from typing import Optional

from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey
from cryptography.hazmat.primitives import serialization

from config import Config

logger = logging.getLogger(__name__)

ED25519_SCHEME = b"\x00"


def _strip_hex(value: str) -> str:
    value = value.strip()
    return value[2:] if value.lower().startswith("0x") else value


class LedgerSigner:
    """Holds the signing key and produces signatures over signing messages"""

    def __init__(self, private_key_hex: str):
        key_bytes = bytes.fromhex(_strip_hex(private_key_hex))
        if len(key_bytes) != 32:
            raise ValueError("Ed25519 private key must be 32 bytes")
        self._private_key = Ed25519PrivateKey.from_private_bytes(key_bytes)
        self.public_key_bytes = self._private_key.public_key().public_bytes(
            encoding=serialization.Encoding.Raw,
            format=serialization.PublicFormat.Raw,
        )
        self.address = "0x" + hashlib.sha3_256(self.public_key_bytes + ED25519_SCHEME).hexdigest()

    @classmethod
    def generate(cls) -> "LedgerSigner":
        key = Ed25519PrivateKey.generate()
        raw = key.private_bytes(
            encoding=serialization.Encoding.Raw,
            format=serialization.PrivateFormat.Raw,
            encryption_algorithm=serialization.NoEncryption(),
        )
        return cls(raw.hex())

    @property
    def public_key_hex(self) -> str:
        return "0x" + self.public_key_bytes.hex()

    def sign(self, message: bytes) -> str:
        return "0x" + self._private_key.sign(message).hex()

    def signature_payload(self, signing_message_hex: str) -> dict:
        """Signature block for a submission, given the hex signing message"""
        message = bytes.fromhex(_strip_hex(signing_message_hex))
        return {
            "type": "ed25519_signature",
            "public_key": self.public_key_hex,
            "signature": self.sign(message),
        }

    def simulation_signature_payload(self) -> dict:
        """Simulation requires an invalid (all-zero) signature"""
        return {
            "type": "ed25519_signature",
            "public_key": self.public_key_hex,
            "signature": "0x" + "00" * 64,
        }


_signer: Optional[LedgerSigner] = None


def get_ledger_signer() -> Optional[LedgerSigner]:
    """Process-wide signer built from SIGNER_PRIVATE_KEY, None if unset"""
    global _signer
    if _signer is None and Config.SIGNER_PRIVATE_KEY:
        _signer = LedgerSigner(Config.SIGNER_PRIVATE_KEY)
        logger.info(f"🔑 LEDGER_SIGNER: Loaded signer {_signer.address}")
    return _signer
