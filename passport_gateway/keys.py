"""
Passport Gateway Keys - Ed25519 passport credentials.

Server side this module only ever sees public keys: it checks a detached
signature over the fixed challenge and derives the external passport id.
The keypair helpers are for clients (the CLI and tests).
"""

import binascii
import logging
from dataclasses import dataclass
from typing import Tuple

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey, Ed25519PublicKey

from passport_gateway.config import CHALLENGE_MESSAGE, PASSPORT_ID_PREFIX
from passport_gateway.errors import MalformedCredentialError

logger = logging.getLogger(__name__)

PUBLIC_KEY_LENGTH = 32
SIGNATURE_LENGTH = 64
PASSPORT_ID_HEX_CHARS = 8


@dataclass
class PassportKeyPair:
    """An Ed25519 keypair encoded as lowercase hex."""

    private_key_hex: str
    public_key_hex: str


def verify_signature(message: bytes, signature: bytes, public_key: bytes) -> bool:
    """
    Verify a detached Ed25519 signature.

    Pure: no I/O, no state. Anything that is not a canonical 32-byte key
    and 64-byte signature fails closed.

    Args:
        message: The signed challenge bytes.
        signature: Raw 64-byte signature.
        public_key: Raw 32-byte verifying key.

    Returns:
        True only if the signature is valid for the message under the key.
    """
    if not isinstance(signature, bytes) or not isinstance(public_key, bytes):
        return False
    if len(signature) != SIGNATURE_LENGTH or len(public_key) != PUBLIC_KEY_LENGTH:
        return False

    try:
        Ed25519PublicKey.from_public_bytes(public_key).verify(signature, message)
    except (InvalidSignature, ValueError):
        return False
    return True


def _decode_hex(value: str, expected_length: int, label: str) -> bytes:
    if not isinstance(value, str) or not value:
        raise MalformedCredentialError(f"Missing {label}")
    try:
        raw = bytes.fromhex(value.strip())
    except (ValueError, binascii.Error):
        raise MalformedCredentialError(f"{label} is not valid hex")
    if len(raw) != expected_length:
        raise MalformedCredentialError(f"{label} must be {expected_length} bytes")
    return raw


def decode_credentials(signature_hex: str, public_key_hex: str) -> Tuple[bytes, bytes]:
    """
    Decode hex passport credentials into raw bytes.

    Raises:
        MalformedCredentialError: On missing values, bad hex or wrong length.
    """
    signature = _decode_hex(signature_hex, SIGNATURE_LENGTH, "passport signature")
    public_key = _decode_hex(public_key_hex, PUBLIC_KEY_LENGTH, "passport public key")
    return signature, public_key


def derive_passport_id(public_key_hex: str, prefix: str = PASSPORT_ID_PREFIX) -> str:
    """
    Derive the externally visible passport id from a public key.

    >>> derive_passport_id("1A2B3C4D" + "00" * 28)
    'cdx-1a2b3c4d'
    """
    return f"{prefix}{public_key_hex.lower()[:PASSPORT_ID_HEX_CHARS]}"


def challenge_bytes(message: str = CHALLENGE_MESSAGE) -> bytes:
    """The exact bytes a client signs."""
    return message.encode("utf-8")


def generate_keypair() -> PassportKeyPair:
    """Generate a fresh Ed25519 passport keypair."""
    private_key = Ed25519PrivateKey.generate()
    return PassportKeyPair(
        private_key_hex=private_key.private_bytes_raw().hex(),
        public_key_hex=private_key.public_key().public_bytes_raw().hex(),
    )


def sign_challenge(private_key_hex: str, message: str = CHALLENGE_MESSAGE) -> str:
    """
    Sign the challenge with a hex-encoded private key.

    Returns:
        The detached signature as lowercase hex.

    Raises:
        ValueError: If the private key is not 32 bytes of hex.
    """
    raw = bytes.fromhex(private_key_hex)
    if len(raw) != PUBLIC_KEY_LENGTH:
        raise ValueError("Ed25519 private key must be 32 bytes")
    private_key = Ed25519PrivateKey.from_private_bytes(raw)
    return private_key.sign(challenge_bytes(message)).hex()
