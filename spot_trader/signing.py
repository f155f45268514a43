"""Order signing with the account's secp256k1 key.

An order payload is serialized canonically (sorted keys, compact separators,
UTF-8), hashed with SHA-256, and the digest is signed EIP-191 style
(``personal_sign``) with eth-account. The venue verifies by recovering the
signer address from ``(digest, signature)``.
"""
import hashlib
import json
import threading
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional

from eth_account import Account
from eth_account.messages import encode_defunct
from eth_keys.exceptions import ValidationError as KeyValidationError

from .errors import SigningError


def canonical_json(payload: Dict[str, Any]) -> bytes:
    """Deterministic byte serialization of an order payload."""
    return json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


def content_hash(payload: Dict[str, Any]) -> bytes:
    return hashlib.sha256(canonical_json(payload)).digest()


class NonceGenerator:
    """Strictly increasing millisecond-timestamp nonces."""

    def __init__(self) -> None:
        self._last = 0
        self._lock = threading.Lock()

    def next(self) -> int:
        with self._lock:
            nonce = max(int(time.time() * 1000), self._last + 1)
            self._last = nonce
            return nonce


def client_order_id(nonce: int) -> str:
    """128-bit hex client order id derived from a nonce."""
    return f"0x{nonce:032x}"


@dataclass
class SignedOrder:
    payload: Dict[str, Any]
    canonical: str
    digest: str
    signature: str
    signer: str

    def to_request(self) -> Dict[str, Any]:
        """Body posted to the venue: payload plus detached signature."""
        return {
            "order": self.payload,
            "nonce": self.payload.get("nonce"),
            "digest": self.digest,
            "signature": self.signature,
            "signer": self.signer,
        }


class OrderSigner:
    """Holds the account key and signs order payloads.

    Raises SigningError at construction when the key is absent or invalid,
    so a misconfigured process fails before any network call.
    """

    def __init__(self, private_key: Optional[str]):
        if not private_key:
            raise SigningError("No private key configured")
        try:
            self._account = Account.from_key(private_key)
        except (ValueError, TypeError, KeyValidationError) as e:
            raise SigningError(f"Invalid private key: {e}") from e

    @property
    def address(self) -> str:
        return self._account.address

    def sign(self, payload: Dict[str, Any]) -> SignedOrder:
        canonical = canonical_json(payload)
        digest = hashlib.sha256(canonical).digest()
        try:
            signed = self._account.sign_message(encode_defunct(primitive=digest))
        except (ValueError, TypeError) as e:
            raise SigningError(f"Failed to sign order: {e}") from e
        return SignedOrder(
            payload=payload,
            canonical=canonical.decode("utf-8"),
            digest="0x" + digest.hex(),
            signature="0x" + bytes(signed.signature).hex(),
            signer=self.address,
        )

    @staticmethod
    def recover_signer(signed: SignedOrder) -> str:
        """Address that produced ``signed.signature`` over ``signed.digest``."""
        digest = bytes.fromhex(signed.digest[2:])
        return Account.recover_message(encode_defunct(primitive=digest), signature=signed.signature)
