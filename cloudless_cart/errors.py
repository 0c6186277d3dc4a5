"""Stable error taxonomy for cloudless-cart.

This module defines machine-readable error codes and a single exception type
used across the signing, token and composition layers.

Design goals:
- Stable `code` string suitable for programmatic handling, so callers can tell
  a bad signature from a failed decryption from a payload hash mismatch
  without parsing messages.
- Structured `details` for debugging. Details carry key ids and reasons,
  never key material or plaintext.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict


# Canonicalization / hashing
CART_E_CANON_NON_JSON = "CART_E_CANON_NON_JSON"
CART_E_CANON_DEPTH = "CART_E_CANON_DEPTH"
CART_E_CANON_NONFINITE = "CART_E_CANON_NONFINITE"
CART_E_CANON_KEY_TYPE = "CART_E_CANON_KEY_TYPE"
CART_E_CANON_INT_TOO_LARGE = "CART_E_CANON_INT_TOO_LARGE"

# Key material
CART_E_KEY_NOT_FOUND = "CART_E_KEY_NOT_FOUND"
CART_E_INVALID_KEY = "CART_E_INVALID_KEY"
CART_E_UNSUPPORTED_ALG = "CART_E_UNSUPPORTED_ALG"
CART_E_KEYSTORE_NOT_ENUMERABLE = "CART_E_KEYSTORE_NOT_ENUMERABLE"

# Signing
CART_E_SIGNATURE_INVALID = "CART_E_SIGNATURE_INVALID"
CART_E_MALFORMED_HEADER = "CART_E_MALFORMED_HEADER"

# Tokens
CART_E_ENCRYPTION_FAILED = "CART_E_ENCRYPTION_FAILED"
CART_E_DECRYPTION_FAILED = "CART_E_DECRYPTION_FAILED"
CART_E_ALL_KEYS_FAILED = "CART_E_ALL_KEYS_FAILED"
CART_E_CLAIM_CONFLICT = "CART_E_CLAIM_CONFLICT"
CART_E_BAD_PAYLOAD = "CART_E_BAD_PAYLOAD"

# Composition
CART_E_MALFORMED_ENVELOPE = "CART_E_MALFORMED_ENVELOPE"
CART_E_PAYLOAD_HASH_MISMATCH = "CART_E_PAYLOAD_HASH_MISMATCH"

# Compression
CART_E_COMPRESSION_FAILED = "CART_E_COMPRESSION_FAILED"
CART_E_DECOMPRESSION_FAILED = "CART_E_DECOMPRESSION_FAILED"

# Generic
CART_E_NO_SIGNER = "CART_E_NO_SIGNER"
CART_E_CONFIG = "CART_E_CONFIG"


@dataclass
class CartError(Exception):
    """Base cloudless-cart exception with stable error code."""

    code: str
    message: str
    details: Dict[str, Any] = field(default_factory=dict)

    def as_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {
            "code": self.code,
            "message": self.message,
        }
        if self.details:
            d["details"] = self.details
        return d

    def __str__(self) -> str:
        # Keep message readable; details are available via .as_dict()
        return f"{self.code}: {self.message}"


def cart_error(code: str, message: str, **details: Any) -> CartError:
    return CartError(code=code, message=message, details=details)
