"""
cloudless_cart.composition: signing and encryption composed over one key store.

Two orderings are offered.

Encrypt-then-Sign (recommended):

    signed = {
        "signature": ..., "protected": ...,
        "payload": {
            "encrypted":   "<compact JWE of the payload>",
            "payloadHash": "<sha256 hex of canonical(payload)>",
            "timestamp":   <epoch ms>,
            "version":     1
        }
    }

  Verification runs first and no decryption is attempted unless the
  signature holds. After decryption the injected claims are stripped and the
  payload is re-hashed; the digest must match ``payloadHash``.

Sign-then-Encrypt:

    token = JWE({"signature": ..., "protected": ..., "payload": {...}} + claims)

  Hides the signer's envelope inside the ciphertext, at the cost of having
  to decrypt before anything can be authenticated.
"""

from __future__ import annotations

import hmac
import logging
import re
import time
from typing import Any, Dict, Iterable, Optional

from .canonical import canonical_hash
from .compression import CompressionNegotiator
from .errors import (
    cart_error,
    CART_E_MALFORMED_ENVELOPE,
    CART_E_PAYLOAD_HASH_MISMATCH,
)
from .keystore import GeneratedKey, KeyStore, coerce_key_store
from .settings import CartCryptoSettings
from .signature import JsonSignature
from .tokens import RESERVED_CLAIMS, EncryptionOptions, TokenCrypto


logger = logging.getLogger("cloudless_cart.composition")

ENVELOPE_VERSION = 1

_PAYLOAD_HASH_RE = re.compile(r"[0-9a-f]{64}")


def _strip_claims(claims: Dict[str, Any], header: Dict[str, Any]) -> Dict[str, Any]:
    injected: Iterable[str] = header.get("inj")
    if not isinstance(injected, list) or not all(isinstance(n, str) for n in injected):
        injected = RESERVED_CLAIMS
    drop = set(injected)
    return {k: v for k, v in claims.items() if k not in drop}


def _check_envelope(payload: Any) -> Dict[str, Any]:
    if not isinstance(payload, dict):
        raise cart_error(CART_E_MALFORMED_ENVELOPE, "Signed payload is not an encrypt-then-sign envelope")
    encrypted = payload.get("encrypted")
    payload_hash = payload.get("payloadHash")
    if not isinstance(encrypted, str) or not encrypted:
        raise cart_error(CART_E_MALFORMED_ENVELOPE, "Envelope is missing the encrypted token")
    if not isinstance(payload_hash, str) or not _PAYLOAD_HASH_RE.fullmatch(payload_hash):
        raise cart_error(CART_E_MALFORMED_ENVELOPE, "Envelope payloadHash must be 64 hex characters")
    version = payload.get("version")
    if isinstance(version, bool) or version != ENVELOPE_VERSION:
        raise cart_error(CART_E_MALFORMED_ENVELOPE, f"Unsupported envelope version {version!r}", version=version)
    return payload


class CloudlessCrypto:
    """Signer and encryptor sharing a single key namespace.

    Keys generated through either role are visible to the other, and to any
    other object constructed around the same ``key_store``.
    """

    def __init__(
        self,
        key_store: Any = None,
        settings: Optional[CartCryptoSettings] = None,
        negotiator: Optional[CompressionNegotiator] = None,
    ):
        self.settings = settings or CartCryptoSettings.from_env()
        self.key_store: KeyStore = coerce_key_store(key_store)
        self.signer = JsonSignature(self.key_store, default_alg=self.settings.signing_alg)
        self.encryptor = TokenCrypto(self.key_store, negotiator=negotiator, settings=self.settings)

    # -- keys -----------------------------------------------------------------

    def generate_signing_key_pair(self, alg: Optional[str] = None) -> GeneratedKey:
        return self.signer.generate_key_pair(alg)

    def generate_encryption_key_pair(self, alg: Optional[str] = None) -> GeneratedKey:
        return self.encryptor.generate_key_pair_for_encryption(alg)

    def export_key_pair(self, key_id: str) -> Dict[str, Any]:
        return self.signer.export_key_pair(key_id)

    def import_signing_key_pair(self, key_id: str, public_jwk: Dict[str, Any], private_jwk: Dict[str, Any], alg: str) -> None:
        self.signer.import_key_pair(key_id, public_jwk, private_jwk, alg)

    def import_encryption_key_pair(
        self,
        key_id: str,
        public_jwk: Dict[str, Any],
        private_jwk: Dict[str, Any],
        alg: Optional[str] = None,
    ) -> None:
        self.encryptor.import_key_pair_for_encryption(key_id, public_jwk, private_jwk, alg)

    # -- single operations ----------------------------------------------------

    def sign_object(self, key_id: str, payload: Any) -> Dict[str, Any]:
        return self.signer.sign(key_id, payload)

    def verify_object(self, signed: Any, key_id: Optional[str] = None) -> Any:
        return self.signer.verify(signed, key_id)

    def encrypt_token(self, key_id: str, payload: Dict[str, Any], options: Optional[EncryptionOptions] = None) -> str:
        return self.encryptor.encrypt_token(key_id, payload, options)

    def decrypt_token(self, key_id: str, token: str, **expect: Any) -> Dict[str, Any]:
        return self.encryptor.decrypt_token(key_id, token, **expect)

    # -- sign-then-encrypt ----------------------------------------------------

    def sign_and_encrypt(
        self,
        signing_key_id: str,
        encryption_key_id: str,
        payload: Any,
        options: Optional[EncryptionOptions] = None,
    ) -> str:
        signed = self.signer.sign(signing_key_id, payload)
        return self.encryptor.encrypt_token(encryption_key_id, signed, options)

    def decrypt_and_verify(self, decryption_key_id: str, verification_key_id: str, token: str) -> Any:
        claims, header = self.encryptor.decrypt_token_with_header(decryption_key_id, token)
        return self.signer.verify(_strip_claims(claims, header), verification_key_id)

    # -- encrypt-then-sign ----------------------------------------------------

    def encrypt_then_sign(
        self,
        encryption_key_id: str,
        signing_key_id: str,
        payload: Dict[str, Any],
        options: Optional[EncryptionOptions] = None,
    ) -> Dict[str, Any]:
        """Encrypt ``payload``, then sign an envelope binding its hash."""
        start = time.perf_counter()
        payload_hash = canonical_hash(payload)
        encrypted = self.encryptor.encrypt_token(encryption_key_id, payload, options)
        envelope = {
            "encrypted": encrypted,
            "payloadHash": payload_hash,
            "timestamp": int(time.time() * 1000),
            "version": ENVELOPE_VERSION,
        }
        signed = self.signer.sign(signing_key_id, envelope)
        logger.debug("encrypt_then_sign enc=%s sig=%s in %.2fms",
                     encryption_key_id, signing_key_id, (time.perf_counter() - start) * 1000.0)
        return signed

    def verify_then_decrypt(self, signing_key_id: str, encryption_key_id: str, signed: Any) -> Dict[str, Any]:
        """Verify the envelope signature, then decrypt and check the payload hash.

        Raises CartError: a signature failure (nothing is decrypted),
        CART_E_MALFORMED_ENVELOPE, a decryption failure, or
        CART_E_PAYLOAD_HASH_MISMATCH.
        """
        envelope = _check_envelope(self.signer.verify(signed, signing_key_id))
        claims, header = self.encryptor.decrypt_token_with_header(encryption_key_id, envelope["encrypted"])
        payload = _strip_claims(claims, header)

        actual = canonical_hash(payload)
        if not hmac.compare_digest(actual, envelope["payloadHash"]):
            logger.warning("Payload hash mismatch for envelope signed by %s", signing_key_id)
            raise cart_error(
                CART_E_PAYLOAD_HASH_MISMATCH,
                f"Decrypted payload does not match the signed hash (signing key {signing_key_id})",
                signing_key_id=signing_key_id,
                encryption_key_id=encryption_key_id,
            )
        return payload
