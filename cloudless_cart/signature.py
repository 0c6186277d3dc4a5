"""
cloudless_cart.signature: detached-payload JSON signatures.

Signed object format:

    {
        "signature": "<base64url(sig)>",
        "protected": "<base64url({alg, kid, b64: false, crit: [b64]})>",
        "payload":   { ... the signed JSON object ... }
    }

The signature covers the canonical serialization of ``payload`` (sorted keys,
compact separators), so the object may be re-encoded or have its keys
reordered in transit without breaking verification. The payload returned by
``sign`` is the deserialized canonical form; a signed object must never be
patched in place, only re-signed.
"""

from __future__ import annotations

import json
import logging
import time
from typing import Any, Dict, Optional, Tuple

from .canonical import canonical_json_bytes
from .errors import (
    CartError,
    cart_error,
    CART_E_BAD_PAYLOAD,
    CART_E_INVALID_KEY,
    CART_E_KEY_NOT_FOUND,
    CART_E_MALFORMED_HEADER,
    CART_E_SIGNATURE_INVALID,
)
from .jose import decode_protected_header, jws_sign_detached, jws_verify_detached
from .jwk import ENCRYPTION_ALGORITHMS, SIGNING_ALGORITHMS, export_jwk, generate_key_pair, import_jwk, is_private_key
from .keystore import (
    GeneratedKey,
    KeyRecord,
    KeyStore,
    coerce_key_store,
    export_record,
    import_record,
    new_key_id,
)


logger = logging.getLogger("cloudless_cart.signature")

DEFAULT_SIGNING_ALG = "PS256"

# verify_detailed failure tags
FAILURE_MALFORMED = "malformed"
FAILURE_MALFORMED_HEADER = "malformed_header"
FAILURE_UNKNOWN_KID = "unknown_kid"
FAILURE_UNKNOWN_KEY = "unknown_key"
FAILURE_ALG_MISMATCH = "alg_mismatch"
FAILURE_BAD_SIGNATURE = "bad_signature"
FAILURE_BAD_PAYLOAD = "bad_payload"

_FAILURE_CODES = {
    FAILURE_MALFORMED: CART_E_MALFORMED_HEADER,
    FAILURE_MALFORMED_HEADER: CART_E_MALFORMED_HEADER,
    FAILURE_UNKNOWN_KID: CART_E_MALFORMED_HEADER,
    FAILURE_UNKNOWN_KEY: CART_E_KEY_NOT_FOUND,
    FAILURE_ALG_MISMATCH: CART_E_SIGNATURE_INVALID,
    FAILURE_BAD_SIGNATURE: CART_E_SIGNATURE_INVALID,
    FAILURE_BAD_PAYLOAD: CART_E_BAD_PAYLOAD,
}


class JsonSignature:
    """Signs and verifies JSON objects with keys held in a KeyStore."""

    def __init__(self, key_store: Any = None, default_alg: str = DEFAULT_SIGNING_ALG):
        self.key_store: KeyStore = coerce_key_store(key_store)
        self.default_alg = default_alg

    # -- key lifecycle ------------------------------------------------------

    def generate_key_pair(self, alg: Optional[str] = None) -> GeneratedKey:
        """Create a key pair under a new random id and store both halves."""
        alg = alg or self.default_alg
        if alg not in SIGNING_ALGORITHMS:
            raise cart_error(CART_E_INVALID_KEY, f"{alg} is not a signing algorithm", alg=alg)
        private_key, public_key = generate_key_pair(alg)
        key_id = new_key_id()
        self.key_store.set(key_id, KeyRecord(public_key=public_key, private_key=private_key, alg=alg))
        logger.debug("Generated %s signing key %s", alg, key_id)
        return GeneratedKey(key_id=key_id, public_key=export_jwk(public_key), alg=alg)

    def export_key_pair(self, key_id: str) -> Dict[str, Any]:
        return export_record(key_id, self.key_store.get(key_id))

    def import_key_pair(self, key_id: str, public_jwk: Dict[str, Any], private_jwk: Dict[str, Any], alg: str) -> None:
        self.key_store.set(key_id, import_record(public_jwk, private_jwk, alg))

    def set_public_key(self, key_id: str, jwk: Dict[str, Any], alg: Optional[str] = None) -> None:
        """Store a verification-only key. ``alg`` falls back to the JWK's own ``alg``."""
        alg = alg or (jwk.get("alg") if isinstance(jwk, dict) else None)
        if not alg:
            raise cart_error(CART_E_INVALID_KEY, f"An algorithm is required to import key {key_id}", key_id=key_id)
        public_key = import_jwk(jwk, alg)
        if is_private_key(public_key):
            public_key = public_key.public_key()
        self.key_store.set(key_id, KeyRecord(public_key=public_key, alg=alg))

    def set_private_key(self, key_id: str, jwk: Dict[str, Any], alg: Optional[str] = None) -> None:
        """Store a private key; the public half is derived from it."""
        alg = alg or (jwk.get("alg") if isinstance(jwk, dict) else None)
        if not alg:
            raise cart_error(CART_E_INVALID_KEY, f"An algorithm is required to import key {key_id}", key_id=key_id)
        private_key = import_jwk(jwk, alg)
        if not is_private_key(private_key):
            raise cart_error(CART_E_INVALID_KEY, f"JWK for {key_id} has no private component", key_id=key_id)
        self.key_store.set(key_id, KeyRecord(public_key=private_key.public_key(), private_key=private_key, alg=alg))

    def get_public_key(self, key_id: str) -> Dict[str, Any]:
        record = self.key_store.get(key_id)
        if record is None or record.public_key is None:
            raise cart_error(CART_E_KEY_NOT_FOUND, f"Public key {key_id} not found", key_id=key_id)
        use = "enc" if record.alg in ENCRYPTION_ALGORITHMS else "sig"
        return export_jwk(record.public_key, kid=key_id, alg=record.alg, use=use)

    # -- sign / verify ------------------------------------------------------

    def sign(self, key_id: str, payload: Any) -> Dict[str, Any]:
        """Sign ``payload`` with the private key stored under ``key_id``."""
        record = self.key_store.get(key_id)
        if record is None or record.private_key is None:
            raise cart_error(CART_E_KEY_NOT_FOUND, f"Signing key {key_id} not found", key_id=key_id)
        alg = record.alg or self.default_alg

        start = time.perf_counter()
        canonical = canonical_json_bytes(payload)
        protected, signature = jws_sign_detached(alg, record.private_key, key_id, canonical)
        logger.debug("Signed %d bytes with %s key %s in %.2fms",
                     len(canonical), alg, key_id, (time.perf_counter() - start) * 1000.0)
        return {
            "signature": signature,
            "protected": protected,
            "payload": json.loads(canonical.decode("utf-8")),
        }

    def verify_detailed(self, signed: Any, key_id: Optional[str] = None) -> Tuple[bool, Dict[str, Any]]:
        """Verify a signed object and return (ok, info).

        Never raises. On success ``info["payload"]`` holds the verified
        payload; on failure ``info["failure"]`` is one of malformed,
        malformed_header, unknown_kid, unknown_key, alg_mismatch,
        bad_payload, bad_signature and ``info["error"]`` is a readable message.
        """
        info: Dict[str, Any] = {"key_id": key_id}

        if not isinstance(signed, dict) or not isinstance(signed.get("signature"), str) or "payload" not in signed:
            info.update({"failure": FAILURE_MALFORMED, "error": "signed object must have signature, protected and payload"})
            return False, info

        try:
            header = decode_protected_header(signed.get("protected"))
        except CartError as e:
            info.update({"failure": FAILURE_MALFORMED_HEADER, "error": e.message})
            return False, info
        if header.get("b64") is not False or "b64" not in (header.get("crit") or []):
            info.update({"failure": FAILURE_MALFORMED_HEADER, "error": "header must declare an unencoded (b64=false) payload"})
            return False, info

        kid = key_id or header.get("kid")
        if not isinstance(kid, str) or not kid:
            info.update({"failure": FAILURE_UNKNOWN_KID, "error": "no key id supplied and none in header"})
            return False, info
        info["key_id"] = kid

        record = self.key_store.get(kid)
        if record is None or record.public_key is None:
            info.update({"failure": FAILURE_UNKNOWN_KEY, "error": f"Key {kid} not found"})
            return False, info

        alg = header.get("alg")
        if alg not in SIGNING_ALGORITHMS or (record.alg and alg != record.alg):
            info.update({"failure": FAILURE_ALG_MISMATCH, "error": f"header alg {alg!r} not allowed for key {kid}"})
            return False, info

        try:
            canonical = canonical_json_bytes(signed["payload"])
        except CartError as e:
            info.update({"failure": FAILURE_BAD_PAYLOAD, "error": e.message})
            return False, info

        start = time.perf_counter()
        ok = jws_verify_detached(alg, record.public_key, signed["protected"], canonical, signed["signature"])
        logger.debug("Verified signature for key %s in %.2fms (ok=%s)", kid, (time.perf_counter() - start) * 1000.0, ok)
        if not ok:
            info.update({"failure": FAILURE_BAD_SIGNATURE, "error": "signature verification failed"})
            return False, info

        info["payload"] = json.loads(canonical.decode("utf-8"))
        return True, info

    def verify(self, signed: Any, key_id: Optional[str] = None) -> Any:
        """Verify a signed object and return its payload.

        Raises CartError: CART_E_MALFORMED_HEADER for structural problems,
        CART_E_KEY_NOT_FOUND when no public key resolves, and
        CART_E_SIGNATURE_INVALID when the cryptographic check fails.
        """
        ok, info = self.verify_detailed(signed, key_id)
        if ok:
            return info["payload"]
        failure = info["failure"]
        code = _FAILURE_CODES.get(failure, CART_E_SIGNATURE_INVALID)
        raise cart_error(
            code,
            f"Signature verification failed for key {info.get('key_id')}: {info['error']}",
            key_id=info.get("key_id"),
            failure=failure,
        )
