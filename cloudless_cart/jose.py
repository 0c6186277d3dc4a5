"""cloudless_cart.jose: JOSE envelope framing over ``cryptography`` primitives.

Two established envelope structures are used, nothing new is invented:

Flattened JWS with unencoded payload (RFC 7515 + RFC 7797):

    {
        "protected": base64url({"alg": ..., "kid": ..., "b64": false, "crit": ["b64"]}),
        "signature": base64url(sig)
    }

    signing input = ASCII(protected) || "." || payload_bytes

  The payload travels next to the signature as a JSON object rather than as a
  base64 blob, which is why canonical serialization matters: the verifier
  rebuilds ``payload_bytes`` from the object it received.

Compact JWE (RFC 7516), RSA-OAEP* key wrap + AES-GCM content encryption:

    header.encryptedKey.iv.ciphertext.tag

  The protected header segment is the AES-GCM additional authenticated data,
  so every header field (including compression tags) is integrity protected.
"""

from __future__ import annotations

import binascii
import json
import os
from typing import Any, Dict, Optional, Tuple

from cryptography.exceptions import InvalidSignature, InvalidTag
from cryptography.hazmat.primitives.asymmetric import ec, padding, rsa
from cryptography.hazmat.primitives.asymmetric.ed25519 import (
    Ed25519PrivateKey, Ed25519PublicKey
)
from cryptography.hazmat.primitives.asymmetric.utils import (
    decode_dss_signature, encode_dss_signature
)
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from .errors import (
    CartError,
    cart_error,
    CART_E_DECRYPTION_FAILED,
    CART_E_INVALID_KEY,
    CART_E_MALFORMED_HEADER,
    CART_E_UNSUPPORTED_ALG,
)
from .jwk import (
    ENCRYPTION_ALGORITHMS,
    SIGNING_ALGORITHMS,
    b64url_decode,
    b64url_encode,
    hash_for_alg,
)


# Content encryption algorithm -> CEK length in bytes
CONTENT_ENCRYPTION = {"A128GCM": 16, "A192GCM": 24, "A256GCM": 32}
DEFAULT_CONTENT_ENCRYPTION = "A256GCM"

_GCM_IV_BYTES = 12
_GCM_TAG_BYTES = 16
_ES_COORD_BYTES = {"ES256": 32, "ES384": 48, "ES512": 66}


def encode_protected_header(header: Dict[str, Any]) -> str:
    raw = json.dumps(header, sort_keys=True, separators=(",", ":"), ensure_ascii=False)
    return b64url_encode(raw.encode("utf-8"))


def decode_protected_header(protected: Any) -> Dict[str, Any]:
    """Decode a base64url protected header into a dict.

    Raises CartError(CART_E_MALFORMED_HEADER) for anything that is not a
    base64url-encoded JSON object.
    """
    if not isinstance(protected, str) or not protected:
        raise cart_error(CART_E_MALFORMED_HEADER, "protected header must be a non-empty string")
    try:
        header = json.loads(b64url_decode(protected).decode("utf-8"))
    except (binascii.Error, UnicodeDecodeError, ValueError) as e:
        raise cart_error(CART_E_MALFORMED_HEADER, f"protected header is not base64url JSON: {e}") from e
    if not isinstance(header, dict):
        raise cart_error(CART_E_MALFORMED_HEADER, "protected header must be a JSON object")
    return header


# ---------------------------------------------------------------------------
# Raw signatures
# ---------------------------------------------------------------------------

def sign_bytes(alg: str, private_key: Any, message: bytes) -> bytes:
    """Produce a JWA signature over ``message``."""
    if alg not in SIGNING_ALGORITHMS:
        raise cart_error(CART_E_UNSUPPORTED_ALG, f"Unsupported signing algorithm: {alg!r}", alg=alg)
    if alg == "EdDSA":
        if not isinstance(private_key, Ed25519PrivateKey):
            raise cart_error(CART_E_INVALID_KEY, "EdDSA requires an Ed25519 private key")
        return private_key.sign(message)
    digest = hash_for_alg(alg)
    if alg.startswith("ES"):
        if not isinstance(private_key, ec.EllipticCurvePrivateKey):
            raise cart_error(CART_E_INVALID_KEY, f"{alg} requires an EC private key")
        r, s = decode_dss_signature(private_key.sign(message, ec.ECDSA(digest)))
        size = _ES_COORD_BYTES[alg]
        return r.to_bytes(size, "big") + s.to_bytes(size, "big")
    if not isinstance(private_key, rsa.RSAPrivateKey):
        raise cart_error(CART_E_INVALID_KEY, f"{alg} requires an RSA private key")
    if alg.startswith("PS"):
        pad = padding.PSS(mgf=padding.MGF1(digest), salt_length=digest.digest_size)
    else:
        pad = padding.PKCS1v15()
    return private_key.sign(message, pad, digest)


def verify_bytes(alg: str, public_key: Any, message: bytes, signature: bytes) -> bool:
    """Verify a JWA signature. Returns False on any mismatch."""
    if alg not in SIGNING_ALGORITHMS:
        return False
    try:
        if alg == "EdDSA":
            if not isinstance(public_key, Ed25519PublicKey):
                return False
            public_key.verify(signature, message)
            return True
        digest = hash_for_alg(alg)
        if alg.startswith("ES"):
            if not isinstance(public_key, ec.EllipticCurvePublicKey):
                return False
            size = _ES_COORD_BYTES[alg]
            if len(signature) != 2 * size:
                return False
            r = int.from_bytes(signature[:size], "big")
            s = int.from_bytes(signature[size:], "big")
            public_key.verify(encode_dss_signature(r, s), message, ec.ECDSA(digest))
            return True
        if not isinstance(public_key, rsa.RSAPublicKey):
            return False
        if alg.startswith("PS"):
            pad = padding.PSS(mgf=padding.MGF1(digest), salt_length=digest.digest_size)
        else:
            pad = padding.PKCS1v15()
        public_key.verify(signature, message, pad, digest)
        return True
    except InvalidSignature:
        return False


# ---------------------------------------------------------------------------
# Flattened JWS, unencoded detached payload
# ---------------------------------------------------------------------------

def _jws_signing_input(protected: str, payload: bytes) -> bytes:
    # RFC 7797: with b64=false the payload bytes are appended verbatim.
    return protected.encode("ascii") + b"." + bytes(payload)


def jws_sign_detached(alg: str, private_key: Any, kid: str, payload: bytes) -> Tuple[str, str]:
    """Sign ``payload``; returns (protected, signature), both base64url strings."""
    protected = encode_protected_header({"alg": alg, "kid": kid, "b64": False, "crit": ["b64"]})
    sig = sign_bytes(alg, private_key, _jws_signing_input(protected, payload))
    return protected, b64url_encode(sig)


def jws_verify_detached(alg: str, public_key: Any, protected: str, payload: bytes, signature: str) -> bool:
    try:
        sig = b64url_decode(signature)
    except (TypeError, ValueError):
        return False
    return verify_bytes(alg, public_key, _jws_signing_input(protected, payload), sig)


# ---------------------------------------------------------------------------
# Compact JWE
# ---------------------------------------------------------------------------

def _oaep(alg: str) -> padding.OAEP:
    digest = hash_for_alg(alg)
    return padding.OAEP(mgf=padding.MGF1(algorithm=digest), algorithm=digest, label=None)


def jwe_encrypt_compact(public_key: Any, plaintext: bytes, header: Dict[str, Any]) -> str:
    """Encrypt ``plaintext`` to ``public_key`` under the given protected header.

    ``header`` must carry ``alg`` (an RSA-OAEP variant) and ``enc`` (AES-GCM).
    """
    alg = header.get("alg")
    enc = header.get("enc")
    if alg not in ENCRYPTION_ALGORITHMS:
        raise cart_error(CART_E_UNSUPPORTED_ALG, f"Unsupported key management algorithm: {alg!r}", alg=alg)
    if enc not in CONTENT_ENCRYPTION:
        raise cart_error(CART_E_UNSUPPORTED_ALG, f"Unsupported content encryption: {enc!r}", enc=enc)
    if not isinstance(public_key, rsa.RSAPublicKey):
        raise cart_error(CART_E_INVALID_KEY, f"{alg} requires an RSA public key")

    protected = encode_protected_header(header)
    cek = os.urandom(CONTENT_ENCRYPTION[enc])
    iv = os.urandom(_GCM_IV_BYTES)
    encrypted_key = public_key.encrypt(cek, _oaep(alg))
    sealed = AESGCM(cek).encrypt(iv, bytes(plaintext), protected.encode("ascii"))
    ciphertext, tag = sealed[:-_GCM_TAG_BYTES], sealed[-_GCM_TAG_BYTES:]
    return ".".join([
        protected,
        b64url_encode(encrypted_key),
        b64url_encode(iv),
        b64url_encode(ciphertext),
        b64url_encode(tag),
    ])


def jwe_header(token: Any) -> Dict[str, Any]:
    """Read the (unauthenticated until decryption) protected header of a token."""
    if not isinstance(token, str) or token.count(".") != 4:
        raise cart_error(CART_E_MALFORMED_HEADER, "token is not a five-segment compact JWE")
    return decode_protected_header(token.split(".", 1)[0])


def jwe_decrypt_compact(
    private_key: Any,
    token: str,
    *,
    expected_alg: Optional[str] = None,
) -> Tuple[Dict[str, Any], bytes]:
    """Decrypt a compact JWE; returns (protected_header, plaintext).

    Fails atomically with CartError(CART_E_DECRYPTION_FAILED): either the
    whole plaintext authenticates or nothing is returned.
    """
    try:
        header = jwe_header(token)
    except CartError as e:
        raise cart_error(CART_E_DECRYPTION_FAILED, e.message, reason="malformed") from e

    alg = header.get("alg")
    enc = header.get("enc")
    if alg not in ENCRYPTION_ALGORITHMS or enc not in CONTENT_ENCRYPTION:
        raise cart_error(CART_E_DECRYPTION_FAILED, f"unsupported alg/enc {alg!r}/{enc!r}", reason="unsupported")
    if expected_alg is not None and alg != expected_alg:
        raise cart_error(CART_E_DECRYPTION_FAILED, f"token alg {alg} does not match key alg {expected_alg}", reason="alg_mismatch")
    if not isinstance(private_key, rsa.RSAPrivateKey):
        raise cart_error(CART_E_DECRYPTION_FAILED, f"{alg} requires an RSA private key", reason="key_type")

    protected, ek_b64, iv_b64, ct_b64, tag_b64 = token.split(".")
    try:
        encrypted_key = b64url_decode(ek_b64)
        iv = b64url_decode(iv_b64)
        ciphertext = b64url_decode(ct_b64)
        tag = b64url_decode(tag_b64)
    except (TypeError, ValueError) as e:
        raise cart_error(CART_E_DECRYPTION_FAILED, f"invalid base64url segment: {e}", reason="malformed") from e
    if len(iv) != _GCM_IV_BYTES or len(tag) != _GCM_TAG_BYTES:
        raise cart_error(CART_E_DECRYPTION_FAILED, "invalid IV or tag length", reason="malformed")

    try:
        cek = private_key.decrypt(encrypted_key, _oaep(alg))
    except ValueError as e:
        raise cart_error(CART_E_DECRYPTION_FAILED, "content key unwrap failed", reason="key_unwrap") from e
    if len(cek) != CONTENT_ENCRYPTION[enc]:
        raise cart_error(CART_E_DECRYPTION_FAILED, "content key has wrong length", reason="key_unwrap")

    try:
        plaintext = AESGCM(cek).decrypt(iv, ciphertext + tag, protected.encode("ascii"))
    except InvalidTag as e:
        raise cart_error(CART_E_DECRYPTION_FAILED, "authentication tag check failed", reason="auth") from e
    return header, plaintext
