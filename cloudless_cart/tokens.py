"""
cloudless_cart.tokens: encrypted, expiring transport tokens (compact JWE).

Security Properties:
- Confidential: RSA-OAEP* wraps a fresh AES-GCM content key per token
- Authenticated: the protected header is the GCM AAD, so ``kid``, ``zip``
  and ``inj`` cannot be altered without failing decryption
- Short-lived: ``exp`` is always set (default 2h) and enforced on decrypt
- Unique: every token carries a random ``jti``

Plaintext layout (before encryption):

    {<payload fields>..., "iat": <int>, "jti": "<uuid4>", "exp": <int>,
     ["aud": ...], ["iss": ...]}

or, when compression shrinks the payload:

    {"_compressed": "<base64>", "_originalSize": <int>,
     "_compression": "br" | "gzip", "iat": ..., "jti": ..., "exp": ...}

The names of the claims the engine injected are recorded, sorted, in the
``inj`` header so a verifier can strip exactly those and nothing else.
"""

from __future__ import annotations

import base64
import binascii
import json
import logging
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple, Union

from .canonical import canonical_json_bytes
from .compression import CompressionMethod, CompressionNegotiator
from .errors import (
    CartError,
    cart_error,
    CART_E_ALL_KEYS_FAILED,
    CART_E_BAD_PAYLOAD,
    CART_E_CLAIM_CONFLICT,
    CART_E_DECRYPTION_FAILED,
    CART_E_ENCRYPTION_FAILED,
    CART_E_INVALID_KEY,
    CART_E_KEY_NOT_FOUND,
)
from .jose import DEFAULT_CONTENT_ENCRYPTION, jwe_decrypt_compact, jwe_encrypt_compact, jwe_header
from .jwk import ENCRYPTION_ALGORITHMS, SIGNING_ALGORITHMS, export_jwk, generate_key_pair
from .keystore import (
    GeneratedKey,
    KeyRecord,
    KeyStore,
    coerce_key_store,
    export_record,
    import_record,
    list_key_ids,
    new_key_id,
)
from .settings import CartCryptoSettings, parse_duration


logger = logging.getLogger("cloudless_cart.tokens")

# Standard claims a token may carry. Used to strip claims from tokens that
# predate the ``inj`` header.
RESERVED_CLAIMS = ("iat", "exp", "aud", "iss", "jti", "nbf", "sub")

MARKER_DATA = "_compressed"
MARKER_SIZE = "_originalSize"
MARKER_METHOD = "_compression"
MARKER_KEYS = (MARKER_DATA, MARKER_SIZE, MARKER_METHOD)

# CompressionMethod -> (marker tag, JWE "zip" header value)
_MARKER_TAGS = {
    CompressionMethod.BROTLI: ("br", "BR"),
    CompressionMethod.GZIP: ("gzip", "DEF"),
}
_ZIP_TO_METHOD = {"BR": CompressionMethod.BROTLI, "DEF": CompressionMethod.GZIP}

ExpirationTime = Union[str, timedelta, datetime, int, float]
CompressOption = Union[bool, str, CompressionMethod, None]


@dataclass
class EncryptionOptions:
    """Per-call token options.

    ``expiration_time`` accepts a relative duration (``"15m"``, ``"2h"``,
    ``"1d"`` or a timedelta), an absolute ``datetime`` or absolute epoch
    seconds. ``compress`` is True/False or a codec name; None means the
    configured default.
    """
    audience: Optional[Union[str, List[str]]] = None
    expiration_time: Optional[ExpirationTime] = None
    issuer: Optional[str] = None
    compress: CompressOption = None


def _is_marker(claims: Dict[str, Any]) -> bool:
    return isinstance(claims.get(MARKER_DATA), str) and isinstance(claims.get(MARKER_METHOD), str)


class TokenCrypto:
    """Encrypts JSON payloads into compact JWE tokens and back."""

    def __init__(
        self,
        key_store: Any = None,
        negotiator: Optional[CompressionNegotiator] = None,
        settings: Optional[CartCryptoSettings] = None,
    ):
        self.settings = settings or CartCryptoSettings.from_env()
        self.key_store: KeyStore = coerce_key_store(key_store)
        self.negotiator = negotiator or CompressionNegotiator(brotli_enabled=self.settings.enable_brotli)

    # -- key lifecycle ------------------------------------------------------

    def generate_key_pair_for_encryption(self, alg: Optional[str] = None) -> GeneratedKey:
        alg = alg or self.settings.encryption_alg
        if alg not in ENCRYPTION_ALGORITHMS:
            raise cart_error(CART_E_INVALID_KEY, f"{alg} is not a key management algorithm", alg=alg)
        private_key, public_key = generate_key_pair(alg)
        key_id = new_key_id()
        self.key_store.set(key_id, KeyRecord(public_key=public_key, private_key=private_key, alg=alg))
        logger.debug("Generated %s encryption key %s", alg, key_id)
        return GeneratedKey(key_id=key_id, public_key=export_jwk(public_key), alg=alg)

    def import_key_pair_for_encryption(
        self,
        key_id: str,
        public_jwk: Dict[str, Any],
        private_jwk: Dict[str, Any],
        alg: Optional[str] = None,
    ) -> None:
        alg = alg or self.settings.encryption_alg
        if alg not in ENCRYPTION_ALGORITHMS:
            raise cart_error(CART_E_INVALID_KEY, f"{alg} is not a key management algorithm", alg=alg)
        self.key_store.set(key_id, import_record(public_jwk, private_jwk, alg))

    def export_key_pair(self, key_id: str) -> Dict[str, Any]:
        return export_record(key_id, self.key_store.get(key_id))

    def get_available_keys(self) -> List[str]:
        """Ids of every stored record that can decrypt."""
        out = []
        for key_id in list_key_ids(self.key_store):
            record = self.key_store.get(key_id)
            if record is not None and record.private_key is not None and record.alg in ENCRYPTION_ALGORITHMS:
                out.append(key_id)
        return out

    def has_key(self, key_id: str) -> bool:
        return self.key_store.get(key_id) is not None

    # -- helpers --------------------------------------------------------------

    def _resolve_expiration(self, expiration_time: Optional[ExpirationTime], now: int) -> int:
        if expiration_time is None:
            expiration_time = self.settings.token_ttl
        if isinstance(expiration_time, bool):
            raise ValueError("expiration_time must be a duration, datetime or epoch seconds")
        if isinstance(expiration_time, str):
            return now + int(parse_duration(expiration_time).total_seconds())
        if isinstance(expiration_time, timedelta):
            return now + int(expiration_time.total_seconds())
        if isinstance(expiration_time, datetime):
            return int(expiration_time.timestamp())
        if isinstance(expiration_time, (int, float)):
            return int(expiration_time)
        raise ValueError(f"unsupported expiration_time {expiration_time!r}")

    def _resolve_compression(self, compress: CompressOption) -> CompressionMethod:
        if compress is None:
            compress = self.settings.compression
        if compress is True:
            return CompressionMethod.BROTLI
        if compress is False:
            return CompressionMethod.NONE
        return CompressionMethod.parse(compress)

    def _compress_payload(self, payload: Dict[str, Any], method: CompressionMethod) -> Optional[Dict[str, Any]]:
        """Return a compression marker, or None to send the payload as-is."""
        raw = canonical_json_bytes(payload)
        if method is CompressionMethod.BROTLI:
            tuning = {"quality": self.settings.brotli_quality, "lgwin": self.settings.brotli_window}
        else:
            tuning = {"quality": self.settings.gzip_level}
        try:
            result = self.negotiator.compress(raw, method, **tuning)
        except CartError as e:
            logger.warning("Payload compression failed, sending uncompressed: %s", e)
            return None
        if not result.compressed or len(result.data) >= len(raw):
            logger.debug("Compression skipped (%s %d -> %d bytes)", result.method.value, len(raw), len(result.data))
            return None
        logger.debug("Compressed payload with %s: %d -> %d bytes", result.method.value, len(raw), len(result.data))
        return {
            MARKER_DATA: base64.b64encode(result.data).decode("ascii"),
            MARKER_SIZE: len(raw),
            MARKER_METHOD: _MARKER_TAGS[result.method][0],
        }

    def _restore_payload(self, key_id: str, claims: Dict[str, Any], header: Dict[str, Any]) -> Dict[str, Any]:
        method = CompressionMethod.BROTLI if claims[MARKER_METHOD] == "br" else CompressionMethod.GZIP
        zip_tag = header.get("zip")
        if zip_tag is None:
            logger.warning("Token for key %s carries a compression marker but no zip header", key_id)
        elif _ZIP_TO_METHOD.get(zip_tag) is not method:
            logger.warning("Token for key %s: zip header %r disagrees with marker %r",
                           key_id, zip_tag, claims[MARKER_METHOD])
        try:
            compressed = base64.b64decode(claims[MARKER_DATA].encode("ascii"), validate=True)
            raw = self.negotiator.decompress(compressed, method)
        except (binascii.Error, ValueError, CartError) as e:
            raise cart_error(
                CART_E_DECRYPTION_FAILED,
                f"Token decryption failed for key {key_id}: compressed payload is unreadable",
                key_id=key_id,
                reason="decompress",
            ) from e

        expected = claims.get(MARKER_SIZE)
        if isinstance(expected, int) and expected != len(raw):
            raise cart_error(
                CART_E_DECRYPTION_FAILED,
                f"Token decryption failed for key {key_id}: decompressed size {len(raw)} != {expected}",
                key_id=key_id,
                reason="decompress",
            )
        try:
            restored = json.loads(raw.decode("utf-8"))
        except (UnicodeDecodeError, ValueError) as e:
            raise cart_error(
                CART_E_DECRYPTION_FAILED,
                f"Token decryption failed for key {key_id}: compressed payload is not JSON",
                key_id=key_id,
                reason="decompress",
            ) from e
        if not isinstance(restored, dict):
            raise cart_error(
                CART_E_DECRYPTION_FAILED,
                f"Token decryption failed for key {key_id}: compressed payload is not an object",
                key_id=key_id,
                reason="decompress",
            )

        merged = dict(restored)
        for name, value in claims.items():
            if name not in MARKER_KEYS:
                merged[name] = value
        return merged

    @staticmethod
    def _check_claims(
        key_id: str,
        claims: Dict[str, Any],
        audience: Optional[str],
        issuer: Optional[str],
        now: float,
    ) -> None:
        def fail(reason: str, msg: str) -> CartError:
            return cart_error(
                CART_E_DECRYPTION_FAILED,
                f"Token decryption failed for key {key_id}: {msg}",
                key_id=key_id,
                reason=reason,
            )

        exp = claims.get("exp")
        if exp is not None:
            if not isinstance(exp, (int, float)) or isinstance(exp, bool):
                raise fail("exp", "exp claim is not a number")
            if exp <= now:
                raise fail("expired", "token has expired")
        nbf = claims.get("nbf")
        if nbf is not None:
            if not isinstance(nbf, (int, float)) or isinstance(nbf, bool):
                raise fail("nbf", "nbf claim is not a number")
            if nbf > now:
                raise fail("not_yet_valid", "token is not yet valid")
        if audience is not None:
            aud = claims.get("aud")
            allowed = aud if isinstance(aud, list) else [aud]
            if audience not in allowed:
                raise fail("audience", f"unexpected audience {aud!r}")
        if issuer is not None and claims.get("iss") != issuer:
            raise fail("issuer", f"unexpected issuer {claims.get('iss')!r}")

    # -- encrypt / decrypt ------------------------------------------------------

    def encrypt_token(self, key_id: str, payload: Dict[str, Any], options: Optional[EncryptionOptions] = None) -> str:
        """Encrypt ``payload`` to the public key stored under ``key_id``.

        Raises CartError: CART_E_KEY_NOT_FOUND, CART_E_BAD_PAYLOAD,
        CART_E_CLAIM_CONFLICT, or CART_E_ENCRYPTION_FAILED for anything the
        underlying primitives reject.
        """
        record = self.key_store.get(key_id)
        if record is None or record.public_key is None:
            raise cart_error(CART_E_KEY_NOT_FOUND, f"Encryption key {key_id} not found", key_id=key_id)
        if not isinstance(payload, dict):
            raise cart_error(CART_E_BAD_PAYLOAD, "Token payload must be a JSON object", key_id=key_id)
        opts = options or EncryptionOptions()

        start = time.perf_counter()
        try:
            now = int(time.time())
            injected: Dict[str, Any] = {
                "iat": now,
                "jti": str(uuid.uuid4()),
                "exp": self._resolve_expiration(opts.expiration_time, now),
            }
            if opts.audience is not None:
                injected["aud"] = opts.audience
            if opts.issuer is not None:
                injected["iss"] = opts.issuer

            conflicts = sorted(set(injected) & set(payload))
            if conflicts:
                raise cart_error(
                    CART_E_CLAIM_CONFLICT,
                    f"Payload already carries claim(s) {', '.join(conflicts)}",
                    key_id=key_id,
                    claims=conflicts,
                )
            if _is_marker(payload):
                raise cart_error(
                    CART_E_BAD_PAYLOAD,
                    "Payload uses reserved compression marker fields",
                    key_id=key_id,
                )

            header: Dict[str, Any] = {
                "alg": record.alg or self.settings.encryption_alg,
                "enc": DEFAULT_CONTENT_ENCRYPTION,
                "kid": key_id,
                "inj": sorted(injected),
            }
            body: Dict[str, Any] = payload
            method = self._resolve_compression(opts.compress)
            if method is not CompressionMethod.NONE:
                marker = self._compress_payload(payload, method)
                if marker is not None:
                    body = marker
                    header["zip"] = "BR" if marker[MARKER_METHOD] == "br" else "DEF"

            claims = dict(body)
            claims.update(injected)
            token = jwe_encrypt_compact(record.public_key, canonical_json_bytes(claims), header)
        except CartError as e:
            if e.code in (CART_E_CLAIM_CONFLICT, CART_E_BAD_PAYLOAD):
                raise
            raise cart_error(
                CART_E_ENCRYPTION_FAILED,
                f"Token encryption failed for key {key_id}: {e.message}",
                key_id=key_id,
                cause=e.code,
            ) from e
        except (TypeError, ValueError) as e:
            raise cart_error(
                CART_E_ENCRYPTION_FAILED,
                f"Token encryption failed for key {key_id}: {e}",
                key_id=key_id,
            ) from e

        logger.debug("Encrypted token for key %s in %.2fms (%d chars)",
                     key_id, (time.perf_counter() - start) * 1000.0, len(token))
        return token

    def decrypt_token_with_header(
        self,
        key_id: str,
        token: str,
        audience: Optional[str] = None,
        issuer: Optional[str] = None,
    ) -> Tuple[Dict[str, Any], Dict[str, Any]]:
        """Decrypt ``token``; returns (claims, protected_header)."""
        record = self.key_store.get(key_id)
        if record is None or record.private_key is None:
            raise cart_error(CART_E_KEY_NOT_FOUND, f"Decryption key {key_id} not found", key_id=key_id)

        start = time.perf_counter()
        try:
            header, plaintext = jwe_decrypt_compact(record.private_key, token, expected_alg=record.alg)
        except CartError as e:
            raise cart_error(
                CART_E_DECRYPTION_FAILED,
                f"Token decryption failed for key {key_id}: {e.message}",
                key_id=key_id,
                reason=e.details.get("reason"),
            ) from e
        try:
            claims = json.loads(plaintext.decode("utf-8"))
        except (UnicodeDecodeError, ValueError) as e:
            raise cart_error(
                CART_E_DECRYPTION_FAILED,
                f"Token decryption failed for key {key_id}: plaintext is not JSON",
                key_id=key_id,
                reason="malformed",
            ) from e
        if not isinstance(claims, dict):
            raise cart_error(
                CART_E_DECRYPTION_FAILED,
                f"Token decryption failed for key {key_id}: plaintext is not an object",
                key_id=key_id,
                reason="malformed",
            )

        self._check_claims(key_id, claims, audience, issuer, time.time())
        if _is_marker(claims):
            claims = self._restore_payload(key_id, claims, header)
        elif header.get("zip"):
            logger.warning("Token for key %s has zip header %r but no compression marker", key_id, header["zip"])

        logger.debug("Decrypted token for key %s in %.2fms", key_id, (time.perf_counter() - start) * 1000.0)
        return claims, header

    def decrypt_token(
        self,
        key_id: str,
        token: str,
        audience: Optional[str] = None,
        issuer: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Decrypt ``token`` and return its claims, payload fields included."""
        claims, _ = self.decrypt_token_with_header(key_id, token, audience=audience, issuer=issuer)
        return claims

    def decrypt_token_with_any_key(self, token: str) -> Dict[str, Any]:
        """Try every stored decryption key, the header ``kid`` first.

        Records holding a signing algorithm are skipped. Raises
        CART_E_ALL_KEYS_FAILED when no key works.
        """
        key_ids = list_key_ids(self.key_store)
        try:
            kid = jwe_header(token).get("kid")
        except CartError:
            kid = None
        if isinstance(kid, str) and kid in key_ids:
            key_ids.remove(kid)
            key_ids.insert(0, kid)

        last_error: Optional[CartError] = None
        kid_error: Optional[CartError] = None
        tried = 0
        for key_id in key_ids:
            record = self.key_store.get(key_id)
            if record is None or record.private_key is None or record.alg in SIGNING_ALGORITHMS:
                continue
            tried += 1
            try:
                return self.decrypt_token(key_id, token)
            except CartError as e:
                logger.debug("Key %s could not decrypt token: %s", key_id, e.code)
                last_error = e
                if key_id == kid:
                    kid_error = e

        # Prefer the header kid's failure over whichever key ran last.
        reported = kid_error if kid_error is not None else last_error
        if reported is None:
            raise cart_error(
                CART_E_ALL_KEYS_FAILED,
                "Token decryption failed with all available keys. Last error: no decryption keys available",
                tried=tried,
            )
        label = f"Error for key {kid!r}" if kid_error is not None else "Last error"
        raise cart_error(
            CART_E_ALL_KEYS_FAILED,
            f"Token decryption failed with all available keys. {label}: {reported.message}",
            tried=tried,
            key_error=reported.code,
            reason=reported.details.get("reason"),
        )
