import base64
import json
import time
from datetime import timedelta

import pytest

from cloudless_cart.compression import CompressionNegotiator, RUNTIME_EMBEDDED
from cloudless_cart.errors import (
    CartError,
    CART_E_ALL_KEYS_FAILED,
    CART_E_BAD_PAYLOAD,
    CART_E_CLAIM_CONFLICT,
    CART_E_DECRYPTION_FAILED,
    CART_E_ENCRYPTION_FAILED,
    CART_E_INVALID_KEY,
    CART_E_KEY_NOT_FOUND,
    CART_E_KEYSTORE_NOT_ENUMERABLE,
)
from cloudless_cart.jose import jwe_decrypt_compact, jwe_header
from cloudless_cart.keystore import InMemoryKeyStore
from cloudless_cart.settings import CartCryptoSettings
from cloudless_cart.signature import JsonSignature
from cloudless_cart.tokens import EncryptionOptions, TokenCrypto


PAYLOAD = {"userId": "alice", "items": ["book"], "total": 20}
BIG_PAYLOAD = {"items": [{"sku": f"SKU-{i:04d}", "name": "paperback book", "qty": 1} for i in range(200)]}


def _crypto(**settings):
    return TokenCrypto(settings=CartCryptoSettings(**settings))


def _plaintext_claims(tc, key_id, token):
    _, raw = jwe_decrypt_compact(tc.key_store.get(key_id).private_key, token)
    return json.loads(raw)


def test_encrypt_decrypt_round_trip_injects_claims():
    tc = _crypto()
    pair = tc.generate_key_pair_for_encryption()
    assert pair.alg == "RSA-OAEP-256"

    before = int(time.time())
    token = tc.encrypt_token(pair.key_id, PAYLOAD)
    assert token.count(".") == 4

    claims = tc.decrypt_token(pair.key_id, token)
    for k, v in PAYLOAD.items():
        assert claims[k] == v
    assert before <= claims["iat"] <= int(time.time())
    assert claims["exp"] - claims["iat"] == 2 * 3600
    assert len(claims["jti"]) == 36
    assert "aud" not in claims and "iss" not in claims


def test_protected_header_records_injected_claims():
    tc = _crypto(compression="none")
    pair = tc.generate_key_pair_for_encryption()
    token = tc.encrypt_token(pair.key_id, PAYLOAD, EncryptionOptions(audience="svc", issuer="shop"))
    header = jwe_header(token)
    assert header["alg"] == "RSA-OAEP-256"
    assert header["enc"] == "A256GCM"
    assert header["kid"] == pair.key_id
    assert header["inj"] == ["aud", "exp", "iat", "iss", "jti"]
    assert "zip" not in header


def test_every_token_is_unique():
    tc = _crypto()
    pair = tc.generate_key_pair_for_encryption()
    t1 = tc.encrypt_token(pair.key_id, PAYLOAD)
    t2 = tc.encrypt_token(pair.key_id, PAYLOAD)
    assert t1 != t2
    assert tc.decrypt_token(pair.key_id, t1)["jti"] != tc.decrypt_token(pair.key_id, t2)["jti"]


@pytest.mark.parametrize("alg", ["RSA-OAEP", "RSA-OAEP-384", "RSA-OAEP-512"])
def test_other_key_management_algorithms(alg):
    tc = _crypto()
    pair = tc.generate_key_pair_for_encryption(alg)
    token = tc.encrypt_token(pair.key_id, PAYLOAD)
    assert jwe_header(token)["alg"] == alg
    assert tc.decrypt_token(pair.key_id, token)["userId"] == "alice"


def test_generate_rejects_signing_algorithms():
    with pytest.raises(CartError) as ei:
        _crypto().generate_key_pair_for_encryption("PS256")
    assert ei.value.code == CART_E_INVALID_KEY


def test_missing_keys_raise_key_not_found():
    tc = _crypto()
    with pytest.raises(CartError) as ei:
        tc.encrypt_token("ghost", PAYLOAD)
    assert ei.value.code == CART_E_KEY_NOT_FOUND
    assert ei.value.message == "Encryption key ghost not found"
    with pytest.raises(CartError) as ei:
        tc.decrypt_token("ghost", "a.b.c.d.e")
    assert ei.value.code == CART_E_KEY_NOT_FOUND
    assert ei.value.message == "Decryption key ghost not found"


def test_wrong_key_fails_decryption():
    tc = _crypto()
    a = tc.generate_key_pair_for_encryption()
    b = tc.generate_key_pair_for_encryption()
    token = tc.encrypt_token(a.key_id, PAYLOAD)
    with pytest.raises(CartError) as ei:
        tc.decrypt_token(b.key_id, token)
    assert ei.value.code == CART_E_DECRYPTION_FAILED
    assert b.key_id in ei.value.message


def test_tampered_ciphertext_fails_atomically():
    tc = _crypto()
    pair = tc.generate_key_pair_for_encryption()
    token = tc.encrypt_token(pair.key_id, PAYLOAD)
    parts = token.split(".")
    ct = bytearray(base64.urlsafe_b64decode(parts[3] + "=" * (-len(parts[3]) % 4)))
    ct[0] ^= 0xFF
    parts[3] = base64.urlsafe_b64encode(bytes(ct)).rstrip(b"=").decode("ascii")
    with pytest.raises(CartError) as ei:
        tc.decrypt_token(pair.key_id, ".".join(parts))
    assert ei.value.code == CART_E_DECRYPTION_FAILED
    assert ei.value.details["reason"] == "auth"


def test_garbage_token_fails():
    tc = _crypto()
    pair = tc.generate_key_pair_for_encryption()
    for bad in ("", "not-a-token", "a.b.c.d.e"):
        with pytest.raises(CartError) as ei:
            tc.decrypt_token(pair.key_id, bad)
        assert ei.value.code == CART_E_DECRYPTION_FAILED


@pytest.mark.parametrize("exp", ["30s", "15m", "1d", "1w", timedelta(minutes=5)])
def test_relative_expiration_forms(exp):
    tc = _crypto()
    pair = tc.generate_key_pair_for_encryption()
    claims = tc.decrypt_token(pair.key_id, tc.encrypt_token(pair.key_id, PAYLOAD, EncryptionOptions(expiration_time=exp)))
    expected = {"30s": 30, "15m": 900, "1d": 86400, "1w": 604800}.get(exp, 300)
    assert claims["exp"] - claims["iat"] == expected


def test_absolute_expiration_and_expired_tokens():
    tc = _crypto()
    pair = tc.generate_key_pair_for_encryption()
    future = int(time.time()) + 600
    claims = tc.decrypt_token(pair.key_id, tc.encrypt_token(pair.key_id, PAYLOAD, EncryptionOptions(expiration_time=future)))
    assert claims["exp"] == future

    expired = tc.encrypt_token(pair.key_id, PAYLOAD, EncryptionOptions(expiration_time=int(time.time()) - 10))
    with pytest.raises(CartError) as ei:
        tc.decrypt_token(pair.key_id, expired)
    assert ei.value.code == CART_E_DECRYPTION_FAILED
    assert ei.value.details["reason"] == "expired"


def test_configured_default_ttl(monkeypatch):
    monkeypatch.setenv("CART_TOKEN_TTL", "15m")
    tc = TokenCrypto()
    pair = tc.generate_key_pair_for_encryption()
    claims = tc.decrypt_token(pair.key_id, tc.encrypt_token(pair.key_id, PAYLOAD))
    assert claims["exp"] - claims["iat"] == 900


def test_invalid_expiration_is_an_encryption_failure():
    tc = _crypto()
    pair = tc.generate_key_pair_for_encryption()
    with pytest.raises(CartError) as ei:
        tc.encrypt_token(pair.key_id, PAYLOAD, EncryptionOptions(expiration_time="soon"))
    assert ei.value.code == CART_E_ENCRYPTION_FAILED


def test_not_before_claim_is_enforced():
    tc = _crypto()
    pair = tc.generate_key_pair_for_encryption()
    token = tc.encrypt_token(pair.key_id, {"nbf": int(time.time()) + 3600, "x": 1})
    with pytest.raises(CartError) as ei:
        tc.decrypt_token(pair.key_id, token)
    assert ei.value.details["reason"] == "not_yet_valid"


def test_audience_and_issuer_checks():
    tc = _crypto()
    pair = tc.generate_key_pair_for_encryption()
    token = tc.encrypt_token(pair.key_id, PAYLOAD, EncryptionOptions(audience=["checkout", "billing"], issuer="shop"))

    claims = tc.decrypt_token(pair.key_id, token, audience="billing", issuer="shop")
    assert claims["aud"] == ["checkout", "billing"]
    assert claims["iss"] == "shop"

    with pytest.raises(CartError) as ei:
        tc.decrypt_token(pair.key_id, token, audience="warehouse")
    assert ei.value.details["reason"] == "audience"
    with pytest.raises(CartError) as ei:
        tc.decrypt_token(pair.key_id, token, issuer="someone-else")
    assert ei.value.details["reason"] == "issuer"


def test_payload_claim_collision_is_rejected():
    tc = _crypto()
    pair = tc.generate_key_pair_for_encryption()
    with pytest.raises(CartError) as ei:
        tc.encrypt_token(pair.key_id, {"exp": 1, "jti": "mine"})
    assert ei.value.code == CART_E_CLAIM_CONFLICT
    assert ei.value.details["claims"] == ["exp", "jti"]

    with pytest.raises(CartError) as ei:
        tc.encrypt_token(pair.key_id, {"aud": "mine"}, EncryptionOptions(audience="svc"))
    assert ei.value.code == CART_E_CLAIM_CONFLICT

    # Claims the engine is not injecting stay with the payload.
    claims = tc.decrypt_token(pair.key_id, tc.encrypt_token(pair.key_id, {"sub": "alice", "aud": "mine"}))
    assert claims["sub"] == "alice" and claims["aud"] == "mine"


def test_non_object_payloads_are_rejected():
    tc = _crypto()
    pair = tc.generate_key_pair_for_encryption()
    for bad in (["a"], "text", 42):
        with pytest.raises(CartError) as ei:
            tc.encrypt_token(pair.key_id, bad)
        assert ei.value.code == CART_E_BAD_PAYLOAD
    with pytest.raises(CartError) as ei:
        tc.encrypt_token(pair.key_id, {"_compressed": "x", "_compression": "gzip"})
    assert ei.value.code == CART_E_BAD_PAYLOAD


def test_empty_payload():
    tc = _crypto()
    pair = tc.generate_key_pair_for_encryption()
    claims = tc.decrypt_token(pair.key_id, tc.encrypt_token(pair.key_id, {}))
    assert set(claims) == {"iat", "exp", "jti"}


@pytest.mark.parametrize("compress,marker,zip_tag", [(True, "br", "BR"), ("brotli", "br", "BR"), ("gzip", "gzip", "DEF")])
def test_compression_is_transparent(compress, marker, zip_tag):
    tc = _crypto()
    pair = tc.generate_key_pair_for_encryption()
    token = tc.encrypt_token(pair.key_id, BIG_PAYLOAD, EncryptionOptions(compress=compress))

    header = jwe_header(token)
    assert header["zip"] == zip_tag
    inner = _plaintext_claims(tc, pair.key_id, token)
    assert inner["_compression"] == marker
    assert isinstance(inner["_originalSize"], int)
    assert "items" not in inner

    claims = tc.decrypt_token(pair.key_id, token)
    assert claims["items"] == BIG_PAYLOAD["items"]
    assert not any(k.startswith("_") for k in claims)
    assert {"iat", "exp", "jti"} <= set(claims)


def test_compression_skipped_when_it_does_not_shrink():
    tc = _crypto()
    pair = tc.generate_key_pair_for_encryption()
    token = tc.encrypt_token(pair.key_id, {"a": 1}, EncryptionOptions(compress=True))
    assert "zip" not in jwe_header(token)
    assert "_compressed" not in _plaintext_claims(tc, pair.key_id, token)


def test_compression_disabled():
    tc = _crypto(compression="none")
    pair = tc.generate_key_pair_for_encryption()
    token = tc.encrypt_token(pair.key_id, BIG_PAYLOAD)
    assert "zip" not in jwe_header(token)
    token = tc.encrypt_token(pair.key_id, BIG_PAYLOAD, EncryptionOptions(compress=False))
    assert "zip" not in jwe_header(token)


def test_marker_names_codec_that_actually_ran():
    # Brotli not opted into on an embedded runtime: the marker must say gzip.
    tc = TokenCrypto(
        negotiator=CompressionNegotiator(runtime_kind=RUNTIME_EMBEDDED),
        settings=CartCryptoSettings(),
    )
    pair = tc.generate_key_pair_for_encryption()
    token = tc.encrypt_token(pair.key_id, BIG_PAYLOAD, EncryptionOptions(compress="brotli"))
    assert jwe_header(token)["zip"] == "DEF"
    assert _plaintext_claims(tc, pair.key_id, token)["_compression"] == "gzip"
    assert tc.decrypt_token(pair.key_id, token)["items"] == BIG_PAYLOAD["items"]


def test_compression_failure_falls_back_to_uncompressed(caplog):
    tc = _crypto(gzip_level=42)
    pair = tc.generate_key_pair_for_encryption()
    token = tc.encrypt_token(pair.key_id, BIG_PAYLOAD, EncryptionOptions(compress="gzip"))
    assert "zip" not in jwe_header(token)
    assert tc.decrypt_token(pair.key_id, token)["items"] == BIG_PAYLOAD["items"]
    assert "compression failed" in caplog.text


def test_decrypt_with_header_returns_protected_header():
    tc = _crypto()
    pair = tc.generate_key_pair_for_encryption()
    claims, header = tc.decrypt_token_with_header(pair.key_id, tc.encrypt_token(pair.key_id, PAYLOAD))
    assert claims["userId"] == "alice"
    assert header["kid"] == pair.key_id


def test_decrypt_with_any_key():
    store = InMemoryKeyStore()
    tc = TokenCrypto(store, settings=CartCryptoSettings())
    JsonSignature(store).generate_key_pair("PS256")  # signing records are skipped
    keys = [tc.generate_key_pair_for_encryption() for _ in range(3)]
    token = tc.encrypt_token(keys[1].key_id, PAYLOAD)
    assert tc.decrypt_token_with_any_key(token)["userId"] == "alice"
    assert sorted(tc.get_available_keys()) == sorted(k.key_id for k in keys)
    assert tc.has_key(keys[0].key_id) and not tc.has_key("ghost")


def test_decrypt_with_any_key_finds_key_without_kid_match():
    tc = _crypto()
    source = _crypto()
    pair = source.generate_key_pair_for_encryption()
    exported = source.export_key_pair(pair.key_id)
    tc.generate_key_pair_for_encryption()
    tc.import_key_pair_for_encryption("renamed", exported["publicKey"], exported["privateKey"], exported["alg"])
    token = source.encrypt_token(pair.key_id, PAYLOAD)
    assert tc.decrypt_token_with_any_key(token)["total"] == 20


def test_decrypt_with_any_key_exhausted():
    tc = _crypto()
    tc.generate_key_pair_for_encryption()
    other = _crypto()
    token = other.encrypt_token(other.generate_key_pair_for_encryption().key_id, PAYLOAD)
    with pytest.raises(CartError) as ei:
        tc.decrypt_token_with_any_key(token)
    assert ei.value.code == CART_E_ALL_KEYS_FAILED
    assert ei.value.message.startswith("Token decryption failed with all available keys")
    assert ei.value.details["tried"] == 1

    with pytest.raises(CartError) as ei:
        _crypto().decrypt_token_with_any_key(token)
    assert ei.value.code == CART_E_ALL_KEYS_FAILED
    assert "no decryption keys available" in ei.value.message


def test_decrypt_with_any_key_needs_enumerable_store():
    class GetSetOnly:
        def __init__(self):
            self.d = {}

        def get(self, key_id):
            return self.d.get(key_id)

        def set(self, key_id, record):
            self.d[key_id] = record

    tc = TokenCrypto(GetSetOnly(), settings=CartCryptoSettings())
    pair = tc.generate_key_pair_for_encryption()
    with pytest.raises(CartError) as ei:
        tc.decrypt_token_with_any_key(tc.encrypt_token(pair.key_id, PAYLOAD))
    assert ei.value.code == CART_E_KEYSTORE_NOT_ENUMERABLE


def test_decrypt_with_any_key_reports_header_kid_failure():
    tc = _crypto()
    intended = tc.generate_key_pair_for_encryption()
    tc.generate_key_pair_for_encryption()
    expired = tc.encrypt_token(intended.key_id, PAYLOAD, EncryptionOptions(expiration_time=int(time.time()) - 10))
    with pytest.raises(CartError) as ei:
        tc.decrypt_token_with_any_key(expired)
    assert ei.value.code == CART_E_ALL_KEYS_FAILED
    assert ei.value.details["tried"] == 2
    assert ei.value.details["reason"] == "expired"
    assert "token has expired" in ei.value.message
    assert intended.key_id in ei.value.message
