"""
cloudless_cart.jwk: key generation and JSON Web Key import/export.

Key material is produced and parsed with the ``cryptography`` package; this
module only maps algorithm tags onto key types and converts between key
objects and the JWK JSON representation (RFC 7517/7518/8037) used to
distribute keys between services.

Supported algorithm tags:

    signing:     PS256 PS384 PS512 RS256 RS384 RS512 ES256 ES384 ES512 EdDSA
    encryption:  RSA-OAEP RSA-OAEP-256 RSA-OAEP-384 RSA-OAEP-512
"""

from __future__ import annotations

import base64
from typing import Any, Dict, Optional, Tuple

from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec, rsa
from cryptography.hazmat.primitives.asymmetric.ed25519 import (
    Ed25519PrivateKey, Ed25519PublicKey
)

from .errors import cart_error, CART_E_INVALID_KEY, CART_E_UNSUPPORTED_ALG


RSA_KEY_SIZE = 2048

SIGNING_ALGORITHMS = (
    "PS256", "PS384", "PS512",
    "RS256", "RS384", "RS512",
    "ES256", "ES384", "ES512",
    "EdDSA",
)
ENCRYPTION_ALGORITHMS = ("RSA-OAEP", "RSA-OAEP-256", "RSA-OAEP-384", "RSA-OAEP-512")

_EC_CURVES = {
    "ES256": ec.SECP256R1,
    "ES384": ec.SECP384R1,
    "ES512": ec.SECP521R1,
}
_CRV_BY_CURVE_NAME = {
    "secp256r1": "P-256",
    "secp384r1": "P-384",
    "secp521r1": "P-521",
}
_CURVE_BY_CRV = {
    "P-256": ec.SECP256R1,
    "P-384": ec.SECP384R1,
    "P-521": ec.SECP521R1,
}


def b64url_encode(data: bytes) -> str:
    return base64.urlsafe_b64encode(bytes(data)).rstrip(b"=").decode("ascii")


def b64url_decode(s: str) -> bytes:
    if not isinstance(s, str):
        raise TypeError("base64url input must be a str")
    padded = s + "=" * (-len(s) % 4)
    return base64.urlsafe_b64decode(padded.encode("ascii"))


def _int_to_b64url(n: int, length: Optional[int] = None) -> str:
    size = length if length is not None else max(1, (n.bit_length() + 7) // 8)
    return b64url_encode(n.to_bytes(size, "big"))


def _b64url_to_int(s: str) -> int:
    return int.from_bytes(b64url_decode(s), "big")


def key_type_for_alg(alg: str) -> str:
    """Return the JWK ``kty`` required by an algorithm tag."""
    if not isinstance(alg, str):
        raise cart_error(CART_E_UNSUPPORTED_ALG, "Algorithm tag must be a string", alg=repr(alg))
    if alg in ENCRYPTION_ALGORITHMS or (alg in SIGNING_ALGORITHMS and alg[:2] in ("PS", "RS")):
        return "RSA"
    if alg in _EC_CURVES:
        return "EC"
    if alg == "EdDSA":
        return "OKP"
    raise cart_error(CART_E_UNSUPPORTED_ALG, f"Unsupported algorithm: {alg!r}", alg=alg)


def hash_for_alg(alg: str) -> hashes.HashAlgorithm:
    """Digest used by a PS*/RS*/ES* signature or RSA-OAEP* key wrap."""
    if alg == "RSA-OAEP":
        return hashes.SHA1()
    suffix = alg[-3:]
    if suffix == "256":
        return hashes.SHA256()
    if suffix == "384":
        return hashes.SHA384()
    if suffix == "512":
        return hashes.SHA512()
    raise cart_error(CART_E_UNSUPPORTED_ALG, f"No digest defined for algorithm {alg!r}", alg=alg)


def generate_key_pair(alg: str) -> Tuple[Any, Any]:
    """Generate a fresh (private_key, public_key) pair for ``alg``."""
    kty = key_type_for_alg(alg)
    if kty == "RSA":
        private_key = rsa.generate_private_key(public_exponent=65537, key_size=RSA_KEY_SIZE)
    elif kty == "EC":
        private_key = ec.generate_private_key(_EC_CURVES[alg]())
    else:
        private_key = Ed25519PrivateKey.generate()
    return private_key, private_key.public_key()


def is_private_key(key: Any) -> bool:
    return isinstance(key, (rsa.RSAPrivateKey, ec.EllipticCurvePrivateKey, Ed25519PrivateKey))


def export_jwk(
    key: Any,
    *,
    kid: Optional[str] = None,
    alg: Optional[str] = None,
    use: Optional[str] = None,
) -> Dict[str, Any]:
    """Export a public or private key object as a JWK dict."""
    jwk: Dict[str, Any]
    if isinstance(key, rsa.RSAPrivateKey):
        priv = key.private_numbers()
        pub = priv.public_numbers
        jwk = {
            "kty": "RSA",
            "n": _int_to_b64url(pub.n),
            "e": _int_to_b64url(pub.e),
            "d": _int_to_b64url(priv.d),
            "p": _int_to_b64url(priv.p),
            "q": _int_to_b64url(priv.q),
            "dp": _int_to_b64url(priv.dmp1),
            "dq": _int_to_b64url(priv.dmq1),
            "qi": _int_to_b64url(priv.iqmp),
        }
    elif isinstance(key, rsa.RSAPublicKey):
        pub = key.public_numbers()
        jwk = {"kty": "RSA", "n": _int_to_b64url(pub.n), "e": _int_to_b64url(pub.e)}
    elif isinstance(key, (ec.EllipticCurvePrivateKey, ec.EllipticCurvePublicKey)):
        public_key = key.public_key() if isinstance(key, ec.EllipticCurvePrivateKey) else key
        size = (public_key.curve.key_size + 7) // 8
        numbers = public_key.public_numbers()
        jwk = {
            "kty": "EC",
            "crv": _CRV_BY_CURVE_NAME[public_key.curve.name],
            "x": _int_to_b64url(numbers.x, size),
            "y": _int_to_b64url(numbers.y, size),
        }
        if isinstance(key, ec.EllipticCurvePrivateKey):
            jwk["d"] = _int_to_b64url(key.private_numbers().private_value, size)
    elif isinstance(key, (Ed25519PrivateKey, Ed25519PublicKey)):
        public_key = key.public_key() if isinstance(key, Ed25519PrivateKey) else key
        jwk = {
            "kty": "OKP",
            "crv": "Ed25519",
            "x": b64url_encode(public_key.public_bytes(
                encoding=serialization.Encoding.Raw,
                format=serialization.PublicFormat.Raw,
            )),
        }
        if isinstance(key, Ed25519PrivateKey):
            jwk["d"] = b64url_encode(key.private_bytes(
                encoding=serialization.Encoding.Raw,
                format=serialization.PrivateFormat.Raw,
                encryption_algorithm=serialization.NoEncryption(),
            ))
    else:
        raise cart_error(CART_E_INVALID_KEY, f"Cannot export key of type {type(key).__name__}")

    if kid is not None:
        jwk["kid"] = kid
    if use is not None:
        jwk["use"] = use
    if alg is not None:
        jwk["alg"] = alg
    return jwk


def import_jwk(jwk: Dict[str, Any], alg: str) -> Any:
    """Parse a JWK dict into a key object usable with ``alg``.

    Returns a private key when the JWK carries a private component (``d``),
    otherwise a public key. The algorithm tag must be supplied explicitly and
    must match the JWK's key type.
    """
    if not isinstance(jwk, dict):
        raise cart_error(CART_E_INVALID_KEY, "JWK must be a JSON object")
    kty = key_type_for_alg(alg)
    if jwk.get("kty") != kty:
        raise cart_error(
            CART_E_INVALID_KEY,
            f"JWK key type {jwk.get('kty')!r} does not match algorithm {alg}",
            alg=alg,
        )
    try:
        if kty == "RSA":
            return _import_rsa(jwk)
        if kty == "EC":
            return _import_ec(jwk, alg)
        return _import_okp(jwk)
    except (KeyError, TypeError, ValueError) as e:
        raise cart_error(CART_E_INVALID_KEY, f"Invalid {kty} JWK for {alg}: {e}", alg=alg) from e


def _import_rsa(jwk: Dict[str, Any]) -> Any:
    public_numbers = rsa.RSAPublicNumbers(_b64url_to_int(jwk["e"]), _b64url_to_int(jwk["n"]))
    if "d" not in jwk:
        return public_numbers.public_key()
    d = _b64url_to_int(jwk["d"])
    if "p" in jwk and "q" in jwk:
        p = _b64url_to_int(jwk["p"])
        q = _b64url_to_int(jwk["q"])
    else:
        p, q = rsa.rsa_recover_prime_factors(public_numbers.n, public_numbers.e, d)
    dmp1 = _b64url_to_int(jwk["dp"]) if "dp" in jwk else rsa.rsa_crt_dmp1(d, p)
    dmq1 = _b64url_to_int(jwk["dq"]) if "dq" in jwk else rsa.rsa_crt_dmq1(d, q)
    iqmp = _b64url_to_int(jwk["qi"]) if "qi" in jwk else rsa.rsa_crt_iqmp(p, q)
    return rsa.RSAPrivateNumbers(p, q, d, dmp1, dmq1, iqmp, public_numbers).private_key()


def _import_ec(jwk: Dict[str, Any], alg: str) -> Any:
    curve_cls = _CURVE_BY_CRV.get(jwk.get("crv"))
    if curve_cls is None or curve_cls is not _EC_CURVES[alg]:
        raise ValueError(f"curve {jwk.get('crv')!r} is not valid for {alg}")
    if "d" in jwk:
        private_key = ec.derive_private_key(_b64url_to_int(jwk["d"]), curve_cls())
        expected = private_key.public_key().public_numbers()
        if (expected.x, expected.y) != (_b64url_to_int(jwk["x"]), _b64url_to_int(jwk["y"])):
            raise ValueError("private scalar does not match public point")
        return private_key
    numbers = ec.EllipticCurvePublicNumbers(_b64url_to_int(jwk["x"]), _b64url_to_int(jwk["y"]), curve_cls())
    return numbers.public_key()


def _import_okp(jwk: Dict[str, Any]) -> Any:
    if jwk.get("crv") != "Ed25519":
        raise ValueError(f"unsupported OKP curve {jwk.get('crv')!r}")
    if "d" in jwk:
        return Ed25519PrivateKey.from_private_bytes(b64url_decode(jwk["d"]))
    return Ed25519PublicKey.from_public_bytes(b64url_decode(jwk["x"]))
