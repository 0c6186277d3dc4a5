#!/usr/bin/env python3
"""
cloudless-cart - Command Line Interface

Usage:
    cloudless-cart keygen [--alg ALG] [--out key.json]      Generate a key pair file
    cloudless-cart sign --key key.json <payload.json>        Sign a JSON object
    cloudless-cart verify --key key.json <signed.json>       Verify a signed object
    cloudless-cart encrypt --key key.json <payload.json>     Encrypt into a JWE token
    cloudless-cart decrypt --key key.json <token.txt>        Decrypt a JWE token
    cloudless-cart seal --enc-key E --sig-key S <payload>    Encrypt-then-sign
    cloudless-cart open --enc-key E --sig-key S <signed>     Verify-then-decrypt
    cloudless-cart compression                               Show available codecs

Key files hold {"kid", "alg", "publicKey", "privateKey"} as written by
keygen. A file without "privateKey" can still verify and encrypt.
Input paths may be "-" for stdin.
"""

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

from cloudless_cart.composition import CloudlessCrypto
from cloudless_cart.errors import CartError, CART_E_CONFIG, cart_error
from cloudless_cart.jwk import ENCRYPTION_ALGORITHMS
from cloudless_cart.settings import CartCryptoSettings
from cloudless_cart.tokens import EncryptionOptions


logger = logging.getLogger("cloudless_cart.cli")


def setup_logging(verbose: bool = False):
    """Configure logging for CLI usage."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S",
        stream=sys.stderr,
    )
    logging.getLogger("cloudless_cart").setLevel(level)


def _read_text(path: str) -> str:
    if path == "-":
        return sys.stdin.read()
    try:
        return Path(path).read_text(encoding="utf-8")
    except OSError as e:
        raise cart_error(CART_E_CONFIG, f"Cannot read {path}: {e}", path=path) from e


def _read_json(path: str) -> Any:
    try:
        return json.loads(_read_text(path))
    except json.JSONDecodeError as e:
        raise cart_error(CART_E_CONFIG, f"Invalid JSON in {path}: {e}", path=path) from e


def _write_json(obj: Any, out: Optional[str] = None) -> None:
    text = json.dumps(obj, indent=2, sort_keys=True)
    if out:
        Path(out).write_text(text + "\n", encoding="utf-8")
        logger.info("Wrote %s", out)
    else:
        print(text)


def load_key_file(crypto: CloudlessCrypto, path: str) -> str:
    """Import a key file into ``crypto``'s store and return its key id."""
    data = _read_json(path)
    if not isinstance(data, dict) or not isinstance(data.get("kid"), str) or not isinstance(data.get("publicKey"), dict):
        raise cart_error(CART_E_CONFIG, f"Key file {path} must contain kid and publicKey", path=path)
    kid = data["kid"]
    alg = data.get("alg") or data["publicKey"].get("alg")
    private_jwk = data.get("privateKey")
    if private_jwk and alg in ENCRYPTION_ALGORITHMS:
        crypto.import_encryption_key_pair(kid, data["publicKey"], private_jwk, alg)
    elif private_jwk:
        crypto.import_signing_key_pair(kid, data["publicKey"], private_jwk, alg)
    else:
        crypto.signer.set_public_key(kid, data["publicKey"], alg)
    return kid


def cmd_keygen(args, crypto: CloudlessCrypto) -> int:
    """Generate a key pair and write it as a key file."""
    alg = args.alg
    if alg in ENCRYPTION_ALGORITHMS:
        pair = crypto.generate_encryption_key_pair(alg)
    else:
        pair = crypto.generate_signing_key_pair(alg)
    _write_json(crypto.export_key_pair(pair.key_id), args.out)
    return 0


def cmd_sign(args, crypto: CloudlessCrypto) -> int:
    kid = load_key_file(crypto, args.key)
    _write_json(crypto.sign_object(kid, _read_json(args.payload)), args.out)
    return 0


def cmd_verify(args, crypto: CloudlessCrypto) -> int:
    """Verify a signed object; prints the payload on success."""
    kid = load_key_file(crypto, args.key)
    ok, info = crypto.signer.verify_detailed(_read_json(args.signed), kid)
    if not ok:
        print(f"✗ Signature check failed ({info['failure']}): {info['error']}", file=sys.stderr)
        return 1
    print("✓ Signature valid", file=sys.stderr)
    _write_json(info["payload"], args.out)
    return 0


def _options(args) -> EncryptionOptions:
    return EncryptionOptions(
        audience=args.aud,
        expiration_time=args.exp,
        issuer=args.iss,
        compress=args.compress,
    )


def cmd_encrypt(args, crypto: CloudlessCrypto) -> int:
    kid = load_key_file(crypto, args.key)
    token = crypto.encrypt_token(kid, _read_json(args.payload), _options(args))
    if args.out:
        Path(args.out).write_text(token + "\n", encoding="utf-8")
    else:
        print(token)
    return 0


def cmd_decrypt(args, crypto: CloudlessCrypto) -> int:
    kid = load_key_file(crypto, args.key)
    token = _read_text(args.token).strip()
    _write_json(crypto.decrypt_token(kid, token, audience=args.aud, issuer=args.iss), args.out)
    return 0


def cmd_seal(args, crypto: CloudlessCrypto) -> int:
    """Encrypt-then-sign a JSON payload."""
    enc_kid = load_key_file(crypto, args.enc_key)
    sig_kid = load_key_file(crypto, args.sig_key)
    signed = crypto.encrypt_then_sign(enc_kid, sig_kid, _read_json(args.payload), _options(args))
    _write_json(signed, args.out)
    return 0


def cmd_open(args, crypto: CloudlessCrypto) -> int:
    """Verify-then-decrypt an encrypt-then-sign envelope."""
    enc_kid = load_key_file(crypto, args.enc_key)
    sig_kid = load_key_file(crypto, args.sig_key)
    _write_json(crypto.verify_then_decrypt(sig_kid, enc_kid, _read_json(args.signed)), args.out)
    return 0


def cmd_compression(args, crypto: CloudlessCrypto) -> int:
    """Show codecs available on this runtime."""
    negotiator = crypto.encryptor.negotiator
    info = negotiator.get_compression_info()
    if args.benchmark:
        info["benchmark"] = negotiator.benchmark(_read_text(args.benchmark).encode("utf-8"))
    _write_json(info)
    return 0


def _add_token_options(p: argparse.ArgumentParser) -> None:
    p.add_argument("--exp", default=None, help="Token lifetime, e.g. 15m, 2h, 1d (default: CART_TOKEN_TTL)")
    p.add_argument("--aud", default=None, help="Audience claim")
    p.add_argument("--iss", default=None, help="Issuer claim")
    p.add_argument("--compress", default=None, choices=["brotli", "gzip", "none"],
                   help="Payload compression (default: CART_COMPRESSION)")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="cloudless-cart",
        description="cloudless-cart token CLI",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable verbose logging")

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    keygen_parser = subparsers.add_parser("keygen", help="Generate a key pair file")
    keygen_parser.add_argument("--alg", default=None,
                               help="PS256 (default), RS*, ES*, EdDSA, or RSA-OAEP* for encryption")
    keygen_parser.add_argument("--out", "-o", help="Output file (default: stdout)")
    keygen_parser.set_defaults(func=cmd_keygen)

    sign_parser = subparsers.add_parser("sign", help="Sign a JSON object")
    sign_parser.add_argument("payload", help="Path to payload JSON (or -)")
    sign_parser.add_argument("--key", required=True, help="Signing key file")
    sign_parser.add_argument("--out", "-o", help="Output file (default: stdout)")
    sign_parser.set_defaults(func=cmd_sign)

    verify_parser = subparsers.add_parser("verify", help="Verify a signed object")
    verify_parser.add_argument("signed", help="Path to signed JSON (or -)")
    verify_parser.add_argument("--key", required=True, help="Verification key file")
    verify_parser.add_argument("--out", "-o", help="Write verified payload here (default: stdout)")
    verify_parser.set_defaults(func=cmd_verify)

    encrypt_parser = subparsers.add_parser("encrypt", help="Encrypt a JSON object into a token")
    encrypt_parser.add_argument("payload", help="Path to payload JSON (or -)")
    encrypt_parser.add_argument("--key", required=True, help="Encryption key file")
    encrypt_parser.add_argument("--out", "-o", help="Output file (default: stdout)")
    _add_token_options(encrypt_parser)
    encrypt_parser.set_defaults(func=cmd_encrypt)

    decrypt_parser = subparsers.add_parser("decrypt", help="Decrypt a token")
    decrypt_parser.add_argument("token", help="Path to token text (or -)")
    decrypt_parser.add_argument("--key", required=True, help="Decryption key file")
    decrypt_parser.add_argument("--aud", default=None, help="Required audience")
    decrypt_parser.add_argument("--iss", default=None, help="Required issuer")
    decrypt_parser.add_argument("--out", "-o", help="Output file (default: stdout)")
    decrypt_parser.set_defaults(func=cmd_decrypt)

    seal_parser = subparsers.add_parser("seal", help="Encrypt-then-sign a JSON object")
    seal_parser.add_argument("payload", help="Path to payload JSON (or -)")
    seal_parser.add_argument("--enc-key", required=True, help="Encryption key file")
    seal_parser.add_argument("--sig-key", required=True, help="Signing key file")
    seal_parser.add_argument("--out", "-o", help="Output file (default: stdout)")
    _add_token_options(seal_parser)
    seal_parser.set_defaults(func=cmd_seal)

    open_parser = subparsers.add_parser("open", help="Verify-then-decrypt a sealed envelope")
    open_parser.add_argument("signed", help="Path to sealed JSON (or -)")
    open_parser.add_argument("--enc-key", required=True, help="Decryption key file")
    open_parser.add_argument("--sig-key", required=True, help="Verification key file")
    open_parser.add_argument("--out", "-o", help="Output file (default: stdout)")
    open_parser.set_defaults(func=cmd_open)

    comp_parser = subparsers.add_parser("compression", help="Show available compression codecs")
    comp_parser.add_argument("--benchmark", help="Also benchmark codecs on this file")
    comp_parser.set_defaults(func=cmd_compression)

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return 1

    setup_logging(args.verbose)
    try:
        crypto = CloudlessCrypto(settings=CartCryptoSettings.from_env())
        return args.func(args, crypto)
    except CartError as e:
        # Avoid stack traces in CLI output.
        print(f"ERROR: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
