"""cloudless-cart package.

Signed, encrypted and compressed transport tokens for structured data that
has to travel between services without a shared database:

- Detached-payload JSON signatures over a canonical serialization
- Compact JWE tokens with expiry, audience and issuer claims
- Transparent gzip / brotli payload compression
- Encrypt-then-sign composition with a payload hash binding

Convenience imports
------------------
The package avoids import-time side effects. The main entry points are
available as top-level imports and are loaded lazily:

    from cloudless_cart import CloudlessCrypto, JsonSignature, TokenCrypto
"""

from __future__ import annotations

import re
from importlib import import_module
from pathlib import Path
from typing import Any


def _read_version_from_pyproject() -> str | None:
    """Best-effort version discovery for dev/test environments.

    The project version is a simple `version = "..."` field in
    `pyproject.toml`, so a regex parse is enough.
    """

    try:
        pyproject = Path(__file__).resolve().parents[1] / "pyproject.toml"
        txt = pyproject.read_text(encoding="utf-8")
        m = re.search(r"^version\s*=\s*\"([^\"]+)\"\s*$", txt, flags=re.MULTILINE)
        return m.group(1) if m else None
    except OSError:
        return None


# Prefer repo-local pyproject version (tests), otherwise a hardcoded default.
__version__ = (
    _read_version_from_pyproject()
    or "0.2.0"
)

__all__ = [
    "__version__",
    "CartError",
    "CloudlessCart",
    "CloudlessCrypto",
    "JsonSignature",
    "TokenCrypto",
    "EncryptionOptions",
    "CompressionNegotiator",
    "CompressionMethod",
    "CartCryptoSettings",
    "InMemoryKeyStore",
    "KeyRecord",
]

# Lazy export map: name -> (module, attribute)
_LAZY_EXPORTS: dict[str, tuple[str, str]] = {
    "CartError": ("cloudless_cart.errors", "CartError"),
    "CloudlessCart": ("cloudless_cart.cart", "CloudlessCart"),
    "CloudlessCrypto": ("cloudless_cart.composition", "CloudlessCrypto"),
    "JsonSignature": ("cloudless_cart.signature", "JsonSignature"),
    "TokenCrypto": ("cloudless_cart.tokens", "TokenCrypto"),
    "EncryptionOptions": ("cloudless_cart.tokens", "EncryptionOptions"),
    "CompressionNegotiator": ("cloudless_cart.compression", "CompressionNegotiator"),
    "CompressionMethod": ("cloudless_cart.compression", "CompressionMethod"),
    "CartCryptoSettings": ("cloudless_cart.settings", "CartCryptoSettings"),
    "InMemoryKeyStore": ("cloudless_cart.keystore", "InMemoryKeyStore"),
    "KeyRecord": ("cloudless_cart.keystore", "KeyRecord"),
}


def __getattr__(name: str) -> Any:
    if name in _LAZY_EXPORTS:
        module_name, attr = _LAZY_EXPORTS[name]
        module = import_module(module_name)
        value = getattr(module, attr)
        # Cache the resolved attribute on the module for faster future access.
        globals()[name] = value
        return value
    raise AttributeError(f"module 'cloudless_cart' has no attribute {name!r}")


def __dir__() -> list[str]:
    return sorted(set(list(globals().keys()) + list(_LAZY_EXPORTS.keys())))
