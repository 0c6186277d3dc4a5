"""Environment-driven defaults for cloudless-cart.

Variables (all optional):

    CART_SIGNING_ALG       default signing algorithm            (PS256)
    CART_ENCRYPTION_ALG    default key management algorithm     (RSA-OAEP-256)
    CART_TOKEN_TTL         default token lifetime, e.g. 30m, 2h (2h)
    CART_COMPRESSION       brotli | gzip | none                 (brotli)
    CART_GZIP_LEVEL        gzip level 1-9                       (6)
    CART_BROTLI_QUALITY    brotli quality 0-11                  (4)
    CART_BROTLI_WINDOW     brotli lgwin 10-24                   (22)
    CART_ENABLE_BROTLI     opt into brotli on embedded runtimes (false)
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass
from datetime import timedelta

from .errors import cart_error, CART_E_CONFIG
from .jwk import ENCRYPTION_ALGORITHMS, SIGNING_ALGORITHMS


_DURATION_RE = re.compile(r"^\s*(\d+)\s*(s|sec|secs|m|min|mins|h|hr|hrs|d|day|days|w|week|weeks)\s*$", re.IGNORECASE)
_UNIT_SECONDS = {"s": 1, "m": 60, "h": 3600, "d": 86400, "w": 604800}

COMPRESSION_CHOICES = ("brotli", "gzip", "none")


def parse_duration(text: str) -> timedelta:
    """Parse a relative duration such as ``"90s"``, ``"15m"``, ``"2h"``, ``"1d"``."""
    m = _DURATION_RE.match(str(text or ""))
    if not m:
        raise ValueError(f"invalid duration {text!r} (expected e.g. 30s, 15m, 2h, 1d, 1w)")
    return timedelta(seconds=int(m.group(1)) * _UNIT_SECONDS[m.group(2)[0].lower()])


def _env_str(name: str, default: str) -> str:
    return (os.getenv(name, "") or "").strip() or default


def _env_int(name: str, default: int) -> int:
    raw = (os.getenv(name, "") or "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        raise cart_error(CART_E_CONFIG, f"{name} must be an integer", variable=name)


def _env_bool(name: str) -> bool:
    return (os.getenv(name, "") or "").strip().lower() in ("1", "true", "yes")


@dataclass(frozen=True)
class CartCryptoSettings:
    signing_alg: str = "PS256"
    encryption_alg: str = "RSA-OAEP-256"
    token_ttl: str = "2h"
    compression: str = "brotli"
    gzip_level: int = 6
    brotli_quality: int = 4
    brotli_window: int = 22
    enable_brotli: bool = False

    def __post_init__(self):
        if self.signing_alg not in SIGNING_ALGORITHMS:
            raise cart_error(CART_E_CONFIG, f"Unsupported signing algorithm {self.signing_alg!r}")
        if self.encryption_alg not in ENCRYPTION_ALGORITHMS:
            raise cart_error(CART_E_CONFIG, f"Unsupported encryption algorithm {self.encryption_alg!r}")
        if self.compression not in COMPRESSION_CHOICES:
            raise cart_error(CART_E_CONFIG, f"Unsupported compression {self.compression!r}; expected brotli|gzip|none")
        try:
            parse_duration(self.token_ttl)
        except ValueError as e:
            raise cart_error(CART_E_CONFIG, str(e)) from e

    @classmethod
    def from_env(cls) -> "CartCryptoSettings":
        return cls(
            signing_alg=_env_str("CART_SIGNING_ALG", cls.signing_alg),
            encryption_alg=_env_str("CART_ENCRYPTION_ALG", cls.encryption_alg),
            token_ttl=_env_str("CART_TOKEN_TTL", cls.token_ttl),
            compression=_env_str("CART_COMPRESSION", cls.compression).lower(),
            gzip_level=_env_int("CART_GZIP_LEVEL", cls.gzip_level),
            brotli_quality=_env_int("CART_BROTLI_QUALITY", cls.brotli_quality),
            brotli_window=_env_int("CART_BROTLI_WINDOW", cls.brotli_window),
            enable_brotli=_env_bool("CART_ENABLE_BROTLI"),
        )
