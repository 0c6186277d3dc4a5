"""
Canonical JSON for signing and hashing.

Every signature and every payload hash in cloudless-cart is computed over the
output of :func:`canonical_json_dumps`. Two semantically identical objects
always serialize to the same bytes regardless of key insertion order:

- sort_keys: deterministic key order at every nesting level
- separators: no whitespace ambiguity
- ensure_ascii=False: preserve unicode deterministically (UTF-8)
- allow_nan=False: strict JSON only
- integral floats (20.0) are written as integers (20)

Strings are NOT unicode-normalized. The signing engine hands back the
deserialized canonical form as the signed payload, so normalization would
silently change caller data.
"""

from __future__ import annotations

import hashlib
import json
import math
from typing import Any, Dict

from .errors import (
    CartError,
    cart_error,
    CART_E_CANON_NON_JSON,
    CART_E_CANON_DEPTH,
    CART_E_CANON_NONFINITE,
    CART_E_CANON_KEY_TYPE,
    CART_E_CANON_INT_TOO_LARGE,
)


# Enforce max depth to avoid pathological recursion inputs, and bounded
# integers to avoid huge bignums used for DoS.
_CANON_MAX_DEPTH = 64
_CANON_MAX_INT_DIGITS = 128


def _path_key(k: str) -> str:
    # JSONPath-ish: $['key'] with minimal escaping for readability
    ks = k.replace("\\", "\\\\").replace("'", "\\'")
    return f"['{ks}']"


def _canonicalize(
    obj: Any,
    *,
    max_depth: int = _CANON_MAX_DEPTH,
    max_int_digits: int = _CANON_MAX_INT_DIGITS,
    _path: str = "$",
    _depth: int = 0,
) -> Any:
    if _depth > max_depth:
        raise cart_error(CART_E_CANON_DEPTH, "max nesting depth exceeded", path=_path, max_depth=max_depth)

    # Scalars
    if obj is None or isinstance(obj, bool) or isinstance(obj, str):
        return obj
    if isinstance(obj, int):
        # bool is subclass of int; handled above
        digits = len(str(abs(obj)))
        if digits > int(max_int_digits):
            raise cart_error(CART_E_CANON_INT_TOO_LARGE, "integer has too many digits", path=_path, digits=digits)
        return obj
    if isinstance(obj, float):
        if not math.isfinite(obj):
            raise cart_error(CART_E_CANON_NONFINITE, "non-finite float", path=_path)
        # Integral floats serialize as integers so 20.0 and 20 hash alike.
        if obj.is_integer() and abs(obj) < 1e21:
            return int(obj)
        return obj

    # Containers
    if isinstance(obj, dict):
        out: Dict[str, Any] = {}
        for k, v in obj.items():
            if not isinstance(k, str):
                raise cart_error(CART_E_CANON_KEY_TYPE, "dict key must be str", path=_path, got=type(k).__name__)
            out[k] = _canonicalize(
                v,
                max_depth=max_depth,
                max_int_digits=max_int_digits,
                _path=_path + _path_key(k),
                _depth=_depth + 1,
            )
        return out

    if isinstance(obj, (list, tuple)):
        return [
            _canonicalize(
                v,
                max_depth=max_depth,
                max_int_digits=max_int_digits,
                _path=f"{_path}[{i}]",
                _depth=_depth + 1,
            )
            for i, v in enumerate(obj)
        ]

    raise cart_error(CART_E_CANON_NON_JSON, "non-JSON-serializable type", path=_path, got=type(obj).__name__)


def canonical_json_dumps(obj: Any) -> str:
    """Serialize ``obj`` to canonical JSON text.

    Raises CartError (CART_E_CANON_*) for values that cannot be encoded
    deterministically: non-str keys, NaN/Infinity, oversized integers,
    excessive nesting or non-JSON types.
    """
    try:
        normalized = _canonicalize(obj)
        return json.dumps(
            normalized,
            sort_keys=True,
            separators=(",", ":"),
            ensure_ascii=False,
            allow_nan=False,
        )
    except CartError:
        raise
    except (TypeError, ValueError) as e:
        raise cart_error(CART_E_CANON_NON_JSON, f"object is not canonically serializable: {e}") from e


def canonical_json_bytes(obj: Any) -> bytes:
    return canonical_json_dumps(obj).encode("utf-8")


def sha256_hex(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def canonical_hash(obj: Any) -> str:
    """SHA-256 hex digest of the canonical serialization of ``obj``."""
    return sha256_hex(canonical_json_bytes(obj))
