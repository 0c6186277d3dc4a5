"""
cloudless_cart.compression: pick, apply and reverse a payload codec.

Codecs: ``none`` (identity), ``gzip`` (standard library) and ``brotli`` (the
Brotli extension module). Every compress call returns a CompressionResult
naming the codec that actually ran, which may differ from the one requested:

- brotli requested but unavailable (or not opted into on an embedded
  runtime) -> gzip
- brotli codec raises -> gzip

Whatever gets persisted next to compressed bytes must be taken from
``result.method``, never from the request, or decompression will fail.

Runtime kinds:
- "native":   an ordinary interpreter process; brotli is imported lazily on
              first use.
- "embedded": a WebAssembly runtime (Pyodide / WASI). Loading brotli there is
              a download + instantiate cost, so it happens only after an
              explicit ``enable_brotli()``.
"""

from __future__ import annotations

import gzip
import logging
import sys
import time
import zlib
from dataclasses import dataclass
from enum import Enum
from importlib import import_module
from typing import Any, Dict, List, Optional, Union

from .errors import (
    CartError,
    cart_error,
    CART_E_COMPRESSION_FAILED,
    CART_E_DECOMPRESSION_FAILED,
)


logger = logging.getLogger("cloudless_cart.compression")

GZIP_MAGIC = b"\x1f\x8b"

DEFAULT_GZIP_LEVEL = 6
DEFAULT_BROTLI_QUALITY = 4
DEFAULT_BROTLI_MODE = 1  # 0 = generic, 1 = text, 2 = font
DEFAULT_BROTLI_LGWIN = 22

RUNTIME_NATIVE = "native"
RUNTIME_EMBEDDED = "embedded"


class CompressionMethod(str, Enum):
    """Codecs understood by the negotiator."""
    NONE = "none"
    GZIP = "gzip"
    BROTLI = "brotli"

    @classmethod
    def parse(cls, value: Union[str, "CompressionMethod"]) -> "CompressionMethod":
        if isinstance(value, CompressionMethod):
            return value
        v = str(value or "").strip().lower()
        if v in ("br", "brotli"):
            return cls.BROTLI
        if v in ("gzip", "gz", "def", "deflate"):
            return cls.GZIP
        if v in ("none", "identity", ""):
            return cls.NONE
        raise ValueError(f"Unknown compression method: {value!r} (expected brotli|gzip|none)")


@dataclass(frozen=True)
class CompressionResult:
    """Bytes produced by a compress call, tagged with the codec that ran."""
    method: CompressionMethod
    data: bytes

    @property
    def compressed(self) -> bool:
        return self.method is not CompressionMethod.NONE


def detect_runtime_kind() -> str:
    if sys.platform in ("emscripten", "wasi"):
        return RUNTIME_EMBEDDED
    return RUNTIME_NATIVE


class CompressionNegotiator:
    """Applies and reverses codecs for one runtime.

    Instances are cheap; the module-level default instance backs the
    convenience functions below.
    """

    def __init__(self, runtime_kind: Optional[str] = None, brotli_enabled: bool = False):
        self.runtime_kind = runtime_kind or detect_runtime_kind()
        if self.runtime_kind not in (RUNTIME_NATIVE, RUNTIME_EMBEDDED):
            raise ValueError(f"Unknown runtime kind: {self.runtime_kind!r}")
        # Opt-in only matters on embedded runtimes.
        self._brotli_opt_in = bool(brotli_enabled)
        self._brotli: Any = None
        self._brotli_missing = False

    # -- capability discovery -------------------------------------------------

    def _load_brotli(self) -> Any:
        if self._brotli is not None:
            return self._brotli
        if self.runtime_kind == RUNTIME_EMBEDDED and not self._brotli_opt_in:
            return None
        if self._brotli_missing:
            return None
        try:
            self._brotli = import_module("brotli")
        except ImportError:
            logger.warning("brotli module not available; brotli requests will use gzip")
            self._brotli_missing = True
            return None
        return self._brotli

    def enable_brotli(self) -> bool:
        """Opt into brotli and load it now. Returns True if it is usable."""
        self._brotli_opt_in = True
        self._brotli_missing = False
        return self._load_brotli() is not None

    def disable_brotli(self) -> None:
        """Drop the opt-in and release the loaded module reference."""
        self._brotli_opt_in = False
        self._brotli = None

    def brotli_available(self) -> bool:
        return self._load_brotli() is not None

    def get_available_methods(self) -> Dict[str, Any]:
        return {
            "gzip": True,
            "brotli": self.brotli_available(),
            "runtime_kind": self.runtime_kind,
        }

    def get_compression_info(self) -> Dict[str, Any]:
        caps = self.get_available_methods()
        methods: List[str] = [CompressionMethod.NONE.value]
        if caps["brotli"]:
            methods.append(CompressionMethod.BROTLI.value)
        if caps["gzip"]:
            methods.append(CompressionMethod.GZIP.value)
        return {
            "available": caps["brotli"] or caps["gzip"],
            "methods": methods,
            "preferred": self.preferred_method().value,
            "runtime_kind": self.runtime_kind,
        }

    def preferred_method(self) -> CompressionMethod:
        return CompressionMethod.BROTLI if self.brotli_available() else CompressionMethod.GZIP

    # -- codecs -----------------------------------------------------------------

    def compress(
        self,
        data: bytes,
        method: Optional[Union[str, CompressionMethod]] = None,
        *,
        quality: Optional[int] = None,
        mode: Optional[int] = None,
        lgwin: Optional[int] = None,
    ) -> CompressionResult:
        """Compress ``data``; the result names the codec actually used.

        Raises CartError(CART_E_COMPRESSION_FAILED) only when gzip itself
        fails (for example an out-of-range level).
        """
        requested = CompressionMethod.parse(method) if method is not None else self.preferred_method()
        data = bytes(data)

        if requested is CompressionMethod.NONE:
            return CompressionResult(CompressionMethod.NONE, data)

        if requested is CompressionMethod.BROTLI:
            brotli = self._load_brotli()
            if brotli is None:
                logger.debug("brotli not enabled on %s runtime; using gzip", self.runtime_kind)
            else:
                try:
                    out = brotli.compress(
                        data,
                        mode=DEFAULT_BROTLI_MODE if mode is None else mode,
                        quality=DEFAULT_BROTLI_QUALITY if quality is None else quality,
                        lgwin=DEFAULT_BROTLI_LGWIN if lgwin is None else lgwin,
                    )
                    return CompressionResult(CompressionMethod.BROTLI, out)
                except (brotli.error, ValueError, TypeError) as e:
                    logger.warning("brotli compression failed, falling back to gzip: %s", e)
            # gzip levels differ from brotli qualities; use the gzip default.
            quality = None

        level = DEFAULT_GZIP_LEVEL if quality is None else quality
        try:
            out = gzip.compress(data, compresslevel=level, mtime=0)
        except (ValueError, zlib.error) as e:
            raise cart_error(CART_E_COMPRESSION_FAILED, f"gzip compression failed: {e}", method="gzip") from e
        return CompressionResult(CompressionMethod.GZIP, out)

    def decompress(self, data: bytes, method: Optional[Union[str, CompressionMethod]] = None) -> bytes:
        """Reverse ``compress``.

        Without ``method`` the gzip magic bytes select gzip; anything else is
        treated as brotli (brotli has no magic number). Undecodable input
        raises CartError(CART_E_DECOMPRESSION_FAILED).
        """
        data = bytes(data)
        if method is None:
            resolved = CompressionMethod.GZIP if data[:2] == GZIP_MAGIC else CompressionMethod.BROTLI
        else:
            resolved = CompressionMethod.parse(method)

        if resolved is CompressionMethod.NONE:
            return data

        if resolved is CompressionMethod.GZIP:
            try:
                return gzip.decompress(data)
            except (OSError, EOFError, zlib.error) as e:
                raise cart_error(CART_E_DECOMPRESSION_FAILED, f"gzip decompression failed: {e}", method="gzip") from e

        brotli = self._load_brotli()
        if brotli is None:
            raise cart_error(
                CART_E_DECOMPRESSION_FAILED,
                "brotli data cannot be decompressed: brotli is not enabled on this runtime "
                "(call enable_brotli())",
                method="brotli",
                runtime_kind=self.runtime_kind,
            )
        try:
            return brotli.decompress(data)
        except brotli.error as e:
            raise cart_error(CART_E_DECOMPRESSION_FAILED, f"brotli decompression failed: {e}", method="brotli") from e

    def benchmark(self, data: bytes) -> Dict[str, Any]:
        """Compress ``data`` with each available codec and report size/ratio/time."""
        data = bytes(data)
        report: Dict[str, Any] = {"original": len(data)}
        candidates = [CompressionMethod.GZIP]
        if self.brotli_available():
            candidates.insert(0, CompressionMethod.BROTLI)
        for method in candidates:
            start = time.perf_counter()
            try:
                result = self.compress(data, method)
            except CartError as e:
                logger.warning("%s benchmark failed: %s", method.value, e)
                continue
            elapsed_ms = (time.perf_counter() - start) * 1000.0
            ratio = (1 - len(result.data) / len(data)) * 100 if data else 0.0
            report[method.value] = {
                "compressed": len(result.data),
                "ratio": ratio,
                "time_ms": elapsed_ms,
            }
        return report


_default = CompressionNegotiator()


def default_negotiator() -> CompressionNegotiator:
    return _default


def compress(data: bytes, method: Optional[Union[str, CompressionMethod]] = None, **tuning: Any) -> CompressionResult:
    return _default.compress(data, method, **tuning)


def decompress(data: bytes, method: Optional[Union[str, CompressionMethod]] = None) -> bytes:
    return _default.decompress(data, method)


def get_available_methods() -> Dict[str, Any]:
    return _default.get_available_methods()


def get_compression_info() -> Dict[str, Any]:
    return _default.get_compression_info()


def enable_brotli() -> bool:
    return _default.enable_brotli()


def disable_brotli() -> None:
    _default.disable_brotli()
