"""
cloudless_cart.keystore: one key namespace shared by signer and encryptor.

A key store maps an opaque key id (usually a random UUID) to a KeyRecord.
The signing engine and the token engine are normally constructed around the
*same* store instance, so a key id generated by one role resolves identically
for the other and writes are visible to both immediately.

The store is an injected abstraction: anything implementing ``get``/``set``
works (a secrets-manager adapter, for example). ``key_ids()`` is optional and
only needed by ``TokenCrypto.decrypt_token_with_any_key``.
"""

from __future__ import annotations

import threading
import uuid
from collections.abc import MutableMapping
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Protocol, runtime_checkable

from .errors import cart_error, CART_E_INVALID_KEY, CART_E_KEY_NOT_FOUND, CART_E_KEYSTORE_NOT_ENUMERABLE
from .jwk import export_jwk, import_jwk, is_private_key


@dataclass(frozen=True)
class KeyRecord:
    """Parsed key material for a single key id.

    A record holding only ``public_key`` can verify and encrypt-for-others.
    A record holding both halves can also sign and decrypt. Records are never
    mutated; re-importing under the same id replaces the record.
    """
    public_key: Any = None
    private_key: Any = None
    alg: Optional[str] = None

    def can_sign(self) -> bool:
        """Check if this record holds a private key (sign/decrypt)."""
        return self.private_key is not None

    def has_public(self) -> bool:
        return self.public_key is not None


@runtime_checkable
class KeyStore(Protocol):
    """Protocol implemented by key store backends."""

    def get(self, key_id: str) -> Optional[KeyRecord]: ...

    def set(self, key_id: str, record: KeyRecord) -> None: ...


class InMemoryKeyStore:
    """Default process-local store.

    Reads and inserts are serialized with a lock; the expected pattern is one
    writer per key id (generate once, read many times).
    """

    def __init__(self) -> None:
        self._records: Dict[str, KeyRecord] = {}
        self._lock = threading.Lock()

    def get(self, key_id: str) -> Optional[KeyRecord]:
        with self._lock:
            return self._records.get(key_id)

    def set(self, key_id: str, record: KeyRecord) -> None:
        with self._lock:
            self._records[key_id] = record

    def key_ids(self) -> List[str]:
        with self._lock:
            return list(self._records.keys())

    def __contains__(self, key_id: object) -> bool:
        with self._lock:
            return key_id in self._records

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)


class MappingKeyStore:
    """Adapter exposing a caller-owned mapping (e.g. a plain dict) as a KeyStore.

    The mapping outlives the engines built on it, which is how two
    independently constructed objects can share keys by reference.
    """

    def __init__(self, mapping: MutableMapping) -> None:
        self.mapping = mapping

    def get(self, key_id: str) -> Optional[KeyRecord]:
        return self.mapping.get(key_id)

    def set(self, key_id: str, record: KeyRecord) -> None:
        self.mapping[key_id] = record

    def key_ids(self) -> List[str]:
        return list(self.mapping.keys())


def coerce_key_store(obj: Any) -> KeyStore:
    """Coerce a supported object into a KeyStore."""
    if obj is None:
        return InMemoryKeyStore()
    if isinstance(obj, (InMemoryKeyStore, MappingKeyStore)):
        return obj
    if isinstance(obj, MutableMapping):
        return MappingKeyStore(obj)
    # Duck-typed
    if isinstance(obj, KeyStore):
        return obj
    raise TypeError(f"Unsupported key store type: {type(obj)}")


def list_key_ids(store: KeyStore) -> List[str]:
    """Enumerate a store's key ids, failing if the backend cannot enumerate."""
    lister = getattr(store, "key_ids", None)
    if not callable(lister):
        raise cart_error(
            CART_E_KEYSTORE_NOT_ENUMERABLE,
            f"key store {type(store).__name__} cannot list its key ids",
        )
    return list(lister())


# ---------------------------------------------------------------------------
# Key lifecycle helpers shared by the signing and token engines
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class GeneratedKey:
    """Result of generating a key pair: the new id and its public JWK."""
    key_id: str
    public_key: Dict[str, Any]
    alg: str

    def to_dict(self) -> Dict[str, Any]:
        return {"keyId": self.key_id, "publicKey": dict(self.public_key), "alg": self.alg}


def new_key_id() -> str:
    return str(uuid.uuid4())


def export_record(key_id: str, record: Optional[KeyRecord]) -> Dict[str, Any]:
    """Export both halves of a stored key pair as JWKs."""
    if record is None or record.private_key is None or record.public_key is None:
        raise cart_error(CART_E_KEY_NOT_FOUND, f"Key pair {key_id} not found", key_id=key_id)
    return {
        "kid": key_id,
        "publicKey": export_jwk(record.public_key, alg=record.alg),
        "privateKey": export_jwk(record.private_key, alg=record.alg),
        "alg": record.alg,
    }


def import_record(public_jwk: Dict[str, Any], private_jwk: Dict[str, Any], alg: str) -> KeyRecord:
    """Parse an exported JWK pair back into a KeyRecord.

    The public JWK must describe the same key as the private one.
    """
    public_key = import_jwk(public_jwk, alg)
    private_key = import_jwk(private_jwk, alg)
    if is_private_key(public_key):
        public_key = public_key.public_key()
    if not is_private_key(private_key):
        raise cart_error(CART_E_INVALID_KEY, "private JWK has no private component", alg=alg)
    if export_jwk(public_key) != export_jwk(private_key.public_key()):
        raise cart_error(CART_E_INVALID_KEY, "public and private JWKs do not form a pair", alg=alg)
    return KeyRecord(public_key=public_key, private_key=private_key, alg=alg)
