"""A minimal shopping-cart container with signing helpers."""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from .errors import cart_error, CART_E_NO_SIGNER
from .signature import JsonSignature


class CloudlessCart:
    """Ordered list of items that can be signed as ``{"items": [...]}``."""

    def __init__(self, signer: Optional[JsonSignature] = None):
        self._items: List[Any] = []
        self._signer = signer

    def add_item(self, item: Any) -> None:
        self._items.append(item)

    def get_items(self) -> List[Any]:
        return list(self._items)

    def clear_cart(self) -> None:
        self._items.clear()

    def set_signer(self, signer: JsonSignature) -> None:
        self._signer = signer

    def _require_signer(self) -> JsonSignature:
        if self._signer is None:
            raise cart_error(CART_E_NO_SIGNER, "No signer set on cart")
        return self._signer

    def signed_cart(self) -> Dict[str, Any]:
        """Sign the current items under a freshly generated key.

        Returns ``{"signed": <SignedObject>, "keypair": <GeneratedKey>}``.
        """
        signer = self._require_signer()
        pair = signer.generate_key_pair()
        signed = signer.sign(pair.key_id, {"items": list(self._items)})
        return {"signed": signed, "keypair": pair}

    def verify_cart(self, signed: Any, key_id: str) -> Any:
        return self._require_signer().verify(signed, key_id)
