import hashlib
import hmac
from typing import Any


class OrderTokenIssuer:
    """Derives receipt/chat access tokens from order ids.

    The token is ``HMAC-SHA256(secret, order_id)`` so it can always be
    re-derived from the order id; nothing about it is stored server side.
    """

    def __init__(self, secret: str):
        if not secret:
            raise ValueError("token secret must not be empty")
        self._secret = secret.encode("utf-8")

    def issue(self, order_id: str) -> str:
        return hmac.new(self._secret, str(order_id).encode("utf-8"), hashlib.sha256).hexdigest()

    def verify(self, order_id: Any, token: Any) -> bool:
        if not isinstance(order_id, str) or not isinstance(token, str):
            return False
        if not order_id or not token:
            return False
        expected = self.issue(order_id)
        try:
            return hmac.compare_digest(expected, token.strip().lower())
        except TypeError:
            # non-ASCII token
            return False
