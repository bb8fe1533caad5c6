"""Tests for receipt/chat access tokens."""

import hashlib
import hmac

import pytest

from rivemart.services.tokens import OrderTokenIssuer


class TestOrderTokenIssuer:
    def test_token_is_hmac_sha256_hex(self):
        """issue() is HMAC-SHA256 of the order id under the secret."""
        issuer = OrderTokenIssuer("secret")
        expected = hmac.new(b"secret", b"1001", hashlib.sha256).hexdigest()
        assert issuer.issue("1001") == expected

    def test_token_is_deterministic(self):
        """The same order id always yields the same token."""
        assert OrderTokenIssuer("secret").issue("1001") == OrderTokenIssuer("secret").issue("1001")

    def test_different_secrets_give_different_tokens(self):
        assert OrderTokenIssuer("a").issue("1001") != OrderTokenIssuer("b").issue("1001")

    def test_verify_accepts_issued_token(self):
        issuer = OrderTokenIssuer("secret")
        assert issuer.verify("1001", issuer.issue("1001"))

    def test_verify_rejects_token_for_other_order(self):
        issuer = OrderTokenIssuer("secret")
        assert not issuer.verify("1002", issuer.issue("1001"))

    @pytest.mark.parametrize("token", [None, "", 42, "not-a-token", "ünïcode"])
    def test_verify_never_raises_on_bad_tokens(self, token):
        assert OrderTokenIssuer("secret").verify("1001", token) is False

    def test_verify_rejects_missing_order_id(self):
        issuer = OrderTokenIssuer("secret")
        assert issuer.verify(None, issuer.issue("None")) is False

    def test_empty_secret_is_rejected(self):
        with pytest.raises(ValueError):
            OrderTokenIssuer("")
