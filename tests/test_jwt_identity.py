"""Tests for src.adapters.jwt_identity — custom token minting."""

from datetime import datetime, timedelta, timezone
from unittest.mock import patch

import pytest
from jose import jwt

from src.adapters.jwt_identity import ALGORITHM, JwtIdentityIssuer
from src.ports.identity_port import IdentityError


class TestCreateCustomToken:
    def test_embeds_subject_and_claims(self, identity):
        token = identity.create_custom_token("member-1", {"householdId": "h1"})
        payload = identity.verify(token)
        assert payload["sub"] == "member-1"
        assert payload["uid"] == "member-1"
        assert payload["claims"] == {"householdId": "h1"}
        assert payload["iss"] == "test-issuer"

    def test_expiry_follows_ttl(self):
        issuer = JwtIdentityIssuer("k", ttl_minutes=5)
        payload = issuer.verify(issuer.create_custom_token("m", {}))
        assert payload["exp"] - payload["iat"] == 300

    def test_empty_subject_rejected(self, identity):
        with pytest.raises(IdentityError):
            identity.create_custom_token("", {})

    def test_signing_failure_wrapped(self, identity):
        from jose import JWTError

        with patch("src.adapters.jwt_identity.jwt.encode", side_effect=JWTError("boom")):
            with pytest.raises(IdentityError):
                identity.create_custom_token("m", {})


class TestVerify:
    def test_wrong_key_rejected(self, identity):
        token = JwtIdentityIssuer("other-key", issuer="test-issuer").create_custom_token("m", {})
        with pytest.raises(IdentityError):
            identity.verify(token)

    def test_wrong_issuer_rejected(self, identity):
        token = JwtIdentityIssuer("test-signing-key", issuer="someone-else").create_custom_token("m", {})
        with pytest.raises(IdentityError):
            identity.verify(token)

    def test_expired_rejected(self, identity):
        past = datetime.now(timezone.utc) - timedelta(hours=2)
        token = jwt.encode(
            {"iss": "test-issuer", "sub": "m", "iat": past, "exp": past + timedelta(minutes=1)},
            "test-signing-key",
            algorithm=ALGORITHM,
        )
        with pytest.raises(IdentityError):
            identity.verify(token)
