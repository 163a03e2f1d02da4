"""Unit tests for credential decoding"""

import pytest

from src.core.auth_models import Claims, decode_credential
from src.core.errors import DecodeError


def test_decode_marketplace_claims(token_factory):
    """userId and firstName are read from the token payload."""
    claims = decode_credential(token_factory(user_id=7, first_name="Bruno", sub="bruno@example.com"))

    assert claims.user_id == 7
    assert claims.first_name == "Bruno"
    assert claims.subject == "bruno@example.com"
    assert claims.sender_id == 7
    assert claims.display_name("User") == "Bruno"


def test_signature_is_not_verified(token_factory):
    """Decoding does not need the signing key: claims are a display hint only."""
    token = token_factory(user_id=3, first_name="Ana")
    header, payload, _ = token.split(".")

    claims = decode_credential(f"{header}.{payload}.invalidsignature")

    assert claims.user_id == 3


def test_missing_claims_fall_back(token_factory):
    """A token without identity claims yields the default sender identity."""
    claims = decode_credential(token_factory(user_id=None, first_name=None, role="GUEST"))

    assert claims.user_id is None
    assert claims.sender_id == 0
    assert claims.display_name("User") == "User"


@pytest.mark.parametrize("token", ["", "not-a-jwt", "a.b.c"])
def test_malformed_credential(token):
    """Anything that is not a JWT is a decode error."""
    with pytest.raises(DecodeError):
        decode_credential(token)


def test_claims_accept_field_names():
    """Claims can be built from Python field names too."""
    claims = Claims(user_id=1, first_name="Rita")
    assert claims.model_dump(by_alias=True)["userId"] == 1
