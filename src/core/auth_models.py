"""Credential models to handle logins and the identity carried by a token"""

from typing import Optional

import jwt
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from src.core.errors import DecodeError


class LoginRequest(BaseModel):
    """Defines a Login request schema."""

    token: str


class Claims(BaseModel):
    """
    Identity claims decoded from the bearer credential.
    Used as a display hint only: the signature is not verified here,
    the broker re-checks every operation.
    """

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    user_id: Optional[int] = Field(default=None, alias="userId")
    first_name: Optional[str] = Field(default=None, alias="firstName")
    subject: Optional[str] = Field(default=None, alias="sub")

    @property
    def sender_id(self) -> int:
        """User id to stamp outgoing messages with."""
        return self.user_id or 0

    def display_name(self, default: str) -> str:
        """Name to stamp outgoing messages with."""
        return self.first_name or default


def decode_credential(token: str) -> Claims:
    """
    Decodes the payload of a bearer token without verifying it.
    Raises DecodeError if the token is not a well formed JWT.
    """
    try:
        payload = jwt.decode(token, options={"verify_signature": False})
        return Claims.model_validate(payload)
    except (jwt.InvalidTokenError, ValidationError) as e:
        raise DecodeError(f"Invalid credential: {e}") from e
