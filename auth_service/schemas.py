"""Pydantic schemas for the auth service's request and response bodies."""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, EmailStr, Field, ConfigDict, field_validator
from web3 import Web3


# --- User schemas ---

class UserCreate(BaseModel):
    """Data required to register a new user."""
    email: EmailStr
    password: str = Field(..., min_length=1, description="At most 72 bytes once UTF-8 encoded")
    full_name: str = Field(..., min_length=1, max_length=255)
    wallet_address: Optional[str] = None

    @field_validator("password")
    @classmethod
    def check_password_length(cls, value: str) -> str:
        # bcrypt silently ignores anything past 72 bytes
        if len(value.encode("utf-8")) > 72:
            raise ValueError("password must be at most 72 bytes")
        return value

    @field_validator("wallet_address")
    @classmethod
    def check_wallet_address(cls, value: Optional[str]) -> Optional[str]:
        if value is None or value == "":
            return None
        if not Web3.is_address(value):
            raise ValueError("wallet_address is not a valid address")
        return Web3.to_checksum_address(value)


class UserResponse(BaseModel):
    """Public projection of a user. Never includes the password hash."""
    id: int
    full_name: str
    email: str
    wallet_address: Optional[str] = None
    is_active: bool
    is_verified: bool
    token_balance: float
    funding_status: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    last_login_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


# --- Login schemas ---

class LoginRequest(BaseModel):
    email: str
    password: str


class LoginData(BaseModel):
    user: UserResponse
    access_token: str
    refresh_token: str


class LoginResponse(BaseModel):
    """Envelope returned on a successful login."""
    status: str = "success"
    message: str = "Login successful"
    data: LoginData


# --- Token schemas ---

class TokenPayload(BaseModel):
    """Decoded claims of a valid session token."""
    sub: Optional[str] = None
    email: Optional[str] = None
    token_type: Optional[str] = None
    exp: Optional[int] = None


# --- Wallet funding ---

class FundingResponse(BaseModel):
    user_id: int
    wallet_address: str
    amount: float
    funding_status: str
    tx_hash: str
