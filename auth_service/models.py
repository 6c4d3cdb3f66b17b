"""Defines the 'users' table using the SQLAlchemy ORM."""

from decimal import Decimal
from sqlalchemy import Column, Integer, String, Boolean, Numeric, DateTime, func

from auth_service.db import Base


class FundingStatus:
    """Values stored in User.funding_status while a wallet funding is tracked."""
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    FUNDED = "funded"
    FAILED = "failed"
    # broadcast outcome unknown, never retried automatically
    UNCONFIRMED = "unconfirmed"


class User(Base):
    """
    SQLAlchemy model for the 'users' table.
    Holds credentials, the wallet address and the token balance of each user.
    """
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)

    # Unique at the store level; registration relies on this constraint
    email = Column(String(255), unique=True, index=True, nullable=False)

    # bcrypt hash, the plaintext password is never stored
    hashed_password = Column(String(255), nullable=False)

    full_name = Column(String(255), nullable=False)

    # 0x-prefixed 20-byte hex address
    wallet_address = Column(String(42), nullable=True)

    token_balance = Column(Numeric(36, 18), nullable=False, default=Decimal("0"))

    is_active = Column(Boolean, nullable=False, default=True)
    is_verified = Column(Boolean, nullable=False, default=False)

    funding_status = Column(String(16), nullable=True)
    funding_tx_hash = Column(String(66), nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())
    last_login_at = Column(DateTime(timezone=True), nullable=True)
