"""Registration, credential validation and login against the users table."""

import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional

from fastapi import HTTPException, status
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from auth_service import schemas
from auth_service.models import User, FundingStatus
from auth_service.utils import (
    get_password_hash,
    verify_password,
    create_access_token,
    create_refresh_token,
)

logger = logging.getLogger(__name__)

INITIAL_TOKEN_ALLOCATION = Decimal(1000)

DUPLICATE_EMAIL_DETAIL = "Email is already registered"


def get_user_by_email(db: Session, email: str) -> Optional[User]:
    return db.query(User).filter(User.email == email).first()


def register(db: Session, user_in: schemas.UserCreate, funding_enabled: bool = False) -> User:
    """
    Creates a user with the initial token allocation.

    The lookup by email is only a fast path; the UNIQUE constraint on
    users.email decides, so a concurrent duplicate fails on commit with the
    same 400. With funding enabled and a wallet address given, the user is
    stored with funding_status 'pending' for the caller to schedule.
    """
    logger.info(f"Registration attempt for email: {user_in.email}")
    if get_user_by_email(db, user_in.email):
        logger.warning(f"Registration failed: Email {user_in.email} already exists.")
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=DUPLICATE_EMAIL_DETAIL)

    new_user = User(
        email=user_in.email,
        full_name=user_in.full_name,
        hashed_password=get_password_hash(user_in.password),
        wallet_address=user_in.wallet_address,
        token_balance=INITIAL_TOKEN_ALLOCATION,
        funding_status=FundingStatus.PENDING if funding_enabled and user_in.wallet_address else None,
    )

    try:
        db.add(new_user)
        db.commit()
    except IntegrityError:
        db.rollback()
        logger.warning(f"Registration failed: Email {user_in.email} inserted concurrently.")
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=DUPLICATE_EMAIL_DETAIL)
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Database error during user creation for email {user_in.email}: {e}", exc_info=True)
        raise HTTPException(status.HTTP_500_INTERNAL_SERVER_ERROR, "Could not save user.")

    db.refresh(new_user)
    logger.info(f"User created with ID: {new_user.id} for email: {user_in.email}")
    return new_user


def validate_user(db: Session, email: str, password: str) -> Optional[User]:
    """Returns the user when the credentials match, None otherwise."""
    user = get_user_by_email(db, email)
    if not user:
        return None
    if not verify_password(password, user.hashed_password):
        return None
    return user


def login(db: Session, email: str, password: str) -> dict:
    """
    Checks the credentials and issues an access/refresh token pair.
    Unknown email and wrong password produce the same 401.
    """
    logger.info(f"Login attempt for user: {email}")
    user = validate_user(db, email, password)
    if not user:
        logger.warning(f"Login failed for user: {email}")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid credentials",
            headers={"WWW-Authenticate": "Bearer"},
        )

    user.last_login_at = datetime.now(timezone.utc)
    try:
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Could not record last login for user {user.id}: {e}", exc_info=True)
        raise HTTPException(status.HTTP_500_INTERNAL_SERVER_ERROR, "Could not complete login.")
    db.refresh(user)

    claims = {"email": user.email, "sub": str(user.id)}
    logger.info(f"Login successful for user_id: {user.id}")

    return {
        "status": "success",
        "message": "Login successful",
        "data": {
            "user": schemas.UserResponse.model_validate(user),
            "access_token": create_access_token(claims),
            "refresh_token": create_refresh_token(claims),
        },
    }
