import os
import logging
import time

from fastapi import FastAPI, Depends, HTTPException, status, Request, BackgroundTasks
from fastapi.security import OAuth2PasswordBearer
from fastapi.responses import Response
from prometheus_client import Counter, Histogram, generate_latest, CONTENT_TYPE_LATEST
from sqlalchemy import or_
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from auth_service import auth, schemas
from auth_service import db as database
from auth_service.db import get_db
from auth_service.models import User, FundingStatus
from auth_service.utils import decode_token, ACCESS_TOKEN
from auth_service.wallet import (
    allocate_tokens_to_wallet,
    WalletFundingError,
    FundingBroadcastError,
    FundingConfigurationError,
    FundingRevertedError,
    FAILURE_MESSAGE,
)

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/login")

logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(name)s - %(levelname)s - %(message)s')
logger = logging.getLogger(__name__)

app = FastAPI(
    title="Auth Service",
    description="Handles user registration, login, session tokens and wallet token funding.",
    version="1.0.0"
)

# --- Prometheus metrics ---
REQUEST_COUNT = Counter(
    "auth_requests_total",
    "Total requests processed by Auth Service",
    ["method", "endpoint", "status_code"]
)
REQUEST_LATENCY = Histogram(
    "auth_request_latency_seconds",
    "Request latency in seconds for Auth Service",
    ["endpoint"]
)
FUNDING_COUNT = Counter(
    "wallet_funding_total",
    "Wallet funding attempts by outcome",
    ["outcome"]
)


def funding_enabled() -> bool:
    return os.getenv("WALLET_FUNDING_ENABLED", "false").strip().lower() in ("1", "true", "yes")


@app.on_event("startup")
def startup_event():
    """Creates the tables if they do not exist."""
    try:
        database.init_db()
    except Exception as e:
        logger.critical(f"Database initialization failed, requests will fail: {e}")


@app.middleware("http")
async def metrics_middleware(request: Request, call_next):
    start_time = time.time()
    response = None
    status_code = 500

    try:
        response = await call_next(request)
        status_code = response.status_code
    except Exception as exc:
        logger.error(f"Unhandled exception during request processing: {exc}", exc_info=True)
        response = Response("Internal Server Error", status_code=500)
    finally:
        latency = time.time() - start_time
        endpoint = request.url.path
        REQUEST_LATENCY.labels(endpoint=endpoint).observe(latency)
        REQUEST_COUNT.labels(
            method=request.method,
            endpoint=endpoint,
            status_code=getattr(response, 'status_code', status_code)
        ).inc()

    return response


# --- Monitoring ---
@app.get("/metrics", tags=["Monitoring"])
def metrics():
    """Exposes application metrics for Prometheus."""
    return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)


@app.get("/health", tags=["Monitoring"])
def health_check():
    return {"status": "ok", "service": "auth_service"}


# --- Wallet funding ---
def claim_funding(db: Session, user_id: int, statuses=(FundingStatus.PENDING,), include_unset: bool = False) -> bool:
    """
    Atomically moves the user to 'in_progress' when its funding status is one
    of `statuses` (or unset, if allowed). Returns False when another attempt
    holds the row or the funding already finished.
    """
    condition = User.funding_status.in_(statuses)
    if include_unset:
        condition = or_(condition, User.funding_status.is_(None))
    claimed = (
        db.query(User)
        .filter(User.id == user_id, condition)
        .update({User.funding_status: FundingStatus.IN_PROGRESS}, synchronize_session=False)
    )
    db.commit()
    return claimed == 1


def _record_funding(db: Session, user: User, funding_status: str, tx_hash: str = None):
    user_id = user.id
    user.funding_status = funding_status
    if tx_hash:
        user.funding_tx_hash = tx_hash
    try:
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        # row stays 'in_progress', so it is not picked up again
        logger.critical(f"Could not record funding '{funding_status}' for user {user_id}, tx {tx_hash}", exc_info=True)
        raise


async def fund_user_wallet(db: Session, user: User) -> str:
    """
    Sends the user's token balance to their wallet and records the outcome.
    The row must have been claimed with claim_funding. The user is never
    rolled back on failure, only marked.
    """
    try:
        tx_hash = await allocate_tokens_to_wallet(user.wallet_address, user.token_balance)
    except FundingBroadcastError as e:
        _record_funding(db, user, FundingStatus.UNCONFIRMED, e.tx_hash)
        FUNDING_COUNT.labels(outcome="unconfirmed").inc()
        raise
    except WalletFundingError:
        _record_funding(db, user, FundingStatus.FAILED)
        FUNDING_COUNT.labels(outcome="failed").inc()
        raise

    _record_funding(db, user, FundingStatus.FUNDED, tx_hash)
    FUNDING_COUNT.labels(outcome="funded").inc()
    logger.info(f"Wallet of user {user.id} funded, tx {tx_hash}")
    return tx_hash


async def fund_new_user(user_id: int):
    """Background task run after registration; uses its own session."""
    db = database.SessionLocal()
    try:
        if not claim_funding(db, user_id):
            logger.info(f"Funding for new user {user_id} already taken by another attempt, skipping.")
            return
        user = db.query(User).filter(User.id == user_id).first()
        await fund_user_wallet(db, user)
    except WalletFundingError as e:
        logger.warning(f"Funding for new user {user_id} did not complete: {e}")
    except SQLAlchemyError as e:
        logger.error(f"Database error while funding new user {user_id}: {e}", exc_info=True)
    finally:
        db.close()


# --- Auth dependency ---
def get_current_user(token: str = Depends(oauth2_scheme), db: Session = Depends(get_db)) -> User:
    payload = decode_token(token)
    if not payload or payload.get("token_type") != ACCESS_TOKEN or "sub" not in payload:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
            headers={"WWW-Authenticate": "Bearer"},
        )
    user = db.query(User).filter(User.id == int(payload["sub"])).first()
    if not user or not user.is_active:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Inactive or unknown user")
    return user


# --- API endpoints ---

@app.post("/register", response_model=schemas.UserResponse, status_code=status.HTTP_201_CREATED, tags=["Authentication"])
async def register(user: schemas.UserCreate, background_tasks: BackgroundTasks, db: Session = Depends(get_db)):
    """
    Registers a new user with the initial token balance.
    When wallet funding is enabled and a wallet address is given, the on-chain
    transfer runs after the response is sent.
    """
    new_user = auth.register(db, user, funding_enabled=funding_enabled())
    if new_user.funding_status == FundingStatus.PENDING:
        background_tasks.add_task(fund_new_user, new_user.id)
    return new_user


@app.post("/login", response_model=schemas.LoginResponse, tags=["Authentication"])
def login(credentials: schemas.LoginRequest, db: Session = Depends(get_db)):
    """Authenticates with email and password and returns an access and a refresh token."""
    return auth.login(db, credentials.email, credentials.password)


@app.get("/verify", response_model=schemas.TokenPayload, tags=["Internal"])
def verify(token: str):
    """Validates a JWT passed as the 'token' query parameter and returns its claims."""
    payload = decode_token(token)
    if payload is None or "sub" not in payload:
        logger.warning("Verification attempted with an invalid or expired token.")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
        )
    return payload


@app.get("/me", response_model=schemas.UserResponse, tags=["Users"])
def read_me(current_user: User = Depends(get_current_user)):
    return current_user


@app.get("/users/{user_id}", response_model=schemas.UserResponse, tags=["Users"])
def get_user_by_id(user_id: int, db: Session = Depends(get_db)):
    user = db.query(User).filter(User.id == user_id).first()
    if not user:
        logger.warning(f"User with ID {user_id} not found.")
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User not found.")
    return user


@app.post("/me/fund-wallet", response_model=schemas.FundingResponse, tags=["Wallet"])
async def fund_wallet(current_user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    """Transfers the current user's token balance to their wallet on-chain."""
    if not current_user.wallet_address:
        raise HTTPException(status.HTTP_400_BAD_REQUEST, "No wallet address registered for this user.")
    if not claim_funding(db, current_user.id, (FundingStatus.PENDING, FundingStatus.FAILED), include_unset=True):
        raise HTTPException(status.HTTP_409_CONFLICT, "Wallet funding already completed or in progress.")

    try:
        tx_hash = await fund_user_wallet(db, current_user)
    except FundingConfigurationError as e:
        raise HTTPException(status.HTTP_503_SERVICE_UNAVAILABLE, str(e))
    except FundingRevertedError:
        raise HTTPException(status.HTTP_400_BAD_REQUEST, FAILURE_MESSAGE)
    except WalletFundingError:
        raise HTTPException(status.HTTP_502_BAD_GATEWAY, FAILURE_MESSAGE)

    return {
        "user_id": current_user.id,
        "wallet_address": current_user.wallet_address,
        "amount": current_user.token_balance,
        "funding_status": current_user.funding_status,
        "tx_hash": tx_hash,
    }
