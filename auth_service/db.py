"""Database connection setup for the credential store using SQLAlchemy."""

import os
import logging
from fastapi import HTTPException
from sqlalchemy import create_engine, exc
from sqlalchemy.orm import sessionmaker, declarative_base
from dotenv import load_dotenv

logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(name)s - %(levelname)s - %(message)s')
logger = logging.getLogger(__name__)

load_dotenv()


def build_database_url() -> str:
    """
    Resolves the database URL from the environment.

    DATABASE_URL wins. Otherwise a MariaDB/MySQL URL is assembled from the
    DB_USER, DB_PASS, DB_HOST and DB_NAME variables, and a local SQLite file
    is used when none of them is set.
    """
    url = os.getenv("DATABASE_URL")
    if url:
        return url

    db_vars = {name: os.getenv(name) for name in ("DB_USER", "DB_PASS", "DB_HOST", "DB_NAME")}
    if all(db_vars.values()):
        return "mysql+pymysql://{DB_USER}:{DB_PASS}@{DB_HOST}/{DB_NAME}".format(**db_vars)

    missing = [name for name, value in db_vars.items() if not value]
    if len(missing) < len(db_vars):
        logger.error(f"Missing database environment variables: {', '.join(missing)}")
    logger.warning("No database configured, falling back to local SQLite file.")
    return "sqlite:///./auth_service.db"


engine = None
SessionLocal = None

# Declarative base for the ORM models (User).
Base = declarative_base()


def configure_engine(url: str = None):
    """(Re)creates the engine and session factory. Called at import and by tests."""
    global engine, SessionLocal
    url = url or build_database_url()

    connect_args = {"check_same_thread": False} if url.startswith("sqlite") else {}
    # pool_pre_ping keeps long-lived MySQL connections from going stale
    engine = create_engine(url, pool_pre_ping=True, connect_args=connect_args)
    SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    return engine


def init_db():
    """Creates the tables if they do not exist yet."""
    try:
        Base.metadata.create_all(bind=engine)
        logger.info("Database tables verified/created.")
    except exc.SQLAlchemyError as e:
        logger.error(f"Error initializing database: {e}", exc_info=True)
        raise


configure_engine()


# --- FastAPI dependency ---
def get_db():
    """
    Yields one database session per request and always closes it.
    Unexpected SQLAlchemy errors roll the session back and become a 500.
    """
    if SessionLocal is None:
        logger.error("Database session factory is not initialized.")
        raise HTTPException(status_code=503, detail="Database service unavailable.")

    db = SessionLocal()
    try:
        yield db
    except exc.SQLAlchemyError as e:
        logger.error(f"Database error during request: {e}", exc_info=True)
        db.rollback()
        raise HTTPException(status_code=500, detail="Internal database error.")
    finally:
        db.close()
