# © [2025] EDT&Partners. Licensed under CC BY 4.0.

import json
import os
import time
import inspect
from functools import wraps
from typing import Optional
from sqlalchemy import create_engine, orm
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool
from sqlalchemy.exc import OperationalError
from logging_config import setup_logging

logger = setup_logging(module_name='database')

Base = orm.declarative_base()

_ENGINE = None
_SESSION_LOCAL = None

def get_database_url_from_secret(secret_arn: str) -> str:
    if not secret_arn:
        raise ValueError("Secret ARN cannot be empty")

    from utility.aws_clients import secrets_client

    response = secrets_client.get_secret_value(SecretId=secret_arn)

    if "SecretString" not in response:
        raise ValueError("SecretString not found in Secrets Manager response")

    secret = json.loads(response["SecretString"])

    # JSON Secret contains: username, password, host, port, dbname
    db_url = (
        f"postgresql+psycopg2://{secret['username']}:{secret['password']}"
        f"@{secret['host']}:{secret['port']}/{secret['dbname']}"
    )
    logger.info(db_url.replace(secret['password'], "********"))
    return db_url

def get_database_url() -> str:
    """Resolve the database URL: Secrets Manager in production, DATABASE_URL otherwise"""
    environment = os.getenv("ENVIRONMENT", "production")
    if environment == "production":
        database_secret = os.getenv("DATABASE_SECRET")
        if not database_secret:
            raise ValueError("DATABASE_SECRET environment variable not set")
        return get_database_url_from_secret(database_secret)

    database_url = os.getenv("DATABASE_URL")
    if not database_url:
        raise ValueError("DATABASE_URL environment variable not set")
    return database_url

def retry_on_disconnect(max_retries=3, initial_delay=1, max_delay=10):
    """Retry a session factory when the connection drops before it is handed out"""
    def decorator(func):
        if inspect.isgeneratorfunction(func):
            @wraps(func)
            def generator_wrapper(*args, **kwargs):
                delay = initial_delay
                for attempt in range(max_retries):
                    try:
                        yield from func(*args, **kwargs)
                        return
                    except OperationalError:
                        if attempt >= max_retries - 1:
                            raise
                        time.sleep(delay)
                        delay = min(delay * 2, max_delay)
                        logger.info(f"Retrying connection to the database (attempt {attempt + 1}/{max_retries})")
            return generator_wrapper

        @wraps(func)
        def sync_wrapper(*args, **kwargs):
            delay = initial_delay
            for attempt in range(max_retries):
                try:
                    return func(*args, **kwargs)
                except OperationalError:
                    if attempt >= max_retries - 1:
                        raise
                    time.sleep(delay)
                    delay = min(delay * 2, max_delay)
                    logger.info(f"Retrying connection to the database (attempt {attempt + 1}/{max_retries})")
        return sync_wrapper
    return decorator

def build_engine(database_url: Optional[str] = None):
    url = database_url or get_database_url()
    if url.startswith("sqlite"):
        return create_engine(
            url,
            echo=False,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    return create_engine(
        url,
        echo=False,
        pool_pre_ping=True,
        pool_recycle=1800,
        pool_size=10,
        max_overflow=20,
        pool_timeout=30,
        pool_use_lifo=True
    )

def get_engine():
    global _ENGINE
    if _ENGINE is None:
        _ENGINE = build_engine()
    return _ENGINE

def get_session_local():
    global _SESSION_LOCAL
    if _SESSION_LOCAL is None:
        _SESSION_LOCAL = sessionmaker(autocommit=False, autoflush=False, bind=get_engine())
    return _SESSION_LOCAL

@retry_on_disconnect()
def get_db():
    SessionLocal = get_session_local()
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
