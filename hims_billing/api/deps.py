# hims_billing/api/deps.py
from __future__ import annotations

from typing import Generator, Optional

from fastapi import Header
from sqlalchemy.orm import Session

from hims_billing.db.session import SessionLocal


def get_db() -> Generator[Session, None, None]:
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def current_user_id(x_user_id: Optional[int] = Header(None)) -> Optional[int]:
    """
    Acting user for audit columns. Authentication happens upstream;
    the gateway forwards the user as X-User-Id.
    """
    return x_user_id
