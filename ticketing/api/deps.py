# ticketing/api/deps.py
import os
from typing import Generator

from fastapi import Depends, HTTPException, status
from fastapi.security import OAuth2PasswordBearer
from jose import JWTError, jwt
from sqlalchemy.orm import Session

from ticketing.application.booking_service import BookingLifecycleEngine
from ticketing.application.event_service import EventService
from ticketing.domain.identity import Caller, Role
from ticketing.infrastructure.db.session import SessionLocal
from ticketing.infrastructure.payments.gateway import PaymentGateway
from ticketing.infrastructure.payments.razorpay_gateway import RazorpayGateway

JWT_SECRET = os.getenv("JWT_SECRET", "change-me-in-production")
JWT_ALGORITHM = os.getenv("JWT_ALGORITHM", "HS256")

# Token issuance lives with the identity provider; this service only verifies.
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="token")


def get_db() -> Generator[Session, None, None]:
    db = SessionLocal()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


def get_payment_gateway() -> PaymentGateway:
    return RazorpayGateway.from_env()


def get_webhook_secret() -> str:
    return os.getenv("RAZORPAY_WEBHOOK_SECRET", "")


def get_lifecycle_engine(
    db: Session = Depends(get_db),
    gateway: PaymentGateway = Depends(get_payment_gateway),
    webhook_secret: str = Depends(get_webhook_secret),
) -> BookingLifecycleEngine:
    return BookingLifecycleEngine(db, gateway, webhook_secret=webhook_secret)


def get_event_service(db: Session = Depends(get_db)) -> EventService:
    return EventService(db)


def get_current_caller(token: str = Depends(oauth2_scheme)) -> Caller:
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail={"error": "Unauthorized", "message": "Could not validate credentials"},
        headers={"WWW-Authenticate": "Bearer"},
    )
    try:
        payload = jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALGORITHM])
        user_id = payload.get("sub")
        role = Role(payload.get("role", Role.USER.value))
    except (JWTError, ValueError):
        raise credentials_exception

    if not user_id:
        raise credentials_exception
    return Caller(user_id=str(user_id), role=role)


def require_admin(caller: Caller = Depends(get_current_caller)) -> Caller:
    if not caller.is_admin:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail={"error": "Unauthorized", "message": "Admin role required"},
        )
    return caller
