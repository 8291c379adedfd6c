import time
from typing import Any, Dict

import jwt
from fastapi import Request
from passlib.context import CryptContext
from sqlalchemy import select
from sqlalchemy.orm import Session

from .config import settings
from .errors import UnauthorizedError
from .models import Staff

pwd_ctx = CryptContext(schemes=["pbkdf2_sha256"], deprecated="auto")


def hash_password(password: str) -> str:
    return pwd_ctx.hash(password)


def generate_jwt(payload: Dict[str, Any], expires_in_seconds: int | None = None) -> str:
    to_encode = payload.copy()
    ttl = settings.TOKEN_EXPIRES_SECONDS if expires_in_seconds is None else expires_in_seconds
    to_encode["exp"] = int(time.time()) + ttl
    token = jwt.encode(to_encode, settings.SECRET_KEY, algorithm=settings.JWT_ALGORITHM)
    return token


def verify_jwt(token: str) -> Dict[str, Any]:
    return jwt.decode(token, settings.SECRET_KEY, algorithms=[settings.JWT_ALGORITHM])


def staff_token(employee_id: str) -> str:
    return generate_jwt({"sub": employee_id, "role": "staff"})


def authenticate_staff(db: Session, employee_id: str, password: str) -> Staff:
    """Return the staff member whose stored hash matches ``password``."""
    staff = db.scalar(select(Staff).where(Staff.employee_id == employee_id.strip()))
    if not staff or not staff.password_hash or not pwd_ctx.verify(password, staff.password_hash):
        raise UnauthorizedError("Invalid credentials")
    return staff


def get_current_payload(request: Request) -> Dict[str, Any]:
    auth_header = request.headers.get("authorization") or request.headers.get("Authorization")
    token: str | None = None
    if auth_header and auth_header.lower().startswith("bearer "):
        token = auth_header.split(" ", 1)[1].strip()
    # Also allow token via query for EventSource clients, which cannot set headers
    token = token or request.query_params.get("token")
    if not token:
        raise UnauthorizedError("Missing bearer token")
    try:
        payload = verify_jwt(token)
    except jwt.PyJWTError as exc:
        raise UnauthorizedError("Invalid or expired token") from exc
    if not payload.get("sub"):
        raise UnauthorizedError("Token has no subject")
    return payload
