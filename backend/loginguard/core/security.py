import os
import hashlib
import hmac
import secrets
import string

from fastapi import Depends, HTTPException, status
from fastapi.security import OAuth2PasswordBearer
from jose import JWTError, jwt
from pydantic import BaseModel

from loginguard.core.permissions import Permission, has_permission

ALGORITHM = "HS256"
VERIFICATION_CODE_LENGTH = int(os.getenv("VERIFICATION_CODE_LENGTH", "6"))
RECOVERY_CODE_LENGTH = 8

RECOVERY_CODE_ALPHABET = string.ascii_uppercase + string.digits

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/auth/token")


class Principal(BaseModel):
    subject: str
    role: str


def _get_secret_key() -> str:
    secret = os.getenv("SECRET_KEY")
    if not secret:
        raise RuntimeError("SECRET_KEY is not set")
    return secret


def hash_secret(value: str) -> str:
    secret = _get_secret_key()
    return hashlib.sha256(f"{value}:{secret}".encode("utf-8")).hexdigest()


def verify_secret(value: str, value_hash: str) -> bool:
    return hmac.compare_digest(hash_secret(value), value_hash)


def generate_verification_code() -> str:
    return "".join(secrets.choice(string.digits) for _ in range(VERIFICATION_CODE_LENGTH))


def generate_challenge_token() -> str:
    return secrets.token_urlsafe(32)


def generate_recovery_code() -> str:
    return "".join(secrets.choice(RECOVERY_CODE_ALPHABET) for _ in range(RECOVERY_CODE_LENGTH))


def normalize_recovery_code(code: str) -> str:
    return code.strip().replace("-", "").replace(" ", "").upper()


def get_current_principal(token: str = Depends(oauth2_scheme)) -> Principal:
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )

    try:
        payload = jwt.decode(token, _get_secret_key(), algorithms=[ALGORITHM])
    except JWTError as exc:
        raise credentials_exception from exc

    subject = payload.get("sub")
    if not subject:
        raise credentials_exception
    return Principal(subject=str(subject), role=str(payload.get("role") or "viewer"))


def require_permission(permission: Permission):
    def _dependency(principal: Principal = Depends(get_current_principal)) -> Principal:
        if not has_permission(principal.role, permission):
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Permission required: {permission}",
            )
        return principal

    return _dependency
