from datetime import datetime, timedelta, timezone
from typing import Optional

from fastapi import Depends, HTTPException, status
from fastapi.security import OAuth2PasswordBearer
from jose import JWTError, jwt
from passlib.context import CryptContext
from pymongo.database import Database

import settings
from database import get_db, to_object_id
from errors import Unauthorized, ValidationError

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="api/auth/admin/login")

# account kind -> collection holding its records
ACCOUNT_COLLECTIONS = {"buyer": "buyer", "seller": "seller", "admin": "admin"}


def verify_password(plain_password, hashed_password):
    return pwd_context.verify(plain_password, hashed_password)


def get_password_hash(password):
    return pwd_context.hash(password)


def create_access_token(data: dict, expires_delta: Optional[timedelta] = None):
    to_encode = data.copy()
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES))
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, settings.SECRET_KEY, algorithm=settings.ALGORITHM)


def authenticate(db: Database, kind: str, email: Optional[str], password: Optional[str]) -> dict:
    """Return the account document matching the credentials or raise Unauthorized."""
    if not email or not password:
        raise ValidationError("Email and password are required")
    account = db[ACCOUNT_COLLECTIONS[kind]].find_one({"email": email.strip().lower()})
    if not account or not verify_password(password, account.get("password_hash", "")):
        raise Unauthorized("Invalid credentials")
    return account


def get_current_account(token: str = Depends(oauth2_scheme), db: Database = Depends(get_db)):
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )
    try:
        payload = jwt.decode(token, settings.SECRET_KEY, algorithms=[settings.ALGORITHM])
        account_id: str = payload.get("sub")
        kind: str = payload.get("kind")
        if account_id is None or kind not in ACCOUNT_COLLECTIONS:
            raise credentials_exception
    except JWTError:
        raise credentials_exception

    oid = to_object_id(account_id)
    account = db[ACCOUNT_COLLECTIONS[kind]].find_one({"_id": oid}) if oid else None
    if not account:
        raise credentials_exception
    account["kind"] = kind
    return account


def require_admin(account=Depends(get_current_account)):
    if account.get("kind") != "admin":
        raise HTTPException(status_code=403, detail="Admins only")
    return account
