from jose import jwt, JWTError
from datetime import datetime, timedelta, timezone
from fastapi import Depends, Header, HTTPException, status
from .config import SECRET_KEY, ALGORITHM, ACCESS_TOKEN_EXPIRE_MINUTES, DISPUTE_RESOLVER_TOKEN
from fastapi.security import OAuth2PasswordBearer
from typing import Annotated, Optional
import secrets

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="token")

# Function to create JWT token
def create_token(data: dict, expires_delta: timedelta = None):
    to_encode = data.copy()
    if expires_delta:
        expire = datetime.now(timezone.utc) + expires_delta
    else:
        expire = datetime.now(timezone.utc) + timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES)
    to_encode.update({"exp": expire})
    encoded_jwt = jwt.encode(to_encode, SECRET_KEY, algorithm=ALGORITHM)
    return encoded_jwt

def create_access_token(user_id: str, expires_delta: timedelta = None):
    return create_token({"sub": user_id, "type": "access"}, expires_delta)

# Function to verify JWT token
def verify_token(token: str = Depends(oauth2_scheme)):
    try:
        payload = jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
        return payload
    except JWTError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Could not validate credentials",
        )

# Acting user for every challenge operation
async def get_current_user_id(payload: Annotated[dict, Depends(verify_token)]) -> str:
    if payload.get("type") != "access" or not payload.get("sub"):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token type"
        )
    return str(payload["sub"])

# The community vote collaborator authenticates with a shared secret
async def verify_resolver_token(x_resolver_token: Annotated[Optional[str], Header()] = None) -> None:
    if not DISPUTE_RESOLVER_TOKEN or not x_resolver_token or not secrets.compare_digest(x_resolver_token, DISPUTE_RESOLVER_TOKEN):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Invalid resolver token"
        )
