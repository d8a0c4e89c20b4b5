from datetime import datetime, timedelta, timezone
from fastapi import HTTPException, Depends
from fastapi.security import OAuth2PasswordBearer
from jose import ExpiredSignatureError, JWTError, jwt
from config import settings
from services.errors import AuthenticationFailure

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/v1/auth/signin")

def create_access_token(data: dict, expires_delta: timedelta | None = None):
    """Issue a token. Token issuance proper lives outside this service; this
    exists for local tooling and tests."""
    to_encode = data.copy()
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES))
    to_encode.update({"exp": expire})
    encoded_jwt = jwt.encode(to_encode, settings.SECRET_KEY, algorithm=settings.ALGORITHM)
    return encoded_jwt

def verify_token(token: str | None) -> str:
    """Return the user id carried by ``token`` or raise AuthenticationFailure."""
    if not token:
        raise AuthenticationFailure("No token provided")
    try:
        payload = jwt.decode(token, settings.SECRET_KEY, algorithms=[settings.ALGORITHM])
    except ExpiredSignatureError as exc:
        raise AuthenticationFailure("Token expired", code="jwt_expired") from exc
    except JWTError as exc:
        raise AuthenticationFailure("Invalid token") from exc
    # Older clients still send the id as `userId`
    user_id = payload.get("sub") or payload.get("userId")
    if not user_id:
        raise AuthenticationFailure("Token has no subject")
    return str(user_id)

async def get_current_user_id(token: str = Depends(oauth2_scheme)) -> str:
    try:
        return verify_token(token)
    except AuthenticationFailure as exc:
        raise HTTPException(
            status_code=401,
            detail="Could not validate credentials",
            headers={"WWW-Authenticate": "Bearer"},
        ) from exc
