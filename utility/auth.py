# © [2025] EDT&Partners. Licensed under CC BY 4.0.

from uuid import UUID
from fastapi import Depends, HTTPException
from fastapi.security import OAuth2PasswordBearer
from icecream import ic
from jose import jwt as jose_jwt
from jose.exceptions import JWTError
from sqlalchemy.orm import Session

from constants import INVALID_TOKEN_MESSAGE, NOT_AUTHORIZED_MESSAGE
from database.crud import get_user
from database.db import get_db
from database.models import User, UserRole
from lti.bridge import ACCESS_TOKEN_TYPE
from lti.secrets import get_lti_secrets

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="token")

def get_current_user(token: str = Depends(oauth2_scheme), db: Session = Depends(get_db)) -> User:
    """Resolve the user behind an access token minted by the session bridge"""
    try:
        payload = jose_jwt.decode(token, get_lti_secrets().session_tokens_secret, algorithms=["HS256"])
    except JWTError as e:
        ic(f"Error while validating token: {str(e)}")
        raise HTTPException(status_code=401, detail=INVALID_TOKEN_MESSAGE)

    if payload.get("token_type") != ACCESS_TOKEN_TYPE:
        ic(f"Token type {payload.get('token_type')} is not an access token")
        raise HTTPException(status_code=401, detail=INVALID_TOKEN_MESSAGE)

    try:
        user_id = UUID(str(payload.get("sub", "")))
    except ValueError:
        raise HTTPException(status_code=401, detail=INVALID_TOKEN_MESSAGE)

    user = get_user(db, user_id)
    if not user:
        raise HTTPException(status_code=401, detail=INVALID_TOKEN_MESSAGE)
    return user

def require_admin(user: User = Depends(get_current_user)) -> User:
    if user.role != UserRole.admin:
        raise HTTPException(status_code=403, detail=NOT_AUTHORIZED_MESSAGE)
    return user
