# 
# Copyright 2025 EDT&Partners
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.
# 

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from uuid import UUID

import jwt as pyjwt
from sqlalchemy.orm import Session

from database import crud
from database.models import User, UserRole
from database.schemas import UserProfileHints
from lti.config import LTISettings
from lti.utils import SecurityUtils
from logging_config import setup_logging

logger = setup_logging(module_name='lti_bridge')

ACCESS_TOKEN_TYPE = "access"
REFRESH_TOKEN_TYPE = "refresh"


@dataclass
class SessionTokens:
    access_token: str
    refresh_token: str
    expires_in: int


class SessionBridge(ABC):
    """The host application's user and session store"""

    @abstractmethod
    def find_or_create_user_by_email(self, email: str, profile_hints: UserProfileHints) -> User:
        pass

    @abstractmethod
    def get_user(self, user_id: UUID) -> User:
        pass

    @abstractmethod
    def mint_session(self, user: User) -> SessionTokens:
        pass


def create_session_token(data: dict, secret: str, expires_in: int) -> str:
    to_encode = data.copy()
    now = datetime.now(timezone.utc)
    to_encode.update({"iat": now, "exp": now + timedelta(seconds=expires_in)})
    return pyjwt.encode(to_encode, secret, algorithm="HS256")


class DatabaseSessionBridge(SessionBridge):
    """Session bridge backed by the local users table and HS256 session tokens"""

    def __init__(self, db: Session, session_tokens_secret: str, settings: LTISettings):
        if not session_tokens_secret:
            raise ValueError("LTI_SESSION_TOKENS_SECRET is not set")
        self._db = db
        self._secret = session_tokens_secret
        self._settings = settings

    def find_or_create_user_by_email(self, email: str, profile_hints: UserProfileHints) -> User:
        existing = crud.get_user_by_email(self._db, email)
        if existing:
            return existing

        role = UserRole(profile_hints.role) if profile_hints.role else UserRole.student
        name = profile_hints.name or " ".join(
            part for part in (profile_hints.given_name, profile_hints.family_name) if part
        ) or None
        user = crud.insert_user_if_absent(self._db, email=email, name=name, role=role)
        logger.info(f"Provisioned local user {user.id} ({role.value}) for LTI platform {profile_hints.platform_id}")
        return user

    def get_user(self, user_id: UUID) -> User:
        return crud.get_user(self._db, user_id)

    def mint_session(self, user: User) -> SessionTokens:
        claims = {"sub": str(user.id), "email": user.email, "role": user.role.value}
        access_token = create_session_token(
            {**claims, "token_type": ACCESS_TOKEN_TYPE},
            self._secret,
            self._settings.access_token_ttl_seconds,
        )
        refresh_token = create_session_token(
            {"sub": str(user.id), "token_type": REFRESH_TOKEN_TYPE, "jti": SecurityUtils.generate_opaque_token(16)},
            self._secret,
            self._settings.refresh_token_ttl_seconds,
        )
        return SessionTokens(
            access_token=access_token,
            refresh_token=refresh_token,
            expires_in=self._settings.access_token_ttl_seconds,
        )
