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

from functools import lru_cache
from fastapi import Depends
from sqlalchemy.orm import Session

from database.db import get_db
from lti.bridge import DatabaseSessionBridge, SessionBridge
from lti.config import LTISettings, get_lti_settings
from lti.secrets import get_lti_secrets
from lti.verifier import JWKSCache, TokenVerifier


@lru_cache(maxsize=1)
def get_jwks_cache() -> JWKSCache:
    """Process-wide cache of platform key sets"""
    settings = get_lti_settings()
    return JWKSCache(ttl_seconds=settings.jwks_cache_ttl_seconds, timeout=settings.http_timeout_seconds)

def get_token_verifier(jwks_cache: JWKSCache = Depends(get_jwks_cache)) -> TokenVerifier:
    return TokenVerifier(jwks_cache)

def get_session_bridge(
    db: Session = Depends(get_db),
    settings: LTISettings = Depends(get_lti_settings),
) -> SessionBridge:
    return DatabaseSessionBridge(db, get_lti_secrets().session_tokens_secret, settings)
