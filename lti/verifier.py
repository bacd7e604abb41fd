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

import threading
import time
from typing import Any, Dict, Optional, Tuple

import jwt as pyjwt
import requests
from jose import jwk
from jose.exceptions import JOSEError

from database.models import LTIPlatform
from lti.utils import SecurityUtils
from logging_config import setup_logging
from utility.exceptions import InvalidTokenError

logger = setup_logging(module_name='lti_verifier')

INVALID_TOKEN_MESSAGE = "Invalid LTI token"
CLOCK_SKEW_LEEWAY_SECONDS = 30


class JWKSLookupError(Exception):
    """Raised when no usable key can be found in a platform JWKS"""
    pass


class JWKSCache:
    """Per-URL cache of platform key sets.

    Concurrent refreshes of the same URL may both hit the network; the last
    writer wins, which is harmless for read-only key material.
    """

    def __init__(self, ttl_seconds: int = 3600, timeout: float = 10.0):
        self._ttl_seconds = ttl_seconds
        self._timeout = timeout
        self._entries: Dict[str, Tuple[float, Dict[str, Any]]] = {}
        self._lock = threading.Lock()

    def _fetch(self, jwks_url: str) -> Dict[str, Any]:
        logger.info(f"Fetching JWKS from: {jwks_url}")
        response = requests.get(jwks_url, timeout=self._timeout, headers={"Accept": "application/json"})
        response.raise_for_status()
        jwks = response.json()
        if not isinstance(jwks, dict) or not isinstance(jwks.get('keys'), list):
            raise JWKSLookupError(f"Invalid JWKS response from {jwks_url}: no keys found")
        logger.info(f"Fetched JWKS with {len(jwks['keys'])} keys from {jwks_url}")
        return jwks

    def get(self, jwks_url: str, force_refresh: bool = False) -> Dict[str, Any]:
        now = time.monotonic()
        with self._lock:
            entry = self._entries.get(jwks_url)
        if entry and not force_refresh and now - entry[0] < self._ttl_seconds:
            return entry[1]

        jwks = self._fetch(jwks_url)
        with self._lock:
            self._entries[jwks_url] = (time.monotonic(), jwks)
        return jwks

    def clear(self):
        with self._lock:
            self._entries.clear()


def select_jwk(jwks: Dict[str, Any], kid: Optional[str]) -> Optional[Dict[str, Any]]:
    """Pick the key matching kid, or the first valid key when the token has none"""
    for key in jwks.get('keys', []):
        if kid is not None and key.get('kid') != kid:
            continue
        if SecurityUtils.validate_jwk(key):
            return key
    return None


class TokenVerifier:
    """Validates platform-signed id_tokens against the platform's JWKS"""

    def __init__(self, jwks_cache: JWKSCache):
        self._jwks_cache = jwks_cache

    def _get_public_key(self, platform: LTIPlatform, kid: Optional[str]) -> str:
        jwks = self._jwks_cache.get(platform.jwks_endpoint)
        selected_key = select_jwk(jwks, kid)
        if selected_key is None:
            # The platform may have rotated its keys since we cached them
            logger.info(f"Key {kid} not in cached JWKS of {platform.issuer}, refetching")
            jwks = self._jwks_cache.get(platform.jwks_endpoint, force_refresh=True)
            selected_key = select_jwk(jwks, kid)
        if selected_key is None:
            raise JWKSLookupError(f"No valid key found for kid: {kid}")

        return jwk.construct(selected_key, algorithm='RS256').to_pem().decode('utf-8')

    def verify(self, token: str, platform: LTIPlatform, expected_audience: Optional[str] = None) -> Dict[str, Any]:
        """
        Verify signature, issuer, audience and lifetime of a launch token.

        Every failure collapses into InvalidTokenError; the precise cause is only logged.
        """
        audience = expected_audience or platform.client_id
        try:
            header = pyjwt.get_unverified_header(token)
            if header.get('alg') != 'RS256':
                raise JWKSLookupError(f"Unsupported token algorithm: {header.get('alg')}")

            public_key = self._get_public_key(platform, header.get('kid'))
            claims = pyjwt.decode(
                token,
                public_key,
                algorithms=['RS256'],
                audience=audience,
                issuer=platform.issuer,
                options={'require': ['exp', 'iat', 'iss', 'aud', 'sub']},
                leeway=CLOCK_SKEW_LEEWAY_SECONDS,
            )
        except (pyjwt.PyJWTError, JWKSLookupError, JOSEError, requests.RequestException, ValueError) as e:
            logger.warning(f"Token verification failed for platform {platform.name} ({platform.issuer}): {type(e).__name__}: {str(e)}")
            raise InvalidTokenError(INVALID_TOKEN_MESSAGE) from e

        # With several audiences the authorized party must be this tool
        aud = claims.get('aud')
        if isinstance(aud, list) and len(aud) > 1 and claims.get('azp') != audience:
            logger.warning(f"Token azp {claims.get('azp')} does not match client id {audience} for {platform.issuer}")
            raise InvalidTokenError(INVALID_TOKEN_MESSAGE)

        return claims
