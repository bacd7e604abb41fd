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

import base64
import hashlib
import secrets
from typing import Dict, Any, Optional
from datetime import datetime, timezone
from urllib.parse import urlparse, urlencode
from fastapi import Request
from logging_config import setup_logging

# Configure logging
logger = setup_logging(module_name='lti_utils')


class SecurityUtils:
    """Utility functions for security operations"""

    @staticmethod
    def validate_jwk(key: Dict[str, Any]) -> bool:
        """Validate that a JWK is an RSA signing key usable for RS256"""
        try:
            if not all(field in key for field in ('kty', 'n', 'e')):
                return False

            if key['kty'] != 'RSA':
                return False

            # alg and use are optional in a JWKS, but must match when present
            if key.get('alg', 'RS256') != 'RS256' or key.get('use', 'sig') != 'sig':
                return False

            # Modulus should be at least 2048 bits
            n_bytes = base64.urlsafe_b64decode(key['n'] + '=' * (-len(key['n']) % 4))
            return len(n_bytes) * 8 >= 2048
        except (TypeError, ValueError, AttributeError):
            return False

    @staticmethod
    def generate_opaque_token(num_bytes: int = 32) -> str:
        """Random hex string used for state, nonce and handoff codes"""
        return secrets.token_hex(num_bytes)

    @staticmethod
    def hash_token(token: str) -> str:
        return hashlib.sha256(token.encode('utf-8')).hexdigest()

    @staticmethod
    def int_to_base64url(value: int) -> str:
        return base64.urlsafe_b64encode(
            value.to_bytes((value.bit_length() + 7) // 8, 'big')
        ).decode('utf-8').rstrip('=')


def generate_request_id() -> str:
    """Generate a unique request ID"""
    return f"req_{datetime.now(timezone.utc).timestamp()}"

def utcnow() -> datetime:
    return datetime.now(timezone.utc)

def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes read back from the database"""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)

async def get_request_params(request: Request) -> Dict[str, str]:
    """Merge query string and form fields, form values taking precedence"""
    params = dict(request.query_params)
    if request.method == "POST":
        try:
            form_data = await request.form()
            params.update({k: v for k, v in form_data.items() if isinstance(v, str)})
        except (ValueError, AssertionError) as e:
            logger.warning(f"Could not parse form body: {str(e)}")
    return params

def build_redirect_url(base_url: str, params: dict) -> str:
    """Build a proper redirect URL with query parameters"""
    # Parse the base URL to ensure it's valid
    parsed = urlparse(base_url)
    if not parsed.scheme or not parsed.netloc:
        logger.error(f"Invalid base URL: {base_url}")
        raise ValueError(f"Invalid base URL: {base_url}")

    # Build query string, filtering out None values
    query = urlencode({k: v for k, v in params.items() if v is not None})

    separator = '&' if '?' in base_url else '?'
    return f"{base_url}{separator}{query}"
