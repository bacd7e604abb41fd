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

from dataclasses import dataclass
from typing import Any, Dict, List, Optional
from uuid import UUID
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from sqlalchemy.orm import Session

from database import crud
from database.models import LTIKey, LTIPlatform
from lti.utils import SecurityUtils
from logging_config import setup_logging

logger = setup_logging(module_name='lti_keys')

RSA_KEY_SIZE = 2048
RSA_PUBLIC_EXPONENT = 65537
KEY_ID_BYTES = 16


@dataclass
class KeyPair:
    public_key_pem: str
    private_key_pem: str
    key_id: str


def generate_key_pair() -> KeyPair:
    """
    Generate a new RSA key pair for signing LTI service assertions.

    Returns:
        KeyPair: SPKI public key PEM, PKCS8 private key PEM and a random hex key id
    """
    private_key = rsa.generate_private_key(
        public_exponent=RSA_PUBLIC_EXPONENT,
        key_size=RSA_KEY_SIZE,
    )

    private_pem = private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption()
    )
    public_pem = private_key.public_key().public_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PublicFormat.SubjectPublicKeyInfo
    )

    return KeyPair(
        public_key_pem=public_pem.decode('utf-8'),
        private_key_pem=private_pem.decode('utf-8'),
        key_id=SecurityUtils.generate_opaque_token(KEY_ID_BYTES),
    )


def public_key_to_jwk(public_key_pem: str, kid: str) -> Dict[str, Any]:
    """Convert a PEM public key into its JWK form"""
    public_key = serialization.load_pem_public_key(public_key_pem.encode())
    public_numbers = public_key.public_numbers()
    return {
        "kty": "RSA",
        "alg": "RS256",
        "use": "sig",
        "kid": kid,
        "n": SecurityUtils.int_to_base64url(public_numbers.n),
        "e": SecurityUtils.int_to_base64url(public_numbers.e),
    }


def publish_jwks(db: Session, platform_id: Optional[UUID] = None) -> Dict[str, List[Dict[str, Any]]]:
    """JWKS document with every active tool key, optionally for one platform"""
    keys = crud.get_active_lti_keys(db, platform_id)
    return {"keys": [public_key_to_jwk(key.public_key, key.key_id) for key in keys]}


def rotate_platform_key(db: Session, platform: LTIPlatform) -> LTIKey:
    """
    Generate a key pair for the platform and make it the only active key.

    The deactivation of the previous keys and the insert happen in the same
    transaction, so there is never a moment without an active key.
    """
    key_pair = generate_key_pair()
    key = crud.rotate_lti_key(
        db,
        platform_id=platform.id,
        key_id=key_pair.key_id,
        public_key=key_pair.public_key_pem,
        private_key=key_pair.private_key_pem,
    )
    logger.info(f"Rotated signing key for platform {platform.name} ({platform.issuer}); new kid {key.key_id}")
    return key
