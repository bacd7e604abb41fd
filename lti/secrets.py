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

import os
from dataclasses import dataclass
from functools import lru_cache
from cryptography.fernet import Fernet
from logging_config import setup_logging

logger = setup_logging(module_name='lti_secrets')

LTI_ENCRYPTION_SECRET_PARAMETER = "/lecture/global/LTI_ENCRYPTION_SECRET_ARN"
LTI_SESSION_SECRET_PARAMETER = "/lecture/global/LTI_SESSION_SECRET_ARN"

@dataclass
class LTISecrets:
    encryption_secret: str
    session_tokens_secret: str

def _get_secret_string(secret_arn: str, label: str) -> str:
    from utility.aws_clients import secrets_client

    response = secrets_client.get_secret_value(SecretId=secret_arn)
    if 'SecretString' not in response:
        raise ValueError(f"SecretString not found in Secrets Manager response for LTI {label} secret")
    return response['SecretString']

def _load_from_aws() -> LTISecrets:
    from utility.ssm_parameter_store import SSMParameterStore

    parameter_store = SSMParameterStore()
    encryption_secret_arn = parameter_store.require_parameter(LTI_ENCRYPTION_SECRET_PARAMETER)
    session_secret_arn = parameter_store.require_parameter(LTI_SESSION_SECRET_PARAMETER)
    return LTISecrets(
        encryption_secret=_get_secret_string(encryption_secret_arn, "encryption"),
        session_tokens_secret=_get_secret_string(session_secret_arn, "session"),
    )

def _load_from_env() -> LTISecrets:
    encryption_secret = os.getenv("LTI_ENCRYPTION_SECRET")
    if not encryption_secret:
        raise ValueError("LTI_ENCRYPTION_SECRET is not set")
    session_secret = os.getenv("LTI_SESSION_TOKENS_SECRET")
    if not session_secret:
        raise ValueError("LTI_SESSION_TOKENS_SECRET is not set")
    return LTISecrets(encryption_secret, session_secret)

@lru_cache(maxsize=1)
def get_lti_secrets() -> LTISecrets:
    """Resolve the LTI secrets once per process"""
    environment = os.getenv("ENVIRONMENT", "production")
    if environment == "production":
        logger.info("Loading LTI secrets from AWS Secrets Manager")
        return _load_from_aws()
    logger.info(f"Loading LTI secrets from environment ({environment})")
    return _load_from_env()

@lru_cache(maxsize=1)
def get_fernet() -> Fernet:
    """Fernet instance used to encrypt tool private keys at rest"""
    return Fernet(get_lti_secrets().encryption_secret.encode())
