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

from typing import Any, Dict, Optional


class LTIError(Exception):
    """Base exception for LTI launch, provisioning and roster sync errors"""
    status_code = 500

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

class BadRequestError(LTIError):
    """Raised on missing or malformed input and claim mismatches"""
    status_code = 400

class InvalidTokenError(LTIError):
    """Raised when a signed token fails verification for any reason"""
    status_code = 401

class ForbiddenError(LTIError):
    """Raised when the caller is not allowed to perform the operation"""
    status_code = 403

class NotFoundError(LTIError):
    """Raised when a platform, context or session does not exist"""
    status_code = 404

class ConflictError(LTIError):
    """Raised when a write loses a uniqueness race"""
    status_code = 409

class InternalError(LTIError):
    """Raised on storage or upstream service failures"""
    status_code = 500
