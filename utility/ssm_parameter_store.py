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

from botocore.exceptions import ClientError
from typing import Optional
from logging_config import setup_logging
from utility.aws_clients import ssm_client

logger = setup_logging(module_name='ssm_parameter_store')

class SSMParameterStore:
    def __init__(self, client=None):
        self.client = client or ssm_client

    def get_parameter(self, parameter_name: str, decrypt: bool = True) -> Optional[str]:
        """
        Get a parameter from the Parameter Store.

        Args:
            parameter_name (str): Name of the parameter to get
            decrypt (bool): If True, decrypt the parameter if it is a SecureString

        Returns:
            str: Value of the parameter, or None when it cannot be read
        """
        try:
            response = self.client.get_parameter(
                Name=parameter_name,
                WithDecryption=decrypt
            )
            return response['Parameter']['Value']
        except ClientError as e:
            logger.error(f"Error getting the parameter {parameter_name}: {str(e)}")
            return None

    def require_parameter(self, parameter_name: str, decrypt: bool = True) -> str:
        """Get a parameter that must exist, raising ValueError otherwise"""
        value = self.get_parameter(parameter_name, decrypt=decrypt)
        if not value:
            raise ValueError(f"SSM parameter {parameter_name} is not set")
        return value
