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

USERS_ID="users.id"
LTI_PLATFORMS_ID="lti_platforms.id"
LTI_CONTEXTS_ID="lti_contexts.id"
LTI_USER_MAPPINGS_ID="lti_user_mappings.id"
LTI_LAUNCH_SESSIONS_ID="lti_launch_sessions.id"
ALL_DELETE_ORPHAN="all, delete-orphan"
INTERNAL_SERVER_ERROR_MESSAGE="Internal Server Error"
NOT_AUTHORIZED_MESSAGE="Not authorized"
INVALID_TOKEN_MESSAGE="Invalid or expired token"
PLATFORM_NOT_FOUND_MESSAGE="Platform not found"
CONTEXT_NOT_FOUND_MESSAGE="Context not found"
NO_ACTIVE_KEY_MESSAGE="No active key found"
NRPS_SYNC_TYPE="nrps_enrollments"
CACHE_CONTROL_JWKS="public, max-age=3600"
