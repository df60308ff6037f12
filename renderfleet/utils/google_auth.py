"""Bearer tokens for Google REST APIs and ID tokens for Cloud Run invocation."""

import asyncio
import time

import google.auth
from google.auth.transport import requests as auth_requests
from google.oauth2 import id_token

CLOUD_PLATFORM_SCOPE = "https://www.googleapis.com/auth/cloud-platform"

# ID tokens live for an hour; refresh a little early
_ID_TOKEN_TTL_S = 50 * 60


class GoogleAuth:
    """Lazily resolves application default credentials.

    Token refreshes are blocking HTTP calls in google-auth, so they run in a
    worker thread to keep the event loop free.
    """

    def __init__(self, credentials=None, project_id: str | None = None) -> None:
        self._credentials = credentials
        self._project_id = project_id
        self._id_tokens: dict[str, tuple[str, float]] = {}

    @property
    def credentials(self):
        if self._credentials is None:
            self._credentials, detected_project = google.auth.default(scopes=[CLOUD_PLATFORM_SCOPE])
            self._project_id = self._project_id or detected_project
        return self._credentials

    @property
    def project_id(self) -> str | None:
        if not self._project_id:
            _ = self.credentials
        return self._project_id

    async def access_token(self) -> str:
        credentials = self.credentials
        if not credentials.valid:
            await asyncio.to_thread(credentials.refresh, auth_requests.Request())
        return credentials.token

    async def headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {await self.access_token()}"}

    async def id_token_headers(self, audience: str) -> dict[str, str]:
        cached = self._id_tokens.get(audience)
        if cached and cached[1] > time.monotonic():
            return {"Authorization": f"Bearer {cached[0]}"}
        token = await asyncio.to_thread(id_token.fetch_id_token, auth_requests.Request(), audience)
        self._id_tokens[audience] = (token, time.monotonic() + _ID_TOKEN_TTL_S)
        return {"Authorization": f"Bearer {token}"}
