"""GitHub Copilot upstream client.

Wraps one shared httpx.AsyncClient and knows the GitHub / Copilot header
conventions. All per-account data comes from the SessionState passed in.
"""

import re
import uuid
from dataclasses import dataclass

import httpx

from copilot_pool.config.settings import Settings, get_settings
from copilot_pool.instances.state import SessionState
from copilot_pool.logging.audit import get_logger
from copilot_pool.upstream.errors import UpstreamAuthError, UpstreamHTTPError

logger = get_logger("upstream")

_PKGVER_RE = re.compile(r"pkgver=([0-9.]+)")


@dataclass
class TokenGrant:
    token: str
    refresh_in: float  # seconds until the token should be replaced


class CopilotClient:
    """Issues every HTTP call the proxy makes to GitHub and Copilot."""

    def __init__(self, settings: Settings | None = None, transport: httpx.AsyncBaseTransport | None = None):
        self._settings = settings
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    @property
    def settings(self) -> Settings:
        return self._settings or get_settings()

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            settings = self.settings
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(
                    settings.upstream_timeout_seconds,
                    connect=settings.upstream_connect_timeout_seconds,
                ),
                transport=self._transport,
            )
        return self._client

    # --- headers ---

    def _editor_headers(self, state: SessionState) -> dict:
        settings = self.settings
        return {
            "editor-version": f"vscode/{state.vscode_version or settings.vscode_version_fallback}",
            "editor-plugin-version": f"copilot-chat/{settings.copilot_chat_version}",
            "user-agent": f"GitHubCopilotChat/{settings.copilot_chat_version}",
            "x-github-api-version": settings.github_api_version,
            "x-vscode-user-agent-library-version": "electron-fetch",
        }

    def github_headers(self, state: SessionState) -> dict:
        return {
            "content-type": "application/json",
            "accept": "application/json",
            "authorization": f"token {state.github_token}",
            **self._editor_headers(state),
        }

    def copilot_headers(self, state: SessionState, vision: bool = False) -> dict:
        headers = {
            "Authorization": f"Bearer {state.copilot_token}",
            "content-type": "application/json",
            "copilot-integration-id": "vscode-chat",
            "openai-intent": "conversation-panel",
            "x-request-id": str(uuid.uuid4()),
            **self._editor_headers(state),
        }
        if vision:
            headers["copilot-vision-request"] = "true"
        return headers

    def base_url(self, state: SessionState) -> str:
        return self.settings.copilot_base_url(state.account_type).rstrip("/")

    # --- session bootstrap ---

    async def fetch_token(self, state: SessionState) -> TokenGrant:
        url = f"{self.settings.github_api_base_url.rstrip('/')}/copilot_internal/v2/token"
        response = await self._request("GET", url, headers=self.github_headers(state))
        if response.is_error:
            raise UpstreamAuthError(
                "Failed to get Copilot token", response.status_code, response.text
            )
        data = response.json()
        return TokenGrant(token=data["token"], refresh_in=float(data["refresh_in"]))

    async def fetch_models(self, state: SessionState) -> dict:
        response = await self._request(
            "GET", f"{self.base_url(state)}/models", headers=self.copilot_headers(state)
        )
        if response.is_error:
            raise UpstreamHTTPError("Failed to get models", response.status_code, response.text)
        return response.json()

    async def fetch_usage(self, state: SessionState) -> dict:
        url = f"{self.settings.github_api_base_url.rstrip('/')}/copilot_internal/user"
        response = await self._request("GET", url, headers=self.github_headers(state))
        if response.is_error:
            raise UpstreamHTTPError("Failed to get usage", response.status_code, response.text)
        return response.json()

    async def fetch_vscode_version(self) -> str:
        """Latest VS Code release from the AUR; falls back to a pinned version."""
        fallback = self.settings.vscode_version_fallback
        client = await self._get_client()
        try:
            response = await client.get(self.settings.vscode_version_url, timeout=5.0)
        except httpx.HTTPError as e:
            logger.debug("VS Code version lookup failed: %s", e)
            return fallback
        if response.is_error:
            return fallback
        match = _PKGVER_RE.search(response.text)
        return match.group(1) if match else fallback

    # --- proxied calls ---

    async def post(
        self,
        state: SessionState,
        path: str,
        payload: dict,
        *,
        vision: bool = False,
        initiator: str | None = None,
        stream: bool = False,
    ) -> httpx.Response:
        """POST to a Copilot endpoint.

        With ``stream=True`` the returned response is open and unread; the
        caller must close it. Non-2xx responses are read, closed and raised
        as UpstreamHTTPError before anything is returned, so a caller always
        knows the final status before it starts streaming.
        """
        headers = self.copilot_headers(state, vision)
        if initiator:
            headers["X-Initiator"] = initiator
        return await self._request(
            "POST",
            f"{self.base_url(state)}{path}",
            headers=headers,
            json=payload,
            stream=stream,
            raise_for_status=True,
        )

    async def _request(
        self,
        method: str,
        url: str,
        *,
        headers: dict,
        json: dict | None = None,
        stream: bool = False,
        raise_for_status: bool = False,
    ) -> httpx.Response:
        client = await self._get_client()
        request = client.build_request(method, url, headers=headers, json=json)
        try:
            response = await client.send(request, stream=stream)
        except httpx.ConnectError:
            raise UpstreamHTTPError("Cannot reach upstream provider", 502)
        except httpx.TimeoutException:
            raise UpstreamHTTPError("Upstream provider timed out", 504)
        except httpx.HTTPError as e:
            raise UpstreamHTTPError(f"Upstream error: {e}", 502)

        if raise_for_status and response.is_error:
            body = (await response.aread()).decode(errors="replace")
            await response.aclose()
            raise UpstreamHTTPError("Upstream request failed", response.status_code, body)
        return response

    async def close(self) -> None:
        if self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None
