"""
Client for the external AI assistant (AnythingLLM-compatible workspace chat).

The assistant is a prompt-in/text-out collaborator: nothing is assumed about
the structure of its replies.  Callers that need JSON go through
``query_json``, which returns a tagged parse result.

Public API
----------
AssistantClient.chat(workspace_slug, message)       -> str
AssistantClient.query_json(workspace_slug, prompt)  -> Parsed | Unparseable
AssistantClient.check_health()                      -> bool
"""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, Optional
from urllib.parse import quote

import httpx

from app.config import settings
from app.services.exceptions import NotFound, UpstreamUnavailable
from app.utils.parsing import ParseResult, Unparseable, parse_json

logger = logging.getLogger(__name__)


class AssistantClient:
    """
    Workspace chat client over httpx.

    Limits concurrency to ``max_concurrent`` simultaneous calls.  Tries the
    versioned ``/api/v1`` route first and falls back to the legacy ``/api``
    route when the server answers 404.
    """

    API_PREFIXES = ("/api/v1", "/api")

    def __init__(
        self,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        timeout: Optional[float] = None,
        max_concurrent: Optional[int] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.base_url = (base_url or settings.ASSISTANT_BASE_URL).rstrip("/")
        self.api_key = api_key if api_key is not None else settings.ASSISTANT_API_KEY
        self.timeout = httpx.Timeout(float(timeout or settings.ASSISTANT_TIMEOUT), connect=10.0)
        self._semaphore = asyncio.Semaphore(max_concurrent or settings.ASSISTANT_MAX_CONCURRENT)
        self._transport = transport

    # ------------------------------------------------------------------
    # Public methods
    # ------------------------------------------------------------------

    async def chat(self, workspace_slug: str, message: str, mode: str = "query") -> str:
        """
        Send *message* to the workspace chat endpoint and return the reply text.

        Raises ``UpstreamUnavailable`` on network errors and non-404 error
        statuses, ``NotFound`` when the workspace route is missing on every
        API prefix.
        """
        path = f"/workspace/{quote(workspace_slug, safe='')}/chat"
        payload = {"message": message, "mode": mode}

        async with self._semaphore:
            async with self._client() as client:
                for prefix in self.API_PREFIXES:
                    url = f"{self.base_url}{prefix}{path}"
                    try:
                        resp = await client.post(url, json=payload, headers=self._headers())
                    except httpx.TimeoutException as exc:
                        logger.error("chat: request to %s timed out", url)
                        raise UpstreamUnavailable(f"Assistant request timed out: {url}") from exc
                    except httpx.HTTPError as exc:
                        logger.error("chat: connection error: %s", exc)
                        raise UpstreamUnavailable(f"Assistant unreachable: {exc}") from exc

                    if resp.status_code == 404:
                        logger.debug("chat: %s returned 404, trying next prefix", url)
                        continue
                    if resp.status_code >= 400:
                        logger.error(
                            "chat: assistant returned HTTP %d: %s",
                            resp.status_code,
                            resp.text[:300],
                        )
                        raise UpstreamUnavailable(
                            f"Assistant returned HTTP {resp.status_code}"
                        )
                    return self._reply_text(resp)

        raise NotFound(f"Assistant workspace '{workspace_slug}' not found")

    async def query_json(self, workspace_slug: str, prompt: str) -> ParseResult:
        """Chat and parse the reply as JSON; an empty reply is Unparseable."""
        text = await self.chat(workspace_slug, prompt)
        if not text.strip():
            return Unparseable(text)
        return parse_json(text)

    async def check_health(self) -> bool:
        """Return True if the assistant answers its auth check."""
        try:
            async with self._client(timeout=10.0) as client:
                for prefix in self.API_PREFIXES:
                    resp = await client.get(
                        f"{self.base_url}{prefix}/auth", headers=self._headers()
                    )
                    if resp.status_code != 404:
                        return resp.status_code == 200
        except httpx.HTTPError as exc:
            logger.warning("Assistant health check failed: %s", exc)
        return False

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _client(self, timeout: Optional[float] = None) -> httpx.AsyncClient:
        kwargs: Dict[str, Any] = {
            "timeout": httpx.Timeout(timeout) if timeout else self.timeout,
        }
        if self._transport is not None:
            kwargs["transport"] = self._transport
        return httpx.AsyncClient(**kwargs)

    def _headers(self) -> Dict[str, str]:
        headers = {"Accept": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    @staticmethod
    def _reply_text(resp: httpx.Response) -> str:
        try:
            data = resp.json()
        except ValueError:
            return resp.text
        if isinstance(data, dict):
            return str(data.get("textResponse") or data.get("message") or "")
        return str(data)
