import aiohttp
import asyncio
import logging
import random
import time
from email.utils import parsedate_to_datetime
from typing import Any, Dict, Optional

from repo_reconciler.domain.exceptions import (
    RemoteNotFound,
    RemoteRejected,
    RemoteUnauthorized,
    RemoteUnavailable,
)
from repo_reconciler.domain.models import FieldValue, RemoteMetadata
from repo_reconciler.infrastructure.acl import GitHubTranslator

logger = logging.getLogger(__name__)

DEFAULT_API_URL = "https://api.github.com"
REQUEST_TIMEOUT = aiohttp.ClientTimeout(total=30, connect=10)
MAX_RETRIES = 4
# Rate-limit waits longer than this are reported as unavailable instead of slept through
MAX_RATE_LIMIT_WAIT = 60
CONNECTOR_LIMIT = 4
RETRYABLE_STATUSES = {429, 500, 502, 503, 504}


def _backoff(attempt: int) -> float:
    return (2 ** attempt) + random.uniform(0, 1)


def _parse_retry_after(value: str, attempt: int) -> float:
    """Retry-After is either delay-seconds or an HTTP-date (RFC 9110)."""
    try:
        return max(float(value), 0.0)
    except ValueError:
        pass
    try:
        retry_at = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        logger.debug(f"Unparseable Retry-After '{value}', using backoff.")
        return _backoff(attempt)
    return max(retry_at.timestamp() - time.time(), 1)


class GitHubRestClient:
    """
    MetadataPlatform adapter for the GitHub REST API.
    Handles authentication, retries with exponential backoff, and rate limit management.

    The client owns a single aiohttp session for the whole run; use it as an async
    context manager, or pass an existing session in.
    """

    def __init__(
        self,
        token: Optional[str] = None,
        api_url: str = DEFAULT_API_URL,
        session: Optional[aiohttp.ClientSession] = None,
        connector_limit: int = CONNECTOR_LIMIT,
    ):
        self.headers = {
            "Accept": "application/vnd.github+json",
            "User-Agent": "repo-reconciler",
            "X-GitHub-Api-Version": "2022-11-28",
        }
        # Public repositories can be read anonymously (dry runs).
        if token:
            self.headers["Authorization"] = f"Bearer {token}"
        self.api_url = api_url.rstrip("/")
        self.connector_limit = connector_limit
        self._session = session
        self._owns_session = False

    async def __aenter__(self) -> "GitHubRestClient":
        if self._session is None:
            self._session = aiohttp.ClientSession(
                connector=aiohttp.TCPConnector(limit=self.connector_limit),
            )
            self._owns_session = True
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        if self._owns_session and self._session is not None:
            await self._session.close()
            self._session = None
            self._owns_session = False

    async def fetch_metadata(self, identifier: str) -> RemoteMetadata:
        """
        Fetches the repository's current homepage, description and topics.

        Args:
            identifier (str): The repository as `owner/repo`.

        Returns:
            RemoteMetadata: The live state, translated into the domain model.
        """
        raw_repo = await self._request("GET", f"/repos/{identifier}", identifier)
        try:
            return GitHubTranslator.to_domain(raw_repo)
        except ValueError as e:
            raise RemoteUnavailable(f"Unexpected repository payload for {identifier}: {e}") from e

    async def update_field(self, identifier: str, field: str, value: FieldValue) -> None:
        """
        Writes a single field. Topics are merged into the current remote set so
        topics curated directly on GitHub are never removed.
        """
        if field == "topics":
            current = await self._request("GET", f"/repos/{identifier}/topics", identifier)
            payload = GitHubTranslator.to_topics_payload(current.get("names", []), value)
            await self._request("PUT", f"/repos/{identifier}/topics", identifier, payload)
        else:
            payload = GitHubTranslator.to_patch(field, value)
            await self._request("PATCH", f"/repos/{identifier}", identifier, payload)
        logger.debug(f"Updated {field} on {identifier}.")

    @staticmethod
    def _rate_limit_wait(response: aiohttp.ClientResponse, attempt: int) -> Optional[float]:
        """Seconds to wait before retrying, or None when the response carries no rate-limit signal."""
        retry_after = response.headers.get('Retry-After')
        if retry_after:
            return _parse_retry_after(retry_after, attempt)
        if response.headers.get('X-RateLimit-Remaining') == '0':
            try:
                reset = float(response.headers.get('X-RateLimit-Reset', ''))
            except ValueError:
                return float(MAX_RATE_LIMIT_WAIT)
            return max(reset - time.time(), 1)
        return None

    @staticmethod
    async def _error_message(response: aiohttp.ClientResponse) -> str:
        try:
            body = await response.json()
        except (aiohttp.ContentTypeError, ValueError):
            return response.reason or "Unknown error"
        message = body.get('message', 'Unknown error') if isinstance(body, dict) else str(body)
        errors = body.get('errors') if isinstance(body, dict) else None
        if errors:
            details = "; ".join(err.get('message') or err.get('code', '') for err in errors if isinstance(err, dict))
            if details:
                message = f"{message} ({details})"
        return message

    async def _request(
        self,
        method: str,
        path: str,
        identifier: str,
        payload: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        if self._session is None:
            raise RuntimeError("GitHubRestClient must be used as an async context manager or given a session.")

        url = f"{self.api_url}{path}"
        last_error = "no attempt made"

        for attempt in range(MAX_RETRIES):
            try:
                async with self._session.request(
                    method, url, json=payload, headers=self.headers, timeout=REQUEST_TIMEOUT
                ) as response:
                    if response.status == 401:
                        raise RemoteUnauthorized("GitHub rejected the credentials (401). Check GITHUB_TOKEN.")

                    if response.status in {403, 429}:
                        wait = self._rate_limit_wait(response, attempt)
                        if wait is None and response.status == 403:
                            message = await self._error_message(response)
                            raise RemoteUnauthorized(f"Forbidden (403) for {identifier}: {message}")
                        if wait is not None and wait > MAX_RATE_LIMIT_WAIT:
                            raise RemoteUnavailable(f"GitHub rate limit exceeded; retry in {wait:.0f}s.")
                        sleep_time = wait if wait is not None else _backoff(attempt)
                        last_error = f"rate limited ({response.status})"
                        logger.warning(f"Rate limited ({response.status}). Sleeping {sleep_time:.0f}s...")
                        await asyncio.sleep(sleep_time)
                        continue

                    if response.status == 404:
                        raise RemoteNotFound(identifier)

                    if response.status in RETRYABLE_STATUSES:
                        sleep_time = _backoff(attempt)
                        last_error = f"server error ({response.status})"
                        logger.warning(
                            f"Server error ({response.status}) on {method} {path}, "
                            f"retrying in {sleep_time:.1f}s (attempt {attempt + 1}/{MAX_RETRIES})..."
                        )
                        await asyncio.sleep(sleep_time)
                        continue

                    if 400 <= response.status < 500:
                        raise RemoteRejected(response.status, await self._error_message(response))

                    if response.status == 204:
                        return {}
                    return await response.json()

            except (aiohttp.ClientError, asyncio.TimeoutError) as e:
                sleep_time = _backoff(attempt)
                last_error = str(e) or type(e).__name__
                logger.warning(
                    f"Request {method} {path} failed (attempt {attempt + 1}/{MAX_RETRIES}): {last_error}. "
                    f"Retrying in {sleep_time:.1f}s..."
                )
                await asyncio.sleep(sleep_time)

        raise RemoteUnavailable(f"{method} {path} failed after {MAX_RETRIES} attempts: {last_error}")
