"""
remote/github.py - GitHub contents API as the shared object store
The blob SHA returned by the API is the version token; content travels
base64-encoded
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional
import logging

import httpx

from ..errors import AuthError, NetworkError, RateLimited, VersionConflict
from ..sync.dataset import format_timestamp, utcnow
from .codec import from_base64, to_base64
from .store import ObjectStore, RemoteObject

logger = logging.getLogger(__name__)

GITHUB_API_URL = "https://api.github.com"
USER_AGENT = "habitsync/1.0"


@dataclass
class RateLimit:
    limit: int
    remaining: int
    reset: int
    used: int = 0

    @property
    def reset_at(self) -> datetime:
        return datetime.fromtimestamp(self.reset, timezone.utc)


class GitHubContentStore(ObjectStore):
    """Stores objects as files in a repository branch"""

    def __init__(self, owner: str, repo: str, token: str, branch: str = "main",
                 api_url: str = GITHUB_API_URL, timeout: float = 30.0,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        if not token:
            raise AuthError("No access token provided")

        self.owner = owner
        self.repo = repo
        self.branch = branch
        self.rate_limit: Optional[RateLimit] = None

        self._client = httpx.AsyncClient(
            base_url=api_url,
            timeout=timeout,
            transport=transport,
            headers={
                'Accept': 'application/vnd.github.v3+json',
                'Authorization': f'token {token}',
                'User-Agent': USER_AGENT
            }
        )

    def _contents_url(self, path: str) -> str:
        return f"/repos/{self.owner}/{self.repo}/contents/{path.lstrip('/')}"

    async def _request(self, method: str, url: str, **kwargs) -> httpx.Response:
        try:
            response = await self._client.request(method, url, **kwargs)
        except httpx.TransportError as e:
            raise NetworkError(f"Unable to reach GitHub: {e}") from e

        self._update_rate_limit(response)

        if response.status_code == 401:
            raise AuthError("GitHub rejected the access token")

        if response.status_code in (403, 429) and self._quota_exhausted(response):
            reset_at = self.rate_limit.reset_at if self.rate_limit else None
            raise RateLimited(
                f"Rate limit exceeded, resets at "
                f"{format_timestamp(reset_at) if reset_at else 'unknown'}",
                reset_at=reset_at
            )

        if response.status_code == 403:
            raise AuthError(f"Access denied: {self._error_message(response)}")

        return response

    def _quota_exhausted(self, response: httpx.Response) -> bool:
        return (response.headers.get('X-RateLimit-Remaining') == '0'
                or response.status_code == 429)

    def _update_rate_limit(self, response: httpx.Response):
        headers = response.headers
        limit = headers.get('X-RateLimit-Limit')
        remaining = headers.get('X-RateLimit-Remaining')
        reset = headers.get('X-RateLimit-Reset')

        if limit and remaining and reset:
            self.rate_limit = RateLimit(
                limit=int(limit),
                remaining=int(remaining),
                reset=int(reset),
                used=int(headers.get('X-RateLimit-Used', '0'))
            )

    @staticmethod
    def _error_message(response: httpx.Response) -> str:
        try:
            body = response.json()
        except ValueError:
            return f"HTTP {response.status_code}"
        if isinstance(body, dict) and body.get('message'):
            return str(body['message'])
        return f"HTTP {response.status_code}"

    def _raise_for_status(self, response: httpx.Response):
        if response.status_code >= 400:
            raise NetworkError(
                f"GitHub request failed: {self._error_message(response)}",
            )

    async def get(self, path: str) -> Optional[RemoteObject]:
        response = await self._request(
            'GET', self._contents_url(path), params={'ref': self.branch}
        )

        if response.status_code == 404:
            return None
        self._raise_for_status(response)

        data: Dict[str, Any] = response.json()
        if not isinstance(data, dict) or data.get('type') != 'file':
            raise NetworkError(f"{path} is not a file")

        return RemoteObject(
            content=from_base64(data.get('content', '')),
            version_token=data['sha']
        )

    async def put(self, path: str, content: bytes,
                  version_token: Optional[str] = None) -> str:
        body: Dict[str, Any] = {
            'message': f"Update {path} - {format_timestamp(utcnow())}",
            'content': to_base64(content),
            'branch': self.branch
        }
        if version_token:
            body['sha'] = version_token

        response = await self._request('PUT', self._contents_url(path), json=body)

        # 409: sha does not match; 422: sha missing for an existing file
        if response.status_code in (409, 422):
            raise VersionConflict(
                f"{path} changed remotely: {self._error_message(response)}"
            )
        self._raise_for_status(response)

        new_sha = response.json()['content']['sha']
        logger.info(f"Wrote {path} to {self.owner}/{self.repo}@{self.branch} ({new_sha[:7]})")
        return new_sha

    async def test_connection(self) -> bool:
        try:
            response = await self._request('GET', '/user')
        except (AuthError, NetworkError):
            return False
        return response.status_code == 200

    async def close(self):
        await self._client.aclose()
