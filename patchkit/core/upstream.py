"""UpstreamClient: thin adapter over the GitHub REST API.

Only the calls the pipeline needs: version compares, change (pull
request) merge state and file lists, and the latest release tag.
Every call goes through ``with_retry``; transport errors, 5xx, 429 and
rate-limit 403s are retried, anything else fails immediately.
"""

from __future__ import annotations

import logging
from typing import Any

import httpx
from pydantic import BaseModel, ConfigDict

from patchkit.core.errors import DeltaTooLarge, PatchkitError, TransientFetchError
from patchkit.core.retry import with_retry
from patchkit.models.conflicts import DeltaSource, VersionDelta

logger = logging.getLogger(__name__)


class UpstreamError(PatchkitError):
    """A non-retryable API failure (404, bad credentials, malformed body)."""


class ChangeState(BaseModel):
    """Merge state of one upstream change."""

    model_config = ConfigDict(frozen=True)

    number: str
    state: str  # "open" | "closed"
    merged: bool = False
    title: str = ""
    merge_commit_sha: str | None = None


class UpstreamClient:
    """GitHub REST client for one repository.

    Parameters
    ----------
    repo:
        ``owner/name``.
    api_url:
        API base URL.
    token:
        Optional bearer token; raises the rate limit considerably.
    compare_file_cap:
        The compare endpoint silently truncates file lists at this size.
    client:
        Optional ``httpx.Client`` (tests pass one with a mock transport).
    """

    def __init__(
        self,
        repo: str,
        *,
        api_url: str = "https://api.github.com",
        token: str = "",
        compare_file_cap: int = 300,
        retry_attempts: int = 3,
        retry_base_delay: float = 15.0,
        client: httpx.Client | None = None,
        timeout: float = 30.0,
    ) -> None:
        if not repo or "/" not in repo:
            raise UpstreamError(f"Upstream repo must look like 'owner/name', got {repo!r}")
        self.repo = repo
        self._base = api_url.rstrip("/")
        self._cap = compare_file_cap
        self._attempts = retry_attempts
        self._base_delay = retry_base_delay
        headers = {
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": "2022-11-28",
        }
        if token:
            headers["Authorization"] = f"Bearer {token}"
        self._client = client or httpx.Client(timeout=timeout, headers=headers)
        if client is not None:
            self._client.headers.update(headers)

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    def _get_once(self, path: str, params: dict[str, Any] | None = None) -> Any:
        url = f"{self._base}/repos/{self.repo}{path}"
        try:
            response = self._client.get(url, params=params)
        except httpx.TransportError as exc:
            raise TransientFetchError(f"GET {url}: {exc}") from exc

        status = response.status_code
        if status >= 500 or status == 429:
            raise TransientFetchError(f"GET {url}: HTTP {status}")
        if status == 403 and response.headers.get("x-ratelimit-remaining") == "0":
            raise TransientFetchError(f"GET {url}: rate limited")
        if status >= 400:
            raise UpstreamError(f"GET {url}: HTTP {status}: {response.text[:200]}")
        try:
            return response.json()
        except ValueError as exc:
            raise UpstreamError(f"GET {url}: response is not JSON") from exc

    def _get(self, path: str, params: dict[str, Any] | None = None) -> Any:
        return with_retry(
            lambda: self._get_once(path, params),
            attempts=self._attempts,
            base_delay=self._base_delay,
            label=f"GET {path}",
        )

    # ------------------------------------------------------------------
    # Endpoints
    # ------------------------------------------------------------------

    def compare(self, old_tag: str, new_tag: str) -> VersionDelta:
        """Files changed between two refs.

        Raises
        ------
        DeltaTooLarge
            When the returned list reaches the cap and may be truncated.
        """
        body = self._get(f"/compare/{old_tag}...{new_tag}")
        files = [f["filename"] for f in body.get("files") or [] if "filename" in f]
        if len(files) >= self._cap:
            raise DeltaTooLarge(old_tag, new_tag, len(files))
        logger.info("Compare %s...%s: %d files changed", old_tag, new_tag, len(files))
        return VersionDelta(
            old_tag=old_tag,
            new_tag=new_tag,
            files=frozenset(files),
            source=DeltaSource.COMPARE_API,
        )

    def change_state(self, number: str) -> ChangeState:
        body = self._get(f"/pulls/{number}")
        return ChangeState(
            number=str(number),
            state=body.get("state", ""),
            merged=bool(body.get("merged") or body.get("merged_at")),
            title=body.get("title", ""),
            merge_commit_sha=body.get("merge_commit_sha"),
        )

    def change_files(self, number: str, *, max_pages: int = 30) -> list[str]:
        """Paths touched by an upstream change (paginated, 100 per page)."""
        files: list[str] = []
        for page in range(1, max_pages + 1):
            body = self._get(f"/pulls/{number}/files", {"per_page": 100, "page": page})
            if not body:
                break
            files.extend(f["filename"] for f in body if "filename" in f)
            if len(body) < 100:
                break
        return files

    def latest_release(self) -> str | None:
        """Tag of the newest published release, or ``None``."""
        try:
            body = self._get("/releases/latest")
        except UpstreamError:
            return None
        return body.get("tag_name")

    def close(self) -> None:
        self._client.close()
