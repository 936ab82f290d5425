"""DiffFetcher: resolves a patch's diff locator to a local diff file.

Locators are either HTTP(S) URLs or filesystem paths.  Upstream patches
without an explicit locator fall back to the upstream change's ``.diff``
URL.  Downloads go through ``with_retry`` and are cached per patch id for
the lifetime of the fetcher, so one cascade never downloads a diff twice.
"""

from __future__ import annotations

import logging
from pathlib import Path

import httpx

from patchkit.core.errors import PatchkitError, TransientFetchError
from patchkit.core.retry import with_retry
from patchkit.models.patches import PatchOrigin, PatchSpec

logger = logging.getLogger(__name__)

_RETRYABLE_STATUS = {408, 429, 500, 502, 503, 504}


class DiffFetchError(PatchkitError):
    """The diff could not be obtained and retrying will not help."""


class DiffFetcher:
    """Fetches and caches diffs.

    Parameters
    ----------
    cache_dir:
        Directory for downloaded diffs.
    upstream_repo:
        ``owner/name`` used to derive locators for upstream patches.
    client:
        Optional ``httpx.Client``; one is created lazily otherwise.
    retry_attempts, retry_base_delay:
        Passed to ``with_retry`` for every download.
    """

    def __init__(
        self,
        cache_dir: Path,
        *,
        upstream_repo: str = "",
        client: httpx.Client | None = None,
        retry_attempts: int = 3,
        retry_base_delay: float = 15.0,
        timeout: float = 30.0,
    ) -> None:
        self._cache = Path(cache_dir)
        self._repo = upstream_repo
        self._client = client
        self._owns_client = client is None
        self._attempts = retry_attempts
        self._base_delay = retry_base_delay
        self._timeout = timeout

    def locator_for(self, spec: PatchSpec) -> str:
        if spec.diff_locator:
            return spec.diff_locator
        if spec.origin == PatchOrigin.UPSTREAM and self._repo:
            return f"https://github.com/{self._repo}/pull/{spec.id}.diff"
        raise DiffFetchError(f"Patch {spec.id} has no diff locator")

    def fetch(self, spec: PatchSpec) -> Path:
        """Return a local path to the diff for *spec*.

        Raises
        ------
        DiffFetchError
            For a missing file, an empty or HTML body, or a non-retryable status.
        TransientFetchError
            Once every retry attempt has failed.
        """
        cached = self._cache / f"{spec.id}.diff"
        if cached.is_file() and cached.stat().st_size > 0:
            return cached

        locator = self.locator_for(spec)
        if locator.startswith(("http://", "https://")):
            text = with_retry(
                lambda: self._download(locator),
                attempts=self._attempts,
                base_delay=self._base_delay,
                label=f"diff download for {spec.id}",
            )
        else:
            path = Path(locator).expanduser()
            if not path.is_file():
                raise DiffFetchError(f"Diff file not found for {spec.id}: {path}")
            text = path.read_text(encoding="utf-8")

        self._validate(spec.id, text)
        self._cache.mkdir(parents=True, exist_ok=True)
        cached.write_text(text, encoding="utf-8")
        return cached

    def _download(self, url: str) -> str:
        try:
            response = self._http().get(url, follow_redirects=True)
        except httpx.TransportError as exc:
            raise TransientFetchError(f"GET {url}: {exc}") from exc
        if response.status_code in _RETRYABLE_STATUS:
            raise TransientFetchError(f"GET {url}: HTTP {response.status_code}")
        if response.status_code >= 400:
            raise DiffFetchError(f"GET {url}: HTTP {response.status_code}")
        return response.text

    @staticmethod
    def _validate(patch_id: str, text: str) -> None:
        head = text.lstrip()[:64].lower()
        if not head:
            raise DiffFetchError(f"Empty diff for {patch_id}")
        if head.startswith(("<!doctype", "<html")):
            raise DiffFetchError(f"Got an HTML page instead of a diff for {patch_id}")

    def _http(self) -> httpx.Client:
        if self._client is None:
            self._client = httpx.Client(timeout=self._timeout)
        return self._client

    def close(self) -> None:
        if self._client is not None and self._owns_client:
            self._client.close()
            self._client = None
