"""
GitHub content fetcher for the governance sync pipeline.

Fetches raw file content at a commit ref from raw.githubusercontent.com and
lists directories through the REST contents API, using an httpx AsyncClient.
A GITHUB_TOKEN is sent when configured, which lifts rate limits and allows
private repositories.

Usage:
    fetcher = GitHubFetcher("superbenefit", "governance", token=settings.github_token)
    files = await fetcher.fetch_files(["agreements/charter.md"], ref=commit_id)
    entries = await fetcher.list_files("data/groups", extensions=[".md"])
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
from dataclasses import dataclass
from typing import Iterable, Optional

import httpx

from .exceptions import SourceError

logger = logging.getLogger(__name__)

USER_AGENT = "govsync"


@dataclass
class FileMetadata:
    """Metadata for a fetched file."""

    path: str
    size_bytes: int
    ref: str
    content_hash: str  # SHA256 of content


@dataclass
class FetchedFile:
    """A file fetched from GitHub."""

    content: str
    metadata: FileMetadata


@dataclass
class RepoEntry:
    """One file from a directory listing."""

    path: str
    name: str
    download_url: str | None = None


def content_hash(content: str) -> str:
    return hashlib.sha256(content.encode("utf-8")).hexdigest()


class GitHubFetcher:
    """
    Reads one repository over HTTP.

    Pass an existing httpx.AsyncClient to share connections (or to inject a
    MockTransport in tests); otherwise the fetcher owns its client.
    """

    def __init__(
        self,
        owner: str,
        repo: str,
        branch: str = "main",
        *,
        token: str = "",
        api_url: str = "https://api.github.com",
        raw_url: str = "https://raw.githubusercontent.com",
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = 20.0,
    ):
        """
        Initialize fetcher.

        Args:
            owner: GitHub repository owner
            repo: Repository name
            branch: Default ref when none is given
            token: Optional bearer token
            api_url: REST API base URL
            raw_url: Raw content base URL
            client: Optional shared AsyncClient
            timeout: Request timeout in seconds for an owned client
        """
        self.owner = owner
        self.repo = repo
        self.branch = branch
        self.token = token
        self.api_url = api_url.rstrip("/")
        self.raw_url = raw_url.rstrip("/")
        self._client = client
        self._owns_client = client is None
        self._timeout = timeout

    @classmethod
    def from_full_name(cls, full_name: str, branch: str = "main", **kwargs) -> GitHubFetcher:
        owner, _, repo = full_name.partition("/")
        return cls(owner, repo, branch, **kwargs)

    @property
    def full_name(self) -> str:
        return f"{self.owner}/{self.repo}"

    @property
    def client(self) -> httpx.AsyncClient:
        """Lazy HTTP client."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(timeout=self._timeout, follow_redirects=True)
        return self._client

    def _headers(self, accept: str | None = None) -> dict[str, str]:
        headers = {"User-Agent": USER_AGENT}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        if accept:
            headers["Accept"] = accept
        return headers

    async def aclose(self) -> None:
        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> GitHubFetcher:
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.aclose()

    # -----------------------------------------------------------------------
    # Raw content
    # -----------------------------------------------------------------------

    async def fetch_raw(self, path: str, ref: str | None = None) -> str | None:
        """
        Fetch raw file content at a ref.

        Returns:
            File text, or None when the file is unavailable (non-2xx status or
            transport error). Failures are logged, never raised.
        """
        ref = ref or self.branch
        url = f"{self.raw_url}/{self.owner}/{self.repo}/{ref}/{path}"
        try:
            response = await self.client.get(url, headers=self._headers())
        except httpx.HTTPError as e:
            logger.warning("Could not fetch %s@%s: %s", path, ref, e)
            return None
        if response.status_code != 200:
            logger.warning("Could not fetch %s@%s: HTTP %s", path, ref, response.status_code)
            return None
        return response.text

    async def fetch_file(self, path: str, ref: str | None = None) -> FetchedFile | None:
        """Fetch a file with size and content hash metadata."""
        ref = ref or self.branch
        content = await self.fetch_raw(path, ref)
        if content is None:
            return None
        metadata = FileMetadata(
            path=path,
            size_bytes=len(content.encode("utf-8")),
            ref=ref,
            content_hash=content_hash(content),
        )
        return FetchedFile(content=content, metadata=metadata)

    async def fetch_files(self, paths: Iterable[str], ref: str | None = None) -> dict[str, FetchedFile]:
        """
        Fetch many files concurrently.

        Unavailable paths are omitted from the result.
        """
        paths = list(dict.fromkeys(paths))
        results = await asyncio.gather(*(self.fetch_file(path, ref) for path in paths))
        return {path: fetched for path, fetched in zip(paths, results) if fetched is not None}

    async def fetch_url(self, url: str) -> str:
        """
        Fetch an absolute URL (e.g. a contents-API download_url).

        Raises:
            SourceError: On transport errors or non-2xx responses
        """
        try:
            response = await self.client.get(url, headers=self._headers())
        except httpx.HTTPError as e:
            raise SourceError(f"Failed to fetch {url}: {e}") from e
        if response.status_code != 200:
            raise SourceError(f"Failed to fetch {url}: HTTP {response.status_code}")
        return response.text

    # -----------------------------------------------------------------------
    # Listings
    # -----------------------------------------------------------------------

    async def list_files(
        self,
        directory: str = "",
        extensions: Optional[list[str]] = None,
        ref: str | None = None,
    ) -> list[RepoEntry]:
        """
        List files (non-recursive) in a repository directory.

        Returns:
            Entries sorted by path; an empty list when the directory does not exist.

        Raises:
            SourceError: On any other API failure
        """
        url = f"{self.api_url}/repos/{self.owner}/{self.repo}/contents/{directory.strip('/')}"
        params = {"ref": ref} if ref else None
        try:
            response = await self.client.get(
                url,
                params=params,
                headers=self._headers("application/vnd.github.v3+json"),
            )
        except httpx.HTTPError as e:
            raise SourceError(f"GitHub API error listing {directory}: {e}") from e

        if response.status_code == 404:
            logger.warning("Path %s not found in %s", directory, self.full_name)
            return []
        if response.status_code != 200:
            raise SourceError(f"GitHub API error listing {directory}: HTTP {response.status_code}")

        items = response.json()
        # Single file response
        if isinstance(items, dict):
            items = [items]

        entries: list[RepoEntry] = []
        for item in items:
            if item.get("type") != "file":
                continue
            path = item["path"]
            if extensions and not any(path.endswith(ext) for ext in extensions):
                continue
            entries.append(RepoEntry(path=path, name=item["name"], download_url=item.get("download_url")))
        return sorted(entries, key=lambda e: e.path)

    def build_uri(self, path: str) -> str:
        """github://owner/repo/path"""
        return f"github://{self.owner}/{self.repo}/{path}"
