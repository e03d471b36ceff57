"""
Working groups (cells) from the knowledge-base repository.

Each markdown file under the groups directory describes one group in its
frontmatter; the file stem is the group id.
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import PurePosixPath
from typing import Any

from ..github_fetcher import GitHubFetcher
from ..parser import parse_group_record

logger = logging.getLogger(__name__)


def filter_groups(groups: list[dict[str, Any]], group_id: str | None = None) -> list[dict[str, Any]]:
    """
    Without an id: active groups only. With an id: any status, matched on id
    or case-insensitive name.
    """
    if group_id:
        needle = group_id.lower()
        return [g for g in groups if g["id"] == group_id or g["name"].lower() == needle]
    return [g for g in groups if g["status"] == "active"]


class GroupsSource:
    """Lists and parses the group files of one repository directory."""

    def __init__(self, fetcher: GitHubFetcher, path: str = "data/groups"):
        self.fetcher = fetcher
        self.path = path

    async def _load(self, entry) -> dict[str, Any]:
        if entry.download_url:
            content = await self.fetcher.fetch_url(entry.download_url)
        else:
            content = await self.fetcher.fetch_raw(entry.path)
            if content is None:
                raise FileNotFoundError(entry.path)
        return parse_group_record(PurePosixPath(entry.name).stem, content).to_dict()

    async def fetch_groups(self) -> list[dict[str, Any]]:
        """
        All groups, any status. A missing directory yields an empty list;
        files that fail to download are skipped.

        Raises:
            SourceError: If the directory listing fails
        """
        entries = await self.fetcher.list_files(self.path, [".md"])
        results = await asyncio.gather(*(self._load(e) for e in entries), return_exceptions=True)

        groups = []
        for entry, result in zip(entries, results):
            if isinstance(result, Exception):
                logger.warning("Skipping group file %s: %s", entry.path, result)
                continue
            groups.append(result)
        return groups
