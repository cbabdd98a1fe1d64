"""
Release discovery behind a small protocol.

Two strategies:

TagPageReleaseLocator  scrapes an HTML tag index, paging with ``?after=<tag>``
TagApiReleaseLocator   reads a JSON tag API, paging with ``?page=<n>``

Both stop at the first page that contributes no new tags and return releases
in the remote order (newest first).
"""

from __future__ import annotations

import logging
import re
from typing import Any, List, Optional, Protocol
from urllib.parse import quote

from dpiwarden.core.models import EngineRelease, EngineSettings
from dpiwarden.net.fetch import Fetcher

logger = logging.getLogger(__name__)


class ReleaseLocator(Protocol):
    async def list_versions(self) -> List[EngineRelease]:
        ...

    async def latest(self) -> Optional[EngineRelease]:
        ...


class _PagingLocator:
    """Shared paging loop; subclasses fetch and parse one page."""

    max_pages = 500

    async def list_versions(self) -> List[EngineRelease]:
        """Return every release, newest first."""
        releases: List[EngineRelease] = []
        seen = set()
        cursor: Optional[EngineRelease] = None

        for page_number in range(1, self.max_pages + 1):
            page = await self._fetch_page(page_number, cursor)
            fresh = [release for release in page if release.tag not in seen]
            if not fresh:
                break

            for release in fresh:
                seen.add(release.tag)
                releases.append(release)
            cursor = page[-1]
        else:
            logger.warning("Stopped release discovery after %d pages", self.max_pages)

        logger.debug("Discovered %d releases", len(releases))
        return releases

    async def versions(self) -> List[str]:
        return [release.tag for release in await self.list_versions()]

    async def latest(self) -> Optional[EngineRelease]:
        releases = await self.list_versions()
        return releases[0] if releases else None

    async def _fetch_page(self, page_number: int, cursor: Optional[EngineRelease]) -> List[EngineRelease]:
        raise NotImplementedError


class TagPageReleaseLocator(_PagingLocator):
    """Scrapes ``(tag, commit)`` pairs from an HTML tag listing."""

    def __init__(self, fetcher: Fetcher, settings: Optional[EngineSettings] = None) -> None:
        self.fetcher = fetcher
        self.settings = settings or EngineSettings()
        self.index_url = self.settings.tags_url.format(repository=self.settings.repository)
        self.pattern = re.compile(
            self.settings.tag_pattern.format(repository=re.escape(self.settings.repository)),
            re.DOTALL | re.MULTILINE,
        )

    async def _fetch_page(self, page_number: int, cursor: Optional[EngineRelease]) -> List[EngineRelease]:
        url = self.index_url
        if cursor is not None:
            url = f"{url}?after={quote(cursor.tag, safe='')}"

        html = await self.fetcher.text(url)
        return [
            EngineRelease(tag=match.group("tag"), commit=match.group("commit"))
            for match in self.pattern.finditer(html)
        ]


class TagApiReleaseLocator(_PagingLocator):
    """Reads a JSON tag API returning ``[{"name": ..., "commit": {"sha": ...}}]`` pages."""

    def __init__(self, fetcher: Fetcher, settings: Optional[EngineSettings] = None) -> None:
        self.fetcher = fetcher
        self.settings = settings or EngineSettings()
        self.index_url = self.settings.api_tags_url.format(repository=self.settings.repository)

    async def _fetch_page(self, page_number: int, cursor: Optional[EngineRelease]) -> List[EngineRelease]:
        url = f"{self.index_url}?per_page={self.settings.api_page_size}&page={page_number}"
        payload = await self.fetcher.json(url)
        if not isinstance(payload, list):
            return []
        return [release for release in (self._parse(item) for item in payload) if release is not None]

    @staticmethod
    def _parse(item: Any) -> Optional[EngineRelease]:
        if not isinstance(item, dict) or not item.get("name"):
            return None
        commit = item.get("commit") or {}
        return EngineRelease(tag=item["name"], commit=commit.get("sha", "") if isinstance(commit, dict) else "")


def build_release_locator(fetcher: Fetcher, settings: EngineSettings) -> ReleaseLocator:
    if settings.locator == "api":
        return TagApiReleaseLocator(fetcher, settings)
    return TagPageReleaseLocator(fetcher, settings)
