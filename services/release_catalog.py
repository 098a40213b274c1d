from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, Optional
import logging
import time

import requests

from interfaces.backend.records import Backend, DownloadAsset
from services.release_installer import folder_name_for

logger = logging.getLogger(__name__)

LATEST_RELEASE_URL = "https://api.github.com/repos/LostRuins/koboldcpp/releases/latest"


@dataclass(frozen=True)
class ReleaseInfo:
    tag_name: str
    name: str
    published_at: str
    assets: list[DownloadAsset] = field(default_factory=list)

    @property
    def version(self) -> str:
        return self.tag_name[1:] if self.tag_name.startswith("v") else self.tag_name


def release_from_json(data: dict[str, Any]) -> ReleaseInfo:
    tag = str(data.get("tag_name") or "")
    version = tag[1:] if tag.startswith("v") else tag
    assets = [
        DownloadAsset(
            name=a["name"],
            source_url=a["browser_download_url"],
            expected_size_bytes=int(a.get("size") or 0),
            version=version or None,
        )
        for a in data.get("assets", [])
        if a.get("name") and a.get("browser_download_url")
    ]
    return ReleaseInfo(
        tag_name=tag,
        name=str(data.get("name") or tag),
        published_at=str(data.get("published_at") or ""),
        assets=assets,
    )


class ReleaseCatalog:
    """
    Latest backend release from the GitHub API.

    Responses are reused for `cooldown_s` seconds. A rate-limited (403) or
    failed request falls back to the last good response, or None.
    """

    def __init__(
        self,
        url: str = LATEST_RELEASE_URL,
        cooldown_s: float = 60.0,
        session: requests.Session | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.url = url
        self.cooldown_s = cooldown_s
        self.session = session or requests.Session()
        self._clock = clock
        self._last_call: float | None = None
        self._cached: Optional[ReleaseInfo] = None

    def latest(self) -> Optional[ReleaseInfo]:
        now = self._clock()
        if self._cached is not None and self._last_call is not None and now - self._last_call < self.cooldown_s:
            return self._cached

        try:
            resp = self.session.get(
                self.url,
                headers={"Accept": "application/vnd.github+json"},
                timeout=15,
            )
            if resp.status_code == 403:
                logger.warning("GitHub API rate limit reached, using cached release data")
                return self._cached
            resp.raise_for_status()
            release = release_from_json(resp.json())
        except (requests.RequestException, ValueError, KeyError):
            logger.exception("Error fetching latest release")
            return self._cached

        self._last_call = now
        self._cached = release
        return release

    @staticmethod
    def installed_asset_names(release: ReleaseInfo, installed: list[Backend]) -> set[str]:
        folders = {b.folder_name for b in installed}
        return {a.name for a in release.assets if folder_name_for(a) in folders}
