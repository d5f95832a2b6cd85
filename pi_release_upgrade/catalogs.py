"""Clients that fetch codename catalogs from remote sources.

Two sources are consulted:

* the endoflife.date Debian feed, a JSON array describing release cycles,
  newest first;
* the Raspberry Pi archive ``dists/`` directory, an HTML index page whose
  sub-directories are the codenames the vendor publishes packages for.

Both responses are parsed defensively: anything that does not yield at least
one codename is a :class:`~pi_release_upgrade.errors.ParseError`.  Fetches are
bounded by a connect timeout and a total deadline and are never retried here.
The download runs on a daemon thread so the deadline holds even against a
server that keeps trickling bytes; a late download is abandoned.
"""

from __future__ import annotations

from html.parser import HTMLParser
import json
import logging
import socket
import threading
import urllib.error
import urllib.request
from typing import Any, Callable, List, Optional

from .config import CONNECT_TIMEOUT, TOTAL_TIMEOUT
from .errors import NetworkError, ParseError
from .versioning import Catalog

logger = logging.getLogger(__name__)

Opener = Callable[..., Any]

_CHUNK_SIZE = 64 * 1024
_USER_AGENT = "pi-release-upgrade/0.1"


class VersionCatalogClient:
    """Base class: download one document and turn it into a :class:`Catalog`."""

    def __init__(
        self,
        url: str,
        *,
        connect_timeout: float = CONNECT_TIMEOUT,
        total_timeout: float = TOTAL_TIMEOUT,
        opener: Optional[Opener] = None,
    ) -> None:
        self.url = url
        self.connect_timeout = connect_timeout
        self.total_timeout = total_timeout
        self._opener = opener or urllib.request.urlopen

    def fetch(self) -> Catalog:
        body = self._download()
        codenames = self.parse(body.decode("utf-8", errors="replace"))
        catalog = Catalog.from_iterable(codenames, source=self.url)
        if not catalog:
            raise ParseError(f"No codenames found in response from {self.url}")
        logger.info("Fetched %d codename(s) from %s: %s", len(catalog), self.url, ", ".join(catalog))
        return catalog

    def parse(self, text: str) -> List[str]:
        raise NotImplementedError

    def _download(self) -> bytes:
        logger.info("GET %s", self.url)
        outcome: dict = {}
        worker = threading.Thread(
            target=self._download_into, args=(outcome,), name="catalog-fetch", daemon=True
        )
        worker.start()
        worker.join(self.total_timeout)
        if worker.is_alive():
            raise NetworkError(f"Timed out after {self.total_timeout:.0f}s reading {self.url}")
        if "error" in outcome:
            raise outcome["error"]
        return outcome["body"]

    def _download_into(self, outcome: dict) -> None:
        try:
            outcome["body"] = self._read_body()
        except Exception as exc:
            outcome["error"] = exc

    def _read_body(self) -> bytes:
        request = urllib.request.Request(self.url, headers={"User-Agent": _USER_AGENT})
        try:
            with self._opener(request, timeout=self.connect_timeout) as response:
                status = getattr(response, "status", None) or response.getcode()
                if status is None or not 200 <= int(status) < 300:
                    raise NetworkError(f"{self.url} answered with HTTP status {status}")
                chunks: list[bytes] = []
                while True:
                    chunk = response.read(_CHUNK_SIZE)
                    if not chunk:
                        break
                    chunks.append(chunk)
        except urllib.error.HTTPError as exc:
            raise NetworkError(f"{self.url} answered with HTTP status {exc.code}") from exc
        except urllib.error.URLError as exc:
            raise NetworkError(f"Could not reach {self.url}: {exc.reason}") from exc
        except (socket.timeout, TimeoutError) as exc:
            raise NetworkError(f"Timed out contacting {self.url}") from exc
        except OSError as exc:
            raise NetworkError(f"Error while fetching {self.url}: {exc}") from exc
        return b"".join(chunks)


class EndOfLifeCatalogClient(VersionCatalogClient):
    """Catalog from an endoflife.date style JSON feed.

    Objects in the array carry the release number in ``cycle`` and the name in
    ``codename``.  The name is what repository files use, so it is preferred
    and lowercased; ``cycle`` is used for entries that have no name.
    """

    def parse(self, text: str) -> List[str]:
        try:
            document = json.loads(text)
        except json.JSONDecodeError as exc:
            raise ParseError(f"Malformed JSON from {self.url}: {exc}") from exc
        if not isinstance(document, list):
            raise ParseError(f"Expected a JSON array from {self.url}")

        codenames: list[str] = []
        for item in document:
            if isinstance(item, str):
                codenames.append(item)
            elif isinstance(item, dict):
                name = item.get("codename")
                if isinstance(name, str) and name.strip():
                    codenames.append(name.strip().lower())
                elif item.get("cycle") is not None:
                    codenames.append(str(item["cycle"]))
        return codenames


class _HrefCollector(HTMLParser):
    def __init__(self) -> None:
        super().__init__()
        self.hrefs: list[str] = []

    def handle_starttag(self, tag, attrs):
        if tag.lower() != "a":
            return
        for name, value in attrs:
            if name.lower() == "href" and value:
                self.hrefs.append(value)


class DirectoryListingCatalogClient(VersionCatalogClient):
    """Catalog from an HTML directory index such as ``.../debian/dists/``."""

    def parse(self, text: str) -> List[str]:
        collector = _HrefCollector()
        try:
            collector.feed(text)
            collector.close()
        except Exception as exc:  # HTMLParser raises assorted errors on garbage
            raise ParseError(f"Malformed directory listing from {self.url}: {exc}") from exc
        return [name for name in map(_directory_name, collector.hrefs) if name]


def _directory_name(href: str) -> Optional[str]:
    """Return the child directory an index link points at, if any."""

    if href.startswith(("?", "#", "/")) or "://" in href or not href.endswith("/"):
        return None
    name = href[:-1]
    if not name or name in {".", ".."} or "/" in name or "?" in name:
        return None
    return name


__all__ = [
    "DirectoryListingCatalogClient",
    "EndOfLifeCatalogClient",
    "VersionCatalogClient",
]
