import logging
import os
import random
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Dict, Iterable, List, Optional, Tuple
from urllib.parse import urljoin, urlparse

from bs4 import BeautifulSoup

from lofiradio import LOGGER_NAME
from lofiradio.errors import CatalogUnavailable, FetchCancelled, FetchFailed
from lofiradio.fetcher import Fetcher
from lofiradio.models import Track, format_title

NAME_SEPARATOR = "!"


def is_remote(source: str) -> bool:
    return source.startswith(("http://", "https://"))


def parse_listing(html: str, base_url: str, extensions: Iterable[str]) -> Tuple[List[str], List[str]]:
    """Split the links of an index page into (tracks, sub-listings)."""
    extensions = tuple(ext.lower() for ext in extensions)
    soup = BeautifulSoup(html, "html.parser")
    tracks: List[str] = []
    listings: List[str] = []

    for a in soup.find_all("a", href=True):
        href = a["href"].strip()
        if not href or href.startswith(("?", "#", "mailto:", "javascript:")):
            continue
        full_url = urljoin(base_url, href)
        path = urlparse(full_url).path.lower()
        if path.endswith(extensions):
            tracks.append(full_url)
        elif full_url.endswith("/") and full_url.startswith(base_url) and full_url != base_url:
            listings.append(full_url)

    return list(dict.fromkeys(tracks)), list(dict.fromkeys(listings))


def parse_track_list(text: str, source: str = "<tracks>") -> Tuple[List[str], Dict[str, str]]:
    """Parse a plain track list.

    The first line is a base URL; every other line is a track path relative
    to it, or an absolute URL. ``path!Display Name`` overrides the title.
    """
    lines = [line.strip() for line in text.splitlines()]
    lines = [line for line in lines if line and not line.startswith("#")]
    if len(lines) < 2:
        raise CatalogUnavailable(source, "track list needs a base URL and at least one track")

    base = lines[0] if lines[0].endswith("/") else lines[0] + "/"
    tracks: List[str] = []
    names: Dict[str, str] = {}
    for line in lines[1:]:
        entry, _, name = line.partition(NAME_SEPARATOR)
        entry = entry.strip()
        identifier = entry if is_remote(entry) else urljoin(base, entry.lstrip("/"))
        tracks.append(identifier)
        if name.strip():
            names[identifier] = name.strip()
    return tracks, names


class TrackResolver:
    def __init__(self, source: str, fetcher: Fetcher, extensions: Iterable[str] = (".mp3",),
                 max_depth: int = 2, workers: int = 4, timeout: Optional[float] = None,
                 rng: Optional[random.Random] = None, logger: Optional[logging.Logger] = None):
        self.source = source
        self.fetcher = fetcher
        self.extensions = tuple(extensions)
        self.max_depth = max_depth
        self.workers = max(1, workers)
        self.timeout = timeout
        self.rng = rng or random.Random()
        self.logger = logger or logging.getLogger(f"{LOGGER_NAME}.catalog")
        self.lock = threading.Lock()
        self._tracks: Optional[List[str]] = None
        self._names: Dict[str, str] = {}

    @classmethod
    def from_config(cls, section: dict, fetcher: Fetcher, logger: Optional[logging.Logger] = None) -> "TrackResolver":
        return cls(
            source=section["source"],
            fetcher=fetcher,
            extensions=section.get("extensions", [".mp3"]),
            max_depth=int(section.get("max_depth", 2)),
            workers=int(section.get("listing_workers", 4)),
            timeout=section.get("timeout"),
            logger=logger,
        )

    def resolve(self, cancel: Optional[threading.Event] = None) -> str:
        """Pick a track at random; ``cancel`` aborts a catalog load in progress."""
        tracks = self._catalog(cancel)
        identifier = self.rng.choice(tracks)
        self.logger.debug(f"Resolved {identifier} ({len(tracks)} candidates)")
        return identifier

    def describe(self, identifier: str) -> Track:
        name = self._names.get(identifier)
        if name:
            return Track(identifier=identifier, title=name)
        return Track(identifier=identifier, title=format_title(identifier))

    def scrape(self) -> List[str]:
        return sorted(self._catalog())

    def invalidate(self) -> None:
        with self.lock:
            self._tracks = None
            self._names = {}
        self.logger.info("Catalog cache invalidated")

    def _catalog(self, cancel: Optional[threading.Event] = None) -> List[str]:
        cancel = cancel or threading.Event()
        with self.lock:
            if self._tracks is None:
                tracks, names = self._load(cancel)
                self._tracks = tracks
                self._names = names
                self.logger.info(f"Catalog loaded: {len(tracks)} tracks from {self.source}")
            return self._tracks

    def _load(self, cancel: threading.Event) -> Tuple[List[str], Dict[str, str]]:
        if is_remote(self.source):
            return self._crawl(self.source, cancel), {}
        return self._read_track_list(self.source)

    def _read_track_list(self, path: str) -> Tuple[List[str], Dict[str, str]]:
        path = os.path.expanduser(path)
        try:
            with open(path, "r", encoding="utf-8") as f:
                text = f.read()
        except OSError as e:
            raise CatalogUnavailable(path, str(e)) from e
        return parse_track_list(text, source=path)

    def _listing(self, url: str, cancel: threading.Event) -> Tuple[List[str], List[str]]:
        html = self.fetcher.get_text(url, cancel=cancel, timeout=self.timeout)
        try:
            return parse_listing(html, url, self.extensions)
        except Exception as e:
            raise CatalogUnavailable(url, f"unparseable listing: {e}") from e

    def _crawl(self, root: str, cancel: threading.Event) -> List[str]:
        # FetchCancelled passes straight through; nothing is cached
        try:
            tracks, pending = self._listing(root, cancel)
        except FetchFailed as e:
            raise CatalogUnavailable(root, str(e)) from e

        depth = 1
        with ThreadPoolExecutor(max_workers=self.workers, thread_name_prefix="CatalogCrawl") as executor:
            while pending and depth <= self.max_depth:
                if cancel.is_set():
                    raise FetchCancelled(root)
                futures = {executor.submit(self._listing, url, cancel): url for url in pending}
                pending = []
                for future in as_completed(futures):
                    url = futures[future]
                    try:
                        found, listings = future.result()
                    except (FetchFailed, CatalogUnavailable) as e:
                        self.logger.warning(f"Skipping listing {url}: {e}")
                        continue
                    tracks.extend(found)
                    pending.extend(listings)
                depth += 1

        tracks = list(dict.fromkeys(tracks))
        if not tracks:
            raise CatalogUnavailable(root, "no tracks found in listing")
        return tracks
