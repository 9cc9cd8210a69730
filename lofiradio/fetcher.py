import logging
import threading
from typing import Optional

import requests

from lofiradio import LOGGER_NAME
from lofiradio.config import DEFAULT_USER_AGENT, FETCH_TIMEOUT
from lofiradio.errors import FetchCancelled, FetchFailed
from lofiradio.retry import RetriesExhausted, RetryPolicy


class PayloadTooLarge(Exception):
    pass


def build_session(user_agent: str = DEFAULT_USER_AGENT) -> requests.Session:
    session = requests.Session()
    session.headers.update({
        "User-Agent": user_agent,
        "Accept": "*/*",
        "Accept-Language": "en-US,en;q=0.5",
        "Connection": "keep-alive",
    })
    return session


class Fetcher:
    def __init__(self, policy: Optional[RetryPolicy] = None, session: Optional[requests.Session] = None,
                 timeout: float = FETCH_TIMEOUT, chunk_size: int = 64 * 1024,
                 max_bytes: Optional[int] = None, logger: Optional[logging.Logger] = None):
        self.policy = policy or RetryPolicy()
        self.session = session or build_session()
        self.timeout = timeout
        self.chunk_size = chunk_size
        self.max_bytes = max_bytes
        self.logger = logger or logging.getLogger(f"{LOGGER_NAME}.fetcher")

    @classmethod
    def from_config(cls, section: dict, logger: Optional[logging.Logger] = None) -> "Fetcher":
        return cls(
            policy=RetryPolicy.from_config(section),
            session=build_session(section.get("user_agent", DEFAULT_USER_AGENT)),
            timeout=float(section.get("timeout", FETCH_TIMEOUT)),
            chunk_size=int(section.get("chunk_size", 64 * 1024)),
            max_bytes=section.get("max_bytes"),
            logger=logger,
        )

    def fetch(self, identifier: str, cancel: Optional[threading.Event] = None) -> bytes:
        """Download the full body of ``identifier``.

        Retries network errors per the policy; raises ``FetchFailed`` once the
        attempts are exhausted and ``FetchCancelled`` if ``cancel`` is set.
        """
        cancel = cancel or threading.Event()

        def attempt(number: int) -> bytes:
            self.logger.debug(f"Fetching {identifier} (attempt {number}/{self.policy.attempts})")
            return self._download(identifier, cancel)

        try:
            data = self.policy.call(
                attempt,
                retry_on=(requests.RequestException,),
                cancel=cancel,
                label=identifier,
                logger=self.logger,
            )
        except RetriesExhausted as e:
            raise FetchFailed(identifier, attempts=e.attempts, cause=e.last_error) from e.last_error
        except PayloadTooLarge as e:
            raise FetchFailed(identifier, attempts=1, cause=e) from e

        self.logger.info(f"Fetched {identifier} ({len(data) / 1024:.0f} KiB)")
        return data

    def _download(self, url: str, cancel: threading.Event) -> bytes:
        chunks = []
        received = 0
        with self.session.get(url, timeout=self.timeout, stream=True) as response:
            response.raise_for_status()
            for chunk in response.iter_content(chunk_size=self.chunk_size):
                if cancel.is_set():
                    self.logger.debug(f"Discarding partial download of {url} ({received} bytes)")
                    raise FetchCancelled(url)
                if not chunk:
                    continue
                received += len(chunk)
                if self.max_bytes and received > self.max_bytes:
                    raise PayloadTooLarge(f"body exceeds {self.max_bytes} bytes")
                chunks.append(chunk)
        return b"".join(chunks)

    def get_text(self, url: str, cancel: Optional[threading.Event] = None, timeout: Optional[float] = None) -> str:
        """Retried GET of a small text document such as a catalog listing."""

        def attempt(number: int) -> str:
            response = self.session.get(url, timeout=timeout or self.timeout)
            response.raise_for_status()
            return response.text

        try:
            return self.policy.call(
                attempt,
                retry_on=(requests.RequestException,),
                cancel=cancel,
                label=url,
                logger=self.logger,
            )
        except RetriesExhausted as e:
            raise FetchFailed(url, attempts=e.attempts, cause=e.last_error) from e.last_error

    def close(self) -> None:
        self.session.close()
