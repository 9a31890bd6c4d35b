"""Feed transport: HTTP/file fetching with bounded retries."""

import logging
import time
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor, as_completed
from pathlib import Path
from urllib.parse import urlparse

import requests

from .config import DEFAULT_REQUEST_TIMEOUT, DEFAULT_RETRY_ATTEMPTS, DEFAULT_RETRY_DELAY

logger = logging.getLogger("pkgdash")

# Exceptions that indicate transport errors (not programming bugs)
_FEED_ERRORS = (
    requests.RequestException,  # Connection errors, timeouts, non-2xx statuses
    UnicodeDecodeError,  # Local file that isn't text
    OSError,  # Missing local file, network-related OS errors
)

FetchFunc = Callable[[str, float], str]


def is_local_source(source: str) -> bool:
    """True when ``source`` names a local file rather than an HTTP(S) URL."""
    return urlparse(source).scheme.lower() not in ("http", "https")


def fetch_text(source: str, timeout: float = DEFAULT_REQUEST_TIMEOUT) -> str:
    """Fetch a feed as text from an HTTP(S) URL or a local path.

    Raises:
        requests.RequestException: On connection failure, timeout or a
            non-success HTTP status.
        OSError: If a local file can't be read.
    """
    if is_local_source(source):
        path = source[len("file://") :] if source.startswith("file://") else source
        return Path(path).read_text(encoding="utf-8")

    response = requests.get(source, timeout=timeout)
    response.raise_for_status()
    return response.text


def fetch_with_retry(
    source: str,
    fetch: FetchFunc = fetch_text,
    attempts: int = DEFAULT_RETRY_ATTEMPTS,
    delay: float = DEFAULT_RETRY_DELAY,
    timeout: float = DEFAULT_REQUEST_TIMEOUT,
    sleep: Callable[[float], None] = time.sleep,
) -> str | None:
    """Fetch a feed, retrying failed attempts after a fixed delay.

    Returns None once every attempt has failed.
    """
    for attempt in range(1, attempts + 1):
        try:
            return fetch(source, timeout)
        except _FEED_ERRORS as e:
            logger.warning(
                "Attempt %d/%d fetching %s failed: %s", attempt, attempts, source, e
            )
            if attempt < attempts:
                sleep(delay)

    logger.error("Giving up on %s after %d attempts", source, attempts)
    return None


def fetch_feeds(
    sources: dict[str, str],
    fetch: FetchFunc = fetch_text,
    attempts: int = DEFAULT_RETRY_ATTEMPTS,
    delay: float = DEFAULT_RETRY_DELAY,
    timeout: float = DEFAULT_REQUEST_TIMEOUT,
    sleep: Callable[[float], None] = time.sleep,
) -> dict[str, str | None]:
    """Fetch several feeds in parallel and wait for all of them.

    Args:
        sources: Dict mapping feed names to URLs or paths.

    Returns:
        Dict mapping feed names to their text (or None if the fetch failed).
    """
    results: dict[str, str | None] = {}
    if not sources:
        return results

    with ThreadPoolExecutor(max_workers=len(sources)) as executor:
        futures = {
            executor.submit(
                fetch_with_retry, source, fetch, attempts, delay, timeout, sleep
            ): name
            for name, source in sources.items()
        }

        for future in as_completed(futures):
            name = futures[future]
            results[name] = future.result()

    return results
