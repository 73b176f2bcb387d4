"""Bounded-timeout text fetching for templates and library sources."""

from __future__ import annotations

import http.client
import urllib.error
import urllib.request
from collections.abc import Callable
from pathlib import Path
from urllib.parse import urlsplit

from runbox.errors import FetchFailure

NETWORK_TIMEOUT_S = 5.0
USER_AGENT = "runbox/0.1"

FetchFn = Callable[[str, float], str]


def fetch_text(url: str, timeout_s: float = NETWORK_TIMEOUT_S) -> str:
    """Fetch ``url`` as text. Local paths and file:// URLs are read from disk."""
    parts = urlsplit(url)
    if parts.scheme in ("", "file"):
        path = Path(parts.path if parts.scheme == "file" else url)
        try:
            return path.read_text(encoding="utf-8")
        except OSError as exc:
            raise FetchFailure(url, str(exc)) from exc

    request = urllib.request.Request(url, headers={"User-Agent": USER_AGENT})
    try:
        with urllib.request.urlopen(request, timeout=timeout_s) as response:
            status = getattr(response, "status", 200)
            if status < 200 or status >= 300:
                raise FetchFailure(url, f"HTTP {status}")
            charset = response.headers.get_content_charset() or "utf-8"
            return response.read().decode(charset, errors="replace")
    except urllib.error.HTTPError as exc:
        raise FetchFailure(url, f"HTTP {exc.code}: {exc.reason}") from exc
    except urllib.error.URLError as exc:
        raise FetchFailure(url, str(exc.reason)) from exc
    except TimeoutError as exc:
        raise FetchFailure(url, f"Request timeout after {timeout_s}s") from exc
    except http.client.HTTPException as exc:
        raise FetchFailure(url, f"{type(exc).__name__}: {exc}") from exc
