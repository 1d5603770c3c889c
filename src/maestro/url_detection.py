"""Dev-server URL detection over live terminal output."""

from __future__ import annotations

import logging
import re
import threading
from dataclasses import dataclass
from typing import Callable

logger = logging.getLogger(__name__)

MAX_PORT = 65535
DEFAULT_WINDOW_CHARS = 256


@dataclass(frozen=True)
class DetectedServer:
    """A local dev server announced in terminal output."""

    url: str
    port: int


# Ordered: the first pattern that matches with a valid port wins.
# Group 1 is always the port.
URL_PATTERNS: list[re.Pattern[str]] = [
    re.compile(r"https?://localhost:(\d+)"),
    re.compile(r"https?://127\.0\.0\.1:(\d+)"),
    re.compile(r"https?://0\.0\.0\.0:(\d+)"),
    re.compile(r"https?://\[::1\]:(\d+)"),
    # Vite / Next.js banner: "  Local:   http://localhost:5173/"
    re.compile(r"Local:?\s+https?://[^\s]+:(\d+)"),
    re.compile(r"(?:listening|running|started|ready)\s+(?:on\s+)?port\s+(\d+)"),
    re.compile(
        r"(?:Server|App|Application)\s+(?:running|listening|started)\s+"
        r"(?:at|on)\s+https?://[^\s:]+:(\d+)"
    ),
]


def _parse_port(text: str) -> int | None:
    try:
        port = int(text)
    except ValueError:
        return None
    if 0 <= port <= MAX_PORT:
        return port
    return None


def _find_server(output: str) -> tuple[DetectedServer, int] | None:
    """First valid announcement in ``output`` and the offset where its port ends."""
    for pattern in URL_PATTERNS:
        match = pattern.search(output)
        if match is None:
            continue
        port = _parse_port(match.group(1))
        if port is None:
            continue
        return DetectedServer(url=f"http://localhost:{port}", port=port), match.end(1)
    return None


def detect_server_url(output: str) -> DetectedServer | None:
    """Scan a chunk of terminal output for a local dev-server announcement.

    The reported URL is always normalized to ``http://localhost:<port>``,
    whichever loopback host triggered the match. A pattern whose captured
    port is not a valid 16-bit number is skipped in favour of the next one.
    """
    found = _find_server(output)
    return found[0] if found else None


class UrlWatcher:
    """Output listener that feeds a session's pty output to the detector.

    Keeps a bounded tail of recent output so an announcement split across
    two reads still matches. A port that runs up to the end of the buffered
    output is held back until a later read terminates it. The tail is
    dropped after every detection, so one announcement is reported once.
    ``window_chars=0`` scans each chunk on its own.
    """

    def __init__(
        self,
        on_detect: Callable[[DetectedServer], None],
        window_chars: int = DEFAULT_WINDOW_CHARS,
    ) -> None:
        self._on_detect = on_detect
        self._window_chars = max(0, window_chars)
        self._tail = ""
        self._lock = threading.Lock()

    def on_chunk(self, text: str) -> None:
        server: DetectedServer | None = None
        with self._lock:
            scan = self._tail + text
            found = _find_server(scan)
            if found is not None and (found[1] < len(scan) or not self._window_chars):
                server = found[0]
                self._tail = ""
            elif self._window_chars:
                # Unterminated port digits stay buffered for the next read.
                self._tail = scan[-self._window_chars :]
        if server is not None:
            logger.debug("Detected dev server %s", server.url)
            self._on_detect(server)

    def reset(self) -> None:
        """Forget buffered output."""
        with self._lock:
            self._tail = ""
