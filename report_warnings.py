"""
Per-build warning accumulator.

One WarningSink is created per report build and handed to every guarded
fetch and every metric builder.  Source warnings are keyed by source: the
first warning recorded for a source wins and later ones are ignored, so a
failed source is reported exactly once no matter how many builders needed
it.  Request warnings (e.g. radius clamping) are kept separately.

snapshot() orders source warnings by registration order, never by the
order in which fetches happened to fail.
"""

import threading
from typing import Dict, List, Tuple

from sources import SOURCE_REGISTRY, SOURCES_BY_KEY


def unavailable_message(key: str) -> str:
    return f"{SOURCES_BY_KEY[key].label} source was unavailable."


def no_data_message(key: str) -> str:
    return f"{SOURCES_BY_KEY[key].label} source returned no data."


def cancelled_message(key: str) -> str:
    return f"{SOURCES_BY_KEY[key].label} source was cancelled before it responded."


def timed_out_message(key: str) -> str:
    return f"{SOURCES_BY_KEY[key].label} source timed out."


class WarningSink:
    """Lock-protected, append-only warning list for one build."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._by_source: Dict[str, str] = {}
        self._request: List[str] = []

    def add_source_warning(self, key: str, message: str) -> bool:
        """Record *message* for source *key* unless one is already recorded.

        Returns True when the message was recorded.
        """
        if key not in SOURCES_BY_KEY:
            raise KeyError(f"Unregistered source: {key}")
        with self._lock:
            if key in self._by_source:
                return False
            self._by_source[key] = message
            return True

    def source_unavailable(self, key: str) -> None:
        self.add_source_warning(key, unavailable_message(key))

    def add(self, message: str) -> None:
        with self._lock:
            self._request.append(message)

    def snapshot(self) -> Tuple[str, ...]:
        with self._lock:
            ordered = [
                self._by_source[spec.key]
                for spec in SOURCE_REGISTRY
                if spec.key in self._by_source
            ]
            return tuple(ordered + self._request)

    def __len__(self) -> int:
        with self._lock:
            return len(self._by_source) + len(self._request)
