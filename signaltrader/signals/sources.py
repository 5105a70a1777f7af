from __future__ import annotations

import json
import logging
from datetime import datetime
from pathlib import Path
from typing import Any, Protocol

import requests

from signaltrader.signals.models import RawSignalEvent

LOGGER = logging.getLogger(__name__)


class SignalSource(Protocol):
    def poll(self, now: datetime) -> list[RawSignalEvent]:
        ...


def _parse_items(items: list[Any], origin: str) -> list[RawSignalEvent]:
    events: list[RawSignalEvent] = []
    for index, item in enumerate(items):
        if not isinstance(item, dict):
            continue
        try:
            events.append(RawSignalEvent.from_dict(item))
        except (KeyError, TypeError, ValueError) as exc:
            LOGGER.warning("Ignoring raw signal %s[%d]: %s", origin, index, exc)
    return events


class SpoolDirectorySource:
    """
    Reads raw signal events dropped into a directory by upstream collectors.

    ``*.json`` files hold a list of events (or ``{"events": [...]}``),
    ``*.jsonl`` files hold one event per line. Files are moved to
    ``processed/`` after reading so each event is delivered once.
    """

    def __init__(self, directory: str | Path):
        self.directory = Path(directory)
        self.processed_dir = self.directory / "processed"

    def _read_file(self, path: Path) -> list[RawSignalEvent]:
        text = path.read_text(encoding="utf-8")
        if path.suffix == ".jsonl":
            items: list[Any] = []
            for line_no, line in enumerate(text.splitlines(), start=1):
                line = line.strip()
                if not line:
                    continue
                try:
                    items.append(json.loads(line))
                except ValueError:
                    LOGGER.warning("Ignoring invalid JSON line %s:%d", path.name, line_no)
            return _parse_items(items, path.name)
        payload = json.loads(text)
        raw_events = payload.get("events", []) if isinstance(payload, dict) else payload
        if not isinstance(raw_events, list):
            return []
        return _parse_items(raw_events, path.name)

    def poll(self, now: datetime) -> list[RawSignalEvent]:
        if not self.directory.exists():
            return []
        events: list[RawSignalEvent] = []
        files = sorted(
            path for path in self.directory.iterdir() if path.is_file() and path.suffix in {".json", ".jsonl"}
        )
        for path in files:
            try:
                events.extend(self._read_file(path))
            except (OSError, ValueError) as exc:
                LOGGER.warning("Could not read signal spool file %s: %s", path, exc)
                continue
            self.processed_dir.mkdir(parents=True, exist_ok=True)
            path.replace(self.processed_dir / f"{now.strftime('%Y%m%dT%H%M%S')}_{path.name}")
        return events


class HttpSignalSource:
    """Polls a JSON endpoint returning ``list[dict]`` or ``{"events": list[dict]}``."""

    def __init__(
        self,
        *,
        url: str,
        token: str | None = None,
        timeout_seconds: float = 10.0,
        session: requests.Session | None = None,
    ):
        self.url = url
        self.token = token
        self.timeout_seconds = timeout_seconds
        self.session = session or requests.Session()
        self._last_polled: datetime | None = None

    def poll(self, now: datetime) -> list[RawSignalEvent]:
        headers: dict[str, str] = {}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        # Cursor only moves after a successful response.
        params: dict[str, str] = {}
        if self._last_polled is not None:
            params["since"] = self._last_polled.isoformat()
        try:
            response = self.session.get(
                self.url,
                headers=headers,
                params=params,
                timeout=self.timeout_seconds,
            )
            response.raise_for_status()
            payload = response.json()
        except (requests.RequestException, ValueError) as exc:
            LOGGER.warning("Signal feed unavailable url=%s: %s", self.url, exc)
            return []
        self._last_polled = now
        raw_events = payload.get("events", payload) if isinstance(payload, dict) else payload
        if not isinstance(raw_events, list):
            return []
        return _parse_items(raw_events, self.url)


def build_signal_sources(*, spool_dir: str | Path, http_url: str | None, http_token: str | None) -> list[SignalSource]:
    sources: list[SignalSource] = [SpoolDirectorySource(spool_dir)]
    LOGGER.info("Using spool signal source: %s", spool_dir)
    if http_url:
        LOGGER.info("Using HTTP signal source: %s", http_url)
        sources.append(HttpSignalSource(url=http_url, token=http_token))
    return sources
