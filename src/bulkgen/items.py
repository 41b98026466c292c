"""Load the content-item snapshot the analyzer works from."""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, List, Mapping, Optional, Sequence

import requests

from .models import ContentItem


def load_items(path: str | Path) -> List[ContentItem]:
    """Read items from a JSON export of the content-production overview."""

    location = Path(path)
    if not location.exists():
        raise FileNotFoundError(f"Content snapshot not found: {location}")
    try:
        payload = json.loads(location.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise ValueError(f"Invalid JSON in {location}: {exc}") from exc
    return parse_items(payload)


def parse_items(payload: Any) -> List[ContentItem]:
    rows = _extract_rows(payload)
    if rows is None:
        raise ValueError("Unsupported content snapshot structure; expected a list of days")
    return [ContentItem.from_mapping(row) for row in rows if isinstance(row, Mapping)]


def fetch_items(
    base_url: str,
    *,
    month: str,
    mode: str,
    items_path: str = "/api/admin/content-production",
    auth_token: Optional[str] = None,
    timeout: float = 30.0,
    logger: logging.Logger | None = None,
) -> List[ContentItem]:
    """Fetch the month overview from the admin API."""

    url = f"{base_url.rstrip('/')}{items_path}"
    headers = {"Authorization": f"Bearer {auth_token}"} if auth_token else {}
    try:
        response = requests.get(url, params={"month": month, "mode": mode}, headers=headers, timeout=timeout)
        response.raise_for_status()
    except requests.RequestException as exc:
        if logger:
            logger.error("Unable to load content overview from %s: %s", url, exc)
        raise

    try:
        payload = response.json()
    except ValueError as exc:
        raise ValueError(f"Content overview from {url} was not JSON") from exc
    items = parse_items(payload)
    if logger:
        logger.info("Loaded %d day(s) for %s (%s)", len(items), month, mode)
    return items


def _extract_rows(payload: Any) -> Optional[Sequence[Any]]:
    if isinstance(payload, list):
        return payload
    if isinstance(payload, Mapping):
        for key in ("data", "days"):
            if key in payload:
                return _extract_rows(payload[key])
    return None


__all__ = ["fetch_items", "load_items", "parse_items"]
