"""Async HTTP client for the content-production generate and log endpoints."""

from __future__ import annotations

import time
from typing import Any, Dict, List, Mapping, Optional

import httpx

from ..models import GenerationResult, LogRecord, Task

DEFAULT_GENERATE_PATH = "/api/admin/content-production/regenerate"
DEFAULT_LOGS_PATH = "/api/admin/content-production/logs"


class GenerationClient:
    """Issues one ``generate`` call per task and normalises every outcome.

    :meth:`invoke` never raises: non-2xx responses, unreadable bodies and
    transport errors all come back as a failed :class:`GenerationResult`.
    """

    def __init__(
        self,
        *,
        base_url: str,
        timeout: float,
        logger,
        generate_path: str = DEFAULT_GENERATE_PATH,
        logs_path: str = DEFAULT_LOGS_PATH,
        auth_token: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.generate_path = generate_path
        self.logs_path = logs_path
        self.logger = logger
        headers = {"Content-Type": "application/json"}
        if auth_token:
            headers["Authorization"] = f"Bearer {auth_token}"
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=timeout,
            headers=headers,
            transport=transport,
        )

    async def __aenter__(self) -> "GenerationClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    # ------------------------------------------------------------------
    async def invoke(self, task: Task) -> GenerationResult:
        body: Dict[str, Any] = {"daily_content_id": task.item_id, "field": task.field}
        if task.sub_key:
            body["translation_code"] = task.sub_key
        start = time.perf_counter()
        try:
            response = await self._client.post(self.generate_path, json=body)
        except Exception as exc:
            elapsed = time.perf_counter() - start
            message = str(exc) or f"Network error ({type(exc).__name__})"
            self.logger.warning("Generate %s failed after %.2fs: %s", task.id, elapsed, message)
            return GenerationResult.failure(message, elapsed=elapsed)
        elapsed = time.perf_counter() - start

        if response.is_success:
            try:
                payload = response.json()
            except ValueError as exc:
                return GenerationResult.failure(f"Malformed response: {exc}", elapsed=elapsed)
            if not isinstance(payload, Mapping):
                return GenerationResult.failure("Malformed response: expected a JSON object", elapsed=elapsed)
            data = payload.get("data") if isinstance(payload.get("data"), Mapping) else payload
            content = data.get("content")
            if content is not None and not isinstance(content, Mapping):
                content = {"value": content}
            self.logger.debug("Generate %s completed in %.2fs", task.id, elapsed)
            return GenerationResult.success(content, log_id=_as_int(data.get("log_id")), elapsed=elapsed)

        message = self._error_message(response)
        self.logger.debug("Generate %s responded with HTTP %s: %s", task.id, response.status_code, message)
        return GenerationResult.failure(message, elapsed=elapsed)

    # ------------------------------------------------------------------
    async def query_logs(self, item_id: int) -> Optional[List[LogRecord]]:
        """Return the generation log for ``item_id`` or ``None`` if it could not be read."""

        try:
            response = await self._client.get(self.logs_path, params={"daily_content_id": item_id})
            response.raise_for_status()
            payload = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            self.logger.debug("Log query for item %s failed: %s", item_id, exc)
            return None
        entries = payload.get("data", payload) if isinstance(payload, Mapping) else payload
        if not isinstance(entries, list):
            self.logger.debug("Log query for item %s returned %s", item_id, type(entries).__name__)
            return None
        return [LogRecord.from_mapping(entry) for entry in entries if isinstance(entry, Mapping)]

    @staticmethod
    def _error_message(response: httpx.Response) -> str:
        try:
            payload = response.json()
        except ValueError:
            payload = None
        if isinstance(payload, Mapping):
            error = payload.get("error")
            if isinstance(error, str) and error.strip():
                return error.strip()
            if isinstance(error, Mapping) and isinstance(error.get("message"), str):
                return error["message"]
        return f"Failed ({response.status_code})"


def _as_int(value: object) -> Optional[int]:
    if value is None:
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


__all__ = ["GenerationClient", "DEFAULT_GENERATE_PATH", "DEFAULT_LOGS_PATH"]
