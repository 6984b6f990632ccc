from __future__ import annotations

import logging
import time
from typing import Any, Callable

import requests

from routine_sync.errors import (
    FetchFailedError,
    MissingCredentialError,
    TransientUpstreamError,
    UpstreamClientError,
)
from routine_sync.models import RetryPolicy, TrackerConfig

logger = logging.getLogger(__name__)


def _provider_message(response: requests.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        payload = None
    if isinstance(payload, dict):
        for key in ("err", "error", "message"):
            value = payload.get(key)
            if value:
                return str(value)
    return (response.text or "").strip()[:300] or response.reason or "unknown error"


class TrackerClient:
    """Read-only client for a tracker's paginated "tasks in view" endpoint."""

    def __init__(
        self,
        config: TrackerConfig,
        *,
        session: requests.Session | None = None,
        retry_policy: RetryPolicy | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.base_url = config.base_url.rstrip("/")
        self.max_pages = max(1, int(config.max_pages))
        self.timeout_seconds = config.timeout_seconds
        self.retry_policy = retry_policy or config.retry
        self.session = session or requests.Session()
        self._sleep = sleep
        self._token = config.api_token

    def __repr__(self) -> str:
        return f"TrackerClient(base_url={self.base_url!r})"

    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self._token}",
            "Accept": "application/json",
        }

    def _get_json(self, url: str, params: dict[str, Any]) -> dict[str, Any]:
        if not self._token:
            raise MissingCredentialError("Tracker API token is not configured.")

        policy = self.retry_policy
        attempt = 0
        while True:
            attempt += 1
            rate_limited = False
            try:
                response = self.session.get(
                    url,
                    headers=self._headers(),
                    params=params,
                    timeout=self.timeout_seconds,
                )
            except requests.RequestException as exc:
                error = TransientUpstreamError(f"network error: {type(exc).__name__}: {exc}")
            else:
                status = response.status_code
                if 200 <= status < 300:
                    try:
                        payload = response.json()
                    except ValueError as exc:
                        raise UpstreamClientError(status, "response is not valid JSON") from exc
                    if not isinstance(payload, dict):
                        raise UpstreamClientError(status, "response is not a JSON object")
                    return payload
                if status == 429:
                    rate_limited = True
                    error = TransientUpstreamError("rate limited", status_code=status)
                elif status >= 500:
                    error = TransientUpstreamError(f"server error {status}", status_code=status)
                else:
                    raise UpstreamClientError(status, _provider_message(response))

            if attempt >= policy.max_attempts:
                raise FetchFailedError(
                    f"giving up on {url} after {attempt} attempt(s): {error}",
                    attempts=attempt,
                    status_code=error.status_code,
                ) from error
            delay = policy.delay_for(attempt, rate_limited=rate_limited)
            logger.warning(
                "tracker request failed (%s), attempt %d/%d, retrying in %.1fs",
                error,
                attempt,
                policy.max_attempts,
                delay,
            )
            self._sleep(delay)

    def fetch_page(self, view_id: str, page: int, include_closed: bool = True) -> list[dict[str, Any]]:
        payload = self._get_json(
            f"{self.base_url}/view/{view_id}/task",
            {"page": int(page), "include_closed": "true" if include_closed else "false"},
        )
        items = payload.get("tasks")
        if not isinstance(items, list):
            detail = payload.get("err") or payload.get("error") or "response has no task list"
            raise UpstreamClientError(200, str(detail))
        return [item for item in items if isinstance(item, dict)]

    def fetch_all(self, view_id: str, include_closed: bool = True) -> list[dict[str, Any]]:
        """Return every task behind ``view_id``.

        Any terminal error propagates and the pages gathered so far are
        dropped, so callers only ever see a complete set.
        """
        if not str(view_id or "").strip():
            raise ValueError("view_id is required")
        tasks: list[dict[str, Any]] = []
        for page in range(self.max_pages):
            items = self.fetch_page(view_id, page, include_closed)
            if not items:
                break
            tasks.extend(items)
        else:
            logger.warning(
                "tracker view %s still returned tasks after %d pages; stopping at the ceiling",
                view_id,
                self.max_pages,
            )
        logger.info("fetched %d tracker task(s) from view %s", len(tasks), view_id)
        return tasks
