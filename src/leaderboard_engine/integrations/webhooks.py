"""Webhook transport: at-least-once POST delivery with exponential backoff."""

from __future__ import annotations

import logging
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any, Dict, List, Optional

import httpx
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

logger = logging.getLogger(__name__)


class WebhookDispatcher:
    """Delivers payloads on a worker pool so callers never block on the network."""

    def __init__(
        self,
        url: Optional[str],
        *,
        max_attempts: int = 5,
        timeout: float = 5.0,
        workers: int = 4,
        client: Optional[httpx.Client] = None,
    ) -> None:
        self.url = url
        self._max_attempts = max_attempts
        self._client = client or httpx.Client(timeout=timeout)
        self._executor = ThreadPoolExecutor(max_workers=workers, thread_name_prefix="webhook")

    def _post(self, payload: Dict[str, Any]) -> None:
        @retry(
            wait=wait_exponential(multiplier=0.5, min=0.5, max=30),
            stop=stop_after_attempt(self._max_attempts),
            retry=retry_if_exception_type(httpx.HTTPError),
            reraise=True,
        )
        def _send() -> None:
            response = self._client.post(
                self.url,
                json=payload,
                headers={"Idempotency-Key": payload["id"]},
            )
            response.raise_for_status()

        _send()

    def _deliver(self, payload: Dict[str, Any]) -> None:
        try:
            self._post(payload)
            logger.debug("webhook delivered: %s %s", payload["event"], payload["id"])
        except httpx.HTTPError:
            logger.exception(
                "webhook delivery failed after %s attempts: %s %s",
                self._max_attempts,
                payload["event"],
                payload["id"],
            )

    def dispatch(self, payloads: List[Dict[str, Any]]) -> List[Future]:
        """Queue payloads for delivery; returns the futures for callers that care."""

        if not payloads:
            return []
        if not self.url:
            logger.debug("webhook url not configured; dropping %s events", len(payloads))
            return []
        return [self._executor.submit(self._deliver, payload) for payload in payloads]

    def close(self) -> None:
        self._executor.shutdown(wait=True)
        self._client.close()
