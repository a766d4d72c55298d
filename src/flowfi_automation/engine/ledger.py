"""Ledger client contract and an HTTP client for a transaction relay.

The relay owns signing and transaction encoding. This client only submits a
named action with parameters, then polls until the relay reports a terminal
status. It never retries on its own: retry policy belongs to the coordinator.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import Any, Protocol

import requests

from flowfi_automation.engine.errors import LedgerError

logger = logging.getLogger(__name__)

SEALED = "SEALED"
TERMINAL_FAILURES: frozenset[str] = frozenset({"FAILED", "EXPIRED"})


@dataclass(frozen=True, slots=True)
class LedgerResult:
    """Terminal outcome of a ledger submission."""

    success: bool
    resource_used: float = 0.0
    reference: str = ""
    error: str | None = None


class LedgerClient(Protocol):
    def submit(self, action: str, params: Mapping[str, object]) -> LedgerResult: ...


class HttpLedgerClient:
    """Submit actions to a transaction relay over HTTP.

    Relay contract:
      - ``POST {base}/v1/actions`` with ``{"action", "params"}`` returns
        ``{"transaction_id": ...}``
      - ``GET {base}/v1/transaction_results/{id}`` returns
        ``{"status", "error_message", "computation_used"}`` where status is one
        of PENDING | EXECUTED | SEALED | FAILED | EXPIRED
    """

    def __init__(
        self,
        *,
        base_url: str,
        token: str = "",
        timeout_seconds: float = 30.0,
        poll_interval_seconds: float = 2.0,
        seal_timeout_seconds: float = 120.0,
        session: requests.Session | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if not base_url.strip():
            raise ValueError("Ledger relay base_url is required")
        if poll_interval_seconds <= 0:
            raise ValueError("poll_interval_seconds must be > 0")

        self._base_url = base_url.rstrip("/")
        self._timeout = timeout_seconds
        self._poll_interval = poll_interval_seconds
        self._seal_timeout = seal_timeout_seconds
        self._sleep = sleep
        self._session = session or requests.Session()
        headers = {"Accept": "application/json", "User-Agent": "flowfi-automation"}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        self._session.headers.update(headers)

    def close(self) -> None:
        self._session.close()

    def _request(self, method: str, url: str, **kwargs: Any) -> dict[str, Any]:
        try:
            resp = self._session.request(method, url, timeout=self._timeout, **kwargs)
            resp.raise_for_status()
            data = resp.json()
        except requests.RequestException as e:
            raise LedgerError(f"Ledger relay request failed: {e}") from e
        except ValueError as e:
            raise LedgerError(f"Ledger relay returned invalid JSON: {e}") from e
        if not isinstance(data, dict):
            raise LedgerError("Ledger relay returned an unexpected payload")
        return data

    def submit(self, action: str, params: Mapping[str, object]) -> LedgerResult:
        data = self._request(
            "POST",
            f"{self._base_url}/v1/actions",
            json={"action": action, "params": dict(params)},
        )
        tx_id = data.get("transaction_id")
        if not isinstance(tx_id, str) or not tx_id.strip():
            raise LedgerError("Ledger relay did not return a transaction_id")

        logger.info("Ledger action submitted", extra={"action": action, "transaction_id": tx_id})
        return self.wait_for_seal(tx_id)

    def wait_for_seal(self, transaction_id: str) -> LedgerResult:
        started = time.monotonic()
        while True:
            data = self._request(
                "GET", f"{self._base_url}/v1/transaction_results/{transaction_id}"
            )
            status = str(data.get("status", "")).upper()
            error_message = data.get("error_message") or None

            if status == SEALED or status in TERMINAL_FAILURES:
                success = status == SEALED and not error_message
                result = LedgerResult(
                    success=success,
                    resource_used=_as_float(data.get("computation_used")),
                    reference=transaction_id,
                    error=None if success else str(error_message or status.lower()),
                )
                logger.info(
                    "Ledger transaction reached terminal status",
                    extra={"transaction_id": transaction_id, "status": status},
                )
                return result

            if self._seal_timeout and (time.monotonic() - started) >= self._seal_timeout:
                raise LedgerError(
                    f"Timed out waiting for transaction {transaction_id} to seal",
                    reference=transaction_id,
                )
            self._sleep(self._poll_interval)


def _as_float(value: object) -> float:
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value)
        except ValueError:
            return 0.0
    return 0.0
