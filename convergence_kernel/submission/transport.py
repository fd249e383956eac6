"""
Transport boundary — how an operation actually reaches the remote side.

The engine only needs `send(endpoint, body, token)`; anything that can tell a
transient failure from a terminal one qualifies. Two implementations:

  HttpTransport       — POSTs JSON over an httpx.Client, token in the
                        Idempotency-Key header and the body
  InProcessTransport  — calls an IdempotentBackend directly (tests, demos)
"""

from typing import Optional, Protocol

import httpx

from convergence_kernel.backend.idempotent import IdempotentBackend
from convergence_kernel.models.operation import DeliveryOutcome, DeliveryStatus

RETRYABLE_STATUS_CODES = (408, 429, 502, 503, 504)


class Transport(Protocol):
    """Protocol for delivery — pluggable backend."""

    def send(self, endpoint: str, body: dict, token: str) -> DeliveryOutcome: ...


def outcome_from_response(
    status_code: int,
    payload: Optional[dict] = None,
    retryable_status_codes: tuple = RETRYABLE_STATUS_CODES,
) -> DeliveryOutcome:
    """Classify an HTTP-style response into a DeliveryOutcome."""
    payload = payload or {}
    detail = payload.get("message") or payload.get("error") or payload.get("detail")
    if detail is not None and not isinstance(detail, str):
        detail = str(detail)

    if 200 <= status_code < 300:
        status = (
            DeliveryStatus.DUPLICATE_CONFIRMED
            if payload.get("replayed")
            else DeliveryStatus.SUCCESS
        )
    elif status_code in retryable_status_codes:
        status = DeliveryStatus.TRANSIENT_FAILURE
    else:
        status = DeliveryStatus.TERMINAL_FAILURE

    return DeliveryOutcome(status=status, status_code=status_code, detail=detail)


class HttpTransport:
    """
    Delivers operations over HTTP.

    Timeouts and connection-level errors are reported as transient failures
    rather than raised, so every send yields exactly one outcome.
    """

    def __init__(
        self,
        client: httpx.Client,
        retryable_status_codes: tuple = RETRYABLE_STATUS_CODES,
    ):
        self._client = client
        self.retryable_status_codes = retryable_status_codes

    @classmethod
    def for_base_url(cls, base_url: str, timeout: float = 10.0) -> "HttpTransport":
        return cls(httpx.Client(base_url=base_url, timeout=timeout))

    def send(self, endpoint: str, body: dict, token: str) -> DeliveryOutcome:
        request_body = dict(body)
        request_body["idempotency_key"] = token
        try:
            response = self._client.post(
                endpoint,
                json=request_body,
                headers={"Idempotency-Key": token},
            )
        except httpx.TimeoutException as e:
            return DeliveryOutcome(
                status=DeliveryStatus.TRANSIENT_FAILURE,
                detail=f"timeout: {e}",
            )
        except httpx.TransportError as e:
            return DeliveryOutcome(
                status=DeliveryStatus.TRANSIENT_FAILURE,
                detail=f"transport error: {e}",
            )

        try:
            payload = response.json()
        except ValueError:
            payload = {}
        if not isinstance(payload, dict):
            payload = {"detail": payload}

        return outcome_from_response(
            response.status_code, payload, self.retryable_status_codes
        )

    def close(self) -> None:
        self._client.close()


class InProcessTransport:
    """Sends straight to an IdempotentBackend, skipping the network."""

    def __init__(self, backend: IdempotentBackend):
        self.backend = backend

    def send(self, endpoint: str, body: dict, token: str) -> DeliveryOutcome:
        response = self.backend.process(token, body)
        return outcome_from_response(response.status_code, response.body)
