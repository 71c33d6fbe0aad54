"""Multicast push delivery.

The HTTP gateway speaks the FCM legacy ``/fcm/send`` shape: one request per
batch of ``registration_ids`` and one entry in ``results`` per token, in
order. Per-token errors are only inspected to decide token pruning.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any

import httpx

logger = logging.getLogger(__name__)

# Errors meaning the token will never work again
INVALID_TOKEN_ERRORS = frozenset(
    {
        "NotRegistered",
        "InvalidRegistration",
        "MissingRegistration",
        "messaging/registration-token-not-registered",
        "messaging/invalid-registration-token",
    }
)

_MAX_BATCH = 500


class PushDeliveryError(Exception):
    """The gateway could not be reached or rejected the whole request."""


@dataclass
class TokenResult:
    token: str
    success: bool
    message_id: str | None = None
    error: str | None = None


@dataclass
class MulticastResult:
    responses: list[TokenResult] = field(default_factory=list)

    @property
    def success_count(self) -> int:
        return sum(1 for r in self.responses if r.success)

    @property
    def failure_count(self) -> int:
        return sum(1 for r in self.responses if not r.success)

    @property
    def invalid_tokens(self) -> list[str]:
        return [r.token for r in self.responses if r.error in INVALID_TOKEN_ERRORS]


class BasePushGateway(ABC):
    """Abstract base for push delivery backends."""

    @abstractmethod
    def send_multicast(
        self,
        tokens: list[str],
        title: str,
        body: str,
        data: dict[str, str] | None = None,
    ) -> MulticastResult:
        """Send one notification to every token.

        Raises:
            PushDeliveryError: If the request as a whole failed.
        """


class FcmPushGateway(BasePushGateway):
    """Sends multicast notifications over the FCM HTTP endpoint with httpx."""

    def __init__(self, url: str, server_key: str | None, timeout: float = 10.0) -> None:
        self.url = url
        self.server_key = server_key
        self.timeout = timeout

    def send_multicast(
        self,
        tokens: list[str],
        title: str,
        body: str,
        data: dict[str, str] | None = None,
    ) -> MulticastResult:
        if not self.server_key:
            raise PushDeliveryError("Push gateway server key not configured")

        result = MulticastResult()
        if not tokens:
            return result

        headers = {"Authorization": f"key={self.server_key}"}
        try:
            with httpx.Client(timeout=self.timeout) as client:
                for start in range(0, len(tokens), _MAX_BATCH):
                    batch = tokens[start : start + _MAX_BATCH]
                    payload: dict[str, Any] = {
                        "registration_ids": batch,
                        "notification": {"title": title, "body": body},
                        "data": data or {},
                    }
                    response = client.post(self.url, json=payload, headers=headers)
                    if not response.is_success:
                        raise PushDeliveryError(
                            f"Push gateway returned HTTP {response.status_code}"
                        )
                    result.responses.extend(_parse_results(batch, response.json()))
        except (httpx.HTTPError, ValueError) as e:
            raise PushDeliveryError(str(e) or type(e).__name__) from e

        logger.info(
            "Push multicast: %d sent, %d failed", result.success_count, result.failure_count
        )
        return result


def _parse_results(tokens: list[str], body: Any) -> list[TokenResult]:
    if not isinstance(body, dict):
        raise PushDeliveryError(f"Malformed push gateway response: {type(body).__name__}")
    results = body.get("results") or []
    if not isinstance(results, list) or not all(isinstance(r, dict) for r in results):
        raise PushDeliveryError("Malformed push gateway response: bad results")
    parsed: list[TokenResult] = []
    for i, token in enumerate(tokens):
        entry = results[i] if i < len(results) else {}
        error = entry.get("error")
        if error is None and "message_id" not in entry:
            error = "MissingResult"
        parsed.append(
            TokenResult(
                token=token,
                success=error is None,
                message_id=entry.get("message_id"),
                error=error,
            )
        )
    return parsed
