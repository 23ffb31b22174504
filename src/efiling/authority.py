"""
Filing authority clients.

The filing authority is the external system that receives returns, issues
acknowledgment numbers and reports processing stages. Implementations:

- SandboxFilingAuthority: in-process, scriptable (stage progression,
  rejections, lost responses, outages)
- HttpFilingAuthority: httpx client for the live endpoint

GuardedAuthority wraps either one with a bounded timeout, a circuit breaker
and retries for idempotent reads. Callers in this package only ever see
FilingError subclasses.
"""

import asyncio
import logging
import secrets
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, List, Optional

import httpx
from pydantic import BaseModel, Field

from resilience import (
    CircuitBreaker,
    CircuitBreakerConfig,
    CircuitBreakerOpen,
    RetryConfig,
    call_with_retry,
)
from services.logging_config import request_id_var

from .errors import AuthorityRejectedError, AuthorityUnavailableError
from .models import utcnow

logger = logging.getLogger(__name__)

ACK_NUMBER_LENGTH = 15

DEFAULT_SANDBOX_PROGRESSION = (
    "UPLOADED",
    "E_VERIFIED",
    "UNDER_PROCESSING",
    "PROCESSED",
)


class AuthorityReceipt(BaseModel):
    """Authority's answer to an accepted upload."""
    ack_number: str
    raw_stage: str = "UPLOADED"
    received_at: datetime = Field(default_factory=utcnow)


class AuthorityStatus(BaseModel):
    """Authority's view of one submission."""
    ack_number: str
    filing_reference: Optional[str] = None
    raw_stage: str
    errors: List[str] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)


class FilingAuthority(ABC):
    """Contract for the external filing authority."""

    @abstractmethod
    async def upload(self, payload: Dict[str, Any]) -> AuthorityReceipt:
        """
        Hand a verified return to the authority.

        Raises:
            AuthorityRejectedError: upload refused; nothing was received
            AuthorityUnavailableError: outcome unknown (details["not_sent"] is
                True only when the request provably never left)
        """
        ...

    @abstractmethod
    async def get_status(self, ack_number: str) -> AuthorityStatus:
        ...

    @abstractmethod
    async def lookup(self, filing_reference: str) -> Optional[AuthorityStatus]:
        """Submission held for a filing reference, or None if nothing was received."""
        ...


# =============================================================================
# SANDBOX
# =============================================================================

class _SandboxSubmission(BaseModel):
    filing_reference: str
    ack_number: str
    payload: Dict[str, Any]
    raw_stage: str
    errors: List[str] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)


class SandboxFilingAuthority(FilingAuthority):
    """
    In-process filing authority.

    Test hooks:
        reject_next(errors): refuse the next upload outright
        lose_next_response(received=True): next upload times out; when
            `received` is True the authority still keeps the submission
        unavailable: every call fails as unreachable
        latency_seconds: every call sleeps first
        set_stage(ack_number, raw_stage, errors): script the reported stage
        advance(ack_number): move along DEFAULT_SANDBOX_PROGRESSION
    """

    def __init__(self):
        self.unavailable = False
        self.latency_seconds = 0.0
        self.upload_count = 0
        self._by_ack: Dict[str, _SandboxSubmission] = {}
        self._by_reference: Dict[str, str] = {}
        self._pending_rejection: Optional[List[str]] = None
        self._lose_response: Optional[bool] = None

    def reject_next(self, errors: Optional[List[str]] = None) -> None:
        self._pending_rejection = list(errors or ["Schema validation failed"])

    def lose_next_response(self, received: bool = True) -> None:
        self._lose_response = received

    def set_stage(
        self,
        ack_number: str,
        raw_stage: str,
        errors: Optional[List[str]] = None,
    ) -> None:
        submission = self._by_ack[ack_number]
        submission.raw_stage = raw_stage
        if errors is not None:
            submission.errors = list(errors)

    def advance(self, ack_number: str) -> str:
        submission = self._by_ack[ack_number]
        try:
            index = DEFAULT_SANDBOX_PROGRESSION.index(submission.raw_stage)
        except ValueError:
            return submission.raw_stage
        if index + 1 < len(DEFAULT_SANDBOX_PROGRESSION):
            submission.raw_stage = DEFAULT_SANDBOX_PROGRESSION[index + 1]
        return submission.raw_stage

    def received_payload(self, filing_reference: str) -> Optional[Dict[str, Any]]:
        ack = self._by_reference.get(filing_reference)
        return self._by_ack[ack].payload if ack else None

    async def _enter(self) -> None:
        if self.latency_seconds:
            await asyncio.sleep(self.latency_seconds)
        if self.unavailable:
            raise AuthorityUnavailableError(
                "Filing authority is unreachable", details={"not_sent": True}
            )

    def _new_ack(self) -> str:
        while True:
            ack = f"{secrets.randbelow(10 ** ACK_NUMBER_LENGTH):0{ACK_NUMBER_LENGTH}d}"
            if ack not in self._by_ack:
                return ack

    async def upload(self, payload: Dict[str, Any]) -> AuthorityReceipt:
        await self._enter()
        self.upload_count += 1
        reference = payload["filing_reference"]

        if self._pending_rejection is not None:
            errors, self._pending_rejection = self._pending_rejection, None
            raise AuthorityRejectedError(
                "Filing authority rejected the upload",
                details={"errors": errors},
            )

        existing = self._by_reference.get(reference)
        if existing is not None:
            # Duplicate upload of the same reference returns the original receipt.
            return AuthorityReceipt(ack_number=existing, raw_stage=self._by_ack[existing].raw_stage)

        lose, self._lose_response = self._lose_response, None
        if lose is False:
            raise AuthorityUnavailableError("Filing authority did not respond in time")

        ack = self._new_ack()
        self._by_ack[ack] = _SandboxSubmission(
            filing_reference=reference,
            ack_number=ack,
            payload=payload,
            raw_stage=DEFAULT_SANDBOX_PROGRESSION[0],
        )
        self._by_reference[reference] = ack

        if lose is True:
            raise AuthorityUnavailableError("Filing authority did not respond in time")
        return AuthorityReceipt(ack_number=ack, raw_stage=DEFAULT_SANDBOX_PROGRESSION[0])

    def _status(self, submission: _SandboxSubmission) -> AuthorityStatus:
        return AuthorityStatus(
            ack_number=submission.ack_number,
            filing_reference=submission.filing_reference,
            raw_stage=submission.raw_stage,
            errors=list(submission.errors),
            warnings=list(submission.warnings),
        )

    async def get_status(self, ack_number: str) -> AuthorityStatus:
        await self._enter()
        submission = self._by_ack.get(ack_number)
        if submission is None:
            raise AuthorityRejectedError(
                f"Unknown acknowledgment number {ack_number}",
                code="UNKNOWN_ACK",
                details={"ack_number": ack_number},
            )
        return self._status(submission)

    async def lookup(self, filing_reference: str) -> Optional[AuthorityStatus]:
        await self._enter()
        ack = self._by_reference.get(filing_reference)
        return self._status(self._by_ack[ack]) if ack else None


# =============================================================================
# LIVE (HTTP)
# =============================================================================

class HttpFilingAuthority(FilingAuthority):
    """httpx client for the live filing authority."""

    def __init__(
        self,
        base_url: str,
        api_key: Optional[str] = None,
        timeout_seconds: float = 20.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self._client = client or httpx.AsyncClient(
            base_url=self.base_url,
            timeout=httpx.Timeout(timeout_seconds, connect=min(timeout_seconds, 10.0)),
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    def _headers(self) -> Dict[str, str]:
        headers = {"Accept": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        request_id = request_id_var.get()
        if request_id:
            headers["X-Request-ID"] = request_id
        return headers

    async def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        try:
            response = await self._client.request(method, path, headers=self._headers(), **kwargs)
        except httpx.ConnectError as e:
            logger.warning(f"[AUTHORITY] Connection failed | path={path} | error={e}")
            raise AuthorityUnavailableError(
                "Filing authority is unreachable", details={"not_sent": True, "path": path}
            )
        except httpx.TimeoutException:
            logger.warning(f"[AUTHORITY] Request timed out | path={path}")
            raise AuthorityUnavailableError(
                "Filing authority did not respond in time", details={"path": path}
            )
        except httpx.TransportError as e:
            logger.warning(f"[AUTHORITY] Transport error | path={path} | error={e}")
            raise AuthorityUnavailableError(
                "Filing authority connection failed", details={"path": path}
            )

        if response.status_code == 429 or response.status_code >= 500:
            raise AuthorityUnavailableError(
                "Filing authority is unavailable",
                details={"path": path, "status": response.status_code},
            )
        return response

    @staticmethod
    def _raise_for_refusal(response: httpx.Response, path: str) -> None:
        """Any 4xx left at this point is a definite refusal; nothing was received."""
        if response.status_code < 400:
            return
        try:
            body = response.json()
        except ValueError:
            body = None
        if not isinstance(body, dict):
            body = {}
        logger.warning(f"[AUTHORITY] Request refused | path={path} | status={response.status_code}")
        raise AuthorityRejectedError(
            body.get("message") or "Filing authority refused the request",
            details={
                "path": path,
                "status": response.status_code,
                "errors": body.get("errors", []),
            },
        )

    async def upload(self, payload: Dict[str, Any]) -> AuthorityReceipt:
        response = await self._request("POST", "/returns", json=payload)
        self._raise_for_refusal(response, "/returns")
        return AuthorityReceipt(**response.json())

    async def get_status(self, ack_number: str) -> AuthorityStatus:
        path = f"/returns/{ack_number}/status"
        response = await self._request("GET", path)
        if response.status_code == 404:
            raise AuthorityRejectedError(
                f"Unknown acknowledgment number {ack_number}",
                code="UNKNOWN_ACK",
                details={"ack_number": ack_number},
            )
        self._raise_for_refusal(response, path)
        return AuthorityStatus(**response.json())

    async def lookup(self, filing_reference: str) -> Optional[AuthorityStatus]:
        response = await self._request(
            "GET", "/returns", params={"filing_reference": filing_reference}
        )
        if response.status_code == 404:
            return None
        self._raise_for_refusal(response, "/returns")
        return AuthorityStatus(**response.json())


# =============================================================================
# GUARD
# =============================================================================

class GuardedAuthority(FilingAuthority):
    """
    Bounded, circuit-broken access to a FilingAuthority.

    Uploads are attempted once. Status reads and lookups are idempotent and
    retried on transient failures.
    """

    def __init__(
        self,
        inner: FilingAuthority,
        breaker: Optional[CircuitBreaker] = None,
        retry_config: Optional[RetryConfig] = None,
        timeout_seconds: float = 20.0,
    ):
        self.inner = inner
        self.breaker = breaker or CircuitBreaker("filing_authority", CircuitBreakerConfig())
        self.retry_config = retry_config or RetryConfig()
        self.timeout_seconds = timeout_seconds

    async def _guarded(self, operation: str, call) -> Any:
        try:
            async with self.breaker:
                try:
                    return await asyncio.wait_for(call(), timeout=self.timeout_seconds)
                except asyncio.TimeoutError:
                    raise AuthorityUnavailableError(
                        "Filing authority did not respond in time",
                        details={"operation": operation},
                    )
        except CircuitBreakerOpen as e:
            logger.warning(
                f"[AUTHORITY] Circuit open, {operation} refused | retry_after={e.time_remaining:.0f}s"
            )
            raise AuthorityUnavailableError(
                "Filing authority is temporarily unavailable",
                details={
                    "not_sent": True,
                    "circuit": e.circuit_name,
                    "retry_after": int(e.time_remaining) + 1,
                },
            )

    async def upload(self, payload: Dict[str, Any]) -> AuthorityReceipt:
        return await self._guarded("upload", lambda: self.inner.upload(payload))

    async def get_status(self, ack_number: str) -> AuthorityStatus:
        return await call_with_retry(
            self._guarded,
            "get_status",
            lambda: self.inner.get_status(ack_number),
            config=self.retry_config,
        )

    async def lookup(self, filing_reference: str) -> Optional[AuthorityStatus]:
        return await call_with_retry(
            self._guarded,
            "lookup",
            lambda: self.inner.lookup(filing_reference),
            config=self.retry_config,
        )
