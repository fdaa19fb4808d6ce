"""
Transport for modelgate.

The broker and benchmarker talk to the remote model API only through a
``Transport``. Implementations must surface response headers so the budget
store can track rate limits. A scripted mock transport is provided for
tests and dry runs.
"""

import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable, Optional, Union

from modelgate.schemas import ErrorKind


@dataclass
class TransportRequest:
    """One call to the remote API."""
    model_id: str
    service_tier: str = "default"
    model_spec: Optional[str] = None
    input: Any = None
    max_output_tokens: Optional[int] = None
    request_id: Optional[str] = None
    purpose: str = "request"  # request, bench, ping
    timeout_ms: Optional[int] = None
    metadata: dict = field(default_factory=dict)


@dataclass
class TransportResponse:
    """Raw response from the remote API."""
    status: int = 200
    headers: dict = field(default_factory=dict)
    body: Any = None
    usage: dict = field(default_factory=dict)
    latency_ms: Optional[int] = None

    @property
    def output_tokens(self) -> Optional[int]:
        value = self.usage.get("output_tokens", self.usage.get("completion_tokens"))
        return int(value) if isinstance(value, (int, float)) and not isinstance(value, bool) else None

    @property
    def total_tokens(self) -> Optional[int]:
        value = self.usage.get("total_tokens")
        return int(value) if isinstance(value, (int, float)) and not isinstance(value, bool) else None


class TransportError(Exception):
    """Raised by a transport when a call fails."""

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        status: Optional[int] = None,
        headers: Optional[dict] = None,
        retry_after_ms: Optional[int] = None,
    ):
        self.message = message
        self.code = code
        self.status = status
        self.headers = dict(headers or {})
        self.retry_after_ms = retry_after_ms
        super().__init__(message)

    @classmethod
    def from_response(cls, response: TransportResponse) -> "TransportError":
        """Build an error for a non-2xx response."""
        message = f"HTTP {response.status}"
        if isinstance(response.body, dict):
            detail = response.body.get("error")
            if isinstance(detail, dict):
                detail = detail.get("message")
            if detail:
                message = f"{message}: {detail}"
        retry_after = None
        raw = response.headers.get("retry-after-ms") if response.headers else None
        if raw is not None:
            try:
                retry_after = int(float(raw))
            except (TypeError, ValueError):
                retry_after = None
        code = ErrorKind.RATE_LIMITED.value if response.status == 429 else None
        return cls(message, code=code, status=response.status, headers=response.headers, retry_after_ms=retry_after)


class Transport(ABC):
    """Abstract base class for transports."""

    @abstractmethod
    async def send(self, request: TransportRequest) -> TransportResponse:
        """Perform the call. Raise TransportError on transport-level failure."""
        pass


ScriptStep = Union[TransportResponse, BaseException, Callable[[TransportRequest], Any]]


class MockTransport(Transport):
    """
    Transport that replays scripted steps.

    Each step is a response to return, an exception to raise, or a callable
    that receives the request and returns either. When the script runs out
    the default response is returned.
    """

    def __init__(
        self,
        script: Optional[list[ScriptStep]] = None,
        default: Optional[TransportResponse] = None,
        on_send: Optional[Callable[[TransportRequest], None]] = None,
    ):
        self.script: list[ScriptStep] = list(script or [])
        self.default = default or TransportResponse(
            status=200,
            body={"output_text": "."},
            usage={"input_tokens": 8, "output_tokens": 1, "total_tokens": 9},
        )
        self.on_send = on_send
        self.calls: list[TransportRequest] = []

    def push(self, *steps: ScriptStep) -> None:
        self.script.extend(steps)

    async def send(self, request: TransportRequest) -> TransportResponse:
        self.calls.append(request)
        if self.on_send is not None:
            self.on_send(request)

        step: ScriptStep = self.script.pop(0) if self.script else self.default
        if callable(step) and not isinstance(step, (TransportResponse, BaseException)):
            step = step(request)
        if isinstance(step, BaseException):
            raise step
        return step


class OpenAITransport(Transport):
    """
    Transport over the OpenAI Responses API.

    Requires OPENAI_API_KEY environment variable.
    """

    def __init__(self, api_key: Optional[str] = None):
        import os
        self.api_key = api_key or os.getenv("OPENAI_API_KEY")
        self._client = None

    @property
    def client(self):
        if self._client is None:
            try:
                from openai import AsyncOpenAI
                self._client = AsyncOpenAI(api_key=self.api_key)
            except ImportError:
                raise ImportError("openai package required. Install with: pip install modelgate[openai]")
        return self._client

    async def send(self, request: TransportRequest) -> TransportResponse:
        import openai

        kwargs: dict[str, Any] = {
            "model": request.model_id,
            "input": request.input if request.input is not None else "",
            "service_tier": request.service_tier,
        }
        if request.max_output_tokens:
            kwargs["max_output_tokens"] = request.max_output_tokens
        if request.timeout_ms:
            kwargs["timeout"] = request.timeout_ms / 1000

        start_time = time.time()
        try:
            raw = await self.client.responses.with_raw_response.create(**kwargs)
        except openai.APIStatusError as e:
            headers = {k.lower(): v for k, v in e.response.headers.items()}
            raise TransportError(str(e), status=e.status_code, headers=headers) from e
        except openai.APITimeoutError as e:
            raise TransportError(str(e), code="NETWORK_ERROR") from e
        except openai.APIConnectionError as e:
            raise TransportError(str(e), code="NETWORK_ERROR") from e

        response = raw.parse()
        usage = response.usage.model_dump() if response.usage else {}
        return TransportResponse(
            status=raw.http_response.status_code,
            headers={k.lower(): v for k, v in raw.headers.items()},
            body=response.model_dump(),
            usage=usage,
            latency_ms=int((time.time() - start_time) * 1000),
        )
