"""
Upstream transport with per-failure-class retries.

UpstreamClient performs exactly one HTTP attempt. RetryOrchestrator drives it
across attempts:

    429               → retry, 2s 5s 10s 20s 40s (Retry-After header wins)
    503               → retry up to 3 times, 1s 2s 4s
    transport error   → retry up to 4 times, 1s 2s 4s 8s
    anything else     → returned as-is

Running out of retries on a status returns the last real upstream response.
Running out on transport errors raises UpstreamUnavailable.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from dataclasses import dataclass

import httpx

logger = logging.getLogger(__name__)

DEFAULT_MAX_ATTEMPTS = 5


class UpstreamTimeout(Exception):
    """An attempt hit its total deadline or sat idle between chunks too long."""


class UpstreamUnavailable(Exception):
    """Every attempt failed at the transport level."""

    def __init__(self, message: str, attempts: int):
        super().__init__(message)
        self.message = message
        self.attempts = attempts


TRANSPORT_ERRORS = (httpx.TransportError, UpstreamTimeout)


# =============================================================================
# Retry Policies
# =============================================================================


@dataclass(frozen=True)
class RetryPolicy:
    """Retry budget and backoff schedule for one failure class."""

    name: str
    max_retries: int
    delays: tuple[float, ...]

    def delay(self, retry_index: int) -> float:
        """Backoff before retry number ``retry_index`` (0-based), clamped to the last entry."""
        return self.delays[min(retry_index, len(self.delays) - 1)]


RATE_LIMIT_POLICY = RetryPolicy("rate_limit", 4, (2.0, 5.0, 10.0, 20.0, 40.0))
UNAVAILABLE_POLICY = RetryPolicy("unavailable", 3, (1.0, 2.0, 4.0))
TRANSPORT_POLICY = RetryPolicy("transport", 4, (1.0, 2.0, 4.0, 8.0))

STATUS_POLICIES = {
    429: RATE_LIMIT_POLICY,
    503: UNAVAILABLE_POLICY,
}


def parse_retry_after(value: str | None) -> float | None:
    """Read a Retry-After header given in seconds. HTTP dates are ignored."""
    if not value:
        return None
    try:
        seconds = int(value.strip())
    except ValueError:
        return None
    return float(seconds) if seconds >= 0 else None


# =============================================================================
# Single Attempt
# =============================================================================


async def next_chunk(
    iterator: AsyncIterator[bytes], deadline: float, idle_timeout: float
) -> bytes:
    """
    Await the next chunk under both the attempt deadline and the idle ceiling.

    Raises StopAsyncIteration at the end of the body and UpstreamTimeout if
    either limit fires first.
    """
    remaining = deadline - asyncio.get_running_loop().time()
    if remaining <= 0:
        raise UpstreamTimeout("Upstream response exceeded the total time limit")

    timeout = min(idle_timeout, remaining)
    try:
        return await asyncio.wait_for(iterator.__anext__(), timeout=timeout)
    except asyncio.TimeoutError:
        if timeout < idle_timeout:
            raise UpstreamTimeout("Upstream response exceeded the total time limit") from None
        raise UpstreamTimeout(
            f"Upstream sent nothing for {idle_timeout:g}s"
        ) from None


@dataclass
class UpstreamResponse:
    """
    Outcome of one attempt.

    Buffered responses carry ``body``. A successful streaming response keeps
    the still-open httpx response in ``stream`` for the caller to drain with
    UpstreamClient.iter_stream().
    """

    status_code: int
    headers: httpx.Headers
    body: bytes | None = None
    stream: httpx.Response | None = None
    deadline: float = 0.0

    @property
    def is_success(self) -> bool:
        return 200 <= self.status_code < 300

    async def aclose(self) -> None:
        if self.stream is not None:
            await self.stream.aclose()


class UpstreamClient:
    """Sends single attempts to the upstream API."""

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        base_url: str,
        request_timeout: float = 300.0,
        idle_timeout: float = 60.0,
    ):
        self.http_client = http_client
        self.base_url = base_url.rstrip("/")
        self.request_timeout = request_timeout
        self.idle_timeout = idle_timeout

    def build_url(self, path: str, query: str = "") -> str:
        url = f"{self.base_url}/{path.lstrip('/')}"
        return f"{url}?{query}" if query else url

    async def send(
        self,
        method: str,
        path: str,
        *,
        query: str = "",
        headers: dict[str, str] | None = None,
        content: bytes | None = None,
        stream: bool = False,
    ) -> UpstreamResponse:
        """
        Perform one attempt.

        Streaming attempts return as soon as status and headers arrive, except
        for error statuses, whose (small) bodies are read so they can be
        retried or translated.
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.request_timeout

        request = self.http_client.build_request(
            method,
            self.build_url(path, query),
            headers=headers,
            content=content,
            timeout=httpx.Timeout(self.request_timeout),
        )
        try:
            response = await asyncio.wait_for(
                self.http_client.send(request, stream=True),
                timeout=self.request_timeout,
            )
        except asyncio.TimeoutError:
            raise UpstreamTimeout(
                "Upstream response exceeded the total time limit"
            ) from None

        if stream and 200 <= response.status_code < 300:
            return UpstreamResponse(
                status_code=response.status_code,
                headers=response.headers,
                stream=response,
                deadline=deadline,
            )

        try:
            body = await self._read_body(response, deadline)
        finally:
            await response.aclose()

        return UpstreamResponse(
            status_code=response.status_code,
            headers=response.headers,
            body=body,
        )

    async def _read_body(self, response: httpx.Response, deadline: float) -> bytes:
        # aiter_bytes() undoes gzip/deflate content encoding
        chunks = []
        iterator = response.aiter_bytes()
        while True:
            try:
                chunk = await next_chunk(iterator, deadline, self.idle_timeout)
            except StopAsyncIteration:
                break
            chunks.append(chunk)
        return b"".join(chunks)

    async def iter_stream(self, upstream: UpstreamResponse) -> AsyncIterator[bytes]:
        """Yield the decoded chunks of an open streaming response, then close it."""
        if upstream.stream is None:
            if upstream.body:
                yield upstream.body
            return

        iterator = upstream.stream.aiter_bytes()
        try:
            while True:
                try:
                    chunk = await next_chunk(iterator, upstream.deadline, self.idle_timeout)
                except StopAsyncIteration:
                    return
                yield chunk
        finally:
            await upstream.aclose()


# =============================================================================
# Retry Orchestration
# =============================================================================


class RetryOrchestrator:
    """Drive UpstreamClient attempts until success, a final status, or exhaustion."""

    def __init__(
        self,
        client: UpstreamClient,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        on_retry: Callable[[str], None] | None = None,
    ):
        """
        Args:
            client: Performs single attempts
            max_attempts: Ceiling on attempts per request across all failure classes
            sleep: Backoff primitive, replaceable in tests
            on_retry: Called with the policy name before each backoff
        """
        self.client = client
        self.max_attempts = max_attempts
        self.sleep = sleep
        self.on_retry = on_retry

    async def execute(
        self,
        method: str,
        path: str,
        *,
        query: str = "",
        headers: dict[str, str] | None = None,
        content: bytes | None = None,
        stream: bool = False,
        label: str = "",
    ) -> UpstreamResponse:
        retries = {
            policy.name: 0
            for policy in (RATE_LIMIT_POLICY, UNAVAILABLE_POLICY, TRANSPORT_POLICY)
        }
        last_error: Exception | None = None
        attempt = 0

        while attempt < self.max_attempts:
            attempt += 1
            try:
                response = await self.client.send(
                    method,
                    path,
                    query=query,
                    headers=headers,
                    content=content,
                    stream=stream,
                )
            except TRANSPORT_ERRORS as exc:
                last_error = exc
                delay = self._next_delay(TRANSPORT_POLICY, retries, attempt)
                if delay is None:
                    break
                logger.warning(
                    f"[{label}] Request error (attempt {attempt}/{self.max_attempts}): "
                    f"{_describe(exc)} - retrying in {delay:g}s"
                )
                await self._backoff(TRANSPORT_POLICY, delay)
                continue

            policy = STATUS_POLICIES.get(response.status_code)
            if policy is None:
                return response

            retry_after = None
            if policy is RATE_LIMIT_POLICY:
                retry_after = parse_retry_after(response.headers.get("retry-after"))
            delay = self._next_delay(policy, retries, attempt, retry_after=retry_after)
            if delay is None:
                logger.error(
                    f"[{label}] {response.status_code} - retries exhausted "
                    f"after {attempt} attempt(s)"
                )
                return response

            logger.warning(
                f"[{label}] {response.status_code} - retry "
                f"{retries[policy.name]}/{policy.max_retries} after {delay:g}s"
            )
            await response.aclose()
            await self._backoff(policy, delay)

        message = _describe(last_error) if last_error else "Upstream request failed"
        logger.error(f"[{label}] Upstream unreachable after {attempt} attempt(s): {message}")
        raise UpstreamUnavailable(message, attempt)

    def _next_delay(
        self,
        policy: RetryPolicy,
        retries: dict[str, int],
        attempt: int,
        retry_after: float | None = None,
    ) -> float | None:
        """Consume one retry from ``policy``; None when no budget is left."""
        if attempt >= self.max_attempts or retries[policy.name] >= policy.max_retries:
            return None
        index = retries[policy.name]
        retries[policy.name] += 1
        if retry_after is not None:
            return retry_after
        return policy.delay(index)

    async def _backoff(self, policy: RetryPolicy, delay: float) -> None:
        if self.on_retry is not None:
            self.on_retry(policy.name)
        await self.sleep(delay)


def _describe(exc: BaseException) -> str:
    return str(exc) or type(exc).__name__
