"""Resilient client for the upstream chat-completions API.

Each call runs a small state machine::

    IDLE -> ATTEMPTING -> SUCCESS
                       -> RETRYING -> ATTEMPTING ...
                       -> FAILED

The RateLimiter is consulted before every attempt. A RateLimitError is
raised straight to the caller and does not use up an attempt. Retryable
failures (timeouts, aborts, network errors, any error response whose code
is not listed in NON_RETRYABLE_CODES) back off ``2**attempt`` seconds;
responses coded ``auth_error`` or ``validation_error`` fail at once.

The client receives an httpx.AsyncClient via constructor injection. The
runtime context owns the client lifecycle.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from enum import StrEnum
from typing import TYPE_CHECKING, Any

import httpx
import structlog
from pydantic import ValidationError

from flashcache import __version__
from flashcache.errors import (
    AttemptTimeoutError,
    FlashcacheError,
    ParseError,
    RetriesExhaustedError,
    UpstreamError,
)
from flashcache.models.upstream import (
    APIErrorResponse,
    ChatMessage,
    ChatRequest,
    ChatResponse,
    ModelParameters,
)
from flashcache.ratelimit import estimate_tokens

if TYPE_CHECKING:
    from flashcache.config import UpstreamSettings
    from flashcache.models.rate_limit import Reservation
    from flashcache.ratelimit import RateLimiter

log = structlog.get_logger()

NON_RETRYABLE_CODES: frozenset[str] = frozenset({"auth_error", "validation_error"})

MAX_MESSAGE_LENGTH = 10_000
DEFAULT_PARAMETERS = ModelParameters(temperature=0.7, max_tokens=150)


class AttemptState(StrEnum):
    IDLE = "idle"
    ATTEMPTING = "attempting"
    RETRYING = "retrying"
    SUCCESS = "success"
    FAILED = "failed"


def backoff_ms(attempt: int) -> int:
    """Delay after the ``attempt``-th failure (1-based): 2s, 4s, 8s, ..."""
    return 2**attempt * 1000


def build_http_client() -> httpx.AsyncClient:
    """Create the shared httpx client. Called once at startup.

    Deadlines are enforced per attempt by UpstreamClient, so the transport
    timeout only guards against hung connections.
    """
    return httpx.AsyncClient(
        timeout=httpx.Timeout(90.0),
        headers={"User-Agent": f"flashcache/{__version__}"},
        limits=httpx.Limits(
            max_connections=10,
            max_keepalive_connections=5,
        ),
    )


def _validate_message(name: str, message: str) -> str:
    if not message:
        raise ValueError(f"{name} message must not be empty")
    if len(message) > MAX_MESSAGE_LENGTH:
        raise ValueError(
            f"{name} message is {len(message)} characters; the limit is {MAX_MESSAGE_LENGTH}"
        )
    return message


class UpstreamClient:
    """Chat-completions client with rate limiting, timeouts and retries."""

    def __init__(
        self,
        client: httpx.AsyncClient,
        rate_limiter: RateLimiter,
        *,
        api_key: str,
        model: str,
        base_url: str,
        retries: int = 2,
        timeout_ms: int = 60_000,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._client = client
        self._rate_limiter = rate_limiter
        self._api_key = api_key
        self._model = model
        self._url = f"{base_url.rstrip('/')}/chat/completions"
        self._retries = retries
        self._timeout_ms = timeout_ms
        self._sleep = sleep
        self._parameters = DEFAULT_PARAMETERS
        self._last_response: httpx.Response | None = None
        self.last_state = AttemptState.IDLE

    @classmethod
    def from_settings(
        cls,
        client: httpx.AsyncClient,
        rate_limiter: RateLimiter,
        settings: UpstreamSettings,
        *,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> UpstreamClient:
        return cls(
            client,
            rate_limiter,
            api_key=settings.api_key.get_secret_value(),
            model=settings.model,
            base_url=settings.base_url,
            retries=settings.retries,
            timeout_ms=settings.timeout_ms,
            sleep=sleep,
        )

    @property
    def model(self) -> str:
        return self._model

    def set_model_parameters(self, parameters: ModelParameters) -> None:
        """Override the default temperature / max_tokens for later calls."""
        self._parameters = self._parameters.model_copy(
            update=parameters.model_dump(exclude_none=True)
        )
        log.debug("upstream_parameters_updated", **self._parameters.model_dump())

    # ------------------------------------------------------------------
    # Calls
    # ------------------------------------------------------------------

    async def call_api(
        self,
        user_message: str,
        *,
        system_message: str | None = None,
        parameters: ModelParameters | None = None,
        abort: asyncio.Event | None = None,
    ) -> httpx.Response:
        """Send one completion request, retrying transient failures.

        Setting ``abort`` cancels the in-flight attempt, or cuts short the
        backoff wait before the next one. The event is cleared once consumed
        so it does not also cancel the retry. Returns the raw
        2xx response, also kept for ``get_response``.
        """
        payload = self._build_payload(user_message, system_message, parameters)
        estimated = estimate_tokens(system_message, user_message)
        log.info(
            "upstream_call_started",
            model=self._model,
            message_count=len(payload["messages"]),
            estimated_tokens=estimated,
        )

        self.last_state = AttemptState.IDLE
        attempt = 0
        while True:
            # RateLimitError propagates from here without using up an attempt.
            reservation = self._rate_limiter.check_and_reserve(estimated)
            attempt += 1
            self.last_state = AttemptState.ATTEMPTING
            try:
                response = await self._attempt(payload, reservation, attempt, abort)
            except FlashcacheError as exc:
                log.warning(
                    "upstream_attempt_failed",
                    attempt=attempt,
                    kind=exc.kind,
                    retryable=exc.retryable,
                    error=exc.message,
                )
                if not exc.retryable:
                    self.last_state = AttemptState.FAILED
                    raise
                if attempt >= self._retries:
                    self.last_state = AttemptState.FAILED
                    log.error("upstream_retries_exhausted", attempts=attempt)
                    raise RetriesExhaustedError(attempt, exc) from exc

                self.last_state = AttemptState.RETRYING
                delay_ms = backoff_ms(attempt)
                log.warning("upstream_retrying", next_attempt=attempt + 1, backoff_ms=delay_ms)
                await self._backoff(delay_ms, abort)
                continue

            self.last_state = AttemptState.SUCCESS
            self._last_response = response
            log.info(
                "upstream_call_succeeded",
                attempt=attempt,
                status_code=response.status_code,
                content_type=response.headers.get("content-type"),
            )
            return response

    def get_response(self, response: httpx.Response | None = None) -> ChatResponse:
        """Validate ``response`` (default: the last successful one) as a ChatResponse.

        Raises ParseError on undecodable JSON or schema mismatch. The HTTP
        call already succeeded, so this is never retried.
        """
        response = response if response is not None else self._last_response
        if response is None:
            raise ParseError("No API call has been made yet", code="no_response")

        try:
            data = response.json()
        except ValueError as exc:
            log.error("upstream_response_invalid_json", exc_info=True)
            raise ParseError(f"Upstream returned invalid JSON: {exc}", code="invalid_json") from exc

        try:
            parsed = ChatResponse.model_validate(data)
        except ValidationError as exc:
            log.error("upstream_response_schema_mismatch", errors=exc.error_count())
            raise ParseError(
                f"Upstream response does not match the chat completion schema: {exc}",
                code="schema_mismatch",
            ) from exc

        log.debug(
            "upstream_response_parsed",
            choices=len(parsed.choices),
            model=parsed.model,
            usage=parsed.usage.model_dump() if parsed.usage else None,
        )
        return parsed

    async def complete(
        self,
        user_message: str,
        *,
        system_message: str | None = None,
        parameters: ModelParameters | None = None,
        abort: asyncio.Event | None = None,
    ) -> ChatResponse:
        """``call_api`` followed by ``get_response`` on its result."""
        response = await self.call_api(
            user_message,
            system_message=system_message,
            parameters=parameters,
            abort=abort,
        )
        return self.get_response(response)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _build_payload(
        self,
        user_message: str,
        system_message: str | None,
        parameters: ModelParameters | None,
    ) -> dict[str, Any]:
        messages: list[ChatMessage] = []
        if system_message is not None:
            messages.append(
                ChatMessage(role="system", content=_validate_message("System", system_message))
            )
        messages.append(ChatMessage(role="user", content=_validate_message("User", user_message)))

        effective = self._parameters
        if parameters is not None:
            effective = effective.model_copy(update=parameters.model_dump(exclude_none=True))

        request = ChatRequest(model=self._model, messages=messages, **effective.model_dump())
        return request.model_dump(exclude_none=True)

    async def _attempt(
        self,
        payload: dict[str, Any],
        reservation: Reservation,
        attempt: int,
        abort: asyncio.Event | None,
    ) -> httpx.Response:
        if abort is not None and abort.is_set():
            # Never dispatched, so it must not count against the window.
            self._rate_limiter.release(reservation)
            abort.clear()
            raise AttemptTimeoutError(self._timeout_ms, aborted=True)

        self._rate_limiter.commit(reservation)
        log.debug("upstream_request_sent", url=self._url, attempt=attempt, timeout_ms=self._timeout_ms)

        try:
            response = await self._send(payload, abort)
        except TimeoutError as exc:
            raise AttemptTimeoutError(self._timeout_ms) from exc
        except httpx.TimeoutException as exc:
            raise AttemptTimeoutError(self._timeout_ms) from exc
        except httpx.HTTPError as exc:
            raise UpstreamError(
                f"Network error calling {self._url}: {exc}",
                type="network_error",
                code="connection_error",
                retryable=True,
            ) from exc

        if not response.is_success:
            raise self._classify(response)
        return response

    async def _send(self, payload: dict[str, Any], abort: asyncio.Event | None) -> httpx.Response:
        request = self._client.post(
            self._url,
            json=payload,
            headers={
                "Authorization": f"Bearer {self._api_key}",
                "Content-Type": "application/json",
            },
        )
        async with asyncio.timeout(self._timeout_ms / 1000):
            if abort is None:
                return await request

            send = asyncio.ensure_future(request)
            aborted = asyncio.ensure_future(abort.wait())
            try:
                done, _ = await asyncio.wait(
                    {send, aborted}, return_when=asyncio.FIRST_COMPLETED
                )
            finally:
                send.cancel()
                aborted.cancel()

            if send in done:
                return send.result()
            abort.clear()
            raise AttemptTimeoutError(self._timeout_ms, aborted=True)

    async def _backoff(self, delay_ms: int, abort: asyncio.Event | None) -> None:
        """Wait before the next attempt. Setting ``abort`` ends the wait early."""
        if abort is None:
            await self._sleep(delay_ms / 1000)
            return

        sleeping = asyncio.ensure_future(self._sleep(delay_ms / 1000))
        aborted = asyncio.ensure_future(abort.wait())
        try:
            await asyncio.wait({sleeping, aborted}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            sleeping.cancel()
            aborted.cancel()

        if abort.is_set():
            # Consumed here so the next attempt is dispatched, not released.
            abort.clear()
            log.info("upstream_backoff_aborted", backoff_ms=delay_ms)

    def _classify(self, response: httpx.Response) -> UpstreamError:
        status = response.status_code
        try:
            envelope = APIErrorResponse.model_validate(response.json())
            message = envelope.error.message
            error_type = envelope.error.type
            code = str(envelope.error.code) if envelope.error.code is not None else None
        except ValueError:
            # Undecodable body or missing envelope (ValidationError is a ValueError)
            message = f"HTTP {status} from {self._url}"
            error_type = "http_error"
            code = None

        retryable = code not in NON_RETRYABLE_CODES
        log.error(
            "upstream_request_failed",
            status_code=status,
            type=error_type,
            code=code,
            retryable=retryable,
        )
        return UpstreamError(
            message,
            type=error_type,
            code=code,
            retryable=retryable,
            status_code=status,
        )
