"""
Completion client for OpenAI-compatible chat endpoints.

One request, one POST to <api_url>/chat/completions with stream=true,
decoded incrementally through chatline.streaming. send() never raises:
configuration, input, HTTP, transport and cancellation failures all come
back as a CompletionResult with `error` set and empty `content`.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import time
from dataclasses import dataclass, field
from typing import Callable

import httpx

from chatline.streaming import IteratorByteSource, parse_sse_stream
from chatline.wiretap import WireLog

logger = logging.getLogger(__name__)

API_KEY_MISSING = "API key not configured."
NO_MESSAGES = "No messages to send."
NO_RESPONSE_BODY = "No response body received"
REQUEST_CANCELLED = "Request cancelled"
UNKNOWN_ERROR = "An unknown error occurred"


@dataclass
class CompletionResult:
    """Outcome of one completion. error set implies content == ''."""
    content: str = ""
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def cancelled(self) -> bool:
        return self.error == REQUEST_CANCELLED

    @classmethod
    def failure(cls, error: str) -> "CompletionResult":
        return cls(content="", error=error)


@dataclass
class CompletionRequest:
    api_url: str
    api_key: str
    model: str
    messages: list[dict] = field(default_factory=list)
    # When set, sent as the first message. Never persisted.
    system_prompt: str | None = None

    @property
    def endpoint(self) -> str:
        return f"{self.api_url.rstrip('/')}/chat/completions"

    def build_messages(self) -> list[dict]:
        messages = [{"role": m["role"], "content": m["content"]} for m in self.messages]
        if self.system_prompt is not None:
            messages.insert(0, {"role": "system", "content": self.system_prompt})
        return messages

    def build_payload(self) -> dict:
        return {
            "model": self.model,
            "stream": True,
            "messages": self.build_messages(),
        }


class CancelToken:
    """Cancellation signal bound to one in-flight request."""

    def __init__(self):
        self._event = asyncio.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    async def wait(self) -> None:
        await self._event.wait()


def parse_api_error(status_code: int, body: str) -> str:
    """
    Pull error.message out of an error body. Anything unexpected (plain text,
    HTML, a JSON shape without error.message) degrades to 'API error: <status>'.
    """
    fallback = f"API error: {status_code}"
    try:
        data = json.loads(body)
    except (json.JSONDecodeError, TypeError):
        return fallback
    error = data.get("error") if isinstance(data, dict) else None
    message = error.get("message") if isinstance(error, dict) else None
    if isinstance(message, str) and message:
        return message
    return fallback


class CompletionClient:
    """
    Streams chat completions over an httpx.AsyncClient.

    Pass http_client to share a transport (or to test with
    httpx.MockTransport); otherwise one is created lazily and closed by
    aclose().
    """

    def __init__(
        self,
        http_client: httpx.AsyncClient | None = None,
        timeout: float = 120,
        wire_log: WireLog | None = None,
    ):
        self._http = http_client
        self._owns_http = http_client is None
        self.timeout = timeout
        self.wire_log = wire_log

    @property
    def http(self) -> httpx.AsyncClient:
        if self._http is None:
            self._http = httpx.AsyncClient(timeout=self.timeout)
        return self._http

    async def aclose(self) -> None:
        if self._http is not None and self._owns_http:
            await self._http.aclose()
        self._http = None

    async def __aenter__(self) -> "CompletionClient":
        return self

    async def __aexit__(self, *exc) -> None:
        await self.aclose()

    async def send(
        self,
        request: CompletionRequest,
        on_chunk: Callable[[str], None] | None = None,
        cancel: CancelToken | None = None,
        conversation_id: str = "",
    ) -> CompletionResult:
        """
        Send one streaming completion.

        on_chunk is called synchronously for each delta, in stream order.
        If `cancel` fires, reading stops and the result is exactly
        CompletionResult("", "Request cancelled"). Deltas already handed to
        on_chunk are not retracted; partial text is dropped from the result.
        """
        if not request.api_key:
            return CompletionResult.failure(API_KEY_MISSING)
        if not request.messages:
            return CompletionResult.failure(NO_MESSAGES)
        if cancel is not None and cancel.cancelled:
            return CompletionResult.failure(REQUEST_CANCELLED)

        self._tap(lambda log: log.log_request(request.build_messages(), request.model, conversation_id))

        if cancel is None:
            result = await self._stream(request, on_chunk)
        else:
            result = await self._stream_cancellable(request, on_chunk, cancel)

        if result.ok:
            self._tap(lambda log: log.log("response", "assistant", result.content, request.model, conversation_id))
        else:
            self._tap(lambda log: log.log("response", "error", result.error, request.model, conversation_id))
        return result

    def _tap(self, write: Callable[[WireLog], None]) -> None:
        """Run one wire-log write. A failing log never fails the request."""
        if self.wire_log is None:
            return
        try:
            write(self.wire_log)
        except Exception as e:
            logger.warning("Wire log write to %s failed: %r", self.wire_log.log_path, e)

    async def _stream_cancellable(
        self,
        request: CompletionRequest,
        on_chunk: Callable[[str], None] | None,
        cancel: CancelToken,
    ) -> CompletionResult:
        work = asyncio.ensure_future(self._stream(request, on_chunk))
        waiter = asyncio.ensure_future(cancel.wait())
        try:
            await asyncio.wait({work, waiter}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            work.cancel()
            raise
        finally:
            waiter.cancel()

        if work.done():
            return work.result()

        work.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await work
        logger.info("Completion to %s cancelled by caller", request.endpoint)
        return CompletionResult.failure(REQUEST_CANCELLED)

    async def _stream(
        self,
        request: CompletionRequest,
        on_chunk: Callable[[str], None] | None,
    ) -> CompletionResult:
        headers = {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {request.api_key}",
        }
        t0 = time.monotonic()
        try:
            async with self.http.stream(
                "POST",
                request.endpoint,
                json=request.build_payload(),
                headers=headers,
            ) as resp:
                if not resp.is_success:
                    body = (await resp.aread()).decode("utf-8", errors="replace")
                    message = parse_api_error(resp.status_code, body)
                    logger.warning(
                        "Completion API returned HTTP %d: %s", resp.status_code, message
                    )
                    return CompletionResult.failure(message)

                if resp.status_code == 204 or resp.stream is None:
                    logger.warning("Completion API returned no body (HTTP %d)", resp.status_code)
                    return CompletionResult.failure(NO_RESPONSE_BODY)

                content = await parse_sse_stream(
                    IteratorByteSource(resp.aiter_bytes()), on_chunk
                )
        except Exception as e:
            logger.warning("Completion request to %s failed: %r", request.endpoint, e)
            return CompletionResult.failure(str(e) or UNKNOWN_ERROR)

        logger.debug(
            "Completion from %s: %d chars in %.0fms",
            request.model,
            len(content),
            (time.monotonic() - t0) * 1000,
        )
        return CompletionResult(content=content)
