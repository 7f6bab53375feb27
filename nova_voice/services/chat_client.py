"""HTTP client for OpenAI-compatible chat-completions endpoints."""

from __future__ import annotations

import asyncio
import logging
import socket
from typing import Any, Awaitable, Callable, Iterable, Optional, Sequence

import httpx

from nova_voice.config.settings import Settings
from nova_voice.config.store import ConfigStore
from nova_voice.core.errors import ChatClientError, ChatErrorKind
from nova_voice.core.trace import new_request_id

from .schemas import Attachment, ChatResult, ConversationTurn, Role, StreamSession
from .stream import decode_line, extract_message_text

LOGGER = logging.getLogger(__name__)

ChunkCallback = Callable[[str], None]
Sleep = Callable[[float], Awaitable[Any]]

_DNS_MARKERS = (
    "name or service not known",
    "nodename nor servname",
    "temporary failure in name resolution",
    "getaddrinfo failed",
    "no address associated",
)
_OFFLINE_MARKERS = ("network is unreachable", "no route to host")


def join_url(base_url: str, endpoint: str) -> str:
    return f"{base_url.rstrip('/')}/{endpoint.lstrip('/')}"


def _error_chain(exc: BaseException) -> Iterable[BaseException]:
    seen: set[int] = set()
    current: BaseException | None = exc
    while current is not None and id(current) not in seen:
        seen.add(id(current))
        yield current
        current = current.__cause__ or current.__context__


def classify_transport_error(exc: Exception) -> ChatClientError:
    """Map an httpx failure onto the chat error taxonomy."""
    message = str(exc) or exc.__class__.__name__
    if isinstance(exc, (httpx.InvalidURL, httpx.UnsupportedProtocol)):
        return ChatClientError(ChatErrorKind.UNREACHABLE, f"Invalid server address: {message}", transient=False)
    if isinstance(exc, httpx.TimeoutException):
        return ChatClientError(ChatErrorKind.TIMEOUT, message)
    if isinstance(exc, httpx.ConnectError):
        for link in _error_chain(exc):
            text = str(link).lower()
            if isinstance(link, socket.gaierror) or any(marker in text for marker in _DNS_MARKERS):
                return ChatClientError(ChatErrorKind.NO_NETWORK, message)
            if any(marker in text for marker in _OFFLINE_MARKERS):
                return ChatClientError(ChatErrorKind.NO_NETWORK, message)
        return ChatClientError(ChatErrorKind.UNREACHABLE, message)
    if isinstance(exc, httpx.DecodingError):
        return ChatClientError(ChatErrorKind.DECODE_ERROR, message)
    if isinstance(exc, httpx.TransportError):
        # read/write errors, resets, protocol violations mid-response
        return ChatClientError(ChatErrorKind.UNREACHABLE, message)
    return ChatClientError(ChatErrorKind.UNREACHABLE, message, transient=False)


class StreamingChatClient:
    """Send a conversation to the model endpoint, in batch or streaming mode.

    Endpoint, model and generation parameters come from the config store on
    every call. Transient failures retry the whole request with exponential
    backoff, except once streamed text has already been delivered.
    """

    def __init__(
        self,
        store: ConfigStore,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self.store = store
        self._transport = transport
        self._sleep = sleep

    # ------------------------------------------------------------------ #
    # Public API
    # ------------------------------------------------------------------ #
    async def send(
        self,
        history: Sequence[ConversationTurn],
        new_turn: ConversationTurn | str,
        attachment: Attachment | None = None,
    ) -> ChatResult:
        messages = self.build_messages(history, new_turn, attachment)
        return await self._request(messages, stream=False)

    async def stream(
        self,
        history: Sequence[ConversationTurn],
        new_turn: ConversationTurn | str,
        attachment: Attachment | None = None,
        on_chunk: ChunkCallback | None = None,
    ) -> ChatResult:
        messages = self.build_messages(history, new_turn, attachment)
        return await self._request(messages, stream=True, on_chunk=on_chunk)

    async def ping(self) -> ChatResult:
        """List models as a reachability check; text holds the model ids."""
        settings = self.store.current
        url = join_url(settings.chat_base_url, "/models")
        try:
            async with self._client(settings) as client:
                response = await client.get(url, headers=self._headers(settings, stream=False))
        except (httpx.HTTPError, httpx.InvalidURL) as exc:
            return ChatResult("", classify_transport_error(exc))
        if not response.is_success:
            return ChatResult("", ChatClientError(ChatErrorKind.SERVER_STATUS, status_code=response.status_code))
        try:
            data = response.json()
        except ValueError as exc:
            return ChatResult("", ChatClientError(ChatErrorKind.DECODE_ERROR, str(exc)))
        models = data.get("data") if isinstance(data, dict) else None
        names = [str(item.get("id")) for item in models or [] if isinstance(item, dict) and item.get("id")]
        return ChatResult(", ".join(names))

    def build_messages(
        self,
        history: Sequence[ConversationTurn],
        new_turn: ConversationTurn | str,
        attachment: Attachment | None = None,
    ) -> list[dict[str, Any]]:
        """System turn (from config), prior turns, then the new user turn."""
        settings = self.store.current
        messages: list[dict[str, Any]] = []
        has_system = any(turn.role is Role.SYSTEM for turn in history)
        if settings.system_prompt.strip() and not has_system:
            messages.append(ConversationTurn.system(settings.system_prompt).to_message())
        messages.extend(turn.to_message() for turn in history)
        if isinstance(new_turn, str):
            new_turn = ConversationTurn.user(new_turn, attachment)
        elif attachment is not None:
            new_turn = ConversationTurn(new_turn.role, new_turn.text, attachment)
        messages.append(new_turn.to_message())
        return messages

    def build_payload(self, messages: list[dict[str, Any]], *, stream: bool, settings: Settings | None = None) -> dict[str, Any]:
        settings = settings or self.store.current
        return {
            "model": settings.chat_model,
            "messages": messages,
            "stream": stream,
            "temperature": settings.chat_temperature,
            "max_tokens": settings.chat_max_tokens,
        }

    # ------------------------------------------------------------------ #
    # Internals
    # ------------------------------------------------------------------ #
    def _client(self, settings: Settings) -> httpx.AsyncClient:
        timeout = httpx.Timeout(settings.chat_timeout_sec, connect=min(10.0, settings.chat_timeout_sec))
        return httpx.AsyncClient(timeout=timeout, transport=self._transport)

    @staticmethod
    def _headers(settings: Settings, *, stream: bool, request_id: str | None = None) -> dict[str, str]:
        headers = {
            "Content-Type": "application/json",
            "Accept": "text/event-stream" if stream else "application/json",
        }
        headers.update(settings.chat_extra_headers)
        if settings.chat_api_key:
            headers["Authorization"] = f"Bearer {settings.chat_api_key}"
        if request_id:
            headers["X-Request-ID"] = request_id
        return headers

    async def _request(
        self,
        messages: list[dict[str, Any]],
        *,
        stream: bool,
        on_chunk: ChunkCallback | None = None,
    ) -> ChatResult:
        settings = self.store.current
        session = StreamSession(request_id=new_request_id())
        max_attempts = settings.chat_max_attempts
        for attempt in range(max_attempts):
            session.attempts = attempt + 1
            try:
                if stream:
                    await self._stream_once(settings, session, messages, on_chunk)
                else:
                    await self._send_once(settings, session, messages)
            except ChatClientError as exc:
                session.last_error = exc
                if not exc.transient or session.chunks or attempt + 1 >= max_attempts:
                    break
                delay = settings.chat_backoff_base_sec * (2**attempt)
                LOGGER.warning(
                    "Chat request %s failed (%s), retrying in %.1fs (%d/%d)",
                    session.request_id,
                    exc.kind.value,
                    delay,
                    attempt + 1,
                    max_attempts,
                )
                await self._sleep(delay)
                continue
            session.is_complete = True
            session.last_error = None
            LOGGER.info(
                "Chat request %s complete (%d chars, %d attempt(s))",
                session.request_id,
                len(session.accumulated_text),
                session.attempts,
            )
            return ChatResult(session.accumulated_text)

        LOGGER.error("Chat request %s failed: %r", session.request_id, session.last_error)
        return ChatResult(session.accumulated_text, session.last_error)

    async def _send_once(self, settings: Settings, session: StreamSession, messages: list[dict[str, Any]]) -> None:
        url = join_url(settings.chat_base_url, settings.chat_endpoint)
        payload = self.build_payload(messages, stream=False, settings=settings)
        headers = self._headers(settings, stream=False, request_id=session.request_id)
        try:
            async with self._client(settings) as client:
                response = await client.post(url, json=payload, headers=headers)
        except (httpx.HTTPError, httpx.InvalidURL) as exc:
            raise classify_transport_error(exc) from exc
        if not response.is_success:
            raise ChatClientError(
                ChatErrorKind.SERVER_STATUS,
                f"HTTP {response.status_code}: {response.text[:200]}",
                status_code=response.status_code,
            )
        try:
            data = response.json()
        except ValueError as exc:
            raise ChatClientError(ChatErrorKind.DECODE_ERROR, "Response is not JSON") from exc
        text = extract_message_text(data)
        if text is None:
            raise ChatClientError(ChatErrorKind.DECODE_ERROR, "Response has no message content")
        session.append(text)

    async def _stream_once(
        self,
        settings: Settings,
        session: StreamSession,
        messages: list[dict[str, Any]],
        on_chunk: ChunkCallback | None,
    ) -> None:
        url = join_url(settings.chat_base_url, settings.chat_endpoint)
        payload = self.build_payload(messages, stream=True, settings=settings)
        headers = self._headers(settings, stream=True, request_id=session.request_id)
        try:
            async with self._client(settings) as client:
                async with client.stream("POST", url, json=payload, headers=headers) as response:
                    if not response.is_success:
                        body = (await response.aread()).decode("utf-8", errors="replace")
                        raise ChatClientError(
                            ChatErrorKind.SERVER_STATUS,
                            f"HTTP {response.status_code}: {body[:200]}",
                            status_code=response.status_code,
                        )
                    async for line in response.aiter_lines():
                        frame = decode_line(line)
                        if frame is None:
                            continue
                        if frame.done:
                            return
                        if frame.delta:
                            session.append(frame.delta)
                            self._deliver(on_chunk, frame.delta)
                        if frame.finish_reason:
                            return
        except (httpx.HTTPError, httpx.InvalidURL) as exc:
            raise classify_transport_error(exc) from exc

    @staticmethod
    def _deliver(on_chunk: Optional[ChunkCallback], delta: str) -> None:
        if on_chunk is None:
            return
        try:
            on_chunk(delta)
        except Exception:
            LOGGER.exception("Chunk subscriber failed")
