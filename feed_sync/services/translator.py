"""Translation client.

This module talks to a chat-completions endpoint to translate article text.
It supports single-shot requests and the line-delimited streaming protocol
(``data: <json>`` frames terminated by ``data: [DONE]``).
"""

import asyncio
import json
import logging
from typing import Any, Callable, Dict, List, Optional, Protocol, Sequence, Tuple

import httpx

from feed_sync.config import TranslatorConfig
from feed_sync.errors import (
    ApiError,
    ConfigError,
    ExtractionError,
    TransportError,
)
from feed_sync.models.schemas import AIPlatform, ChatMessage, TranslationTask


logger = logging.getLogger(__name__)

MAX_CONTENT_CHARS = 8192
DONE_SENTINEL = "data: [DONE]"
DATA_PREFIX = "data: "


class FragmentSink(Protocol):
    async def put(self, item: str) -> None:
        ...


def truncate_chars(text: str, limit: int) -> str:
    """Truncate to at most `limit` characters (code points, never bytes)."""
    return text[:limit]


def extract_error_message(body: str) -> str:
    """Pull a human-readable message out of an error response body.

    Known shapes: {"message": ...}, {"error": {"message": ...}} and
    {"error": "..."}. Anything else yields the raw body.
    """
    try:
        data = json.loads(body)
    except ValueError:
        return body

    if isinstance(data, dict):
        message = data.get("message")
        if isinstance(message, str):
            return message
        error = data.get("error")
        if isinstance(error, dict) and isinstance(error.get("message"), str):
            return error["message"]
        if isinstance(error, str):
            return error
    return body


class Translator:
    """Chat-completions client bound to one AI platform."""

    def __init__(
        self,
        config: Optional[TranslatorConfig] = None,
        platform: Optional[AIPlatform] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.config = config or TranslatorConfig()
        self.platform = platform
        self._transport = transport

    def _require_platform(self) -> AIPlatform:
        if self.platform is None:
            raise ConfigError("No default AI platform configured")
        return self.platform

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.config.timeout, transport=self._transport)

    def _headers(self, platform: AIPlatform) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {platform.api_key}",
            "Content-Type": "application/json",
        }

    def build_request(
        self,
        messages: Sequence[ChatMessage],
        stream: bool,
        max_tokens: Optional[int] = None,
        temperature: Optional[float] = None,
    ) -> Dict[str, Any]:
        platform = self._require_platform()
        return {
            "model": platform.api_model,
            "messages": [message.to_dict() for message in messages],
            "max_tokens": max_tokens if max_tokens is not None else self.config.max_tokens,
            "temperature": temperature if temperature is not None else self.config.temperature,
            "stream": stream,
        }

    async def chat_completion(
        self,
        messages: Sequence[ChatMessage],
        max_tokens: Optional[int] = None,
        temperature: Optional[float] = None,
    ) -> str:
        """Send a non-streaming chat request and return the reply text.

        Raises:
            ConfigError: If no platform is configured
            TransportError: If the HTTP call fails
            ApiError: If the endpoint returns an error
            ExtractionError: If the reply lacks choices[0].message.content
        """
        platform = self._require_platform()
        payload = self.build_request(messages, False, max_tokens, temperature)

        async with self._client() as client:
            try:
                response = await client.post(
                    platform.api_url, headers=self._headers(platform), json=payload
                )
            except httpx.HTTPError as e:
                raise TransportError(f"Translation request failed: {e}") from e

        if not response.is_success:
            message = extract_error_message(response.text)
            logger.warning(f"AI platform {platform.name} returned {response.status_code}: {message}")
            raise ApiError(f"API error: {message}", status_code=response.status_code)

        try:
            data = response.json()
        except ValueError as e:
            raise ExtractionError(f"Response is not valid JSON: {e}") from e

        if isinstance(data, dict) and data.get("error"):
            raise ApiError(
                f"API error: {extract_error_message(response.text)}",
                status_code=response.status_code,
            )

        try:
            content = data["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError) as e:
            raise ExtractionError("Failed to extract chat content from response") from e
        if not isinstance(content, str):
            raise ExtractionError("Failed to extract chat content from response")
        return content

    async def translate_text(
        self,
        text: str,
        target_language: str,
        source_language: Optional[str] = None,
    ) -> str:
        """Translate a piece of text and return the trimmed result."""
        task = TranslationTask(
            text=text, target_language=target_language, source_language=source_language
        )
        logger.debug(f"Translating {len(text)} characters to {target_language}")
        reply = await self.chat_completion([ChatMessage(role="user", content=task.prompt())])
        return reply.strip()

    async def translate_article(
        self,
        title: str,
        content: str,
        target_language: str,
    ) -> Tuple[str, str]:
        """Translate an article's title and content.

        Content is cut to MAX_CONTENT_CHARS characters first; the title is
        sent whole. Either call failing fails the whole operation.
        """
        translated_title = await self.translate_text(title, target_language)

        if len(content) > MAX_CONTENT_CHARS:
            logger.debug(f"Content too long ({len(content)} chars), truncating to {MAX_CONTENT_CHARS}")
        translated_content = await self.translate_text(
            truncate_chars(content, MAX_CONTENT_CHARS), target_language
        )
        return translated_title, translated_content

    async def chat_completion_stream(
        self,
        messages: Sequence[ChatMessage],
        sink: FragmentSink,
        max_tokens: Optional[int] = None,
        temperature: Optional[float] = None,
    ) -> int:
        """Stream a chat reply, forwarding content fragments to `sink`.

        Returns:
            Number of fragments forwarded

        Raises:
            ConfigError: If no platform is configured
            TransportError: If the HTTP call or body read fails
            ApiError: If the endpoint answers with a non-2xx status
        """
        platform = self._require_platform()
        payload = self.build_request(messages, True, max_tokens, temperature)
        sent = 0

        async with self._client() as client:
            try:
                async with client.stream(
                    "POST", platform.api_url, headers=self._headers(platform), json=payload
                ) as response:
                    if not response.is_success:
                        body = (await response.aread()).decode("utf-8", errors="replace")
                        message = extract_error_message(body)
                        logger.warning(
                            f"AI platform {platform.name} returned {response.status_code}: {message}"
                        )
                        raise ApiError(f"API error: {message}", status_code=response.status_code)

                    buffer = b""
                    async for chunk in response.aiter_bytes():
                        buffer += chunk
                        while b"\n" in buffer:
                            raw_line, buffer = buffer.split(b"\n", 1)
                            line = raw_line.decode("utf-8", errors="replace").strip()
                            if not line:
                                continue
                            if line == DONE_SENTINEL:
                                logger.debug(f"Stream finished, {sent} fragments sent")
                                return sent
                            sent += await self._forward_frame(line, sink)
            except httpx.HTTPError as e:
                raise TransportError(f"Streaming request failed: {e}") from e

        logger.debug(f"Stream closed without [DONE], {sent} fragments sent")
        return sent

    async def _forward_frame(self, line: str, sink: FragmentSink) -> int:
        if not line.startswith(DATA_PREFIX):
            return 0

        try:
            frame = json.loads(line[len(DATA_PREFIX):])
        except ValueError as e:
            # Keep-alive and heartbeat lines are not JSON
            logger.debug(f"Skipping unparseable stream frame: {e}")
            return 0

        choices = frame.get("choices") if isinstance(frame, dict) else None
        if not isinstance(choices, list):
            logger.debug(f"Skipping stream frame without a choices list: {line}")
            return 0

        sent = 0
        for choice in choices:
            delta = choice.get("delta") if isinstance(choice, dict) else None
            if not isinstance(delta, dict):
                logger.debug(f"Skipping malformed stream choice: {choice!r}")
                continue
            fragment = delta.get("content")
            if fragment and isinstance(fragment, str):
                await sink.put(fragment)
                sent += 1
                await asyncio.sleep(self.config.stream_fragment_delay)
        return sent


async def stream_chat(
    translator: Translator,
    messages: Sequence[ChatMessage],
    on_fragment: Callable[[str], Any],
    queue_size: int = 100,
) -> str:
    """Run a streamed chat request with a concurrent consumer.

    A bounded queue sits between the network read loop and the consumer
    that hands each fragment to `on_fragment`.

    If the listener raises, the stream is cancelled and the listener's
    error propagates; a failing request propagates its TranslationError.

    Returns:
        The full reply text
    """
    queue: "asyncio.Queue[Optional[str]]" = asyncio.Queue(maxsize=queue_size)
    fragments: List[str] = []

    async def consume() -> None:
        while True:
            fragment = await queue.get()
            if fragment is None:
                return
            fragments.append(fragment)
            result = on_fragment(fragment)
            if asyncio.iscoroutine(result):
                await result

    producer = asyncio.create_task(translator.chat_completion_stream(messages, queue))
    consumer = asyncio.create_task(consume())
    tasks = [producer, consumer]
    try:
        await asyncio.wait(tasks, return_when=asyncio.FIRST_EXCEPTION)
        if consumer.done():
            # The listener failed; stop reading the stream
            producer.cancel()
            consumer.result()
        producer.result()

        finish = asyncio.create_task(queue.put(None))
        tasks.append(finish)
        await asyncio.wait([finish, consumer], return_when=asyncio.FIRST_EXCEPTION)
        consumer.result()
    finally:
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    return "".join(fragments)
