"""
Streaming Module - Event stream for a finished answer.
======================================================

The answer is fully known before streaming starts; it is replayed as
fixed-size ``chunk`` events with a small delay, followed by exactly one
``meta`` event and an end-of-stream marker:

    data: {"type": "chunk", "value": "..."}
    ...
    data: {"type": "meta", "groundingStatus": "...", "citations": [...], "sessionId": "..."}
    data: [DONE]

Consumers must treat the meta event as the authoritative grounding verdict.
Closing the generator (client disconnect) stops further chunk scheduling.
"""

import json
import time
from typing import Any, Callable, Iterator, Optional

from course_ta.shared.config import get_settings
from course_ta.shared.logging import get_logger
from course_ta.shared.schemas import AnswerResult

logger = get_logger(__name__)

SSE_DONE = "data: [DONE]\n\n"


def split_chunks(text: str, size: int = 60) -> list[str]:
    """
    Split text into fixed-size chunks; empty text yields one empty chunk.

    Example:
        >>> split_chunks("abcdef", 4)
        ['abcd', 'ef']
    """
    text = text or ""
    if not text:
        return [""]
    return [text[i : i + size] for i in range(0, len(text), size)]


def iter_events(
    result: AnswerResult,
    chunk_size: Optional[int] = None,
    delay: Optional[float] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> Iterator[dict[str, Any]]:
    """
    Yield chunk events followed by the meta event.

    Args:
        result: Finished answer
        chunk_size: Characters per chunk (default from config)
        delay: Seconds between chunks (default from config)
        sleep: Sleep function, injectable for tests

    Yields:
        Event dictionaries
    """
    config = get_settings().streaming
    chunk_size = chunk_size or config.chunk_size
    delay = config.chunk_delay_seconds if delay is None else delay

    chunks = split_chunks(result.answer, chunk_size)
    sent = 0
    try:
        for chunk in chunks:
            yield {"type": "chunk", "value": chunk}
            sent += 1
            if delay > 0:
                sleep(delay)
        yield {"type": "meta", **result.meta()}
    except GeneratorExit:
        logger.debug(f"Stream closed by consumer after {sent}/{len(chunks)} chunks")
        raise


def encode_sse(event: dict[str, Any]) -> str:
    """Encode one event as a server-sent-events data line."""
    return f"data: {json.dumps(event, ensure_ascii=False)}\n\n"


def iter_sse(
    result: AnswerResult,
    chunk_size: Optional[int] = None,
    delay: Optional[float] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> Iterator[str]:
    """
    Yield the full server-sent-events stream, terminated by ``[DONE]``.

    Convenience wrapper around ``iter_events``.
    """
    events = iter_events(result, chunk_size=chunk_size, delay=delay, sleep=sleep)
    try:
        for event in events:
            yield encode_sse(event)
        yield SSE_DONE
    finally:
        events.close()
