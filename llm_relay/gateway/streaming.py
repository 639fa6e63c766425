"""Stream Decoder — incremental parser for server-sent completion events.

Wire format (newline-delimited records):

    data: {"id": "...", "model": "...", "choices": [{"delta": {"content": "Hi"}}]}
    data: [DONE]

Chunks from the transport may split a record anywhere, including inside
a multi-byte UTF-8 character, so bytes are decoded incrementally and
only complete lines are parsed. Malformed payloads are skipped with a
warning; the sequence ends at the [DONE] sentinel or when the transport
closes.
"""

from __future__ import annotations

import codecs
import json
import logging
from collections.abc import AsyncIterator

from llm_relay.core.metrics import STREAM_PARSE_ERRORS
from llm_relay.gateway.cancellation import CancellationToken
from llm_relay.gateway.errors import StreamParseError, TransportError
from llm_relay.gateway.transport import TransportResponse
from llm_relay.gateway.types import StreamEvent

logger = logging.getLogger(__name__)

DATA_PREFIX = "data:"
DONE_SENTINEL = "[DONE]"


class _Done(Exception):
    """Internal signal: the sentinel record was reached."""


def _parse_line(line: str) -> StreamEvent | None:
    """Decode one complete line. Returns None for lines carrying no event."""
    line = line.strip()
    if not line or not line.startswith(DATA_PREFIX):
        # Blank keep-alives, ":" comments and event:/id: fields
        return None

    payload = line[len(DATA_PREFIX) :].strip()
    if payload == DONE_SENTINEL:
        raise _Done()

    try:
        data = json.loads(payload)
        if not isinstance(data, dict):
            raise ValueError(f"expected an object, got {type(data).__name__}")
        return StreamEvent.from_payload(data)
    except ValueError as e:
        # Bad JSON and well-formed JSON of the wrong shape are both skipped
        err = StreamParseError(f"Skipping malformed stream record: {e}", line=line)
        STREAM_PARSE_ERRORS.inc()
        logger.warning("%s (%.200s)", err.message, line)
        return None


async def decode_stream(chunks: AsyncIterator[bytes | str]) -> AsyncIterator[StreamEvent]:
    """Turn raw transport chunks into a lazy sequence of StreamEvents."""
    decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
    buffer = ""

    try:
        async for chunk in chunks:
            buffer += decoder.decode(chunk) if isinstance(chunk, bytes) else chunk
            *lines, buffer = buffer.split("\n")
            for line in lines:
                event = _parse_line(line)
                if event is not None:
                    yield event

        # Transport closed: flush whatever is left as a final record
        buffer += decoder.decode(b"", final=True)
        for line in buffer.split("\n"):
            event = _parse_line(line)
            if event is not None:
                yield event
    except _Done:
        return


async def open_event_stream(
    response: TransportResponse,
    token: CancellationToken | None = None,
) -> AsyncIterator[StreamEvent]:
    """Validate the transport status, then decode the body stream.

    A non-2xx status is terminal: the body is read once for error detail
    and no events are produced. The response is closed on every exit.
    """
    try:
        if not 200 <= response.status < 300:
            detail = await response.read_error_body()
            raise TransportError(
                f"Stream request failed with status {response.status}",
                status=response.status,
                data=detail,
            )

        async for event in decode_stream(response.iter_chunks(token)):
            yield event
    finally:
        await response.aclose()
