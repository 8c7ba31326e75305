"""Client side of the answer stream: split bytes into sources, thinking, and answer.

Two stacked state machines share one :class:`ParserState`:

1. Line assembly. Incoming bytes are decoded incrementally (a multi-byte
   character may be split across chunks), appended to ``raw_tail``, and
   split on newlines. The last, possibly incomplete, fragment goes back
   into ``raw_tail``.
2. Think/answer scanning. Each text delta is routed to ``think_buffer``
   while inside ``<think>...</think>`` and to ``answer_buffer`` otherwise.
   A trailing fragment that could be the start of the next tag is held in
   ``tag_tail`` until the following delta shows whether it is one.

Feeding the same bytes in any chunking yields the same final buffers.
"""
from __future__ import annotations

import codecs
import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Literal, Optional, Union

import httpx

from .errors import MalformedStreamFrame
from .streaming import DATA_PREFIX, DONE_SENTINEL
from .types import SourceSummary

logger = logging.getLogger(__name__)

THINK_OPEN = "<think>"
THINK_CLOSE = "</think>"
CANCELLED_MARKER = "[request cancelled]"
ERROR_PREFIX = "Stream error: "
JSON_FALLBACK_MESSAGE = "The model response could not be parsed as JSON."

ParserMode = Literal["chat", "json"]

_THINK_BLOCK = re.compile(r"<think>.*?(</think>|$)", re.DOTALL)
_CODE_FENCE = re.compile(r"^```[a-zA-Z]*\s*|\s*```$")


@dataclass
class ParserState:
    """Everything the scanner knows about one in-flight answer."""

    is_inside_thinking_block: bool = False
    think_buffer: str = ""
    answer_buffer: str = ""
    raw_tail: str = ""
    tag_tail: str = ""
    thinking_complete: bool = False
    sources: List[SourceSummary] = field(default_factory=list)
    role: Literal["assistant", "error"] = "assistant"
    error: Optional[str] = None
    finished: bool = False
    cancelled: bool = False
    json_buffer: str = ""
    json_result: Optional[Dict[str, Any]] = None


@dataclass(frozen=True)
class StreamUpdate:
    """Snapshot emitted after every change to the parser state."""

    think_content: str
    main_content: str
    thinking_complete: bool
    role: str
    sources: List[SourceSummary]


def decode_record(content: str) -> Dict[str, Any]:
    """Parse the JSON body of one data line."""
    try:
        payload = json.loads(content)
    except json.JSONDecodeError as exc:
        raise MalformedStreamFrame(content, f"invalid JSON: {exc.msg}") from exc
    if not isinstance(payload, dict):
        raise MalformedStreamFrame(content, "record is not a JSON object")
    return payload


def extract_delta(payload: Dict[str, Any]) -> str:
    """Return the incremental text of a generation record, if any."""
    choices = payload.get("choices")
    if isinstance(choices, list) and choices and isinstance(choices[0], dict):
        delta = choices[0].get("delta") or {}
        content = delta.get("content") if isinstance(delta, dict) else None
        return content if isinstance(content, str) else ""
    # Ollama's native /api/chat shape.
    message = payload.get("message")
    if isinstance(message, dict) and isinstance(message.get("content"), str):
        return message["content"]
    return ""


def is_final_record(payload: Dict[str, Any]) -> bool:
    choices = payload.get("choices")
    if isinstance(choices, list) and choices and isinstance(choices[0], dict):
        if choices[0].get("finish_reason"):
            return True
    return payload.get("done") is True


def _error_message(error: Any) -> str:
    if isinstance(error, dict):
        return str(error.get("message") or error.get("detail") or error)
    return str(error)


def _partial_tag_length(text: str, tag: str) -> int:
    """Length of the longest suffix of ``text`` that is a proper prefix of ``tag``."""
    for size in range(min(len(text), len(tag) - 1), 0, -1):
        if text.endswith(tag[:size]):
            return size
    return 0


def parse_json_answer(raw: str) -> Dict[str, Any]:
    """Parse a completed JSON answer, falling back to an error record."""
    candidates = [raw.strip()]
    cleaned = _CODE_FENCE.sub("", _THINK_BLOCK.sub("", raw).strip()).strip()
    start, end = cleaned.find("{"), cleaned.rfind("}")
    if start != -1 and end > start:
        cleaned = cleaned[start : end + 1]
    candidates.append(cleaned)

    for candidate in candidates:
        if not candidate:
            continue
        try:
            value = json.loads(candidate)
        except json.JSONDecodeError:
            continue
        if isinstance(value, dict):
            return value
    return {"error": JSON_FALLBACK_MESSAGE, "raw": raw}


class StreamParser:
    """Incremental scanner for one answer stream.

    ``feed`` accepts bytes (decoded incrementally) or already-decoded text;
    use one or the other for a given stream. In ``json`` mode every text
    delta is also accumulated verbatim and parsed only once the stream ends.
    """

    def __init__(
        self,
        mode: ParserMode = "chat",
        on_update: Optional[Callable[[StreamUpdate], None]] = None,
    ) -> None:
        self.mode = mode
        self.state = ParserState()
        self._on_update = on_update
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")

    # -- public API ---------------------------------------------------------

    def feed(self, chunk: Union[bytes, str]) -> List[StreamUpdate]:
        """Consume one network chunk and return the updates it produced."""
        updates: List[StreamUpdate] = []
        if self.state.finished:
            return updates

        text = self._decoder.decode(chunk) if isinstance(chunk, bytes) else chunk
        lines = (self.state.raw_tail + text).split("\n")
        self.state.raw_tail = lines.pop()
        for line in lines:
            self._process_line(line, updates)
            if self.state.finished:
                break
        return updates

    def finish(self) -> List[StreamUpdate]:
        """Handle end of channel: flush partial input and close the answer."""
        updates: List[StreamUpdate] = []
        if self.state.finished:
            return updates
        tail = self.state.raw_tail + self._decoder.decode(b"", final=True)
        self.state.raw_tail = ""
        if tail.strip():
            self._process_line(tail, updates)
        self._complete(updates)
        return updates

    def cancel(self) -> List[StreamUpdate]:
        """Stop the answer on caller request and mark it as cancelled."""
        updates: List[StreamUpdate] = []
        if self.state.finished:
            return updates
        self._flush_tag_tail()
        state = self.state
        state.answer_buffer += ("\n" if state.answer_buffer else "") + CANCELLED_MARKER
        state.cancelled = True
        self._complete(updates)
        return updates

    def fail(self, message: str) -> List[StreamUpdate]:
        """End the answer as an error message in place of the answer text."""
        updates: List[StreamUpdate] = []
        if self.state.finished:
            return updates
        self._fail(message, updates)
        return updates

    # -- line level ---------------------------------------------------------

    def _process_line(self, line: str, updates: List[StreamUpdate]) -> None:
        stripped = line.strip()
        if not stripped or stripped.startswith(":"):
            return
        if stripped.startswith(DATA_PREFIX):
            content = stripped[len(DATA_PREFIX) :].strip()
        elif stripped.startswith("{"):
            content = stripped
        elif stripped.split(":", 1)[0] in ("event", "id", "retry"):
            return
        else:
            logger.warning("Skipping non-data stream line: %r", stripped[:120])
            return

        if content == DONE_SENTINEL:
            self._complete(updates)
            return

        try:
            payload = decode_record(content)
        except MalformedStreamFrame as exc:
            logger.warning("%s", exc)
            return
        self._process_record(payload, updates)

    def _process_record(self, payload: Dict[str, Any], updates: List[StreamUpdate]) -> None:
        sources = payload.get("sources")
        if isinstance(sources, list):
            self.state.sources = sources
            self._emit(updates)

        if payload.get("error"):
            self._fail(_error_message(payload["error"]), updates)
            return

        delta = extract_delta(payload)
        if delta:
            if self.mode == "json":
                self.state.json_buffer += delta
            self._scan(delta)
            self._emit(updates)

        if is_final_record(payload):
            self._complete(updates)

    # -- think/answer level -------------------------------------------------

    def _append(self, text: str) -> None:
        if not text:
            return
        if self.state.is_inside_thinking_block:
            self.state.think_buffer += text
        else:
            self.state.answer_buffer += text

    def _scan(self, delta: str) -> None:
        state = self.state
        remaining = state.tag_tail + delta
        state.tag_tail = ""
        # One delta may close a block and open the next; loop until consumed.
        while remaining:
            tag = THINK_CLOSE if state.is_inside_thinking_block else THINK_OPEN
            index = remaining.find(tag)
            if index != -1:
                self._append(remaining[:index])
                remaining = remaining[index + len(tag) :]
                state.is_inside_thinking_block = tag == THINK_OPEN
                state.thinking_complete = tag == THINK_CLOSE
                continue
            held = _partial_tag_length(remaining, tag)
            self._append(remaining[: len(remaining) - held])
            state.tag_tail = remaining[len(remaining) - held :]
            break

    def _flush_tag_tail(self) -> None:
        tail, self.state.tag_tail = self.state.tag_tail, ""
        self._append(tail)

    # -- terminal transitions -----------------------------------------------

    def _fail(self, message: str, updates: List[StreamUpdate]) -> None:
        logger.error("Answer stream reported an error: %s", message)
        self.state.tag_tail = ""
        self.state.role = "error"
        self.state.error = message
        self.state.answer_buffer = ERROR_PREFIX + message
        self._complete(updates)

    def _complete(self, updates: List[StreamUpdate]) -> None:
        state = self.state
        if state.finished:
            return
        self._flush_tag_tail()
        if self.mode == "json" and state.role != "error":
            state.json_result = parse_json_answer(state.json_buffer)
        # A model that never closes its reasoning block must not stay "in progress".
        state.thinking_complete = True
        state.finished = True
        self._emit(updates)

    def _emit(self, updates: List[StreamUpdate]) -> None:
        update = StreamUpdate(
            think_content=self.state.think_buffer,
            main_content=self.state.answer_buffer,
            thinking_complete=self.state.thinking_complete,
            role=self.state.role,
            sources=self.state.sources,
        )
        updates.append(update)
        if self._on_update is not None:
            self._on_update(update)


def consume_stream(chunks: Iterable[Union[bytes, str]], parser: StreamParser) -> ParserState:
    """Feed every chunk to ``parser`` and finish it when the channel closes."""
    iterator = iter(chunks)
    try:
        for chunk in iterator:
            parser.feed(chunk)
            if parser.state.finished:
                break
    finally:
        closer = getattr(iterator, "close", None)
        if callable(closer):
            closer()
    parser.finish()
    return parser.state


def _post_stream(
    url: str,
    body: Dict[str, Any],
    parser: StreamParser,
    client: Optional[httpx.Client],
    timeout_seconds: float,
) -> ParserState:
    http = client or httpx.Client(timeout=httpx.Timeout(timeout_seconds))
    try:
        with http.stream("POST", url, json=body) as response:
            if response.status_code >= 400:
                raw = response.read().decode("utf-8", errors="replace")
                try:
                    detail = json.loads(raw)
                    message = _error_message(detail.get("detail") or detail.get("error") or raw)
                except (ValueError, AttributeError):
                    message = raw or f"HTTP {response.status_code}"
                parser.fail(message)
                return parser.state
            return consume_stream(response.iter_bytes(), parser)
    except httpx.HTTPError as exc:
        parser.fail(f"Request failed: {exc}")
        return parser.state
    finally:
        if client is None:
            http.close()


def fetch_answer(
    url: str,
    query: str,
    parser: StreamParser,
    library_id: Optional[str] = None,
    top_k: Optional[int] = None,
    client: Optional[httpx.Client] = None,
    timeout_seconds: float = 30.0,
) -> ParserState:
    """POST a question to a running answer server and scan its stream.

    Non-success responses and transport failures end the answer with the
    error role instead of raising.
    """
    body: Dict[str, Any] = {"query": query}
    if library_id:
        body["libraryId"] = library_id
    if top_k:
        body["topK"] = top_k
    return _post_stream(url, body, parser, client, timeout_seconds)


def fetch_chat(
    url: str,
    messages: List[Dict[str, str]],
    parser: StreamParser,
    model: Optional[str] = None,
    client: Optional[httpx.Client] = None,
    timeout_seconds: float = 30.0,
) -> ParserState:
    """POST a conversation to a running chat endpoint and scan the reply."""
    body: Dict[str, Any] = {"messages": messages}
    if model:
        body["model"] = model
    return _post_stream(url, body, parser, client, timeout_seconds)
