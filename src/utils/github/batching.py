import re
import uuid
import asyncio
import logging
from enum import Enum
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from src.utils.github.errors import BatchFailureError, ClientDestroyedError

logger = logging.getLogger("github-batching")

_NAME = re.compile(r"[_A-Za-z][_0-9A-Za-z]*")
_VARIABLE = re.compile(r"\$([_A-Za-z][_0-9A-Za-z]*)")
_STRING = re.compile(r'"""(?:\\"""|[^"]|"(?!""))*"""|"(?:\\.|[^"\\])*"')
_COMMENT = re.compile(r"#[^\n]*")


class BatchState(str, Enum):
    IDLE = "idle"
    ACCUMULATING = "accumulating"
    FLUSHING = "flushing"


@dataclass
class QueuedQuery:
    query: str
    variables: Dict[str, Any]
    future: asyncio.Future
    id: str = field(default_factory=lambda: uuid.uuid4().hex)


@dataclass
class _ParsedQuery:
    variable_definitions: str
    selections: str


def _strip_comments(document: str) -> str:
    # Comments cannot be stripped inside strings, so rebuild around them
    out = []
    pos = 0
    for match in _STRING.finditer(document):
        out.append(_COMMENT.sub("", document[pos : match.start()]))
        out.append(match.group(0))
        pos = match.end()
    out.append(_COMMENT.sub("", document[pos:]))
    return "".join(out)


def _skip_string(text: str, pos: int) -> int:
    match = _STRING.match(text, pos)
    if not match:
        raise ValueError("Unterminated string in GraphQL document")
    return match.end()


def _find_closing(text: str, pos: int, opening: str, closing: str) -> int:
    """Index just past the bracket matching the one at text[pos]."""
    depth = 0
    while pos < len(text):
        ch = text[pos]
        if ch == '"':
            pos = _skip_string(text, pos)
            continue
        if ch == opening:
            depth += 1
        elif ch == closing:
            depth -= 1
            if depth == 0:
                return pos + 1
        pos += 1
    raise ValueError(f"Unbalanced '{opening}' in GraphQL document")


def _skip_ignored(text: str, pos: int) -> int:
    while pos < len(text) and (text[pos].isspace() or text[pos] == ","):
        pos += 1
    return pos


def _parse_query(document: str) -> _ParsedQuery:
    """
    Splits a single-operation query document into its variable definitions
    and top-level selection set.

    Raises:
        ValueError: If the document is not a single plain query.
    """
    text = _strip_comments(document).strip()
    pos = 0
    if text.startswith("{"):
        definitions = ""
    else:
        match = _NAME.match(text, pos)
        if not match or match.group(0) != "query":
            raise ValueError("Only query operations can be batched")
        pos = _skip_ignored(text, match.end())
        name = _NAME.match(text, pos)
        if name:
            pos = _skip_ignored(text, name.end())
        definitions = ""
        if pos < len(text) and text[pos] == "(":
            end = _find_closing(text, pos, "(", ")")
            definitions = text[pos + 1 : end - 1].strip()
            pos = _skip_ignored(text, end)
        if pos >= len(text) or text[pos] != "{":
            raise ValueError("Query directives and fragments cannot be batched")
        text = text[pos:]

    end = _find_closing(text, 0, "{", "}")
    if text[end:].strip():
        raise ValueError("Documents with more than one definition cannot be batched")
    return _ParsedQuery(variable_definitions=definitions, selections=text[1 : end - 1])


def is_batchable(document: str) -> bool:
    """True for a single query operation without fragments."""
    try:
        parsed = _parse_query(document)
        _alias_selections(parsed.selections, "q0_")
    except ValueError:
        return False
    return True


def _rename_variables(text: str, suffix: str) -> str:
    def rename(match):
        return f"${match.group(1)}{suffix}"

    out = []
    pos = 0
    for match in _STRING.finditer(text):
        out.append(_VARIABLE.sub(rename, text[pos : match.start()]))
        out.append(match.group(0))
        pos = match.end()
    out.append(_VARIABLE.sub(rename, text[pos:]))
    return "".join(out)


def _alias_selections(selections: str, prefix: str) -> Tuple[str, Dict[str, str]]:
    """
    Prefixes every top-level field with an alias.

    Returns the rewritten selection set and a map of merged alias to the
    response key the caller originally asked for.
    """
    out: List[str] = []
    aliases: Dict[str, str] = {}
    pos = _skip_ignored(selections, 0)

    while pos < len(selections):
        if selections.startswith("...", pos):
            raise ValueError("Top-level fragment spreads cannot be batched")
        match = _NAME.match(selections, pos)
        if not match:
            raise ValueError(f"Unexpected token in selection set at {pos}")
        name = match.group(0)
        pos = _skip_ignored(selections, match.end())

        if pos < len(selections) and selections[pos] == ":":
            pos = _skip_ignored(selections, pos + 1)
            field_match = _NAME.match(selections, pos)
            if not field_match:
                raise ValueError(f"Missing field name after alias {name}")
            response_key, field_name = name, field_match.group(0)
            pos = field_match.end()
        else:
            response_key, field_name = name, name
            pos = match.end()

        merged = f"{prefix}{response_key}"
        aliases[merged] = response_key
        start = pos

        # Arguments, directives and a nested selection set belong to this field
        while True:
            pos = _skip_ignored(selections, pos)
            if pos >= len(selections):
                break
            ch = selections[pos]
            if ch == "(":
                pos = _find_closing(selections, pos, "(", ")")
            elif ch == "@":
                directive = _NAME.match(selections, pos + 1)
                if not directive:
                    raise ValueError("Malformed directive")
                pos = directive.end()
            elif ch == "{":
                pos = _find_closing(selections, pos, "{", "}")
                break
            else:
                break

        out.append(f"{merged}: {field_name}{selections[start:pos]}")
        pos = _skip_ignored(selections, pos)

    if not out:
        raise ValueError("Empty selection set")
    return "\n  ".join(out), aliases


def merge_queries(
    items: List[QueuedQuery],
) -> Tuple[str, Dict[str, Any], List[Dict[str, str]]]:
    """
    Combines several query documents into one aliased document.

    Item i has its variables renamed to <name>_i and its top-level fields
    aliased as q<i>_<response key>.

    Returns:
        (document, variables, alias_maps) where alias_maps[i] maps merged
        aliases back to the response keys of item i.
    """
    definitions: List[str] = []
    selections: List[str] = []
    variables: Dict[str, Any] = {}
    alias_maps: List[Dict[str, str]] = []

    for index, item in enumerate(items):
        parsed = _parse_query(item.query)
        suffix = f"_{index}"
        if parsed.variable_definitions:
            definitions.append(_rename_variables(parsed.variable_definitions, suffix))
        body, aliases = _alias_selections(
            _rename_variables(parsed.selections, suffix), f"q{index}_"
        )
        selections.append(body)
        alias_maps.append(aliases)
        for key, value in (item.variables or {}).items():
            variables[f"{key}{suffix}"] = value

    header = "query BatchedQuery"
    if definitions:
        header += f"({', '.join(definitions)})"
    document = header + " {\n  " + "\n  ".join(selections) + "\n}"
    return document, variables, alias_maps


def split_results(
    data: Dict[str, Any], alias_maps: List[Dict[str, str]]
) -> List[Dict[str, Any]]:
    return [
        {original: data.get(merged) for merged, original in aliases.items()}
        for aliases in alias_maps
    ]


class GraphQLBatchQueue:
    """
    Collects GraphQL queries submitted within a short window and sends them
    as one aliased request.

    IDLE -> ACCUMULATING when the first query arrives (flush timer starts),
    ACCUMULATING -> FLUSHING when the timer fires or max_batch_size items are
    queued, FLUSHING -> IDLE (or straight back to ACCUMULATING when more
    items arrived meanwhile). A failed combined request rejects every item
    of that flush with the same BatchFailureError.
    """

    def __init__(
        self,
        execute: Callable[[str, Dict[str, Any]], Awaitable[Dict[str, Any]]],
        window: float = 0.1,
        max_batch_size: int = 10,
    ):
        self.execute = execute
        self.window = window
        self.max_batch_size = max_batch_size
        self.state = BatchState.IDLE
        self._queue: List[QueuedQuery] = []
        self._timer: Optional[asyncio.TimerHandle] = None
        self._flush_task: Optional[asyncio.Task] = None
        self._closed = False

    @property
    def pending(self) -> int:
        return len(self._queue)

    async def submit(self, query: str, variables: Optional[Dict[str, Any]] = None):
        """
        Queues a query and waits for its own slice of the batched response.
        """
        if self._closed:
            raise ClientDestroyedError("GraphQL client destroyed")

        loop = asyncio.get_running_loop()
        item = QueuedQuery(
            query=query, variables=variables or {}, future=loop.create_future()
        )
        self._queue.append(item)

        if self.state is BatchState.IDLE:
            self.state = BatchState.ACCUMULATING
            self._timer = loop.call_later(self.window, self._on_timer)

        if (
            self.state is BatchState.ACCUMULATING
            and len(self._queue) >= self.max_batch_size
        ):
            self._start_flush()

        return await item.future

    async def flush(self):
        """Flush queued items now instead of waiting for the window."""
        if self.state is BatchState.ACCUMULATING:
            self._start_flush()
        if self._flush_task is not None:
            await asyncio.shield(self._flush_task)

    async def close(self):
        """Reject everything still queued and stop the timer."""
        self._closed = True
        self._cancel_timer()
        error = ClientDestroyedError(
            "GraphQL client destroyed", context={"pending": len(self._queue)}
        )
        queued, self._queue = self._queue, []
        for item in queued:
            if not item.future.done():
                item.future.set_exception(error)
        if self._flush_task is not None and not self._flush_task.done():
            self._flush_task.cancel()
            try:
                await self._flush_task
            except asyncio.CancelledError:
                pass
        self.state = BatchState.IDLE

    def _on_timer(self):
        self._timer = None
        if self.state is BatchState.ACCUMULATING:
            self._start_flush()

    def _cancel_timer(self):
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _start_flush(self):
        self._cancel_timer()
        self.state = BatchState.FLUSHING
        batch = self._queue[: self.max_batch_size]
        del self._queue[: self.max_batch_size]
        self._flush_task = asyncio.get_running_loop().create_task(self._flush(batch))

    async def _flush(self, batch: List[QueuedQuery]):
        logger.debug(f"Flushing GraphQL batch of {len(batch)} queries")
        try:
            if len(batch) == 1:
                results = [await self.execute(batch[0].query, batch[0].variables)]
            else:
                document, variables, alias_maps = merge_queries(batch)
                data = await self.execute(document, variables)
                results = split_results(data, alias_maps)
        except asyncio.CancelledError:
            error = ClientDestroyedError("GraphQL client destroyed")
            for item in batch:
                if not item.future.done():
                    item.future.set_exception(error)
            raise
        except Exception as e:
            logger.error(f"GraphQL batch of {len(batch)} queries failed: {e}")
            error = BatchFailureError(
                f"GraphQL batch request failed: {e}", batch_size=len(batch), cause=e
            )
            for item in batch:
                if not item.future.done():
                    item.future.set_exception(error)
        else:
            for item, result in zip(batch, results):
                if not item.future.done():
                    item.future.set_result(result)
        finally:
            self._flush_task = None
            if self._closed:
                self.state = BatchState.IDLE
            elif self._queue:
                self._resume()
            else:
                self.state = BatchState.IDLE

    def _resume(self):
        if len(self._queue) >= self.max_batch_size:
            self._start_flush()
        else:
            self.state = BatchState.ACCUMULATING
            self._timer = asyncio.get_running_loop().call_later(
                self.window, self._on_timer
            )
