# src/content_gateway/streaming_tool_call_parser.py

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

lib_logger = logging.getLogger("content_gateway")


@dataclass
class ToolCallParseResult:
    complete: bool
    value: Optional[Any] = None
    error: Optional[str] = None


@dataclass
class _IndexState:
    buffer: str = ""
    depth: int = 0
    in_string: bool = False
    escape: bool = False
    id: Optional[str] = None
    name: Optional[str] = None

    def is_complete(self) -> bool:
        return bool(self.buffer.strip()) and self.depth == 0 and not self.in_string


class StreamingToolCallParser:
    """
    Reassembles tool-call argument JSON that arrives in fragments across the
    chunks of one streamed completion.

    Fragments are keyed by the provider's tool-call index. Each index tracks
    its JSON nesting depth and string/escape state, so completion is known
    without reparsing the buffer on every chunk. Some providers reuse index 0
    for every call; a new call id arriving at an index that already holds a
    finished call is moved to the next free index.
    """

    def __init__(self):
        self._states: Dict[int, _IndexState] = {}
        self._id_to_index: Dict[str, int] = {}
        self._next_free_index = 0

    def _next_available_index(self) -> int:
        while self._next_free_index in self._states and self._states[
            self._next_free_index
        ].buffer.strip():
            self._next_free_index += 1
        return self._next_free_index

    def _most_recent_incomplete_index(self) -> Optional[int]:
        incomplete = [
            index
            for index, state in self._states.items()
            if state.buffer.strip() and not state.is_complete()
        ]
        return max(incomplete) if incomplete else None

    def _resolve_index(self, index: int, tool_id: Optional[str]) -> int:
        if tool_id:
            if tool_id in self._id_to_index:
                return self._id_to_index[tool_id]
            state = self._states.get(index)
            if (
                state is not None
                and state.is_complete()
                and state.id
                and state.id != tool_id
            ):
                index = self._next_available_index()
            self._id_to_index[tool_id] = index
            return index

        state = self._states.get(index)
        if state is not None and state.is_complete():
            # Continuation fragment without an id after the call at this index closed
            recent = self._most_recent_incomplete_index()
            if recent is not None:
                return recent
        return index

    def add_chunk(
        self,
        index: int,
        chunk: Optional[str],
        tool_id: Optional[str] = None,
        name: Optional[str] = None,
    ) -> ToolCallParseResult:
        """Append one argument fragment and report whether the JSON is now complete."""
        actual_index = self._resolve_index(index, tool_id)
        state = self._states.setdefault(actual_index, _IndexState())
        if tool_id:
            state.id = tool_id
        if name:
            state.name = name

        for char in chunk or "":
            state.buffer += char
            if state.escape:
                state.escape = False
            elif state.in_string and char == "\\":
                state.escape = True
            elif char == '"':
                state.in_string = not state.in_string
            elif not state.in_string:
                if char in "{[":
                    state.depth += 1
                elif char in "}]":
                    state.depth -= 1

        if state.depth != 0 or not state.buffer.strip() or state.in_string:
            return ToolCallParseResult(complete=False)

        try:
            return ToolCallParseResult(complete=True, value=json.loads(state.buffer))
        except json.JSONDecodeError as e:
            return ToolCallParseResult(complete=False, error=str(e))

    def get_buffer(self, index: int) -> str:
        state = self._states.get(index)
        return state.buffer if state else ""

    def get_state(self, index: int) -> Dict[str, Any]:
        state = self._states.get(index) or _IndexState()
        return {"depth": state.depth, "in_string": state.in_string, "escape": state.escape}

    def get_tool_call_meta(self, index: int) -> Dict[str, Optional[str]]:
        state = self._states.get(index)
        if state is None:
            return {}
        return {"id": state.id, "name": state.name}

    def _parse_buffer(self, state: _IndexState) -> Dict[str, Any]:
        buffer = state.buffer.strip()
        if not buffer:
            return {}
        try:
            args = json.loads(buffer)
        except json.JSONDecodeError:
            # A stream cut inside a string value: close the string and retry
            if state.in_string and state.depth >= 0:
                repaired = buffer + '"' + "}" * max(state.depth, 0)
                try:
                    args = json.loads(repaired)
                except json.JSONDecodeError:
                    args = None
            else:
                args = None
            if args is None:
                lib_logger.warning(
                    f"Dropping unparseable arguments for tool call '{state.name}': {buffer[:200]}"
                )
                return {}
        return args if isinstance(args, dict) else {"value": args}

    def get_completed_tool_calls(self) -> List[Dict[str, Any]]:
        """Every buffered call that has a function name, in index order."""
        completed = []
        for index in sorted(self._states):
            state = self._states[index]
            if not state.name:
                continue
            completed.append(
                {
                    "id": state.id,
                    "name": state.name,
                    "args": self._parse_buffer(state),
                    "index": index,
                }
            )
        return completed

    def reset_index(self, index: int) -> None:
        self._states.pop(index, None)
        for tool_id in [k for k, v in self._id_to_index.items() if v == index]:
            del self._id_to_index[tool_id]

    def reset(self) -> None:
        self._states.clear()
        self._id_to_index.clear()
        self._next_free_index = 0
