# src/content_gateway/converter.py
"""
Translation between the gateway's internal generation format and the OpenAI
chat-completions wire format.

Internal requests look like::

    {
        "model": "coder-model",
        "contents": [
            {"role": "user", "parts": [{"text": "hi"}]},
            {"role": "model", "parts": [{"function_call": {"id": ..., "name": ..., "args": {...}}}]},
            {"role": "user", "parts": [{"function_response": {"id": ..., "name": ..., "response": {...}}}]},
        ],
        "config": {"system_instruction": "...", "tools": [...], "temperature": 0.2, ...},
    }

Internal responses carry ``candidates`` (role "model" content with parts and a
finish reason), ``usage_metadata`` and, when the provider returned any,
a normalized ``reasoning_content`` string.
"""

import json
import logging
import time
from typing import Any, Dict, List, Optional

from .streaming_tool_call_parser import StreamingToolCallParser

lib_logger = logging.getLogger("content_gateway")

FINISH_REASON_MAP = {
    "stop": "STOP",
    "length": "MAX_TOKENS",
    "tool_calls": "STOP",
    "function_call": "STOP",
    "content_filter": "SAFETY",
}

# Internal config keys and their OpenAI request names
SAMPLING_KEY_MAP = {
    "temperature": "temperature",
    "top_p": "top_p",
    "max_output_tokens": "max_tokens",
    "max_tokens": "max_tokens",
    "presence_penalty": "presence_penalty",
    "frequency_penalty": "frequency_penalty",
    "stop_sequences": "stop",
    "seed": "seed",
}


def _compact_json(value: Any) -> str:
    return json.dumps(value, separators=(",", ":"), ensure_ascii=False)


def _item_text(item: Any) -> str:
    if isinstance(item, str):
        return item
    if isinstance(item, dict):
        for key in ("text", "content"):
            if isinstance(item.get(key), str):
                return item[key]
    return ""


def normalize_reasoning_content(value: Any) -> Optional[str]:
    """
    Collapse the reasoning payload shapes providers send into one string.

    - str: returned as is
    - list: each item's text concatenated
    - dict with a "content" list: that list's text, then "summary"
    - dict with a "text" string: that text
    - any other non-empty dict: its compact JSON
    - None or empty: None
    """
    if value is None:
        return None
    if isinstance(value, str):
        return value or None
    if isinstance(value, list):
        return "".join(_item_text(item) for item in value) or None
    if isinstance(value, dict):
        if not value:
            return None
        if isinstance(value.get("content"), list):
            text = "".join(_item_text(item) for item in value["content"])
            summary = value.get("summary")
            if isinstance(summary, list):
                text += "".join(_item_text(item) for item in summary)
            elif isinstance(summary, str):
                text += summary
            return text or None
        if isinstance(value.get("text"), str):
            return value["text"] or None
        return _compact_json(value)
    return str(value)


def function_response_to_text(response: Any) -> str:
    """Tool message content for a function response: error, else string output, else JSON."""
    if isinstance(response, dict):
        if response.get("error") is not None:
            error = response["error"]
            return error if isinstance(error, str) else _compact_json(error)
        if isinstance(response.get("output"), str):
            return response["output"]
    if isinstance(response, str):
        return response
    return _compact_json(response)


def _as_parts(content: Any) -> List[Dict[str, Any]]:
    if isinstance(content, str):
        return [{"text": content}]
    if isinstance(content, dict):
        return [
            {"text": part} if isinstance(part, str) else part
            for part in content.get("parts") or []
        ]
    if isinstance(content, list):
        parts = []
        for item in content:
            if isinstance(item, str):
                parts.append({"text": item})
            elif isinstance(item, dict) and "parts" in item:
                parts.extend(_as_parts(item))
            elif isinstance(item, dict):
                parts.append(item)
        return parts
    return []


def _normalize_contents(contents: Any) -> List[Dict[str, Any]]:
    if contents is None:
        return []
    if isinstance(contents, str):
        return [{"role": "user", "parts": [{"text": contents}]}]
    if isinstance(contents, dict):
        return [contents]
    if all(isinstance(item, dict) and "role" in item for item in contents):
        return list(contents)
    # Bare part list
    return [{"role": "user", "parts": _as_parts(list(contents))}]


class OpenAIContentConverter:
    """
    Stateless converter apart from the streaming tool-call buffer, which
    belongs to one in-flight stream and must be reset before the next one.
    """

    def __init__(self, model: str):
        self.model = model
        self.streaming_tool_call_parser = StreamingToolCallParser()

    def reset_streaming_tool_calls(self) -> None:
        self.streaming_tool_call_parser.reset()

    # ------------------------------------------------------------------
    # Request direction
    # ------------------------------------------------------------------

    def convert_request_to_openai(self, request: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Flatten internal contents (plus system instruction) into OpenAI messages."""
        messages: List[Dict[str, Any]] = []
        config = request.get("config") or {}

        system_text = self._system_instruction_text(config.get("system_instruction"))
        if system_text:
            messages.append({"role": "system", "content": system_text})

        for content in _normalize_contents(request.get("contents")):
            role = content.get("role", "user")
            parts = _as_parts(content)
            if role == "model":
                message = self._assistant_message(parts)
                if message:
                    messages.append(message)
            elif role == "system":
                text = "".join(p.get("text", "") for p in parts if "text" in p)
                if text:
                    messages.append({"role": "system", "content": text})
            else:
                messages.extend(self._user_messages(parts))
        return messages

    def _system_instruction_text(self, instruction: Any) -> str:
        if not instruction:
            return ""
        if isinstance(instruction, str):
            return instruction
        return "\n".join(
            part["text"] for part in _as_parts(instruction) if part.get("text")
        )

    def _assistant_message(self, parts: List[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
        texts = []
        tool_calls = []
        for part in parts:
            if part.get("thought"):
                continue
            if "function_call" in part:
                call = part["function_call"]
                tool_calls.append(
                    {
                        "id": call.get("id") or f"call_{call.get('name')}_{len(tool_calls)}",
                        "type": "function",
                        "function": {
                            "name": call.get("name"),
                            "arguments": json.dumps(call.get("args") or {}, ensure_ascii=False),
                        },
                    }
                )
            elif part.get("text"):
                texts.append(part["text"])

        if not texts and not tool_calls:
            return None
        message: Dict[str, Any] = {"role": "assistant", "content": "".join(texts) or None}
        if tool_calls:
            message["tool_calls"] = tool_calls
        return message

    def _user_messages(self, parts: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        messages = []
        content_items: List[Dict[str, Any]] = []
        has_media = False
        for part in parts:
            if "function_response" in part:
                fn = part["function_response"]
                messages.append(
                    {
                        "role": "tool",
                        "tool_call_id": fn.get("id") or "",
                        "content": function_response_to_text(fn.get("response")),
                    }
                )
            elif "inline_data" in part:
                data = part["inline_data"]
                has_media = True
                content_items.append(
                    {
                        "type": "image_url",
                        "image_url": {
                            "url": f"data:{data.get('mime_type')};base64,{data.get('data')}"
                        },
                    }
                )
            elif part.get("text"):
                content_items.append({"type": "text", "text": part["text"]})

        if content_items:
            if has_media:
                messages.append({"role": "user", "content": content_items})
            else:
                messages.append(
                    {"role": "user", "content": "".join(i["text"] for i in content_items)}
                )
        return messages

    def convert_tools(self, tools: Optional[List[Dict[str, Any]]]) -> List[Dict[str, Any]]:
        """Internal function declarations to OpenAI ``tools`` entries."""
        converted = []
        for tool in tools or []:
            for decl in tool.get("function_declarations") or []:
                parameters = decl.get("parameters") or decl.get("parameters_json_schema")
                converted.append(
                    {
                        "type": "function",
                        "function": {
                            "name": decl["name"],
                            "description": decl.get("description", ""),
                            "parameters": parameters or {"type": "object", "properties": {}},
                        },
                    }
                )
        return converted

    def build_openai_request(
        self,
        request: Dict[str, Any],
        stream: bool,
        sampling_params: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """Full chat-completions payload: messages, tools, sampling and extras."""
        config = request.get("config") or {}
        payload: Dict[str, Any] = {
            "model": self.model,
            "messages": self.convert_request_to_openai(request),
        }

        for key, value in (sampling_params or {}).items():
            payload[SAMPLING_KEY_MAP.get(key, key)] = value
        for key, target in SAMPLING_KEY_MAP.items():
            if config.get(key) is not None:
                payload[target] = config[key]

        tools = self.convert_tools(config.get("tools"))
        if tools:
            payload["tools"] = tools

        reasoning_effort = request.get("reasoning_effort")
        if reasoning_effort:
            payload["reasoning_effort"] = reasoning_effort
        thinking_type = request.get("thinking_type")
        if thinking_type:
            payload["thinking"] = {"type": thinking_type}

        if stream:
            payload["stream"] = True
            payload["stream_options"] = {"include_usage": True}
        return payload

    # ------------------------------------------------------------------
    # Response direction
    # ------------------------------------------------------------------

    def _usage_metadata(self, usage: Optional[Dict[str, Any]]) -> Optional[Dict[str, int]]:
        if not usage:
            return None
        prompt = usage.get("prompt_tokens") or 0
        completion = usage.get("completion_tokens") or 0
        metadata = {
            "prompt_token_count": prompt,
            "candidates_token_count": completion,
            "total_token_count": usage.get("total_tokens") or prompt + completion,
        }
        details = usage.get("completion_tokens_details") or {}
        if details.get("reasoning_tokens"):
            metadata["thoughts_token_count"] = details["reasoning_tokens"]
        cached = (usage.get("prompt_tokens_details") or {}).get("cached_tokens")
        if cached:
            metadata["cached_content_token_count"] = cached
        return metadata

    def _envelope(
        self,
        data: Dict[str, Any],
        parts: List[Dict[str, Any]],
        finish_reason: Optional[str],
    ) -> Dict[str, Any]:
        candidate: Dict[str, Any] = {
            "index": 0,
            "content": {"role": "model", "parts": parts},
        }
        if finish_reason:
            candidate["finish_reason"] = FINISH_REASON_MAP.get(finish_reason, "FINISH_REASON_UNSPECIFIED")
        response = {
            "response_id": data.get("id"),
            "create_time": data.get("created") or int(time.time()),
            "model_version": data.get("model") or self.model,
            "candidates": [candidate],
        }
        usage = self._usage_metadata(data.get("usage"))
        if usage:
            response["usage_metadata"] = usage
        return response

    def convert_openai_response_to_internal(self, response: Dict[str, Any]) -> Dict[str, Any]:
        """Map a non-streamed chat completion into the internal response shape."""
        choices = response.get("choices") or []
        choice = choices[0] if choices else {}
        message = choice.get("message") or {}

        parts: List[Dict[str, Any]] = []
        if message.get("content"):
            parts.append({"text": message["content"]})
        for tool_call in message.get("tool_calls") or []:
            function = tool_call.get("function") or {}
            try:
                args = json.loads(function.get("arguments") or "{}")
            except (json.JSONDecodeError, TypeError):
                lib_logger.warning(
                    f"Tool call '{function.get('name')}' returned invalid JSON arguments"
                )
                args = {}
            parts.append(
                {
                    "function_call": {
                        "id": tool_call.get("id"),
                        "name": function.get("name"),
                        "args": args,
                    }
                }
            )

        result = self._envelope(response, parts, choice.get("finish_reason"))
        reasoning = normalize_reasoning_content(message.get("reasoning_content"))
        if reasoning is not None:
            result["reasoning_content"] = reasoning
        return result

    def convert_openai_chunk_to_internal(self, chunk: Dict[str, Any]) -> Dict[str, Any]:
        """
        Map one streamed chunk. Tool-call fragments are buffered and emitted as
        function_call parts on the chunk that carries finish_reason.
        """
        choices = chunk.get("choices") or []
        choice = choices[0] if choices else {}
        delta = choice.get("delta") or {}
        finish_reason = choice.get("finish_reason")

        parts: List[Dict[str, Any]] = []
        if delta.get("content"):
            parts.append({"text": delta["content"]})

        for tool_call in delta.get("tool_calls") or []:
            function = tool_call.get("function") or {}
            self.streaming_tool_call_parser.add_chunk(
                tool_call.get("index") or 0,
                function.get("arguments") or "",
                tool_call.get("id"),
                function.get("name"),
            )

        if finish_reason:
            for call in self.streaming_tool_call_parser.get_completed_tool_calls():
                parts.append(
                    {
                        "function_call": {
                            "id": call["id"],
                            "name": call["name"],
                            "args": call["args"],
                        }
                    }
                )
            self.streaming_tool_call_parser.reset()

        result = self._envelope(chunk, parts, finish_reason)
        reasoning = normalize_reasoning_content(delta.get("reasoning_content"))
        if reasoning is not None:
            result["reasoning_content"] = reasoning
        return result

    def convert_embedding_response(self, response: Dict[str, Any]) -> Dict[str, Any]:
        return {
            "embeddings": [
                {"values": item.get("embedding") or []}
                for item in response.get("data") or []
            ]
        }
