# src/content_gateway/providers/openai_content_generator.py

import asyncio
import json
import logging
from typing import Any, AsyncGenerator, Dict, List, Optional

import httpx
import litellm
from litellm.exceptions import AuthenticationError, RateLimitError

from ..config import ContentGeneratorConfig
from ..converter import OpenAIContentConverter
from ..timeout_config import TimeoutConfig
from .content_generator_interface import ContentGenerator

lib_logger = logging.getLogger("content_gateway")

PROVIDER_NAME = "openai"
DEFAULT_USER_AGENT = "content-gateway/0.1.0"


def aggregate_stream_responses(chunks: List[Dict[str, Any]]) -> Dict[str, Any]:
    """Fold converted stream chunks into one non-streamed response."""
    text = []
    reasoning = []
    other_parts = []
    finish_reason = None
    usage = None
    last = chunks[-1] if chunks else {}

    for chunk in chunks:
        if chunk.get("reasoning_content"):
            reasoning.append(chunk["reasoning_content"])
        if chunk.get("usage_metadata"):
            usage = chunk["usage_metadata"]
        for candidate in chunk.get("candidates") or []:
            if candidate.get("finish_reason"):
                finish_reason = candidate["finish_reason"]
            for part in (candidate.get("content") or {}).get("parts") or []:
                if "text" in part and len(part) == 1:
                    text.append(part["text"])
                else:
                    other_parts.append(part)

    parts = ([{"text": "".join(text)}] if text else []) + other_parts
    candidate: Dict[str, Any] = {"index": 0, "content": {"role": "model", "parts": parts}}
    if finish_reason:
        candidate["finish_reason"] = finish_reason
    response = {
        "response_id": last.get("response_id"),
        "create_time": last.get("create_time"),
        "model_version": last.get("model_version"),
        "candidates": [candidate],
    }
    if usage:
        response["usage_metadata"] = usage
    if reasoning:
        response["reasoning_content"] = "".join(reasoning)
    return response


class OpenAIContentGenerator(ContentGenerator):
    """
    Generator for OpenAI-compatible chat-completions endpoints with a static
    API key.

    ``api_key`` and ``base_url`` are plain attributes; a credential wrapper
    may replace them between calls.
    """

    def __init__(
        self,
        config: ContentGeneratorConfig,
        http_client: Optional[httpx.AsyncClient] = None,
        sleep=asyncio.sleep,
    ):
        self.config = config
        self.model = config.model
        self.api_key = config.api_key
        self.base_url = (config.base_url or "https://api.openai.com/v1").rstrip("/")
        self.converter = OpenAIContentConverter(self.model)
        self._http_client = http_client
        self._owns_client = http_client is None
        self._sleep = sleep

    def _get_client(self) -> httpx.AsyncClient:
        if self._http_client is None:
            kwargs: Dict[str, Any] = {"timeout": TimeoutConfig.non_streaming(self.config.timeout)}
            if self.config.proxy:
                kwargs["proxy"] = self.config.proxy
            self._http_client = httpx.AsyncClient(**kwargs)
        return self._http_client

    async def aclose(self) -> None:
        if self._owns_client and self._http_client is not None:
            await self._http_client.aclose()
            self._http_client = None

    def _headers(self, stream: bool = False) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
            "Accept": "text/event-stream" if stream else "application/json",
            "User-Agent": self.config.user_agent or DEFAULT_USER_AGENT,
        }

    def _url(self, path: str) -> str:
        return f"{self.base_url.rstrip('/')}/{path.lstrip('/')}"

    def _model_for(self, request: Dict[str, Any]) -> str:
        return request.get("model") or self.model

    def _raise_for_status(self, response: httpx.Response, error_text: str) -> None:
        if response.status_code < 400:
            return
        model = self.model
        if response.status_code == 429:
            raise RateLimitError(
                f"Rate limit exceeded: {error_text}",
                llm_provider=PROVIDER_NAME,
                model=model,
                response=response,
            )
        if response.status_code == 401:
            raise AuthenticationError(
                f"Unauthorized: {error_text}",
                llm_provider=PROVIDER_NAME,
                model=model,
                response=response,
            )
        raise httpx.HTTPStatusError(
            f"HTTP {response.status_code}: {error_text}",
            request=response.request,
            response=response,
        )

    async def _post_json(self, path: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        client = self._get_client()
        attempts = (self.config.max_retries or 0) + 1
        url = self._url(path)
        for attempt in range(attempts):
            try:
                response = await client.post(
                    url,
                    headers=self._headers(),
                    json=payload,
                    timeout=TimeoutConfig.non_streaming(self.config.timeout),
                )
            except httpx.TransportError as e:
                if attempt < attempts - 1:
                    wait_time = 2**attempt
                    lib_logger.warning(
                        f"Network error calling {url}: {e}, retry {attempt + 1}/{attempts - 1} in {wait_time}s"
                    )
                    await self._sleep(wait_time)
                    continue
                raise

            if response.status_code >= 500 and attempt < attempts - 1:
                wait_time = 2**attempt
                lib_logger.warning(
                    f"Server error (HTTP {response.status_code}), retry {attempt + 1}/{attempts - 1} in {wait_time}s"
                )
                await self._sleep(wait_time)
                continue

            self._raise_for_status(response, response.text)
            return response.json()
        raise RuntimeError("unreachable")

    async def generate_content(
        self, request: Dict[str, Any], prompt_id: Optional[str] = None
    ) -> Dict[str, Any]:
        if request.get("stream"):
            # Stream on the wire, hand back one response
            stream = await self.generate_content_stream(request, prompt_id)
            return aggregate_stream_responses([chunk async for chunk in stream])

        converter = OpenAIContentConverter(self._model_for(request))
        payload = converter.build_openai_request(
            request, stream=False, sampling_params=self.config.sampling_params
        )
        lib_logger.debug(f"Chat completion request for prompt '{prompt_id}' to {self.base_url}")
        data = await self._post_json("chat/completions", payload)
        return converter.convert_openai_response_to_internal(data)

    async def generate_content_stream(
        self, request: Dict[str, Any], prompt_id: Optional[str] = None
    ) -> AsyncGenerator[Dict[str, Any], None]:
        # One converter per stream so tool-call buffers never cross streams
        converter = OpenAIContentConverter(self._model_for(request))
        converter.reset_streaming_tool_calls()
        payload = converter.build_openai_request(
            request, stream=True, sampling_params=self.config.sampling_params
        )
        client = self._get_client()
        http_request = client.build_request(
            "POST",
            self._url("chat/completions"),
            headers=self._headers(stream=True),
            json=payload,
            timeout=TimeoutConfig.streaming(self.config.timeout),
        )
        lib_logger.debug(f"Streaming request for prompt '{prompt_id}' to {self.base_url}")
        response = await client.send(http_request, stream=True)
        if response.status_code >= 400:
            error_text = (await response.aread()).decode("utf-8", errors="replace")
            await response.aclose()
            self._raise_for_status(response, error_text)
        return self._iterate_stream(response, converter)

    async def _iterate_stream(
        self, response: httpx.Response, converter: OpenAIContentConverter
    ) -> AsyncGenerator[Dict[str, Any], None]:
        try:
            async for line in response.aiter_lines():
                if not line.startswith("data:"):
                    continue
                data_str = line[len("data:"):].strip()
                if data_str == "[DONE]":
                    break
                try:
                    chunk = json.loads(data_str)
                except json.JSONDecodeError:
                    lib_logger.warning(f"Could not decode stream chunk: {line}")
                    continue
                if isinstance(chunk, dict) and chunk.get("error"):
                    raise httpx.HTTPStatusError(
                        f"Stream error: {chunk['error']}",
                        request=response.request,
                        response=response,
                    )
                yield converter.convert_openai_chunk_to_internal(chunk)
        finally:
            await response.aclose()
            converter.reset_streaming_tool_calls()

    async def count_tokens(self, request: Dict[str, Any]) -> Dict[str, int]:
        converter = OpenAIContentConverter(self._model_for(request))
        messages = converter.convert_request_to_openai(request)
        total = litellm.token_counter(model=self._model_for(request), messages=messages)
        return {"total_tokens": total}

    async def embed_content(self, request: Dict[str, Any]) -> Dict[str, Any]:
        contents = request.get("contents")
        if isinstance(contents, str):
            inputs = [contents]
        else:
            inputs = [
                item if isinstance(item, str) else "".join(
                    p.get("text", "") for p in item.get("parts") or [] if isinstance(p, dict)
                )
                for item in contents or []
            ]
        payload = {"model": self._model_for(request), "input": inputs}
        data = await self._post_json("embeddings", payload)
        return self.converter.convert_embedding_response(data)
