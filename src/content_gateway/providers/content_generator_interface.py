from abc import ABC, abstractmethod
from typing import Any, AsyncGenerator, Dict, Optional

GenerateContentRequest = Dict[str, Any]
GenerateContentResponse = Dict[str, Any]


class ContentGenerator(ABC):
    """
    The surface every generation backend exposes, whatever its credentials.

    Requests and responses use the internal format documented in
    content_gateway.converter.
    """

    @abstractmethod
    async def generate_content(
        self, request: GenerateContentRequest, prompt_id: Optional[str] = None
    ) -> GenerateContentResponse:
        pass

    @abstractmethod
    async def generate_content_stream(
        self, request: GenerateContentRequest, prompt_id: Optional[str] = None
    ) -> AsyncGenerator[GenerateContentResponse, None]:
        """
        Open a streamed generation. Awaiting this sends the request and fails
        on HTTP errors; the returned generator yields converted chunks.
        """
        pass

    @abstractmethod
    async def count_tokens(self, request: GenerateContentRequest) -> Dict[str, int]:
        """Returns {"total_tokens": n}."""
        pass

    @abstractmethod
    async def embed_content(self, request: Dict[str, Any]) -> Dict[str, Any]:
        """Returns {"embeddings": [{"values": [...]}, ...]}."""
        pass

    async def aclose(self) -> None:
        """Release HTTP resources. Generators without any keep this no-op."""
        pass
