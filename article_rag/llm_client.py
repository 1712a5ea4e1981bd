"""Model provider client (embeddings + responses) with error handling.

Talks to Volcengine Ark compatible endpoints:
- ``POST /embeddings/multimodal``: ``data`` may be a list of items or one item
- ``POST /responses``: ordered ``output`` items, each with a role and content segments

Payloads are decoded into pydantic models here so nothing downstream has to
guess at their shape.
"""
from typing import Any, Dict, List, Optional, Type, Union

import httpx
import structlog
from pydantic import BaseModel, Field, ValidationError

from article_rag import config
from article_rag.errors import EmbeddingError, GenerationError, ProviderError

logger = structlog.get_logger()


class APIError(BaseModel):
    message: str = ""
    type: Optional[str] = None
    code: Optional[str] = None


class EmbeddingItem(BaseModel):
    embedding: List[float]
    index: Optional[int] = None


class EmbeddingResponse(BaseModel):
    """Embedding payload; ``data`` is either a list of items or a single item."""

    data: Union[List[EmbeddingItem], EmbeddingItem, None] = None
    error: Optional[APIError] = None

    def as_list(self) -> List[EmbeddingItem]:
        """Collapse both response shapes into one list."""
        if self.data is None:
            return []
        if isinstance(self.data, EmbeddingItem):
            return [self.data]
        return list(self.data)


class ContentSegment(BaseModel):
    type: Optional[str] = None
    text: Optional[str] = None


class OutputItem(BaseModel):
    type: Optional[str] = None
    role: Optional[str] = None
    content: List[ContentSegment] = Field(default_factory=list)


class ResponsesResult(BaseModel):
    output: List[OutputItem] = Field(default_factory=list)
    error: Optional[APIError] = None

    def first_assistant_text(self) -> Optional[str]:
        """First text segment of the first assistant message, if any.

        Reasoning items and other non-message outputs are skipped.
        """
        for item in self.output:
            if item.role != "assistant":
                continue
            if item.type is not None and item.type != "message":
                continue
            for segment in item.content:
                if segment.text is not None:
                    return segment.text
        return None


class ArkClient:
    """Async client for the embedding and generation provider."""

    def __init__(
        self,
        base_url: str = None,
        api_key: str = None,
        embedding_model: str = None,
        chat_model: str = None,
        timeout: float = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """Initialize the provider client.

        Args:
            base_url: API base URL (defaults to config.ARK_BASE_URL)
            api_key: Bearer token (defaults to config.ARK_API_KEY)
            embedding_model: Embedding model / endpoint id
            chat_model: Generation model / endpoint id
            timeout: Request timeout in seconds
            transport: Optional httpx transport (used by tests)
        """
        self.base_url = (base_url or config.ARK_BASE_URL).rstrip("/")
        self.api_key = api_key if api_key is not None else config.ARK_API_KEY
        self.embedding_model = embedding_model or config.EMBEDDING_MODEL
        self.chat_model = chat_model or config.CHAT_MODEL
        self.timeout = config.PROVIDER_TIMEOUT if timeout is None else timeout
        if self.timeout <= 0:
            raise ValueError(f"Timeout must be positive, got {self.timeout}")
        self.transport = transport

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    async def _post(
        self,
        path: str,
        payload: Dict[str, Any],
        error_cls: Type[ProviderError],
    ) -> Dict[str, Any]:
        url = f"{self.base_url}{path}"
        try:
            async with httpx.AsyncClient(
                timeout=self.timeout, transport=self.transport
            ) as client:
                response = await client.post(url, json=payload, headers=self._headers())
        except httpx.TimeoutException as e:
            logger.error("provider_timeout", path=path, timeout=self.timeout)
            raise error_cls(f"Provider request timed out after {self.timeout}s") from e
        except httpx.HTTPError as e:
            logger.error("provider_connection_error", path=path, error=str(e))
            raise error_cls(f"Provider request failed: {e}") from e

        if response.is_error:
            logger.error(
                "provider_http_error",
                path=path,
                status_code=response.status_code,
                body=response.text[:500],
            )
            raise error_cls(
                f"Provider returned HTTP {response.status_code}: {response.text[:200]}",
                status_code=response.status_code,
            )

        try:
            return response.json()
        except ValueError as e:
            raise error_cls(f"Provider returned invalid JSON: {e}") from e

    async def embeddings(self, texts: List[str]) -> EmbeddingResponse:
        """Embed an ordered list of texts in one provider call.

        Raises:
            EmbeddingError: On network, HTTP, decoding or provider errors
        """
        payload = {
            "model": self.embedding_model,
            "input": [{"type": "text", "text": text} for text in texts],
        }

        logger.debug(
            "embedding_request", model=self.embedding_model, batch_size=len(texts)
        )
        data = await self._post("/embeddings/multimodal", payload, EmbeddingError)

        try:
            result = EmbeddingResponse.model_validate(data)
        except ValidationError as e:
            raise EmbeddingError(f"Unexpected embedding payload: {e}") from e

        if result.error is not None:
            logger.error(
                "embedding_provider_error",
                message=result.error.message,
                code=result.error.code,
            )
            raise EmbeddingError(f"Provider error: {result.error.message}")

        return result

    async def responses(self, messages: List[Dict[str, str]]) -> ResponsesResult:
        """Send role-tagged turns to the generation model.

        Args:
            messages: List of dicts with 'role' and 'content'

        Raises:
            GenerationError: On network, HTTP, decoding or provider errors
        """
        payload = {
            "model": self.chat_model,
            "input": [
                {
                    "role": message["role"],
                    "content": [{"type": "input_text", "text": message["content"]}],
                }
                for message in messages
            ],
        }

        logger.info(
            "generation_request", model=self.chat_model, turn_count=len(messages)
        )
        data = await self._post("/responses", payload, GenerationError)

        try:
            result = ResponsesResult.model_validate(data)
        except ValidationError as e:
            raise GenerationError(f"Unexpected responses payload: {e}") from e

        if result.error is not None:
            logger.error(
                "generation_provider_error",
                message=result.error.message,
                code=result.error.code,
            )
            raise GenerationError(f"Provider error: {result.error.message}")

        return result
