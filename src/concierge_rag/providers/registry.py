"""
Provider Registry

A closed set of provider variants, each implementing the same capabilities:

- embed(texts, model, api_key, client)       -> parallel list of vectors
- stream_request(model, messages, ...)       -> URL, headers and JSON body
- extract_delta(payload) / is_end(payload)   -> per-event stream parsing
- list_models(api_key, client)               -> provider model ids

Two wire families exist: OpenAI-compatible (OpenAI, OpenRouter, xAI) and
Cohere-compatible. Providers are selected by configuration through
`get_provider(name)`; unknown names raise UnsupportedProviderError.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Sequence, Tuple

import httpx

from ..config import settings
from ..core.errors import (
    EmbeddingProviderError,
    GenerationProviderError,
    UnsupportedProviderError,
)

logger = logging.getLogger("concierge.providers")


StreamRequest = Tuple[str, Dict[str, str], Dict[str, Any]]


def _validate_vectors(vectors: Any, expected: int) -> List[List[float]]:
    if not isinstance(vectors, list):
        raise EmbeddingProviderError("Embedding response is not a list of vectors.")

    if len(vectors) != expected:
        raise EmbeddingProviderError(
            f"Embedding provider returned {len(vectors)} vectors for {expected} inputs."
        )

    result: List[List[float]] = []
    for index, vector in enumerate(vectors):
        if not isinstance(vector, list) or not all(
            isinstance(x, (float, int)) for x in vector
        ):
            raise EmbeddingProviderError(
                f"Invalid embedding vector at index {index}: must be float list."
            )
        result.append([float(x) for x in vector])
    return result


class Provider:
    """
    Base class for provider variants.
    """

    kind = "base"
    supports_embeddings = False

    def __init__(self, name: str, base_url: str) -> None:
        self.name = name
        self.base_url = base_url.rstrip("/")

    # ------------------------------------------------------------------
    # Embeddings
    # ------------------------------------------------------------------

    async def embed(
        self,
        texts: Sequence[str],
        model: str,
        api_key: str,
        client: httpx.AsyncClient,
        purpose: str = "document",
    ) -> List[List[float]]:
        """
        Embed one batch of texts. `purpose` is "document" for ingestion and
        "query" for retrieval; only some providers distinguish the two.
        """
        if not self.supports_embeddings:
            raise UnsupportedProviderError(
                f"Provider '{self.name}' does not support embeddings"
            )

        url, payload = self._embedding_request(list(texts), model, purpose)

        try:
            response = await client.post(
                url,
                json=payload,
                headers=self._auth_headers(api_key),
            )
        except httpx.HTTPError as exc:
            logger.error(
                "Embedding request to %s failed (%s): batch size=%d",
                self.name,
                type(exc).__name__,
                len(texts),
            )
            raise EmbeddingProviderError(
                f"Embedding request failed: {type(exc).__name__}: {exc}"
            ) from exc

        if not response.is_success:
            raise EmbeddingProviderError(
                f"Embedding provider returned HTTP {response.status_code}: {response.text}",
                status_code=response.status_code,
                body=response.text,
            )

        try:
            data = response.json()
        except ValueError as exc:
            raise EmbeddingProviderError("Embedding response is not valid JSON.") from exc

        return _validate_vectors(self._extract_embeddings(data), len(texts))

    def _embedding_request(self, texts: List[str], model: str, purpose: str) -> Tuple[str, Dict[str, Any]]:
        raise NotImplementedError

    def _extract_embeddings(self, data: Dict[str, Any]) -> Any:
        raise NotImplementedError

    # ------------------------------------------------------------------
    # Generation
    # ------------------------------------------------------------------

    def stream_request(
        self,
        model: str,
        messages: List[Dict[str, str]],
        api_key: str,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
    ) -> StreamRequest:
        raise NotImplementedError

    def extract_delta(self, payload: Dict[str, Any]) -> Optional[str]:
        """Return the text delta carried by one stream event, if any."""
        raise NotImplementedError

    def is_end(self, payload: Dict[str, Any]) -> bool:
        """True if the event marks the end of the stream."""
        return False

    # ------------------------------------------------------------------
    # Model listing
    # ------------------------------------------------------------------

    async def list_models(self, api_key: str, client: httpx.AsyncClient) -> List[str]:
        """
        Return the provider's model ids.

        Raises
        ------
        GenerationProviderError
            For non-2xx responses (with authentication/permission kinds) or
            transport failures.
        """
        try:
            response = await client.get(
                self._models_url(),
                headers=self._auth_headers(api_key),
            )
        except httpx.HTTPError as exc:
            raise GenerationProviderError(
                f"Model listing failed: {type(exc).__name__}",
                kind="network",
            ) from exc

        if not response.is_success:
            raise GenerationProviderError.from_status(response.status_code, response.text)

        return self._extract_model_ids(response.json())

    def _models_url(self) -> str:
        return f"{self.base_url}/models"

    def _extract_model_ids(self, data: Dict[str, Any]) -> List[str]:
        raise NotImplementedError

    def _auth_headers(self, api_key: str) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {api_key}",
            "Content-Type": "application/json",
        }


class OpenAICompatibleProvider(Provider):
    """
    `POST /embeddings {input, model}` and streaming
    `POST /chat/completions {model, messages, stream: true}`.
    """

    kind = "openai_compatible"

    def __init__(
        self,
        name: str,
        base_url: str,
        supports_embeddings: bool = False,
        extra_headers: Optional[Dict[str, str]] = None,
    ) -> None:
        super().__init__(name, base_url)
        self.supports_embeddings = supports_embeddings
        self._extra_headers = dict(extra_headers or {})

    def _embedding_request(self, texts: List[str], model: str, purpose: str) -> Tuple[str, Dict[str, Any]]:
        return f"{self.base_url}/embeddings", {"input": texts, "model": model}

    def _extract_embeddings(self, data: Dict[str, Any]) -> Any:
        """
        OpenAI returns:
            { "data": [ {"embedding": [...]}, ... ] }
        """
        if "data" not in data:
            raise EmbeddingProviderError("Embedding response missing 'data' field.")

        records = data["data"]
        if not isinstance(records, list):
            raise EmbeddingProviderError("'data' field must be a list.")

        for index, record in enumerate(records):
            if not isinstance(record, dict) or "embedding" not in record:
                raise EmbeddingProviderError(
                    f"Malformed embedding record at index {index}: {record!r}"
                )

        # Entries carry an explicit index; keep input order regardless of response order
        if all("index" in record for record in records):
            records = sorted(records, key=lambda r: r["index"])

        return [record["embedding"] for record in records]

    def stream_request(
        self,
        model: str,
        messages: List[Dict[str, str]],
        api_key: str,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
    ) -> StreamRequest:
        payload: Dict[str, Any] = {
            "model": model,
            "messages": messages,
            "stream": True,
        }
        if temperature is not None:
            payload["temperature"] = temperature
        if max_tokens is not None:
            payload["max_tokens"] = max_tokens

        headers = self._auth_headers(api_key)
        headers.update(self._extra_headers)
        return f"{self.base_url}/chat/completions", headers, payload

    def extract_delta(self, payload: Dict[str, Any]) -> Optional[str]:
        choices = payload.get("choices") or []
        if not choices:
            return None
        delta = choices[0].get("delta") or {}
        return delta.get("content") or None

    def _extract_model_ids(self, data: Dict[str, Any]) -> List[str]:
        return [m["id"] for m in data.get("data", []) if "id" in m]


class CohereCompatibleProvider(Provider):
    """
    `POST /v1/embed {texts, model, input_type}` and streaming
    `POST /v2/chat {model, messages, stream: true}`.
    """

    kind = "cohere_compatible"
    supports_embeddings = True

    _INPUT_TYPES = {
        "document": "search_document",
        "query": "search_query",
    }

    def _embedding_request(self, texts: List[str], model: str, purpose: str) -> Tuple[str, Dict[str, Any]]:
        return f"{self.base_url}/v1/embed", {
            "texts": texts,
            "model": model,
            "input_type": self._INPUT_TYPES.get(purpose, "search_document"),
        }

    def _extract_embeddings(self, data: Dict[str, Any]) -> Any:
        """
        Cohere returns:
            { "embeddings": [[...], ...] }
        """
        if "embeddings" not in data:
            raise EmbeddingProviderError("Embedding response missing 'embeddings' field.")
        return data["embeddings"]

    def stream_request(
        self,
        model: str,
        messages: List[Dict[str, str]],
        api_key: str,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
    ) -> StreamRequest:
        payload: Dict[str, Any] = {
            "model": model,
            "messages": messages,
            "stream": True,
        }
        if temperature is not None:
            payload["temperature"] = temperature
        if max_tokens is not None:
            payload["max_tokens"] = max_tokens
        return f"{self.base_url}/v2/chat", self._auth_headers(api_key), payload

    def extract_delta(self, payload: Dict[str, Any]) -> Optional[str]:
        if payload.get("type") != "content-delta":
            return None
        content = (
            payload.get("delta", {})
            .get("message", {})
            .get("content", {})
        )
        return content.get("text") or None

    def is_end(self, payload: Dict[str, Any]) -> bool:
        return payload.get("type") == "message-end"

    def _models_url(self) -> str:
        return f"{self.base_url}/v1/models"

    def _extract_model_ids(self, data: Dict[str, Any]) -> List[str]:
        return [m["name"] for m in data.get("models", []) if "name" in m]


# ---------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------

_PROVIDERS: Dict[str, Provider] = {
    "openai": OpenAICompatibleProvider(
        "openai",
        "https://api.openai.com/v1",
        supports_embeddings=True,
    ),
    "openrouter": OpenAICompatibleProvider(
        "openrouter",
        "https://openrouter.ai/api/v1",
        extra_headers={
            "HTTP-Referer": settings.site_url,
            "X-Title": "Conversational AI Platform",
        },
    ),
    "xai": OpenAICompatibleProvider("xai", "https://api.x.ai/v1"),
    "cohere": CohereCompatibleProvider("cohere", "https://api.cohere.com"),
}


def get_provider(name: str) -> Provider:
    """
    Resolve a provider variant by name.

    Raises
    ------
    UnsupportedProviderError
        If the name is not one of the supported providers.
    """
    provider = _PROVIDERS.get((name or "").lower())
    if provider is None:
        raise UnsupportedProviderError(f"Unsupported provider: {name!r}")
    return provider


def supported_providers() -> List[str]:
    return sorted(_PROVIDERS)
