"""Multimodal embeddings from Vertex AI, region-aware, with a fixed output dimension."""

from __future__ import annotations

import asyncio
import base64
from typing import Any, Awaitable, Callable, Optional

import httpx
import numpy as np

from shopchat.config import EmbeddingConfig
from shopchat.core.http import request_with_retry
from shopchat.errors import (
    ConfigurationError,
    EmbeddingDimensionError,
    ExternalServiceError,
    ValidationError,
)
from shopchat.log import get_logger
from shopchat.rag.cache import QueryCache

logger = get_logger(__name__)

TOKEN_URI = "https://oauth2.googleapis.com/token"
CLOUD_PLATFORM_SCOPE = "https://www.googleapis.com/auth/cloud-platform"

TokenProvider = Callable[[], Awaitable[str]]


def normalize(vector: list[float]) -> list[float]:
    arr = np.asarray(vector, dtype=np.float64)
    norm = float(np.linalg.norm(arr))
    if norm == 0.0:
        return arr.tolist()
    return (arr / norm).tolist()


class ServiceAccountTokenProvider:
    """Access tokens for a Google service account, refreshed when expired."""

    def __init__(self, config: EmbeddingConfig):
        from google.oauth2 import service_account

        if config.credentials_file:
            self._credentials = service_account.Credentials.from_service_account_file(
                config.credentials_file, scopes=[CLOUD_PLATFORM_SCOPE]
            )
        elif config.client_email and config.private_key:
            self._credentials = service_account.Credentials.from_service_account_info(
                {
                    "client_email": config.client_email,
                    # keys pasted into .env usually carry literal "\n" sequences
                    "private_key": config.private_key.replace("\\n", "\n"),
                    "token_uri": TOKEN_URI,
                },
                scopes=[CLOUD_PLATFORM_SCOPE],
            )
        else:
            raise ConfigurationError(
                "embedding credentials missing: set credentials_file or client_email + private_key"
            )
        self._lock = asyncio.Lock()

    async def __call__(self) -> str:
        from google.auth.transport.requests import Request

        async with self._lock:
            if not self._credentials.valid:
                # google-auth refresh is blocking I/O
                await asyncio.to_thread(self._credentials.refresh, Request())
            return self._credentials.token


class EmbeddingProvider:
    """``embed(text) -> list[float]`` of exactly ``config.dimension`` floats, L2-normalised."""

    def __init__(
        self,
        config: EmbeddingConfig,
        http_client: httpx.AsyncClient,
        token_provider: Optional[TokenProvider] = None,
        cache: Optional[QueryCache[list[float]]] = None,
    ):
        if not config.project_id:
            raise ConfigurationError("embedding.project_id is not set")
        self._config = config
        self._http = http_client
        self._token_provider = token_provider or ServiceAccountTokenProvider(config)
        self._cache = cache

    @property
    def dimension(self) -> int:
        return self._config.dimension

    def regions(self) -> list[str]:
        """Configured location first, then fallbacks, without duplicates."""
        ordered: list[str] = []
        for loc in [self._config.location, *self._config.fallback_locations]:
            if loc and loc not in ordered:
                ordered.append(loc)
        return ordered

    async def embed(self, text: str) -> list[float]:
        if not text or not text.strip():
            raise ValidationError("text is required for embedding")

        if self._cache is not None:
            cached = self._cache.get(text)
            if cached is not None:
                logger.debug("embedding_cache_hit", text=text[:50])
                return cached

        prediction = await self._predict({"text": text})
        vector = self._extract(prediction, "textEmbedding")

        if self._cache is not None:
            self._cache.set(text, vector)
        return vector

    async def embed_image(self, data: bytes) -> list[float]:
        if not data:
            raise ValidationError("image bytes are required for embedding")
        instance = {"image": {"bytesBase64Encoded": base64.b64encode(data).decode()}}
        prediction = await self._predict(instance)
        return self._extract(prediction, "imageEmbedding")

    def _extract(self, prediction: dict[str, Any], field: str) -> list[float]:
        raw = prediction.get(field)
        if not isinstance(raw, list) or not raw:
            raise ExternalServiceError("embedding", f"response has no {field}")
        if len(raw) != self._config.dimension:
            raise EmbeddingDimensionError(self._config.dimension, len(raw))
        return normalize(raw)

    async def _predict(self, instance: dict[str, Any]) -> dict[str, Any]:
        token = await self._token_provider()
        headers = {
            "Authorization": f"Bearer {token}",
            "Content-Type": "application/json",
            "Accept": "application/json",
            "x-goog-user-project": self._config.project_id,
        }
        body = {
            "instances": [instance],
            "parameters": {"dimension": self._config.dimension},
        }

        for location in self.regions():
            url = (
                f"https://aiplatform.googleapis.com/v1/projects/{self._config.project_id}"
                f"/locations/{location}/publishers/google/models/{self._config.model}:predict"
            )
            response = await request_with_retry(
                self._http,
                "POST",
                url,
                service="embedding",
                max_retries=self._config.max_retries,
                timeout=self._config.timeout,
                headers=headers,
                json=body,
            )
            if response.status_code == 404:
                logger.info("embedding_region_unavailable", location=location)
                continue
            if response.is_error:
                raise ExternalServiceError(
                    "embedding", _error_message(response), status=response.status_code
                )

            predictions = response.json().get("predictions")
            if not isinstance(predictions, list) or not predictions:
                raise ExternalServiceError("embedding", "empty predictions")
            return predictions[0] or {}

        raise ExternalServiceError("embedding", "model not found in any region", status=404)


def _error_message(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        return response.text[:200] or f"HTTP {response.status_code}"
    if isinstance(payload, dict):
        error = payload.get("error")
        if isinstance(error, dict) and error.get("message"):
            return str(error["message"])
    return f"HTTP {response.status_code}"
