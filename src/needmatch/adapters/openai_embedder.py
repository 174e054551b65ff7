"""EmbedderPort backed by an OpenAI-compatible embeddings endpoint."""

from __future__ import annotations

from typing import Optional, Sequence

import httpx

DEFAULT_BASE_URL = "https://api.openai.com/v1"


class OpenAIEmbedder:
    def __init__(
        self,
        api_key: str,
        model: str,
        model_version: Optional[str] = None,
        base_url: str = DEFAULT_BASE_URL,
        timeout: float = 30.0,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self._api_key = api_key
        self._model = model
        # The stored version tag defaults to the model name.
        self.model_version = model_version or model
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._client = client

    async def embed(self, texts: Sequence[str]) -> list[list[float]]:
        if not texts:
            return []
        url = f"{self._base_url}/embeddings"
        payload = {"model": self._model, "input": list(texts)}
        headers = {"Authorization": f"Bearer {self._api_key}"}
        if self._client is not None:
            response = await self._client.post(url, json=payload, headers=headers)
        else:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                response = await client.post(url, json=payload, headers=headers)
        if response.status_code != 200:
            raise RuntimeError(f"Embeddings API error {response.status_code}: {response.text}")
        data = sorted(response.json().get("data", []), key=lambda entry: entry.get("index", 0))
        return [list(entry["embedding"]) for entry in data]
