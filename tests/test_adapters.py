from __future__ import annotations

import asyncio
import json

import httpx
import pytest
from pydantic_ai.models.test import TestModel

from needmatch.adapters.expo_push_delivery import ExpoPushDelivery
from needmatch.adapters.llm_reasoning import BIAS_INSTRUCTIONS, LLMReasoning, build_prompt
from needmatch.adapters.openai_embedder import OpenAIEmbedder
from needmatch.core.errors import DeliveryTransportFailure
from needmatch.core.models import OutboundMessage

MESSAGE = OutboundMessage(
    item_id="item-1",
    title="You might be interested in this",
    body="Food bank needs drivers",
    why_relevant="You drive a van (score 0.91).",
)


def _client(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


def test_expo_push_sends_scrubbed_payload() -> None:
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["auth"] = request.headers.get("Authorization")
        seen["payload"] = json.loads(request.content)
        return httpx.Response(200, json={"data": {"status": "ok", "id": "ticket-1"}})

    async def scenario():
        async with _client(handler) as client:
            return await ExpoPushDelivery(access_token="secret", client=client).notify("ExponentPushToken[x]", MESSAGE)

    assert asyncio.run(scenario()) is True
    assert seen["auth"] == "Bearer secret"
    assert seen["payload"]["to"] == "ExponentPushToken[x]"
    assert seen["payload"]["data"] == {"item_id": "item-1", "why": "You drive a van."}
    assert "0.91" not in seen["payload"]["body"]


def test_expo_error_ticket_is_a_soft_failure() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"data": [{"status": "error", "message": "DeviceNotRegistered"}]})

    async def scenario():
        async with _client(handler) as client:
            return await ExpoPushDelivery(client=client).notify("token", MESSAGE)

    assert asyncio.run(scenario()) is False


def test_expo_server_error_raises_transport_failure() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(500, text="upstream down")

    async def scenario():
        async with _client(handler) as client:
            await ExpoPushDelivery(client=client).notify("token", MESSAGE)

    with pytest.raises(DeliveryTransportFailure):
        asyncio.run(scenario())


def test_embedder_orders_vectors_by_index() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        assert body == {"model": "text-embedding-3-small", "input": ["a", "b"]}
        return httpx.Response(
            200,
            json={"data": [{"index": 1, "embedding": [0.0, 1.0]}, {"index": 0, "embedding": [1.0, 0.0]}]},
        )

    async def scenario():
        async with _client(handler) as client:
            embedder = OpenAIEmbedder("key", "text-embedding-3-small", base_url="https://example.test/v1/", client=client)
            return embedder.model_version, await embedder.embed(["a", "b"])

    version, vectors = asyncio.run(scenario())

    assert version == "text-embedding-3-small"
    assert vectors == [[1.0, 0.0], [0.0, 1.0]]


def test_embedder_raises_on_api_error() -> None:
    async def scenario():
        async with _client(lambda request: httpx.Response(429, text="slow down")) as client:
            await OpenAIEmbedder("key", "m", client=client).embed(["a"])

    with pytest.raises(RuntimeError):
        asyncio.run(scenario())


def test_prompt_carries_bias_and_candidates() -> None:
    prompt = build_prompt("Need a ride", [("r1", "Has a car"), ("r2", "Cooks")], "strict")

    assert prompt.startswith(BIAS_INSTRUCTIONS["strict"])
    assert '"candidate_id": "r1"' in prompt
    assert "Cooks" in prompt
    assert build_prompt("x", [], "unknown").startswith(BIAS_INSTRUCTIONS["generous"])


def test_llm_reasoning_maps_structured_output() -> None:
    model = TestModel(
        custom_output_args={"verdicts": [{"candidate_id": "r1", "passed": True, "justification": "  You have a car. "}]}
    )

    verdicts = asyncio.run(LLMReasoning(model).evaluate("Need a ride", [("r1", "Has a car")], "generous"))

    assert len(verdicts) == 1
    assert verdicts[0].candidate_id == "r1"
    assert verdicts[0].passed is True
    assert verdicts[0].justification == "You have a car."
