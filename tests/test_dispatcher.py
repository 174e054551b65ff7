from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest

from factories import NOW, FakeDelivery, make_item, make_recipient, new_storage
from needmatch.core.config import DispatchConfig
from needmatch.core.dispatcher import DeliveryDispatcher, build_message
from needmatch.core.errors import KillSwitchActive
from needmatch.core.kill_switch import DELIVERY
from needmatch.core.models import Candidate


def _accept(storage, item, recipient) -> Candidate:
    storage.upsert_item(item)
    storage.upsert_recipient(recipient)
    storage.try_record_notification(item.id, recipient.id, "fits", False, NOW, 3, timedelta(days=7))
    return Candidate(item, recipient, justification="fits")


class RecordingSleep:
    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


def test_retries_with_backoff_then_succeeds(tmp_path) -> None:
    storage = new_storage(tmp_path)
    candidate = _accept(storage, make_item(), make_recipient("a"))
    delivery = FakeDelivery(failures=2, raise_error=True)
    sleep = RecordingSleep()
    dispatcher = DeliveryDispatcher(
        storage, delivery, DispatchConfig(max_attempts=3, backoff_seconds=0.5, max_backoff_seconds=4.0), sleep=sleep
    )

    report = asyncio.run(dispatcher.dispatch([candidate]))

    assert report.delivered == [("item-1", "a")]
    assert sleep.delays == [0.5, 1.0]
    assert storage.get_notification("item-1", "a").delivered is True
    assert storage.list_delivery_failures() == []


def test_backoff_is_capped() -> None:
    dispatcher = DeliveryDispatcher(
        None, FakeDelivery(), DispatchConfig(backoff_seconds=1.0, max_backoff_seconds=3.0)
    )

    assert [dispatcher._backoff(n) for n in range(1, 5)] == [1.0, 2.0, 3.0, 3.0]


def test_exhausted_retries_go_to_operator_queue(tmp_path) -> None:
    storage = new_storage(tmp_path)
    candidate = _accept(storage, make_item(), make_recipient("a"))
    sleep = RecordingSleep()
    dispatcher = DeliveryDispatcher(storage, FakeDelivery(failures=99), DispatchConfig(max_attempts=2), sleep=sleep)

    report = asyncio.run(dispatcher.dispatch([candidate]))

    assert report.failed == [("item-1", "a")]
    failure = storage.list_delivery_failures()[0]
    assert failure.attempts == 2
    assert "rejected" in failure.last_error
    assert storage.get_notification("item-1", "a") is not None


def test_pending_retry_resolves_queue_entry(tmp_path) -> None:
    storage = new_storage(tmp_path)
    candidate = _accept(storage, make_item(), make_recipient("a"))
    delivery = FakeDelivery(failures=1)
    dispatcher = DeliveryDispatcher(storage, delivery, DispatchConfig(max_attempts=1), sleep=RecordingSleep())

    asyncio.run(dispatcher.dispatch([candidate]))
    assert len(storage.list_delivery_failures()) == 1

    report = asyncio.run(dispatcher.dispatch_pending())

    assert report.delivered == [("item-1", "a")]
    assert storage.list_delivery_failures() == []
    assert len(storage.list_delivery_failures(include_resolved=True)) == 1


def test_delivery_kill_switch_blocks_dispatch(tmp_path) -> None:
    storage = new_storage(tmp_path)
    candidate = _accept(storage, make_item(), make_recipient("a"))
    storage.set_kill_switch(DELIVERY, True, NOW)
    delivery = FakeDelivery()
    dispatcher = DeliveryDispatcher(storage, delivery, DispatchConfig())

    with pytest.raises(KillSwitchActive):
        asyncio.run(dispatcher.dispatch([candidate]))
    assert delivery.sent == []


def test_concurrent_sends_are_bounded(tmp_path) -> None:
    storage = new_storage(tmp_path)
    item = make_item()
    candidates = [_accept(storage, item, make_recipient(f"r{n}")) for n in range(3)]

    class SlowDelivery(FakeDelivery):
        def __init__(self) -> None:
            super().__init__()
            self.active = 0
            self.max_active = 0

        async def notify(self, recipient_handle, message):
            self.active += 1
            self.max_active = max(self.max_active, self.active)
            await asyncio.sleep(0.01)
            self.active -= 1
            return await super().notify(recipient_handle, message)

    delivery = SlowDelivery()
    dispatcher = DeliveryDispatcher(storage, delivery, DispatchConfig(max_concurrency=2))

    asyncio.run(dispatcher.dispatch(candidates))

    assert delivery.max_active == 2
    assert len(delivery.sent) == 3


def test_build_message_clips_snippet() -> None:
    item = make_item(description="x" * 50 + "   ", category="housing")

    message = build_message(item, "Near you.", snippet_chars=20)

    assert message.body == "x" * 20
    assert message.why_relevant == "Near you."
    assert message.category == "housing"
