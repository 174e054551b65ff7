from __future__ import annotations

import asyncio
import re

from factories import (
    NOW,
    V2,
    FakeDelivery,
    FakeReasoning,
    build_engine,
    engine_config,
    make_item,
    make_recipient,
    new_storage,
)
from needmatch.core.config import JudgeConfig, RankingConfig, RetrievalConfig, ThrottleConfig
from needmatch.core.engine import PipelineStatus
from needmatch.core.judge import FALLBACK_JUSTIFICATION, FORCED_JUSTIFICATION, ReasoningJudge
from needmatch.core.kill_switch import DELIVERY, MATCHING
from needmatch.core.models import GateDecision, HardConstraint, OverrideAction
from needmatch.core.zero_match import (
    CONSTRAINTS_EXCLUDED_ALL,
    ESCALATE_TO_HUMAN,
    JUDGE_UNAVAILABLE,
    NO_CANDIDATES,
    OVERRIDES_EXCLUDED_ALL,
    WIDEN_RETRIEVAL,
)

ID_DOC = HardConstraint.REQUIRES_IDENTITY_DOCUMENT


def _seed(storage, item, recipients) -> None:
    storage.upsert_item(item)
    for recipient in recipients:
        storage.upsert_recipient(recipient)


def test_identity_document_item_never_reaches_incompatible_recipient(tmp_path) -> None:
    storage = new_storage(tmp_path)
    _seed(
        storage,
        make_item(hard_constraints={ID_DOC}),
        [make_recipient("a"), make_recipient("b", incompatible={ID_DOC})],
    )
    engine, _, delivery = build_engine(storage)

    outcome = asyncio.run(engine.process_item("item-1"))

    assert outcome.status == PipelineStatus.COMPLETED
    assert [c.recipient.id for c in outcome.ranked] == ["a"]
    assert [c.recipient.id for c in outcome.notified] == ["a"]
    assert storage.get_notification("item-1", "b") is None
    assert [handle for handle, _ in delivery.sent] == ["handle-a"]
    audit = storage.list_audit("item-1")
    assert any(
        row["recipient_id"] == "b" and row["decision"] == "constraint_excluded" and "requires_identity_document" in row["detail"]
        for row in audit
    )


def test_all_candidates_excluded_gives_zero_match(tmp_path) -> None:
    storage = new_storage(tmp_path)
    _seed(
        storage,
        make_item(hard_constraints={ID_DOC}),
        [make_recipient("a", incompatible={ID_DOC}), make_recipient("b", incompatible={ID_DOC})],
    )
    engine, _, delivery = build_engine(storage)

    outcome = asyncio.run(engine.process_item("item-1"))

    assert outcome.status == PipelineStatus.ZERO_MATCH
    response = outcome.zero_match
    assert response.reason == CONSTRAINTS_EXCLUDED_ALL
    assert response.candidate_count == 2
    assert response.exclusions == {"requires_identity_document": 2}
    codes = [s.code for s in response.suggestions]
    assert "relax_constraint:requires_identity_document" in codes
    assert ESCALATE_TO_HUMAN in codes
    assert storage.list_notifications() == []
    assert delivery.sent == []
    assert storage.list_unprocessed_item_ids("v1", NOW) == []


def test_second_evaluation_creates_no_new_notifications(tmp_path) -> None:
    storage = new_storage(tmp_path)
    _seed(storage, make_item(), [make_recipient("a"), make_recipient("b")])
    engine, _, delivery = build_engine(storage)

    first = asyncio.run(engine.process_item("item-1"))
    second = asyncio.run(engine.process_item("item-1"))

    assert len(first.notified) == 2
    assert second.notified == []
    assert {decision for _, decision in second.dropped} == {GateDecision.ALREADY_NOTIFIED}
    assert len(storage.list_notifications()) == 2
    assert len(delivery.sent) == 2
    assert storage.get_recipient("a").window_count == 1


def test_throttle_caps_recipient_across_items(tmp_path) -> None:
    storage = new_storage(tmp_path)
    storage.upsert_recipient(make_recipient("a"))
    for n in range(3):
        storage.upsert_item(make_item(f"item-{n}"))
    config = engine_config(throttle=ThrottleConfig(cap_per_window=2))
    engine, _, _ = build_engine(storage, config=config)

    outcomes = [asyncio.run(engine.process_item(f"item-{n}")) for n in range(3)]

    assert [len(o.notified) for o in outcomes] == [1, 1, 0]
    assert outcomes[2].dropped[0][1] == GateDecision.THROTTLED


def test_model_version_mismatch_returns_no_candidates(tmp_path) -> None:
    storage = new_storage(tmp_path)
    _seed(storage, make_item(), [make_recipient("a", model_version=V2), make_recipient("b", model_version=V2)])
    engine, _, _ = build_engine(storage)

    outcome = asyncio.run(engine.process_item("item-1"))

    assert outcome.status == PipelineStatus.ZERO_MATCH
    assert outcome.zero_match.reason == NO_CANDIDATES
    assert WIDEN_RETRIEVAL in [s.code for s in outcome.zero_match.suggestions]
    assert storage.list_notifications() == []


def test_dimension_mismatch_under_same_version_is_not_compared(tmp_path) -> None:
    storage = new_storage(tmp_path)
    _seed(storage, make_item(), [make_recipient("a", embedding=(1.0, 0.0)), make_recipient("b")])
    engine, _, _ = build_engine(storage)

    outcome = asyncio.run(engine.process_item("item-1"))

    assert [c.recipient.id for c in outcome.notified] == ["b"]


def test_stale_subject_embedding_is_skipped(tmp_path) -> None:
    storage = new_storage(tmp_path)
    _seed(storage, make_item(model_version=V2), [make_recipient("a")])
    engine, _, _ = build_engine(storage)

    outcome = asyncio.run(engine.process_item("item-1"))

    assert outcome.status == PipelineStatus.SKIPPED
    assert outcome.detail == "stale embedding"
    assert storage.list_notifications() == []


def test_matching_kill_switch_stops_everything(tmp_path) -> None:
    storage = new_storage(tmp_path)
    _seed(storage, make_item(), [make_recipient("a")])
    storage.set_kill_switch(MATCHING, True, NOW)
    engine, _, delivery = build_engine(storage)

    outcome = asyncio.run(engine.process_item("item-1"))

    assert outcome.status == PipelineStatus.DISABLED
    assert storage.list_notifications() == []
    assert storage.list_audit("item-1") == []
    assert storage.list_unprocessed_item_ids("v1", NOW) == ["item-1"]
    assert delivery.sent == []


def test_delivery_kill_switch_holds_rows_until_released(tmp_path) -> None:
    storage = new_storage(tmp_path)
    _seed(storage, make_item(), [make_recipient("a")])
    storage.set_kill_switch(DELIVERY, True, NOW)
    engine, dispatcher, delivery = build_engine(storage)

    outcome = asyncio.run(engine.process_item("item-1"))

    assert outcome.delivery_held
    assert storage.get_notification("item-1", "a").delivered is False
    assert delivery.sent == []

    storage.set_kill_switch(DELIVERY, False, NOW)
    report = asyncio.run(dispatcher.dispatch_pending())

    assert report.delivered == [("item-1", "a")]
    assert storage.get_notification("item-1", "a").delivered is True


def test_fail_closed_routes_to_zero_match(tmp_path) -> None:
    storage = new_storage(tmp_path)
    _seed(storage, make_item(), [make_recipient("a"), make_recipient("b")])
    config = engine_config(judge=JudgeConfig(failure_mode="fail_closed"))
    judge = ReasoningJudge(FakeReasoning(error=RuntimeError("model down")), config.judge)
    engine, _, _ = build_engine(storage, judge=judge, config=config)

    outcome = asyncio.run(engine.process_item("item-1"))

    assert outcome.status == PipelineStatus.ZERO_MATCH
    assert outcome.zero_match.reason == JUDGE_UNAVAILABLE
    assert storage.list_notifications() == []


def test_fail_open_forwards_survivors_with_fallback_text(tmp_path) -> None:
    storage = new_storage(tmp_path)
    _seed(
        storage,
        make_item(hard_constraints={ID_DOC}),
        [make_recipient("a"), make_recipient("b", incompatible={ID_DOC})],
    )
    config = engine_config(judge=JudgeConfig(failure_mode="fail_open"))
    judge = ReasoningJudge(FakeReasoning(error=RuntimeError("model down")), config.judge)
    engine, _, _ = build_engine(storage, judge=judge, config=config)

    outcome = asyncio.run(engine.process_item("item-1"))

    assert [c.recipient.id for c in outcome.notified] == ["a"]
    assert storage.get_notification("item-1", "a").justification == FALLBACK_JUSTIFICATION
    assert storage.get_notification("item-1", "b") is None


def test_judge_rejection_is_audited_and_not_notified(tmp_path) -> None:
    storage = new_storage(tmp_path)
    _seed(storage, make_item(), [make_recipient("a"), make_recipient("b")])
    config = engine_config()
    judge = ReasoningJudge(FakeReasoning(reject=["b"]), config.judge)
    engine, _, _ = build_engine(storage, judge=judge, config=config)

    outcome = asyncio.run(engine.process_item("item-1"))

    assert [c.recipient.id for c in outcome.notified] == ["a"]
    assert storage.get_notification("item-1", "a").justification == "Good fit, a."
    assert any(row["decision"] == "judge_rejected" for row in storage.list_audit("item-1"))


def test_preview_has_no_side_effects(tmp_path) -> None:
    storage = new_storage(tmp_path)
    _seed(storage, make_item(), [make_recipient("a"), make_recipient("b", embedding=(0.6, 0.8, 0.0))])
    engine, _, delivery = build_engine(storage)

    outcome = asyncio.run(engine.preview("item-1"))

    assert outcome.status == PipelineStatus.PREVIEW
    assert [(e.rank, e.recipient_id) for e in outcome.preview] == [(1, "a"), (2, "b")]
    for entry in outcome.preview:
        assert not re.search(r"\d|%", " ".join(entry.reasons))
    assert storage.list_notifications() == []
    assert storage.list_audit("item-1") == []
    assert storage.list_unprocessed_item_ids("v1", NOW) == ["item-1"]
    assert delivery.sent == []
    assert storage.get_recipient("a").window_count == 0


def test_force_include_outranks_retrieval_and_is_marked(tmp_path) -> None:
    storage = new_storage(tmp_path)
    _seed(
        storage,
        make_item(),
        [make_recipient("a"), make_recipient("far", embedding=(0.0, 1.0, 0.0))],
    )
    storage.save_override("item-1", "far", OverrideAction.INCLUDE, "knows the family", NOW)
    config = engine_config(retrieval=RetrievalConfig(embedding_model_version="v1", top_k=1))
    engine, _, _ = build_engine(storage, config=config)

    outcome = asyncio.run(engine.process_item("item-1"))

    assert [c.recipient.id for c in outcome.ranked] == ["far", "a"]
    notification = storage.get_notification("item-1", "far")
    assert notification.forced is True
    assert notification.justification == FORCED_JUSTIFICATION
    assert any(row["decision"] == "override_include" for row in storage.list_audit("item-1"))


def test_force_include_cannot_bypass_hard_constraints(tmp_path) -> None:
    storage = new_storage(tmp_path)
    _seed(storage, make_item(hard_constraints={ID_DOC}), [make_recipient("b", incompatible={ID_DOC})])
    storage.save_override("item-1", "b", OverrideAction.INCLUDE, "", NOW)
    engine, _, _ = build_engine(storage)

    outcome = asyncio.run(engine.process_item("item-1"))

    assert outcome.status == PipelineStatus.ZERO_MATCH
    assert storage.get_notification("item-1", "b") is None


def test_force_exclude_of_only_candidate(tmp_path) -> None:
    storage = new_storage(tmp_path)
    _seed(storage, make_item(), [make_recipient("a")])
    storage.save_override("item-1", "a", OverrideAction.EXCLUDE, "asked not to", NOW)
    engine, _, _ = build_engine(storage)

    outcome = asyncio.run(engine.process_item("item-1"))

    assert outcome.zero_match.reason == OVERRIDES_EXCLUDED_ALL
    assert any(row["decision"] == "override_excluded" for row in storage.list_audit("item-1"))


def test_fanout_is_truncated(tmp_path) -> None:
    storage = new_storage(tmp_path)
    _seed(storage, make_item(), [make_recipient(f"r{n}") for n in range(7)])
    config = engine_config(ranking=RankingConfig(max_fanout_per_item=5))
    engine, _, delivery = build_engine(storage, config=config)

    outcome = asyncio.run(engine.process_item("item-1"))

    assert [c.recipient.id for c in outcome.notified] == ["r0", "r1", "r2", "r3", "r4"]
    assert len(delivery.sent) == 5


def test_new_recipient_is_matched_against_open_items(tmp_path) -> None:
    storage = new_storage(tmp_path)
    storage.upsert_item(make_item("item-1"))
    storage.upsert_item(make_item("item-2", hard_constraints={ID_DOC}))
    storage.upsert_item(make_item("item-3", model_version=V2))
    storage.upsert_recipient(make_recipient("new", incompatible={ID_DOC}))
    engine, _, _ = build_engine(storage)

    outcome = asyncio.run(engine.process_recipient("new"))

    assert [c.item.id for c in outcome.notified] == ["item-1"]
    assert storage.get_notification("item-2", "new") is None


def test_unknown_item_is_skipped(tmp_path) -> None:
    storage = new_storage(tmp_path)
    engine, _, _ = build_engine(storage)

    outcome = asyncio.run(engine.process_item("missing"))

    assert outcome.status == PipelineStatus.SKIPPED


def test_delivery_failure_keeps_row_and_queues_for_operator(tmp_path) -> None:
    storage = new_storage(tmp_path)
    _seed(storage, make_item(), [make_recipient("a")])
    engine, _, _ = build_engine(storage, delivery=FakeDelivery(failures=10))

    outcome = asyncio.run(engine.process_item("item-1"))

    assert outcome.delivery.failed == [("item-1", "a")]
    assert storage.get_notification("item-1", "a").delivered is False
    failures = storage.list_delivery_failures()
    assert [(f.item_id, f.recipient_id, f.attempts) for f in failures] == [("item-1", "a", 3)]


def test_profile_change_during_judging_is_caught_at_commit(tmp_path) -> None:
    storage = new_storage(tmp_path)
    _seed(storage, make_item(hard_constraints={ID_DOC}), [make_recipient("a"), make_recipient("b")])

    class ProfileUpdatingReasoning(FakeReasoning):
        async def evaluate(self, item_text, candidate_profiles, bias_mode):
            storage.upsert_recipient(make_recipient("a", incompatible={ID_DOC}))
            return await super().evaluate(item_text, candidate_profiles, bias_mode)

    config = engine_config()
    judge = ReasoningJudge(ProfileUpdatingReasoning(), config.judge)
    engine, _, delivery = build_engine(storage, judge=judge, config=config)

    outcome = asyncio.run(engine.process_item("item-1"))

    assert [c.recipient.id for c in outcome.notified] == ["b"]
    assert [(d.recipient_id, d.stage) for d in outcome.defects] == [("a", "commit")]
    assert storage.get_notification("item-1", "a") is None
    assert [handle for handle, _ in delivery.sent] == ["handle-b"]
    assert any(
        row["recipient_id"] == "a" and row["decision"] == "constraint_defect" for row in storage.list_audit("item-1")
    )
