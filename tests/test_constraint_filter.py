from __future__ import annotations

from itertools import chain, combinations, product

import pytest

from factories import make_item, make_recipient
from needmatch.core.constraints import (
    CAPACITY_CLOSED,
    KIND_CONSTRAINT,
    KIND_OVERRIDE,
    KIND_POLICY,
    OVERRIDE_EXCLUDE,
    ConstraintFilter,
    parse_constraints,
)
from needmatch.core.models import Candidate, CapacityStatus, HardConstraint


def _subsets(flags):
    return [frozenset(c) for c in chain.from_iterable(combinations(flags, n) for n in range(len(flags) + 1))]


ALL_FLAG_SETS = _subsets(list(HardConstraint))


@pytest.mark.parametrize("item_flags,recipient_flags", list(product(ALL_FLAG_SETS, ALL_FLAG_SETS)))
def test_survives_only_when_no_true_flag_is_incompatible(item_flags, recipient_flags) -> None:
    item = make_item(hard_constraints=item_flags)
    recipient = make_recipient("r1", incompatible=recipient_flags)

    result = ConstraintFilter().apply([Candidate(item=item, recipient=recipient)])

    overlap = item_flags & recipient_flags
    if overlap:
        assert result.survivors == []
        assert len(result.exclusions) == 1
        exclusion = result.exclusions[0]
        assert exclusion.kind == KIND_CONSTRAINT
        assert set(exclusion.reasons) == {flag.value for flag in overlap}
        assert sum(result.tally.values()) == len(overlap)
    else:
        assert [c.recipient.id for c in result.survivors] == ["r1"]
        assert result.exclusions == []


def test_identity_document_requirement_excludes_only_incompatible_recipient() -> None:
    item = make_item(hard_constraints={HardConstraint.REQUIRES_IDENTITY_DOCUMENT})
    a = make_recipient("a")
    b = make_recipient("b", incompatible={HardConstraint.REQUIRES_IDENTITY_DOCUMENT})

    result = ConstraintFilter().apply([Candidate(item, a), Candidate(item, b)])

    assert [c.recipient.id for c in result.survivors] == ["a"]
    assert result.exclusions[0].candidate.recipient.id == "b"
    assert result.tally == {"requires_identity_document": 1}


def test_closed_capacity_is_a_policy_exclusion() -> None:
    item = make_item(capacity=CapacityStatus.CLOSED)
    candidates = [Candidate(item, make_recipient("a")), Candidate(item, make_recipient("b"))]

    result = ConstraintFilter(exclude_closed_capacity=True).apply(candidates)
    assert result.survivors == []
    assert {e.kind for e in result.exclusions} == {KIND_POLICY}
    assert result.tally[CAPACITY_CLOSED] == 2

    relaxed = ConstraintFilter(exclude_closed_capacity=False).apply(candidates)
    assert len(relaxed.survivors) == 2


def test_operator_exclusion_is_reported_separately() -> None:
    item = make_item()
    candidates = [Candidate(item, make_recipient("a")), Candidate(item, make_recipient("b"))]

    result = ConstraintFilter().apply(candidates, excluded_pairs=[(item.id, "b")])

    assert [c.recipient.id for c in result.survivors] == ["a"]
    assert result.exclusions[0].kind == KIND_OVERRIDE
    assert result.tally == {OVERRIDE_EXCLUDE: 1}


def test_hard_constraint_wins_over_operator_include() -> None:
    item = make_item(hard_constraints={HardConstraint.REPORTS_TO_AUTHORITY})
    recipient = make_recipient("a", incompatible={HardConstraint.REPORTS_TO_AUTHORITY})

    result = ConstraintFilter().apply([Candidate(item, recipient, forced=True)])

    assert result.survivors == []
    assert result.exclusions[0].kind == KIND_CONSTRAINT


def test_duplicate_pairs_keep_first_occurrence() -> None:
    item = make_item()
    recipient = make_recipient("a")
    forced = Candidate(item, recipient, forced=True)
    retrieved = Candidate(item, recipient, similarity=0.9)

    result = ConstraintFilter().apply([forced, retrieved])

    assert result.survivors == [forced]
    assert result.input_count == 1


def test_parse_constraints_rejects_unknown_names() -> None:
    assert parse_constraints(["Requires_Identity_Document", " "]) == frozenset(
        {HardConstraint.REQUIRES_IDENTITY_DOCUMENT}
    )
    with pytest.raises(ValueError):
        parse_constraints(["needs_car"])
