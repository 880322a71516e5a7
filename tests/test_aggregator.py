"""
Tests for cumulative drafts: union merge, idempotent reprocessing, merge rejections,
optimistic-version retries and recalculation.
"""

from datetime import date

import pytest

from order_ingest.aggregator import OrderAggregator, merge_branch, recalculate_draft
from order_ingest.errors import (
    DraftFinalizedError,
    MergeRejectedError,
    UnresolvedLinesError,
    VersionConflictError,
)
from order_ingest.models import DraftStatus, MatchKind, ParsedLine, ParsedOrder
from order_ingest.resolve import drop_line, resolve_line
from order_ingest.verification import VerificationGate

DELIVERY = date(2024, 11, 18)


@pytest.fixture
def by_id(products):
    return {p.id: p for p in products}


@pytest.fixture
def aggregator(store, catalog, policy):
    return OrderAggregator(store, catalog, policy)


class TestMergeBranchReducer:
    """merge_branch is pure: it returns a new draft and never touches the input."""

    def test_creates_draft_from_branch(self, catalog, by_id, make_branch, matched_line):
        branch = make_branch([matched_line(by_id["p-piloncillo"], 40)])
        draft = merge_branch(None, "c-1", branch, "e-1", catalog)
        assert draft.key == ("c-1", "b-dallas", DELIVERY)
        assert draft.lines["p-piloncillo"].quantity == 40
        assert draft.lines["p-piloncillo"].subtotal == 1200.0
        assert draft.lines["p-piloncillo"].requires_verification
        assert draft.processed_email_ids == {"e-1"}
        assert draft.totals.grand_total == 1200.0

    def test_union_merge(self, catalog, by_id, make_branch, matched_line):
        """Existing products add up, new products are inserted."""
        first = make_branch([
            matched_line(by_id["p-piloncillo"], 40),
            matched_line(by_id["p-aceite"], 10, unit="pz"),
        ])
        second = make_branch([
            matched_line(by_id["p-piloncillo"], 15),
            matched_line(by_id["p-canela"], 2),
        ])
        draft = merge_branch(None, "c-1", first, "e-1", catalog)
        merged = merge_branch(draft, "c-1", second, "e-2", catalog)

        assert set(merged.lines) == {"p-piloncillo", "p-aceite", "p-canela"}
        assert merged.lines["p-piloncillo"].quantity == 55
        assert merged.lines["p-piloncillo"].subtotal == 1650.0
        assert merged.lines["p-aceite"].quantity == 10
        assert merged.lines["p-canela"].quantity == 2
        assert merged.processed_email_ids == {"e-1", "e-2"}
        assert merged.totals.grand_total == 1650.0 + 400.0 + 400.0
        # input untouched
        assert draft.lines["p-piloncillo"].quantity == 40
        assert "e-2" not in draft.processed_email_ids

    def test_same_email_is_a_no_op(self, catalog, by_id, make_branch, matched_line):
        branch = make_branch([matched_line(by_id["p-piloncillo"], 40)])
        draft = merge_branch(None, "c-1", branch, "e-1", catalog)
        again = merge_branch(draft, "c-1", branch, "e-1", catalog)
        assert again.lines["p-piloncillo"].quantity == 40
        assert again.totals == draft.totals

    def test_taxes_snapshot_from_catalog(self, catalog, by_id, make_branch, matched_line):
        branch = make_branch([matched_line(by_id["p-aceite"], 29, unit="pz")])
        draft = merge_branch(None, "c-1", branch, "e-1", catalog)
        assert draft.lines["p-aceite"].applies_tax_a
        assert draft.totals.grand_total == 1160.0
        assert draft.totals.net_subtotal == 1000.0
        assert draft.totals.tax_total == 160.0

    def test_annotations_accumulate(self, catalog, by_id, make_branch, matched_line):
        sugar = by_id["p-azucar"]
        first = make_branch([matched_line(sugar, 37, unit="bulto", annotation="925.00 kg")])
        second = make_branch([matched_line(sugar, 2, unit="bulto", annotation="50.00 kg")])
        draft = merge_branch(None, "c-1", first, "e-1", catalog)
        draft = merge_branch(draft, "c-1", second, "e-2", catalog)
        assert draft.lines["p-azucar"].quantity == 39
        assert draft.lines["p-azucar"].annotations == ["925.00 kg", "50.00 kg"]

    def test_growing_verified_line_needs_verification_again(self, catalog, by_id, make_branch, matched_line):
        branch = make_branch([matched_line(by_id["p-piloncillo"], 40)])
        draft = merge_branch(None, "c-1", branch, "e-1", catalog)
        draft.lines["p-piloncillo"].verified = True
        merged = merge_branch(draft, "c-1", branch, "e-2", catalog)
        assert not merged.lines["p-piloncillo"].verified

    def test_missing_delivery_date_defaults_to_today(self, catalog, by_id, make_branch, matched_line):
        branch = make_branch([matched_line(by_id["p-piloncillo"], 1)], delivery=None)
        draft = merge_branch(None, "c-1", branch, "e-1", catalog, today=date(2024, 1, 2))
        assert draft.delivery_date == date(2024, 1, 2)


class TestMergeRejections:
    def test_unregistered_branch(self, catalog, by_id, make_branch, matched_line):
        branch = make_branch([matched_line(by_id["p-piloncillo"], 1)], branch_id=None)
        with pytest.raises(MergeRejectedError):
            merge_branch(None, "c-1", branch, "e-1", catalog)

    def test_no_lines(self, catalog, make_branch):
        with pytest.raises(MergeRejectedError):
            merge_branch(None, "c-1", make_branch([]), "e-1", catalog)

    def test_unresolved_lines_listed(self, catalog, by_id, make_branch, matched_line):
        unknown = ParsedLine(raw_product_text="TORTILLAS", raw_quantity=3, match_kind=MatchKind.NONE)
        branch = make_branch([matched_line(by_id["p-piloncillo"], 1), unknown])
        with pytest.raises(UnresolvedLinesError) as exc:
            merge_branch(None, "c-1", branch, "e-1", catalog)
        assert exc.value.product_texts == ["TORTILLAS"]
        assert isinstance(exc.value, MergeRejectedError)

    def test_resolving_or_dropping_allows_merge(self, catalog, by_id, make_branch, matched_line, policy):
        unknown = ParsedLine(raw_product_text="CANELA", raw_quantity=2, raw_unit_hint="kg")
        branch = make_branch([matched_line(by_id["p-piloncillo"], 1), unknown])

        resolved = resolve_line(branch, 1, by_id["p-canela"], policy)
        assert resolved.lines[1].matched_product_id == "p-canela"
        assert resolved.lines[1].line_subtotal == 400.0
        assert merge_branch(None, "c-1", resolved, "e-1", catalog).lines["p-canela"].quantity == 2

        dropped = drop_line(branch, 1)
        assert len(dropped.lines) == 1
        assert set(merge_branch(None, "c-1", dropped, "e-1", catalog).lines) == {"p-piloncillo"}
        # original branch unchanged
        assert len(branch.lines) == 2

    def test_finalized_draft_rejected(self, catalog, by_id, make_branch, matched_line):
        branch = make_branch([matched_line(by_id["p-piloncillo"], 1)])
        draft = merge_branch(None, "c-1", branch, "e-1", catalog)
        draft.status = DraftStatus.FINALIZED
        with pytest.raises(DraftFinalizedError):
            merge_branch(draft, "c-1", branch, "e-2", catalog)


class TestOrderAggregator:
    def test_merge_persists_and_accumulates(self, aggregator, store, by_id, make_branch, matched_line):
        d1 = aggregator.merge("c-1", make_branch([matched_line(by_id["p-piloncillo"], 40)]), "e-1")
        d2 = aggregator.merge("c-1", make_branch([matched_line(by_id["p-piloncillo"], 10)]), "e-2")
        assert d1.id == d2.id
        assert d2.version == 2
        assert store.get_draft(d1.id).lines["p-piloncillo"].quantity == 50

    def test_reprocessing_same_email_is_idempotent(self, aggregator, store, by_id, make_branch, matched_line):
        branch = make_branch([matched_line(by_id["p-piloncillo"], 40)])
        first = aggregator.merge("c-1", branch, "e-1")
        again = aggregator.merge("c-1", branch, "e-1")
        assert again.version == first.version
        assert again.lines["p-piloncillo"].quantity == 40
        assert len(store.list_drafts()) == 1

    def test_reprocessing_after_finalize_does_not_reopen(self, aggregator, store, by_id, make_branch, matched_line):
        branch = make_branch([matched_line(by_id["p-piloncillo"], 40)])
        draft = aggregator.merge("c-1", branch, "e-1")
        gate = VerificationGate(store)
        gate.mark_all_verified(draft.id)
        gate.finalize(draft.id)

        again = aggregator.merge("c-1", branch, "e-1")
        assert again.id == draft.id
        assert again.status == DraftStatus.FINALIZED
        assert len(store.list_drafts()) == 1
        assert store.list_drafts(DraftStatus.DRAFT) == []

    def test_new_email_after_finalize_opens_new_draft(self, aggregator, store, by_id, make_branch, matched_line):
        draft = aggregator.merge("c-1", make_branch([matched_line(by_id["p-canela"], 2)]), "e-1")
        VerificationGate(store).finalize(draft.id)
        fresh = aggregator.merge("c-1", make_branch([matched_line(by_id["p-canela"], 3)]), "e-2")
        assert fresh.id != draft.id
        assert fresh.lines["p-canela"].quantity == 3

    def test_separate_drafts_per_branch_and_date(self, aggregator, store, by_id, make_branch, matched_line):
        line = matched_line(by_id["p-piloncillo"], 1)
        aggregator.merge("c-1", make_branch([line]), "e-1")
        aggregator.merge("c-1", make_branch([line], branch_id="b-amatrias"), "e-2")
        aggregator.merge("c-1", make_branch([line], delivery=date(2024, 11, 19)), "e-3")
        assert len(store.list_drafts()) == 3

    def test_retries_after_version_conflict(self, store, catalog, policy, by_id, make_branch, matched_line):
        aggregator = OrderAggregator(store, catalog, policy)
        aggregator.merge("c-1", make_branch([matched_line(by_id["p-piloncillo"], 40)]), "e-1")

        original_save = store.save_draft
        calls = {"n": 0}

        def racing_save(draft, expected_version):
            calls["n"] += 1
            if calls["n"] == 1:
                # another writer lands between our read and our write
                current = store.get_draft(draft.id)
                current.notes = "edited"
                original_save(current, current.version)
            return original_save(draft, expected_version)

        store.save_draft = racing_save
        saved = aggregator.merge("c-1", make_branch([matched_line(by_id["p-piloncillo"], 5)]), "e-2")
        assert calls["n"] == 2
        assert saved.lines["p-piloncillo"].quantity == 45
        assert saved.notes == "edited"
        assert saved.version == 3

    def test_gives_up_after_max_attempts(self, store, catalog, policy, by_id, make_branch, matched_line):
        aggregator = OrderAggregator(store, catalog, policy, max_attempts=2)

        def always_conflict(draft, expected_version):
            raise VersionConflictError(draft.id, expected_version, 99)

        store.save_draft = always_conflict
        with pytest.raises(VersionConflictError):
            aggregator.merge("c-1", make_branch([matched_line(by_id["p-piloncillo"], 1)]), "e-1")

    def test_zero_max_attempts_still_tries_once(self, store, catalog, policy, by_id, make_branch, matched_line):
        aggregator = OrderAggregator(store, catalog, policy, max_attempts=0)
        calls = {"n": 0}

        def always_conflict(draft, expected_version):
            calls["n"] += 1
            raise VersionConflictError(draft.id, expected_version, 99)

        store.save_draft = always_conflict
        with pytest.raises(VersionConflictError):
            aggregator.merge("c-1", make_branch([matched_line(by_id["p-piloncillo"], 1)]), "e-1")
        assert calls["n"] == 1

    def test_merge_order_merges_every_branch(self, aggregator, by_id, make_branch, matched_line):
        order = ParsedOrder(
            source_email_id="e-1",
            confidence=0.95,
            branches=[
                make_branch([matched_line(by_id["p-piloncillo"], 1)]),
                make_branch([matched_line(by_id["p-canela"], 1)], branch_id="b-amatrias"),
            ],
        )
        drafts = aggregator.merge_order("c-1", order)
        assert [d.branch_id for d in drafts] == ["b-dallas", "b-amatrias"]


class TestRecalculate:
    def test_recalculate_draft_rebuilds_subtotals(self, catalog, by_id, make_branch, matched_line):
        draft = merge_branch(None, "c-1", make_branch([matched_line(by_id["p-piloncillo"], 40)]), "e-1", catalog)
        draft.lines["p-piloncillo"].unit_price = 32.5
        fresh = recalculate_draft(draft)
        assert fresh.lines["p-piloncillo"].subtotal == 1300.0
        assert fresh.totals.grand_total == 1300.0

    def test_recalculate_all_open_drafts(self, aggregator, store, by_id, make_branch, matched_line):
        d = aggregator.merge("c-1", make_branch([matched_line(by_id["p-piloncillo"], 40)]), "e-1")
        draft = store.get_draft(d.id)
        draft.lines["p-piloncillo"].unit_price = 31.0
        store.save_draft(draft, draft.version)

        updated = aggregator.recalculate_all()
        assert len(updated) == 1
        assert updated[0].totals.grand_total == 1240.0
