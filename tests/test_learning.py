"""
Tests for the vendor learning engine.

Most tests run against both the in-memory and the SQLite repository via the
parametrized ``repository`` fixture.
"""

import math
import threading
from datetime import datetime, timedelta, UTC

import pytest

from invoice_engine.core.errors import LearningEngineFailure
from invoice_engine.services.invoice_types import AmountRange, StoredInvoice, VendorMapping
from invoice_engine.services.learning import (
    VendorLearningEngine,
    apply_observation,
    normalize_vendor,
    round_half_up,
    score_mapping,
)
from invoice_engine.services.storage import (
    InMemoryVendorMappingRepository,
    SQLiteVendorMappingRepository,
    VendorMappingRepositoryBase,
)


def rows_by_category(repository, vendor):
    return {m.category: m for m in repository.find_by_vendor(normalize_vendor(vendor), limit=50)}


@pytest.mark.parametrize("vendor", ["  Midjourney, Inc.  ", "AMAZON.COM*2K3", "Joe's  Café", "", "already normal"])
def test_normalize_vendor_is_idempotent(vendor):
    once = normalize_vendor(vendor)

    assert normalize_vendor(once) == once


def test_normalize_vendor():
    assert normalize_vendor("  Midjourney, Inc.  ") == "midjourney inc"
    assert normalize_vendor("AT&T  Wireless") == "att wireless"


def test_new_row_from_user_correction():
    mapping = apply_observation(None, "Midjourney", "5020", 10.00, is_user_corrected=True)

    assert mapping.count == 1
    assert mapping.confidence == 70
    assert mapping.user_corrections == 1
    assert mapping.auto_assigned is False
    assert mapping.amount_range == AmountRange(min=10.00, max=10.00)


def test_new_row_from_inference():
    mapping = apply_observation(None, "Midjourney", "5020", 10.00, is_user_corrected=False)

    assert mapping.confidence == 50
    assert mapping.user_corrections == 0
    assert mapping.auto_assigned is True


def test_running_average_and_range():
    mapping = apply_observation(None, "Acme", "5010", 10.00, False)
    mapping = apply_observation(mapping, "Acme", "5010", 20.00, False)

    assert mapping.average_amount == 15.00
    assert mapping.amount_range == AmountRange(min=10.00, max=20.00)

    mapping = apply_observation(mapping, "Acme", "5010", 0.0, False)

    assert mapping.count == 3
    assert mapping.average_amount == 15.00
    assert mapping.amount_range == AmountRange(min=10.00, max=20.00)


def test_correction_adds_ten_capped_at_100():
    mapping = VendorMapping(vendor="Acme", normalized_vendor="acme", category="5010", count=5, confidence=95)

    updated = apply_observation(mapping, "Acme", "5010", 10.00, is_user_corrected=True)

    assert updated.confidence == 100
    assert updated.user_corrections == 1


def test_repeated_inference_follows_count_formula(engine, repository):
    for n in range(1, 13):
        engine.update_mapping("Slack Technologies", "5020", 12.50)

        mapping = rows_by_category(repository, "Slack Technologies")["5020"]
        assert mapping.count == n
        assert mapping.confidence == min(100, 50 + (n - 1) * 5)


def test_competing_category_decays(engine, repository):
    engine.update_mapping("Midjourney", "5020", 10.00, is_user_corrected=True)
    before = rows_by_category(repository, "Midjourney")["5020"].confidence

    engine.update_mapping("Midjourney", "5010", 10.00, is_user_corrected=False)
    rows = rows_by_category(repository, "Midjourney")

    assert before == 70
    assert rows["5020"].confidence == pytest.approx(0.95 * 70)
    assert rows["5010"].confidence == 50


def test_decay_only_touches_same_vendor(engine, repository):
    engine.update_mapping("Adobe", "5020", 50.00, is_user_corrected=True)
    engine.update_mapping("Midjourney", "5010", 10.00)

    assert rows_by_category(repository, "Adobe")["5020"].confidence == 70


def test_unknown_vendor_has_no_prediction(engine):
    assert engine.predict_category("Never Seen Before LLC") is None


def test_prediction_uses_raw_confidence_and_alternatives(engine):
    engine.update_mapping("Adobe", "5020", 50.00, is_user_corrected=True)
    engine.update_mapping("Adobe", "5100", 50.00, is_user_corrected=False)

    prediction = engine.predict_category("ADOBE", 50.00)

    assert prediction.category == "5020"
    # 0.95 * 70 = 66.5 rounds half up
    assert prediction.confidence == 67
    assert prediction.reason == "Based on 1 previous transactions"
    assert prediction.source == "learned"
    assert [(a.category, a.confidence) for a in prediction.alternatives] == [("5100", 50)]


def test_round_half_up():
    assert round_half_up(66.5) == 67
    assert round_half_up(66.49) == 66
    assert round_half_up(0.5) == 1


def test_score_recency_and_amount_range():
    now = datetime(2024, 12, 1, tzinfo=UTC)
    mapping = VendorMapping(
        vendor="Acme",
        normalized_vendor="acme",
        category="5010",
        count=1,
        confidence=50,
        last_used=now - timedelta(days=45),
        amount_range=AmountRange(min=10.00, max=20.00),
    )
    base = 50 + 10 * math.log10(2)

    assert score_mapping(mapping, 15.00, now) == pytest.approx(base + 5)
    assert score_mapping(mapping, 100.00, now) == pytest.approx(base + 5 - 5)
    assert score_mapping(mapping, 4.00, now) == pytest.approx(base + 5 - 5)

    stale = mapping.model_copy(update={"last_used": now - timedelta(days=120)})
    assert score_mapping(stale, None, now) == pytest.approx(base)

    fresh = mapping.model_copy(update={"last_used": now - timedelta(days=1), "user_corrections": 2})
    assert score_mapping(fresh, None, now) == pytest.approx(base + 10 + 30)


def test_bootstrap_skips_unusable_invoices(engine):
    invoices = [
        StoredInvoice(invoice_id="1", vendor="Unknown Vendor", amount=10, date="2024-11-01", category="5140"),
        StoredInvoice(invoice_id="2", vendor="Uber", amount=25, date="2024-11-01", category="5040", is_duplicate=True),
        StoredInvoice(invoice_id="3", vendor="Uber", amount=25, date="2024-11-02", category=None),
        StoredInvoice(invoice_id="4", vendor="Uber", amount=25, date="2024-11-03", category="5040"),
        StoredInvoice(invoice_id="5", vendor="Uber", amount=30, date="2024-11-04", category="5040"),
    ]

    result = engine.bootstrap(invoices)

    assert result.learned == 2
    assert result.skipped == 3
    assert engine.predict_category("Uber").category == "5040"


def test_vendor_statistics(engine):
    engine.update_mapping("Uber", "5040", 25)
    engine.update_mapping("Uber", "5040", 25)
    engine.update_mapping("Uber", "5050", 25)
    engine.update_mapping("Adobe", "5020", 50)

    stats = engine.vendor_statistics(limit=10)

    assert [s.normalized_vendor for s in stats] == ["uber", "adobe"]
    assert stats[0].categories == 2
    assert stats[0].total_count == 3


def test_empty_vendor_is_not_learned(engine):
    assert engine.update_mapping("!!!", "5010", 10) is False


class BrokenRepository(VendorMappingRepositoryBase):
    def find_by_vendor(self, normalized_vendor, limit=5):
        raise LearningEngineFailure("store offline")

    def atomic_upsert(self, normalized_vendor, category, apply_fn):
        raise LearningEngineFailure("store offline")

    def decay_siblings(self, normalized_vendor, winning_category, factor):
        raise LearningEngineFailure("store offline")

    def list_all(self):
        raise LearningEngineFailure("store offline")


def test_store_failures_are_swallowed():
    engine = VendorLearningEngine(BrokenRepository())

    assert engine.update_mapping("Acme", "5010", 10) is False
    assert engine.predict_category("Acme") is None
    assert engine.vendor_statistics() == []


def test_sqlite_mappings_persist_across_instances(db_path):
    VendorLearningEngine(SQLiteVendorMappingRepository(db_path)).update_mapping("Acme", "5010", 10, True)

    prediction = VendorLearningEngine(SQLiteVendorMappingRepository(db_path)).predict_category("acme")

    assert prediction.category == "5010"
    assert prediction.confidence == 70


def test_concurrent_updates_do_not_lose_increments(engine, repository):
    threads_count = 4
    updates_per_thread = 10

    def worker():
        for _ in range(updates_per_thread):
            engine.update_mapping("Zoom", "5030", 15.00)

    threads = [threading.Thread(target=worker) for _ in range(threads_count)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert rows_by_category(repository, "Zoom")["5030"].count == threads_count * updates_per_thread


def test_in_memory_repository_orders_by_confidence_then_count():
    repository = InMemoryVendorMappingRepository()
    for category, confidence, count in [("5010", 50, 3), ("5020", 80, 1), ("5030", 50, 7)]:
        repository.atomic_upsert(
            "acme",
            category,
            lambda _, c=category, conf=confidence, n=count: VendorMapping(
                vendor="Acme", normalized_vendor="acme", category=c, confidence=conf, count=n
            ),
        )

    assert [m.category for m in repository.find_by_vendor("acme")] == ["5020", "5030", "5010"]
