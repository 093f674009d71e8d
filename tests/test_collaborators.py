"""
Tests for the storage-backed collaborators and clocks
"""

import pytest
from decimal import Decimal
from datetime import datetime, timezone, date

from loan_ledger.currency import Money, Currency
from loan_ledger.storage import InMemoryStorage
from loan_ledger.collaborators import (
    EntryKind, StorageLedgerRecorder, StorageCategoryRegistry,
    SystemClock, FixedClock
)


class TestStorageLedgerRecorder:
    """Test ledger entry recording"""

    def setup_method(self):
        self.storage = InMemoryStorage()
        self.recorder = StorageLedgerRecorder(self.storage)

    def test_record_and_read_back(self):
        entry_id = self.recorder.record_entry(
            owner_id="alice",
            category_id="cat-1",
            kind=EntryKind.EXPENSE,
            amount=Money(Decimal("120.00"), Currency.USD),
            entry_date=date(2024, 2, 15),
            memo="Installment 1/12 interest - Car"
        )

        entry = self.recorder.get_entry(entry_id)
        assert entry.kind == EntryKind.EXPENSE
        assert entry.amount == Money(Decimal("120.00"), Currency.USD)
        assert entry.entry_date == date(2024, 2, 15)
        assert entry.memo == "Installment 1/12 interest - Car"

    def test_rejects_non_positive_amount(self):
        with pytest.raises(ValueError, match="positive"):
            self.recorder.record_entry(
                "alice", "cat-1", EntryKind.EXPENSE, Money.zero(Currency.USD), date(2024, 1, 1), "zero"
            )

    def test_delete_is_idempotent(self):
        entry_id = self.recorder.record_entry(
            "alice", "cat-1", EntryKind.INCOME, Money(Decimal("5"), Currency.USD), date(2024, 1, 1), "gift"
        )
        self.recorder.delete_entry(entry_id)
        self.recorder.delete_entry(entry_id)

        assert self.recorder.get_entry(entry_id) is None

    def test_delete_entries_for_category(self):
        for memo in ("one", "two"):
            self.recorder.record_entry(
                "alice", "cat-1", EntryKind.EXPENSE, Money(Decimal("1"), Currency.USD), date(2024, 1, 1), memo
            )
        self.recorder.record_entry(
            "alice", "cat-2", EntryKind.EXPENSE, Money(Decimal("1"), Currency.USD), date(2024, 1, 1), "other"
        )
        self.recorder.record_entry(
            "bob", "cat-1", EntryKind.EXPENSE, Money(Decimal("1"), Currency.USD), date(2024, 1, 1), "bob's"
        )

        assert self.recorder.delete_entries_for_category("alice", "cat-1") == 2
        assert [e.memo for e in self.recorder.list_entries("alice")] == ["other"]
        assert len(self.recorder.list_entries("bob", "cat-1")) == 1


class TestStorageCategoryRegistry:
    """Test category creation and maintenance"""

    def setup_method(self):
        self.storage = InMemoryStorage()
        self.registry = StorageCategoryRegistry(self.storage)

    def test_create_with_reminder(self):
        category_id = self.registry.create_category(
            "alice", "Car", "🚗", EntryKind.EXPENSE,
            reminder_day=15, estimated_amount=Money(Decimal("1066.19"), Currency.USD)
        )

        category = self.registry.get_category(category_id)
        assert category.title == "Car"
        assert category.kind == EntryKind.EXPENSE
        assert category.reminder_day == 15
        assert category.estimated_amount == "1066.19"

    def test_update_and_delete(self):
        category_id = self.registry.create_category("alice", "Car", "🚗", EntryKind.EXPENSE)

        self.registry.update_category(category_id, title="Truck", icon="🚚")
        category = self.registry.get_category(category_id)
        assert (category.title, category.icon) == ("Truck", "🚚")
        assert category.estimated_amount is None

        self.registry.delete_category(category_id)
        assert self.registry.get_category(category_id) is None
        self.registry.delete_category(category_id)

    def test_update_missing_category(self):
        with pytest.raises(ValueError, match="not found"):
            self.registry.update_category("missing", title="x")


class TestClocks:

    def test_system_clock_is_utc(self):
        now = SystemClock().now()
        assert now.tzinfo == timezone.utc

    def test_fixed_clock(self):
        clock = FixedClock(datetime(2024, 2, 10, 12, 0, tzinfo=timezone.utc))
        assert clock.today() == date(2024, 2, 10)

        clock.set(datetime(2024, 3, 1, 8, 0, tzinfo=timezone.utc))
        assert clock.now() == datetime(2024, 3, 1, 8, 0, tzinfo=timezone.utc)

    def test_storage_collaborators_stamp_with_injected_clock(self):
        storage = InMemoryStorage()
        clock = FixedClock(datetime(2024, 2, 10, 12, 0, tzinfo=timezone.utc))
        recorder = StorageLedgerRecorder(storage, clock=clock)
        registry = StorageCategoryRegistry(storage, clock=clock)

        entry_id = recorder.record_entry(
            "alice", "cat-1", EntryKind.EXPENSE, Money(Decimal("5"), Currency.USD), date(2024, 2, 10), "fee"
        )
        category_id = registry.create_category("alice", "Car", "🚗", EntryKind.EXPENSE)
        clock.set(datetime(2024, 3, 1, 8, 0, tzinfo=timezone.utc))
        registry.update_category(category_id, title="Truck")

        assert recorder.get_entry(entry_id).created_at == datetime(2024, 2, 10, 12, 0, tzinfo=timezone.utc)
        category = registry.get_category(category_id)
        assert category.created_at == datetime(2024, 2, 10, 12, 0, tzinfo=timezone.utc)
        assert category.updated_at == datetime(2024, 3, 1, 8, 0, tzinfo=timezone.utc)
