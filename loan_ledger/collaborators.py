"""
Collaborator Contracts

Interfaces the loan manager consumes: a ledger-entry recorder, a category
registry and a clock. Storage-backed default implementations write into the
same store as the loans, so their writes join the loan manager's transaction.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, date, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional
import uuid

from .currency import Money, Currency
from .storage import StorageInterface, StorageRecord


class EntryKind(Enum):
    """Direction of a recorded movement"""
    INCOME = "income"
    EXPENSE = "expense"
    ADJUSTMENT = "adjustment"  # Excluded from income/expense statistics


@dataclass
class LedgerEntry(StorageRecord):
    """A dated monetary movement recorded for an owner and category"""
    owner_id: str
    category_id: str
    kind: EntryKind
    amount: Money
    entry_date: date
    memo: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'created_at': self.created_at.isoformat(),
            'updated_at': self.updated_at.isoformat(),
            'owner_id': self.owner_id,
            'category_id': self.category_id,
            'kind': self.kind.value,
            'amount': str(self.amount.amount),
            'currency': self.amount.currency.code,
            'entry_date': self.entry_date.isoformat(),
            'memo': self.memo
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'LedgerEntry':
        data = StorageRecord.parse_timestamps(dict(data))
        return cls(
            id=data['id'],
            created_at=data['created_at'],
            updated_at=data['updated_at'],
            owner_id=data['owner_id'],
            category_id=data['category_id'],
            kind=EntryKind(data['kind']),
            amount=Money(Decimal(data['amount']), Currency[data['currency']]),
            entry_date=date.fromisoformat(data['entry_date']),
            memo=data['memo']
        )


@dataclass
class Category(StorageRecord):
    """Bucket grouping an owner's ledger entries"""
    owner_id: str
    title: str
    icon: str
    kind: EntryKind
    reminder_day: Optional[int] = None
    estimated_amount: Optional[str] = None  # Decimal string

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result['kind'] = self.kind.value
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Category':
        data = StorageRecord.parse_timestamps(dict(data))
        data['kind'] = EntryKind(data['kind'])
        return cls(**data)


class LedgerEntryRecorder(ABC):
    """Records and removes dated monetary movements"""

    @abstractmethod
    def record_entry(
        self,
        owner_id: str,
        category_id: str,
        kind: EntryKind,
        amount: Money,
        entry_date: date,
        memo: str
    ) -> str:
        """Record a movement and return its stable identifier"""
        pass

    @abstractmethod
    def delete_entry(self, entry_id: str) -> None:
        """Delete an entry; a missing entry is not an error"""
        pass

    @abstractmethod
    def delete_entries_for_category(self, owner_id: str, category_id: str) -> int:
        """Delete every entry of an owner's category, returning how many were removed"""
        pass


class CategoryRegistry(ABC):
    """Creates and maintains the categories loans file their entries under"""

    @abstractmethod
    def create_category(
        self,
        owner_id: str,
        title: str,
        icon: str,
        kind: EntryKind,
        reminder_day: Optional[int] = None,
        estimated_amount: Optional[Money] = None
    ) -> str:
        """Create a category and return its identifier"""
        pass

    @abstractmethod
    def update_category(
        self,
        category_id: str,
        title: Optional[str] = None,
        icon: Optional[str] = None,
        estimated_amount: Optional[Money] = None
    ) -> None:
        """Rename or re-icon a category"""
        pass

    @abstractmethod
    def delete_category(self, category_id: str) -> None:
        """Delete a category; a missing category is not an error"""
        pass


class Clock(ABC):
    """Source of the current time"""

    @abstractmethod
    def now(self) -> datetime:
        pass

    def today(self) -> date:
        return self.now().date()


class SystemClock(Clock):
    """Wall clock in UTC"""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class FixedClock(Clock):
    """Clock pinned to a settable instant, for tests and replays"""

    def __init__(self, instant: datetime):
        self.instant = instant

    def now(self) -> datetime:
        return self.instant

    def set(self, instant: datetime) -> None:
        self.instant = instant


class StorageLedgerRecorder(LedgerEntryRecorder):
    """Ledger entries kept in the engine's own storage"""

    def __init__(self, storage: StorageInterface, table_name: str = "ledger_entries", clock: Optional[Clock] = None):
        self.storage = storage
        self.table_name = table_name
        self.clock = clock or SystemClock()

    def record_entry(self, owner_id, category_id, kind, amount, entry_date, memo) -> str:
        if not amount.is_positive():
            raise ValueError("Ledger entry amount must be positive")
        now = self.clock.now()
        entry = LedgerEntry(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            owner_id=owner_id,
            category_id=category_id,
            kind=kind,
            amount=amount,
            entry_date=entry_date,
            memo=memo
        )
        self.storage.save(self.table_name, entry.id, entry.to_dict())
        return entry.id

    def delete_entry(self, entry_id: str) -> None:
        self.storage.delete(self.table_name, entry_id)

    def delete_entries_for_category(self, owner_id: str, category_id: str) -> int:
        entries = self.storage.find(self.table_name, {'owner_id': owner_id, 'category_id': category_id})
        for entry in entries:
            self.storage.delete(self.table_name, entry['id'])
        return len(entries)

    def get_entry(self, entry_id: str) -> Optional[LedgerEntry]:
        data = self.storage.load(self.table_name, entry_id)
        return LedgerEntry.from_dict(data) if data else None

    def list_entries(self, owner_id: str, category_id: Optional[str] = None) -> List[LedgerEntry]:
        filters = {'owner_id': owner_id}
        if category_id is not None:
            filters['category_id'] = category_id
        entries = [LedgerEntry.from_dict(data) for data in self.storage.find(self.table_name, filters)]
        entries.sort(key=lambda e: (e.entry_date, e.created_at))
        return entries


class StorageCategoryRegistry(CategoryRegistry):
    """Categories kept in the engine's own storage"""

    def __init__(self, storage: StorageInterface, table_name: str = "categories", clock: Optional[Clock] = None):
        self.storage = storage
        self.table_name = table_name
        self.clock = clock or SystemClock()

    def create_category(self, owner_id, title, icon, kind, reminder_day=None, estimated_amount=None) -> str:
        now = self.clock.now()
        category = Category(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            owner_id=owner_id,
            title=title,
            icon=icon,
            kind=kind,
            reminder_day=reminder_day,
            estimated_amount=str(estimated_amount.amount) if estimated_amount else None
        )
        self.storage.save(self.table_name, category.id, category.to_dict())
        return category.id

    def update_category(self, category_id, title=None, icon=None, estimated_amount=None) -> None:
        category = self.get_category(category_id)
        if not category:
            raise ValueError(f"Category {category_id} not found")
        if title is not None:
            category.title = title
        if icon is not None:
            category.icon = icon
        if estimated_amount is not None and category.estimated_amount is not None:
            category.estimated_amount = str(estimated_amount.amount)
        category.updated_at = self.clock.now()
        self.storage.save(self.table_name, category.id, category.to_dict())

    def delete_category(self, category_id: str) -> None:
        self.storage.delete(self.table_name, category_id)

    def get_category(self, category_id: str) -> Optional[Category]:
        data = self.storage.load(self.table_name, category_id)
        return Category.from_dict(data) if data else None
