"""
Shared API dependencies
"""

from typing import Optional

from fastapi import Header, HTTPException

from ..audit import AuditTrail
from ..collaborators import StorageLedgerRecorder, StorageCategoryRegistry, Clock, SystemClock
from ..config import LoanLedgerConfig, get_config
from ..loans import LoanManager
from ..storage import StorageInterface, create_storage


class LoanLedgerSystem:
    """Loan ledger engine with all components wired to one store"""

    def __init__(
        self,
        storage: Optional[StorageInterface] = None,
        clock: Optional[Clock] = None,
        config: Optional[LoanLedgerConfig] = None
    ):
        self.config = config or get_config()
        self.storage = storage or create_storage(self.config.database_path)
        self.clock = clock or SystemClock()

        self.audit_trail = AuditTrail(self.storage, clock=self.clock)
        self.recorder = StorageLedgerRecorder(self.storage, clock=self.clock)
        self.category_registry = StorageCategoryRegistry(self.storage, clock=self.clock)
        self.loan_manager = LoanManager(
            self.storage, self.recorder, self.category_registry,
            clock=self.clock, audit_trail=self.audit_trail, config=self.config
        )


# Global system instance, created on first use
_system: Optional[LoanLedgerSystem] = None


def get_system() -> LoanLedgerSystem:
    global _system
    if _system is None:
        _system = LoanLedgerSystem()
    return _system


def set_system(system: Optional[LoanLedgerSystem]) -> None:
    """Replace the global system (None rebuilds it from configuration on next use)"""
    global _system
    _system = system


def get_owner_id(x_owner_id: str = Header(..., description="Owner the request acts for")) -> str:
    owner_id = x_owner_id.strip()
    if not owner_id:
        raise HTTPException(status_code=400, detail="X-Owner-Id header is empty")
    return owner_id
