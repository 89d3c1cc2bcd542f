from app.platform.ledger.models import LedgerAccount, LedgerEntry
from app.platform.ledger.schemas import (
    LedgerAccountCreate,
    LedgerAccountRead,
    LedgerEntryRead,
    LedgerPostingResult,
    TrialBalanceRead,
)
from app.platform.ledger.service import LedgerService, ledger_service

__all__ = [
    "LedgerAccount",
    "LedgerEntry",
    "LedgerAccountCreate",
    "LedgerAccountRead",
    "LedgerEntryRead",
    "LedgerPostingResult",
    "TrialBalanceRead",
    "LedgerService",
    "ledger_service",
]
