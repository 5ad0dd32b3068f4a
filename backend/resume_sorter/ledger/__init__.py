from resume_sorter.ledger.engine import LedgerEngine, LedgerOutcome, today_in_timezone

__all__ = ["LedgerEngine", "LedgerOutcome", "today_in_timezone"]
