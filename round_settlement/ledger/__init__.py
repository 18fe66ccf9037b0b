from .types import Round, RoundSnapshot
from .reader import LedgerReader
from .writer import LedgerWriter

__all__ = ["Round", "RoundSnapshot", "LedgerReader", "LedgerWriter"]
