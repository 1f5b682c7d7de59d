from __future__ import annotations

from .engine import UsageEngine
from .store import ActivityUpdate, TokenCounts, UsageRow

__version__ = "0.1.0"

__all__ = ["ActivityUpdate", "TokenCounts", "UsageEngine", "UsageRow", "__version__"]
