from compound_loop.state.context_store import CATEGORIES, ContextEntry, ContextStore
from compound_loop.state.spec_document import (
    IterationOutcome,
    IterationRecord,
    SpecDocument,
    SpecStatus,
)
from compound_loop.state.storage import StateError

__all__ = [
    "CATEGORIES",
    "ContextEntry",
    "ContextStore",
    "IterationOutcome",
    "IterationRecord",
    "SpecDocument",
    "SpecStatus",
    "StateError",
]
