"""
PER-ITEM UNIT OF WORK
=====================

Batch operations (import, bulk invitations, releases) are best-effort:
each item runs in its own short transaction, a failure rolls back only
that item, and the aggregate result is always returned, never raised.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, List, Optional

from clubshares.extensions import db

logger = logging.getLogger(__name__)

SUCCEEDED = 'succeeded'
FAILED = 'failed'
SKIPPED = 'skipped'


class SkipUnit(Exception):
    """Raised inside a unit to report a no-op (e.g. already released)"""
    pass


@dataclass
class UnitResult:
    key: Any
    outcome: str
    error: Optional[str] = None
    value: Any = None

    def to_dict(self):
        data = {'key': self.key, 'outcome': self.outcome}
        if self.error:
            data['error'] = self.error
        return data


@dataclass
class BatchResult:
    operation: str
    results: List[UnitResult] = field(default_factory=list)

    def record(self, result: UnitResult) -> UnitResult:
        self.results.append(result)
        return result

    def _count(self, outcome):
        return sum(1 for r in self.results if r.outcome == outcome)

    @property
    def succeeded(self) -> int:
        return self._count(SUCCEEDED)

    @property
    def failed(self) -> int:
        return self._count(FAILED)

    @property
    def skipped(self) -> int:
        return self._count(SKIPPED)

    @property
    def total(self) -> int:
        return len(self.results)

    def summary(self) -> str:
        text = f"{self.succeeded} succeeded, {self.failed} failed"
        if self.skipped:
            text += f", {self.skipped} skipped"
        return text

    def to_dict(self):
        return {
            'operation': self.operation,
            'succeeded': self.succeeded,
            'failed': self.failed,
            'skipped': self.skipped,
            'total': self.total,
            'summary': self.summary(),
            'results': [r.to_dict() for r in self.results],
        }


def run_unit(operation: str, key: Any, func: Callable, *args, **kwargs) -> UnitResult:
    """
    Run one item and commit it on its own.

    Any exception is logged with the item key and turned into a FAILED
    result; the session is rolled back so the next item starts clean.
    """
    try:
        value = func(*args, **kwargs)
        db.session.commit()
        return UnitResult(key=key, outcome=SUCCEEDED, value=value)

    except SkipUnit as skip:
        db.session.rollback()
        logger.info("%s: skipped %s (%s)", operation, key, skip)
        return UnitResult(key=key, outcome=SKIPPED, error=str(skip))
    except Exception as e:
        db.session.rollback()
        logger.warning("%s: item %s failed: %s", operation, key, e, exc_info=True)
        return UnitResult(key=key, outcome=FAILED, error=str(e) or e.__class__.__name__)


def run_batch(operation: str, items: Iterable, func: Callable,
              key: Callable[[Any], Any] = lambda item: item, **kwargs) -> BatchResult:
    """Apply `func(item, **kwargs)` to every item as an independent unit."""
    result = BatchResult(operation=operation)
    for item in items:
        result.record(run_unit(operation, key(item), func, item, **kwargs))

    logger.info("%s finished: %s", operation, result.summary())
    return result
