"""
Routing of mixed batches to per-kind bulk operations.

A `BulkOperationRouter` is an explicit routing table built by the caller and
passed by reference; there is no process-wide registry. It is itself a
`BulkOperation`, so a single buffer table can feed several downstream APIs.
"""
from collections import defaultdict
from typing import Dict, List, Mapping
import asyncio
import logging

from .models import BatchItem, BulkResult
from .protocols import BulkOperation

logger = logging.getLogger(__name__)


class BulkOperationRouter(BulkOperation):
    def __init__(self, routes: Mapping[str, BulkOperation] | None = None):
        self._routes: Dict[str, BulkOperation] = dict(routes or {})

    def register(self, kind: str, operation: BulkOperation):
        if not isinstance(kind, str) or not kind.strip():
            raise ValueError("kind must be a non-empty string")
        if kind in self._routes:
            raise ValueError(f"A bulk operation is already registered for kind {kind!r}")
        self._routes[kind] = operation

    @property
    def kinds(self) -> List[str]:
        return sorted(self._routes)

    async def _call_route(self, kind: str, items: List[BatchItem]) -> BulkResult:
        operation = self._routes.get(kind)
        if operation is None:
            return BulkResult.all_failed(items, f"no bulk operation registered for kind {kind!r}")
        try:
            return await operation(items)
        except Exception as e:
            # Only this route's items fail; the other routes keep their results.
            logger.warning(f"Bulk operation for kind {kind!r} raised: {e!r}")
            return BulkResult.all_failed(items, repr(e))

    async def __call__(self, items: List[BatchItem]) -> BulkResult:
        by_kind: Dict[str, List[BatchItem]] = defaultdict(list)
        for item in items:
            by_kind[item.record.kind].append(item)

        results = await asyncio.gather(
            *(self._call_route(kind, group) for kind, group in by_kind.items())
        )
        failed: Dict[int, str] = {}
        for result in results:
            failed.update(result.failed)
        return BulkResult(failed=failed)
