"""Client-side mirror of a remote table kept current by its change feed."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Generic, Protocol, Sequence, TypeVar

from quiz_nexus.core.models import ChangeEvent, ChangeKind
from quiz_nexus.core.services.quiz_backend import ChangeFeed, Unsubscribe
from quiz_nexus.core.visibility import VisibilityPolicy

logger = logging.getLogger(__name__)


class Identified(Protocol):
    @property
    def id(self) -> str: ...


T = TypeVar("T", bound=Identified)


def _index_of(items: Sequence[T], entity_id: str) -> int:
    return next((i for i, item in enumerate(items) if item.id == entity_id), -1)


def merge_insert(items: Sequence[T], entity: T, is_visible: VisibilityPolicy[T]) -> list[T]:
    """Prepend a newly visible entity; duplicates and hidden rows are no-ops."""
    if not is_visible(entity) or _index_of(items, entity.id) >= 0:
        return list(items)
    return [entity, *items]


def merge_update(items: Sequence[T], entity: T, is_visible: VisibilityPolicy[T]) -> list[T]:
    """Replace in place, drop when it became hidden, or surface it at the front."""
    index = _index_of(items, entity.id)
    visible = is_visible(entity)
    if index >= 0:
        if visible:
            return [*items[:index], entity, *items[index + 1 :]]
        return [*items[:index], *items[index + 1 :]]
    if visible:
        return [entity, *items]
    return list(items)


def merge_delete(items: Sequence[T], entity_id: str) -> list[T]:
    return [item for item in items if item.id != entity_id]


def apply_change(
    items: Sequence[T],
    event: ChangeEvent,
    is_visible: VisibilityPolicy[T],
    parse_row: Callable[[dict[str, Any]], T],
) -> list[T]:
    """Return the collection that results from one change notification.

    Pure with respect to ``items``; unknown kinds and events without a usable
    row leave the collection unchanged.
    """
    if event.kind == ChangeKind.INSERT:
        if not event.new:
            return list(items)
        return merge_insert(items, parse_row(event.new), is_visible)
    if event.kind == ChangeKind.UPDATE:
        if not event.new:
            return list(items)
        return merge_update(items, parse_row(event.new), is_visible)
    if event.kind == ChangeKind.DELETE:
        row = event.old or event.new
        if not row or "id" not in row:
            return list(items)
        return merge_delete(items, str(row["id"]))
    return list(items)


class LiveCollectionReconciler(Generic[T]):
    """Newest-first, visibility-filtered list of entities mirroring one table."""

    def __init__(
        self,
        *,
        table: str,
        feed: ChangeFeed,
        fetch: Callable[[], Awaitable[list[T]]],
        parse_row: Callable[[dict[str, Any]], T],
        is_visible: VisibilityPolicy[T],
        refetch_on_subscribe: bool = False,
    ) -> None:
        self._table = table
        self._feed = feed
        self._fetch = fetch
        self._parse_row = parse_row
        self._is_visible = is_visible
        self._refetch_on_subscribe = refetch_on_subscribe
        self._items: list[T] = []
        self._unsubscribe: Unsubscribe | None = None
        self._refetch_task: asyncio.Task[None] | None = None
        self._closed = False

    @property
    def items(self) -> list[T]:
        return list(self._items)

    @property
    def is_open(self) -> bool:
        return self._unsubscribe is not None

    def get(self, entity_id: str) -> T | None:
        index = _index_of(self._items, entity_id)
        return self._items[index] if index >= 0 else None

    async def open(self) -> None:
        """Load the initial rows and attach to the change feed."""
        self._closed = False
        await self.refresh()
        if self._closed:
            return
        self._unsubscribe = self._feed.subscribe(
            self._table,
            self.apply,
            on_subscribed=self._handle_subscribed,
        )
        logger.info("Subscribed to change feed for %s", self._table)

    def close(self) -> None:
        """Detach from the change feed; later notifications are dropped."""
        self._closed = True
        if self._refetch_task is not None and not self._refetch_task.done():
            self._refetch_task.cancel()
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
            logger.info("Unsubscribed from change feed for %s", self._table)

    async def refresh(self) -> None:
        fetched = await self._fetch()
        if self._closed:
            return
        seen: set[str] = set()
        items: list[T] = []
        for entity in fetched:
            if entity.id in seen or not self._is_visible(entity):
                continue
            seen.add(entity.id)
            items.append(entity)
        self._items = items

    def apply(self, event: ChangeEvent) -> None:
        if self._closed:
            return
        self._items = apply_change(self._items, event, self._is_visible, self._parse_row)

    def upsert_local(self, entity: T) -> None:
        """Merge the outcome of a successful local write before its feed echo."""
        self._items = merge_update(self._items, entity, self._is_visible)

    def remove_local(self, entity_id: str) -> None:
        self._items = merge_delete(self._items, entity_id)

    def _handle_subscribed(self) -> None:
        if not self._refetch_on_subscribe or self._closed:
            return
        logger.info("Re-fetching %s to reconcile after (re)subscribe", self._table)
        self._refetch_task = asyncio.get_running_loop().create_task(self.refresh())
        self._refetch_task.add_done_callback(self._log_refetch_failure)

    def _log_refetch_failure(self, task: asyncio.Task[None]) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.warning("Reconciling re-fetch of %s failed: %s", self._table, exc)
