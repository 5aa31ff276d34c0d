"""
Per-screen view state.

Each page controller owns one ScreenState built for the request: banner
messages, pagination, filters and the fetch generation guard. Nothing in
here is shared between screens.
"""
import math
import threading
import time
from typing import Any, Callable, Dict, List, Optional

SUCCESS_TTL = 5.0

PAGE_SIZE_OPTIONS = [10, 20, 30, 40, 50]


class Banner:
    """Success messages expire after SUCCESS_TTL seconds, errors persist until replaced."""

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self.kind = None
        self.message = None
        self.expires_at = None

    def success(self, message: str):
        self.kind = 'success'
        self.message = message
        self.expires_at = self._clock() + SUCCESS_TTL

    def error(self, message: str):
        self.kind = 'error'
        self.message = message
        self.expires_at = None

    def warning(self, message: str):
        self.kind = 'warning'
        self.message = message
        self.expires_at = self._clock() + SUCCESS_TTL

    def clear(self):
        self.kind = self.message = self.expires_at = None

    @property
    def visible(self) -> bool:
        if self.message is None:
            return False
        if self.expires_at is not None and self._clock() >= self.expires_at:
            self.clear()
            return False
        return True

    def to_dict(self) -> Optional[Dict[str, Any]]:
        if not self.visible:
            return None
        return {'kind': self.kind, 'message': self.message}


class Pagination:
    def __init__(self, page: int = 1, page_size: int = PAGE_SIZE_OPTIONS[0]):
        self.page_size = page_size if page_size > 0 else PAGE_SIZE_OPTIONS[0]
        self.page = max(1, page)

    def set_page_size(self, size: int):
        if size <= 0:
            raise ValueError('Page size must be positive')
        self.page_size = size
        self.page = 1

    def set_page(self, page: int):
        self.page = max(1, page)

    def total_pages(self, total: int) -> int:
        return max(1, math.ceil(total / self.page_size))

    def slice(self, items: List[Any]) -> List[Any]:
        # Clamp to the last page when the list shrank under us
        last = self.total_pages(len(items))
        if self.page > last:
            self.page = last
        start = (self.page - 1) * self.page_size
        return items[start:start + self.page_size]

    def to_dict(self, total: int) -> Dict[str, Any]:
        return {
            'page': self.page,
            'page_size': self.page_size,
            'total': total,
            'total_pages': self.total_pages(total),
            'page_size_options': PAGE_SIZE_OPTIONS,
        }


class FilterSet:
    """
    Named filters, each a predicate factory keyed by filter name.

    Empty values ('' or None) disable a filter. Changing or clearing a
    filter notifies `on_change`, which screens use to reset pagination.
    """

    def __init__(self, predicates: Dict[str, Callable[[Any, Any], bool]], on_change=None):
        self._predicates = predicates
        self.values: Dict[str, Any] = {name: '' for name in predicates}
        self._on_change = on_change

    def set(self, name: str, value):
        if name not in self._predicates:
            raise KeyError(name)
        self.values[name] = value
        if self._on_change:
            self._on_change()

    def update(self, values: Dict[str, Any]):
        changed = False
        for name, value in values.items():
            if name in self._predicates and value not in (None, ''):
                self.values[name] = value
                changed = True
        if changed and self._on_change:
            self._on_change()

    def clear(self):
        self.values = {name: '' for name in self._predicates}
        if self._on_change:
            self._on_change()

    @property
    def active(self) -> Dict[str, Any]:
        return {k: v for k, v in self.values.items() if v not in (None, '')}

    def apply(self, items: List[Any]) -> List[Any]:
        active = self.active
        if not active:
            return list(items)
        return [
            item for item in items
            if all(self._predicates[name](item, value) for name, value in active.items())
        ]


class FetchGuard:
    """
    Generation counter for screen loads.

    begin() starts a new generation and cancels the future registered for
    the previous one; accept() tells whether a result still belongs to the
    latest generation.

    The Flask routes build a fresh screen per request, so a load is only
    superseded when one screen object is shared, e.g. a refetch started
    from another thread while an earlier load is still running.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self.generation = 0
        self._future = None

    def begin(self, future=None) -> int:
        with self._lock:
            self.generation += 1
            if self._future is not None and not self._future.done():
                self._future.cancel()
            self._future = future
            return self.generation

    def attach(self, generation: int, future):
        with self._lock:
            if generation == self.generation:
                self._future = future
            else:
                future.cancel()

    def accept(self, generation: int) -> bool:
        with self._lock:
            return generation == self.generation


class ScreenState:
    """Common state of a page controller."""

    def __init__(self, clock=time.monotonic):
        self.banner = Banner(clock)
        self.loading = False
        self.guard = FetchGuard()
        self.modal: Optional[str] = None

    def open_modal(self, name: str):
        self.modal = name

    def close_modal(self):
        self.modal = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'banner': self.banner.to_dict(),
            'loading': self.loading,
            'modal': self.modal,
        }
