"""
List view logic for the module catalog.

The controller holds one loaded collection and derives everything the list
page shows from it: the filtered projection, the current page and the
transient success notice. Filtering/sorting/pagination are plain functions so
they can be reasoned about (and tested) without a backend.
"""
from __future__ import annotations

import logging
import math
import threading
import time
from collections.abc import Callable, Iterable, Sequence

from app.modhub.modules.catalog.store import Module, ModuleStore, ModuleStoreError

logger = logging.getLogger(__name__)

FILTERS = ("all", "active", "archived")
PAGE_SIZES = (25, 50, 100, 0)  # 0 = show all
DEFAULT_PAGE_SIZE = 25
NOTICE_TTL_SECONDS = 3.0

LOAD_ERROR_MESSAGE = "Failed to load modules"
ARCHIVE_ERROR_MESSAGE = "Failed to archive module"


def archive_prompt(name: str) -> str:
    return f'Are you sure you want to archive "{name}"?'


def archived_notice(name: str) -> str:
    return f'"{name}" archived successfully.'


def _matches(m: Module, filter_key: str) -> bool:
    if filter_key == "active":
        return not m.is_archived
    if filter_key == "archived":
        return m.is_archived
    return True


def filter_modules(modules: Iterable[Module], filter_key: str) -> list[Module]:
    """Keep records matching the filter; active before archived, otherwise in input order."""
    if filter_key not in FILTERS:
        raise ValueError(f"Unknown filter: {filter_key!r}")
    # sorted() is stable, so ties keep their loaded (created_at desc) order.
    return sorted((m for m in modules if _matches(m, filter_key)), key=lambda m: m.is_archived)


def total_pages(count: int, page_size: int) -> int:
    if page_size == 0:
        return 1
    return max(1, math.ceil(count / page_size))


def clamp_page(page: int, pages: int) -> int:
    return min(max(page, 1), max(pages, 1))


def page_slice(items: Sequence[Module], page: int, page_size: int) -> list[Module]:
    if page_size == 0:
        return list(items)
    start = (page - 1) * page_size
    return list(items[start:start + page_size])


class ArchiveGuard:
    """Ids with an archive call in flight. Shared across controllers in one process."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._ids: set[str] = set()

    def acquire(self, module_id: str) -> bool:
        with self._lock:
            if module_id in self._ids:
                return False
            self._ids.add(module_id)
            return True

    def release(self, module_id: str) -> None:
        with self._lock:
            self._ids.discard(module_id)

    def __contains__(self, module_id: object) -> bool:
        with self._lock:
            return module_id in self._ids


def _decline(_prompt: str) -> bool:
    return False


def _log_alert(message: str) -> None:
    logger.warning("alert: %s", message)


class ModuleListController:
    def __init__(
        self,
        store: ModuleStore,
        *,
        confirm: Callable[[str], bool] = _decline,
        alert: Callable[[str], None] = _log_alert,
        clock: Callable[[], float] = time.monotonic,
        guard: ArchiveGuard | None = None,
        page_size: int = DEFAULT_PAGE_SIZE,
        notice_ttl: float = NOTICE_TTL_SECONDS,
    ) -> None:
        if page_size not in PAGE_SIZES:
            raise ValueError(f"Unsupported page size: {page_size!r}")
        self.store = store
        self.confirm = confirm
        self.alert = alert
        self.clock = clock
        self.guard = guard if guard is not None else ArchiveGuard()
        self.notice_ttl = notice_ttl

        self.modules: list[Module] = []
        self.filter = "all"
        self.projection: list[Module] = []
        self.page = 1
        self.page_size = page_size
        self.loading = True
        self.error: str | None = None

        self._notice: str | None = None
        self._notice_expires_at = 0.0

    # ---------- Derived state ----------
    @property
    def total_pages(self) -> int:
        return total_pages(len(self.projection), self.page_size)

    @property
    def displayed(self) -> list[Module]:
        return page_slice(self.projection, self.page, self.page_size)

    @property
    def has_prev(self) -> bool:
        return self.page > 1

    @property
    def has_next(self) -> bool:
        return self.page < self.total_pages

    @property
    def notice(self) -> str | None:
        if self._notice is not None and self.clock() >= self._notice_expires_at:
            self._notice = None
        return self._notice

    def is_archiving(self, module_id: str) -> bool:
        return module_id in self.guard

    def find(self, module_id: str) -> Module | None:
        return next((m for m in self.modules if m.id == module_id), None)

    def _recompute(self) -> None:
        self.projection = filter_modules(self.modules, self.filter)
        self.page = 1

    # ---------- Operations ----------
    def load(self) -> bool:
        self.loading = True
        try:
            self.modules = self.store.list_modules()
        except ModuleStoreError:
            logger.exception("Loading modules failed")
            self.error = LOAD_ERROR_MESSAGE
            return False
        finally:
            self.loading = False
        self.error = None
        self._recompute()
        return True

    def apply_filter(self, filter_key: str) -> None:
        if filter_key not in FILTERS:
            raise ValueError(f"Unknown filter: {filter_key!r}")
        self.filter = filter_key
        self._recompute()

    def set_page_size(self, page_size: int) -> None:
        if page_size not in PAGE_SIZES:
            raise ValueError(f"Unsupported page size: {page_size!r}")
        self.page_size = page_size
        self.page = 1

    def paginate(self, direction: int) -> int:
        """Step one page back (direction < 0) or forward (direction > 0)."""
        step = (direction > 0) - (direction < 0)
        self.page = clamp_page(self.page + step, self.total_pages)
        return self.page

    def go_to_page(self, page: int) -> int:
        self.page = clamp_page(page, self.total_pages)
        return self.page

    def archive(self, module_id: str, name: str) -> bool:
        """
        Confirm, then flip is_archived on one record and patch local state.
        Returns True only when the backend accepted the change.
        """
        if self.is_archiving(module_id):
            return False
        if not self.confirm(archive_prompt(name)):
            return False
        if not self.guard.acquire(module_id):
            return False
        try:
            self.store.archive_module(module_id)
        except ModuleStoreError:
            logger.exception("Archiving module %s failed", module_id)
            self.alert(ARCHIVE_ERROR_MESSAGE)
            return False
        finally:
            self.guard.release(module_id)

        self.modules = [m.archived() if m.id == module_id else m for m in self.modules]
        self._recompute()
        self._notice = archived_notice(name)
        self._notice_expires_at = self.clock() + self.notice_ttl
        return True
