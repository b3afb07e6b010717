"""Tests for the module list controller (filter/sort/paginate/archive)."""
import pytest

from app.modhub.modules.catalog.store import Module, ModuleNotFound, ModuleStore, ModuleStoreError
from app.modhub.modules.catalog.view import (
    ArchiveGuard,
    FILTERS,
    ModuleListController,
    clamp_page,
    filter_modules,
    page_slice,
    total_pages,
)


class FakeStore(ModuleStore):
    def __init__(self, modules, *, fail_list=False, fail_update=False):
        self.rows = list(modules)
        self.fail_list = fail_list
        self.fail_update = fail_update
        self.calls = []

    def list_modules(self):
        self.calls.append(("list",))
        if self.fail_list:
            raise ModuleStoreError("connection refused")
        return list(self.rows)

    def update_module(self, module_id, fields):
        self.calls.append(("update", module_id, fields))
        if self.fail_update:
            raise ModuleStoreError("HTTP 500 from backend")
        for i, m in enumerate(self.rows):
            if m.id == module_id:
                self.rows[i] = Module(**{**m.__dict__, **fields})
                return self.rows[i]
        raise ModuleNotFound(module_id)


class FakeClock:
    def __init__(self):
        self.now = 100.0

    def __call__(self):
        return self.now


def _m(id, archived=False, name=None):
    return Module(id=str(id), name=name or f"Module {id}", is_archived=archived)


def _ids(modules):
    return [m.id for m in modules]


def _controller(modules, **kwargs):
    store = kwargs.pop("store", None) or FakeStore(modules)
    ctl = ModuleListController(store, **kwargs)
    assert ctl.load()
    return ctl, store


# ---------- Filtering ----------
def test_active_filter_keeps_original_relative_order():
    ctl, _ = _controller([_m(1), _m(2, archived=True), _m(3)])
    ctl.apply_filter("active")
    assert _ids(ctl.projection) == ["1", "3"]


def test_all_filter_sorts_archived_after_active_stably():
    modules = [_m(1, archived=True), _m(2), _m(3, archived=True), _m(4), _m(5)]
    assert _ids(filter_modules(modules, "all")) == ["2", "4", "5", "1", "3"]


def test_archived_filter():
    modules = [_m(1), _m(2, archived=True), _m(3, archived=True)]
    assert _ids(filter_modules(modules, "archived")) == ["2", "3"]


def test_every_filter_projects_exactly_the_matching_subset():
    modules = [_m(i, archived=(i % 3 == 0)) for i in range(1, 20)]
    expected = {
        "all": {m.id for m in modules},
        "active": {m.id for m in modules if not m.is_archived},
        "archived": {m.id for m in modules if m.is_archived},
    }
    for f in FILTERS:
        projected = filter_modules(modules, f)
        assert {m.id for m in projected} == expected[f]
        flags = [m.is_archived for m in projected]
        assert flags == sorted(flags)
        for archived in (False, True):
            group = [m.id for m in projected if m.is_archived is archived]
            assert group == [m.id for m in modules if m.is_archived is archived and m.id in expected[f]]


def test_unknown_filter_is_rejected():
    ctl, _ = _controller([_m(1)])
    with pytest.raises(ValueError):
        ctl.apply_filter("deleted")


# ---------- Pagination ----------
def test_filter_change_resets_page():
    ctl, _ = _controller([_m(i) for i in range(60)])
    ctl.paginate(+1)
    assert ctl.page == 2
    ctl.apply_filter("active")
    assert ctl.page == 1


def test_page_size_change_resets_page():
    ctl, _ = _controller([_m(i) for i in range(120)])
    ctl.go_to_page(3)
    assert ctl.page == 3
    ctl.set_page_size(50)
    assert ctl.page == 1


def test_unsupported_page_size_is_rejected():
    ctl, _ = _controller([_m(1)])
    with pytest.raises(ValueError):
        ctl.set_page_size(10)


def test_unbounded_page_size_is_always_one_page():
    ctl, _ = _controller([_m(i) for i in range(250)])
    ctl.set_page_size(0)
    assert ctl.total_pages == 1
    assert len(ctl.displayed) == 250
    assert total_pages(0, 0) == 1
    assert total_pages(10_000, 0) == 1


def test_total_pages_rounds_up_and_never_drops_below_one():
    assert total_pages(51, 25) == 3
    assert total_pages(50, 25) == 2
    assert total_pages(0, 25) == 1


def test_paginate_is_clamped():
    ctl, _ = _controller([_m(i) for i in range(30)])
    assert ctl.paginate(-1) == 1
    assert ctl.paginate(+1) == 2
    assert ctl.paginate(+1) == 2
    assert ctl.go_to_page(99) == 2
    assert ctl.go_to_page(-5) == 1
    assert clamp_page(4, 0) == 1


def test_displayed_is_the_current_page_slice():
    ctl, _ = _controller([_m(i) for i in range(30)])
    ctl.paginate(+1)
    assert _ids(ctl.displayed) == [str(i) for i in range(25, 30)]
    assert ctl.has_prev and not ctl.has_next
    assert page_slice(ctl.projection, 2, 0) == ctl.projection


# ---------- Load ----------
def test_load_success_populates_and_clears_loading():
    store = FakeStore([_m(1), _m(2)])
    ctl = ModuleListController(store)
    assert ctl.loading
    assert ctl.load() is True
    assert not ctl.loading
    assert ctl.error is None
    assert _ids(ctl.modules) == ["1", "2"]


def test_load_failure_surfaces_error_without_retry():
    store = FakeStore([_m(1)], fail_list=True)
    ctl = ModuleListController(store)
    assert ctl.load() is False
    assert ctl.error == "Failed to load modules"
    assert not ctl.loading
    assert ctl.modules == []
    assert store.calls == [("list",)]


# ---------- Archive ----------
def test_archive_updates_only_target_and_notice_self_clears():
    clock = FakeClock()
    prompts = []

    def confirm(prompt):
        prompts.append(prompt)
        return True

    ctl, store = _controller(
        [_m(1, name="Alpha"), _m(2, archived=True), _m(3)],
        confirm=confirm,
        clock=clock,
    )
    before = {m.id: m for m in ctl.modules}

    assert ctl.archive("1", "Alpha") is True

    assert prompts == ['Are you sure you want to archive "Alpha"?']
    assert store.calls[-1] == ("update", "1", {"is_archived": True})
    assert store.calls.count(("list",)) == 1
    after = {m.id: m for m in ctl.modules}
    assert after["1"].is_archived is True
    assert after["2"] == before["2"]
    assert after["3"] == before["3"]
    assert not ctl.is_archiving("1")

    assert ctl.notice == '"Alpha" archived successfully.'
    clock.now += 2.9
    assert ctl.notice is not None
    clock.now += 0.1
    assert ctl.notice is None


def test_declined_archive_changes_nothing_and_skips_backend():
    ctl, store = _controller([_m(1), _m(2)], confirm=lambda _p: False)
    ctl.paginate(+1)
    snapshot = (list(ctl.modules), list(ctl.projection), ctl.page)

    assert ctl.archive("1", "Module 1") is False

    assert (list(ctl.modules), list(ctl.projection), ctl.page) == snapshot
    assert [c for c in store.calls if c[0] == "update"] == []
    assert ctl.notice is None


def test_archive_failure_alerts_and_leaves_record_unarchived():
    alerts = []
    store = FakeStore([_m(1)], fail_update=True)
    ctl, _ = _controller([], store=store, confirm=lambda _p: True, alert=alerts.append)

    assert ctl.archive("1", "Module 1") is False

    assert alerts == ["Failed to archive module"]
    assert ctl.find("1").is_archived is False
    assert not ctl.is_archiving("1")
    assert ctl.notice is None


def test_archive_already_in_flight_is_refused():
    guard = ArchiveGuard()
    confirmations = []
    ctl, store = _controller(
        [_m(1)],
        guard=guard,
        confirm=lambda p: confirmations.append(p) or True,
    )
    assert guard.acquire("1")

    assert ctl.archive("1", "Module 1") is False
    assert confirmations == []
    assert [c for c in store.calls if c[0] == "update"] == []

    guard.release("1")
    assert ctl.archive("1", "Module 1") is True


def test_archive_recomputes_projection_and_resets_page():
    ctl, _ = _controller([_m(i) for i in range(40)], confirm=lambda _p: True)
    ctl.apply_filter("active")
    ctl.paginate(+1)

    assert ctl.archive("5", "Module 5")

    assert ctl.page == 1
    assert "5" not in _ids(ctl.projection)
    assert len(ctl.projection) == 39
