"""Tests for the module store backends (hosted REST + local SQL)."""
import http.client
import io
import json
import urllib.error
import urllib.request
from datetime import datetime

import pytest

from app.modhub import create_app
from app.modhub.db import session_scope
from app.modhub.models import Base
from app.modhub.modules.catalog.models import ModuleRecord
from app.modhub.modules.catalog.store import (
    Module,
    ModuleNotFound,
    ModuleStoreError,
    RestModuleStore,
    SqlModuleStore,
    module_store_from_config,
)
from app.modhub.modules.catalog.view import ModuleListController

ROW = {
    "id": "7d3c0a8e-2f4b-4b7e-9a57-0c1d2e3f4a5b",
    "name": "Onboarding",
    "description": None,
    "version": 3,
    "is_archived": False,
    "created_at": "2026-03-01T09:30:00.123456+00:00",
}


@pytest.fixture()
def rest_store():
    return RestModuleStore(base_url="https://proj.supabase.co/", api_key="service-key", timeout_seconds=5)


@pytest.fixture()
def fake_urlopen(monkeypatch):
    calls = []
    responses = []

    def _urlopen(req, timeout=None):
        calls.append((req, timeout))
        result = responses.pop(0)
        if isinstance(result, Exception):
            raise result
        return io.BytesIO(result)

    monkeypatch.setattr(urllib.request, "urlopen", _urlopen)
    return calls, responses


# ---------- REST ----------
def test_list_modules_queries_newest_first(rest_store, fake_urlopen):
    calls, responses = fake_urlopen
    responses.append(json.dumps([ROW]).encode("utf-8"))

    modules = rest_store.list_modules()

    req, timeout = calls[0]
    assert req.get_method() == "GET"
    assert req.full_url == "https://proj.supabase.co/rest/v1/modules?select=*&order=created_at.desc"
    assert req.get_header("Apikey") == "service-key"
    assert req.get_header("Authorization") == "Bearer service-key"
    assert timeout == 5
    assert modules == [
        Module(
            id=ROW["id"],
            name="Onboarding",
            description=None,
            version=3,
            is_archived=False,
            created_at=datetime.fromisoformat(ROW["created_at"]),
        )
    ]


def test_archive_module_patches_single_field_by_id(rest_store, fake_urlopen):
    calls, responses = fake_urlopen
    responses.append(json.dumps([{**ROW, "is_archived": True}]).encode("utf-8"))

    module = rest_store.archive_module(ROW["id"])

    req, _ = calls[0]
    assert req.get_method() == "PATCH"
    assert req.full_url.endswith(f"/rest/v1/modules?id=eq.{ROW['id']}")
    assert json.loads(req.data) == {"is_archived": True}
    assert req.get_header("Prefer") == "return=representation"
    assert module.is_archived is True


def test_update_matching_nothing_raises_not_found(rest_store, fake_urlopen):
    _, responses = fake_urlopen
    responses.append(b"[]")
    with pytest.raises(ModuleNotFound):
        rest_store.archive_module("missing")


def test_http_error_becomes_store_error_without_retry(rest_store, fake_urlopen):
    calls, responses = fake_urlopen
    responses.append(
        urllib.error.HTTPError(
            "https://proj.supabase.co/rest/v1/modules",
            401,
            "Unauthorized",
            hdrs=None,
            fp=io.BytesIO(b'{"message":"Invalid API key"}'),
        )
    )
    with pytest.raises(ModuleStoreError, match="HTTP 401"):
        rest_store.list_modules()
    assert len(calls) == 1


def test_network_error_becomes_store_error(rest_store, fake_urlopen):
    _, responses = fake_urlopen
    responses.append(urllib.error.URLError("Name or service not known"))
    with pytest.raises(ModuleStoreError):
        rest_store.list_modules()


def test_invalid_json_becomes_store_error(rest_store, fake_urlopen):
    _, responses = fake_urlopen
    responses.append(b"<html>gateway timeout</html>")
    with pytest.raises(ModuleStoreError, match="Invalid JSON"):
        rest_store.list_modules()


def test_blank_base_url_becomes_store_error(fake_urlopen):
    calls, _ = fake_urlopen
    store = RestModuleStore(base_url="", api_key="")
    with pytest.raises(ModuleStoreError, match="Backend request failed"):
        store.list_modules()
    assert calls == []


def test_truncated_body_becomes_store_error(rest_store, monkeypatch):
    class _TruncatedResponse(io.BytesIO):
        def read(self, *args):
            raise http.client.IncompleteRead(b"[", 10)

    monkeypatch.setattr(urllib.request, "urlopen", lambda req, timeout=None: _TruncatedResponse())
    with pytest.raises(ModuleStoreError, match="Backend request failed"):
        rest_store.list_modules()


def test_transport_failures_surface_as_load_error(fake_urlopen):
    _, responses = fake_urlopen
    ctl = ModuleListController(RestModuleStore(base_url="", api_key=""))
    assert ctl.load() is False
    assert ctl.error == "Failed to load modules"

    responses.append(json.dumps([{"id": "1", "name": "a", "version": "1.2"}]).encode("utf-8"))
    ctl = ModuleListController(RestModuleStore(base_url="https://proj.supabase.co", api_key="k"))
    assert ctl.load() is False
    assert ctl.error == "Failed to load modules"
    assert ctl.modules == []


def test_archive_transport_failure_alerts(rest_store, monkeypatch):
    def _urlopen(req, timeout=None):
        raise http.client.RemoteDisconnected("Remote end closed connection without response")

    monkeypatch.setattr(urllib.request, "urlopen", _urlopen)
    alerts = []
    ctl = ModuleListController(rest_store, confirm=lambda _p: True, alert=alerts.append)
    ctl.modules = [Module(id=ROW["id"], name="Onboarding")]

    assert ctl.archive(ROW["id"], "Onboarding") is False
    assert alerts == ["Failed to archive module"]
    assert ctl.find(ROW["id"]).is_archived is False


def test_create_posts_row_and_returns_representation(rest_store, fake_urlopen):
    calls, responses = fake_urlopen
    responses.append(json.dumps([ROW]).encode("utf-8"))

    module = rest_store.create_module({"name": "Onboarding", "description": None, "version": 3, "is_archived": False})

    req, _ = calls[0]
    assert req.get_method() == "POST"
    assert req.full_url == "https://proj.supabase.co/rest/v1/modules"
    assert req.get_header("Content-type") == "application/json"
    assert module.id == ROW["id"]


def test_get_module_returns_none_when_absent(rest_store, fake_urlopen):
    _, responses = fake_urlopen
    responses.append(b"[]")
    assert rest_store.get_module("nope") is None


def test_unknown_update_fields_are_rejected(rest_store):
    with pytest.raises(ValueError):
        rest_store.update_module(ROW["id"], {"id": "other"})


def test_from_row_tolerates_zulu_timestamps_and_missing_description():
    m = Module.from_row({"id": 5, "name": "X", "version": "2", "is_archived": 1, "created_at": "2026-03-01T09:30:00Z"})
    assert m.id == "5"
    assert m.version == 2
    assert m.is_archived is True
    assert m.description is None
    assert m.created_at.year == 2026


def test_from_row_requires_id():
    with pytest.raises(ModuleStoreError):
        Module.from_row({"name": "no id"})


@pytest.mark.parametrize("version", ["1.2", {"major": 1}, [2]])
def test_from_row_rejects_malformed_version(version):
    with pytest.raises(ModuleStoreError, match="Malformed backend row"):
        Module.from_row({"id": "1", "name": "a", "version": version})


# ---------- Config ----------
def test_store_from_config_selects_backend():
    rest = module_store_from_config(
        {"MODULES_BACKEND": "supabase", "SUPABASE_URL": "https://x.supabase.co", "SUPABASE_SERVICE_ROLE_KEY": "k"}
    )
    assert isinstance(rest, RestModuleStore)
    assert rest.table == "modules"

    with pytest.raises(ValueError):
        module_store_from_config({"MODULES_BACKEND": "sql"})
    with pytest.raises(ValueError):
        module_store_from_config({"MODULES_BACKEND": "firebase"}, session=object())


# ---------- SQL ----------
@pytest.fixture()
def app(tmp_path, monkeypatch):
    monkeypatch.setenv("SECRET_KEY", "test-secret")
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path/'test.db'}")
    monkeypatch.setenv("ENV", "test")
    monkeypatch.setenv("MODULES_BACKEND", "sql")

    app = create_app()
    Base.metadata.create_all(bind=app.extensions["sqlalchemy_engine"])
    with session_scope(app) as s:
        s.add_all(
            [
                ModuleRecord(id="old", name="Old", created_at=datetime(2001, 1, 1), updated_at=datetime(2001, 1, 1)),
                ModuleRecord(id="new", name="New", created_at=datetime(2001, 2, 1), updated_at=datetime(2001, 2, 1)),
            ]
        )
    return app


def test_sql_store_lists_newest_first_and_archives(app):
    with session_scope(app) as s:
        store = SqlModuleStore(session=s)
        assert [m.id for m in store.list_modules()] == ["new", "old"]

        archived = store.archive_module("old")
        assert archived.is_archived is True

    with session_scope(app) as s:
        assert s.get(ModuleRecord, "old").is_archived is True
        assert s.get(ModuleRecord, "new").is_archived is False


def test_sql_store_create_and_missing_update(app):
    with session_scope(app) as s:
        store = SqlModuleStore(session=s)
        created = store.create_module({"name": "Fresh", "description": "d", "version": 1, "is_archived": False})
        assert created.id
        assert store.get_module(created.id).name == "Fresh"
        assert store.list_modules()[0].id == created.id

        with pytest.raises(ModuleNotFound):
            store.update_module("missing", {"is_archived": True})
