from __future__ import annotations

import http.client
import json
import logging
import urllib.error
import urllib.parse
import urllib.request
from dataclasses import dataclass, replace
from datetime import datetime
from typing import TYPE_CHECKING, Any

from sqlalchemy.exc import SQLAlchemyError

if TYPE_CHECKING:
    from sqlalchemy.orm import Session
    from app.modhub.modules.catalog.models import ModuleRecord

logger = logging.getLogger(__name__)

UPDATABLE_FIELDS = frozenset({"name", "description", "version", "is_archived"})


class ModuleStoreError(RuntimeError):
    pass


class ModuleNotFound(ModuleStoreError):
    pass


def _parse_timestamp(value: Any) -> datetime | None:
    if value is None or isinstance(value, datetime):
        return value
    text = str(value).strip()
    if not text:
        return None
    try:
        return datetime.fromisoformat(text)
    except ValueError:
        logger.warning("Unparseable created_at from backend: %r", text)
        return None


@dataclass(frozen=True)
class Module:
    id: str
    name: str
    description: str | None = None
    version: int = 1
    is_archived: bool = False
    created_at: datetime | None = None

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "Module":
        """Build from a backend row (JSON object or dict of column values)."""
        if row.get("id") in (None, ""):
            raise ModuleStoreError("Backend row is missing an id")
        try:
            return cls(
                id=str(row["id"]),
                name=str(row.get("name") or ""),
                description=row.get("description") or None,
                version=int(row.get("version") or 1),
                is_archived=bool(row.get("is_archived")),
                created_at=_parse_timestamp(row.get("created_at")),
            )
        except (TypeError, ValueError) as e:
            raise ModuleStoreError(f"Malformed backend row (id={row.get('id')!r}): {e}") from e

    @classmethod
    def from_record(cls, rec: "ModuleRecord") -> "Module":
        return cls(
            id=rec.id,
            name=rec.name,
            description=rec.description,
            version=rec.version,
            is_archived=rec.is_archived,
            created_at=rec.created_at,
        )

    def archived(self) -> "Module":
        return replace(self, is_archived=True)


def _check_fields(fields: dict[str, Any]) -> None:
    unknown = set(fields) - UPDATABLE_FIELDS
    if unknown:
        raise ValueError(f"Cannot update field(s): {', '.join(sorted(unknown))}")


class ModuleStore:
    """Backend seam for module records. Every failure raises ModuleStoreError."""

    def list_modules(self) -> list[Module]:
        """All modules, newest first (created_at descending)."""
        raise NotImplementedError

    def get_module(self, module_id: str) -> Module | None:
        raise NotImplementedError

    def create_module(self, fields: dict[str, Any]) -> Module:
        raise NotImplementedError

    def update_module(self, module_id: str, fields: dict[str, Any]) -> Module:
        raise NotImplementedError

    def archive_module(self, module_id: str) -> Module:
        return self.update_module(module_id, {"is_archived": True})


@dataclass
class SqlModuleStore(ModuleStore):
    session: "Session"

    def list_modules(self) -> list[Module]:
        from app.modhub.modules.catalog.models import ModuleRecord

        try:
            rows = (
                self.session.query(ModuleRecord)
                .order_by(ModuleRecord.created_at.desc(), ModuleRecord.id.asc())
                .all()
            )
        except SQLAlchemyError as e:
            raise ModuleStoreError(f"Module query failed: {e}") from e
        return [Module.from_record(r) for r in rows]

    def get_module(self, module_id: str) -> Module | None:
        from app.modhub.modules.catalog.models import ModuleRecord

        try:
            rec = self.session.get(ModuleRecord, module_id)
        except SQLAlchemyError as e:
            raise ModuleStoreError(f"Module lookup failed: {e}") from e
        return Module.from_record(rec) if rec else None

    def create_module(self, fields: dict[str, Any]) -> Module:
        from app.modhub.modules.catalog.models import ModuleRecord

        _check_fields(fields)
        now = datetime.utcnow()
        rec = ModuleRecord(
            name=fields["name"],
            description=fields.get("description"),
            version=fields.get("version") or 1,
            is_archived=bool(fields.get("is_archived", False)),
            created_at=now,
            updated_at=now,
        )
        try:
            self.session.add(rec)
            self.session.commit()
        except SQLAlchemyError as e:
            self.session.rollback()
            raise ModuleStoreError(f"Module insert failed: {e}") from e
        return Module.from_record(rec)

    def update_module(self, module_id: str, fields: dict[str, Any]) -> Module:
        from app.modhub.modules.catalog.models import ModuleRecord

        _check_fields(fields)
        try:
            rec = self.session.get(ModuleRecord, module_id)
            if rec is None:
                raise ModuleNotFound(f"Module {module_id} not found")
            for key, value in fields.items():
                setattr(rec, key, value)
            rec.updated_at = datetime.utcnow()
            self.session.commit()
        except SQLAlchemyError as e:
            self.session.rollback()
            raise ModuleStoreError(f"Module update failed: {e}") from e
        return Module.from_record(rec)


@dataclass(frozen=True)
class RestModuleStore(ModuleStore):
    """
    Hosted backend over its PostgREST endpoint (/rest/v1/<table>).
    Calls are single-shot: a failure is reported, never retried.
    """

    base_url: str
    api_key: str
    table: str = "modules"
    timeout_seconds: int = 30

    def _url(self, params: dict[str, str]) -> str:
        path = "/rest/v1/" + urllib.parse.quote(self.table)
        url = self.base_url.rstrip("/") + path
        if params:
            url += "?" + urllib.parse.urlencode(params, safe="*,.()")
        return url

    def _request(
        self,
        method: str,
        params: dict[str, str],
        *,
        body: dict[str, Any] | None = None,
        prefer: str | None = None,
    ) -> Any:
        data = json.dumps(body, default=str).encode("utf-8") if body is not None else None

        try:
            # A blank or malformed SUPABASE_URL fails here with ValueError.
            req = urllib.request.Request(self._url(params), data=data, method=method)
            req.add_header("apikey", self.api_key)
            req.add_header("Authorization", f"Bearer {self.api_key}")
            req.add_header("Accept", "application/json")
            if data is not None:
                req.add_header("Content-Type", "application/json")
            if prefer:
                req.add_header("Prefer", prefer)

            with urllib.request.urlopen(req, timeout=self.timeout_seconds) as resp:
                raw = resp.read()
        except urllib.error.HTTPError as e:
            try:
                detail = e.read().decode("utf-8", errors="ignore")
            except OSError:
                detail = ""
            raise ModuleStoreError(f"HTTP {e.code} from backend ({method} {self.table}): {detail[:300]}") from e
        except (OSError, http.client.HTTPException, ValueError) as e:
            raise ModuleStoreError(f"Backend request failed ({method} {self.table}): {e}") from e

        if not raw:
            return None
        try:
            return json.loads(raw.decode("utf-8"))
        except ValueError as e:
            raise ModuleStoreError(f"Invalid JSON from backend ({method} {self.table})") from e

    def _rows(self, payload: Any) -> list[dict[str, Any]]:
        if payload is None:
            return []
        if not isinstance(payload, list):
            raise ModuleStoreError(f"Unexpected backend payload: {type(payload).__name__}")
        return [r for r in payload if isinstance(r, dict)]

    def list_modules(self) -> list[Module]:
        rows = self._rows(self._request("GET", {"select": "*", "order": "created_at.desc"}))
        return [Module.from_row(r) for r in rows]

    def get_module(self, module_id: str) -> Module | None:
        rows = self._rows(self._request("GET", {"select": "*", "id": f"eq.{module_id}"}))
        return Module.from_row(rows[0]) if rows else None

    def create_module(self, fields: dict[str, Any]) -> Module:
        _check_fields(fields)
        rows = self._rows(self._request("POST", {}, body=fields, prefer="return=representation"))
        if not rows:
            raise ModuleStoreError("Backend returned no row for insert")
        return Module.from_row(rows[0])

    def update_module(self, module_id: str, fields: dict[str, Any]) -> Module:
        _check_fields(fields)
        rows = self._rows(
            self._request("PATCH", {"id": f"eq.{module_id}"}, body=fields, prefer="return=representation")
        )
        if not rows:
            raise ModuleNotFound(f"Module {module_id} not found")
        return Module.from_row(rows[0])


def module_store_from_config(config: dict, *, session: "Session | None" = None) -> ModuleStore:
    backend = (config.get("MODULES_BACKEND") or "sql").strip().lower()
    if backend in ("supabase", "rest"):
        return RestModuleStore(
            base_url=(config.get("SUPABASE_URL") or "").strip(),
            api_key=(config.get("SUPABASE_SERVICE_ROLE_KEY") or "").strip(),
            table=(config.get("MODULES_TABLE") or "modules").strip(),
            timeout_seconds=int(config.get("SUPABASE_TIMEOUT_SECONDS") or 30),
        )
    if backend != "sql":
        raise ValueError(f"Unknown MODULES_BACKEND: {backend!r}")
    if session is None:
        raise ValueError("SqlModuleStore requires a database session")
    return SqlModuleStore(session=session)
