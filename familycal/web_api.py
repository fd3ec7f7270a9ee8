from __future__ import annotations

import logging
import os
from contextlib import contextmanager
from datetime import date, datetime
from typing import Any, Iterator

from fastapi import FastAPI, Header, HTTPException
from pydantic import BaseModel, Field

from familycal.calendar_service import CalendarService
from familycal.config_manager import ConfigManager
from familycal.errors import CalendarError
from familycal.models import OccurrenceScope, parse_iso_date, parse_iso_datetime
from familycal.state_store import StateStore

logger = logging.getLogger(__name__)


class ConfigUpdateRequest(BaseModel):
    payload: dict[str, Any] = Field(default_factory=dict)


class FamilyCreateRequest(BaseModel):
    name: str = Field(min_length=1, max_length=200)


class MemberCreateRequest(BaseModel):
    name: str = Field(min_length=1, max_length=200)
    role: str = "CHILD"


class CategoryRequest(BaseModel):
    name: str | None = Field(default=None, max_length=100)
    color: str | None = Field(default=None, max_length=20)


class EventCreateRequest(BaseModel):
    title: str
    start: str
    end: str | None = None
    description: str = ""
    location: str = ""
    all_day: bool = False
    category_id: str | None = None
    participant_ids: list[str] = Field(default_factory=list)
    is_task: bool = False
    xp_points: int | None = None
    is_required: bool = True
    recurrence: dict[str, Any] | None = None


class EventUpdateRequest(BaseModel):
    occurrence_date: str | None = None
    scope: str = OccurrenceScope.ALL.value
    changes: dict[str, Any] = Field(default_factory=dict)


class CompletionRequest(BaseModel):
    occurrence_date: str
    completed: bool = True
    member_id: str | None = None


class AppContext:
    def __init__(self, config_path: str, state_path: str | None = None) -> None:
        self.config_manager = ConfigManager(config_path)
        if not state_path:
            state_path = self.config_manager.load().storage.db_path
        self.state_store = StateStore(state_path)
        self.service = CalendarService(self.config_manager, self.state_store)


@contextmanager
def _http_errors() -> Iterator[None]:
    try:
        yield
    except CalendarError as exc:
        if exc.status_code >= 500:
            logger.error("Request failed: %s", exc)
        raise HTTPException(status_code=exc.status_code, detail=str(exc)) from exc


def _parse_bound(value: str | None, field: str) -> date | datetime | None:
    if value is None or not value.strip():
        return None
    text = value.strip()
    try:
        if len(text) == 10:
            return parse_iso_date(text)
        return parse_iso_datetime(text)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=f"Invalid {field}: {value}") from exc


def create_app() -> FastAPI:
    config_path = os.getenv("FAMILYCAL_CONFIG_PATH", "config.yaml")
    state_path = os.getenv("FAMILYCAL_STATE_PATH")
    context = AppContext(config_path=config_path, state_path=state_path)

    app = FastAPI(title="Family Calendar", version="0.1.0")
    app.state.context = context

    def service() -> CalendarService:
        return app.state.context.service

    @app.get("/healthz")
    def healthz() -> dict[str, str]:
        return {"status": "ok"}

    @app.get("/api/config")
    def get_config() -> dict[str, Any]:
        with _http_errors():
            return app.state.context.config_manager.load().to_dict()

    @app.put("/api/config")
    def put_config(request: ConfigUpdateRequest) -> dict[str, Any]:
        with _http_errors():
            updated = app.state.context.config_manager.update(request.payload)
        return {"message": "config updated", "config": updated.to_dict()}

    @app.post("/api/families")
    def create_family(request: FamilyCreateRequest) -> dict[str, Any]:
        with _http_errors():
            return service().create_family(request.name).to_dict()

    @app.get("/api/families/{family_id}/members")
    def list_members(family_id: str) -> dict[str, Any]:
        with _http_errors():
            members = service().list_members(family_id)
        return {"members": [member.to_dict() for member in members]}

    @app.post("/api/families/{family_id}/members")
    def add_member(family_id: str, request: MemberCreateRequest) -> dict[str, Any]:
        with _http_errors():
            return service().add_member(family_id, request.name, request.role).to_dict()

    @app.get("/api/families/{family_id}/occurrences")
    def list_occurrences(
        family_id: str,
        start: str | None = None,
        end: str | None = None,
        x_member_id: str | None = Header(default=None),
    ) -> dict[str, Any]:
        window_start = _parse_bound(start, "start")
        window_end = _parse_bound(end, "end")
        with _http_errors():
            occurrences = service().list_occurrences(
                family_id,
                window_start,
                window_end,
                acting_member_id=x_member_id,
            )
        return {"occurrences": [item.to_dict() for item in occurrences]}

    @app.get("/api/families/{family_id}/categories")
    def list_categories(family_id: str) -> dict[str, Any]:
        with _http_errors():
            categories = service().list_categories(family_id)
        return {"categories": [category.to_dict() for category in categories]}

    @app.post("/api/families/{family_id}/categories")
    def create_category(
        family_id: str,
        request: CategoryRequest,
        x_member_id: str | None = Header(default=None),
    ) -> dict[str, Any]:
        with _http_errors():
            category = service().create_category(x_member_id, family_id, request.name or "", request.color)
        return category.to_dict()

    @app.patch("/api/categories/{category_id}")
    def update_category(
        category_id: str,
        request: CategoryRequest,
        x_member_id: str | None = Header(default=None),
    ) -> dict[str, Any]:
        with _http_errors():
            category = service().update_category(x_member_id, category_id, request.name, request.color)
        return category.to_dict()

    @app.delete("/api/categories/{category_id}")
    def delete_category(category_id: str, x_member_id: str | None = Header(default=None)) -> dict[str, Any]:
        with _http_errors():
            service().delete_category(x_member_id, category_id)
        return {"deleted": True}

    @app.post("/api/events")
    def create_event(request: EventCreateRequest, x_member_id: str | None = Header(default=None)) -> dict[str, Any]:
        fields = request.model_dump(exclude={"recurrence"})
        with _http_errors():
            event = service().create_event(x_member_id, fields, request.recurrence)
        return event.to_dict()

    @app.get("/api/events/{event_id}")
    def get_event(event_id: str, x_member_id: str | None = Header(default=None)) -> dict[str, Any]:
        with _http_errors():
            return service().get_event(event_id, acting_member_id=x_member_id).to_dict()

    @app.patch("/api/events/{event_id}")
    def update_event(
        event_id: str,
        request: EventUpdateRequest,
        x_member_id: str | None = Header(default=None),
    ) -> dict[str, Any]:
        if not request.changes:
            raise HTTPException(status_code=400, detail="changes must not be empty")
        with _http_errors():
            event = service().mutate_event(
                x_member_id,
                event_id,
                request.occurrence_date,
                request.scope,
                request.changes,
            )
        return {"event": event.to_dict() if event else None}

    @app.delete("/api/events/{event_id}")
    def delete_event(
        event_id: str,
        occurrence_date: str | None = None,
        scope: str = OccurrenceScope.ALL.value,
        x_member_id: str | None = Header(default=None),
    ) -> dict[str, Any]:
        with _http_errors():
            service().mutate_event(x_member_id, event_id, occurrence_date, scope)
        return {"deleted": True}

    @app.put("/api/events/{event_id}/completion")
    def toggle_completion(
        event_id: str,
        request: CompletionRequest,
        x_member_id: str | None = Header(default=None),
    ) -> dict[str, Any]:
        with _http_errors():
            completed = service().toggle_completion(
                event_id,
                request.member_id or x_member_id,
                request.occurrence_date,
                request.completed,
            )
        return {"event_id": event_id, "occurrence_date": request.occurrence_date, "completed": completed}

    @app.get("/api/events/{event_id}/completions")
    def event_completions(event_id: str, x_member_id: str | None = Header(default=None)) -> dict[str, Any]:
        with _http_errors():
            records = service().completions_for_event(event_id, acting_member_id=x_member_id)
        return {"completions": [record.to_dict() for record in records]}

    @app.get("/api/members/{member_id}/completions")
    def member_completions(member_id: str) -> dict[str, Any]:
        with _http_errors():
            records = service().completions_for_member(member_id)
        return {"completions": [record.to_dict() for record in records]}

    @app.get("/api/audit/events")
    def audit_events(limit: int = 100, family_id: str | None = None) -> dict[str, Any]:
        return {"events": service().recent_audit_events(limit=limit, family_id=family_id)}

    return app

