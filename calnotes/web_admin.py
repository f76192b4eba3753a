from __future__ import annotations

import os
from typing import Any

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel, Field

from calnotes.config_manager import ConfigManager
from calnotes.scheduler import SyncScheduler
from calnotes.state_store import StateStore
from calnotes.sync_engine import SyncEngine


class ConfigUpdateRequest(BaseModel):
    payload: dict[str, Any] = Field(default_factory=dict)


class SyncRunRequest(BaseModel):
    force: bool = False


class AppContext:
    def __init__(self, config_path: str, state_path: str) -> None:
        self.config_manager = ConfigManager(config_path)
        self.state_store = StateStore(state_path)
        self.sync_engine = SyncEngine(self.config_manager, self.state_store)
        self.scheduler = SyncScheduler(self.sync_engine, self.config_manager)


def create_app(context: AppContext | None = None, *, start_scheduler: bool = True) -> FastAPI:
    if context is None:
        config_path = os.getenv("CALNOTES_CONFIG_PATH", "config.yaml")
        state_path = os.getenv("CALNOTES_STATE_PATH", "data/state.db")
        context = AppContext(config_path=config_path, state_path=state_path)

    app = FastAPI(title="calnotes admin", version="0.1.0")
    app.state.context = context

    @app.on_event("startup")
    def _startup() -> None:
        if start_scheduler:
            app.state.context.scheduler.start()

    @app.on_event("shutdown")
    def _shutdown() -> None:
        app.state.context.scheduler.stop()

    @app.get("/healthz")
    def healthz() -> dict[str, str]:
        return {"status": "ok"}

    @app.get("/api/config")
    def get_config() -> dict[str, Any]:
        return app.state.context.config_manager.masked()

    @app.put("/api/config")
    def put_config(request: ConfigUpdateRequest) -> dict[str, Any]:
        if not isinstance(request.payload, dict):
            raise HTTPException(status_code=400, detail="payload must be an object")
        manager = app.state.context.config_manager
        try:
            updated = manager.update(manager.unmask_sources(request.payload))
        except (TypeError, ValueError) as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        return {
            "message": "config updated",
            "config": manager.masked(),
            "sources": len(updated.sources),
        }

    @app.post("/api/sync/run")
    def trigger_sync(request: SyncRunRequest | None = None) -> dict[str, Any]:
        context = app.state.context
        if request is not None and request.force:
            result = context.sync_engine.run_once(trigger="manual-force", force=True)
            return {"message": "sync finished", "result": result.to_dict()}
        context.scheduler.trigger_manual()
        return {"message": "sync triggered"}

    @app.get("/api/sync/status")
    def sync_status(limit: int = 20) -> dict[str, Any]:
        context = app.state.context
        return {
            "running": context.sync_engine.is_running,
            "runs": context.state_store.recent_sync_runs(limit=limit),
        }

    @app.get("/api/audit/events")
    def audit_events(limit: int = 100, run_id: int | None = None, action: str | None = None) -> dict[str, Any]:
        return {
            "events": app.state.context.state_store.recent_audit_events(
                limit=limit,
                run_id=run_id,
                action=action,
            )
        }

    @app.get("/api/audit/events/{audit_id}")
    def audit_event(audit_id: int) -> dict[str, Any]:
        event = app.state.context.state_store.get_audit_event(audit_id)
        if event is None:
            raise HTTPException(status_code=404, detail="audit event not found")
        return event

    @app.get("/api/orphans")
    def orphans() -> dict[str, Any]:
        context = app.state.context
        return {
            "candidates": context.sync_engine.orphan_candidates(),
            "tracker": context.sync_engine.orphan_tracker.snapshot(),
        }

    return app
