from __future__ import annotations

import time
from typing import Any

from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.responses import PlainTextResponse

from config.settings import REFERENCE_TIMEZONE
from datamodel import DishStatus
from logger import logger
from metrics import runtime_metrics
from world.expiry_scheduler import require_scheduler
import storage.db_config as db_config

from .auth import require_admin_auth
from .schemas import DishOut, RuntimeControl, ShutdownRequest, TickResponse
from .store import fetch_all, fetch_one

_DISH_COLUMNS = (
    "dish_id, chat_id, name, status, created_at_utc, expires_at_utc, "
    "notified_daily, notified_one_hour, last_reminder_at_utc, removed_at_utc"
)


def create_app(control: RuntimeControl) -> FastAPI:
    app = FastAPI(title="Dishwatch Admin API", version="1.0.0")

    def health_payload() -> dict[str, Any]:
        return {
            "status": "ok",
            "timestamp": time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime()),
            "uptime_seconds": max(0.0, time.time() - control.started_at),
            "db_connected": db_config.conn is not None,
            "shutdown_requested": control.shutdown_event.is_set(),
        }

    @app.get("/healthz", include_in_schema=False)
    async def healthz() -> PlainTextResponse:
        return PlainTextResponse("ok")

    @app.get("/health", include_in_schema=False)
    async def health() -> dict[str, Any]:
        return health_payload()

    @app.get("/api/v1/health")
    async def api_health() -> dict[str, Any]:
        return health_payload()

    @app.get("/api/v1/overview")
    async def get_overview(request: Request) -> dict[str, Any]:
        await require_admin_auth(request)
        row = await fetch_one(
            """
            SELECT
                (SELECT COUNT(*) FROM users) AS users,
                (SELECT COUNT(*) FROM dishes WHERE status = 'active') AS active,
                (SELECT COUNT(*) FROM dishes WHERE status = 'expired') AS expired,
                (SELECT COUNT(*) FROM dishes WHERE status = 'removed') AS removed,
                (SELECT COUNT(*) FROM dishes
                    WHERE status != 'removed' AND (expires_at_utc IS NULL OR TRIM(expires_at_utc) = '')) AS malformed
            """
        )
        return {"counts": row or {}}

    @app.get("/api/v1/metrics")
    async def get_metrics(request: Request) -> dict[str, Any]:
        await require_admin_auth(request)

        scheduler_status: dict[str, Any] = {"configured": False, "running": False}
        try:
            scheduler = require_scheduler()
            scheduler_status["configured"] = True
            scheduler_status.update(scheduler.get_status())
        except RuntimeError as e:
            logger.warning(f"读取调度器状态失败: {e}")

        return {
            "runtime": runtime_metrics.snapshot(),
            "scheduler": scheduler_status,
            "reference_timezone": REFERENCE_TIMEZONE,
        }

    @app.post("/api/v1/scheduler/tick")
    async def trigger_tick(request: Request) -> TickResponse:
        """外部定时触发 (cron) 入口, 与内部定时器执行同一个 tick"""
        await require_admin_auth(request)
        try:
            scheduler = require_scheduler()
        except RuntimeError as e:
            raise HTTPException(status_code=503, detail=str(e)) from e

        logger.info("收到外部触发的调度 tick")
        summary = await scheduler.run_tick()
        return TickResponse(ok=True, **summary.to_dict())

    @app.get("/api/v1/dishes")
    async def list_dishes(
        request: Request,
        chat_id: int | None = Query(default=None),
        status: DishStatus | None = Query(default=None),
        limit: int = Query(default=100, ge=1, le=500),
    ) -> dict[str, Any]:
        await require_admin_auth(request)
        clauses: list[str] = []
        params: list[Any] = []
        if chat_id is not None:
            clauses.append("chat_id = ?")
            params.append(chat_id)
        if status is not None:
            clauses.append("status = ?")
            params.append(status.value)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        rows = await fetch_all(
            f"SELECT {_DISH_COLUMNS} FROM dishes {where} ORDER BY expires_at_utc LIMIT ?",
            (*params, limit),
        )
        return {"items": [DishOut.from_row(row).model_dump() for row in rows]}

    @app.post("/api/v1/admin/shutdown")
    async def request_shutdown(request: Request, body: ShutdownRequest) -> dict[str, Any]:
        await require_admin_auth(request)
        logger.warning(f"收到关闭请求: reason={body.reason}")
        control.shutdown_event.set()
        return {"ok": True}

    return app
