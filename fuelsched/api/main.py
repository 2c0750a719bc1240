"""FastAPI control surface for the partition scheduler."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Any

from fastapi import Body, FastAPI, Query
from fastapi.responses import JSONResponse

from fuelsched.config.logging import apply_logging_config
from fuelsched.config.settings import default_config_paths, load_limits_config, load_runtime_config
from fuelsched.errors import (
    ConfigError,
    ConflictError,
    FuelSchedError,
    InvalidIdError,
    NotLoadedError,
    SchemaValidationError,
    SlotOccupiedError,
)
from fuelsched.executor.policy import FuelPolicy
from fuelsched.scheduler.bootstrap import SetupReport, build_scheduler
from fuelsched.scheduler.runner import Scheduler

logger = logging.getLogger(__name__)


@dataclass
class AppComponents:
    scheduler: Scheduler
    report: SetupReport
    default_yield_after: int
    # Requests are served on a thread pool; every scheduler call holds this lock.
    lock: threading.Lock


def _error_payload(err: Exception) -> dict[str, Any]:
    if isinstance(err, SchemaValidationError):
        return {
            "error": "SCHEMA_VALIDATION_ERROR",
            "kind": err.kind,
            "violations": [{"path": v.path, "message": v.message} for v in err.violations],
        }
    if isinstance(err, FuelSchedError):
        codes = (
            (InvalidIdError, "INVALID_ID"),
            (SlotOccupiedError, "SLOT_OCCUPIED"),
            (ConfigError, "CONFIG_ERROR"),
            (NotLoadedError, "NOT_LOADED"),
            (ConflictError, "CONFLICT"),
        )
        error = next((code for cls, code in codes if isinstance(err, cls)), "RUNTIME_ERROR")
        return {"error": error, "message": str(err), "partition_id": err.partition_id, "phase": err.phase}
    return {"error": "INTERNAL", "message": str(err)}


def _build_components() -> AppComponents:
    runtime_cfg_path, logging_cfg_path, limits_cfg_path = default_config_paths()

    runtime = load_runtime_config(runtime_cfg_path)
    limits = load_limits_config(limits_cfg_path)

    if logging_cfg_path.exists():
        apply_logging_config(logging_cfg_path)

    scheduler, report = build_scheduler(runtime, limits)
    return AppComponents(
        scheduler=scheduler,
        report=report,
        default_yield_after=runtime.fuel.yield_after,
        lock=threading.Lock(),
    )


app = FastAPI(title="fuelsched partition scheduler", version="0.1.0")


@app.on_event("startup")
def _startup() -> None:
    # Fail closed at startup if config, manifest or engine cannot be loaded.
    app.state.components = _build_components()
    logger.info("runtime_started", extra={"event": "runtime_started"})


@app.on_event("shutdown")
def _shutdown() -> None:
    comps: AppComponents | None = getattr(app.state, "components", None)
    if comps is None:
        return
    with comps.lock:
        comps.scheduler.shutdown()
    logger.info("runtime_stopped", extra={"event": "runtime_stopped"})


@app.exception_handler(SchemaValidationError)
def _schema_validation_handler(_req, exc: SchemaValidationError):
    return JSONResponse(status_code=422, content=_error_payload(exc))


@app.exception_handler(InvalidIdError)
def _invalid_id_handler(_req, exc: InvalidIdError):
    return JSONResponse(status_code=400, content=_error_payload(exc))


@app.exception_handler(SlotOccupiedError)
def _slot_occupied_handler(_req, exc: SlotOccupiedError):
    return JSONResponse(status_code=409, content=_error_payload(exc))


@app.exception_handler(ConfigError)
def _config_error_handler(_req, exc: ConfigError):
    return JSONResponse(status_code=400, content=_error_payload(exc))


@app.exception_handler(NotLoadedError)
def _not_loaded_handler(_req, exc: NotLoadedError):
    return JSONResponse(status_code=404, content=_error_payload(exc))


@app.exception_handler(ConflictError)
def _conflict_handler(_req, exc: ConflictError):
    return JSONResponse(status_code=409, content=_error_payload(exc))


@app.exception_handler(Exception)
def _unhandled_handler(_req, exc: Exception):
    logger.exception("unhandled_error", extra={"event": "unhandled_error"})
    return JSONResponse(status_code=500, content=_error_payload(exc))


def _components() -> AppComponents:
    return app.state.components


@app.get("/health")
def health() -> dict[str, Any]:
    """Health check. Returns 200 once the engine is up and the manifest was processed."""
    comps = _components()
    return {
        "status": "ok",
        "engine": comps.scheduler.engine.name,
        "loaded": comps.report.loaded,
        "failed": {str(pid): reason for pid, reason in comps.report.failed.items()},
    }


@app.get("/scheduler")
def scheduler_status() -> dict[str, Any]:
    comps = _components()
    with comps.lock:
        return comps.scheduler.status()


@app.get("/partitions")
def list_partitions() -> dict[str, Any]:
    comps = _components()
    with comps.lock:
        return {"partitions": [p.status() for p in comps.scheduler.registry.partitions()]}


@app.get("/partitions/{partition_id}")
def get_partition(partition_id: int) -> dict[str, Any]:
    comps = _components()
    with comps.lock:
        return {"partition": comps.scheduler.registry.lookup(partition_id).status()}


@app.post("/partitions/{partition_id}/fuel")
def inject_fuel(partition_id: int, body: dict[str, Any] | None = Body(default=None)) -> dict[str, Any]:
    comps = _components()
    body = body or {}
    budget = body.get("budget")
    if budget is not None and (isinstance(budget, bool) or not isinstance(budget, int)):
        raise ConfigError(f"budget must be an integer (got {budget!r})", partition_id=partition_id, phase="inject")
    with comps.lock:
        policy = None
        if body.get("policy") is not None:
            policy = FuelPolicy.parse(str(body["policy"]), body.get("quantum"), default_quantum=comps.default_yield_after)
        injection = comps.scheduler.inject_fuel(partition_id, policy, budget=budget)
        return {"amount": injection.amount, "yield_after": injection.yield_after}


@app.post("/scheduler/step")
def step() -> dict[str, Any]:
    comps = _components()
    with comps.lock:
        result = comps.scheduler.step()
        return {"result": result.to_dict() if result is not None else None}


@app.post("/scheduler/run")
def run(body: dict[str, Any] | None = Body(default=None)) -> dict[str, Any]:
    comps = _components()
    body = body or {}
    cycles = body.get("cycles")
    if cycles is not None and (isinstance(cycles, bool) or not isinstance(cycles, int) or cycles < 0):
        raise ConfigError(f"cycles must be a non-negative integer (got {cycles!r})")
    with comps.lock:
        summary = comps.scheduler.run(max_cycles=cycles)
        return {"summary": summary.to_dict()}


@app.get("/events")
def list_events(partition_id: int | None = Query(default=None), limit: int = Query(default=100, ge=0)) -> dict[str, Any]:
    comps = _components()
    with comps.lock:
        events = comps.scheduler.events.list_events(partition_id=partition_id, limit=limit)
        return {"events": [e.to_dict() for e in events]}
