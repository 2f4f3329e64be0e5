import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, HTTPException, Query
from pydantic import BaseModel, Field

from hmaengine.core.config import settings
from hmaengine.exchange.broker.client import BrokerRestClient
from hmaengine.exchange.errors import ConfigurationError
from hmaengine.exchange.hma_client import HmaServiceClient
from hmaengine.ops.context import clear_run_id, set_run_id
from hmaengine.ops.run_manager import RunManager, safe_config_snapshot
from hmaengine.persistence.trade_fills import list_fills
from hmaengine.runner.engine import SignalEngine
from hmaengine.runner.models import OrderStatus, OrderUpdate, Tick
from hmaengine.runner.scheduler import HmaRefreshScheduler
from hmaengine.runner.tick_loop import TickLoop
from hmaengine.symbols.universe import normalize_symbol

logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL, logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
log = logging.getLogger("hmaengine.api")

app = FastAPI(title="HMA Signal Engine")

engine_instance: Optional[SignalEngine] = None
scheduler_instance: Optional[HmaRefreshScheduler] = None
tick_loop_instance: Optional[TickLoop] = None
run_manager: Optional[RunManager] = None
CURRENT_RUN_ID: Optional[str] = None


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def get_engine() -> SignalEngine:
    global engine_instance
    if engine_instance is None:
        broker = BrokerRestClient(
            api_key=settings.BROKER_API_KEY,
            api_secret=settings.BROKER_API_SECRET,
            base_url=settings.BROKER_BASE_URL,
            timeout_s=settings.HTTP_TIMEOUT_SECONDS,
            max_retries=settings.HTTP_MAX_RETRIES,
        )
        engine_instance = SignalEngine(broker)
    return engine_instance


def get_scheduler() -> HmaRefreshScheduler:
    global scheduler_instance
    if scheduler_instance is None:
        provider = HmaServiceClient(
            settings.HMA_SERVICE_URL,
            period=settings.HMA_PERIOD,
            timeout_s=settings.HTTP_TIMEOUT_SECONDS,
            max_retries=settings.HTTP_MAX_RETRIES,
        )
        scheduler_instance = HmaRefreshScheduler(get_engine(), provider)
    return scheduler_instance


def get_run_manager() -> RunManager:
    global run_manager
    if run_manager is None:
        run_manager = RunManager(get_engine().db)
    return run_manager


@dataclass
class EngineServiceState:
    running: bool = False
    started_at: Optional[str] = None
    last_error: Optional[str] = None
    scheduler_task: Optional[asyncio.Task] = None


engine_service = EngineServiceState()


# =========================
# Lifecycle
# =========================
@app.on_event("startup")
async def _startup_validate_config():
    """Fail-fast config validation at startup."""
    try:
        warnings = settings.validate_runtime()
        for w in warnings:
            log.warning("[CONFIG WARNING] %s", w)
    except ValueError as e:
        # Fail-closed: crash the service rather than running with a dangerous config
        log.error(str(e))
        raise


@app.on_event("startup")
async def _startup_engine():
    global CURRENT_RUN_ID, tick_loop_instance

    engine = get_engine()
    info = get_run_manager().start()
    CURRENT_RUN_ID = info.run_id
    engine.audit.run_id = info.run_id
    set_run_id(info.run_id)
    log.info("[RUN] started run_id=%s mode=%s", info.run_id, info.mode)

    tick_loop_instance = TickLoop(engine)
    tick_loop_instance.start()

    scheduler = get_scheduler()
    engine_service.scheduler_task = asyncio.create_task(scheduler.run())
    engine_service.running = True
    engine_service.started_at = _utc_now_iso()

    engine.log_event("ENGINE", "ENGINE_STARTED", details={"mode": info.mode})


@app.on_event("shutdown")
async def _shutdown_engine():
    global tick_loop_instance

    if scheduler_instance is not None:
        scheduler_instance.stop()
    task = engine_service.scheduler_task
    if task is not None and not task.done():
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
    engine_service.scheduler_task = None

    if tick_loop_instance is not None:
        result = await tick_loop_instance.stop()
        log.info("[ENGINE] shutdown %s", result)
        tick_loop_instance = None

    engine_service.running = False

    if CURRENT_RUN_ID:
        get_run_manager().stop(CURRENT_RUN_ID, status="STOPPED")
        log.info("[RUN] stopped run_id=%s", CURRENT_RUN_ID)
    clear_run_id()


# =========================
# Request models
# =========================
class AddSymbolRequest(BaseModel):
    symbol: str
    option_type: Optional[str] = None
    lots: int
    target_points: float
    stop_loss_points: float
    product_type: str = "INTRADAY"
    order_type: str = "MARKET"
    trading_mode: str = "PAPER"
    trailing_stop_loss: bool = False
    use_trailing_stoploss: bool = False
    trailing_x: float = 20.0
    trailing_y: float = 15.0
    auto_exit_on_stop_loss: bool = True
    max_re_entries: Optional[int] = None
    lot_size: Optional[int] = None
    hma_value: Optional[float] = None


class TickRequest(BaseModel):
    symbol: str
    ltp: float = Field(gt=0)
    timestamp: Optional[float] = None


class OrderUpdateRequest(BaseModel):
    order_id: str
    status: str
    fill_price: Optional[float] = None
    reject_reason: Optional[str] = None


# =========================
# Health / status
# =========================
@app.get("/health")
async def health():
    return {
        "status": "ok",
        "time_utc": _utc_now_iso(),
        "execution_mode": settings.EXECUTION_MODE,
        "running": engine_service.running,
        "started_at": engine_service.started_at,
        "broker_base_url": settings.BROKER_BASE_URL,
        "hma_service_url": settings.HMA_SERVICE_URL,
        "timing": {
            "reversal_confirm_minutes": settings.REVERSAL_CONFIRM_MINUTES,
            "candle_minutes": settings.CANDLE_MINUTES,
            "entry_deadline_second": settings.ENTRY_DEADLINE_SECOND,
        },
        "tick_loop": tick_loop_instance.status() if tick_loop_instance else None,
    }


@app.get("/debug/config")
async def debug_config():
    return {"config": safe_config_snapshot(settings)}


@app.get("/monitoring/status")
def monitoring_status():
    return get_engine().snapshot()


# =========================
# Monitoring commands
# =========================
@app.post("/monitoring/symbols")
def add_symbol(req: AddSymbolRequest):
    payload = req.model_dump()
    symbol = payload.pop("symbol")
    option_type = payload.pop("option_type")
    hma_value = payload.pop("hma_value")
    try:
        rec = get_engine().add_symbol(symbol, option_type=option_type, hma_value=hma_value, **payload)
    except ConfigurationError as e:
        raise HTTPException(status_code=422, detail={"error": "CONFIGURATION_ERROR", "message": str(e)})

    if engine_service.running and scheduler_instance is not None and rec.hma_value is None:
        try:
            scheduler_instance.refresh_record(rec.id)
        except Exception as e:
            log.warning("initial HMA fetch failed for %s: %s", rec.symbol, e)

    current = get_engine().get_symbol(rec.id) or rec
    return {"status": "monitoring", "record": current.to_dict()}


@app.delete("/monitoring/symbols/{record_id}")
def stop_monitoring(record_id: str):
    out = get_engine().stop_monitoring(record_id)
    if not out.get("ok") and out.get("reason") == "NOT_MONITORED":
        raise HTTPException(status_code=404, detail=out)
    return out


@app.post("/monitoring/stop-all")
def stop_all():
    return get_engine().stop_all()


@app.post("/monitoring/symbols/{record_id}/move-strike")
def move_strike(record_id: str):
    return get_engine().force_entry(record_id)


@app.post("/monitoring/hma/refresh")
def hma_refresh(record_id: Optional[str] = None):
    scheduler = get_scheduler()
    if record_id:
        return {"record_id": record_id, "updated": scheduler.refresh_record(record_id)}
    return scheduler.refresh_all(manual=True)


@app.delete("/monitoring/orders/{order_id}")
def cancel_order(order_id: str):
    return get_engine().cancel_order(order_id)


@app.post("/monitoring/positions/{position_id}/exit")
def exit_position(position_id: str):
    out = get_engine().exit_position(position_id)
    if not out.get("ok", True) and out.get("reason") == "NOT_OPEN":
        raise HTTPException(status_code=404, detail=out)
    return out


@app.get("/monitoring/order-modifications/{symbol}")
def order_modifications(symbol: str):
    engine = get_engine()
    key = symbol
    if engine.get_symbol(symbol) is None and engine.get_position(symbol) is None:
        try:
            key = normalize_symbol(symbol, settings.EXCHANGES)
        except ValueError as e:
            raise HTTPException(status_code=422, detail=str(e))
    mods = engine.modifications(key)
    return {"symbol": key, "count": len(mods), "modifications": mods}


@app.post("/monitoring/recover-orders")
def recover_orders():
    return get_engine().reconcile_orders()


# =========================
# Feeds (ticks / broker callbacks)
# =========================
@app.post("/ticks")
async def push_tick(req: TickRequest):
    try:
        symbol = normalize_symbol(req.symbol, settings.EXCHANGES)
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))
    tick = Tick(symbol=symbol, ltp=req.ltp, timestamp=req.timestamp or get_engine().clock())

    if tick_loop_instance is not None and tick_loop_instance.running:
        depth = tick_loop_instance.push(tick)
        return {"queued": True, "symbol": symbol, "lane_depth": depth}
    return await asyncio.to_thread(get_engine().on_tick, tick)


@app.post("/orders/update")
def order_update(req: OrderUpdateRequest):
    try:
        status = OrderStatus(req.status.upper())
    except ValueError:
        raise HTTPException(status_code=422, detail=f"unknown order status {req.status}")
    return get_engine().on_order_update(
        OrderUpdate(
            order_id=req.order_id,
            status=status,
            fill_price=req.fill_price,
            reject_reason=req.reject_reason,
        )
    )


# =========================
# Ledger / runs / audit
# =========================
@app.get("/trades/fills")
def trade_fills(limit: int = Query(50, ge=1, le=500)):
    rows: List[Dict[str, Any]] = list_fills(get_engine().db, limit=limit)
    return {"count": len(rows), "fills": rows}


@app.get("/runs/current")
def run_current():
    current = get_run_manager().get_current()
    if current is None:
        return {"status": "no_running_run"}
    return current


@app.get("/runs/last")
def run_last():
    last = get_run_manager().get_last()
    if last is None:
        return {"status": "no_runs"}
    return last


@app.get("/logs/events/tail")
def logs_events_tail(limit: int = Query(50, ge=1, le=500), symbol: Optional[str] = None):
    data = get_engine().audit.tail(limit, symbol=symbol)
    return {"count": len(data), "events": data}
