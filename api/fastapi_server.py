import hmac
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional, TYPE_CHECKING

from fastapi import BackgroundTasks, Depends, FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from pydantic import BaseModel

from api.admission import AdmissionError
from api.metrics import metrics
from config import config
from strategy.alert_types import normalize_strategy

if TYPE_CHECKING:
    from main import SignalRelay


logger = logging.getLogger(__name__)


class DestinationRequest(BaseModel):
    destination: str


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _relay(request: Request) -> 'SignalRelay':
    return request.app.state.relay


def require_admin(request: Request) -> None:
    secret = _relay(request).admin_secret
    if not secret:
        return
    supplied = request.headers.get('X-Admin-Secret', '')
    if not hmac.compare_digest(supplied.encode(), secret.encode()):
        raise HTTPException(status_code=401, detail="Invalid admin secret")


def _validated_strategy(strategy: str) -> str:
    try:
        return normalize_strategy(strategy)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


def create_app(relay: Optional['SignalRelay'] = None) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if relay is None:
            from main import SignalRelay
            app.state.relay = SignalRelay()
        else:
            app.state.relay = relay
        await app.state.relay.start()
        try:
            yield
        finally:
            await app.state.relay.stop()

    app = FastAPI(title="Signal Relay API", version="1.0.0", lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(config.section('api').get('cors_origins', ['*'])),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    async def receive_alert(request: Request, background_tasks: BackgroundTasks,
                            path_strategy: Optional[str] = None):
        relay = _relay(request)
        try:
            payload = await request.json()
        except ValueError:
            payload = None
        origin = request.client.host if request.client else None

        try:
            alert = relay.gate.admit(
                payload,
                origin,
                path_strategy=path_strategy,
                header_secret=request.headers.get('X-Webhook-Secret'),
            )
        except AdmissionError as exc:
            metrics.record_rejected(exc.reason)
            logger.info("Webhook from %s rejected: %s", origin, exc.message)
            return JSONResponse(status_code=exc.status_code, content={"error": exc.message})

        logger.info("Received %s %s for '%s' from %s", alert.ticker, alert.signal, alert.strategy, origin)
        metrics.record_admitted(alert.strategy)
        # runs after the response is sent; pipeline.handle never raises
        background_tasks.add_task(relay.pipeline.handle, alert)
        return {"status": "received"}

    @app.post("/webhook")
    async def webhook(request: Request, background_tasks: BackgroundTasks):
        return await receive_alert(request, background_tasks)

    @app.post("/webhook/{strategy}")
    async def webhook_for_strategy(strategy: str, request: Request, background_tasks: BackgroundTasks):
        return await receive_alert(request, background_tasks, path_strategy=strategy)

    @app.get("/")
    async def root(request: Request):
        relay = _relay(request)
        return {
            "service": "Signal Relay",
            "version": "1.0.0",
            "status": "running" if relay.running else "stopped",
            "redis": "connected" if relay.store.is_ready() else "disconnected",
            "timestamp": _now(),
        }

    @app.get("/favicon.ico")
    async def favicon():
        return Response(content=b"", media_type="image/x-icon")

    @app.get("/health")
    async def health(request: Request):
        relay = _relay(request)
        return {
            "status": "healthy",
            "uptime": round(relay.uptime_s, 3),
            "redis_connected": await relay.store.ping(),
            "queue_depth": relay.queue.depth,
            "timestamp": _now(),
        }

    @app.get("/metrics")
    async def prometheus_metrics():
        return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)

    @app.get("/api/system/status", dependencies=[Depends(require_admin)])
    async def system_status(request: Request):
        relay = _relay(request)
        return {
            "active": await relay.store.get_system_active(),
            "redis_connected": relay.store.is_ready(),
            "queue_depth": relay.queue.depth,
            "strategies": await relay.registry.list_strategies(),
            "timestamp": _now(),
        }

    @app.post("/api/system/start", dependencies=[Depends(require_admin)])
    async def system_start(request: Request):
        if not await _relay(request).store.set_system_active(True):
            raise HTTPException(status_code=503, detail="State store unavailable")
        logger.info("System activated via admin API")
        return {"status": "active", "timestamp": _now()}

    @app.post("/api/system/stop", dependencies=[Depends(require_admin)])
    async def system_stop(request: Request):
        if not await _relay(request).store.set_system_active(False):
            raise HTTPException(status_code=503, detail="State store unavailable")
        logger.info("System deactivated via admin API")
        return {"status": "inactive", "timestamp": _now()}

    @app.get("/api/strategies", dependencies=[Depends(require_admin)])
    async def list_strategies(request: Request):
        strategies = await _relay(request).registry.list_strategies()
        return {"strategies": strategies, "count": len(strategies), "timestamp": _now()}

    @app.get("/api/strategies/{strategy}", dependencies=[Depends(require_admin)])
    async def get_strategy(strategy: str, request: Request):
        strategy = _validated_strategy(strategy)
        destinations = await _relay(request).registry.resolve(strategy)
        return {"strategy": strategy, "destinations": destinations, "count": len(destinations)}

    @app.post("/api/strategies/{strategy}/destinations", dependencies=[Depends(require_admin)])
    async def add_destination(strategy: str, body: DestinationRequest, request: Request):
        strategy = _validated_strategy(strategy)
        if not await _relay(request).registry.register(strategy, body.destination):
            raise HTTPException(status_code=503, detail="State store unavailable")
        return {"status": "ok", "strategy": strategy, "destination": body.destination}

    @app.delete("/api/strategies/{strategy}/destinations/{destination}", dependencies=[Depends(require_admin)])
    async def remove_destination(strategy: str, destination: str, request: Request):
        strategy = _validated_strategy(strategy)
        if not await _relay(request).registry.unregister(strategy, destination):
            raise HTTPException(status_code=503, detail="State store unavailable")
        return {"status": "ok", "strategy": strategy, "destination": destination}

    return app


app = create_app()
