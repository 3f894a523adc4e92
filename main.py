from contextlib import asynccontextmanager
import logging
import time

from fastapi import FastAPI, Request
from fastapi.templating import Jinja2Templates
from starlette.middleware.sessions import SessionMiddleware

from access import enforce_access
from alerts import AlertStore
from config import config
from db import ROOT_DIR, Base, SessionLocal, engine
from integrity import SqlInventoryStore
from monitoring import MonitorConfig, MonitorScheduler
from routers import ALL_ROUTERS

import orm  # noqa: F401  テーブル定義の登録

# -----------------------
# Logging
# -----------------------
logging.basicConfig(
    level=config.LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
)
logger = logging.getLogger("app")

Base.metadata.create_all(bind=engine)


def build_monitor(session_factory) -> MonitorScheduler:
    return MonitorScheduler(
        SqlInventoryStore(session_factory),
        AlertStore(capacity=config.ALERT_CAPACITY),
        monitor_config=MonitorConfig.from_env(),
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    monitor = build_monitor(app.state.session_factory)
    app.state.monitor = monitor
    app.state.alerts = monitor.alerts
    if monitor.config.enabled:
        monitor.start()
    try:
        yield
    finally:
        monitor.shutdown()


app = FastAPI(title="Lab Equipment Loans", lifespan=lifespan)
app.state.templates = Jinja2Templates(directory=str(ROOT_DIR / "templates"))
app.state.session_factory = SessionLocal


@app.middleware("http")
async def log_requests(request: Request, call_next):
    start = time.time()
    response = await call_next(request)
    elapsed_ms = int((time.time() - start) * 1000)
    logger.info(
        "method=%s path=%s status=%s elapsed_ms=%s",
        request.method,
        request.url.path,
        response.status_code,
        elapsed_ms,
    )
    return response


# SessionMiddleware を最後に追加する（外側で動かすため）
app.middleware("http")(enforce_access)
app.add_middleware(SessionMiddleware, secret_key=config.SECRET_KEY)

for r in ALL_ROUTERS:
    app.include_router(r)


@app.get("/")
def root():
    return {"message": "Lab Equipment Loans", "docs": "/docs", "ui": "/ui/dashboard"}
