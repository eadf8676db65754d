import logging
from contextlib import asynccontextmanager

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

import rollover
from config import get_settings
from cron_route import router as cron_router
from db import init_db
from errors import AppError
from memberships_route import router as memberships_router
from payments_route import router as payments_router

settings = get_settings()

logging.basicConfig(
  level=settings.log_level,
  format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger("gym")


def start_scheduler():
  if not settings.rollover_schedule_enabled:
    return None
  scheduler = BackgroundScheduler()
  trigger = CronTrigger(hour=settings.rollover_time_hh, minute=settings.rollover_time_mm)
  scheduler.add_job(rollover.scheduled_run, trigger, id="membership-rollover", replace_existing=True)
  scheduler.start()
  logger.info("Rollover scheduled daily at %02d:%02d", settings.rollover_time_hh, settings.rollover_time_mm)
  return scheduler


@asynccontextmanager
async def lifespan(app: FastAPI):
  init_db()
  if not settings.mpesa_configured:
    logger.warning("MPESA_CONSUMER_KEY is not set, running in developer mode")
  scheduler = start_scheduler()
  try:
    yield
  finally:
    if scheduler:
      scheduler.shutdown(wait=False)


app = FastAPI(title="Fitness16 Payments Backend", version="1.0.0", lifespan=lifespan)
app.add_middleware(
  CORSMiddleware,
  allow_origins=settings.cors_origins,
  allow_credentials=True,
  allow_methods=["*"],
  allow_headers=["*"],
)


@app.exception_handler(AppError)
async def app_error_handler(request: Request, exc: AppError):
  if exc.status_code >= 500:
    logger.warning("%s %s -> %s: %s", request.method, request.url.path, exc.code, exc.message)
  return JSONResponse(status_code=exc.status_code, content=exc.to_body())


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
  errors = exc.errors()
  first = errors[0] if errors else {}
  where = ".".join(str(p) for p in first.get("loc", ()) if p != "body")
  message = f"{where}: {first.get('msg', 'Invalid input')}" if where else first.get("msg", "Invalid input")
  return JSONResponse(status_code=400, content={"error": {"code": "VALIDATION_ERROR", "message": message}})


app.include_router(payments_router)
app.include_router(memberships_router)
app.include_router(cron_router)


@app.get("/health")
def health():
  return {"ok": True, "env": settings.app_env, "mpesa_env": settings.mpesa_env, "dev_mode": not settings.mpesa_configured}
