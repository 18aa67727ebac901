from fastapi import APIRouter, HTTPException, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from config import settings
from routes.options import router as options_router
from routes.screener import router as screener_router
from services import market_calendar
from utils import isoformat_utc, now_et

router = APIRouter()
router.include_router(options_router)
router.include_router(screener_router)


@router.get("/health")
def health():
    now = now_et()
    return {"ok": True, "marketStatus": market_calendar.is_open(now), "time": isoformat_utc(now)}


@router.get("/metrics")
def metrics():
    if not settings.metrics_enabled:
        raise HTTPException(status_code=404)
    return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)


__all__ = ["router"]
