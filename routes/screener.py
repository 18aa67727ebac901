from __future__ import annotations

import json
import logging
from typing import Any, Dict

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from routes.deps import get_service
from services.errors import AggregationError
from services.options_flow import OptionsFlowService
from services.screening import criteria_from_params

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/screener")


async def _run(params: Dict[str, Any], service: OptionsFlowService):
    criteria = criteria_from_params(params)
    logger.info("screen_request criteria=%s", criteria.cache_token())
    try:
        return await service.screen(criteria)
    except AggregationError as exc:
        return JSONResponse({"error": str(exc)}, status_code=500)


@router.get("/screen")
async def screen_get(request: Request, service: OptionsFlowService = Depends(get_service)):
    return await _run(dict(request.query_params), service)


@router.post("/screen")
async def screen_post(request: Request, service: OptionsFlowService = Depends(get_service)):
    try:
        body = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        # Unreadable bodies fall back to the default criteria.
        body = {}
    if not isinstance(body, dict):
        body = {}
    return await _run(body, service)


__all__ = ["router"]
