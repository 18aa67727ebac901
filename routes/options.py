from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query
from fastapi.responses import JSONResponse

from routes.deps import get_service
from services.errors import AggregationError
from services.options_flow import OptionsFlowService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/options")


def _failure(exc: AggregationError) -> JSONResponse:
    return JSONResponse({"error": str(exc)}, status_code=500)


def _symbols(raw: Optional[str]):
    return raw.split(",") if raw else None


@router.get("/summary-stats")
async def summary_stats(
    symbols: Optional[str] = Query(None),
    service: OptionsFlowService = Depends(get_service),
):
    try:
        return await service.summary_stats(_symbols(symbols))
    except AggregationError as exc:
        return _failure(exc)


@router.get("/chain/{symbol}")
async def options_chain(symbol: str, service: OptionsFlowService = Depends(get_service)):
    try:
        return await service.options_chain(symbol)
    except AggregationError as exc:
        return _failure(exc)


@router.get("/details/{symbol}/{option_symbol}")
async def option_details(
    symbol: str,
    option_symbol: str,
    service: OptionsFlowService = Depends(get_service),
):
    try:
        return await service.option_details(option_symbol)
    except AggregationError as exc:
        return _failure(exc)


@router.get("/expirations/{symbol}")
async def expirations(symbol: str, service: OptionsFlowService = Depends(get_service)):
    try:
        return await service.expirations(symbol)
    except AggregationError as exc:
        return _failure(exc)


@router.get("/top-movers")
async def top_movers(
    symbols: Optional[str] = Query(None),
    service: OptionsFlowService = Depends(get_service),
):
    try:
        return await service.top_movers(_symbols(symbols))
    except AggregationError as exc:
        return _failure(exc)


@router.get("/long-dated")
async def long_dated(
    symbols: Optional[str] = Query(None),
    service: OptionsFlowService = Depends(get_service),
):
    try:
        return await service.long_dated(_symbols(symbols))
    except AggregationError as exc:
        return _failure(exc)


@router.get("/long-dated-large")
async def long_dated_large(
    symbols: Optional[str] = Query(None),
    service: OptionsFlowService = Depends(get_service),
):
    try:
        return await service.long_dated_large(_symbols(symbols))
    except AggregationError as exc:
        return _failure(exc)


__all__ = ["router"]
