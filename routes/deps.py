"""Request-scoped access to the process-wide pipeline instance."""
from __future__ import annotations

from fastapi import Request

from services.options_flow import OptionsFlowService


def get_service(request: Request) -> OptionsFlowService:
    return request.app.state.options_flow


__all__ = ["get_service"]
