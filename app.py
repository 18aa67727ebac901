import json
import logging
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from config import settings
from routes import router
from services import http_client
from services.options_flow import OptionsFlowService
from services.quote_source import build_quote_source


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        data = {
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }
        if record.exc_info:
            data["exc"] = self.formatException(record.exc_info)
        return json.dumps(data)


handler = logging.StreamHandler()
handler.setFormatter(JsonFormatter())
logging.basicConfig(level=logging.INFO, handlers=[handler])
logger = logging.getLogger(__name__)


def create_app(service: Optional[OptionsFlowService] = None) -> FastAPI:
    app = FastAPI(title="Option Flow")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(settings.cors_origins),
        allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
        allow_headers=["Content-Type"],
    )

    if service is None:
        logger.info("Building options pipeline provider=%s", settings.quote_provider)
        service = OptionsFlowService(build_quote_source())
    app.state.options_flow = service

    app.include_router(router)

    @app.on_event("shutdown")
    async def _shutdown():
        await http_client.aclose()

    return app


app = create_app()
