import json
from typing import Any

from fastapi import APIRouter, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from apis.base import error_response
from apis.billing import router as billing_router
from apis.catalog import router as catalog_router
from core.config import API_BASE, DEBUG, VERSION, cfg
from core.db import DB
from core.events import E, log_event
from core.log import get_logger, set_trace_id
from jobs.billing import start_reconcile_worker

logger = get_logger(__name__)


class UnicodeJSONResponse(JSONResponse):
    """JSON 响应不转义非 ASCII 字符"""
    def render(self, content: Any) -> bytes:
        return json.dumps(
            content,
            ensure_ascii=False,
            allow_nan=False,
            indent=None,
            separators=(",", ":"),
        ).encode("utf-8")


app = FastAPI(
    title="Storefront API",
    description="商品目录、结算与支付对账接口",
    version=VERSION,
    docs_url="/api/docs",
    redoc_url="/api/redoc",
    openapi_url="/api/openapi.json",
    default_response_class=UnicodeJSONResponse,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=cfg.get("cors.allow_origins", ["*"]),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def add_trace_id(request: Request, call_next):
    tid = set_trace_id(request.headers.get("X-Request-Id", ""))
    response = await call_next(request)
    response.headers["X-Request-Id"] = tid
    response.headers["X-Version"] = VERSION
    return response


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    errors = {}
    for item in exc.errors():
        loc = [str(x) for x in item.get("loc", ()) if x not in ("body", "query", "path")]
        errors.setdefault(".".join(loc) or "body", item.get("msg", "invalid value"))
    return UnicodeJSONResponse(
        status_code=400,
        content={
            "detail": error_response(
                code=40001,
                message="Validation failed",
                data={"kind": "ValidationError", "details": {"errors": errors}},
            )
        },
    )


api_router = APIRouter(prefix=f"{API_BASE}")
api_router.include_router(catalog_router)
api_router.include_router(billing_router)
app.include_router(api_router)


@app.on_event("startup")
async def on_startup():
    DB.create_tables()
    log_event(logger, E.SYSTEM_DB_INIT, url=DB.engine.url.render_as_string(hide_password=True))
    if cfg.get("billing.reconcile_enabled", False):
        start_reconcile_worker()
    log_event(logger, E.SYSTEM_STARTUP, version=VERSION)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "web:app",
        host=str(cfg.get("server.host", "0.0.0.0")),
        port=int(cfg.get("server.port", 8001)),
        reload=DEBUG,
    )
