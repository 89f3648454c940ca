"""
FastAPI Server for the Channel Escrow deal engine
Deal lifecycle API, payment webhook and health checks
"""
import logging
import os
import sys
from contextlib import asynccontextmanager

from dotenv import load_dotenv

# Environment must be loaded before Config is imported
load_dotenv(os.path.join(os.path.dirname(os.path.abspath(__file__)), '.env'))

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from config import Config
from database import create_tables, test_connection
from handlers.deals import router as deals_router
from handlers.nowpayments_webhook import router as nowpayments_router
from utils.exception_handler import DealError, deal_error_response

logger = logging.getLogger(__name__)

_HTTP_ERROR_KINDS = {
    400: "validation_error",
    401: "unauthenticated",
    403: "forbidden",
    404: "not_found",
}


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Startup: report configuration and make sure the schema exists.
    Shutdown: nothing to release beyond the connection pool.
    """
    logger.info(f"🔧 Deal service worker {os.getpid()} starting...")
    Config.log_environment_config()
    for problem in Config.validate_configuration():
        logger.warning(f"⚠️ CONFIG: {problem}")

    if create_tables():
        logger.info(f"✅ Worker {os.getpid()} initialized successfully")
    else:
        logger.error(f"❌ Worker {os.getpid()} initialization failed: schema could not be created")

    yield

    logger.info(f"🔄 Deal service worker {os.getpid()} shutting down...")


def create_app() -> FastAPI:
    app = FastAPI(
        title="Channel Escrow Deal Service",
        description="Escrow deal lifecycle for social-media channel sales",
        lifespan=lifespan,
    )

    @app.exception_handler(DealError)
    async def handle_deal_error(request: Request, exc: DealError):
        deal_id = request.path_params.get("deal_id")
        return JSONResponse(status_code=exc.http_status, content=deal_error_response(exc, deal_id))

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation_error(request: Request, exc: RequestValidationError):
        logger.info(f"🚫 REQUEST_INVALID {request.method} {request.url.path}: {exc.errors()}")
        return JSONResponse(
            status_code=400,
            content={"success": False, "error": "validation_error", "message": "Invalid request"},
        )

    @app.exception_handler(HTTPException)
    async def handle_http_exception(request: Request, exc: HTTPException):
        return JSONResponse(
            status_code=exc.status_code,
            content={
                "success": False,
                "error": _HTTP_ERROR_KINDS.get(exc.status_code, "http_error"),
                "message": str(exc.detail),
            },
        )

    @app.exception_handler(Exception)
    async def handle_unexpected_error(request: Request, exc: Exception):
        logger.error(f"❌ UNHANDLED_ERROR {request.method} {request.url.path}: {exc}", exc_info=True)
        return JSONResponse(
            status_code=500,
            content={"success": False, "error": "internal_error", "message": "Internal server error"},
        )

    @app.get("/health")
    def health_check():
        """Service health including database reachability"""
        database_ok = test_connection()
        return JSONResponse(
            status_code=200 if database_ok else 503,
            content={
                "status": "healthy" if database_ok else "degraded",
                "service": "channel-escrow-deals",
                "environment": Config.CURRENT_ENVIRONMENT,
                "database": "connected" if database_ok else "unreachable",
            },
        )

    app.include_router(deals_router)
    app.include_router(nowpayments_router)
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=[logging.StreamHandler(sys.stdout)],
    )
    uvicorn.run(app, host="0.0.0.0", port=int(os.getenv("PORT", "5000")))
