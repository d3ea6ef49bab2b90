"""
Base service class for the IoT Data Marketplace gateway.
"""

from fastapi import FastAPI, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
from prometheus_client import CONTENT_TYPE_LATEST
from datetime import datetime, timezone
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, Any, Optional
import time

from shared.config import MarketplaceConfig, get_config
from shared.logging import configure_logging, get_logger, set_request_id, clear_context
from shared.metrics import MetricsCollector, get_metrics_collector
from shared.errors import MarketplaceError, UpstreamError

VERSION = "1.0.0"


class BaseService:
    """Base service class with common functionality."""

    def __init__(self, service_name: str, config: Optional[MarketplaceConfig] = None,
                 metrics: Optional[MetricsCollector] = None):
        self.service_name = service_name
        self.config = config or get_config()
        self.logger = get_logger(f"{service_name}.service")
        self.metrics = metrics or get_metrics_collector(service_name)
        self._start_time = time.time()

        configure_logging(service_name, self.config.log_level)

        self.app = self._create_app()
        self._setup_middleware()
        self._setup_routes()

    def _create_app(self) -> FastAPI:
        """Create FastAPI application."""

        @asynccontextmanager
        async def lifespan(app: FastAPI) -> AsyncIterator[None]:
            await self.start()
            try:
                yield
            finally:
                await self.stop()

        return FastAPI(
            lifespan=lifespan,
            title=f"{self.service_name.title()} Service",
            description="IoT Data Marketplace gateway",
            version=VERSION,
            docs_url="/docs" if self.config.env == "local" else None,
            redoc_url="/redoc" if self.config.env == "local" else None,
        )

    def _setup_middleware(self):
        """Set up middleware."""

        origins = self.config.cors_origin_list()
        self.app.add_middleware(
            CORSMiddleware,
            allow_origins=origins,
            allow_credentials="*" not in origins,
            allow_methods=["*"],
            allow_headers=["*"],
        )

        @self.app.middleware("http")
        async def add_request_timing(request: Request, call_next):
            request_id = set_request_id(request.headers.get("X-Request-ID"))
            request.state.request_id = request_id
            start_time = time.time()

            try:
                response = await call_next(request)
            finally:
                clear_context()

            duration = time.time() - start_time
            route = request.scope.get("route")
            endpoint = getattr(route, "path", request.url.path)

            self.metrics.record_http_request(
                method=request.method,
                endpoint=endpoint,
                status_code=response.status_code,
                duration=duration
            )

            self.logger.info(
                "HTTP request",
                method=request.method,
                path=request.url.path,
                status_code=response.status_code,
                duration_ms=round(duration * 1000, 2),
                request_id=request_id
            )

            response.headers["X-Request-ID"] = request_id
            return response

    def _setup_routes(self):
        """Set up common routes."""

        @self.app.get("/health")
        async def health_check():
            """Health check endpoint."""
            try:
                dependencies = await self._check_dependencies()
            except Exception as e:
                self.logger.error("Health check failed", error=str(e))
                return JSONResponse(
                    status_code=503,
                    content={"success": False, "status": "unhealthy", "error": str(e)}
                )

            return {
                "success": True,
                "status": "healthy",
                "service": self.service_name,
                "timestamp": datetime.now(timezone.utc).isoformat(),
                "uptime_seconds": round(time.time() - self._start_time, 3),
                "version": VERSION,
                "dependencies": dependencies
            }

        @self.app.get("/metrics")
        async def metrics_endpoint():
            """Prometheus metrics endpoint."""
            return Response(content=self.metrics.export(), media_type=CONTENT_TYPE_LATEST)

        @self.app.exception_handler(MarketplaceError)
        async def marketplace_exception_handler(request: Request, exc: MarketplaceError):
            """Handle MarketplaceError."""
            log = self.logger.error if exc.status_code >= 500 else self.logger.info
            log(
                "Request failed",
                code=exc.code,
                message=exc.message,
                reason=getattr(exc, "reason", None),
                upstream=exc.service if isinstance(exc, UpstreamError) else None,
                path=request.url.path
            )
            self.metrics.record_error(exc.code)
            body = exc.to_response(getattr(request.state, "request_id", None))
            return JSONResponse(
                status_code=exc.status_code,
                content=body.model_dump(exclude_none=True)
            )

        @self.app.exception_handler(RequestValidationError)
        async def validation_exception_handler(request: Request, exc: RequestValidationError):
            errors = [
                {"field": ".".join(str(part) for part in err.get("loc", ())), "message": err.get("msg", "")}
                for err in exc.errors()
            ]
            return JSONResponse(
                status_code=400,
                content={
                    "success": False,
                    "code": "VALIDATION_ERROR",
                    "error": "Invalid request",
                    "details": {"errors": errors}
                }
            )

        @self.app.exception_handler(StarletteHTTPException)
        async def http_exception_handler(request: Request, exc: StarletteHTTPException):
            if exc.status_code == 404:
                return JSONResponse(
                    status_code=404,
                    content={"success": False, "code": "NOT_FOUND", "error": "Endpoint not found"}
                )
            return JSONResponse(
                status_code=exc.status_code,
                content={"success": False, "code": "HTTP_ERROR", "error": str(exc.detail)}
            )

        @self.app.exception_handler(Exception)
        async def general_exception_handler(request: Request, exc: Exception):
            """Handle general exceptions."""
            self.logger.error("Unhandled exception", error=str(exc), path=request.url.path, exc_info=True)
            self.metrics.record_error("INTERNAL_ERROR")
            return JSONResponse(
                status_code=500,
                content={
                    "success": False,
                    "code": "INTERNAL_ERROR",
                    "error": "Internal server error"
                }
            )

    async def start(self):
        """Startup hook. Override in subclasses."""

    async def stop(self):
        """Shutdown hook. Override in subclasses."""

    async def _check_dependencies(self) -> Dict[str, Any]:
        """Check service dependencies. Override in subclasses."""
        return {}

    def run(self):
        """Run the service."""
        import uvicorn
        uvicorn.run(
            self.app,
            host=self.config.host,
            port=self.config.port,
            log_level=self.config.log_level.lower()
        )
