import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from .config import SERVICE_NAME, Settings
from .context import ServiceContext
from .errors import BookingError
from .middleware import RequestLoggingMiddleware
from .otp import generate_code
from .routes import router

logging.basicConfig(
    level=logging.INFO, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)

logger = logging.getLogger(__name__)


def create_app(
    settings: Settings | None = None,
    *,
    redis_client=None,
    clock=None,
    otp_channel=None,
    publisher=None,
    code_generator=generate_code,
) -> FastAPI:
    app = FastAPI(title="Booking Service")
    app.add_middleware(RequestLoggingMiddleware)
    app.include_router(router)

    @app.exception_handler(BookingError)
    async def booking_error_handler(request: Request, exc: BookingError):
        if exc.status_code >= 500 or not exc.expose_message:
            logger.error("[booking-service] %s %s failed: %s", request.method, request.url.path, exc.message)
        return JSONResponse(
            status_code=exc.status_code,
            content={"detail": exc.public_message, "code": exc.code},
        )

    @app.get("/health")
    async def health():
        return {"status": "ok", "service": SERVICE_NAME}

    @app.on_event("startup")
    async def startup():
        app.state.ctx = ServiceContext(
            settings or Settings.from_env(),
            clock=clock,
            redis_client=redis_client,
            otp_channel=otp_channel,
            publisher=publisher,
            code_generator=code_generator,
        )
        await app.state.ctx.start()

    @app.on_event("shutdown")
    async def shutdown():
        ctx = getattr(app.state, "ctx", None)
        if ctx is not None:
            await ctx.close()

    return app


app = create_app()
