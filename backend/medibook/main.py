import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from medibook.core.settings import configure_logging, settings, validate_settings
from medibook.db.session import engine
from medibook.models import Base
from medibook.routers.bookings import router as bookings_router

app = FastAPI(title="MediBook Booking API", version="0.1.0")
logger = logging.getLogger("medibook.startup")


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    request_id = request.headers.get("x-request-id")
    logger.exception("Unhandled server error", extra={"request_id": request_id})
    payload = {"detail": "Internal server error"}
    if request_id:
        payload["request_id"] = request_id
    return JSONResponse(status_code=500, content=payload)


@app.on_event("startup")
def startup():
    configure_logging(settings.log_level)
    validate_settings(settings)
    Base.metadata.create_all(bind=engine)
    logger.info("MediBook API started (env=%s).", settings.app_env)


@app.get("/health")
def health():
    return {"status": "ok"}


app.include_router(bookings_router)
