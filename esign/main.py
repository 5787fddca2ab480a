import logging
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .config import settings
from .controllers import envelopes, signing
from .database import engine, Base
from .errors import SignatureServiceError

logger = logging.getLogger(__name__)

app = FastAPI(title="eSign API")

# Explicit origins required when allow_credentials=True
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(SignatureServiceError)
async def signature_service_error_handler(request: Request, exc: SignatureServiceError):
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.code} {exc.message}")
    else:
        logger.info(f"{request.method} {request.url.path} rejected: {exc.code} {exc.message}")
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.message, "code": exc.code},
    )


# Create database tables
Base.metadata.create_all(bind=engine)

# Include routers
app.include_router(envelopes.router, prefix="/api/envelopes", tags=["envelopes"])
app.include_router(signing.router, prefix="/api/envelopes", tags=["signing"])
