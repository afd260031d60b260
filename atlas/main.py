import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .database import create_db_and_tables
from .dependencies import set_escrow_gateway  # noqa: F401
from .errors import (
    AtlasError,
    ConcurrentModificationError,
    EscrowError,
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
)
from .routers import challenges, devices

logger = logging.getLogger(__name__)

@asynccontextmanager
async def lifespan(app: FastAPI):
    create_db_and_tables()
    yield

app = FastAPI(title="Atlas Challenges", lifespan=lifespan)

origins = ["*"]

app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

ERROR_STATUS_CODES = {
    ValidationError: 422,
    NotFoundError: 404,
    InvalidTransitionError: 409,
    ConcurrentModificationError: 409,
    EscrowError: 502,
}

@app.exception_handler(AtlasError)
async def atlas_error_handler(request: Request, exc: AtlasError):
    status_code = next((code for cls, code in ERROR_STATUS_CODES.items() if isinstance(exc, cls)), 500)
    if status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=status_code, content=exc.to_dict())

@app.get("/")
async def root():
    return {"message": "Atlas challenges"}

app.include_router(challenges.router)
app.include_router(devices.router)
