from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from courtflow.core.config import settings
from courtflow.core.errors import FlowError, flow_error_handler
from courtflow.core.logging_config import setup_logging
from courtflow.api.v1.api import api_router

setup_logging()

app = FastAPI(title=settings.APP_NAME)

# CORS: use CORS_ORIGINS from env in production; default to the local booking pages for dev
_default_origins = [
    "http://127.0.0.1:5173", "http://localhost:5173",
    "http://127.0.0.1:3000", "http://localhost:3000",
]
_origins = [o.strip() for o in settings.CORS_ORIGINS.split(",") if o.strip()] if settings.CORS_ORIGINS else _default_origins
app.add_middleware(
    CORSMiddleware,
    allow_origins=_origins,
    # the flow session lives in a cookie
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.add_exception_handler(FlowError, flow_error_handler)
app.include_router(api_router)


@app.get("/health")
def health():
    return {"status": "ok"}
