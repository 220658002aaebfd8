# backend/clinicdb/main.py
import logging
import os
from typing import List

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .core import build_core
from .database import WriteSessionLocal
from .errors import ClinicSupplyError

from .apps.alerts.router import router as alerts_router
from .apps.audit.router import router as audit_router
from .apps.catalog.router import router as catalog_router
from .apps.clinics.router import router as clinics_router
from .apps.events.router import router as events_router
from .apps.inventory.router import router as inventory_router
from .apps.invoices.router import router as invoices_router
from .apps.patients.router import router as patients_router
from .apps.treatments.router import router as treatments_router

logger = logging.getLogger(__name__)


def _allowed_origins() -> List[str]:
    """
    Parse CORS_ALLOWED_ORIGINS from env.

    Accepts comma-separated origins. If unset, defaults to local dev ports.
    """
    raw = os.getenv("CORS_ALLOWED_ORIGINS", "")
    if raw:
        origins = [origin.strip() for origin in raw.split(",") if origin.strip()]
        if origins:
            return origins
    return [
        "http://127.0.0.1:5173",
        "http://localhost:5173",
    ]


async def handle_domain_error(request: Request, exc: ClinicSupplyError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.warning(
            "Request failed with storage conflict",
            extra={"path": request.url.path, "code": exc.code},
        )
    return JSONResponse(status_code=exc.status_code, content=exc.as_dict())


app = FastAPI(title="Clinic Supply API", version="1.0.0")
app.state.core = build_core(WriteSessionLocal)
app.add_exception_handler(ClinicSupplyError, handle_domain_error)

cors_origins = _allowed_origins()
allow_credentials = "*" not in cors_origins

app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    allow_credentials=allow_credentials,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.get("/", tags=["health"])
def read_root():
    return {"status": "ok", "message": "Clinic supply backend is running"}


@app.get("/health", tags=["health"])
def health():
    return {"status": "ok"}


app.include_router(clinics_router)
app.include_router(patients_router)
app.include_router(catalog_router)
app.include_router(inventory_router)
app.include_router(treatments_router)
app.include_router(invoices_router)
app.include_router(alerts_router)
app.include_router(audit_router)
app.include_router(events_router)
