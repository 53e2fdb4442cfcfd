"""
Purge Service
Admin routes to start a background purge and poll its progress
"""
import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI, Depends, Request

from common.documentation import install_openapi, PURGE_DOCS
from common.error_handling import add_error_handlers
from common.schemas import PurgeRequest
from common.security import Principal, require_admin
from common.tracing import purge_tracer, tracing_middleware
from ledger_service.db import SessionLocal, engine
from ledger_service.ledger import ResourceLedger
from ledger_service.models import Base
from ledger_service.store import RecordStore
from panel_client.client import PanelClient
from purge_service.job import PurgeJobRunner
from server_service.orchestrator import DeprovisionOrchestrator

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

Base.metadata.create_all(bind=engine)

_store = RecordStore(SessionLocal)
_panel = PanelClient()
_runner = PurgeJobRunner(_store, DeprovisionOrchestrator(_store, ResourceLedger(SessionLocal), _panel), _panel)

def get_runner() -> PurgeJobRunner:
    return _runner

@asynccontextmanager
async def lifespan(app: FastAPI):
    interrupted = _runner.recover_interrupted()
    if interrupted:
        logger.warning(f"Marked {len(interrupted)} interrupted purge job(s) as failed: {interrupted}")
    yield

app = FastAPI(title="Purge Service", version="1.0.0", lifespan=lifespan)
add_error_handlers(app)
install_openapi(app, PURGE_DOCS, tags=[{"name": "admin", "description": "Bulk server purge"}])

# Add tracing middleware
@app.middleware("http")
async def add_tracing(request: Request, call_next):
    return await tracing_middleware(request, call_next, purge_tracer)

@app.get("/health")
async def health():
    return {"ok": True, "service": "purge_service"}

@app.delete("/admin/purger/", tags=["admin"])
async def start_purge(body: PurgeRequest, admin: Principal = Depends(require_admin),
                      runner: PurgeJobRunner = Depends(get_runner)):
    """Start deleting every server whose name does not contain ``keywords``"""
    job = (await runner.start(body.keywords, batch_size=body.batch_size, user_id=admin.user_id)).unwrap()
    return {
        "success": True,
        "message": "Purge started",
        "job_id": job.id,
        "status": job.status,
        "total_servers": job.total_servers,
    }

@app.get("/admin/purger/status/{job_id}", tags=["admin"])
async def purge_status(job_id: int, admin: Principal = Depends(require_admin),
                       runner: PurgeJobRunner = Depends(get_runner)):
    return {"success": True, "job": runner.status(job_id).unwrap().model_dump()}

@app.post("/admin/purger/{job_id}/cancel", tags=["admin"])
async def cancel_purge(job_id: int, admin: Principal = Depends(require_admin),
                       runner: PurgeJobRunner = Depends(get_runner)):
    job = runner.cancel(job_id).unwrap()
    return {"success": True, "message": "Cancellation requested", "job": job.model_dump()}

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8003)
