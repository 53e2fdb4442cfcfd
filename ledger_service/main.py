"""
Ledger Service
Resource quotas, the coin store and user lifecycle
"""
import logging
from fastapi import FastAPI, Depends, HTTPException, Query, Request

from common.documentation import install_openapi, LEDGER_DOCS
from common.error_handling import add_error_handlers
from common.schemas import CreateUserRequest, ResourcesOut, ResourcesUpdate, StorePurchaseRequest
from common.security import Principal, get_current_user, require_admin
from common.settings import settings
from common.tracing import ledger_tracer, tracing_middleware
from ledger_service.db import SessionLocal, engine
from ledger_service.ledger import ResourceLedger, ResourceVector
from ledger_service.models import Base
from ledger_service.store import RecordStore

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

Base.metadata.create_all(bind=engine)

_store = RecordStore(SessionLocal)
_ledger = ResourceLedger(SessionLocal)

def get_store() -> RecordStore:
    return _store

def get_ledger() -> ResourceLedger:
    return _ledger

app = FastAPI(title="Ledger Service", version="1.0.0")
add_error_handlers(app)
install_openapi(app, LEDGER_DOCS, tags=[
    {"name": "resources", "description": "Quota of the caller"},
    {"name": "admin", "description": "Quota and user administration"},
])

# Add tracing middleware
@app.middleware("http")
async def add_tracing(request: Request, call_next):
    return await tracing_middleware(request, call_next, ledger_tracer)

def _resources(ledger_id: int, vector: ResourceVector) -> dict:
    return ResourcesOut(id=ledger_id, **vector.as_dict()).model_dump()

def _ledger_id(user: Principal, store: RecordStore) -> int:
    if user.ledger_id is not None:
        return user.ledger_id
    found = store.find_user(user.user_id)
    if found is None or found.ledger_id is None:
        raise HTTPException(status_code=404, detail="No resources linked to this account")
    return found.ledger_id

@app.get("/health")
async def health():
    return {"ok": True, "service": "ledger_service"}

@app.get("/resources/me", tags=["resources"])
async def my_resources(user: Principal = Depends(get_current_user), store=Depends(get_store),
                       ledger=Depends(get_ledger)):
    ledger_id = _ledger_id(user, store)
    vector = (await ledger.get(ledger_id)).unwrap()
    return {"success": True, "resources": _resources(ledger_id, vector)}

@app.post("/store", tags=["resources"])
async def buy(body: StorePurchaseRequest, user: Principal = Depends(get_current_user),
              store=Depends(get_store), ledger=Depends(get_ledger)):
    """Spend coins on extra quota"""
    ledger_id = _ledger_id(user, store)
    vector = (await ledger.purchase(ledger_id, body.item, body.quantity)).unwrap()
    return {
        "success": True,
        "message": f"Purchased {body.quantity} {body.item}",
        "cost": settings.store_prices()[body.item] * body.quantity,
        "resources": _resources(ledger_id, vector),
    }

@app.get("/store/prices", tags=["resources"])
async def prices():
    return {"success": True, "prices": settings.store_prices()}

@app.get("/resources", tags=["admin"])
async def list_resources(page: int = Query(1, ge=1), per_page: int = Query(50, ge=1, le=200),
                         admin: Principal = Depends(require_admin), store=Depends(get_store)):
    rows = store.list_ledgers(offset=(page - 1) * per_page, limit=per_page)
    return {
        "success": True,
        "page": page,
        "resources": [_resources(row.id, ResourceVector.of(row)) for row in rows],
    }

@app.get("/resources/stats/summary", tags=["admin"])
async def resource_stats(admin: Principal = Depends(require_admin), store=Depends(get_store)):
    """Ledger count with the average and total of every quota field"""
    return {"success": True, **store.ledger_stats()}

@app.get("/resources/{ledger_id}", tags=["admin"])
async def get_resources(ledger_id: int, admin: Principal = Depends(require_admin), ledger=Depends(get_ledger)):
    vector = (await ledger.get(ledger_id)).unwrap()
    return {"success": True, "resources": _resources(ledger_id, vector)}

@app.patch("/resources/{ledger_id}", tags=["admin"])
async def update_resources(ledger_id: int, body: ResourcesUpdate, admin: Principal = Depends(require_admin),
                           ledger=Depends(get_ledger)):
    vector = (await ledger.set_values(ledger_id, body.values())).unwrap()
    logger.info(f"Admin {admin.user_id} set ledger {ledger_id} to {body.values()}")
    return {"success": True, "resources": _resources(ledger_id, vector)}

@app.post("/users", status_code=201, tags=["admin"])
async def create_user(body: CreateUserRequest, admin: Principal = Depends(require_admin),
                      store=Depends(get_store)):
    user = store.create_user(body.username, body.email, body.remote_id, root_admin=body.root_admin)
    return {
        "success": True,
        "user": {
            "id": user.id,
            "username": user.username,
            "email": user.email,
            "remote_id": user.remote_id,
            "ledger_id": user.ledger_id,
            "root_admin": user.root_admin,
        },
    }

@app.delete("/users/{user_id}", tags=["admin"])
async def delete_user(user_id: int, admin: Principal = Depends(require_admin), store=Depends(get_store)):
    if user_id == admin.user_id:
        raise HTTPException(status_code=403, detail="Administrators cannot delete themselves")
    user = store.delete_user(user_id)
    servers = store.find_server_records_by_owner(user.remote_id)
    if servers:
        # Their servers stay tracked but no longer map to any ledger
        logger.warning(f"User {user_id} deleted with {len(servers)} servers still tracked")
    return {"success": True, "message": f"User {user_id} deleted", "orphaned_servers": len(servers)}

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8002)
