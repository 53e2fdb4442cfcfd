"""
Server Service
User and admin routes for the create/resize/delete sagas and the server inventory
"""
import time
import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI, Depends, HTTPException, Query, Request

from common.circuit_breaker import get_all_circuit_breakers
from common.documentation import install_openapi, SERVER_DOCS
from common.error_handling import add_error_handlers, RemoteError
from common.schemas import (
    CreateServerRequest, AdminCreateServerRequest, UpdateServerRequest,
    AdminUpdateServerRequest, PowerActionRequest,
)
from common.security import Principal, get_current_user, require_admin
from common.tracing import server_tracer, tracing_middleware
from ledger_service.db import SessionLocal, engine
from ledger_service.ledger import ResourceLedger
from ledger_service.models import Base
from ledger_service.store import RecordStore
from panel_client.client import PanelClient
from server_service.inventory import ServerInventory, record_out
from server_service.orchestrator import (
    ProvisioningOrchestrator, ResizeOrchestrator, DeprovisionOrchestrator,
    ServerOrder, ServerChanges,
)

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

Base.metadata.create_all(bind=engine)

_store = RecordStore(SessionLocal)
_ledger = ResourceLedger(SessionLocal)
_panel = PanelClient()

def get_store() -> RecordStore:
    return _store

def get_ledger() -> ResourceLedger:
    return _ledger

def get_panel() -> PanelClient:
    return _panel

def get_provisioner(store=Depends(get_store), ledger=Depends(get_ledger), panel=Depends(get_panel)):
    return ProvisioningOrchestrator(store, ledger, panel)

def get_resizer(store=Depends(get_store), ledger=Depends(get_ledger), panel=Depends(get_panel)):
    return ResizeOrchestrator(store, ledger, panel)

def get_deprovisioner(store=Depends(get_store), ledger=Depends(get_ledger), panel=Depends(get_panel)):
    return DeprovisionOrchestrator(store, ledger, panel)

def get_inventory(store=Depends(get_store), panel=Depends(get_panel)):
    return ServerInventory(store, panel)

@asynccontextmanager
async def lifespan(app: FastAPI):
    try:
        await _panel.ping()
        logger.info(f"✅ Panel reachable at {_panel.base_url}")
    except RemoteError as e:
        logger.warning(f"❌ Panel not reachable at startup ({_panel.base_url}): {e}")
    yield

app = FastAPI(title="Server Service", version="1.0.0", lifespan=lifespan)
add_error_handlers(app)
install_openapi(app, SERVER_DOCS, tags=[
    {"name": "servers", "description": "Servers owned by the caller"},
    {"name": "admin", "description": "Server management for administrators"},
])

# Add tracing middleware
@app.middleware("http")
async def add_tracing(request: Request, call_next):
    return await tracing_middleware(request, call_next, server_tracer)

def _owner(user: Principal) -> int:
    if user.remote_id is None:
        raise HTTPException(status_code=403, detail="Account is not linked to a panel user")
    return user.remote_id

def _created(result) -> dict:
    created = result.unwrap()
    return {
        "success": True,
        "message": "Server created successfully",
        "server": {
            "record": record_out(created.record).model_dump(),
            "remote_id": created.remote.id,
            "name": created.remote.name,
            "identifier": created.remote.identifier,
            "uuid": created.remote.uuid,
            "status": created.remote.status,
        },
    }

def _updated(result) -> dict:
    updated = result.unwrap()
    return {
        "success": True,
        "message": "Server updated successfully",
        "server": record_out(updated.record).model_dump(),
        "limits": updated.remote.quota(),
        "delta": updated.delta.as_dict(),
    }

def _deleted(result) -> dict:
    deleted = result.unwrap()
    return {
        "success": True,
        "message": "Server deleted successfully",
        "server": record_out(deleted.record).model_dump(),
        "credited": deleted.credited.as_dict() if deleted.credited else None,
        "remote_existed": deleted.remote_existed,
    }

@app.get("/health")
async def health():
    return {"ok": True, "service": "server_service"}

@app.get("/circuit-breakers")
async def get_circuit_breaker_status():
    """Get status of all circuit breakers"""
    return {
        "circuit_breakers": get_all_circuit_breakers(),
        "timestamp": time.time()
    }

@app.get("/servers", tags=["servers"])
async def list_servers(user: Principal = Depends(get_current_user), inventory=Depends(get_inventory)):
    servers = await inventory.list_for_owner(_owner(user))
    return {"success": True, "servers": [s.model_dump() for s in servers]}

@app.get("/servers/{server_id}", tags=["servers"])
async def get_server(server_id: int, user: Principal = Depends(get_current_user),
                     inventory=Depends(get_inventory)):
    view = (await inventory.get(server_id, owner=_owner(user))).unwrap()
    return {"success": True, "server": view.model_dump()}

@app.post("/servers", status_code=201, tags=["servers"])
async def create_server(body: CreateServerRequest, user: Principal = Depends(get_current_user),
                        provisioner=Depends(get_provisioner)):
    order = ServerOrder(owner=_owner(user), **body.model_dump())
    return _created(await provisioner.create(order))

@app.put("/servers/{server_id}", tags=["servers"])
async def update_server(server_id: int, body: UpdateServerRequest, user: Principal = Depends(get_current_user),
                        resizer=Depends(get_resizer)):
    changes = ServerChanges(**body.model_dump())
    return _updated(await resizer.resize(server_id, _owner(user), changes))

@app.delete("/servers/{server_id}", tags=["servers"])
async def delete_server(server_id: int, user: Principal = Depends(get_current_user),
                        deprovisioner=Depends(get_deprovisioner)):
    return _deleted(await deprovisioner.delete(server_id, owner=_owner(user)))

@app.post("/servers/{server_id}/power", tags=["servers"])
async def power_server(server_id: int, body: PowerActionRequest, user: Principal = Depends(get_current_user),
                       inventory=Depends(get_inventory)):
    (await inventory.send_power(server_id, _owner(user), body.signal)).unwrap()
    return {"success": True, "message": f"Server {body.signal} command sent successfully"}

@app.get("/admin/servers", tags=["admin"])
async def admin_list_servers(page: int = Query(1, ge=1), per_page: int = Query(20, ge=1, le=100),
                             admin: Principal = Depends(require_admin), inventory=Depends(get_inventory)):
    listing = await inventory.list_all(page=page, per_page=per_page)
    listing["servers"] = [s.model_dump() for s in listing["servers"]]
    return {"success": True, **listing}

@app.get("/admin/servers/{server_id}", tags=["admin"])
async def admin_get_server(server_id: int, admin: Principal = Depends(require_admin),
                           inventory=Depends(get_inventory)):
    """One server with its owner and the owner's ledger"""
    view = (await inventory.get_with_owner(server_id)).unwrap()
    return {"success": True, **view.model_dump()}

@app.post("/admin/servers", status_code=201, tags=["admin"])
async def admin_create_server(body: AdminCreateServerRequest, admin: Principal = Depends(require_admin),
                              provisioner=Depends(get_provisioner)):
    fields = body.model_dump(exclude={"user_id"})
    # Owner is filled in from the target user
    order = ServerOrder(owner=0, **fields)
    logger.info(f"Admin {admin.user_id} creating server for user {body.user_id}")
    return _created(await provisioner.create_for_user(body.user_id, order))

@app.put("/admin/servers/{server_id}", tags=["admin"])
async def admin_update_server(server_id: int, body: AdminUpdateServerRequest,
                              admin: Principal = Depends(require_admin), resizer=Depends(get_resizer)):
    changes = ServerChanges(**body.model_dump(exclude={"skip_resource_check"}))
    return _updated(await resizer.resize(server_id, None, changes,
                                         skip_resource_check=body.skip_resource_check))

@app.delete("/admin/servers/{server_id}", tags=["admin"])
async def admin_delete_server(server_id: int, restore_resources: bool = Query(True),
                              admin: Principal = Depends(require_admin),
                              deprovisioner=Depends(get_deprovisioner)):
    return _deleted(await deprovisioner.delete(server_id, owner=None, restore_resources=restore_resources))

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8001)
