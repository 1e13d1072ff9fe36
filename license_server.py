# license_server.py
from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Query, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel, ConfigDict, Field

from device_store import (
    REASON_MISSING,
    AuthorizationStore,
    CheckResult,
    InvalidDeviceId,
    Snapshot,
    now_iso,
)
from settings import Settings, settings

log = logging.getLogger("license-server")

security = HTTPBearer(auto_error=False)
router = APIRouter()


class DeviceRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    device_id: str = Field(default="", alias="deviceId")


def get_store(request: Request) -> AuthorizationStore:
    return request.app.state.store


def authenticate(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    store: AuthorizationStore = Depends(get_store),
):
    if credentials is None or not store.verify_admin_token(credentials.credentials):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Unauthorized",
            headers={"WWW-Authenticate": "Bearer"},
        )


@router.get("/health")
def health(store: AuthorizationStore = Depends(get_store)):
    return {"ok": True, "timestamp": now_iso(), "persisted": store.persisted}


@router.get("/check", response_model=CheckResult)
def check(
    device_id: str = Query(default="", alias="deviceId"),
    version: str = Query(default="", alias="v"),
    store: AuthorizationStore = Depends(get_store),
):
    result = store.check(device_id, version=version.strip())
    if result.reason == REASON_MISSING:
        return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content=result.model_dump(by_alias=True))
    return result


@router.get("/list", response_model=Snapshot, dependencies=[Depends(authenticate)])
def list_devices(store: AuthorizationStore = Depends(get_store)):
    return store.list()


@router.post("/allow", dependencies=[Depends(authenticate)])
def allow_device(data: DeviceRequest, store: AuthorizationStore = Depends(get_store)):
    return {"ok": True, "allow": store.allow(data.device_id)}


@router.post("/block", dependencies=[Depends(authenticate)])
def block_device(data: DeviceRequest, store: AuthorizationStore = Depends(get_store)):
    return {"ok": True, "block": store.block(data.device_id)}


@router.delete("/allow", dependencies=[Depends(authenticate)])
def unallow_device(
    device_id: str = Query(default="", alias="deviceId"),
    store: AuthorizationStore = Depends(get_store),
):
    return {"ok": True, "allow": store.unallow(device_id)}


@router.delete("/block", dependencies=[Depends(authenticate)])
def unblock_device(
    device_id: str = Query(default="", alias="deviceId"),
    store: AuthorizationStore = Depends(get_store),
):
    return {"ok": True, "block": store.unblock(device_id)}


@router.delete("/pending", dependencies=[Depends(authenticate)])
def clear_pending(store: AuthorizationStore = Depends(get_store)):
    return {"ok": True, "pending": store.clear_pending()}


async def invalid_device_id(request: Request, exc: InvalidDeviceId):
    return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content={"detail": str(exc)})


async def log_requests(request: Request, call_next):
    log.info("%s %s", request.method, request.url.path)
    return await call_next(request)


def create_app(store: Optional[AuthorizationStore] = None, config: Optional[Settings] = None) -> FastAPI:
    config = config or settings
    if store is None:
        store = AuthorizationStore.open(
            config.SERVER_FILE,
            admin_token=config.ADMIN_TOKEN,
            interval_sec=config.CHECK_INTERVAL_SEC,
        )

    app = FastAPI(title="Device License Server")
    app.state.store = store

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization"],
    )
    app.middleware("http")(log_requests)
    app.add_exception_handler(InvalidDeviceId, invalid_device_id)
    app.include_router(router)
    return app
