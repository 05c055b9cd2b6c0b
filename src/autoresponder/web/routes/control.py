"""Control API routes: credential handshake and listener lifecycle.

Every endpoint answers HTTP 200 with a ``success`` flag and a human-readable
``message``; validation problems are reported the same way.
"""

from typing import Any

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, ConfigDict, Field

from autoresponder.control import HandshakeOrchestrator, ProcessLifecycleManager
from autoresponder.credentials import CredentialStore

router = APIRouter()


# ── Request Models ─────────────────────────────────────

class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, coerce_numbers_to_str=True)


class SendCodeRequest(_CamelModel):
    api_id: str = Field("", alias="apiId")
    api_hash: str = Field("", alias="apiHash")
    phone_number: str = Field("", alias="phoneNumber")


class AuthRequest(_CamelModel):
    api_id: str = Field("", alias="apiId")
    api_hash: str = Field("", alias="apiHash")
    phone_number: str = Field("", alias="phoneNumber")
    phone_code: str = Field("", alias="phoneCode")
    password: str | None = None


class StartRequest(_CamelModel):
    api_id: str = Field("", alias="apiId")
    api_hash: str = Field("", alias="apiHash")
    test_mode: bool = Field(False, alias="testMode")


# ── Dependencies ───────────────────────────────────────

def get_processes(request: Request) -> ProcessLifecycleManager:
    return request.app.state.processes


def get_handshake(request: Request) -> HandshakeOrchestrator:
    return request.app.state.handshake


def get_store(request: Request) -> CredentialStore:
    return request.app.state.store


def _missing(message: str) -> dict[str, Any]:
    return {"success": False, "message": message}


# ── Handshake ──────────────────────────────────────────

@router.post("/send-code")
async def send_code(
    req: SendCodeRequest,
    handshake: HandshakeOrchestrator = Depends(get_handshake),
):
    """Request a login code for the phone number."""
    if not (req.api_id and req.api_hash and req.phone_number):
        return _missing("API ID, API Hash and phone number are required")

    outcome = await handshake.send_code(req.api_id, req.api_hash, req.phone_number)
    return outcome.to_dict()


@router.post("/auth")
async def auth(
    req: AuthRequest,
    handshake: HandshakeOrchestrator = Depends(get_handshake),
):
    """Submit the login code (and 2FA password) for the pending handshake."""
    if not (req.api_id and req.api_hash and req.phone_number and req.phone_code):
        return _missing("API ID, API Hash, phone number and SMS code are required")

    outcome = await handshake.authenticate(req.phone_code, req.password or None)
    return outcome.to_dict()


# ── Listener Lifecycle ─────────────────────────────────

@router.post("/start")
async def start(
    req: StartRequest,
    processes: ProcessLifecycleManager = Depends(get_processes),
):
    """Start the userbot listener."""
    if not (req.api_id and req.api_hash):
        return _missing("API ID and API Hash are required")

    result = await processes.start_listener(req.api_id, req.api_hash, test_mode=req.test_mode)
    return result.to_dict()


@router.post("/stop")
async def stop(processes: ProcessLifecycleManager = Depends(get_processes)):
    """Stop the userbot listener."""
    result = await processes.stop_listener()
    return result.to_dict()


@router.get("/status")
async def status(processes: ProcessLifecycleManager = Depends(get_processes)):
    return {"status": "running" if processes.is_running() else "stopped"}


@router.get("/config")
async def config(store: CredentialStore = Depends(get_store)):
    """Current credential record (session token redacted)."""
    try:
        record = store.load()
    except Exception:
        return _missing("Configuration load error")
    return {"success": True, "config": record.to_public_dict()}
