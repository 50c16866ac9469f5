"""
FastAPI REST API Module

Exposes the vault, the accrual ledger and the rate controller over HTTP.
Callers authenticate with an HS256 JWT bearer token; the `sub` claim is the
identity every operation runs as. Amounts travel as decimal strings of base
units so values beyond 2**53 survive JSON clients.
"""

from datetime import datetime, timezone, timedelta
from typing import Dict, List, Optional, Any
from fastapi import FastAPI, HTTPException, Depends, status
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from pydantic import BaseModel, Field
import uvicorn
import jwt

from .accrual import MAX_UINT256
from .audit import AuditTrail
from .clock import SystemClock
from .config import VaultConfig, get_config
from .errors import (
    ArithmeticOverflow, ClockRegression, InvalidAmount, PayoutFailed,
    RateIncreaseRejected, Unauthorized
)
from .events import EventDispatcher
from .ledger import AccrualLedger, Amount, AmountRequest
from .logging_config import setup_logging, get_logger, log_action
from .rates import RateController
from .rbac import AccessControl, Capability
from .settlement import InMemoryValueTransfer, ValueTransfer
from .storage import create_storage
from .vault import Vault


logger = get_logger("accrual_vault.api")

VAULT_ID = "vault"

# JWT Security
security = HTTPBearer(auto_error=False)


# Pydantic models for API requests/responses
class RateUpdateRequest(BaseModel):
    rate: str = Field(..., description="New per-second rate scaled by 1e18, as a decimal string")


class DepositRequest(BaseModel):
    value: str = Field(..., description="Value deposited, in base units")


class RedeemRequest(BaseModel):
    amount: str = Field(..., description="Base units to redeem, or 'all'")


class RewardsRequest(BaseModel):
    value: str = Field(..., description="Value added to the reward reserve, in base units")


class TransferRequest(BaseModel):
    recipient: str
    amount: str = Field(..., description="Base units to move, or 'all'")


class ApproveRequest(BaseModel):
    spender: str
    amount: str = Field(..., description="Allowance in base units")


class TransferFromRequest(BaseModel):
    owner: str
    recipient: str
    amount: str = Field(..., description="Base units to move, or 'all'")


class CapabilityRequest(BaseModel):
    holder: str
    capability: str = Field(..., description="Capability name (mint_and_burn, rate_admin)")


# Vault System Context
class VaultSystem:
    """Accrual vault with all components wired together"""

    def __init__(self, settings: Optional[VaultConfig] = None, clock=None,
                 value_transfer: Optional[ValueTransfer] = None):
        self.config = settings or get_config()

        self.storage = create_storage(self.config)
        self.audit_trail = AuditTrail(self.storage)
        self.event_dispatcher = EventDispatcher()
        self.access_control = AccessControl(self.storage, self.config.owner_id, self.audit_trail)
        self.rate_controller = RateController(
            self.storage, self.access_control, self.audit_trail,
            self.event_dispatcher, self.config.initial_rate
        )
        self.ledger = AccrualLedger(
            self.storage, self.access_control, self.audit_trail, self.event_dispatcher,
            clock or SystemClock(),
            name=self.config.token_name,
            symbol=self.config.token_symbol,
            decimals=self.config.token_decimals,
            address=self.config.ledger_address
        )
        self.value_transfer = value_transfer or InMemoryValueTransfer()
        self.vault = Vault(VAULT_ID, self.ledger, self.rate_controller,
                           self.value_transfer, self.audit_trail)

        # Only the vault mints and burns
        if not self.access_control.has_capability(VAULT_ID, Capability.MINT_AND_BURN):
            self.access_control.grant(self.config.owner_id, VAULT_ID, Capability.MINT_AND_BURN)


# Global vault system instance - will be initialized in lifespan
vault_system: Optional[VaultSystem] = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the vault system on startup unless one was installed already"""
    global vault_system

    settings = get_config()
    setup_logging(settings.log_level, log_format=settings.log_format, log_file=settings.log_file)
    if vault_system is None:
        vault_system = VaultSystem(settings)
        log_action(logger, "info", "Vault system initialized", action="startup",
                   extra={"storage_backend": settings.storage_backend,
                          "ledger_address": settings.ledger_address})

    yield

    if vault_system is not None:
        vault_system.storage.close()


app = FastAPI(
    title="Accrual Vault API",
    description="Deposit vault with a linearly accruing receipt token",
    version="1.0.0",
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Configure appropriately for production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Dependency to get vault system
def get_vault_system() -> VaultSystem:
    if vault_system is None:
        raise HTTPException(status_code=503, detail="Vault system not initialized")
    return vault_system


# Authentication Dependencies
def create_access_token(subject: str, settings: Optional[VaultConfig] = None) -> str:
    """Issue a bearer token whose `sub` claim is the given identity"""
    settings = settings or get_config()
    now = datetime.now(timezone.utc)
    payload = {
        "sub": subject,
        "iat": now,
        "exp": now + timedelta(hours=settings.jwt_expiry_hours)
    }
    return jwt.encode(payload, settings.jwt_secret, algorithm=settings.jwt_algorithm)


def get_current_user(credentials: HTTPAuthorizationCredentials = Depends(security),
                     system: VaultSystem = Depends(get_vault_system)) -> str:
    """Dependency that validates the JWT and returns the caller identity"""
    if not credentials:
        raise HTTPException(status_code=401, detail="Not authenticated")
    try:
        payload = jwt.decode(credentials.credentials, system.config.jwt_secret,
                             algorithms=[system.config.jwt_algorithm])
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=401, detail="Token expired")
    except jwt.InvalidTokenError:
        raise HTTPException(status_code=401, detail="Invalid token")

    user_id = payload.get("sub")
    if not user_id:
        raise HTTPException(status_code=401, detail="Invalid token")
    return user_id


def _parse_amount(value: str, allow_all: bool = False) -> AmountRequest:
    if allow_all and value.strip().lower() == Amount.ALL.value:
        return Amount.ALL
    try:
        amount = int(value)
    except ValueError:
        raise HTTPException(status_code=422, detail=f"Invalid amount: {value!r}")
    if amount < 0 or amount > MAX_UINT256:
        raise HTTPException(status_code=422, detail=f"Amount out of range: {value}")
    return amount


def _parse_capability(value: str) -> Capability:
    try:
        return Capability(value)
    except ValueError:
        raise HTTPException(status_code=422, detail=f"Unknown capability: {value}")


def _http_error(error: ValueError) -> HTTPException:
    """Translate a domain failure into the matching HTTP status"""
    if isinstance(error, Unauthorized):
        code = status.HTTP_403_FORBIDDEN
    elif isinstance(error, (RateIncreaseRejected, ClockRegression)):
        code = status.HTTP_409_CONFLICT
    elif isinstance(error, (InvalidAmount, ArithmeticOverflow)):
        code = status.HTTP_422_UNPROCESSABLE_ENTITY
    elif isinstance(error, PayoutFailed):
        code = status.HTTP_502_BAD_GATEWAY
    else:
        code = status.HTTP_400_BAD_REQUEST
    return HTTPException(status_code=code, detail=str(error))


def _account_view(system: VaultSystem, account_id: str) -> Dict[str, Any]:
    snapshot = system.ledger.get_account(account_id)
    return {
        "account": snapshot.account,
        "balance": str(snapshot.balance),
        "principal": str(snapshot.principal),
        "pending_interest": str(snapshot.pending_interest),
        "personal_rate": str(snapshot.personal_rate),
        "last_sync_time": snapshot.last_sync_time
    }


# Health check endpoint
@app.get("/health")
async def health_check():
    """Health check endpoint"""
    return {"status": "healthy", "timestamp": datetime.now(timezone.utc).isoformat()}


# Token metadata
@app.get("/token")
async def get_token_info(system: VaultSystem = Depends(get_vault_system)):
    ledger = system.ledger
    return {
        "name": ledger.name,
        "symbol": ledger.symbol,
        "decimals": ledger.decimals,
        "address": system.vault.get_ledger_address(),
        "total_supply": str(ledger.total_supply())
    }


@app.get("/supply")
async def get_supply(system: VaultSystem = Depends(get_vault_system)):
    """Total materialized supply and vault custody"""
    totals = system.vault.get_totals()
    return {
        "total_supply": str(system.ledger.total_supply()),
        "reserve": str(system.vault.reserve()),
        "deposited": str(totals['deposited']),
        "redeemed": str(totals['redeemed']),
        "rewards": str(totals['rewards'])
    }


# Rate Endpoints
@app.get("/rate")
async def get_rate(system: VaultSystem = Depends(get_vault_system)):
    return {"rate": str(system.rate_controller.get_rate())}


@app.put("/rate")
async def update_rate(
    request: RateUpdateRequest,
    current_user: str = Depends(get_current_user),
    system: VaultSystem = Depends(get_vault_system)
):
    """Lower the global rate applied to future deposits"""
    new_rate = _parse_amount(request.rate)
    try:
        system.rate_controller.set_rate(new_rate, current_user)
    except ValueError as e:
        raise _http_error(e)
    return {"rate": str(system.rate_controller.get_rate())}


@app.get("/rate/history")
async def get_rate_history(system: VaultSystem = Depends(get_vault_system)):
    history = system.rate_controller.get_rate_history()
    return {
        "history": [dict(entry, rate=str(entry['rate'])) for entry in history]
    }


# Vault Endpoints
@app.post("/vault/deposit", status_code=status.HTTP_201_CREATED)
async def deposit(
    request: DepositRequest,
    current_user: str = Depends(get_current_user),
    system: VaultSystem = Depends(get_vault_system)
):
    value = _parse_amount(request.value)
    try:
        system.vault.deposit(current_user, value)
    except ValueError as e:
        raise _http_error(e)
    return _account_view(system, current_user)


@app.post("/vault/redeem")
async def redeem(
    request: RedeemRequest,
    current_user: str = Depends(get_current_user),
    system: VaultSystem = Depends(get_vault_system)
):
    amount = _parse_amount(request.amount, allow_all=True)
    try:
        redeemed = system.vault.redeem(current_user, amount)
    except ValueError as e:
        raise _http_error(e)
    return {"redeemed": str(redeemed), "account": _account_view(system, current_user)}


@app.post("/vault/rewards")
async def fund_rewards(
    request: RewardsRequest,
    current_user: str = Depends(get_current_user),
    system: VaultSystem = Depends(get_vault_system)
):
    value = _parse_amount(request.value)
    try:
        system.vault.fund_rewards(current_user, value)
    except ValueError as e:
        raise _http_error(e)
    return {"reserve": str(system.vault.reserve())}


# Ledger Endpoints
@app.post("/transfers")
async def transfer(
    request: TransferRequest,
    current_user: str = Depends(get_current_user),
    system: VaultSystem = Depends(get_vault_system)
):
    amount = _parse_amount(request.amount, allow_all=True)
    try:
        moved = system.ledger.transfer(current_user, request.recipient, amount)
    except ValueError as e:
        raise _http_error(e)
    return {"from": current_user, "to": request.recipient, "amount": str(moved)}


@app.post("/approvals")
async def approve(
    request: ApproveRequest,
    current_user: str = Depends(get_current_user),
    system: VaultSystem = Depends(get_vault_system)
):
    amount = _parse_amount(request.amount)
    try:
        system.ledger.approve(current_user, request.spender, amount)
    except ValueError as e:
        raise _http_error(e)
    return {
        "owner": current_user,
        "spender": request.spender,
        "allowance": str(system.ledger.allowance(current_user, request.spender))
    }


@app.post("/transfers/delegated")
async def transfer_from(
    request: TransferFromRequest,
    current_user: str = Depends(get_current_user),
    system: VaultSystem = Depends(get_vault_system)
):
    amount = _parse_amount(request.amount, allow_all=True)
    try:
        moved = system.ledger.transfer_from(current_user, request.owner, request.recipient, amount)
    except ValueError as e:
        raise _http_error(e)
    return {"from": request.owner, "to": request.recipient, "amount": str(moved)}


@app.get("/accounts/{account_id}")
async def get_account(account_id: str, system: VaultSystem = Depends(get_vault_system)):
    return _account_view(system, account_id)


@app.get("/accounts/{owner}/allowances/{spender}")
async def get_allowance(owner: str, spender: str,
                        system: VaultSystem = Depends(get_vault_system)):
    return {"owner": owner, "spender": spender,
            "allowance": str(system.ledger.allowance(owner, spender))}


# Capability Endpoints
@app.get("/capabilities/{holder}")
async def get_capabilities(holder: str, system: VaultSystem = Depends(get_vault_system)):
    capabilities: List[str] = sorted(c.value for c in system.access_control.capabilities_of(holder))
    return {"holder": holder, "capabilities": capabilities}


@app.post("/capabilities", status_code=status.HTTP_201_CREATED)
async def grant_capability(
    request: CapabilityRequest,
    current_user: str = Depends(get_current_user),
    system: VaultSystem = Depends(get_vault_system)
):
    capability = _parse_capability(request.capability)
    try:
        system.access_control.grant(current_user, request.holder, capability)
    except ValueError as e:
        raise _http_error(e)
    return {"holder": request.holder, "capability": capability.value, "granted": True}


@app.delete("/capabilities/{holder}/{capability}")
async def revoke_capability(
    holder: str,
    capability: str,
    current_user: str = Depends(get_current_user),
    system: VaultSystem = Depends(get_vault_system)
):
    parsed = _parse_capability(capability)
    try:
        system.access_control.revoke(current_user, holder, parsed)
    except ValueError as e:
        raise _http_error(e)
    return {"holder": holder, "capability": parsed.value, "granted": False}


# Audit Endpoints
@app.get("/audit/verify")
async def verify_audit_integrity(system: VaultSystem = Depends(get_vault_system)):
    """Verify the audit hash chain"""
    return system.audit_trail.verify_integrity()


@app.get("/audit/{entity_type}/{entity_id}")
async def get_audit_events(entity_type: str, entity_id: str,
                           system: VaultSystem = Depends(get_vault_system)):
    events = system.audit_trail.get_events_for_entity(entity_type, entity_id)
    return {
        "events": [
            {
                "sequence": e.sequence,
                "event_type": e.event_type.value,
                "caller": e.caller,
                "metadata": e.metadata,
                "created_at": e.created_at.isoformat(),
                "hash": e.current_hash
            }
            for e in events
        ]
    }


def run_server(host: Optional[str] = None, port: Optional[int] = None) -> None:
    """Run the API with uvicorn"""
    settings = get_config()
    uvicorn.run(app, host=host or settings.api_host, port=port or settings.api_port)
