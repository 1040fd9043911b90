"""
FastAPI web backend for the round engine.
Thin transport adapter: identity comes from headers set by the upstream
auth proxy, round events are fanned out over per-room WebSockets.
"""
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Dict, List, Optional

from dotenv import load_dotenv
from fastapi import FastAPI, HTTPException, WebSocket, WebSocketDisconnect, Request, Header
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from admin_recovery_tools import RecoveryTools
from database import Database, Bettor
from notifications import BroadcastNotifier, FanoutNotifier, LoggingNotifier
from room_config import (
    ROUNDS_DB_PATH,
    ROUND_COOLDOWN_SECONDS,
    STORE_MAX_RETRIES,
    STORE_RETRY_BASE_DELAY,
    STORE_RETRY_MAX_DELAY,
    SEED_ENCRYPTION_KEY,
    CORS_ORIGINS,
    RoomConfigProvider,
)
from rounds import (
    Ledger,
    RoundStore,
    RoomRegistry,
    AsyncioScheduler,
    RoundScheduler,
    verify_round,
    BetRejected,
    RoomNotFound,
    RoundNotFound,
    AccountNotFound,
    InvariantViolation,
    StoreUnavailable,
)
from security.audit import AuditLogger
from utils.formatting import utcnow
from utils.validation import sanitize_display_name

# Load environment
load_dotenv()

logger = logging.getLogger(__name__)


# ===== WEBSOCKETS =====

class ConnectionManager:
    """Manage WebSocket connections per room."""

    def __init__(self):
        self.active_connections: Dict[str, List[WebSocket]] = {}

    async def connect(self, room_id: str, websocket: WebSocket):
        await websocket.accept()
        self.active_connections.setdefault(room_id, []).append(websocket)

    def disconnect(self, room_id: str, websocket: WebSocket):
        connections = self.active_connections.get(room_id, [])
        if websocket in connections:
            connections.remove(websocket)

    async def broadcast(self, room_id: str, message: dict):
        for connection in list(self.active_connections.get(room_id, [])):
            try:
                await connection.send_json(message)
            except Exception as e:
                logger.debug(f"Dropping WebSocket in {room_id}: {e}")
                self.disconnect(room_id, connection)


# ===== SERVICES =====

@dataclass
class Services:
    """Everything the endpoints need, built once per app."""
    db: Database
    ledger: Ledger
    store: RoundStore
    audit: AuditLogger
    registry: RoomRegistry
    recovery: RecoveryTools
    manager: ConnectionManager
    config_provider: RoomConfigProvider


def build_services(
    db_path: str = ROUNDS_DB_PATH,
    config_provider: Optional[RoomConfigProvider] = None,
    scheduler: Optional[RoundScheduler] = None,
    clock=utcnow,
    cooldown_seconds: float = ROUND_COOLDOWN_SECONDS,
) -> Services:
    """Wire the engine: store, ledger, audit, notifier and one engine per room."""
    db = Database(db_path)
    ledger = Ledger(db)
    store = RoundStore(db, SEED_ENCRYPTION_KEY)
    audit = AuditLogger(db_path)
    manager = ConnectionManager()
    notifier = FanoutNotifier([LoggingNotifier(), BroadcastNotifier(manager)])
    config_provider = config_provider or RoomConfigProvider()

    registry = RoomRegistry.build(
        config_provider,
        db,
        ledger,
        store,
        scheduler or AsyncioScheduler(clock),
        notifier,
        audit=audit,
        clock=clock,
        cooldown_seconds=cooldown_seconds,
        retry_attempts=STORE_MAX_RETRIES,
        retry_base_delay=STORE_RETRY_BASE_DELAY,
        retry_max_delay=STORE_RETRY_MAX_DELAY,
    )

    return Services(
        db=db,
        ledger=ledger,
        store=store,
        audit=audit,
        registry=registry,
        recovery=RecoveryTools(db, ledger, store, audit),
        manager=manager,
        config_provider=config_provider,
    )


# ===== REQUEST MODELS =====

class PlaceBetRequest(BaseModel):
    amount: int
    field_number: Optional[int] = None


class ClientSeedRequest(BaseModel):
    client_seed: str


def _parse_suspension(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid X-Gaming-Suspended-Until header")
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def get_bettor(
    bettor_id: Optional[str],
    display_name: Optional[str],
    avatar_ref: Optional[str],
    suspended_until: Optional[str],
) -> Bettor:
    """Build the verified bettor identity from the auth proxy headers."""
    if not bettor_id:
        raise HTTPException(status_code=401, detail="Not authenticated.")

    return Bettor(
        bettor_id=bettor_id,
        display_name=sanitize_display_name(display_name or "") or bettor_id,
        avatar_ref=avatar_ref,
        gaming_suspended_until=_parse_suspension(suspended_until),
    )


# ===== APP =====

def create_app(services: Optional[Services] = None) -> FastAPI:
    """Create the FastAPI app. Services are built on startup unless given."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if app.state.services is None:
            app.state.services = build_services()
        await app.state.services.registry.start_all()
        logger.info("Round engine started")
        try:
            yield
        finally:
            await app.state.services.registry.stop_all()
            logger.info("Round engine stopped")

    app = FastAPI(title="Wagering Round Engine API", version="1.0.0", lifespan=lifespan)
    app.state.services = services

    app.add_middleware(
        CORSMiddleware,
        allow_origins=CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(BetRejected)
    async def bet_rejected_handler(request: Request, exc: BetRejected):
        return JSONResponse(status_code=400, content={"detail": str(exc), "error": type(exc).__name__})

    @app.exception_handler(RoomNotFound)
    @app.exception_handler(RoundNotFound)
    @app.exception_handler(AccountNotFound)
    async def not_found_handler(request: Request, exc: Exception):
        return JSONResponse(status_code=404, content={"detail": str(exc), "error": type(exc).__name__})

    @app.exception_handler(StoreUnavailable)
    async def store_unavailable_handler(request: Request, exc: StoreUnavailable):
        logger.error(f"Store unavailable: {exc}")
        return JSONResponse(
            status_code=503,
            content={"detail": "Service temporarily unavailable. Please try again later."},
        )

    @app.exception_handler(InvariantViolation)
    async def invariant_handler(request: Request, exc: InvariantViolation):
        return JSONResponse(status_code=500, content={"detail": "Round failed and was halted for review."})

    def svc(request: Request) -> Services:
        return request.app.state.services

    # ===== API ENDPOINTS =====

    @app.get("/health")
    async def health_check():
        """Health check endpoint."""
        return {"status": "healthy", "timestamp": utcnow().isoformat()}

    # === ROOM ENDPOINTS ===

    @app.get("/api/rooms")
    async def list_rooms(request: Request):
        """List rooms with their config and current round."""
        services = svc(request)
        rooms = []
        for engine in services.registry.engines():
            config = services.config_provider.get(engine.room_id)
            rooms.append({
                "room_id": engine.room_id,
                "config": config.public_dict() if config else None,
                "round": engine.snapshot(),
            })
        return rooms

    @app.get("/api/rooms/{room_id}/round")
    async def get_current_round(room_id: str, request: Request):
        """Current round of a room. The server seed stays hidden until it is over."""
        engine = svc(request).registry.get(room_id)
        snapshot = engine.snapshot()
        if snapshot is None:
            raise HTTPException(status_code=404, detail="No round in progress")
        return snapshot

    @app.post("/api/rooms/{room_id}/bets")
    async def place_bet(
        room_id: str,
        body: PlaceBetRequest,
        request: Request,
        x_bettor_id: Optional[str] = Header(None),
        x_display_name: Optional[str] = Header(None),
        x_avatar_ref: Optional[str] = Header(None),
        x_gaming_suspended_until: Optional[str] = Header(None),
    ):
        """Place a bet in the room's current round."""
        services = svc(request)
        engine = services.registry.get(room_id)
        bettor = get_bettor(x_bettor_id, x_display_name, x_avatar_ref, x_gaming_suspended_until)

        stake = await engine.place_bet(bettor, body.amount, body.field_number)

        return {
            "stake": stake.to_dict(),
            "balance": services.ledger.get_balance(bettor.bettor_id),
            "round": engine.snapshot(),
        }

    @app.post("/api/rooms/{room_id}/client-seed")
    async def update_client_seed(
        room_id: str,
        body: ClientSeedRequest,
        request: Request,
        x_bettor_id: Optional[str] = Header(None),
    ):
        """Change the client seed of the current round while betting is open."""
        if not x_bettor_id:
            raise HTTPException(status_code=401, detail="Not authenticated.")

        engine = svc(request).registry.get(room_id)
        round_ = await engine.update_client_seed(body.client_seed, bettor_id=x_bettor_id)
        return {"round_id": round_.round_id, "client_seed": round_.client_seed}

    # === ROUND ENDPOINTS ===

    @app.get("/api/rounds/{round_id}/audit")
    async def get_round_audit(round_id: str, request: Request):
        """Immutable audit record of a finished round."""
        record = svc(request).store.get_audit(round_id)
        if not record:
            raise RoundNotFound(round_id)
        return record.to_dict()

    @app.get("/api/rounds/{round_id}/verify")
    async def verify_round_endpoint(round_id: str, request: Request):
        """Verify round fairness from its revealed seed."""
        record = svc(request).store.get_audit(round_id)
        if not record:
            raise RoundNotFound(round_id)

        is_fair = verify_round(record)

        return {
            "round_id": round_id,
            "hashed_server_seed": record.hashed_server_seed,
            "server_seed": record.server_seed,
            "client_seed": record.client_seed,
            "nonce": record.nonce,
            "outcome_space_size": record.outcome_space_size,
            "outcome": record.outcome,
            "winning_field": record.winning_field,
            "is_fair": is_fair,
            "message": "Round result is provably fair!" if is_fair else "Round result verification failed!",
        }

    @app.get("/api/rounds/{round_id}/events")
    async def get_round_events(round_id: str, request: Request):
        """Event log of a round, oldest first."""
        services = svc(request)
        round_ = services.store.load(round_id)
        if not round_:
            raise RoundNotFound(round_id)
        return {"round_id": round_id, "events": services.store.events(round_id)}

    # === ACCOUNT ENDPOINTS ===

    @app.get("/api/accounts/{user_id}")
    async def get_account(user_id: str, request: Request, limit: int = 20):
        """Balance and recent ledger entries."""
        services = svc(request)
        account = services.db.get_account(user_id)
        if not account:
            raise AccountNotFound(user_id)

        transactions = services.db.get_user_transactions(user_id, limit=min(limit, 100))
        return {
            "user_id": account.user_id,
            "display_name": account.display_name,
            "balance": account.balance,
            "transactions": [
                {
                    "tx_id": t.tx_id,
                    "kind": t.kind.value,
                    "amount": t.amount,
                    "round_id": t.round_id,
                    "status": t.status.value,
                    "description": t.description,
                    "timestamp": t.timestamp.isoformat(),
                }
                for t in transactions
            ],
        }

    # === WEBSOCKET ===

    @app.websocket("/ws/{room_id}")
    async def websocket_endpoint(websocket: WebSocket, room_id: str):
        """WebSocket for live round updates of one room."""
        services = websocket.app.state.services
        try:
            engine = services.registry.get(room_id)
        except RoomNotFound:
            await websocket.close(code=4404)
            return

        await services.manager.connect(room_id, websocket)
        try:
            await websocket.send_json({"event": "round_state", "room_id": room_id, "data": engine.snapshot()})
            while True:
                # Keep connection alive
                await websocket.receive_text()
        except WebSocketDisconnect:
            services.manager.disconnect(room_id, websocket)

    return app


app = create_app()


# ===== MAIN =====

if __name__ == "__main__":
    import uvicorn

    logging.basicConfig(level=logging.INFO)

    logger.info("="*50)
    logger.info("Wagering Round Engine API Starting...")
    logger.info("="*50)

    uvicorn.run(app, host="0.0.0.0", port=8000)
