"""Escrow Service FastAPI application."""
import logging
from contextlib import asynccontextmanager
from dataclasses import asdict
from datetime import datetime
from typing import List, Literal, Optional
from uuid import UUID

from fastapi import Depends, FastAPI, Header, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field, StrictInt
from sqlalchemy.ext.asyncio import AsyncSession

from shared.config import Settings
from shared.database import Database
from shared.message_broker import MessageBroker
from shared.outbox import OutboxPublisher

from .authorization import Actor, Capability, require_staff
from .errors import EscrowError, NotFoundError
from .models import MAX_AMOUNT
from .store import ProviderDirectory
from .state_machine import EscrowEngine
from .sweeper import ExpirySweeper

# Settings
settings = Settings(service_name="escrow-service", service_port=8010)

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

# Database, message broker and background tasks
database = Database(settings.database_url)
message_broker = MessageBroker(settings.rabbitmq_url)
outbox_publisher: Optional[OutboxPublisher] = None
expiry_sweeper: Optional[ExpirySweeper] = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifecycle manager for the application."""
    global outbox_publisher, expiry_sweeper

    # Startup
    logger.info("Starting Escrow Service...")

    await database.create_tables()

    if settings.outbox_enabled:
        await message_broker.connect()
        outbox_publisher = OutboxPublisher(
            session_factory=database.session_factory,
            message_broker=message_broker,
        )
        await outbox_publisher.start()

    expiry_sweeper = ExpirySweeper(database.session_factory, settings)
    await expiry_sweeper.start()

    logger.info("Escrow Service started successfully")

    yield

    # Shutdown
    logger.info("Shutting down Escrow Service...")
    if expiry_sweeper:
        await expiry_sweeper.stop()
    if outbox_publisher:
        await outbox_publisher.stop()
    await message_broker.disconnect()
    await database.close()


app = FastAPI(title="Escrow Service", lifespan=lifespan)


@app.exception_handler(EscrowError)
async def escrow_error_handler(request: Request, exc: EscrowError):
    """Render typed escrow errors with the authoritative transaction status."""
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "error": exc.kind,
            "detail": str(exc),
            "current_status": exc.current_status,
        },
    )


# Dependencies
async def get_session() -> AsyncSession:
    """Get database session."""
    async with database.session_factory() as session:
        yield session


def get_session_factory():
    return database.session_factory


def get_settings() -> Settings:
    return settings


def get_actor(
    x_user_id: Optional[str] = Header(None),
    x_user_roles: Optional[str] = Header(None),
) -> Actor:
    """Resolve the caller once per request from the identity headers."""
    return Actor.from_headers(x_user_id, x_user_roles)


def get_engine(
    session: AsyncSession = Depends(get_session),
    settings: Settings = Depends(get_settings),
) -> EscrowEngine:
    return EscrowEngine(session, settings)


# Request/Response models
class CreateTransactionRequest(BaseModel):
    """Request to book a provider."""
    provider_id: str
    amount: StrictInt = Field(..., description="Amount in minor units (centavos)")
    payment_method: str
    scheduled_at: Optional[datetime] = None
    currency: Optional[str] = Field(None, min_length=3, max_length=3)


class RefundRequest(BaseModel):
    reason: str


class DisputeRequest(BaseModel):
    reason: Optional[str] = None


class ResolveDisputeRequest(BaseModel):
    outcome: Literal["confirmed", "refunded"]
    reason: Optional[str] = None


class ProcessRefundRequest(BaseModel):
    outcome: Literal["processed", "rejected"]


class ProviderProfileRequest(BaseModel):
    """Admin update of a provider listing."""
    display_name: Optional[str] = None
    price_per_hour: Optional[StrictInt] = Field(None, ge=0, le=MAX_AMOUNT)
    is_approved: bool = True
    is_visible: bool = True


class TransactionResponse(BaseModel):
    """Transaction response."""
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    buyer_id: str
    provider_id: str
    amount: int
    currency: str
    payment_method: str
    status: str
    version: int
    scheduled_at: Optional[datetime]
    escrow_expires_at: Optional[datetime]
    confirmed_at: Optional[datetime]
    refunded_at: Optional[datetime]
    completed_at: Optional[datetime]
    created_at: datetime
    updated_at: datetime


class RefundResponse(BaseModel):
    """Refund response."""
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    transaction_id: UUID
    reason: str
    status: str
    created_at: datetime
    processed_at: Optional[datetime]


class RefundActionResponse(BaseModel):
    transaction: TransactionResponse
    refund: RefundResponse


class TransitionResponse(BaseModel):
    """One entry of a transaction's status history."""
    model_config = ConfigDict(from_attributes=True)

    version: int
    from_status: Optional[str]
    to_status: str
    actor_id: Optional[str]
    reason: Optional[str]
    created_at: datetime


class ProviderResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    user_id: str
    display_name: Optional[str]
    price_per_hour: Optional[int]
    is_approved: bool
    is_visible: bool
    approved_by: Optional[str]
    approved_at: Optional[datetime]


class VisibilityRequest(BaseModel):
    is_visible: bool


class ProviderSummaryResponse(BaseModel):
    """Totals shown on a provider's dashboard."""
    provider_id: str
    in_escrow_count: int
    in_escrow_amount: int
    completed_count: int
    completed_amount: int


class SweepResponse(BaseModel):
    refunded: int
    completed: int
    skipped: int
    failed: int


def _refund_action(transaction, refund) -> RefundActionResponse:
    return RefundActionResponse(
        transaction=TransactionResponse.model_validate(transaction),
        refund=RefundResponse.model_validate(refund),
    )


# API Endpoints
@app.post("/transactions", response_model=TransactionResponse, status_code=201)
async def create_transaction(
    request: CreateTransactionRequest,
    actor: Actor = Depends(get_actor),
    engine: EscrowEngine = Depends(get_engine),
):
    """Book a provider. The caller becomes the buyer; the booking starts pending."""
    transaction = await engine.create_booking(
        actor,
        provider_id=request.provider_id,
        amount=request.amount,
        payment_method=request.payment_method,
        scheduled_at=request.scheduled_at,
        currency=request.currency,
    )
    return TransactionResponse.model_validate(transaction)


@app.get("/transactions", response_model=List[TransactionResponse])
async def list_transactions(
    role: Optional[Literal["buyer", "provider"]] = None,
    status: Optional[str] = None,
    actor: Actor = Depends(get_actor),
    engine: EscrowEngine = Depends(get_engine),
):
    """List the caller's transactions; admins see all when no role is given."""
    transactions = await engine.list_transactions(actor, role=role, status=status)
    return [TransactionResponse.model_validate(t) for t in transactions]


@app.get("/transactions/{transaction_id}", response_model=TransactionResponse)
async def get_transaction(
    transaction_id: UUID,
    actor: Actor = Depends(get_actor),
    engine: EscrowEngine = Depends(get_engine),
):
    """Get a transaction the caller is a party to."""
    transaction = await engine.get_transaction(actor, transaction_id)
    return TransactionResponse.model_validate(transaction)


@app.post("/transactions/{transaction_id}/escrow", response_model=TransactionResponse)
async def hold_in_escrow(
    transaction_id: UUID,
    if_match: Optional[int] = Header(None),
    actor: Actor = Depends(get_actor),
    engine: EscrowEngine = Depends(get_engine),
):
    """Mark payment authorized and start the escrow hold."""
    transaction = await engine.authorize_payment(actor, transaction_id, expected_version=if_match)
    return TransactionResponse.model_validate(transaction)


@app.post("/transactions/{transaction_id}/confirm", response_model=TransactionResponse)
async def confirm_meeting(
    transaction_id: UUID,
    if_match: Optional[int] = Header(None),
    actor: Actor = Depends(get_actor),
    engine: EscrowEngine = Depends(get_engine),
):
    """Provider confirms the meeting before the hold expires."""
    transaction = await engine.confirm_meeting(actor, transaction_id, expected_version=if_match)
    return TransactionResponse.model_validate(transaction)


@app.post("/transactions/{transaction_id}/refund", response_model=RefundActionResponse)
async def request_refund(
    transaction_id: UUID,
    request: RefundRequest,
    if_match: Optional[int] = Header(None),
    actor: Actor = Depends(get_actor),
    engine: EscrowEngine = Depends(get_engine),
):
    """Request a refund; granted at once while the money is still in escrow."""
    transaction, refund = await engine.request_refund(
        actor, transaction_id, request.reason, expected_version=if_match
    )
    return _refund_action(transaction, refund)


@app.post("/transactions/{transaction_id}/dispute", response_model=TransactionResponse)
async def raise_dispute(
    transaction_id: UUID,
    request: DisputeRequest,
    if_match: Optional[int] = Header(None),
    actor: Actor = Depends(get_actor),
    engine: EscrowEngine = Depends(get_engine),
):
    """Raise a dispute as a party or admin."""
    transaction = await engine.raise_dispute(
        actor, transaction_id, request.reason, expected_version=if_match
    )
    return TransactionResponse.model_validate(transaction)


@app.get("/transactions/{transaction_id}/refunds", response_model=List[RefundResponse])
async def list_refunds(
    transaction_id: UUID,
    actor: Actor = Depends(get_actor),
    engine: EscrowEngine = Depends(get_engine),
):
    refunds = await engine.list_refunds(actor, transaction_id)
    return [RefundResponse.model_validate(r) for r in refunds]


@app.get("/transactions/{transaction_id}/history", response_model=List[TransitionResponse])
async def get_history(
    transaction_id: UUID,
    actor: Actor = Depends(get_actor),
    engine: EscrowEngine = Depends(get_engine),
):
    """Status transitions in the order they were applied."""
    records = await engine.history(actor, transaction_id)
    return [TransitionResponse.model_validate(r) for r in records]


@app.post("/admin/disputes/{transaction_id}/resolve", response_model=TransactionResponse)
async def resolve_dispute(
    transaction_id: UUID,
    request: ResolveDisputeRequest,
    if_match: Optional[int] = Header(None),
    actor: Actor = Depends(get_actor),
    engine: EscrowEngine = Depends(get_engine),
):
    """Admin resolution of a dispute."""
    transaction = await engine.resolve_dispute(
        actor, transaction_id, request.outcome, request.reason, expected_version=if_match
    )
    return TransactionResponse.model_validate(transaction)


@app.post("/admin/refunds/{refund_id}/process", response_model=RefundActionResponse)
async def process_refund(
    refund_id: UUID,
    request: ProcessRefundRequest,
    actor: Actor = Depends(get_actor),
    engine: EscrowEngine = Depends(get_engine),
):
    """Admin decision on a requested refund."""
    transaction, refund = await engine.process_refund(actor, refund_id, request.outcome)
    return _refund_action(transaction, refund)


@app.get("/providers", response_model=List[ProviderResponse])
async def list_providers(
    actor: Actor = Depends(get_actor),
    session: AsyncSession = Depends(get_session),
):
    """Providers that can currently be booked."""
    profiles = await ProviderDirectory(session).list_bookable()
    return [ProviderResponse.model_validate(p) for p in profiles]


@app.patch("/providers/me", response_model=ProviderResponse)
async def set_own_visibility(
    request: VisibilityRequest,
    actor: Actor = Depends(get_actor),
    session: AsyncSession = Depends(get_session),
):
    """Provider hides or shows their own listing."""
    profile = await ProviderDirectory(session).set_visibility(actor.user_id, request.is_visible)
    if profile is None:
        raise NotFoundError()
    return ProviderResponse.model_validate(profile)


@app.get("/providers/me/summary", response_model=ProviderSummaryResponse)
async def get_own_summary(
    actor: Actor = Depends(get_actor),
    engine: EscrowEngine = Depends(get_engine),
):
    """Pending escrow and released earnings for the calling provider."""
    summary = await engine.provider_summary(actor)
    return ProviderSummaryResponse(**asdict(summary))


@app.put("/admin/providers/{user_id}", response_model=ProviderResponse)
async def upsert_provider(
    user_id: str,
    request: ProviderProfileRequest,
    actor: Actor = Depends(get_actor),
    session: AsyncSession = Depends(get_session),
):
    """Create or update a provider listing (approval and visibility)."""
    require_staff(actor, Capability.MANAGE_PROVIDERS)
    profile = await ProviderDirectory(session).upsert(
        user_id,
        approved_by=actor.user_id,
        display_name=request.display_name,
        price_per_hour=request.price_per_hour,
        is_approved=request.is_approved,
        is_visible=request.is_visible,
    )
    return ProviderResponse.model_validate(profile)


@app.post("/admin/sweeps", response_model=SweepResponse)
async def run_sweep(
    actor: Actor = Depends(get_actor),
    session_factory=Depends(get_session_factory),
    settings: Settings = Depends(get_settings),
):
    """Run one expiry sweep now instead of waiting for the next cycle."""
    require_staff(actor, Capability.RUN_SWEEP)
    result = await ExpirySweeper(session_factory, settings).sweep_once()
    logger.info(f"Manual sweep by {actor.user_id}: {result}")
    return SweepResponse(**asdict(result))


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "healthy", "service": "escrow-service"}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=settings.service_port)
