"""API endpoints for the loyalty program, member accounts, referrals, and events."""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any, List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Request, status
from loguru import logger
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from benmarket_api.api.dependencies.security import require_loyalty_events_api_key
from benmarket_api.api.dependencies.session import require_admin_session, require_member_session
from benmarket_api.db.session import async_session, get_session
from benmarket_api.models.loyalty import LoyaltyAccount, LoyaltyProgram, LoyaltyReferral, LoyaltyTransaction
from benmarket_api.models.user import User
from benmarket_api.observability.loyalty import get_loyalty_store
from benmarket_api.services.loyalty import (
    InsufficientPointsError,
    LedgerConflictError,
    LoyaltyError,
    LoyaltyEvent,
    LoyaltyEventType,
    LoyaltyNotFoundError,
    LoyaltyService,
    LoyaltyValidationError,
    ProgramDefinition,
    TierDefinition,
)
from benmarket_api.workers.loyalty_events import LoyaltyEventDispatcher


router = APIRouter(prefix="/loyalty", tags=["loyalty"])


class TierBenefitsPayload(BaseModel):
    discountPercentage: float = Field(0, ge=0, le=100)
    freeShipping: bool = False
    earlyAccess: bool = False
    prioritySupport: bool = False


class LoyaltyTierResponse(BaseModel):
    name: str
    minPoints: int
    benefits: dict[str, Any]


class LoyaltyProgramResponse(BaseModel):
    id: UUID
    name: str
    description: str
    pointsPerDollar: int
    pointsForRegistration: int
    pointsForReview: int
    pointsForReferral: int
    expiryMonths: int
    isActive: bool
    tiers: List[LoyaltyTierResponse]


class LoyaltyTransactionResponse(BaseModel):
    id: UUID
    type: str
    points: int
    reason: str
    orderId: Optional[str]
    expiresAt: Optional[datetime]
    createdAt: datetime


class LoyaltyReferralResponse(BaseModel):
    referralCode: str
    status: str
    referredUserId: Optional[UUID]
    pointsAwarded: bool
    createdAt: datetime
    completedAt: Optional[datetime]


class LoyaltyAccountResponse(BaseModel):
    id: UUID
    userId: UUID
    totalPoints: int
    availablePoints: int
    lifetimeEarned: int
    lifetimeRedeemed: int
    currentTier: str
    joinedAt: datetime
    lastActivity: datetime
    transactions: List[LoyaltyTransactionResponse]
    referrals: List[LoyaltyReferralResponse]


class LoyaltyOverviewResponse(BaseModel):
    loyalty: LoyaltyAccountResponse
    program: Optional[LoyaltyProgramResponse]
    tierBenefits: dict[str, Any]


class RedeemRequest(BaseModel):
    points: int = Field(..., description="Points to redeem; must be a positive integer")
    reason: Optional[str] = Field(None, description="Why the points are redeemed")
    orderId: Optional[str] = Field(None, description="Order the redemption applies to")


class RedeemResponse(BaseModel):
    message: str
    availablePoints: int
    totalPoints: int


class ReferralCodeResponse(BaseModel):
    referralCode: str


class TopEarnerResponse(BaseModel):
    userName: str
    userEmail: str
    totalPoints: int
    availablePoints: int
    currentTier: str


class RecentTransactionResponse(BaseModel):
    id: UUID
    userName: str
    userEmail: str
    type: str
    points: int
    reason: str
    createdAt: datetime


class StatsOverviewResponse(BaseModel):
    totalUsers: int
    totalPoints: int
    activeUsers: int
    averagePoints: int


class LoyaltyStatsResponse(BaseModel):
    overview: StatsOverviewResponse
    topEarners: List[TopEarnerResponse]
    recentTransactions: List[RecentTransactionResponse]


class TierRequest(BaseModel):
    name: str = Field(..., min_length=1)
    minPoints: int = Field(..., ge=0)
    benefits: TierBenefitsPayload = Field(default_factory=TierBenefitsPayload)


class ProgramRequest(BaseModel):
    name: Optional[str] = Field(None, min_length=1)
    description: Optional[str] = None
    pointsPerDollar: Optional[int] = Field(None, ge=0)
    pointsForRegistration: Optional[int] = Field(None, ge=0)
    pointsForReview: Optional[int] = Field(None, ge=0)
    pointsForReferral: Optional[int] = Field(None, ge=0)
    expiryMonths: Optional[int] = Field(None, ge=1)
    isActive: Optional[bool] = None
    tiers: Optional[List[TierRequest]] = None


class LoyaltyEventRequest(BaseModel):
    type: LoyaltyEventType
    externalId: str = Field(..., min_length=1, description="Identity key of the member")
    orderId: Optional[str] = Field(None, description="Order identifier for purchase events")
    orderAmount: Optional[Decimal] = Field(None, ge=0, description="Order total for purchase events")
    referralCode: Optional[str] = Field(None, description="Referral code used at registration")


class LoyaltyEventAcceptedResponse(BaseModel):
    eventId: UUID
    status: str


def _http_error(exc: LoyaltyError) -> HTTPException:
    if isinstance(exc, LoyaltyNotFoundError):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))
    if isinstance(exc, LedgerConflictError):
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc))
    return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))


def _serialize_program(program: LoyaltyProgram) -> LoyaltyProgramResponse:
    return LoyaltyProgramResponse(
        id=program.id,
        name=program.name,
        description=program.description,
        pointsPerDollar=int(program.points_per_currency_unit or 0),
        pointsForRegistration=int(program.points_for_registration or 0),
        pointsForReview=int(program.points_for_review or 0),
        pointsForReferral=int(program.points_for_referral or 0),
        expiryMonths=int(program.expiry_months),
        isActive=bool(program.is_active),
        tiers=[
            LoyaltyTierResponse(name=tier.name, minPoints=int(tier.min_points or 0), benefits=dict(tier.benefits or {}))
            for tier in sorted(program.tiers, key=lambda tier: (tier.min_points, tier.name))
        ],
    )


def _serialize_transaction(entry: LoyaltyTransaction) -> LoyaltyTransactionResponse:
    return LoyaltyTransactionResponse(
        id=entry.id,
        type=entry.type.value,
        points=int(entry.points),
        reason=entry.reason,
        orderId=entry.order_id,
        expiresAt=entry.expires_at,
        createdAt=entry.created_at,
    )


def _serialize_referral(referral: LoyaltyReferral) -> LoyaltyReferralResponse:
    return LoyaltyReferralResponse(
        referralCode=referral.referral_code,
        status=referral.status.value,
        referredUserId=referral.referred_user_id,
        pointsAwarded=bool(referral.points_awarded),
        createdAt=referral.created_at,
        completedAt=referral.completed_at,
    )


def _serialize_account(
    account: LoyaltyAccount,
    transactions: List[LoyaltyTransaction],
    referrals: List[LoyaltyReferral],
) -> LoyaltyAccountResponse:
    return LoyaltyAccountResponse(
        id=account.id,
        userId=account.user_id,
        totalPoints=int(account.total_points or 0),
        availablePoints=int(account.available_points or 0),
        lifetimeEarned=int(account.lifetime_earned or 0),
        lifetimeRedeemed=int(account.lifetime_redeemed or 0),
        currentTier=account.current_tier,
        joinedAt=account.joined_at,
        lastActivity=account.last_activity,
        transactions=[_serialize_transaction(entry) for entry in transactions],
        referrals=[_serialize_referral(referral) for referral in referrals],
    )


def get_loyalty_event_dispatcher(request: Request) -> LoyaltyEventDispatcher:
    dispatcher = getattr(request.app.state, "loyalty_event_dispatcher", None)
    if dispatcher is None:
        dispatcher = LoyaltyEventDispatcher(session_factory=async_session)
        request.app.state.loyalty_event_dispatcher = dispatcher
    return dispatcher


@router.get("/program", response_model=LoyaltyProgramResponse)
async def get_loyalty_program(
    db: AsyncSession = Depends(get_session),
) -> LoyaltyProgramResponse:
    """Return the active loyalty program with its tier ladder."""

    service = LoyaltyService(db)
    try:
        program = await service.get_program()
    except LoyaltyError as exc:
        raise _http_error(exc) from exc
    return _serialize_program(program)


@router.get("/", response_model=LoyaltyOverviewResponse)
async def get_loyalty_account(
    current_user: User = Depends(require_member_session),
    db: AsyncSession = Depends(get_session),
) -> LoyaltyOverviewResponse:
    """Fetch or create the member's account after applying expiry and tier refresh."""

    service = LoyaltyService(db)
    try:
        overview = await service.get_account(current_user.external_id)
        transactions = await service.ledger.list_transactions(overview.account)
        referrals = await service.list_referrals(overview.account)
    except LoyaltyError as exc:
        raise _http_error(exc) from exc
    await db.commit()
    return LoyaltyOverviewResponse(
        loyalty=_serialize_account(overview.account, transactions, referrals),
        program=_serialize_program(overview.program) if overview.program is not None else None,
        tierBenefits=overview.tier_benefits,
    )


@router.post("/redeem", response_model=RedeemResponse)
async def redeem_loyalty_points(
    payload: RedeemRequest,
    current_user: User = Depends(require_member_session),
    db: AsyncSession = Depends(get_session),
) -> RedeemResponse:
    """Redeem points from the member's available balance."""

    service = LoyaltyService(db)
    try:
        account = await service.redeem(
            current_user.external_id,
            payload.points,
            payload.reason,
            order_id=payload.orderId,
        )
    except InsufficientPointsError as exc:
        await db.commit()
        raise _http_error(exc) from exc
    except LoyaltyError as exc:
        raise _http_error(exc) from exc
    await db.commit()
    return RedeemResponse(
        message="Points redeemed successfully",
        availablePoints=int(account.available_points or 0),
        totalPoints=int(account.total_points or 0),
    )


@router.post("/referral", response_model=ReferralCodeResponse, status_code=status.HTTP_201_CREATED)
async def create_referral_code(
    current_user: User = Depends(require_member_session),
    db: AsyncSession = Depends(get_session),
) -> ReferralCodeResponse:
    """Issue a new referral code for the member."""

    service = LoyaltyService(db)
    try:
        referral = await service.generate_referral_code(current_user.external_id)
    except LoyaltyError as exc:
        raise _http_error(exc) from exc
    await db.commit()
    return ReferralCodeResponse(referralCode=referral.referral_code)


@router.get("/admin/stats", response_model=LoyaltyStatsResponse)
async def get_loyalty_stats(
    _: User = Depends(require_admin_session),
    db: AsyncSession = Depends(get_session),
) -> LoyaltyStatsResponse:
    """Aggregate balances, top earners, and recent ledger activity."""

    service = LoyaltyService(db)
    stats = await service.admin_stats()
    return LoyaltyStatsResponse(
        overview=StatsOverviewResponse(
            totalUsers=stats.total_users,
            totalPoints=stats.total_points,
            activeUsers=stats.active_users,
            averagePoints=stats.average_points,
        ),
        topEarners=[
            TopEarnerResponse(
                userName=earner.user_name,
                userEmail=earner.user_email,
                totalPoints=earner.total_points,
                availablePoints=earner.available_points,
                currentTier=earner.current_tier,
            )
            for earner in stats.top_earners
        ],
        recentTransactions=[
            RecentTransactionResponse(
                id=entry.transaction_id,
                userName=entry.user_name,
                userEmail=entry.user_email,
                type=entry.type.value,
                points=entry.points,
                reason=entry.reason,
                createdAt=entry.created_at,
            )
            for entry in stats.recent_transactions
        ],
    )


@router.post("/admin/program", response_model=LoyaltyProgramResponse)
async def manage_loyalty_program(
    payload: ProgramRequest,
    admin: User = Depends(require_admin_session),
    db: AsyncSession = Depends(get_session),
) -> LoyaltyProgramResponse:
    """Create the loyalty program or update it in place."""

    definition = ProgramDefinition(
        name=payload.name,
        description=payload.description,
        points_per_currency_unit=payload.pointsPerDollar,
        points_for_registration=payload.pointsForRegistration,
        points_for_review=payload.pointsForReview,
        points_for_referral=payload.pointsForReferral,
        expiry_months=payload.expiryMonths,
        is_active=payload.isActive,
        tiers=(
            [
                TierDefinition(name=tier.name, min_points=tier.minPoints, benefits=tier.benefits.model_dump())
                for tier in payload.tiers
            ]
            if payload.tiers is not None
            else None
        ),
    )
    service = LoyaltyService(db)
    try:
        program = await service.manage_program(definition)
    except LoyaltyValidationError as exc:
        await db.rollback()
        raise _http_error(exc) from exc
    await db.commit()
    logger.info("Loyalty program saved by administrator", program_id=str(program.id), admin=admin.external_id)
    return _serialize_program(program)


@router.get("/admin/observability")
async def get_loyalty_observability(
    _: User = Depends(require_admin_session),
) -> dict[str, object]:
    """Return in-process award, referral, and expiry counters."""

    return get_loyalty_store().snapshot().as_dict()


@router.post(
    "/events",
    response_model=LoyaltyEventAcceptedResponse,
    status_code=status.HTTP_202_ACCEPTED,
    dependencies=[Depends(require_loyalty_events_api_key)],
)
async def submit_loyalty_event(
    payload: LoyaltyEventRequest,
    dispatcher: LoyaltyEventDispatcher = Depends(get_loyalty_event_dispatcher),
) -> LoyaltyEventAcceptedResponse:
    """Accept an order, review, or registration event for asynchronous awarding."""

    try:
        event = LoyaltyEvent(
            type=payload.type,
            external_id=payload.externalId,
            order_id=payload.orderId,
            order_amount=payload.orderAmount,
            referral_code=payload.referralCode,
        )
    except LoyaltyValidationError as exc:
        raise _http_error(exc) from exc

    if not dispatcher.dispatch(event):
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Loyalty events are not accepted")
    return LoyaltyEventAcceptedResponse(eventId=event.event_id, status="accepted")
