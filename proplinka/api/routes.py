"""
API routes for the PropLinka marketplace.
"""
import time
import uuid
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

import structlog
from fastapi import (
    APIRouter,
    Depends,
    File,
    Header,
    HTTPException,
    Query,
    Request,
    Response,
    UploadFile,
    status,
)
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from sqlalchemy.ext.asyncio import AsyncSession

from proplinka.config import get_settings
from proplinka.core import (
    admin,
    audit,
    favorites,
    lawyer_reviews,
    listings,
    messaging,
    moderation,
    notifications,
    offers,
    platform_settings,
    profiles,
    remittances,
    transactions,
    viewings,
)
from proplinka.core.checkout import CheckoutService, get_payment, serialize_payment
from proplinka.core.exceptions import PaymentError
from proplinka.core.fees import FEE_TIERS, calculate_savings, format_savings_display
from proplinka.core.reconciliation import PaymentReconciler, ReconciliationError
from proplinka.core.refunds import RefundService
from proplinka.database.connection import get_db
from proplinka.database.models import Profile
from proplinka.integrations.email_client import EmailClient
from proplinka.integrations.images import ImageStorage, read_upload
from proplinka.integrations.webhook_handler import (
    WebhookHandler,
    WebhookProcessingError,
    WebhookSignatureError,
)
from proplinka.monitoring.health import HealthCheck
from proplinka.monitoring.metrics import metrics
from proplinka.utils.time import utc_now

from .dependencies import (
    check_maintenance_mode,
    get_current_user,
    get_email_client,
    get_optional_user,
    rate_limit,
    require_roles,
    verify_cron_secret,
)
from .schemas import (
    CancelTransactionRequest,
    CheckoutSessionResponse,
    ConversationCreateRequest,
    CounterOfferRequest,
    FeaturedCheckoutRequest,
    FeeCalculationResponse,
    FlagReviewRequest,
    HealthCheckResponse,
    InquiryRequest,
    LawyerRegisterRequest,
    LawyerReviewRequest,
    MessageCreateRequest,
    ModerationActionRequest,
    OfferCreateRequest,
    OfferRejectRequest,
    ProfileUpdateRequest,
    PropertyCreateRequest,
    PropertyUpdateRequest,
    ReconciliationResponse,
    RefundRequest,
    RemittanceRequest,
    ReportRequest,
    SelectLawyerRequest,
    SettingUpdateRequest,
    SuccessFeeCheckoutRequest,
    SuspendUserRequest,
    ViewingCancelRequest,
    ViewingConfirmRequest,
    ViewingCreateRequest,
    WebhookResponse,
)

logger = structlog.get_logger(__name__)
settings = get_settings()

api_limited = [Depends(rate_limit("api"))]
maintenance = [Depends(check_maintenance_mode), *api_limited]

# Create routers
profile_router = APIRouter(prefix="/profiles", tags=["profiles"], dependencies=maintenance)
property_router = APIRouter(prefix="/properties", tags=["properties"], dependencies=maintenance)
offer_router = APIRouter(prefix="/offers", tags=["offers"], dependencies=maintenance)
transaction_router = APIRouter(
    prefix="/transactions", tags=["transactions"], dependencies=maintenance
)
favorite_router = APIRouter(prefix="/favorites", tags=["favorites"], dependencies=maintenance)
viewing_router = APIRouter(prefix="/viewings", tags=["viewings"], dependencies=maintenance)
lawyer_router = APIRouter(prefix="/lawyers", tags=["lawyers"], dependencies=maintenance)
checkout_router = APIRouter(prefix="/checkout", tags=["payments"], dependencies=maintenance)
payment_router = APIRouter(prefix="/payments", tags=["payments"], dependencies=api_limited)
webhook_router = APIRouter(prefix="/webhooks", tags=["webhooks"])
conversation_router = APIRouter(
    prefix="/conversations", tags=["messaging"], dependencies=maintenance
)
notification_router = APIRouter(
    prefix="/notifications", tags=["notifications"], dependencies=api_limited
)
moderation_router = APIRouter(prefix="/moderation", tags=["moderation"], dependencies=maintenance)
admin_router = APIRouter(prefix="/admin", tags=["admin"], dependencies=api_limited)
cron_router = APIRouter(prefix="/cron", tags=["cron"], dependencies=[Depends(verify_cron_secret)])
fees_router = APIRouter(prefix="/fees", tags=["fees"], dependencies=api_limited)
monitoring_router = APIRouter(tags=["monitoring"])

# Initialize services
checkout_service = CheckoutService()
refund_service = RefundService()
webhook_handler = WebhookHandler()
health_check = HealthCheck()
image_storage = ImageStorage(settings.media_root, settings.media_url)

# Register webhook handlers
webhook_handler.register_default_handlers()


# Profiles


@profile_router.get("/me", summary="Current profile")
async def get_my_profile(user: Profile = Depends(get_current_user)) -> Dict[str, Any]:
    return profiles.serialize_profile(user)


@profile_router.patch("/me", summary="Update current profile")
async def update_my_profile(
    request: ProfileUpdateRequest,
    user: Profile = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> Dict[str, Any]:
    updated = await profiles.update_profile(db, user, request.model_dump(exclude_unset=True))
    return profiles.serialize_profile(updated)


# Properties


@property_router.get("", summary="Search listings")
async def search_properties(
    min_price: Optional[Decimal] = Query(default=None, ge=0),
    max_price: Optional[Decimal] = Query(default=None, ge=0),
    property_type: Optional[str] = None,
    min_bedrooms: Optional[int] = Query(default=None, ge=0),
    city: Optional[str] = None,
    country_code: Optional[str] = None,
    page: int = Query(default=1, ge=1),
    page_size: int = Query(default=20, ge=1, le=100),
    db: AsyncSession = Depends(get_db),
) -> Dict[str, Any]:
    return await listings.search_properties(
        db,
        min_price=min_price,
        max_price=max_price,
        property_type=property_type,
        min_bedrooms=min_bedrooms,
        city=city,
        country_code=country_code,
        page=page,
        page_size=page_size,
    )


@property_router.post("", status_code=status.HTTP_201_CREATED, summary="Create a listing")
async def create_property(
    request: PropertyCreateRequest,
    user: Profile = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> Dict[str, Any]:
    prop = await listings.create_property(db, user, request.model_dump())
    return listings.serialize_property(prop, images=[])


@property_router.get("/{property_id}", summary="Get a listing")
async def get_property(
    property_id: uuid.UUID,
    user: Optional[Profile] = Depends(get_optional_user),
    db: AsyncSession = Depends(get_db),
) -> Dict[str, Any]:
    prop = await listings.get_property(db, property_id, viewer=user)
    return listings.serialize_property(prop, images=await listings.list_images(db, prop.id))


@property_router.patch("/{property_id}", summary="Edit a listing")
async def update_property(
    property_id: uuid.UUID,
    request: PropertyUpdateRequest,
    user: Profile = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> Dict[str, Any]:
    prop = await listings.update_property(
        db, user, property_id, request.model_dump(exclude_unset=True)
    )
    return listings.serialize_property(prop)


@property_router.delete("/{property_id}", summary="Withdraw a listing")
async def delete_property(
    property_id: uuid.UUID,
    user: Profile = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> Dict[str, Any]:
    prop = await listings.delete_property(db, user, property_id)
    return {"id": str(prop.id), "status": prop.status}


@property_router.post(
    "/{property_id}/images",
    status_code=status.HTTP_201_CREATED,
    summary="Upload a listing image",
    dependencies=[Depends(rate_limit("upload"))],
)
async def upload_property_image(
    property_id: uuid.UUID,
    file: UploadFile = File(...),
    user: Profile = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> Dict[str, Any]:
    # Stop reading once the upload passes the limit instead of buffering it whole
    max_size_mb = await platform_settings.get_setting(db, "max_image_size_mb")
    content = await read_upload(file, max_size_mb)
    image = await listings.add_property_image(
        db, user, property_id, content, file.content_type, image_storage
    )
    return {
        "id": str(image.id),
        "url": image.url,
        "thumbnail_url": image.thumbnail_url,
        "width": image.width,
        "height": image.height,
        "is_primary": image.is_primary,
    }


@property_router.delete(
    "/{property_id}/images/{image_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Delete a listing image",
)
async def delete_property_image(
    property_id: uuid.UUID,
    image_id: uuid.UUID,
    user: Profile = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> Response:
    await listings.delete_property_image(db, user, property_id, image_id, image_storage)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@property_router.post(
    "/{property_id}/inquiries",
    status_code=status.HTTP_201_CREATED,
    summary="Ask the seller about a listing",
    dependencies=[Depends(rate_limit("inquiry")), Depends(rate_limit("email"))],
)
async def submit_inquiry(
    property_id: uuid.UUID,
    request: InquiryRequest,
    user: Profile = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    email_client: EmailClient = Depends(get_email_client),
) -> Dict[str, Any]:
    conversation = await messaging.submit_inquiry(
        db, user, property_id, request.message, email_client=email_client
    )
    return {"conversation_id": str(conversation.id)}


@property_router.get("/{property_id}/viewings", summary="Viewings of my listing")
async def list_property_viewings(
    property_id: uuid.UUID,
    user: Profile = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> List[Dict[str, Any]]:
    return [
        viewings.serialize_viewing(v)
        for v in await viewings.list_property_viewings(db, user, property_id)
    ]


@property_router.get("/{property_id}/viewings/mine", summary="Do I have a viewing booked")
async def my_open_viewing(
    property_id: uuid.UUID,
    user: Profile = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> Dict[str, Any]:
    return {
        "property_id": str(property_id),
        "has_open_viewing": await viewings.has_open_viewing(db, user, property_id),
    }


# Favorites


@favorite_router.get("", summary="My saved listings")
async def list_favorites(
    user: Profile = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> List[Dict[str, Any]]:
    return await favorites.list_favorites(db, user)


@favorite_router.post("/{property_id}", summary="Save or unsave a listing")
async def toggle_favorite(
    property_id: uuid.UUID,
    user: Profile = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> Dict[str, Any]:
    favorited = await favorites.toggle_favorite(db, user, property_id)
    return {"property_id": str(property_id), "favorited": favorited}


@favorite_router.get("/{property_id}", summary="Is a listing saved")
async def get_favorite_status(
    property_id: uuid.UUID,
    user: Profile = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> Dict[str, Any]:
    favorited = await favorites.is_favorited(db, user, property_id)
    return {"property_id": str(property_id), "favorited": favorited}


# Viewings


@viewing_router.post("", status_code=status.HTTP_201_CREATED, summary="Request a viewing")
async def request_viewing(
    request: ViewingCreateRequest,
    user: Profile = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> Dict[str, Any]:
    viewing = await viewings.request_viewing(
        db,
        user,
        request.property_id,
        request.requested_date,
        request.requested_time_slot,
        request.financing_status,
        pre_approval_amount=request.pre_approval_amount,
        message=request.message,
    )
    return viewings.serialize_viewing(viewing)


@viewing_router.get("", summary="My viewings")
async def list_viewings(
    role: str = Query(default="buyer", pattern="^(buyer|seller)$"),
    viewing_status: Optional[str] = Query(default=None, alias="status"),
    user: Profile = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> List[Dict[str, Any]]:
    return [
        viewings.serialize_viewing(v)
        for v in await viewings.list_my_viewings(db, user, role, viewing_status)
    ]


@viewing_router.get("/{viewing_id}", summary="Get a viewing")
async def get_viewing(
    viewing_id: uuid.UUID,
    user: Profile = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> Dict[str, Any]:
    return viewings.serialize_viewing(await viewings.get_viewing(db, user, viewing_id))


@viewing_router.post("/{viewing_id}/confirm", summary="Seller confirms a viewing")
async def confirm_viewing(
    viewing_id: uuid.UUID,
    request: ViewingConfirmRequest,
    user: Profile = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> Dict[str, Any]:
    viewing = await viewings.confirm_viewing(
        db, user, viewing_id, request.confirmed_date, request.confirmed_time, request.response
    )
    return viewings.serialize_viewing(viewing)


@viewing_router.post("/{viewing_id}/cancel", summary="Cancel a viewing")
async def cancel_viewing(
    viewing_id: uuid.UUID,
    request: ViewingCancelRequest,
    user: Profile = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> Dict[str, Any]:
    viewing = await viewings.cancel_viewing(db, user, viewing_id, request.reason)
    return viewings.serialize_viewing(viewing)


@viewing_router.post("/{viewing_id}/complete", summary="Seller marks a viewing done")
async def complete_viewing(
    viewing_id: uuid.UUID,
    user: Profile = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> Dict[str, Any]:
    return viewings.serialize_viewing(await viewings.complete_viewing(db, user, viewing_id))


@viewing_router.post("/{viewing_id}/no-show", summary="Seller marks a buyer no-show")
async def mark_viewing_no_show(
    viewing_id: uuid.UUID,
    user: Profile = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> Dict[str, Any]:
    return viewings.serialize_viewing(await viewings.mark_no_show(db, user, viewing_id))


# Offers


@offer_router.post("", status_code=status.HTTP_201_CREATED, summary="Make an offer")
async def submit_offer(
    request: OfferCreateRequest,
    user: Profile = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> Dict[str, Any]:
    offer = await offers.submit_offer(
        db, user, request.property_id, request.amount, request.message, request.valid_until
    )
    return offers.serialize_offer(offer)


@offer_router.get("", summary="List my offers")
async def list_offers(
    role: str = Query(default="buyer", pattern="^(buyer|seller)$"),
    user: Profile = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> List[Dict[str, Any]]:
    return [offers.serialize_offer(o) for o in await offers.list_offers(db, user, role)]


@offer_router.get("/{offer_id}", summary="Get an offer")
async def get_offer(
    offer_id: uuid.UUID,
    user: Profile = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> Dict[str, Any]:
    return offers.serialize_offer(await offers.get_offer(db, user, offer_id))


@offer_router.post("/{offer_id}/accept", summary="Seller accepts an offer")
async def accept_offer(
    offer_id: uuid.UUID,
    user: Profile = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> Dict[str, Any]:
    transaction = await offers.accept_offer(db, user, offer_id)
    return transactions.serialize_transaction(transaction)


@offer_router.post("/{offer_id}/reject", summary="Seller rejects an offer")
async def reject_offer(
    offer_id: uuid.UUID,
    request: OfferRejectRequest,
    user: Profile = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> Dict[str, Any]:
    return offers.serialize_offer(await offers.reject_offer(db, user, offer_id, request.reason))


@offer_router.post("/{offer_id}/counter", summary="Seller counters an offer")
async def counter_offer(
    offer_id: uuid.UUID,
    request: CounterOfferRequest,
    user: Profile = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> Dict[str, Any]:
    offer = await offers.counter_offer(
        db, user, offer_id, request.counter_amount, request.message
    )
    return offers.serialize_offer(offer)


@offer_router.post("/{offer_id}/accept-counter", summary="Buyer accepts a counter offer")
async def accept_counter_offer(
    offer_id: uuid.UUID,
    user: Profile = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> Dict[str, Any]:
    transaction = await offers.accept_counter_offer(db, user, offer_id)
    return transactions.serialize_transaction(transaction)


@offer_router.post("/{offer_id}/withdraw", summary="Buyer withdraws an offer")
async def withdraw_offer(
    offer_id: uuid.UUID,
    user: Profile = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> Dict[str, Any]:
    return offers.serialize_offer(await offers.withdraw_offer(db, user, offer_id))


# Transactions and lawyers


@transaction_router.get("", summary="List my transactions")
async def list_transactions(
    user: Profile = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> List[Dict[str, Any]]:
    return [
        transactions.serialize_transaction(t)
        for t in await transactions.list_transactions(db, user)
    ]


@transaction_router.get("/{transaction_id}", summary="Get a transaction")
async def get_transaction(
    transaction_id: uuid.UUID,
    user: Profile = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> Dict[str, Any]:
    transaction = await transactions.get_transaction(db, user, transaction_id)
    return transactions.serialize_transaction(transaction)


@transaction_router.post("/{transaction_id}/lawyer", summary="Select my lawyer")
async def select_lawyer(
    transaction_id: uuid.UUID,
    request: SelectLawyerRequest,
    user: Profile = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> Dict[str, Any]:
    transaction = await transactions.select_lawyer(db, user, transaction_id, request.lawyer_id)
    return transactions.serialize_transaction(transaction)


@transaction_router.post("/{transaction_id}/lawyer-review", summary="Review my lawyer")
async def submit_lawyer_review(
    transaction_id: uuid.UUID,
    request: LawyerReviewRequest,
    user: Profile = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> Dict[str, Any]:
    review = await lawyer_reviews.submit_review(
        db,
        user,
        transaction_id,
        request.rating,
        request.review_text,
        would_recommend=request.would_recommend,
        communication_rating=request.communication_rating,
        professionalism_rating=request.professionalism_rating,
        efficiency_rating=request.efficiency_rating,
    )
    return lawyer_reviews.serialize_review(review)


@transaction_router.get("/{transaction_id}/lawyer-review", summary="My review of my lawyer")
async def get_my_lawyer_review(
    transaction_id: uuid.UUID,
    user: Profile = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> Optional[Dict[str, Any]]:
    review = await lawyer_reviews.get_my_review(db, user, transaction_id)
    return lawyer_reviews.serialize_review(review) if review else None


@lawyer_router.get("", summary="Lawyer directory")
async def list_lawyers(
    country_code: Optional[str] = None,
    db: AsyncSession = Depends(get_db),
) -> List[Dict[str, Any]]:
    return [
        transactions.serialize_lawyer(lawyer)
        for lawyer in await transactions.list_lawyers(db, country_code)
    ]


@lawyer_router.post(
    "",
    status_code=status.HTTP_201_CREATED,
    summary="Register as a lawyer",
    dependencies=[Depends(rate_limit("auth", per_ip=True))],
)
async def register_lawyer(
    request: LawyerRegisterRequest,
    user: Profile = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> Dict[str, Any]:
    lawyer = await transactions.register_lawyer(
        db,
        user,
        request.firm_name,
        request.flat_fee_buyer,
        request.flat_fee_seller,
        request.country_code,
    )
    return transactions.serialize_lawyer(lawyer)


@lawyer_router.get("/{lawyer_id}/reviews", summary="Reviews of a lawyer")
async def list_lawyer_reviews(
    lawyer_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
) -> List[Dict[str, Any]]:
    return [
        lawyer_reviews.serialize_review(r)
        for r in await lawyer_reviews.list_reviews(db, lawyer_id)
    ]


@lawyer_router.get("/me/remittances", summary="My outstanding referral fees")
async def my_remittances(
    user: Profile = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> Dict[str, Any]:
    return await remittances.list_remittances(db, user)


# Checkout and payments


@checkout_router.post(
    "/success-fee",
    response_model=CheckoutSessionResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Pay a success fee",
    description="Create a Stripe Checkout session for the buyer's or seller's success fee",
)
async def create_success_fee_checkout(
    request: SuccessFeeCheckoutRequest,
    user: Profile = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> Dict[str, Any]:
    try:
        return await checkout_service.create_success_fee_checkout(
            db, user, request.transaction_id, request.role
        )
    except PaymentError as e:
        logger.error("api_success_fee_checkout_error", error=str(e))
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=e.message)


@checkout_router.post(
    "/featured-listing",
    response_model=CheckoutSessionResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Feature a listing",
    description="Create a Stripe Checkout session for a featured listing plan",
)
async def create_featured_listing_checkout(
    request: FeaturedCheckoutRequest,
    user: Profile = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> Dict[str, Any]:
    try:
        return await checkout_service.create_featured_listing_checkout(
            db, user, request.property_id, request.plan
        )
    except PaymentError as e:
        logger.error("api_featured_checkout_error", error=str(e))
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=e.message)


@payment_router.get("/{payment_id}", summary="Get payment status")
async def get_payment_status(
    payment_id: uuid.UUID,
    user: Profile = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> Dict[str, Any]:
    return serialize_payment(await get_payment(db, user, payment_id))


@webhook_router.post(
    "/stripe",
    response_model=WebhookResponse,
    summary="Stripe webhook endpoint",
    description="Handle Stripe webhook events",
)
async def stripe_webhook(
    request: Request,
    stripe_signature: Optional[str] = Header(default=None, alias="Stripe-Signature"),
    db: AsyncSession = Depends(get_db),
) -> Dict[str, Any]:
    """
    Handle Stripe webhook events.

    400 for a bad signature. 500 when processing fails so Stripe redelivers.
    """
    body = await request.body()

    try:
        event = webhook_handler.verify_signature(body, stripe_signature)
    except WebhookSignatureError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    logger.info("api_webhook_received", event_id=event.id, event_type=event.type)

    try:
        return await webhook_handler.process_event(event, db)
    except WebhookProcessingError as e:
        logger.error("api_webhook_error", event_id=event.id, error=str(e))
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Webhook processing failed",
        )


# Messaging and notifications


@conversation_router.get("", summary="My conversations")
async def list_conversations(
    user: Profile = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> List[Dict[str, Any]]:
    return await messaging.list_conversations(db, user)


@conversation_router.post("", status_code=status.HTTP_201_CREATED, summary="Start a conversation")
async def start_conversation(
    request: ConversationCreateRequest,
    user: Profile = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> Dict[str, Any]:
    conversation = await messaging.start_conversation(
        db, user, request.recipient_id, request.property_id, request.initial_message
    )
    return {"id": str(conversation.id), "status": conversation.status}


@conversation_router.get("/unread-count", summary="Unread message count")
async def unread_count(
    user: Profile = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> Dict[str, int]:
    return {"unread_count": await messaging.get_unread_count(db, user)}


@conversation_router.get("/{conversation_id}/messages", summary="Read a conversation")
async def get_messages(
    conversation_id: uuid.UUID,
    user: Profile = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> List[Dict[str, Any]]:
    return [
        messaging.serialize_message(m)
        for m in await messaging.get_messages(db, user, conversation_id)
    ]


@conversation_router.post(
    "/{conversation_id}/messages",
    status_code=status.HTTP_201_CREATED,
    summary="Send a message",
)
async def send_message(
    conversation_id: uuid.UUID,
    request: MessageCreateRequest,
    user: Profile = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> Dict[str, Any]:
    message = await messaging.send_message(db, user, conversation_id, request.content)
    return messaging.serialize_message(message)


@conversation_router.post("/{conversation_id}/archive", summary="Archive a conversation")
async def archive_conversation(
    conversation_id: uuid.UUID,
    user: Profile = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> Dict[str, Any]:
    conversation = await messaging.archive_conversation(db, user, conversation_id)
    return {"id": str(conversation.id), "status": conversation.status}


@notification_router.get("", summary="My notifications")
async def list_notifications(
    unread_only: bool = False,
    user: Profile = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> List[Dict[str, Any]]:
    return [
        notifications.serialize_notification(n)
        for n in await notifications.list_notifications(db, user.id, unread_only=unread_only)
    ]


@notification_router.post("/read-all", summary="Mark all notifications read")
async def mark_all_notifications_read(
    user: Profile = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> Dict[str, int]:
    return {"updated": await notifications.mark_all_read(db, user.id)}


@notification_router.post("/{notification_id}/read", summary="Mark a notification read")
async def mark_notification_read(
    notification_id: uuid.UUID,
    user: Profile = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> Dict[str, Any]:
    notification = await notifications.mark_read(db, user.id, notification_id)
    return notifications.serialize_notification(notification)


# Moderation


@moderation_router.post("/reports", status_code=status.HTTP_201_CREATED, summary="Report content")
async def report_content(
    request: ReportRequest,
    user: Profile = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> Dict[str, Any]:
    flag = await moderation.report_content(
        db, user, request.resource_type, request.resource_id, request.reason, request.details
    )
    return moderation.serialize_flag(flag)


@moderation_router.get("/queue", summary="Listings awaiting review")
async def moderation_queue(
    user: Profile = Depends(require_roles("moderator")),
    db: AsyncSession = Depends(get_db),
) -> List[Dict[str, Any]]:
    return [listings.serialize_property(p) for p in await moderation.moderation_queue(db, user)]


@moderation_router.post(
    "/properties/{property_id}",
    summary="Moderate a listing",
    dependencies=[Depends(rate_limit("email"))],
)
async def moderate_property(
    property_id: uuid.UUID,
    request: ModerationActionRequest,
    user: Profile = Depends(require_roles("moderator")),
    db: AsyncSession = Depends(get_db),
    email_client: EmailClient = Depends(get_email_client),
) -> Dict[str, Any]:
    prop = await moderation.moderate_property(
        db, user, property_id, request.action, request.reason, email_client=email_client
    )
    return listings.serialize_property(prop)


@moderation_router.get("/flags", summary="Content flags")
async def list_flags(
    flag_status: Optional[str] = Query(default="pending", alias="status"),
    user: Profile = Depends(require_roles("moderator")),
    db: AsyncSession = Depends(get_db),
) -> List[Dict[str, Any]]:
    return [moderation.serialize_flag(f) for f in await moderation.list_flags(db, user, flag_status)]


@moderation_router.post("/flags/{flag_id}/review", summary="Resolve a content flag")
async def review_flag(
    flag_id: uuid.UUID,
    request: FlagReviewRequest,
    user: Profile = Depends(require_roles("moderator")),
    db: AsyncSession = Depends(get_db),
) -> Dict[str, Any]:
    flag = await moderation.review_flag(db, user, flag_id, request.decision, request.notes)
    return moderation.serialize_flag(flag)


# Admin


@admin_router.get("/users", summary="List users")
async def list_users(
    search: Optional[str] = None,
    role: Optional[str] = None,
    suspended: Optional[bool] = None,
    page: int = Query(default=1, ge=1),
    page_size: int = Query(default=50, ge=1, le=200),
    user: Profile = Depends(require_roles("admin")),
    db: AsyncSession = Depends(get_db),
) -> Dict[str, Any]:
    return await admin.list_users(db, user, search, role, suspended, page, page_size)


@admin_router.post(
    "/users/{user_id}/suspend",
    summary="Suspend a user",
    dependencies=[Depends(rate_limit("email"))],
)
async def suspend_user(
    user_id: uuid.UUID,
    request: SuspendUserRequest,
    user: Profile = Depends(require_roles("admin")),
    db: AsyncSession = Depends(get_db),
    email_client: EmailClient = Depends(get_email_client),
) -> Dict[str, Any]:
    target = await admin.suspend_user(db, user, user_id, request.reason, email_client=email_client)
    return profiles.serialize_profile(target)


@admin_router.post("/users/{user_id}/unsuspend", summary="Lift a suspension")
async def unsuspend_user(
    user_id: uuid.UUID,
    user: Profile = Depends(require_roles("admin")),
    db: AsyncSession = Depends(get_db),
) -> Dict[str, Any]:
    return profiles.serialize_profile(await admin.unsuspend_user(db, user, user_id))


@admin_router.post("/lawyers/{lawyer_id}/verify", summary="Verify a lawyer")
async def verify_lawyer(
    lawyer_id: uuid.UUID,
    user: Profile = Depends(require_roles("admin")),
    db: AsyncSession = Depends(get_db),
) -> Dict[str, Any]:
    lawyer = await transactions.set_lawyer_verification(db, user, lawyer_id, True)
    return transactions.serialize_lawyer(lawyer)


@admin_router.post("/lawyers/{lawyer_id}/unverify", summary="Remove lawyer verification")
async def unverify_lawyer(
    lawyer_id: uuid.UUID,
    user: Profile = Depends(require_roles("admin")),
    db: AsyncSession = Depends(get_db),
) -> Dict[str, Any]:
    lawyer = await transactions.set_lawyer_verification(db, user, lawyer_id, False)
    return transactions.serialize_lawyer(lawyer)


@admin_router.post("/lawyers/{lawyer_id}/remittances", summary="Record a remittance")
async def record_remittance(
    lawyer_id: uuid.UUID,
    request: RemittanceRequest,
    user: Profile = Depends(require_roles("admin")),
    db: AsyncSession = Depends(get_db),
) -> Dict[str, Any]:
    lawyer = await remittances.record_remittance(db, user, lawyer_id, request.payment_ids)
    return transactions.serialize_lawyer(lawyer)


@admin_router.post("/transactions/{transaction_id}/cancel", summary="Cancel a transaction")
async def cancel_transaction(
    transaction_id: uuid.UUID,
    request: CancelTransactionRequest,
    user: Profile = Depends(require_roles("admin")),
    db: AsyncSession = Depends(get_db),
) -> Dict[str, Any]:
    transaction = await transactions.cancel_transaction(db, user, transaction_id, request.reason)
    return transactions.serialize_transaction(transaction)


@admin_router.get("/stats", summary="Platform statistics")
async def platform_stats(
    user: Profile = Depends(require_roles("admin")),
    db: AsyncSession = Depends(get_db),
) -> Dict[str, Any]:
    return await admin.platform_stats(db, user)


@admin_router.get("/audit-logs", summary="Audit trail")
async def audit_logs(
    action: Optional[str] = None,
    actor_id: Optional[uuid.UUID] = None,
    resource_type: Optional[str] = None,
    since: Optional[datetime] = None,
    until: Optional[datetime] = None,
    page: int = Query(default=1, ge=1),
    page_size: int = Query(default=50, ge=1, le=200),
    user: Profile = Depends(require_roles("admin")),
    db: AsyncSession = Depends(get_db),
) -> Dict[str, Any]:
    return await audit.query_audit_logs(
        db, action, actor_id, resource_type, since, until, page, page_size
    )


@admin_router.get("/settings", summary="Platform settings")
async def get_platform_settings(
    user: Profile = Depends(require_roles("admin")),
    db: AsyncSession = Depends(get_db),
) -> Dict[str, Any]:
    return await platform_settings.get_all_settings(db)


@admin_router.put("/settings/{key}", summary="Update a platform setting")
async def update_platform_setting(
    key: str,
    request: SettingUpdateRequest,
    user: Profile = Depends(require_roles("admin")),
    db: AsyncSession = Depends(get_db),
) -> Dict[str, Any]:
    value = await platform_settings.update_setting(db, key, request.value, user.id)
    return {"key": key, "value": value}


@admin_router.post("/payments/{payment_id}/refund", summary="Refund a payment")
async def refund_payment(
    payment_id: uuid.UUID,
    request: RefundRequest,
    user: Profile = Depends(require_roles("admin")),
    db: AsyncSession = Depends(get_db),
) -> Dict[str, Any]:
    logger.info(
        "api_refund_payment_request",
        payment_id=str(payment_id),
        amount=str(request.amount) if request.amount else None,
    )
    try:
        return await refund_service.refund_payment(
            db, user, payment_id, amount=request.amount, reason=request.reason
        )
    except PaymentError as e:
        logger.error("api_refund_payment_error", payment_id=str(payment_id), error=str(e))
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=e.message)


@admin_router.get("/payments/{payment_id}/refund", summary="Refund status")
async def get_refund_status(
    payment_id: uuid.UUID,
    user: Profile = Depends(require_roles("admin")),
    db: AsyncSession = Depends(get_db),
) -> Dict[str, Any]:
    return await refund_service.get_refund_status(db, user, payment_id)


@admin_router.post(
    "/reconcile",
    response_model=ReconciliationResponse,
    summary="Run reconciliation",
    description="Settle checkout payments still pending against Stripe",
)
async def run_reconciliation(
    older_than_hours: int = Query(default=24, ge=0),
    user: Profile = Depends(require_roles("admin")),
) -> Dict[str, Any]:
    logger.info("api_reconciliation_started", older_than_hours=older_than_hours)
    try:
        reconciler = PaymentReconciler(stripe_client=checkout_service.stripe_client)
        return await reconciler.reconcile_pending(older_than_hours=older_than_hours)
    except ReconciliationError as e:
        logger.error("api_reconciliation_error", error=str(e))
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Reconciliation failed: {str(e)}",
        )


# Scheduled jobs


@cron_router.get("/expire-featured-listings", summary="Unfeature expired listings")
async def cron_expire_featured_listings(
    db: AsyncSession = Depends(get_db),
    email_client: EmailClient = Depends(get_email_client),
) -> Dict[str, Any]:
    count = await listings.expire_featured_listings(db, email_client=email_client)
    metrics.record_job_run("expire_featured_listings", "success", count)
    return {"success": True, "count": count, "timestamp": utc_now().isoformat()}


@cron_router.get("/check-overdue-remittances", summary="Escalate unpaid referral fees")
async def cron_check_overdue_remittances(
    db: AsyncSession = Depends(get_db),
    email_client: EmailClient = Depends(get_email_client),
) -> Dict[str, Any]:
    summary = await remittances.check_overdue_remittances(db, email_client=email_client)
    metrics.record_job_run("check_overdue_remittances", "success", summary["checked"])
    return {"success": True, "summary": summary, "timestamp": utc_now().isoformat()}


# Fees


@fees_router.get("/calculate", response_model=FeeCalculationResponse, summary="Savings calculator")
async def calculate_fees(
    price: Decimal = Query(..., description="Property price in major units"),
    country: Optional[str] = Query(default="ZA", description="ZA or NA"),
) -> Dict[str, Any]:
    breakdown = calculate_savings(price, country)
    return {**breakdown.to_dict(), "display": format_savings_display(breakdown)}


@fees_router.get("/tiers", summary="Flat fee tiers")
async def fee_tiers() -> List[Dict[str, Any]]:
    return [{"upper_bound": tier.upper_bound, "flat_fee": tier.flat_fee} for tier in FEE_TIERS]


# Monitoring


@monitoring_router.get(
    "/health",
    response_model=HealthCheckResponse,
    summary="Health check",
    description="Check overall system health",
)
async def health() -> Dict[str, Any]:
    return await health_check.check_all()


@monitoring_router.get(
    "/health/live",
    response_model=HealthCheckResponse,
    summary="Liveness check",
)
async def liveness() -> Dict[str, Any]:
    return await health_check.liveness()


@monitoring_router.get(
    "/health/ready",
    response_model=HealthCheckResponse,
    summary="Readiness check",
)
async def readiness() -> Dict[str, Any]:
    """Readiness check; 503 when a dependency is down."""
    started = time.perf_counter()
    result = await health_check.readiness()
    logger.debug("readiness_checked", duration_seconds=time.perf_counter() - started)
    if result["status"] == "unhealthy":
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=result)
    return result


@monitoring_router.get(
    "/metrics",
    summary="Prometheus metrics",
    include_in_schema=False,
)
async def prometheus_metrics() -> Response:
    """Expose Prometheus metrics."""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
