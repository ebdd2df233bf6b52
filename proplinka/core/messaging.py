"""
Two-party conversations, messages and property inquiries.
"""
import uuid
from typing import Any, Dict, List, Optional

import structlog
from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from proplinka.core.exceptions import (
    ConflictError,
    NotFoundError,
    PermissionDeniedError,
    ValidationError,
)
from proplinka.core.notifications import create_notification
from proplinka.database.models import Conversation, Message, Profile, Property
from proplinka.integrations.email_client import (
    EmailClient,
    inquiry_received_email,
    send_best_effort,
)
from proplinka.utils.time import utc_now

logger = structlog.get_logger(__name__)

MAX_MESSAGE_LENGTH = 5000
MIN_INQUIRY_LENGTH = 10
MAX_INQUIRY_LENGTH = 1000


def serialize_message(message: Message) -> Dict[str, Any]:
    return {
        "id": str(message.id),
        "conversation_id": str(message.conversation_id),
        "sender_id": str(message.sender_id),
        "content": message.content,
        "read_at": message.read_at.isoformat() if message.read_at else None,
        "created_at": message.created_at.isoformat(),
    }


def _clean_content(content: Optional[str]) -> str:
    text = (content or "").strip()
    if not text:
        raise ValidationError("Message cannot be empty")
    if len(text) > MAX_MESSAGE_LENGTH:
        raise ValidationError(f"Message cannot exceed {MAX_MESSAGE_LENGTH} characters")
    return text


async def _load_conversation(
    db: AsyncSession, user: Profile, conversation_id: uuid.UUID
) -> Conversation:
    conversation = await db.get(Conversation, conversation_id)
    if conversation is None or not conversation.has_participant(user.id):
        raise NotFoundError("Conversation not found")
    return conversation


async def start_conversation(
    db: AsyncSession,
    user: Profile,
    recipient_id: uuid.UUID,
    property_id: Optional[uuid.UUID] = None,
    initial_message: Optional[str] = None,
) -> Conversation:
    """
    Open a conversation, reusing an active one between the same people about
    the same property.

    Args:
        db: Database session
        user: Caller
        recipient_id: Other participant
        property_id: Optional listing the conversation is about
        initial_message: Optional first message

    Returns:
        Conversation: New or reused conversation

    Raises:
        ValidationError: If the caller messages themselves
        NotFoundError: If the recipient does not exist
    """
    if recipient_id == user.id:
        raise ValidationError("You cannot message yourself")
    recipient = await db.get(Profile, recipient_id)
    if recipient is None:
        raise NotFoundError("Recipient not found")

    pair = or_(
        and_(
            Conversation.participant_one_id == user.id,
            Conversation.participant_two_id == recipient_id,
        ),
        and_(
            Conversation.participant_one_id == recipient_id,
            Conversation.participant_two_id == user.id,
        ),
    )
    same_property = (
        Conversation.property_id == property_id
        if property_id is not None
        else Conversation.property_id.is_(None)
    )
    conversation = (
        await db.execute(
            select(Conversation).where(pair, same_property, Conversation.status == "active")
        )
    ).scalars().first()

    if conversation is None:
        conversation = Conversation(
            property_id=property_id,
            participant_one_id=user.id,
            participant_two_id=recipient_id,
            status="active",
        )
        db.add(conversation)
        await db.flush()
        logger.info(
            "conversation_started",
            conversation_id=str(conversation.id),
            property_id=str(property_id) if property_id else None,
        )

    if initial_message:
        await send_message(db, user, conversation.id, initial_message)

    return conversation


async def send_message(
    db: AsyncSession, user: Profile, conversation_id: uuid.UUID, content: str
) -> Message:
    """
    Post a message and notify the other participant.

    Raises:
        ValidationError: If the content is empty or too long
        NotFoundError: If the caller is not a participant
        ConflictError: If the conversation is archived
    """
    text = _clean_content(content)
    conversation = await _load_conversation(db, user, conversation_id)
    if conversation.status != "active":
        raise ConflictError("This conversation is archived")

    now = utc_now()
    message = Message(conversation_id=conversation.id, sender_id=user.id, content=text, created_at=now)
    db.add(message)
    conversation.last_message_at = now

    preview = text if len(text) <= 100 else f"{text[:97]}..."
    await create_notification(
        db,
        user_id=conversation.other_participant(user.id),
        notification_type="new_message",
        title=f"New message from {user.full_name or 'a user'}",
        body=preview,
        link=f"/messages/{conversation.id}",
    )
    await db.flush()
    logger.info("message_sent", conversation_id=str(conversation.id), message_id=str(message.id))
    return message


async def list_conversations(db: AsyncSession, user: Profile) -> List[Dict[str, Any]]:
    """Caller's conversations with unread counts, most recent activity first."""
    conversations = (
        await db.execute(
            select(Conversation)
            .where(
                or_(
                    Conversation.participant_one_id == user.id,
                    Conversation.participant_two_id == user.id,
                )
            )
            .order_by(
                func.coalesce(Conversation.last_message_at, Conversation.created_at).desc()
            )
        )
    ).scalars().all()

    unread_rows = (
        await db.execute(
            select(Message.conversation_id, func.count())
            .where(
                Message.conversation_id.in_([c.id for c in conversations]),
                Message.sender_id != user.id,
                Message.read_at.is_(None),
            )
            .group_by(Message.conversation_id)
        )
    ).all() if conversations else []
    unread = {conversation_id: count for conversation_id, count in unread_rows}

    return [
        {
            "id": str(c.id),
            "property_id": str(c.property_id) if c.property_id else None,
            "other_participant_id": str(c.other_participant(user.id)),
            "status": c.status,
            "last_message_at": c.last_message_at.isoformat() if c.last_message_at else None,
            "unread_count": unread.get(c.id, 0),
        }
        for c in conversations
    ]


async def get_messages(
    db: AsyncSession, user: Profile, conversation_id: uuid.UUID, limit: int = 100
) -> List[Message]:
    """Messages oldest first; the other side's unread messages are marked read."""
    conversation = await _load_conversation(db, user, conversation_id)
    await db.execute(
        update(Message)
        .where(
            Message.conversation_id == conversation.id,
            Message.sender_id != user.id,
            Message.read_at.is_(None),
        )
        .values(read_at=utc_now())
    )
    result = await db.execute(
        select(Message)
        .where(Message.conversation_id == conversation.id)
        .order_by(Message.created_at)
        .limit(limit)
        .execution_options(populate_existing=True)
    )
    return list(result.scalars().all())


async def get_unread_count(db: AsyncSession, user: Profile) -> int:
    return (
        await db.execute(
            select(func.count())
            .select_from(Message)
            .join(Conversation, Conversation.id == Message.conversation_id)
            .where(
                or_(
                    Conversation.participant_one_id == user.id,
                    Conversation.participant_two_id == user.id,
                ),
                Message.sender_id != user.id,
                Message.read_at.is_(None),
            )
        )
    ).scalar_one()


async def archive_conversation(
    db: AsyncSession, user: Profile, conversation_id: uuid.UUID
) -> Conversation:
    conversation = await _load_conversation(db, user, conversation_id)
    conversation.status = "archived"
    await db.flush()
    logger.info("conversation_archived", conversation_id=str(conversation.id))
    return conversation


async def submit_inquiry(
    db: AsyncSession,
    user: Profile,
    property_id: uuid.UUID,
    message: str,
    email_client: Optional[EmailClient] = None,
) -> Conversation:
    """
    Ask a seller about an active listing.

    Opens (or reuses) a conversation with the seller and emails them.

    Raises:
        ValidationError: If the message length is out of range
        NotFoundError: If the listing is not active
        PermissionDeniedError: If the caller owns the listing
    """
    text = (message or "").strip()
    if not MIN_INQUIRY_LENGTH <= len(text) <= MAX_INQUIRY_LENGTH:
        raise ValidationError(
            f"Inquiry must be between {MIN_INQUIRY_LENGTH} and {MAX_INQUIRY_LENGTH} characters"
        )

    prop = await db.get(Property, property_id)
    if prop is None or prop.status != "active":
        raise NotFoundError("Property not found")
    if prop.seller_id == user.id:
        raise PermissionDeniedError("You cannot inquire about your own property")

    conversation = await start_conversation(
        db, user, prop.seller_id, property_id=prop.id, initial_message=text
    )

    if email_client is not None:
        seller = await db.get(Profile, prop.seller_id)
        await send_best_effort(
            email_client,
            inquiry_received_email(
                to=seller.email,
                property_title=prop.title,
                sender_name=user.full_name or "A buyer",
                message=text,
                conversation_url=f"{email_client.settings.site_url}/messages/{conversation.id}",
            ),
        )

    logger.info("inquiry_submitted", property_id=str(prop.id), conversation_id=str(conversation.id))
    return conversation
