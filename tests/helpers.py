"""
Request helpers for tests: access tokens and signed Stripe webhooks.
"""
import hashlib
import hmac
import json
import time
import uuid
from typing import Any, Dict, Optional

from jose import jwt

from proplinka.config import get_settings
from proplinka.database.models import Profile


def make_token(profile_id: uuid.UUID, expires_in: int = 3600) -> str:
    settings = get_settings()
    return jwt.encode(
        {
            "sub": str(profile_id),
            "aud": settings.auth_jwt_audience,
            "exp": int(time.time()) + expires_in,
        },
        settings.auth_jwt_secret,
        algorithm=settings.auth_jwt_algorithm,
    )


def auth_headers(profile: Profile) -> Dict[str, str]:
    return {"Authorization": f"Bearer {make_token(profile.id)}"}


def sign_webhook(payload: str, secret: Optional[str] = None, timestamp: Optional[int] = None) -> str:
    """Build a Stripe-Signature header the way Stripe does."""
    secret = secret or get_settings().stripe_webhook_secret
    ts = timestamp or int(time.time())
    signature = hmac.new(
        secret.encode("utf-8"), f"{ts}.{payload}".encode("utf-8"), hashlib.sha256
    ).hexdigest()
    return f"t={ts},v1={signature}"


def stripe_event_payload(
    event_type: str, obj: Dict[str, Any], event_id: Optional[str] = None
) -> str:
    return json.dumps(
        {
            "id": event_id or f"evt_{uuid.uuid4().hex}",
            "object": "event",
            "type": event_type,
            "api_version": "2023-10-16",
            "created": int(time.time()),
            "data": {"object": obj},
        }
    )


def checkout_session(
    session_id: str,
    metadata: Dict[str, Any],
    payment_intent: Optional[str] = "pi_test_123",
    amount_total: int = 475000,
    status: str = "complete",
    payment_status: str = "paid",
) -> Dict[str, Any]:
    return {
        "id": session_id,
        "object": "checkout.session",
        "payment_intent": payment_intent,
        "metadata": metadata,
        "amount_total": amount_total,
        "currency": "zar",
        "status": status,
        "payment_status": payment_status,
    }
