"""
Unit tests for the Resend email client.
"""
import json
from typing import List

import httpx
import pytest
from tenacity import wait_none

from proplinka.integrations.email_client import (
    EmailClient,
    EmailDeliveryError,
    inquiry_received_email,
    property_rejected_email,
    send_best_effort,
)


def _client(responses: List[httpx.Response], seen: List[httpx.Request]) -> EmailClient:
    queue = list(responses)

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return queue.pop(0)

    http = httpx.AsyncClient(base_url="https://api.resend.test", transport=httpx.MockTransport(handler))
    client = EmailClient(http_client=http, max_attempts=3, wait=wait_none())
    client.settings = client.settings.model_copy(update={"resend_api_key": "re_test_key"})
    return client


@pytest.mark.unit
@pytest.mark.asyncio
async def test_disabled_client_skips_send() -> None:
    client = EmailClient()

    result = await client.send(property_rejected_email("s@example.com", "House", "Blurry photos"))

    assert result.sent is False
    assert result.reason == "not_configured"


@pytest.mark.unit
@pytest.mark.asyncio
async def test_send_posts_payload() -> None:
    seen: List[httpx.Request] = []
    client = _client([httpx.Response(200, json={"id": "email_123"})], seen)

    result = await client.send(property_rejected_email("s@example.com", "House", "Blurry photos"))

    assert result.sent is True
    assert result.message_id == "email_123"
    assert seen[0].url.path == "/emails"
    assert seen[0].headers["Authorization"] == "Bearer re_test_key"
    payload = json.loads(seen[0].content)
    assert payload["to"] == ["s@example.com"]
    assert "Blurry photos" in payload["html"]


@pytest.mark.unit
@pytest.mark.asyncio
async def test_retries_server_errors() -> None:
    seen: List[httpx.Request] = []
    client = _client(
        [httpx.Response(503), httpx.Response(429), httpx.Response(200, json={"id": "email_456"})],
        seen,
    )

    result = await client.send(property_rejected_email("s@example.com", "House", "Reason"))

    assert result.sent is True
    assert len(seen) == 3


@pytest.mark.unit
@pytest.mark.asyncio
async def test_gives_up_after_max_attempts() -> None:
    seen: List[httpx.Request] = []
    client = _client([httpx.Response(500)] * 3, seen)

    with pytest.raises(EmailDeliveryError):
        await client.send(property_rejected_email("s@example.com", "House", "Reason"))
    assert len(seen) == 3


@pytest.mark.unit
@pytest.mark.asyncio
async def test_client_errors_are_not_retried() -> None:
    seen: List[httpx.Request] = []
    client = _client([httpx.Response(422, json={"message": "invalid to"})], seen)

    with pytest.raises(EmailDeliveryError, match="422"):
        await client.send(property_rejected_email("bad", "House", "Reason"))
    assert len(seen) == 1


@pytest.mark.unit
@pytest.mark.asyncio
async def test_best_effort_swallows_delivery_errors() -> None:
    seen: List[httpx.Request] = []
    client = _client([httpx.Response(400)], seen)

    result = await send_best_effort(client, property_rejected_email("s@example.com", "House", "R"))

    assert result.sent is False


@pytest.mark.unit
@pytest.mark.asyncio
async def test_bulk_collects_results() -> None:
    seen: List[httpx.Request] = []
    client = _client([httpx.Response(200, json={"id": "a"}), httpx.Response(400)], seen)

    results = await client.send_bulk(
        [
            property_rejected_email("one@example.com", "House", "R"),
            property_rejected_email("two@example.com", "House", "R"),
        ]
    )

    assert [r.sent for r in results] == [True, False]


@pytest.mark.unit
def test_templates_escape_user_content() -> None:
    message = inquiry_received_email(
        to="seller@example.com",
        property_title="Flat <b>deal</b>",
        sender_name="Mallory",
        message="<script>alert(1)</script>",
        conversation_url="https://proplinka.com/messages/1",
    )

    assert "<script>" not in message.html
    assert "&lt;script&gt;" in message.html
