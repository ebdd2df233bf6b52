"""
Unit tests for log redaction.
"""
import pytest

from proplinka.monitoring.logging import build_processors, mask_contact, redact_sensitive


class TestRedaction:
    @pytest.mark.unit
    @pytest.mark.parametrize(
        "value, expected",
        [
            ("buyer@example.com", "b***@example.com"),
            ("+27821234567", "***4567"),
            ("123", "***"),
            (["a@x.co", "bob@y.co"], ["a***@x.co", "b***@y.co"]),
            (None, None),
        ],
    )
    def test_mask_contact(self, value, expected) -> None:
        assert mask_contact(value) == expected

    @pytest.mark.unit
    def test_secrets_dropped_and_contacts_masked(self) -> None:
        event = {
            "event": "inquiry_email_sent",
            "email": "seller@example.com",
            "Authorization": "Bearer abc",
            "stripe_signature": "t=1,v1=deadbeef",
            "property_id": "p-1",
        }

        redacted = redact_sensitive(None, "info", event)

        assert redacted["email"] == "s***@example.com"
        assert redacted["Authorization"] == "[redacted]"
        assert redacted["stripe_signature"] == "[redacted]"
        assert redacted["property_id"] == "p-1"

    @pytest.mark.unit
    def test_redaction_runs_before_rendering(self) -> None:
        processors = build_processors(render_json=True)

        assert processors.index(redact_sensitive) == len(processors) - 2
