"""Tests for webhook signature verification."""
import pytest

from orchestrator.agent.signatures import (
    MAX_TIMESTAMP_SKEW_SECONDS,
    check_signed_request,
    compute_webhook_signature,
    verify_webhook_signature,
)
from orchestrator.agent.sms import compute_twilio_signature, validate_twilio_signature
from orchestrator.errors import AuthError

SECRET = "shared-secret"
NOW = 1_700_000_000
BODY = b'{"type":"lead","content":"New form submission"}'


def clock():
    return float(NOW)


class TestWebhookSignature:
    """Test HMAC-SHA256 timestamped signatures."""

    def test_valid_signature_within_window(self):
        signature = compute_webhook_signature(SECRET, NOW, BODY)
        verify_webhook_signature(SECRET, signature, str(NOW), BODY, now=clock)

    def test_sha256_prefix_accepted(self):
        signature = "sha256=" + compute_webhook_signature(SECRET, NOW, BODY)
        verify_webhook_signature(SECRET, signature, str(NOW), BODY, now=clock)

    def test_timestamp_at_window_edge_accepted(self):
        timestamp = NOW - MAX_TIMESTAMP_SKEW_SECONDS
        signature = compute_webhook_signature(SECRET, timestamp, BODY)
        verify_webhook_signature(SECRET, signature, str(timestamp), BODY, now=clock)

    def test_timestamp_one_second_past_window_rejected(self):
        """The identical payload signed one second too early is refused."""
        timestamp = NOW - MAX_TIMESTAMP_SKEW_SECONDS - 1
        signature = compute_webhook_signature(SECRET, timestamp, BODY)
        with pytest.raises(AuthError, match="window"):
            verify_webhook_signature(SECRET, signature, str(timestamp), BODY, now=clock)

    def test_single_byte_mutation_rejected(self):
        signature = compute_webhook_signature(SECRET, NOW, BODY)
        mutated = BODY.replace(b"New", b"Mew")
        with pytest.raises(AuthError, match="Invalid webhook signature"):
            verify_webhook_signature(SECRET, signature, str(NOW), mutated, now=clock)

    def test_wrong_secret_rejected(self):
        signature = compute_webhook_signature("other-secret", NOW, BODY)
        with pytest.raises(AuthError):
            verify_webhook_signature(SECRET, signature, str(NOW), BODY, now=clock)

    @pytest.mark.parametrize("signature, timestamp", [(None, str(NOW)), ("abc", None), ("", "")])
    def test_missing_headers_rejected(self, signature, timestamp):
        with pytest.raises(AuthError, match="Missing"):
            verify_webhook_signature(SECRET, signature, timestamp, BODY, now=clock)

    def test_malformed_timestamp_rejected(self):
        with pytest.raises(AuthError, match="Malformed"):
            verify_webhook_signature(SECRET, "abc", "yesterday", BODY, now=clock)

    def test_non_ascii_signature_rejected(self):
        with pytest.raises(AuthError):
            verify_webhook_signature(SECRET, "sïgnature", str(NOW), BODY, now=clock)


class TestSigningPolicy:
    """Test when signatures are enforced or skipped."""

    def test_configured_secret_always_enforced(self):
        """allow_unsigned never bypasses a configured secret."""
        with pytest.raises(AuthError):
            check_signed_request(SECRET, True, None, None, BODY)

    def test_unsigned_allowed_only_by_opt_out(self):
        assert check_signed_request(None, True, None, None, BODY) is False

    def test_missing_secret_without_opt_out_rejected(self):
        with pytest.raises(AuthError, match="not configured"):
            check_signed_request(None, False, None, None, BODY)


class TestTwilioSignature:
    """Test the SMS provider signature scheme."""

    URL = "https://example.com/v1/agent/sms"
    PARAMS = {"Body": "YES", "From": "+15551234567", "MessageSid": "SM123"}

    def test_valid_signature(self):
        signature = compute_twilio_signature(self.URL, self.PARAMS, "token")
        assert validate_twilio_signature(signature, self.URL, self.PARAMS, "token") is True

    def test_parameter_order_irrelevant(self):
        signature = compute_twilio_signature(self.URL, self.PARAMS, "token")
        reordered = dict(reversed(list(self.PARAMS.items())))
        assert validate_twilio_signature(signature, self.URL, reordered, "token") is True

    def test_tampered_param_rejected(self):
        signature = compute_twilio_signature(self.URL, self.PARAMS, "token")
        tampered = {**self.PARAMS, "Body": "NO"}
        assert validate_twilio_signature(signature, self.URL, tampered, "token") is False

    def test_different_url_rejected(self):
        signature = compute_twilio_signature(self.URL, self.PARAMS, "token")
        assert validate_twilio_signature(signature, "http://internal:8000/v1/agent/sms", self.PARAMS, "token") is False

    def test_missing_signature_rejected(self):
        assert validate_twilio_signature(None, self.URL, self.PARAMS, "token") is False
