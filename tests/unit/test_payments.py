"""
Unit Tests for WayForPay Payments

Tests signatures, payment creation and webhook processing.
"""

import hashlib
import hmac

import pytest

from teachspark.config import Settings
from teachspark.errors import ConfigurationError, NotFoundError, PaymentSignatureError, ValidationError
from teachspark.payments import (
    WEBHOOK_SIGNATURE_FIELDS,
    PaymentService,
    format_field,
    generate_signature,
    map_transaction_status,
    plan_for_amount,
    verify_webhook_signature,
)

SECRET = "flk3409refn54t54t*FNJRET"


def _signed_webhook(**overrides):
    payload = {
        "merchantAccount": "test_merch_n1",
        "orderReference": "TS-11111111-1700000000000",
        "amount": 9,
        "currency": "USD",
        "authCode": "541963",
        "cardPan": "41****8217",
        "transactionStatus": "Approved",
        "reasonCode": 1100,
        "email": "teacher@example.com",
        "cardType": "Visa",
    }
    payload.update(overrides)
    payload["merchantSignature"] = generate_signature((payload.get(f) for f in WEBHOOK_SIGNATURE_FIELDS), SECRET)
    return payload


class TestSignatures:
    """Tests for the HMAC-MD5 helpers."""

    def test_signature_is_hmac_md5_of_joined_fields(self):
        expected = hmac.new(SECRET.encode(), b"a;1;2.5", hashlib.md5).hexdigest()
        assert generate_signature(["a", 1, 2.5], SECRET) == expected

    def test_whole_floats_render_as_integers(self):
        assert format_field(9.0) == "9"
        assert format_field(None) == ""
        assert format_field(True) == "true"

    def test_verify_webhook_signature(self):
        payload = _signed_webhook()
        assert verify_webhook_signature(payload, SECRET) is True
        payload["amount"] = 99
        assert verify_webhook_signature(payload, SECRET) is False

    @pytest.mark.parametrize("status,expected", [
        ("Approved", "completed"),
        ("Declined", "failed"),
        ("Expired", "failed"),
        ("Refunded", "refunded"),
        ("InProcessing", "pending"),
        (None, "pending"),
    ])
    def test_status_mapping(self, status, expected):
        assert map_transaction_status(status) == expected

    def test_plan_for_amount(self):
        assert plan_for_amount(9) == ("professional", 20)
        assert plan_for_amount(3) == ("free", 0)


class TestPaymentService:
    """Test suite for PaymentService."""

    @pytest.fixture
    def settings(self):
        return Settings(wayforpay_merchant_account="test_merch_n1", wayforpay_secret_key=SECRET,
                        app_url="https://teachspark.test")

    @pytest.fixture
    def service(self, supabase, settings):
        return PaymentService(supabase, settings)

    @pytest.fixture
    def user(self, user_id):
        return {"id": user_id, "email": "teacher@example.com", "full_name": "Olena"}

    def test_create_payment(self, service, supabase, user):
        result = service.create_payment(user, 9, "USD")
        data = result["paymentData"]

        assert result["paymentUrl"] == "https://secure.wayforpay.com/pay"
        assert data["orderReference"].startswith("TS-11111111-")
        assert data["serviceUrl"] == "https://teachspark.test/api/payment/wayforpay/webhook"
        assert data["clientFirstName"] == "Olena"
        expected = generate_signature([
            "test_merch_n1", "https://teachspark.test", data["orderReference"], data["orderDate"],
            9, "USD", "TeachSpark Pro Subscription", 1, 9,
        ], SECRET)
        assert data["merchantSignature"] == expected

        payment = supabase.rows("payments")[0]
        assert payment["status"] == "pending"
        assert payment["order_reference"] == data["orderReference"]

    def test_create_payment_rejects_bad_amount(self, service, user):
        with pytest.raises(ValidationError):
            service.create_payment(user, 0)

    def test_create_payment_requires_configuration(self, supabase, user):
        service = PaymentService(supabase, Settings())
        with pytest.raises(ConfigurationError):
            service.create_payment(user, 9)

    def test_approved_webhook_upgrades_subscription(self, service, supabase, user_id):
        supabase.seed("user_profiles", {"id": user_id, "subscription_type": "free", "generation_count": 3})
        supabase.seed("payments", {"user_id": user_id, "order_reference": "TS-11111111-1700000000000",
                                   "status": "pending", "amount": 9})

        response = service.handle_webhook(_signed_webhook())

        assert response["status"] == "accept"
        assert response["signature"] == generate_signature(
            [response["orderReference"], "accept", response["time"]], SECRET)

        payments = supabase.rows("payments")
        assert len(payments) == 1
        assert payments[0]["status"] == "completed"
        assert payments[0]["transaction_id"] == "541963"

        profile = supabase.rows("user_profiles")[0]
        assert profile["subscription_type"] == "professional"
        assert profile["generation_count"] == 0
        assert profile["subscription_expires_at"]

        history = supabase.rows("subscription_history")[0]
        assert history["previous_type"] == "free"
        assert history["generations_added"] == 20

        actions = [row["action"] for row in supabase.rows("activity_log")]
        assert actions == ["payment_succeeded", "subscription_started"]

    def test_declined_webhook_records_failure(self, service, supabase, user_id):
        supabase.seed("user_profiles", {"id": user_id, "subscription_type": "free"})
        supabase.seed("payments", {"user_id": user_id, "order_reference": "TS-11111111-1700000000000"})

        service.handle_webhook(_signed_webhook(transactionStatus="Declined", reasonCode=1101))

        assert supabase.rows("payments")[0]["status"] == "failed"
        assert supabase.rows("user_profiles")[0]["subscription_type"] == "free"
        assert [row["action"] for row in supabase.rows("activity_log")] == ["payment_failed"]

    def test_webhook_with_bad_signature(self, service):
        payload = _signed_webhook()
        payload["merchantSignature"] = "forged"
        with pytest.raises(PaymentSignatureError):
            service.handle_webhook(payload)

    def test_webhook_for_unknown_order(self, service):
        with pytest.raises(NotFoundError):
            service.handle_webhook(_signed_webhook(orderReference="TS-unknown"))
