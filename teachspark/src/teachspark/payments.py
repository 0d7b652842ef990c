"""
WayForPay Payments

Creates signed WayForPay purchase forms and processes the service-url
webhook that upgrades a user's subscription.

Signatures are HMAC-MD5 (hex) over `;`-joined fields, keyed with the
merchant secret: https://wiki.wayforpay.com/view/852091
"""

import hashlib
import hmac
import logging
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterable, Optional

from teachspark.activity_tracking import ActivityTracker
from teachspark.config import Settings
from teachspark.errors import (
    ConfigurationError,
    NotFoundError,
    PaymentSignatureError,
    ValidationError,
)

logger = logging.getLogger(__name__)

DEFAULT_PRODUCT_NAME = "TeachSpark Pro Subscription"
PRO_PLAN_MIN_AMOUNT = 9
PRO_PLAN_GENERATIONS = 20
SUBSCRIPTION_DAYS = 30

STATUS_MAP = {
    "Approved": "completed",
    "Declined": "failed",
    "Expired": "failed",
    "Refunded": "refunded",
}

WEBHOOK_SIGNATURE_FIELDS = (
    "merchantAccount",
    "orderReference",
    "amount",
    "currency",
    "authCode",
    "cardPan",
    "transactionStatus",
    "reasonCode",
)


def format_field(value: Any) -> str:
    """Render a value the way WayForPay does when building the signature string."""
    if value is None:
        return ""
    if isinstance(value, bool):
        return str(value).lower()
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def generate_signature(fields: Iterable[Any], secret: str) -> str:
    message = ";".join(format_field(f) for f in fields)
    return hmac.new(secret.encode("utf-8"), message.encode("utf-8"), hashlib.md5).hexdigest()


def verify_webhook_signature(payload: Dict[str, Any], secret: str) -> bool:
    expected = generate_signature((payload.get(name) for name in WEBHOOK_SIGNATURE_FIELDS), secret)
    return hmac.compare_digest(expected, str(payload.get("merchantSignature") or ""))


def map_transaction_status(transaction_status: Optional[str]) -> str:
    return STATUS_MAP.get(transaction_status or "", "pending")


def plan_for_amount(amount: float):
    """Return (plan_type, generations) bought by a payment amount."""
    if amount >= PRO_PLAN_MIN_AMOUNT:
        return "professional", PRO_PLAN_GENERATIONS
    return "free", 0


class PaymentService:
    """WayForPay purchase creation and webhook processing."""

    def __init__(self, supabase, settings: Settings, tracker: Optional[ActivityTracker] = None):
        self.supabase = supabase
        self.settings = settings
        self.tracker = tracker or ActivityTracker(supabase)

    def _require_config(self):
        missing = [name for name, value in (
            ("WAYFORPAY_MERCHANT_ACCOUNT", self.settings.wayforpay_merchant_account),
            ("WAYFORPAY_SECRET_KEY", self.settings.wayforpay_secret_key),
            ("APP_URL", self.settings.app_url),
        ) if not value]
        if missing:
            logger.error(f"❌ [Payments] Missing configuration: {', '.join(missing)}")
            raise ConfigurationError("Payment system is not configured. Please contact support.")

    def create_payment(
        self,
        user: Dict[str, Any],
        amount: float,
        currency: str = "USD",
        product_name: str = DEFAULT_PRODUCT_NAME,
        language: str = "UA",
    ) -> Dict[str, Any]:
        """
        Create a pending payment and the signed WayForPay form data.

        Args:
            user: Authenticated user dict (id, email, full_name)
            amount: Price in `currency`
            currency: ISO currency code
            product_name: Line item name
            language: WayForPay checkout language

        Returns:
            dict with paymentData (including merchantSignature) and paymentUrl
        """
        self._require_config()
        if not amount or amount <= 0:
            raise ValidationError("Invalid amount")

        currency = currency or "USD"
        product_name = product_name or DEFAULT_PRODUCT_NAME
        order_reference = f"TS-{user['id'][:8]}-{int(time.time() * 1000)}"
        order_date = int(time.time())
        app_url = self.settings.app_url

        payment_data = {
            "merchantAccount": self.settings.wayforpay_merchant_account,
            "merchantDomainName": app_url,
            "orderReference": order_reference,
            "orderDate": order_date,
            "amount": amount,
            "currency": currency,
            "productName": [product_name],
            "productCount": [1],
            "productPrice": [amount],
            "clientEmail": user.get("email") or "",
            "clientFirstName": user.get("full_name") or "User",
            "clientLastName": "",
            "language": language,
            "serviceUrl": f"{app_url}/api/payment/wayforpay/webhook",
            "returnUrl": f"{app_url}/payment/success",
        }
        payment_data["merchantSignature"] = generate_signature([
            payment_data["merchantAccount"],
            payment_data["merchantDomainName"],
            order_reference,
            order_date,
            amount,
            currency,
            product_name,
            1,
            amount,
        ], self.settings.wayforpay_secret_key)

        self.supabase.table('payments').insert({
            "user_id": user["id"],
            "order_reference": order_reference,
            "amount": amount,
            "currency": currency,
            "status": "pending",
            "product_name": product_name,
        }).execute()

        logger.info(f"💳 [Payments] Created order {order_reference} ({amount} {currency})")
        return {"paymentData": payment_data, "paymentUrl": self.settings.wayforpay_domain}

    def build_accept_response(self, order_reference: str) -> Dict[str, Any]:
        now = int(time.time())
        return {
            "orderReference": order_reference,
            "status": "accept",
            "time": now,
            "signature": generate_signature([order_reference, "accept", now], self.settings.wayforpay_secret_key),
        }

    def _find_payment_owner(self, order_reference: str) -> str:
        result = self.supabase.table('payments') \
            .select('user_id') \
            .eq('order_reference', order_reference) \
            .limit(1) \
            .execute()
        if not result.data:
            raise NotFoundError(f"Unknown order reference: {order_reference}")
        return result.data[0]["user_id"]

    def handle_webhook(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        """
        Process a WayForPay service-url notification.

        Raises:
            PaymentSignatureError: signature does not match
            NotFoundError: order was not created by this service

        Returns:
            Signed accept response for WayForPay
        """
        self._require_config()
        order_reference = payload.get("orderReference") or ""
        if not verify_webhook_signature(payload, self.settings.wayforpay_secret_key):
            logger.warning(f"⚠️ [Payments] Invalid webhook signature for {order_reference}")
            raise PaymentSignatureError("Invalid signature")

        user_id = self._find_payment_owner(order_reference)
        status = map_transaction_status(payload.get("transactionStatus"))
        amount = float(payload.get("amount") or 0)
        plan_type, generations = plan_for_amount(amount)
        logger.info(f"💳 [Payments] Webhook {order_reference}: {payload.get('transactionStatus')} → {status}")

        result = self.supabase.table('payments').upsert({
            "user_id": user_id,
            "order_reference": order_reference,
            "amount": amount,
            "currency": payload.get("currency"),
            "status": status,
            "payment_system": "wayforpay",
            "plan_type": plan_type,
            "generations_granted": generations,
            "wayforpay_order_id": order_reference,
            "transaction_id": payload.get("authCode") or None,
            "payment_method": payload.get("cardType") or None,
            "customer_email": payload.get("email") or None,
            "customer_phone": payload.get("phone") or None,
            "raw_response": payload,
            "webhook_received_at": datetime.now(timezone.utc).isoformat(),
        }, on_conflict='order_reference').execute()
        payment = result.data[0] if result.data else {}
        payment_id = payment.get("id")

        metadata = {"amount": amount, "currency": payload.get("currency"), "plan": plan_type,
                    "generations": generations}
        if status == "completed":
            self._activate_subscription(user_id, payment_id, plan_type, generations, metadata)
        elif status == "failed":
            self.tracker.track_payment(user_id, payment_id, succeeded=False, metadata={
                **metadata, "reason": payload.get("reason"), "reasonCode": payload.get("reasonCode"),
            })

        return self.build_accept_response(order_reference)

    def _activate_subscription(self, user_id: str, payment_id: Optional[str], plan_type: str,
                               generations: int, metadata: Dict[str, Any]) -> None:
        result = self.supabase.table('user_profiles') \
            .select('subscription_type, generation_count') \
            .eq('id', user_id) \
            .limit(1) \
            .execute()
        if not result.data:
            logger.warning(f"⚠️ [Payments] No profile for user {user_id[:8]}..., subscription not updated")
            return
        profile = result.data[0]
        previous_type = profile.get("subscription_type")
        previous_count = profile.get("generation_count") or 0

        now = datetime.now(timezone.utc)
        self.supabase.table('user_profiles').update({
            "subscription_type": plan_type,
            "subscription_expires_at": (now + timedelta(days=SUBSCRIPTION_DAYS)).isoformat(),
            "generation_count": 0,
            "last_generation_reset": now.isoformat(),
            "updated_at": now.isoformat(),
        }).eq('id', user_id).execute()

        self.supabase.table('subscription_history').insert({
            "user_id": user_id,
            "payment_id": payment_id,
            "previous_type": previous_type,
            "new_type": plan_type,
            "change_reason": "payment_received",
            "previous_generations": previous_count,
            "new_generations": 0,
            "generations_added": generations,
        }).execute()

        self.tracker.track_payment(user_id, payment_id, succeeded=True, metadata=metadata)
        if previous_type != plan_type:
            self.tracker.track_subscription_change(user_id, previous_type, plan_type,
                                                   {"generations": generations})
        logger.info(f"✅ [Payments] User {user_id[:8]}... upgraded {previous_type} → {plan_type}")
