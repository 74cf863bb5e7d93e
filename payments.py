"""
Stripe checkout for the lifetime premium plan.

Premium is granted by reconcile_session(), which is reached both from the
client's success redirect and from the Stripe webhook. The user's
transactionId records the latest session and transactionIds every session
already applied, which is the idempotency marker.
"""

import stripe
import structlog

from config import get_settings

logger = structlog.get_logger(__name__)

PLAN = "Premium Lifetime"
PRODUCT_NAME = "Digital Life Lessons - Premium Plan (Lifetime Access)"
CURRENCY = "bdt"
UNIT_AMOUNT = 150000  # 1500 BDT in paisa

GRANTED = "granted"
ALREADY_PROCESSED = "already_processed"
UNPAID = "unpaid"
NO_USER = "no_user"


def _configure():
    stripe.api_key = get_settings().stripe_secret_key


def create_checkout_session(email: str):
    _configure()
    client_url = get_settings().client_url
    session = stripe.checkout.Session.create(
        mode="payment",
        payment_method_types=["card"],
        line_items=[{
            "price_data": {
                "currency": CURRENCY,
                "product_data": {"name": PRODUCT_NAME},
                "unit_amount": UNIT_AMOUNT,
            },
            "quantity": 1,
        }],
        customer_email=email,
        metadata={"userEmail": email, "plan": PLAN},
        success_url=f"{client_url}/payment/success?session_id={{CHECKOUT_SESSION_ID}}",
        cancel_url=f"{client_url}/payment/cancel",
    )
    logger.info("checkout_session_created", email=email, session_id=session["id"])
    return session


def retrieve_session(session_id: str):
    _configure()
    return stripe.checkout.Session.retrieve(session_id)


def construct_event(payload: bytes, signature: str, secret: str):
    return stripe.Webhook.construct_event(payload, signature, secret)


def _session_email(session):
    try:
        email = session["metadata"]["userEmail"]
    except (KeyError, TypeError):
        email = None
    return email or session["customer_email"]


def reconcile_session(users, session) -> str:
    """Flip isPremium for the buyer of a paid session, at most once per session."""
    session_id = session["id"]
    if users.find_one({"transactionIds": session_id}, {"_id": 1}):
        return ALREADY_PROCESSED
    if session["payment_status"] != "paid":
        return UNPAID

    email = _session_email(session)
    result = users.update_one(
        {"email": email, "transactionIds": {"$ne": session_id}},
        {
            "$set": {"isPremium": True, "transactionId": session_id},
            "$addToSet": {"transactionIds": session_id},
        },
    )
    if result.matched_count == 0:
        if users.find_one({"email": email}, {"_id": 1}):
            return ALREADY_PROCESSED
        logger.warning("premium_user_missing", email=email, session_id=session_id)
        return NO_USER
    logger.info("premium_granted", email=email, session_id=session_id)
    return GRANTED
