import logging

from twilio.rest import Client

from tocare.config import TWILIO_ACCOUNT_SID, TWILIO_AUTH_TOKEN, TWILIO_FROM_NUMBER

logger = logging.getLogger(__name__)


def twilio_configured() -> bool:
    return bool(TWILIO_ACCOUNT_SID and TWILIO_AUTH_TOKEN and TWILIO_FROM_NUMBER)


def send_sms(phone_number: str, body: str):
    """Send one SMS; returns the Twilio message resource or None on failure."""
    if not twilio_configured():
        logger.warning("Twilio config missing. Set TWILIO_ACCOUNT_SID, TWILIO_AUTH_TOKEN, TWILIO_FROM_NUMBER in .env.")
        return None
    client = Client(TWILIO_ACCOUNT_SID, TWILIO_AUTH_TOKEN)
    try:
        return client.messages.create(
            to=phone_number,
            from_=TWILIO_FROM_NUMBER,
            body=body
        )
    except Exception as e:
        logger.error("Twilio sms to %s failed: %s", phone_number, e)
        return None
