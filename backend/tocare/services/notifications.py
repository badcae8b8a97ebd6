import logging

from sqlalchemy.orm import Session

from tocare.db.models import Notification, User
from tocare.telephony import twilio_client

logger = logging.getLogger(__name__)


def send_notification(db: Session, notification_type: str, content: str, recipient_user_id: int | None = None,
                      recipient_phone: str | None = None, task_id: int | None = None,
                      episode_id: int | None = None, channel: str = "SMS") -> Notification:
    """Record a notification and deliver it by SMS when possible. Never raises on delivery."""
    phone = recipient_phone
    if not phone and recipient_user_id is not None:
        user = db.query(User).filter(User.id == recipient_user_id).first()
        phone = user.phone if user else None

    note = Notification(
        recipient_user_id=recipient_user_id,
        recipient_phone=phone,
        notification_type=notification_type,
        channel=channel,
        content=content,
        task_id=task_id,
        episode_id=episode_id,
        status="PENDING",
    )
    db.add(note)

    if not phone or not twilio_client.twilio_configured():
        note.status = "SKIPPED"
        logger.info("[notify] %s skipped (phone=%s, twilio=%s)", notification_type, bool(phone),
                    twilio_client.twilio_configured())
    else:
        message = twilio_client.send_sms(phone, content)
        if message is not None:
            note.status = "SENT"
            note.provider_message_id = getattr(message, "sid", None)
        else:
            note.status = "FAILED"
            note.error = "SMS delivery failed"
    db.flush()
    return note
