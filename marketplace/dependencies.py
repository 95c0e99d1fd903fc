from functools import lru_cache

from marketplace.config import get_settings
from marketplace.notifications import EmailNotifier
from marketplace.stripe_service import StripeProcessor


@lru_cache()
def get_processor() -> StripeProcessor:
    settings = get_settings()
    return StripeProcessor(
        api_key=settings.stripe_secret_key,
        webhook_secret=settings.stripe_webhook_secret,
        timeout=settings.stripe_timeout,
    )


@lru_cache()
def get_notifier() -> EmailNotifier:
    settings = get_settings()
    return EmailNotifier(
        host=settings.smtp_host,
        port=settings.smtp_port,
        user=settings.smtp_user,
        password=settings.smtp_password,
        sender=settings.email_from,
        brand=settings.from_name,
        timeout=settings.smtp_timeout,
        enabled=settings.email_enabled,
    )
