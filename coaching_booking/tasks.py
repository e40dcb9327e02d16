import logging

from celery import shared_task
from django.core.management import call_command

logger = logging.getLogger(__name__)


@shared_task
def expire_payment_holds():
    """
    Runs every 5 minutes (Celery Beat).
    Gives back seats held by checkouts that were abandoned or never reported.
    """
    call_command('expire_payment_holds')


@shared_task(bind=True, max_retries=3)
def process_payment_success(self, order_ref, gateway_order_id=''):
    """Settles a paid order outside the webhook request, retrying on database errors."""
    from core.exceptions import PersistenceError
    from .services import EnrollmentWorkflow

    try:
        result = EnrollmentWorkflow.handle_payment_success(order_ref, gateway_order_id)
    except PersistenceError as exc:
        logger.warning(f"Settling order {order_ref} failed, retrying: {exc}")
        raise self.retry(exc=exc, countdown=60)
    return result['type']
