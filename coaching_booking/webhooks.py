import logging

import stripe
from django.conf import settings
from django.http import HttpResponse
from django.views.decorators.csrf import csrf_exempt
from django.views.decorators.http import require_POST

from .services import EnrollmentWorkflow
from .tasks import process_payment_success

logger = logging.getLogger(__name__)

ENROLLMENT_PAYMENT_TYPE = 'course_enrollment'


@csrf_exempt
@require_POST
def stripe_webhook(request):
    payload = request.body
    sig_header = request.META.get('HTTP_STRIPE_SIGNATURE')
    endpoint_secret = settings.STRIPE_WEBHOOK_SECRET

    try:
        event = stripe.Webhook.construct_event(payload, sig_header, endpoint_secret)
    except ValueError:
        return HttpResponse(status=400)
    except stripe.SignatureVerificationError:
        return HttpResponse(status=400)

    session = event['data']['object']
    metadata = session.get('metadata') or {}

    # Only checkout sessions started by the enrollment workflow
    if metadata.get('type') != ENROLLMENT_PAYMENT_TYPE:
        return HttpResponse(status=200)

    order_ref = metadata.get('order_ref') or session.get('client_reference_id')

    if event['type'] == 'checkout.session.completed':
        # Delayed payment methods complete the session before the money arrives
        if session.get('payment_status') == 'unpaid':
            return HttpResponse(status=200)
        process_payment_success.delay(order_ref, session.get('id', ''))
    elif event['type'] == 'checkout.session.async_payment_succeeded':
        process_payment_success.delay(order_ref, session.get('id', ''))
    elif event['type'] == 'checkout.session.async_payment_failed':
        EnrollmentWorkflow.handle_payment_failure(order_ref, reason="The payment was declined.")
    elif event['type'] == 'checkout.session.expired':
        EnrollmentWorkflow.handle_payment_cancel(order_ref)
    else:
        logger.debug(f"Unhandled Stripe event {event['type']} for order {order_ref}")

    return HttpResponse(status=200)
