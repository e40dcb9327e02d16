import logging

import stripe
from django.conf import settings
from django.urls import reverse
from django.utils.module_loading import import_string

from core.exceptions import PaymentGatewayError

logger = logging.getLogger(__name__)


class PaymentGateway:
    """
    Contract for taking a one-off payment for an enrollment.

    `create_order` returns a dict with `order_ref` (ours), `gateway_order_id`
    (theirs) and `url` (where the client completes payment). The outcome is
    reported back asynchronously through the workflow's payment callbacks.
    """

    def create_order(self, amount, currency, metadata):
        raise NotImplementedError

    def cancel_order(self, gateway_order_id):
        """Stops an open order from being paid. Optional for gateways that time out on their own."""
        return None


class StripeGateway(PaymentGateway):
    """Stripe Checkout Sessions. Amounts are already in minor units."""

    def __init__(self, api_key=None, site_url=None):
        self.api_key = api_key or settings.STRIPE_SECRET_KEY
        self.site_url = (site_url or settings.SITE_URL).rstrip('/')

    def create_order(self, amount, currency, metadata):
        order_ref = metadata['order_ref']
        metadata = {**metadata, 'type': 'course_enrollment'}
        try:
            session = stripe.checkout.Session.create(
                api_key=self.api_key,
                payment_method_types=['card'],
                customer_email=metadata.get('email') or None,
                line_items=[{
                    'price_data': {
                        'currency': currency.lower(),
                        'product_data': {'name': metadata.get('course_title', 'Coaching session')},
                        'unit_amount': amount,
                    },
                    'quantity': 1,
                }],
                mode='payment',
                client_reference_id=order_ref,
                success_url=self.site_url + reverse('coaching_booking:payment_return') + f'?order={order_ref}',
                cancel_url=self.site_url + reverse('coaching_booking:payment_return') + f'?order={order_ref}&cancelled=1',
                metadata={k: str(v) for k, v in metadata.items()},
            )
        except stripe.StripeError as e:
            logger.error(f"Stripe Checkout Error for order {order_ref}: {e}")
            raise PaymentGatewayError(order_ref=order_ref) from e

        logger.info(f"Created Stripe checkout session {session.id} for order {order_ref}.")
        return {'order_ref': order_ref, 'gateway_order_id': session.id, 'url': session.url}

    def cancel_order(self, gateway_order_id):
        try:
            stripe.checkout.Session.expire(gateway_order_id, api_key=self.api_key)
        except stripe.StripeError as e:
            raise PaymentGatewayError(gateway_order_id=gateway_order_id) from e
        logger.info(f"Expired Stripe checkout session {gateway_order_id}.")


def get_payment_gateway():
    return import_string(settings.PAYMENT_GATEWAY)()
