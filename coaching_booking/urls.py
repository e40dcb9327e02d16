from django.urls import path

from . import views
from . import webhooks

app_name = 'coaching_booking'

urlpatterns = [
    path('payment/return/', views.payment_return, name='payment_return'),
    path('webhooks/stripe/', webhooks.stripe_webhook, name='stripe_webhook'),
]
