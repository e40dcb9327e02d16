"""
URL configuration for the coaching_platform project.

Only the operator admin and the payment gateway callback are exposed over HTTP;
everything else is called in-process by the surrounding site.
"""
from django.contrib import admin
from django.urls import path, include


urlpatterns = [
    path('admin/', admin.site.urls),
    path('coach/', include('coaching_booking.urls')),
]
