from django.contrib import admin
from django.urls import path, include

from chamados.urls import payment_urlpatterns
from .views import health_check

urlpatterns = [
    path('admin/', admin.site.urls),
    path("health/", health_check), # Health check endpoint

    # Service request lifecycle, negotiation, chat and payment (at /api/requests/)
    path('api/requests/', include('chamados.urls')),

    # Gateway push (at /api/payments/webhook/)
    path('api/payments/', include(payment_urlpatterns)),

    # Provider APIs (profile, availability, location, history)
    path('api/provider/', include('providers.urls')),
]
