from django.urls import path
from .views import (
    ProviderProfileView,
    ProviderOnlineView,
    ProviderLocationUpdateView,
    ProviderServicesView,
    ProviderCurrentRequestView,
    ProviderHistoryView,
)

urlpatterns = [
    path("profile/", ProviderProfileView.as_view(), name="provider-profile"),
    path("online/", ProviderOnlineView.as_view(), name="provider-online"),
    path("location/", ProviderLocationUpdateView.as_view(), name="provider-location"),
    path("services/", ProviderServicesView.as_view(), name="provider-services"),
    path("current-request/", ProviderCurrentRequestView.as_view(), name="provider-current-request"),
    path("history/", ProviderHistoryView.as_view(), name="provider-history"),
]
