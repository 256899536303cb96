from django.urls import path
from . import views

app_name = 'chamados'

urlpatterns = [
    # Client APIs
    path('', views.create_request, name='create-request'),
    path('current/', views.get_current_request, name='current-request'),
    path('<int:request_id>/', views.request_detail, name='request-detail'),
    path('<int:request_id>/events/', views.request_events, name='request-events'),
    path('<int:request_id>/cancel/', views.cancel_request, name='cancel-request'),
    path('<int:request_id>/retry/', views.retry_search, name='retry-search'),
    path('<int:request_id>/acknowledge/', views.acknowledge_request, name='acknowledge-request'),
    path('<int:request_id>/confirm-completion/', views.confirm_completion, name='confirm-completion'),
    path('<int:request_id>/dispute-completion/', views.dispute_completion, name='dispute-completion'),
    path('<int:request_id>/reviews/', views.request_reviews, name='request-reviews'),

    # Provider Actions
    path('<int:request_id>/engage/', views.engage_request, name='engage-request'),
    path('<int:request_id>/decline/', views.decline_request, name='decline-request'),
    path('<int:request_id>/withdraw/', views.withdraw_request, name='withdraw-request'),
    path('<int:request_id>/complete/', views.complete_service, name='complete-service'),

    # Negotiation
    path('<int:request_id>/negotiation/start/', views.begin_negotiation, name='begin-negotiation'),
    path('<int:request_id>/negotiation/propose/', views.propose_value, name='propose-value'),
    path('<int:request_id>/negotiation/accept/', views.accept_value, name='accept-value'),
    path('<int:request_id>/negotiation/direct-payment/', views.set_direct_payment, name='direct-payment'),
    path('<int:request_id>/negotiation/confirm/', views.confirm_and_proceed, name='confirm-and-proceed'),
    path('<int:request_id>/chat/', views.chat_messages, name='chat-messages'),

    # Payments
    path('<int:request_id>/payment/', views.begin_payment, name='begin-payment'),
    path('<int:request_id>/payment/returned/', views.payment_returned, name='payment-returned'),
    path('<int:request_id>/payment/attempts/', views.payment_attempts, name='payment-attempts'),
]

payment_urlpatterns = [
    path('webhook/', views.payment_webhook, name='payment-webhook'),
]
