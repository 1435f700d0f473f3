from django.urls import path

from . import views

urlpatterns = [
    path('refund/claim/', views.claim_refund_view, name='refund_claim'),
    path('refund/claim-deposit/', views.claim_deposit_refund_view, name='refund_claim_deposit'),
    path('refund/status/<str:reference>/', views.refund_status_view, name='refund_status'),
    path('refund/eligible/', views.eligible_refunds_view, name='refund_eligible'),
    path('payments/confirm/', views.confirm_payment_view, name='payment_confirm'),
]
