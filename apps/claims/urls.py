from django.urls import path

from . import views

urlpatterns = [
    path('claim/', views.claim_view, name='claim'),
    path('claim/status/<int:match_id>/', views.claim_status_view, name='claim_status'),
]
