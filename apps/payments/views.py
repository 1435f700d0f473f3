from django.http import JsonResponse
from django.views.decorators.http import require_GET, require_POST

from apps.accounts.decorators import principal_required
from apps.economy.http import json_body, require_field, settlement_endpoint

from . import services


@require_POST
@principal_required
@settlement_endpoint
def claim_refund_view(request, principal):
    payload = json_body(request)
    reference = require_field(payload, 'paymentReference')
    result = services.claim_refund(principal, str(reference))
    return JsonResponse({'success': True, **result.as_dict()})


@require_POST
@principal_required
@settlement_endpoint
def claim_deposit_refund_view(request, principal):
    payload = json_body(request)
    reference = require_field(payload, 'paymentReference')
    result = services.claim_deposit_refund(principal, str(reference))
    return JsonResponse({'success': True, **result.as_dict()})


@require_GET
@principal_required
@settlement_endpoint
def refund_status_view(request, principal, reference):
    return JsonResponse(services.get_refund_status(principal, reference))


@require_GET
@principal_required
def eligible_refunds_view(request, principal):
    refunds = services.list_eligible_refunds(principal)
    return JsonResponse({'refunds': refunds, 'count': len(refunds)})


@require_POST
@principal_required
@settlement_endpoint
def confirm_payment_view(request, principal):
    payload = json_body(request)
    reference = require_field(payload, 'paymentReference')
    tx_hash = require_field(payload, 'transactionHash')
    record = services.confirm_deposit(principal, str(reference), str(tx_hash))
    return JsonResponse({
        'success': True,
        'paymentReference': record.reference,
        'status': record.normalized_status,
        'amount': str(record.amount),
        'transactionHash': record.transaction_hash,
    })
