from django.http import JsonResponse
from django.views.decorators.http import require_GET, require_POST

from apps.accounts.decorators import principal_required
from apps.economy.exceptions import ValidationFailed
from apps.economy.http import json_body, require_field, settlement_endpoint

from . import services


def _match_id(value):
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValidationFailed('invalid_matchId', 'matchId must be an integer.')


@require_POST
@principal_required
@settlement_endpoint
def claim_view(request, principal):
    payload = json_body(request)
    match_id = _match_id(require_field(payload, 'matchId'))
    result = services.claim_winnings(principal, match_id)
    return JsonResponse({'success': True, **result.as_dict()})


@require_GET
@principal_required
@settlement_endpoint
def claim_status_view(request, principal, match_id):
    return JsonResponse(services.get_claim_status(principal, match_id))
