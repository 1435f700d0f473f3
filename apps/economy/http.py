"""JSON plumbing shared by the settlement API views."""
import json
import logging
from functools import wraps

from django.http import JsonResponse

from .exceptions import InvariantViolation, SettlementError, ValidationFailed

logger = logging.getLogger(__name__)


def json_body(request):
    try:
        payload = json.loads(request.body or b'{}')
    except (json.JSONDecodeError, UnicodeDecodeError):
        raise ValidationFailed('invalid_json', 'Request body must be JSON.')
    if not isinstance(payload, dict):
        raise ValidationFailed('invalid_json', 'Request body must be a JSON object.')
    return payload


def require_field(payload, name):
    value = payload.get(name)
    if value in (None, ''):
        raise ValidationFailed(f'missing_{name}', f'Missing {name}.')
    return value


def settlement_endpoint(view_func):
    """Turn ``SettlementError`` rejections into JSON error responses."""
    @wraps(view_func)
    def wrapped(request, *args, **kwargs):
        try:
            return view_func(request, *args, **kwargs)
        except SettlementError as exc:
            log = logger.warning if isinstance(exc, InvariantViolation) or exc.status_code >= 500 else logger.info
            log('Rejected %s %s: reason=%s', request.method, request.path, exc.reason)
            return JsonResponse(exc.as_dict(), status=exc.status_code)
    return wrapped
