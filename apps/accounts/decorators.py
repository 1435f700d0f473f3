import logging
from functools import wraps

from django.http import JsonResponse

from .models import Principal

logger = logging.getLogger(__name__)


def principal_required(view_func):
    """Resolve the session user into a ``Principal`` and pass it to the view.

    Views receive the principal as their second positional argument and
    never read ``request.user`` themselves. Unauthenticated calls get a JSON
    401 instead of a login redirect.
    """
    @wraps(view_func)
    def wrapped(request, *args, **kwargs):
        if not request.user.is_authenticated:
            logger.info('Unauthenticated API call: path=%s', request.path)
            return JsonResponse(
                {'error': 'authentication_required', 'message': 'Sign in first.'},
                status=401,
            )
        principal = Principal.from_user(request.user)
        return view_func(request, principal, *args, **kwargs)
    return wrapped
