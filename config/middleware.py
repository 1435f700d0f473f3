import logging
import re
import uuid

logger = logging.getLogger(__name__)

_VALID_REQUEST_ID = re.compile(r'^[A-Za-z0-9._-]{1,64}$')


class RequestIDMiddleware:
    """
    Tags every request with an id and echoes it back as ``X-Request-ID``.

    An id supplied by the upstream proxy is kept when it looks sane, so a
    payout can be traced from the load balancer log to the settlement log.
    """

    HEADER = 'X-Request-ID'

    def __init__(self, get_response):
        self.get_response = get_response

    def __call__(self, request):
        incoming = request.META.get('HTTP_X_REQUEST_ID', '')
        request.request_id = incoming if _VALID_REQUEST_ID.match(incoming) else uuid.uuid4().hex
        response = self.get_response(request)
        response[self.HEADER] = request.request_id
        if response.status_code >= 500:
            logger.warning('Request %s %s failed: status=%s id=%s',
                           request.method, request.path, response.status_code, request.request_id)
        return response
