from contextlib import contextmanager
import concurrent.futures

import requests
from google.api_core import exceptions as google_exceptions

from errors import TransientIOError

TRANSIENT_GOOGLE_ERRORS = (
    google_exceptions.TooManyRequests,
    google_exceptions.InternalServerError,
    google_exceptions.BadGateway,
    google_exceptions.ServiceUnavailable,
    google_exceptions.GatewayTimeout,
    google_exceptions.DeadlineExceeded,
)

TRANSIENT_NETWORK_ERRORS = (
    requests.exceptions.ConnectionError,
    requests.exceptions.Timeout,
    concurrent.futures.TimeoutError,
    TimeoutError,
)


def is_rate_limit_error(error):
    """403 rateLimitExceeded / quotaExceeded are reported as Forbidden."""
    if not isinstance(error, google_exceptions.Forbidden):
        return False
    reasons = {e.get('reason') for e in (error.errors or []) if isinstance(e, dict)}
    return bool(reasons & {'rateLimitExceeded', 'quotaExceeded', 'backendError'})


@contextmanager
def transient_google_errors(action):
    """Re-raise timeouts, rate limits and 5xx responses as TransientIOError."""
    try:
        yield
    except TRANSIENT_GOOGLE_ERRORS + TRANSIENT_NETWORK_ERRORS as e:
        raise TransientIOError(f'{action} failed: {e}') from e
    except google_exceptions.Forbidden as e:
        if is_rate_limit_error(e):
            raise TransientIOError(f'{action} rate limited: {e}') from e
        raise
