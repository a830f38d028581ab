# printflow/utils/http.py
import requests
from requests import RequestException

from printflow.domain.errors import (
    AmbiguousOutcome,
    PermanentProviderError,
    TransientProviderError,
)
from printflow.utils.logging import get_logger

logger = get_logger(__name__)

# statuses worth another try
RETRYABLE_STATUSES = {408, 425, 429}


def send(
    method: str,
    url: str,
    *,
    timeout: float,
    allow_status: tuple = (),
    **kwargs,
) -> requests.Response:
    """
    One provider HTTP call mapped onto the error taxonomy:

    - connect failures            -> TransientProviderError (request never sent)
    - read timeouts               -> AmbiguousOutcome (request may have been applied)
    - 5xx / 408 / 429             -> TransientProviderError
    - other 4xx                   -> PermanentProviderError with the provider's code
    """
    try:
        resp = requests.request(method, url, timeout=timeout, **kwargs)
    except requests.ConnectTimeout as e:
        logger.warning(f"{method} {url} connect timeout: {e}")
        raise TransientProviderError("Provider did not accept the connection")
    except requests.Timeout as e:
        logger.warning(f"{method} {url} timed out after send: {e}")
        raise AmbiguousOutcome()
    except requests.ConnectionError as e:
        logger.warning(f"{method} {url} connection error: {e}")
        raise TransientProviderError()
    except RequestException as e:
        logger.error(f"{method} {url} failed: {e}")
        raise TransientProviderError()

    if resp.status_code in allow_status:
        return resp

    if resp.status_code >= 500 or resp.status_code in RETRYABLE_STATUSES:
        logger.warning(f"{method} {url} -> {resp.status_code}")
        raise TransientProviderError()

    if resp.status_code >= 400:
        reason = _reason(resp)
        logger.warning(f"{method} {url} rejected: {resp.status_code} {reason}")
        raise PermanentProviderError(reason)

    return resp


def _reason(resp: requests.Response) -> str:
    try:
        body = resp.json()
    except ValueError:
        return "provider_rejected"
    if isinstance(body, dict):
        error = body.get("error")
        if isinstance(error, dict):
            error = error.get("code")
        code = body.get("code") or error
        if isinstance(code, str) and code:
            return code
    return "provider_rejected"
