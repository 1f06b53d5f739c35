import httpx
from tenacity import retry, retry_if_exception, stop_after_attempt, wait_exponential_jitter

from slab.logging import get_logger

_logger = get_logger(__name__)

MAX_ATTEMPTS = 3


def _is_retryable(exc: BaseException) -> bool:
    if isinstance(exc, httpx.HTTPStatusError):
        status = exc.response.status_code
        return status in {408, 409, 429} or status >= 500
    return isinstance(exc, httpx.ConnectError | httpx.ReadTimeout | httpx.RemoteProtocolError)


def _log_retry(retry_state) -> None:
    _logger.warning(
        "Ollama request failed (attempt %d/%d), retrying: %s",
        retry_state.attempt_number,
        MAX_ATTEMPTS,
        retry_state.outcome.exception(),
    )


@retry(
    retry=retry_if_exception(_is_retryable),
    stop=stop_after_attempt(MAX_ATTEMPTS),
    wait=wait_exponential_jitter(initial=0.5, max=8, jitter=2),
    reraise=True,
    before_sleep=_log_retry,
)
async def with_retry(fn, *args, **kwargs):
    return await fn(*args, **kwargs)
