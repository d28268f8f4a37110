from .async_subprocess import SubprocessResult, run_async, run_async_stream
from .backoff import backoff, retry_forever

__all__ = [
    "SubprocessResult",
    "run_async",
    "run_async_stream",
    "backoff",
    "retry_forever",
]
