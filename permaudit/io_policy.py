"""Timeout and retry wrapping for directory and ACL calls."""
from __future__ import annotations

import logging
import threading
from typing import Any, Callable, Dict, Optional, Type, TypeVar

from tenacity import Retrying, retry_if_exception, stop_after_attempt, wait_exponential

from permaudit.errors import AuditError, ErrorKind, kind_from_os_error


logger = logging.getLogger(__name__)

T = TypeVar("T")


class CallTimedOut(TimeoutError):
    pass


def call_with_timeout(fn: Callable[..., T], timeout: Optional[float], *args: Any, **kwargs: Any) -> T:
    """Run `fn` and give up waiting after `timeout` seconds.

    A call that overruns is abandoned, not killed: it keeps running on a
    daemon thread until the underlying API returns, and never holds up
    interpreter exit.
    """
    if not timeout:
        return fn(*args, **kwargs)
    outcome: Dict[str, Any] = {"done": False}

    def run() -> None:
        try:
            outcome["value"] = fn(*args, **kwargs)
        except BaseException as exc:  # noqa: BLE001 - re-raised on the calling thread
            outcome["error"] = exc
        finally:
            outcome["done"] = True

    worker = threading.Thread(target=run, name="permaudit-io", daemon=True)
    worker.start()
    worker.join(timeout)
    if not outcome["done"]:
        raise CallTimedOut(f"call did not finish within {timeout}s")
    if "error" in outcome:
        raise outcome["error"]
    return outcome["value"]


def _is_transient(exc: BaseException) -> bool:
    return isinstance(exc, AuditError) and exc.kind is ErrorKind.TRANSIENT


def as_audit_error(exc: BaseException, error_cls: Type[AuditError], op: str, path: str) -> AuditError:
    if isinstance(exc, AuditError):
        return exc
    if isinstance(exc, TimeoutError):
        return error_cls(f"{op} timed out", ErrorKind.TIMEOUT, path)
    if isinstance(exc, OSError):
        return error_cls(f"{op} failed: {exc}", kind_from_os_error(exc), path)
    return error_cls(f"{op} failed: {exc}", ErrorKind.UNKNOWN, path)


def bounded_call(
    fn: Callable[[], T],
    *,
    op: str,
    path: str,
    error_cls: Type[AuditError],
    timeout: Optional[float] = None,
    retries: int = 0,
    backoff: float = 0.0,
) -> T:
    """Call `fn` with a timeout, retrying transient failures with backoff.

    Any failure surfaces as `error_cls` (or the AuditError the provider raised)
    so callers only ever handle the audit taxonomy.
    """

    def attempt_once() -> T:
        try:
            return call_with_timeout(fn, timeout)
        except Exception as exc:  # noqa: BLE001 - normalised into the taxonomy
            raise as_audit_error(exc, error_cls, op, path) from exc

    retryer = Retrying(
        stop=stop_after_attempt(max(0, retries) + 1),
        wait=wait_exponential(multiplier=backoff, max=30),
        retry=retry_if_exception(_is_transient),
        before_sleep=lambda rs: logger.warning(
            "%s on %s failed transiently (attempt %d), retrying", op, path, rs.attempt_number
        ),
        reraise=True,
    )
    result: Any = None
    for attempt in retryer:
        with attempt:
            result = attempt_once()
    return result
