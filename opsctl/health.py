from __future__ import annotations

import time
from typing import Callable

import httpx

from .util import log_event, setup_json_logger

_LOG = setup_json_logger("opsctl.health")

DEFAULT_HTTP_TIMEOUT_S = 5.0


def wait_until(
    probe: Callable[[], bool],
    *,
    attempts: int,
    interval: float,
    sleep: Callable[[float], None] = time.sleep,
) -> bool:
    for attempt in range(1, attempts + 1):
        if probe():
            return True
        if attempt < attempts:
            sleep(interval)
    return False


def http_ok(url: str, *, timeout: float = DEFAULT_HTTP_TIMEOUT_S) -> bool:
    try:
        resp = httpx.get(url, timeout=timeout, follow_redirects=True)
    except httpx.HTTPError as exc:
        log_event(_LOG, "health.http.unreachable", url=url, error=type(exc).__name__)
        return False
    ok = resp.status_code < 500
    log_event(_LOG, "health.http.probe", url=url, status_code=resp.status_code, ok=ok)
    return ok


def wait_for_http(
    url: str,
    name: str,
    *,
    attempts: int = 30,
    interval: float = 2.0,
    sleep: Callable[[float], None] = time.sleep,
) -> bool:
    print(f"Waiting for {name} to be ready at {url}...")
    ready = wait_until(lambda: http_ok(url), attempts=attempts, interval=interval, sleep=sleep)
    log_event(_LOG, "health.http.wait", name=name, url=url, ready=ready, attempts=attempts)
    return ready
