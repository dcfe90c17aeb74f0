from collections import Counter
from threading import Lock
from typing import Dict, Counter as CounterType

_metrics: CounterType[str] = Counter()
_lock = Lock()


def _inc(key: str) -> None:
    with _lock:
        _metrics[key] += 1


def record_upload_capability() -> None:
    _inc("upload_capabilities")


def record_promotion() -> None:
    _inc("promotions")


def record_source_missing() -> None:
    _inc("promotion_source_missing")


def record_cleanup_failure() -> None:
    _inc("cleanup_failures")


def record_sign_fallback() -> None:
    _inc("sign_fallbacks")


def snapshot() -> Dict[str, int]:
    with _lock:
        return dict(_metrics)


def reset() -> None:
    with _lock:
        _metrics.clear()
