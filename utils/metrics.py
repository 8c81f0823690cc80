import threading
from collections import defaultdict
from typing import Any, Dict, Tuple

_lock = threading.Lock()
_counters: Dict[Tuple[str, Tuple[Tuple[str, str], ...]], int] = defaultdict(int)
_latency: Dict[Tuple[str, Tuple[Tuple[str, str], ...]], list] = defaultdict(lambda: [0, 0.0, 0.0])


def _key(name: str, labels: Dict[str, Any]) -> Tuple[str, Tuple[Tuple[str, str], ...]]:
    return name, tuple(sorted((k, str(v)) for k, v in labels.items()))


def incr(name: str, value: int = 1, **labels: Any) -> None:
    with _lock:
        _counters[_key(name, labels)] += int(value)


def observe_ms(name: str, duration_ms: float, **labels: Any) -> None:
    with _lock:
        bucket = _latency[_key(name, labels)]
        bucket[0] += 1
        bucket[1] += float(duration_ms)
        bucket[2] = max(bucket[2], float(duration_ms))


def _render(key: Tuple[str, Tuple[Tuple[str, str], ...]]) -> str:
    name, labels = key
    if not labels:
        return name
    return name + "{" + ",".join(f"{k}={v}" for k, v in labels) + "}"


def snapshot() -> dict:
    with _lock:
        counters = {_render(k): v for k, v in _counters.items()}
        latency = {
            _render(k): {"count": c, "avg_ms": round(total / c, 3) if c else 0.0, "max_ms": round(mx, 3)}
            for k, (c, total, mx) in _latency.items()
        }
    return {"counters": counters, "latency": latency}
