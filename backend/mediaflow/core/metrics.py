from collections import Counter
from threading import Lock
from typing import Dict, Counter as CounterType

_metrics: CounterType[str] = Counter()
_lock = Lock()


def _inc(key: str, amount: int = 1) -> None:
    if amount <= 0:
        return
    with _lock:
        _metrics[key] += amount


def record_upload_accepted() -> None:
    _inc("uploads_accepted")


def record_upload_rejected(reason: str) -> None:
    _inc("uploads_rejected")
    _inc(f"uploads_rejected_{reason}")


def record_presigned_issued(count: int) -> None:
    _inc("presigned_credentials_issued", count)


def record_variants_generated(count: int) -> None:
    _inc("variants_generated", count)


def record_variant_failures(count: int) -> None:
    _inc("variant_failures", count)


def record_asset_skipped() -> None:
    _inc("variant_assets_skipped")


def record_cleanup(*, marked: int, deleted: int, pruned: int) -> None:
    _inc("orphans_marked", marked)
    _inc("orphans_deleted", deleted)
    _inc("used_records_pruned", pruned)


def snapshot() -> Dict[str, int]:
    with _lock:
        return dict(_metrics)


def reset() -> None:
    with _lock:
        _metrics.clear()
