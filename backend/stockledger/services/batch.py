# Overview: Bounded-concurrency batch runner with per-item success/error results.

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any, Callable, Iterable, Sequence

from ..extensions import db


@dataclass(frozen=True)
class BatchItemResult:
    """Outcome of one batch item: value on success, the captured exception otherwise."""
    index: int
    item: Any
    value: Any = None
    error: BaseException | None = None

    @property
    def success(self) -> bool:
        return self.error is None


def _call_in_context(app, handler, item):
    if app is None:
        return handler(item)
    with app.app_context():
        try:
            return handler(item)
        finally:
            db.session.remove()


def run_batch(
    items: Iterable[Any],
    handler: Callable[[Any], Any],
    *,
    max_workers: int = 1,
    app=None,
    item_errors: Sequence[type[BaseException]] = (),
) -> list[BatchItemResult]:
    """
    Run handler over items with at most max_workers in flight.

    Results keep input order. Exceptions that are instances of item_errors
    are recorded on that item's result; any other exception aborts the batch
    (pending items are cancelled) and propagates to the caller.

    max_workers <= 1 runs inline in the caller's context. With more workers
    each call runs in a thread that pushes its own app context (when app is
    given) and removes its scoped session afterwards.
    """
    items = list(items)
    captured = tuple(item_errors)

    if max_workers <= 1 or len(items) <= 1:
        results = []
        for index, item in enumerate(items):
            try:
                value = handler(item)
            except captured as exc:
                results.append(BatchItemResult(index=index, item=item, error=exc))
            else:
                results.append(BatchItemResult(index=index, item=item, value=value))
        return results

    executor = ThreadPoolExecutor(max_workers=min(max_workers, len(items)))
    try:
        futures = [executor.submit(_call_in_context, app, handler, item) for item in items]
        results = []
        for index, (item, future) in enumerate(zip(items, futures)):
            try:
                value = future.result()
            except captured as exc:
                results.append(BatchItemResult(index=index, item=item, error=exc))
            else:
                results.append(BatchItemResult(index=index, item=item, value=value))
        return results
    except BaseException:
        executor.shutdown(wait=True, cancel_futures=True)
        raise
    finally:
        executor.shutdown(wait=True)
