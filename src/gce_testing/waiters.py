"""Polling Cloud Monitoring, Cloud Logging and Cloud Trace for agent data.

Data written by the agent takes minutes to become queryable, so every
waiter repeats a point-in-time query over a trailing window. Each query
ends in exactly one of three outcomes, which are never collapsed:

- found: the data is returned
- confirmed empty: no error, nothing there (yet); the query returns None
- error: retried when the classifier says so, raised otherwise

Confirmed-empty and retriable errors both lead to another attempt after a
fixed pause. When the attempt budget runs out on a confirmed-empty result
the waiter returns None; when it runs out on an error it raises
ExhaustedRetriesError with that error as the cause.

The Google clients are synchronous; every query (including pagination)
runs in a worker thread.
"""

from __future__ import annotations

import asyncio
import datetime
from collections.abc import Iterable, Sequence
from typing import TYPE_CHECKING, Any

from google.cloud import monitoring_v3, trace_v1

from gce_testing import classify, constants
from gce_testing._logging import get_logger
from gce_testing.exceptions import ExhaustedRetriesError, InconclusiveQueryError, UnexpectedDataError
from gce_testing.retry import RetryPolicy, retry_async

if TYPE_CHECKING:
    from gce_testing.models import VM
    from gce_testing.registry import ServiceRegistry

logger = get_logger(__name__)


def _now() -> datetime.datetime:
    return datetime.datetime.now(datetime.UTC)


def _is_none(result: object) -> bool:
    return result is None


# =============================================================================
# Metrics
# =============================================================================


def metric_filter(vm: VM, metric: str, extra_filters: Sequence[str] = (), is_prometheus: bool = False) -> str:
    """Monitoring filter selecting `metric` as written by `vm`.

    Prometheus metrics carry the VM in the namespace label instead of the
    instance_id label.
    """
    filters = [f'metric.type = "{metric}"']
    if is_prometheus:
        filters.append(f'resource.labels.namespace = "{vm.id}/{vm.name}"')
    else:
        filters.append(f'resource.labels.instance_id = "{vm.id}"')
    return " AND ".join([*filters, *extra_filters])


def lookup_metric(
    client: Any,
    vm: VM,
    metric: str,
    window: datetime.timedelta,
    extra_filters: Sequence[str] = (),
    is_prometheus: bool = False,
) -> Iterable[Any]:
    """One list_time_series request over the trailing `window` (blocking)."""
    now = _now()
    return client.list_time_series(
        request={
            "name": f"projects/{vm.project}",
            "filter": metric_filter(vm, metric, extra_filters, is_prometheus),
            "interval": monitoring_v3.TimeInterval(start_time=now - window, end_time=now),
            "view": monitoring_v3.ListTimeSeriesRequest.TimeSeriesView.FULL,
        }
    )


def non_empty_series_list(series: Iterable[Any], minimum_required_series: int) -> list[Any] | None:
    """Evaluate a time series iterator.

    Series without points are skipped.

    Returns:
        At least `minimum_required_series` series, or None when there were none

    Raises:
        ValueError: minimum_required_series < 1
        InconclusiveQueryError: Some series, but fewer than required
    """
    if minimum_required_series < 1:
        raise ValueError("minimum_required_series cannot be negative or 0")
    found = []
    for ts in series:
        if not ts.points:
            continue
        found.append(ts)
    if not found:
        return None
    if len(found) < minimum_required_series:
        raise InconclusiveQueryError(
            f"found {len(found)} time series, need at least {minimum_required_series}",
            context={"found": len(found), "minimum": minimum_required_series},
        )
    return found


async def _query_metric_series(
    registry: ServiceRegistry,
    vm: VM,
    metric: str,
    window: datetime.timedelta,
    extra_filters: Sequence[str],
    is_prometheus: bool,
    minimum_required_series: int,
) -> list[Any] | None:
    def query() -> list[Any] | None:
        pager = lookup_metric(registry.metric_client, vm, metric, window, extra_filters, is_prometheus)
        return non_empty_series_list(pager, minimum_required_series)

    return await asyncio.to_thread(query)


async def wait_for_metric_series(
    registry: ServiceRegistry,
    vm: VM,
    metric: str,
    window: datetime.timedelta,
    extra_filters: Sequence[str] = (),
    is_prometheus: bool = False,
    minimum_required_series: int = 1,
) -> list[Any] | None:
    """Wait until `metric` has data from `vm`.

    Returns:
        The series with points, or None if every attempt came back empty

    Raises:
        ExhaustedRetriesError: The last attempt failed with a retriable error
            (InconclusiveQueryError when too few series were found)
        google.api_core.exceptions.GoogleAPICallError: Non-retriable query failure
    """
    if minimum_required_series < 1:
        raise ValueError("minimum_required_series cannot be negative or 0")
    policy = RetryPolicy(
        classifier=classify.is_retriable_lookup_error,
        backoff_seconds=constants.QUERY_BACKOFF_SECONDS,
        max_attempts=constants.QUERY_MAX_ATTEMPTS,
        description=f"wait for metric {metric} (extra filters {list(extra_filters)})",
        retry_on_result=_is_none,
    )
    series = await retry_async(
        lambda: _query_metric_series(
            registry, vm, metric, window, extra_filters, is_prometheus, minimum_required_series
        ),
        policy,
    )
    if series is not None:
        logger.info(f"Successfully found {len(series)} series for {metric}", extra={"vm": vm.name})
    return series


async def wait_for_metric(
    registry: ServiceRegistry,
    vm: VM,
    metric: str,
    window: datetime.timedelta,
    extra_filters: Sequence[str] = (),
    is_prometheus: bool = False,
) -> Any | None:
    """First series of `metric` from `vm`, see wait_for_metric_series()."""
    series = await wait_for_metric_series(registry, vm, metric, window, extra_filters, is_prometheus)
    if series is None:
        return None
    logger.info(f"wait_for_metric metric={metric}, series={series[0]}", extra={"vm": vm.name})
    return series[0]


async def assert_metric_missing(
    registry: ServiceRegistry,
    vm: VM,
    metric: str,
    window: datetime.timedelta,
    is_prometheus: bool = False,
) -> None:
    """Succeed once a query confirms `metric` has no data from `vm`.

    Prometheus metric descriptors only exist after the first write, so for
    them a NOT_FOUND on every attempt also counts as missing.

    Raises:
        UnexpectedDataError: A query found data
        ExhaustedRetriesError: No query got a conclusive answer
    """
    attempts = constants.QUERY_MAX_ATTEMPTS_METRIC_MISSING
    descriptor_not_found = 0
    last_error: BaseException | None = None

    for attempt in range(1, attempts + 1):
        try:
            series = await _query_metric_series(registry, vm, metric, window, (), is_prometheus, 1)
        except Exception as e:
            logger.info(
                f"assert_metric_missing(metric={metric}): err={e}, attempt ({attempt}/{attempts})",
                extra={"vm": vm.name},
            )
            if not classify.is_retriable_lookup_error(e):
                raise
            last_error = e
            if is_prometheus and classify.is_descriptor_not_found(e):
                descriptor_not_found += 1
        else:
            if series:
                raise UnexpectedDataError(
                    f"assert_metric_missing(metric={metric!r}): unexpectedly found data for metric",
                    context={"vm": vm.name, "series": len(series)},
                )
            return

        if attempt < attempts:
            await asyncio.sleep(constants.QUERY_BACKOFF_SECONDS)

    if not is_prometheus:
        raise ExhaustedRetriesError(
            f"assert_metric_missing(metric={metric!r}): no successful queries to the backend", attempts, last_error
        )
    if descriptor_not_found != attempts:
        raise ExhaustedRetriesError(
            f"assert_metric_missing(metric={metric!r}): at least one query failed with something other than NOT_FOUND",
            attempts,
            last_error,
        )


# =============================================================================
# Logs
# =============================================================================


def log_filter(vm: VM, log_name_regex: str, window: datetime.timedelta, query: str = "") -> str:
    """Logging filter for entries from `vm` in logs matching `log_name_regex`."""
    start = (_now() - window).strftime("%Y-%m-%dT%H:%M:%SZ")
    result = (
        f'logName=~"projects/{vm.project}/logs/{log_name_regex}" '
        f'AND resource.labels.instance_id="{vm.id}" '
        f'AND timestamp > "{start}"'
    )
    if query:
        result += f" AND {query}"
    return result


def _first_matching_log(client: Any, vm: VM, log_filter_: str) -> Any | None:
    """Walk every match (logged for debugging) and return the first one."""
    first = None
    for entry in client.list_entries(filter_=log_filter_, resource_names=[f"projects/{vm.project}"]):
        logger.info(f"Found matching log entry: {entry}", extra={"vm": vm.name})
        if first is None:
            first = entry
    return first


async def _matching_log(
    registry: ServiceRegistry, vm: VM, log_name_regex: str, window: datetime.timedelta, query: str
) -> Any | None:
    flt = log_filter(vm, log_name_regex, window, query)
    logger.info(flt, extra={"vm": vm.name})
    client = registry.log_client(vm.project)
    return await asyncio.to_thread(_first_matching_log, client, vm, flt)


async def query_log(
    registry: ServiceRegistry,
    vm: VM,
    log_name_regex: str,
    window: datetime.timedelta,
    query: str = "",
    max_attempts: int | None = None,
) -> Any | None:
    """First log entry from `vm` matching the query, or None if none showed up.

    Args:
        log_name_regex: Matched against the log ID, e.g. "syslog" or "ops-agent-.*"
        window: Trailing time window, measured from each attempt
        query: Additional Logging query terms, ANDed in
        max_attempts: Defaults to LOG_QUERY_MAX_ATTEMPTS

    Raises:
        ValueError: max_attempts is less than 1
    """
    if max_attempts is None:
        max_attempts = constants.LOG_QUERY_MAX_ATTEMPTS
    if max_attempts < 1:
        raise ValueError(f"max_attempts must be at least 1, got {max_attempts}")
    policy = RetryPolicy(
        classifier=classify.is_retriable_log_error,
        backoff_seconds=constants.LOG_QUERY_BACKOFF_SECONDS,
        max_attempts=max_attempts,
        description=f"query log {log_name_regex}",
        retry_on_result=_is_none,
    )
    return await retry_async(lambda: _matching_log(registry, vm, log_name_regex, window, query), policy)


async def wait_for_log(
    registry: ServiceRegistry,
    vm: VM,
    log_name_regex: str,
    window: datetime.timedelta,
    query: str = "",
) -> Any:
    """Like query_log(), but a log that never shows up is an error.

    Raises:
        ExhaustedRetriesError: No matching entry within the attempt budget
    """
    entry = await query_log(registry, vm, log_name_regex, window, query)
    if entry is None:
        raise ExhaustedRetriesError(
            f"query_log() failed: {log_name_regex} not found",
            constants.LOG_QUERY_MAX_ATTEMPTS,
            context={"vm": vm.name, "query": query},
        )
    return entry


async def assert_log_missing(
    registry: ServiceRegistry,
    vm: VM,
    log_name_regex: str,
    window: datetime.timedelta,
    query: str = "",
) -> None:
    """Succeed once a query confirms there is no matching log entry.

    Internal errors are retried; when every attempt hits one, the assertion
    passes.

    Raises:
        UnexpectedDataError: A matching entry was found
    """
    attempts = constants.QUERY_MAX_ATTEMPTS_LOG_MISSING
    for attempt in range(1, attempts + 1):
        try:
            entry = await _matching_log(registry, vm, log_name_regex, window, query)
        except Exception as e:
            logger.info(f"Query returned err={e}, attempt={attempt}", extra={"vm": vm.name})
            if not classify.is_retriable_log_missing_error(e):
                raise
        else:
            if entry is not None:
                raise UnexpectedDataError(
                    f"assert_log_missing(log={query!r}): unexpectedly found data for log",
                    context={"vm": vm.name, "log_name_regex": log_name_regex},
                )
            return
        if attempt < attempts:
            await asyncio.sleep(constants.LOG_QUERY_BACKOFF_SECONDS)
    logger.warning(
        f"assert_log_missing(log={query!r}): no conclusive query in {attempts} attempts, assuming missing",
        extra={"vm": vm.name},
    )


# =============================================================================
# Traces
# =============================================================================


def trace_filter(vm: VM, filters: Sequence[str] = ()) -> str:
    return " ".join([f"+g.co/r/gce_instance/instance_id:{vm.id}", *filters])


def lookup_trace(client: Any, vm: VM, window: datetime.timedelta, filters: Sequence[str] = ()) -> Iterable[Any]:
    """One list_traces request over the trailing `window` (blocking)."""
    now = _now()
    return client.list_traces(
        request=trace_v1.ListTracesRequest(
            project_id=vm.project,
            filter=trace_filter(vm, filters),
            start_time=now - window,
            end_time=now,
        )
    )


def first_trace(traces: Iterable[Any]) -> Any | None:
    """First trace of the iterator, or None when it is empty."""
    return next(iter(traces), None)


async def wait_for_trace(
    registry: ServiceRegistry,
    vm: VM,
    window: datetime.timedelta,
    filters: Sequence[str] = (),
) -> Any | None:
    """Any trace from `vm`, or None if none showed up.

    Only project_id and trace_id are populated; fetch spans with
    `registry.trace_client.get_trace()`.

    Raises:
        ExhaustedRetriesError: The last attempt failed with a retriable error
    """

    def query() -> Any | None:
        return first_trace(lookup_trace(registry.trace_client, vm, window, filters))

    policy = RetryPolicy(
        classifier=classify.is_retriable_lookup_error,
        backoff_seconds=constants.TRACE_QUERY_DERATE * constants.QUERY_BACKOFF_SECONDS,
        max_attempts=constants.TRACE_QUERY_MAX_ATTEMPTS,
        description="wait for trace",
        retry_on_result=_is_none,
    )
    return await retry_async(lambda: asyncio.to_thread(query), policy)
