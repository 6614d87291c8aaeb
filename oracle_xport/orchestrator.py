import time
import logging
import threading
import traceback
from concurrent.futures import Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field

from prometheus_client import CollectorRegistry, Histogram  # per-phase timing distribution

from oracle_xport.collectors import BUILTIN_COLLECTORS, BUILTIN_FAMILIES
from oracle_xport.connections import ConnectionManager
from oracle_xport.custom_queries import CustomQueryEngine, MetricSeries
from oracle_xport.deadline import Deadline
from oracle_xport.errors import (
    CollectorError,
    ConfigError,
    CustomQueryLabelMismatchError,
    ExporterError,
    ScrapeDeadlineExceeded,
)
from oracle_xport.store import COUNTER, GAUGE, NAMESPACE, MetricFamily, MetricStore

PHASE_BUCKETS = (0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 15.0)

# Exclusive bounds, in seconds, for the scrape timeout.
MIN_TIMEOUT = 1
MAX_TIMEOUT = 15
DEFAULT_TIMEOUT = 5

EXPORTER = f"{NAMESPACE}_exporter"

UP = f"{NAMESPACE}_up"
USED_TIMES = f"{NAMESPACE}_collect_used_times"
LAST_DURATION = f"{EXPORTER}_last_scrape_duration_seconds"
TOTAL_SCRAPES = f"{EXPORTER}_scrapes_total"
SCRAPE_ERRORS = f"{EXPORTER}_scrape_errors_total"
LAST_ERROR = f"{EXPORTER}_last_scrape_error"
PHASE_DURATION = f"{EXPORTER}_phase_duration_seconds"
PROBE_SECONDS = f"{EXPORTER}_probe_seconds"

EXPORTER_FAMILIES = (
    MetricFamily(UP, "Whether the Oracle server is up.", ("database", "dbinstance")),
    MetricFamily(USED_TIMES, "Seconds spent per target and scrape phase during the last scrape.",
                 ("ipport", "svname", "column")),
    MetricFamily(LAST_DURATION, "Duration of the last scrape of metrics from Oracle DB.", dynamic=False),
    MetricFamily(TOTAL_SCRAPES, "Total number of times Oracle DB was scraped for metrics.",
                 kind=COUNTER, dynamic=False),
    MetricFamily(SCRAPE_ERRORS, "Total number of times an error occured scraping a Oracle database.",
                 ("category", "collector"), kind=COUNTER, dynamic=False),
    MetricFamily(LAST_ERROR, "Whether the last scrape of metrics from Oracle DB resulted in an error "
                             "(1 for error, 0 for success).", dynamic=False),
    MetricFamily(PROBE_SECONDS, "Seconds to connect and query, as reported by the last connectivity probe.",
                 ("ipport", "svname"), kind=GAUGE, dynamic=False),
)


def validate_timeout(value):
    """Whole seconds only; 14.9 is rejected, not truncated to 14."""
    number = float(value)
    if not number.is_integer():
        raise ValueError(f"bad timeout, whole seconds expected, got {value}")
    if number >= MAX_TIMEOUT or number <= MIN_TIMEOUT:
        raise ValueError(f"bad timeout, {MIN_TIMEOUT}<v<{MAX_TIMEOUT}")
    return int(number)


class ScrapeRun:
    """State of one scrape invocation. Never shared across invocations."""

    def __init__(self, deadline, targets, features):
        self.deadline = deadline
        self.targets = targets
        self.features = frozenset(features)
        self.timings = {}
        self.errors = []
        self.accepting = True
        self.lock = threading.Lock()

    # both return False once the run is published: late results are not counted
    def record_timing(self, target, phase, seconds, histogram=None):
        with self.lock:
            if not self.accepting:
                return False
            self.timings[(target.ipport, target.svname, phase)] = seconds
            if histogram is not None:
                histogram.labels(phase=phase).observe(seconds)
            return True

    def record_error(self, error):
        with self.lock:
            if not self.accepting:
                return False
            self.errors.append(error)
            return True


@dataclass
class ScrapeResult:
    snapshot: object
    error: Exception = None
    errors: tuple = field(default_factory=tuple)
    duration: float = 0.0
    run: ScrapeRun = None

    @property
    def failed(self):
        return self.error is not None or bool(self.errors)


class Orchestrator:
    """
    Drives one scrape: connect all targets, collect per target in parallel,
    join, publish a snapshot of the store.

    Every fault below the scrape itself (down target, failing collector,
    custom query mismatch, deadline) is recorded and counted, never raised.
    Concurrent scrape() calls with the same feature set share one run.
    """

    def __init__(self, registry, store=None, connections=None, engine=None,
                 collectors=BUILTIN_COLLECTORS, timeout=DEFAULT_TIMEOUT, max_workers=None):
        self.registry = registry
        self.store = store or MetricStore()
        self.connections = connections or ConnectionManager()
        self.engine = engine or CustomQueryEngine()
        self.collectors = tuple(collectors)
        self._timeout = validate_timeout(timeout)
        self._max_workers = max_workers
        self._flight_lock = threading.Lock()
        self._inflight = {}
        self.phase_registry = CollectorRegistry()
        self.phase_duration = Histogram(
            PHASE_DURATION, "Distribution of time spent per scrape phase.", ["phase"],
            buckets=PHASE_BUCKETS, registry=self.phase_registry,
        )
        self.store.attach(self.phase_registry)
        for family in EXPORTER_FAMILIES + tuple(BUILTIN_FAMILIES.values()):
            self.store.register(family)

    @property
    def timeout(self):
        return self._timeout

    def set_timeout(self, value):
        self._timeout = validate_timeout(value)
        logging.info(f"Scrape timeout set to {self._timeout} seconds")
        return self._timeout

    def scrape(self, features=()):
        key = frozenset(features)
        with self._flight_lock:
            flight = self._inflight.get(key)
            leader = flight is None
            if leader:
                flight = Future()
                self._inflight[key] = flight
        if not leader:
            logging.info(f"Scrape for features {sorted(key)} already running; waiting for its result")
            return flight.result()
        try:
            result = self._run(key)
            flight.set_result(result)
            return result
        except BaseException as e:
            flight.set_exception(e)
            raise
        finally:
            with self._flight_lock:
                self._inflight.pop(key, None)

    def _run(self, features):
        begun = time.monotonic()
        run = ScrapeRun(Deadline(self._timeout), self.registry.current(), features)
        logging.info(f"Scrape started: {len(run.targets)} targets, features={sorted(features)}, {run.deadline}")

        self.store.inc(TOTAL_SCRAPES)
        self.store.reset_dynamic()
        self.store.replace_custom(run.targets.custom_families, run.targets.generation)

        error = None
        if not len(run.targets):
            error = ConfigError("No targets loaded")
            self._record_error(run, error)
        else:
            self._connect_and_collect(run)

        with run.lock:
            run.accepting = False

        duration = time.monotonic() - begun
        self.store.upsert(LAST_DURATION, (), duration)
        self.store.upsert(LAST_ERROR, (), 1 if run.errors else 0)
        self.phase_duration.labels(phase="scrape").observe(duration)
        snapshot = self.store.render()
        logging.info(f"Scrape completed in {duration:.3f} seconds with {len(run.errors)} errors")
        return ScrapeResult(snapshot, error, tuple(run.errors), duration, run)

    def _connect_and_collect(self, run):
        workers = self._max_workers or max(1, len(run.targets))
        executor = ThreadPoolExecutor(max_workers=workers, thread_name_prefix="collect")
        tasks = {}
        try:
            for outcome in self.connections.connect_all(run.targets, run.deadline):
                target = outcome.target
                if not outcome.up:
                    self._emit(run, [MetricSeries(UP, (target.database, target.instance), 0)])
                    self._timing(run, target, "connectfailed", outcome.elapsed)
                    if not outcome.placeholder:
                        self._record_error(run, outcome.error)
                    continue

                handle = outcome.handle
                self._emit(run, [MetricSeries(UP, (handle.database, handle.instance), 1)])
                self._timing(run, target, "connect", outcome.elapsed)
                if run.deadline.expired():
                    handle.close()
                    self._record_error(run, ScrapeDeadlineExceeded(
                        f"Connected to {target.masked} after the deadline, not collecting", target=target))
                    continue
                tasks[executor.submit(self._collect_target, run, handle)] = handle
        finally:
            # stragglers keep running; they are not joined past the deadline
            executor.shutdown(wait=False)

        done, not_done = wait(tasks, timeout=run.deadline.remaining())
        for future in not_done:
            handle = tasks[future]
            self._record_error(run, ScrapeDeadlineExceeded(
                f"Collection for {handle} still running at the deadline, abandoned", target=handle.target))

    def _collect_target(self, run, handle):
        target = handle.target
        started = time.monotonic()
        try:
            for collector in self.collectors:
                if not collector.enabled(run.features):
                    continue
                if run.deadline.expired():
                    self._record_error(run, ScrapeDeadlineExceeded(
                        f"Deadline reached before {collector.name} on {handle}",
                        target=target, collector=collector.name))
                    return
                t = time.monotonic()
                try:
                    self._emit(run, collector.collect(handle, run.deadline))
                except CollectorError as e:
                    self._record_error(run, e)
                finally:
                    self._timing(run, target, collector.name, time.monotonic() - t)

            t = time.monotonic()
            for spec in target.queries:
                if run.deadline.expired():
                    self._record_error(run, ScrapeDeadlineExceeded(
                        f"Deadline reached before custom query '{spec.name}' on {handle}",
                        target=target, collector=spec.name))
                    break
                try:
                    self._emit(run, self.engine.run(handle, spec, run.deadline))
                except CollectorError as e:
                    self._record_error(run, e)
            self._timing(run, target, "ScrapeCustomQueries", time.monotonic() - t)
        except Exception as e:
            tb = traceback.format_exc()
            logging.error(f"Unexpected error collecting {handle}: {e}\nTraceback:\n{tb}")
            self._record_error(run, CollectorError(str(e), target=target, collector="scrape"))
        finally:
            handle.close()
            self._timing(run, target, "scrape_total", time.monotonic() - started)

    def _emit(self, run, series):
        with run.lock:
            if not run.accepting:
                logging.debug(f"Dropping {len(series)} late samples from an already published scrape")
                return
            for s in series:
                self.store.upsert(s.family, s.labels, s.value)

    def _timing(self, run, target, phase, seconds):
        if not run.record_timing(target, phase, seconds, self.phase_duration):
            return
        self._emit(run, [MetricSeries(USED_TIMES, (target.ipport, target.svname, phase), seconds)])

    def _record_error(self, run, error):
        if not run.record_error(error):
            logging.debug(f"Ignoring error from an already published scrape: {error}")
            return
        category = getattr(error, "category", "exporter")
        self.store.inc(SCRAPE_ERRORS, (category, getattr(error, "collector", "") or ""))
        if isinstance(error, CustomQueryLabelMismatchError):
            logging.warning(str(error))
        elif isinstance(error, ExporterError):
            logging.error(f"[{category}] {error}")
        else:
            logging.error(f"Scrape error: {error}")
