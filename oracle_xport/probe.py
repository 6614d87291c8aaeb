"""
Connectivity probe.

For every target the probe connects, runs one identity query and reports how
long it took as one line of text:

    query time <descriptor> <elapsed>

where <elapsed> is either plain seconds ("1.204s") or milliseconds with a unit
suffix ("523.114ms"). The probe runs either in-process (one thread per target)
or in a child process (`python -m oracle_xport.probe --config oracle.yml`)
that writes the lines to stderr, which keeps driver crashes and hangs out of
the exporter process. Either way the exporter parses the lines back with
parse_probe_output().
"""
import sys
import time
import logging
import argparse
import threading
import subprocess
from concurrent.futures import ThreadPoolExecutor, wait

from oracle_xport.config import DEFAULT_CONFIG_PATH, load_config
from oracle_xport.connections import TargetHandle, open_connection
from oracle_xport.deadline import Deadline
from oracle_xport.errors import ConfigError
from oracle_xport.logsetup import configure_logging
from oracle_xport.orchestrator import PROBE_SECONDS
from oracle_xport.registry import TargetDescriptor, mask_connection, split_connection

PROBE_MARKER = "query time"
PROBE_SQL = "select name, instance_name, host_name from v$database, v$instance"
# reported when the elapsed token cannot be parsed
PROBE_FAILURE_SECONDS = 999.0

# one child probe at a time
_subprocess_slot = threading.Semaphore(1)


def format_elapsed(seconds):
    if seconds < 1:
        return f"{seconds * 1000:.3f}ms"
    return f"{seconds:.3f}s"


def parse_elapsed(token):
    try:
        if token.endswith("ms"):
            return float(token[:-2]) / 1000
        if token.endswith("s"):
            return float(token[:-1])
        return float(token)
    except ValueError:
        return PROBE_FAILURE_SECONDS


def parse_probe_output(text):
    """Returns [(ipport, svname, seconds)] for every probe line in text."""
    results = []
    for line in text.splitlines():
        if PROBE_MARKER not in line:
            continue
        fields = line.strip().split(" ")
        if len(fields) != 4:
            continue
        ipport, svname = split_connection(fields[2])
        results.append((ipport, svname, parse_elapsed(fields[3])))
    return results


def probe_target(descriptor, timeout, connect=open_connection):
    """Probe one descriptor. Returns the protocol line, or None on failure."""
    masked = mask_connection(descriptor)
    deadline = Deadline(timeout)
    t0 = time.monotonic()
    try:
        connection = connect(descriptor, deadline.remaining())
    except Exception as e:
        logging.info(f" open {masked}  err {e}")
        return None
    handle = TargetHandle(TargetDescriptor(descriptor), connection)
    try:
        handle.query(PROBE_SQL, deadline)
    except Exception as e:
        logging.info(f" select {masked}  err {e}")
        return None
    finally:
        handle.close()
    return f"{PROBE_MARKER} {masked} {format_elapsed(time.monotonic() - t0)}"


def probe_all(descriptors, timeout, connect=open_connection):
    descriptors = [d for d in descriptors if d]
    if not descriptors:
        return []
    executor = ThreadPoolExecutor(max_workers=len(descriptors), thread_name_prefix="probe")
    futures = [executor.submit(probe_target, d, timeout, connect) for d in descriptors]
    executor.shutdown(wait=False)
    done, not_done = wait(futures, timeout=timeout + 1)
    if not_done:
        logging.warning(f"{len(not_done)} of {len(futures)} probes did not finish within {timeout}s")
    return [f.result() for f in futures if f in done and f.result()]


def run_probe_subprocess(config_path, timeout):
    """Run the probe in a child process. Returns its stderr, or None if a probe is already running."""
    if not _subprocess_slot.acquire(blocking=False):
        logging.info("Connectivity probe already running; skipped")
        return None
    try:
        cmd = [sys.executable, "-m", "oracle_xport.probe", "--config", str(config_path), "--timeout", str(timeout)]
        completed = subprocess.run(cmd, capture_output=True, text=True, timeout=timeout + 5)
        return completed.stderr
    except subprocess.TimeoutExpired as e:
        logging.error(f"Probe subprocess did not finish within {timeout + 5}s")
        stderr = e.stderr or ""
        return stderr.decode(errors="replace") if isinstance(stderr, bytes) else stderr
    finally:
        _subprocess_slot.release()


def record_probe_results(store, results):
    for ipport, svname, seconds in results:
        store.upsert(PROBE_SECONDS, (ipport, svname), seconds)


class Prober:
    """Runs the probe for a target set in the configured isolation mode and records the results."""

    def __init__(self, store, mode="inprocess", config_path=None, connect=open_connection):
        self.store = store
        self.mode = mode
        self.config_path = config_path
        self._connect = connect

    def run(self, target_set, timeout):
        if self.mode == "subprocess":
            text = run_probe_subprocess(self.config_path, timeout)
            if text is None:
                return []
        else:
            text = "\n".join(probe_all([t.connection for t in target_set], timeout, self._connect))
        results = parse_probe_output(text)
        record_probe_results(self.store, results)
        return [line for line in text.splitlines() if PROBE_MARKER in line]


def main(argv=None):
    parser = argparse.ArgumentParser(description="Probe connectivity of every configured Oracle target.")
    parser.add_argument("--config", default=DEFAULT_CONFIG_PATH, help="Configuration file in YAML format.")
    parser.add_argument("--timeout", type=float, default=None, help="Per-target timeout in seconds.")
    args = parser.parse_args(argv)

    configure_logging()
    try:
        settings, target_set, _ = load_config(args.config)
    except ConfigError as e:
        logging.error(str(e))
        return 1
    timeout = args.timeout or settings.timeout
    for line in probe_all([t.connection for t in target_set], timeout):
        sys.stderr.write(line + "\n")
    sys.stderr.flush()
    return 0


if __name__ == "__main__":
    sys.exit(main())
