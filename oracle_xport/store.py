import math
import logging
import threading
import re
from collections.abc import Mapping
from dataclasses import dataclass

from prometheus_client import generate_latest

NAMESPACE = "oracledb"

GAUGE = "gauge"
COUNTER = "counter"

METRIC_NAME_RE = re.compile(r"^[a-zA-Z_:][a-zA-Z0-9_:]*$")
LABEL_NAME_RE = re.compile(r"^[a-zA-Z_][a-zA-Z0-9_]*$")


def clean_name(s):
    """
    Oracle gives us some ugly names back. Normalizes a column or metric name
    for Prometheus and for case-insensitive column matching.
    """
    s = str(s).replace(" ", "_")
    for ch in "()/":
        s = s.replace(ch, "")
    return s.lower()


def format_value(val):
    float_val = float(val)
    if math.isnan(float_val):
        return "NaN"
    if math.isinf(float_val):
        return "+Inf" if float_val > 0 else "-Inf"
    if float_val == 0:
        return "0"
    elif abs(float_val) >= 1e6 or abs(float_val) < 1e-3:
        return f"{float_val:.9e}"
    else:
        return f"{float_val:.6f}".rstrip('0').rstrip('.')


def escape_label_value(value):
    return str(value).replace("\\", "\\\\").replace("\n", "\\n").replace('"', '\\"')


def _format_labels(names, values):
    pairs = sorted(zip(names, values), key=lambda p: p[0])
    if not pairs:
        return ""
    return "{" + ",".join(f'{k}="{escape_label_value(v)}"' for k, v in pairs) + "}"


@dataclass(frozen=True)
class MetricFamily:
    """
    One named metric family.

    `dynamic` families are cleared at the start of every scrape; the others
    (scrape counters, error flag) live for the whole process.
    `feature` names the per-request flag that must be on for the family to be
    rendered; None means always rendered.
    """
    name: str
    help: str
    labelnames: tuple = ()
    kind: str = GAUGE
    dynamic: bool = True
    feature: str = None

    def enabled(self, features):
        return self.feature is None or self.feature in features


class MetricSnapshot:
    """Immutable copy of the store at one point in time."""

    def __init__(self, families, exposition=""):
        # tuple of (MetricFamily, tuple of (label_values, value)) sorted by family name
        self.families = families
        # already rendered text of the attached prometheus_client registries
        self.exposition = exposition
        self._index = {family.name: samples for family, samples in families}

    def family_names(self):
        return [family.name for family, _ in self.families]

    def samples(self, name):
        """Returns {label_values: value} for a gauge/counter family."""
        return dict(self._index.get(name, ()))

    def value(self, name, *label_values):
        return self.samples(name).get(tuple(str(v) for v in label_values))

    def to_text(self, features=()):
        """Render in the Prometheus text exposition format."""
        output = []
        for family, samples in self.families:
            if not family.enabled(features) or not samples:
                continue
            help_text = family.help.replace("\\", "\\\\").replace("\n", "\\n")
            output.append(f"# HELP {family.name} {help_text}")
            output.append(f"# TYPE {family.name} {family.kind}")
            for labels, value in samples:
                output.append(f"{family.name}{_format_labels(family.labelnames, labels)} {format_value(value)}")
        text = "\n".join(output) + "\n" if output else ""
        return text + self.exposition


class MetricStore:
    """
    Concurrency-safe collection of named, labeled series.

    Every operation takes one short lock, so each upsert is linearizable per
    series identity and concurrent upserts to the same identity resolve
    last-write-wins. render() copies under the same lock and never waits for
    a scrape to finish.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._families = {}
        self._series = {}
        self._custom_names = set()
        self._custom_generation = None
        self._registries = []

    def register(self, family):
        with self._lock:
            self._add(family)

    def attach(self, registry):
        """Render a prometheus_client CollectorRegistry after the store's own families."""
        with self._lock:
            self._registries.append(registry)

    def _add(self, family):
        self._families[family.name] = family
        self._series.setdefault(family.name, {})
        if not family.labelnames and not family.dynamic:
            # label-less lifetime series are always present
            self._series[family.name].setdefault((), 0.0)

    def replace_custom(self, families, generation=None):
        """Swap the registry of custom query families for a newly loaded target set."""
        with self._lock:
            if generation is not None and generation == self._custom_generation:
                return False
            for name in self._custom_names - set(families):
                self._families.pop(name, None)
                self._series.pop(name, None)
            for name, family in families.items():
                previous = self._families.get(name)
                if previous is not None and previous.labelnames != family.labelnames:
                    self._series[name] = {}
                self._add(family)
            self._custom_names = set(families)
            self._custom_generation = generation
            logging.debug(f"Custom metric families now: {sorted(self._custom_names)}")
            return True

    def family(self, name):
        return self._families.get(name)

    def _key(self, family, labels):
        if isinstance(labels, Mapping):
            try:
                return tuple(str(labels[n]) for n in family.labelnames)
            except KeyError as e:
                raise ValueError(f"Missing label {e} for metric family {family.name}") from None
        key = tuple(str(v) for v in labels)
        if len(key) != len(family.labelnames):
            raise ValueError(
                f"Metric family {family.name} expects labels {family.labelnames}, got {len(key)} values"
            )
        return key

    def upsert(self, name, labels, value):
        with self._lock:
            family = self._families.get(name)
            if family is None:
                logging.debug(f"Dropping sample for unregistered metric family '{name}'")
                return False
            self._series[name][self._key(family, labels)] = float(value)
            return True

    def inc(self, name, labels=(), amount=1.0):
        with self._lock:
            family = self._families[name]
            key = self._key(family, labels)
            series = self._series[name]
            series[key] = series.get(key, 0.0) + amount

    def reset_dynamic(self):
        with self._lock:
            for name, family in self._families.items():
                if family.dynamic:
                    self._series[name] = {}

    def render(self):
        with self._lock:
            families = []
            for name in sorted(self._families):
                families.append((self._families[name], tuple(sorted(self._series[name].items()))))
            exposition = "".join(generate_latest(r).decode("utf-8") for r in self._registries)
        return MetricSnapshot(tuple(families), exposition)
