"""
Custom queries: user-declared SQL whose result columns are mapped to metrics.

A query declares `metrics` (columns holding numeric values) and `labels`
(columns whose values become series labels). For every row and every metric
column found in the result, one series is emitted on the family
oracledb_custom_<name> with the custom labels plus metric, database,
dbinstance and rownum.

Failure rules:
  * SQL error                -> CustomQueryExecError, nothing emitted.
  * missing label column     -> CustomQueryLabelMismatchError, nothing emitted
                                for this query on this target.
  * missing metric column    -> that metric is skipped for that row only.
  * NULL / non-numeric value -> that metric is skipped for that row only.
"""
import math
import logging
import datetime
from collections import namedtuple
from decimal import Decimal

from oracle_xport.errors import ConfigError, CustomQueryExecError, CustomQueryLabelMismatchError
from oracle_xport.registry import CUSTOM_FIXED_LABELS
from oracle_xport.store import GAUGE, LABEL_NAME_RE, METRIC_NAME_RE, MetricFamily, clean_name

MetricSeries = namedtuple("MetricSeries", ["family", "labels", "value"])


def build_custom_families(targets):
    """Build the name -> MetricFamily registry for every custom query of every target."""
    families = {}
    for target in targets:
        seen = set()
        for spec in target.queries:
            if spec.name in seen:
                raise ConfigError(f"Duplicate custom query name '{spec.name}' for target {target.masked}")
            seen.add(spec.name)
            # names must be valid in the text exposition format
            if not METRIC_NAME_RE.match(spec.family_name):
                raise ConfigError(f"Custom query '{spec.name}' gives invalid metric name '{spec.family_name}'")
            custom_labels = spec.labelnames[:len(spec.labels)]
            invalid = [label for label in custom_labels if not LABEL_NAME_RE.match(label)]
            if invalid:
                raise ConfigError(f"Custom query '{spec.name}' has invalid label names {invalid}")
            if len(set(custom_labels)) != len(custom_labels):
                raise ConfigError(
                    f"Custom query '{spec.name}' labels {list(spec.labels)} collide after normalization "
                    f"{list(custom_labels)}"
                )
            clashing = set(custom_labels) & set(CUSTOM_FIXED_LABELS)
            if clashing:
                raise ConfigError(f"Custom query '{spec.name}' uses reserved label names {sorted(clashing)}")
            family = MetricFamily(
                name=spec.family_name,
                help=spec.help or f"Custom query {spec.name}.",
                labelnames=spec.labelnames,
                kind=GAUGE,
            )
            existing = families.get(family.name)
            if existing is not None and existing.labelnames != family.labelnames:
                raise ConfigError(
                    f"Custom query '{spec.name}' is declared with different labels "
                    f"{existing.labelnames} vs {family.labelnames}"
                )
            families.setdefault(family.name, family)
    return families


def scientific(value):
    """Shortest round-trip scientific notation: 5.25 -> '5.25e+00'."""
    for precision in range(17):
        text = f"{value:.{precision}e}"
        if float(text) == value:
            return text
    return f"{value:.17e}"


def label_value(value):
    if isinstance(value, str):
        return value
    if isinstance(value, (int, float, Decimal)) and not isinstance(value, bool):
        number = float(value)
        if math.isnan(number):
            return "NaN"
        if math.isinf(number):
            return "+Inf" if number > 0 else "-Inf"
        if number.is_integer():
            return str(int(value))
        return scientific(number)
    return str(value)


def to_number(value):
    """Metric value coercion. Returns None when the value cannot be emitted."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float, Decimal)):
        return float(value)
    if isinstance(value, datetime.datetime):
        return value.timestamp()
    if isinstance(value, datetime.date):
        return datetime.datetime.combine(value, datetime.time()).timestamp()
    return None


def resolve_column(columns, name):
    wanted = clean_name(name)
    return next((i for i, col in enumerate(columns) if clean_name(col) == wanted), None)


class CustomQueryEngine:

    def run(self, handle, spec, deadline):
        try:
            columns, rows = handle.query(spec.sql, deadline)
        except Exception as e:
            raise CustomQueryExecError(
                f"Custom query '{spec.name}' failed on {handle}: {e}",
                target=handle.target, collector=spec.name,
            ) from e

        # labels are resolved once for the whole result
        label_indexes = []
        for label in spec.labels:
            index = resolve_column(columns, label)
            if index is None:
                raise CustomQueryLabelMismatchError(
                    f"Custom query '{spec.name}': label column '{label}' not found in {list(columns)}",
                    target=handle.target, collector=spec.name,
                )
            label_indexes.append(index)

        metric_indexes = {}
        for metric in sorted(spec.metrics):
            index = resolve_column(columns, metric)
            if index is None:
                logging.debug(f"Custom query '{spec.name}': metric column '{metric}' not in result, skipped")
                continue
            metric_indexes[metric] = index

        series = []
        for rownum, row in enumerate(rows, start=1):
            custom_labels = tuple(label_value(row[i]) for i in label_indexes)
            for metric, index in metric_indexes.items():
                value = to_number(row[index])
                if value is None:
                    continue
                labels = custom_labels + (metric, handle.database, handle.instance, str(rownum))
                series.append(MetricSeries(spec.family_name, labels, value))
        return series
