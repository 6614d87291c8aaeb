"""
Error taxonomy for the exporter.

Every error here is recovered locally (logged and counted); none of them is
allowed to escape the task that raised it. The `category` attribute is the
value of the `category` label on oracledb_exporter_scrape_errors_total.
"""


class ExporterError(Exception):
    category = "exporter"

    def __init__(self, message, target=None, collector=""):
        super().__init__(message)
        self.target = target
        self.collector = collector


class ConfigError(ExporterError):
    """Unreadable or invalid target definitions. The previous config stays active."""
    category = "config"


class ConnectError(ExporterError):
    """Target is down: connect or readiness probe failed."""
    category = "connect"


class ProbeTimeoutError(ExporterError):
    """Target did not finish connecting before the scrape deadline."""
    category = "probe_timeout"


class CollectorError(ExporterError):
    """A built-in collector failed for one target."""
    category = "collector"


class CustomQueryExecError(CollectorError):
    category = "custom_query"


class CustomQueryLabelMismatchError(CollectorError):
    """A declared label column is absent from the result set."""
    category = "custom_label_mismatch"


class ScrapeDeadlineExceeded(ExporterError):
    category = "deadline"
