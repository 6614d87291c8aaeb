import datetime
import logging

import pytz
import tzlocal

LOG_FORMAT = '[%(asctime)s] %(levelname)s: %(message)s'
LOG_DATEFMT = '%Y-%m-%d %H:%M:%S'


def configure_logging(level=logging.INFO):
    logging.basicConfig(level=level, format=LOG_FORMAT, datefmt=LOG_DATEFMT)


class TZFormatter(logging.Formatter):
    """Logging formatter that renders times in a given tzinfo (pytz).

    Usage: set handler.setFormatter(TZFormatter(fmt, datefmt, tz=tzobj))
    """
    def __init__(self, fmt=None, datefmt=None, tz=None):
        super().__init__(fmt=fmt, datefmt=datefmt)
        self.tz = tz

    def formatTime(self, record, datefmt=None):
        # record.created is a POSIX timestamp
        tz = self.tz if self.tz is not None else datetime.timezone.utc
        dt = datetime.datetime.fromtimestamp(record.created, tz=tz)
        if datefmt:
            return dt.strftime(datefmt)
        return dt.isoformat()


def resolve_timezone(tz_name):
    """'system' -> local zone via tzlocal, anything else an Olson name via pytz. Falls back to UTC."""
    if tz_name == 'system':
        return tzlocal.get_localzone()
    try:
        return pytz.timezone(tz_name)
    except pytz.UnknownTimeZoneError:
        logging.warning(f"Invalid timezone '{tz_name}' in config; falling back to UTC")
        return datetime.timezone.utc


def apply_logging_timezone(tzinfo):
    """Replace formatters on existing root handlers to use tzinfo for timestamps."""
    for h in logging.root.handlers:
        h.setFormatter(TZFormatter(fmt=LOG_FORMAT, datefmt=LOG_DATEFMT, tz=tzinfo))
