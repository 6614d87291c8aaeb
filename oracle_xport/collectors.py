"""
Built-in collectors.

Each collector runs one SQL statement against a target and maps its rows onto
one or more metric families. Every family is labeled with database and
dbinstance first, followed by collector-specific labels. Collectors are grouped
under feature flags: "default" covers the standard views, the others are
expensive dictionary scans enabled per request (?tablerows=true etc.).
"""
from oracle_xport.custom_queries import MetricSeries
from oracle_xport.errors import CollectorError
from oracle_xport.store import NAMESPACE, MetricFamily, clean_name

DEFAULT = "default"
OPTIONAL_FEATURES = ("tablerows", "tablebytes", "indexbytes", "lobbytes", "recovery")

BASE_LABELS = ("database", "dbinstance")


def _family(name, help_text, labels=(), feature=DEFAULT):
    return MetricFamily(f"{NAMESPACE}_{name}", help_text, BASE_LABELS + tuple(labels), feature=feature)


BUILTIN_FAMILIES = {
    f.name: f for f in (
        _family("sysmetric", "Gauge metric with read/write pysical IOPs/bytes (v$sysmetric).", ["type"]),
        _family("waitclass", "Gauge metric with Waitevents (v$waitclassmetric).", ["type"]),
        _family("sysstat", "Gauge metric with commits/rollbacks/parses (v$sysstat).", ["type"]),
        _family("session", "Gauge metric user/system active/passive sessions (v$session).", ["type", "state"]),
        _family("uptime", "Gauge metric with uptime in days of the Instance."),
        _family("tablespace", "Gauge metric with total/free size of the Tablespaces.",
                ["type", "name", "contents", "autoextend"]),
        _family("interconnect", "Gauge metric with interconnect block transfers (v$sysstat).", ["type"]),
        _family("recovery", "Gauge metric with percentage usage of FRA (v$recovery_file_dest).", ["type"],
                feature="recovery"),
        _family("redo", "Gauge metric with Redo log switches over last 5 min (v$log_history)."),
        _family("cachehitratio", "Gauge metric witch Cache hit ratios (v$sysmetric).", ["type"]),
        _family("services", "Active Oracle Services (v$active_services).", ["name"]),
        _family("parameter", "oracle Configuration Parameters (v$parameter).", ["name"]),
        _family("asmspace", "Gauge metric with total/free size of the ASM Diskgroups.", ["type", "name"]),
        _family("tablerows", "Gauge metric with rows of all Tables.", ["owner", "table_name", "tablespace"],
                feature="tablerows"),
        _family("tablebytes", "Gauge metric with bytes of all Tables.", ["owner", "table_name"],
                feature="tablebytes"),
        _family("indexbytes", "Gauge metric with bytes of all Indexes per Table.", ["owner", "table_name"],
                feature="indexbytes"),
        _family("lobbytes", "Gauge metric with bytes of all Lobs per Table.", ["owner", "table_name"],
                feature="lobbytes"),
    )
}


class Collector:

    def __init__(self, name, feature, sql, emit):
        self.name = name
        self.feature = feature
        self.sql = sql
        self._emit = emit

    def __repr__(self):
        return f"<Collector {self.name} [{self.feature}]>"

    def enabled(self, features):
        return self.feature in features

    def collect(self, handle, deadline):
        try:
            _, rows = handle.query(self.sql, deadline)
            series = []
            for row in rows:
                if any(v is None for v in row):
                    continue
                for family, labels, value in self._emit(row):
                    labels = (handle.database, handle.instance) + tuple(str(v) for v in labels)
                    series.append(MetricSeries(f"{NAMESPACE}_{family}", labels, float(value)))
            return series
        except Exception as e:
            raise CollectorError(f"Collector {self.name} failed on {handle}: {e}",
                                 target=handle.target, collector=self.name) from e


def _named(family):
    def emit(row):
        name, value = row
        yield family, (clean_name(name),), value
    return emit


def _uptime(row):
    yield "uptime", (), row[0]


def _session(row):
    user, status, value = row
    yield "session", (user, status), value


def _tablespace(row):
    name, contents, tsize, tfree, auto = row
    for kind, value in (("total", tsize), ("free", tfree), ("used", tsize - tfree)):
        yield "tablespace", (kind, name, contents, auto), value


def _recovery(row):
    used, reclaimable = row
    yield "recovery", ("percent_space_used",), used
    yield "recovery", ("percent_space_reclaimable",), reclaimable


def _redo(row):
    yield "redo", (), row[0]


def _services(row):
    yield "services", (clean_name(row[0]),), 1


def _asmspace(row):
    name, tsize, tfree = row
    for kind, value in (("total", tsize), ("free", tfree), ("used", tsize - tfree)):
        yield "asmspace", (kind, name), value


def _tablerows(row):
    owner, name, space, value = row
    yield "tablerows", (owner, clean_name(name), space), value


def _owner_table(family):
    def emit(row):
        owner, name, value = row
        yield family, (owner, clean_name(name)), value
    return emit


# Run in this order within one target.
BUILTIN_COLLECTORS = (
    Collector("ScrapeRecovery", "recovery", """SELECT sum(percent_space_used), sum(percent_space_reclaimable)
        FROM V$FLASH_RECOVERY_AREA_USAGE""", _recovery),
    Collector("ScrapeUptime", DEFAULT, "select sysdate-startup_time from v$instance", _uptime),
    Collector("ScrapeSession", DEFAULT, """SELECT decode(username,NULL,'SYSTEM','SYS','SYSTEM','USER'), status, count(*)
        FROM v$session
        GROUP BY decode(username,NULL,'SYSTEM','SYS','SYSTEM','USER'), status""", _session),
    Collector("ScrapeSysstat", DEFAULT, """SELECT name, value FROM v$sysstat
        WHERE statistic# in (6,7,1084,1089)""", _named("sysstat")),
    Collector("ScrapeWaitclass", DEFAULT, """SELECT n.wait_class, round(m.time_waited/m.INTSIZE_CSEC,3)
        FROM v$waitclassmetric m, v$system_wait_class n
        WHERE m.wait_class_id=n.wait_class_id and n.wait_class != 'Idle'""", _named("waitclass")),
    Collector("ScrapeSysmetric", DEFAULT, """select metric_name, value from v$sysmetric
        where metric_id in (2092,2093,2124,2100)""", _named("sysmetric")),
    Collector("ScrapeTablespace", DEFAULT, """WITH
        getsize AS (SELECT tablespace_name, max(autoextensible) autoextensible,
                           SUM(case autoextensible when 'YES' then maxbytes else bytes end) tsize, sum(user_bytes) tused
                    FROM dba_data_files GROUP BY tablespace_name),
        getfree AS (SELECT tablespace_name, contents, SUM(blocks*block_size) tfree
                    FROM DBA_LMT_FREE_SPACE a, v$tablespace b, dba_tablespaces c
                    WHERE a.TABLESPACE_ID = b.ts# and b.name = c.tablespace_name
                    GROUP BY tablespace_name, contents)
        SELECT a.tablespace_name, b.contents, a.tsize, a.tsize-a.tused+b.tfree tfree, a.autoextensible autoextend
        FROM GETSIZE a, GETFREE b
        WHERE a.tablespace_name = b.tablespace_name
        UNION
        SELECT tablespace_name, 'TEMPORARY', sum(case autoextensible when 'YES' then maxbytes else bytes end),
               sum(case autoextensible when 'YES' then maxbytes else bytes end) - sum(user_bytes), max(autoextensible)
        FROM dba_temp_files
        GROUP BY tablespace_name""", _tablespace),
    Collector("ScrapeInterconnect", DEFAULT, """SELECT name, value FROM V$SYSSTAT
        WHERE name in ('gc cr blocks served','gc cr blocks flushed','gc cr blocks received')""",
              _named("interconnect")),
    Collector("ScrapeRedo", DEFAULT, "select count(*) from v$log_history where first_time > sysdate - 1/24/12",
              _redo),
    Collector("ScrapeCache", DEFAULT, """select metric_name, value from v$sysmetric
        where group_id=2 and metric_id in (2000,2050,2112,2110)""", _named("cachehitratio")),
    Collector("ScrapeServices", DEFAULT, "select name from v$active_services", _services),
    Collector("ScrapeParameter", DEFAULT, "select name, value from v$parameter WHERE num=43", _named("parameter")),
    Collector("ScrapeAsmspace", DEFAULT, """SELECT g.name, sum(d.total_mb), sum(d.free_mb)
        FROM v$asm_disk_stat d, v$asm_diskgroup_stat g
        WHERE d.group_number = g.group_number AND d.header_status = 'MEMBER'
        GROUP BY g.name, g.group_number""", _asmspace),
    Collector("ScrapeTablerows", "tablerows", """select owner, table_name, tablespace_name, num_rows
        from dba_tables
        where owner not like '%SYS%' and num_rows is not null""", _tablerows),
    Collector("ScrapeTablebytes", "tablebytes", """SELECT tab.owner, tab.table_name, stab.bytes
        FROM dba_tables tab, dba_segments stab
        WHERE stab.owner = tab.owner AND stab.segment_name = tab.table_name
        AND tab.owner NOT LIKE '%SYS%'""", _owner_table("tablebytes")),
    Collector("ScrapeIndexbytes", "indexbytes", """select table_owner, table_name, sum(bytes)
        from dba_indexes ind, dba_segments seg
        WHERE ind.owner=seg.owner and ind.index_name=seg.segment_name
        and table_owner NOT LIKE '%SYS%'
        group by table_owner, table_name""", _owner_table("indexbytes")),
    Collector("ScrapeLobbytes", "lobbytes", """select l.owner, l.table_name, sum(bytes)
        from dba_lobs l, dba_segments seg
        WHERE l.owner=seg.owner and l.table_name=seg.segment_name
        and l.owner NOT LIKE '%SYS%'
        group by l.owner, l.table_name""", _owner_table("lobbytes")),
)
