import os
import sys
import signal
import gzip
import logging
import argparse

from flask import Flask, request, Response, jsonify  # For HTTP metrics endpoint

from oracle_xport import __version__
from oracle_xport.collectors import BUILTIN_COLLECTORS, OPTIONAL_FEATURES
from oracle_xport.config import DEFAULT_CONFIG_PATH, GlobalSettings, load_config, load_targets
from oracle_xport.connections import ConnectionManager, open_connection
from oracle_xport.errors import ConfigError
from oracle_xport.logsetup import apply_logging_timezone, configure_logging, resolve_timezone
from oracle_xport.orchestrator import LAST_ERROR, Orchestrator
from oracle_xport.probe import Prober
from oracle_xport.registry import TargetRegistry

METRIC_PATH = "/metrics"
SHUTDOWN_GRACE = 15.0

configure_logging()

LANDING_PAGE = """<html>
<head><title>Prometheus Oracle exporter</title></head>
<body>
<h1>Prometheus Oracle exporter</h1>
<p><a href='{path}'>Metrics</a></p>
{links}
</body>
</html>
"""


def landing_page():
    links = "\n".join(
        f"<p><a href='{METRIC_PATH}?{feature}=true'>Metrics with {feature}</a></p>" for feature in OPTIONAL_FEATURES
    )
    return LANDING_PAGE.format(path=METRIC_PATH, links=links)


class Exporter:
    """Everything one worker process needs: settings, registry, orchestrator and prober."""

    def __init__(self, config_path, connect=open_connection, collectors=BUILTIN_COLLECTORS):
        self.config_path = config_path
        self.settings = GlobalSettings()
        self.registry = TargetRegistry(load_targets, release_grace=SHUTDOWN_GRACE)
        try:
            self.settings, target_set, _ = load_config(config_path)
            self.registry.swap(target_set)
            logging.info(f"Config loaded: {config_path} ({len(target_set)} targets)")
        except ConfigError as e:
            # keep serving: scrapes report the missing targets as a scrape-wide error
            logging.error(f"Error loading config: {e}")
        apply_logging_timezone(resolve_timezone(self.settings.timezone))
        self.orchestrator = Orchestrator(
            self.registry,
            connections=ConnectionManager(connect),
            collectors=collectors,
            timeout=self.settings.timeout,
        )
        self.prober = Prober(self.orchestrator.store, self.settings.probe_isolation, config_path, connect)

    def features_for(self, args):
        features = self.settings.base_features()
        features.update(f for f in OPTIONAL_FEATURES if args.get(f) == "true")
        return frozenset(features)

    def reload(self):
        return self.registry.reload(self.config_path)


def make_text_response(body_text, status=200):
    """Create a text/plain response, gzip-compressed when the client supports it via Accept-Encoding."""
    body_bytes = body_text.encode('utf-8') if isinstance(body_text, str) else body_text

    content_type = 'text/plain; version=0.0.4; charset=utf-8'
    accept_enc = request.headers.get('Accept-Encoding', '') or ''
    logging.debug(f"Client Accept-Encoding header: '{accept_enc}'")
    if 'gzip' in accept_enc.lower():
        compressed = gzip.compress(body_bytes)
        logging.debug(f"Compressed response: {len(body_bytes)} -> {len(compressed)} bytes")
        resp = Response(compressed, status=status)
        resp.headers['Content-Encoding'] = 'gzip'
        resp.headers['Content-Type'] = content_type
        resp.headers['Content-Length'] = str(len(compressed))
        return resp

    resp = Response(body_bytes, status=status)
    resp.headers['Content-Type'] = content_type
    resp.headers['Content-Length'] = str(len(body_bytes))
    return resp


def create_app(config_path=None, connect=open_connection, collectors=BUILTIN_COLLECTORS):
    config_path = config_path or os.environ.get("ORACLE_XPORT_CONFIG", DEFAULT_CONFIG_PATH)
    flask_app = Flask(__name__)
    exporter = Exporter(config_path, connect=connect, collectors=collectors)
    flask_app.extensions["oracle_xport"] = exporter

    @flask_app.route('/')
    def index():
        return Response(landing_page(), mimetype='text/html')

    @flask_app.route(METRIC_PATH)
    def metrics():
        features = exporter.features_for(request.args)
        try:
            result = exporter.orchestrator.scrape(features)
        except Exception as e:
            logging.error(f"Error during scrape: {str(e)}")
            return make_text_response(f"{LAST_ERROR} 1\n", status=500)

        if result.error is not None:
            logging.error(f"Scrape-wide error: {result.error}")
        body = result.snapshot.to_text(features)
        if exporter.settings.log_scraped_metrics:
            logging.info(f"--- Metrics scrape ---\n{body}--- End scrape ---")
        return make_text_response(body, status=200)

    @flask_app.route('/reloadConfig')
    def reload_config():
        try:
            target_set = exporter.reload()
        except ConfigError as e:
            logging.info("reload Config, False")
            return make_text_response(f" loadConfig: False ({e})")
        logging.info("reload Config, True")
        return jsonify(target_set.as_dict())

    @flask_app.route('/getTimeout')
    def get_timeout():
        return make_text_response(f"current timeout={exporter.orchestrator.timeout}")

    @flask_app.route('/setTimeout')
    def set_timeout():
        try:
            value = int(request.args.get('v', ''))
        except ValueError as e:
            return make_text_response(f"Err {e}")
        try:
            exporter.orchestrator.set_timeout(value)
        except ValueError as e:
            return make_text_response(str(e))
        return make_text_response(f"ok, timeout={exporter.orchestrator.timeout}")

    @flask_app.route('/testConnections')
    def test_connections():
        lines = exporter.prober.run(exporter.registry.current(), exporter.orchestrator.timeout)
        return make_text_response("\n".join(lines) + "\n" if lines else "")

    logging.info("List http routes:")
    for rule in flask_app.url_map.iter_rules():
        if rule.endpoint != 'static':
            logging.info(f"  {rule.rule}")
    return flask_app


def graceful_shutdown(flask_app=None, grace=SHUTDOWN_GRACE):
    """Release every connection still open against the active target set."""
    exporter = (flask_app or app).extensions["oracle_xport"]
    logging.info("Graceful shutdown: releasing open target connections")
    thread = exporter.registry.close(grace)
    thread.join(grace + 1)
    return thread


def signal_handler(signum, frame):
    logging.info(f"Received signal {signum}; shutting down")
    graceful_shutdown()
    sys.exit(0)


app = create_app()


def main(argv=None):
    parser = argparse.ArgumentParser(description="Prometheus Oracle exporter (development server).")
    parser.add_argument("--web.listen-address", dest="listen_address", default=":9161",
                        help="Address to listen on for web interface and telemetry.")
    parser.add_argument("--configfile", default=None, help="Configuration file in YAML format.")
    args = parser.parse_args(argv)

    logging.info(f"Starting Prometheus Oracle exporter {__version__}")
    flask_app = create_app(args.configfile) if args.configfile else app
    signal.signal(signal.SIGTERM, signal_handler)
    signal.signal(signal.SIGINT, signal_handler)
    host, _, port = args.listen_address.rpartition(":")
    logging.info(f"Listening on {args.listen_address}")
    flask_app.run(host=host or "0.0.0.0", port=int(port), threaded=True)


if __name__ == "__main__":
    main()
