"""
Graceful shutdown: open target connections are released when the worker exits
or the process receives SIGTERM/SIGINT.
"""
import signal
import textwrap

import pytest

from conftest import dsn, make_target_set, target
from oracle_xport import app as app_module
from oracle_xport.connections import TargetHandle


@pytest.fixture
def flask_app(tmp_path, driver):
    path = tmp_path / "oracle.yml"
    path.write_text(textwrap.dedent(f"""
        connections:
          - connection: {dsn(1)}
            database: DB1
    """))
    driver.add(dsn(1))
    return app_module.create_app(str(path), connect=driver.connect, collectors=())


def open_handle(flask_app, driver):
    target_set = flask_app.extensions["oracle_xport"].registry.current()
    return TargetHandle(target_set.targets[0], driver.connect(dsn(1), 1), owner=target_set)


def test_graceful_shutdown_closes_open_handles(flask_app, driver):
    handle = open_handle(flask_app, driver)

    thread = app_module.graceful_shutdown(flask_app, grace=0.05)

    assert not thread.is_alive()
    assert handle.closed
    assert driver.opened[0].closed


def test_graceful_shutdown_without_open_handles(flask_app):
    thread = app_module.graceful_shutdown(flask_app, grace=0.05)
    assert not thread.is_alive()


def test_signal_handler_shuts_down_and_exits(flask_app, monkeypatch):
    calls = []
    monkeypatch.setattr(app_module, "app", flask_app)
    monkeypatch.setattr(app_module, "graceful_shutdown", lambda *args, **kwargs: calls.append(args))

    with pytest.raises(SystemExit) as exc_info:
        app_module.signal_handler(signal.SIGTERM, None)

    assert exc_info.value.code == 0
    assert calls == [()]


def test_swapped_out_set_is_released_after_grace(driver):
    old = make_target_set(target(1))
    driver.add(dsn(1))
    handle = TargetHandle(old.targets[0], driver.connect(dsn(1), 1), owner=old)

    old.release_async(0.05).join(2)

    assert handle.closed
    assert old.live_count() == 0
