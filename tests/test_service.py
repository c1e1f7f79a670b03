import asyncio
import json
import logging
import socket
import warnings
from pathlib import Path

import pytest

import munin_node
from munin_node import (
    HealthCheck,
    MuninNode,
    NodeStats,
    ProgramConfig,
    ProgramLogger,
    ProgramSource,
)


@pytest.fixture(autouse=True)
def clean_environment(monkeypatch):
    monkeypatch.delenv(ProgramSource.CONFIG_ENV_VAR, raising=False)
    monkeypatch.delenv("INVOCATION_ID", raising=False)


def free_port():
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


@pytest.fixture
def node_config(tmp_path, plugin_dir, plugin_conf):
    def factory(port):
        (tmp_path / "munin_node.yml").write_text(
            "node:\n"
            "    host_name: service.test\n"
            "    allow: ['^127\\.0\\.0\\.1$']\n"
            "    host: 127.0.0.1\n"
            f"    port: {port}\n"
            f"    plugins: {plugin_dir}\n"
            f"    plugins_config: {plugin_conf}\n"
            "daemon:\n"
            "    metrics_port: 0\n"
            "    health_port: 0\n"
        )
        config = ProgramConfig(ProgramSource(script_path=tmp_path / "munin_node.py"))
        config.load()
        return config

    return factory


def call_app(app, path):
    captured = {}

    def start_response(status, headers):
        captured["status"] = status
        captured["headers"] = dict(headers)

    body = b"".join(app({"PATH_INFO": path}, start_response))
    return captured["status"], json.loads(body)


def test_stats_mirror_into_prometheus_registry():
    stats = NodeStats()
    stats.connection(True)
    stats.connection(False)
    stats.session_opened()
    stats.command("fetch")
    stats.execution("cpu", "ok", 0.25)

    registry = stats.registry
    assert registry.get_sample_value("munin_node_connections_total", {"result": "accepted"}) == 1.0
    assert registry.get_sample_value("munin_node_connections_total", {"result": "denied"}) == 1.0
    assert registry.get_sample_value("munin_node_sessions_active") == 1.0
    assert registry.get_sample_value("munin_node_commands_total", {"command": "fetch"}) == 1.0
    assert registry.get_sample_value("munin_node_plugin_duration_seconds", {"plugin": "cpu"}) == 0.25
    assert registry.get_sample_value("munin_node_uptime_seconds") >= 0
    assert stats.last_execution_time == 0.25


def test_health_endpoint_reports_node(node_config, logger):
    config = node_config(4949)
    stats = NodeStats()
    stats.connection(True)
    app = HealthCheck(config, stats, logger)._create_wsgi_app()

    status, body = call_app(app, "/health")

    assert status == "200 OK"
    assert body["node"]["host_name"] == "service.test"
    assert body["node"]["listen"] == "127.0.0.1:4949"
    assert body["stats"]["connections"]["accepted"] == 1
    assert body["files"]["plugins"] == str(config.identity.plugin_directory)


def test_health_endpoint_unknown_path(node_config, logger):
    app = HealthCheck(node_config(4949), NodeStats(), logger)._create_wsgi_app()
    status, body = call_app(app, "/metrics")
    assert status == "404 Not Found"
    assert body["error"] == "Not Found"


def test_node_serves_until_shutdown(node_config, logger, make_plugin):
    make_plugin("cpu", "echo load.value 1")
    config = node_config(free_port())

    async def scenario():
        node = MuninNode(config, logger)
        task = asyncio.create_task(node.run())
        while not node.listener.addresses:
            assert not task.done()
            await asyncio.sleep(0.01)

        reader, writer = await asyncio.open_connection("127.0.0.1", config.identity.bind_port)
        banner = await reader.readline()
        writer.write(b"fetch cpu\n")
        await writer.drain()
        value = await reader.readline()
        dot = await reader.readline()
        writer.close()

        node.shutdown_event.set()
        return banner, value, dot, await asyncio.wait_for(task, timeout=5), node

    banner, value, dot, exit_code, node = asyncio.run(scenario())

    assert banner == b"# munin node at service.test\n"
    assert value == b"load.value 1\n"
    assert dot == b".\n"
    assert exit_code == 0
    assert node.listener.addresses == []
    assert node.stats.executions_ok == 1


def test_node_bind_failure_exits_with_error(node_config, logger):
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as blocker:
        blocker.bind(("127.0.0.1", 0))
        blocker.listen()
        config = node_config(blocker.getsockname()[1])

        exit_code = asyncio.run(MuninNode(config, logger).run())

    assert exit_code == 1


def test_program_logger_writes_next_to_script(tmp_path, node_config):
    config = node_config(4949)
    source = ProgramSource(script_path=tmp_path / "munin_node_logger_test.py")

    program_logger = ProgramLogger(source, config)
    log = program_logger.logger

    assert (tmp_path / "munin_node_logger_test.log").exists()
    assert set(program_logger.handlers) == {"file", "console"}
    assert config.logger is log
    log.verbose("verbose %s", "message")
    for handler in log.handlers:
        handler.flush()
    assert "verbose message" in (tmp_path / "munin_node_logger_test.log").read_text()

    config.daemon["logging"]["console_level"] = "ERROR"
    program_logger.update_config()
    assert program_logger.handlers["console"].level == logging.ERROR

    for handler in list(log.handlers):
        handler.close()
        log.removeHandler(handler)


def test_health_server_starts_and_stops(node_config, logger):
    health = HealthCheck(node_config(4949), NodeStats(), logger)
    assert health.start()
    health.stop()
    assert health._server is None
    health.stop()


def test_module_source_compiles_without_warnings():
    path = Path(munin_node.__file__)
    with warnings.catch_warnings():
        warnings.simplefilter("error")
        compile(path.read_text(), str(path), "exec")
