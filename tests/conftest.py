import asyncio
import logging
import os

import pytest

from munin_node import (
    AccessGuard,
    EnvironmentResolver,
    NodeIdentity,
    NodeListener,
    NodeStats,
    PluginDirectory,
    PluginExecutor,
    ProgramLogger,
)


@pytest.fixture
def logger(request):
    log = ProgramLogger.VerboseLogger(f"munin_node.test.{request.node.name}")
    log.setLevel(logging.DEBUG)
    log.addHandler(logging.NullHandler())
    return log


@pytest.fixture
def plugin_dir(tmp_path):
    path = tmp_path / "plugins"
    path.mkdir()
    return path


@pytest.fixture
def plugin_conf(tmp_path):
    path = tmp_path / "plugin.conf"
    path.write_text("")
    return path


@pytest.fixture
def make_plugin(plugin_dir):
    def factory(name, body, mode=0o755, directory=None):
        path = (directory or plugin_dir) / name
        path.write_text("#!/bin/sh\n" + body + "\n")
        os.chmod(path, mode)
        return path

    return factory


@pytest.fixture
def executor_factory(plugin_dir, plugin_conf, logger):
    def factory(timeout=5, max_workers=0, stats=None, config_path=plugin_conf):
        resolver = EnvironmentResolver(config_path, logger)
        return PluginExecutor(
            plugin_dir, resolver, logger,
            timeout=timeout, max_workers=max_workers, stats=stats
        )

    return factory


@pytest.fixture
def listener_factory(plugin_dir, plugin_conf, logger, executor_factory):
    def factory(allow=(r"^127\.0\.0\.1$",), timeout=5):
        identity = NodeIdentity(
            host_name="test.node",
            bind_host="127.0.0.1",
            bind_port=0,
            plugin_directory=plugin_dir,
            plugin_config_path=plugin_conf,
            allowed_patterns=tuple(allow),
        )
        stats = NodeStats()
        return NodeListener(
            identity,
            AccessGuard(identity.allowed_patterns, logger),
            PluginDirectory(plugin_dir, logger),
            executor_factory(timeout=timeout, stats=stats),
            logger,
            stats,
        )

    return factory


class Client:
    """Line oriented test client for a running listener."""

    def __init__(self, reader, writer):
        self.reader = reader
        self.writer = writer

    @classmethod
    async def connect(cls, listener):
        host, port = listener.addresses[0]
        reader, writer = await asyncio.open_connection(host, port)
        return cls(reader, writer)

    async def send(self, line):
        if isinstance(line, str):
            line = line.encode()
        self.writer.write(line)
        await self.writer.drain()

    async def readline(self):
        return (await asyncio.wait_for(self.reader.readline(), timeout=5)).decode()

    async def command(self, line):
        await self.send(line + "\n")
        return await self.readline()

    async def read_block(self):
        """Lines up to and including the terminating '.'."""
        lines = []
        while True:
            line = await self.readline()
            lines.append(line)
            if line in (".\n", ""):
                return lines

    async def read_eof(self):
        """Remaining bytes until the server closes; a reset counts as closed."""
        try:
            return await asyncio.wait_for(self.reader.read(), timeout=5)
        except ConnectionResetError:
            return b""

    async def close(self):
        self.writer.close()
        try:
            await self.writer.wait_closed()
        except (ConnectionError, OSError):
            pass


@pytest.fixture
def client_class():
    return Client
