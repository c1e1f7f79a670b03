#!/etc/munin/node/venv/bin/python3 -u

"""
Munin Node

Description:
---------------------

A Munin-compatible monitoring node that answers the line-oriented Munin
protocol over TCP and relays the output of locally installed plugins:
- Per-connection protocol sessions (cap, version, nodes, list, config, fetch, quit)
- Regex-based client address allow list
- Plugin execution confined to a single directory (no traversal, no symlinks)
- Per-plugin environment from cascading plugin configuration sections
- Bounded plugin execution time
- Internal Prometheus metrics and a health check endpoint

Usage:
---------------------
1. Create munin_node.yml (or a classic munin_node.conf) next to the script,
   or point MUNIN_NODE_CONFIG at the configuration file
2. Install plugins into the plugins directory
3. Run the script directly or via systemd service
4. Query the node with: echo fetch cpu | nc localhost 4949

Configuration:
---------------------

node:
    host_name: web01.example.com    # Name announced to the collector
    allow:                          # Client address patterns (regex, unanchored)
        - '^127\\.0\\.0\\.1$'
        - '^192\\.168\\.1\\.'
    host: '*'                       # Listen address, '*' for all interfaces
    port: 4949
    plugins: /etc/munin/plugins
    plugins_config: /etc/munin/plugin-conf.d/munin-node
daemon:
    metrics_port: 9101              # Internal metrics port, 0 disables
    health_port: 0                  # Health check port, 0 disables
    plugin_timeout_sec: 60          # Maximum plugin run time
    max_workers: 0                  # Concurrent plugin runs, 0 = unbounded
    logging:
        level: "DEBUG"
        file_level: "DEBUG"
        console_level: "INFO"
        journal_level: "WARNING"
        max_bytes: 10485760
        backup_count: 3

Classic munin_node.conf (one directive per line):

    host_name web01.example.com
    allow ^127\\.0\\.0\\.1$
    host *
    port 4949
    plugins /etc/munin/plugins
    plugins_config /etc/munin/plugin-conf.d/munin-node

Plugin configuration:
---------------------

    [*]
    env.lang C

    [diskio_*]
    env.exclude loop

    [diskio_sda_*]
    env.warning 90

A plugin named diskio_sda receives variables from [*], [diskio_sda_*] and
[diskio_*]; on conflicting keys the assignment found last in the file wins.

Protocol:
---------------------
    <- # munin node at <host_name>
    -> cap              <- cap multigraph
    -> version          <- munin node version: <version>
    -> nodes            <- <host_name> / .
    -> list             <- space separated plugin names
    -> config <plugin>  <- plugin config output / .
    -> fetch <plugin>   <- plugin values / .
    -> quit

Dependencies:
---------------------
- Python 3.10+
- prometheus_client
- pyyaml
- cysystemd (for systemd integration)

Notes:
---------------------
- Plugin failures of any kind are answered with '# Unknown service'
- Details of rejected or failed plugins are only written to the local log
- Configuration is read once at startup
"""

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~
# Imports
#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

# Standard library imports
import asyncio
import ipaddress
import json
import logging
import os
import re
import signal
import socket
import stat
import sys
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import (
    Any, Awaitable, Callable, Dict, List, Optional, Sequence,
    Set, Tuple, Union
)
from wsgiref.simple_server import make_server

# Third party imports
from prometheus_client import (
    CollectorRegistry, Counter, Gauge, start_http_server
)
from cysystemd.daemon import notify, Notification
from cysystemd import journal
import yaml

__version__ = "1.0.6"

LINE_MAX = 2048

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~
# Core Exceptions
#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

class NodeError(Exception):
    """Base class for node errors."""
    pass

class ConfigError(NodeError):
    """Unreadable or malformed node or plugin configuration."""
    pass

class AccessDenied(NodeError):
    """Client address not covered by any allow pattern."""
    pass

class PathSecurityError(NodeError):
    """Plugin path escapes the plugin directory or is a symbolic link."""
    pass

class ExecutionError(NodeError):
    """Plugin could not be spawned, failed or timed out."""
    pass

class ProtocolError(NodeError):
    """Client sent something the session cannot continue after."""
    pass

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~
# Core Data Classes
#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

@dataclass(frozen=True)
class ProgramSource:
    """Program source and derived file configurations."""
    script_path: Path = field(default_factory=lambda: Path(sys.argv[0]).resolve())

    CONFIG_ENV_VAR = 'MUNIN_NODE_CONFIG'
    CONFIG_SUFFIXES = ('.yml', '.yaml', '.conf')

    @property
    def script_dir(self) -> Path:
        """Directory containing the script."""
        return self.script_path.parent

    @property
    def base_name(self) -> str:
        """Base name without extension."""
        return self.script_path.stem

    @property
    def logger_name(self) -> str:
        """Logger name derived from script name."""
        return self.base_name

    @property
    def config_path(self) -> Path:
        """Full path to config file.

        MUNIN_NODE_CONFIG wins when set; otherwise the first readable
        <script>.yml, <script>.yaml or <script>.conf next to the script.
        """
        override = os.getenv(self.CONFIG_ENV_VAR)
        if override:
            candidates = [Path(override)]
        else:
            candidates = [
                self.script_dir / f"{self.base_name}{suffix}"
                for suffix in self.CONFIG_SUFFIXES
            ]

        for path in candidates:
            if path.is_file() and os.access(path, os.R_OK):
                return path

        raise FileNotFoundError(
            f"Config file not found (tried: {', '.join(str(p) for p in candidates)})"
        )

    @property
    def log_path(self) -> Path:
        """Full path to log file."""
        path = self.script_dir / f"{self.base_name}.log"

        if os.access(path, os.W_OK):
            return path

        raise PermissionError(
            f"No writable log file at {path}"
        )

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

@dataclass(frozen=True)
class NodeIdentity:
    """Startup settings shared read-only by every session."""
    host_name: str
    bind_host: str
    bind_port: int
    plugin_directory: Path
    plugin_config_path: Optional[Path] = None
    allowed_patterns: Tuple[str, ...] = ()

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

class ProgramConfig:
    """Node configuration with defaults and validation."""

    # Default values as class attributes - explicit and easy to maintain
    DEFAULT_HOST = ''
    DEFAULT_PORT = 4949
    DEFAULT_PLUGIN_DIRECTORY = '/etc/munin/plugins'
    DEFAULT_PLUGIN_CONFIG = '/etc/munin/plugin-conf.d/munin-node'
    DEFAULT_METRICS_PORT = 9101
    DEFAULT_HEALTH_PORT = 0
    DEFAULT_PLUGIN_TIMEOUT = 60
    DEFAULT_MAX_WORKERS = 0

    # Logging defaults
    DEFAULT_LOG_LEVEL = 'DEBUG'
    DEFAULT_LOG_FILE_LEVEL = 'DEBUG'
    DEFAULT_LOG_CONSOLE_LEVEL = 'INFO'
    DEFAULT_LOG_JOURNAL_LEVEL = 'WARNING'
    DEFAULT_LOG_MAX_BYTES = 10485760  # 10MB
    DEFAULT_LOG_BACKUP_COUNT = 3
    DEFAULT_LOG_FORMAT = '%(asctime)s [%(process)d] [%(threadName)s] [%(name)s.%(funcName)s] [%(levelname)s] %(message)s'
    DEFAULT_LOG_DATE_FORMAT = '%Y-%m-%d %H:%M:%S'

    # Keys understood in the classic flat munin-node.conf
    FLAT_KEYS = ('host_name', 'allow', 'host', 'port', 'plugins', 'plugins_config')

    def __init__(self, source: ProgramSource):
        """Initialize configuration manager."""
        self._source = source
        self._config = {
            'node': self._get_node_defaults(),
            'daemon': self._get_daemon_defaults()
        }
        self._identity: Optional[NodeIdentity] = None
        self._config_path: Optional[Path] = None
        self._running_under_systemd = bool(os.getenv('INVOCATION_ID'))
        self._start_time = self.now_utc()
        self.logger = None

    def _log_message(self, level: str, message: str) -> None:
        """Safe logging wrapper."""
        if self.logger:
            getattr(self.logger, level)(message)

    def initialize(self) -> None:
        """Complete initialization after logger is attached."""
        try:
            self.load()
        except Exception as e:
            self._log_message('error', f"Failed to load configuration: {e}")
            raise

    def _get_node_defaults(self) -> Dict[str, Any]:
        """Get default node configuration."""
        return {
            'host_name': socket.getfqdn(),
            'allow': [],
            'host': self.DEFAULT_HOST,
            'port': self.DEFAULT_PORT,
            'plugins': self.DEFAULT_PLUGIN_DIRECTORY,
            'plugins_config': self.DEFAULT_PLUGIN_CONFIG
        }

    def _get_daemon_defaults(self) -> Dict[str, Any]:
        """Get default daemon configuration."""
        return {
            'metrics_port': self.DEFAULT_METRICS_PORT,
            'health_port': self.DEFAULT_HEALTH_PORT,
            'plugin_timeout_sec': self.DEFAULT_PLUGIN_TIMEOUT,
            'max_workers': self.DEFAULT_MAX_WORKERS,
            'logging': {
                'level': self.DEFAULT_LOG_LEVEL,
                'file_level': self.DEFAULT_LOG_FILE_LEVEL,
                'console_level': self.DEFAULT_LOG_CONSOLE_LEVEL,
                'journal_level': self.DEFAULT_LOG_JOURNAL_LEVEL,
                'max_bytes': self.DEFAULT_LOG_MAX_BYTES,
                'backup_count': self.DEFAULT_LOG_BACKUP_COUNT,
                'format': self.DEFAULT_LOG_FORMAT,
                'date_format': self.DEFAULT_LOG_DATE_FORMAT
            }
        }

    def load(self) -> None:
        """Load and validate the configuration file."""
        try:
            config_path = self._source.config_path
        except FileNotFoundError as e:
            raise ConfigError(str(e))

        if config_path.suffix in ('.yml', '.yaml'):
            file_config = self._read_yaml(config_path)
        else:
            file_config = self._read_flat(config_path)

        node_config = self._merge_with_defaults(
            self._get_node_defaults(), file_config.get('node') or {}
        )
        daemon_config = self._merge_with_defaults(
            self._get_daemon_defaults(), file_config.get('daemon') or {}
        )

        self._validate_node_section(node_config)
        self._validate_daemon_section(daemon_config)

        self._config = {'node': node_config, 'daemon': daemon_config}
        self._config_path = config_path
        self._identity = self._build_identity(node_config, config_path.parent)

        self._log_message(
            'info',
            f"Configuration loaded from {config_path}: "
            f"{len(self._identity.allowed_patterns)} allow patterns, "
            f"plugins in {self._identity.plugin_directory}"
        )

    def _read_yaml(self, path: Path) -> Dict[str, Any]:
        """Read the YAML configuration format."""
        try:
            with open(path) as f:
                file_config = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            raise ConfigError(f"Failed to load config file: {e}")

        if not isinstance(file_config, dict):
            raise ConfigError("Config file must contain a mapping")

        for section in ('node', 'daemon'):
            if file_config.get(section) is not None and not isinstance(file_config[section], dict):
                raise ConfigError(f"'{section}' section must be a mapping")

        return file_config

    def _read_flat(self, path: Path) -> Dict[str, Any]:
        """Read the classic one-directive-per-line munin-node.conf format."""
        node_config: Dict[str, Any] = {}
        allow: List[str] = []

        try:
            with open(path) as f:
                for raw_line in f:
                    line = raw_line.strip()
                    if not line or line.startswith('#'):
                        continue

                    parts = line.split(None, 1)
                    if len(parts) != 2:
                        continue

                    key, value = parts[0], parts[1].strip()
                    if key == 'allow':
                        allow.append(value)
                    elif key in self.FLAT_KEYS:
                        node_config[key] = value
        except (OSError, UnicodeDecodeError) as e:
            raise ConfigError(f"Failed to load config file: {e}")

        if allow:
            node_config['allow'] = allow

        return {'node': node_config}

    def _merge_with_defaults(self, defaults: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
        """Simple merge of override values with defaults."""
        result = dict(defaults)
        for key, value in override.items():
            if isinstance(value, dict) and isinstance(result.get(key), dict):
                result[key] = self._merge_with_defaults(result[key], value)
            else:
                result[key] = value
        return result

    @staticmethod
    def _validate_port(name: str, value: Any, allow_zero: bool = False) -> int:
        """Coerce and range check a port number."""
        if isinstance(value, bool):
            raise ConfigError(f"Invalid {name} {value}")
        try:
            port = int(value)
        except (TypeError, ValueError):
            raise ConfigError(f"Invalid {name} {value!r}")

        lowest = 0 if allow_zero else 1
        if port < lowest or port > 65535:
            raise ConfigError(f"Invalid {name} {port}: must be between {lowest}-65535")
        return port

    def _validate_node_section(self, config: Dict[str, Any]) -> None:
        """Validate and normalise the node section in place."""
        if not config.get('host_name'):
            raise ConfigError("host_name must not be empty")
        config['host_name'] = str(config['host_name'])

        allow = config.get('allow')
        if allow is None:
            allow = []
        elif isinstance(allow, str):
            allow = [allow]
        if not isinstance(allow, list) or not all(isinstance(p, str) for p in allow):
            raise ConfigError("allow must be a list of patterns")
        config['allow'] = allow

        host = config.get('host')
        config['host'] = '' if host in (None, '*') else str(host)

        config['port'] = self._validate_port('port', config.get('port'))

        if not config.get('plugins'):
            raise ConfigError("plugins directory must be set")

    def _validate_daemon_section(self, config: Dict[str, Any]) -> None:
        """Validate and normalise the daemon section in place."""
        config['metrics_port'] = self._validate_port(
            'metrics_port', config.get('metrics_port'), allow_zero=True
        )
        config['health_port'] = self._validate_port(
            'health_port', config.get('health_port'), allow_zero=True
        )
        if config['metrics_port'] and config['metrics_port'] == config['health_port']:
            raise ConfigError("metrics_port and health_port must be different")

        timeout = config.get('plugin_timeout_sec')
        if isinstance(timeout, bool) or not isinstance(timeout, (int, float)) or timeout <= 0:
            raise ConfigError(f"Invalid plugin_timeout_sec {timeout!r}")

        workers = config.get('max_workers')
        if isinstance(workers, bool) or not isinstance(workers, int) or workers < 0:
            raise ConfigError(f"Invalid max_workers {workers!r}")

        if not isinstance(config.get('logging'), dict):
            raise ConfigError("logging must be a mapping")

    def _build_identity(self, config: Dict[str, Any], base_dir: Path) -> NodeIdentity:
        """Build the immutable node identity; relative paths are taken from the config directory."""
        plugin_directory = base_dir / Path(config['plugins']).expanduser()
        if not plugin_directory.is_dir():
            raise ConfigError(f"Plugin directory {plugin_directory} does not exist")

        plugin_config_path = None
        if config.get('plugins_config'):
            plugin_config_path = base_dir / Path(config['plugins_config']).expanduser()
            if not plugin_config_path.is_file():
                self._log_message(
                    'warning',
                    f"Plugin configuration {plugin_config_path} not found, plugins will fail until it exists"
                )

        return NodeIdentity(
            host_name=config['host_name'],
            bind_host=config['host'],
            bind_port=config['port'],
            plugin_directory=plugin_directory,
            plugin_config_path=plugin_config_path,
            allowed_patterns=tuple(config['allow'])
        )

    @staticmethod
    def now_utc() -> datetime:
        """Get current UTC datetime."""
        return datetime.now(timezone.utc)

    def get_uptime_seconds(self) -> float:
        """Get service uptime in seconds."""
        return (self.now_utc() - self._start_time).total_seconds()

    @property
    def identity(self) -> NodeIdentity:
        """Get node identity (requires a successful load)."""
        if self._identity is None:
            raise ConfigError("Configuration has not been loaded")
        return self._identity

    @property
    def config_path(self) -> Optional[Path]:
        """Path the configuration was loaded from."""
        return self._config_path

    @property
    def running_under_systemd(self) -> bool:
        """Check if running under systemd."""
        return self._running_under_systemd

    @property
    def node(self) -> Dict[str, Any]:
        """Get node configuration."""
        return self._config['node']

    @property
    def daemon(self) -> Dict[str, Any]:
        """Get daemon configuration."""
        return self._config['daemon']

    @property
    def logging(self) -> Dict[str, Any]:
        """Get logging configuration."""
        return self.daemon.get('logging', {})

    @property
    def metrics_port(self) -> int:
        """Get metrics port number."""
        return self.daemon.get('metrics_port', self.DEFAULT_METRICS_PORT)

    @property
    def health_port(self) -> int:
        """Get health check port number."""
        return self.daemon.get('health_port', self.DEFAULT_HEALTH_PORT)

    @property
    def plugin_timeout(self) -> float:
        """Get plugin execution timeout in seconds."""
        return self.daemon.get('plugin_timeout_sec', self.DEFAULT_PLUGIN_TIMEOUT)

    @property
    def max_workers(self) -> int:
        """Get maximum number of concurrent plugin runs."""
        return self.daemon.get('max_workers', self.DEFAULT_MAX_WORKERS)

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

class ProgramLogger:
    """Manages logging configuration and setup."""

    # Verbose logging config
    VERBOSE_DEBUG = True
    VERBOSE_LEVEL = 15  # DEBUG 10, INFO 20

    class VerboseLogger(logging.Logger):
        """Enhanced Logger class adding verbose debugging capabilities"""

        def verbose(self, msg: str, *args: Any, **kwargs: Any) -> None:
            """Log at VERBOSE level, between DEBUG and INFO."""
            if ProgramLogger.VERBOSE_DEBUG and self.isEnabledFor(ProgramLogger.VERBOSE_LEVEL):
                self._log(ProgramLogger.VERBOSE_LEVEL, msg, args, **kwargs)

    def __init__(
        self,
        source: ProgramSource,
        config: ProgramConfig
    ):
        """Initialize logging configuration.

        Args:
            source: Program source information
            config: Program configuration
        """

        # Set VerboseLogger as the default logger class
        logging.addLevelName(self.VERBOSE_LEVEL, 'VERBOSE')
        logging.setLoggerClass(self.VerboseLogger)

        self.source = source
        self.config = config
        self._handlers: Dict[str, logging.Handler] = {}

        # Ensure log file exists next to the script
        log_path = self.source.script_dir / f"{self.source.base_name}.log"
        if not log_path.exists():
            try:
                log_path.touch()
                log_path.chmod(0o644)
            except OSError as e:
                print(f"Failed to create log file {log_path}: {e}", file=sys.stderr)

        self._logger = self._setup_logging()

        # Attach logger to config after setup
        self.config.logger = self._logger

    @property
    def logger(self) -> logging.Logger:
        """Get the configured logger instance."""
        return self._logger

    @property
    def handlers(self) -> Dict[str, logging.Handler]:
        """Get dictionary of configured handlers."""
        return self._handlers

    def _get_logging_config(self) -> Dict[str, Any]:
        """Get logging configuration with defaults filled in."""
        logging_config = self.config.logging
        return {
            'level': logging_config.get('level', self.config.DEFAULT_LOG_LEVEL),
            'file_level': logging_config.get('file_level', self.config.DEFAULT_LOG_FILE_LEVEL),
            'console_level': logging_config.get('console_level', self.config.DEFAULT_LOG_CONSOLE_LEVEL),
            'journal_level': logging_config.get('journal_level', self.config.DEFAULT_LOG_JOURNAL_LEVEL),
            'max_bytes': logging_config.get('max_bytes', self.config.DEFAULT_LOG_MAX_BYTES),
            'backup_count': logging_config.get('backup_count', self.config.DEFAULT_LOG_BACKUP_COUNT),
            'format': logging_config.get('format', self.config.DEFAULT_LOG_FORMAT),
            'date_format': logging_config.get('date_format', self.config.DEFAULT_LOG_DATE_FORMAT)
        }

    def _get_formatter(self) -> logging.Formatter:
        """Create formatter using current settings."""
        log_settings = self._get_logging_config()
        return logging.Formatter(
            log_settings['format'],
            log_settings['date_format']
        )

    def _setup_logging(self) -> logging.Logger:
        """Set up logging with configuration from config file.

        Creates and configures:
        - Base logger
        - File handler with rotation
        - Console handler
        - Journal handler (if running under systemd)

        Returns:
            Configured logging.Logger instance

        Note:
            If handler setup fails, ensures at least basic console logging
            is available as a fallback.
        """
        logger = logging.getLogger(self.source.logger_name)
        logger.handlers.clear()

        log_settings = self._get_logging_config()
        logger.setLevel(log_settings['level'])

        formatter = self._get_formatter()

        try:
            # File handler
            file_handler = RotatingFileHandler(
                self.source.log_path,
                maxBytes=log_settings['max_bytes'],
                backupCount=log_settings['backup_count']
            )
            file_handler.setLevel(log_settings['file_level'])
            file_handler.setFormatter(formatter)
            logger.addHandler(file_handler)
            self._handlers['file'] = file_handler

            # Console handler
            console_handler = logging.StreamHandler(sys.stdout)
            console_handler.setLevel(log_settings['console_level'])
            console_handler.setFormatter(formatter)
            logger.addHandler(console_handler)
            self._handlers['console'] = console_handler

            # Journal handler for systemd
            if self.config.running_under_systemd:
                journal_handler = journal.JournaldLogHandler()
                journal_handler.setLevel(log_settings['journal_level'])
                journal_handler.setFormatter(formatter)
                logger.addHandler(journal_handler)
                self._handlers['journal'] = journal_handler

        except Exception as e:
            # If handler setup fails, ensure we have at least a basic console handler
            if not logger.handlers:
                basic_handler = logging.StreamHandler(sys.stdout)
                basic_handler.setFormatter(logging.Formatter(self.config.DEFAULT_LOG_FORMAT))
                logger.addHandler(basic_handler)
                self._handlers['console'] = basic_handler
                print(f"Failed to setup handlers: {e}, using basic console handler", file=sys.stderr)

        return logger

    def update_config(self) -> None:
        """Update logging configuration from current config settings.

        Called once the configuration file has been loaded, since the logger
        has to exist before the file is read.
        """
        log_settings = self._get_logging_config()
        formatter = self._get_formatter()

        self._logger.setLevel(log_settings['level'])

        for name, handler in self._handlers.items():
            handler.setFormatter(formatter)
            if name == 'file':
                handler.setLevel(log_settings['file_level'])
            elif name == 'console':
                handler.setLevel(log_settings['console_level'])
            elif name == 'journal':
                handler.setLevel(log_settings['journal_level'])

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~
# Node Statistics
#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

@dataclass
class NodeStats:
    """Counters for connections, commands and plugin runs.

    Plain counters feed the health check; the same events are mirrored
    into Prometheus metrics held in a registry owned by this instance.

    Attributes:
        connections_accepted (int): Connections that passed the allow list
        connections_denied (int): Connections closed by the allow list
        sessions_active (int): Sessions currently open
        commands (int): Protocol commands handled
        executions_ok (int): Plugin runs that exited 0
        executions_failed (int): Plugin runs rejected or failed
        last_execution_time (float): Duration of the last plugin run
    """
    connections_accepted: int = 0
    connections_denied: int = 0
    sessions_active: int = 0
    commands: int = 0
    executions_ok: int = 0
    executions_failed: int = 0
    last_execution_time: float = 0
    started: datetime = field(default_factory=lambda: ProgramConfig.now_utc())
    registry: CollectorRegistry = field(default_factory=CollectorRegistry)

    def __post_init__(self):
        self._connections = Counter(
            'munin_node_connections',
            'Connections by allow list decision',
            labelnames=['result'],
            registry=self.registry
        )
        self._sessions = Gauge(
            'munin_node_sessions_active',
            'Protocol sessions currently open',
            registry=self.registry
        )
        self._commands = Counter(
            'munin_node_commands',
            'Protocol commands handled',
            labelnames=['command'],
            registry=self.registry
        )
        self._executions = Counter(
            'munin_node_plugin_executions',
            'Plugin executions by outcome',
            labelnames=['outcome'],
            registry=self.registry
        )
        self._duration = Gauge(
            'munin_node_plugin_duration_seconds',
            'Duration of the last run of each plugin',
            labelnames=['plugin'],
            registry=self.registry
        )
        uptime = Gauge(
            'munin_node_uptime_seconds',
            'Time since node start in seconds',
            registry=self.registry
        )
        uptime.set_function(lambda: (ProgramConfig.now_utc() - self.started).total_seconds())

    def connection(self, accepted: bool) -> None:
        if accepted:
            self.connections_accepted += 1
        else:
            self.connections_denied += 1
        self._connections.labels(result='accepted' if accepted else 'denied').inc()

    def session_opened(self) -> None:
        self.sessions_active += 1
        self._sessions.inc()

    def session_closed(self) -> None:
        self.sessions_active -= 1
        self._sessions.dec()

    def command(self, name: str) -> None:
        self.commands += 1
        self._commands.labels(command=name).inc()

    def execution(self, plugin: str, outcome: str, duration: float = 0) -> None:
        """Record one plugin run; outcome is ok, security, config or error."""
        if outcome == 'ok':
            self.executions_ok += 1
            self.last_execution_time = duration
            self._duration.labels(plugin=plugin).set(duration)
        else:
            self.executions_failed += 1
        self._executions.labels(outcome=outcome).inc()

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~
# Access Control
#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

def is_allowed(
    remote_address: str,
    patterns: Sequence[str],
    logger: Optional[logging.Logger] = None
) -> bool:
    """Return True when any pattern matches somewhere in the address.

    Matching is unanchored (re.search), as with Munin's allow directive.
    Malformed patterns are logged and skipped.
    """
    for pattern in patterns:
        try:
            if re.search(pattern, remote_address):
                return True
        except re.error as e:
            if logger:
                logger.error(f"Error in allow pattern {pattern!r}: {e}")
    return False

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

class AccessGuard:
    """Allow list with patterns compiled once at startup."""

    def __init__(self, patterns: Sequence[str], logger: logging.Logger):
        self.logger = logger
        self._patterns: List[re.Pattern] = []

        for pattern in patterns:
            try:
                self._patterns.append(re.compile(pattern))
            except re.error as e:
                self.logger.error(f"Skipping invalid allow pattern {pattern!r}: {e}")

        if not self._patterns:
            self.logger.warning("Allow list is empty, all connections will be denied")

    @staticmethod
    def client_address(peername: Any) -> str:
        """Textual client IP from a socket peer name, port stripped.

        IPv4 clients reaching a dual-stack socket appear as ::ffff:a.b.c.d
        and are reported in plain IPv4 form.
        """
        if not peername:
            return ''
        host = peername[0] if isinstance(peername, (tuple, list)) else str(peername)
        try:
            address = ipaddress.ip_address(host)
        except ValueError:
            return host
        if isinstance(address, ipaddress.IPv6Address) and address.ipv4_mapped:
            return str(address.ipv4_mapped)
        return str(address)

    def is_allowed(self, remote_address: str) -> bool:
        for pattern in self._patterns:
            if pattern.search(remote_address):
                self.logger.verbose(f"Address {remote_address} allowed by {pattern.pattern!r}")
                return True
        return False

    def check(self, remote_address: str) -> None:
        """Raise AccessDenied unless the address is allowed."""
        if not self.is_allowed(remote_address):
            raise AccessDenied(f"Access denied for IP: {remote_address}")

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~
# Plugins
#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

class PluginDirectory:
    """Read-only view of the plugin directory."""

    def __init__(self, path: Path, logger: logging.Logger):
        self.path = Path(path)
        self.logger = logger

    def list(self) -> List[str]:
        """Names of all non-directory entries, sorted by name."""
        try:
            with os.scandir(self.path) as entries:
                names = [
                    entry.name for entry in entries
                    if not entry.is_dir(follow_symlinks=False)
                ]
        except OSError as e:
            self.logger.warning(f"Failed to read plugin directory {self.path}: {e}")
            return []

        return sorted(names)

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

def candidate_sections(plugin_name: str) -> List[str]:
    """Plugin configuration sections that apply to a plugin.

    The global section comes first, then name prefixes from most to least
    specific: diskio_sda -> ['*', 'diskio_sda_*', 'diskio_*'].
    """
    tokens = plugin_name.split('_')
    sections = ['*']
    for i in range(len(tokens), 0, -1):
        sections.append('_'.join(tokens[:i]) + '_*')
    return sections

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

class EnvironmentResolver:
    """Resolves env.* assignments for a plugin from the plugin configuration."""

    ENV_PREFIX = 'env.'

    def __init__(self, config_path: Optional[Path], logger: logging.Logger):
        self.config_path = Path(config_path) if config_path else None
        self.logger = logger

    def resolve(self, plugin_name: str) -> Dict[str, str]:
        """Build a fresh environment mapping for one plugin invocation.

        Every matching section contributes in file order, so a later
        assignment of the same key overrides an earlier one.

        Raises:
            ConfigError: If the file cannot be read or an env line has no value
        """
        environment: Dict[str, str] = {}
        if self.config_path is None:
            return environment

        sections = set(candidate_sections(plugin_name))
        current_section = None

        try:
            with open(self.config_path, encoding='utf-8') as f:
                for line_number, raw_line in enumerate(f, start=1):
                    line = raw_line.strip()
                    if not line or line.startswith('#'):
                        continue

                    if line.startswith('[') and line.endswith(']'):
                        section = line[1:-1]
                        current_section = section if section in sections else None
                        continue

                    if current_section is None or not line.startswith(self.ENV_PREFIX):
                        continue

                    parts = line.split(None, 1)
                    key = parts[0][len(self.ENV_PREFIX):]
                    if len(parts) != 2 or not key:
                        raise ConfigError(
                            f"Invalid line format at {self.config_path}:{line_number}: {line}"
                        )

                    environment[key] = parts[1].strip()
                    self.logger.verbose(
                        f"env variable {key} from [{current_section}] set for plugin {plugin_name}"
                    )
        except (OSError, UnicodeDecodeError) as e:
            raise ConfigError(f"Unable to read plugin configuration {self.config_path}: {e}")

        return environment

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~
# Plugin Execution
#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

@dataclass
class ExecutionResult:
    """Result of a plugin execution."""
    output: bytes
    return_code: int = 0
    execution_time: float = 0

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

class PluginExecutor:
    """Executes plugins confined to the plugin directory."""

    CONFIG_ARGUMENT = 'config'

    def __init__(
        self,
        plugin_directory: Path,
        resolver: EnvironmentResolver,
        logger: logging.Logger,
        timeout: float = ProgramConfig.DEFAULT_PLUGIN_TIMEOUT,
        max_workers: int = 0,
        stats: Optional[NodeStats] = None
    ):
        self.plugin_directory = Path(plugin_directory)
        self.resolver = resolver
        self.logger = logger
        self.timeout = timeout
        self.stats = stats
        self._semaphore = asyncio.Semaphore(max_workers) if max_workers > 0 else None

    def validate_path(self, plugin_name: str) -> Path:
        """Return the plugin path if it is a non-link entry directly under the directory.

        Checked on every call; a plugin may be swapped between list and fetch.
        Names reaching into subdirectories are refused.
        """
        directory = os.path.abspath(self.plugin_directory)
        candidate = os.path.abspath(os.path.join(directory, plugin_name))

        if os.path.dirname(candidate) != directory:
            raise PathSecurityError(f"Plugin {candidate} is not directly inside {directory}")

        try:
            info = os.lstat(candidate)
        except (OSError, ValueError) as e:
            raise PathSecurityError(f"Failed to get plugin information for {candidate}: {e}")

        if stat.S_ISLNK(info.st_mode):
            raise PathSecurityError(f"Plugin is a symbolic link: {candidate}")

        return Path(candidate)

    async def execute(self, plugin_name: str, argument: Optional[str] = None) -> ExecutionResult:
        """Run a plugin with an optional single argument and capture stdout.

        Raises:
            PathSecurityError: Plugin path failed containment or link checks
            ConfigError: Plugin environment could not be resolved
            ExecutionError: Spawn failure, non-zero exit or timeout
        """
        try:
            plugin_path = self.validate_path(plugin_name)
            environment = self.resolver.resolve(plugin_name)
        except PathSecurityError:
            self._record(plugin_name, 'security')
            raise
        except ConfigError:
            self._record(plugin_name, 'config')
            raise

        argv = [str(plugin_path)]
        if argument:
            argv.append(argument)

        try:
            if self._semaphore is None:
                result = await self._spawn(argv, environment)
            else:
                async with self._semaphore:
                    result = await self._spawn(argv, environment)
        except ExecutionError:
            self._record(plugin_name, 'error')
            raise

        self._record(plugin_name, 'ok', result.execution_time)
        self.logger.verbose(
            f"Plugin {plugin_name} finished in {result.execution_time:.3f}s "
            f"({len(result.output)} bytes)"
        )
        return result

    async def _spawn(self, argv: List[str], environment: Dict[str, str]) -> ExecutionResult:
        """Spawn the plugin with its own environment copy and wait for it."""
        env = dict(os.environ)
        env.update(environment)

        start_time = ProgramConfig.now_utc().timestamp()
        try:
            process = await asyncio.create_subprocess_exec(
                *argv,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=env
            )
        except (OSError, ValueError) as e:
            raise ExecutionError(f"Failed to start plugin {argv[0]}: {e}")

        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=self.timeout)
        except asyncio.TimeoutError:
            await self._terminate(process)
            raise ExecutionError(f"Plugin {argv[0]} timed out after {self.timeout}s")
        except asyncio.CancelledError:
            await self._terminate(process)
            raise

        execution_time = ProgramConfig.now_utc().timestamp() - start_time

        if stderr:
            self.logger.debug(
                f"Plugin {argv[0]} stderr: {stderr.decode(errors='replace').strip()}"
            )

        if process.returncode != 0:
            raise ExecutionError(
                f"Plugin {argv[0]} failed to execute: exit status {process.returncode}"
            )

        return ExecutionResult(
            output=stdout,
            return_code=process.returncode,
            execution_time=execution_time
        )

    async def _terminate(self, process: asyncio.subprocess.Process) -> None:
        """Kill a plugin that is still running and reap it."""
        if process.returncode is None:
            try:
                process.kill()
            except ProcessLookupError:
                pass
        await process.wait()

    def _record(self, plugin_name: str, outcome: str, duration: float = 0) -> None:
        if self.stats:
            self.stats.execution(plugin_name, outcome, duration)

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~
# Protocol Session
#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

class SessionHandler:
    """Munin protocol state machine for a single client connection."""

    CAPABILITIES = 'cap multigraph\n'
    UNKNOWN_SERVICE = '# Unknown service\n.\n'
    USAGE = '# Unknown command. Try cap, list, nodes, config, fetch, version or quit\n'

    def __init__(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        identity: NodeIdentity,
        directory: PluginDirectory,
        executor: PluginExecutor,
        logger: logging.Logger,
        stats: Optional[NodeStats] = None
    ):
        self.reader = reader
        self.writer = writer
        self.identity = identity
        self.directory = directory
        self.executor = executor
        self.logger = logger
        self.stats = stats
        self.peer = AccessGuard.client_address(writer.get_extra_info('peername'))

        # Command registry, quit is handled by dispatch
        self._commands: Dict[str, Callable[[Optional[str]], Awaitable[None]]] = {
            'cap': self._cap,
            'version': self._version,
            'nodes': self._nodes,
            'list': self._list,
            'config': self._config,
            'fetch': self._fetch,
        }

    async def run(self) -> None:
        """Serve commands until quit, end of stream or a fatal read error."""
        try:
            await self._write(f"# munin node at {self.identity.host_name}\n")

            while True:
                line = await self._read_line()
                if line is None:
                    self.logger.verbose(f"Client {self.peer} closed the connection")
                    break
                if not await self.dispatch(line):
                    self.logger.verbose(f"Client {self.peer} quit")
                    break

        except ProtocolError as e:
            self.logger.warning(f"Closing connection from {self.peer}: {e}")
        except (ConnectionError, OSError) as e:
            self.logger.warning(f"Error reading from connection {self.peer}: {e}")
        finally:
            await self._close()

    async def _read_line(self) -> Optional[str]:
        """Next request line without its terminator, None at end of stream."""
        try:
            raw = await self.reader.readline()
        except ValueError as e:
            # StreamReader limit exceeded
            raise ProtocolError(f"Line exceeds {LINE_MAX} bytes: {e}")

        if not raw:
            return None
        return raw.decode('utf-8', errors='replace').rstrip('\r\n')

    async def dispatch(self, line: str) -> bool:
        """Handle one request line; returns False when the session should end."""
        parts = line.split()
        if not parts:
            await self._write(self.USAGE)
            return True

        command = parts[0]
        argument = parts[1] if len(parts) > 1 else None

        if command == 'quit':
            self._count(command)
            return False

        handler = self._commands.get(command)
        if handler is None:
            self.logger.verbose(f"Unknown command {command!r} from {self.peer}")
            await self._write(self.USAGE)
            return True

        self._count(command)
        await handler(argument)
        return True

    async def _cap(self, argument: Optional[str]) -> None:
        await self._write(self.CAPABILITIES)

    async def _version(self, argument: Optional[str]) -> None:
        await self._write(f"munin node version: {__version__}\n")

    async def _nodes(self, argument: Optional[str]) -> None:
        await self._write(f"{self.identity.host_name}\n.\n")

    async def _list(self, argument: Optional[str]) -> None:
        await self._write(' '.join(self.directory.list()) + '\n')

    async def _config(self, argument: Optional[str]) -> None:
        await self._run_plugin(argument, PluginExecutor.CONFIG_ARGUMENT)

    async def _fetch(self, argument: Optional[str]) -> None:
        await self._run_plugin(argument, None)

    async def _run_plugin(self, plugin_name: Optional[str], option: Optional[str]) -> None:
        """Relay plugin output terminated by a lone '.' line."""
        if not plugin_name:
            self.logger.verbose(f"Client {self.peer} sent a plugin command without a plugin name")
            await self._write(self.UNKNOWN_SERVICE)
            return

        try:
            result = await self.executor.execute(plugin_name, option)
        except PathSecurityError as e:
            self.logger.warning(f"Rejected plugin {plugin_name!r} requested by {self.peer}: {e}")
        except ConfigError as e:
            self.logger.error(f"Plugin configuration error for {plugin_name}: {e}")
        except ExecutionError as e:
            self.logger.error(f"Plugin {plugin_name} failed: {e}")
        else:
            output = result.output
            if output and not output.endswith(b'\n'):
                output += b'\n'
            await self._write(output + b'.\n')
            return

        await self._write(self.UNKNOWN_SERVICE)

    async def _write(self, data: Union[str, bytes]) -> None:
        if isinstance(data, str):
            data = data.encode('utf-8')
        self.writer.write(data)
        await self.writer.drain()

    async def _close(self) -> None:
        self.writer.close()
        try:
            await self.writer.wait_closed()
        except (ConnectionError, OSError):
            pass

    def _count(self, command: str) -> None:
        if self.stats:
            self.stats.command(command)

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~
# Listener
#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

class NodeListener:
    """Owns the listening socket and spawns one session per allowed client."""

    def __init__(
        self,
        identity: NodeIdentity,
        guard: AccessGuard,
        directory: PluginDirectory,
        executor: PluginExecutor,
        logger: logging.Logger,
        stats: Optional[NodeStats] = None
    ):
        self.identity = identity
        self.guard = guard
        self.directory = directory
        self.executor = executor
        self.logger = logger
        self.stats = stats
        self._server: Optional[asyncio.AbstractServer] = None
        self._sessions: Set[asyncio.Task] = set()

    @property
    def addresses(self) -> List[Tuple[str, int]]:
        """Bound (host, port) pairs."""
        if not self._server:
            return []
        return [sock.getsockname()[:2] for sock in self._server.sockets]

    async def start(self) -> None:
        """Bind the listening socket.

        Raises:
            OSError: If the address cannot be bound
        """
        self._server = await asyncio.start_server(
            self._handle_connection,
            host=self.identity.bind_host or None,
            port=self.identity.bind_port,
            limit=LINE_MAX
        )
        for host, port in self.addresses:
            self.logger.info(f"Node started on {host}:{port}")

    async def close(self) -> None:
        """Close the listening socket and cancel open sessions."""
        if not self._server:
            return

        server, self._server = self._server, None
        server.close()

        sessions = list(self._sessions)
        for task in sessions:
            task.cancel()
        if sessions:
            self.logger.info(f"Cancelling {len(sessions)} open sessions")
            await asyncio.gather(*sessions, return_exceptions=True)

        await server.wait_closed()
        self.logger.info("Listener closed")

    async def _handle_connection(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter
    ) -> None:
        """Apply the allow list, then serve the connection."""
        client_ip = AccessGuard.client_address(writer.get_extra_info('peername'))

        try:
            self.guard.check(client_ip)
        except AccessDenied as e:
            self.logger.warning(str(e))
            if self.stats:
                self.stats.connection(False)
            writer.close()
            try:
                await writer.wait_closed()
            except (ConnectionError, OSError):
                pass
            return

        if self.stats:
            self.stats.connection(True)
            self.stats.session_opened()
        self.logger.verbose(f"Accepted connection from {client_ip}")

        task = asyncio.current_task()
        self._sessions.add(task)
        try:
            session = SessionHandler(
                reader, writer, self.identity, self.directory,
                self.executor, self.logger, self.stats
            )
            await session.run()
        except Exception as e:
            self.logger.error(f"Session with {client_ip} failed: {e}", exc_info=True)
            writer.close()
        finally:
            self._sessions.discard(task)
            if self.stats:
                self.stats.session_closed()

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~
# Health Check Endpoint
#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

class HealthCheck:
    """Health check endpoint implementation.

    Endpoints:
        GET /health: Node identity, counters and file locations as JSON
    """

    def __init__(
        self,
        config: ProgramConfig,
        stats: NodeStats,
        logger: logging.Logger
    ):
        self.config = config
        self.stats = stats
        self.logger = logger
        self._server = None
        self._thread = None

    def start(self) -> bool:
        """Start health check server in a separate thread."""
        try:
            app = self._create_wsgi_app()
            self._server = make_server('', self.config.health_port, app)
            self._thread = threading.Thread(
                target=self._server.serve_forever,
                name="HealthCheckServer",
                daemon=True
            )
            self._thread.start()
            self.logger.info(f"Started health check server on port {self.config.health_port}")
            return True
        except Exception as e:
            self.logger.error(f"Failed to start health check server: {e}")
            return False

    def stop(self) -> None:
        """Shut the health server down and wait for its thread."""
        if not self._server:
            return

        self.logger.info("Stopping health check server")
        server, thread = self._server, self._thread
        self._server = self._thread = None
        try:
            server.shutdown()
            server.server_close()
        except OSError as e:
            self.logger.error(f"Error stopping health check server: {e}")
        if thread:
            thread.join(timeout=5)

    def _error_body(self, message: str) -> bytes:
        return json.dumps({"status": "error", "error": message}).encode()

    def _create_wsgi_app(self):
        """Create WSGI application for health checks."""
        def app(environ, start_response):
            try:
                path = environ.get('PATH_INFO', '').rstrip('/')

                if path not in ['', '/health']:
                    start_response('404 Not Found', [('Content-Type', 'application/json')])
                    return [self._error_body("Not Found")]

                identity = self.config.identity
                response = {
                    "node": {
                        "status": "healthy",
                        "up": True,
                        "host_name": identity.host_name,
                        "version": __version__,
                        "listen": f"{identity.bind_host or '*'}:{identity.bind_port}",
                        "current_datetime_utc": self.config.now_utc().isoformat(),
                        "service_start_datetime_utc": self.config._start_time.isoformat(),
                        "uptime_seconds": round(self.config.get_uptime_seconds(), 6),
                        "process_id": os.getpid(),
                        "systemd_managed": self.config.running_under_systemd
                    },
                    "stats": {
                        "connections": {
                            "accepted": self.stats.connections_accepted,
                            "denied": self.stats.connections_denied,
                            "sessions_active": self.stats.sessions_active
                        },
                        "commands": self.stats.commands,
                        "plugins": {
                            "executions_ok": self.stats.executions_ok,
                            "executions_failed": self.stats.executions_failed,
                            "last_execution_seconds": round(self.stats.last_execution_time, 3)
                        }
                    },
                    "files": {
                        "config": str(self.config.config_path),
                        "plugins": str(identity.plugin_directory),
                        "plugins_config": str(identity.plugin_config_path) if identity.plugin_config_path else None
                    }
                }

                start_response('200 OK', [
                    ('Content-Type', 'application/json'),
                    ('Cache-Control', 'no-cache, no-store, must-revalidate')
                ])
                return [json.dumps(response, indent=2).encode()]

            except Exception as e:
                self.logger.error(f"Health check error: {e}", exc_info=True)
                start_response('500 Internal Server Error', [('Content-Type', 'application/json')])
                return [self._error_body(str(e))]

        return app

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~
# Main Service Class and Entry Point
#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

class MuninNode:
    """Main service class for the munin node.

    Wires the allow list, plugin directory, environment resolver and
    executor into the listener, and runs the metrics and health servers
    alongside it until a shutdown signal arrives.

    Attributes:
        config (ProgramConfig): Loaded program configuration
        logger (logging.Logger): Configured logger instance
        stats (NodeStats): Connection and plugin counters
        listener (NodeListener): Protocol listener
        health_check (HealthCheck): Health check endpoint handler
        shutdown_event (asyncio.Event): Set to stop the service
    """

    SHUTDOWN_TIMEOUT = 30  # seconds

    def __init__(self, config: ProgramConfig, logger: logging.Logger):
        self.config = config
        self.logger = logger
        self.shutdown_event = asyncio.Event()
        self._loop: Optional[asyncio.AbstractEventLoop] = None

        identity = config.identity
        self.stats = NodeStats()
        self.guard = AccessGuard(identity.allowed_patterns, logger)
        self.directory = PluginDirectory(identity.plugin_directory, logger)
        self.resolver = EnvironmentResolver(identity.plugin_config_path, logger)
        self.executor = PluginExecutor(
            identity.plugin_directory,
            self.resolver,
            logger,
            timeout=config.plugin_timeout,
            max_workers=config.max_workers,
            stats=self.stats
        )
        self.listener = NodeListener(
            identity, self.guard, self.directory, self.executor, logger, self.stats
        )
        self.health_check = HealthCheck(config, self.stats, logger)

        self.logger.info(f"Munin node {identity.host_name} initialized")

    def install_signal_handlers(self) -> None:
        """Route SIGTERM and SIGINT to the shutdown event."""
        signal.signal(signal.SIGTERM, self._handle_signal)
        signal.signal(signal.SIGINT, self._handle_signal)

    def _handle_signal(self, signum, frame):
        """Handle shutdown signals."""
        signal_name = signal.Signals(signum).name
        self.logger.info(f"Received {signal_name}, initiating shutdown...")
        if self._loop:
            self._loop.call_soon_threadsafe(self.shutdown_event.set)

    def _start_servers(self) -> bool:
        """Start the optional metrics and health check servers."""
        if self.config.metrics_port:
            try:
                start_http_server(self.config.metrics_port, registry=self.stats.registry)
                self.logger.info(f"Started metrics server on port {self.config.metrics_port}")
            except Exception as e:
                self.logger.error(f"Failed to start metrics server: {e}")
                return False

        if self.config.health_port and not self.health_check.start():
            return False

        return True

    async def run(self) -> int:
        """Main service loop."""
        self._loop = asyncio.get_running_loop()
        try:
            try:
                await self.listener.start()
            except OSError as e:
                identity = self.config.identity
                self.logger.error(
                    f"Failed to start server on {identity.bind_host or '*'}:{identity.bind_port}: {e}"
                )
                return 1

            if not self._start_servers():
                return 1

            if self.config.running_under_systemd:
                notify(Notification.READY)

            await self.shutdown_event.wait()
            self.logger.info("Shutdown event received, stopping node")
            return 0

        except asyncio.CancelledError:
            self.logger.warning("Node operation cancelled")
            raise

        except Exception as e:
            self.logger.exception(f"Fatal error in node: {e}")
            return 1

        finally:
            if self.config.running_under_systemd:
                notify(Notification.STOPPING)
            try:
                await asyncio.wait_for(self.listener.close(), timeout=self.SHUTDOWN_TIMEOUT)
            except asyncio.TimeoutError:
                self.logger.error(f"Listener shutdown timed out after {self.SHUTDOWN_TIMEOUT} seconds")
            self.health_check.stop()
            self.logger.info("Node shutdown complete")

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

async def main():
    """Entry point for the munin node service."""
    try:
        source = ProgramSource()
        config = ProgramConfig(source)
        program_logger = ProgramLogger(source, config)
        logger = program_logger.logger
        config.initialize()
        program_logger.update_config()

        node = MuninNode(config, logger)
        node.install_signal_handlers()
        return await node.run()

    except Exception as e:
        print(f"Fatal error during startup: {e}", file=sys.stderr)
        return 1

def entry_point() -> None:
    """Console script wrapper."""
    sys.exit(asyncio.run(main()))

if __name__ == '__main__':
    entry_point()
