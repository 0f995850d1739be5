"""Configuration system for gjallarhorn."""

from dataclasses import dataclass, field, fields, is_dataclass
from pathlib import Path

import tomlkit

MIN_REFRESH_RATE_MS = 100
MAX_REFRESH_RATE_MS = 2000


@dataclass
class MonitorConfig:
    """Unprivileged sampling configuration."""

    refresh_rate_ms: int = 500  # Poller cadence, 100-2000ms


@dataclass
class WorkerConfig:
    """Privileged worker configuration."""

    enabled: bool = True
    elevation_command: str = "pkexec"  # Skipped when already running as root
    probe_interval: float = 10.0  # Seconds between privileged probe cycles
    tool_timeout: float = 10.0  # Per smartctl/dmidecode invocation
    shutdown_timeout: float = 3.0  # Grace period before terminate/kill


@dataclass
class SystemConfig:
    """Logging configuration."""

    log_max_bytes: int = 5 * 1024 * 1024  # Max log file size (5MB)
    log_backup_count: int = 3  # Number of backup log files to keep
    log_level: str = "info"


def _default_core_colors() -> list[str]:
    return ["#3498db", "#1abc9c", "#f1c40f", "#e74c3c", "#9b59b6", "#e67e22", "#2ecc71", "#ecf0f1"]


@dataclass
class ThemeConfig:
    """Dashboard colors and appearance."""

    dark_mode: bool = True
    use_uniform_cpu: bool = True  # One color for every core instead of cpu_core_colors
    cpu_color: str = "#3498db"
    ram_color: str = "#2ecc71"
    gpu_color: str = "#9b59b6"
    net_color: str = "#e67e22"
    cpu_core_colors: list[str] = field(default_factory=_default_core_colors)

    def core_color(self, core: int) -> str:
        """Return the color for a CPU core index."""
        if self.use_uniform_cpu or not self.cpu_core_colors:
            return self.cpu_color
        return self.cpu_core_colors[core % len(self.cpu_core_colors)]


def _dataclass_to_table(obj: object) -> tomlkit.items.Table:
    """Convert a dataclass instance to a tomlkit Table recursively."""
    table = tomlkit.table()
    for f in fields(obj):  # type: ignore[arg-type]
        value = getattr(obj, f.name)
        if is_dataclass(value) and not isinstance(value, type):
            table.add(f.name, _dataclass_to_table(value))
        else:
            table.add(f.name, value)
    return table


def _section(data: dict, name: str) -> dict:
    section = data.get(name, {})
    if not isinstance(section, dict):
        raise ValueError(f"[{name}] must be a table, got {type(section).__name__}")
    return section


def validate_refresh_rate(value: int) -> int:
    """Return ``value`` if it is a legal cadence, else raise ValueError."""
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"refresh_rate_ms must be an integer, got {value!r}")
    if not MIN_REFRESH_RATE_MS <= value <= MAX_REFRESH_RATE_MS:
        raise ValueError(
            f"refresh_rate_ms must be between {MIN_REFRESH_RATE_MS} and "
            f"{MAX_REFRESH_RATE_MS}, got {value}"
        )
    return value


@dataclass
class Config:
    """Main configuration container."""

    monitor: MonitorConfig = field(default_factory=MonitorConfig)
    worker: WorkerConfig = field(default_factory=WorkerConfig)
    system: SystemConfig = field(default_factory=SystemConfig)
    theme: ThemeConfig = field(default_factory=ThemeConfig)

    @property
    def config_dir(self) -> Path:
        """Configuration directory."""
        return Path.home() / ".config" / "gjallarhorn"

    @property
    def config_path(self) -> Path:
        """Path to config file."""
        return self.config_dir / "config.toml"

    @property
    def state_dir(self) -> Path:
        """State directory for logs and other expendable persistent state."""
        return Path.home() / ".local" / "state" / "gjallarhorn"

    @property
    def log_path(self) -> Path:
        """Client log path.

        Logs are expendable persistent state, so they go in XDG_STATE_HOME.
        """
        return self.state_dir / "gjallarhorn.log"

    def save(self, path: Path | None = None) -> None:
        """Save config to TOML file."""
        path = path or self.config_path
        path.parent.mkdir(parents=True, exist_ok=True)

        doc = tomlkit.document()
        for name in ("monitor", "worker", "system", "theme"):
            doc.add(name, _dataclass_to_table(getattr(self, name)))
            doc.add(tomlkit.nl())

        path.write_text(tomlkit.dumps(doc))

    @classmethod
    def load(cls, path: Path | None = None) -> "Config":
        """Load config from TOML file, returning defaults for missing values.

        All defaults come from the dataclass definitions - no hardcoded values here.

        Raises:
            ValueError: If the file cannot be read or parsed, a section is not a
                table, or refresh_rate_ms is out of range
        """
        defaults = cls()
        path = path or defaults.config_path
        if not path.exists():
            return defaults

        try:
            with open(path, encoding="utf-8") as f:
                data = tomlkit.load(f).unwrap()
        except (OSError, UnicodeDecodeError) as e:
            raise ValueError(f"Failed to read config file {path}: {e}") from e
        except tomlkit.exceptions.TOMLKitError as e:
            raise ValueError(f"Failed to parse config file {path}: {e}") from e

        monitor_data = _section(data, "monitor")
        worker_data = _section(data, "worker")
        system_data = _section(data, "system")
        theme_data = _section(data, "theme")

        mon = defaults.monitor
        wrk = defaults.worker
        sys_defaults = defaults.system

        return cls(
            monitor=MonitorConfig(
                refresh_rate_ms=validate_refresh_rate(
                    monitor_data.get("refresh_rate_ms", mon.refresh_rate_ms)
                ),
            ),
            worker=WorkerConfig(
                enabled=worker_data.get("enabled", wrk.enabled),
                elevation_command=worker_data.get("elevation_command", wrk.elevation_command),
                probe_interval=float(worker_data.get("probe_interval", wrk.probe_interval)),
                tool_timeout=float(worker_data.get("tool_timeout", wrk.tool_timeout)),
                shutdown_timeout=float(
                    worker_data.get("shutdown_timeout", wrk.shutdown_timeout)
                ),
            ),
            system=SystemConfig(
                log_max_bytes=system_data.get("log_max_bytes", sys_defaults.log_max_bytes),
                log_backup_count=system_data.get("log_backup_count", sys_defaults.log_backup_count),
                log_level=system_data.get("log_level", sys_defaults.log_level),
            ),
            theme=_load_theme_config(theme_data),
        )


def _load_theme_config(data: dict) -> ThemeConfig:
    """Load theme config from TOML data, using dataclass defaults for missing fields."""
    t = ThemeConfig()
    return ThemeConfig(
        dark_mode=data.get("dark_mode", t.dark_mode),
        use_uniform_cpu=data.get("use_uniform_cpu", t.use_uniform_cpu),
        cpu_color=data.get("cpu_color", t.cpu_color),
        ram_color=data.get("ram_color", t.ram_color),
        gpu_color=data.get("gpu_color", t.gpu_color),
        net_color=data.get("net_color", t.net_color),
        cpu_core_colors=[str(c) for c in data.get("cpu_core_colors", t.cpu_core_colors)],
    )
