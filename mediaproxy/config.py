import json
import logging
import os
import sys

LOG = logging.getLogger(__name__)


def resolve_app_dir(argv0=None, frozen=None, executable=None, cwd=None):
    """Directory holding config.json and data/.

    Frozen builds use the exe directory and a checkout launched through
    main.py uses the script's directory. Installed console scripts and
    `python -m mediaproxy` have no app folder of their own (the script
    sits in the venv's bin/ or inside the package), so they use the
    working directory.
    """
    if frozen is None:
        frozen = getattr(sys, 'frozen', False)
    if frozen:
        return os.path.dirname(executable or sys.executable)
    if argv0 is None:
        argv0 = sys.argv[0] if sys.argv else ""
    script = os.path.abspath(argv0) if argv0 else ""
    if script.endswith(".py") and os.path.basename(os.path.dirname(script)) != "mediaproxy":
        return os.path.dirname(script)
    return cwd or os.getcwd()


APP_DIR = resolve_app_dir()

CONFIG_FILE = os.path.join(APP_DIR, "config.json")

DEFAULT_CONFIG = {
    "data_dir": os.path.join(APP_DIR, "data"),
    "host": "0.0.0.0",
    "port": 4000,
    "inactivity_minutes": 60,
    "cleanup_interval_seconds": 300,  # how often the eviction sweep runs
    "fetch_connect_timeout_seconds": 10,
    "fetch_read_timeout_seconds": 60,  # per-read stall limit for origin fetches
    "fetch_chunk_kb": 512,
    "stream_chunk_kb": 64,  # bytes handed to the client socket per write
    "rate_limit_window_seconds": 60,
    "rate_limit_max_requests": 300,  # per client IP per window; 0 disables
    "log_level": "INFO",
}

# Environment variable -> (config key, type)
ENV_OVERRIDES = {
    "DATA_DIR": ("data_dir", str),
    "HOST": ("host", str),
    "PORT": ("port", int),
    "INACTIVITY_MINUTES": ("inactivity_minutes", float),
    "CLEANUP_INTERVAL_SECONDS": ("cleanup_interval_seconds", float),
    "LOG_LEVEL": ("log_level", str),
}


class ConfigManager:
    def __init__(self, environ=None):
        self.environ = os.environ if environ is None else environ
        self.config = self.load_config()

    def load_config(self):
        cfg = {}
        if os.path.exists(CONFIG_FILE):
            try:
                with open(CONFIG_FILE, 'r') as f:
                    cfg = json.load(f)
            except Exception as e:
                LOG.warning("Error loading config %s: %s", CONFIG_FILE, e)
                cfg = {}
        cfg = self._apply_defaults(cfg)
        self._apply_env(cfg)
        return cfg

    def _apply_defaults(self, cfg: dict) -> dict:
        """
        Merge any missing default keys into an existing config without clobbering
        user settings.
        """
        merged = dict(cfg) if isinstance(cfg, dict) else {}
        for key, val in DEFAULT_CONFIG.items():
            merged.setdefault(key, val)
        return merged

    def _apply_env(self, cfg: dict) -> None:
        for var, (key, conv) in ENV_OVERRIDES.items():
            raw = self.environ.get(var)
            if raw is None or raw == "":
                continue
            try:
                cfg[key] = conv(raw)
            except ValueError:
                LOG.warning("Ignoring malformed %s=%r", var, raw)

    def save_config(self):
        try:
            with open(CONFIG_FILE, 'w') as f:
                json.dump(self.config, f, indent=4)
        except Exception as e:
            LOG.warning("Error saving config: %s", e)

    def get(self, key, default=None):
        return self.config.get(key, default)

    def set(self, key, value):
        self.config[key] = value
        self.save_config()

    def update(self, **overrides):
        """Apply non-None overrides in memory only (command line flags)."""
        for key, value in overrides.items():
            if value is not None:
                self.config[key] = value

    @property
    def data_dir(self):
        return os.path.abspath(str(self.get("data_dir") or DEFAULT_CONFIG["data_dir"]))

    @property
    def inactivity_seconds(self):
        return float(self.get("inactivity_minutes", 60)) * 60

    @property
    def fetch_timeout(self):
        return (
            float(self.get("fetch_connect_timeout_seconds", 10)),
            float(self.get("fetch_read_timeout_seconds", 60)),
        )
