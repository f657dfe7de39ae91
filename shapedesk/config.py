from __future__ import annotations
from dataclasses import dataclass, field, asdict
from pathlib import Path
from typing import List, Optional
import json
import logging

from .models import Unit

log = logging.getLogger(__name__)

APP_DIR = Path.home() / ".shapedesk"
CFG_PATH = APP_DIR / "config.json"

@dataclass
class AppConfig:
    poll_interval_ms: int = 1000
    command_timeout_s: float = 0          # 0 = wait for the tool however long it takes

    # Backend – its stdin receives the limit messages
    backend_command: str = "shapedesk-tc"

    # Limits
    advanced: bool = False                # show and send the guaranteed minimum rates
    default_unit: str = "Kbps"

    # Interfaces
    ignored_interface_prefixes: List[str] = field(default_factory=lambda: ["ifb"])
    live_interface_status: bool = False   # ask the kernel instead of reporting every link DOWN

    def __post_init__(self):
        # a bad value makes load_config fall back to defaults
        if not isinstance(self.poll_interval_ms, int) or isinstance(self.poll_interval_ms, bool) \
                or self.poll_interval_ms <= 0:
            raise ValueError(f"poll_interval_ms must be a positive integer: {self.poll_interval_ms!r}")
        if not isinstance(self.command_timeout_s, (int, float)) or isinstance(self.command_timeout_s, bool) \
                or self.command_timeout_s < 0:
            raise ValueError(f"command_timeout_s must be a number >= 0: {self.command_timeout_s!r}")
        if not isinstance(self.backend_command, str) or not self.backend_command.strip():
            raise ValueError(f"backend_command must be a command line: {self.backend_command!r}")
        for name in ("advanced", "live_interface_status"):
            if not isinstance(getattr(self, name), bool):
                raise TypeError(f"{name} must be true or false")
        Unit(self.default_unit)
        if not isinstance(self.ignored_interface_prefixes, list) \
                or not all(isinstance(p, str) and p for p in self.ignored_interface_prefixes):
            raise TypeError(f"ignored_interface_prefixes must be a list of names: {self.ignored_interface_prefixes!r}")

def ensure_dirs(path: Path = CFG_PATH) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)

def load_config(path: Optional[Path] = None) -> AppConfig:
    path = Path(path) if path is not None else CFG_PATH
    ensure_dirs(path)
    if not path.exists():
        cfg = AppConfig()
        save_config(cfg, path)
        return cfg
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
        known = {k: data[k] for k in data if k in AppConfig.__dataclass_fields__}
        return AppConfig(**known)
    except (ValueError, TypeError) as e:
        log.warning("[Config] %s is unreadable (%s), rewriting defaults", path, e)
        cfg = AppConfig()
        save_config(cfg, path)
        return cfg

def save_config(cfg: AppConfig, path: Optional[Path] = None) -> None:
    path = Path(path) if path is not None else CFG_PATH
    ensure_dirs(path)
    path.write_text(json.dumps(asdict(cfg), indent=2), encoding="utf-8")
