import json
import os
import sys
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Dict, List, Optional, Union

CACHE_DIR = Path(os.getenv(
    "TCJUDGE_CACHE_DIR",
    str(Path.home() / ".cache" / "tcjudge"),
))
# Folder beside each source file that holds the persisted problem blob
PROBLEM_FOLDER = os.getenv("TCJUDGE_PROBLEM_FOLDER", ".tcjudge")

# Language configurations, keyed by language name
LANGUAGES = {
    "c": {
        "extensions": [".c"],
        "compiler": "gcc",
        "args": "-O2 -std=c11",
    },
    "cpp": {
        "extensions": [".cpp", ".cc", ".cxx", ".c++"],
        "compiler": "g++",
        "args": "-O2 -std=c++17",
    },
    "python": {
        "extensions": [".py"],
        "compiler": sys.executable,
        "args": "",
        "runner": sys.executable,
        "runner_args": "",
    },
}

# Judge settings
DEFAULT_TIME_LIMIT = 1000  # ms
DEFAULT_MEMORY_LIMIT = 256  # MB
TIME_ADDITION = int(os.getenv("TCJUDGE_TIME_ADDITION", "500"))  # ms
COMPILE_TIMEOUT = int(os.getenv("TCJUDGE_COMPILE_TIMEOUT", "30000"))  # ms
CHECKER_TIMEOUT = int(os.getenv("TCJUDGE_CHECKER_TIMEOUT", "10000"))  # ms
MAX_INLINE_LENGTH = 64 * 1024  # bytes
OLE_SIZE = 3.0

# Marker line the wrapped program writes to stderr with its own timing
TIMING_MARKER = r"-----JUDGE DATA STARTS-----(\{.*?\})-----"

EXPAND_BEHAVIORS = ("always", "never", "first", "first_failed", "same")


@dataclass
class JudgeSettings:
    cache_dir: Path = CACHE_DIR
    problem_folder: str = PROBLEM_FOLDER
    default_time_limit: int = DEFAULT_TIME_LIMIT
    default_memory_limit: int = DEFAULT_MEMORY_LIMIT
    time_addition_ms: int = TIME_ADDITION
    compile_timeout_ms: int = COMPILE_TIMEOUT
    checker_timeout_ms: int = CHECKER_TIMEOUT
    max_inline_length: int = MAX_INLINE_LENGTH
    # comparing
    ole_size: Optional[float] = OLE_SIZE
    ignore_stderr: bool = False
    regard_pe_as_ac: bool = False
    # ui behaviour
    expand_behavior: str = "first_failed"
    languages: Dict[str, dict] = field(
        default_factory=lambda: {k: dict(v) for k, v in LANGUAGES.items()})

    def __post_init__(self):
        self.cache_dir = Path(self.cache_dir)
        if self.expand_behavior not in EXPAND_BEHAVIORS:
            raise ValueError(
                f"unknown expand behavior: {self.expand_behavior}")

    def language_for(self, extension: str) -> Optional[str]:
        extension = extension.lower()
        for name, cfg in self.languages.items():
            if extension in cfg.get("extensions", []):
                return name
        return None


def split_args(args: Optional[str]) -> List[str]:
    return [arg for arg in (args or "").split() if arg]


def _load_settings_file(path: Path) -> dict:
    try:
        with path.open() as f:
            data = json.load(f)
    except FileNotFoundError:
        return {}
    except json.JSONDecodeError:
        return {}
    return data if isinstance(data, dict) else {}


def load_settings(config_path: Optional[Union[str, Path]] = None,
                  **overrides) -> JudgeSettings:
    """Build settings from defaults, an optional JSON file and overrides.

    Unknown keys in the file are ignored. Language entries in the file are
    merged into the defaults so a file may only change a compiler path.
    """
    path = config_path or os.getenv("TCJUDGE_SETTINGS")
    cfg = _load_settings_file(Path(path)) if path else {}
    known = {f.name for f in fields(JudgeSettings)}
    settings = JudgeSettings()
    values = {k: v for k, v in cfg.items() if k in known and k != "languages"}
    for name, lang_cfg in (cfg.get("languages") or {}).items():
        settings.languages.setdefault(name, {}).update(lang_cfg)
    values.update(overrides)
    return replace(settings, **values)
