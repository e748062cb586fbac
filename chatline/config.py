"""
Config loader for chatline.
Reads config.yaml once, merged over built-in defaults. All other modules
import from here. ${ENV_VAR} patterns anywhere in the file are resolved
from the environment (and from .env via python-dotenv).
"""

import copy
import logging
import os
import re
from pathlib import Path

import yaml
from dotenv import load_dotenv

load_dotenv()

_CONFIG_PATH = Path(__file__).parent.parent / "config.yaml"

DEFAULT_API_URL = "https://api.openai.com/v1"
DEFAULT_MODEL = "gpt-4"
DEFAULT_MAX_HISTORY = 20

DEFAULT_DIALOGUE_PROMPT = "You are a helpful assistant."

DEFAULT_POLISH_PROMPT = """You are an expression polishing assistant. When given text:
1. Provide a polished, improved version of the expression
2. Explain the key adjustments you made

Format your response as:
**Polished:**
[improved text]

**Adjustments:**
[bullet points explaining changes]"""

DEFAULTS: dict = {
    "dialogue": {
        "api_url": DEFAULT_API_URL,
        "api_key": "",
        "model": DEFAULT_MODEL,
        "system_prompt": DEFAULT_DIALOGUE_PROMPT,
        "max_history_messages": DEFAULT_MAX_HISTORY,
    },
    "polish": {
        "api_url": DEFAULT_API_URL,
        "api_key": "",
        "model": DEFAULT_MODEL,
        "system_prompt": DEFAULT_POLISH_PROMPT,
    },
    "http": {
        "timeout": 120,
    },
    "storage": {
        "backend": "sqlite",
        "path": "./data/chatline.db",
        "key": "dialogue_conversations",
    },
    "wiretap": {
        "enabled": False,
        "path": "./data/wire.jsonl",
    },
    "logging": {
        "level": "INFO",
        "file": None,
    },
}

_config: dict | None = None


def _resolve_env_vars(value: str) -> str:
    """Replace ${ENV_VAR} patterns with actual environment variable values."""
    def replacer(match):
        var_name = match.group(1)
        return os.environ.get(var_name, "")
    return re.sub(r"\$\{(\w+)\}", replacer, value)


def _walk_and_resolve(obj):
    """Recursively resolve env vars in all string values."""
    if isinstance(obj, dict):
        return {k: _walk_and_resolve(v) for k, v in obj.items()}
    elif isinstance(obj, list):
        return [_walk_and_resolve(v) for v in obj]
    elif isinstance(obj, str):
        return _resolve_env_vars(obj)
    return obj


def _deep_merge(base: dict, override: dict) -> dict:
    merged = copy.deepcopy(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def _default_path() -> Path:
    env_path = os.environ.get("CHATLINE_CONFIG")
    return Path(env_path) if env_path else _CONFIG_PATH


def load_config(path: Path | str | None = None) -> dict:
    """
    Load and cache config from YAML file.
    A missing file is not an error: the built-in defaults are used.
    """
    global _config
    if _config is not None and path is None:
        return _config

    config_path = Path(path) if path else _default_path()
    raw: dict = {}
    if config_path.exists():
        with open(config_path) as f:
            raw = yaml.safe_load(f) or {}

    _config = _deep_merge(DEFAULTS, _walk_and_resolve(raw))
    return _config


def get_config() -> dict:
    """Return cached config, loading if necessary."""
    if _config is None:
        return load_config()
    return _config


def reset_config() -> None:
    """Drop the cached config so the next get_config() re-reads the file."""
    global _config
    _config = None


def setup_logging(cfg: dict) -> None:
    log_cfg = cfg.get("logging", {})
    level = getattr(logging, str(log_cfg.get("level", "INFO")).upper(), logging.INFO)
    log_file = log_cfg.get("file")

    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_file))

    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        handlers=handlers,
    )
