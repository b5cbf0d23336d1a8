import os
import re
from collections.abc import Mapping
from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from dotenv import load_dotenv

load_dotenv()

DEFAULT_CONFIG_PATH = Path(__file__).parent / 'config.yaml'

# ${NAME} or ${NAME:-fallback}
ENV_PLACEHOLDER = re.compile(r'^\$\{(?P<name>[A-Za-z_][A-Za-z0-9_]*)(?::-(?P<fallback>.*))?\}$')


def _wrap(value: Any) -> Any:
    return SectionProxy(value) if isinstance(value, dict) else value


class SectionProxy(Mapping):
    """Read-only view over one YAML mapping; nested mappings come back as proxies."""

    def __init__(self, data: Optional[Dict[str, Any]] = None):
        self._data = data or {}

    def __getitem__(self, key: str) -> Any:
        return _wrap(self._data[key])

    def __getattr__(self, name: str) -> Any:
        if name.startswith('_'):
            raise AttributeError(name)
        if self._data.get(name) is None:
            raise AttributeError(f"Config key '{name}' not found")
        return _wrap(self._data[name])

    def __iter__(self):
        return iter(self._data)

    def __len__(self) -> int:
        return len(self._data)

    def get(self, key: str, default: Any = None) -> Any:
        # unset environment placeholders load as None and fall through to the default
        value = self._data.get(key)
        return default if value is None else _wrap(value)

    def section(self, name: str) -> 'SectionProxy':
        value = self._data.get(name)
        return SectionProxy(value if isinstance(value, dict) else {})

    def to_dict(self) -> Dict[str, Any]:
        return self._data


def resolve_env(node: Any) -> Any:
    if isinstance(node, dict):
        return {key: resolve_env(value) for key, value in node.items()}
    if isinstance(node, list):
        return [resolve_env(item) for item in node]
    if isinstance(node, str):
        match = ENV_PLACEHOLDER.match(node)
        if match:
            value = os.getenv(match.group('name'))
            if value:
                return value
            return match.group('fallback') or None
    return node


class Config(SectionProxy):
    """Relay settings from ``config.yaml`` (or ``$SIGNAL_RELAY_CONFIG``)."""

    def __init__(self, config_path: Optional[str] = None):
        self.config_path = Path(config_path or os.getenv('SIGNAL_RELAY_CONFIG') or DEFAULT_CONFIG_PATH)
        super().__init__(self._load())

    def _load(self) -> Dict[str, Any]:
        if not self.config_path.is_file():
            raise RuntimeError(f"Configuration file not found at {self.config_path}")
        try:
            raw = yaml.safe_load(self.config_path.read_text()) or {}
        except yaml.YAMLError as exc:
            raise RuntimeError(f"Error parsing YAML configuration: {exc}") from exc
        return resolve_env(raw)

    def reload(self) -> None:
        self._data = self._load()


config_loader = Config()
