import yaml
from pathlib import Path
from typing import Any, Dict, Union

from .settings import EchoSettings


def load_yaml_config(path: Union[str, Path]) -> Dict[str, Any]:
    """Load a YAML file and return its contents as a dict."""
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")
    with path.open("r") as f:
        return yaml.safe_load(f) or {}


def load_settings_from_yaml(path: Union[str, Path]) -> EchoSettings:
    """Build EchoSettings from a YAML file, ignoring keys it does not know."""
    raw = load_yaml_config(path)
    known = {k: v for k, v in raw.items() if k in EchoSettings.__annotations__}
    return EchoSettings(**known)
