import yaml
from pathlib import Path
from .models import AppConfig

DEFAULT_CONFIG_PATH = Path("conf/audiopipe.yaml")


def load_config(config_path: Path) -> AppConfig:
    """Loads YAML config and parses it into AppConfig Pydantic model."""
    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")

    with open(config_path, 'r') as f:
        data = yaml.safe_load(f) or {}

    if not isinstance(data, dict):
        raise ValueError(f"Config file must contain a mapping: {config_path}")

    # Shorthand: a bare list under `extensions` at root belongs to the watch section
    if "extensions" in data:
        watch = data.get("watch") or {}
        if "extensions" in watch:
            raise ValueError(f"extensions set both at top level and under watch: {config_path}")
        watch["extensions"] = data.pop("extensions")
        data["watch"] = watch

    return AppConfig(**data)
