import yaml
from pathlib import Path
from .models import AppConfig

def load_config(config_path: Path, required: bool = True) -> AppConfig:
    """Loads YAML config and parses it into AppConfig Pydantic model.

    When ``required`` is False a missing file yields the defaults.
    """
    if not config_path.exists():
        if required:
            raise FileNotFoundError(f"Config file not found: {config_path}")
        return AppConfig()

    with open(config_path, 'r') as f:
        data = yaml.safe_load(f) or {}

    # Shorthand: a top-level 'renditions' map replaces the ffmpeg ladder
    ladder = data.pop("renditions", None)
    if isinstance(ladder, dict):
        data.setdefault("ffmpeg", {})["renditions"] = ladder

    return AppConfig(**data)
