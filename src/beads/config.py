"""Per-store configuration loaded from .beads/config.yml and BEADS_* env vars."""

import logging
import os
import re
from dataclasses import asdict, dataclass
from pathlib import Path

import yaml

from beads.errors import ValidationError

log = logging.getLogger(__name__)

CONFIG_FILENAME = "config.yml"

_ENV_OVERRIDES = {
    "BEADS_ID_PREFIX": "id_prefix",
    "BEADS_LOCK_TIMEOUT": "lock_timeout",
    "BEADS_EXPORT_DEBOUNCE": "export_debounce_seconds",
    "BEADS_AUTO_IMPORT": "auto_import",
    "BEADS_AUTO_EXPORT": "auto_export",
}


@dataclass
class BeadsConfig:
    id_prefix: str = "bd"
    lock_timeout: float = 5.0
    export_debounce_seconds: float = 5.0
    jsonl_filename: str = "issues.jsonl"
    auto_import: bool = True
    auto_export: bool = True

    def validate(self) -> "BeadsConfig":
        if not re.match(r"^[A-Za-z0-9][A-Za-z0-9_.-]*$", self.id_prefix):
            raise ValidationError(f"Invalid id_prefix: {self.id_prefix!r}", field="id_prefix")
        if self.lock_timeout < 0:
            raise ValidationError("lock_timeout must be >= 0", field="lock_timeout")
        if self.export_debounce_seconds < 0:
            raise ValidationError(
                "export_debounce_seconds must be >= 0", field="export_debounce_seconds"
            )
        if not self.jsonl_filename or "/" in self.jsonl_filename:
            raise ValidationError(
                f"Invalid jsonl_filename: {self.jsonl_filename!r}", field="jsonl_filename"
            )
        return self


def _coerce(name: str, raw: object) -> object:
    """Convert a raw YAML/env value to the type of the matching field."""
    default = getattr(BeadsConfig, name)
    if isinstance(default, bool):
        if isinstance(raw, bool):
            return raw
        text = str(raw).strip().lower()
        if text in ("1", "true", "yes", "on"):
            return True
        if text in ("0", "false", "no", "off"):
            return False
        raise ValidationError(f"{name} must be a boolean, got {raw!r}", field=name)
    if isinstance(default, float):
        try:
            return float(raw)
        except (TypeError, ValueError):
            raise ValidationError(f"{name} must be a number, got {raw!r}", field=name) from None
    return str(raw)


def load_config(root: Path, environ: dict[str, str] | None = None) -> BeadsConfig:
    """Load config from root/config.yml, then apply environment overrides."""
    environ = os.environ if environ is None else environ
    values: dict[str, object] = {}

    path = root / CONFIG_FILENAME
    if path.exists():
        with open(path) as f:
            data = yaml.safe_load(f) or {}
        if not isinstance(data, dict):
            raise ValidationError(f"{path} must contain a mapping")
        for key, raw in data.items():
            if key not in BeadsConfig.__dataclass_fields__:
                log.warning("Ignoring unknown config key %s in %s", key, path)
                continue
            values[key] = _coerce(key, raw)

    for env_name, key in _ENV_OVERRIDES.items():
        if env_name in environ:
            values[key] = _coerce(key, environ[env_name])

    return BeadsConfig(**values).validate()


def save_config(root: Path, config: BeadsConfig) -> None:
    """Write config to root/config.yml."""
    with open(root / CONFIG_FILENAME, "w") as f:
        yaml.dump(asdict(config), f, default_flow_style=False, sort_keys=False)
