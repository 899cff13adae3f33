from __future__ import annotations

from copy import deepcopy
from pathlib import Path
from typing import Any, Dict

import yaml
from pydantic import ValidationError

from .models import RunConfig, format_validation_error


class ConfigError(ValueError):
    pass


def load_run_config(path: Path) -> Dict[str, Any]:
    """Read, validate and flatten a YAML/JSON run configuration.

    The result is a dict of overrides for ``get_default_run_config()``.
    """
    raw = _load_raw_config(path)
    return normalize_config_dict(raw, filename=path.name)


def _load_raw_config(path: Path) -> Dict[str, Any]:
    if not path.is_file():
        raise ConfigError(f"Config file not found: {path}")
    text = path.read_text(encoding="utf-8")
    if path.suffix.lower() in {".yaml", ".yml"}:
        data = yaml.safe_load(text)
    elif path.suffix.lower() == ".json":
        data = yaml.safe_load(text)
    else:
        raise ConfigError(f"Unsupported config extension '{path.suffix}'.")
    if not isinstance(data, dict):
        raise ConfigError(f"{path.name}: configuration must be a mapping")
    return data


def normalize_config_dict(config: Dict[str, Any], *, filename: str) -> Dict[str, Any]:
    """Validate a raw mapping and return flat run overrides.

    Only keys present in ``config`` end up in the result, so the defaults
    stay in one place.
    """
    raw = deepcopy(config)
    try:
        model = RunConfig.model_validate(raw)
    except ValidationError as exc:
        raise ConfigError(format_validation_error(exc, filename=filename)) from exc

    out: Dict[str, Any] = model.model_dump(
        exclude_none=True,
        exclude={"units", "domain", "fluid", "solid"},
    )
    for key in ("fluid", "solid"):
        if key in raw:
            out[key] = getattr(model, key).model_dump(exclude_none=True)
    if model.domain is not None:
        out["domain_size"] = model.domain.size
        out["nr"] = model.domain.nr
        # Default truncation: one Fourier-Bessel mode per node
        out["truncation"] = (
            model.domain.truncation if model.domain.truncation is not None else model.domain.nr
        )
    return out


def dump_run_config(config: Dict[str, Any], path: Path) -> Path:
    """Write a flat run configuration as YAML (the inverse of :func:`load_run_config`)."""
    data = deepcopy(config)
    domain = {
        "size": data.pop("domain_size", None),
        "nr": data.pop("nr", None),
        "truncation": data.pop("truncation", None),
    }
    if domain["size"] is not None and domain["nr"] is not None:
        data = {"domain": domain, **data}
    if "initial_amplitudes" in data:
        data["initial_amplitudes"] = [float(v) for v in data["initial_amplitudes"]]
    path.write_text(yaml.safe_dump(data, sort_keys=False), encoding="utf-8")
    return path
