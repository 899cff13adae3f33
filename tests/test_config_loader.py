from __future__ import annotations

import json
from pathlib import Path
import sys

sys.path.insert(0, "src")

import pytest
import yaml

from drop_impact.config.loader import (
    ConfigError,
    dump_run_config,
    load_run_config,
    normalize_config_dict,
)
from drop_impact.core.engine import build_run_configuration, get_default_run_config


def test_invalid_domain_validation() -> None:
    cfg = {"domain": {"size": 8.0, "nr": 1}}
    try:
        normalize_config_dict(cfg, filename="bad.yml")
    except ConfigError as exc:
        assert str(exc).startswith("bad.yml: invalid configuration:")
        assert "domain.nr" in str(exc)
    else:
        raise AssertionError("Expected ConfigError for nr < 2")


def test_unknown_key_is_rejected() -> None:
    with pytest.raises(ConfigError) as exc_info:
        normalize_config_dict({"impact_sped": 40.0}, filename="typo.yml")
    assert "impact_sped" in str(exc_info.value)


def test_only_cgs_units_supported() -> None:
    with pytest.raises(ConfigError):
        normalize_config_dict({"units": "SI"}, filename="si.yml")


def test_unknown_fail_policy_rejected() -> None:
    with pytest.raises(ConfigError):
        normalize_config_dict({"fail_policy": "ignore"}, filename="case.yml")


def test_yaml_config_flattens_domain(tmp_path: Path) -> None:
    cfg_path = tmp_path / "case.yml"
    cfg_path.write_text(
        yaml.safe_dump(
            {
                "case_name": "water_40",
                "domain": {"size": 6.0, "nr": 120},
                "fluid": {"viscosity": 0.02},
                "impact_speed": 40.0,
                "initial_amplitudes": [0.0, 0.01],
            }
        ),
        encoding="utf-8",
    )

    overrides = load_run_config(cfg_path)
    assert overrides["domain_size"] == 6.0
    assert overrides["nr"] == 120
    assert overrides["truncation"] == 120
    assert overrides["fluid"] == {
        "density": 1.0,
        "surface_tension": 72.20,
        "viscosity": 0.02,
        "air_viscosity": 0.15,
    }
    assert "solid" not in overrides

    cfg = build_run_configuration(overrides)
    assert cfg.impact_speed == 40.0
    assert cfg.fluid.viscosity == 0.02
    assert cfg.initial_amplitudes == (0.0, 0.01)
    assert cfg.n_modes == 21


def test_json_config(tmp_path: Path) -> None:
    cfg_path = tmp_path / "case.json"
    cfg_path.write_text(json.dumps({"t_end": 2.0, "theta": 1.0}), encoding="utf-8")
    assert load_run_config(cfg_path) == {"t_end": 2.0, "theta": 1.0, "fail_policy": "raise"}


def test_bad_files(tmp_path: Path) -> None:
    with pytest.raises(ConfigError):
        load_run_config(tmp_path / "missing.yml")

    txt = tmp_path / "case.txt"
    txt.write_text("t_end: 1.0", encoding="utf-8")
    with pytest.raises(ConfigError):
        load_run_config(txt)

    lst = tmp_path / "list.yml"
    lst.write_text("- 1\n- 2\n", encoding="utf-8")
    with pytest.raises(ConfigError):
        load_run_config(lst)


def test_defaults_survive_dump_and_load(tmp_path: Path) -> None:
    path = dump_run_config(get_default_run_config(), tmp_path / "defaults.yml")
    cfg = build_run_configuration(load_run_config(path))
    assert cfg == build_run_configuration({})
