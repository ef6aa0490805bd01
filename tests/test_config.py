from __future__ import annotations

import json

import pytest

from pyis4dvar.config import MinimizerConfig, load_config


def test_defaults():
    config = MinimizerConfig()
    assert config.lmp_scale == 2
    assert config.breakdown_tol == 0.0
    assert not config.needs_ritz
    assert MinimizerConfig(hessian_evecs=True).needs_ritz
    assert MinimizerConfig(precondition=True).needs_ritz


@pytest.mark.parametrize(
    "overrides",
    [
        {"nouter": 0},
        {"ninner": 0},
        {"lmp_scale": 0},
        {"lmp_scale": 3},
        {"ritz_max_err": 0.0},
        {"breakdown_tol": -1.0},
        {"ortho_warn_tol": 0.0},
    ],
)
def test_invalid_values(overrides):
    with pytest.raises(ValueError):
        MinimizerConfig(**overrides)


def test_from_mapping_rejects_unknown_keys():
    with pytest.raises(KeyError):
        MinimizerConfig.from_mapping({"ninner": 3, "Ninner": 3})


def test_load_config(tmp_path):
    path = tmp_path / "minimizer.json"
    path.write_text(json.dumps({"nouter": 2, "ninner": 7, "precondition": True, "lmp_scale": -2}))

    config = load_config(path)

    assert (config.nouter, config.ninner, config.lmp_scale) == (2, 7, -2)
    assert config.precondition
    assert config.to_dict()["checkpoint_path"] is None


def test_load_config_requires_object(tmp_path):
    path = tmp_path / "minimizer.json"
    path.write_text("[1, 2]")
    with pytest.raises(ValueError):
        load_config(path)
