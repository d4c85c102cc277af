"""
Loading of study configurations from JSON files.

A configuration file holds up to three sections, all optional::

    {
        "scenario":   {"N": 15, "M": 3, "T": 30, "seed": 123, "obs_var": 0.04,
                       "effect_sizes": [0.5, 0.5]},
        "estimation": {"n_factors": 3, "error_cov": "diagonal and equal",
                       "covariate_effect": "unconstrained", "maxiter": 500},
        "study":      {"scheme": "nested", "orders": [[0, 1], [1, 0]]}
    }

Missing keys fall back to the dataclass defaults.
"""

import json
import logging
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, Optional, Tuple, Union

from dfa_covariates.analysis.covariate_order import InclusionScheme
from dfa_covariates.models.dfa import EstimationConfig, ScenarioConfig

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StudyConfig:
    """Everything needed to run one covariate inclusion-order study."""
    scenario: ScenarioConfig = field(default_factory=ScenarioConfig)
    estimation: EstimationConfig = field(default_factory=EstimationConfig)
    scheme: InclusionScheme = InclusionScheme.NESTED
    orders: Optional[Tuple[Tuple[int, ...], ...]] = None


def _build(cls, section: Dict[str, Any], section_name: str):
    """Instantiate a config dataclass, rejecting unknown keys."""
    known = {f.name for f in fields(cls)}
    unknown = set(section) - known
    if unknown:
        raise ValueError(f"Unknown key(s) in '{section_name}' section: {sorted(unknown)}")
    return cls(**section)


def config_from_dict(raw: Dict[str, Any]) -> StudyConfig:
    """Build a StudyConfig from a parsed JSON document."""
    unknown = set(raw) - {"scenario", "estimation", "study"}
    if unknown:
        raise ValueError(f"Unknown configuration section(s): {sorted(unknown)}")

    scenario = _build(ScenarioConfig, raw.get("scenario", {}), "scenario")

    estimation_section = dict(raw.get("estimation", {}))
    # Fit as many factors as were simulated unless told otherwise
    estimation_section.setdefault("n_factors", scenario.M)
    estimation = _build(EstimationConfig, estimation_section, "estimation")

    study = raw.get("study", {})
    scheme = InclusionScheme.from_tag(study.get("scheme", InclusionScheme.NESTED))
    orders = study.get("orders")
    if orders is not None:
        orders = tuple(tuple(int(j) for j in order) for order in orders)

    return StudyConfig(scenario=scenario, estimation=estimation, scheme=scheme, orders=orders)


def load_config(path: Union[str, Path]) -> StudyConfig:
    """
    Read a StudyConfig from a JSON file.

    Raises:
        FileNotFoundError: If the file does not exist.
        ValueError: If the file is not valid JSON or holds unknown keys or values.
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Configuration file not found: {path}")
    try:
        with open(path, "r") as f:
            raw = json.load(f)
    except json.JSONDecodeError as e:
        raise ValueError(f"Error decoding JSON from {path}: {e}") from e

    config = config_from_dict(raw)
    logger.info("Loaded configuration from %s", path)
    return config


def config_to_dict(config: StudyConfig) -> Dict[str, Any]:
    """JSON-serializable form of a StudyConfig, inverse of ``config_from_dict``."""
    scenario = {f.name: getattr(config.scenario, f.name) for f in fields(ScenarioConfig)}
    scenario["effect_sizes"] = list(config.scenario.effect_sizes)
    estimation = {f.name: getattr(config.estimation, f.name) for f in fields(EstimationConfig)}
    estimation["error_cov"] = config.estimation.error_cov.value
    estimation["covariate_effect"] = config.estimation.covariate_effect.value
    study: Dict[str, Any] = {"scheme": config.scheme.value}
    if config.orders is not None:
        study["orders"] = [list(order) for order in config.orders]
    return {"scenario": scenario, "estimation": estimation, "study": study}
