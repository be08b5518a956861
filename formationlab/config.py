"""
Engine Configuration

Loads tunable engine parameters from ``engine_defaults.yaml``. A user file
can override any subset of keys; values not mentioned keep their defaults.

The objective weights and relaxation pass count have no authoritative
values, so everything numeric the engine relies on lives here rather than
in the algorithms.
"""

import copy
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

import yaml

DEFAULT_CONFIG_PATH = Path(__file__).parent / "engine_defaults.yaml"


@dataclass
class PositioningConfig:
    """Collision and bounds settings for the positioning engine."""
    field_bounds: Tuple[float, float, float, float] = (0.0, 0.0, 100.0, 100.0)
    collision_radius: float = 5.0
    relaxation_passes: int = 5
    allow_overlap: bool = False  # explicit override of the collision radius
    suggestion_rings: int = 8
    suggestion_directions: int = 16


@dataclass
class ChemistryConfig:
    """Weights and scaling for pairwise chemistry."""
    weights: Dict[str, float] = field(default_factory=lambda: {
        "tenure": 0.25, "role": 0.30, "age": 0.15, "origin": 0.10, "form": 0.20,
    })
    score_range: Tuple[float, float] = (0.0, 100.0)
    tenure_cap_years: float = 5.0
    different_origin_value: float = 0.4


@dataclass
class AssignmentConfig:
    """Compatibility blend for auto-assignment."""
    role_fit_weight: float = 0.8
    chemistry_weight: float = 0.2
    adjacency_radius: float = 30.0
    exclude_unavailable: bool = True
    doubtful_factor: float = 0.6
    unavailable_factor: float = 0.3


@dataclass
class OptimizerConfig:
    """Local search budget and objective weights."""
    max_iterations: int = 400
    patience: int = 60  # stop after this many iterations without improvement
    time_budget_seconds: float = 5.0
    step_size: float = 4.0
    swap_probability: float = 0.3
    seed: int = 7
    min_improvement: float = 1e-9
    weights: Dict[str, float] = field(default_factory=lambda: {
        "coverage": 0.30, "chemistry": 0.30, "shape": 0.20, "lanes": 0.20,
    })
    pass_range: Tuple[float, float] = (8.0, 35.0)
    target_lanes: int = 3
    line_tolerance: float = 10.0


@dataclass
class HistoryConfig:
    max_depth: int = 50


@dataclass
class CollaborationConfig:
    lock_ttl_seconds: float = 30.0
    max_lock_queue: int = 4
    max_pending_deltas: int = 32
    idle_timeout_seconds: float = 300.0
    enforce_locks: bool = False


@dataclass
class EngineConfig:
    """Complete engine configuration."""
    positioning: PositioningConfig = field(default_factory=PositioningConfig)
    chemistry: ChemistryConfig = field(default_factory=ChemistryConfig)
    assignment: AssignmentConfig = field(default_factory=AssignmentConfig)
    optimizer: OptimizerConfig = field(default_factory=OptimizerConfig)
    history: HistoryConfig = field(default_factory=HistoryConfig)
    collaboration: CollaborationConfig = field(default_factory=CollaborationConfig)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to a plain dictionary (YAML-serializable)."""
        result = {}
        for section in fields(self):
            values = {}
            for item in fields(getattr(self, section.name)):
                value = getattr(getattr(self, section.name), item.name)
                values[item.name] = list(value) if isinstance(value, tuple) else copy.deepcopy(value)
            result[section.name] = values
        return result


_SECTIONS = {
    "positioning": PositioningConfig,
    "chemistry": ChemistryConfig,
    "assignment": AssignmentConfig,
    "optimizer": OptimizerConfig,
    "history": HistoryConfig,
    "collaboration": CollaborationConfig,
}

# Keys whose YAML lists become tuples
_TUPLE_KEYS = {"field_bounds", "score_range", "pass_range"}

# Keys holding weight tables that are merged key by key
_WEIGHT_KEYS = {"weights"}

# Names each weight table may use
CHEMISTRY_FACTORS = ("tenure", "role", "age", "origin", "form")
OBJECTIVE_TERMS = ("coverage", "chemistry", "shape", "lanes")


def _read_yaml(path: Path) -> Dict[str, Any]:
    """Read a YAML mapping, refusing missing files and symlinks."""
    if not path.exists():
        raise FileNotFoundError(f"Configuration file not found: {path}")

    # Security: Check for symlinks to prevent reading unintended files
    if path.is_symlink():
        raise ValueError(f"Configuration file cannot be a symlink: {path}")

    with open(path, "r") as f:
        data = yaml.safe_load(f) or {}

    if not isinstance(data, dict):
        raise ValueError(f"Configuration file must contain a mapping: {path}")
    return data


def _merge(base: Dict[str, Any], override: Dict[str, Any], source: Path) -> Dict[str, Any]:
    """Deep-merge override sections into base, validating names."""
    merged = copy.deepcopy(base)
    for section, values in override.items():
        if section not in _SECTIONS:
            raise ValueError(
                f"Unknown configuration section '{section}' in {source}. "
                f"Valid sections: {sorted(_SECTIONS)}"
            )
        if not isinstance(values, dict):
            raise ValueError(f"Section '{section}' in {source} must be a mapping")

        known = {f.name for f in fields(_SECTIONS[section])}
        target = merged.setdefault(section, {})
        for key, value in values.items():
            if key not in known:
                raise ValueError(f"Unknown key '{section}.{key}' in {source}")
            if key in _WEIGHT_KEYS and isinstance(value, dict):
                weights = dict(target.get(key) or {})
                weights.update(value)
                target[key] = weights
            else:
                target[key] = value
    return merged


def _build(data: Dict[str, Any]) -> EngineConfig:
    sections = {}
    for name, cls in _SECTIONS.items():
        values = dict(data.get(name) or {})
        for key in _TUPLE_KEYS:
            if key in values and values[key] is not None:
                values[key] = tuple(float(v) for v in values[key])
        sections[name] = cls(**values)
    config = EngineConfig(**sections)
    _validate(config)
    return config


def _validate_weights(name: str, weights: Dict[str, float], allowed: Tuple[str, ...]):
    unknown = sorted(set(weights) - set(allowed))
    if unknown:
        raise ValueError(f"Unknown {name} key(s) {unknown}; expected {list(allowed)}")
    if any(value < 0 for value in weights.values()):
        raise ValueError(f"{name} must not be negative")
    if sum(weights.get(key, 0.0) for key in allowed) <= 0:
        raise ValueError(f"{name} must not all be zero")


def _validate(config: EngineConfig):
    pos = config.positioning
    if len(pos.field_bounds) != 4:
        raise ValueError("positioning.field_bounds needs [min_x, min_y, max_x, max_y]")
    if pos.field_bounds[0] >= pos.field_bounds[2] or pos.field_bounds[1] >= pos.field_bounds[3]:
        raise ValueError(f"positioning.field_bounds is empty: {pos.field_bounds}")
    if pos.collision_radius <= 0:
        raise ValueError("positioning.collision_radius must be positive")
    if pos.relaxation_passes < 1:
        raise ValueError("positioning.relaxation_passes must be at least 1")
    if config.chemistry.score_range[0] >= config.chemistry.score_range[1]:
        raise ValueError("chemistry.score_range must be increasing")
    _validate_weights("chemistry.weights", config.chemistry.weights, CHEMISTRY_FACTORS)
    _validate_weights("optimizer.weights", config.optimizer.weights, OBJECTIVE_TERMS)
    if config.optimizer.max_iterations < 0 or config.optimizer.patience < 1:
        raise ValueError("optimizer.max_iterations must be >= 0 and patience >= 1")
    if config.history.max_depth < 1:
        raise ValueError("history.max_depth must be at least 1")
    if config.collaboration.lock_ttl_seconds <= 0:
        raise ValueError("collaboration.lock_ttl_seconds must be positive")


def load_config(path: Optional[str] = None) -> EngineConfig:
    """
    Load engine configuration.

    Args:
        path: Optional YAML file overriding any subset of the defaults.

    Returns:
        EngineConfig instance

    Raises:
        FileNotFoundError: If the file does not exist
        ValueError: For unknown sections/keys or invalid values
    """
    data = _read_yaml(DEFAULT_CONFIG_PATH)
    if path is not None:
        user_path = Path(path)
        data = _merge(data, _read_yaml(user_path), user_path)
    return _build(data)


# Global instance for convenience
_default_config: Optional[EngineConfig] = None


def get_config(path: Optional[str] = None) -> EngineConfig:
    """
    Get an engine configuration.

    Args:
        path: Optional path to a custom config file.
              If None, uses the cached default instance.
    """
    global _default_config

    if path is not None:
        return load_config(path)

    if _default_config is None:
        _default_config = load_config()

    return _default_config


def reload_config():
    """Drop the cached default configuration."""
    global _default_config
    _default_config = None
