"""
OpenTLD Parameters - Flat named numeric configuration.

All values are required except the negative thresholds (0.5) and the
tracker abort switch (off). Construction fails eagerly with a
ConfigurationError naming the missing or malformed parameter.
"""

from dataclasses import MISSING, dataclass, fields
from typing import Any, Dict, Mapping


class ConfigurationError(ValueError):
    """Missing or non-numeric configuration parameter."""


@dataclass
class TldParameters:
    # Grid
    min_win: int
    patch_size: int

    # Positive examples at init
    num_closest_init: int
    num_warps_init: int
    noise_init: int
    angle_init: float
    shift_init: float
    scale_init: float

    # Positive examples while learning
    num_closest_update: int
    num_warps_update: int
    noise_update: int
    angle_update: float
    shift_update: float
    scale_update: float

    # Negative examples
    num_bad_patches: int

    # Tracker
    tracker_stability_FBerrMax: float

    # Classifiers
    valid: float
    ncc_thesame: float
    num_trees: int
    num_features: int
    pos_thr_fern: float
    pos_thr_nn: float
    pos_thr_nn_valid: float
    neg_thr_fern: float = 0.5
    neg_thr_nn: float = 0.5

    tracker_abort_on_instability: bool = False

    @classmethod
    def from_mapping(cls, values: Mapping[str, Any]) -> "TldParameters":
        """
        Build parameters from a name -> value mapping.

        String values (as read from a properties file) are converted.

        Raises:
            ConfigurationError: on a missing required or non-numeric value
        """
        kwargs: Dict[str, Any] = {}
        for f in fields(cls):
            if f.name not in values:
                if f.default is MISSING:
                    raise ConfigurationError(f"Parameter {f.name} has NOT been provided.")
                continue

            raw = values[f.name]
            try:
                if f.type is bool:
                    kwargs[f.name] = _to_bool(raw)
                elif f.type is int:
                    kwargs[f.name] = int(float(raw))
                else:
                    kwargs[f.name] = float(raw)
            except (TypeError, ValueError) as exc:
                raise ConfigurationError(f"Parameter {f.name} is not numeric: {raw!r}") from exc

        return cls(**kwargs)

    def to_dict(self) -> Dict[str, Any]:
        return {f.name: getattr(self, f.name) for f in fields(self)}


def _to_bool(value: Any) -> bool:
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in ("true", "1", "yes", "on"):
            return True
        if lowered in ("false", "0", "no", "off"):
            return False
        raise ValueError(value)
    return bool(value)


DEFAULT_PARAMETERS: Dict[str, Any] = {
    "min_win": 15,
    "patch_size": 15,
    "num_closest_init": 10,
    "num_warps_init": 20,
    "noise_init": 5,
    "angle_init": 20,
    "shift_init": 0.02,
    "scale_init": 0.02,
    "num_closest_update": 10,
    "num_warps_update": 10,
    "noise_update": 5,
    "angle_update": 10,
    "shift_update": 0.02,
    "scale_update": 0.02,
    "num_bad_patches": 100,
    "tracker_stability_FBerrMax": 10,
    "valid": 0.5,
    "ncc_thesame": 0.95,
    "num_trees": 10,
    "num_features": 13,
    "pos_thr_fern": 0.6,
    "pos_thr_nn": 0.65,
    "pos_thr_nn_valid": 0.7,
}
