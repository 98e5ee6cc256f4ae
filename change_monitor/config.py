# change_monitor/config.py
# Global configuration: preset Areas of Interest, thresholds and analysis settings.

import logging
import os
from dataclasses import dataclass, field, fields, asdict, replace
from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from dotenv import load_dotenv

logger = logging.getLogger(__name__)

AOIS = {
    "ladakh_base_1": {
        "name": "Ladakh Forward Base",
        "bounds": [78.30, 32.20, 78.45, 32.32],
        "description": "Forward base region near the LAC, tracked for new construction."
    },
    "spratly_reef": {
        "name": "Spratly Island Reef",
        "bounds": [114.05, 9.86, 114.12, 9.92],
        "description": "Reef with artificial island building in the South China Sea."
    }
}

# % cloud cover allowed in Sentinel-2 imagery (burnt-area path only)
CLOUD_THRESHOLD = 20

# Default t-score above which a pixel counts as changed
CHANGE_THRESHOLD = 2.0

# Post-minus-pre burn index difference above which a pixel counts as burnt
BURNT_THRESHOLD = 0.1

SAR_COLLECTION = "COPERNICUS/S1_GRD"
OPTICAL_COLLECTION = "COPERNICUS/S2_SR_HARMONIZED"
POINTS_DATASET = "projects/sat-io/open-datasets/OSM/OSM_POI"

# ((b1 + b2) - (b3 + b4)) / ((b1 + b2) + (b3 + b4))
BURN_INDEX_BANDS = (("B12", "B11"), ("B8A", "B8"))

# Fraction of the 90th-percentile score a feature must exceed to enter a tier
TIER_CUTOFFS = {
    "low": 0.0,
    "medium": 0.5,
    "high": 0.9,
    "very_high": 0.95,
    "extreme": 1.0,
}

# Tiers whose members make up the "changed" building set
CHANGED_TIERS = ("high", "very_high", "extreme")

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

ENV_PREFIX = "CHANGE_MONITOR_"

# getDownloadURL refuses requests above 32 MB; S1 and S2 bands are at most 4 bytes
DOWNLOAD_LIMIT_BYTES = 32 * 1024 * 1024
MAX_PIXELS = DOWNLOAD_LIMIT_BYTES // 4


@dataclass(frozen=True)
class AnalysisSettings:
    """Every tunable of one analysis run."""
    sar_collection: str = SAR_COLLECTION
    band: str = "VV"
    instrument_mode: str = "IW"
    optical_collection: str = OPTICAL_COLLECTION
    burn_index_bands: tuple = BURN_INDEX_BANDS
    max_cloud_pct: float = CLOUD_THRESHOLD
    points_dataset: str = POINTS_DATASET
    buildings_dataset: Optional[str] = None

    # Working projection and nominal sampling resolution (metres)
    crs: str = "EPSG:3857"
    scale: float = 10.0

    # Budgets
    max_pixels: int = MAX_PIXELS
    max_features: int = 5000
    max_images: int = 200

    tier_cutoffs: Dict[str, float] = field(default_factory=lambda: dict(TIER_CUTOFFS))
    changed_tiers: tuple = CHANGED_TIERS
    point_tolerance: float = 1.0
    category_attribute: str = "category"

    burnt_threshold: float = BURNT_THRESHOLD
    single_image_window_days: int = 15
    morphology_kernel: int = 0

    # Compute percentiles on the sign-processed score (abs for two-sided
    # intents) rather than on the raw signed score.
    percentile_on_processed: bool = True

    def with_overrides(self, **overrides) -> "AnalysisSettings":
        return replace(self, **overrides)


def _coerce(value: str, template: Any) -> Any:
    """Convert an environment string to the type of the default value."""
    if isinstance(template, bool):
        return value.strip().lower() in ("1", "true", "yes", "on")
    if isinstance(template, int):
        return int(float(value))
    if isinstance(template, float):
        return float(value)
    if isinstance(template, (tuple, list)):
        return tuple(v.strip() for v in value.split(",") if v.strip())
    return value


def load_yaml(path: Path) -> Dict[str, Any]:
    """Load a YAML settings file. Missing files or non-mappings fail fast."""
    path = Path(path)
    if not path.exists():
        raise SystemExit(f"Config not found: {path}")
    with path.open("r", encoding="utf-8") as f:
        data = yaml.safe_load(f)
    if not isinstance(data, dict):
        raise SystemExit(f"Expected YAML mapping at {path}")
    return data


def _load_from_environment() -> Dict[str, Any]:
    defaults = AnalysisSettings()
    env_config = {}
    for f in fields(AnalysisSettings):
        key = ENV_PREFIX + f.name.upper()
        if key in os.environ and f.name not in ("tier_cutoffs", "burn_index_bands"):
            env_config[f.name] = _coerce(os.environ[key], getattr(defaults, f.name))
    return env_config


def load_settings(path: Optional[Path] = None, env_file: str = ".env") -> AnalysisSettings:
    """Build settings from defaults, then an optional YAML file, then the environment.

    Args:
        path: Optional YAML file with a flat mapping of setting names.
        env_file: dotenv file loaded before reading ``CHANGE_MONITOR_*`` variables.

    Returns:
        AnalysisSettings
    """
    if os.path.exists(env_file):
        load_dotenv(env_file)
        logger.info(f"Loaded environment variables from {env_file}")

    config_dict = asdict(AnalysisSettings())
    known = set(config_dict)

    if path is not None:
        file_config = load_yaml(path)
        unknown = set(file_config) - known
        if unknown:
            raise ValueError(f"Unknown settings in {path}: {sorted(unknown)}")
        if "tier_cutoffs" in file_config:
            cutoffs = dict(config_dict["tier_cutoffs"])
            cutoffs.update({k: float(v) for k, v in file_config.pop("tier_cutoffs").items()})
            file_config["tier_cutoffs"] = cutoffs
        config_dict.update(file_config)
        logger.info(f"Loaded settings from {path}")

    config_dict.update(_load_from_environment())

    config_dict["burn_index_bands"] = tuple(tuple(pair) for pair in config_dict["burn_index_bands"])
    config_dict["changed_tiers"] = tuple(config_dict["changed_tiers"])

    return AnalysisSettings(**config_dict)


def setup_logging(level: Optional[str] = None):
    """Configure root logging for CLI use."""
    level = (level or os.environ.get(ENV_PREFIX + "LOG_LEVEL", "INFO")).upper()
    logging.basicConfig(level=getattr(logging, level, logging.INFO), format=LOG_FORMAT)
