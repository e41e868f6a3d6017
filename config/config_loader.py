"""
config_loader.py
-----------------
Singleton config loader. Reads config.yaml once and caches it.
All modules read thresholds through this instead of hardcoding them.

The cache is filled on first use and only read afterwards, so concurrent
analyses share it safely.
"""

import os
import yaml
from typing import Any, Dict


_CONFIG_CACHE: Dict[str, Any] = {}


def load_config(config_path: str | None = None) -> Dict[str, Any]:
    """
    Load and cache the YAML configuration file.

    Args:
        config_path: Path to config.yaml. Defaults to config/ relative to this file.

    Returns:
        Full config dictionary.
    """
    global _CONFIG_CACHE

    if _CONFIG_CACHE:
        return _CONFIG_CACHE

    if config_path is None:
        config_path = os.path.join(os.path.dirname(__file__), "config.yaml")

    if not os.path.exists(config_path):
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    with open(config_path, "r") as f:
        _CONFIG_CACHE = yaml.safe_load(f)

    return _CONFIG_CACHE


def get_scan_mode_config() -> Dict[str, Any]:
    """Returns the scan_mode block."""
    return load_config()["scan_mode"]


def get_normalization_config() -> Dict[str, Any]:
    """Returns the normalization block."""
    return load_config()["normalization"]


def get_recurrence_config() -> Dict[str, Any]:
    """Returns the recurrence classifier block."""
    return load_config()["recurrence"]


def get_impact_config() -> Dict[str, Any]:
    """Returns the impact calculator block."""
    return load_config()["impact"]


def get_detector_config(detector_name: str) -> Dict[str, Any]:
    """
    Returns the threshold block for a single detector.

    Raises:
        KeyError: If detector_name is not in the config.
    """
    detectors = load_config()["detectors"]
    if detector_name not in detectors:
        raise KeyError(
            f"No detector config for '{detector_name}'. "
            f"Available: {list(detectors.keys())}"
        )
    return detectors[detector_name]


def get_all_detector_names() -> list[str]:
    """Returns all configured detector names."""
    return list(load_config()["detectors"].keys())


def get_pruning_config() -> Dict[str, Any]:
    """Returns the pruning block (weights, evidence minimums, profiles)."""
    return load_config()["pruning"]


def get_prune_profile(scan_mode: str) -> Dict[str, Any]:
    """
    Returns the prune profile for a scan mode ("billing" or "bank").

    Raises:
        KeyError: If no profile exists for the mode.
    """
    profiles = get_pruning_config()["profiles"]
    if scan_mode not in profiles:
        raise KeyError(
            f"No prune profile for '{scan_mode}'. "
            f"Available: {list(profiles.keys())}"
        )
    return profiles[scan_mode]


def get_exclusion_config() -> Dict[str, Any]:
    """Returns the exclusion pattern lists."""
    return load_config()["exclusions"]


def get_diagnostics_config() -> Dict[str, Any]:
    """Returns bank diagnostics thresholds."""
    return load_config()["diagnostics"]


def reset_config() -> None:
    """Clears cached config. Useful for testing."""
    global _CONFIG_CACHE
    _CONFIG_CACHE = {}
