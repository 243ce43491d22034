"""Configuration for scensemble analyses.

Settings are plain dataclasses that can be loaded from and saved to YAML.
"""

from .loader import (
    DEFAULT_CONFIG_PATH,
    AnalysisConfig,
    ConsensusConfig,
    MarkerConfig,
    QCConfig,
    config_from_dict,
    get_default_config,
    load_config,
    save_config,
)

__all__ = [
    "DEFAULT_CONFIG_PATH",
    "AnalysisConfig",
    "ConsensusConfig",
    "MarkerConfig",
    "QCConfig",
    "config_from_dict",
    "get_default_config",
    "load_config",
    "save_config",
]
