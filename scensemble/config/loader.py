"""Configuration file loader.

Provides YAML-based configuration loading with default value support
and type-safe configuration dataclasses.
"""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, TypeVar

import yaml

from scensemble.core.exceptions import ConfigurationError

# Default paths
DEFAULT_CONFIG_DIR = Path(__file__).parent
DEFAULT_CONFIG_PATH = DEFAULT_CONFIG_DIR / "default.yaml"


@dataclass(slots=True)
class QCConfig:
    """Quality control settings.

    Attributes
    ----------
    nmads : float
        Number of MADs used by every outlier criterion.
    sum_field : str
        Per-sample metric holding the library size.
    detected_field : str
        Per-sample metric holding the number of detected features.
    alt_percent_fields : list[str]
        Per-sample alternative-experiment percentages tested on the upper tail.
    detection_limit : float
        Minimum value for a sample to count as expressing a feature.
    min_samples : int
        Minimum number of expressing samples for a feature to be kept.
    """

    nmads: float = 3.0
    sum_field: str = "sum"
    detected_field: str = "detected"
    alt_percent_fields: list[str] = field(default_factory=list)
    detection_limit: float = 0.0
    min_samples: int = 1


@dataclass(slots=True)
class ConsensusConfig:
    """Ensemble and consensus settings.

    Attributes
    ----------
    n_clusters : int | None
        Target number of clusters ``k``; must be set before clustering.
    dims : list[int] | None
        Projection dimensionalities. None derives them from the sample count
        (4% to 7% of samples, at most ``max_dims`` values).
    distances : list[str]
        Distance metrics to combine.
    providers : list[str]
        Embedding provider names to combine.
    algorithms : list[str]
        Base clustering algorithms to combine.
    min_successful_runs : int
        Minimum successful runs required to build a consensus.
    random_seed : int
        Base seed; each grid point derives its own seed from it.
    n_workers : int
        Number of threads used to run grid points.
    max_dims : int
        Upper bound on the number of derived dimensionalities.
    """

    n_clusters: int | None = None
    dims: list[int] | None = None
    distances: list[str] = field(default_factory=lambda: ["euclidean", "pearson", "spearman"])
    providers: list[str] = field(default_factory=lambda: ["pca", "spectral"])
    algorithms: list[str] = field(default_factory=lambda: ["kmeans"])
    min_successful_runs: int = 2
    random_seed: int = 42
    n_workers: int = 1
    max_dims: int = 15


@dataclass(slots=True)
class MarkerConfig:
    """Marker detection settings."""

    auroc_threshold: float = 0.85
    pvalue_threshold: float = 0.01
    top_n: int = 10


@dataclass(slots=True)
class AnalysisConfig:
    """Root configuration.

    Attributes
    ----------
    assay_name : str
        Assay used for QC metrics and marker detection.
    clustering_assay : str
        Assay used for consensus clustering.
    """

    assay_name: str = "counts"
    clustering_assay: str = "logcounts"
    qc: QCConfig = field(default_factory=QCConfig)
    consensus: ConsensusConfig = field(default_factory=ConsensusConfig)
    markers: MarkerConfig = field(default_factory=MarkerConfig)


T = TypeVar("T")


def _parse_section(cls: type[T], data: dict | None, section: str, path: Path | None) -> T:
    """Build a config dataclass from a YAML mapping, rejecting unknown keys."""
    if data is None:
        return cls()
    if not isinstance(data, dict):
        raise ConfigurationError(f"Section '{section}' must be a mapping", config_path=path)

    known = {f.name for f in dataclasses.fields(cls)}
    unknown = sorted(set(data) - known)
    if unknown:
        raise ConfigurationError(
            f"Unknown key(s) in section '{section}': {', '.join(unknown)}", config_path=path
        )
    return cls(**data)


def get_default_config() -> AnalysisConfig:
    """Return a configuration holding the built-in defaults."""
    return AnalysisConfig()


def config_from_dict(data: dict[str, Any] | None, config_path: Path | None = None) -> AnalysisConfig:
    """Build an :class:`AnalysisConfig` from parsed YAML data."""
    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ConfigurationError("Configuration root must be a mapping", config_path=config_path)

    sections = {"qc", "consensus", "markers", "assay_name", "clustering_assay"}
    unknown = sorted(set(data) - sections)
    if unknown:
        raise ConfigurationError(f"Unknown configuration key(s): {', '.join(unknown)}", config_path=config_path)

    return AnalysisConfig(
        assay_name=data.get("assay_name", "counts"),
        clustering_assay=data.get("clustering_assay", "logcounts"),
        qc=_parse_section(QCConfig, data.get("qc"), "qc", config_path),
        consensus=_parse_section(ConsensusConfig, data.get("consensus"), "consensus", config_path),
        markers=_parse_section(MarkerConfig, data.get("markers"), "markers", config_path),
    )


def load_config(config_path: str | Path = DEFAULT_CONFIG_PATH) -> AnalysisConfig:
    """Load analysis configuration from a YAML file.

    If the file does not exist, the default configuration is returned.

    Parameters
    ----------
    config_path : str | Path
        Path to the configuration YAML file.

    Returns
    -------
    AnalysisConfig
        Loaded configuration.

    Raises
    ------
    ConfigurationError
        If YAML parsing fails, the file is unreadable or contains unknown keys.
    """
    path = Path(config_path)

    if not path.exists():
        return get_default_config()

    try:
        with path.open(encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigurationError(
            f"Failed to parse YAML config: {e}",
            config_path=path,
        ) from e
    except OSError as e:
        raise ConfigurationError(
            f"Failed to read config file: {e}",
            config_path=path,
        ) from e

    return config_from_dict(data, config_path=path)


def save_config(config: AnalysisConfig, config_path: str | Path) -> None:
    """Save configuration to a YAML file.

    Raises
    ------
    ConfigurationError
        If the file cannot be written.
    """
    path = Path(config_path)
    path.parent.mkdir(parents=True, exist_ok=True)

    data = {
        "assay_name": config.assay_name,
        "clustering_assay": config.clustering_assay,
        "qc": dataclasses.asdict(config.qc),
        "consensus": dataclasses.asdict(config.consensus),
        "markers": dataclasses.asdict(config.markers),
    }

    try:
        with path.open("w", encoding="utf-8") as f:
            yaml.dump(data, f, default_flow_style=False, sort_keys=False)
    except (OSError, yaml.YAMLError) as e:
        raise ConfigurationError(
            f"Failed to save config file: {e}",
            config_path=path,
        ) from e
