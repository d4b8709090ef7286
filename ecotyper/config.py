"""
Configuration Management for Ecotyper

This module provides the configuration system used by the analysis pipeline,
built on frozen dataclasses. The configuration system supports:

1. Default parameter values matching the classic ecotype simulation settings
2. Loading configuration from YAML/JSON files
3. Environment variable overrides
4. Validation of parameter ranges at construction time
5. Hierarchical configuration with component-specific settings

Configuration Structure:
- SequenceConfig: Alignment loading and outgroup selection
- BinningConfig: Divergence thresholds and linkage rule for sequence binning
- EstimationConfig: Two-segment curve fitting parameters
- DemarcationConfig: Behaviour of the recursive demarcation walk
- VisualizationConfig: Binning curve plot styling
- AnalysisConfig: Master configuration combining all components

Example Usage:
    >>> from ecotyper.config import get_default_config, load_config_from_file
    >>>
    >>> config = get_default_config()
    >>> print(config.estimation.max_iterations)
    10
    >>>
    >>> config = load_config_from_file("my_analysis.yaml")
    >>>
    >>> custom_config = config.update(
    ...     binning__linkage_method="complete",
    ...     estimation__error_threshold=0.05
    ... )
"""

from dataclasses import dataclass, field, fields, asdict, replace
from pathlib import Path
from typing import Optional, List, Dict, Any, Union, Tuple
import os
import json
import logging

import yaml

logger = logging.getLogger(__name__)


# Sequence identity levels used by the original binning program, expressed
# here as divergence thresholds (1 - identity), largest first.
DEFAULT_THRESHOLDS: Tuple[float, ...] = (
    0.20, 0.15, 0.10, 0.05, 0.04, 0.03, 0.02, 0.01, 0.005, 0.0
)

VALID_LINKAGE_METHODS = ("single", "complete")


# ============================================================================
# Sequence Configuration
# ============================================================================

@dataclass(frozen=True)
class SequenceConfig:
    """
    Configuration for loading the aligned sequences.

    Attributes
    ----------
    remove_gap_columns : bool
        Drop every alignment column in which any sequence has a gap or a
        non-ACGT character before divergences are computed (default: True).
        The remaining column count is the sequence length used by the
        curve estimator.

    outgroup_first : bool
        Treat the first sequence of the FASTA file as the outgroup when no
        outgroup is named explicitly (default: True).

    outgroup : str, optional
        Explicit outgroup sequence name (default: None).
    """
    remove_gap_columns: bool = True
    outgroup_first: bool = True
    outgroup: Optional[str] = None

    def __post_init__(self):
        """Validate configuration parameters."""
        if self.outgroup is not None and not str(self.outgroup).strip():
            raise ValueError("outgroup must be a non-empty name or None")


# ============================================================================
# Binning Configuration
# ============================================================================

@dataclass(frozen=True)
class BinningConfig:
    """
    Configuration for sequence binning.

    Attributes
    ----------
    thresholds : tuple of float
        Divergence cutoffs at which clusters are counted. Stored in
        descending order; every value must lie in [0, 1].

    linkage_method : str
        Rule used to merge sequences into bins (default: "single").
        "single" joins any two sequences within the cutoff (connected
        components). "complete" requires every member of a bin to be within
        the cutoff of every other member.

    collapse_duplicates : bool
        Merge consecutive levels that report the same cluster count into a
        single level (default: False).
    """
    thresholds: Tuple[float, ...] = DEFAULT_THRESHOLDS
    linkage_method: str = "single"
    collapse_duplicates: bool = False

    def __post_init__(self):
        """Validate and normalize configuration parameters."""
        thresholds = tuple(float(t) for t in self.thresholds)
        if not thresholds:
            raise ValueError("thresholds must contain at least one value")
        for t in thresholds:
            if not 0.0 <= t <= 1.0:
                raise ValueError(f"threshold {t} must be between 0 and 1")
        if len(set(thresholds)) != len(thresholds):
            raise ValueError("thresholds must be unique")
        object.__setattr__(self, 'thresholds', tuple(sorted(thresholds, reverse=True)))

        if self.linkage_method not in VALID_LINKAGE_METHODS:
            raise ValueError(f"Invalid linkage_method: {self.linkage_method}")


# ============================================================================
# Estimation Configuration
# ============================================================================

@dataclass(frozen=True)
class EstimationConfig:
    """
    Configuration for the two-segment curve estimator.

    Attributes
    ----------
    error_threshold : float
        Base squared-distance cutoff for moving a point between the two line
        segments (default: 0.1). Scaled by log2 of the number of sequences
        when that number is known.

    max_iterations : int
        Maximum number of refinement passes (default: 10).
    """
    error_threshold: float = 0.1
    max_iterations: int = 10

    def __post_init__(self):
        if self.error_threshold < 0:
            raise ValueError("error_threshold must be non-negative")
        if self.max_iterations < 1:
            raise ValueError("max_iterations must be at least 1")


# ============================================================================
# Demarcation Configuration
# ============================================================================

@dataclass(frozen=True)
class DemarcationConfig:
    """
    Configuration for the recursive demarcation walk.

    Attributes
    ----------
    scale_reference_on_degenerate_fit : bool
        When a subtree's binning curve cannot be fitted, reuse the reference
        (whole tree) estimate with npop scaled by the subtree's share of the
        sequences instead of failing (default: True).

    stop_on_incomplete : bool
        Abort the whole walk when the confidence-interval oracle fails for a
        subtree (default: True). When False the subtree is recorded as
        unresolved and its siblings are still processed.

    sort_tree : bool
        Sort the tree's children by depth before walking it so that output
        order is reproducible (default: True).
    """
    scale_reference_on_degenerate_fit: bool = True
    stop_on_incomplete: bool = True
    sort_tree: bool = True


# ============================================================================
# Visualization Configuration
# ============================================================================

@dataclass(frozen=True)
class VisualizationConfig:
    """
    Configuration for the binning curve plot.

    Attributes
    ----------
    make_plots : bool
        Produce the binning curve figure (default: True)

    figure_dpi : int
        Resolution for raster output (default: 300)

    figure_format : str
        Output format: "png", "pdf" or "svg" (default: "png")

    figure_width, figure_height : float
        Figure size in inches (default: 8 x 6)
    """
    make_plots: bool = True
    figure_dpi: int = 300
    figure_format: str = "png"
    figure_width: float = 8.0
    figure_height: float = 6.0

    def __post_init__(self):
        if self.figure_dpi < 72:
            raise ValueError("figure_dpi must be at least 72")
        if self.figure_format not in ["png", "pdf", "svg"]:
            raise ValueError(f"Invalid figure_format: {self.figure_format}")
        if self.figure_width <= 0 or self.figure_height <= 0:
            raise ValueError("figure dimensions must be positive")


# ============================================================================
# Master Configuration
# ============================================================================

@dataclass(frozen=True)
class AnalysisConfig:
    """
    Master configuration for an Ecotyper analysis.

    Attributes
    ----------
    sequences : SequenceConfig
        Alignment loading configuration

    binning : BinningConfig
        Sequence binning configuration

    estimation : EstimationConfig
        Curve estimator configuration

    demarcation : DemarcationConfig
        Demarcation walk configuration

    visualization : VisualizationConfig
        Figure generation configuration

    log_level : str
        Logging level (default: "INFO")

    n_processes : int
        Worker processes for independent demarcation runs (default: 1)

    output_dir : Path
        Base output directory (default: "results")
    """
    sequences: SequenceConfig = field(default_factory=SequenceConfig)
    binning: BinningConfig = field(default_factory=BinningConfig)
    estimation: EstimationConfig = field(default_factory=EstimationConfig)
    demarcation: DemarcationConfig = field(default_factory=DemarcationConfig)
    visualization: VisualizationConfig = field(default_factory=VisualizationConfig)
    log_level: str = "INFO"
    n_processes: int = 1
    output_dir: Path = field(default_factory=lambda: Path("results"))

    def __post_init__(self):
        """Validate and normalize configuration."""
        if isinstance(self.output_dir, str):
            object.__setattr__(self, 'output_dir', Path(self.output_dir))

        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if self.log_level.upper() not in valid_levels:
            raise ValueError(f"log_level must be one of {valid_levels}")

        if self.n_processes < 1:
            raise ValueError("n_processes must be at least 1")

    def update(self, **kwargs) -> 'AnalysisConfig':
        """
        Create a new configuration with updated values.

        Supports nested updates using double underscore notation:
        ``config.update(binning__linkage_method="complete")``

        Parameters
        ----------
        **kwargs
            Configuration parameters to update. Use double underscore
            for nested parameters (e.g., estimation__max_iterations)

        Returns
        -------
        AnalysisConfig
            New configuration object with updates

        Raises
        ------
        ValueError
            If a nested key names an unknown component
        """
        top_level = {}
        nested: Dict[str, Dict[str, Any]] = {}

        for key, value in kwargs.items():
            if '__' in key:
                component, param = key.split('__', 1)
                nested.setdefault(component, {})[param] = value
            else:
                top_level[key] = value

        for component, updates in nested.items():
            if component not in _COMPONENTS:
                raise ValueError(f"Unknown configuration component: {component}")
            current = getattr(self, component)
            top_level[component] = replace(current, **updates)

        return replace(self, **top_level)

    def to_dict(self) -> Dict[str, Any]:
        """Convert configuration to a nested dictionary."""
        return asdict(self)

    def to_yaml(self, output_path: Union[str, Path]) -> None:
        """Save configuration to YAML file."""
        config_dict = _convert_for_serialization(self.to_dict())

        path = Path(output_path)
        path.parent.mkdir(parents=True, exist_ok=True)

        with open(path, 'w') as f:
            yaml.safe_dump(config_dict, f, default_flow_style=False, sort_keys=False)

        logger.info(f"Configuration saved to {path}")

    def to_json(self, output_path: Union[str, Path]) -> None:
        """Save configuration to JSON file."""
        config_dict = _convert_for_serialization(self.to_dict())

        path = Path(output_path)
        path.parent.mkdir(parents=True, exist_ok=True)

        with open(path, 'w') as f:
            json.dump(config_dict, f, indent=2)

        logger.info(f"Configuration saved to {path}")


_COMPONENTS = {
    'sequences': SequenceConfig,
    'binning': BinningConfig,
    'estimation': EstimationConfig,
    'demarcation': DemarcationConfig,
    'visualization': VisualizationConfig,
}


# ============================================================================
# Helper Functions
# ============================================================================

def get_default_config() -> AnalysisConfig:
    """
    Get default analysis configuration.

    Examples
    --------
    >>> config = get_default_config()
    >>> config.binning.linkage_method
    'single'
    """
    return AnalysisConfig()


def load_config_from_file(config_path: Union[str, Path]) -> AnalysisConfig:
    """
    Load configuration from YAML or JSON file.

    Automatically detects file format based on extension.

    Parameters
    ----------
    config_path : Union[str, Path]
        Path to configuration file (.yaml, .yml, or .json)

    Returns
    -------
    AnalysisConfig
        Loaded configuration

    Raises
    ------
    FileNotFoundError
        If configuration file doesn't exist
    ValueError
        If file format is not supported or the content is not a mapping
    """
    path = Path(config_path)

    if not path.exists():
        raise FileNotFoundError(f"Configuration file not found: {path}")

    suffix = path.suffix.lower()

    with open(path, 'r') as f:
        if suffix in ['.yaml', '.yml']:
            config_dict = yaml.safe_load(f)
        elif suffix == '.json':
            config_dict = json.load(f)
        else:
            raise ValueError(f"Unsupported config file format: {suffix}")

    if config_dict is None:
        config_dict = {}
    if not isinstance(config_dict, dict):
        raise ValueError(f"Configuration file must contain a mapping: {path}")

    logger.info(f"Loaded configuration from {path}")
    return _dict_to_config(config_dict)


def _dict_to_config(config_dict: Dict[str, Any]) -> AnalysisConfig:
    """Convert a (possibly partial) nested dictionary to AnalysisConfig."""
    config_dict = dict(config_dict)
    nested_configs = {}

    for name, cls in _COMPONENTS.items():
        if name in config_dict:
            nested_configs[name] = cls(**(config_dict.pop(name) or {}))

    if 'output_dir' in config_dict and config_dict['output_dir'] is not None:
        config_dict['output_dir'] = Path(config_dict['output_dir'])

    return AnalysisConfig(**nested_configs, **config_dict)


def _convert_for_serialization(obj: Any) -> Any:
    """Recursively convert Path objects and tuples for YAML/JSON output."""
    if isinstance(obj, Path):
        return str(obj)
    elif isinstance(obj, dict):
        return {k: _convert_for_serialization(v) for k, v in obj.items()}
    elif isinstance(obj, (list, tuple)):
        return [_convert_for_serialization(item) for item in obj]
    else:
        return obj


def load_config_from_env(prefix: str = "ECOTYPER_") -> Dict[str, Any]:
    """
    Load configuration overrides from environment variables.

    Environment variables should be prefixed with ECOTYPER_ and use double
    underscores for nesting::

        ECOTYPER_ESTIMATION__MAX_ITERATIONS=20
        ECOTYPER_SEQUENCES__OUTGROUP=seq_001
        ECOTYPER_BINNING__THRESHOLDS=0.1,0.05,0.0

    Values of text fields are kept as given, and a single value for a tuple
    field becomes a one-element tuple.

    Returns
    -------
    Dict[str, Any]
        Configuration overrides suitable for ``AnalysisConfig.update``
    """
    overrides = {}

    for key, value in os.environ.items():
        if key.startswith(prefix):
            config_key = key[len(prefix):].lower()
            field_type = _field_type(config_key)
            if field_type in _TEXT_FIELD_TYPES:
                overrides[config_key] = value
                continue
            parsed = _parse_env_value(value)
            if field_type == Tuple[float, ...] and not isinstance(parsed, tuple):
                parsed = (parsed,)
            overrides[config_key] = parsed

    if overrides:
        logger.debug(f"Loaded {len(overrides)} configuration overrides from environment")

    return overrides


_TEXT_FIELD_TYPES = (str, Optional[str], Path)


def _field_type(config_key: str) -> Any:
    """Declared type of the field named by an override key (None if unknown)."""
    owner: Any = AnalysisConfig
    name = config_key
    if '__' in config_key:
        component, name = config_key.split('__', 1)
        owner = _COMPONENTS.get(component)
        if owner is None:
            return None
    for f in fields(owner):
        if f.name == name:
            return f.type
    return None


def _parse_env_value(value: str) -> Any:
    """Parse environment variable value to appropriate type."""
    if value.lower() in ['true', 'yes']:
        return True
    if value.lower() in ['false', 'no']:
        return False

    try:
        return int(value)
    except ValueError:
        pass

    try:
        return float(value)
    except ValueError:
        pass

    if ',' in value:
        return tuple(_parse_env_value(part.strip()) for part in value.split(','))

    return value


def validate_config(config: AnalysisConfig) -> List[str]:
    """
    Validate configuration and return list of warnings.

    Parameters
    ----------
    config : AnalysisConfig
        Configuration to validate

    Returns
    -------
    List[str]
        List of warning messages (empty if no issues)
    """
    warnings = []

    thresholds = config.binning.thresholds
    if len(thresholds) < 4:
        warnings.append(
            f"Only {len(thresholds)} binning thresholds configured. "
            "The curve estimator needs at least three informative levels."
        )

    if 0.0 not in thresholds:
        warnings.append(
            "Thresholds do not include 0.0; identical sequences will not be "
            "counted as a separate binning level."
        )

    if config.estimation.max_iterations > 100:
        warnings.append(
            f"max_iterations ({config.estimation.max_iterations}) is unusually high; "
            "the estimator normally converges within a few passes."
        )

    cpu_count = os.cpu_count() or 1
    if config.n_processes > cpu_count:
        warnings.append(
            f"Process count ({config.n_processes}) exceeds available CPUs ({cpu_count})"
        )

    return warnings


def create_config_template(output_path: Union[str, Path], format: str = "yaml") -> None:
    """
    Write the default configuration to a file as a starting template.

    Examples
    --------
    >>> create_config_template("my_config.yaml")
    """
    config = get_default_config()

    if format.lower() == "yaml":
        config.to_yaml(output_path)
    elif format.lower() == "json":
        config.to_json(output_path)
    else:
        raise ValueError(f"Unsupported format: {format}")

    logger.info(f"Created configuration template: {output_path}")
