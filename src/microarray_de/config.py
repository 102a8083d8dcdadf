"""
Pipeline Configuration
======================

Typed view of the YAML configuration file. Relative paths resolve against
the project root (the parent of the directory holding the config file).
"""

from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Dict, Optional, Tuple
import logging

import yaml

from .exceptions import ConfigError

logger = logging.getLogger(__name__)


DEFAULT_CONTRASTS = {
    'dox_wt': 'wt.dox - wt.pbs',
    'dox_top2b': 'top2b.dox - top2b.pbs',
    'interaction': '(top2b.dox - top2b.pbs) - (wt.dox - wt.pbs)',
}

# statsmodels multipletests methods, plus 'none'
ADJUST_METHODS = (
    'bonferroni', 'sidak', 'holm-sidak', 'holm', 'simes-hochberg', 'hommel',
    'fdr_bh', 'fdr_by', 'fdr_tsbh', 'fdr_tsbky', 'none'
)

MDS_GENE_SELECTIONS = ('pairwise', 'common')


@dataclass(frozen=True)
class DataConfig:
    expression: Path = Path('data/raw/exprs.txt')
    samples: Path = Path('data/raw/pdata.txt')
    features: Path = Path('data/raw/fdata.txt')
    sep: str = '\t'
    symbol_col: str = 'symbol'
    pathway_id_col: str = 'entrez'


@dataclass(frozen=True)
class PreprocessingConfig:
    min_mean_expression: float = 0.0


@dataclass(frozen=True)
class DesignConfig:
    factors: Tuple[str, ...] = ('genotype', 'treatment')
    separator: str = '.'
    contrasts: Dict[str, str] = field(default_factory=lambda: dict(DEFAULT_CONTRASTS))


@dataclass(frozen=True)
class TestingConfig:
    adjust_method: str = 'fdr_bh'
    p_value: float = 0.05
    lfc: float = 0.0
    proportion: float = 0.01


@dataclass(frozen=True)
class VisualizationConfig:
    enabled: bool = True
    gene_of_interest: str = 'Top2b'
    mds_top: int = 500
    mds_gene_selection: str = 'pairwise'


@dataclass(frozen=True)
class ReportConfig:
    output_dir: Path = Path('results')
    volcano_highlight: int = 10
    top_pathways: int = 5
    save_tables: bool = True


@dataclass(frozen=True)
class EnrichmentConfig:
    enabled: bool = True
    species: str = 'mmu'
    gene_sets: Optional[Path] = None
    cache_dir: Path = Path('data/kegg')
    fdr: float = 0.05


@dataclass(frozen=True)
class PipelineConfig:
    name: str = 'microarray-de'
    project_root: Path = Path('.')
    data: DataConfig = field(default_factory=DataConfig)
    preprocessing: PreprocessingConfig = field(default_factory=PreprocessingConfig)
    design: DesignConfig = field(default_factory=DesignConfig)
    testing: TestingConfig = field(default_factory=TestingConfig)
    visualization: VisualizationConfig = field(default_factory=VisualizationConfig)
    report: ReportConfig = field(default_factory=ReportConfig)
    enrichment: EnrichmentConfig = field(default_factory=EnrichmentConfig)

    def resolve(self, path: Optional[Path]) -> Optional[Path]:
        """Resolve a configured path against the project root."""
        if path is None:
            return None
        path = Path(path)
        if path.is_absolute():
            return path
        return self.project_root / path


_PATH_FIELDS = {
    'expression', 'samples', 'features', 'output_dir', 'gene_sets', 'cache_dir'
}


def _build_section(cls, raw: Optional[dict], section: str):
    """Instantiate a config section, ignoring unknown keys."""
    if raw is None:
        return cls()
    if not isinstance(raw, dict):
        raise ConfigError(f"Section '{section}' must be a mapping, got {type(raw).__name__}")

    known = {f.name for f in fields(cls)}
    kwargs = {}
    for key, value in raw.items():
        if key not in known:
            logger.warning(f"Ignoring unknown config key: {section}.{key}")
            continue
        if key in _PATH_FIELDS and value is not None:
            value = Path(value)
        elif key == 'factors':
            value = tuple(value)
        elif key == 'contrasts':
            if not isinstance(value, dict) or not value:
                raise ConfigError("design.contrasts must be a non-empty mapping")
            value = {str(k): str(v) for k, v in value.items()}
        kwargs[key] = value

    try:
        return cls(**kwargs)
    except TypeError as e:
        raise ConfigError(f"Invalid section '{section}': {e}") from e


def validate_config(config: PipelineConfig):
    """Reject settings that would only fail midway through a run."""
    if not config.design.factors:
        raise ConfigError("design.factors must name at least one sample column")

    testing = config.testing
    if testing.adjust_method not in ADJUST_METHODS:
        raise ConfigError(
            f"Unknown testing.adjust_method '{testing.adjust_method}'; "
            f"choose one of {list(ADJUST_METHODS)}"
        )
    if not 0 < testing.p_value <= 1:
        raise ConfigError(f"testing.p_value must be in (0, 1], got {testing.p_value}")
    if testing.lfc < 0:
        raise ConfigError(f"testing.lfc must be >= 0, got {testing.lfc}")
    if not 0 < testing.proportion < 1:
        raise ConfigError(f"testing.proportion must be in (0, 1), got {testing.proportion}")

    if config.visualization.mds_gene_selection not in MDS_GENE_SELECTIONS:
        raise ConfigError(
            f"visualization.mds_gene_selection must be one of {list(MDS_GENE_SELECTIONS)}"
        )
    if not 0 < config.enrichment.fdr <= 1:
        raise ConfigError(f"enrichment.fdr must be in (0, 1], got {config.enrichment.fdr}")


def config_from_dict(raw: dict, project_root: Path = Path('.')) -> PipelineConfig:
    """Build a PipelineConfig from an already-parsed mapping."""
    raw = raw or {}
    project = raw.get('project') or {}

    config = PipelineConfig(
        name=project.get('name', 'microarray-de'),
        project_root=Path(project_root),
        data=_build_section(DataConfig, raw.get('data'), 'data'),
        preprocessing=_build_section(PreprocessingConfig, raw.get('preprocessing'), 'preprocessing'),
        design=_build_section(DesignConfig, raw.get('design'), 'design'),
        testing=_build_section(TestingConfig, raw.get('testing'), 'testing'),
        visualization=_build_section(VisualizationConfig, raw.get('visualization'), 'visualization'),
        report=_build_section(ReportConfig, raw.get('report'), 'report'),
        enrichment=_build_section(EnrichmentConfig, raw.get('enrichment'), 'enrichment'),
    )
    validate_config(config)
    return config


def load_config(config_path: str) -> PipelineConfig:
    """
    Load the pipeline configuration from a YAML file.

    Parameters
    ----------
    config_path : str
        Path to YAML configuration file

    Returns
    -------
    PipelineConfig
        Parsed configuration
    """
    config_path = Path(config_path)
    if not config_path.exists():
        raise ConfigError(f"Config file not found: {config_path}")

    try:
        with open(config_path, 'r') as f:
            raw = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigError(f"Could not parse {config_path}: {e}") from e

    if raw is not None and not isinstance(raw, dict):
        raise ConfigError(f"Top level of {config_path} must be a mapping")

    project_root = config_path.resolve().parent.parent
    config = config_from_dict(raw or {}, project_root=project_root)

    logger.info(f"Loaded configuration for: {config.name}")
    return config
