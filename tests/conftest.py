"""Shared fixtures: a small synthetic genotype x treatment experiment."""

from pathlib import Path

import numpy as np
import pandas as pd
import pytest
import yaml

from microarray_de.preprocessing.data_loader import AnnotatedDataset

N_GENES = 200
GROUPS = [('wt', 'pbs'), ('wt', 'dox'), ('top2b', 'pbs'), ('top2b', 'dox')]

# Indices of genes with a planted effect
WT_DOX_UP = list(range(0, 20))
WT_DOX_DOWN = list(range(20, 30))
TOP2B_DOX_UP = list(range(30, 40))
TOP2B_GENE = 5


def _make_samples() -> pd.DataFrame:
    """Twelve samples, three per group, interleaved across groups."""
    rows = []
    for rep in range(3):
        for genotype, treatment in GROUPS:
            rows.append({'genotype': genotype, 'treatment': treatment, 'replicate': rep + 1})
    samples = pd.DataFrame(rows)
    samples.index = [f"s{i + 1:02d}" for i in range(len(samples))]
    samples.index.name = 'sample_id'
    return samples


def _make_features() -> pd.DataFrame:
    genes = [f"g{i:03d}" for i in range(N_GENES)] + ['g_low']
    symbols = [f"Gene{i}" for i in range(N_GENES)] + ['Lowgene']
    symbols[TOP2B_GENE] = 'Top2b'
    entrez = [float(10000 + i) for i in range(N_GENES)] + [np.nan]
    entrez[199] = np.nan
    features = pd.DataFrame({'symbol': symbols, 'entrez': entrez}, index=genes)
    features.index.name = 'gene_id'
    return features


def _make_log_exprs(samples: pd.DataFrame, features: pd.DataFrame, seed: int = 0) -> pd.DataFrame:
    rng = np.random.default_rng(seed)
    n_samples = len(samples)

    base = rng.uniform(5, 10, size=N_GENES)
    sd = rng.uniform(0.15, 0.35, size=N_GENES)
    values = base[:, None] + rng.normal(size=(N_GENES, n_samples)) * sd[:, None]

    wt_dox = ((samples['genotype'] == 'wt') & (samples['treatment'] == 'dox')).values
    top2b_dox = ((samples['genotype'] == 'top2b') & (samples['treatment'] == 'dox')).values
    values[np.ix_(WT_DOX_UP, wt_dox)] += 2.0
    values[np.ix_(WT_DOX_DOWN, wt_dox)] -= 2.0
    values[np.ix_(TOP2B_DOX_UP, top2b_dox)] += 2.0

    # One undetected gene, below zero on the log scale
    low = rng.normal(-1.0, 0.1, size=(1, n_samples))
    values = np.vstack([values, low])

    return pd.DataFrame(values, index=features.index, columns=samples.index)


@pytest.fixture
def samples() -> pd.DataFrame:
    return _make_samples()


@pytest.fixture
def features() -> pd.DataFrame:
    return _make_features()


@pytest.fixture
def log_exprs(samples, features) -> pd.DataFrame:
    return _make_log_exprs(samples, features)


@pytest.fixture
def raw_dataset(samples, features, log_exprs) -> AnnotatedDataset:
    """Positive intensities (exp of the log-scale values)."""
    return AnnotatedDataset(exprs=np.exp(log_exprs), samples=samples, features=features)


@pytest.fixture
def log_dataset(samples, features, log_exprs) -> AnnotatedDataset:
    """Log-scale data without the undetected gene."""
    keep = log_exprs.index != 'g_low'
    return AnnotatedDataset(exprs=log_exprs.loc[keep], samples=samples, features=features.loc[keep])


@pytest.fixture
def data_files(tmp_path, raw_dataset) -> dict:
    """The three input tables written tab-separated under tmp_path/data/raw."""
    raw_dir = tmp_path / 'data' / 'raw'
    raw_dir.mkdir(parents=True)
    paths = {
        'expression': raw_dir / 'exprs.txt',
        'samples': raw_dir / 'pdata.txt',
        'features': raw_dir / 'fdata.txt',
    }
    raw_dataset.exprs.to_csv(paths['expression'], sep='\t')
    raw_dataset.samples.to_csv(paths['samples'], sep='\t')
    raw_dataset.features.to_csv(paths['features'], sep='\t')
    return paths


@pytest.fixture
def gene_sets_file(tmp_path) -> Path:
    """Three pathways; the first holds the genes induced by dox in wild type."""
    rows = []
    for i in WT_DOX_UP + list(range(100, 110)):
        rows.append(('path:mmu00001', str(10000 + i), 'Induced pathway'))
    for i in range(150, 180):
        rows.append(('path:mmu00002', str(10000 + i), 'Background pathway'))
    for i in WT_DOX_DOWN:
        rows.append(('path:mmu00003', str(10000 + i), 'Repressed pathway'))
    # Gene absent from the expression data
    rows.append(('path:mmu00002', '99999', 'Background pathway'))

    path = tmp_path / 'data' / 'gene_sets.tsv'
    path.parent.mkdir(parents=True, exist_ok=True)
    pd.DataFrame(rows, columns=['pathway_id', 'gene_id', 'description']).to_csv(
        path, sep='\t', index=False
    )
    return path


@pytest.fixture
def config_file(tmp_path, data_files, gene_sets_file) -> Path:
    """YAML config under tmp_path/configs with project-relative paths."""
    raw = {
        'project': {'name': 'synthetic'},
        'data': {
            'expression': 'data/raw/exprs.txt',
            'samples': 'data/raw/pdata.txt',
            'features': 'data/raw/fdata.txt',
        },
        'visualization': {'enabled': True, 'gene_of_interest': 'Top2b', 'mds_top': 50},
        'report': {'output_dir': 'results', 'top_pathways': 2},
        'enrichment': {'enabled': True, 'gene_sets': 'data/gene_sets.tsv'},
    }
    config_dir = tmp_path / 'configs'
    config_dir.mkdir()
    path = config_dir / 'config.yaml'
    with open(path, 'w') as f:
        yaml.safe_dump(raw, f)
    return path
