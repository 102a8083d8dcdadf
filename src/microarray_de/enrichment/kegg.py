"""
KEGG Pathway Enrichment
=======================

Over-representation test of up- and down-regulated genes in KEGG pathways:
1. Gene -> pathway memberships from a local table or the KEGG REST API
2. Hypergeometric tests per pathway, separately for up and down genes
3. Ranking of the most enriched pathways
"""

from pathlib import Path
from typing import Dict, Iterable, Optional, Set, Tuple
import json
import logging
import re

import numpy as np
import pandas as pd
import requests
from scipy import stats

from ..de_analysis.ebayes import adjust_pvalues
from ..exceptions import EnrichmentError

logger = logging.getLogger(__name__)

KEGG_REST_URL = "https://rest.kegg.jp"

_SPECIES_SUFFIX = re.compile(r'\s+-\s+[^-]*\([^()]*\)\s*$')


def normalize_gene_id(value) -> Optional[str]:
    """Gene identifiers as strings; integral floats lose their '.0'."""
    if value is None:
        return None
    if isinstance(value, float):
        if np.isnan(value):
            return None
        if value.is_integer():
            return str(int(value))
    text = str(value).strip()
    return text or None


def _pathway_key(pathway_id: str) -> str:
    pathway_id = pathway_id.strip()
    return pathway_id if pathway_id.startswith('path:') else f"path:{pathway_id}"


class PathwayDatabase:
    """Gene to pathway memberships with pathway descriptions."""

    def __init__(
        self,
        memberships: Iterable[Tuple[str, str]],
        pathway_names: Optional[Dict[str, str]] = None
    ):
        """
        Parameters
        ----------
        memberships : Iterable[Tuple[str, str]]
            (gene_id, pathway_id) pairs
        pathway_names : Dict[str, str], optional
            pathway_id -> description
        """
        self.gene_pathways: Dict[str, Set[str]] = {}
        for gene_id, pathway_id in memberships:
            gene_id = normalize_gene_id(gene_id)
            if gene_id is None:
                continue
            self.gene_pathways.setdefault(gene_id, set()).add(_pathway_key(pathway_id))

        self.pathway_names = {
            _pathway_key(k): v for k, v in (pathway_names or {}).items()
        }

        logger.info(f"Pathway database: {len(self.gene_pathways)} genes, "
                    f"{len(self.pathway_ids)} pathways")

    @property
    def pathway_ids(self) -> list:
        ids = set()
        for paths in self.gene_pathways.values():
            ids.update(paths)
        return sorted(ids)

    def memberships(self) -> list:
        return [(g, p) for g in sorted(self.gene_pathways) for p in sorted(self.gene_pathways[g])]

    def description(self, pathway_id: str) -> str:
        return self.pathway_names.get(pathway_id, pathway_id)

    @classmethod
    def from_table(cls, path: str, sep: str = '\t') -> 'PathwayDatabase':
        """
        Load memberships from a delimited table.

        Required columns are ``pathway_id`` and ``gene_id``; an optional
        ``description`` column names the pathways.
        """
        path = Path(path)
        if not path.exists():
            raise EnrichmentError(f"Gene set table not found: {path}")

        df = pd.read_csv(path, sep=sep, dtype=str)
        missing = {'pathway_id', 'gene_id'} - set(df.columns)
        if missing:
            raise EnrichmentError(f"Gene set table {path} lacks columns: {sorted(missing)}")

        names = {}
        if 'description' in df.columns:
            names = (
                df.dropna(subset=['description'])
                .drop_duplicates('pathway_id')
                .set_index('pathway_id')['description']
                .to_dict()
            )

        pairs = df.dropna(subset=['pathway_id', 'gene_id'])[['gene_id', 'pathway_id']]
        return cls(pairs.itertuples(index=False, name=None), names)

    @classmethod
    def from_kegg_rest(
        cls,
        species: str = 'mmu',
        cache_dir: Optional[str] = None,
        timeout: int = 60
    ) -> 'PathwayDatabase':
        """
        Download pathway memberships for a species from KEGG.

        Parameters
        ----------
        species : str
            KEGG organism code, e.g. 'mmu' or 'hsa'
        cache_dir : str, optional
            Directory for a JSON cache reused on later runs
        timeout : int
            Request timeout in seconds
        """
        cache_file = None
        if cache_dir is not None:
            cache_file = Path(cache_dir) / f"kegg_{species}.json"
            if cache_file.exists():
                logger.info(f"Loading KEGG pathways from cache: {cache_file}")
                return cls.from_json(cache_file)

        logger.info(f"Downloading KEGG pathways for '{species}'")
        try:
            link_resp = requests.get(f"{KEGG_REST_URL}/link/pathway/{species}", timeout=timeout)
            link_resp.raise_for_status()
            list_resp = requests.get(f"{KEGG_REST_URL}/list/pathway/{species}", timeout=timeout)
            list_resp.raise_for_status()
        except requests.RequestException as e:
            raise EnrichmentError(f"KEGG REST request failed: {e}") from e

        memberships = parse_kegg_links(link_resp.text, species)
        names = parse_kegg_list(list_resp.text)
        if not memberships:
            raise EnrichmentError(f"KEGG returned no pathway links for '{species}'")

        database = cls(memberships, names)

        if cache_file is not None:
            database.to_json(cache_file)
            logger.info(f"Saved KEGG pathways to cache: {cache_file}")

        return database

    def to_json(self, path: str):
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, 'w') as f:
            json.dump({'memberships': self.memberships(), 'names': self.pathway_names}, f)

    @classmethod
    def from_json(cls, path: str) -> 'PathwayDatabase':
        with open(path) as f:
            raw = json.load(f)
        return cls([tuple(m) for m in raw['memberships']], raw.get('names', {}))


def parse_kegg_links(text: str, species: str) -> list:
    """Parse KEGG ``link/pathway`` output into (gene_id, pathway_id) pairs."""
    prefix = f"{species}:"
    pairs = []
    for line in text.splitlines():
        parts = line.strip().split('\t')
        if len(parts) != 2:
            continue
        gene, pathway = parts
        if gene.startswith(prefix):
            gene = gene[len(prefix):]
        pairs.append((gene, pathway))
    return pairs


def parse_kegg_list(text: str) -> Dict[str, str]:
    """Parse KEGG ``list/pathway`` output; species suffixes are dropped."""
    names = {}
    for line in text.splitlines():
        parts = line.strip().split('\t')
        if len(parts) != 2:
            continue
        pathway, description = parts
        names[_pathway_key(pathway)] = _SPECIES_SUFFIX.sub('', description)
    return names


def kegga(
    de_table: pd.DataFrame,
    gene_ids: pd.Series,
    database: PathwayDatabase,
    fdr: float = 0.05,
    adjust_method: str = 'fdr_bh'
) -> pd.DataFrame:
    """
    KEGG over-representation analysis for one contrast.

    Parameters
    ----------
    de_table : pd.DataFrame
        Result table with 'logFC' and 'pvalue' columns
    gene_ids : pd.Series
        Pathway-database gene identifier per row of `de_table`
    database : PathwayDatabase
        Gene to pathway memberships
    fdr : float
        Adjusted p-value cutoff defining up and down genes
    adjust_method : str
        Multiple-testing correction applied before the cutoff

    Returns
    -------
    pd.DataFrame
        One row per pathway with N, Up, Down, P.Up and P.Down, in pathway
        id order
    """
    ids = gene_ids.reindex(de_table.index).map(normalize_gene_id)
    usable = ids.notna()
    if not usable.any():
        raise EnrichmentError("No tested gene has a pathway-database identifier")

    padj = pd.Series(adjust_pvalues(de_table['pvalue'].values, adjust_method), index=de_table.index)
    up_mask = (padj < fdr) & (de_table['logFC'] > 0) & usable
    down_mask = (padj < fdr) & (de_table['logFC'] < 0) & usable

    universe = set(ids[usable])
    up = set(ids[up_mask])
    down = set(ids[down_mask])
    n_universe = len(universe)

    logger.info(f"KEGG enrichment: universe {n_universe} genes, "
                f"{len(up)} up, {len(down)} down")

    pathway_genes: Dict[str, Set[str]] = {}
    for gene in universe:
        for pathway in database.gene_pathways.get(gene, ()):
            pathway_genes.setdefault(pathway, set()).add(gene)

    rows = []
    for pathway in sorted(pathway_genes):
        members = pathway_genes[pathway]
        n_path = len(members)
        n_up = len(members & up)
        n_down = len(members & down)
        rows.append({
            'PathwayID': pathway,
            'Pathway': database.description(pathway),
            'N': n_path,
            'Up': n_up,
            'Down': n_down,
            'P.Up': _hypergeom_upper(n_up, n_universe, len(up), n_path),
            'P.Down': _hypergeom_upper(n_down, n_universe, len(down), n_path),
        })

    columns = ['PathwayID', 'Pathway', 'N', 'Up', 'Down', 'P.Up', 'P.Down']
    result = pd.DataFrame(rows, columns=columns).set_index('PathwayID')
    return result


def _hypergeom_upper(k: int, n_universe: int, n_de: int, n_path: int) -> float:
    """P(X >= k) when drawing n_path genes from n_universe with n_de DE genes."""
    if k <= 0:
        return 1.0
    return float(stats.hypergeom.sf(k - 1, n_universe, n_de, n_path))


def top_kegg(result: pd.DataFrame, n: int = 5, sort: Optional[str] = None) -> pd.DataFrame:
    """
    Most enriched pathways.

    Parameters
    ----------
    result : pd.DataFrame
        Output of kegga
    n : int
        Number of pathways
    sort : str, optional
        'up' or 'down' to rank by that direction; by default pathways are
        ranked by the smaller of P.Up and P.Down
    """
    if sort is None:
        key = np.minimum(result['P.Up'].values, result['P.Down'].values)
    elif sort == 'up':
        key = result['P.Up'].values
    elif sort == 'down':
        key = result['P.Down'].values
    else:
        raise ValueError(f"sort must be None, 'up' or 'down', got {sort!r}")

    order = np.argsort(key, kind='stable')
    return result.iloc[order].head(n)
