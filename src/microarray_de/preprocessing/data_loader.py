"""
Microarray Data Loader
======================

This module handles:
1. Loading the expression matrix (genes x samples)
2. Loading sample metadata (one row per sample)
3. Loading feature metadata (one row per gene)
4. Validating that the three tables are index-aligned
5. Bundling them into an AnnotatedDataset
"""

from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Sequence
import logging

import numpy as np
import pandas as pd

from ..exceptions import AlignmentError, InputValidationError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AnnotatedDataset:
    """Expression matrix bound to its sample and feature annotations.

    ``exprs`` columns match ``samples`` rows and ``exprs`` rows match
    ``features`` rows, in the same order. Every subsetting operation returns
    a new dataset that keeps the three tables aligned.
    """

    exprs: pd.DataFrame
    samples: pd.DataFrame
    features: pd.DataFrame

    def __post_init__(self):
        if not self.exprs.index.equals(self.features.index):
            raise AlignmentError("Expression rows and feature metadata rows differ")
        if not self.exprs.columns.equals(self.samples.index):
            raise AlignmentError("Expression columns and sample metadata rows differ")

    @property
    def n_genes(self) -> int:
        return self.exprs.shape[0]

    @property
    def n_samples(self) -> int:
        return self.exprs.shape[1]

    def subset_genes(self, mask) -> 'AnnotatedDataset':
        """Keep the genes selected by a boolean mask (or list of ids)."""
        mask = self._as_mask(mask, self.exprs.index)
        return AnnotatedDataset(
            exprs=self.exprs.loc[mask],
            samples=self.samples,
            features=self.features.loc[mask],
        )

    def subset_samples(self, mask) -> 'AnnotatedDataset':
        """Keep the samples selected by a boolean mask (or list of ids)."""
        mask = self._as_mask(mask, self.exprs.columns)
        return AnnotatedDataset(
            exprs=self.exprs.loc[:, mask],
            samples=self.samples.loc[mask],
            features=self.features,
        )

    def with_exprs(self, exprs: pd.DataFrame) -> 'AnnotatedDataset':
        """Replace the expression values, keeping the annotations."""
        if not (exprs.index.equals(self.exprs.index) and exprs.columns.equals(self.exprs.columns)):
            raise AlignmentError("Replacement matrix must keep gene and sample order")
        return AnnotatedDataset(exprs=exprs, samples=self.samples, features=self.features)

    @staticmethod
    def _as_mask(mask, index: pd.Index) -> np.ndarray:
        if isinstance(mask, pd.Series):
            if mask.dtype == bool:
                return mask.reindex(index, fill_value=False).values
            mask = mask.tolist()
        mask = np.asarray(mask)
        if mask.dtype == bool:
            if len(mask) != len(index):
                raise AlignmentError(f"Mask length {len(mask)} != {len(index)}")
            return mask
        return index.isin(mask)


class ExpressionDataLoader:
    """Load the expression, sample and feature tables of a microarray study."""

    def __init__(
        self,
        expression_file: str,
        samples_file: str,
        features_file: str,
        sep: str = '\t'
    ):
        self.expression_file = Path(expression_file)
        self.samples_file = Path(samples_file)
        self.features_file = Path(features_file)
        self.sep = sep
        self.exprs_df: Optional[pd.DataFrame] = None
        self.samples_df: Optional[pd.DataFrame] = None
        self.features_df: Optional[pd.DataFrame] = None

    def _read_table(self, path: Path) -> pd.DataFrame:
        if not path.is_file():
            raise InputValidationError(f"Input table not found: {path}")
        try:
            df = pd.read_csv(path, sep=self.sep, index_col=0)
        except (pd.errors.EmptyDataError, pd.errors.ParserError) as e:
            raise InputValidationError(f"Could not parse {path}: {e}") from e
        df.index = df.index.astype(str)
        return df

    def load_expression(self) -> pd.DataFrame:
        """Load expression matrix from file."""
        logger.info(f"Loading expression values from {self.expression_file}")

        self.exprs_df = self._read_table(self.expression_file)
        self.exprs_df.columns = self.exprs_df.columns.astype(str)

        logger.info(f"Loaded {self.exprs_df.shape[0]} genes x {self.exprs_df.shape[1]} samples")
        return self.exprs_df

    def load_sample_metadata(self) -> pd.DataFrame:
        """Load sample annotations (one row per sample)."""
        logger.info(f"Loading sample metadata from {self.samples_file}")
        self.samples_df = self._read_table(self.samples_file)
        logger.info(f"Loaded metadata for {len(self.samples_df)} samples")
        return self.samples_df

    def load_feature_metadata(self) -> pd.DataFrame:
        """Load gene annotations (one row per gene)."""
        logger.info(f"Loading feature metadata from {self.features_file}")
        self.features_df = self._read_table(self.features_file)
        logger.info(f"Loaded metadata for {len(self.features_df)} features")
        return self.features_df

    def validate_alignment(self):
        """
        Check that the three tables describe the same genes and samples.

        Tables whose identifiers match but come in a different order are
        reordered to the expression matrix order.

        Raises
        ------
        AlignmentError
            If counts or identifier sets differ, or identifiers repeat.
        """
        if self.exprs_df is None:
            self.load_expression()
        if self.samples_df is None:
            self.load_sample_metadata()
        if self.features_df is None:
            self.load_feature_metadata()

        exprs, samples, features = self.exprs_df, self.samples_df, self.features_df

        if exprs.shape[0] != features.shape[0]:
            raise AlignmentError(
                f"Expression matrix has {exprs.shape[0]} rows but feature "
                f"metadata has {features.shape[0]}"
            )
        if exprs.shape[1] != samples.shape[0]:
            raise AlignmentError(
                f"Expression matrix has {exprs.shape[1]} columns but sample "
                f"metadata has {samples.shape[0]} rows"
            )

        for name, index in [('gene', exprs.index), ('sample', exprs.columns),
                            ('feature metadata', features.index),
                            ('sample metadata', samples.index)]:
            if index.has_duplicates:
                dups = index[index.duplicated()].unique().tolist()
                raise AlignmentError(f"Duplicate {name} identifiers: {dups[:5]}")

        missing_features = set(exprs.index) - set(features.index)
        if missing_features:
            raise AlignmentError(
                f"{len(missing_features)} genes have no feature annotation, "
                f"e.g. {sorted(missing_features)[:5]}"
            )
        missing_samples = set(exprs.columns) - set(samples.index)
        if missing_samples:
            raise AlignmentError(
                f"Samples missing from sample metadata: {sorted(missing_samples)}"
            )

        if not features.index.equals(exprs.index):
            logger.info("Reordering feature metadata to expression row order")
            self.features_df = features.loc[exprs.index]
        if not samples.index.equals(exprs.columns):
            logger.info("Reordering sample metadata to expression column order")
            self.samples_df = samples.loc[exprs.columns]

    def load(self) -> AnnotatedDataset:
        """Load all three tables and return them as one aligned dataset."""
        self.load_expression()
        self.load_sample_metadata()
        self.load_feature_metadata()
        self.validate_alignment()

        return AnnotatedDataset(
            exprs=self.exprs_df,
            samples=self.samples_df,
            features=self.features_df,
        )


def summarize_samples(samples: pd.DataFrame, factors: Sequence[str]) -> pd.DataFrame:
    """
    Count samples per combination of experimental factors.

    Parameters
    ----------
    samples : pd.DataFrame
        Sample metadata
    factors : Sequence[str]
        Factor columns, e.g. ['genotype', 'treatment']

    Returns
    -------
    pd.DataFrame
        One row per factor combination with an ``n_samples`` column
    """
    factors: List[str] = list(factors)
    missing = [f for f in factors if f not in samples.columns]
    if missing:
        raise InputValidationError(f"Sample metadata lacks factor columns: {missing}")

    counts = (
        samples.groupby(factors, sort=False)
        .size()
        .rename('n_samples')
        .reset_index()
    )

    print("\n=== Sample Metadata Summary ===")
    for factor in factors:
        print(f"{factor}: {samples[factor].unique().tolist()}")
    print("\nSamples per group:")
    print(counts.to_string(index=False))

    return counts
