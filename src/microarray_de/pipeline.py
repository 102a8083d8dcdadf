"""
Microarray Differential Expression Pipeline
===========================================

Main pipeline script that orchestrates:
1. Data loading and alignment checks
2. Log transform, quantile normalization and filtering
3. Exploratory plots
4. Linear model fitting and contrasts
5. Empirical Bayes testing and significance calls
6. KEGG pathway enrichment
7. Report generation

Usage:
    microarray-de --config configs/config.yaml
"""

from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional
import argparse
import logging
import sys

import pandas as pd

from .config import PipelineConfig, load_config
from .de_analysis.differential_expression import LimmaAnalysis
from .enrichment.kegg import PathwayDatabase, kegga, top_kegg
from .exceptions import EnrichmentError, MicroarrayDEError
from .preprocessing.data_loader import AnnotatedDataset, ExpressionDataLoader, summarize_samples
from .preprocessing.normalization import MicroarrayNormalizer, sample_distribution_summary
from .reporting.report_generator import DEReportGenerator
from .visualization import plots

logger = logging.getLogger(__name__)

STEPS = ['all', 'load', 'preprocess', 'explore', 'fit', 'test', 'enrichment', 'report']


class MicroarrayDEPipeline:
    """Complete microarray differential expression pipeline."""

    def __init__(self, config: PipelineConfig):
        """
        Initialize pipeline with configuration.

        Parameters
        ----------
        config : PipelineConfig
            Parsed configuration (see load_config)
        """
        self.config = config

        self.results_dir = config.resolve(config.report.output_dir)
        self.results_dir.mkdir(parents=True, exist_ok=True)
        self.figures_dir = self.results_dir / "figures"

        # Initialize containers
        self.dataset_raw: Optional[AnnotatedDataset] = None
        self.dataset: Optional[AnnotatedDataset] = None
        self.group_counts: Optional[pd.DataFrame] = None
        self.analysis: Optional[LimmaAnalysis] = None
        self.de_results: Optional[Dict[str, pd.DataFrame]] = None
        self.decisions: Optional[pd.DataFrame] = None
        self.decision_summary: Optional[pd.DataFrame] = None
        self.enrichment_results: Optional[Dict[str, pd.DataFrame]] = None
        self.figures: Dict[str, Path] = {}
        self.preprocessing_stats: Optional[pd.DataFrame] = None
        self.sample_stats: Optional[pd.DataFrame] = None

        logger.info(f"Initialized pipeline for: {config.name}")

    @property
    def factors(self) -> List[str]:
        return list(self.config.design.factors)

    def _save(self, fig, name: str):
        self.figures[name] = plots.save_figure(fig, self.figures_dir / f"{name}.png")

    def step1_load_data(self) -> AnnotatedDataset:
        """Load the three input tables."""
        logger.info("=== Step 1: Loading Data ===")

        data = self.config.data
        loader = ExpressionDataLoader(
            str(self.config.resolve(data.expression)),
            str(self.config.resolve(data.samples)),
            str(self.config.resolve(data.features)),
            sep=data.sep
        )
        self.dataset_raw = loader.load()
        self.group_counts = summarize_samples(self.dataset_raw.samples, self.factors)

        logger.info(f"Loaded {self.dataset_raw.n_genes} genes x {self.dataset_raw.n_samples} samples")

        return self.dataset_raw

    def step2_preprocess(self) -> AnnotatedDataset:
        """Log transform, normalize and filter."""
        logger.info("=== Step 2: Preprocessing ===")

        if self.dataset_raw is None:
            self.step1_load_data()

        normalizer = MicroarrayNormalizer(self.dataset_raw)
        self.dataset = normalizer.run(min_mean=self.config.preprocessing.min_mean_expression)
        self.preprocessing_stats = normalizer.get_summary_stats()
        self.sample_stats = sample_distribution_summary(self.dataset.exprs)

        print("\n=== Preprocessing Summary ===")
        print(self.preprocessing_stats.to_string(index=False))

        if self.config.visualization.enabled:
            self._save(plots.plot_densities(normalizer.normalized['log'],
                                            title='Log expression'), 'density_log')
            self._save(plots.plot_densities(normalizer.normalized['quantile'],
                                            title='Quantile normalized'), 'density_normalized')

        return self.dataset

    def step3_explore(self):
        """Exploratory plots of the preprocessed data."""
        logger.info("=== Step 3: Exploratory Plots ===")

        if self.dataset is None:
            self.step2_preprocess()

        vis = self.config.visualization
        if not vis.enabled:
            logger.info("Plots disabled; skipping exploration")
            return self.figures

        try:
            fig = plots.plot_gene_boxplot(self.dataset, vis.gene_of_interest,
                                          by=self.factors[0], symbol_col=self.config.data.symbol_col)
            self._save(fig, f"boxplot_{vis.gene_of_interest}")
        except KeyError as e:
            logger.warning(f"Skipping gene boxplot: {e}")

        coords, var_explained = plots.mds_coordinates(
            self.dataset.exprs, top=vis.mds_top, gene_selection=vis.mds_gene_selection
        )
        for factor in self.factors:
            fig = plots.plot_mds(coords, self.dataset.samples[factor], var_explained,
                                 title=f"MDS by {factor}")
            self._save(fig, f"mds_{factor}")

        return self.figures

    def step4_fit_model(self) -> LimmaAnalysis:
        """Fit gene-wise linear models and contrasts."""
        logger.info("=== Step 4: Linear Model Fit ===")

        if self.dataset is None:
            self.step2_preprocess()

        testing = self.config.testing
        self.analysis = LimmaAnalysis(
            self.dataset,
            factors=self.factors,
            contrasts=self.config.design.contrasts,
            sep=self.config.design.separator,
            adjust_method=testing.adjust_method,
            p_value=testing.p_value,
            lfc=testing.lfc,
            proportion=testing.proportion
        )

        print("\n=== Samples per Group ===")
        print(self.analysis.group_counts().to_string())
        print("\n=== Contrast Matrix ===")
        print(self.analysis.contrasts.to_string())

        self.analysis.fit()
        return self.analysis

    def step5_test_contrasts(self) -> Dict[str, pd.DataFrame]:
        """Moderated tests, significance calls and result plots."""
        logger.info("=== Step 5: Contrast Testing ===")

        if self.analysis is None:
            self.step4_fit_model()

        self.de_results = self.analysis.results()
        self.decisions = self.analysis.decide()
        self.decision_summary = self.analysis.summary()

        print("\n=== Significance Calls ===")
        print(self.decision_summary.to_string())

        if self.config.visualization.enabled:
            if self.decisions.shape[1] <= 3:
                self._save(plots.plot_venn(self.decisions), 'venn')

            symbol_col = self.config.data.symbol_col
            for name, table in self.de_results.items():
                self._save(plots.plot_pvalue_histogram(table, title=f"P-values: {name}"),
                           f"{name}_pvalues")
                self._save(plots.plot_volcano(table, highlight=self.config.report.volcano_highlight,
                                              names=symbol_col, title=f"Volcano: {name}"),
                           f"{name}_volcano")

        return self.de_results

    def _pathway_database(self) -> PathwayDatabase:
        enrich = self.config.enrichment
        if enrich.gene_sets is not None:
            return PathwayDatabase.from_table(str(self.config.resolve(enrich.gene_sets)))
        return PathwayDatabase.from_kegg_rest(
            species=enrich.species,
            cache_dir=str(self.config.resolve(enrich.cache_dir))
        )

    def step6_enrichment(self) -> Dict[str, pd.DataFrame]:
        """KEGG enrichment of up and down genes per contrast."""
        logger.info("=== Step 6: Pathway Enrichment ===")

        if self.de_results is None:
            self.step5_test_contrasts()

        if not self.config.enrichment.enabled:
            logger.info("Enrichment disabled; skipping")
            self.enrichment_results = None
            return {}

        id_col = self.config.data.pathway_id_col
        if id_col not in self.dataset.features.columns:
            raise EnrichmentError(f"Feature metadata has no '{id_col}' column for pathway lookup")

        database = self._pathway_database()
        gene_ids = self.dataset.features[id_col]

        self.enrichment_results = {}
        for name, table in self.de_results.items():
            result = kegga(table, gene_ids, database,
                           fdr=self.config.enrichment.fdr,
                           adjust_method=self.config.testing.adjust_method)
            top = top_kegg(result, n=self.config.report.top_pathways)
            self.enrichment_results[name] = top

            print(f"\n=== Top KEGG Pathways: {name} ===")
            print(top.to_string())

        return self.enrichment_results

    def step7_report(self) -> Path:
        """Write the report, tables and summary."""
        logger.info("=== Step 7: Report ===")

        if self.de_results is None:
            self.step5_test_contrasts()

        dataset_summary = {
            'raw_genes': self.dataset_raw.n_genes,
            'filtered_genes': self.dataset.n_genes,
            'samples': self.dataset.n_samples,
            'adjust_method': self.config.testing.adjust_method,
            'p_value_threshold': self.config.testing.p_value,
            'df_prior': round(float(self.analysis.moderated.df_prior), 3),
            's2_prior': round(float(self.analysis.moderated.s2_prior), 6),
        }

        generator = DEReportGenerator(str(self.results_dir))
        return generator.generate_report(
            project_name=self.config.name,
            dataset_summary=dataset_summary,
            group_counts=self.group_counts,
            contrasts=self.analysis.contrasts,
            decision_summary=self.decision_summary,
            results=self.de_results,
            enrichment=self.enrichment_results,
            sample_stats=self.sample_stats,
            figures=self.figures,
            top_n=self.config.report.volcano_highlight,
            save_tables=self.config.report.save_tables,
            p_value=self.config.testing.p_value,
            lfc=self.config.testing.lfc
        )

    def run_full_pipeline(self) -> Dict[str, pd.DataFrame]:
        """Run the complete analysis pipeline."""
        logger.info("=" * 60)
        logger.info("Starting Microarray Differential Expression Pipeline")
        logger.info("=" * 60)

        start_time = datetime.now()

        self.step1_load_data()
        self.step2_preprocess()
        self.step3_explore()
        self.step4_fit_model()
        self.step5_test_contrasts()
        self.step6_enrichment()
        self.step7_report()

        duration = datetime.now() - start_time

        logger.info("=" * 60)
        logger.info(f"Pipeline completed in {duration}")
        logger.info(f"Results saved to: {self.results_dir}")
        logger.info("=" * 60)

        return self.de_results


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description='Microarray Differential Expression Pipeline')
    parser.add_argument(
        '--config',
        type=str,
        default='configs/config.yaml',
        help='Path to configuration file'
    )
    parser.add_argument(
        '--step',
        type=str,
        choices=STEPS,
        default='all',
        help='Pipeline step to run (earlier steps run as needed)'
    )
    parser.add_argument('--output-dir', type=str, help='Override report.output_dir')
    parser.add_argument('--no-plots', action='store_true', help='Skip all figures')
    parser.add_argument('--no-enrichment', action='store_true', help='Skip KEGG enrichment')
    parser.add_argument('--verbose', action='store_true', help='Debug logging')
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point."""
    args = build_parser().parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        force=True
    )

    try:
        config = load_config(args.config)

        if args.output_dir:
            config = replace(config, report=replace(config.report, output_dir=Path(args.output_dir)))
        if args.no_plots:
            config = replace(config, visualization=replace(config.visualization, enabled=False))
        if args.no_enrichment:
            config = replace(config, enrichment=replace(config.enrichment, enabled=False))

        pipeline = MicroarrayDEPipeline(config)

        if args.step == 'all':
            pipeline.run_full_pipeline()
        elif args.step == 'load':
            pipeline.step1_load_data()
        elif args.step == 'preprocess':
            pipeline.step2_preprocess()
        elif args.step == 'explore':
            pipeline.step3_explore()
        elif args.step == 'fit':
            pipeline.step4_fit_model()
        elif args.step == 'test':
            pipeline.step5_test_contrasts()
        elif args.step == 'enrichment':
            pipeline.step6_enrichment()
        elif args.step == 'report':
            pipeline.step6_enrichment()
            pipeline.step7_report()
    except MicroarrayDEError as e:
        logger.error(f"Pipeline failed: {e}")
        return 1

    return 0


if __name__ == "__main__":
    sys.exit(main())
