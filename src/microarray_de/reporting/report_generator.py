"""
Differential Expression Report Generator
========================================

Generates the analysis report including:
1. Dataset and design summary
2. Contrast definitions
3. Significance-call summary per contrast
4. Top genes per contrast
5. Top enriched pathways per contrast
6. Links to the figures
"""

import json
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional
import logging

import numpy as np
import pandas as pd

from ..de_analysis.differential_expression import filter_significant, get_top_genes

logger = logging.getLogger(__name__)


def _format_value(value) -> str:
    if isinstance(value, (float, np.floating)):
        if value == 0 or 1e-3 <= abs(value) < 1e4:
            return f"{value:.3f}"
        return f"{value:.2e}"
    return str(value)


def _json_value(value):
    """Plain JSON value; non-finite floats become strings such as 'inf'."""
    if isinstance(value, np.integer):
        return int(value)
    if isinstance(value, (float, np.floating)):
        value = float(value)
        return value if np.isfinite(value) else str(value)
    return value


def markdown_table(df: pd.DataFrame, index: bool = True) -> str:
    """Render a DataFrame as a markdown table."""
    columns = list(df.columns)
    header = ([df.index.name or ''] if index else []) + [str(c) for c in columns]

    lines = [
        "| " + " | ".join(header) + " |",
        "|" + "|".join("---" for _ in header) + "|",
    ]
    for idx, values in zip(df.index, df.itertuples(index=False, name=None)):
        cells = ([str(idx)] if index else []) + [_format_value(v) for v in values]
        lines.append("| " + " | ".join(cells) + " |")

    return "\n".join(lines)


class DEReportGenerator:
    """Generate the differential expression analysis report"""

    def __init__(self, output_dir: str = "results"):
        self.output_dir = Path(output_dir)
        self.output_dir.mkdir(parents=True, exist_ok=True)

    def generate_report(self,
                        project_name: str,
                        dataset_summary: Dict,
                        group_counts: pd.DataFrame,
                        contrasts: pd.DataFrame,
                        decision_summary: pd.DataFrame,
                        results: Dict[str, pd.DataFrame],
                        enrichment: Optional[Dict[str, pd.DataFrame]] = None,
                        figures: Optional[Dict[str, Path]] = None,
                        top_n: int = 10,
                        save_tables: bool = True,
                        sample_stats: Optional[pd.DataFrame] = None,
                        p_value: float = 0.05,
                        lfc: float = 0.0) -> Path:
        """Write the markdown report, tables and JSON summary"""

        report_time = datetime.now().strftime("%Y-%m-%d %H:%M:%S")
        figures = figures or {}

        sections = [
            self._generate_header(project_name, report_time),
            self._generate_dataset_section(dataset_summary, group_counts, sample_stats),
            self._generate_contrast_section(contrasts, decision_summary),
        ]

        for name, table in results.items():
            sections.append(self._generate_contrast_results(
                name, table, top_n, p_value, lfc,
                enrichment.get(name) if enrichment else None,
                {k: v for k, v in figures.items() if k.startswith(f"{name}_")}
            ))

        exploratory = {k: v for k, v in figures.items()
                       if not any(k.startswith(f"{n}_") for n in results)}
        if exploratory:
            sections.append(self._generate_figure_section(exploratory))

        report_file = self.output_dir / "analysis_report.md"
        with open(report_file, 'w') as f:
            f.write("\n\n".join(sections))

        if save_tables:
            self._save_tables(results, enrichment)

        self._save_json_summary(project_name, dataset_summary, decision_summary, enrichment)

        print(f"  Report saved to: {report_file}")
        return report_file

    def _generate_header(self, project_name: str, report_time: str) -> str:
        return f"""# Differential Expression Report: {project_name}

**Analysis Date:** {report_time}

---
"""

    def _generate_dataset_section(self,
                                  dataset_summary: Dict,
                                  group_counts: pd.DataFrame,
                                  sample_stats: Optional[pd.DataFrame] = None) -> str:
        """Dataset dimensions, samples per group and per-sample distributions"""
        rows = "\n".join(f"| {k} | {_json_value(v)} |" for k, v in dataset_summary.items())

        section = f"""## Dataset

| Metric | Value |
|--------|-------|
{rows}

### Samples per Group

{markdown_table(group_counts, index=False)}
"""
        if sample_stats is not None:
            section += f"""
### Normalized Expression per Sample

{markdown_table(sample_stats, index=False)}
"""
        return section

    def _generate_contrast_section(self, contrasts: pd.DataFrame,
                                   decision_summary: pd.DataFrame) -> str:
        """Contrast matrix and significance calls"""
        return f"""## Contrasts

{markdown_table(contrasts)}

### Significance Calls

{markdown_table(decision_summary)}
"""

    def _generate_contrast_results(self,
                                   name: str,
                                   table: pd.DataFrame,
                                   top_n: int,
                                   p_value: float,
                                   lfc: float,
                                   pathways: Optional[pd.DataFrame],
                                   figures: Dict[str, Path]) -> str:
        """Top genes, pathways and figures for one contrast"""
        significant = filter_significant(table, padj_threshold=p_value, lfc_threshold=lfc)
        n_up = int((significant['logFC'] > 0).sum())
        n_down = int((significant['logFC'] < 0).sum())

        top = get_top_genes(table, n_top=top_n, by='pvalue')
        parts = [f"## Contrast: {name}", "",
                 f"**Significant genes** (adjusted p < {p_value}, |logFC| >= {lfc}): "
                 f"{len(significant)} ({n_up} up, {n_down} down)", "",
                 f"### Top {len(top)} Genes", "",
                 markdown_table(top)]

        if pathways is not None:
            parts += ["", f"### Top {len(pathways)} KEGG Pathways", "",
                      markdown_table(pathways)]

        if figures:
            parts += ["", "### Figures", ""]
            parts += [f"![{key}]({self._relative(path)})" for key, path in figures.items()]

        return "\n".join(parts)

    def _generate_figure_section(self, figures: Dict[str, Path]) -> str:
        links = "\n".join(f"![{key}]({self._relative(path)})" for key, path in figures.items())
        return f"""## Exploratory Figures

{links}
"""

    def _relative(self, path: Path) -> str:
        path = Path(path)
        try:
            return str(path.relative_to(self.output_dir))
        except ValueError:
            return str(path)

    def _save_tables(self,
                     results: Dict[str, pd.DataFrame],
                     enrichment: Optional[Dict[str, pd.DataFrame]]) -> List[Path]:
        """Save per-contrast result tables as CSV"""
        saved = []
        for name, table in results.items():
            path = self.output_dir / f"de_{name}.csv"
            table.to_csv(path)
            saved.append(path)

        for name, table in (enrichment or {}).items():
            path = self.output_dir / f"kegg_{name}.csv"
            table.to_csv(path)
            saved.append(path)

        logger.info(f"Saved {len(saved)} result tables to {self.output_dir}")
        return saved

    def _save_json_summary(self,
                           project_name: str,
                           dataset_summary: Dict,
                           decision_summary: pd.DataFrame,
                           enrichment: Optional[Dict[str, pd.DataFrame]]):
        """Save JSON summary for programmatic access"""

        summary = {
            'project': project_name,
            'analysis_time': datetime.now().isoformat(),
            'data': {k: _json_value(v) for k, v in dataset_summary.items()},
            'decisions': {
                name: {k: int(v) for k, v in decision_summary[name].items()}
                for name in decision_summary.columns
            },
            'top_pathways': {
                name: table['Pathway'].tolist()
                for name, table in (enrichment or {}).items()
            }
        }

        json_file = self.output_dir / "analysis_summary.json"
        with open(json_file, 'w') as f:
            json.dump(summary, f, indent=2, default=str, allow_nan=False)
