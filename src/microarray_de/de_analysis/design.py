"""
Design and Contrast Matrices
============================

Builds the cell-means design for a factorial experiment (one column per
combination of factor levels, no intercept) and parses contrast
expressions such as ``(top2b.dox - top2b.pbs) - (wt.dox - wt.pbs)`` into
a contrast matrix.
"""

import ast
import re
from typing import Dict, Mapping, Optional, Sequence
import logging

import numpy as np
import pandas as pd

from ..exceptions import DesignError

logger = logging.getLogger(__name__)


def _factor_levels(values: pd.Series) -> list:
    """Levels of a factor: categorical order if set, else first appearance."""
    if isinstance(values.dtype, pd.CategoricalDtype):
        return [str(c) for c in values.cat.categories]
    return [str(v) for v in pd.unique(values.astype(str))]


def make_groups(
    samples: pd.DataFrame,
    factors: Sequence[str],
    sep: str = '.'
) -> pd.Series:
    """
    Combine factor columns into one grouping factor.

    Parameters
    ----------
    samples : pd.DataFrame
        Sample metadata indexed by sample id
    factors : Sequence[str]
        Columns to combine, e.g. ['genotype', 'treatment']
    sep : str
        Separator between factor levels

    Returns
    -------
    pd.Series
        Categorical group per sample, e.g. 'wt.dox'. Levels follow the
        level order of each factor and only combinations that occur.
    """
    factors = list(factors)
    if not factors:
        raise DesignError("At least one factor is required")

    missing = [f for f in factors if f not in samples.columns]
    if missing:
        raise DesignError(f"Sample metadata lacks factor columns: {missing}")

    if samples[factors].isna().any().any():
        raise DesignError("Every sample needs a value for every factor")

    labels = samples[factors[0]].astype(str)
    for col in factors[1:]:
        labels = labels + sep + samples[col].astype(str)

    levels = ['']
    for col in factors:
        levels = [f"{prefix}{sep}{lvl}" if prefix else lvl
                  for prefix in levels for lvl in _factor_levels(samples[col])]
    present = set(labels)
    levels = [lvl for lvl in levels if lvl in present]

    return pd.Series(
        pd.Categorical(labels, categories=levels),
        index=samples.index,
        name='group'
    )


def design_matrix(groups: pd.Series) -> pd.DataFrame:
    """
    One-hot design without intercept.

    Parameters
    ----------
    groups : pd.Series
        Categorical group per sample (see make_groups)

    Returns
    -------
    pd.DataFrame
        samples x levels matrix of 0/1 integers
    """
    if not isinstance(groups.dtype, pd.CategoricalDtype):
        groups = groups.astype('category')

    design = pd.get_dummies(groups, prefix='', prefix_sep='', dtype=int)
    design = design[[str(c) for c in groups.cat.categories]]
    design.columns = [str(c) for c in design.columns]
    design.index = groups.index

    logger.info(f"Design matrix: {design.shape[0]} samples x {design.shape[1]} groups")
    return design


class _ContrastEvaluator(ast.NodeVisitor):
    """Evaluate a linear expression over placeholder names into a vector."""

    def __init__(self, names: Dict[str, int], n_levels: int, expression: str):
        self.names = names
        self.n_levels = n_levels
        self.expression = expression

    def fail(self, msg: str):
        raise DesignError(f"Invalid contrast '{self.expression}': {msg}")

    def visit_Expression(self, node):
        return self.visit(node.body)

    def visit_Name(self, node):
        if node.id not in self.names:
            self.fail(f"unknown term '{node.id}'")
        vec = np.zeros(self.n_levels)
        vec[self.names[node.id]] = 1.0
        return vec

    def visit_Constant(self, node):
        if isinstance(node.value, bool) or not isinstance(node.value, (int, float)):
            self.fail(f"unsupported constant {node.value!r}")
        return float(node.value)

    def visit_UnaryOp(self, node):
        operand = self.visit(node.operand)
        if isinstance(node.op, ast.USub):
            return -operand
        if isinstance(node.op, ast.UAdd):
            return operand
        self.fail("unsupported unary operator")

    def visit_BinOp(self, node):
        left = self.visit(node.left)
        right = self.visit(node.right)
        left_vec = isinstance(left, np.ndarray)
        right_vec = isinstance(right, np.ndarray)

        if isinstance(node.op, (ast.Add, ast.Sub)):
            if left_vec != right_vec:
                self.fail("cannot add a constant to a group term")
            return left + right if isinstance(node.op, ast.Add) else left - right
        if isinstance(node.op, ast.Mult):
            if left_vec and right_vec:
                self.fail("product of two group terms is not linear")
            return left * right
        if isinstance(node.op, ast.Div):
            if right_vec:
                self.fail("division by a group term is not linear")
            if right == 0:
                self.fail("division by zero")
            return left / right
        self.fail("unsupported operator")

    def generic_visit(self, node):
        self.fail(f"unsupported syntax ({type(node).__name__})")


def parse_contrast(expression: str, levels: Sequence[str]) -> np.ndarray:
    """
    Parse one contrast expression into coefficients over `levels`.

    Level names may contain dots; they are matched whole, longest first.
    """
    levels = list(levels)
    placeholders = {}
    text = expression
    for i in sorted(range(len(levels)), key=lambda k: -len(levels[k])):
        token = f"__level{i}__"
        pattern = r'(?<![\w.])' + re.escape(levels[i]) + r'(?![\w.])'
        text, n = re.subn(pattern, token, text)
        if n:
            placeholders[token] = i

    try:
        tree = ast.parse(text.strip(), mode='eval')
    except SyntaxError as e:
        raise DesignError(f"Invalid contrast '{expression}': {e.msg}") from e

    result = _ContrastEvaluator(placeholders, len(levels), expression).visit(tree)
    if not isinstance(result, np.ndarray):
        raise DesignError(f"Invalid contrast '{expression}': no group terms")
    return result


def make_contrasts(
    levels: Sequence[str],
    contrasts: Optional[Mapping[str, str]] = None,
    **named: str
) -> pd.DataFrame:
    """
    Build a contrast matrix.

    Parameters
    ----------
    levels : Sequence[str]
        Design column names
    contrasts : Mapping[str, str], optional
        Contrast name -> expression
    **named : str
        Further contrasts given as keyword arguments

    Returns
    -------
    pd.DataFrame
        levels x contrasts coefficient matrix, e.g. ``dox_wt='wt.dox - wt.pbs'``
        gives -1 for wt.pbs, +1 for wt.dox and 0 elsewhere
    """
    expressions = dict(contrasts or {})
    expressions.update(named)
    if not expressions:
        raise DesignError("No contrasts given")

    levels = [str(l) for l in levels]
    matrix = pd.DataFrame(
        {name: parse_contrast(expr, levels) for name, expr in expressions.items()},
        index=levels
    )
    matrix.index.name = 'Levels'
    matrix.columns.name = 'Contrasts'

    return matrix
