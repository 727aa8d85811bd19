"""
Loading of the input artifacts handed over by the acquisition step.

- expression CSV: first column is the feature (probe) id, one column per sample
- annotation CSV: sample_id, group, tissue
- symbol mapping CSV: probe_id, gene_symbol
"""

import logging
from pathlib import Path
from typing import Callable, Optional, Tuple

import numpy as np
import pandas as pd

from ..artifacts import ExpressionMatrix, SampleAnnotation
from .errors import InputError

logger = logging.getLogger(__name__)

SymbolLookup = Callable[[str], Optional[str]]


def load_expression_matrix(path: Path) -> ExpressionMatrix:
    """Read a features x samples CSV; duplicate feature rows are averaged."""
    path = Path(path)
    if not path.exists():
        raise InputError(f"expression file not found: {path}", stage="input")

    logger.info(f"Loading {path.name}...")
    df = pd.read_csv(path, index_col=0)
    df.index = df.index.astype(str)
    df.columns = df.columns.astype(str)
    logger.info(f"  -> {df.shape[0]} features, {df.shape[1]} samples")

    if df.index.has_duplicates:
        n_dupes = int(df.index.duplicated().sum())
        logger.warning(f"Collapsing {n_dupes} duplicate feature rows by mean")
        df = df.groupby(level=0, sort=False).mean()

    return ExpressionMatrix(df.astype(float))


def load_sample_annotation(
    path: Path,
    case_label: str = "case",
    control_label: str = "control",
    sample_column: str = "sample_id",
    group_column: str = "group",
    tissue_column: str = "tissue",
) -> SampleAnnotation:
    path = Path(path)
    if not path.exists():
        raise InputError(f"annotation file not found: {path}", stage="input")

    meta = pd.read_csv(path)
    for col in (sample_column, group_column):
        if col not in meta.columns:
            raise InputError(f"annotation column '{col}' missing from {path.name}", stage="input")

    table = pd.DataFrame({
        "group": meta[group_column].astype(str).to_numpy(),
        "tissue": (
            meta[tissue_column].astype(str).to_numpy()
            if tissue_column in meta.columns else np.full(len(meta), "")
        ),
    }, index=meta[sample_column].astype(str).to_numpy())
    table.index.name = "sample_id"

    logger.info(f"Annotation: {len(table)} samples, groups {table['group'].value_counts().to_dict()}")
    return SampleAnnotation(table=table, case_label=case_label, control_label=control_label)


def restrict_to_groups(
    matrix: ExpressionMatrix,
    annotation: SampleAnnotation,
) -> Tuple[ExpressionMatrix, SampleAnnotation]:
    """Keep only samples annotated as case or control, in matrix column order."""
    keep_groups = {annotation.case_label, annotation.control_label}
    annotated = set(annotation.table.index[annotation.table["group"].isin(keep_groups)])
    columns = [s for s in matrix.sample_ids if s in annotated]
    dropped = len(matrix.sample_ids) - len(columns)
    if dropped:
        logger.info(f"Dropping {dropped} samples outside '{annotation.case_label}'/'{annotation.control_label}'")
    return (
        ExpressionMatrix(matrix.values[columns].copy()),
        SampleAnnotation(annotation.table.loc[columns].copy(),
                         annotation.case_label, annotation.control_label),
    )


def load_symbol_lookup(
    path: Path,
    id_column: str = "probe_id",
    symbol_column: str = "gene_symbol",
) -> SymbolLookup:
    """Build a probe -> symbol function from a mapping CSV.

    Empty symbols and unknown probes both map to None.
    """
    mapping = pd.read_csv(path, dtype=str)
    mapping = mapping.dropna(subset=[symbol_column])
    mapping = mapping[mapping[symbol_column].str.strip() != ""]
    table = dict(zip(mapping[id_column], mapping[symbol_column].str.strip()))
    logger.info(f"Loaded {len(table)} probe-to-symbol mappings")
    return table.get
