"""
Input contract checks.

Run once before stage 1 and again at every stage boundary so that the
sample-to-group mapping travels with the matrix instead of being implied
by column positions.
"""

from typing import Optional

import numpy as np

from ..artifacts import ExpressionMatrix, SampleAnnotation
from .errors import InputError


def validate_expression_input(
    matrix: ExpressionMatrix,
    annotation: SampleAnnotation,
    stage: Optional[str] = None,
) -> None:
    """Raise InputError if the matrix/annotation pair breaks its contract."""
    stage = stage or "input"
    values = matrix.values

    if values.shape[0] == 0 or values.shape[1] == 0:
        raise InputError("expression matrix is empty", stage=stage)

    if values.index.has_duplicates:
        dupes = values.index[values.index.duplicated()].unique().tolist()
        raise InputError(f"duplicate feature ids: {dupes[:5]}", stage=stage)

    if values.columns.has_duplicates:
        raise InputError("duplicate sample ids in matrix columns", stage=stage)

    try:
        numeric = values.to_numpy(dtype=float)
    except (TypeError, ValueError) as e:
        raise InputError(f"matrix contains non-numeric values: {e}", stage=stage) from e

    if not np.isfinite(numeric).all():
        bad_rows = values.index[~np.isfinite(numeric).all(axis=1)].tolist()
        raise InputError(
            f"{len(bad_rows)} features contain non-finite values (e.g. {bad_rows[:5]})",
            stage=stage,
        )

    table = annotation.table
    if "group" not in table.columns:
        raise InputError("sample annotation has no 'group' column", stage=stage)

    if table.index.has_duplicates:
        raise InputError("sample annotated more than once", stage=stage)

    missing = [s for s in matrix.sample_ids if s not in table.index]
    if missing:
        raise InputError(f"samples without annotation: {missing[:5]}", stage=stage)

    groups = table.loc[matrix.sample_ids, "group"]
    unknown = set(groups) - {annotation.case_label, annotation.control_label}
    if unknown:
        raise InputError(
            f"unexpected group labels {sorted(map(str, unknown))}; expected "
            f"'{annotation.case_label}'/'{annotation.control_label}'",
            stage=stage,
        )

    for label in (annotation.case_label, annotation.control_label):
        n = int((groups == label).sum())
        if n < 2:
            raise InputError(f"group '{label}' has {n} samples; at least 2 required", stage=stage)
