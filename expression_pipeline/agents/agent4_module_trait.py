"""
Agent 4: Module-Trait Association

Summarizes each co-expression module by its eigengene and correlates it
with the phenotype.

Input (PipelineContext):
- matrix, annotation
- network, partition: From Agent 3

Output:
- trait: ModuleTraitResult artifact
- module_trait.csv: correlation / p-value / flag per module
- module_membership.csv: kME and gene significance per feature
- hub_features.csv: top features by kME per module
- meta_agent4_module_trait.json: Execution metadata
"""

from typing import Any, Dict, List, Sequence, Tuple

import numpy as np
import pandas as pd
from scipy import stats

from ..artifacts import UNASSIGNED, ModuleTraitAssociation, ModuleTraitResult
from ..utils.base_agent import BaseAgent
from ..utils.errors import NumericalError


def module_eigengene(values: np.ndarray) -> Tuple[np.ndarray, float]:
    """First principal component of z-scored module expression.

    ``values`` is features x samples. Returns the eigengene (unit variance,
    one value per sample, sign aligned with the module's average z-score)
    and the fraction of variance it explains.
    """
    sd = values.std(axis=1, ddof=1, keepdims=True)
    if not np.all(np.isfinite(sd)) or np.any(sd == 0):
        raise NumericalError("module contains zero-variance features")
    z = (values - values.mean(axis=1, keepdims=True)) / sd

    try:
        _, s, vt = np.linalg.svd(z, full_matrices=False)
    except np.linalg.LinAlgError as e:
        raise NumericalError(f"SVD did not converge: {e}") from e

    pc = vt[0]
    if not np.all(np.isfinite(pc)) or pc.std() == 0:
        raise NumericalError("degenerate eigengene")

    average = z.mean(axis=0)
    if np.dot(pc - pc.mean(), average - average.mean()) < 0:
        pc = -pc

    eigengene = (pc - pc.mean()) / pc.std(ddof=1)
    variance_explained = float(s[0] ** 2 / np.sum(s ** 2))
    return eigengene, variance_explained


def correlation_pvalue(r: np.ndarray, n: int) -> np.ndarray:
    """Two-sided Student-t p-value for Pearson r with n - 2 degrees of freedom."""
    r = np.clip(np.asarray(r, dtype=float), -1.0, 1.0)
    with np.errstate(divide="ignore", invalid="ignore"):
        t = r * np.sqrt((n - 2) / (1.0 - r ** 2))
    return 2 * stats.t.sf(np.abs(t), df=n - 2)


def correlate_rows(rows: np.ndarray, target: np.ndarray) -> np.ndarray:
    """Pearson correlation of each row with ``target``."""
    rc = rows - rows.mean(axis=1, keepdims=True)
    tc = target - target.mean()
    denom = np.sqrt((rc ** 2).sum(axis=1) * (tc ** 2).sum())
    with np.errstate(divide="ignore", invalid="ignore"):
        return np.where(denom > 0, rc @ tc / denom, np.nan)


class ModuleTraitAgent(BaseAgent):
    """Agent for eigengene / phenotype correlation."""

    def __init__(self, output_dir, context, token=None, phenotype: Sequence[float] = None):
        super().__init__("agent4_module_trait", output_dir, context, token)
        # Defaults to the binary case/control vector; continuous traits are accepted
        self.phenotype = phenotype

    def validate_inputs(self) -> bool:
        """Validate modules from Agent 3."""
        self.check_sample_alignment()

        if self.context.partition is None:
            self.logger.error("Module partition from agent3_network is missing")
            return False

        n_samples = len(self.context.matrix.sample_ids)
        if n_samples < 3:
            self.logger.error("Need at least 3 samples for a t-based correlation test")
            return False

        if self.phenotype is not None and len(self.phenotype) != n_samples:
            self.logger.error(f"Phenotype has {len(self.phenotype)} values for {n_samples} samples")
            return False

        self.logger.info(f"Modules to test: {self.context.partition.labels}")
        return True

    def _trait_vector(self) -> np.ndarray:
        if self.phenotype is not None:
            return np.asarray(self.phenotype, dtype=float)
        matrix = self.context.matrix
        return self.context.annotation.labels_for(matrix.sample_ids).astype(float)

    def run(self) -> Dict[str, Any]:
        """Execute module-trait correlation."""
        matrix = self.context.matrix
        partition = self.context.partition
        trait = self._trait_vector()
        n = len(trait)

        associations: List[ModuleTraitAssociation] = []
        membership_rows = []
        hub_features: Dict[str, Tuple[str, ...]] = {}

        for module in partition.modules:
            if module.label == UNASSIGNED:
                continue

            values = matrix.values.loc[list(module.features)].to_numpy(dtype=float)
            try:
                eigengene, _ = module_eigengene(values)
            except NumericalError as e:
                self.record_numerical_issue(
                    NumericalError(f"module {module.label} excluded: {e.detail}", stage=self.agent_name)
                )
                continue

            r = float(correlate_rows(eigengene[None, :], trait)[0])
            if not np.isfinite(r):
                self.record_numerical_issue(
                    NumericalError(f"module {module.label} excluded: undefined correlation", stage=self.agent_name)
                )
                continue
            p = float(correlation_pvalue(r, n))

            associations.append(ModuleTraitAssociation(
                label=module.label,
                correlation=r,
                pvalue=p,
                significant=p < self.config.trait_pvalue_cutoff,
                n_features=module.size,
            ))

            kme = correlate_rows(values, eigengene)
            kme_p = correlation_pvalue(kme, n)
            gs = correlate_rows(values, trait)
            module_df = pd.DataFrame({
                "feature_id": list(module.features),
                "module": module.label,
                "kME": kme,
                "kME_pvalue": kme_p,
                "gene_significance": gs,
                "gs_pvalue": correlation_pvalue(gs, n),
            }).sort_values("kME", ascending=False)
            membership_rows.append(module_df)

            n_hubs = self.config.hub_features_per_module
            hub_features[module.label] = tuple(module_df["feature_id"].head(n_hubs))

            self.logger.info(
                f"  {module.label}: {module.size} features, r = {r:+.3f}, p = {p:.3g}"
                + (" *" if p < self.config.trait_pvalue_cutoff else "")
            )

        membership = (
            pd.concat(membership_rows, ignore_index=True) if membership_rows
            else pd.DataFrame(columns=["feature_id", "module", "kME", "kME_pvalue",
                                       "gene_significance", "gs_pvalue"])
        )
        result = ModuleTraitResult(
            associations=tuple(associations),
            membership=membership,
            hub_features=hub_features,
        )

        # Save outputs
        self.save_csv(result.to_frame(), "module_trait.csv")
        self.save_csv(membership, "module_membership.csv")
        hub_df = pd.DataFrame(
            [{"module": label, "rank": i + 1, "feature_id": f}
             for label, feats in hub_features.items() for i, f in enumerate(feats)],
            columns=["module", "rank", "feature_id"],
        )
        self.save_csv(hub_df, "hub_features.csv")

        significant = [a.label for a in associations if a.significant]
        self.logger.info(f"Module-Trait Analysis Complete:")
        self.logger.info(f"  Modules tested: {len(associations)}")
        self.logger.info(f"  Phenotype-associated: {significant}")

        self.summary = {
            "modules_tested": len(associations),
            "significant_modules": significant,
            "pvalue_cutoff": self.config.trait_pvalue_cutoff,
        }
        return {"trait": result}

    def validate_outputs(self, artifacts: Dict[str, Any]) -> bool:
        """Validate association table."""
        result: ModuleTraitResult = artifacts["trait"]
        for a in result.associations:
            if a.label == UNASSIGNED:
                self.logger.error("Unassigned features must not be tested")
                return False
            if not (-1.0 <= a.correlation <= 1.0 and 0.0 <= a.pvalue <= 1.0):
                self.logger.error(f"Invalid statistics for module {a.label}")
                return False
        return True
