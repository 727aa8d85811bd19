"""
Agent 2: Ensemble Feature Importance Refinement

Random forest over the full feature matrix; the top-K features by
importance are intersected with the up/down sets of Agent 1.

Input (PipelineContext):
- matrix, annotation
- de_result: From Agent 1

Output:
- importance, candidates: ImportanceRanking and CandidateFeatureSet artifacts
- feature_importance.csv: importance and rank per feature
- candidate_features.csv: refined features with their direction
- importance_model.joblib: fitted forest
- meta_agent2_importance.json: Execution metadata
"""

from typing import Any, Dict, Optional

import joblib
import numpy as np
import pandas as pd
from sklearn.ensemble import RandomForestClassifier
from sklearn.inspection import permutation_importance

from ..artifacts import CandidateFeatureSet, ImportanceRanking
from ..utils.base_agent import BaseAgent


class ImportanceAgent(BaseAgent):
    """Agent for random-forest feature ranking and candidate refinement."""

    def __init__(self, output_dir, context, token=None):
        super().__init__("agent2_importance", output_dir, context, token)
        self.model: Optional[RandomForestClassifier] = None

    def validate_inputs(self) -> bool:
        """Validate matrix, labels and the DE result from Agent 1."""
        self.check_sample_alignment()

        de_result = self.context.de_result
        if de_result is None:
            self.logger.error("DE result from agent1_deg is missing")
            return False

        missing = set(de_result.table.index) ^ set(self.context.matrix.feature_ids)
        if missing:
            self.logger.error(f"DE result and matrix disagree on {len(missing)} features")
            return False

        self.logger.info(
            f"DE calls available: {len(de_result.up_features)} up, "
            f"{len(de_result.down_features)} down"
        )
        return True

    def _fit_forest(self, X: np.ndarray, y: np.ndarray) -> RandomForestClassifier:
        """Grow the forest in batches so a cancelled run stops between batches."""
        n_trees = self.config.n_trees
        model = RandomForestClassifier(
            n_estimators=0,
            max_features="sqrt",
            bootstrap=True,
            oob_score=True,
            warm_start=True,
            random_state=self.config.random_seed,
            n_jobs=self.n_workers,
        )

        grown = 0
        while grown < n_trees:
            grown = min(grown + self.config.tree_batch_size, n_trees)
            model.set_params(n_estimators=grown)
            model.fit(X, y)
            self.logger.debug(f"  {grown}/{n_trees} trees")
            self.checkpoint()

        self.logger.info(f"Forest trained: {n_trees} trees, OOB accuracy {model.oob_score_:.4f}")
        return model

    def _importances(self, model: RandomForestClassifier, X: np.ndarray, y: np.ndarray) -> np.ndarray:
        if self.config.importance_method == "permutation":
            self.logger.info("Computing permutation importance...")
            result = permutation_importance(
                model, X, y,
                n_repeats=5,
                random_state=self.config.random_seed,
                n_jobs=self.n_workers,
            )
            return result.importances_mean
        return model.feature_importances_

    def run(self) -> Dict[str, Any]:
        """Execute ensemble ranking."""
        matrix = self.context.matrix
        X = matrix.as_array().T  # samples x features
        y = self.context.annotation.labels_for(matrix.sample_ids)

        self.logger.info(
            f"Training random forest on {X.shape[0]} samples x {X.shape[1]} features "
            f"({self.config.n_trees} trees, max_features=sqrt)..."
        )
        self.model = self._fit_forest(X, y)
        importance = self._importances(self.model, X, y)

        # Descending importance, ties broken by feature id
        table = pd.DataFrame({
            "feature_id": matrix.feature_ids,
            "importance": importance,
        })
        table = table.sort_values(["importance", "feature_id"], ascending=[False, True])
        table["rank"] = np.arange(1, len(table) + 1)
        table = table.set_index("feature_id")

        ranking = ImportanceRanking(
            table=table,
            oob_score=float(self.model.oob_score_),
            method=self.config.importance_method,
            n_trees=self.config.n_trees,
        )

        top_k = set(ranking.top(self.config.top_k))
        de_result = self.context.de_result
        up = tuple(f for f in de_result.up_features if f in top_k)
        down = tuple(f for f in de_result.down_features if f in top_k)
        candidates = CandidateFeatureSet(
            up=tuple(sorted(up, key=lambda f: table.at[f, "rank"])),
            down=tuple(sorted(down, key=lambda f: table.at[f, "rank"])),
        )

        # Save outputs
        self.save_csv(table.reset_index(), "feature_importance.csv")
        candidate_df = pd.DataFrame({
            "feature_id": candidates.features,
            "direction": ["up"] * len(candidates.up) + ["down"] * len(candidates.down),
        })
        if len(candidate_df):
            candidate_df["importance_rank"] = table.loc[candidate_df["feature_id"], "rank"].to_numpy()
            candidate_df["score"] = de_result.table.loc[candidate_df["feature_id"], "score"].to_numpy()
        self.save_csv(candidate_df, "candidate_features.csv")

        model_path = self.output_dir / "importance_model.joblib"
        joblib.dump(self.model, model_path)
        self.logger.info(f"Saved model to {model_path.name}")

        self.logger.info(f"Importance Refinement Complete:")
        self.logger.info(f"  Top-K: {min(self.config.top_k, len(table))}")
        self.logger.info(f"  Candidates: {len(candidates.up)} up, {len(candidates.down)} down")

        self.summary = {
            "n_trees": self.config.n_trees,
            "importance_method": self.config.importance_method,
            "oob_score": ranking.oob_score,
            "top_k": self.config.top_k,
            "candidate_up": len(candidates.up),
            "candidate_down": len(candidates.down),
            "top_features": ranking.top(10),
        }
        return {"importance": ranking, "candidates": candidates}

    def validate_outputs(self, artifacts: Dict[str, Any]) -> bool:
        """Validate ranking and candidate set."""
        ranking: ImportanceRanking = artifacts["importance"]
        candidates: CandidateFeatureSet = artifacts["candidates"]

        if ranking.table["rank"].duplicated().any():
            self.logger.error("Duplicate ranks in importance table")
            return False

        if set(candidates.up) & set(candidates.down):
            self.logger.error("Feature called both up and down")
            return False

        if len(candidates) == 0:
            self.logger.warning("Candidate set is empty (no overlap between top-K and DE calls)")

        return True
