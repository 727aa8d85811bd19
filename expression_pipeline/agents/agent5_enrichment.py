"""
Agent 5: Pre-ranked Gene-Set Enrichment Analysis

Runs GSEA (gseapy prerank) on the signed DE statistic over each configured
MSigDB collection, then applies Benjamini-Hochberg across every set tested
in the run.

Input (PipelineContext):
- de_result: From Agent 1
- candidates: From Agent 2 (only with enrichment_ranking = "candidates")
- gene-set source and optional probe -> symbol lookup (constructor)

Output:
- enrichment: EnrichmentReport artifact
- enrichment_results.csv: sets with padj below the cutoff
- enrichment_skipped.csv: collections not tested and why
- meta_agent5_enrichment.json: Execution metadata
"""

from typing import Any, Dict, List, Optional, Tuple

import gseapy as gp
import numpy as np
import pandas as pd
from statsmodels.stats.multitest import multipletests

from ..artifacts import EnrichmentReport, EnrichmentResult, GeneSet
from ..gene_sets import GeneSetCollection, GeneSetSource
from ..utils.base_agent import BaseAgent
from ..utils.concurrency import run_in_pool
from ..utils.errors import ExternalLookupError, PipelineCancelled
from ..utils.io import SymbolLookup


class EnrichmentAgent(BaseAgent):
    """Agent for pre-ranked enrichment across gene-set collections."""

    def __init__(
        self,
        output_dir,
        context,
        token=None,
        gene_set_source: Optional[GeneSetSource] = None,
        symbol_lookup: Optional[SymbolLookup] = None,
    ):
        super().__init__("agent5_enrichment", output_dir, context, token)
        self.gene_set_source = gene_set_source
        self.symbol_lookup = symbol_lookup
        self.collections: List[GeneSetCollection] = []

    def validate_inputs(self) -> bool:
        """Validate ranked statistic and gene-set source."""
        if self.context.de_result is None:
            self.logger.error("DE result from agent1_deg is missing")
            return False

        if self.config.enrichment_ranking == "candidates" and self.context.candidates is None:
            self.logger.error("enrichment_ranking='candidates' needs agent2_importance output")
            return False

        if self.gene_set_source is None:
            self.logger.error("No gene-set source configured")
            return False

        self.collections = self.config.collections
        self.logger.info(f"Collections: {[c.key for c in self.collections]}")
        return True

    def _ranked_list(self) -> pd.Series:
        """Signed statistic keyed by symbol, sorted descending."""
        scores = self.context.de_result.ranked_scores()
        if self.config.enrichment_ranking == "candidates":
            scores = scores.loc[self.context.candidates.features]

        df = pd.DataFrame({"feature_id": scores.index.astype(str), "score": scores.to_numpy()})
        if self.symbol_lookup is not None:
            # Empty symbols count as unmapped
            df["symbol"] = [self.symbol_lookup(f) or None for f in df["feature_id"]]
            unmapped = int(df["symbol"].isna().sum())
            if unmapped:
                self.logger.info(f"Dropping {unmapped} features without a symbol")
            df = df.dropna(subset=["symbol"])
        else:
            df["symbol"] = df["feature_id"]

        # Duplicate symbols keep the most extreme statistic
        df["abs_score"] = df["score"].abs()
        df = df.sort_values(["abs_score", "feature_id"], ascending=[False, True])
        df = df.drop_duplicates(subset="symbol", keep="first")

        ranked = pd.Series(df["score"].to_numpy(), index=df["symbol"].astype(str).to_numpy(), name="score")
        return ranked.sort_values(ascending=False)

    def _filter_sets(self, gene_sets: List[GeneSet], universe: set) -> Dict[str, List[str]]:
        lo, hi = self.config.enrichment_min_size, self.config.enrichment_max_size
        kept = {}
        for gs in gene_sets:
            overlap = gs.genes & universe
            if lo <= len(overlap) <= hi:
                kept[gs.name] = sorted(gs.genes)
        return kept

    def _test_collection(
        self, collection: GeneSetCollection, ranked: pd.Series
    ) -> Tuple[GeneSetCollection, Optional[pd.DataFrame], Optional[str]]:
        """Returns (collection, results, skip reason); exactly one of the last two is set."""
        try:
            gene_sets = self.gene_set_source(collection.category, collection.subcategory)
        except PipelineCancelled:
            raise
        except ExternalLookupError as e:
            return collection, None, f"source unavailable: {e.detail}"
        except Exception as e:
            self.logger.error(f"Gene-set lookup failed for {collection.key}: {e}")
            return collection, None, f"source unavailable: {type(e).__name__}: {e}"

        if gene_sets is None:
            return collection, None, "source unavailable"
        if not gene_sets:
            return collection, None, "collection is empty"

        universe = set(ranked.index)
        sets = self._filter_sets(gene_sets, universe)
        if not sets:
            return collection, None, (
                f"no sets with {self.config.enrichment_min_size}-"
                f"{self.config.enrichment_max_size} genes in the ranked list"
            )

        self.logger.info(f"  {collection.key}: testing {len(sets)}/{len(gene_sets)} sets")
        try:
            pre_res = gp.prerank(
                rnk=ranked,
                gene_sets=sets,
                min_size=self.config.enrichment_min_size,
                max_size=self.config.enrichment_max_size,
                permutation_num=self.config.enrichment_permutations,
                seed=self.config.random_seed,
                threads=1,
                outdir=None,
                no_plot=True,
                verbose=False,
            )
        except Exception as e:
            self.logger.error(f"GSEA failed for {collection.key}: {e}")
            return collection, None, f"gsea failed: {e}"

        res = pre_res.res2d.copy()
        results = pd.DataFrame({
            "collection": collection.key,
            "term": res["Term"].astype(str).to_numpy(),
            "enrichment_score": pd.to_numeric(res["ES"], errors="coerce").to_numpy(),
            "normalized_score": pd.to_numeric(res["NES"], errors="coerce").to_numpy(),
            "pvalue": pd.to_numeric(res["NOM p-val"], errors="coerce").to_numpy(),
            "fdr_gsea": pd.to_numeric(res["FDR q-val"], errors="coerce").to_numpy(),
            "leading_edge": res["Lead_genes"].fillna("").astype(str).to_numpy(),
        })
        results["set_size"] = [len(set(sets.get(t, ())) & universe) for t in results["term"]]
        return collection, results, None

    def run(self) -> Dict[str, Any]:
        """Execute enrichment over every configured collection."""
        ranked = self._ranked_list()
        self.logger.info(f"Ranked list: {len(ranked)} symbols ({self.config.enrichment_ranking})")

        outcomes = run_in_pool(
            lambda c: self._test_collection(c, ranked),
            self.collections,
            self.n_workers,
            self.token,
            self.agent_name,
        )

        frames = []
        tested: List[str] = []
        skipped: Dict[str, str] = {}
        for collection, results, reason in outcomes:
            if results is None:
                self.logger.warning(f"Skipping {collection.key}: {reason}")
                skipped[collection.key] = reason
                continue
            tested.append(collection.key)
            frames.append(results)

        combined = pd.concat(frames, ignore_index=True) if frames else pd.DataFrame(
            columns=["collection", "term", "enrichment_score", "normalized_score",
                     "pvalue", "fdr_gsea", "leading_edge", "set_size"]
        )
        combined = combined.dropna(subset=["pvalue"])

        # BH across every set tested in the run
        if len(combined):
            combined["padj"] = multipletests(combined["pvalue"].to_numpy(), method="fdr_bh")[1]
        else:
            combined["padj"] = pd.Series(dtype=float)

        significant = combined[combined["padj"] < self.config.enrichment_padj_cutoff]
        significant = significant.sort_values(["padj", "pvalue", "term"])

        results = tuple(
            EnrichmentResult(
                term=row.term,
                enrichment_score=float(row.enrichment_score),
                normalized_score=float(row.normalized_score),
                pvalue=float(row.pvalue),
                padj=float(row.padj),
                fdr_gsea=float(row.fdr_gsea),
                set_size=int(row.set_size),
                collection=row.collection,
                leading_edge=tuple(g for g in row.leading_edge.split(";") if g),
            )
            for row in significant.itertuples(index=False)
        )
        report = EnrichmentReport(results=results, tested=tuple(tested), skipped=skipped)

        # Save outputs
        self.save_csv(report.to_frame(), "enrichment_results.csv")
        self.save_csv(
            pd.DataFrame({"collection": list(skipped), "reason": list(skipped.values())},
                         columns=["collection", "reason"]),
            "enrichment_skipped.csv",
        )

        self.logger.info(f"Enrichment Analysis Complete:")
        self.logger.info(f"  Collections tested: {tested}")
        self.logger.info(f"  Collections skipped: {list(skipped)}")
        self.logger.info(f"  Sets tested: {len(combined)}, significant: {len(results)}")

        self.summary = {
            "ranked_features": len(ranked),
            "collections_tested": tested,
            "collections_skipped": skipped,
            "sets_tested": len(combined),
            "significant_sets": len(results),
            "padj_cutoff": self.config.enrichment_padj_cutoff,
        }
        return {"enrichment": report}

    def validate_outputs(self, artifacts: Dict[str, Any]) -> bool:
        """Validate enrichment report."""
        report: EnrichmentReport = artifacts["enrichment"]

        if set(report.tested) & set(report.skipped):
            self.logger.error("Collection reported as both tested and skipped")
            return False

        for r in report.results:
            if not 0.0 <= r.padj <= 1.0 or r.padj < r.pvalue - 1e-12:
                self.logger.error(f"Invalid adjusted p-value for {r.term}")
                return False

        if not report.tested:
            self.logger.warning("No collection could be tested")
        return True
