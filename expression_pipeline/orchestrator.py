"""
Expression Pipeline Orchestrator

Coordinates the execution of the expression analysis agents.

Usage:
    from expression_pipeline import ExpressionPipeline, PipelineConfig

    pipeline = ExpressionPipeline(
        output_dir="./results",
        config=PipelineConfig(case_label="tumor", control_label="normal"),
        gene_set_source=GmtDirectorySource("./gmt"),
    )

    # Run full pipeline
    context = pipeline.run(matrix, annotation)

    # Or stop after a given agent
    context = pipeline.run(matrix, annotation, stop_after="agent3_network")

Pipeline:
=========
DEG (permutation test) -> Importance (random forest) -> Network (WGCNA-style)
-> Module-Trait -> Enrichment (GSEA prerank) -> Export (Cytoscape)

Stages run strictly in order. Each agent receives the immutable
PipelineContext built so far and returns new artifacts; a stage-fatal error
stops the run, is recorded in pipeline_summary.json and is re-raised.
"""

import json
import logging
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import numpy as np
import pandas as pd

from .agents import (
    DEGAgent,
    EnrichmentAgent,
    ExportAgent,
    ImportanceAgent,
    ModuleTraitAgent,
    NetworkAgent,
)
from .artifacts import ExpressionMatrix, PipelineContext, SampleAnnotation
from .config import PipelineConfig
from .gene_sets import GeneSetSource, GmtDirectorySource
from .utils.concurrency import CancellationToken
from .utils.io import (
    SymbolLookup,
    load_expression_matrix,
    load_sample_annotation,
    load_symbol_lookup,
    restrict_to_groups,
)
from .utils.validation import validate_expression_input


class ExpressionPipeline:
    """Orchestrator for the expression analysis pipeline."""

    AGENT_ORDER = [
        "agent1_deg",
        "agent2_importance",
        "agent3_network",
        "agent4_module_trait",
        "agent5_enrichment",
        "agent6_export",
    ]

    AGENT_CLASSES = {
        "agent1_deg": DEGAgent,
        "agent2_importance": ImportanceAgent,
        "agent3_network": NetworkAgent,
        "agent4_module_trait": ModuleTraitAgent,
        "agent5_enrichment": EnrichmentAgent,
        "agent6_export": ExportAgent,
    }

    def __init__(
        self,
        output_dir: Path,
        config: Optional[Union[PipelineConfig, Dict[str, Any]]] = None,
        gene_set_source: Optional[GeneSetSource] = None,
        symbol_lookup: Optional[SymbolLookup] = None,
    ):
        self.output_dir = Path(output_dir)
        if isinstance(config, PipelineConfig):
            self.config = config
        else:
            self.config = PipelineConfig.from_dict(config or {})
        self.gene_set_source = gene_set_source
        self.symbol_lookup = symbol_lookup
        self.token: Optional[CancellationToken] = None

        # Create output directory with timestamp
        timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        self.run_dir = self.output_dir / f"run_{timestamp}"
        self.run_dir.mkdir(parents=True, exist_ok=True)

        self.logger = self._setup_logging()

        # Track execution state
        self.execution_state: Dict[str, Any] = {
            "run_id": timestamp,
            "start_time": None,
            "end_time": None,
            "completed_agents": [],
            "skipped_agents": [],
            "failed_agents": [],
            "agent_results": {},
        }

    def _setup_logging(self) -> logging.Logger:
        """Setup pipeline-level logging."""
        logger = logging.getLogger("expression_pipeline.pipeline")
        logger.setLevel(logging.DEBUG)

        for handler in list(logger.handlers):
            logger.removeHandler(handler)
            handler.close()

        # File handler
        log_file = self.run_dir / "pipeline.log"
        fh = logging.FileHandler(log_file, mode='w', encoding='utf-8')
        fh.setLevel(logging.DEBUG)

        # Console handler
        ch = logging.StreamHandler()
        ch.setLevel(logging.INFO)

        formatter = logging.Formatter(
            '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
        )
        fh.setFormatter(formatter)
        ch.setFormatter(formatter)

        logger.addHandler(fh)
        logger.addHandler(ch)

        return logger

    def cancel(self) -> None:
        """Request cooperative cancellation of the running pipeline."""
        if self.token is not None:
            self.token.cancel()

    def _agent_kwargs(self, agent_name: str) -> Dict[str, Any]:
        if agent_name == "agent5_enrichment":
            return {"gene_set_source": self.gene_set_source, "symbol_lookup": self.symbol_lookup}
        if agent_name == "agent6_export":
            return {"symbol_lookup": self.symbol_lookup}
        return {}

    def run_agent(self, agent_name: str, context: PipelineContext) -> PipelineContext:
        """Run a single agent and return the context extended with its artifacts."""
        if agent_name not in self.AGENT_CLASSES:
            raise ValueError(f"Unknown agent: {agent_name}")

        self.logger.info(f"{'='*60}")
        self.logger.info(f"Running {agent_name}")
        self.logger.info(f"{'='*60}")

        AgentClass = self.AGENT_CLASSES[agent_name]
        agent = AgentClass(
            output_dir=self.run_dir / agent_name,
            context=context,
            token=self.token,
            **self._agent_kwargs(agent_name),
        )

        try:
            artifacts = agent.execute()
        except Exception as e:
            self.logger.error(f"Agent {agent_name} failed: {e}")
            self.execution_state["failed_agents"].append(agent_name)
            raise

        self.execution_state["completed_agents"].append(agent_name)
        self.execution_state["agent_results"][agent_name] = agent.summary
        return context.with_artifacts(**artifacts)

    def run(
        self,
        matrix: ExpressionMatrix,
        annotation: SampleAnnotation,
        stop_after: Optional[str] = None,
    ) -> PipelineContext:
        """Run the full pipeline or until a specific agent."""
        self.execution_state["start_time"] = datetime.now().isoformat()
        self.logger.info("Starting Expression Pipeline")
        self.logger.info(f"Run directory: {self.run_dir}")

        try:
            self.config.validate()
            validate_expression_input(matrix, annotation, stage="input")
            self.token = CancellationToken(self.config.timeout_seconds)

            agents_to_run = self.AGENT_ORDER
            if stop_after:
                if stop_after not in self.AGENT_ORDER:
                    raise ValueError(f"Unknown agent: {stop_after}")
                agents_to_run = self.AGENT_ORDER[:self.AGENT_ORDER.index(stop_after) + 1]
            self.logger.info(f"Agents to run: {agents_to_run}")

            context = PipelineContext(config=self.config, matrix=matrix, annotation=annotation)
            for agent_name in agents_to_run:
                if agent_name == "agent5_enrichment" and self.gene_set_source is None:
                    self.logger.warning("No gene-set source configured; skipping enrichment")
                    self.execution_state["skipped_agents"].append(agent_name)
                    continue
                self.token.raise_if_cancelled(agent_name)
                context = self.run_agent(agent_name, context)

        except Exception as e:
            self.logger.error(f"Pipeline stopped: {e}")
            self.execution_state["error"] = str(e)
            raise

        finally:
            self.execution_state["end_time"] = datetime.now().isoformat()
            self._save_execution_state()

            self.logger.info(f"{'='*60}")
            self.logger.info("Pipeline Complete")
            self.logger.info(f"Completed: {len(self.execution_state['completed_agents'])} agents")
            self.logger.info(f"Failed: {len(self.execution_state['failed_agents'])} agents")
            self.logger.info(f"Results: {self.run_dir}")
            self.logger.info(f"{'='*60}")

        return context

    def _save_execution_state(self) -> None:
        """Save execution state to JSON."""
        self.execution_state["config"] = self.config.to_dict()
        state_file = self.run_dir / "pipeline_summary.json"
        with open(state_file, 'w', encoding='utf-8') as f:
            json.dump(self.execution_state, f, indent=2, default=str)


def create_sample_data(
    output_dir: Path,
    n_features: int = 2000,
    n_case: int = 12,
    n_control: int = 12,
    n_shifted: int = 60,
) -> None:
    """Create sample data for trying out the pipeline.

    Writes expression.csv (log-scale, two co-regulated blocks among the
    shifted features), annotation.csv, symbols.csv and a small H.gmt.
    """
    output_dir = Path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)

    rng = np.random.default_rng(42)
    n_samples = n_case + n_control
    samples = [f"CASE_{i+1}" for i in range(n_case)] + [f"CTRL_{i+1}" for i in range(n_control)]
    probes = [f"PROBE{i:05d}" for i in range(n_features)]

    values = rng.normal(8.0, 1.0, size=(n_features, n_samples))

    # Two latent programs drive the shifted features
    half = n_shifted // 2
    for start, sign in ((0, 1.0), (half, -1.0)):
        factor = rng.normal(size=n_samples)
        rows = slice(start, start + half)
        values[rows] = 8.0 + 0.8 * factor + 0.5 * rng.normal(size=(half, n_samples))
        values[rows, :n_case] += sign * 2.0

    pd.DataFrame(values, index=pd.Index(probes, name="probe_id"), columns=samples).to_csv(
        output_dir / "expression.csv"
    )
    pd.DataFrame({
        "sample_id": samples,
        "group": ["case"] * n_case + ["control"] * n_control,
        "tissue": "sample_tissue",
    }).to_csv(output_dir / "annotation.csv", index=False)

    symbols = [f"GENE{i}" for i in range(n_features)]
    pd.DataFrame({"probe_id": probes, "gene_symbol": symbols}).to_csv(output_dir / "symbols.csv", index=False)

    with open(output_dir / "H.gmt", "w", encoding="utf-8") as f:
        f.write("\t".join(["UP_PROGRAM", "na"] + symbols[:half]) + "\n")
        f.write("\t".join(["DOWN_PROGRAM", "na"] + symbols[half:n_shifted]) + "\n")
        f.write("\t".join(["BACKGROUND", "na"] + symbols[n_shifted:n_shifted + 50]) + "\n")

    print(f"Sample data created in {output_dir}")
    print(f"  - expression.csv: {n_features} features x {n_samples} samples")
    print(f"  - annotation.csv: {n_case} case / {n_control} control")
    print(f"  - symbols.csv, H.gmt")


def main(argv: Optional[List[str]] = None) -> int:
    import argparse

    parser = argparse.ArgumentParser(description="Expression Network Analysis Pipeline")
    parser.add_argument("--expression", "-e", help="Expression matrix CSV (features x samples)")
    parser.add_argument("--annotation", "-a", help="Sample annotation CSV (sample_id, group, tissue)")
    parser.add_argument("--output", "-o", required=True, help="Output directory")
    parser.add_argument("--config", "-c", help="JSON file with PipelineConfig fields")
    parser.add_argument("--gmt-dir", help="Directory of <CATEGORY>_<SUB>.gmt gene-set files")
    parser.add_argument("--symbols", help="probe_id -> gene_symbol mapping CSV")
    parser.add_argument("--timeout", type=float, help="Abort the run after this many seconds")
    parser.add_argument("--stop-after", choices=ExpressionPipeline.AGENT_ORDER, help="Stop after this agent")
    parser.add_argument("--create-sample", action="store_true", help="Create sample data in --output")

    args = parser.parse_args(argv)

    if args.create_sample:
        create_sample_data(Path(args.output))
        return 0

    if not args.expression or not args.annotation:
        parser.error("--expression and --annotation are required")

    config = PipelineConfig.from_json(Path(args.config)) if args.config else PipelineConfig()
    if args.timeout is not None:
        config.timeout_seconds = args.timeout

    matrix = load_expression_matrix(Path(args.expression))
    annotation = load_sample_annotation(
        Path(args.annotation),
        case_label=config.case_label,
        control_label=config.control_label,
    )
    matrix, annotation = restrict_to_groups(matrix, annotation)

    pipeline = ExpressionPipeline(
        output_dir=Path(args.output),
        config=config,
        gene_set_source=GmtDirectorySource(Path(args.gmt_dir)) if args.gmt_dir else None,
        symbol_lookup=load_symbol_lookup(Path(args.symbols)) if args.symbols else None,
    )
    pipeline.run(matrix, annotation, stop_after=args.stop_after)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
