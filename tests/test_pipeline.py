"""
Expression Pipeline - Orchestrator Tests
"""
import json

import numpy as np
import pandas as pd
import pytest

from conftest import make_annotation, make_matrix
from expression_pipeline import ExpressionPipeline, PipelineConfig
from expression_pipeline.artifacts import ExpressionMatrix
from expression_pipeline.gene_sets import MappingGeneSetSource
from expression_pipeline.orchestrator import create_sample_data, main
from expression_pipeline.utils.errors import ConfigurationError, InputError


@pytest.fixture
def pipeline_dataset():
    """120 features x 20 samples with two co-regulated shifted blocks."""
    rng = np.random.default_rng(8)
    annotation = make_annotation(10, 10)
    values = rng.normal(8.0, 1.0, size=(120, 20))
    for rows, sign in ((slice(0, 12), 1.0), (slice(12, 24), -1.0)):
        factor = rng.normal(size=20)
        values[rows] = 8.0 + factor + 0.3 * rng.normal(size=(12, 20))
        values[rows, :10] += sign * 4.0
    return make_matrix(values, annotation), annotation


@pytest.fixture
def pipeline_config():
    return PipelineConfig(
        n_workers=2,
        n_permutations=50,
        delta_grid_size=10,
        n_trees=40,
        tree_batch_size=20,
        top_k=40,
        min_module_size=5,
        gene_set_collections=["H", "C2:CP:KEGG"],
        enrichment_min_size=3,
        enrichment_permutations=50,
    )


def gene_sets(matrix):
    features = matrix.feature_ids
    return MappingGeneSetSource({"H": {"BLOCK_UP": features[:12], "BLOCK_DOWN": features[12:24]}})


class TestExpressionPipeline:
    """Test cases for the ExpressionPipeline orchestrator."""

    def test_full_run(self, pipeline_dataset, pipeline_config, tmp_path):
        matrix, annotation = pipeline_dataset
        pipeline = ExpressionPipeline(tmp_path, config=pipeline_config, gene_set_source=gene_sets(matrix))
        context = pipeline.run(matrix, annotation)

        assert context.de_result is not None
        assert context.partition is not None
        assert context.trait is not None
        assert context.enrichment.tested == ("H",)
        assert "C2:CP:KEGG" in context.enrichment.skipped
        assert set(context.exports) == {"edges", "nodes"}

        with open(pipeline.run_dir / "pipeline_summary.json") as f:
            summary = json.load(f)
        assert summary["completed_agents"] == ExpressionPipeline.AGENT_ORDER
        assert summary["failed_agents"] == []
        assert (pipeline.run_dir / "pipeline.log").exists()
        for agent_name in ExpressionPipeline.AGENT_ORDER:
            assert (pipeline.run_dir / agent_name / f"meta_{agent_name}.json").exists()

    def test_upstream_artifacts_untouched(self, pipeline_dataset, pipeline_config, tmp_path):
        matrix, annotation = pipeline_dataset
        before = matrix.values.copy()
        context = ExpressionPipeline(tmp_path, config=pipeline_config).run(
            matrix, annotation, stop_after="agent3_network"
        )

        assert context.matrix is matrix
        assert matrix.values.equals(before)
        assert context.trait is None

    def test_enrichment_skipped_without_source(self, pipeline_dataset, pipeline_config, tmp_path):
        matrix, annotation = pipeline_dataset
        pipeline = ExpressionPipeline(tmp_path, config=pipeline_config)
        context = pipeline.run(matrix, annotation)

        assert context.enrichment is None
        assert pipeline.execution_state["skipped_agents"] == ["agent5_enrichment"]
        assert context.exports is not None

    def test_invalid_input_recorded(self, pipeline_config, tmp_path):
        annotation = make_annotation(1, 5)
        matrix = make_matrix(np.random.default_rng(0).normal(size=(20, 6)), annotation)
        pipeline = ExpressionPipeline(tmp_path, config=pipeline_config)

        with pytest.raises(InputError):
            pipeline.run(matrix, annotation)

        with open(pipeline.run_dir / "pipeline_summary.json") as f:
            summary = json.load(f)
        assert "InputError" in summary["error"]
        assert summary["completed_agents"] == []

    def test_invalid_config_fails_before_stage_one(self, pipeline_dataset, tmp_path):
        matrix, annotation = pipeline_dataset
        pipeline = ExpressionPipeline(tmp_path, config={"gene_set_collections": ["C2:XX"]})

        with pytest.raises(ConfigurationError):
            pipeline.run(matrix, annotation)
        assert not (pipeline.run_dir / "agent1_deg").exists()

    def test_integer_feature_ids(self, pipeline_dataset, pipeline_config, tmp_path):
        matrix, annotation = pipeline_dataset
        values = pd.DataFrame(matrix.values.to_numpy(), columns=matrix.sample_ids)
        context = ExpressionPipeline(tmp_path, config=pipeline_config).run(
            ExpressionMatrix(values), annotation, stop_after="agent3_network"
        )

        assert context.partition is not None
        assert set(context.partition.assignment.index) == set(context.candidates.features)
        assert all(f.isdigit() for f in context.network.feature_ids)

    def test_failing_stage_recorded(self, pipeline_dataset, pipeline_config, tmp_path):
        matrix, annotation = pipeline_dataset
        pipeline_config.top_k = 1
        pipeline = ExpressionPipeline(tmp_path, config=pipeline_config)

        with pytest.raises(InputError):
            pipeline.run(matrix, annotation)
        assert pipeline.execution_state["failed_agents"] == ["agent3_network"]
        assert pipeline.execution_state["completed_agents"] == ["agent1_deg", "agent2_importance"]


class TestCommandLine:
    """Test cases for the CLI entry point."""

    def test_sample_data_round_trip(self, tmp_path):
        data_dir = tmp_path / "data"
        assert main(["--create-sample", "--output", str(data_dir)]) == 0
        for name in ["expression.csv", "annotation.csv", "symbols.csv", "H.gmt"]:
            assert (data_dir / name).exists()

        config = tmp_path / "config.json"
        with open(config, "w") as f:
            json.dump({
                "n_permutations": 30,
                "n_trees": 30,
                "top_k": 100,
                "min_module_size": 5,
                "gene_set_collections": ["H"],
                "enrichment_permutations": 30,
            }, f)

        out = tmp_path / "results"
        assert main([
            "--expression", str(data_dir / "expression.csv"),
            "--annotation", str(data_dir / "annotation.csv"),
            "--symbols", str(data_dir / "symbols.csv"),
            "--gmt-dir", str(data_dir),
            "--config", str(config),
            "--output", str(out),
            "--stop-after", "agent2_importance",
        ]) == 0
        assert len(list(out.glob("run_*/agent2_importance/feature_importance.csv"))) == 1

    def test_create_sample_defaults(self, tmp_path):
        create_sample_data(tmp_path, n_features=100, n_shifted=20)
        assert (tmp_path / "expression.csv").exists()
