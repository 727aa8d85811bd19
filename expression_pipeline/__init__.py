"""
Expression Network Analysis Pipeline

A modular pipeline for two-group expression studies with 6 specialized agents:
1. DEG Analysis (SAM-style permutation test)
2. Feature Importance Refinement (random forest)
3. Co-expression Network (WGCNA-style modules)
4. Module-Trait Association
5. Pre-ranked Gene-Set Enrichment (GSEA)
6. Network Export (Cytoscape)

Each agent consumes the artifacts of the previous ones through an immutable
PipelineContext and can be run independently.
"""

from .artifacts import PipelineContext
from .config import PipelineConfig
from .orchestrator import ExpressionPipeline

__version__ = "1.0.0"

__all__ = ["ExpressionPipeline", "PipelineConfig", "PipelineContext"]
