"""
Base Agent Class for the expression pipeline

All agents inherit from this base class for consistent:
- Input/Output handling
- Logging
- Error handling
- Metadata generation
"""

import json
import logging
from abc import ABC, abstractmethod
from dataclasses import asdict, is_dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Optional

import pandas as pd

from ..artifacts import PipelineContext
from .concurrency import CancellationToken, resolve_workers
from .errors import InputError, NumericalError, PipelineError
from .validation import validate_expression_input


class BaseAgent(ABC):
    """Base class for all pipeline agents."""

    def __init__(
        self,
        agent_name: str,
        output_dir: Path,
        context: PipelineContext,
        token: Optional[CancellationToken] = None
    ):
        self.agent_name = agent_name
        self.output_dir = Path(output_dir)
        self.context = context
        self.config = context.config
        self.token = token or CancellationToken()
        self.n_workers = resolve_workers(self.config.n_workers)

        # Create output directory
        self.output_dir.mkdir(parents=True, exist_ok=True)

        # Setup logging
        self.logger = self._setup_logging()

        # Track execution
        self.start_time: Optional[datetime] = None
        self.end_time: Optional[datetime] = None
        self.success: bool = False
        self.errors: list = []
        self.warnings: list = []
        self.summary: Dict[str, Any] = {}

    def _setup_logging(self) -> logging.Logger:
        """Setup agent-specific logging."""
        logger = logging.getLogger(f"expression_pipeline.{self.agent_name}")
        logger.setLevel(logging.DEBUG)

        # Drop handlers left by a previous run of the same agent
        for handler in list(logger.handlers):
            logger.removeHandler(handler)
            handler.close()

        # File handler
        log_file = self.output_dir / f"log_{self.agent_name}.txt"
        fh = logging.FileHandler(log_file, mode='w', encoding='utf-8')
        fh.setLevel(logging.DEBUG)

        # Console handler
        ch = logging.StreamHandler()
        ch.setLevel(logging.INFO)

        # Formatter
        formatter = logging.Formatter(
            '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
        )
        fh.setFormatter(formatter)
        ch.setFormatter(formatter)

        logger.addHandler(fh)
        logger.addHandler(ch)

        return logger

    def close_logging(self) -> None:
        for handler in list(self.logger.handlers):
            self.logger.removeHandler(handler)
            handler.close()

    def save_csv(self, df: pd.DataFrame, filename: str, index: bool = False, sep: str = ",") -> Path:
        """Save DataFrame to CSV in output directory."""
        filepath = self.output_dir / filename
        df.to_csv(filepath, index=index, sep=sep)
        self.logger.info(f"Saved {filename}: {len(df)} rows")
        return filepath

    def save_json(self, data: Dict, filename: str) -> Path:
        """Save dictionary to JSON in output directory."""
        filepath = self.output_dir / filename
        with open(filepath, 'w', encoding='utf-8') as f:
            json.dump(data, f, indent=2, ensure_ascii=False, default=str)
        self.logger.info(f"Saved {filename}")
        return filepath

    def record_numerical_issue(self, error: NumericalError) -> None:
        """Log a recovered per-item numerical problem."""
        self.warnings.append(str(error))
        self.logger.warning(str(error))

    def check_sample_alignment(self) -> None:
        """Re-check the matrix/annotation contract at the stage boundary."""
        validate_expression_input(self.context.matrix, self.context.annotation, stage=self.agent_name)

    def checkpoint(self) -> None:
        self.token.raise_if_cancelled(self.agent_name)

    def generate_metadata(self, **kwargs) -> Dict[str, Any]:
        """Generate agent metadata."""
        config = asdict(self.config) if is_dataclass(self.config) else dict(self.config)
        metadata = {
            "agent_name": self.agent_name,
            "timestamp": datetime.now().isoformat(),
            "execution_time_seconds": (
                (self.end_time - self.start_time).total_seconds()
                if self.end_time and self.start_time else None
            ),
            "success": self.success,
            "errors": self.errors,
            "warnings": self.warnings,
            "config_used": config,
            **kwargs
        }
        return metadata

    @abstractmethod
    def validate_inputs(self) -> bool:
        """Validate that all required upstream artifacts are present and valid."""
        pass

    @abstractmethod
    def run(self) -> Dict[str, Any]:
        """Execute the agent's main logic. Returns new artifacts by context field name."""
        pass

    @abstractmethod
    def validate_outputs(self, artifacts: Dict[str, Any]) -> bool:
        """Validate that the produced artifacts honour their invariants."""
        pass

    def execute(self) -> Dict[str, Any]:
        """Full execution with validation and error handling."""
        self.start_time = datetime.now()
        self.logger.info(f"{'='*60}")
        self.logger.info(f"Starting {self.agent_name}")
        self.logger.info(f"{'='*60}")

        artifacts: Dict[str, Any] = {}
        try:
            # Validate inputs
            self.logger.info("Validating inputs...")
            if not self.validate_inputs():
                raise InputError("input validation failed", stage=self.agent_name)
            self.logger.info("Input validation passed")

            # Run main logic
            self.logger.info("Running analysis...")
            artifacts = self.run()

            # Validate outputs
            self.logger.info("Validating outputs...")
            if not self.validate_outputs(artifacts):
                raise PipelineError("output validation failed", stage=self.agent_name)
            self.logger.info("Output validation passed")

            self.success = True
            self.logger.info(f"{self.agent_name} completed successfully!")

        except Exception as e:
            self.success = False
            self.errors.append(str(e))
            self.logger.error(f"Error in {self.agent_name}: {e}")
            raise

        finally:
            self.end_time = datetime.now()

            # Save metadata
            metadata = self.generate_metadata(**self.summary)
            self.save_json(metadata, f"meta_{self.agent_name}.json")
            self.close_logging()

        return artifacts
