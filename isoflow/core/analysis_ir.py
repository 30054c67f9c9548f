"""
Intermediate Representation (IR) for reproducible analysis operations.

Services emit an :class:`AnalysisStep` next to every result. The steps are
collected on the analysis context and can be exported as JSON, giving a
replayable record of each load, fit and test that produced a results table.
"""

import ast
import json
import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Union

logger = logging.getLogger(__name__)


@dataclass
class AnalysisStep:
    """
    Intermediate Representation for one pipeline operation.

    Attributes:
        operation: Fully-qualified operation name (e.g., "isoflow.fit")
        tool_name: Service method that produced the step
        description: Human-readable description
        library: Library doing the heavy lifting (e.g., "numpy", "requests")
        code_template: Jinja2 template with {{ variable }} placeholders
        imports: Import statements needed by the rendered code
        parameters: Actual parameter values used in this execution
        input_entities: Input data references
        output_entities: Output data references
        execution_context: Versions, timestamps and similar facts

    Example:
        >>> ir = AnalysisStep(
        ...     operation="isoflow.fit",
        ...     tool_name="fit",
        ...     description="Fit model 'full'",
        ...     library="numpy",
        ...     code_template="ctx = fit(ctx, {{ formula | tojson }}, {{ fit_name | tojson }})",
        ...     imports=["from isoflow.api import fit"],
        ...     parameters={"formula": "~sex + treatment", "fit_name": "full"},
        ... )
    """

    operation: str
    tool_name: str
    description: str

    library: str
    code_template: str
    imports: List[str]

    parameters: Dict[str, Any]

    input_entities: List[str] = field(default_factory=list)
    output_entities: List[str] = field(default_factory=list)

    execution_context: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        self.execution_context.setdefault("timestamp", datetime.now().isoformat())

    def to_dict(self) -> Dict[str, Any]:
        """
        Serialize to JSON-compatible dictionary.

        Raises:
            TypeError: If a parameter value is not JSON-serializable
        """
        data = asdict(self)
        try:
            json.dumps(data["parameters"])
        except TypeError as e:
            raise TypeError(
                f"Parameters of {self.operation} are not JSON-serializable: {e}"
            ) from e
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AnalysisStep":
        """
        Deserialize from dictionary.

        Raises:
            ValueError: If required fields are missing
        """
        required_fields = [
            "operation",
            "tool_name",
            "description",
            "library",
            "code_template",
            "imports",
            "parameters",
        ]
        missing_fields = [name for name in required_fields if name not in data]
        if missing_fields:
            raise ValueError(f"Missing required fields: {missing_fields}")

        return cls(**data)

    def render(self, **override_params) -> str:
        """
        Render code template with parameters.

        Raises:
            ValueError: If template rendering fails
        """
        try:
            from jinja2 import Template

            params = {**self.parameters, **override_params}
            return Template(self.code_template).render(**params)
        except Exception as e:
            logger.error(f"Failed to render template for {self.operation}: {e}")
            raise ValueError(f"Template rendering failed: {e}") from e

    def validate_rendered_code(self, **override_params) -> bool:
        """
        Render and validate generated code syntax.

        Raises:
            SyntaxError: If generated code is invalid
        """
        code = self.render(**override_params)
        try:
            ast.parse(code)
            return True
        except SyntaxError as e:
            logger.error(f"Invalid generated code for {self.operation}: {e}")
            raise

    def __repr__(self) -> str:
        return (
            f"AnalysisStep(operation={self.operation}, "
            f"tool={self.tool_name}, "
            f"params={len(self.parameters)})"
        )


def extract_unique_imports(irs: List[AnalysisStep]) -> List[str]:
    """Deduplicate imports across steps, keeping first-seen order."""
    seen: Dict[str, None] = {}
    for ir in irs:
        for statement in ir.imports:
            seen.setdefault(statement, None)
    return list(seen)


def render_script(irs: List[AnalysisStep]) -> str:
    """Render a list of steps into a single replayable Python script."""
    lines = extract_unique_imports(irs)
    lines.append("")
    for ir in irs:
        lines.append(f"# {ir.description}")
        lines.append(ir.render())
    return "\n".join(lines) + "\n"


def export_provenance(irs: List[AnalysisStep], path: Union[str, Path]) -> Path:
    """
    Write steps plus their rendered script to a JSON file.

    Args:
        irs: Steps in execution order
        path: Output JSON path

    Returns:
        Path: The written file
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    payload = {
        "steps": [ir.to_dict() for ir in irs],
        "script": render_script(irs),
    }
    with open(path, "w", encoding="utf-8") as fh:
        json.dump(payload, fh, indent=2, default=str)
    logger.info(f"Wrote provenance for {len(irs)} steps to {path}")
    return path
