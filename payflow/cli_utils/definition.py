from __future__ import annotations

from pathlib import Path

import yaml

from payflow.contracts import WorkflowDefinition


def _load_definition_file(path: Path) -> WorkflowDefinition:
    """Parse a YAML or JSON workflow definition file."""
    with open(path) as f:
        data = yaml.safe_load(f) or {}
    return WorkflowDefinition.model_validate(data)


def _format_definition(definition: WorkflowDefinition) -> list[str]:
    lines = [
        f"{definition.id} v{definition.version} ({definition.org_id})"
        + (f" - {definition.name}" if definition.name else "")
    ]
    for node in definition.nodes:
        if node.type == "APPROVAL":
            data = node.data
            lines.append(
                f"  [{data.step_order}] {node.id}: {data.approver_type.value}={data.approver_value}"
            )
        else:
            lines.append(f"  {node.id}: {node.type}")
    return lines
