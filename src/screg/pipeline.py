"""
Registration orchestrator.

Provisions the derivatives tree, runs the ordered steps with their file
contracts checked, and writes a QC record next to the session outputs.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from jsonschema import Draft7Validator

from screg.checkpoint import Checkpoint, CropBounds, CropBoundsError, ViewerError
from screg.commands import CommandRunner
from screg.config import RegistrationConfig, resolve_pam50_dir
from screg.layout import ProvisioningError, SessionLayout, layout_for, provision_directories
from screg.steps import Step, StepContext, StepFailure, build_steps
from screg.subtask import (
    ExecutionContext,
    set_execution_context,
    should_exit_after_subtask,
    subtask_context,
)

STEP_ORDER = ("A.1", "A.2", "A.3", "A.4", "A.5", "A.6", "A.7", "A.8", "F.1", "F.2", "F.3", "F.4", "F.5", "F.6")

QC_SCHEMA_PATH = Path(__file__).parent / "schemas" / "qc_sc_registration.json"


class PipelineError(RuntimeError):
    """Raised when a step cannot start, fails, or leaves an output missing."""

    def __init__(self, message: str, step_id: Optional[str] = None):
        super().__init__(message)
        self.step_id = step_id


@dataclass
class StepRecord:
    step_id: str
    name: str
    status: str
    failure_message: Optional[str] = None

    def as_dict(self) -> dict:
        return {
            "step_id": self.step_id,
            "name": self.name,
            "status": self.status,
            "failure_message": self.failure_message,
        }


@dataclass
class PipelineResult:
    status: str
    failure_message: Optional[str]
    steps: list[StepRecord] = field(default_factory=list)
    qc_path: Optional[Path] = None
    state: dict = field(default_factory=dict)


def run_registration(
    config: RegistrationConfig,
    checkpoint: Checkpoint,
    runner: Optional[CommandRunner] = None,
) -> PipelineResult:
    runner = runner or CommandRunner()
    layout = layout_for(config)

    try:
        context = ExecutionContext(STEP_ORDER, start_at=config.start_at, stop_after=config.stop_after)
    except ValueError as err:
        return PipelineResult(status="FAIL", failure_message=str(err))

    pam50_dir = config.pam50_dir or resolve_pam50_dir()
    if pam50_dir is None:
        return PipelineResult(
            status="FAIL",
            failure_message="PAM50 template directory not found; set SCT_DIR or PAM50_PATH.",
        )

    steps = build_steps(layout, config, pam50_dir)
    step_ctx = StepContext(
        config=config,
        layout=layout,
        pam50_dir=pam50_dir,
        runner=runner,
        checkpoint=checkpoint,
    )
    records: list[StepRecord] = []
    status, failure_message = "PASS", None

    set_execution_context(context)
    try:
        if context.starts_at_beginning:
            provision_directories(layout)
        for step in steps:
            with subtask_context(step.step_id) as active:
                if not active:
                    records.append(StepRecord(step.step_id, step.name, "SKIP"))
                    continue
                print(f"[{step.step_id}] {step.name}")
                try:
                    execute_step(step, step_ctx)
                except PipelineError as err:
                    records.append(StepRecord(step.step_id, step.name, "FAIL", str(err)))
                    raise
                records.append(StepRecord(step.step_id, step.name, "PASS"))
            if should_exit_after_subtask(step.step_id):
                break
    except (PipelineError, ProvisioningError) as err:
        status, failure_message = "FAIL", str(err)
    finally:
        set_execution_context(None)

    result = PipelineResult(status=status, failure_message=failure_message, steps=records, state=step_ctx.state)
    if config.qc and layout.session_dir.is_dir():
        result.qc_path = write_qc(layout, config, result)
    return result


def execute_step(step: Step, ctx: StepContext) -> None:
    """
    Run one step with its file contract enforced.

    Raises:
        PipelineError: if an input is missing, the action fails, or an output is missing.
    """
    label = f"Step {step.step_id} ({step.name})"
    for path in step.inputs:
        if not path.exists():
            raise PipelineError(f"{label} missing input: {path}", step.step_id)
    try:
        step.action(ctx)
    except (StepFailure, CropBoundsError, ViewerError, OSError) as err:
        raise PipelineError(f"{label} failed: {err}", step.step_id) from err
    for path in step.outputs:
        if not path.exists():
            raise PipelineError(f"{label} did not produce: {path}", step.step_id)


def build_qc(layout: SessionLayout, config: RegistrationConfig, result: PipelineResult) -> dict:
    bounds = result.state.get("crop_bounds")
    crop = None
    if isinstance(bounds, CropBounds):
        crop = {"inferior": bounds.inferior, "superior": bounds.superior, "slice_count": bounds.slice_count}
    return {
        "subject": layout.subject,
        "session": layout.session,
        "status": result.status,
        "failure_message": result.failure_message,
        "inputs": {
            "anat": config.anat,
            "func": config.func,
            "mask": str(config.maskdir / config.mask),
        },
        "crop_bounds": crop,
        "segmentation": result.state.get("segmentation"),
        "labels": result.state.get("labels"),
        "func_volumes": result.state.get("func_volumes"),
        "policy": config.policy.as_dict(),
        "steps": [record.as_dict() for record in result.steps],
    }


def write_qc(layout: SessionLayout, config: RegistrationConfig, result: PipelineResult) -> Path:
    qc_path = layout.qc_path
    _write_json(qc_path, build_qc(layout, config, result))
    _validate_json(qc_path, QC_SCHEMA_PATH)
    return qc_path


def _write_json(path: Path, payload: dict) -> None:
    with path.open("w", encoding="utf-8") as f:
        json.dump(payload, f, indent=2, sort_keys=True)
        f.write("\n")


def _validate_json(path: Path, schema_path: Path) -> None:
    data = json.loads(path.read_text(encoding="utf-8"))
    schema = json.loads(schema_path.read_text(encoding="utf-8"))
    validator = Draft7Validator(schema)
    errors = sorted(validator.iter_errors(data), key=lambda e: str(list(e.path)))
    if errors:
        msgs = "; ".join(e.message for e in errors)
        raise ValueError(f"Schema validation failed for {path}: {msgs}")
