"""Workflow registry: each workflow type is a priced, ordered list of pure step descriptors."""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any

from photoflow.core.errors import UnknownWorkflowTypeError
from photoflow.credits.tiers import CreditAction

# Names a step input after the workflow's original image rather than a prior step.
INPUT = "input"


@dataclass(frozen=True)
class StepCall:
  """One provider invocation: which model kind, on what image, with which parameters."""

  kind: str
  input_ref: str
  params: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class StepDescriptor:
  """A single pipeline step.

  ``source`` picks the image the step works on: a prior step name, ``INPUT``, or
  None for the most recent prior output. ``params_from`` copies prior outputs
  into named parameters.
  """

  name: str
  kind: str
  params: Mapping[str, Any] = field(default_factory=dict)
  source: str | None = None
  params_from: Mapping[str, str] = field(default_factory=dict)
  message: str = ""

  def build(self, input_ref: str, prior_outputs: Mapping[str, str]) -> StepCall:
    """Return the provider call for this step without performing it."""
    target = self._resolve(self.source, input_ref, prior_outputs)
    params = dict(self.params)
    for param_name, step_name in self.params_from.items():
      params[param_name] = self._resolve(step_name, input_ref, prior_outputs)
    return StepCall(kind=self.kind, input_ref=target, params=params)

  def _resolve(self, name: str | None, input_ref: str, prior_outputs: Mapping[str, str]) -> str:
    if name is None:
      # Feed the latest output forward; the first step sees the original input.
      return list(prior_outputs.values())[-1] if prior_outputs else input_ref
    if name == INPUT:
      return input_ref
    if name not in prior_outputs:
      raise ValueError(f"Step '{self.name}' depends on '{name}', which has not run yet.")
    return prior_outputs[name]


@dataclass(frozen=True)
class WorkflowDefinition:
  name: str
  action: CreditAction
  cost: int
  steps: tuple[StepDescriptor, ...]

  def __post_init__(self) -> None:
    if self.cost <= 0:
      raise ValueError(f"Workflow '{self.name}' must cost at least one credit.")
    if not self.steps:
      raise ValueError(f"Workflow '{self.name}' must define at least one step.")
    names = [step.name for step in self.steps]
    if len(set(names)) != len(names):
      raise ValueError(f"Workflow '{self.name}' has duplicate step names.")

  @property
  def step_names(self) -> tuple[str, ...]:
    return tuple(step.name for step in self.steps)


class WorkflowRegistry:
  """Resolve workflow definitions by type name."""

  def __init__(self, definitions: Iterable[WorkflowDefinition]) -> None:
    self._definitions: Mapping[str, WorkflowDefinition] = MappingProxyType({definition.name: definition for definition in definitions})

  def resolve(self, workflow_type: str) -> WorkflowDefinition:
    definition = self._definitions.get(workflow_type)
    if definition is None:
      raise UnknownWorkflowTypeError(f"Unknown workflow type: {workflow_type}", workflow_type=workflow_type, supported=sorted(self._definitions))
    return definition

  def names(self) -> list[str]:
    return sorted(self._definitions)


DEFAULT_WORKFLOWS: tuple[WorkflowDefinition, ...] = (
  WorkflowDefinition(
    name="compliance_check",
    action=CreditAction.CHECK,
    cost=1,
    steps=(
      StepDescriptor(name="product_detection", kind="product_detection", message="Detecting product...", params={"points_per_side": 32, "pred_iou_thresh": 0.88, "stability_score_thresh": 0.95}),
      StepDescriptor(
        name="compliance_scoring",
        kind="image_analysis",
        message="Scoring marketplace compliance...",
        source=INPUT,
        params={"checks": ["white_background", "product_fill", "resolution", "watermarks"]},
        params_from={"detections": "product_detection"},
      ),
    ),
  ),
  WorkflowDefinition(
    name="product_enhancement",
    action=CreditAction.FIX,
    cost=3,
    steps=(
      StepDescriptor(name="detection", kind="product_detection", message="Detecting product...", params={"points_per_side": 32, "pred_iou_thresh": 0.88, "stability_score_thresh": 0.95}),
      StepDescriptor(name="background_removal", kind="background_removal", message="Removing background...", source=INPUT, params={"model": "u2net", "alpha_matting": True}, params_from={"mask_hint": "detection"}),
      StepDescriptor(name="enhancement", kind="image_enhancement", message="Generating background variations...", params={"scale": 2, "version": "v1.4"}),
      StepDescriptor(name="export_generation", kind="platform_export", message="Creating platform exports...", params={"platforms": ["shopify", "amazon", "instagram", "facebook", "web_small", "web_large"]}),
    ),
  ),
  WorkflowDefinition(
    name="lifestyle_scenes",
    action=CreditAction.FIX,
    cost=4,
    steps=(
      StepDescriptor(name="analysis", kind="product_detection", message="Analyzing product features..."),
      StepDescriptor(
        name="scene_generation",
        kind="lifestyle_generation",
        message="Generating lifestyle scenes...",
        source=INPUT,
        params={"scenes": ["home", "social", "outdoor", "professional", "seasonal"], "num_outputs": 1},
        params_from={"product_analysis": "analysis"},
      ),
      StepDescriptor(name="integration", kind="lifestyle_generation", message="Integrating product into scenes...", params={"mode": "composite"}, params_from={"product_image": INPUT}),
      StepDescriptor(name="optimization", kind="image_enhancement", message="Optimizing for social media...", params={"scale": 2}),
    ),
  ),
  WorkflowDefinition(
    name="product_variants",
    action=CreditAction.FIX,
    cost=5,
    steps=(
      StepDescriptor(name="3d_reconstruction", kind="3d_reconstruction", message="Reconstructing product in 3D..."),
      StepDescriptor(name="angle_generation", kind="angle_generation", message="Generating new angles...", params={"angles": [0, 45, 90, 135, 180]}),
      StepDescriptor(name="color_variation", kind="color_variation", message="Creating color variations...", params={"colors": ["black", "white", "navy", "red"]}),
      StepDescriptor(name="style_application", kind="image_enhancement", message="Applying studio style...", params={"style": "studio"}),
    ),
  ),
)

DEFAULT_REGISTRY = WorkflowRegistry(DEFAULT_WORKFLOWS)
