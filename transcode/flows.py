"""
Build the job graph for a process-upload task.

A flow is two levels deep: a PROBE root and the optional steps the payload
asks for, each depending on the root only. Building is pure; dispatching the
flow to Celery lives in ``transcode.tasks``.
"""
import copy
import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Callable

from django.conf import settings

from .errors import FlowBuildError
from .flow_definitions import ROOT_STEP, TranscodeStepType, get_step_job_options, step_name
from .selectors import SELECTORS

log = logging.getLogger(__name__)

FLOW_NAME = "transcode"


@dataclass(frozen=True)
class StepNode:
    id: str
    step_type: TranscodeStepType
    input: dict
    depends_on: tuple = ()
    options: dict = field(default_factory=dict)

    def describe(self) -> dict:
        return {
            "id": self.id,
            "name": self.step_type.value,
            "stepType": self.step_type.value,
            "input": copy.deepcopy(self.input),
            "dependsOn": list(self.depends_on),
            "opts": copy.deepcopy(self.options),
        }


@dataclass(frozen=True)
class Flow:
    task_id: str
    workspace_id: str
    root: StepNode
    children: tuple = ()

    @property
    def nodes(self) -> tuple:
        return (self.root,) + tuple(self.children)

    @property
    def step_types(self) -> list:
        return [node.step_type for node in self.nodes]

    def describe(self) -> dict:
        """JSON-serializable description of the graph (with explicit dependsOn edges)."""
        return {
            "name": FLOW_NAME,
            "taskId": self.task_id,
            "workspaceId": self.workspace_id,
            "root": self.root.describe(),
            "children": [child.describe() for child in self.children],
        }


@dataclass(frozen=True)
class Branch:
    """An optional step: included when ``predicate(payload)`` holds, with input from ``input_factory``."""

    step_type: TranscodeStepType
    predicate: Callable
    input_factory: Callable


def node_id(task_id, step_type) -> str:
    return f"{task_id}:{TranscodeStepType(step_type).value}"


def build_conditional_flow(task_id, workspace_id, root_step, root_input, payload, branches) -> Flow:
    """Root node plus one dependent node per branch whose predicate matches ``payload``."""
    root = StepNode(
        id=node_id(task_id, root_step),
        step_type=TranscodeStepType(root_step),
        input=root_input,
        options=get_step_job_options(root_step),
    )
    children = []
    for branch in branches:
        if not branch.predicate(payload):
            continue
        children.append(StepNode(
            id=node_id(task_id, branch.step_type),
            step_type=TranscodeStepType(branch.step_type),
            input=branch.input_factory(payload),
            depends_on=(root.id,),
            options=get_step_job_options(branch.step_type),
        ))
    return Flow(task_id=str(task_id), workspace_id=workspace_id, root=root, children=tuple(children))


def _refs(payload) -> dict:
    return {"uploadId": payload["uploadId"], "mediaId": payload["mediaId"]}


def _step_input(step_type, config_key, **extra):
    """Input factory: the sub-config's parameters plus the identifying references."""
    def factory(payload) -> dict:
        params = {k: v for k, v in payload[config_key].items() if k != "enabled"}
        return {
            **copy.deepcopy(params),
            **extra,
            "type": step_name(step_type),
            **_refs(payload),
        }
    return factory


def _transcode_input(payload) -> dict:
    provider = payload.get("provider") or settings.TRANSCODE_DEFAULT_PROVIDER
    return _step_input(TranscodeStepType.TRANSCODE, "transcode", provider=provider)(payload)


TRANSCODE_BRANCHES = (
    Branch(TranscodeStepType.THUMBNAIL, SELECTORS[TranscodeStepType.THUMBNAIL],
           _step_input(TranscodeStepType.THUMBNAIL, "thumbnail")),
    Branch(TranscodeStepType.SPRITE, SELECTORS[TranscodeStepType.SPRITE],
           _step_input(TranscodeStepType.SPRITE, "sprite")),
    Branch(TranscodeStepType.FILMSTRIP, SELECTORS[TranscodeStepType.FILMSTRIP],
           _step_input(TranscodeStepType.FILMSTRIP, "filmstrip")),
    Branch(TranscodeStepType.TRANSCODE, SELECTORS[TranscodeStepType.TRANSCODE], _transcode_input),
    Branch(TranscodeStepType.AUDIO, SELECTORS[TranscodeStepType.AUDIO],
           _step_input(TranscodeStepType.AUDIO, "audio")),
)


def _check_payload(payload):
    if not isinstance(payload, Mapping):
        raise FlowBuildError(f"Task payload must be an object, got {type(payload).__name__}")
    missing = [key for key in ("uploadId", "mediaId") if payload.get(key) in (None, "")]
    if missing:
        raise FlowBuildError(f"Task payload is missing {', '.join(missing)}")


def build_transcode_flow(task) -> Flow:
    """
    Build the flow for a process-upload ``task`` (anything with ``id``,
    ``workspace_id`` and ``payload``). The task and its payload are not modified.
    """
    payload = task.payload
    _check_payload(payload)

    flow = build_conditional_flow(
        task_id=str(task.id),
        workspace_id=task.workspace_id,
        root_step=ROOT_STEP,
        root_input={"type": step_name(ROOT_STEP), **_refs(payload)},
        payload=payload,
        branches=TRANSCODE_BRANCHES,
    )
    log.debug(
        "Built transcode flow for task %s: %s",
        flow.task_id, ", ".join(step.value for step in flow.step_types),
    )
    return flow
