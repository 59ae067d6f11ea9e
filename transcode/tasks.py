import json

from celery import chain, chord, group, shared_task
from celery.utils.log import get_task_logger
from django.conf import settings
from django.db import transaction
from rest_framework import serializers

from .errors import FlowBuildError, TranscodeError
from .flow_definitions import ROOT_STEP
from .flows import Flow, build_transcode_flow
from .models import Media, Task
from .processors import execute_node
from .serializers import ProcessUploadPayloadSerializer
from .utils import now_iso, progress_for_steps, truncate

logger = get_task_logger(__name__)


# -----------------------------------------------------
# Task bookkeeping
# -----------------------------------------------------
def _error_entry(step: str, error, timestamp: str | None = None) -> dict:
    return {"timestamp": timestamp or now_iso(), "step": step, "error": truncate(str(error))}


def _error_log(entries: list) -> str:
    return json.dumps(entries, indent=2) if entries else ""


def _locked(task_id) -> Task:
    return Task.objects.select_for_update().get(pk=task_id)


def _is_current(task: Task, run: int) -> bool:
    """Messages carry the ``attempts`` value of the dispatch that sent them; older runs are stale."""
    return task.attempts == run


def _start_step(task_id, step_type: str, run: int) -> bool:
    """Mark the task running; False when it is terminal (e.g. canceled) or ``run`` is stale."""
    with transaction.atomic():
        task = _locked(task_id)
        if task.is_terminal or not _is_current(task, run):
            return False
        result = task.result or {}
        result.setdefault("startedAt", now_iso())
        result["currentStep"] = step_type
        task.result = result
        task.status = Task.Status.RUNNING
        task.progress = max(task.progress, 5)
        task.save(update_fields=["status", "progress", "result", "updated_at"])
    return True


def _record_step(task_id, step_type: str, step_result: dict, run: int) -> bool:
    """Store one step's result; concurrently finishing siblings serialize on the row lock."""
    with transaction.atomic():
        task = _locked(task_id)
        if not _is_current(task, run):
            return False
        result = task.result or {}
        steps = result.setdefault("steps", {})
        steps[step_type] = step_result
        result["completedSteps"] = sorted(k for k, v in steps.items() if v["status"] == "completed")
        result["failedSteps"] = sorted(k for k, v in steps.items() if v["status"] == "failed")
        task.result = result
        if not task.is_terminal:
            total = len(result.get("flowSteps") or steps)
            task.progress = progress_for_steps(len(steps), total)
        task.save(update_fields=["progress", "result", "updated_at"])
    return True


def _fail_task(task_id, entries: list, run: int):
    with transaction.atomic():
        task = _locked(task_id)
        if task.status == Task.Status.CANCELED or not _is_current(task, run):
            return
        result = task.result or {}
        result.pop("currentStep", None)
        result["completedAt"] = now_iso()
        task.result = result
        task.status = Task.Status.FAILED
        task.progress = 100
        task.error_log = _error_log(entries)
        task.save(update_fields=["status", "progress", "result", "error_log", "updated_at"])


# -----------------------------------------------------
# Celery tasks
# -----------------------------------------------------
@shared_task(bind=True, name="transcode.run_step", max_retries=None)
def run_step(self, task_id: str, node: dict, run: int):
    """
    Run one flow node. Failures are retried with exponential backoff up to the
    node's attempts; after the last attempt a failed child is recorded and
    returned so its siblings carry on, while a failed PROBE fails the task.

    ``run`` is the task's ``attempts`` at dispatch time. Messages left over
    from an earlier run (e.g. canceled, then retried) are skipped.
    """
    step_type = node["stepType"]
    if not _start_step(task_id, step_type, run):
        logger.info("Task %s is no longer active; skipping %s", task_id, step_type)
        return {"stepType": step_type, "status": "skipped", "reason": "task not active"}

    started_at = now_iso()
    logger.info("Task %s: starting %s (attempt %d)", task_id, step_type, self.request.retries + 1)
    try:
        output = execute_node(step_type, node["input"])
    except Exception as exc:
        opts = node.get("opts") or {}
        attempts = opts.get("attempts", settings.TRANSCODE_STEP_ATTEMPTS)
        if self.request.retries + 1 < attempts:
            delay = (opts.get("backoff") or {}).get("delay", settings.TRANSCODE_STEP_BACKOFF)
            countdown = delay * 2 ** self.request.retries
            logger.warning("Task %s: %s failed (%s); retrying in %ss", task_id, step_type, exc, countdown)
            raise self.retry(exc=exc, countdown=countdown)

        logger.error("Task %s: %s failed after %d attempts: %s", task_id, step_type, attempts, exc)
        step_result = {
            "stepType": step_type,
            "status": "failed",
            "error": truncate(str(exc)),
            "startedAt": started_at,
            "completedAt": now_iso(),
        }
        _record_step(task_id, step_type, step_result, run)
        if step_type == ROOT_STEP:
            _fail_task(task_id, [_error_entry(step_type, exc)], run)
            raise
        return step_result

    step_result = {
        "stepType": step_type,
        "status": "completed",
        "output": output,
        "startedAt": started_at,
        "completedAt": now_iso(),
    }
    if not _record_step(task_id, step_type, step_result, run):
        logger.info("Task %s: run %s was superseded; dropping %s result", task_id, run, step_type)
        return {"stepType": step_type, "status": "skipped", "reason": "stale run"}
    logger.info("Task %s: %s completed", task_id, step_type)
    return step_result


@shared_task(name="transcode.finalize_flow")
def finalize_flow(task_id: str, run: int) -> str:
    """Runs once every node finished: settle the task status and activate the media."""
    with transaction.atomic():
        task = _locked(task_id)
        if not _is_current(task, run):
            logger.info("Task %s: run %s was superseded; not finalizing", task_id, run)
            return "skipped"
        if task.status == Task.Status.CANCELED:
            logger.info("Task %s was canceled; leaving it canceled", task_id)
            return task.status

        result = task.result or {}
        steps = result.get("steps", {})
        failed = [
            _error_entry(name, step.get("error", ""), step.get("completedAt"))
            for name, step in steps.items()
            if step.get("status") == "failed"
        ]
        result.pop("currentStep", None)
        result["completedAt"] = now_iso()
        task.result = result
        task.progress = 100
        if failed:
            task.status = Task.Status.FAILED
            task.error_log = _error_log(failed)
        else:
            task.status = Task.Status.SUCCESS
        task.save(update_fields=["status", "progress", "result", "error_log", "updated_at"])

    if task.status == Task.Status.SUCCESS:
        Media.objects.filter(pk=task.payload["mediaId"]).update(is_active=True)
        logger.info("Task %s completed successfully", task_id)
    else:
        logger.error("Task %s finished with %d failed step(s)", task_id, len(failed))
    return task.status


# -----------------------------------------------------
# Dispatch
# -----------------------------------------------------
def _step_signature(flow: Flow, node, run: int):
    return run_step.si(flow.task_id, node.describe(), run).set(queue=settings.TRANSCODE_QUEUE)


def build_canvas(flow: Flow, run: int):
    """PROBE first, then every child in parallel, then finalize. ``run`` tags every message."""
    probe = _step_signature(flow, flow.root, run)
    finalize = finalize_flow.si(flow.task_id, run).set(queue=settings.TRANSCODE_QUEUE)
    if not flow.children:
        return chain(probe, finalize)
    header = group([_step_signature(flow, child, run) for child in flow.children])
    return chain(probe, chord(header, finalize))


def _dispatch(task: Task) -> Task:
    try:
        flow = build_transcode_flow(task)
    except FlowBuildError as e:
        task.status = Task.Status.FAILED
        task.progress = 100
        task.error_log = _error_log([_error_entry("build", e)])
        task.save(update_fields=["status", "progress", "error_log", "updated_at"])
        logger.error("Task %s: cannot build flow: %s", task.pk, e)
        return task

    task.result = {"steps": {}, "flowSteps": [step.value for step in flow.step_types]}
    task.save(update_fields=["result", "updated_at"])

    canvas = build_canvas(flow, task.attempts)
    transaction.on_commit(canvas.apply_async)
    logger.info("Task %s: dispatched flow with %d step(s)", task.pk, len(flow.nodes))
    return task


def enqueue_transcode(upload, payload: dict, workspace_id: str | None = None) -> Task:
    """Validate ``payload``, create a queued process-upload task for ``upload`` and dispatch its flow."""
    ser = ProcessUploadPayloadSerializer(data=payload)
    ser.is_valid(raise_exception=True)
    data = json.loads(json.dumps(ser.validated_data))
    if data["uploadId"] != str(upload.pk):
        raise serializers.ValidationError({"uploadId": ["Does not match the upload being processed."]})

    with transaction.atomic():
        task = Task.objects.create(
            workspace_id=workspace_id or upload.workspace_id,
            type=Task.Type.PROCESS_UPLOAD,
            provider=data.get("provider", settings.TRANSCODE_DEFAULT_PROVIDER),
            payload=data,
        )
        return _dispatch(task)


def retry_task(task_id) -> Task:
    """Re-run a finished task; the stored payload yields the same flow as before."""
    with transaction.atomic():
        task = _locked(task_id)
        if not task.is_terminal:
            raise TranscodeError(f"Task {task_id} is still {task.status}")
        task.status = Task.Status.QUEUED
        task.progress = 0
        task.attempts += 1
        task.error_log = ""
        task.save(update_fields=["status", "progress", "attempts", "error_log", "updated_at"])
        return _dispatch(task)


def cancel_task(task_id) -> bool:
    """
    Cancel a queued or running task. Steps that have not started yet see the
    canceled status and skip; a step already running finishes.
    """
    with transaction.atomic():
        task = _locked(task_id)
        if task.is_terminal:
            return False
        task.status = Task.Status.CANCELED
        task.save(update_fields=["status", "updated_at"])
    logger.info("Task %s canceled", task_id)
    return True
