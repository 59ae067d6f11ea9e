import json
import uuid

import pytest
from rest_framework.exceptions import ValidationError

from transcode import tasks
from transcode.errors import StepExecutionError, TranscodeError
from transcode.flows import build_transcode_flow
from transcode.models import Media, Task
from transcode.tasks import (
    build_canvas,
    cancel_task,
    enqueue_transcode,
    finalize_flow,
    retry_task,
    run_step,
)

pytestmark = pytest.mark.django_db


def node(task, step_type, attempts=1):
    flow = build_transcode_flow(task)
    found = next(n for n in flow.nodes if n.step_type == step_type)
    desc = found.describe()
    desc["opts"]["attempts"] = attempts
    return desc


def header_of(chord_sig):
    header = chord_sig.tasks
    return list(getattr(header, "tasks", header))


@pytest.fixture
def dispatched(monkeypatch):
    """Capture canvases instead of sending them to a broker."""
    sent = []
    monkeypatch.setattr(tasks, "build_canvas", lambda flow, run: _Canvas(flow, run, sent))
    return sent


class _Canvas:
    def __init__(self, flow, run, sent):
        self.flow = flow
        self.run = run
        self.sent = sent

    def apply_async(self):
        self.sent.append((self.flow, self.run))


# -----------------------------------------------------
# Canvas shape
# -----------------------------------------------------
def test_canvas_probe_then_children_then_finalize(task, settings):
    settings.TRANSCODE_QUEUE = "transcode"
    flow = build_transcode_flow(task)
    canvas = build_canvas(flow, task.attempts)

    probe, fan_out = canvas.tasks
    assert probe.task == "transcode.run_step"
    assert probe.args[0] == str(task.pk)
    assert probe.args[1]["stepType"] == "transcode:probe"
    assert probe.args[2] == 1
    assert probe.options["queue"] == "transcode"
    assert probe.immutable

    children = header_of(fan_out)
    assert [sig.args[1]["stepType"] for sig in children] == ["transcode:thumbnail", "transcode:audio"]
    assert all(sig.options["queue"] == "transcode" for sig in children)
    assert fan_out.body.task == "transcode.finalize_flow"
    assert fan_out.body.args == (str(task.pk), 1)
    assert all(sig.args[2] == 1 for sig in children)


def test_canvas_probe_only(task):
    task.payload = {"uploadId": task.payload["uploadId"], "mediaId": task.payload["mediaId"]}
    canvas = build_canvas(build_transcode_flow(task), task.attempts)
    assert [sig.task for sig in canvas.tasks] == ["transcode.run_step", "transcode.finalize_flow"]


# -----------------------------------------------------
# run_step
# -----------------------------------------------------
def test_run_step_records_completed_step(task, monkeypatch):
    monkeypatch.setattr(tasks, "execute_node", lambda step_type, input: {"thumbnailKey": "k"})

    out = run_step(str(task.pk), node(task, "transcode:thumbnail"), task.attempts)

    assert out["status"] == "completed"
    assert out["output"] == {"thumbnailKey": "k"}
    task.refresh_from_db()
    assert task.status == Task.Status.RUNNING
    assert task.result["steps"]["transcode:thumbnail"]["status"] == "completed"
    assert task.result["completedSteps"] == ["transcode:thumbnail"]
    assert task.result["currentStep"] == "transcode:thumbnail"
    # one of three steps done
    assert task.progress == 38


def test_failed_child_does_not_raise(task, monkeypatch):
    def boom(step_type, input):
        raise StepExecutionError("ffmpeg exited with status 1", stderr="bad input")

    monkeypatch.setattr(tasks, "execute_node", boom)

    out = run_step(str(task.pk), node(task, "transcode:audio"), task.attempts)

    assert out["status"] == "failed"
    assert "bad input" in out["error"]
    task.refresh_from_db()
    assert task.status == Task.Status.RUNNING
    assert task.result["failedSteps"] == ["transcode:audio"]


def test_failed_probe_fails_the_task(task, monkeypatch):
    def boom(step_type, input):
        raise StepExecutionError("No video or audio stream found in input file")

    monkeypatch.setattr(tasks, "execute_node", boom)

    with pytest.raises(StepExecutionError):
        run_step(str(task.pk), node(task, "transcode:probe"), task.attempts)

    task.refresh_from_db()
    assert task.status == Task.Status.FAILED
    assert task.progress == 100
    log = json.loads(task.error_log)
    assert log[0]["step"] == "transcode:probe"
    assert "No video or audio stream" in log[0]["error"]


def test_retryable_failure_is_raised_for_retry(task, monkeypatch):
    def boom(step_type, input):
        raise StepExecutionError("flaky")

    monkeypatch.setattr(tasks, "execute_node", boom)

    # called directly, Celery's retry re-raises the original error
    with pytest.raises(StepExecutionError, match="flaky"):
        run_step(str(task.pk), node(task, "transcode:thumbnail", attempts=3), task.attempts)

    task.refresh_from_db()
    assert "transcode:thumbnail" not in task.result["steps"]


def test_canceled_task_skips_steps(task, monkeypatch):
    monkeypatch.setattr(tasks, "execute_node", pytest.fail)
    assert cancel_task(task.pk) is True

    out = run_step(str(task.pk), node(task, "transcode:thumbnail"), task.attempts)

    assert out["status"] == "skipped"
    task.refresh_from_db()
    assert task.status == Task.Status.CANCELED


# -----------------------------------------------------
# finalize_flow
# -----------------------------------------------------
def test_finalize_success_activates_media(task, media):
    task.result["steps"] = {
        "transcode:probe": {"stepType": "transcode:probe", "status": "completed"},
        "transcode:thumbnail": {"stepType": "transcode:thumbnail", "status": "completed"},
    }
    task.save()

    assert finalize_flow(str(task.pk), task.attempts) == Task.Status.SUCCESS

    task.refresh_from_db()
    media.refresh_from_db()
    assert task.progress == 100
    assert task.error_log == ""
    assert "completedAt" in task.result
    assert media.is_active is True


def test_finalize_with_failed_step(task, media):
    task.result["steps"] = {
        "transcode:probe": {"stepType": "transcode:probe", "status": "completed"},
        "transcode:audio": {
            "stepType": "transcode:audio", "status": "failed",
            "error": "ffmpeg exited with status 1", "completedAt": "2024-01-01T00:00:00+00:00",
        },
    }
    task.save()

    assert finalize_flow(str(task.pk), task.attempts) == Task.Status.FAILED

    task.refresh_from_db()
    media.refresh_from_db()
    assert json.loads(task.error_log) == [{
        "timestamp": "2024-01-01T00:00:00+00:00",
        "step": "transcode:audio",
        "error": "ffmpeg exited with status 1",
    }]
    assert media.is_active is False


def test_finalize_leaves_canceled_task(task):
    cancel_task(task.pk)
    assert finalize_flow(str(task.pk), task.attempts) == Task.Status.CANCELED


# -----------------------------------------------------
# enqueue / retry / cancel
# -----------------------------------------------------
def test_enqueue_creates_task_and_dispatches_on_commit(media, dispatched, django_capture_on_commit_callbacks):
    payload = {
        "uploadId": str(media.upload_id),
        "mediaId": str(media.pk),
        "sprite": {"fps": 0.5, "cols": 5, "rows": 5, "tileWidth": 160, "tileHeight": 90},
        "transcode": {"enabled": False},
    }
    with django_capture_on_commit_callbacks(execute=True):
        task = enqueue_transcode(media.upload, payload)

    task.refresh_from_db()
    assert task.status == Task.Status.QUEUED
    assert task.workspace_id == "ws-1"
    assert task.provider == "ffmpeg"
    assert task.result == {"steps": {}, "flowSteps": ["transcode:probe", "transcode:sprite"]}
    assert len(dispatched) == 1
    flow, run = dispatched[0]
    assert flow.task_id == str(task.pk)
    assert run == 1


def test_enqueue_rejects_invalid_payload(media, dispatched):
    with pytest.raises(ValidationError):
        enqueue_transcode(media.upload, {"uploadId": str(media.upload_id)})
    with pytest.raises(ValidationError):
        enqueue_transcode(media.upload, {"uploadId": "someone-else", "mediaId": str(media.pk)})
    assert Task.objects.count() == 0


def test_unbuildable_payload_fails_task_without_dispatch(task, dispatched, django_capture_on_commit_callbacks):
    task.status = Task.Status.FAILED
    task.payload = {"uploadId": task.payload["uploadId"]}
    task.save()

    with django_capture_on_commit_callbacks(execute=True):
        retry_task(task.pk)

    task.refresh_from_db()
    assert task.status == Task.Status.FAILED
    assert json.loads(task.error_log)[0]["step"] == "build"
    assert dispatched == []


def test_retry_task_rebuilds_same_flow(task, dispatched, django_capture_on_commit_callbacks):
    task.status = Task.Status.FAILED
    task.error_log = "old"
    task.save()
    expected = build_transcode_flow(task).describe()

    with django_capture_on_commit_callbacks(execute=True):
        retry_task(task.pk)

    task.refresh_from_db()
    assert task.status == Task.Status.QUEUED
    assert task.attempts == 2
    assert task.error_log == ""
    flow, run = dispatched[0]
    assert flow.describe() == expected
    assert run == 2


def test_retry_running_task_is_refused(task):
    task.status = Task.Status.RUNNING
    task.save()
    with pytest.raises(TranscodeError):
        retry_task(task.pk)


def test_cancel_finished_task_is_noop(task):
    task.status = Task.Status.SUCCESS
    task.save()
    assert cancel_task(task.pk) is False
    task.refresh_from_db()
    assert task.status == Task.Status.SUCCESS


def test_missing_task():
    with pytest.raises(Task.DoesNotExist):
        cancel_task(uuid.uuid4())


# -----------------------------------------------------
# Superseded runs
# -----------------------------------------------------
def test_messages_from_canceled_run_skip_after_retry(task, monkeypatch, dispatched, django_capture_on_commit_callbacks):
    ran = []
    monkeypatch.setattr(tasks, "execute_node", lambda step_type, input: ran.append(step_type) or {})
    old_run = task.attempts
    thumbnail = node(task, "transcode:thumbnail")
    probe = node(task, "transcode:probe")

    cancel_task(task.pk)
    with django_capture_on_commit_callbacks(execute=True):
        retry_task(task.pk)

    assert run_step(str(task.pk), thumbnail, old_run)["status"] == "skipped"
    assert run_step(str(task.pk), probe, old_run)["status"] == "skipped"
    assert finalize_flow(str(task.pk), old_run) == "skipped"
    assert ran == []

    task.refresh_from_db()
    assert task.status == Task.Status.QUEUED
    assert task.attempts == old_run + 1
    assert task.result == {"steps": {}, "flowSteps": ["transcode:probe", "transcode:thumbnail", "transcode:audio"]}

    # the new run's messages go through
    assert run_step(str(task.pk), thumbnail, task.attempts)["status"] == "completed"
    assert ran == ["transcode:thumbnail"]


def test_result_of_superseded_run_is_dropped(task, monkeypatch):
    def retried_meanwhile(step_type, input):
        Task.objects.filter(pk=task.pk).update(attempts=task.attempts + 1, status=Task.Status.QUEUED)
        return {"thumbnailKey": "k"}

    monkeypatch.setattr(tasks, "execute_node", retried_meanwhile)

    out = run_step(str(task.pk), node(task, "transcode:thumbnail"), task.attempts)

    assert out == {"stepType": "transcode:thumbnail", "status": "skipped", "reason": "stale run"}
    task.refresh_from_db()
    assert task.result["steps"] == {}
