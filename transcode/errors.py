class TranscodeError(Exception):
    """Base class for errors raised by the transcode flow."""


class FlowBuildError(TranscodeError, ValueError):
    """The task payload is not shaped like a process-upload payload."""


class UnknownStepError(TranscodeError):
    def __init__(self, step_type):
        super().__init__(f"Unknown step type: {step_type}")
        self.step_type = step_type


class StepExecutionError(TranscodeError):
    """An ffmpeg/ffprobe invocation failed or left no output behind."""

    def __init__(self, message: str, stderr: str = ""):
        super().__init__(message)
        self.stderr = stderr

    def __str__(self):
        base = super().__str__()
        if self.stderr:
            return f"{base}: {self.stderr[-4000:]}"
        return base
