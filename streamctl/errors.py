"""Exceptions raised by the store and the supervisor.

Each carries the HTTP status the API answers with.
"""


class StreamControlError(Exception):
    status_code = 500


class StreamValidationError(StreamControlError):
    status_code = 400


class StreamNotFound(StreamControlError):
    status_code = 404

    def __init__(self, stream_id: str) -> None:
        super().__init__(f"Stream not found: {stream_id}")
        self.stream_id = stream_id


class AlreadyRunning(StreamControlError):
    status_code = 409

    def __init__(self, stream_id: str) -> None:
        super().__init__(f"Stream is already running: {stream_id}")
        self.stream_id = stream_id


class NotRunning(StreamControlError):
    status_code = 409

    def __init__(self, stream_id: str) -> None:
        super().__init__(f"Stream is not running: {stream_id}")
        self.stream_id = stream_id


class ProcessLaunchFailure(StreamControlError):
    def __init__(self, stream_id: str, reason: str) -> None:
        super().__init__(f"Failed to launch transcoder for {stream_id}: {reason}")
        self.stream_id = stream_id


class ProcessTerminationTimeout(StreamControlError):
    def __init__(self, stream_id: str, timeout: float) -> None:
        super().__init__(f"Transcoder for {stream_id} did not exit within {timeout:g}s")
        self.stream_id = stream_id
        self.timeout = timeout
