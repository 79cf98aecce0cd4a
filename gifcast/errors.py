"""Error taxonomy shared by the recorder, the controller and the job service."""


class GifcastError(Exception):
    """Base class for every failure gifcast raises on purpose."""


class TargetUnavailable(GifcastError):
    """The surface is privileged, closed, or otherwise not recordable."""


class CaptureAcquisitionFailure(GifcastError):
    pass


class EncodeFailure(GifcastError):
    """Zero-sized frames, no captured data, or no usable codec."""


class UploadFailure(GifcastError):
    pass


class ConversionFailure(GifcastError):
    pass


class JobNotFound(GifcastError):
    """Unknown job id, or a job that was already reclaimed."""

    def __init__(self, job_id):
        super().__init__(f"Job not found: {job_id}")
        self.job_id = job_id


class ConversionNotReady(GifcastError):
    def __init__(self, job_id):
        super().__init__("Conversion not complete")
        self.job_id = job_id


class NoActiveRecording(GifcastError):
    def __init__(self):
        super().__init__("No active recording")


class SessionBusy(GifcastError):
    pass


class InvalidTransition(GifcastError):
    def __init__(self, state, message):
        super().__init__(f"{type(message).__name__} is not valid while {state.value}")
        self.state = state
        self.message = message


class ProtocolError(GifcastError):
    """A malformed frame on the native transport.

    ``recoverable`` frames were read in full, so the stream is still in sync.
    """

    def __init__(self, message, recoverable=False):
        super().__init__(message)
        self.recoverable = recoverable
