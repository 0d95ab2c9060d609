class ProbeError(Exception):
    """Base class for errors raised by rtc_probe."""


class SignalingError(ProbeError):
    """The control connection reported or caused a failure."""
