class CalibrationError(Exception):
    """Base class for every error raised by stcalib."""


class ConfigurationError(CalibrationError, ValueError):
    """A configured sensor, model name or option is unusable."""


class NoIntersectionError(ConfigurationError):
    """Trimming a stream to the common time window removed all of its frames."""

    def __init__(self, topic, message=None):
        self.topic = topic
        if message is None:
            message = f"the data of topic '{topic}' is invalid, there is no intersection with the imu data."
        super().__init__(message)


class TimeRangeError(CalibrationError, ValueError):
    """A spline was evaluated outside of its time support."""


class ScaleSplineTypeError(CalibrationError):
    """The active scale spline cannot answer the requested query."""


class MissingParameterError(CalibrationError, KeyError):
    """A per-topic calibration parameter is missing."""

    def __str__(self):
        # KeyError quotes its argument, keep the plain message instead
        return str(self.args[0]) if self.args else ""


class DecodeError(CalibrationError, ValueError):
    """A raw message does not match the configured sensor model."""
