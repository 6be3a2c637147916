"""Exception types raised by the slide extraction engine."""


class SlidesError(Exception):
    """Base class for fatal slide extraction failures."""
    pass


class MissingToolError(SlidesError):
    """Raised when a required external tool cannot be found."""
    pass


class AcquisitionError(SlidesError):
    """Raised when no playable media could be obtained for a source."""
    pass


class NoSlidesDetectedError(SlidesError):
    """Raised when scene detection and the interval grid yield no timestamps."""
    pass


class NoFramesExtractedError(SlidesError):
    """Raised when every frame extraction failed or was filtered out."""
    pass
