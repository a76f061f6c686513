"""Error type shared by the firmware tools."""

# Longest path allowed for an entry inside a firmware archive.
MAX_ARCHIVE_PATH = 512


class FwupError(Exception):
    """Raised when a firmware operation cannot be completed."""