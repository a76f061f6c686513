"""MBR and GPT partition table encoding and removable memory card handling."""

__version__ = "0.1.0"