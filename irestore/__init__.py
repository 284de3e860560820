"""Restore-session building blocks: logging, shared helpers, ftab and fls formats, downloads, ASR and FDR clients."""

__version__ = "0.1.0"