"""Bridge between a home-automation device model and the Casambi lighting cloud."""

__all__ = [
    "api",
    "bridge",
    "cli",
    "cloud",
    "config",
    "connection",
    "controls",
    "logging",
    "reconciler",
    "registry",
    "session",
]
__version__ = "0.3.0"
