"""VRChat group audit-log monitor with security alerts and Discord notifications."""

__version__ = "0.3.0"
