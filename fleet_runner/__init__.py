"""Runs an ordered command batch against a fleet of Windows hosts over WinRM."""
__version__ = "1.0.0"
