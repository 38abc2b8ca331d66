"""Administrative client for Globus Connect Server endpoints."""

__version__ = "0.1.0"
