"""VTM - token-bounded task manifest for code-generation agents."""

__version__ = "0.1.0"
