"""Contract signing engine: templates, signing workflow, evidence and certificates."""

__version__ = "1.0.0"
