"""Optimal control problems, collocation mesh functions and NLP transcription."""

__version__ = "0.1.0"

__all__ = ["diff", "ocp", "dyn_error", "mesh_function", "ocp_to_nlp"]