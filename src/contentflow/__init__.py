"""contentflow: workflow orchestration for AI-assisted content production."""

__version__ = "0.1.0"
