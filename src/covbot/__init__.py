"""Coverage Bot: clone, measure, and raise test coverage with AI-authored tests."""

__version__ = "0.1.0"
